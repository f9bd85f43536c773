"""Audit trail for pharmacist and admin mutations.

Every approval, rejection, fill, dispatch, prescription review and inventory
edit is logged with: who, what, when, and from where.

Usage in services:

    from medrefill.services.audit_service import log_audit

    log_audit(
        db,
        action="refill.approve",
        entity_type="refill_request",
        entity_id=refill.id,
        user=pharmacist,
        old_value={"status": "PENDING"},
        new_value={"status": "APPROVED"},
    )
"""
import logging
from uuid import UUID

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession

from medrefill.models.audit_log import AuditLog

logger = logging.getLogger(__name__)


def _jsonable(value: dict | None) -> dict | None:
    if value is None:
        return None
    return {k: (str(v) if not isinstance(v, (str, int, float, bool, type(None), list, dict)) else v)
            for k, v in value.items()}


def client_ip(request: Request | None) -> str | None:
    if request is None:
        return None
    # X-Forwarded-For in prod behind nginx
    ip = request.headers.get("x-forwarded-for", "").split(",")[0].strip()
    if not ip:
        ip = request.client.host if request.client else None
    return ip


def log_audit(
    db: AsyncSession,
    *,
    action: str,
    entity_type: str | None = None,
    entity_id: UUID | None = None,
    user: object | None = None,
    old_value: dict | None = None,
    new_value: dict | None = None,
    ip_address: str | None = None,
) -> None:
    """Add an audit entry to the caller's transaction.

    The entry is written when the caller commits, and disappears with it
    on rollback, so the trail never records a mutation that did not happen.
    """
    try:
        entry = AuditLog(
            user_id=getattr(user, "id", None) if user else None,
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            old_value=_jsonable(old_value),
            new_value=_jsonable(new_value),
            ip_address=ip_address,
        )
        db.add(entry)
    except Exception:
        # Audit logging must never break the main request
        logger.exception("Failed to write audit log entry")
