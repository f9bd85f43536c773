"""Authentication dependencies for the API routers.

Tokens carry ``sub`` (user id), ``email`` and ``role``.  The role in the
token is only a hint; the stored user row is authoritative.
"""

import logging
from uuid import UUID

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from medrefill.database import get_db
from medrefill.models.user import User, UserRole
from medrefill.services.auth_service import decode_access_token

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)


async def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    db: AsyncSession = Depends(get_db),
) -> User:
    unauthorized = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Invalid or expired token",
        headers={"WWW-Authenticate": "Bearer"},
    )
    if credentials is None:
        raise unauthorized

    payload = decode_access_token(credentials.credentials)
    if not payload or not payload.get("sub"):
        raise unauthorized

    try:
        user_id = UUID(payload["sub"])
    except ValueError:
        raise unauthorized

    user = await db.get(User, user_id)
    if user is None or not user.is_active:
        logger.warning("Token for unknown or inactive user %s", user_id)
        raise unauthorized
    return user


def require_roles(*roles: UserRole):
    allowed = {r.value for r in roles}

    async def dependency(user: User = Depends(get_current_user)) -> User:
        if user.role not in allowed:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Insufficient permissions",
            )
        return user

    return dependency


require_any_user = get_current_user
require_patient = require_roles(UserRole.PATIENT)
require_pharmacist = require_roles(UserRole.PHARMACIST)
require_admin = require_roles(UserRole.ADMIN)
require_pharmacist_or_admin = require_roles(UserRole.PHARMACIST, UserRole.ADMIN)
require_patient_or_admin = require_roles(UserRole.PATIENT, UserRole.ADMIN)
