"""
Tracking ledger and live feed.

Every prescription has an append-only timeline of ``PrescriptionTracking``
events.  ``record`` adds an event to the caller's transaction and queues its
serialized form on the session's outbox (``session.info``).  The outbox is
handed to ``LiveFeed`` by an ``after_commit`` listener and dropped by an
``after_rollback`` listener, so live subscribers only ever see events that
are durable.

``LiveFeed`` is a process-wide registry of bounded subscriber queues keyed by
prescription id.  Publishing never blocks: a subscriber whose queue is full
simply misses the event.
"""

import asyncio
import json
import logging
import threading
from dataclasses import dataclass, field
from typing import AsyncIterator, Optional
from uuid import UUID

from sqlalchemy import event, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import Session

from medrefill.config import get_settings
from medrefill.models.prescription import Prescription, PrescriptionStatus
from medrefill.models.tracking import PrescriptionTracking, TrackingStatus
from medrefill.models.user import User, UserRole
from medrefill.services.errors import NotFoundError, PermissionDeniedError, ValidationError

logger = logging.getLogger(__name__)

OUTBOX_KEY = "tracking_outbox"


# ---------------------------------------------------------------------------
# Live feed
# ---------------------------------------------------------------------------

@dataclass(eq=False)
class Subscription:
    prescription_id: UUID
    queue: asyncio.Queue = field(repr=False)


class LiveFeed:
    """Fan-out of committed tracking events to SSE subscribers.

    Singleton pattern so all routes share one registry.
    """

    _instance: Optional["LiveFeed"] = None

    def __init__(self, queue_size: int = 100):
        self._queue_size = queue_size
        self._subscribers: dict[UUID, set[Subscription]] = {}
        # publish() runs inside a synchronous session event, so a plain lock
        self._lock = threading.Lock()
        self._dropped = 0

    @classmethod
    def get_instance(cls) -> "LiveFeed":
        if cls._instance is None:
            cls._instance = cls(get_settings().LIVE_FEED_QUEUE_SIZE)
        return cls._instance

    @classmethod
    def reset(cls) -> None:
        """Reset singleton (testing only)."""
        cls._instance = None

    def subscribe(self, prescription_id: UUID) -> Subscription:
        subscription = Subscription(prescription_id, asyncio.Queue(maxsize=self._queue_size))
        with self._lock:
            self._subscribers.setdefault(prescription_id, set()).add(subscription)
            count = len(self._subscribers[prescription_id])
        logger.info("live_feed: subscribed to %s (%d subscribers)", prescription_id, count)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            subs = self._subscribers.get(subscription.prescription_id)
            if not subs:
                return
            subs.discard(subscription)
            if not subs:
                del self._subscribers[subscription.prescription_id]
        logger.info("live_feed: unsubscribed from %s", subscription.prescription_id)

    def publish(self, prescription_id: UUID, payload: dict) -> int:
        """Deliver ``payload`` to every subscriber of the prescription.

        Returns the number of subscribers that received it.
        """
        with self._lock:
            targets = list(self._subscribers.get(prescription_id, ()))
        delivered = 0
        for subscription in targets:
            try:
                subscription.queue.put_nowait(payload)
                delivered += 1
            except asyncio.QueueFull:
                self._dropped += 1
                logger.warning("live_feed: subscriber queue full for %s, event dropped", prescription_id)
        return delivered

    def subscriber_count(self, prescription_id: UUID | None = None) -> int:
        with self._lock:
            if prescription_id is not None:
                return len(self._subscribers.get(prescription_id, ()))
            return sum(len(s) for s in self._subscribers.values())

    def get_stats(self) -> dict:
        with self._lock:
            return {
                "prescriptions": len(self._subscribers),
                "subscribers": sum(len(s) for s in self._subscribers.values()),
                "dropped_events": self._dropped,
            }


@event.listens_for(Session, "after_commit")
def _publish_outbox(session: Session) -> None:
    outbox = session.info.pop(OUTBOX_KEY, None)
    if not outbox:
        return
    feed = LiveFeed.get_instance()
    for payload in outbox:
        try:
            feed.publish(UUID(payload["prescription_id"]), payload)
        except Exception:
            logger.exception("live_feed: failed to publish tracking event %s", payload.get("id"))


@event.listens_for(Session, "after_rollback")
def _discard_outbox(session: Session) -> None:
    dropped = session.info.pop(OUTBOX_KEY, None)
    if dropped:
        logger.debug("live_feed: discarded %d uncommitted tracking events", len(dropped))


def serialize(tracking: PrescriptionTracking) -> dict:
    return {
        "id": tracking.id,
        "prescription_id": str(tracking.prescription_id),
        "status": TrackingStatus(tracking.status).value,
        "notes": tracking.notes,
        "created_at": tracking.created_at.isoformat() if tracking.created_at else None,
    }


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------

async def _get_prescription(db: AsyncSession, prescription_id: UUID) -> Prescription:
    prescription = await db.get(Prescription, prescription_id)
    if prescription is None:
        raise NotFoundError(f"Prescription not found with ID: {prescription_id}")
    return prescription


def parse_status(value: str) -> TrackingStatus:
    try:
        return TrackingStatus(value.strip().upper())
    except (AttributeError, ValueError):
        raise ValidationError(f"Invalid tracking status: {value}")


async def record(
    db: AsyncSession,
    prescription_id: UUID,
    status: TrackingStatus,
    notes: str | None = None,
) -> PrescriptionTracking:
    """Append an event to the current transaction.  Does not commit."""
    await _get_prescription(db, prescription_id)

    tracking = PrescriptionTracking(prescription_id=prescription_id, status=status, notes=notes)
    db.add(tracking)
    await db.flush()

    db.info.setdefault(OUTBOX_KEY, []).append(serialize(tracking))
    logger.info("tracking: prescription=%s status=%s", prescription_id, status.value)
    return tracking


def _backfill_events(prescription: Prescription) -> list[PrescriptionTracking]:
    events = [
        PrescriptionTracking(
            prescription_id=prescription.id,
            status=TrackingStatus.UPLOADED,
            notes="Prescription uploaded",
            created_at=prescription.created_at,
        )
    ]
    if prescription.status == PrescriptionStatus.APPROVED:
        events.append(
            PrescriptionTracking(
                prescription_id=prescription.id,
                status=TrackingStatus.APPROVED,
                notes="Prescription approved",
                created_at=prescription.updated_at or prescription.created_at,
            )
        )
    return events


async def _ledger(db: AsyncSession, prescription_id: UUID) -> list[PrescriptionTracking]:
    result = await db.execute(
        select(PrescriptionTracking)
        .where(PrescriptionTracking.prescription_id == prescription_id)
        .order_by(PrescriptionTracking.created_at, PrescriptionTracking.id)
    )
    return list(result.scalars().all())


async def history(db: AsyncSession, prescription_id: UUID) -> list[PrescriptionTracking]:
    """Timeline oldest-first.

    Prescriptions created before the ledger existed have no events; for those
    a synthesized UPLOADED (and APPROVED) view is returned without writing.
    """
    prescription = await _get_prescription(db, prescription_id)
    events = await _ledger(db, prescription_id)
    if events:
        return events
    return _backfill_events(prescription)


async def backfill(db: AsyncSession, prescription_id: UUID) -> list[PrescriptionTracking]:
    """Persist the synthesized timeline if, and only if, the ledger is empty."""
    prescription = await _get_prescription(db, prescription_id)
    events = await _ledger(db, prescription_id)
    if events:
        return events

    for tracking in _backfill_events(prescription):
        await record(db, prescription_id, TrackingStatus(tracking.status), tracking.notes)
    await db.commit()
    logger.info("tracking: backfilled timeline for prescription %s", prescription_id)
    return await _ledger(db, prescription_id)


async def add_event(
    db: AsyncSession,
    prescription_id: UUID,
    status: str,
    notes: str | None = None,
) -> PrescriptionTracking:
    tracking = await record(db, prescription_id, parse_status(status), notes)
    await db.commit()
    return tracking


async def mark_delivered(db: AsyncSession, prescription_id: UUID, user: User) -> PrescriptionTracking:
    prescription = await _get_prescription(db, prescription_id)
    if UserRole(user.role) == UserRole.PATIENT and prescription.patient_id != user.id:
        raise PermissionDeniedError("Prescription does not belong to this patient")
    tracking = await record(db, prescription_id, TrackingStatus.DELIVERED, "Delivery confirmed")
    await db.commit()
    return tracking


# ---------------------------------------------------------------------------
# SSE
# ---------------------------------------------------------------------------

def sse_frame(payload: dict) -> str:
    return f"event: tracking\ndata: {json.dumps(payload)}\n\n"


async def event_stream(
    prescription_id: UUID,
    keepalive_seconds: float,
) -> AsyncIterator[str]:
    """Yield SSE frames until the client goes away.  No server-side timeout.

    The subscription is registered on the first step and removed in ``finally``,
    so a stream closed before it starts never reaches the registry.
    """
    feed = LiveFeed.get_instance()
    subscription = None
    try:
        subscription = feed.subscribe(prescription_id)
        yield ": connected\n\n"
        while True:
            try:
                payload = await asyncio.wait_for(subscription.queue.get(), timeout=keepalive_seconds)
            except asyncio.TimeoutError:
                yield ": keep-alive\n\n"
                continue
            yield sse_frame(payload)
    finally:
        if subscription is not None:
            feed.unsubscribe(subscription)
