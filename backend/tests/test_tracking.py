"""
Tests for the tracking ledger and the live feed (medrefill.services.tracking_service).

Covers:
  - events reach subscribers only after the transaction commits
  - rolled-back events are never published
  - several subscribers per prescription, bounded queues
  - synthesized history for prescriptions with an empty ledger, explicit backfill
  - SSE framing and unsubscribe on disconnect
  - delivery confirmation ownership
"""

import asyncio
import json
from uuid import uuid4

import pytest
from sqlalchemy import func, select

from medrefill.models import Prescription, PrescriptionStatus, PrescriptionTracking, TrackingStatus
from medrefill.routes import tracking as tracking_routes
from medrefill.services import tracking_service
from medrefill.services.errors import NotFoundError, PermissionDeniedError, ValidationError
from medrefill.services.tracking_service import LiveFeed


async def _ledger_size(db, prescription_id) -> int:
    return await db.scalar(
        select(func.count()).select_from(PrescriptionTracking)
        .where(PrescriptionTracking.prescription_id == prescription_id)
    )


# ===================================================================
# Publish on commit
# ===================================================================


class TestOutbox:

    async def test_published_only_after_commit(self, db, prescription):
        subscription = LiveFeed.get_instance().subscribe(prescription.id)

        await tracking_service.record(db, prescription.id, TrackingStatus.FILLING, "in progress")
        assert subscription.queue.empty()

        await db.commit()
        payload = subscription.queue.get_nowait()
        assert payload["status"] == "FILLING"
        assert payload["prescription_id"] == str(prescription.id)
        assert payload["notes"] == "in progress"

    async def test_rollback_discards_events(self, db, prescription):
        pid = prescription.id
        subscription = LiveFeed.get_instance().subscribe(pid)

        await tracking_service.record(db, pid, TrackingStatus.FILLING)
        await db.rollback()
        await db.commit()

        assert subscription.queue.empty()
        assert await _ledger_size(db, pid) == 2

    async def test_events_published_in_append_order(self, db, prescription):
        subscription = LiveFeed.get_instance().subscribe(prescription.id)

        await tracking_service.record(db, prescription.id, TrackingStatus.FILLING)
        await tracking_service.record(db, prescription.id, TrackingStatus.FILLED)
        await db.commit()

        statuses = [subscription.queue.get_nowait()["status"] for _ in range(2)]
        assert statuses == ["FILLING", "FILLED"]

    async def test_other_prescriptions_not_notified(self, db, prescription):
        subscription = LiveFeed.get_instance().subscribe(uuid4())
        await tracking_service.add_event(db, prescription.id, "dispatched")
        assert subscription.queue.empty()

    async def test_unknown_prescription(self, db):
        with pytest.raises(NotFoundError):
            await tracking_service.record(db, uuid4(), TrackingStatus.FILLED)

    async def test_unknown_status_string(self, db, prescription):
        with pytest.raises(ValidationError):
            await tracking_service.add_event(db, prescription.id, "LOST_IN_TRANSIT")


# ===================================================================
# LiveFeed
# ===================================================================


class TestLiveFeed:

    def test_singleton(self):
        assert LiveFeed.get_instance() is LiveFeed.get_instance()

    async def test_multiple_subscribers_each_receive(self):
        feed = LiveFeed()
        pid = uuid4()
        first, second = feed.subscribe(pid), feed.subscribe(pid)

        assert feed.publish(pid, {"status": "FILLED"}) == 2
        assert first.queue.get_nowait() == {"status": "FILLED"}
        assert second.queue.get_nowait() == {"status": "FILLED"}

    async def test_full_queue_drops_without_blocking(self):
        feed = LiveFeed(queue_size=1)
        pid = uuid4()
        subscription = feed.subscribe(pid)

        assert feed.publish(pid, {"n": 1}) == 1
        assert feed.publish(pid, {"n": 2}) == 0
        assert subscription.queue.qsize() == 1
        assert feed.get_stats()["dropped_events"] == 1

    async def test_unsubscribe(self):
        feed = LiveFeed()
        pid = uuid4()
        subscription = feed.subscribe(pid)
        assert feed.subscriber_count(pid) == 1

        feed.unsubscribe(subscription)
        feed.unsubscribe(subscription)

        assert feed.subscriber_count(pid) == 0
        assert feed.publish(pid, {"status": "FILLED"}) == 0
        assert feed.get_stats() == {"prescriptions": 0, "subscribers": 0, "dropped_events": 0}


# ===================================================================
# History and backfill
# ===================================================================


class TestHistory:

    async def _legacy_prescription(self, db, patient, status=PrescriptionStatus.APPROVED):
        rx = Prescription(patient_id=patient.id, image_ref="uploads/legacy.jpg", status=status)
        db.add(rx)
        await db.commit()
        return rx

    async def test_ledger_returned_oldest_first(self, db, prescription):
        await tracking_service.add_event(db, prescription.id, "FILLING")
        events = await tracking_service.history(db, prescription.id)
        assert [e.status for e in events] == [
            TrackingStatus.UPLOADED, TrackingStatus.APPROVED, TrackingStatus.FILLING,
        ]

    async def test_empty_ledger_synthesized_without_writing(self, db, patient):
        rx = await self._legacy_prescription(db, patient)

        events = await tracking_service.history(db, rx.id)

        assert [e.status for e in events] == [TrackingStatus.UPLOADED, TrackingStatus.APPROVED]
        assert all(e.id is None for e in events)
        assert await _ledger_size(db, rx.id) == 0

    async def test_pending_prescription_synthesizes_upload_only(self, db, patient):
        rx = await self._legacy_prescription(db, patient, PrescriptionStatus.PENDING)
        events = await tracking_service.history(db, rx.id)
        assert [e.status for e in events] == [TrackingStatus.UPLOADED]

    async def test_backfill_persists_once(self, db, patient):
        rx = await self._legacy_prescription(db, patient)

        first = await tracking_service.backfill(db, rx.id)
        second = await tracking_service.backfill(db, rx.id)

        assert [e.status for e in first] == [TrackingStatus.UPLOADED, TrackingStatus.APPROVED]
        assert [e.id for e in second] == [e.id for e in first]
        assert await _ledger_size(db, rx.id) == 2

    async def test_backfill_leaves_existing_ledger_alone(self, db, prescription):
        events = await tracking_service.backfill(db, prescription.id)
        assert len(events) == 2
        assert await _ledger_size(db, prescription.id) == 2

    async def test_history_of_unknown_prescription(self, db):
        with pytest.raises(NotFoundError):
            await tracking_service.history(db, uuid4())


class TestMarkDelivered:

    async def test_owner_confirms_delivery(self, db, prescription, patient):
        event = await tracking_service.mark_delivered(db, prescription.id, patient)
        assert event.status == TrackingStatus.DELIVERED

    async def test_other_patient_rejected(self, db, prescription, other_patient):
        with pytest.raises(PermissionDeniedError):
            await tracking_service.mark_delivered(db, prescription.id, other_patient)
        assert await _ledger_size(db, prescription.id) == 2

    async def test_admin_may_confirm(self, db, prescription, admin):
        event = await tracking_service.mark_delivered(db, prescription.id, admin)
        assert event.status == TrackingStatus.DELIVERED


# ===================================================================
# SSE stream
# ===================================================================


class TestEventStream:

    async def test_frames_and_unsubscribe(self):
        feed = LiveFeed.get_instance()
        pid = uuid4()
        stream = tracking_service.event_stream(pid, keepalive_seconds=5)

        assert await stream.__anext__() == ": connected\n\n"
        assert feed.subscriber_count(pid) == 1

        feed.publish(pid, {"status": "DISPATCHED", "prescription_id": str(pid)})
        frame = await stream.__anext__()
        assert frame.startswith("event: tracking\ndata: ")
        assert frame.endswith("\n\n")
        data = json.loads(frame.split("data: ", 1)[1])
        assert data["status"] == "DISPATCHED"

        await stream.aclose()
        assert feed.subscriber_count(pid) == 0

    async def test_keepalive_when_idle(self):
        stream = tracking_service.event_stream(uuid4(), keepalive_seconds=0.01)

        await stream.__anext__()
        assert await asyncio.wait_for(stream.__anext__(), timeout=1) == ": keep-alive\n\n"
        await stream.aclose()

    async def test_closed_before_first_frame_leaves_no_subscriber(self):
        pid = uuid4()
        stream = tracking_service.event_stream(pid, keepalive_seconds=5)

        await stream.aclose()

        assert LiveFeed.get_instance().subscriber_count(pid) == 0
        assert LiveFeed.get_instance().get_stats()["subscribers"] == 0

    async def test_route_response_closed_unstarted(self):
        pid = uuid4()
        response = await tracking_routes.subscribe(pid)

        await response.body_iterator.aclose()

        assert LiveFeed.get_instance().subscriber_count(pid) == 0

    def test_sse_frame(self):
        assert tracking_service.sse_frame({"a": 1}) == 'event: tracking\ndata: {"a": 1}\n\n'
