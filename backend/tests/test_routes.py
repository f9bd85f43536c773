"""
HTTP-level tests for the FastAPI app.

Covers:
  - authentication (401) and role checks (403)
  - domain error mapping to 400 / 403 / 404 / 409 with a {"detail": ...} body
  - the full refill flow over HTTP: request, approve, fill, dispatch, track
  - inventory, reminders, history and health endpoints
"""

from uuid import uuid4

import pytest
from httpx import ASGITransport, AsyncClient

from conftest import auth_header
from medrefill.main import app
from medrefill.middleware import security


ADDRESS = {
    "line1": "12 Oak St",
    "city": "Pune",
    "state": "MH",
    "pincode": "411001",
    "phone": "9876543210",
}


@pytest.fixture()
async def client():
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c


class TestAuth:

    async def test_missing_token(self, client, prescription):
        resp = await client.get(f"/api/tracking/{prescription.id}")
        assert resp.status_code == 401

    async def test_garbage_token(self, client, prescription):
        resp = await client.get(
            f"/api/tracking/{prescription.id}", headers={"Authorization": "Bearer not-a-jwt"}
        )
        assert resp.status_code == 401

    async def test_wrong_role(self, client, patient):
        resp = await client.get("/api/inventory", headers=auth_header(patient))
        assert resp.status_code == 403

    async def test_patient_cannot_approve(self, client, patient):
        resp = await client.put(f"/api/pharmacist/refill-requests/{uuid4()}/approve", headers=auth_header(patient))
        assert resp.status_code == 403


class TestErrorMapping:

    async def test_validation_error_is_400(self, client, patient, prescription):
        resp = await client.post(
            "/api/patient/refill-requests",
            json={"prescription_id": str(prescription.id), "delivery_address": {**ADDRESS, "pincode": "4110"}},
            headers=auth_header(patient),
        )
        assert resp.status_code == 400
        assert "Pincode" in resp.json()["detail"]

    async def test_not_found_is_404(self, client, pharmacist):
        resp = await client.put(f"/api/pharmacist/refill-requests/{uuid4()}/approve", headers=auth_header(pharmacist))
        assert resp.status_code == 404

    async def test_ownership_is_403(self, client, other_patient, prescription):
        resp = await client.post(
            "/api/patient/refill-requests",
            json={"prescription_id": str(prescription.id), "delivery_address": ADDRESS},
            headers=auth_header(other_patient),
        )
        assert resp.status_code == 403

    async def test_duplicate_request_is_409(self, client, patient, prescription):
        body = {"prescription_id": str(prescription.id), "delivery_address": ADDRESS}
        first = await client.post("/api/patient/refill-requests", json=body, headers=auth_header(patient))
        second = await client.post("/api/patient/refill-requests", json=body, headers=auth_header(patient))
        assert first.status_code == 201
        assert second.status_code == 409

    async def test_wrong_content_type_is_415(self, client, patient):
        resp = await client.post(
            "/api/prescriptions",
            content="image_ref=x",
            headers={**auth_header(patient), "Content-Type": "application/x-www-form-urlencoded"},
        )
        assert resp.status_code == 415


class TestRequestGuard:

    async def test_action_route_ignores_content_type(self, client, patient, prescription):
        resp = await client.post(
            f"/api/tracking/{prescription.id}/delivered",
            content="confirm",
            headers={**auth_header(patient), "Content-Type": "text/plain"},
        )
        assert resp.status_code == 201

    async def test_json_route_rejects_form_body(self, client, pharmacist, prescription):
        resp = await client.post(
            f"/api/tracking/{prescription.id}",
            content="status=FILLED",
            headers={**auth_header(pharmacist), "Content-Type": "application/x-www-form-urlencoded"},
        )
        assert resp.status_code == 415

    async def test_oversized_body_is_413(self, client, patient):
        resp = await client.post(
            "/api/prescriptions",
            content=b"x" * (security.MAX_BODY_SIZE + 1),
            headers={**auth_header(patient), "Content-Type": "application/json"},
        )
        assert resp.status_code == 413

    def test_action_routes_matched_by_method_and_name(self):
        rid = str(uuid4())
        assert security.is_action_route("POST", f"/api/refills/{rid}/dispatch")
        assert security.is_action_route("PUT", f"/api/pharmacist/refill-requests/{rid}/approve")
        assert not security.is_action_route("PUT", f"/api/pharmacist/refill-requests/{rid}/reject")
        assert not security.is_action_route("POST", f"/api/refills/{rid}/fill")
        assert not security.requires_json("GET", "/api/inventory")
        assert security.requires_json("POST", "/api/inventory")

    def test_stream_headers(self):
        stream = security.response_headers_for(f"/api/tracking/subscribe/{uuid4()}")
        history = security.response_headers_for(f"/api/tracking/{uuid4()}")
        assert stream["X-Accel-Buffering"] == "no"
        assert stream["Cache-Control"] == "no-cache"
        assert "X-Accel-Buffering" not in history
        assert history["Cache-Control"] == "no-store"


class TestRefillFlow:

    async def test_request_to_dispatch(self, client, patient, pharmacist, prescription, medicine, inventory):
        resp = await client.post(
            "/api/patient/refill-requests",
            json={"prescription_id": str(prescription.id), "delivery_address": ADDRESS},
            headers=auth_header(patient),
        )
        assert resp.status_code == 201
        request_id = resp.json()["id"]
        assert resp.json()["status"] == "PENDING"

        pending = await client.get("/api/pharmacist/refill-requests?status=PENDING", headers=auth_header(pharmacist))
        assert pending.json()["total"] == 1

        detail = await client.get(f"/api/pharmacist/refill-requests/{request_id}", headers=auth_header(pharmacist))
        assert detail.status_code == 200
        assert detail.json()["stock"][0]["stock_quantity"] == 50

        resp = await client.put(f"/api/pharmacist/refill-requests/{request_id}/approve", headers=auth_header(pharmacist))
        assert resp.json()["status"] == "APPROVED"

        resp = await client.post(
            f"/api/refills/{request_id}/fill",
            json={"items": [{"medicine_id": str(medicine.id), "morning": True, "days": 10}]},
            headers=auth_header(pharmacist),
        )
        assert resp.status_code == 200
        body = resp.json()
        assert body["request"]["status"] == "FILLED"
        assert body["history"]["filled_medicines"][0]["stock_after"] == 40
        assert body["reminder_date"] is not None

        resp = await client.post(f"/api/refills/{prescription.id}/dispatch", headers=auth_header(pharmacist))
        assert resp.status_code == 200
        assert resp.json()["request"]["status"] == "DISPATCHED"
        assert resp.json()["already_dispatched"] is False

        again = await client.post(f"/api/refills/{request_id}/dispatch", headers=auth_header(pharmacist))
        assert again.json()["already_dispatched"] is True

        tracking = await client.get(f"/api/tracking/{prescription.id}", headers=auth_header(patient))
        assert [e["status"] for e in tracking.json()["events"]] == [
            "UPLOADED", "APPROVED", "REFILL_REQUESTED", "REFILL_APPROVED", "FILLING", "FILLED", "DISPATCHED",
        ]

        delivered = await client.post(f"/api/tracking/{prescription.id}/delivered", headers=auth_header(patient))
        assert delivered.status_code == 201

        history = await client.get(f"/api/history/patient/{patient.id}", headers=auth_header(patient))
        assert history.json()[0]["status"] == "DISPATCHED"

    async def test_insufficient_stock_is_409(self, client, patient, pharmacist, prescription, medicine, inventory):
        resp = await client.post(
            "/api/patient/refill-requests",
            json={"prescription_id": str(prescription.id), "delivery_address": ADDRESS},
            headers=auth_header(patient),
        )
        request_id = resp.json()["id"]
        await client.put(f"/api/pharmacist/refill-requests/{request_id}/approve", headers=auth_header(pharmacist))

        resp = await client.post(
            f"/api/refills/{request_id}/fill",
            json={"items": [{"medicine_id": str(medicine.id), "morning": True, "night": True, "days": 30}]},
            headers=auth_header(pharmacist),
        )
        assert resp.status_code == 409
        assert "Paracetamol 500mg" in resp.json()["detail"]

    async def test_reject(self, client, patient, pharmacist, prescription):
        resp = await client.post(
            "/api/patient/refill-requests",
            json={"prescription_id": str(prescription.id), "delivery_address": ADDRESS},
            headers=auth_header(patient),
        )
        request_id = resp.json()["id"]

        resp = await client.put(
            f"/api/pharmacist/refill-requests/{request_id}/reject",
            json={"reason": "Prescription expired"},
            headers=auth_header(pharmacist),
        )
        assert resp.json()["status"] == "REJECTED"
        assert resp.json()["reason_for_rejection"] == "Prescription expired"

        mine = await client.get("/api/patient/refill-requests", headers=auth_header(patient))
        assert mine.json()["refills"][0]["status"] == "REJECTED"


class TestPrescriptions:

    async def test_upload_and_review(self, client, patient, pharmacist):
        resp = await client.post(
            "/api/prescriptions", json={"image_ref": "uploads/new.jpg"}, headers=auth_header(patient)
        )
        assert resp.status_code == 201
        rx_id = resp.json()["id"]

        pending = await client.get("/api/prescriptions/pending", headers=auth_header(pharmacist))
        assert [p["id"] for p in pending.json()["prescriptions"]] == [rx_id]
        everything = await client.get("/api/prescriptions", headers=auth_header(pharmacist))
        assert everything.json()["total"] == 1
        mine = await client.get("/api/prescriptions/mine", headers=auth_header(patient))
        assert [p["id"] for p in mine.json()["prescriptions"]] == [rx_id]

        resp = await client.put(
            f"/api/prescriptions/{rx_id}/status", json={"status": "approved"}, headers=auth_header(pharmacist)
        )
        assert resp.json()["status"] == "APPROVED"

        tracking = await client.get(f"/api/tracking/{rx_id}", headers=auth_header(patient))
        assert [e["status"] for e in tracking.json()["events"]] == ["UPLOADED", "APPROVED"]

    async def test_unknown_status_is_400(self, client, pharmacist, prescription):
        resp = await client.put(
            f"/api/prescriptions/{prescription.id}/status", json={"status": "MAYBE"}, headers=auth_header(pharmacist)
        )
        assert resp.status_code == 400

    async def test_other_patient_cannot_view(self, client, other_patient, prescription):
        resp = await client.get(f"/api/prescriptions/{prescription.id}", headers=auth_header(other_patient))
        assert resp.status_code == 403


class TestInventoryRoutes:

    async def test_crud(self, client, pharmacist, medicine):
        resp = await client.post(
            "/api/inventory",
            json={"medicine_id": str(medicine.id), "stock_quantity": 8, "low_stock_threshold": 10},
            headers=auth_header(pharmacist),
        )
        assert resp.status_code == 201
        row_id = resp.json()["id"]
        assert resp.json()["is_low_stock"] is True

        low = await client.get("/api/inventory/low-stock", headers=auth_header(pharmacist))
        assert low.json()["total"] == 1

        resp = await client.put(
            f"/api/inventory/{row_id}",
            json={"stock_quantity": 100, "low_stock_threshold": 10},
            headers=auth_header(pharmacist),
        )
        assert resp.json()["stock_quantity"] == 100

        resp = await client.delete(f"/api/inventory/{row_id}", headers=auth_header(pharmacist))
        assert resp.status_code == 204
        listing = await client.get("/api/inventory", headers=auth_header(pharmacist))
        assert listing.json()["total"] == 0

    async def test_only_admin_adds_medicines(self, client, admin, pharmacist):
        denied = await client.post("/api/medicines", json={"name": "Ibuprofen 400mg"}, headers=auth_header(pharmacist))
        assert denied.status_code == 403

        created = await client.post("/api/medicines", json={"name": "Ibuprofen 400mg"}, headers=auth_header(admin))
        assert created.status_code == 201

        listing = await client.get("/api/medicines", headers=auth_header(pharmacist))
        assert [m["name"] for m in listing.json()] == ["Ibuprofen 400mg"]


class TestReminderRoutes:

    async def test_trigger_and_stats(self, client, admin):
        resp = await client.post("/api/admin/refill-reminders/trigger", headers=auth_header(admin))
        assert resp.status_code == 200
        assert resp.json()["started"] is True
        assert resp.json()["checked"] == 0

        stats = await client.get("/api/admin/refill-reminders/stats", headers=auth_header(admin))
        assert stats.json()["total_reminders"] == 0

    async def test_patient_settings(self, client, patient):
        resp = await client.put(
            "/api/patient/refill-reminders/settings", json={"enabled": False}, headers=auth_header(patient)
        )
        assert resp.json() == {"enabled": False, "updated": 0}

        mine = await client.get("/api/patient/refill-reminders", headers=auth_header(patient))
        assert mine.json() == []

    async def test_pharmacist_cannot_trigger(self, client, pharmacist):
        resp = await client.post("/api/admin/refill-reminders/trigger", headers=auth_header(pharmacist))
        assert resp.status_code == 403


class TestHistoryRoutes:

    async def test_patient_sees_only_own_history(self, client, patient, other_patient):
        resp = await client.get(f"/api/history/patient/{other_patient.id}", headers=auth_header(patient))
        assert resp.status_code == 403

    async def test_pharmacist_sees_only_own_history(self, client, pharmacist, admin):
        resp = await client.get(f"/api/history/pharmacist/{admin.id}", headers=auth_header(pharmacist))
        assert resp.status_code == 403
        own = await client.get(f"/api/history/pharmacist/{pharmacist.id}", headers=auth_header(pharmacist))
        assert own.json() == []


class TestHealth:

    async def test_health(self, client):
        resp = await client.get("/api/health")
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "healthy"
        assert body["database"] == "connected"
        assert body["background_tasks"]["reminder_loop"] == "disabled"
        assert "subscribers" in body["live_feed"]
        assert resp.headers["X-Content-Type-Options"] == "nosniff"
        assert "X-Request-ID" in resp.headers
