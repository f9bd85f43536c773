"""
Tests for medrefill.services.fill_recorder.

Covers line-item planning (dose counting, skipped items), the persisted fill
snapshot, the FILLED -> DISPATCHED flip and the notification medicine list.
"""

from uuid import uuid4

from medrefill.models import FillStatus
from medrefill.services import fill_recorder
from medrefill.services.fill_recorder import FillItem, FilledLine, plan_line_items


class TestPlanLineItems:

    def test_counts_doses_per_day(self):
        med = uuid4()
        [line] = plan_line_items([FillItem(medicine_id=med, morning=True, night=True, days=10)])
        assert line.times_per_day == 2
        assert line.total_needed == 20
        assert line.medicine_id == med

    def test_all_three_slots(self):
        [line] = plan_line_items([FillItem(medicine_id=uuid4(), morning=True, afternoon=True, night=True, days=5)])
        assert line.times_per_day == 3
        assert line.total_needed == 15

    def test_items_without_doses_or_days_are_skipped(self):
        keep = uuid4()
        planned = plan_line_items([
            FillItem(medicine_id=uuid4(), days=10),
            FillItem(medicine_id=uuid4(), morning=True, days=0),
            FillItem(medicine_id=uuid4(), morning=True, days=-2),
            FillItem(medicine_id=keep, afternoon=True, days=7),
        ])
        assert [p.medicine_id for p in planned] == [keep]

    def test_empty_input(self):
        assert plan_line_items([]) == []


class TestFormatMedicineList:

    def test_one_line_per_medicine(self):
        lines = [
            FilledLine(uuid4(), "Paracetamol 500mg", 1, 10, 10, 50, 40),
            FilledLine(uuid4(), "Cetirizine 10mg", 2, 5, 10, 30, 20),
        ]
        assert fill_recorder.format_medicine_list(lines) == (
            "- Paracetamol 500mg (x10)\n- Cetirizine 10mg (x10)"
        )


class TestRecordFill:

    async def test_persists_snapshot_in_order(self, db, prescription, patient, pharmacist, medicine):
        lines = [
            FilledLine(medicine.id, medicine.name, 1, 10, 10, 50, 40),
            FilledLine(None, "Discontinued syrup", 2, 3, 6, 6, 0),
        ]
        history = await fill_recorder.record_fill(
            db,
            prescription_id=prescription.id,
            patient_id=patient.id,
            pharmacist_id=pharmacist.id,
            refill_request_id=None,
            lines=lines,
        )
        await db.commit()

        latest = await fill_recorder.latest_for_prescription(db, prescription.id)
        assert latest.id == history.id
        assert latest.status == FillStatus.FILLED
        assert [m.medicine_name for m in latest.filled_medicines] == ["Paracetamol 500mg", "Discontinued syrup"]
        assert latest.filled_medicines[0].stock_before == 50
        assert latest.filled_medicines[0].stock_after == 40

    async def test_mark_dispatched_flips_only_filled(self, db, prescription, patient, pharmacist, medicine):
        line = FilledLine(medicine.id, medicine.name, 1, 10, 10, 50, 40)
        for _ in range(2):
            await fill_recorder.record_fill(
                db,
                prescription_id=prescription.id,
                patient_id=patient.id,
                pharmacist_id=pharmacist.id,
                refill_request_id=None,
                lines=[line],
            )
        await db.commit()

        assert await fill_recorder.mark_dispatched(db, prescription.id) == 2
        await db.commit()
        assert await fill_recorder.mark_dispatched(db, prescription.id) == 0

        rows = await fill_recorder.history_for_patient(db, patient.id)
        assert {r.status for r in rows} == {FillStatus.DISPATCHED}

    async def test_history_queries_scoped(self, db, prescription, patient, other_patient, pharmacist, medicine):
        await fill_recorder.record_fill(
            db,
            prescription_id=prescription.id,
            patient_id=patient.id,
            pharmacist_id=pharmacist.id,
            refill_request_id=None,
            lines=[FilledLine(medicine.id, medicine.name, 1, 1, 1, 2, 1)],
        )
        await db.commit()

        assert len(await fill_recorder.history_for_patient(db, patient.id)) == 1
        assert await fill_recorder.history_for_patient(db, other_patient.id) == []
        assert len(await fill_recorder.history_for_pharmacist(db, pharmacist.id)) == 1

    async def test_latest_for_unknown_prescription_is_none(self, db):
        assert await fill_recorder.latest_for_prescription(db, uuid4()) is None
