"""Initial schema: prescriptions, refill workflow, inventory, tracking, reminders.

Revision ID: 0001_initial_schema
Revises:
Create Date: 2026-10-17 09:00:00.000000
"""
from alembic import op
import sqlalchemy as sa


revision = "0001_initial_schema"
down_revision = None
branch_labels = None
depends_on = None


def _status(*values: str, length: int) -> sa.Enum:
    return sa.Enum(*values, native_enum=False, length=length)


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("email", sa.String(255), nullable=False, unique=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("phone", sa.String(20), nullable=True),
        sa.Column("role", sa.String(20), nullable=False),
        sa.Column("profile", sa.JSON(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )

    op.create_table(
        "prescriptions",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("patient_id", sa.Uuid(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("image_ref", sa.String(500), nullable=False),
        sa.Column(
            "status",
            _status("PENDING", "APPROVED", "REJECTED", "REQUIRES_CLARIFICATION", length=30),
            nullable=False,
        ),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_prescriptions_patient_id", "prescriptions", ["patient_id"])

    op.create_table(
        "refill_requests",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("prescription_id", sa.Uuid(), sa.ForeignKey("prescriptions.id", ondelete="CASCADE"), nullable=False),
        sa.Column("patient_id", sa.Uuid(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("pharmacist_id", sa.Uuid(), sa.ForeignKey("users.id"), nullable=True),
        sa.Column(
            "status",
            _status("PENDING", "APPROVED", "REJECTED", "FILLED", "DISPATCHED", length=20),
            nullable=False,
        ),
        sa.Column("requested_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("actioned_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("reason_for_rejection", sa.Text(), nullable=True),
        sa.Column("delivery_line1", sa.String(255), nullable=False),
        sa.Column("delivery_line2", sa.String(255), nullable=True),
        sa.Column("delivery_city", sa.String(100), nullable=False),
        sa.Column("delivery_state", sa.String(100), nullable=False),
        sa.Column("delivery_pincode", sa.String(6), nullable=False),
        sa.Column("delivery_phone", sa.String(10), nullable=False),
        sa.UniqueConstraint("prescription_id", name="uq_refill_requests_prescription"),
    )
    op.create_index("ix_refill_requests_patient_id", "refill_requests", ["patient_id"])
    op.create_index("ix_refill_requests_status_requested", "refill_requests", ["status", "requested_at"])

    op.create_table(
        "medicines",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False, unique=True),
        sa.Column("manufacturer", sa.String(255), nullable=True),
        sa.Column("dosage_form", sa.String(100), nullable=True),
        sa.Column("strength", sa.String(100), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )

    op.create_table(
        "inventory",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("medicine_id", sa.Uuid(), sa.ForeignKey("medicines.id", ondelete="CASCADE"), nullable=False),
        sa.Column("pharmacist_id", sa.Uuid(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("stock_quantity", sa.Integer(), nullable=False),
        sa.Column("low_stock_threshold", sa.Integer(), nullable=False),
        sa.Column("expiry_date", sa.Date(), nullable=True),
        sa.Column("last_updated", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("medicine_id", "pharmacist_id", name="uq_inventory_medicine_pharmacist"),
        sa.CheckConstraint("stock_quantity >= 0", name="ck_inventory_stock_non_negative"),
        sa.CheckConstraint("low_stock_threshold >= 0", name="ck_inventory_threshold_non_negative"),
    )
    op.create_index("ix_inventory_pharmacist_id", "inventory", ["pharmacist_id"])

    op.create_table(
        "medicine_fill_history",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("prescription_id", sa.Uuid(), sa.ForeignKey("prescriptions.id", ondelete="CASCADE"), nullable=False),
        sa.Column("patient_id", sa.Uuid(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("pharmacist_id", sa.Uuid(), sa.ForeignKey("users.id"), nullable=True),
        sa.Column("refill_request_id", sa.Uuid(), sa.ForeignKey("refill_requests.id", ondelete="SET NULL"), nullable=True),
        sa.Column("status", _status("FILLED", "DISPATCHED", length=20), nullable=False),
        sa.Column("fill_date", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_medicine_fill_history_patient_id", "medicine_fill_history", ["patient_id"])
    op.create_index("ix_medicine_fill_history_pharmacist_id", "medicine_fill_history", ["pharmacist_id"])
    op.create_index("ix_fill_history_prescription_date", "medicine_fill_history", ["prescription_id", "fill_date"])

    op.create_table(
        "filled_medicines",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("history_id", sa.Uuid(), sa.ForeignKey("medicine_fill_history.id", ondelete="CASCADE"), nullable=False),
        sa.Column("medicine_id", sa.Uuid(), sa.ForeignKey("medicines.id", ondelete="SET NULL"), nullable=True),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("medicine_name", sa.String(255), nullable=False),
        sa.Column("times_per_day", sa.Integer(), nullable=False),
        sa.Column("days", sa.Integer(), nullable=False),
        sa.Column("total_needed", sa.Integer(), nullable=False),
        sa.Column("stock_before", sa.Integer(), nullable=False),
        sa.Column("stock_after", sa.Integer(), nullable=False),
    )
    op.create_index("ix_filled_medicines_history_id", "filled_medicines", ["history_id"])

    op.create_table(
        "prescription_tracking",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("prescription_id", sa.Uuid(), sa.ForeignKey("prescriptions.id", ondelete="CASCADE"), nullable=False),
        sa.Column(
            "status",
            _status(
                "UPLOADED", "APPROVED", "REFILL_REQUESTED", "REFILL_APPROVED",
                "FILLING", "FILLED", "DISPATCHED", "DELIVERED",
                length=30,
            ),
            nullable=False,
        ),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "ix_prescription_tracking_prescription_created",
        "prescription_tracking",
        ["prescription_id", "created_at"],
    )

    op.create_table(
        "refill_reminders",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("prescription_id", sa.Uuid(), sa.ForeignKey("prescriptions.id", ondelete="CASCADE"), nullable=False),
        sa.Column("patient_id", sa.Uuid(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("days_until_refill", sa.Integer(), nullable=False),
        sa.Column("reminder_date", sa.Date(), nullable=False),
        sa.Column("is_enabled", sa.Boolean(), nullable=False),
        sa.Column("sent", sa.Boolean(), nullable=False),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("patient_phone", sa.String(20), nullable=True),
        sa.Column("message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_refill_reminders_patient_id", "refill_reminders", ["patient_id"])
    op.create_index("ix_refill_reminders_due", "refill_reminders", ["reminder_date", "is_enabled", "sent"])

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("user_id", sa.Uuid(), nullable=True),
        sa.Column("action", sa.String(50), nullable=False),
        sa.Column("entity_type", sa.String(50), nullable=True),
        sa.Column("entity_id", sa.Uuid(), nullable=True),
        sa.Column("old_value", sa.JSON(), nullable=True),
        sa.Column("new_value", sa.JSON(), nullable=True),
        sa.Column("ip_address", sa.String(45), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )


def downgrade() -> None:
    op.drop_table("audit_logs")
    op.drop_table("refill_reminders")
    op.drop_table("prescription_tracking")
    op.drop_table("filled_medicines")
    op.drop_table("medicine_fill_history")
    op.drop_table("inventory")
    op.drop_table("medicines")
    op.drop_table("refill_requests")
    op.drop_table("prescriptions")
    op.drop_table("users")
