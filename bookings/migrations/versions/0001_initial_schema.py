"""Initial settlement schema

Revision ID: 0001_initial_schema
Revises:
Create Date: 2026-10-18 10:00:00.000000

"""

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "0001_initial_schema"
down_revision = None
branch_labels = None
depends_on = None


_ENUMS: dict[str, tuple[str, ...]] = {
    "user_role": ("customer", "provider", "admin"),
    "availability_rule_type": ("Available", "Blocked"),
    "availability_exception_type": ("Unavailable",),
    "booking_status": ("Pending", "Confirmed", "InProgress", "Completed", "Cancelled", "NoShow"),
    "reserved_slot_status": ("Reserved", "Confirmed", "Released"),
    "recurrence_frequency": ("daily", "weekly", "biweekly", "monthly"),
    "occurrence_status": ("Created", "Conflict"),
    "settlement_state": (
        "Held",
        "ConsultationPending",
        "AwaitingPriceApproval",
        "Released",
        "Refunded",
        "Disputed",
        "Expired",
    ),
    "adjustment_status": ("Pending", "Approved", "Rejected"),
    "dispute_type": ("Quality", "NoShow", "Cancellation", "Payment", "Other"),
    "dispute_status": ("Open", "Resolved"),
    "resolution_type": ("FullRefund", "PartialRefund", "NoRefund", "Cancelled", "ServiceRedo"),
    "refund_status": ("Pending", "Completed", "Failed"),
    "refund_queue_status": ("Pending", "Processing", "Completed", "Failed", "Escalated"),
}

_ACTIVE_SLOT_SQL = "status IN ('Reserved', 'Confirmed')"
_OPEN_REFUND_SQL = "status = 'Pending'"


def _enum(name: str) -> sa.types.TypeEngine:
    # Types are created once up front; columns only reference them.
    return postgresql.ENUM(*_ENUMS[name], name=name, create_type=False).with_variant(
        sa.Enum(*_ENUMS[name], name=name), "sqlite"
    )


def _ts(name: str, nullable: bool = True) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable)


def upgrade() -> None:
    bind = op.get_bind()
    if bind.dialect.name == "postgresql":
        for name, values in _ENUMS.items():
            postgresql.ENUM(*values, name=name).create(bind, checkfirst=True)

    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("role", _enum("user_role"), nullable=False),
        sa.Column("chat_id", sa.BigInteger(), nullable=True),
        _ts("created_at", nullable=False),
    )

    op.create_table(
        "availability_rules",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("provider_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("listing_id", sa.Integer(), nullable=True),
        sa.Column("day_of_week", sa.Integer(), nullable=True),
        sa.Column("start_date", sa.Date(), nullable=True),
        sa.Column("end_date", sa.Date(), nullable=True),
        sa.Column("start_time", sa.Time(), nullable=False),
        sa.Column("end_time", sa.Time(), nullable=False),
        sa.Column("is_recurring", sa.Boolean(), nullable=False),
        sa.Column("rule_type", _enum("availability_rule_type"), nullable=False),
        sa.Column("reason", sa.Text(), nullable=True),
        _ts("updated_at", nullable=False),
        sa.CheckConstraint("start_time < end_time", name="ck_availability_rules_time_order"),
    )
    op.create_index("ix_availability_rules_provider_day", "availability_rules", ["provider_id", "day_of_week"])

    op.create_table(
        "availability_exceptions",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("provider_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("exception_date", sa.Date(), nullable=False),
        sa.Column("exception_type", _enum("availability_exception_type"), nullable=False),
        sa.Column("reason", sa.Text(), nullable=True),
    )
    op.create_index(
        "ix_availability_exceptions_provider_date", "availability_exceptions", ["provider_id", "exception_date"]
    )

    op.create_table(
        "recurring_series",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("provider_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("customer_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("listing_id", sa.Integer(), nullable=True),
        sa.Column("title", sa.String(length=200), nullable=False),
        sa.Column("price_cents", sa.Integer(), nullable=False),
        sa.Column("duration_minutes", sa.Integer(), nullable=False),
        sa.Column("start_time", sa.Time(), nullable=False),
        sa.Column("frequency", _enum("recurrence_frequency"), nullable=False),
        sa.Column("interval", sa.Integer(), nullable=False),
        sa.Column("days_of_week", sa.JSON(), nullable=True),
        sa.Column("day_of_month", sa.Integer(), nullable=True),
        sa.Column("end_date", sa.Date(), nullable=True),
        sa.Column("max_occurrences", sa.Integer(), nullable=True),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("next_occurrence_date", sa.Date(), nullable=True),
        sa.Column("created_bookings", sa.Integer(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        _ts("created_at", nullable=False),
    )

    op.create_table(
        "bookings",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("customer_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("provider_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("listing_id", sa.Integer(), nullable=True),
        sa.Column("title", sa.String(length=200), nullable=False),
        sa.Column("price_cents", sa.Integer(), nullable=False),
        sa.Column("service_date", sa.Date(), nullable=False),
        sa.Column("start_time", sa.Time(), nullable=False),
        sa.Column("end_time", sa.Time(), nullable=False),
        sa.Column("status", _enum("booking_status"), nullable=False),
        sa.Column(
            "recurring_booking_id",
            sa.Integer(),
            sa.ForeignKey("recurring_series.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("no_show_fee_cents", sa.Integer(), nullable=True),
        sa.Column("refund_requested", sa.Boolean(), nullable=False),
        _ts("cancelled_at"),
        sa.Column("cancellation_reason", sa.Text(), nullable=True),
        _ts("completed_at"),
        _ts("created_at", nullable=False),
    )
    op.create_index("ix_bookings_provider_date", "bookings", ["provider_id", "service_date"])

    op.create_table(
        "reserved_slots",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("booking_id", sa.Integer(), sa.ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False),
        sa.Column("provider_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("booking_date", sa.Date(), nullable=False),
        sa.Column("start_time", sa.Time(), nullable=False),
        sa.Column("end_time", sa.Time(), nullable=False),
        sa.Column("status", _enum("reserved_slot_status"), nullable=False),
    )
    op.create_index("ix_reserved_slots_booking", "reserved_slots", ["booking_id"])
    op.create_index(
        "ux_reserved_slots_active",
        "reserved_slots",
        ["provider_id", "booking_date", "start_time"],
        unique=True,
        postgresql_where=sa.text(_ACTIVE_SLOT_SQL),
        sqlite_where=sa.text(_ACTIVE_SLOT_SQL),
    )

    op.create_table(
        "recurring_occurrences",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("series_id", sa.Integer(), sa.ForeignKey("recurring_series.id", ondelete="CASCADE"), nullable=False),
        sa.Column("occurrence_date", sa.Date(), nullable=False),
        sa.Column("booking_id", sa.Integer(), sa.ForeignKey("bookings.id", ondelete="SET NULL"), nullable=True),
        sa.Column("status", _enum("occurrence_status"), nullable=False),
        sa.Column("conflict_reason", sa.String(length=64), nullable=True),
        _ts("created_at", nullable=False),
        sa.UniqueConstraint("series_id", "occurrence_date", name="ux_recurring_occurrences_series_date"),
    )

    op.create_table(
        "escrow_settlements",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("booking_id", sa.Integer(), sa.ForeignKey("bookings.id"), nullable=False, unique=True),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("state", _enum("settlement_state"), nullable=False),
        sa.Column("consultation_required", sa.Boolean(), nullable=False),
        _ts("consultation_completed_at"),
        _ts("received_at"),
        sa.Column("state_before_dispute", _enum("settlement_state"), nullable=True),
        sa.Column("payment_reference", sa.String(length=128), nullable=False),
        sa.Column("resolution_type", _enum("resolution_type"), nullable=True),
        sa.Column("refund_amount_cents", sa.Integer(), nullable=True),
        _ts("expires_at", nullable=False),
        _ts("released_at"),
        _ts("refunded_at"),
        _ts("created_at", nullable=False),
        _ts("updated_at", nullable=False),
    )

    op.create_table(
        "price_adjustments",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("booking_id", sa.Integer(), sa.ForeignKey("bookings.id"), nullable=False, unique=True),
        sa.Column("original_cents", sa.Integer(), nullable=False),
        sa.Column("proposed_cents", sa.Integer(), nullable=False),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("status", _enum("adjustment_status"), nullable=False),
        sa.Column("proposed_by", sa.Integer(), nullable=True),
        sa.Column("responded_by", sa.Integer(), nullable=True),
        _ts("created_at", nullable=False),
        _ts("responded_at"),
    )

    op.create_table(
        "disputes",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("booking_id", sa.Integer(), sa.ForeignKey("bookings.id"), nullable=False),
        sa.Column("filed_by", sa.Integer(), nullable=False),
        sa.Column("dispute_type", _enum("dispute_type"), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("status", _enum("dispute_status"), nullable=False),
        sa.Column("resolution_type", _enum("resolution_type"), nullable=True),
        sa.Column("resolution_notes", sa.Text(), nullable=True),
        sa.Column("resolved_by", sa.Integer(), nullable=True),
        _ts("created_at", nullable=False),
        _ts("resolved_at"),
    )
    op.create_index("ix_disputes_booking_id", "disputes", ["booking_id"])

    op.create_table(
        "timeline_events",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("booking_id", sa.Integer(), sa.ForeignKey("bookings.id"), nullable=False),
        sa.Column("event_type", sa.String(length=64), nullable=False),
        sa.Column("actor_id", sa.Integer(), nullable=True),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("metadata", sa.JSON(), nullable=True),
        _ts("created_at", nullable=False),
    )
    op.create_index("ix_timeline_events_booking_id", "timeline_events", ["booking_id"])

    op.create_table(
        "refund_requests",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("booking_id", sa.Integer(), sa.ForeignKey("bookings.id"), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("reason", sa.String(length=64), nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("status", _enum("refund_status"), nullable=False),
        sa.Column("requested_by", sa.Integer(), nullable=False),
        sa.Column("approved_by", sa.Integer(), nullable=True),
        sa.Column("external_reference", sa.String(length=128), nullable=True),
        _ts("processed_at"),
        _ts("created_at", nullable=False),
    )
    op.create_index(
        "ux_refund_requests_open",
        "refund_requests",
        ["booking_id"],
        unique=True,
        postgresql_where=sa.text(_OPEN_REFUND_SQL),
        sqlite_where=sa.text(_OPEN_REFUND_SQL),
    )

    op.create_table(
        "refund_queue_items",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("refund_id", sa.Integer(), sa.ForeignKey("refund_requests.id"), nullable=True),
        sa.Column("booking_id", sa.Integer(), sa.ForeignKey("bookings.id"), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("payment_reference", sa.String(length=128), nullable=False),
        sa.Column("status", _enum("refund_queue_status"), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False),
        sa.Column("max_attempts", sa.Integer(), nullable=False),
        sa.Column("last_error", sa.Text(), nullable=True),
        _ts("created_at", nullable=False),
        _ts("updated_at", nullable=False),
    )

    op.create_table(
        "trust_profiles",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("role", _enum("user_role"), nullable=False),
        sa.Column("trust_level", sa.Integer(), nullable=False),
        sa.Column("previous_trust_level", sa.Integer(), nullable=False),
        sa.Column("consecutive_completed_jobs", sa.Integer(), nullable=False),
        _ts("trust_improved_at"),
        _ts("updated_at", nullable=False),
        sa.UniqueConstraint("user_id", "role", name="ux_trust_profiles_user_role"),
        sa.CheckConstraint("trust_level BETWEEN 0 AND 3", name="ck_trust_profiles_level"),
    )

    op.create_table(
        "provider_balances",
        sa.Column("provider_id", sa.Integer(), sa.ForeignKey("users.id"), primary_key=True),
        sa.Column("payable_cents", sa.Integer(), nullable=False),
        _ts("updated_at", nullable=False),
    )


def downgrade() -> None:
    op.drop_table("provider_balances")
    op.drop_table("trust_profiles")
    op.drop_table("refund_queue_items")
    op.drop_index("ux_refund_requests_open", table_name="refund_requests")
    op.drop_table("refund_requests")
    op.drop_index("ix_timeline_events_booking_id", table_name="timeline_events")
    op.drop_table("timeline_events")
    op.drop_index("ix_disputes_booking_id", table_name="disputes")
    op.drop_table("disputes")
    op.drop_table("price_adjustments")
    op.drop_table("escrow_settlements")
    op.drop_table("recurring_occurrences")
    op.drop_index("ux_reserved_slots_active", table_name="reserved_slots")
    op.drop_index("ix_reserved_slots_booking", table_name="reserved_slots")
    op.drop_table("reserved_slots")
    op.drop_index("ix_bookings_provider_date", table_name="bookings")
    op.drop_table("bookings")
    op.drop_table("recurring_series")
    op.drop_index("ix_availability_exceptions_provider_date", table_name="availability_exceptions")
    op.drop_table("availability_exceptions")
    op.drop_index("ix_availability_rules_provider_day", table_name="availability_rules")
    op.drop_table("availability_rules")
    op.drop_table("users")
    bind = op.get_bind()
    if bind.dialect.name == "postgresql":
        for name in reversed(list(_ENUMS)):
            op.execute(f"DROP TYPE IF EXISTS {name}")
