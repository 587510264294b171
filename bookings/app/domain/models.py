from datetime import UTC, date as _date, datetime, time as _time
from enum import Enum as _Enum
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Time,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """SQLAlchemy declarative base class (explicit for mypy)."""

    pass


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _enum(enum_cls: type[_Enum], name: str) -> Enum:
    # Persist values ("Held", "Reserved") rather than member names.
    return Enum(
        enum_cls,
        name=name,
        values_callable=lambda e: [m.value for m in e],
        native_enum=True,
        validate_strings=True,
    )


class UserRole(str, _Enum):
    CUSTOMER = "customer"
    PROVIDER = "provider"
    ADMIN = "admin"


class RuleType(str, _Enum):
    AVAILABLE = "Available"
    BLOCKED = "Blocked"


class ExceptionType(str, _Enum):
    UNAVAILABLE = "Unavailable"


class BookingStatus(str, _Enum):
    PENDING = "Pending"
    CONFIRMED = "Confirmed"
    IN_PROGRESS = "InProgress"
    COMPLETED = "Completed"
    CANCELLED = "Cancelled"
    NO_SHOW = "NoShow"


class SlotStatus(str, _Enum):
    RESERVED = "Reserved"
    CONFIRMED = "Confirmed"
    RELEASED = "Released"


class Frequency(str, _Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    BIWEEKLY = "biweekly"
    MONTHLY = "monthly"


class OccurrenceStatus(str, _Enum):
    CREATED = "Created"
    CONFLICT = "Conflict"


class SettlementState(str, _Enum):
    HELD = "Held"
    CONSULTATION_PENDING = "ConsultationPending"
    AWAITING_PRICE_APPROVAL = "AwaitingPriceApproval"
    RELEASED = "Released"
    REFUNDED = "Refunded"
    DISPUTED = "Disputed"
    EXPIRED = "Expired"


class AdjustmentStatus(str, _Enum):
    PENDING = "Pending"
    APPROVED = "Approved"
    REJECTED = "Rejected"


class DisputeType(str, _Enum):
    QUALITY = "Quality"
    NO_SHOW = "NoShow"
    CANCELLATION = "Cancellation"
    PAYMENT = "Payment"
    OTHER = "Other"


class DisputeStatus(str, _Enum):
    OPEN = "Open"
    RESOLVED = "Resolved"


class ResolutionType(str, _Enum):
    FULL_REFUND = "FullRefund"
    PARTIAL_REFUND = "PartialRefund"
    NO_REFUND = "NoRefund"
    CANCELLED = "Cancelled"
    SERVICE_REDO = "ServiceRedo"


class RefundStatus(str, _Enum):
    PENDING = "Pending"
    COMPLETED = "Completed"
    FAILED = "Failed"


class QueueStatus(str, _Enum):
    PENDING = "Pending"
    PROCESSING = "Processing"
    COMPLETED = "Completed"
    FAILED = "Failed"
    ESCALATED = "Escalated"


# Reserved slots in these states take part in conflict checks.
BLOCKING_SLOT_STATUSES = frozenset({SlotStatus.RESERVED, SlotStatus.CONFIRMED})

TERMINAL_BOOKING_STATUSES = frozenset(
    {
        BookingStatus.COMPLETED,
        BookingStatus.CANCELLED,
        BookingStatus.NO_SHOW,
    }
)

TERMINAL_SETTLEMENT_STATES = frozenset(
    {
        SettlementState.RELEASED,
        SettlementState.REFUNDED,
        SettlementState.EXPIRED,
    }
)

PRE_RELEASE_STATES = frozenset(
    {
        SettlementState.HELD,
        SettlementState.CONSULTATION_PENDING,
        SettlementState.AWAITING_PRICE_APPROVAL,
    }
)

_ACTIVE_SLOT_SQL = "status IN ('Reserved', 'Confirmed')"
_OPEN_REFUND_SQL = "status = 'Pending'"


class User(Base):
    __tablename__ = "users"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(120))
    role: Mapped[UserRole] = mapped_column(_enum(UserRole, "user_role"), default=UserRole.CUSTOMER)
    # Address used by the notification dispatcher (e.g. Telegram chat id).
    chat_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class AvailabilityRule(Base):
    __tablename__ = "availability_rules"
    __table_args__ = (
        CheckConstraint("start_time < end_time", name="ck_availability_rules_time_order"),
        Index("ix_availability_rules_provider_day", "provider_id", "day_of_week"),
    )
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    provider_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"))
    listing_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    # Monday=0 .. Sunday=6; only set for recurring rules
    day_of_week: Mapped[int | None] = mapped_column(Integer, nullable=True)
    # Date span for non-recurring rules (inclusive)
    start_date: Mapped[_date | None] = mapped_column(Date, nullable=True)
    end_date: Mapped[_date | None] = mapped_column(Date, nullable=True)
    start_time: Mapped[_time] = mapped_column(Time, nullable=False)
    end_time: Mapped[_time] = mapped_column(Time, nullable=False)
    is_recurring: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    rule_type: Mapped[RuleType] = mapped_column(_enum(RuleType, "availability_rule_type"), default=RuleType.AVAILABLE)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)


class AvailabilityException(Base):
    __tablename__ = "availability_exceptions"
    __table_args__ = (
        Index("ix_availability_exceptions_provider_date", "provider_id", "exception_date"),
    )
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    provider_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"))
    exception_date: Mapped[_date] = mapped_column(Date, nullable=False)
    exception_type: Mapped[ExceptionType] = mapped_column(
        _enum(ExceptionType, "availability_exception_type"), default=ExceptionType.UNAVAILABLE
    )
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)


class RecurringSeries(Base):
    __tablename__ = "recurring_series"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    provider_id: Mapped[int] = mapped_column(ForeignKey("users.id"))
    customer_id: Mapped[int] = mapped_column(ForeignKey("users.id"))
    listing_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    title: Mapped[str] = mapped_column(String(200))
    price_cents: Mapped[int] = mapped_column(Integer)
    duration_minutes: Mapped[int] = mapped_column(Integer)
    start_time: Mapped[_time] = mapped_column(Time)
    frequency: Mapped[Frequency] = mapped_column(_enum(Frequency, "recurrence_frequency"))
    interval: Mapped[int] = mapped_column(Integer, default=1)
    days_of_week: Mapped[list[int] | None] = mapped_column(JSON, nullable=True)
    day_of_month: Mapped[int | None] = mapped_column(Integer, nullable=True)
    end_date: Mapped[_date | None] = mapped_column(Date, nullable=True)
    max_occurrences: Mapped[int | None] = mapped_column(Integer, nullable=True)
    start_date: Mapped[_date] = mapped_column(Date)
    next_occurrence_date: Mapped[_date | None] = mapped_column(Date, nullable=True)
    created_bookings: Mapped[int] = mapped_column(Integer, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class Booking(Base):
    __tablename__ = "bookings"
    __table_args__ = (
        Index("ix_bookings_provider_date", "provider_id", "service_date"),
    )
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    customer_id: Mapped[int] = mapped_column(ForeignKey("users.id"))
    provider_id: Mapped[int] = mapped_column(ForeignKey("users.id"))
    listing_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    title: Mapped[str] = mapped_column(String(200))
    price_cents: Mapped[int] = mapped_column(Integer)
    service_date: Mapped[_date] = mapped_column(Date)
    start_time: Mapped[_time] = mapped_column(Time)
    end_time: Mapped[_time] = mapped_column(Time)
    status: Mapped[BookingStatus] = mapped_column(_enum(BookingStatus, "booking_status"), default=BookingStatus.CONFIRMED)
    # Weak back-reference; the series does not own the booking after creation.
    recurring_booking_id: Mapped[int | None] = mapped_column(
        ForeignKey("recurring_series.id", ondelete="SET NULL"), nullable=True
    )
    no_show_fee_cents: Mapped[int | None] = mapped_column(Integer, nullable=True)
    refund_requested: Mapped[bool] = mapped_column(Boolean, default=False)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancellation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class ReservedSlot(Base):
    __tablename__ = "reserved_slots"
    __table_args__ = (
        # Insert-if-absent guard: one active reservation per provider grid cell.
        Index(
            "ux_reserved_slots_active",
            "provider_id",
            "booking_date",
            "start_time",
            unique=True,
            postgresql_where=text(_ACTIVE_SLOT_SQL),
            sqlite_where=text(_ACTIVE_SLOT_SQL),
        ),
        Index("ix_reserved_slots_booking", "booking_id"),
    )
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    booking_id: Mapped[int] = mapped_column(ForeignKey("bookings.id", ondelete="CASCADE"))
    provider_id: Mapped[int] = mapped_column(ForeignKey("users.id"))
    booking_date: Mapped[_date] = mapped_column(Date)
    start_time: Mapped[_time] = mapped_column(Time)
    end_time: Mapped[_time] = mapped_column(Time)
    status: Mapped[SlotStatus] = mapped_column(_enum(SlotStatus, "reserved_slot_status"), default=SlotStatus.RESERVED)


class RecurringOccurrence(Base):
    __tablename__ = "recurring_occurrences"
    __table_args__ = (
        UniqueConstraint("series_id", "occurrence_date", name="ux_recurring_occurrences_series_date"),
    )
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    series_id: Mapped[int] = mapped_column(ForeignKey("recurring_series.id", ondelete="CASCADE"))
    occurrence_date: Mapped[_date] = mapped_column(Date)
    booking_id: Mapped[int | None] = mapped_column(ForeignKey("bookings.id", ondelete="SET NULL"), nullable=True)
    status: Mapped[OccurrenceStatus] = mapped_column(_enum(OccurrenceStatus, "occurrence_status"))
    conflict_reason: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class EscrowSettlement(Base):
    __tablename__ = "escrow_settlements"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    booking_id: Mapped[int] = mapped_column(ForeignKey("bookings.id"), unique=True)
    amount_cents: Mapped[int] = mapped_column(Integer)
    state: Mapped[SettlementState] = mapped_column(_enum(SettlementState, "settlement_state"), default=SettlementState.HELD)
    consultation_required: Mapped[bool] = mapped_column(Boolean, default=False)
    consultation_completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    received_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    state_before_dispute: Mapped[SettlementState | None] = mapped_column(
        _enum(SettlementState, "settlement_state"), nullable=True
    )
    payment_reference: Mapped[str] = mapped_column(String(128))
    resolution_type: Mapped[ResolutionType | None] = mapped_column(_enum(ResolutionType, "resolution_type"), nullable=True)
    refund_amount_cents: Mapped[int | None] = mapped_column(Integer, nullable=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    released_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    refunded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)


class PriceAdjustment(Base):
    __tablename__ = "price_adjustments"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    # At most one adjustment per booking.
    booking_id: Mapped[int] = mapped_column(ForeignKey("bookings.id"), unique=True)
    original_cents: Mapped[int] = mapped_column(Integer)
    proposed_cents: Mapped[int] = mapped_column(Integer)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[AdjustmentStatus] = mapped_column(_enum(AdjustmentStatus, "adjustment_status"), default=AdjustmentStatus.PENDING)
    proposed_by: Mapped[int | None] = mapped_column(Integer, nullable=True)
    responded_by: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    responded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class Dispute(Base):
    __tablename__ = "disputes"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    booking_id: Mapped[int] = mapped_column(ForeignKey("bookings.id"), index=True)
    filed_by: Mapped[int] = mapped_column(Integer)
    dispute_type: Mapped[DisputeType] = mapped_column(_enum(DisputeType, "dispute_type"))
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[DisputeStatus] = mapped_column(_enum(DisputeStatus, "dispute_status"), default=DisputeStatus.OPEN)
    resolution_type: Mapped[ResolutionType | None] = mapped_column(_enum(ResolutionType, "resolution_type"), nullable=True)
    resolution_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    resolved_by: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class TimelineEvent(Base):
    """Append-only booking history; rows are never updated or deleted."""

    __tablename__ = "timeline_events"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    booking_id: Mapped[int] = mapped_column(ForeignKey("bookings.id"), index=True)
    event_type: Mapped[str] = mapped_column(String(64))
    actor_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    description: Mapped[str] = mapped_column(Text)
    event_metadata: Mapped[dict[str, Any]] = mapped_column("metadata", JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class RefundRequest(Base):
    __tablename__ = "refund_requests"
    __table_args__ = (
        # Zero-or-one open request per booking.
        Index(
            "ux_refund_requests_open",
            "booking_id",
            unique=True,
            postgresql_where=text(_OPEN_REFUND_SQL),
            sqlite_where=text(_OPEN_REFUND_SQL),
        ),
    )
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    booking_id: Mapped[int] = mapped_column(ForeignKey("bookings.id"))
    amount_cents: Mapped[int] = mapped_column(Integer)
    reason: Mapped[str] = mapped_column(String(64))
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[RefundStatus] = mapped_column(_enum(RefundStatus, "refund_status"), default=RefundStatus.PENDING)
    requested_by: Mapped[int] = mapped_column(Integer)
    approved_by: Mapped[int | None] = mapped_column(Integer, nullable=True)
    external_reference: Mapped[str | None] = mapped_column(String(128), nullable=True)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class RefundQueueItem(Base):
    __tablename__ = "refund_queue_items"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    refund_id: Mapped[int | None] = mapped_column(ForeignKey("refund_requests.id"), nullable=True)
    booking_id: Mapped[int] = mapped_column(ForeignKey("bookings.id"))
    amount_cents: Mapped[int] = mapped_column(Integer)
    payment_reference: Mapped[str] = mapped_column(String(128))
    status: Mapped[QueueStatus] = mapped_column(_enum(QueueStatus, "refund_queue_status"), default=QueueStatus.PENDING)
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, default=3)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)


class TrustProfile(Base):
    __tablename__ = "trust_profiles"
    __table_args__ = (
        UniqueConstraint("user_id", "role", name="ux_trust_profiles_user_role"),
        CheckConstraint("trust_level BETWEEN 0 AND 3", name="ck_trust_profiles_level"),
    )
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"))
    role: Mapped[UserRole] = mapped_column(_enum(UserRole, "user_role"))
    trust_level: Mapped[int] = mapped_column(Integer, default=0)
    previous_trust_level: Mapped[int] = mapped_column(Integer, default=0)
    consecutive_completed_jobs: Mapped[int] = mapped_column(Integer, default=0)
    trust_improved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)


class ProviderBalance(Base):
    __tablename__ = "provider_balances"
    provider_id: Mapped[int] = mapped_column(ForeignKey("users.id"), primary_key=True)
    payable_cents: Mapped[int] = mapped_column(Integer, default=0)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)


__all__ = [
    "Base",
    "UserRole",
    "RuleType",
    "ExceptionType",
    "BookingStatus",
    "SlotStatus",
    "Frequency",
    "OccurrenceStatus",
    "SettlementState",
    "AdjustmentStatus",
    "DisputeType",
    "DisputeStatus",
    "ResolutionType",
    "RefundStatus",
    "QueueStatus",
    "User",
    "AvailabilityRule",
    "AvailabilityException",
    "RecurringSeries",
    "Booking",
    "ReservedSlot",
    "RecurringOccurrence",
    "EscrowSettlement",
    "PriceAdjustment",
    "Dispute",
    "TimelineEvent",
    "RefundRequest",
    "RefundQueueItem",
    "TrustProfile",
    "ProviderBalance",
    "BLOCKING_SLOT_STATUSES",
    "TERMINAL_BOOKING_STATUSES",
    "TERMINAL_SETTLEMENT_STATES",
    "PRE_RELEASE_STATES",
]
