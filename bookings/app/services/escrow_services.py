"""Escrow settlement state machine.

Every transition is a single compare-and-set ``UPDATE ... WHERE state IN``
checked against ``TRANSITIONS``, committed together with an appended
timeline event. Notifications go out after commit and never affect the
outcome. Money moves through the payment gateway *before* the state row is
updated, keyed by an idempotency key so a retried operation cannot move it
twice.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Iterable

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from bookings.app.core.errors import NotFoundError, PaymentGatewayError, PolicyResult, SettlementConflictError
from bookings.app.core.notifications import NotificationEvent, Notifier, dispatch
from bookings.app.core.payments import PaymentGateway, refund_idempotency_key
from bookings.app.domain.models import (
    PRE_RELEASE_STATES,
    AdjustmentStatus,
    Booking,
    BookingStatus,
    Dispute,
    DisputeStatus,
    DisputeType,
    EscrowSettlement,
    PriceAdjustment,
    ProviderBalance,
    RefundRequest,
    RefundStatus,
    ResolutionType,
    SettlementState,
    TimelineEvent,
    UserRole,
)
from bookings.app.services import shared_services
from bookings.app.services.availability_services import AvailabilityResolver
from bookings.app.services.shared_services import (
    append_timeline_event,
    ensure_utc,
    format_money_cents,
    local_date,
    refund_percentage,
    utc_now,
)
from bookings.app.services.trust_services import TrustProfileService
from bookings.config import get_escrow_hold_days

logger = logging.getLogger(__name__)

S = SettlementState

TRANSITIONS: dict[SettlementState, frozenset[SettlementState]] = {
    S.HELD: frozenset({S.CONSULTATION_PENDING, S.AWAITING_PRICE_APPROVAL, S.RELEASED, S.REFUNDED, S.DISPUTED, S.EXPIRED}),
    S.CONSULTATION_PENDING: frozenset({S.AWAITING_PRICE_APPROVAL, S.HELD, S.REFUNDED, S.DISPUTED, S.EXPIRED}),
    S.AWAITING_PRICE_APPROVAL: frozenset({S.HELD, S.REFUNDED, S.DISPUTED, S.EXPIRED}),
    S.DISPUTED: frozenset({S.RELEASED, S.REFUNDED}),
    S.RELEASED: frozenset(),
    S.REFUNDED: frozenset(),
    S.EXPIRED: frozenset(),
}

_RELEASE_RESOLUTIONS = frozenset({ResolutionType.NO_REFUND, ResolutionType.SERVICE_REDO})
_CANCEL_RESOLUTIONS = frozenset({ResolutionType.FULL_REFUND, ResolutionType.CANCELLED})


def can_transition(current: SettlementState | str, target: SettlementState | str) -> bool:
    return SettlementState(target) in TRANSITIONS[SettlementState(current)]


def _sources(target: SettlementState, allowed: Iterable[SettlementState] | None = None) -> tuple[SettlementState, ...]:
    pool = set(allowed) if allowed is not None else set(TRANSITIONS)
    return tuple(s for s in TRANSITIONS if s in pool and target in TRANSITIONS[s])


def _settlement_refund_key(booking_id: int) -> str:
    # One key for every path that closes a settlement with a refund, so a
    # sweep racing an admin cannot refund twice.
    return refund_idempotency_key(booking_id, "settlement")


def _booking_still_open(booking_id: int) -> tuple[Any, Any]:
    """WHERE guards: booking not cancelled and no refund request awaiting a decision."""
    return (
        select(Booking.id).where(Booking.id == booking_id, Booking.status != BookingStatus.CANCELLED).exists(),
        ~select(RefundRequest.id)
        .where(RefundRequest.booking_id == booking_id, RefundRequest.status == RefundStatus.PENDING)
        .exists(),
    )


class EscrowSettlementService:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        gateway: PaymentGateway,
        resolver: AvailabilityResolver,
        trust: TrustProfileService,
        notifier: Notifier | None = None,
        *,
        hold_days: int | None = None,
    ):
        self.session_factory = session_factory
        self.gateway = gateway
        self.resolver = resolver
        self.trust = trust
        self.notifier = notifier
        self.hold_days = hold_days

    # ---------------- helpers ----------------

    async def _cas(
        self,
        session: AsyncSession,
        booking_id: int,
        target: SettlementState,
        attempted: str,
        *,
        allowed: Iterable[SettlementState] | None = None,
        extra_where: Iterable[Any] = (),
        **values: Any,
    ) -> None:
        sources = _sources(target, allowed)
        res = await session.execute(
            update(EscrowSettlement)
            .where(EscrowSettlement.booking_id == booking_id, EscrowSettlement.state.in_(sources), *extra_where)
            .values(state=target, updated_at=utc_now(), **values)
            .execution_options(synchronize_session=False)
        )
        if res.rowcount:
            return
        current = await session.scalar(select(EscrowSettlement.state).where(EscrowSettlement.booking_id == booking_id))
        if current is None:
            raise NotFoundError(f"no settlement for booking {booking_id}")
        logger.info("Settlement %s: %s rejected from %s", booking_id, attempted, getattr(current, "value", current))
        raise SettlementConflictError(booking_id, getattr(current, "value", current), attempted)

    @staticmethod
    async def _load(session: AsyncSession, booking_id: int) -> EscrowSettlement:
        settlement = await session.scalar(select(EscrowSettlement).where(EscrowSettlement.booking_id == booking_id))
        if settlement is None:
            raise NotFoundError(f"no settlement for booking {booking_id}")
        return settlement

    @staticmethod
    async def _booking(session: AsyncSession, booking_id: int) -> Booking:
        booking = await session.get(Booking, booking_id)
        if booking is None:
            raise NotFoundError(f"booking {booking_id} not found")
        return booking

    @staticmethod
    async def _credit_provider(session: AsyncSession, provider_id: int, cents: int) -> None:
        if cents <= 0:
            return
        res = await session.execute(
            update(ProviderBalance)
            .where(ProviderBalance.provider_id == provider_id)
            .values(payable_cents=ProviderBalance.payable_cents + int(cents), updated_at=utc_now())
        )
        if not res.rowcount:
            session.add(ProviderBalance(provider_id=provider_id, payable_cents=int(cents), updated_at=utc_now()))
        logger.debug("Provider %s credited %s", provider_id, cents)

    @staticmethod
    async def _closed_reason(session: AsyncSession, booking_id: int) -> str | None:
        status = await session.scalar(select(Booking.status).where(Booking.id == booking_id))
        if status == BookingStatus.CANCELLED:
            return "booking_cancelled"
        pending = await session.scalar(
            select(RefundRequest.id).where(
                RefundRequest.booking_id == booking_id,
                RefundRequest.status == RefundStatus.PENDING,
            )
        )
        return "refund_pending" if pending is not None else None

    async def _notify(self, kind: str, booking: Booking, message: str, **data: Any) -> None:
        await dispatch(
            self.notifier,
            NotificationEvent(
                kind=kind,
                booking_id=booking.id,
                message=message,
                recipients=(booking.customer_id, booking.provider_id),
                data=data,
            ),
        )

    # ---------------- capture / consultation / pricing ----------------

    async def capture(
        self,
        booking_id: int,
        amount_cents: int,
        payment_reference: str,
        *,
        consultation_required: bool = False,
        actor_id: int | None = None,
        now: datetime | None = None,
    ) -> PolicyResult:
        """Capture payment into escrow; one settlement per booking."""
        if int(amount_cents) <= 0:
            raise ValueError("amount_cents must be positive")
        if not payment_reference:
            raise ValueError("payment_reference is required")
        now = ensure_utc(now) or utc_now()
        async with self.session_factory() as session:
            booking = await self._booking(session, booking_id)
            existing = await session.scalar(select(EscrowSettlement.state).where(EscrowSettlement.booking_id == booking_id))
        if existing is not None:
            raise SettlementConflictError(booking_id, getattr(existing, "value", existing), "capture")

        charge_id = await self.gateway.capture(payment_reference, int(amount_cents))
        hold_days = self.hold_days if self.hold_days is not None else get_escrow_hold_days()
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    settlement = EscrowSettlement(
                        booking_id=booking_id,
                        amount_cents=int(amount_cents),
                        state=S.HELD,
                        consultation_required=bool(consultation_required),
                        payment_reference=payment_reference,
                        expires_at=now + timedelta(days=hold_days),
                        created_at=now,
                        updated_at=now,
                    )
                    session.add(settlement)
                    await session.flush()
                    append_timeline_event(
                        session,
                        booking_id,
                        "payment_captured",
                        f"Payment of {format_money_cents(amount_cents)} captured into escrow",
                        actor_id=actor_id,
                        metadata={"charge_id": charge_id, "amount_cents": int(amount_cents)},
                    )
                    if consultation_required:
                        await self._cas(session, booking_id, S.CONSULTATION_PENDING, "require consultation", allowed=(S.HELD,))
                        append_timeline_event(
                            session, booking_id, "consultation_required", "Consultation required before work starts",
                            actor_id=actor_id,
                        )
                    await self.resolver.confirm(session, booking_id)
        except IntegrityError as e:
            raise SettlementConflictError(booking_id, "captured", "capture") from e
        state = S.CONSULTATION_PENDING if consultation_required else S.HELD
        logger.info("Settlement for booking %s captured: %s cents, state=%s", booking_id, amount_cents, state.value)
        await self._notify("payment_captured", booking, f"Payment for booking #{booking_id} is held in escrow", state=state.value)
        return PolicyResult.allow(state=state.value, charge_id=charge_id)

    async def complete_consultation(
        self,
        booking_id: int,
        actor_id: int,
        proposed_cents: int | None = None,
        reason: str | None = None,
    ) -> PolicyResult:
        now = utc_now()
        async with self.session_factory() as session:
            async with session.begin():
                settlement = await self._load(session, booking_id)
                booking = await self._booking(session, booking_id)
                if actor_id != booking.provider_id:
                    return PolicyResult.reject("not_booking_provider")
                original = int(settlement.amount_cents)
                price_change = proposed_cents is not None and int(proposed_cents) != original
                if price_change and int(proposed_cents) <= 0:
                    raise ValueError("proposed_cents must be positive")
                target = S.AWAITING_PRICE_APPROVAL if price_change else S.HELD
                await self._cas(
                    session, booking_id, target, "complete consultation",
                    allowed=(S.CONSULTATION_PENDING,), consultation_completed_at=now,
                )
                append_timeline_event(session, booking_id, "consultation_completed", "Consultation completed", actor_id=actor_id)
                if price_change:
                    session.add(
                        PriceAdjustment(
                            booking_id=booking_id,
                            original_cents=original,
                            proposed_cents=int(proposed_cents),
                            reason=reason,
                            status=AdjustmentStatus.PENDING,
                            proposed_by=actor_id,
                            created_at=now,
                        )
                    )
                    append_timeline_event(
                        session, booking_id, "price_proposed",
                        f"Price change proposed: {format_money_cents(original)} -> {format_money_cents(proposed_cents)}",
                        actor_id=actor_id, metadata={"original_cents": original, "proposed_cents": int(proposed_cents)},
                    )
        logger.info("Consultation for booking %s completed -> %s", booking_id, target.value)
        await self._notify("consultation_completed", booking, f"Consultation for booking #{booking_id} completed", state=target.value)
        return PolicyResult.allow(state=target.value)

    async def propose_price_adjustment(self, booking_id: int, actor_id: int, proposed_cents: int, reason: str | None = None) -> PolicyResult:
        if int(proposed_cents) <= 0:
            raise ValueError("proposed_cents must be positive")
        async with self.session_factory() as session:
            booking = await self._booking(session, booking_id)
            used = await session.scalar(select(PriceAdjustment.id).where(PriceAdjustment.booking_id == booking_id))
        if actor_id != booking.provider_id:
            return PolicyResult.reject("not_booking_provider")
        if used is not None:
            return PolicyResult.reject("adjustment_already_used")
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    settlement = await self._load(session, booking_id)
                    booking = await self._booking(session, booking_id)
                    original = int(settlement.amount_cents)
                    await self._cas(session, booking_id, S.AWAITING_PRICE_APPROVAL, "propose price", allowed=(S.HELD,))
                    session.add(
                        PriceAdjustment(
                            booking_id=booking_id,
                            original_cents=original,
                            proposed_cents=int(proposed_cents),
                            reason=reason,
                            status=AdjustmentStatus.PENDING,
                            proposed_by=actor_id,
                            created_at=utc_now(),
                        )
                    )
                    await session.flush()
                    append_timeline_event(
                        session, booking_id, "price_proposed",
                        f"Price change proposed: {format_money_cents(original)} -> {format_money_cents(proposed_cents)}",
                        actor_id=actor_id, metadata={"original_cents": original, "proposed_cents": int(proposed_cents)},
                    )
        except IntegrityError:
            return PolicyResult.reject("adjustment_already_used")
        await self._notify("price_proposed", booking, f"A new price was proposed for booking #{booking_id}")
        return PolicyResult.allow(state=S.AWAITING_PRICE_APPROVAL.value)

    async def respond_price_adjustment(self, booking_id: int, actor_id: int, approve: bool) -> PolicyResult:
        """Only the booking's customer may accept or decline the proposed price."""
        async with self.session_factory() as session:
            booking = await self._booking(session, booking_id)
            if actor_id != booking.customer_id:
                return PolicyResult.reject("not_booking_customer")
            adjustment = await session.scalar(
                select(PriceAdjustment).where(
                    PriceAdjustment.booking_id == booking_id,
                    PriceAdjustment.status == AdjustmentStatus.PENDING,
                )
            )
            settlement = await self._load(session, booking_id)
        if adjustment is None:
            raise NotFoundError(f"no pending price adjustment for booking {booking_id}")
        if settlement.state != S.AWAITING_PRICE_APPROVAL:
            raise SettlementConflictError(booking_id, settlement.state.value, "respond to price")

        delta = int(adjustment.proposed_cents) - int(adjustment.original_cents)
        if approve and delta > 0:
            await self.gateway.capture(f"{settlement.payment_reference}:adj{adjustment.id}", delta)
        elif approve and delta < 0:
            await self.gateway.refund(
                settlement.payment_reference,
                -delta,
                refund_idempotency_key(booking_id, f"adjustment:{adjustment.id}", -delta),
            )

        now = utc_now()
        async with self.session_factory() as session:
            async with session.begin():
                values: dict[str, Any] = {"amount_cents": int(adjustment.proposed_cents)} if approve else {}
                await self._cas(session, booking_id, S.HELD, "respond to price", allowed=(S.AWAITING_PRICE_APPROVAL,), **values)
                await session.execute(
                    update(PriceAdjustment)
                    .where(PriceAdjustment.id == adjustment.id, PriceAdjustment.status == AdjustmentStatus.PENDING)
                    .values(
                        status=AdjustmentStatus.APPROVED if approve else AdjustmentStatus.REJECTED,
                        responded_by=actor_id,
                        responded_at=now,
                    )
                )
                booking = await self._booking(session, booking_id)
                if approve:
                    booking.price_cents = int(adjustment.proposed_cents)
                append_timeline_event(
                    session, booking_id, "price_approved" if approve else "price_rejected",
                    f"Price change {'approved' if approve else 'rejected'}",
                    actor_id=actor_id, metadata={"proposed_cents": int(adjustment.proposed_cents)},
                )
        logger.info("Price adjustment for booking %s %s", booking_id, "approved" if approve else "rejected")
        await self._notify("price_response", booking, f"Price change for booking #{booking_id} {'approved' if approve else 'rejected'}")
        return PolicyResult.allow(state=S.HELD.value, amount_cents=int(adjustment.proposed_cents if approve else adjustment.original_cents))

    # ---------------- work / completion ----------------

    async def start_work_allowed(self, booking_id: int) -> bool:
        """Work may start only once funds are held and any consultation is done."""
        async with self.session_factory() as session:
            state = await session.scalar(select(EscrowSettlement.state).where(EscrowSettlement.booking_id == booking_id))
        return state == S.HELD

    async def start_work(self, booking_id: int, actor_id: int) -> PolicyResult:
        async with self.session_factory() as session:
            async with session.begin():
                booking = await self._booking(session, booking_id)
                if actor_id != booking.provider_id:
                    return PolicyResult.reject("not_booking_provider")
                funds_held = (
                    select(EscrowSettlement.id)
                    .where(EscrowSettlement.booking_id == booking_id, EscrowSettlement.state == S.HELD)
                    .exists()
                )
                res = await session.execute(
                    update(Booking)
                    .where(Booking.id == booking_id, Booking.status == BookingStatus.CONFIRMED, funds_held)
                    .values(status=BookingStatus.IN_PROGRESS)
                    .execution_options(synchronize_session=False)
                )
                if not res.rowcount:
                    state = await session.scalar(select(EscrowSettlement.state).where(EscrowSettlement.booking_id == booking_id))
                    if state != S.HELD:
                        return PolicyResult.reject("consultation_pending")
                    return PolicyResult.reject("booking_not_confirmed")
                append_timeline_event(session, booking_id, "work_started", "Work started", actor_id=actor_id)
        return PolicyResult.allow(status=BookingStatus.IN_PROGRESS.value)

    async def mark_received(self, booking_id: int, actor_id: int) -> PolicyResult:
        """Provider confirms the order was received; blocked once the booking is cancelled or a refund is pending."""
        now = utc_now()
        async with self.session_factory() as session:
            async with session.begin():
                booking = await self._booking(session, booking_id)
                if actor_id != booking.provider_id:
                    return PolicyResult.reject("not_booking_provider")
                res = await session.execute(
                    update(EscrowSettlement)
                    .where(
                        EscrowSettlement.booking_id == booking_id,
                        EscrowSettlement.state == S.HELD,
                        EscrowSettlement.received_at.is_(None),
                        *_booking_still_open(booking_id),
                    )
                    .values(received_at=now, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
                if not res.rowcount:
                    settlement = await self._load(session, booking_id)
                    if settlement.state != S.HELD:
                        raise SettlementConflictError(booking_id, settlement.state.value, "mark received")
                    reason = await self._closed_reason(session, booking_id)
                    return PolicyResult.reject(reason or "already_received")
                append_timeline_event(session, booking_id, "order_received", "Order marked as received", actor_id=actor_id)
        logger.info("Booking %s marked received by %s", booking_id, actor_id)
        await self._notify("order_received", booking, f"Booking #{booking_id} marked as received")
        return PolicyResult.allow(state=S.HELD.value)

    async def release(self, booking_id: int, actor_id: int | None = None) -> PolicyResult:
        """Release held funds to the provider once the order was received."""
        now = utc_now()
        async with self.session_factory() as session:
            async with session.begin():
                res = await session.execute(
                    update(EscrowSettlement)
                    .where(
                        EscrowSettlement.booking_id == booking_id,
                        EscrowSettlement.state.in_(_sources(S.RELEASED, (S.HELD,))),
                        EscrowSettlement.received_at.is_not(None),
                        *_booking_still_open(booking_id),
                    )
                    .values(state=S.RELEASED, released_at=now, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
                settlement = await self._load(session, booking_id)
                if not res.rowcount:
                    if settlement.state != S.HELD:
                        raise SettlementConflictError(booking_id, settlement.state.value, "release")
                    reason = await self._closed_reason(session, booking_id)
                    return PolicyResult.reject(reason or "not_received")
                booking = await self._booking(session, booking_id)
                await self._credit_provider(session, booking.provider_id, int(settlement.amount_cents))
                booking.status = BookingStatus.COMPLETED
                booking.completed_at = now
                append_timeline_event(
                    session, booking_id, "payment_released",
                    f"{format_money_cents(settlement.amount_cents)} released to provider",
                    actor_id=actor_id, metadata={"amount_cents": int(settlement.amount_cents)},
                )
                await self.trust.record_completed_job(booking.customer_id, UserRole.CUSTOMER, session=session)
                await self.trust.record_completed_job(booking.provider_id, UserRole.PROVIDER, session=session)
        logger.info("Settlement for booking %s released (%s cents)", booking_id, settlement.amount_cents)
        await self._notify("payment_released", booking, f"Payment for booking #{booking_id} released to provider")
        return PolicyResult.allow(state=S.RELEASED.value)

    async def settle_cancellation(self, booking_id: int, actor_id: int | None, reason: str | None = None) -> PolicyResult:
        """Pay a cancelled booking's hold out to the provider when no refund is owed.

        Used when a refund request is rejected or withdrawn. The booking stays
        cancelled; trust counters are not touched.
        """
        now = utc_now()
        async with self.session_factory() as session:
            async with session.begin():
                settlement = await self._load(session, booking_id)
                current = settlement.state
                if current not in PRE_RELEASE_STATES:
                    raise SettlementConflictError(booking_id, current.value, "settle cancellation")
                target = S.RELEASED if can_transition(current, S.RELEASED) else S.REFUNDED
                values: dict[str, Any] = {"released_at": now} if target == S.RELEASED else {
                    "refunded_at": now,
                    "refund_amount_cents": 0,
                }
                cancelled = select(Booking.id).where(Booking.id == booking_id, Booking.status == BookingStatus.CANCELLED).exists()
                await self._cas(
                    session, booking_id, target, "settle cancellation",
                    allowed=(current,), extra_where=(cancelled,), **values,
                )
                booking = await self._booking(session, booking_id)
                amount = int(settlement.amount_cents)
                await self._credit_provider(session, booking.provider_id, amount)
                append_timeline_event(
                    session, booking_id, "cancellation_settled",
                    f"{format_money_cents(amount)} released to provider after cancellation",
                    actor_id=actor_id, metadata={"amount_cents": amount, "reason": reason},
                )
        logger.info("Cancelled booking %s settled to provider (%s cents)", booking_id, amount)
        await self._notify("cancellation_settled", booking, f"Payment for cancelled booking #{booking_id} released to provider")
        return PolicyResult.allow(state=target.value, refund_amount_cents=0)

    # ---------------- disputes ----------------

    async def open_dispute(
        self,
        booking_id: int,
        actor_id: int,
        dispute_type: DisputeType | str,
        description: str | None = None,
    ) -> PolicyResult:
        dispute_type = DisputeType(dispute_type)
        async with self.session_factory() as session:
            async with session.begin():
                settlement = await self._load(session, booking_id)
                current = settlement.state
                if current not in PRE_RELEASE_STATES:
                    raise SettlementConflictError(booking_id, current.value, "open dispute")
                await self._cas(
                    session, booking_id, S.DISPUTED, "open dispute",
                    allowed=(current,), state_before_dispute=current,
                )
                dispute = Dispute(
                    booking_id=booking_id,
                    filed_by=actor_id,
                    dispute_type=dispute_type,
                    description=description,
                    status=DisputeStatus.OPEN,
                    created_at=utc_now(),
                )
                session.add(dispute)
                await session.flush()
                append_timeline_event(
                    session, booking_id, "dispute_opened", f"Dispute opened ({dispute_type.value})",
                    actor_id=actor_id, metadata={"dispute_id": dispute.id, "previous_state": current.value},
                )
                booking = await self._booking(session, booking_id)
        logger.info("Dispute %s opened on booking %s from %s", dispute.id, booking_id, current.value)
        await self._notify("dispute_opened", booking, f"A dispute was opened on booking #{booking_id}")
        return PolicyResult.allow(state=S.DISPUTED.value, dispute_id=dispute.id)

    async def resolve_dispute(
        self,
        booking_id: int,
        actor_id: int,
        resolution_type: ResolutionType | str,
        refund_amount_cents: int | None = None,
        notes: str | None = None,
    ) -> PolicyResult:
        resolution = ResolutionType(resolution_type)
        async with self.session_factory() as session:
            settlement = await self._load(session, booking_id)
        if settlement.state != S.DISPUTED:
            raise SettlementConflictError(booking_id, settlement.state.value, "resolve dispute")
        amount = int(settlement.amount_cents)

        if resolution in _RELEASE_RESOLUTIONS:
            target, refund_cents = S.RELEASED, 0
        elif resolution == ResolutionType.PARTIAL_REFUND:
            if refund_amount_cents is None or not 0 < int(refund_amount_cents) < amount:
                raise ValueError("partial refunds need 0 < refund_amount_cents < amount")
            target, refund_cents = S.REFUNDED, int(refund_amount_cents)
        else:
            target, refund_cents = S.REFUNDED, amount

        if refund_cents:
            await self.gateway.refund(
                settlement.payment_reference,
                refund_cents,
                _settlement_refund_key(booking_id),
            )

        now = utc_now()
        async with self.session_factory() as session:
            async with session.begin():
                values: dict[str, Any] = {"resolution_type": resolution}
                if target == S.RELEASED:
                    values["released_at"] = now
                else:
                    values.update(refunded_at=now, refund_amount_cents=refund_cents)
                await self._cas(session, booking_id, target, "resolve dispute", allowed=(S.DISPUTED,), **values)
                await session.execute(
                    update(Dispute)
                    .where(Dispute.booking_id == booking_id, Dispute.status == DisputeStatus.OPEN)
                    .values(
                        status=DisputeStatus.RESOLVED,
                        resolution_type=resolution,
                        resolution_notes=notes,
                        resolved_by=actor_id,
                        resolved_at=now,
                    )
                )
                booking = await self._booking(session, booking_id)
                await self._credit_provider(session, booking.provider_id, amount - refund_cents)
                if resolution in _CANCEL_RESOLUTIONS:
                    booking.status = BookingStatus.CANCELLED
                    booking.cancelled_at = now
                    booking.cancellation_reason = notes or resolution.value
                    await self.resolver.release(session, booking_id)
                elif resolution != ResolutionType.SERVICE_REDO:
                    booking.status = BookingStatus.COMPLETED
                    booking.completed_at = now
                append_timeline_event(
                    session, booking_id, "dispute_resolved",
                    f"Dispute resolved: {resolution.value}",
                    actor_id=actor_id,
                    metadata={"resolution_type": resolution.value, "refund_amount_cents": refund_cents},
                )
        logger.info("Dispute on booking %s resolved: %s -> %s", booking_id, resolution.value, target.value)
        await self._notify("dispute_resolved", booking, f"Dispute on booking #{booking_id} resolved: {resolution.value}")
        return PolicyResult.allow(state=target.value, refund_amount_cents=refund_cents)

    # ---------------- refunds / expiry ----------------

    async def refund(
        self,
        booking_id: int,
        actor_id: int | None,
        amount_cents: int,
        reason: str | None = None,
        *,
        external_reference: str | None = None,
    ) -> PolicyResult:
        """Refund ``amount_cents`` of a pre-release settlement; the rest goes to the provider.

        A gateway failure raises PaymentGatewayError and leaves the
        settlement untouched, so the same call can be retried later. With
        ``external_reference`` the money already moved outside the gateway.
        """
        async with self.session_factory() as session:
            settlement = await self._load(session, booking_id)
        if settlement.state not in PRE_RELEASE_STATES:
            raise SettlementConflictError(booking_id, settlement.state.value, "refund")
        amount = int(settlement.amount_cents)
        refund_cents = int(amount_cents)
        if not 0 <= refund_cents <= amount:
            raise ValueError("refund amount must be between 0 and the held amount")

        if refund_cents and external_reference is None:
            await self.gateway.refund(
                settlement.payment_reference,
                refund_cents,
                _settlement_refund_key(booking_id),
            )

        now = utc_now()
        async with self.session_factory() as session:
            async with session.begin():
                await self._cas(
                    session, booking_id, S.REFUNDED, "refund",
                    allowed=PRE_RELEASE_STATES, refunded_at=now, refund_amount_cents=refund_cents,
                )
                booking = await self._booking(session, booking_id)
                await self._credit_provider(session, booking.provider_id, amount - refund_cents)
                append_timeline_event(
                    session, booking_id, "order_refunded",
                    f"Refunded {format_money_cents(refund_cents)}",
                    actor_id=actor_id,
                    metadata={"refund_amount_cents": refund_cents, "reason": reason, "external_reference": external_reference},
                )
        logger.info("Settlement for booking %s refunded: %s of %s cents", booking_id, refund_cents, amount)
        await self._notify("order_refunded", booking, f"Booking #{booking_id} refunded {format_money_cents(refund_cents)}")
        return PolicyResult.allow(state=S.REFUNDED.value, refund_amount_cents=refund_cents)

    @staticmethod
    def _expiry_refund(settlement: EscrowSettlement, booking: Booking, now: datetime) -> int:
        """Cents going back to the customer when a hold expires.

        Cancelled bookings follow the refund tier in force on the day they
        were cancelled; otherwise a received order goes to the provider and an
        unreceived one is refunded in full.
        """
        amount = int(settlement.amount_cents)
        if booking.status == BookingStatus.CANCELLED:
            cancelled_on = local_date(booking.cancelled_at or now)
            return amount * refund_percentage((booking.service_date - cancelled_on).days) // 100
        return 0 if settlement.received_at is not None else amount

    async def expire_overdue(self, now: datetime | None = None) -> list[int]:
        """Expire every unresolved, undisputed hold past ``expires_at``.

        Holds with a refund request still waiting on an admin are skipped.
        Safe to run repeatedly; a hold whose refund fails stays put and is
        picked up by the next sweep.
        """
        now = ensure_utc(now) or utc_now()
        async with self.session_factory() as session:
            res = await session.execute(
                select(EscrowSettlement, Booking)
                .join(Booking, Booking.id == EscrowSettlement.booking_id)
                .where(
                    EscrowSettlement.state.in_(tuple(PRE_RELEASE_STATES)),
                    EscrowSettlement.expires_at <= now,
                )
            )
            overdue = list(res.all())
            awaiting_decision = set(
                (
                    await session.execute(
                        select(RefundRequest.booking_id).where(
                            RefundRequest.status == RefundStatus.PENDING,
                            RefundRequest.booking_id.in_([s.booking_id for s, _ in overdue]),
                        )
                    )
                ).scalars()
            )
        expired: list[int] = []
        for settlement, booking in overdue:
            booking_id = settlement.booking_id
            if booking_id in awaiting_decision:
                logger.debug("Expiry of booking %s deferred: refund request pending", booking_id)
                continue
            amount = int(settlement.amount_cents)
            refund_cents = self._expiry_refund(settlement, booking, now)
            if refund_cents:
                try:
                    await self.gateway.refund(settlement.payment_reference, refund_cents, _settlement_refund_key(booking_id))
                except PaymentGatewayError:
                    logger.exception("Expiry refund failed for booking %s; will retry next sweep", booking_id)
                    continue
            try:
                async with self.session_factory() as session:
                    async with session.begin():
                        values: dict[str, Any] = {}
                        if refund_cents:
                            values.update(refunded_at=now, refund_amount_cents=refund_cents)
                        if refund_cents < amount:
                            values["released_at"] = now
                        await self._cas(
                            session, booking_id, S.EXPIRED, "expire",
                            allowed=PRE_RELEASE_STATES, extra_where=(EscrowSettlement.expires_at <= now,), **values,
                        )
                        booking = await self._booking(session, booking_id)
                        await self._credit_provider(session, booking.provider_id, amount - refund_cents)
                        if refund_cents == amount:
                            outcome = "refunded to customer"
                        elif refund_cents == 0:
                            outcome = "released to provider"
                        else:
                            outcome = f"{format_money_cents(refund_cents)} refunded, rest released to provider"
                        append_timeline_event(
                            session, booking_id, "escrow_expired",
                            f"Escrow hold expired; funds {outcome}",
                            metadata={
                                "received": settlement.received_at is not None,
                                "amount_cents": amount,
                                "refund_amount_cents": refund_cents,
                            },
                        )
            except SettlementConflictError as e:
                if refund_cents:
                    # Same settlement key as the winning path, so the processor pays out once.
                    logger.warning("Expiry of booking %s lost to %s after refunding %s cents", booking_id, e.current, refund_cents)
                else:
                    logger.info("Expiry of booking %s skipped: settlement already %s", booking_id, e.current)
                continue
            expired.append(booking_id)
            await self._notify("escrow_expired", booking, f"Escrow for booking #{booking_id} expired")
        if expired:
            logger.info("Expired %s settlement(s): %s", len(expired), expired)
        return expired

    # ---------------- reads ----------------

    async def get_settlement(self, booking_id: int) -> EscrowSettlement:
        async with self.session_factory() as session:
            return await self._load(session, booking_id)

    async def find_settlement(self, booking_id: int) -> EscrowSettlement | None:
        async with self.session_factory() as session:
            return await session.scalar(select(EscrowSettlement).where(EscrowSettlement.booking_id == booking_id))

    async def timeline(self, booking_id: int) -> list[TimelineEvent]:
        async with self.session_factory() as session:
            return await shared_services.list_timeline(session, booking_id)


__all__ = ["TRANSITIONS", "can_transition", "EscrowSettlementService"]
