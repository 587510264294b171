from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from bookings.app.core.constants import REFUND_PROCESSING_HOURS, REFUND_TIERS
from bookings.app.core.errors import (
    ConflictError,
    NotFoundError,
    PaymentGatewayError,
    PolicyResult,
    RefundNotPendingError,
    SettlementConflictError,
)
from bookings.app.core.notifications import NotificationEvent, Notifier, dispatch
from bookings.app.domain.models import (
    PRE_RELEASE_STATES,
    Booking,
    BookingStatus,
    EscrowSettlement,
    QueueStatus,
    RefundQueueItem,
    RefundRequest,
    RefundStatus,
    SettlementState,
    UserRole,
)
from bookings.app.services.availability_services import AvailabilityResolver
from bookings.app.services.escrow_services import EscrowSettlementService
from bookings.app.services.shared_services import (
    append_timeline_event,
    elapsed_since,
    format_money_cents,
    local_today,
    refund_percentage,
    utc_now,
)
from bookings.app.services.trust_services import TrustProfileService
from bookings.config import get_refund_max_attempts

logger = logging.getLogger(__name__)

REFUND_REASONS = (
    "Cancelled",
    "ScheduleConflict",
    "ServiceNotNeeded",
    "FoundAlternative",
    "PriceIssue",
    "Other",
)

_MAX_ATTEMPTS_MESSAGE = "Max retry attempts reached"
_RECEIVED_MESSAGE = "Order already received"


@dataclass(frozen=True)
class RefundEligibility:
    eligible: bool
    percentage: int
    amount_cents: int
    original_cents: int
    days_until_booking: int
    policy: str
    reason: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "eligible": self.eligible,
            "percentage": self.percentage,
            "amount_cents": self.amount_cents,
            "original_cents": self.original_cents,
            "days_until_booking": self.days_until_booking,
            "policy": self.policy,
            "reason": self.reason,
        }


def refund_policy_summary() -> list[dict[str, Any]]:
    """Human-readable tiers, highest first."""
    out: list[dict[str, Any]] = []
    upper: int | None = None
    for min_days, pct in REFUND_TIERS:
        window = f"{min_days}+" if upper is None else f"{min_days}-{upper - 1}"
        kind = "Full refund" if pct == 100 else "Partial refund"
        out.append({"min_days": min_days, "percentage": pct, "policy": f"{kind} ({pct}%) - Cancelling {window} days before booking"})
        upper = min_days
    out.append({"min_days": None, "percentage": 0, "policy": "No refund - Cancelling within 24 hours of booking"})
    return out


def refund_tier(days_until_booking: int) -> tuple[int, str]:
    """Return (percentage, policy text) for a whole-day lead time."""
    pct = refund_percentage(days_until_booking)
    return pct, next(t["policy"] for t in refund_policy_summary() if t["percentage"] == pct)


def _ineligible(booking: Booking, days: int, policy: str, reason: str) -> RefundEligibility:
    return RefundEligibility(
        eligible=False,
        percentage=0,
        amount_cents=0,
        original_cents=int(booking.price_cents),
        days_until_booking=days,
        policy=policy,
        reason=reason,
    )


def evaluate_eligibility(booking: Booking, has_open_request: bool, today: date) -> RefundEligibility:
    """Pure eligibility rules, first match wins."""
    days = (booking.service_date - today).days
    status = booking.status
    if status == BookingStatus.COMPLETED:
        return _ineligible(booking, days, "Completed bookings cannot be refunded", "Booking already completed")
    if status == BookingStatus.CANCELLED:
        return _ineligible(booking, days, "Booking already cancelled", "Booking already cancelled")
    if has_open_request:
        return _ineligible(booking, days, "Refund already requested", "Refund already requested")
    pct, policy = refund_tier(days)
    amount = int(booking.price_cents) * pct // 100
    return RefundEligibility(
        eligible=pct > 0,
        percentage=pct,
        amount_cents=amount,
        original_cents=int(booking.price_cents),
        days_until_booking=days,
        policy=policy,
        reason=None if pct > 0 else "Too close to the booking date",
    )


class RefundPolicyEngine:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        escrow: EscrowSettlementService,
        resolver: AvailabilityResolver,
        trust: TrustProfileService,
        notifier: Notifier | None = None,
        *,
        max_attempts: int | None = None,
    ):
        self.session_factory = session_factory
        self.escrow = escrow
        self.resolver = resolver
        self.trust = trust
        self.notifier = notifier
        self.max_attempts = max_attempts

    async def _notify(self, kind: str, booking_id: int, message: str, recipients: tuple[int, ...] = ()) -> None:
        await dispatch(self.notifier, NotificationEvent(kind=kind, booking_id=booking_id, message=message, recipients=recipients))

    @staticmethod
    async def _open_request_exists(session: AsyncSession, booking_id: int) -> bool:
        found = await session.scalar(
            select(RefundRequest.id).where(
                RefundRequest.booking_id == booking_id,
                RefundRequest.status == RefundStatus.PENDING,
            )
        )
        return found is not None

    @staticmethod
    async def _get_refund(session: AsyncSession, refund_id: int) -> RefundRequest:
        refund = await session.get(RefundRequest, refund_id)
        if refund is None:
            raise NotFoundError(f"refund {refund_id} not found")
        return refund

    # ---------------- customer side ----------------

    async def check_eligibility(self, booking_id: int, today: date | None = None) -> RefundEligibility:
        today = today or local_today()
        async with self.session_factory() as session:
            booking = await session.get(Booking, booking_id)
            if booking is None:
                raise NotFoundError(f"booking {booking_id} not found")
            open_request = await self._open_request_exists(session, booking_id)
        return evaluate_eligibility(booking, open_request, today)

    async def submit_refund_request(
        self,
        booking_id: int,
        requester_id: int,
        reason: str,
        notes: str | None = None,
        today: date | None = None,
    ) -> PolicyResult:
        """Re-check eligibility, then cancel the booking and open a request atomically."""
        if reason not in REFUND_REASONS:
            raise ValueError(f"unknown refund reason {reason!r}")
        if reason == "Other" and not (notes or "").strip():
            raise ValueError("notes are required when reason is Other")

        eligibility = await self.check_eligibility(booking_id, today)
        booking = await self._booking(booking_id)
        if requester_id != booking.customer_id:
            return PolicyResult.reject("not_booking_customer")
        if not eligibility.eligible:
            return PolicyResult.reject(
                "not_eligible", message=eligibility.reason or "Booking is not eligible for refund", policy=eligibility.policy
            )
        settlement = await self.escrow.find_settlement(booking_id)
        if settlement is not None and settlement.received_at is not None:
            return PolicyResult.reject("not_eligible", message=_RECEIVED_MESSAGE)

        now = utc_now()
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    res = await session.execute(
                        update(Booking)
                        .where(
                            Booking.id == booking_id,
                            Booking.status.not_in((BookingStatus.COMPLETED, BookingStatus.CANCELLED)),
                            ~select(EscrowSettlement.id)
                            .where(EscrowSettlement.booking_id == booking_id, EscrowSettlement.received_at.is_not(None))
                            .exists(),
                        )
                        .values(
                            status=BookingStatus.CANCELLED,
                            refund_requested=True,
                            cancelled_at=now,
                            cancellation_reason=reason,
                        )
                        .execution_options(synchronize_session=False)
                    )
                    if not res.rowcount:
                        return PolicyResult.reject("not_eligible", message="Booking already cancelled")
                    refund = RefundRequest(
                        booking_id=booking_id,
                        amount_cents=eligibility.amount_cents,
                        reason=reason,
                        notes=(notes or "").strip() or None,
                        status=RefundStatus.PENDING,
                        requested_by=requester_id,
                        created_at=now,
                    )
                    session.add(refund)
                    await session.flush()
                    await self.resolver.release(session, booking_id)
                    append_timeline_event(
                        session, booking_id, "refund_requested",
                        f"Refund of {format_money_cents(eligibility.amount_cents)} requested ({eligibility.percentage}%)",
                        actor_id=requester_id,
                        metadata={"refund_id": refund.id, "reason": reason, "percentage": eligibility.percentage},
                    )
                    await self.trust.record_incident(requester_id, UserRole.CUSTOMER, kind="cancellation", session=session)
        except IntegrityError:
            logger.info("submit_refund_request: booking %s already has an open request", booking_id)
            return PolicyResult.reject("not_eligible", message="Refund already requested")

        logger.info("Refund %s requested for booking %s: %s cents", refund.id, booking_id, eligibility.amount_cents)
        await self._notify("refund_requested", booking_id, f"Refund requested for booking #{booking_id}", (booking.provider_id,))
        return PolicyResult.allow(refund_id=refund.id, amount_cents=eligibility.amount_cents, percentage=eligibility.percentage)

    async def cancel_refund_request(self, refund_id: int, requester_id: int) -> PolicyResult:
        async with self.session_factory() as session:
            async with session.begin():
                refund = await self._get_refund(session, refund_id)
                if refund.requested_by != requester_id:
                    return PolicyResult.reject("unauthorized")
                res = await session.execute(
                    update(RefundRequest)
                    .where(RefundRequest.id == refund_id, RefundRequest.status == RefundStatus.PENDING)
                    .values(status=RefundStatus.FAILED, notes="Cancelled by customer", processed_at=utc_now())
                )
                if not res.rowcount:
                    raise RefundNotPendingError("Can only cancel pending refund requests")
                append_timeline_event(session, refund.booking_id, "refund_withdrawn", "Refund request withdrawn", actor_id=requester_id)
        settlement = await self._settle_without_refund(refund, requester_id, "refund withdrawn")
        logger.info("Refund %s withdrawn by %s", refund_id, requester_id)
        return PolicyResult.allow(status=RefundStatus.FAILED.value, settlement=settlement)

    # ---------------- admin side ----------------

    async def _resolve_pending(self, session: AsyncSession, refund_id: int, status: RefundStatus, **values: Any) -> RefundRequest:
        refund = await self._get_refund(session, refund_id)
        res = await session.execute(
            update(RefundRequest)
            .where(RefundRequest.id == refund_id, RefundRequest.status == RefundStatus.PENDING)
            .values(status=status, processed_at=utc_now(), **values)
            .execution_options(synchronize_session=False)
        )
        if not res.rowcount:
            raise RefundNotPendingError(f"refund {refund_id} is not pending")
        return refund

    async def approve_refund(self, refund_id: int, admin_id: int, notes: str | None = None) -> PolicyResult:
        """Complete a pending request and move the money back through escrow.

        A payment failure does not undo the approval; the refund is queued
        for bounded retries instead. A settlement that was already paid out
        or is under dispute raises SettlementConflictError and the request
        stays pending.
        """
        async with self.session_factory() as session:
            async with session.begin():
                refund = await self._get_refund(session, refund_id)
                state = await session.scalar(
                    select(EscrowSettlement.state).where(EscrowSettlement.booking_id == refund.booking_id)
                )
                if state is not None and state not in PRE_RELEASE_STATES:
                    raise SettlementConflictError(refund.booking_id, state.value, "approve refund")
                refund = await self._resolve_pending(session, refund_id, RefundStatus.COMPLETED, approved_by=admin_id, notes=notes)
                append_timeline_event(
                    session, refund.booking_id, "refund_approved",
                    f"Refund of {format_money_cents(refund.amount_cents)} approved",
                    actor_id=admin_id, metadata={"refund_id": refund_id},
                )
        details = await self._move_money(refund, admin_id)
        logger.info("Refund %s approved by %s: %s", refund_id, admin_id, details)
        await self._notify("refund_approved", refund.booking_id, f"Refund for booking #{refund.booking_id} approved", (refund.requested_by,))
        return PolicyResult.allow(status=RefundStatus.COMPLETED.value, **details)

    async def _move_money(self, refund: RefundRequest, actor_id: int | None) -> dict[str, Any]:
        settlement = await self.escrow.find_settlement(refund.booking_id)
        if settlement is None:
            return {"settlement": None}
        amount = min(int(refund.amount_cents), int(settlement.amount_cents))
        try:
            await self.escrow.refund(refund.booking_id, actor_id, amount, reason=refund.reason)
        except PaymentGatewayError as e:
            item = await self._enqueue(refund, settlement.payment_reference, amount, str(e))
            return {"settlement": settlement.state.value, "queued": True, "queue_id": item.id}
        except SettlementConflictError as e:
            # Settlement moved after approval; money has to be returned by hand.
            item = await self._enqueue(refund, settlement.payment_reference, amount, str(e), status=QueueStatus.ESCALATED)
            return {"settlement": str(e.current), "queued": True, "queue_id": item.id}
        return {"settlement": SettlementState.REFUNDED.value, "queued": False}

    async def _enqueue(
        self,
        refund: RefundRequest,
        payment_reference: str,
        amount_cents: int,
        error: str,
        status: QueueStatus = QueueStatus.FAILED,
    ) -> RefundQueueItem:
        max_attempts = self.max_attempts if self.max_attempts is not None else get_refund_max_attempts()
        now = utc_now()
        item = RefundQueueItem(
            refund_id=refund.id,
            booking_id=refund.booking_id,
            amount_cents=amount_cents,
            payment_reference=payment_reference,
            status=status,
            attempts=1,
            max_attempts=max_attempts,
            last_error=error,
            created_at=now,
            updated_at=now,
        )
        async with self.session_factory() as session:
            async with session.begin():
                session.add(item)
                await session.flush()
                append_timeline_event(
                    session, refund.booking_id, "refund_queued",
                    "Automatic refund failed; queued for retry" if status == QueueStatus.FAILED else "Refund needs manual processing",
                    metadata={"queue_id": item.id, "error": error},
                )
        logger.warning("Refund %s queued for retry (queue item %s): %s", refund.id, item.id, error)
        return item

    async def reject_refund(self, refund_id: int, admin_id: int, reason: str) -> PolicyResult:
        async with self.session_factory() as session:
            async with session.begin():
                refund = await self._resolve_pending(
                    session, refund_id, RefundStatus.FAILED, approved_by=admin_id, notes=f"Rejected: {reason}"
                )
                append_timeline_event(
                    session, refund.booking_id, "refund_rejected", f"Refund rejected: {reason}",
                    actor_id=admin_id, metadata={"refund_id": refund_id},
                )
        settlement = await self._settle_without_refund(refund, admin_id, f"refund rejected: {reason}")
        logger.info("Refund %s rejected by %s", refund_id, admin_id)
        await self._notify("refund_rejected", refund.booking_id, f"Refund for booking #{refund.booking_id} rejected", (refund.requested_by,))
        return PolicyResult.allow(status=RefundStatus.FAILED.value, settlement=settlement)

    async def _settle_without_refund(self, refund: RefundRequest, actor_id: int, reason: str) -> str | None:
        """A cancelled booking whose request was turned down pays its hold out to the provider."""
        settlement = await self.escrow.find_settlement(refund.booking_id)
        if settlement is None:
            return None
        booking = await self._booking(refund.booking_id)
        if booking.status != BookingStatus.CANCELLED or settlement.state not in PRE_RELEASE_STATES:
            return settlement.state.value
        try:
            result = await self.escrow.settle_cancellation(refund.booking_id, actor_id, reason=reason)
        except SettlementConflictError as e:
            logger.warning("Refund %s: settlement for booking %s left as %s", refund.id, refund.booking_id, e.current)
            return str(e.current)
        return result.details["state"]

    async def create_manual_refund(
        self,
        booking_id: int,
        admin_id: int,
        amount_cents: int,
        reason: str,
        notes: str | None = None,
    ) -> PolicyResult:
        if int(amount_cents) <= 0:
            raise ValueError("amount_cents must be positive")
        await self._booking(booking_id)
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    refund = RefundRequest(
                        booking_id=booking_id,
                        amount_cents=int(amount_cents),
                        reason=reason,
                        notes=notes,
                        status=RefundStatus.PENDING,
                        requested_by=admin_id,
                        approved_by=admin_id,
                        created_at=utc_now(),
                    )
                    session.add(refund)
                    await session.flush()
                    append_timeline_event(
                        session, booking_id, "refund_created",
                        f"Manual refund of {format_money_cents(amount_cents)} created",
                        actor_id=admin_id, metadata={"refund_id": refund.id},
                    )
        except IntegrityError:
            return PolicyResult.reject("already_requested")
        logger.info("Manual refund %s created for booking %s by %s", refund.id, booking_id, admin_id)
        return PolicyResult.allow(refund_id=refund.id)

    async def process_refund_manually(self, refund_id: int, external_reference: str, admin_id: int | None = None) -> PolicyResult:
        """Record a refund an operator completed outside the payment gateway."""
        if not external_reference:
            raise ValueError("external_reference is required")
        now = utc_now()
        async with self.session_factory() as session:
            async with session.begin():
                refund = await self._get_refund(session, refund_id)
                if refund.status == RefundStatus.FAILED:
                    raise RefundNotPendingError(f"refund {refund_id} was rejected or withdrawn")
                refund.status = RefundStatus.COMPLETED
                refund.external_reference = external_reference
                refund.processed_at = now
                if admin_id is not None and refund.approved_by is None:
                    refund.approved_by = admin_id
                await session.execute(
                    update(RefundQueueItem)
                    .where(RefundQueueItem.refund_id == refund_id, RefundQueueItem.status != QueueStatus.COMPLETED)
                    .values(status=QueueStatus.COMPLETED, updated_at=now, last_error=None)
                )
        settlement = await self.escrow.find_settlement(refund.booking_id)
        if settlement is not None and settlement.state in PRE_RELEASE_STATES:
            amount = min(int(refund.amount_cents), int(settlement.amount_cents))
            await self.escrow.refund(
                refund.booking_id, admin_id, amount, reason=refund.reason, external_reference=external_reference
            )
        logger.info("Refund %s processed manually (%s)", refund_id, external_reference)
        return PolicyResult.allow(status=RefundStatus.COMPLETED.value)

    async def retry_queued_refund(self, queue_id: int) -> PolicyResult:
        """One bounded retry of a failed automatic refund."""
        async with self.session_factory() as session:
            async with session.begin():
                item = await session.get(RefundQueueItem, queue_id)
                if item is None:
                    raise NotFoundError(f"queue item {queue_id} not found")
                if item.status == QueueStatus.COMPLETED:
                    return PolicyResult.reject("already_completed")
                if item.status == QueueStatus.ESCALATED or item.attempts >= item.max_attempts:
                    item.status = QueueStatus.ESCALATED
                    item.updated_at = utc_now()
                    logger.info("Refund queue item %s refused: max attempts (%s)", queue_id, item.max_attempts)
                    return PolicyResult.reject("max_attempts_reached", message=_MAX_ATTEMPTS_MESSAGE, attempts=item.attempts)
                res = await session.execute(
                    update(RefundQueueItem)
                    .where(
                        RefundQueueItem.id == queue_id,
                        RefundQueueItem.status.in_((QueueStatus.PENDING, QueueStatus.FAILED)),
                        RefundQueueItem.attempts < RefundQueueItem.max_attempts,
                    )
                    .values(status=QueueStatus.PROCESSING, attempts=RefundQueueItem.attempts + 1, updated_at=utc_now())
                    .execution_options(synchronize_session=False)
                )
                if not res.rowcount:
                    raise ConflictError(f"queue item {queue_id} is being processed")
                attempts = int(item.attempts) + 1
                max_attempts = int(item.max_attempts)

        try:
            settlement = await self.escrow.find_settlement(item.booking_id)
            if settlement is not None and settlement.state in PRE_RELEASE_STATES:
                await self.escrow.refund(item.booking_id, None, int(item.amount_cents), reason="queued retry")
            elif settlement is not None and settlement.state != SettlementState.REFUNDED:
                raise SettlementConflictError(item.booking_id, settlement.state.value, "retry refund")
        except (PaymentGatewayError, SettlementConflictError) as e:
            exhausted = attempts >= max_attempts or isinstance(e, SettlementConflictError)
            status = QueueStatus.ESCALATED if exhausted else QueueStatus.FAILED
            await self._finish_item(queue_id, status, str(e))
            logger.warning("Refund retry %s/%s for queue item %s failed: %s", attempts, max_attempts, queue_id, e)
            return PolicyResult.reject(
                "max_attempts_reached" if status == QueueStatus.ESCALATED else "payment_failed",
                message=_MAX_ATTEMPTS_MESSAGE if status == QueueStatus.ESCALATED else str(e),
                attempts=attempts,
            )
        await self._finish_item(queue_id, QueueStatus.COMPLETED, None)
        logger.info("Refund queue item %s completed on attempt %s", queue_id, attempts)
        return PolicyResult.allow(status=QueueStatus.COMPLETED.value, attempts=attempts)

    async def _finish_item(self, queue_id: int, status: QueueStatus, error: str | None) -> None:
        async with self.session_factory() as session:
            async with session.begin():
                await session.execute(
                    update(RefundQueueItem)
                    .where(RefundQueueItem.id == queue_id, RefundQueueItem.status == QueueStatus.PROCESSING)
                    .values(status=status, last_error=error, updated_at=utc_now())
                )

    # ---------------- reads ----------------

    async def _booking(self, booking_id: int) -> Booking:
        async with self.session_factory() as session:
            booking = await session.get(Booking, booking_id)
        if booking is None:
            raise NotFoundError(f"booking {booking_id} not found")
        return booking

    async def get_refund(self, refund_id: int) -> RefundRequest:
        async with self.session_factory() as session:
            return await self._get_refund(session, refund_id)

    async def list_refunds(self, status: RefundStatus | str | None = None) -> list[RefundRequest]:
        async with self.session_factory() as session:
            stmt = select(RefundRequest).order_by(RefundRequest.created_at.desc(), RefundRequest.id.desc())
            if status is not None:
                stmt = stmt.where(RefundRequest.status == RefundStatus(status))
            res = await session.execute(stmt)
            return list(res.scalars().all())

    async def list_queue(self, status: QueueStatus | str | None = None) -> list[RefundQueueItem]:
        async with self.session_factory() as session:
            stmt = select(RefundQueueItem).order_by(RefundQueueItem.created_at, RefundQueueItem.id)
            if status is not None:
                stmt = stmt.where(RefundQueueItem.status == QueueStatus(status))
            res = await session.execute(stmt)
            return list(res.scalars().all())

    async def overdue_refunds(self, now: datetime | None = None) -> list[RefundRequest]:
        """Pending requests older than the promised processing window."""
        window = timedelta(hours=REFUND_PROCESSING_HOURS)
        pending = await self.list_refunds(RefundStatus.PENDING)
        overdue = []
        for request in pending:
            age = elapsed_since(request.created_at, now)
            if age is not None and age > window:
                overdue.append(request)
        return overdue

    async def customer_refund_stats(self, user_id: int) -> dict[str, int]:
        async with self.session_factory() as session:
            rows = await session.execute(
                select(RefundRequest.status, func.count(), func.coalesce(func.sum(RefundRequest.amount_cents), 0))
                .join(Booking, Booking.id == RefundRequest.booking_id)
                .where(Booking.customer_id == user_id)
                .group_by(RefundRequest.status)
            )
            by_status = {RefundStatus(s): (int(n), int(total)) for s, n, total in rows.all()}
        return {
            "total_refunds": sum(n for n, _ in by_status.values()),
            "pending_refunds": by_status.get(RefundStatus.PENDING, (0, 0))[0],
            "completed_refunds": by_status.get(RefundStatus.COMPLETED, (0, 0))[0],
            "total_refunded_cents": by_status.get(RefundStatus.COMPLETED, (0, 0))[1],
        }


__all__ = [
    "REFUND_REASONS",
    "RefundEligibility",
    "refund_policy_summary",
    "refund_tier",
    "evaluate_eligibility",
    "RefundPolicyEngine",
]
