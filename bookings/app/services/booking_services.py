from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, time
from typing import Any

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from bookings.app.core.constants import SLOT_STEP_MINUTES
from bookings.app.core.errors import NotFoundError, PolicyResult, SlotUnavailableError
from bookings.app.core.notifications import NotificationEvent, Notifier, dispatch
from bookings.app.domain.models import (
    TERMINAL_BOOKING_STATUSES,
    Booking,
    BookingStatus,
    TimelineEvent,
    UserRole,
)
from bookings.app.services import shared_services
from bookings.app.services.availability_services import AvailabilityResolver, slot_cells
from bookings.app.services.shared_services import add_minutes, append_timeline_event, utc_now
from bookings.app.services.trust_services import TrustContext, TrustProfileService, enforce

logger = logging.getLogger(__name__)

_OPEN_STATUSES = tuple(s for s in BookingStatus if s not in TERMINAL_BOOKING_STATUSES)


@dataclass(frozen=True)
class BookingRequest:
    customer_id: int
    provider_id: int
    service_date: date
    start_time: time
    duration_minutes: int
    title: str
    price_cents: int
    listing_id: int | None = None


@dataclass(frozen=True)
class ReservationResult:
    ok: bool
    booking_id: int | None = None
    reason: str | None = None
    retry: bool = False
    warnings: tuple[str, ...] = ()
    details: dict[str, Any] = field(default_factory=dict)

    def __bool__(self) -> bool:
        return self.ok


def booking_end_time(start_time: time, duration_minutes: int, step: int = SLOT_STEP_MINUTES) -> time:
    """End of a booking; validates grid alignment and duration."""
    duration = int(duration_minutes)
    if duration <= 0 or duration % step != 0:
        raise ValueError("duration must be a positive multiple of %s minutes" % step)
    end = add_minutes(start_time, duration)
    slot_cells(start_time, end, step)
    return end


class BookingService:
    """Single-booking lifecycle: create, cancel, no-show and lookups."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        resolver: AvailabilityResolver,
        trust: TrustProfileService,
        notifier: Notifier | None = None,
    ):
        self.session_factory = session_factory
        self.resolver = resolver
        self.trust = trust
        self.notifier = notifier

    async def persist_booking(
        self,
        session: AsyncSession,
        request: BookingRequest,
        *,
        end_time: time,
        no_show_fee_cents: int | None = None,
        recurring_booking_id: int | None = None,
    ) -> Booking:
        """Insert booking + reserved slots in the caller's transaction.

        Writes before it reads so concurrent callers serialize on the
        reserved-slot index instead of deadlocking on an upgraded read lock.
        """
        booking = Booking(
            customer_id=request.customer_id,
            provider_id=request.provider_id,
            listing_id=request.listing_id,
            title=request.title,
            price_cents=int(request.price_cents),
            service_date=request.service_date,
            start_time=request.start_time,
            end_time=end_time,
            status=BookingStatus.CONFIRMED,
            recurring_booking_id=recurring_booking_id,
            no_show_fee_cents=no_show_fee_cents,
            refund_requested=False,
            created_at=utc_now(),
        )
        session.add(booking)
        await session.flush()
        await self.resolver.reserve(session, booking)
        append_timeline_event(
            session,
            booking.id,
            "booking_created",
            f"Booking for {request.service_date.isoformat()} {request.start_time.strftime('%H:%M')} created",
            actor_id=request.customer_id,
            metadata={"recurring_booking_id": recurring_booking_id} if recurring_booking_id else None,
        )
        return booking

    async def create_booking(self, request: BookingRequest, trust_context: TrustContext | None = None) -> ReservationResult:
        if int(request.price_cents) < 0:
            raise ValueError("price_cents must not be negative")
        end_time = booking_end_time(request.start_time, request.duration_minutes)
        ctx = trust_context or TrustContext()

        decision = await self.trust.evaluate_user(request.customer_id, UserRole.CUSTOMER, ctx)
        policy = enforce(decision, ctx)
        if not policy:
            logger.info("create_booking: customer %s rejected by trust gate: %s", request.customer_id, policy.reason)
            return ReservationResult(ok=False, reason=policy.reason, warnings=decision.warnings)

        check = await self.resolver.check_range(
            request.provider_id, request.service_date, request.start_time, end_time, request.listing_id
        )
        if not check:
            logger.info(
                "create_booking: provider %s %s %s unavailable: %s",
                request.provider_id,
                request.service_date,
                request.start_time,
                check.reason,
            )
            return ReservationResult(ok=False, reason=check.reason, warnings=decision.warnings, details=check.details)

        try:
            async with self.session_factory() as session:
                async with session.begin():
                    booking = await self.persist_booking(
                        session,
                        request,
                        end_time=end_time,
                        no_show_fee_cents=ctx.no_show_fee_cents if decision.required_no_show_fee else None,
                    )
        except SlotUnavailableError:
            return ReservationResult(ok=False, reason="slot_unavailable", retry=True, warnings=decision.warnings)

        logger.info(
            "Booking %s created: customer=%s provider=%s %s %s-%s",
            booking.id,
            request.customer_id,
            request.provider_id,
            request.service_date,
            request.start_time,
            end_time,
        )
        await dispatch(
            self.notifier,
            NotificationEvent(
                kind="booking_created",
                booking_id=booking.id,
                message=f"New booking #{booking.id} on {request.service_date.isoformat()} at {request.start_time.strftime('%H:%M')}",
                recipients=(request.provider_id,),
            ),
        )
        return ReservationResult(ok=True, booking_id=booking.id, warnings=decision.warnings)

    async def _close(
        self,
        booking_id: int,
        actor_id: int | None,
        target: BookingStatus,
        event_type: str,
        description: str,
        *,
        at_fault: tuple[int, UserRole] | None = None,
        reason: str | None = None,
    ) -> PolicyResult:
        async with self.session_factory() as session:
            async with session.begin():
                booking = await session.get(Booking, booking_id)
                if booking is None:
                    raise NotFoundError(f"booking {booking_id} not found")
                values: dict[str, Any] = {"status": target}
                if target == BookingStatus.CANCELLED:
                    values["cancelled_at"] = utc_now()
                    values["cancellation_reason"] = reason
                res = await session.execute(
                    update(Booking)
                    .where(Booking.id == booking_id, Booking.status.in_(_OPEN_STATUSES))
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                if not res.rowcount:
                    return PolicyResult.reject("booking_closed", status=getattr(booking.status, "value", booking.status))
                await self.resolver.release(session, booking_id)
                append_timeline_event(session, booking_id, event_type, description, actor_id=actor_id,
                                      metadata={"reason": reason} if reason else None)
                if at_fault is not None:
                    await self.trust.record_incident(at_fault[0], at_fault[1], kind=event_type, session=session)
                recipients = (booking.customer_id, booking.provider_id)
        logger.info("Booking %s -> %s by %s", booking_id, target.value, actor_id)
        await dispatch(
            self.notifier,
            NotificationEvent(kind=event_type, booking_id=booking_id, message=description, recipients=recipients),
        )
        return PolicyResult.allow(status=target.value)

    async def cancel_booking(self, booking_id: int, actor_id: int, reason: str | None = None) -> PolicyResult:
        booking = await self.get_booking(booking_id)
        at_fault: tuple[int, UserRole] | None = None
        if actor_id == booking.customer_id:
            at_fault = (booking.customer_id, UserRole.CUSTOMER)
        elif actor_id == booking.provider_id:
            at_fault = (booking.provider_id, UserRole.PROVIDER)
        return await self._close(
            booking_id,
            actor_id,
            BookingStatus.CANCELLED,
            "booking_cancelled",
            f"Booking #{booking_id} cancelled",
            at_fault=at_fault,
            reason=reason,
        )

    async def mark_no_show(self, booking_id: int, actor_id: int, role_at_fault: UserRole | str = UserRole.CUSTOMER) -> PolicyResult:
        booking = await self.get_booking(booking_id)
        role = UserRole(role_at_fault)
        if role == UserRole.CUSTOMER:
            at_fault = (booking.customer_id, role)
        elif role == UserRole.PROVIDER:
            at_fault = (booking.provider_id, role)
        else:
            raise ValueError("role_at_fault must be customer or provider")
        return await self._close(
            booking_id,
            actor_id,
            BookingStatus.NO_SHOW,
            "booking_no_show",
            f"Booking #{booking_id} marked as no-show ({role.value})",
            at_fault=at_fault,
        )

    async def get_booking(self, booking_id: int) -> Booking:
        async with self.session_factory() as session:
            booking = await session.get(Booking, booking_id)
        if booking is None:
            raise NotFoundError(f"booking {booking_id} not found")
        return booking

    async def list_timeline(self, booking_id: int) -> list[TimelineEvent]:
        async with self.session_factory() as session:
            return await shared_services.list_timeline(session, booking_id)


__all__ = ["BookingRequest", "ReservationResult", "BookingService", "booking_end_time"]
