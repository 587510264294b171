"""Provider availability: which 30-minute slots can be booked on a date.

Resolution is a precedence pipeline of pure stages over an immutable tuple
of candidate slots:

1. absolute overrides (date-range ``Blocked`` rules, ``Unavailable``
   exceptions) empty the day;
2. recurring ``Available`` rules for the weekday are expanded on the grid;
3. active reservations mark overlapping slots unavailable.

The read path is advisory. ``reserve`` is what actually claims time: it
inserts one ``ReservedSlot`` per grid cell and relies on the partial unique
index ``ux_reserved_slots_active`` to reject a concurrent double booking.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, time
from typing import Iterable, Sequence

from sqlalchemy import and_, delete, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from bookings.app.core.constants import SLOT_STEP_MINUTES
from bookings.app.core.errors import NotFoundError, PolicyResult, SlotUnavailableError
from bookings.app.domain.models import (
    BLOCKING_SLOT_STATUSES,
    AvailabilityException,
    AvailabilityRule,
    Booking,
    ExceptionType,
    ReservedSlot,
    RuleType,
    SlotStatus,
)
from bookings.app.services.shared_services import minutes_to_time, time_to_minutes, utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Slot:
    start_time: time
    end_time: time
    available: bool = True

    def as_dict(self) -> dict:
        return {
            "start_time": self.start_time.strftime("%H:%M"),
            "end_time": self.end_time.strftime("%H:%M"),
            "available": self.available,
        }


# ---------------- Pure pipeline stages ----------------


def overlaps(a_start: time, a_end: time, b_start: time, b_end: time) -> bool:
    """Half-open interval intersection; touching boundaries do not overlap."""
    return a_start < b_end and b_start < a_end


def absolute_override_applies(
    day: date,
    blocked_rules: Iterable[AvailabilityRule],
    exceptions: Iterable[AvailabilityException],
) -> bool:
    for rule in blocked_rules:
        if rule.rule_type != RuleType.BLOCKED or rule.is_recurring:
            continue
        if rule.start_date is None or rule.end_date is None:
            continue
        if rule.start_date <= day <= rule.end_date:
            return True
    for exc in exceptions:
        if exc.exception_date == day and exc.exception_type == ExceptionType.UNAVAILABLE:
            return True
    return False


def expand_rule_slots(
    rules: Iterable[AvailabilityRule],
    day: date,
    step: int = SLOT_STEP_MINUTES,
) -> tuple[Slot, ...]:
    weekday = day.weekday()
    starts: set[int] = set()
    for rule in rules:
        if rule.rule_type != RuleType.AVAILABLE or not rule.is_recurring:
            continue
        if rule.day_of_week != weekday:
            continue
        cursor = time_to_minutes(rule.start_time)
        limit = time_to_minutes(rule.end_time)
        # Only whole steps that fit inside the rule are offered.
        while cursor + step <= limit:
            starts.add(cursor)
            cursor += step
    return tuple(
        Slot(minutes_to_time(m), minutes_to_time(m + step))
        for m in sorted(starts)
    )


def overlay_reservations(slots: Sequence[Slot], reserved: Iterable[ReservedSlot]) -> tuple[Slot, ...]:
    taken = [
        (r.start_time, r.end_time)
        for r in reserved
        if r.status in BLOCKING_SLOT_STATUSES
    ]
    out = []
    for slot in slots:
        busy = any(overlaps(slot.start_time, slot.end_time, s, e) for s, e in taken)
        out.append(Slot(slot.start_time, slot.end_time, slot.available and not busy))
    return tuple(out)


def slot_cells(start_time: time, end_time: time, step: int = SLOT_STEP_MINUTES) -> list[tuple[time, time]]:
    """Split ``[start_time, end_time)`` into grid cells.

    Raises ValueError unless the start sits on the grid and the duration is a
    positive multiple of ``step``.
    """
    start = time_to_minutes(start_time)
    end = time_to_minutes(end_time)
    if start % step != 0:
        raise ValueError("start_time must align to %s-minute grid" % step)
    if end <= start or (end - start) % step != 0:
        raise ValueError("duration must be a positive multiple of %s minutes" % step)
    return [(minutes_to_time(m), minutes_to_time(m + step)) for m in range(start, end, step)]


# ---------------- Queries ----------------


def _listing_scope(listing_id: int | None):
    if listing_id is None:
        return AvailabilityRule.listing_id.is_(None)
    return or_(AvailabilityRule.listing_id.is_(None), AvailabilityRule.listing_id == listing_id)


async def _load_rules(session: AsyncSession, provider_id: int, listing_id: int | None) -> list[AvailabilityRule]:
    res = await session.execute(
        select(AvailabilityRule).where(
            AvailabilityRule.provider_id == provider_id,
            _listing_scope(listing_id),
        )
    )
    return list(res.scalars().all())


async def _load_exceptions(session: AsyncSession, provider_id: int, day: date) -> list[AvailabilityException]:
    res = await session.execute(
        select(AvailabilityException).where(
            AvailabilityException.provider_id == provider_id,
            AvailabilityException.exception_date == day,
        )
    )
    return list(res.scalars().all())


async def _load_reserved(session: AsyncSession, provider_id: int, day: date) -> list[ReservedSlot]:
    res = await session.execute(
        select(ReservedSlot).where(
            ReservedSlot.provider_id == provider_id,
            ReservedSlot.booking_date == day,
            ReservedSlot.status.in_(tuple(BLOCKING_SLOT_STATUSES)),
        )
    )
    return list(res.scalars().all())


class AvailabilityResolver:
    """Slot resolution, reservation and provider rule authoring."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], *, step_minutes: int = SLOT_STEP_MINUTES):
        self.session_factory = session_factory
        self.step = int(step_minutes)

    # ---- read path ----

    async def _resolve(self, session: AsyncSession, provider_id: int, day: date, listing_id: int | None) -> tuple[bool, tuple[Slot, ...]]:
        rules = await _load_rules(session, provider_id, listing_id)
        exceptions = await _load_exceptions(session, provider_id, day)
        blocked = [r for r in rules if r.rule_type == RuleType.BLOCKED]
        if absolute_override_applies(day, blocked, exceptions):
            return True, ()
        slots = expand_rule_slots(rules, day, self.step)
        if not slots:
            return False, ()
        reserved = await _load_reserved(session, provider_id, day)
        return False, overlay_reservations(slots, reserved)

    async def resolve_slots(self, provider_id: int, day: date, listing_id: int | None = None) -> list[Slot]:
        async with self.session_factory() as session:
            overridden, slots = await self._resolve(session, provider_id, day, listing_id)
        if overridden:
            logger.debug("resolve_slots: provider=%s date=%s overridden", provider_id, day)
        return list(slots)

    async def check_range(
        self,
        provider_id: int,
        day: date,
        start_time: time,
        end_time: time,
        listing_id: int | None = None,
    ) -> PolicyResult:
        """Advisory check that every cell of the range is offered and free."""
        cells = slot_cells(start_time, end_time, self.step)
        async with self.session_factory() as session:
            overridden, slots = await self._resolve(session, provider_id, day, listing_id)
        if overridden:
            return PolicyResult.reject("blocked", date=day.isoformat())
        by_start = {s.start_time: s for s in slots}
        for cell_start, _cell_end in cells:
            slot = by_start.get(cell_start)
            if slot is None:
                return PolicyResult.reject("outside_hours", start_time=cell_start.strftime("%H:%M"))
            if not slot.available:
                return PolicyResult.reject("slot_taken", start_time=cell_start.strftime("%H:%M"))
        return PolicyResult.allow()

    # ---- write path (caller's transaction) ----

    async def reserve(self, session: AsyncSession, booking: Booking) -> list[ReservedSlot]:
        """Claim the booking's grid cells; raise SlotUnavailableError on a lost race."""
        rows = [
            ReservedSlot(
                booking_id=booking.id,
                provider_id=booking.provider_id,
                booking_date=booking.service_date,
                start_time=cell_start,
                end_time=cell_end,
                status=SlotStatus.RESERVED,
            )
            for cell_start, cell_end in slot_cells(booking.start_time, booking.end_time, self.step)
        ]
        session.add_all(rows)
        try:
            await session.flush()
        except IntegrityError as e:
            logger.info(
                "reserve: slot taken provider=%s date=%s %s-%s",
                booking.provider_id,
                booking.service_date,
                booking.start_time,
                booking.end_time,
            )
            raise SlotUnavailableError("slot no longer available; re-resolve and retry") from e
        return rows

    async def confirm(self, session: AsyncSession, booking_id: int) -> int:
        res = await session.execute(
            update(ReservedSlot)
            .where(ReservedSlot.booking_id == booking_id, ReservedSlot.status == SlotStatus.RESERVED)
            .values(status=SlotStatus.CONFIRMED)
        )
        return int(res.rowcount or 0)

    async def release(self, session: AsyncSession, booking_id: int) -> int:
        res = await session.execute(
            update(ReservedSlot)
            .where(
                ReservedSlot.booking_id == booking_id,
                ReservedSlot.status.in_(tuple(BLOCKING_SLOT_STATUSES)),
            )
            .values(status=SlotStatus.RELEASED)
        )
        released = int(res.rowcount or 0)
        logger.debug("release: booking=%s slots=%s", booking_id, released)
        return released

    # ---- provider authoring ----

    async def add_rule(
        self,
        provider_id: int,
        start_time: time,
        end_time: time,
        *,
        day_of_week: int | None = None,
        start_date: date | None = None,
        end_date: date | None = None,
        is_recurring: bool = True,
        rule_type: RuleType | str = RuleType.AVAILABLE,
        listing_id: int | None = None,
        reason: str | None = None,
    ) -> AvailabilityRule:
        rule_type = RuleType(rule_type)
        if start_time >= end_time:
            raise ValueError("start_time must be before end_time")
        for value in (start_time, end_time):
            if value.second or value.microsecond or time_to_minutes(value) % self.step:
                raise ValueError(f"rule times must fall on the {self.step}-minute slot grid")
        if is_recurring:
            if day_of_week is None:
                raise ValueError("recurring rules need day_of_week")
            if not 0 <= int(day_of_week) <= 6:
                raise ValueError("day_of_week must be 0..6 (Monday=0)")
        else:
            if start_date is None or end_date is None:
                raise ValueError("non-recurring rules need start_date and end_date")
            if start_date > end_date:
                raise ValueError("start_date must not be after end_date")
        rule = AvailabilityRule(
            provider_id=provider_id,
            listing_id=listing_id,
            day_of_week=int(day_of_week) if is_recurring else None,
            start_date=None if is_recurring else start_date,
            end_date=None if is_recurring else end_date,
            start_time=start_time,
            end_time=end_time,
            is_recurring=is_recurring,
            rule_type=rule_type,
            reason=reason,
            updated_at=utc_now(),
        )
        async with self.session_factory() as session:
            async with session.begin():
                session.add(rule)
        logger.info(
            "Availability rule %s added for provider %s (%s %s-%s)",
            rule.id,
            provider_id,
            rule_type.value,
            start_time,
            end_time,
        )
        return rule

    async def add_exception(
        self,
        provider_id: int,
        exception_date: date,
        reason: str | None = None,
    ) -> AvailabilityException:
        exc = AvailabilityException(
            provider_id=provider_id,
            exception_date=exception_date,
            exception_type=ExceptionType.UNAVAILABLE,
            reason=reason,
        )
        async with self.session_factory() as session:
            async with session.begin():
                session.add(exc)
        logger.info("Availability exception %s added for provider %s on %s", exc.id, provider_id, exception_date)
        return exc

    async def delete_rule(self, provider_id: int, rule_id: int) -> None:
        async with self.session_factory() as session:
            async with session.begin():
                res = await session.execute(
                    delete(AvailabilityRule).where(
                        and_(AvailabilityRule.id == rule_id, AvailabilityRule.provider_id == provider_id)
                    )
                )
                if not res.rowcount:
                    raise NotFoundError(f"rule {rule_id} not found")
        logger.info("Availability rule %s deleted by provider %s", rule_id, provider_id)

    async def delete_exception(self, provider_id: int, exception_id: int) -> None:
        async with self.session_factory() as session:
            async with session.begin():
                res = await session.execute(
                    delete(AvailabilityException).where(
                        AvailabilityException.id == exception_id,
                        AvailabilityException.provider_id == provider_id,
                    )
                )
                if not res.rowcount:
                    raise NotFoundError(f"exception {exception_id} not found")
        logger.info("Availability exception %s deleted by provider %s", exception_id, provider_id)

    async def list_rules(self, provider_id: int, listing_id: int | None = None) -> list[AvailabilityRule]:
        async with self.session_factory() as session:
            stmt = select(AvailabilityRule).where(AvailabilityRule.provider_id == provider_id)
            if listing_id is not None:
                stmt = stmt.where(_listing_scope(listing_id))
            res = await session.execute(
                stmt.order_by(AvailabilityRule.day_of_week, AvailabilityRule.start_date, AvailabilityRule.start_time)
            )
            return list(res.scalars().all())


__all__ = [
    "Slot",
    "overlaps",
    "absolute_override_applies",
    "expand_rule_slots",
    "overlay_reservations",
    "slot_cells",
    "AvailabilityResolver",
]
