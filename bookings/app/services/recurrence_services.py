"""Recurring booking series.

Date arithmetic lives in pure functions (``next_occurrence``,
``occurrence_dates``) that never consult availability. ``RecurrenceExpander``
turns due dates into bookings one at a time; each draft goes through the
availability check and the reserved-slot guard on its own, and the series
moves on whether the draft was booked or recorded as a conflict.
"""

from __future__ import annotations

import calendar
import logging
from dataclasses import dataclass, field
from datetime import date, time, timedelta
from typing import Any, Iterable

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from bookings.app.core.constants import RECURRENCE_MATERIALIZE_BATCH, RECURRENCE_MAX_OCCURRENCES
from bookings.app.core.errors import InvalidPatternError, NotFoundError, SlotUnavailableError
from bookings.app.domain.models import (
    Frequency,
    OccurrenceStatus,
    RecurringOccurrence,
    RecurringSeries,
)
from bookings.app.services.availability_services import AvailabilityResolver
from bookings.app.services.booking_services import BookingRequest, BookingService, booking_end_time
from bookings.app.services.shared_services import local_today, utc_now
from bookings.config import get_recurrence_horizon_days

logger = logging.getLogger(__name__)

_DAY_NAMES = ("Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun")


@dataclass(frozen=True)
class RecurrencePattern:
    frequency: Frequency
    interval: int = 1
    days_of_week: tuple[int, ...] = ()
    day_of_month: int | None = None
    end_date: date | None = None
    occurrences: int | None = None

    @classmethod
    def from_series(cls, series: RecurringSeries) -> "RecurrencePattern":
        return cls(
            frequency=Frequency(series.frequency),
            interval=int(series.interval or 1),
            days_of_week=tuple(series.days_of_week or ()),
            day_of_month=series.day_of_month,
            end_date=series.end_date,
            occurrences=series.max_occurrences,
        )


def validate_pattern(pattern: RecurrencePattern) -> RecurrencePattern:
    """Return ``pattern`` with a normalized frequency or raise InvalidPatternError."""
    try:
        frequency = Frequency(pattern.frequency)
    except ValueError as e:
        raise InvalidPatternError(f"unknown frequency {pattern.frequency!r}") from e
    if int(pattern.interval) < 1:
        raise InvalidPatternError("Interval must be at least 1")
    if pattern.day_of_month is not None and not 1 <= int(pattern.day_of_month) <= 31:
        raise InvalidPatternError("Day of month must be between 1 and 31")
    for d in pattern.days_of_week:
        if not 0 <= int(d) <= 6:
            raise InvalidPatternError("days_of_week values must be 0..6 (Monday=0)")
    if pattern.occurrences is not None and int(pattern.occurrences) < 1:
        raise InvalidPatternError("Number of occurrences must be at least 1")
    return RecurrencePattern(
        frequency=frequency,
        interval=int(pattern.interval),
        days_of_week=tuple(sorted({int(d) for d in pattern.days_of_week})),
        day_of_month=int(pattern.day_of_month) if pattern.day_of_month is not None else None,
        end_date=pattern.end_date,
        occurrences=int(pattern.occurrences) if pattern.occurrences is not None else None,
    )


def _week_period(pattern: RecurrencePattern) -> int:
    return pattern.interval * (2 if pattern.frequency == Frequency.BIWEEKLY else 1)


def _monthly_date(year: int, month: int, target_day: int) -> date:
    # Short months clamp to their last day (31st -> 30th / 28th / 29th).
    return date(year, month, min(target_day, calendar.monthrange(year, month)[1]))


def _add_months(year: int, month: int, months: int) -> tuple[int, int]:
    idx = year * 12 + (month - 1) + months
    return idx // 12, idx % 12 + 1


def matches(pattern: RecurrencePattern, day: date, anchor: date) -> bool:
    """True when ``day`` is an occurrence of a series that started at ``anchor``."""
    if day < anchor:
        return False
    if pattern.end_date is not None and day > pattern.end_date:
        return False
    freq = Frequency(pattern.frequency)
    if freq == Frequency.DAILY:
        return (day - anchor).days % pattern.interval == 0
    if freq in (Frequency.WEEKLY, Frequency.BIWEEKLY):
        anchor_monday = anchor - timedelta(days=anchor.weekday())
        week_idx = (day - anchor_monday).days // 7
        if week_idx % _week_period(pattern) != 0:
            return False
        return day.weekday() in (pattern.days_of_week or (anchor.weekday(),))
    months = (day.year - anchor.year) * 12 + (day.month - anchor.month)
    if months % pattern.interval != 0:
        return False
    return day == _monthly_date(day.year, day.month, pattern.day_of_month or anchor.day)


def next_occurrence(pattern: RecurrencePattern, from_date: date, anchor: date | None = None) -> date | None:
    """First occurrence strictly after ``from_date``; None once past ``end_date``."""
    anchor = anchor or from_date
    start = max(from_date + timedelta(days=1), anchor)
    freq = Frequency(pattern.frequency)
    result: date | None = None

    if freq == Frequency.DAILY:
        offset = (start - anchor).days
        steps = -(-offset // pattern.interval)
        result = anchor + timedelta(days=steps * pattern.interval)
    elif freq in (Frequency.WEEKLY, Frequency.BIWEEKLY):
        # Within (period + 1) weeks of ``start`` an aligned week with a
        # selected weekday always exists.
        for i in range(7 * (_week_period(pattern) + 1)):
            candidate = start + timedelta(days=i)
            if matches(RecurrencePattern(freq, pattern.interval, pattern.days_of_week), candidate, anchor):
                result = candidate
                break
    else:
        target_day = pattern.day_of_month or anchor.day
        months = (start.year - anchor.year) * 12 + (start.month - anchor.month)
        k = -(-months // pattern.interval) * pattern.interval
        while True:
            y, m = _add_months(anchor.year, anchor.month, k)
            candidate = _monthly_date(y, m, target_day)
            if candidate >= start:
                result = candidate
                break
            k += pattern.interval

    if result is not None and pattern.end_date is not None and result > pattern.end_date:
        return None
    return result


def first_on_or_after(pattern: RecurrencePattern, day: date, anchor: date) -> date | None:
    day = max(day, anchor)
    if matches(pattern, day, anchor):
        return day
    return next_occurrence(pattern, day, anchor)


def occurrence_dates(pattern: RecurrencePattern, start_date: date, limit: int | None = None) -> list[date]:
    """Occurrence dates of a series starting at ``start_date``, in order."""
    pattern = validate_pattern(pattern)
    cap = RECURRENCE_MAX_OCCURRENCES
    if pattern.occurrences is not None:
        cap = min(cap, pattern.occurrences)
    if limit is not None:
        cap = min(cap, int(limit))
    out: list[date] = []
    current = first_on_or_after(pattern, start_date, start_date)
    while current is not None and len(out) < cap:
        out.append(current)
        current = next_occurrence(pattern, current, start_date)
    return out


def describe_pattern(pattern: RecurrencePattern) -> str:
    freq = Frequency(pattern.frequency)
    unit = {
        Frequency.DAILY: ("Daily", "days"),
        Frequency.WEEKLY: ("Weekly", "weeks"),
        Frequency.BIWEEKLY: ("Every 2 weeks", "2 weeks"),
        Frequency.MONTHLY: ("Monthly", "months"),
    }[freq]
    text = unit[0] if pattern.interval == 1 else f"Every {pattern.interval} {unit[1]}"
    if freq in (Frequency.WEEKLY, Frequency.BIWEEKLY) and pattern.days_of_week:
        text += " on " + ", ".join(_DAY_NAMES[d] for d in pattern.days_of_week)
    if freq == Frequency.MONTHLY and pattern.day_of_month:
        text += f" on day {pattern.day_of_month}"
    if pattern.end_date:
        text += f" until {pattern.end_date.isoformat()}"
    elif pattern.occurrences:
        text += f" for {pattern.occurrences} occurrences"
    return text


@dataclass(frozen=True)
class OccurrenceDraft:
    occurrence_date: date
    status: OccurrenceStatus
    booking_id: int | None = None
    conflict_reason: str | None = None


@dataclass(frozen=True)
class OccurrencePreview:
    occurrence_date: date
    has_conflict: bool
    conflict_reason: str | None = None


@dataclass
class SeriesPreview:
    occurrences: list[OccurrencePreview] = field(default_factory=list)
    estimated_cost_cents: int = 0

    @property
    def total_occurrences(self) -> int:
        return len(self.occurrences)

    def as_dict(self) -> dict[str, Any]:
        dates = [o.occurrence_date for o in self.occurrences]
        return {
            "occurrences": [
                {
                    "date": o.occurrence_date.isoformat(),
                    "has_conflict": o.has_conflict,
                    "conflict_reason": o.conflict_reason,
                }
                for o in self.occurrences
            ],
            "total_occurrences": self.total_occurrences,
            "estimated_cost_cents": self.estimated_cost_cents,
            "date_range": {
                "start": dates[0].isoformat() if dates else None,
                "end": dates[-1].isoformat() if dates else None,
            },
        }


class RecurrenceExpander:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        resolver: AvailabilityResolver,
        bookings: BookingService,
    ):
        self.session_factory = session_factory
        self.resolver = resolver
        self.bookings = bookings

    async def preview(
        self,
        provider_id: int,
        start_date: date,
        start_time: time,
        duration_minutes: int,
        pattern: RecurrencePattern,
        price_cents: int,
        listing_id: int | None = None,
        limit: int | None = None,
    ) -> SeriesPreview:
        end_time = booking_end_time(start_time, duration_minutes)
        result = SeriesPreview()
        for day in occurrence_dates(pattern, start_date, limit):
            check = await self.resolver.check_range(provider_id, day, start_time, end_time, listing_id)
            result.occurrences.append(OccurrencePreview(day, not check.ok, check.reason))
        result.estimated_cost_cents = result.total_occurrences * int(price_cents)
        return result

    async def create_series(
        self,
        *,
        customer_id: int,
        provider_id: int,
        title: str,
        price_cents: int,
        start_date: date,
        start_time: time,
        duration_minutes: int,
        pattern: RecurrencePattern,
        listing_id: int | None = None,
    ) -> RecurringSeries:
        pattern = validate_pattern(pattern)
        booking_end_time(start_time, duration_minutes)
        first = first_on_or_after(pattern, start_date, start_date)
        series = RecurringSeries(
            provider_id=provider_id,
            customer_id=customer_id,
            listing_id=listing_id,
            title=title,
            price_cents=int(price_cents),
            duration_minutes=int(duration_minutes),
            start_time=start_time,
            frequency=pattern.frequency,
            interval=pattern.interval,
            days_of_week=list(pattern.days_of_week) or None,
            day_of_month=pattern.day_of_month,
            end_date=pattern.end_date,
            max_occurrences=pattern.occurrences,
            start_date=start_date,
            next_occurrence_date=first,
            created_bookings=0,
            is_active=first is not None,
            created_at=utc_now(),
        )
        async with self.session_factory() as session:
            async with session.begin():
                session.add(series)
        logger.info(
            "Recurring series %s created: %s, first=%s",
            series.id,
            describe_pattern(pattern),
            first,
        )
        return series

    async def get_series(self, series_id: int) -> RecurringSeries:
        async with self.session_factory() as session:
            series = await session.get(RecurringSeries, series_id)
        if series is None:
            raise NotFoundError(f"recurring series {series_id} not found")
        return series

    async def list_occurrences(self, series_id: int) -> list[RecurringOccurrence]:
        async with self.session_factory() as session:
            res = await session.execute(
                select(RecurringOccurrence)
                .where(RecurringOccurrence.series_id == series_id)
                .order_by(RecurringOccurrence.occurrence_date)
            )
            return list(res.scalars().all())

    @staticmethod
    async def _recorded_count(session: AsyncSession, series_id: int) -> int:
        return int(
            await session.scalar(
                select(func.count()).select_from(RecurringOccurrence).where(RecurringOccurrence.series_id == series_id)
            )
            or 0
        )

    def _advance_values(self, series: RecurringSeries, pattern: RecurrencePattern, day: date, recorded: int) -> dict[str, Any]:
        nxt = next_occurrence(pattern, day, series.start_date)
        exhausted = nxt is None or (series.max_occurrences is not None and recorded >= series.max_occurrences)
        return {"next_occurrence_date": None if exhausted else nxt, "is_active": not exhausted}

    async def _record(
        self,
        series: RecurringSeries,
        pattern: RecurrencePattern,
        day: date,
        recorded: int,
        *,
        booked: bool,
        conflict_reason: str | None = None,
    ) -> OccurrenceDraft | None:
        """Persist one occurrence and advance the series in a single transaction.

        Returns None when another caller already recorded this date.
        """
        end_time = booking_end_time(series.start_time, series.duration_minutes)
        advance = self._advance_values(series, pattern, day, recorded + 1)
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    occ = RecurringOccurrence(
                        series_id=series.id,
                        occurrence_date=day,
                        status=OccurrenceStatus.CREATED if booked else OccurrenceStatus.CONFLICT,
                        conflict_reason=conflict_reason,
                        created_at=utc_now(),
                    )
                    session.add(occ)
                    await session.flush()
                    values = dict(advance)
                    if booked:
                        booking = await self.bookings.persist_booking(
                            session,
                            BookingRequest(
                                customer_id=series.customer_id,
                                provider_id=series.provider_id,
                                service_date=day,
                                start_time=series.start_time,
                                duration_minutes=series.duration_minutes,
                                title=series.title,
                                price_cents=series.price_cents,
                                listing_id=series.listing_id,
                            ),
                            end_time=end_time,
                            recurring_booking_id=series.id,
                        )
                        occ.booking_id = booking.id
                        values["created_bookings"] = RecurringSeries.created_bookings + 1
                    await session.execute(
                        update(RecurringSeries)
                        .where(RecurringSeries.id == series.id)
                        .values(**values)
                        .execution_options(synchronize_session=False)
                    )
        except IntegrityError:
            logger.info("materialize: series %s date %s already recorded", series.id, day)
            await self._skip_recorded(series.id, day, self._advance_values(series, pattern, day, recorded))
            return None
        return OccurrenceDraft(
            occurrence_date=day,
            status=occ.status,
            booking_id=occ.booking_id,
            conflict_reason=conflict_reason,
        )

    async def _skip_recorded(self, series_id: int, day: date, advance: dict[str, Any]) -> None:
        # Only move a series still pointing at the duplicate date.
        async with self.session_factory() as session:
            async with session.begin():
                await session.execute(
                    update(RecurringSeries)
                    .where(RecurringSeries.id == series_id, RecurringSeries.next_occurrence_date == day)
                    .values(**advance)
                    .execution_options(synchronize_session=False)
                )

    async def materialize(self, series_id: int, count: int = RECURRENCE_MATERIALIZE_BATCH, until: date | None = None) -> list[OccurrenceDraft]:
        """Materialize up to ``count`` due occurrences of an active series."""
        if int(count) < 1:
            raise ValueError("count must be at least 1")
        drafts: list[OccurrenceDraft] = []
        for _ in range(int(count)):
            async with self.session_factory() as session:
                series = await session.get(RecurringSeries, series_id)
                if series is None:
                    raise NotFoundError(f"recurring series {series_id} not found")
                recorded = await self._recorded_count(session, series_id)
            if not series.is_active or series.next_occurrence_date is None:
                break
            day = series.next_occurrence_date
            if until is not None and day > until:
                break
            pattern = RecurrencePattern.from_series(series)
            if series.max_occurrences is not None and recorded >= series.max_occurrences:
                await self._deactivate(series_id)
                break

            end_time = booking_end_time(series.start_time, series.duration_minutes)
            check = await self.resolver.check_range(series.provider_id, day, series.start_time, end_time, series.listing_id)
            draft: OccurrenceDraft | None
            if check.ok:
                try:
                    draft = await self._record(series, pattern, day, recorded, booked=True)
                except SlotUnavailableError:
                    draft = await self._record(series, pattern, day, recorded, booked=False, conflict_reason="slot_unavailable")
            else:
                draft = await self._record(series, pattern, day, recorded, booked=False, conflict_reason=check.reason)
            if draft is None:
                continue
            drafts.append(draft)
            logger.info(
                "Series %s occurrence %s: %s%s",
                series_id,
                day,
                draft.status.value,
                f" ({draft.conflict_reason})" if draft.conflict_reason else "",
            )
        return drafts

    async def _deactivate(self, series_id: int) -> None:
        async with self.session_factory() as session:
            async with session.begin():
                await session.execute(
                    update(RecurringSeries)
                    .where(RecurringSeries.id == series_id)
                    .values(is_active=False, next_occurrence_date=None)
                )

    async def pause_series(self, series_id: int) -> RecurringSeries:
        async with self.session_factory() as session:
            async with session.begin():
                series = await session.get(RecurringSeries, series_id)
                if series is None:
                    raise NotFoundError(f"recurring series {series_id} not found")
                series.is_active = False
        logger.info("Recurring series %s paused", series_id)
        return series

    async def resume_series(self, series_id: int, today: date | None = None) -> RecurringSeries:
        """Reactivate from ``today`` forward; missed dates are not backfilled.

        Dates already materialized are never revisited, so a series resumed
        before its last recorded date picks up after it.
        """
        today = today or local_today()
        async with self.session_factory() as session:
            async with session.begin():
                series = await session.get(RecurringSeries, series_id)
                if series is None:
                    raise NotFoundError(f"recurring series {series_id} not found")
                pattern = RecurrencePattern.from_series(series)
                recorded = await self._recorded_count(session, series_id)
                last = await session.scalar(
                    select(func.max(RecurringOccurrence.occurrence_date)).where(RecurringOccurrence.series_id == series_id)
                )
                start = max(today, last + timedelta(days=1)) if last is not None else today
                nxt = first_on_or_after(pattern, start, series.start_date)
                exhausted = nxt is None or (series.max_occurrences is not None and recorded >= series.max_occurrences)
                series.next_occurrence_date = None if exhausted else nxt
                series.is_active = not exhausted
        logger.info("Recurring series %s resumed: next=%s", series_id, series.next_occurrence_date)
        return series

    async def materialize_due(self, today: date | None = None, horizon_days: int | None = None) -> dict[int, list[OccurrenceDraft]]:
        """Materialize every active series whose next date falls inside the horizon."""
        today = today or local_today()
        horizon = today + timedelta(days=horizon_days if horizon_days is not None else get_recurrence_horizon_days())
        async with self.session_factory() as session:
            res = await session.execute(
                select(RecurringSeries.id).where(
                    RecurringSeries.is_active.is_(True),
                    RecurringSeries.next_occurrence_date.is_not(None),
                    RecurringSeries.next_occurrence_date <= horizon,
                )
            )
            series_ids: Iterable[int] = list(res.scalars().all())
        out: dict[int, list[OccurrenceDraft]] = {}
        for sid in series_ids:
            drafts: list[OccurrenceDraft] = []
            while True:
                batch = await self.materialize(sid, RECURRENCE_MATERIALIZE_BATCH, until=horizon)
                drafts.extend(batch)
                if len(batch) < RECURRENCE_MATERIALIZE_BATCH:
                    break
            out[sid] = drafts
        return out


__all__ = [
    "RecurrencePattern",
    "validate_pattern",
    "matches",
    "next_occurrence",
    "first_on_or_after",
    "occurrence_dates",
    "describe_pattern",
    "OccurrenceDraft",
    "OccurrencePreview",
    "SeriesPreview",
    "RecurrenceExpander",
]
