from datetime import date, time

import pytest
from sqlalchemy import update

from bookings.app.core.errors import InvalidPatternError, NotFoundError
from bookings.app.domain.models import Frequency, OccurrenceStatus, RecurringSeries
from bookings.app.services.recurrence_services import (
    RecurrencePattern,
    describe_pattern,
    next_occurrence,
    occurrence_dates,
    validate_pattern,
)
from conftest import CUSTOMER_ID, MONDAY, OTHER_CUSTOMER_ID, PROVIDER_ID, booking_request

WEEKLY = RecurrencePattern(Frequency.WEEKLY)


def test_weekly_with_selected_days():
    pattern = RecurrencePattern("weekly", days_of_week=(0, 2))
    assert occurrence_dates(pattern, MONDAY, limit=4) == [
        date(2030, 1, 7),
        date(2030, 1, 9),
        date(2030, 1, 14),
        date(2030, 1, 16),
    ]


def test_biweekly_and_daily_intervals():
    biweekly = RecurrencePattern("biweekly")
    assert occurrence_dates(biweekly, MONDAY, limit=3) == [date(2030, 1, 7), date(2030, 1, 21), date(2030, 2, 4)]
    daily = RecurrencePattern("daily", interval=3)
    assert next_occurrence(daily, MONDAY) == date(2030, 1, 10)


def test_monthly_clamps_to_month_end():
    pattern = RecurrencePattern("monthly", day_of_month=31)
    assert occurrence_dates(pattern, date(2030, 1, 31), limit=4) == [
        date(2030, 1, 31),
        date(2030, 2, 28),
        date(2030, 3, 31),
        date(2030, 4, 30),
    ]


def test_end_date_and_occurrence_cap():
    until = RecurrencePattern("weekly", end_date=date(2030, 1, 20))
    assert occurrence_dates(until, MONDAY) == [date(2030, 1, 7), date(2030, 1, 14)]
    assert next_occurrence(until, date(2030, 1, 14), MONDAY) is None

    capped = RecurrencePattern("daily", occurrences=3)
    assert len(occurrence_dates(capped, MONDAY)) == 3


def test_validate_pattern_rejects_bad_input():
    with pytest.raises(InvalidPatternError):
        validate_pattern(RecurrencePattern("hourly"))
    with pytest.raises(InvalidPatternError):
        validate_pattern(RecurrencePattern("weekly", interval=0))
    with pytest.raises(InvalidPatternError):
        validate_pattern(RecurrencePattern("monthly", day_of_month=32))
    with pytest.raises(InvalidPatternError):
        validate_pattern(RecurrencePattern("weekly", days_of_week=(7,)))


def test_describe_pattern():
    assert describe_pattern(RecurrencePattern(Frequency.WEEKLY, days_of_week=(0, 4))) == "Weekly on Mon, Fri"
    assert describe_pattern(RecurrencePattern(Frequency.MONTHLY, interval=2, occurrences=6)) == "Every 2 months for 6 occurrences"


async def _weekly_series(services, **overrides):
    kwargs = dict(
        customer_id=CUSTOMER_ID,
        provider_id=PROVIDER_ID,
        title="Weekly tidy",
        price_cents=5000,
        start_date=MONDAY,
        start_time=time(9),
        duration_minutes=60,
        pattern=WEEKLY,
    )
    kwargs.update(overrides)
    return await services.recurrence.create_series(**kwargs)


@pytest.mark.asyncio
async def test_preview_flags_conflicts(services, monday_hours):
    await services.bookings.create_booking(booking_request(customer_id=OTHER_CUSTOMER_ID, day=date(2030, 1, 14)))
    preview = await services.recurrence.preview(PROVIDER_ID, MONDAY, time(9), 60, WEEKLY, 5000, limit=3)
    assert [o.has_conflict for o in preview.occurrences] == [False, True, False]
    assert preview.as_dict()["estimated_cost_cents"] == 15000


@pytest.mark.asyncio
async def test_materialize_records_conflicts_and_moves_on(services, monday_hours):
    await services.bookings.create_booking(booking_request(customer_id=OTHER_CUSTOMER_ID, day=date(2030, 1, 14)))
    series = await _weekly_series(services)

    drafts = await services.recurrence.materialize(series.id, count=3)
    assert [(d.occurrence_date, d.status) for d in drafts] == [
        (date(2030, 1, 7), OccurrenceStatus.CREATED),
        (date(2030, 1, 14), OccurrenceStatus.CONFLICT),
        (date(2030, 1, 21), OccurrenceStatus.CREATED),
    ]
    assert drafts[1].conflict_reason == "slot_taken"
    assert drafts[1].booking_id is None

    refreshed = await services.recurrence.get_series(series.id)
    assert refreshed.created_bookings == 2
    assert refreshed.next_occurrence_date == date(2030, 1, 28)

    booking = await services.bookings.get_booking(drafts[0].booking_id)
    assert booking.recurring_booking_id == series.id
    assert len(await services.recurrence.list_occurrences(series.id)) == 3


@pytest.mark.asyncio
async def test_series_ends_after_max_occurrences(services, monday_hours):
    series = await _weekly_series(services, pattern=RecurrencePattern(Frequency.WEEKLY, occurrences=2))
    drafts = await services.recurrence.materialize(series.id, count=5)
    assert len(drafts) == 2
    refreshed = await services.recurrence.get_series(series.id)
    assert refreshed.is_active is False
    assert refreshed.next_occurrence_date is None


@pytest.mark.asyncio
async def test_pause_and_resume_skip_missed_dates(services, monday_hours):
    series = await _weekly_series(services)
    await services.recurrence.pause_series(series.id)
    assert await services.recurrence.materialize(series.id) == []

    resumed = await services.recurrence.resume_series(series.id, today=date(2030, 2, 10))
    assert resumed.is_active
    assert resumed.next_occurrence_date == date(2030, 2, 11)


@pytest.mark.asyncio
async def test_materialize_due_stays_inside_horizon(services, monday_hours):
    series = await _weekly_series(services)
    result = await services.recurrence.materialize_due(today=MONDAY, horizon_days=7)
    assert [d.occurrence_date for d in result[series.id]] == [date(2030, 1, 7), date(2030, 1, 14)]


@pytest.mark.asyncio
async def test_unknown_series_and_bad_count(services):
    with pytest.raises(NotFoundError):
        await services.recurrence.get_series(404)
    with pytest.raises(ValueError):
        await services.recurrence.materialize(1, count=0)


@pytest.mark.asyncio
async def test_resume_continues_after_materialized_dates(services, monday_hours):
    series = await _weekly_series(services)
    first = await services.recurrence.materialize(series.id, count=2)
    assert [d.occurrence_date for d in first] == [date(2030, 1, 7), date(2030, 1, 14)]
    await services.recurrence.pause_series(series.id)

    resumed = await services.recurrence.resume_series(series.id, today=MONDAY)
    assert resumed.next_occurrence_date == date(2030, 1, 21)

    more = await services.recurrence.materialize(series.id, count=2)
    assert [d.occurrence_date for d in more] == [date(2030, 1, 21), date(2030, 1, 28)]
    assert len(await services.recurrence.list_occurrences(series.id)) == 4


@pytest.mark.asyncio
async def test_materialize_steps_past_already_recorded_dates(services, session_factory, monday_hours):
    series = await _weekly_series(services)
    await services.recurrence.materialize(series.id, count=2)
    async with session_factory() as session:
        async with session.begin():
            await session.execute(
                update(RecurringSeries).where(RecurringSeries.id == series.id).values(next_occurrence_date=MONDAY)
            )

    drafts = await services.recurrence.materialize(series.id, count=3)
    assert [(d.occurrence_date, d.status) for d in drafts] == [(date(2030, 1, 21), OccurrenceStatus.CREATED)]
    refreshed = await services.recurrence.get_series(series.id)
    assert refreshed.next_occurrence_date == date(2030, 1, 28)
