from datetime import date, time

import pytest

from bookings.app.core.errors import NotFoundError
from bookings.app.domain.models import AvailabilityRule, ReservedSlot, RuleType, SlotStatus
from bookings.app.services.availability_services import (
    Slot,
    expand_rule_slots,
    overlaps,
    overlay_reservations,
    slot_cells,
)
from conftest import MONDAY, PROVIDER_ID, booking_request


def _rule(day_of_week=0, start=time(9), end=time(11), rule_type=RuleType.AVAILABLE, recurring=True):
    return AvailabilityRule(
        provider_id=PROVIDER_ID,
        day_of_week=day_of_week,
        start_time=start,
        end_time=end,
        rule_type=rule_type,
        is_recurring=recurring,
    )


def test_touching_intervals_do_not_overlap():
    assert not overlaps(time(9), time(10), time(10), time(11))
    assert overlaps(time(9), time(10, 30), time(10), time(11))


def test_expand_rule_slots_on_grid_only_for_matching_weekday():
    slots = expand_rule_slots([_rule(end=time(10, 45))], MONDAY)
    assert [s.start_time for s in slots] == [time(9), time(9, 30), time(10)]
    assert expand_rule_slots([_rule()], date(2030, 1, 8)) == ()


def test_overlay_marks_only_active_reservations():
    slots = (Slot(time(9), time(9, 30)), Slot(time(9, 30), time(10)))
    reserved = [
        ReservedSlot(start_time=time(9), end_time=time(9, 30), status=SlotStatus.CONFIRMED),
        ReservedSlot(start_time=time(9, 30), end_time=time(10), status=SlotStatus.RELEASED),
    ]
    out = overlay_reservations(slots, reserved)
    assert [s.available for s in out] == [False, True]


def test_slot_cells_rejects_misaligned_ranges():
    assert len(slot_cells(time(9), time(10, 30))) == 3
    with pytest.raises(ValueError):
        slot_cells(time(9, 15), time(10))
    with pytest.raises(ValueError):
        slot_cells(time(9), time(9, 45))


@pytest.mark.asyncio
async def test_monday_rule_yields_four_slots(services, monday_hours):
    slots = await services.availability.resolve_slots(PROVIDER_ID, MONDAY)
    assert [s.as_dict()["start_time"] for s in slots] == ["09:00", "09:30", "10:00", "10:30"]
    assert all(s.available for s in slots)


@pytest.mark.asyncio
async def test_booking_marks_overlapping_slots_unavailable(services, monday_hours):
    result = await services.bookings.create_booking(booking_request(start=time(9, 30)))
    assert result.ok

    slots = await services.availability.resolve_slots(PROVIDER_ID, MONDAY)
    assert [(s.as_dict()["start_time"], s.available) for s in slots] == [
        ("09:00", True),
        ("09:30", False),
        ("10:00", False),
        ("10:30", True),
    ]


@pytest.mark.asyncio
async def test_blocked_date_range_empties_the_day(services, monday_hours):
    await services.availability.add_rule(
        PROVIDER_ID,
        time(0, 0),
        time(23, 30),
        is_recurring=False,
        start_date=date(2030, 1, 6),
        end_date=date(2030, 1, 8),
        rule_type="Blocked",
        reason="Holiday",
    )
    assert await services.availability.resolve_slots(PROVIDER_ID, MONDAY) == []
    check = await services.availability.check_range(PROVIDER_ID, MONDAY, time(9), time(10))
    assert not check.ok
    assert check.reason == "blocked"


@pytest.mark.asyncio
async def test_exception_removes_day_and_can_be_deleted(services, monday_hours):
    exc = await services.availability.add_exception(PROVIDER_ID, MONDAY, "Sick")
    assert await services.availability.resolve_slots(PROVIDER_ID, MONDAY) == []

    await services.availability.delete_exception(PROVIDER_ID, exc.id)
    assert len(await services.availability.resolve_slots(PROVIDER_ID, MONDAY)) == 4

    with pytest.raises(NotFoundError):
        await services.availability.delete_exception(PROVIDER_ID, exc.id)


@pytest.mark.asyncio
async def test_listing_rules_only_apply_to_their_listing(services, monday_hours):
    await services.availability.add_rule(PROVIDER_ID, time(14), time(15), day_of_week=0, listing_id=7)

    general = await services.availability.resolve_slots(PROVIDER_ID, MONDAY)
    scoped = await services.availability.resolve_slots(PROVIDER_ID, MONDAY, listing_id=7)
    assert len(general) == 4
    assert [s.as_dict()["start_time"] for s in scoped][-2:] == ["14:00", "14:30"]

    rules = await services.availability.list_rules(PROVIDER_ID, listing_id=7)
    assert {r.listing_id for r in rules} == {None, 7}


@pytest.mark.asyncio
async def test_check_range_reasons(services, monday_hours):
    outside = await services.availability.check_range(PROVIDER_ID, MONDAY, time(10, 30), time(11, 30))
    assert outside.reason == "outside_hours"

    await services.bookings.create_booking(booking_request(start=time(10)))
    taken = await services.availability.check_range(PROVIDER_ID, MONDAY, time(9, 30), time(10, 30))
    assert taken.reason == "slot_taken"


@pytest.mark.asyncio
async def test_add_rule_validation_and_delete(services):
    with pytest.raises(ValueError):
        await services.availability.add_rule(PROVIDER_ID, time(11), time(9), day_of_week=0)
    with pytest.raises(ValueError):
        await services.availability.add_rule(PROVIDER_ID, time(9), time(11))
    with pytest.raises(ValueError):
        await services.availability.add_rule(PROVIDER_ID, time(9), time(11), is_recurring=False)

    rule = await services.availability.add_rule(PROVIDER_ID, time(9), time(11), day_of_week=2)
    await services.availability.delete_rule(PROVIDER_ID, rule.id)
    with pytest.raises(NotFoundError):
        await services.availability.delete_rule(PROVIDER_ID, rule.id)


@pytest.mark.asyncio
async def test_rules_must_sit_on_the_slot_grid(services):
    with pytest.raises(ValueError, match="slot grid"):
        await services.availability.add_rule(PROVIDER_ID, time(9, 15), time(11), day_of_week=0)
    with pytest.raises(ValueError, match="slot grid"):
        await services.availability.add_rule(PROVIDER_ID, time(9), time(10, 45), day_of_week=0)
    with pytest.raises(ValueError, match="slot grid"):
        await services.availability.add_rule(PROVIDER_ID, time(9, 0, 30), time(10), day_of_week=0)
    assert await services.availability.list_rules(PROVIDER_ID) == []

    rule = await services.availability.add_rule(PROVIDER_ID, time(9, 30), time(10, 30), day_of_week=0)
    slots = await services.availability.resolve_slots(PROVIDER_ID, MONDAY)
    assert [s.start_time for s in slots] == [time(9, 30), time(10)]
    assert rule.start_time == time(9, 30)
