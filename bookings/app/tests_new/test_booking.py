import asyncio
from datetime import time

import pytest

from bookings.app.core.errors import NotFoundError
from bookings.app.domain.models import BookingStatus, UserRole
from bookings.app.services.booking_services import booking_end_time
from bookings.app.services.trust_services import TrustContext
from conftest import CUSTOMER_ID, MONDAY, OTHER_CUSTOMER_ID, PROVIDER_ID, booking_request


def test_booking_end_time_requires_grid_multiples():
    assert booking_end_time(time(9), 90) == time(10, 30)
    with pytest.raises(ValueError):
        booking_end_time(time(9), 45)
    with pytest.raises(ValueError):
        booking_end_time(time(9, 10), 30)


@pytest.mark.asyncio
async def test_concurrent_requests_for_same_slot_yield_one_booking(services, monday_hours):
    results = await asyncio.gather(
        services.bookings.create_booking(booking_request(customer_id=CUSTOMER_ID)),
        services.bookings.create_booking(booking_request(customer_id=OTHER_CUSTOMER_ID)),
    )
    winners = [r for r in results if r.ok]
    losers = [r for r in results if not r.ok]
    assert len(winners) == 1
    assert len(losers) == 1
    assert losers[0].reason in {"slot_unavailable", "slot_taken"}


@pytest.mark.asyncio
async def test_create_booking_writes_timeline_and_notifies(services, notifier, monday_hours):
    result = await services.bookings.create_booking(booking_request())
    assert result.ok

    booking = await services.bookings.get_booking(result.booking_id)
    assert booking.status == BookingStatus.CONFIRMED
    assert booking.end_time == time(10)

    timeline = await services.bookings.list_timeline(result.booking_id)
    assert [e.event_type for e in timeline] == ["booking_created"]
    assert notifier.kinds() == ["booking_created"]


@pytest.mark.asyncio
async def test_outside_hours_is_a_policy_rejection(services, monday_hours):
    result = await services.bookings.create_booking(booking_request(start=time(12)))
    assert not result.ok
    assert result.reason == "outside_hours"
    assert not result.retry


@pytest.mark.asyncio
async def test_level_two_customer_needs_no_show_fee(services, monday_hours):
    await services.trust.set_level(CUSTOMER_ID, UserRole.CUSTOMER, 2)

    rejected = await services.bookings.create_booking(booking_request())
    assert not rejected.ok
    assert rejected.reason == "no_show_fee_required"
    assert rejected.warnings

    accepted = await services.bookings.create_booking(booking_request(), TrustContext(no_show_fee_cents=2500))
    assert accepted.ok
    booking = await services.bookings.get_booking(accepted.booking_id)
    assert booking.no_show_fee_cents == 2500


@pytest.mark.asyncio
async def test_level_three_customer_also_needs_consultation(services, monday_hours):
    await services.trust.set_level(CUSTOMER_ID, UserRole.CUSTOMER, 3)
    result = await services.bookings.create_booking(booking_request(), TrustContext(no_show_fee_cents=2500))
    assert result.reason == "consultation_required"

    ok = await services.bookings.create_booking(
        booking_request(), TrustContext(no_show_fee_cents=2500, consultation_scheduled=True)
    )
    assert ok.ok


@pytest.mark.asyncio
async def test_cancel_releases_slots_and_is_not_repeatable(services, booking_id):
    result = await services.bookings.cancel_booking(booking_id, CUSTOMER_ID, "plans changed")
    assert result.ok

    slots = await services.availability.resolve_slots(PROVIDER_ID, MONDAY)
    assert all(s.available for s in slots)

    again = await services.bookings.cancel_booking(booking_id, CUSTOMER_ID)
    assert not again.ok
    assert again.reason == "booking_closed"

    # The freed slot can be booked again.
    rebook = await services.bookings.create_booking(booking_request(customer_id=OTHER_CUSTOMER_ID))
    assert rebook.ok


@pytest.mark.asyncio
async def test_no_show_resets_the_at_fault_streak(services, booking_id):
    await services.trust.set_level(CUSTOMER_ID, UserRole.CUSTOMER, 1)
    await services.trust.record_completed_job(CUSTOMER_ID, UserRole.CUSTOMER)

    result = await services.bookings.mark_no_show(booking_id, PROVIDER_ID, "customer")
    assert result.ok
    booking = await services.bookings.get_booking(booking_id)
    assert booking.status == BookingStatus.NO_SHOW

    profile = await services.trust.get_profile(CUSTOMER_ID, UserRole.CUSTOMER)
    assert profile.consecutive_completed_jobs == 0

    with pytest.raises(ValueError):
        await services.bookings.mark_no_show(booking_id, PROVIDER_ID, "admin")


@pytest.mark.asyncio
async def test_missing_booking_raises_not_found(services):
    with pytest.raises(NotFoundError):
        await services.bookings.get_booking(999)
