import asyncio
from datetime import timedelta

import pytest

from bookings.app.core.errors import RefundNotPendingError
from bookings.app.domain.models import BookingStatus, ProviderBalance, QueueStatus, RefundStatus, SettlementState
from bookings.app.services.refund_services import refund_policy_summary, refund_tier
from bookings.app.services.shared_services import utc_now
from conftest import ADMIN_ID, CUSTOMER_ID, MONDAY, OTHER_CUSTOMER_ID, PROVIDER_ID

FIVE_DAYS_BEFORE = MONDAY - timedelta(days=5)


@pytest.mark.parametrize(
    "days, pct",
    [(30, 100), (7, 100), (6, 50), (3, 50), (2, 25), (1, 25), (0, 0), (-2, 0)],
)
def test_refund_tiers(days, pct):
    assert refund_tier(days)[0] == pct


def test_policy_summary_lists_tiers_highest_first():
    summary = refund_policy_summary()
    assert [t["percentage"] for t in summary] == [100, 50, 25, 0]
    assert summary[1]["policy"] == "Partial refund (50%) - Cancelling 3-6 days before booking"


@pytest.mark.asyncio
async def test_five_days_out_refunds_half(services, booking_id):
    eligibility = await services.refunds.check_eligibility(booking_id, FIVE_DAYS_BEFORE)
    assert eligibility.eligible
    assert eligibility.amount_cents == 10000
    assert eligibility.days_until_booking == 5

    result = await services.refunds.submit_refund_request(booking_id, CUSTOMER_ID, "ScheduleConflict", today=FIVE_DAYS_BEFORE)
    assert result.ok
    assert result.details["amount_cents"] == 10000

    booking = await services.bookings.get_booking(booking_id)
    assert booking.status == BookingStatus.CANCELLED
    assert booking.refund_requested is True
    slots = await services.availability.resolve_slots(PROVIDER_ID, MONDAY)
    assert all(s.available for s in slots)

    again = await services.refunds.submit_refund_request(booking_id, CUSTOMER_ID, "Cancelled", today=FIVE_DAYS_BEFORE)
    assert not again.ok
    assert again.reason == "not_eligible"


@pytest.mark.asyncio
async def test_only_the_customer_may_request(services, booking_id):
    result = await services.refunds.submit_refund_request(booking_id, OTHER_CUSTOMER_ID, "Cancelled", today=FIVE_DAYS_BEFORE)
    assert result.reason == "not_booking_customer"
    with pytest.raises(ValueError):
        await services.refunds.submit_refund_request(booking_id, CUSTOMER_ID, "Other", today=FIVE_DAYS_BEFORE)
    with pytest.raises(ValueError):
        await services.refunds.submit_refund_request(booking_id, CUSTOMER_ID, "Bored", today=FIVE_DAYS_BEFORE)


@pytest.mark.asyncio
async def test_same_day_cancellation_is_not_eligible(services, booking_id):
    result = await services.refunds.submit_refund_request(booking_id, CUSTOMER_ID, "Cancelled", today=MONDAY)
    assert result.reason == "not_eligible"
    assert result.details["message"] == "Too close to the booking date"


@pytest.mark.asyncio
async def test_concurrent_submissions_open_one_request(services, booking_id):
    results = await asyncio.gather(
        *[
            services.refunds.submit_refund_request(booking_id, CUSTOMER_ID, "Cancelled", today=FIVE_DAYS_BEFORE)
            for _ in range(3)
        ]
    )
    assert sum(1 for r in results if r.ok) == 1
    pending = await services.refunds.list_refunds(RefundStatus.PENDING)
    assert len(pending) == 1


@pytest.mark.asyncio
async def test_approve_refunds_through_escrow(services, gateway, booking_id):
    await services.escrow.capture(booking_id, 20000, "pi_r1")
    submitted = await services.refunds.submit_refund_request(booking_id, CUSTOMER_ID, "Cancelled", today=FIVE_DAYS_BEFORE)
    refund_id = submitted.details["refund_id"]

    approved = await services.refunds.approve_refund(refund_id, ADMIN_ID, "ok")
    assert approved.ok
    assert approved.details["queued"] is False
    assert gateway.refunds[-1][1] == 10000

    settlement = await services.escrow.get_settlement(booking_id)
    assert settlement.state == SettlementState.REFUNDED
    assert (await services.refunds.get_refund(refund_id)).status == RefundStatus.COMPLETED

    with pytest.raises(RefundNotPendingError):
        await services.refunds.approve_refund(refund_id, ADMIN_ID)

    stats = await services.refunds.customer_refund_stats(CUSTOMER_ID)
    assert stats == {"total_refunds": 1, "pending_refunds": 0, "completed_refunds": 1, "total_refunded_cents": 10000}


@pytest.mark.asyncio
async def test_failed_payment_is_queued_and_escalates(services, gateway, booking_id):
    services.refunds.max_attempts = 3
    await services.escrow.capture(booking_id, 20000, "pi_r2")
    submitted = await services.refunds.submit_refund_request(booking_id, CUSTOMER_ID, "Cancelled", today=FIVE_DAYS_BEFORE)

    gateway.fail_refunds = True
    approved = await services.refunds.approve_refund(submitted.details["refund_id"], ADMIN_ID)
    assert approved.ok
    assert approved.details["queued"] is True
    queue_id = approved.details["queue_id"]

    [item] = await services.refunds.list_queue()
    assert (item.status, item.attempts, item.max_attempts) == (QueueStatus.FAILED, 1, 3)

    second = await services.refunds.retry_queued_refund(queue_id)
    assert second.reason == "payment_failed"
    third = await services.refunds.retry_queued_refund(queue_id)
    assert third.reason == "max_attempts_reached"
    assert third.details["message"] == "Max retry attempts reached"

    gateway.fail_refunds = False
    fourth = await services.refunds.retry_queued_refund(queue_id)
    assert fourth.reason == "max_attempts_reached"
    [item] = await services.refunds.list_queue(QueueStatus.ESCALATED)
    assert item.attempts == 3
    assert (await services.escrow.get_settlement(booking_id)).state == SettlementState.HELD


@pytest.mark.asyncio
async def test_queued_retry_succeeds_when_gateway_recovers(services, gateway, booking_id):
    await services.escrow.capture(booking_id, 20000, "pi_r3")
    submitted = await services.refunds.submit_refund_request(booking_id, CUSTOMER_ID, "Cancelled", today=FIVE_DAYS_BEFORE)
    gateway.fail_refunds = True
    approved = await services.refunds.approve_refund(submitted.details["refund_id"], ADMIN_ID)

    gateway.fail_refunds = False
    retried = await services.refunds.retry_queued_refund(approved.details["queue_id"])
    assert retried.ok
    assert (await services.escrow.get_settlement(booking_id)).state == SettlementState.REFUNDED
    assert (await services.refunds.retry_queued_refund(approved.details["queue_id"])).reason == "already_completed"


@pytest.mark.asyncio
async def test_reject_and_withdraw(services, booking_id):
    submitted = await services.refunds.submit_refund_request(booking_id, CUSTOMER_ID, "Cancelled", today=FIVE_DAYS_BEFORE)
    refund_id = submitted.details["refund_id"]

    stranger = await services.refunds.cancel_refund_request(refund_id, OTHER_CUSTOMER_ID)
    assert stranger.reason == "unauthorized"

    rejected = await services.refunds.reject_refund(refund_id, ADMIN_ID, "outside policy")
    assert rejected.ok
    with pytest.raises(RefundNotPendingError):
        await services.refunds.cancel_refund_request(refund_id, CUSTOMER_ID)
    with pytest.raises(RefundNotPendingError):
        await services.refunds.reject_refund(refund_id, ADMIN_ID, "twice")


@pytest.mark.asyncio
async def test_manual_refund_processed_outside_gateway(services, gateway, booking_id):
    await services.escrow.capture(booking_id, 20000, "pi_r4")
    created = await services.refunds.create_manual_refund(booking_id, ADMIN_ID, 7000, "PriceIssue", "goodwill")
    refund_id = created.details["refund_id"]

    processed = await services.refunds.process_refund_manually(refund_id, "bank-transfer-42", ADMIN_ID)
    assert processed.ok
    assert gateway.refunds == []

    refund = await services.refunds.get_refund(refund_id)
    assert refund.status == RefundStatus.COMPLETED
    assert refund.external_reference == "bank-transfer-42"
    settlement = await services.escrow.get_settlement(booking_id)
    assert settlement.state == SettlementState.REFUNDED
    assert settlement.refund_amount_cents == 7000


@pytest.mark.asyncio
async def test_overdue_refunds_use_processing_window(services, booking_id):
    await services.refunds.submit_refund_request(booking_id, CUSTOMER_ID, "Cancelled", today=FIVE_DAYS_BEFORE)
    assert await services.refunds.overdue_refunds() == []
    overdue = await services.refunds.overdue_refunds(utc_now() + timedelta(hours=73))
    assert [r.booking_id for r in overdue] == [booking_id]


async def _payable(session_factory) -> int:
    async with session_factory() as session:
        row = await session.get(ProviderBalance, PROVIDER_ID)
    return row.payable_cents if row else 0


@pytest.mark.asyncio
async def test_rejected_request_pays_the_hold_to_the_provider(services, session_factory, gateway, booking_id):
    await services.escrow.capture(booking_id, 20000, "pi_r5")
    submitted = await services.refunds.submit_refund_request(
        booking_id, CUSTOMER_ID, "Cancelled", today=MONDAY - timedelta(days=2)
    )
    assert submitted.details["percentage"] == 25

    rejected = await services.refunds.reject_refund(submitted.details["refund_id"], ADMIN_ID, "no-show history")
    assert rejected.details == {"status": "Failed", "settlement": "Released"}
    assert await _payable(session_factory) == 20000
    assert (await services.bookings.get_booking(booking_id)).status == BookingStatus.CANCELLED

    assert await services.escrow.expire_overdue(utc_now() + timedelta(days=31)) == []
    assert gateway.refunds == []


@pytest.mark.asyncio
async def test_withdrawn_request_pays_the_hold_to_the_provider(services, session_factory, gateway, booking_id):
    await services.escrow.capture(booking_id, 20000, "pi_r6", consultation_required=True)
    submitted = await services.refunds.submit_refund_request(booking_id, CUSTOMER_ID, "Cancelled", today=FIVE_DAYS_BEFORE)

    withdrawn = await services.refunds.cancel_refund_request(submitted.details["refund_id"], CUSTOMER_ID)
    assert withdrawn.details == {"status": "Failed", "settlement": "Refunded"}
    settlement = await services.escrow.get_settlement(booking_id)
    assert settlement.refund_amount_cents == 0
    assert await _payable(session_factory) == 20000
    assert gateway.refunds == []
    assert "cancellation_settled" in [e.event_type for e in await services.escrow.timeline(booking_id)]


@pytest.mark.asyncio
async def test_received_orders_cannot_be_refunded_by_the_customer(services, booking_id):
    await services.escrow.capture(booking_id, 20000, "pi_r7")
    await services.escrow.mark_received(booking_id, PROVIDER_ID)

    result = await services.refunds.submit_refund_request(booking_id, CUSTOMER_ID, "Cancelled", today=FIVE_DAYS_BEFORE)
    assert result.reason == "not_eligible"
    assert result.details["message"] == "Order already received"
    assert (await services.bookings.get_booking(booking_id)).status == BookingStatus.CONFIRMED
