import asyncio

import pytest
from sqlalchemy import func, select

from bookings.app.domain.models import TrustProfile, UserRole
from bookings.app.services.trust_services import (
    TrustContext,
    enforce,
    evaluate,
    recovery_jobs_required,
    trust_level_label,
)
from conftest import CUSTOMER_ID, OTHER_CUSTOMER_ID, PROVIDER_ID


@pytest.mark.parametrize(
    "level, fee, consultation",
    [(0, False, False), (1, False, False), (2, True, False), (3, True, True)],
)
def test_customer_requirements_by_level(level, fee, consultation):
    decision = evaluate(level, UserRole.CUSTOMER)
    assert decision.blocked is False
    assert decision.required_no_show_fee is fee
    assert decision.required_consultation is consultation
    assert decision.required_confirmation is False
    assert bool(decision.warnings) is (level > 0)


def test_provider_needs_confirmation_from_level_two():
    assert not evaluate(1, UserRole.PROVIDER).required_confirmation
    decision = evaluate(3, UserRole.PROVIDER, TrustContext(urgent=True))
    assert decision.required_confirmation
    assert decision.blocked is False
    assert len(decision.warnings) == 2


def test_enforce_checks_requirements_in_order():
    decision = evaluate(3, UserRole.CUSTOMER)
    assert enforce(decision, TrustContext()).reason == "no_show_fee_required"
    assert enforce(decision, TrustContext(no_show_fee_cents=100)).reason == "consultation_required"
    assert enforce(decision, TrustContext(no_show_fee_cents=100, consultation_scheduled=True)).ok

    provider = evaluate(2, UserRole.PROVIDER)
    assert enforce(provider).reason == "confirmation_required"
    assert enforce(provider, TrustContext(confirmed=True)).ok


def test_levels_outside_range_and_admin_role_are_invalid():
    with pytest.raises(ValueError):
        evaluate(4, UserRole.CUSTOMER)
    with pytest.raises(ValueError):
        evaluate(1, UserRole.ADMIN)
    assert trust_level_label(0, "provider") == "Good Standing"
    assert recovery_jobs_required("customer") == 5
    assert recovery_jobs_required("provider") == 10


@pytest.mark.asyncio
async def test_customer_improves_one_level_after_five_jobs(services):
    await services.trust.set_level(CUSTOMER_ID, UserRole.CUSTOMER, 2)
    for _ in range(4):
        await services.trust.record_completed_job(CUSTOMER_ID, UserRole.CUSTOMER)
    assert await services.trust.get_level(CUSTOMER_ID, UserRole.CUSTOMER) == 2

    profile = await services.trust.record_completed_job(CUSTOMER_ID, UserRole.CUSTOMER)
    assert profile.trust_level == 1
    assert profile.previous_trust_level == 2
    assert profile.consecutive_completed_jobs == 0
    assert profile.trust_improved_at is not None


@pytest.mark.asyncio
async def test_incident_resets_streak_and_level_zero_stays_zero(services):
    await services.trust.set_level(PROVIDER_ID, UserRole.PROVIDER, 1)
    for _ in range(9):
        await services.trust.record_completed_job(PROVIDER_ID, UserRole.PROVIDER)
    await services.trust.record_incident(PROVIDER_ID, UserRole.PROVIDER, kind="no_show")
    profile = await services.trust.record_completed_job(PROVIDER_ID, UserRole.PROVIDER)
    assert profile.trust_level == 1
    assert profile.consecutive_completed_jobs == 1

    fresh = await services.trust.record_completed_job(CUSTOMER_ID, UserRole.CUSTOMER)
    assert fresh.trust_level == 0


@pytest.mark.asyncio
async def test_raising_level_resets_streak(services):
    await services.trust.set_level(CUSTOMER_ID, UserRole.CUSTOMER, 1)
    await services.trust.record_completed_job(CUSTOMER_ID, UserRole.CUSTOMER)
    profile = await services.trust.set_level(CUSTOMER_ID, UserRole.CUSTOMER, 2)
    assert profile.consecutive_completed_jobs == 0


@pytest.mark.asyncio
async def test_guidance_reports_recovery_progress(services):
    unknown = await services.trust.guidance(CUSTOMER_ID, "customer")
    assert unknown["status"] == "good"
    assert unknown["recovery_progress"]["eligible_for_improvement"] is False

    await services.trust.set_level(CUSTOMER_ID, UserRole.CUSTOMER, 2)
    await services.trust.record_completed_job(CUSTOMER_ID, UserRole.CUSTOMER)
    guidance = await services.trust.guidance(CUSTOMER_ID, "customer")
    assert guidance["trust_level_label"] == "Reliability Risk"
    assert guidance["recovery_progress"] == {
        "eligible_for_improvement": True,
        "completed": 1,
        "required": 5,
        "message": "Complete 4 more job(s) in a row without a no-show or cancellation to improve your standing.",
    }


@pytest.mark.asyncio
async def test_concurrent_first_writes_share_one_profile(services, session_factory):
    profiles = await asyncio.gather(
        *[services.trust.record_incident(OTHER_CUSTOMER_ID, UserRole.CUSTOMER, kind="cancellation") for _ in range(4)]
    )
    assert len({p.id for p in profiles}) == 1
    async with session_factory() as session:
        count = await session.scalar(
            select(func.count()).select_from(TrustProfile).where(TrustProfile.user_id == OTHER_CUSTOMER_ID)
        )
    assert count == 1
