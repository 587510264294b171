from datetime import timedelta

import httpx
import jwt
import pytest
import pytest_asyncio

from bookings.api.app import create_app
from conftest import ADMIN_ID, CUSTOMER_ID, MONDAY, OTHER_CUSTOMER_ID, PROVIDER_ID

SECRET = "test-secret-for-the-bookings-api-0001"


def _auth(user_id: int, role: str) -> dict[str, str]:
    token = jwt.encode({"sub": str(user_id), "role": role}, SECRET, algorithm="HS256")
    return {"Authorization": f"Bearer {token}"}


CUSTOMER = _auth(CUSTOMER_ID, "customer")
OTHER = _auth(OTHER_CUSTOMER_ID, "customer")
PROVIDER = _auth(PROVIDER_ID, "provider")
ADMIN = _auth(ADMIN_ID, "admin")


@pytest_asyncio.fixture
async def client(services):
    app = create_app(services, jwt_secret=SECRET, run_workers=False)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


async def _book(client, headers=CUSTOMER, start="09:00"):
    return await client.post(
        "/api/bookings",
        json={
            "provider_id": PROVIDER_ID,
            "service_date": MONDAY.isoformat(),
            "start_time": start,
            "duration_minutes": 60,
            "title": "Deep clean",
            "price_cents": 20000,
        },
        headers=headers,
    )


@pytest.mark.asyncio
async def test_requests_without_valid_token_are_rejected(client):
    assert (await client.get("/health")).json() == {"status": "ok"}
    missing = await client.get(f"/api/providers/{PROVIDER_ID}/slots", params={"date": MONDAY.isoformat()})
    assert missing.status_code == 401
    forged = await client.get(
        f"/api/providers/{PROVIDER_ID}/slots",
        params={"date": MONDAY.isoformat()},
        headers={"Authorization": "Bearer " + jwt.encode({"sub": "1", "role": "admin"}, "another-secret-that-is-long-enough-42", algorithm="HS256")},
    )
    assert forged.status_code == 401
    assert forged.json()["detail"] == "invalid_token"


@pytest.mark.asyncio
async def test_provider_rules_and_slots(client):
    created = await client.post(
        f"/api/providers/{PROVIDER_ID}/rules",
        json={"start_time": "09:00", "end_time": "11:00", "day_of_week": 0},
        headers=PROVIDER,
    )
    assert created.status_code == 200
    rule_id = created.json()["id"]

    forbidden = await client.post(
        f"/api/providers/{PROVIDER_ID}/rules",
        json={"start_time": "09:00", "end_time": "11:00", "day_of_week": 1},
        headers=CUSTOMER,
    )
    assert forbidden.status_code == 403

    rules = await client.get(f"/api/providers/{PROVIDER_ID}/rules", headers=PROVIDER)
    assert [(r["id"], r["start_time"], r["end_time"]) for r in rules.json()] == [(rule_id, "09:00", "11:00")]

    slots = await client.get(
        f"/api/providers/{PROVIDER_ID}/slots", params={"date": MONDAY.isoformat()}, headers=CUSTOMER
    )
    body = slots.json()
    assert body["service_date"] == MONDAY.isoformat()
    assert [s["start_time"] for s in body["slots"]] == ["09:00", "09:30", "10:00", "10:30"]

    invalid = await client.post(
        f"/api/providers/{PROVIDER_ID}/rules",
        json={"start_time": "11:00", "end_time": "09:00", "day_of_week": 0},
        headers=PROVIDER,
    )
    assert invalid.status_code == 422
    assert invalid.json()["error"] == "invalid_request"


@pytest.mark.asyncio
async def test_booking_conflict_is_a_policy_result(client, monday_hours):
    first = await _book(client)
    assert first.status_code == 200
    assert first.json()["ok"] is True

    second = await _book(client, headers=OTHER)
    assert second.status_code == 200
    assert second.json()["ok"] is False
    assert second.json()["error"] == "slot_taken"

    timeline = await client.get(f"/api/bookings/{first.json()['booking_id']}/timeline", headers=PROVIDER)
    assert [e["event_type"] for e in timeline.json()] == ["booking_created"]

    stranger = await client.get(f"/api/bookings/{first.json()['booking_id']}/timeline", headers=OTHER)
    assert stranger.status_code == 403


@pytest.mark.asyncio
async def test_escrow_lifecycle_over_http(client, booking_id):
    captured = await client.post(f"/api/escrow/{booking_id}/capture", json={"payment_reference": "pi_api"}, headers=CUSTOMER)
    assert captured.json()["ok"] is True

    duplicate = await client.post(f"/api/escrow/{booking_id}/capture", json={"payment_reference": "pi_api"}, headers=CUSTOMER)
    assert duplicate.status_code == 409
    assert duplicate.json()["error"] == "settlement_conflict"

    settlement = await client.get(f"/api/escrow/{booking_id}", headers=PROVIDER)
    assert settlement.json()["state"] == "Held"
    assert settlement.json()["amount_cents"] == 20000
    assert "Disputed" in settlement.json()["next_states"]

    not_received = await client.post(f"/api/escrow/{booking_id}/complete", headers=CUSTOMER)
    assert not_received.json() == {"ok": False, "error": "not_received", "message": "not_received", "details": {}}

    customer_receipt = await client.post(f"/api/escrow/{booking_id}/received", headers=CUSTOMER)
    assert customer_receipt.json()["error"] == "not_booking_provider"
    assert (await client.post(f"/api/escrow/{booking_id}/received", headers=PROVIDER)).json()["ok"]
    assert (await client.post(f"/api/escrow/{booking_id}/complete", headers=CUSTOMER)).json()["ok"]
    done = await client.get(f"/api/escrow/{booking_id}", headers=CUSTOMER)
    assert done.json()["state"] == "Released"
    assert done.json()["next_states"] == []


@pytest.mark.asyncio
async def test_admin_resolves_disputes(client, booking_id):
    await client.post(f"/api/escrow/{booking_id}/capture", json={"payment_reference": "pi_d"}, headers=CUSTOMER)
    opened = await client.post(f"/api/escrow/{booking_id}/dispute", json={"dispute_type": "Quality"}, headers=CUSTOMER)
    assert opened.json()["ok"]

    not_admin = await client.post(
        f"/api/admin/escrow/{booking_id}/resolve", json={"resolution_type": "FullRefund"}, headers=CUSTOMER
    )
    assert not_admin.status_code == 403

    resolved = await client.post(
        f"/api/admin/escrow/{booking_id}/resolve",
        json={"resolution_type": "PartialRefund", "refund_amount_cents": 4000},
        headers=ADMIN,
    )
    assert resolved.json()["details"] == {"state": "Refunded", "refund_amount_cents": 4000}


@pytest.mark.asyncio
async def test_refund_flow_and_admin_queue(client, services, booking_id):
    policy = await client.get("/api/refunds/policy")
    assert [t["percentage"] for t in policy.json()] == [100, 50, 25, 0]
    await client.post(f"/api/escrow/{booking_id}/capture", json={"payment_reference": "pi_r"}, headers=CUSTOMER)

    eligibility = await client.get(f"/api/bookings/{booking_id}/refund_eligibility", headers=CUSTOMER)
    assert eligibility.json()["percentage"] == 100

    submitted = await client.post("/api/refunds", json={"booking_id": booking_id, "reason": "Cancelled"}, headers=CUSTOMER)
    body = submitted.json()
    assert body["ok"] is True
    refund_id = body["details"]["refund_id"]

    again = await client.post("/api/refunds", json={"booking_id": booking_id, "reason": "Cancelled"}, headers=CUSTOMER)
    assert again.json()["error"] == "not_eligible"
    assert again.json()["message"] == "Booking already cancelled"

    listed = await client.get("/api/admin/refunds", params={"status": "Pending"}, headers=ADMIN)
    assert [r["id"] for r in listed.json()] == [refund_id]
    assert (await client.get("/api/admin/refunds", headers=CUSTOMER)).status_code == 403

    approved = await client.post(f"/api/admin/refunds/{refund_id}/approve", json={}, headers=ADMIN)
    assert approved.json()["details"] == {"status": "Completed", "settlement": "Refunded", "queued": False}

    twice = await client.post(f"/api/admin/refunds/{refund_id}/approve", json={}, headers=ADMIN)
    assert twice.status_code == 409
    assert twice.json()["error"] == "refund_not_pending"

    stats = await client.get(f"/api/users/{CUSTOMER_ID}/refund_stats", headers=CUSTOMER)
    assert stats.json()["completed_refunds"] == 1
    assert (await client.get(f"/api/users/{CUSTOMER_ID}/refund_stats", headers=OTHER)).status_code == 403

    assert (await client.get("/api/admin/refund_queue", headers=ADMIN)).json() == []
    assert (await client.get("/api/admin/refunds/overdue", headers=ADMIN)).json() == []


@pytest.mark.asyncio
async def test_recurring_series_endpoints(client, monday_hours):
    pattern = {"frequency": "weekly", "days_of_week": [0]}
    preview = await client.post(
        "/api/recurring/preview",
        json={
            "provider_id": PROVIDER_ID,
            "title": "Weekly tidy",
            "price_cents": 5000,
            "start_date": MONDAY.isoformat(),
            "start_time": "09:00",
            "duration_minutes": 60,
            "pattern": {**pattern, "occurrences": 3},
        },
        headers=CUSTOMER,
    )
    assert preview.json()["total_occurrences"] == 3

    created = await client.post(
        "/api/recurring",
        json={
            "provider_id": PROVIDER_ID,
            "title": "Weekly tidy",
            "price_cents": 5000,
            "start_date": MONDAY.isoformat(),
            "start_time": "09:00",
            "duration_minutes": 60,
            "pattern": pattern,
        },
        headers=CUSTOMER,
    )
    series = created.json()
    assert series["description"] == "Weekly on Mon"

    drafts = await client.post(f"/api/recurring/{series['id']}/materialize", json={"count": 2}, headers=CUSTOMER)
    assert [d["occurrence_date"] for d in drafts.json()] == [
        MONDAY.isoformat(),
        (MONDAY + timedelta(days=7)).isoformat(),
    ]

    paused = await client.post(f"/api/recurring/{series['id']}/pause", headers=CUSTOMER)
    assert paused.json()["is_active"] is False

    bad = await client.post(
        "/api/recurring",
        json={
            "provider_id": PROVIDER_ID,
            "title": "Broken",
            "price_cents": 5000,
            "start_date": MONDAY.isoformat(),
            "start_time": "09:00",
            "duration_minutes": 60,
            "pattern": {"frequency": "hourly"},
        },
        headers=CUSTOMER,
    )
    assert bad.status_code == 422


@pytest.mark.asyncio
async def test_trust_evaluation_and_guidance(client, services):
    await services.trust.set_level(CUSTOMER_ID, "customer", 2)
    decision = await client.post("/api/trust/evaluate", json={"role": "customer"}, headers=CUSTOMER)
    assert decision.json()["required_no_show_fee"] is True

    guidance = await client.get(f"/api/trust/{CUSTOMER_ID}/guidance", params={"role": "customer"}, headers=CUSTOMER)
    assert guidance.json()["status"] == "warning"
    assert (await client.get(f"/api/trust/{CUSTOMER_ID}/guidance", params={"role": "customer"}, headers=OTHER)).status_code == 403


@pytest.mark.asyncio
async def test_missing_secret_means_auth_not_configured(services):
    app = create_app(services, jwt_secret="", run_workers=False)
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as c:
        resp = await c.get(f"/api/trust/{CUSTOMER_ID}/guidance", params={"role": "customer"}, headers=CUSTOMER)
    assert resp.status_code == 503
