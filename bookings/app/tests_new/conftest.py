"""Test configuration to ensure project package import resolution.

Adds the repository root to sys.path so `import bookings` works in CI where
the checkout directory may not be on PYTHONPATH by default. Async fixtures
build every service on a throwaway SQLite file so concurrency tests run
against a real storage guard.
"""

from __future__ import annotations

import sys
from datetime import date, time
from pathlib import Path

import pytest
import pytest_asyncio

ROOT = Path(__file__).resolve().parents[3]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from sqlalchemy.ext.asyncio import create_async_engine  # noqa: E402

from bookings.app.core.db import make_session_factory  # noqa: E402
from bookings.app.core.errors import PaymentGatewayError  # noqa: E402
from bookings.app.domain.models import Base, User, UserRole  # noqa: E402
from bookings.app.services import build_services  # noqa: E402
from bookings.app.services.booking_services import BookingRequest  # noqa: E402

# 2030-01-07 is a Monday (weekday 0).
MONDAY = date(2030, 1, 7)
CUSTOMER_ID = 1
PROVIDER_ID = 2
ADMIN_ID = 3
OTHER_CUSTOMER_ID = 4


class RecordingGateway:
    def __init__(self) -> None:
        self.captures: list[tuple[str, int]] = []
        self.refunds: list[tuple[str, int, str]] = []
        self.fail_refunds = False

    async def capture(self, reference: str, amount_cents: int) -> str:
        self.captures.append((reference, amount_cents))
        return f"ch_{reference}"

    async def refund(self, reference: str, amount_cents: int, idempotency_key: str) -> str:
        if self.fail_refunds:
            raise PaymentGatewayError("processor unavailable")
        self.refunds.append((reference, amount_cents, idempotency_key))
        return f"re_{idempotency_key}"


class RecordingNotifier:
    def __init__(self) -> None:
        self.events = []

    async def notify(self, event) -> None:
        self.events.append(event)

    def kinds(self) -> list[str]:
        return [e.kind for e in self.events]


@pytest_asyncio.fixture
async def engine(tmp_path):
    eng = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'bookings.db'}")
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest_asyncio.fixture
async def session_factory(engine):
    factory = make_session_factory(engine)
    async with factory() as session:
        async with session.begin():
            session.add_all(
                [
                    User(id=CUSTOMER_ID, name="Customer", role=UserRole.CUSTOMER, chat_id=1001),
                    User(id=PROVIDER_ID, name="Provider", role=UserRole.PROVIDER, chat_id=1002),
                    User(id=ADMIN_ID, name="Admin", role=UserRole.ADMIN),
                    User(id=OTHER_CUSTOMER_ID, name="Other", role=UserRole.CUSTOMER),
                ]
            )
    return factory


@pytest.fixture
def gateway():
    return RecordingGateway()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def services(session_factory, gateway, notifier):
    return build_services(session_factory, gateway=gateway, notifier=notifier)


@pytest_asyncio.fixture
async def monday_hours(services):
    """Provider works Mondays 09:00-11:00."""
    return await services.availability.add_rule(PROVIDER_ID, time(9, 0), time(11, 0), day_of_week=0)


def booking_request(
    *,
    customer_id: int = CUSTOMER_ID,
    day: date = MONDAY,
    start: time = time(9, 0),
    duration: int = 60,
    price_cents: int = 20000,
    listing_id: int | None = None,
) -> BookingRequest:
    return BookingRequest(
        customer_id=customer_id,
        provider_id=PROVIDER_ID,
        service_date=day,
        start_time=start,
        duration_minutes=duration,
        title="Deep clean",
        price_cents=price_cents,
        listing_id=listing_id,
    )


@pytest_asyncio.fixture
async def booking_id(services, monday_hours):
    """A confirmed 09:00-10:00 Monday booking worth 200.00."""
    result = await services.bookings.create_booking(booking_request())
    assert result.ok, result
    return result.booking_id
