import pytest

from bookings.app.core.errors import PaymentGatewayError
from bookings.app.core.payments import OfflinePaymentGateway, refund_idempotency_key


def test_refund_keys_are_stable_and_scoped():
    assert refund_idempotency_key(7, "settlement") == refund_idempotency_key(7, "settlement")
    assert refund_idempotency_key(7, "settlement") != refund_idempotency_key(8, "settlement")
    assert refund_idempotency_key(7, "adjustment:1", 500) != refund_idempotency_key(7, "adjustment:1", 600)
    assert len(refund_idempotency_key(7, "settlement")) == 32


@pytest.mark.asyncio
async def test_offline_gateway_ids_are_deterministic_without_state():
    gateway = OfflinePaymentGateway()
    assert await gateway.capture("pi_1", 100) == await gateway.capture("pi_1", 100) == "off_ch_pi_1"
    key = refund_idempotency_key(1, "settlement")
    assert await gateway.refund("pi_1", 50, key) == await OfflinePaymentGateway().refund("pi_1", 50, key)
    assert vars(gateway) == {}


@pytest.mark.asyncio
async def test_offline_gateway_rejects_non_positive_amounts():
    gateway = OfflinePaymentGateway()
    with pytest.raises(PaymentGatewayError):
        await gateway.capture("pi_1", 0)
    with pytest.raises(PaymentGatewayError):
        await gateway.refund("pi_1", -5, "k")
