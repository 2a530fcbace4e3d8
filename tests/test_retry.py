from decimal import Decimal

import pytest

from checkout.domain.errors import GatewayError
from checkout.infrastructure.gateway import FakeGateway, RetryingGateway, build_gateway


@pytest.fixture
def inner():
    return FakeGateway()


@pytest.fixture
def delays():
    return []


@pytest.fixture
def gateway(inner, delays):
    return RetryingGateway(inner, max_attempts=3, backoff_seconds=0.5, sleep=delays.append)


def _open(gateway):
    return gateway.create_order(Decimal("20.00"), "USD", [], None, "1")


def test_transient_failures_are_retried_with_backoff(gateway, inner, delays):
    external_id = _open(gateway)
    inner.fail_next("capture_order", GatewayError.NETWORK_TIMEOUT, times=2)

    result = gateway.capture_order(external_id)

    assert result.completed
    assert len(inner.calls_to("capture_order")) == 3
    assert delays == [0.5, 1.0]


def test_gives_up_after_max_attempts(gateway, inner, delays):
    external_id = _open(gateway)
    inner.fail_next("capture_order", GatewayError.NETWORK_TIMEOUT, times=3)

    with pytest.raises(GatewayError) as exc:
        gateway.capture_order(external_id)
    assert exc.value.kind == GatewayError.NETWORK_TIMEOUT
    assert len(inner.calls_to("capture_order")) == 3


def test_declines_are_not_retried(gateway, inner, delays):
    external_id = _open(gateway)
    inner.fail_next("capture_order", GatewayError.DECLINED)

    with pytest.raises(GatewayError):
        gateway.capture_order(external_id)
    assert len(inner.calls_to("capture_order")) == 1
    assert delays == []


def test_refunds_are_not_retried(gateway, inner):
    external_id = _open(gateway)
    capture = gateway.capture_order(external_id)
    inner.fail_next("refund_payment", GatewayError.NETWORK_TIMEOUT)

    with pytest.raises(GatewayError):
        gateway.refund_payment(capture.capture_id, Decimal("5.00"))
    assert len(inner.calls_to("refund_payment")) == 1


def test_create_order_reuses_one_idempotency_key(delays):
    keys = []

    class KeyRecorder(FakeGateway):
        def create_order(self, amount, currency, items, shipping_address, custom_marker, idempotency_key=None):
            keys.append(idempotency_key)
            return super().create_order(amount, currency, items, shipping_address, custom_marker, idempotency_key)

    recorder = KeyRecorder()
    recorder.fail_next("create_order", GatewayError.NETWORK_TIMEOUT)
    RetryingGateway(recorder, sleep=delays.append).create_order(Decimal("20.00"), "USD", [], None, "1")

    assert len(keys) == 2
    assert keys[0] == keys[1]
    assert keys[0].startswith("create-1-")


def test_build_gateway_wraps_selected_adapter(settings):
    gateway = build_gateway(settings)
    assert isinstance(gateway, RetryingGateway)
    assert isinstance(gateway.inner, FakeGateway)
    assert gateway.provider == "fake"
    assert gateway.max_attempts == settings.GATEWAY_MAX_ATTEMPTS
