from unittest.mock import MagicMock

import pytest
import razorpay
import requests

from reservation_engine.infrastructure.payments.gateway import (
    IDEMPOTENCY_HEADER,
    PaymentMethod,
    ProviderError,
    RazorpayGateway,
)


@pytest.fixture
def razorpay_client():
    return MagicMock()


@pytest.fixture
def gateway(razorpay_client):
    return RazorpayGateway("rzp_test_key", "secret", client=razorpay_client)


def _capture(gateway, **overrides):
    kwargs = {
        "amount": 12000,
        "currency": "BRL",
        "method": PaymentMethod.CARD,
        "source": "pay_tok_123",
        "idempotency_key": "client-key-1",
        "timeout": 5.0,
    }
    kwargs.update(overrides)
    return gateway.capture(**kwargs)


def test_capture_forwards_idempotency_key_and_timeout(gateway, razorpay_client):
    razorpay_client.payment.capture.return_value = {"id": "pay_tok_123", "status": "captured"}

    result = _capture(gateway)

    assert result.provider_ref == "pay_tok_123"
    assert result.status == "captured"
    razorpay_client.payment.capture.assert_called_once_with(
        "pay_tok_123",
        12000,
        {"currency": "BRL", "notes": {"method": "card"}},
        headers={IDEMPOTENCY_HEADER: "client-key-1"},
        timeout=5.0,
    )


def test_capture_with_unexpected_status_is_permanent(gateway, razorpay_client):
    razorpay_client.payment.capture.return_value = {"id": "pay_pix_1", "status": "failed"}

    with pytest.raises(ProviderError) as exc_info:
        _capture(gateway, method=PaymentMethod.PIX, source="pay_pix_1")

    assert exc_info.value.retryable is False
    assert exc_info.value.provider_ref == "pay_pix_1"


@pytest.mark.parametrize(
    "error",
    [
        requests.exceptions.Timeout("read timed out"),
        requests.exceptions.ConnectionError("connection reset"),
        razorpay.errors.ServerError("upstream 502"),
        razorpay.errors.GatewayError("gateway unavailable"),
    ],
)
def test_transient_failures_are_retryable(gateway, razorpay_client, error):
    razorpay_client.payment.capture.side_effect = error

    with pytest.raises(ProviderError) as exc_info:
        _capture(gateway)

    assert exc_info.value.retryable is True


def test_rejected_card_is_not_retryable(gateway, razorpay_client):
    razorpay_client.payment.capture.side_effect = razorpay.errors.BadRequestError("card declined")

    with pytest.raises(ProviderError) as exc_info:
        _capture(gateway)

    assert exc_info.value.retryable is False
    assert "card declined" in str(exc_info.value)


def test_refund_sends_amount_and_key(gateway, razorpay_client):
    razorpay_client.payment.refund.return_value = {"id": "rfnd_1", "status": "processed"}

    result = gateway.refund(
        provider_ref="pay_tok_123",
        amount=9600,
        idempotency_key="refund:p1",
        timeout=5.0,
    )

    assert result.provider_ref == "rfnd_1"
    razorpay_client.payment.refund.assert_called_once_with(
        "pay_tok_123",
        {"amount": 9600},
        headers={IDEMPOTENCY_HEADER: "refund:p1"},
        timeout=5.0,
    )
