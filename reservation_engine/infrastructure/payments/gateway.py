# reservation_engine/infrastructure/payments/gateway.py

from dataclasses import dataclass, field
from enum import Enum
from typing import Protocol

import razorpay
import requests

IDEMPOTENCY_HEADER = "X-Idempotency-Key"


class PaymentMethod(str, Enum):
    CARD = "card"
    PIX = "pix"


@dataclass(frozen=True)
class GatewayResult:
    provider_ref: str
    status: str
    raw: dict = field(default_factory=dict)


class ProviderError(Exception):
    """
    Raised by gateways for any provider-side failure.
    ``retryable`` marks failures worth repeating with the same idempotency key.
    """

    def __init__(self, message: str, provider_ref: str | None = None, retryable: bool = False):
        self.provider_ref = provider_ref
        self.retryable = retryable
        super().__init__(message)


class PaymentGateway(Protocol):
    def capture(
        self,
        *,
        amount: int,
        currency: str,
        method: PaymentMethod,
        source: str,
        idempotency_key: str,
        timeout: float,
    ) -> GatewayResult: ...

    def refund(
        self,
        *,
        provider_ref: str,
        amount: int,
        idempotency_key: str,
        timeout: float,
    ) -> GatewayResult: ...


class RazorpayGateway:
    """
    Razorpay-backed gateway.

    ``source`` is the provider payment id authorized on the client side:
    the card token for card payments or the PIX key reference for PIX.
    """

    def __init__(self, key_id: str, key_secret: str, client: razorpay.Client | None = None):
        self.client = client or razorpay.Client(auth=(key_id, key_secret))

    def capture(
        self,
        *,
        amount: int,
        currency: str,
        method: PaymentMethod,
        source: str,
        idempotency_key: str,
        timeout: float,
    ) -> GatewayResult:
        response = self._call(
            self.client.payment.capture,
            source,
            amount,
            {"currency": currency, "notes": {"method": method.value}},
            provider_ref=source,
            idempotency_key=idempotency_key,
            timeout=timeout,
        )

        status = response.get("status")
        provider_ref = response.get("id") or source
        if status != "captured":
            raise ProviderError(
                f"Provider returned payment status {status}",
                provider_ref=provider_ref,
                retryable=False,
            )

        return GatewayResult(provider_ref=provider_ref, status=status, raw=response)

    def refund(
        self,
        *,
        provider_ref: str,
        amount: int,
        idempotency_key: str,
        timeout: float,
    ) -> GatewayResult:
        response = self._call(
            self.client.payment.refund,
            provider_ref,
            {"amount": amount},
            provider_ref=provider_ref,
            idempotency_key=idempotency_key,
            timeout=timeout,
        )

        return GatewayResult(
            provider_ref=response.get("id") or provider_ref,
            status=response.get("status", "processed"),
            raw=response,
        )

    @staticmethod
    def _call(method, *args, provider_ref: str, idempotency_key: str, timeout: float) -> dict:
        try:
            return method(
                *args,
                headers={IDEMPOTENCY_HEADER: idempotency_key},
                timeout=timeout,
            )
        except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as exc:
            raise ProviderError(
                f"Payment provider unreachable: {exc}",
                provider_ref=provider_ref,
                retryable=True,
            ) from exc
        except (razorpay.errors.GatewayError, razorpay.errors.ServerError) as exc:
            raise ProviderError(
                f"Payment provider error: {exc}",
                provider_ref=provider_ref,
                retryable=True,
            ) from exc
        except razorpay.errors.BadRequestError as exc:
            raise ProviderError(
                f"Payment rejected by provider: {exc}",
                provider_ref=provider_ref,
                retryable=False,
            ) from exc
