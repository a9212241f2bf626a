import logging
from typing import Callable

from sqlalchemy.orm import Session

from reservation_engine import config
from reservation_engine.application.booking_service import BookingService
from reservation_engine.domain import refund_policy
from reservation_engine.domain.clock import Clock, utc_now
from reservation_engine.domain.exceptions import (
    CaptureInconsistencyError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    PaymentFailedError,
    ValidationError,
)
from reservation_engine.domain.state_machine import (
    BookingStatus,
    PaymentStateMachine,
    PaymentStatus,
)
from reservation_engine.infrastructure.db.models import Payment
from reservation_engine.infrastructure.payments.gateway import (
    GatewayResult,
    PaymentGateway,
    PaymentMethod,
    ProviderError,
)
from reservation_engine.infrastructure.repositories.outbox_repository import OutboxRepository
from reservation_engine.infrastructure.repositories.payment_repository import PaymentRepository

logger = logging.getLogger(__name__)


class PaymentService:
    """
    Payment side of a booking: intents, idempotent capture and refunds.

    The provider call cannot join the database transaction, so capture is
    ordered as: provider confirms first, then payment and booking are
    committed together. A failed commit after a confirmed charge is logged
    as ``capture_commit_failed`` for reconciliation.
    """

    def __init__(
        self,
        db: Session,
        gateway: PaymentGateway,
        bookings: BookingService | None = None,
        currency: str | None = None,
        timeout: float | None = None,
        max_retries: int | None = None,
        clock: Clock = utc_now,
    ):
        self.db = db
        self.gateway = gateway
        self.payment_repository = PaymentRepository(db)
        self.outbox = OutboxRepository(db)
        self.bookings = bookings or BookingService(db, clock=clock)
        self.currency = currency or config.PAYMENT_CURRENCY
        self.timeout = config.PAYMENT_PROVIDER_TIMEOUT_SECONDS if timeout is None else timeout
        self.max_retries = config.PAYMENT_PROVIDER_MAX_RETRIES if max_retries is None else max_retries
        self._clock = clock

    def create_intent(self, user_id: str, booking_id: str, total: int) -> Payment:
        booking = self.bookings.get_booking(booking_id, user_id=user_id)

        if booking.status != BookingStatus.PENDING:
            raise ConflictError(
                f"Cannot create payment for booking in status {booking.status.value}",
                {"booking_id": booking_id},
            )
        if total != booking.total:
            raise ValidationError(
                "Payment total does not match booking total",
                {"booking_id": booking_id, "total": total, "booking_total": booking.total},
            )
        if self.payment_repository.get_active_for_booking(booking_id):
            raise ConflictError(
                "Booking already has an active payment",
                {"booking_id": booking_id},
            )

        payment = self.payment_repository.create_payment(
            user_id=user_id,
            booking_id=booking_id,
            amount=total,
            currency=self.currency,
            created_at=self._clock(),
        )

        logger.info(
            "payment_created payment_id=%s booking_id=%s amount=%s",
            payment.id,
            booking_id,
            total,
        )
        return payment

    def get_payment(self, payment_id: str, user_id: str | None = None) -> Payment:
        payment = self._get(payment_id)
        self._ensure_owner(payment, user_id)
        return payment

    def capture(
        self,
        payment_id: str,
        method: PaymentMethod,
        source: str,
        idempotency_key: str | None = None,
        user_id: str | None = None,
    ) -> Payment:
        payment = self._get(payment_id, for_update=True)
        self._ensure_owner(payment, user_id)

        if payment.status != PaymentStatus.PENDING:
            raise ConflictError(
                "Payment already processed",
                {"payment_id": payment_id, "status": payment.status.value},
            )
        if not source:
            raise ValidationError("Payment details are required", {"method": method.value})

        booking_id = payment.booking_id
        if booking_id:
            # Held until commit so a cancel cannot land while the provider charges.
            booking = self.bookings.get_booking(booking_id, for_update=True)
            if booking.status != BookingStatus.PENDING:
                raise ConflictError(
                    f"Cannot capture payment for booking in status {booking.status.value}",
                    {"payment_id": payment_id, "booking_id": booking_id},
                )

        # Retries of the same logical capture must reach the provider with the same key.
        key = idempotency_key or f"capture:{payment.id}"
        payment.idempotency_key = key
        amount = payment.amount

        try:
            result = self._call_provider(
                "capture",
                payment_id,
                lambda: self.gateway.capture(
                    amount=amount,
                    currency=payment.currency,
                    method=method,
                    source=source,
                    idempotency_key=key,
                    timeout=self.timeout,
                ),
            )
        except ProviderError as exc:
            self._record_capture_failure(payment, exc)
            raise PaymentFailedError(
                "Payment capture failed",
                provider_ref=exc.provider_ref,
                diagnostic=str(exc),
                retryable=exc.retryable,
            ) from exc

        try:
            PaymentStateMachine.validate_transition(payment.status, PaymentStatus.CAPTURED)
            payment.status = PaymentStatus.CAPTURED
            payment.provider_ref = result.provider_ref
            payment.method = method.value
            payment.captured_at = self._clock()
            if booking_id:
                self.bookings.mark_paid(booking_id, payment_id)
            self.db.commit()
        except Exception as exc:
            self.db.rollback()
            logger.critical(
                "capture_commit_failed payment_id=%s booking_id=%s provider_ref=%s amount=%s",
                payment_id,
                booking_id,
                result.provider_ref,
                amount,
            )
            raise CaptureInconsistencyError(
                "Payment captured but not recorded",
                {"payment_id": payment_id},
            ) from exc

        logger.info(
            "payment_captured payment_id=%s booking_id=%s provider_ref=%s method=%s",
            payment_id,
            booking_id,
            result.provider_ref,
            method.value,
        )
        self.outbox.record(
            aggregate_type="payment",
            aggregate_id=payment_id,
            event_type="PAYMENT_CAPTURED",
            payload={
                "payment_id": payment_id,
                "booking_id": booking_id,
                "amount": amount,
                "provider_ref": result.provider_ref,
            },
            dedupe_key=f"payment:{payment_id}:captured",
        )
        return payment

    def refund(self, payment_id: str, fraction: float) -> Payment:
        if not 0 < fraction <= 1:
            raise ValidationError("Refund fraction must be in (0, 1]", {"fraction": fraction})

        payment = self._get(payment_id, for_update=True)
        PaymentStateMachine.validate_transition(payment.status, PaymentStatus.REFUNDED)

        amount = refund_policy.refund_amount(payment.amount, fraction)

        if payment.provider_ref:
            provider_ref = payment.provider_ref
            try:
                self._call_provider(
                    "refund",
                    payment_id,
                    lambda: self.gateway.refund(
                        provider_ref=provider_ref,
                        amount=amount,
                        idempotency_key=f"refund:{payment_id}",
                        timeout=self.timeout,
                    ),
                )
            except ProviderError as exc:
                logger.error(
                    "refund_failed payment_id=%s provider_ref=%s retryable=%s error=%s",
                    payment_id,
                    provider_ref,
                    exc.retryable,
                    exc,
                )
                raise PaymentFailedError(
                    "Refund failed",
                    provider_ref=provider_ref,
                    diagnostic=str(exc),
                    retryable=exc.retryable,
                ) from exc
        else:
            # No provider charge on record, so nothing goes back to the buyer.
            amount = 0
            logger.info("refund_local_only payment_id=%s", payment_id)

        payment.status = PaymentStatus.REFUNDED
        payment.refunded_amount = amount
        self.db.flush()

        logger.info(
            "payment_refunded payment_id=%s fraction=%s amount=%s",
            payment_id,
            fraction,
            amount,
        )
        self.outbox.record(
            aggregate_type="payment",
            aggregate_id=payment_id,
            event_type="PAYMENT_REFUNDED",
            payload={"payment_id": payment_id, "fraction": fraction, "amount": amount},
            dedupe_key=f"payment:{payment_id}:refunded",
        )
        return payment

    def _call_provider(
        self,
        operation: str,
        payment_id: str,
        call: Callable[[], GatewayResult],
    ) -> GatewayResult:
        attempts = self.max_retries + 1

        for attempt in range(1, attempts + 1):
            try:
                return call()
            except ProviderError as exc:
                if not exc.retryable or attempt == attempts:
                    raise
                logger.warning(
                    "provider_retry operation=%s payment_id=%s attempt=%s/%s error=%s",
                    operation,
                    payment_id,
                    attempt,
                    attempts,
                    exc,
                )

        raise AssertionError("unreachable")

    def _record_capture_failure(self, payment: Payment, exc: ProviderError) -> None:
        logger.error(
            "capture_failed payment_id=%s provider_ref=%s retryable=%s error=%s",
            payment.id,
            exc.provider_ref,
            exc.retryable,
            exc,
        )
        if exc.retryable:
            # Outcome unknown on our side; keep the intent pending so the same key can be retried.
            return

        PaymentStateMachine.validate_transition(payment.status, PaymentStatus.FAILED)
        payment.status = PaymentStatus.FAILED
        payment.failure_reason = str(exc)
        self.db.commit()

    def _get(self, payment_id: str, for_update: bool = False) -> Payment:
        payment = self.payment_repository.get_by_id(payment_id, for_update=for_update)

        if not payment:
            raise NotFoundError("Payment not found", {"payment_id": payment_id})

        return payment

    @staticmethod
    def _ensure_owner(payment: Payment, user_id: str | None) -> None:
        if user_id is not None and payment.user_id != user_id:
            raise ForbiddenError("Payment belongs to another user", {"payment_id": payment.id})
