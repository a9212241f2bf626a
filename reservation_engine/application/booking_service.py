import logging
from dataclasses import dataclass
from typing import Protocol

from sqlalchemy.orm import Session

from reservation_engine.domain import refund_policy
from reservation_engine.domain.clock import Clock, utc_now
from reservation_engine.domain.exceptions import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    RefundNotAllowedError,
    ValidationError,
)
from reservation_engine.domain.inventory import InventoryKind
from reservation_engine.domain.state_machine import BookingStateMachine, BookingStatus
from reservation_engine.infrastructure.db.models import Booking, Payment
from reservation_engine.infrastructure.repositories.booking_repository import BookingRepository
from reservation_engine.infrastructure.repositories.inventory_ledger import InventoryLedger
from reservation_engine.infrastructure.repositories.outbox_repository import OutboxRepository

logger = logging.getLogger(__name__)

_ALREADY_CANCELLED = {BookingStatus.CANCELLED, BookingStatus.REFUNDED}


class RefundIssuer(Protocol):
    def refund(self, payment_id: str, fraction: float) -> Payment: ...


@dataclass(frozen=True)
class CancellationResult:
    booking_id: str
    status: BookingStatus
    refund_allowed: bool
    refund_fraction: float
    refunded_amount: int


class BookingService:
    """Application service coordinating booking workflow."""

    def __init__(
        self,
        db: Session,
        ledger: InventoryLedger | None = None,
        refunds: RefundIssuer | None = None,
        clock: Clock = utc_now,
    ):
        self.db = db
        self.booking_repository = BookingRepository(db)
        self.ledger = ledger or InventoryLedger(db)
        self.outbox = OutboxRepository(db)
        self.refunds = refunds
        self._clock = clock

    def create_booking(
        self,
        user_id: str,
        unit_kind: InventoryKind,
        unit_id: str,
        quantity: int,
        unit_price: int,
    ) -> Booking:
        if not user_id:
            raise ValidationError("User id is required")
        if quantity <= 0:
            raise ValidationError("Quantity must be positive", {"quantity": quantity})
        if unit_price < 0:
            raise ValidationError("Unit price must be non-negative", {"unit_price": unit_price})

        unit = self.ledger.get(unit_id)
        if unit.kind != unit_kind:
            raise NotFoundError(
                "Inventory unit not found",
                {"unit_id": unit_id, "unit_kind": unit_kind.value},
            )

        # Reservation and booking row commit or roll back together.
        with self.db.begin_nested():
            self.ledger.reserve(unit_id, quantity)
            booking = self.booking_repository.create_booking(
                user_id=user_id,
                unit_id=unit_id,
                unit_kind=unit_kind,
                quantity=quantity,
                unit_price=unit_price,
                created_at=self._clock(),
            )

        logger.info(
            "booking_created booking_id=%s user_id=%s unit_id=%s quantity=%s total=%s",
            booking.id,
            user_id,
            unit_id,
            quantity,
            booking.total,
        )
        self.outbox.record(
            aggregate_type="booking",
            aggregate_id=booking.id,
            event_type="BOOKING_CREATED",
            payload={
                "booking_id": booking.id,
                "user_id": user_id,
                "unit_id": unit_id,
                "quantity": quantity,
                "total": booking.total,
            },
            dedupe_key=f"booking:{booking.id}:created",
        )
        return booking

    def get_booking(
        self,
        booking_id: str,
        user_id: str | None = None,
        for_update: bool = False,
    ) -> Booking:
        booking = self._get(booking_id, for_update=for_update)
        self._ensure_owner(booking, user_id)
        return booking

    def mark_paid(self, booking_id: str, payment_id: str) -> Booking:
        booking = self._get(booking_id, for_update=True)

        self._transition(booking, BookingStatus.PAID)
        booking.payment_id = payment_id
        self.db.flush()

        logger.info("booking_paid booking_id=%s payment_id=%s", booking.id, payment_id)
        return booking

    def cancel_booking(self, booking_id: str, user_id: str | None = None) -> CancellationResult:
        """
        Cancel within the unit's window and give the capacity back.

        A paid booking is refunded through the payment side first; the
        booking only moves once the provider has confirmed the refund, and
        the whole change is committed here so the refund is never left
        unrecorded without a critical log.
        """
        booking = self._get(booking_id, for_update=True)
        self._ensure_owner(booking, user_id)

        if booking.status in _ALREADY_CANCELLED:
            raise ValidationError(
                "Booking already cancelled",
                {"booking_id": booking.id, "status": booking.status.value},
            )

        expected = booking.status
        refund_to_payment = expected == BookingStatus.PAID and booking.payment_id is not None
        target = BookingStatus.REFUNDED if refund_to_payment else BookingStatus.CANCELLED
        BookingStateMachine.validate_transition(expected, target)

        unit = self.ledger.get(booking.unit_id)
        now = self._clock()
        fraction = refund_policy.evaluate(
            created_at=booking.created_at,
            now=now,
            cancel_window_hours=unit.cancel_window_hours,
            full_refund_fraction=unit.refund_fraction,
        )
        if fraction == 0:
            logger.info(
                "cancel_rejected booking_id=%s reason=window_expired window_hours=%s",
                booking.id,
                unit.cancel_window_hours,
            )
            raise RefundNotAllowedError(
                "Cancellation window expired",
                {"booking_id": booking.id, "cancel_window_hours": unit.cancel_window_hours},
            )

        refunded_amount = 0
        payment_id = booking.payment_id
        provider_ref = None
        if refund_to_payment:
            if self.refunds is None:
                raise RuntimeError("BookingService needs a refund issuer to cancel paid bookings")
            payment = self.refunds.refund(payment_id, fraction)
            refunded_amount = payment.refunded_amount
            provider_ref = payment.provider_ref

        # Once the provider has refunded, the local records must land or be reported.
        try:
            moved = self.booking_repository.compare_and_set_status(
                booking,
                expected=expected,
                new_status=target,
                cancelled_at=now,
                refund_fraction=fraction,
            )
            if not moved:
                raise ValidationError("Booking already cancelled", {"booking_id": booking_id})

            self.ledger.release(booking.unit_id, booking.quantity)

            self.outbox.record(
                aggregate_type="booking",
                aggregate_id=booking_id,
                event_type="BOOKING_CANCELLED",
                payload={
                    "booking_id": booking_id,
                    "status": target.value,
                    "refund_fraction": fraction,
                    "refunded_amount": refunded_amount,
                },
                dedupe_key=f"booking:{booking_id}:cancelled",
            )
            if refund_to_payment:
                self.db.commit()
        except Exception:
            if refund_to_payment:
                self.db.rollback()
                logger.critical(
                    "cancel_refund_not_recorded booking_id=%s payment_id=%s provider_ref=%s refunded_amount=%s",
                    booking_id,
                    payment_id,
                    provider_ref,
                    refunded_amount,
                )
            raise

        logger.info(
            "booking_cancelled booking_id=%s status=%s refund_fraction=%s refunded_amount=%s",
            booking_id,
            target.value,
            fraction,
            refunded_amount,
        )

        return CancellationResult(
            booking_id=booking_id,
            status=target,
            refund_allowed=True,
            refund_fraction=fraction,
            refunded_amount=refunded_amount,
        )

    def check_in(self, booking_id: str, user_id: str | None = None) -> Booking:
        booking = self._get(booking_id, for_update=True)
        self._ensure_owner(booking, user_id)

        if booking.status != BookingStatus.PAID:
            raise ConflictError(
                f"Cannot check in booking in status {booking.status.value}",
                {"booking_id": booking.id},
            )
        if booking.check_in_at is not None:
            raise ConflictError("Booking already checked in", {"booking_id": booking.id})

        booking.check_in_at = self._clock()
        self.db.flush()

        logger.info("booking_checked_in booking_id=%s", booking.id)
        return booking

    def check_out(self, booking_id: str, user_id: str | None = None) -> Booking:
        booking = self._get(booking_id, for_update=True)
        self._ensure_owner(booking, user_id)

        if booking.check_in_at is None:
            raise ConflictError("Booking is not checked in", {"booking_id": booking.id})
        if booking.check_out_at is not None:
            raise ConflictError("Booking already checked out", {"booking_id": booking.id})

        booking.check_out_at = self._clock()
        self.db.flush()

        logger.info("booking_checked_out booking_id=%s", booking.id)
        return booking

    def mark_no_show(self, booking_id: str) -> Booking:
        # The spot was held and paid for, so capacity is not released.
        booking = self._get(booking_id, for_update=True)

        if booking.check_in_at is not None:
            raise ConflictError("Checked-in booking cannot be a no-show", {"booking_id": booking.id})

        self._transition(booking, BookingStatus.NO_SHOW)
        self.db.flush()

        logger.info("booking_no_show booking_id=%s", booking.id)
        return booking

    def _get(self, booking_id: str, for_update: bool = False) -> Booking:
        booking = self.booking_repository.get_by_id(booking_id, for_update=for_update)

        if not booking:
            raise NotFoundError("Booking not found", {"booking_id": booking_id})

        return booking

    @staticmethod
    def _ensure_owner(booking: Booking, user_id: str | None) -> None:
        if user_id is not None and booking.user_id != user_id:
            raise ForbiddenError("Booking belongs to another user", {"booking_id": booking.id})

    def _transition(self, booking: Booking, to_status: BookingStatus) -> None:
        BookingStateMachine.validate_transition(booking.status, to_status)
        self.booking_repository.update_status(booking, to_status)
