import secrets
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Header, status
from sqlalchemy.orm import Session

from reservation_engine import config
from reservation_engine.api.schemas.schemas import (
    BookingCreatedResponse,
    BookingRequest,
    BookingResponse,
    CancellationResponse,
    CaptureRequest,
    InventoryResponse,
    OutboxEventResponse,
    PaymentResponse,
    SettleBatchRequest,
    SettleBatchResponse,
    SettlementRequest,
    SettlementResponse,
)
from reservation_engine.application.booking_service import BookingService
from reservation_engine.application.payment_service import PaymentService
from reservation_engine.application.settlement_service import SettlementService
from reservation_engine.domain.exceptions import (
    ForbiddenError,
    NotFoundError,
    ReservationEngineError,
    UnauthorizedError,
    ValidationError,
)
from reservation_engine.infrastructure.db.models import (
    Booking,
    InventoryUnit,
    OutboxEvent,
    Payment,
    Settlement,
)
from reservation_engine.infrastructure.db.session import SessionLocal
from reservation_engine.infrastructure.payments.gateway import (
    PaymentGateway,
    PaymentMethod,
    RazorpayGateway,
)
from reservation_engine.infrastructure.repositories.inventory_ledger import InventoryLedger
from reservation_engine.infrastructure.repositories.outbox_repository import (
    STATUS_PENDING,
    OutboxRepository,
)


router = APIRouter()


def get_db():
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def get_payment_gateway() -> PaymentGateway:
    if not config.RAZORPAY_KEY_ID or not config.RAZORPAY_KEY_SECRET:
        raise ReservationEngineError(
            "Razorpay keys not configured. Set RAZORPAY_KEY_ID and RAZORPAY_KEY_SECRET."
        )
    return RazorpayGateway(config.RAZORPAY_KEY_ID, config.RAZORPAY_KEY_SECRET)


def current_user_id(x_user_id: str | None = Header(default=None)) -> str:
    if not x_user_id:
        raise UnauthorizedError("Missing X-User-Id header")
    return x_user_id


def require_operator(x_operator_token: str | None = Header(default=None)) -> None:
    """Guards staff-side endpoints: no-shows, settlement and the outbox feed."""
    if not x_operator_token:
        raise UnauthorizedError("Missing X-Operator-Token header")
    if not config.OPERATOR_TOKEN or not secrets.compare_digest(
        x_operator_token, config.OPERATOR_TOKEN
    ):
        raise ForbiddenError("Operator access required")


def _booking_service(db: Session, gateway: PaymentGateway | None = None) -> BookingService:
    if gateway is None:
        return BookingService(db)

    # Cancelling a paid booking refunds through the payment side.
    bookings = BookingService(db)
    bookings.refunds = PaymentService(db, gateway, bookings=bookings)
    return bookings


def _booking_response(booking: Booking) -> BookingResponse:
    return BookingResponse(
        id=booking.id,
        user_id=booking.user_id,
        unit_id=booking.unit_id,
        unit_kind=booking.unit_kind.value,
        quantity=booking.quantity,
        unit_price=booking.unit_price,
        total=booking.total,
        status=booking.status.value,
        payment_id=booking.payment_id,
        refund_fraction=booking.refund_fraction,
        check_in_at=booking.check_in_at,
        check_out_at=booking.check_out_at,
        cancelled_at=booking.cancelled_at,
        created_at=booking.created_at,
    )


def _payment_response(payment: Payment) -> PaymentResponse:
    return PaymentResponse(
        id=payment.id,
        booking_id=payment.booking_id,
        user_id=payment.user_id,
        amount=payment.amount,
        currency=payment.currency,
        status=payment.status.value,
        method=payment.method,
        provider_ref=payment.provider_ref,
        refunded_amount=payment.refunded_amount,
        captured_at=payment.captured_at,
        created_at=payment.created_at,
    )


def _settlement_response(settlement: Settlement) -> SettlementResponse:
    return SettlementResponse(
        id=settlement.id,
        payment_id=settlement.payment_id,
        platform_fee=settlement.platform_fee,
        supplier_share=settlement.supplier_share,
        instructor_share=settlement.instructor_share,
        settled=settlement.settled,
        settled_at=settlement.settled_at,
    )


def _inventory_response(unit: InventoryUnit) -> InventoryResponse:
    return InventoryResponse(
        id=unit.id,
        kind=unit.kind.value,
        name=unit.name,
        capacity=unit.capacity,
        available=unit.available,
        status=unit.status.value,
        price=unit.price,
        cancel_window_hours=unit.cancel_window_hours,
        refund_fraction=unit.refund_fraction,
        starts_at=unit.starts_at,
    )


def _outbox_response(item: OutboxEvent) -> OutboxEventResponse:
    return OutboxEventResponse(
        id=item.id,
        aggregate_type=item.aggregate_type,
        aggregate_id=item.aggregate_id,
        event_type=item.event_type,
        status=item.status,
        attempts=item.attempts,
        created_at=item.created_at.isoformat(),
    )


@router.get("/health")
def health():
    return {"message": "Reservation Engine is running"}


@router.get("/inventory/{unit_id}", response_model=InventoryResponse)
def get_inventory(unit_id: str, db: Session = Depends(get_db)):
    unit = InventoryLedger(db).get(unit_id)
    return _inventory_response(unit)


@router.post(
    "/bookings",
    response_model=BookingCreatedResponse,
    status_code=status.HTTP_201_CREATED,
)
def create_booking(
    request: BookingRequest,
    user_id: str = Depends(current_user_id),
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
):
    bookings = _booking_service(db)
    booking = bookings.create_booking(
        user_id=user_id,
        unit_kind=request.unit_kind,
        unit_id=request.unit_id,
        quantity=request.quantity,
        unit_price=request.unit_price,
    )

    payments = PaymentService(db, gateway, bookings=bookings)
    payment = payments.create_intent(
        user_id=user_id,
        booking_id=booking.id,
        total=booking.total,
    )

    return BookingCreatedResponse(
        booking=_booking_response(booking),
        payment=_payment_response(payment),
    )


@router.get("/bookings/{booking_id}", response_model=BookingResponse)
def get_booking(
    booking_id: str,
    user_id: str = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    booking = _booking_service(db).get_booking(booking_id, user_id=user_id)
    return _booking_response(booking)


@router.post("/bookings/{booking_id}/cancel", response_model=CancellationResponse)
def cancel_booking(
    booking_id: str,
    user_id: str = Depends(current_user_id),
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
):
    result = _booking_service(db, gateway).cancel_booking(booking_id, user_id=user_id)

    return CancellationResponse(
        booking_id=result.booking_id,
        status=result.status.value,
        refund_allowed=result.refund_allowed,
        refund_fraction=result.refund_fraction,
        refunded_amount=result.refunded_amount,
    )


@router.post("/bookings/{booking_id}/check-in", response_model=BookingResponse)
def check_in_booking(
    booking_id: str,
    user_id: str = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    booking = _booking_service(db).check_in(booking_id, user_id=user_id)
    return _booking_response(booking)


@router.post("/bookings/{booking_id}/check-out", response_model=BookingResponse)
def check_out_booking(
    booking_id: str,
    user_id: str = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    booking = _booking_service(db).check_out(booking_id, user_id=user_id)
    return _booking_response(booking)


@router.post(
    "/bookings/{booking_id}/no-show",
    response_model=BookingResponse,
    dependencies=[Depends(require_operator)],
)
def mark_booking_no_show(
    booking_id: str,
    db: Session = Depends(get_db),
):
    booking = _booking_service(db).mark_no_show(booking_id)
    return _booking_response(booking)


@router.get("/payments/{payment_id}", response_model=PaymentResponse)
def get_payment(
    payment_id: str,
    user_id: str = Depends(current_user_id),
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
):
    payment = PaymentService(db, gateway).get_payment(payment_id, user_id=user_id)
    return _payment_response(payment)


@router.post("/payments/{payment_id}/capture", response_model=PaymentResponse)
def capture_payment(
    payment_id: str,
    request: CaptureRequest,
    user_id: str = Depends(current_user_id),
    idempotency_key: str | None = Header(default=None),
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
):
    source = request.card_token if request.method == PaymentMethod.CARD else request.pix_key
    if not source:
        field = "card_token" if request.method == PaymentMethod.CARD else "pix_key"
        raise ValidationError(
            f"{field} is required for {request.method.value} payments",
            {"method": request.method.value},
        )

    payment = PaymentService(db, gateway).capture(
        payment_id,
        method=request.method,
        source=source,
        idempotency_key=idempotency_key,
        user_id=user_id,
    )
    return _payment_response(payment)


@router.post(
    "/payments/{payment_id}/settlement",
    response_model=SettlementResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_operator)],
)
def create_settlement(
    payment_id: str,
    request: SettlementRequest,
    db: Session = Depends(get_db),
):
    service = SettlementService(db)
    payment = db.get(Payment, payment_id)
    if not payment:
        raise NotFoundError("Payment not found", {"payment_id": payment_id})

    split = service.split(payment.amount, has_instructor=request.has_instructor)
    settlement = service.create_settlement(payment_id, split)
    return _settlement_response(settlement)


@router.post(
    "/settlements/settle",
    response_model=SettleBatchResponse,
    dependencies=[Depends(require_operator)],
)
def settle_batch(
    request: SettleBatchRequest,
    db: Session = Depends(get_db),
):
    settled = SettlementService(db).settle_batch(request.from_date, request.to_date)
    return SettleBatchResponse(
        settled_count=len(settled),
        settlements=[_settlement_response(item) for item in settled],
    )


@router.get(
    "/outbox/events",
    response_model=list[OutboxEventResponse],
    dependencies=[Depends(require_operator)],
)
def list_outbox_events(
    status_filter: str = STATUS_PENDING,
    limit: int = 50,
    db: Session = Depends(get_db),
):
    events = OutboxRepository(db).list_by_status(status_filter, limit=limit)
    return [_outbox_response(item) for item in events]


@router.post(
    "/outbox/events/{event_id}/mark-published",
    response_model=OutboxEventResponse,
    dependencies=[Depends(require_operator)],
)
def mark_outbox_event_published(
    event_id: str,
    db: Session = Depends(get_db),
):
    item = OutboxRepository(db).mark_published(event_id, datetime.now(timezone.utc))
    if not item:
        raise NotFoundError("Outbox event not found", {"event_id": event_id})

    return _outbox_response(item)
