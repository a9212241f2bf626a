from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

from reservation_engine.domain.inventory import InventoryKind
from reservation_engine.infrastructure.payments.gateway import PaymentMethod


class BookingRequest(BaseModel):
    unit_kind: InventoryKind
    unit_id: str
    quantity: int = Field(gt=0)
    unit_price: int = Field(ge=0)


class BookingResponse(BaseModel):
    id: str
    user_id: str
    unit_id: str
    unit_kind: str
    quantity: int
    unit_price: int
    total: int
    status: str
    payment_id: str | None = None
    refund_fraction: float | None = None
    check_in_at: datetime | None = None
    check_out_at: datetime | None = None
    cancelled_at: datetime | None = None
    created_at: datetime


class PaymentResponse(BaseModel):
    id: str
    booking_id: str | None = None
    user_id: str
    amount: int
    currency: str
    status: str
    method: str | None = None
    provider_ref: str | None = None
    refunded_amount: int
    captured_at: datetime | None = None
    created_at: datetime


class BookingCreatedResponse(BaseModel):
    booking: BookingResponse
    payment: PaymentResponse


class CaptureRequest(BaseModel):
    method: PaymentMethod
    # Card: provider payment token. PIX: key of the authorized instant payment.
    card_token: str | None = None
    pix_key: str | None = None


class CancellationResponse(BaseModel):
    booking_id: str
    status: str
    refund_allowed: bool
    refund_fraction: float
    refunded_amount: int


class InventoryResponse(BaseModel):
    id: str
    kind: str
    name: str
    capacity: int
    available: int
    status: str
    price: int
    cancel_window_hours: int
    refund_fraction: float
    starts_at: datetime | None = None


class SettlementRequest(BaseModel):
    has_instructor: bool = False


class SettlementResponse(BaseModel):
    id: str
    payment_id: str
    platform_fee: int
    supplier_share: int
    instructor_share: int
    settled: bool
    settled_at: datetime | None = None


class SettleBatchRequest(BaseModel):
    from_date: datetime
    to_date: datetime


class SettleBatchResponse(BaseModel):
    settled_count: int
    settlements: list[SettlementResponse]


class OutboxEventResponse(BaseModel):
    id: str
    aggregate_type: str
    aggregate_id: str
    event_type: str
    status: str
    attempts: int
    created_at: str


class ErrorBody(BaseModel):
    code: str
    message: str
    details: dict = Field(default_factory=dict)


class ErrorResponse(BaseModel):
    success: Literal[False] = False
    error: ErrorBody
