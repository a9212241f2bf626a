# reservation_engine/infrastructure/db/models.py

from datetime import datetime
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, synonym

from reservation_engine.domain.inventory import InventoryKind, UnitStatus
from reservation_engine.domain.state_machine import BookingStatus, PaymentStatus
from reservation_engine.infrastructure.db.session import Base


def _enum(enum_cls, name: str) -> Enum:
    # Persist the lowercase values, not the member names.
    return Enum(
        enum_cls,
        name=name,
        values_callable=lambda members: [member.value for member in members],
    )


inventory_kind_type = _enum(InventoryKind, "inventory_kind")
unit_status_type = _enum(UnitStatus, "unit_status")
booking_status_type = _enum(BookingStatus, "booking_status")
payment_status_type = _enum(PaymentStatus, "payment_status")


def _uuid() -> str:
    return str(uuid4())


class InventoryUnit(Base):
    """
    A sellable, capacity-bounded item.

    Single-table variant: TimeSlot keeps its availability in
    ``available_spots``; DayUseEvent counts ``current_participants``.
    Only the inventory ledger writes the counter columns.
    """

    __tablename__ = "inventory_units"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    kind: Mapped[InventoryKind] = mapped_column(inventory_kind_type, nullable=False)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    capacity: Mapped[int] = mapped_column(Integer, nullable=False)
    available_spots: Mapped[int | None] = mapped_column(Integer, nullable=True)
    current_participants: Mapped[int | None] = mapped_column(Integer, nullable=True)
    status: Mapped[UnitStatus] = mapped_column(
        unit_status_type,
        nullable=False,
        default=UnitStatus.OPEN,
    )
    cancel_window_hours: Mapped[int] = mapped_column(Integer, nullable=False)
    refund_fraction: Mapped[float] = mapped_column(Float, nullable=False)
    price: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    starts_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __mapper_args__ = {
        "polymorphic_on": "kind",
    }

    __table_args__ = (
        CheckConstraint("capacity >= 0", name="ck_unit_capacity_nonnegative"),
        CheckConstraint(
            "available_spots IS NULL OR (available_spots >= 0 AND available_spots <= capacity)",
            name="ck_unit_available_spots_bounds",
        ),
        CheckConstraint(
            "current_participants IS NULL OR "
            "(current_participants >= 0 AND current_participants <= capacity)",
            name="ck_unit_participants_bounds",
        ),
        CheckConstraint(
            "refund_fraction >= 0 AND refund_fraction <= 1",
            name="ck_unit_refund_fraction_bounds",
        ),
    )

    # Name of the column the ledger compare-and-swaps on.
    counter_attribute = ""

    @property
    def counter(self) -> int:
        return getattr(self, self.counter_attribute)

    @property
    def available(self) -> int:
        return self.available_for(self.counter)

    def initial_counter(self) -> int:
        raise NotImplementedError

    def available_for(self, counter: int) -> int:
        raise NotImplementedError

    def counter_after_reserve(self, counter: int, quantity: int) -> int:
        raise NotImplementedError

    def counter_after_release(self, counter: int, quantity: int) -> int:
        raise NotImplementedError


class TimeSlot(InventoryUnit):
    __mapper_args__ = {"polymorphic_identity": InventoryKind.TIME_SLOT}

    counter_attribute = "available_spots"

    def initial_counter(self) -> int:
        return self.capacity

    def available_for(self, counter: int) -> int:
        return counter

    def counter_after_reserve(self, counter: int, quantity: int) -> int:
        return counter - quantity

    def counter_after_release(self, counter: int, quantity: int) -> int:
        return min(counter + quantity, self.capacity)


class DayUseEvent(InventoryUnit):
    __mapper_args__ = {"polymorphic_identity": InventoryKind.DAY_USE_EVENT}

    counter_attribute = "current_participants"
    max_participants = synonym("capacity")

    def initial_counter(self) -> int:
        return 0

    def available_for(self, counter: int) -> int:
        return self.capacity - counter

    def counter_after_reserve(self, counter: int, quantity: int) -> int:
        return counter + quantity

    def counter_after_release(self, counter: int, quantity: int) -> int:
        return max(counter - quantity, 0)


class Booking(Base):
    """
    Booking table reflecting domain state.
    Domain controls transitions.
    DB stores current state safely.
    """

    __tablename__ = "bookings"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    unit_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("inventory_units.id"),
        nullable=False,
        index=True,
    )
    unit_kind: Mapped[InventoryKind] = mapped_column(inventory_kind_type, nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_price: Mapped[int] = mapped_column(Integer, nullable=False)
    total: Mapped[int] = mapped_column(Integer, nullable=False)
    payment_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    status: Mapped[BookingStatus] = mapped_column(
        booking_status_type,
        nullable=False,
        default=BookingStatus.PENDING,
    )
    refund_fraction: Mapped[float | None] = mapped_column(Float, nullable=True)
    check_in_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    check_out_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_booking_quantity_positive"),
        CheckConstraint("unit_price >= 0", name="ck_booking_unit_price_nonnegative"),
        CheckConstraint("total = unit_price * quantity", name="ck_booking_total_matches"),
    )


class Payment(Base):
    __tablename__ = "payments"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    booking_id: Mapped[str | None] = mapped_column(
        String(36),
        ForeignKey("bookings.id"),
        nullable=True,
    )
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(8), nullable=False)
    status: Mapped[PaymentStatus] = mapped_column(
        payment_status_type,
        nullable=False,
        default=PaymentStatus.PENDING,
    )
    provider_ref: Mapped[str | None] = mapped_column(String(128), nullable=True)
    method: Mapped[str | None] = mapped_column(String(16), nullable=True)
    idempotency_key: Mapped[str | None] = mapped_column(String(128), nullable=True)
    refunded_amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    captured_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    __table_args__ = (
        CheckConstraint("amount >= 0", name="ck_payment_amount_nonnegative"),
        CheckConstraint(
            "refunded_amount >= 0 AND refunded_amount <= amount",
            name="ck_payment_refund_bounds",
        ),
        # At most one non-failed payment per booking.
        Index(
            "uq_payment_active_booking",
            "booking_id",
            unique=True,
            postgresql_where=text("status <> 'failed'"),
            sqlite_where=text("status <> 'failed'"),
        ),
    )


class Settlement(Base):
    __tablename__ = "settlements"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    payment_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("payments.id"),
        nullable=False,
    )
    platform_fee: Mapped[int] = mapped_column(Integer, nullable=False)
    supplier_share: Mapped[int] = mapped_column(Integer, nullable=False)
    instructor_share: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    settled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    settled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    __table_args__ = (
        UniqueConstraint("payment_id", name="uq_settlement_payment_id"),
        CheckConstraint(
            "platform_fee >= 0 AND supplier_share >= 0 AND instructor_share >= 0",
            name="ck_settlement_shares_nonnegative",
        ),
    )


class OutboxEvent(Base):
    __tablename__ = "outbox_events"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    aggregate_type: Mapped[str] = mapped_column(String(64), nullable=False)
    aggregate_id: Mapped[str] = mapped_column(String(36), nullable=False)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    payload: Mapped[str] = mapped_column(Text, nullable=False)
    dedupe_key: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="PENDING")
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    published_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("dedupe_key", name="uq_outbox_dedupe_key"),
    )
