# reservation_engine/infrastructure/repositories/booking_repository.py

from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from reservation_engine.domain.inventory import InventoryKind
from reservation_engine.domain.state_machine import BookingStatus
from reservation_engine.infrastructure.db.models import Booking


class BookingRepository:

    def __init__(self, db: Session):
        self.db = db

    def get_by_id(
        self,
        booking_id: str,
        for_update: bool = False,
    ) -> Booking | None:

        stmt = (
            select(Booking)
            .where(Booking.id == booking_id)
            .where(Booking.deleted_at.is_(None))
            .execution_options(populate_existing=True)
        )
        if for_update:
            stmt = stmt.with_for_update()

        return self.db.execute(stmt).scalar_one_or_none()

    def create_booking(
        self,
        user_id: str,
        unit_id: str,
        unit_kind: InventoryKind,
        quantity: int,
        unit_price: int,
        created_at: datetime,
    ) -> Booking:

        booking = Booking(
            user_id=user_id,
            unit_id=unit_id,
            unit_kind=unit_kind,
            quantity=quantity,
            unit_price=unit_price,
            total=unit_price * quantity,
            status=BookingStatus.PENDING,
            created_at=created_at,
            updated_at=created_at,
        )

        self.db.add(booking)
        self.db.flush()
        return booking

    def update_status(
        self,
        booking: Booking,
        new_status: BookingStatus,
    ) -> None:

        booking.status = new_status

    def compare_and_set_status(
        self,
        booking: Booking,
        expected: BookingStatus,
        new_status: BookingStatus,
        **values,
    ) -> bool:
        """
        Conditional status write; False when another writer moved the booking first.
        """
        stmt = (
            update(Booking)
            .where(Booking.id == booking.id)
            .where(Booking.status == expected)
            .values(status=new_status, **values)
            .execution_options(synchronize_session=False)
        )
        result = self.db.execute(stmt)
        self.db.expire(booking)
        return result.rowcount == 1
