# reservation_engine/infrastructure/repositories/payment_repository.py

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from reservation_engine.domain.state_machine import PaymentStatus
from reservation_engine.infrastructure.db.models import Payment


class PaymentRepository:

    def __init__(self, db: Session):
        self.db = db

    def get_by_id(
        self,
        payment_id: str,
        for_update: bool = False,
    ) -> Payment | None:

        stmt = (
            select(Payment)
            .where(Payment.id == payment_id)
            .execution_options(populate_existing=True)
        )
        if for_update:
            stmt = stmt.with_for_update()

        return self.db.execute(stmt).scalar_one_or_none()

    def get_active_for_booking(self, booking_id: str) -> Payment | None:
        stmt = (
            select(Payment)
            .where(Payment.booking_id == booking_id)
            .where(Payment.status != PaymentStatus.FAILED)
        )
        return self.db.execute(stmt).scalars().first()

    def create_payment(
        self,
        user_id: str,
        booking_id: str,
        amount: int,
        currency: str,
        created_at: datetime,
    ) -> Payment:

        payment = Payment(
            user_id=user_id,
            booking_id=booking_id,
            amount=amount,
            currency=currency,
            status=PaymentStatus.PENDING,
            refunded_amount=0,
            created_at=created_at,
            updated_at=created_at,
        )

        self.db.add(payment)
        self.db.flush()
        return payment
