# reservation_engine/infrastructure/repositories/settlement_repository.py

from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from reservation_engine.domain.revenue_split import RevenueSplit
from reservation_engine.domain.state_machine import PaymentStatus
from reservation_engine.infrastructure.db.models import Payment, Settlement


class SettlementRepository:

    def __init__(self, db: Session):
        self.db = db

    def get_by_payment_id(self, payment_id: str) -> Settlement | None:
        stmt = select(Settlement).where(Settlement.payment_id == payment_id)
        return self.db.execute(stmt).scalar_one_or_none()

    def create_settlement(self, payment_id: str, split: RevenueSplit) -> Settlement:
        settlement = Settlement(
            payment_id=payment_id,
            platform_fee=split.platform_fee,
            supplier_share=split.supplier_share,
            instructor_share=split.instructor_share,
            settled=False,
        )

        self.db.add(settlement)
        self.db.flush()
        return settlement

    def list_unsettled_in_window(
        self,
        from_date: datetime,
        to_date: datetime,
    ) -> list[Settlement]:
        stmt = (
            select(Settlement)
            .join(Payment, Payment.id == Settlement.payment_id)
            .where(Payment.status == PaymentStatus.CAPTURED)
            .where(Payment.captured_at >= from_date)
            .where(Payment.captured_at <= to_date)
            .where(Settlement.settled.is_(False))
            .order_by(Payment.captured_at)
        )
        return list(self.db.execute(stmt).scalars().all())

    def mark_settled(self, settlement: Settlement, settled_at: datetime) -> bool:
        """
        Flip settled false -> true. False when another batch got there first.
        """
        stmt = (
            update(Settlement)
            .where(Settlement.id == settlement.id)
            .where(Settlement.settled.is_(False))
            .values(settled=True, settled_at=settled_at)
            .execution_options(synchronize_session=False)
        )
        result = self.db.execute(stmt)
        self.db.expire(settlement)
        return result.rowcount == 1
