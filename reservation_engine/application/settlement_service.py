import logging
from datetime import datetime

from sqlalchemy.orm import Session

from reservation_engine.domain import revenue_split
from reservation_engine.domain.clock import Clock, utc_now
from reservation_engine.domain.exceptions import ConflictError, NotFoundError, ValidationError
from reservation_engine.domain.revenue_split import RevenueSplit
from reservation_engine.domain.state_machine import PaymentStatus
from reservation_engine.infrastructure.db.models import Settlement
from reservation_engine.infrastructure.repositories.outbox_repository import OutboxRepository
from reservation_engine.infrastructure.repositories.payment_repository import PaymentRepository
from reservation_engine.infrastructure.repositories.settlement_repository import (
    SettlementRepository,
)

logger = logging.getLogger(__name__)


class SettlementService:
    """Revenue split records for captured payments and their batch settlement."""

    def __init__(self, db: Session, clock: Clock = utc_now):
        self.db = db
        self.payment_repository = PaymentRepository(db)
        self.settlement_repository = SettlementRepository(db)
        self.outbox = OutboxRepository(db)
        self._clock = clock

    @staticmethod
    def split(total: int, has_instructor: bool = False) -> RevenueSplit:
        return revenue_split.split(total, has_instructor=has_instructor)

    def create_settlement(self, payment_id: str, split: RevenueSplit) -> Settlement:
        payment = self.payment_repository.get_by_id(payment_id)
        if not payment:
            raise NotFoundError("Payment not found", {"payment_id": payment_id})

        if payment.status != PaymentStatus.CAPTURED:
            raise ConflictError(
                f"Cannot settle payment in status {payment.status.value}",
                {"payment_id": payment_id},
            )
        if split.total != payment.amount:
            raise ValidationError(
                "Revenue split does not add up to the payment amount",
                {"payment_id": payment_id, "amount": payment.amount, **split.to_payload()},
            )
        if self.settlement_repository.get_by_payment_id(payment_id):
            raise ConflictError("Settlement already exists", {"payment_id": payment_id})

        settlement = self.settlement_repository.create_settlement(payment_id, split)

        logger.info(
            "settlement_created settlement_id=%s payment_id=%s platform_fee=%s supplier_share=%s instructor_share=%s",
            settlement.id,
            payment_id,
            split.platform_fee,
            split.supplier_share,
            split.instructor_share,
        )
        return settlement

    def settle_batch(self, from_date: datetime, to_date: datetime) -> list[Settlement]:
        """
        Mark every unsettled record for payments captured in the window as settled.

        Returns only the settlements flipped by this run, so overlapping or
        repeated batches never pay a record out twice.
        """
        if from_date > to_date:
            raise ValidationError(
                "Settlement window start must not be after its end",
                {"from": from_date.isoformat(), "to": to_date.isoformat()},
            )

        now = self._clock()
        settled: list[Settlement] = []

        for settlement in self.settlement_repository.list_unsettled_in_window(from_date, to_date):
            if not self.settlement_repository.mark_settled(settlement, now):
                logger.info(
                    "settlement_skipped settlement_id=%s reason=already_settled",
                    settlement.id,
                )
                continue

            settled.append(settlement)
            self.outbox.record(
                aggregate_type="settlement",
                aggregate_id=settlement.id,
                event_type="SETTLEMENT_SETTLED",
                payload={"settlement_id": settlement.id, "payment_id": settlement.payment_id},
                dedupe_key=f"settlement:{settlement.id}:settled",
            )

        logger.info(
            "settlement_batch from=%s to=%s settled=%s",
            from_date.isoformat(),
            to_date.isoformat(),
            len(settled),
        )
        return settled
