# reservation_engine/infrastructure/repositories/outbox_repository.py

import json
import logging
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from reservation_engine.infrastructure.db.models import OutboxEvent

logger = logging.getLogger(__name__)

STATUS_PENDING = "PENDING"
STATUS_PUBLISHED = "PUBLISHED"


class OutboxRepository:
    """
    Hand-off point for notification delivery.

    Events are written in a savepoint so a failed write is logged and
    dropped without touching the booking or payment in the same transaction.
    """

    def __init__(self, db: Session):
        self.db = db

    def record(
        self,
        aggregate_type: str,
        aggregate_id: str,
        event_type: str,
        payload: dict,
        dedupe_key: str,
    ) -> None:
        try:
            with self.db.begin_nested():
                existing = self.db.execute(
                    select(OutboxEvent).where(OutboxEvent.dedupe_key == dedupe_key)
                ).scalar_one_or_none()
                if existing:
                    return

                self.db.add(
                    OutboxEvent(
                        aggregate_type=aggregate_type,
                        aggregate_id=aggregate_id,
                        event_type=event_type,
                        payload=json.dumps(payload, sort_keys=True, default=str),
                        dedupe_key=dedupe_key,
                        status=STATUS_PENDING,
                        attempts=0,
                    )
                )
        except SQLAlchemyError:
            logger.exception(
                "Failed to record outbox event. event_type=%s aggregate_id=%s",
                event_type,
                aggregate_id,
            )

    def list_by_status(self, status: str = STATUS_PENDING, limit: int = 50) -> list[OutboxEvent]:
        safe_limit = max(1, min(limit, 200))
        stmt = (
            select(OutboxEvent)
            .where(OutboxEvent.status == status)
            .order_by(OutboxEvent.created_at)
            .limit(safe_limit)
        )
        return list(self.db.execute(stmt).scalars().all())

    def mark_published(self, event_id: str, published_at: datetime) -> OutboxEvent | None:
        item = self.db.execute(
            select(OutboxEvent).where(OutboxEvent.id == event_id)
        ).scalar_one_or_none()
        if not item:
            return None

        item.status = STATUS_PUBLISHED
        item.published_at = published_at
        item.attempts += 1
        self.db.flush()
        return item
