# reservation_engine/infrastructure/repositories/inventory_ledger.py

import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from reservation_engine import config
from reservation_engine.domain.exceptions import (
    ConflictError,
    NotFoundError,
    OutOfCapacityError,
    UnitNotBookableError,
    ValidationError,
)
from reservation_engine.domain.inventory import (
    DEFAULT_RULES,
    SELLABLE_STATUSES,
    InventoryKind,
    UnitStatus,
    derive_status,
)
from reservation_engine.infrastructure.db.models import DayUseEvent, InventoryUnit, TimeSlot

logger = logging.getLogger(__name__)

_RELEASE_ATTEMPTS = 10

_UNIT_CLASSES = {
    InventoryKind.TIME_SLOT: TimeSlot,
    InventoryKind.DAY_USE_EVENT: DayUseEvent,
}


@dataclass(frozen=True)
class Reservation:
    unit_id: str
    quantity: int
    available: int
    status: UnitStatus


@dataclass(frozen=True)
class _UnitRead:
    unit: InventoryUnit
    counter: int
    status: UnitStatus


class InventoryLedger:
    """
    Owns availability for every inventory unit.

    Counter changes go through a conditional UPDATE that only applies when
    the counter and status still hold the values that were read. A lost
    race is retried up to ``max_attempts`` times, then reported as sold out.
    """

    def __init__(self, db: Session, max_attempts: int | None = None):
        self.db = db
        self.max_attempts = max_attempts or config.LEDGER_CAS_ATTEMPTS

    def get(self, unit_id: str) -> InventoryUnit:
        stmt = (
            select(InventoryUnit)
            .where(InventoryUnit.id == unit_id)
            .where(InventoryUnit.deleted_at.is_(None))
            .execution_options(populate_existing=True)
        )
        unit = self.db.execute(stmt).scalar_one_or_none()

        if not unit:
            raise NotFoundError("Inventory unit not found", {"unit_id": unit_id})

        return unit

    def register_unit(
        self,
        kind: InventoryKind,
        name: str,
        capacity: int,
        cancel_window_hours: int | None = None,
        refund_fraction: float | None = None,
        price: int = 0,
        starts_at: datetime | None = None,
    ) -> InventoryUnit:
        """Catalog hook: the only place availability is set without a reservation."""
        if capacity < 0:
            raise ValidationError("Capacity must be non-negative", {"capacity": capacity})

        default_window, default_fraction = DEFAULT_RULES[kind]
        unit = _UNIT_CLASSES[kind](
            name=name,
            capacity=capacity,
            cancel_window_hours=default_window if cancel_window_hours is None else cancel_window_hours,
            refund_fraction=default_fraction if refund_fraction is None else refund_fraction,
            price=price,
            starts_at=starts_at,
        )
        setattr(unit, unit.counter_attribute, unit.initial_counter())
        unit.status = derive_status(UnitStatus.OPEN, unit.available)

        self.db.add(unit)
        self.db.flush()
        return unit

    def reserve(self, unit_id: str, quantity: int) -> Reservation:
        if quantity <= 0:
            raise ValidationError("Quantity must be positive", {"quantity": quantity})

        for attempt in range(1, self.max_attempts + 1):
            read = self._read(unit_id)
            unit = read.unit

            if read.status not in SELLABLE_STATUSES:
                raise UnitNotBookableError(
                    f"Inventory unit is {read.status.value}",
                    {"unit_id": unit_id, "status": read.status.value},
                )

            available = unit.available_for(read.counter)
            if available < quantity:
                logger.info(
                    "reserve_rejected unit_id=%s requested=%s available=%s",
                    unit_id,
                    quantity,
                    available,
                )
                raise OutOfCapacityError(
                    "Not enough spots available",
                    {"unit_id": unit_id, "requested": quantity, "available": available},
                )

            new_counter = unit.counter_after_reserve(read.counter, quantity)
            new_available = unit.available_for(new_counter)
            new_status = derive_status(read.status, new_available)

            if self._compare_and_swap(read, new_counter, new_status):
                logger.info(
                    "reserved unit_id=%s quantity=%s available=%s status=%s",
                    unit_id,
                    quantity,
                    new_available,
                    new_status.value,
                )
                return Reservation(unit_id, quantity, new_available, new_status)

            logger.info(
                "reserve_conflict unit_id=%s attempt=%s/%s",
                unit_id,
                attempt,
                self.max_attempts,
            )

        raise OutOfCapacityError(
            "Spots sold out during checkout",
            {"unit_id": unit_id, "requested": quantity},
        )

    def release(self, unit_id: str, quantity: int) -> Reservation:
        """
        Give capacity back. Clamped to capacity; over-release is not detected.
        """
        if quantity <= 0:
            raise ValidationError("Quantity must be positive", {"quantity": quantity})

        for _ in range(_RELEASE_ATTEMPTS):
            read = self._read(unit_id)
            unit = read.unit

            new_counter = unit.counter_after_release(read.counter, quantity)
            new_available = unit.available_for(new_counter)
            new_status = derive_status(read.status, new_available)

            # Releases never fail for capacity, so a lost race just re-reads.
            if self._compare_and_swap(read, new_counter, new_status):
                logger.info(
                    "released unit_id=%s quantity=%s available=%s status=%s",
                    unit_id,
                    quantity,
                    new_available,
                    new_status.value,
                )
                return Reservation(unit_id, quantity, new_available, new_status)

        raise ConflictError(
            "Inventory unit kept changing during release",
            {"unit_id": unit_id, "quantity": quantity},
        )

    def _read(self, unit_id: str) -> _UnitRead:
        unit = self.get(unit_id)
        return _UnitRead(unit=unit, counter=unit.counter, status=unit.status)

    def _compare_and_swap(
        self,
        read: _UnitRead,
        new_counter: int,
        new_status: UnitStatus,
    ) -> bool:
        unit = read.unit
        counter_column = getattr(InventoryUnit, unit.counter_attribute)

        stmt = (
            update(InventoryUnit)
            .where(InventoryUnit.id == unit.id)
            .where(counter_column == read.counter)
            .where(InventoryUnit.status == read.status)
            .values({unit.counter_attribute: new_counter, "status": new_status})
            .execution_options(synchronize_session=False)
        )
        result = self.db.execute(stmt)

        # The in-memory object is stale either way; reload on next access.
        self.db.expire(unit)
        return result.rowcount == 1
