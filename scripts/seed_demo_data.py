from datetime import datetime, timedelta, timezone

from sqlalchemy import select

from reservation_engine.domain.inventory import InventoryKind
from reservation_engine.infrastructure.db.models import InventoryUnit
from reservation_engine.infrastructure.db.session import get_db_session
from reservation_engine.infrastructure.repositories.inventory_ledger import InventoryLedger


def _dt(days_from_now: int, hour: int, minute: int) -> datetime:
    brt = timezone(timedelta(hours=-3))
    now_brt = datetime.now(brt)
    target = now_brt + timedelta(days=days_from_now)
    return target.replace(hour=hour, minute=minute, second=0, microsecond=0)


UNIT_DEFS = [
    {
        "kind": InventoryKind.TIME_SLOT,
        "name": "Quadra 1 - Beach Tennis 18:00",
        "capacity": 4,
        "price": 12000,
        "starts_at": _dt(days_from_now=1, hour=18, minute=0),
    },
    {
        "kind": InventoryKind.TIME_SLOT,
        "name": "Quadra 2 - Futevolei 19:30",
        "capacity": 4,
        "price": 15000,
        "starts_at": _dt(days_from_now=1, hour=19, minute=30),
    },
    {
        "kind": InventoryKind.DAY_USE_EVENT,
        "name": "Day Use Arena Sunset",
        "capacity": 40,
        "price": 8000,
        "starts_at": _dt(days_from_now=5, hour=10, minute=0),
    },
    {
        "kind": InventoryKind.DAY_USE_EVENT,
        "name": "Clinica de Beach Tennis",
        "capacity": 12,
        "price": 9500,
        "starts_at": _dt(days_from_now=7, hour=8, minute=0),
        "cancel_window_hours": 72,
        "refund_fraction": 0.5,
    },
]


def seed_units(db) -> int:
    ledger = InventoryLedger(db)
    created = 0

    for item in UNIT_DEFS:
        existing = db.execute(
            select(InventoryUnit).where(InventoryUnit.name == item["name"])
        ).scalar_one_or_none()
        if existing:
            continue

        ledger.register_unit(**item)
        created += 1

    return created


def main() -> None:
    with get_db_session() as db:
        created = seed_units(db)
    print(f"Seed complete: {created} inventory units added.")


if __name__ == "__main__":
    main()
