from enum import Enum


class InventoryKind(str, Enum):
    TIME_SLOT = "time_slot"
    DAY_USE_EVENT = "day_use_event"


class UnitStatus(str, Enum):
    OPEN = "open"
    FULL = "full"
    CANCELLED = "cancelled"
    CLOSED = "closed"


SELLABLE_STATUSES = frozenset({UnitStatus.OPEN, UnitStatus.FULL})

# (cancel_window_hours, refund_fraction) used when catalog omits the rule.
DEFAULT_RULES: dict[InventoryKind, tuple[int, float]] = {
    InventoryKind.TIME_SLOT: (24, 0.8),
    InventoryKind.DAY_USE_EVENT: (48, 0.7),
}


def derive_status(current: UnitStatus, available: int) -> UnitStatus:
    """
    Status follows availability while the unit is sellable.
    Cancelled and closed units keep their status.
    """
    if current not in SELLABLE_STATUSES:
        return current
    return UnitStatus.FULL if available == 0 else UnitStatus.OPEN
