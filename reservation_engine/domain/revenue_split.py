from dataclasses import dataclass
from decimal import ROUND_FLOOR, Decimal

from reservation_engine import config
from reservation_engine.domain.exceptions import ValidationError


@dataclass(frozen=True)
class RevenueSplit:
    platform_fee: int
    supplier_share: int
    instructor_share: int

    @property
    def total(self) -> int:
        return self.platform_fee + self.supplier_share + self.instructor_share

    def to_payload(self) -> dict[str, int]:
        return {
            "platform_fee": self.platform_fee,
            "supplier_share": self.supplier_share,
            "instructor_share": self.instructor_share,
        }


def _share(total: int, pct: Decimal) -> int:
    return int((Decimal(total) * pct).to_integral_value(rounding=ROUND_FLOOR))


def split(
    total: int,
    has_instructor: bool = False,
    platform_fee_pct: Decimal | None = None,
    instructor_share_pct: Decimal | None = None,
) -> RevenueSplit:
    """
    Split a captured total between platform, supplier and instructor.

    Fee and instructor share are floored; the supplier takes the remainder,
    so the three parts always add up to ``total``. With no instructor the
    instructor percentage stays with the supplier.
    """
    if total < 0:
        raise ValidationError("Total must be non-negative", {"total": total})

    fee_pct = config.PLATFORM_FEE_PCT if platform_fee_pct is None else platform_fee_pct
    instructor_pct = (
        config.INSTRUCTOR_SHARE_PCT if instructor_share_pct is None else instructor_share_pct
    )

    platform_fee = _share(total, fee_pct)
    instructor_share = _share(total, instructor_pct) if has_instructor else 0
    supplier_share = total - platform_fee - instructor_share

    return RevenueSplit(
        platform_fee=platform_fee,
        supplier_share=supplier_share,
        instructor_share=instructor_share,
    )
