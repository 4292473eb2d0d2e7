from decimal import Decimal, ROUND_FLOOR
from typing import List, Optional, Sequence

from errors import InvalidAmount

# level 1 = direct referrer of the payee, level 4 = four hops up
COMMISSION_RATES = (
    Decimal("0.10"),
    Decimal("0.05"),
    Decimal("0.03"),
    Decimal("0.02"),
)
MAX_COMMISSION_LEVELS = len(COMMISSION_RATES)

CREATOR_SHARE_RATE = Decimal("0.70")

PLATFORM_CREATOR_ID = "PLATFORM"


def check_amount(amount):
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise InvalidAmount(f"amount must be an int number of cents, got {amount!r}")
    if amount < 0:
        raise InvalidAmount(f"amount must be non-negative, got {amount}")


def rate_for_level(level: int) -> Decimal:
    """
    commission rate for a 1-based level; levels beyond the table earn nothing.
    """
    if 1 <= level <= MAX_COMMISSION_LEVELS:
        return COMMISSION_RATES[level - 1]
    return Decimal("0")


def commission_for_level(gross_amount: int, level: int) -> int:
    """floor(gross * rate) in cents."""
    check_amount(gross_amount)
    amount = (Decimal(gross_amount) * rate_for_level(level)).to_integral_value(
        rounding=ROUND_FLOOR
    )
    return int(amount)


def commission_splits(gross_amount: int, lineage: Sequence[Optional[object]]) -> List[int]:
    """
    gross_amount: int (cents)
    lineage: [L1, L2, L3, L4] ancestors, nearest first (may be shorter or
             contain None once the chain ends)

    returns one amount per ancestor up to the first gap, so a chain of two
    resolvable ancestors yields exactly two amounts.
    """
    check_amount(gross_amount)
    splits = []
    for index, ancestor in enumerate(lineage[:MAX_COMMISSION_LEVELS]):
        if ancestor is None:
            break
        splits.append(commission_for_level(gross_amount, index + 1))
    return splits


def payment_split(gross_amount: int, total_commissions: int) -> dict:
    """
    split a gross payment between the payee creator and the platform.

    commissions come out of the platform side; the platform also keeps every
    rounding remainder, so the three parts always add up to gross_amount.
    """
    check_amount(gross_amount)
    check_amount(total_commissions)

    creator_share = int(
        (Decimal(gross_amount) * CREATOR_SHARE_RATE).to_integral_value(rounding=ROUND_FLOOR)
    )
    platform_revenue = gross_amount - creator_share - total_commissions
    if platform_revenue < 0:
        raise ValueError("commissions exceed the platform share")

    return {
        "creator_share": creator_share,
        "commissions": total_commissions,
        "platform_revenue": platform_revenue,
    }
