"""
ledger record helpers shared by the in-memory and db-backed engines.

a transaction row is immutable once written; balances in creator_financials
are a cached snapshot that must agree with what derive_financials() computes
from the rows.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional

from commission_engine import MAX_COMMISSION_LEVELS, check_amount

COMMISSION_TYPES = tuple(
    f"commission_level_{level}" for level in range(1, MAX_COMMISSION_LEVELS + 1)
)
TRANSACTION_TYPES = ("subscription",) + COMMISSION_TYPES + ("withdrawal", "platform_revenue")
TRANSACTION_STATUSES = ("completed", "pending", "failed")
REQUIRED_FIELDS = ("creator_id", "type", "amount", "description")

# credit bucket -> financials field it feeds
CREDIT_BUCKETS = {
    "direct": "direct_earnings",
    "network": "network_earnings",
}

FINANCIAL_FIELDS = (
    "available_balance",
    "total_earnings",
    "monthly_revenue",
    "direct_earnings",
    "network_earnings",
    "total_withdrawals",
)

# fields that must match between snapshot and ledger; monthly_revenue is a
# period figure and is only recomputed on rebuild
AUDITED_FIELDS = tuple(f for f in FINANCIAL_FIELDS if f != "monthly_revenue")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def commission_type(level: int) -> str:
    if not 1 <= level <= MAX_COMMISSION_LEVELS:
        raise ValueError(f"no commission level {level}")
    return f"commission_level_{level}"


def commission_description(level: int, payee_username: str) -> str:
    return f"Level {level} commission from @{payee_username}"


def validate_transaction(tx: Dict[str, Any]) -> Dict[str, Any]:
    """
    check required fields and fill defaults. returns a new dict; the caller
    assigns id / created_at.
    """
    missing = [f for f in REQUIRED_FIELDS if tx.get(f) in (None, "")]
    if missing:
        raise ValueError(f"transaction is missing required fields: {', '.join(missing)}")

    check_amount(tx["amount"])

    if tx["type"] not in TRANSACTION_TYPES:
        raise ValueError(f"unknown transaction type '{tx['type']}'")

    status = tx.get("status") or "completed"
    if status not in TRANSACTION_STATUSES:
        raise ValueError(f"unknown transaction status '{status}'")

    return {
        "creator_id": tx["creator_id"],
        "type": tx["type"],
        "amount": tx["amount"],
        "description": tx["description"],
        "status": status,
        "from_user_id": tx.get("from_user_id"),
        "related_creator_id": tx.get("related_creator_id"),
        "related_creator_username": tx.get("related_creator_username"),
        "event_id": tx.get("event_id"),
    }


def credit_field(bucket: str) -> str:
    try:
        return CREDIT_BUCKETS[bucket]
    except KeyError:
        raise ValueError(f"unknown credit bucket '{bucket}'") from None


def zero_financials(creator_id: str) -> Dict[str, Any]:
    snapshot = {"creator_id": creator_id}
    snapshot.update({field: 0 for field in FINANCIAL_FIELDS})
    snapshot["updated_at"] = utcnow()
    return snapshot


def month_start(now: datetime) -> datetime:
    return now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def derive_financials(
    creator_id: str,
    transactions: Iterable[Dict[str, Any]],
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    rebuild a financials snapshot from completed ledger rows only.
    """
    now = now or utcnow()
    period_start = month_start(now)
    derived = zero_financials(creator_id)

    for tx in transactions:
        if tx["status"] != "completed":
            continue
        kind = tx["type"]
        amount = tx["amount"]
        if kind == "subscription":
            derived["direct_earnings"] += amount
            derived["total_earnings"] += amount
            if tx["created_at"] >= period_start:
                derived["monthly_revenue"] += amount
        elif kind in COMMISSION_TYPES:
            derived["network_earnings"] += amount
            derived["total_earnings"] += amount
        elif kind == "withdrawal":
            derived["total_withdrawals"] += amount

    derived["available_balance"] = derived["total_earnings"] - derived["total_withdrawals"]
    return derived


def financials_consistent(snapshot: Dict[str, Any], derived: Dict[str, Any]) -> bool:
    return all(snapshot[field] == derived[field] for field in AUDITED_FIELDS)
