import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from loguru import logger

from commission_engine import (
    MAX_COMMISSION_LEVELS,
    PLATFORM_CREATOR_ID,
    check_amount,
    commission_splits,
    payment_split,
)
from errors import CreatorNotFound, InsufficientBalance
from ledger import (
    commission_description,
    commission_type,
    credit_field,
    derive_financials,
    financials_consistent,
    utcnow,
    validate_transaction,
    zero_financials,
)
from memory_store import MemoryStore
from referral_engine import ancestors_of


# ---------
# financial ledger
# ---------

def append_transaction(tx: Dict[str, Any], store: MemoryStore) -> str:
    """
    append one ledger row and return its id.

    when tx carries an event_id, (event_id, creator_id, type) is unique:
    appending the same entry again returns the existing id.
    """
    row = validate_transaction(tx)

    with store.transaction():
        if row["event_id"] is not None:
            for existing in store.transactions.values():
                if (
                    existing["event_id"] == row["event_id"]
                    and existing["creator_id"] == row["creator_id"]
                    and existing["type"] == row["type"]
                ):
                    return existing["id"]

        row["id"] = uuid.uuid4().hex
        row["created_at"] = utcnow()
        row["seq"] = store.next_seq()
        store.touch("transactions", row["id"])
        store.transactions[row["id"]] = row
        return row["id"]


def get_transactions(creator_id: str, store: MemoryStore, limit: int = 50) -> List[Dict[str, Any]]:
    """most recent first."""
    with store.locked():
        rows = [dict(tx) for tx in store.transactions.values() if tx["creator_id"] == creator_id]
    rows.sort(key=lambda tx: (tx["created_at"], tx["seq"]), reverse=True)
    return rows[:limit]


def _financials_row(creator_id: str, store: MemoryStore) -> Dict[str, Any]:
    row = store.creator_financials.get(creator_id)
    if row is None:
        row = zero_financials(creator_id)
        store.touch("creator_financials", creator_id)
        store.creator_financials[creator_id] = row
    return row


def get_financials(creator_id: str, store: MemoryStore) -> Dict[str, Any]:
    with store.locked():
        return dict(_financials_row(creator_id, store))


def apply_credit(creator_id: str, bucket: str, amount: int, store: MemoryStore) -> Dict[str, Any]:
    """
    atomically add amount to total_earnings, available_balance and the
    bucket's field ("direct" -> direct_earnings + monthly_revenue,
    "network" -> network_earnings).
    """
    field = credit_field(bucket)
    check_amount(amount)

    with store.transaction():
        row = _financials_row(creator_id, store)
        store.touch("creator_financials", creator_id)
        row["total_earnings"] += amount
        row["available_balance"] += amount
        row[field] += amount
        if bucket == "direct":
            row["monthly_revenue"] += amount
        row["updated_at"] = utcnow()
        return dict(row)


def apply_withdrawal(creator_id: str, amount: int, store: MemoryStore) -> Dict[str, Any]:
    check_amount(amount)

    with store.transaction():
        row = _financials_row(creator_id, store)
        store.touch("creator_financials", creator_id)
        if row["available_balance"] < amount:
            raise InsufficientBalance(
                f"Creator {creator_id} has {row['available_balance']} available, "
                f"cannot withdraw {amount}."
            )
        row["available_balance"] -= amount
        row["total_withdrawals"] += amount
        row["updated_at"] = utcnow()
        return dict(row)


def audit_financials(
    creator_id: str,
    store: MemoryStore,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """compare the cached snapshot with the balance derived from the ledger."""
    with store.locked():
        snapshot = dict(_financials_row(creator_id, store))
        rows = [tx for tx in store.transactions.values() if tx["creator_id"] == creator_id]
        derived = derive_financials(creator_id, rows, now)

    return {
        "creator_id": creator_id,
        "snapshot": snapshot,
        "derived": derived,
        "consistent": financials_consistent(snapshot, derived),
    }


def rebuild_financials(
    creator_id: str,
    store: MemoryStore,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """replace the cached snapshot with the ledger-derived one."""
    with store.transaction():
        rows = [tx for tx in store.transactions.values() if tx["creator_id"] == creator_id]
        derived = derive_financials(creator_id, rows, now)
        store.touch("creator_financials", creator_id)
        store.creator_financials[creator_id] = derived
        logger.info("rebuilt financials for {} from {} ledger rows", creator_id, len(rows))
        return dict(derived)


# ---------
# commission engine
# ---------

def _duplicate_result(event_id: str, store: MemoryStore) -> Optional[Dict[str, Any]]:
    processed = store.payment_events.get(event_id)
    if processed is None:
        return None
    logger.info("payment event {} already processed, skipping", event_id)
    result = dict(processed["result"])
    result["status"] = "duplicate"
    return result


def _require_creator(creator_id: str, store: MemoryStore) -> None:
    if creator_id not in store.creators:
        raise CreatorNotFound(f"creator {creator_id} not found")


def _mark_processed(event_id: str, kind: str, result: Dict[str, Any], store: MemoryStore) -> None:
    store.touch("payment_events", event_id)
    store.payment_events[event_id] = {
        "event_id": event_id,
        "kind": kind,
        "result": dict(result),
        "processed_at": utcnow(),
    }


def _distribute_in_tx(
    payee_creator_id: str,
    gross_amount: int,
    payer_user_id: Optional[str],
    event_id: str,
    store: MemoryStore,
) -> List[Dict[str, Any]]:
    membership = store.creator_network.get(payee_creator_id)
    if membership is None:
        logger.info("creator {} not in network, no commissions to process", payee_creator_id)
        return []

    payee_username = membership["creator_username"]

    # 1) upline [L1..L4], nearest first
    lineage = ancestors_of(payee_creator_id, store, MAX_COMMISSION_LEVELS)

    # 2) per-level amounts
    splits = commission_splits(gross_amount, lineage)

    # 3) ledger rows + network credits
    payouts = []
    for ancestor, amount in zip(lineage, splits):
        level = ancestor["level"]
        append_transaction(
            {
                "creator_id": ancestor["creator_id"],
                "type": commission_type(level),
                "amount": amount,
                "description": commission_description(level, payee_username),
                "status": "completed",
                "from_user_id": payer_user_id,
                "related_creator_id": payee_creator_id,
                "related_creator_username": payee_username,
                "event_id": event_id,
            },
            store,
        )
        apply_credit(ancestor["creator_id"], "network", amount, store)
        logger.info(
            "level {} commission of {} cents to @{} from @{}",
            level, amount, ancestor["username"], payee_username,
        )
        payouts.append(
            {
                "level": level,
                "creator_id": ancestor["creator_id"],
                "username": ancestor["username"],
                "amount": amount,
            }
        )

    return payouts


def distribute_earning(
    payee_creator_id: str,
    gross_amount: int,
    payer_user_id: Optional[str],
    event_id: str,
    store: MemoryStore,
) -> Dict[str, Any]:
    """
    pay commissions on a gross payment received by payee_creator_id to up to
    four ancestors (10% / 5% / 3% / 2%, floored to whole cents).

    the event is applied as one unit of work and is idempotent on event_id.

    returns
    -------
    dict
        {
            "status": "applied" | "duplicate",
            "event_id": str,
            "payee_creator_id": str,
            "gross_amount": int,
            "commissions": [{"level", "creator_id", "username", "amount"}],
            "total_commissions": int,
        }
    """
    check_amount(gross_amount)

    with store.transaction():
        duplicate = _duplicate_result(event_id, store)
        if duplicate is not None:
            return duplicate

        payouts = _distribute_in_tx(payee_creator_id, gross_amount, payer_user_id, event_id, store)

        result = {
            "status": "applied",
            "event_id": event_id,
            "payee_creator_id": payee_creator_id,
            "gross_amount": gross_amount,
            "commissions": payouts,
            "total_commissions": sum(p["amount"] for p in payouts),
        }
        _mark_processed(event_id, "commissions", result, store)
        return result


def handle_payment(event: Dict[str, Any], store: MemoryStore) -> Dict[str, Any]:
    """
    process a completed payment to a creator:
      - idempotency on event_id
      - creator's direct share (70%) as a subscription entry
      - commissions up the referral chain
      - the rest as platform revenue

    event : dict
        {
            "event_id": str,
            "payee_creator_id": str,
            "payer_user_id": str,
            "gross_amount": int,      # cents
            "description": str,       # optional
        }
    """
    event_id = event["event_id"]
    payee_creator_id = event["payee_creator_id"]
    payer_user_id = event.get("payer_user_id")
    gross_amount = event["gross_amount"]
    check_amount(gross_amount)

    with store.transaction():
        duplicate = _duplicate_result(event_id, store)
        if duplicate is not None:
            return duplicate

        _require_creator(payee_creator_id, store)

        payouts = _distribute_in_tx(payee_creator_id, gross_amount, payer_user_id, event_id, store)
        total_commissions = sum(p["amount"] for p in payouts)
        split = payment_split(gross_amount, total_commissions)

        if split["creator_share"] > 0:
            append_transaction(
                {
                    "creator_id": payee_creator_id,
                    "type": "subscription",
                    "amount": split["creator_share"],
                    "description": event.get("description") or f"Subscription from user {payer_user_id}",
                    "from_user_id": payer_user_id,
                    "event_id": event_id,
                },
                store,
            )
            apply_credit(payee_creator_id, "direct", split["creator_share"], store)

        append_transaction(
            {
                "creator_id": PLATFORM_CREATOR_ID,
                "type": "platform_revenue",
                "amount": split["platform_revenue"],
                "description": f"Platform revenue from payment {event_id}",
                "from_user_id": payer_user_id,
                "related_creator_id": payee_creator_id,
                "event_id": event_id,
            },
            store,
        )

        result = {
            "status": "applied",
            "event_id": event_id,
            "payee_creator_id": payee_creator_id,
            "gross_amount": gross_amount,
            "creator_share": split["creator_share"],
            "commissions": payouts,
            "total_commissions": total_commissions,
            "platform_revenue": split["platform_revenue"],
        }
        _mark_processed(event_id, "payment", result, store)
        logger.info(
            "payment {}: creator {} platform {} commissions {}",
            event_id, split["creator_share"], split["platform_revenue"], total_commissions,
        )
        return result


def record_withdrawal(
    creator_id: str,
    amount: int,
    withdrawal_id: str,
    store: MemoryStore,
) -> Dict[str, Any]:
    """debit available_balance and log a withdrawal entry; idempotent on withdrawal_id."""
    check_amount(amount)

    with store.transaction():
        duplicate = _duplicate_result(withdrawal_id, store)
        if duplicate is not None:
            return duplicate

        _require_creator(creator_id, store)
        financials = apply_withdrawal(creator_id, amount, store)
        transaction_id = append_transaction(
            {
                "creator_id": creator_id,
                "type": "withdrawal",
                "amount": amount,
                "description": f"Withdrawal {withdrawal_id}",
                "event_id": withdrawal_id,
            },
            store,
        )
        result = {
            "status": "applied",
            "withdrawal_id": withdrawal_id,
            "creator_id": creator_id,
            "amount": amount,
            "transaction_id": transaction_id,
            "available_balance": financials["available_balance"],
        }
        _mark_processed(withdrawal_id, "withdrawal", result, store)
        return result
