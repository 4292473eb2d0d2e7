from datetime import datetime
from typing import Any, Dict, List, Optional

from loguru import logger
from psycopg import Connection

from commission_engine import (
    MAX_COMMISSION_LEVELS,
    PLATFORM_CREATOR_ID,
    check_amount,
    commission_splits,
    payment_split,
)
from db.db import get_conn, run_in_transaction
from db.repositories import (
    debit_financials_for_withdrawal,
    ensure_payment_event,
    get_all_transactions,
    get_creator,
    get_membership,
    get_or_create_financials,
    get_payment_event_result,
    get_transactions,
    insert_transaction,
    overwrite_financials,
    save_payment_event_result,
    upsert_financials_credit,
)
from errors import CreatorNotFound, InsufficientBalance
from ledger import (
    commission_description,
    commission_type,
    derive_financials,
    financials_consistent,
    validate_transaction,
)
from referral_db import ancestors_of_db


def append_transaction_db(conn: Connection, tx: Dict[str, Any]) -> str:
    return insert_transaction(conn, validate_transaction(tx))


def get_transactions_db(creator_id: str, limit: int = 50) -> List[Dict[str, Any]]:
    with get_conn() as conn:
        return get_transactions(conn, creator_id, limit)


def get_financials_db(creator_id: str) -> Dict[str, Any]:
    return run_in_transaction(get_or_create_financials, creator_id)


def _audit_in_tx(conn: Connection, creator_id: str, now: Optional[datetime]) -> Dict[str, Any]:
    snapshot = get_or_create_financials(conn, creator_id)
    derived = derive_financials(creator_id, get_all_transactions(conn, creator_id), now)
    return {
        "creator_id": creator_id,
        "snapshot": snapshot,
        "derived": derived,
        "consistent": financials_consistent(snapshot, derived),
    }


def audit_financials_db(creator_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
    return run_in_transaction(_audit_in_tx, creator_id, now)


def _rebuild_in_tx(conn: Connection, creator_id: str, now: Optional[datetime]) -> Dict[str, Any]:
    rows = get_all_transactions(conn, creator_id)
    snapshot = overwrite_financials(conn, derive_financials(creator_id, rows, now))
    logger.info("rebuilt financials for {} from {} ledger rows", creator_id, len(rows))
    return snapshot


def rebuild_financials_db(creator_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
    return run_in_transaction(_rebuild_in_tx, creator_id, now)


def _require_creator(conn: Connection, creator_id: str) -> None:
    if get_creator(conn, creator_id) is None:
        raise CreatorNotFound(f"creator {creator_id} not found")


def _duplicate_result(conn: Connection, event_id: str) -> Dict[str, Any]:
    logger.info("payment event {} already processed, skipping", event_id)
    result = dict(get_payment_event_result(conn, event_id) or {"event_id": event_id})
    result["status"] = "duplicate"
    return result


def _distribute_in_tx(
    conn: Connection,
    payee_creator_id: str,
    gross_amount: int,
    payer_user_id: Optional[str],
    event_id: str,
) -> List[Dict[str, Any]]:
    membership = get_membership(conn, payee_creator_id)
    if membership is None:
        logger.info("creator {} not in network, no commissions to process", payee_creator_id)
        return []

    payee_username = membership["creator_username"]

    # 1) upline from DB [L1..L4]
    lineage = ancestors_of_db(conn, payee_creator_id, MAX_COMMISSION_LEVELS)

    # 2) per-level amounts (same pure logic as the in-memory engine)
    splits = commission_splits(gross_amount, lineage)

    # 3) ledger rows + atomic balance increments
    payouts = []
    for ancestor, amount in zip(lineage, splits):
        level = ancestor["level"]
        append_transaction_db(
            conn,
            {
                "creator_id": ancestor["creator_id"],
                "type": commission_type(level),
                "amount": amount,
                "description": commission_description(level, payee_username),
                "from_user_id": payer_user_id,
                "related_creator_id": payee_creator_id,
                "related_creator_username": payee_username,
                "event_id": event_id,
            },
        )
        upsert_financials_credit(conn, ancestor["creator_id"], "network", amount)
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


def _distribute_earning_in_tx(
    conn: Connection,
    payee_creator_id: str,
    gross_amount: int,
    payer_user_id: Optional[str],
    event_id: str,
) -> Dict[str, Any]:
    if not ensure_payment_event(conn, event_id, "commissions"):
        return _duplicate_result(conn, event_id)

    payouts = _distribute_in_tx(conn, payee_creator_id, gross_amount, payer_user_id, event_id)
    result = {
        "status": "applied",
        "event_id": event_id,
        "payee_creator_id": payee_creator_id,
        "gross_amount": gross_amount,
        "commissions": payouts,
        "total_commissions": sum(p["amount"] for p in payouts),
    }
    save_payment_event_result(conn, event_id, result)
    return result


def distribute_earning_db(
    payee_creator_id: str,
    gross_amount: int,
    payer_user_id: Optional[str],
    event_id: str,
) -> Dict[str, Any]:
    """
    DB-backed variant of distribute_earning: the event marker, every ledger
    row and every balance increment commit together or not at all.
    """
    check_amount(gross_amount)
    return run_in_transaction(
        _distribute_earning_in_tx, payee_creator_id, gross_amount, payer_user_id, event_id
    )


def _handle_payment_in_tx(conn: Connection, event: Dict[str, Any]) -> Dict[str, Any]:
    event_id = event["event_id"]
    payee_creator_id = event["payee_creator_id"]
    payer_user_id = event.get("payer_user_id")
    gross_amount = event["gross_amount"]

    # 1) idempotent event claim
    if not ensure_payment_event(conn, event_id, "payment"):
        return _duplicate_result(conn, event_id)
    _require_creator(conn, payee_creator_id)

    # 2) commissions up the chain
    payouts = _distribute_in_tx(conn, payee_creator_id, gross_amount, payer_user_id, event_id)
    total_commissions = sum(p["amount"] for p in payouts)

    # 3) creator / platform split
    split = payment_split(gross_amount, total_commissions)

    if split["creator_share"] > 0:
        append_transaction_db(
            conn,
            {
                "creator_id": payee_creator_id,
                "type": "subscription",
                "amount": split["creator_share"],
                "description": event.get("description") or f"Subscription from user {payer_user_id}",
                "from_user_id": payer_user_id,
                "event_id": event_id,
            },
        )
        upsert_financials_credit(conn, payee_creator_id, "direct", split["creator_share"])

    append_transaction_db(
        conn,
        {
            "creator_id": PLATFORM_CREATOR_ID,
            "type": "platform_revenue",
            "amount": split["platform_revenue"],
            "description": f"Platform revenue from payment {event_id}",
            "from_user_id": payer_user_id,
            "related_creator_id": payee_creator_id,
            "event_id": event_id,
        },
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
    save_payment_event_result(conn, event_id, result)
    logger.info(
        "payment {}: creator {} platform {} commissions {}",
        event_id, split["creator_share"], split["platform_revenue"], total_commissions,
    )
    return result


def handle_payment_db(event: Dict[str, Any]) -> Dict[str, Any]:
    """
    DB-backed variant of handle_payment.

    event: dict with keys:
      - event_id: str (external payment id, idempotency key)
      - payee_creator_id: str
      - payer_user_id: str
      - gross_amount: int (cents)
      - description: str (optional)
    """
    check_amount(event["gross_amount"])
    return run_in_transaction(_handle_payment_in_tx, event)


def _withdraw_in_tx(conn: Connection, creator_id: str, amount: int, withdrawal_id: str) -> Dict[str, Any]:
    if not ensure_payment_event(conn, withdrawal_id, "withdrawal"):
        return _duplicate_result(conn, withdrawal_id)
    _require_creator(conn, creator_id)

    get_or_create_financials(conn, creator_id)
    financials = debit_financials_for_withdrawal(conn, creator_id, amount)
    if financials is None:
        raise InsufficientBalance(
            f"Creator {creator_id} does not have {amount} available to withdraw."
        )

    transaction_id = append_transaction_db(
        conn,
        {
            "creator_id": creator_id,
            "type": "withdrawal",
            "amount": amount,
            "description": f"Withdrawal {withdrawal_id}",
            "event_id": withdrawal_id,
        },
    )
    result = {
        "status": "applied",
        "withdrawal_id": withdrawal_id,
        "creator_id": creator_id,
        "amount": amount,
        "transaction_id": transaction_id,
        "available_balance": financials["available_balance"],
    }
    save_payment_event_result(conn, withdrawal_id, result)
    return result


def record_withdrawal_db(creator_id: str, amount: int, withdrawal_id: str) -> Dict[str, Any]:
    check_amount(amount)
    return run_in_transaction(_withdraw_in_tx, creator_id, amount, withdrawal_id)
