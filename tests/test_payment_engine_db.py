from concurrent.futures import ThreadPoolExecutor

import pytest

from commission_engine import PLATFORM_CREATOR_ID
from db.db import get_conn
from errors import CreatorNotFound, InsufficientBalance
from payment_engine_db import (
    audit_financials_db,
    distribute_earning_db,
    get_financials_db,
    get_transactions_db,
    handle_payment_db,
    rebuild_financials_db,
    record_withdrawal_db,
)
from referral_db import add_membership_db, issue_code_db, register_creator_db

pytestmark = pytest.mark.usefixtures("pg")


def _make_chain_db(usernames):
    for name in usernames:
        register_creator_db(f"id_{name}", name)
    for parent, child in zip(usernames, usernames[1:]):
        add_membership_db(f"id_{child}", child, issue_code_db(f"id_{parent}"))


def _network_earnings(creator_id):
    return get_financials_db(creator_id)["network_earnings"]


def test_db_distribution_full_lineage():
    """
    A -> B -> C -> D
    D earns 10000 cents; C, B, A get 1000 / 500 / 300.
    """
    _make_chain_db(["A", "B", "C", "D"])

    result = distribute_earning_db("id_D", 10_000, "payer_1", "DB_EVT_1")

    assert result["status"] == "applied"
    assert [(p["creator_id"], p["amount"]) for p in result["commissions"]] == [
        ("id_C", 1000),
        ("id_B", 500),
        ("id_A", 300),
    ]
    assert result["total_commissions"] == 1800

    assert _network_earnings("id_C") == 1000
    assert _network_earnings("id_B") == 500
    assert _network_earnings("id_A") == 300

    [entry] = get_transactions_db("id_C")
    assert entry["type"] == "commission_level_1"
    assert entry["description"] == "Level 1 commission from @D"


def test_db_distribution_is_idempotent():
    _make_chain_db(["A", "B", "C", "D"])

    first = distribute_earning_db("id_D", 10_000, "payer_1", "DB_EVT_1")
    second = distribute_earning_db("id_D", 10_000, "payer_1", "DB_EVT_1")

    assert second["status"] == "duplicate"
    assert second["commissions"] == first["commissions"]
    assert _network_earnings("id_C") == 1000

    with get_conn() as conn:
        count = conn.execute("SELECT COUNT(*) FROM transactions").fetchone()[0]
    assert count == 3


def test_db_concurrent_events_converge():
    _make_chain_db(["A", "B"])

    def _pay(i):
        return distribute_earning_db("id_B", 1000, f"payer_{i}", f"DB_EVT_{i}")

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(_pay, range(20)))

    assert all(r["status"] == "applied" for r in results)
    assert _network_earnings("id_A") == 100 * 20


def test_db_handle_payment_and_withdrawal():
    _make_chain_db(["A", "B", "C", "D"])

    result = handle_payment_db(
        {
            "event_id": "DB_PAY_1",
            "payee_creator_id": "id_D",
            "payer_user_id": "fan_1",
            "gross_amount": 10_000,
        }
    )

    assert result["creator_share"] == 7000
    assert result["platform_revenue"] == 1200
    assert get_financials_db("id_D")["direct_earnings"] == 7000
    assert get_transactions_db(PLATFORM_CREATOR_ID)[0]["amount"] == 1200

    withdrawal = record_withdrawal_db("id_C", 400, "DB_WD_1")
    assert withdrawal["available_balance"] == 600
    assert record_withdrawal_db("id_C", 400, "DB_WD_1")["status"] == "duplicate"

    with pytest.raises(InsufficientBalance):
        record_withdrawal_db("id_C", 10_000, "DB_WD_2")

    c = get_financials_db("id_C")
    assert c["available_balance"] == 600
    assert c["total_withdrawals"] == 400

    for creator_id in ("id_A", "id_B", "id_C", "id_D"):
        assert audit_financials_db(creator_id)["consistent"] is True


def test_db_rebuild_repairs_snapshot():
    _make_chain_db(["A", "B"])
    distribute_earning_db("id_B", 10_000, "payer_1", "DB_EVT_1")

    with get_conn() as conn:
        conn.execute(
            "UPDATE creator_financials SET available_balance = 5 WHERE creator_id = 'id_A'"
        )
        conn.commit()

    assert audit_financials_db("id_A")["consistent"] is False

    rebuilt = rebuild_financials_db("id_A")
    assert rebuilt["available_balance"] == 1000
    assert audit_financials_db("id_A")["consistent"] is True


def test_db_zero_commission_levels_are_recorded():
    _make_chain_db(["A", "B", "C", "D", "E"])

    result = distribute_earning_db("id_E", 40, "payer_1", "DB_EVT_1")

    assert [(p["level"], p["amount"]) for p in result["commissions"]] == [
        (1, 4),
        (2, 2),
        (3, 1),
        (4, 0),
    ]
    [entry] = get_transactions_db("id_A")
    assert entry["type"] == "commission_level_4"
    assert entry["amount"] == 0


def test_db_payment_and_withdrawal_for_unknown_creator():
    with pytest.raises(CreatorNotFound):
        handle_payment_db(
            {"event_id": "DB_PAY_X", "payee_creator_id": "ghost", "payer_user_id": "fan_1", "gross_amount": 1000}
        )
    with pytest.raises(CreatorNotFound):
        record_withdrawal_db("ghost", 100, "DB_WD_X")

    with get_conn() as conn:
        events = conn.execute("SELECT COUNT(*) FROM payment_events").fetchone()[0]
        ghost_rows = conn.execute(
            "SELECT COUNT(*) FROM creator_financials WHERE creator_id = 'ghost'"
        ).fetchone()[0]
    assert events == 0
    assert ghost_rows == 0
