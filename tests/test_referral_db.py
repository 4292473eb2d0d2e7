from concurrent.futures import ThreadPoolExecutor

import pytest

from db.db import get_conn
from errors import CreatorAlreadyExists, DuplicateMembership, InvalidReferralCode, ReferralCycle
from referral_db import (
    add_membership_db,
    deactivate_code_db,
    get_ancestor_chain_db,
    get_direct_downline_db,
    get_membership_db,
    get_network_tree_db,
    issue_code_db,
    register_creator_db,
    validate_code_db,
)

pytestmark = pytest.mark.usefixtures("pg")


def _make_chain_db(usernames):
    """register creators id_<name> and link each one under the previous."""
    for name in usernames:
        register_creator_db(f"id_{name}", name)
    for parent, child in zip(usernames, usernames[1:]):
        add_membership_db(f"id_{child}", child, issue_code_db(f"id_{parent}"))


def test_issue_code_is_stable_and_valid():
    register_creator_db("id_ana", "ana")

    code = issue_code_db("id_ana")
    assert issue_code_db("id_ana") == code

    record = validate_code_db(code.lower())
    assert record["owner_creator_id"] == "id_ana"
    assert record["owner_username"] == "ana"


def test_deactivate_code_db():
    register_creator_db("id_ana", "ana")
    code = issue_code_db("id_ana")

    assert deactivate_code_db(code) is True
    assert validate_code_db(code) is None
    assert deactivate_code_db(code) is False

    assert issue_code_db("id_ana") != code


def test_register_creator_db_rejects_duplicates():
    register_creator_db("id_ana", "ana")

    with pytest.raises(CreatorAlreadyExists):
        register_creator_db("id_ana", "ana2")
    with pytest.raises(CreatorAlreadyExists):
        register_creator_db("id_other", "ana")


def test_add_membership_db_happy_path():
    _make_chain_db(["A", "B", "C"])

    b = get_membership_db("id_B")
    c = get_membership_db("id_C")

    assert b["referred_by_creator_id"] == "id_A"
    assert b["level"] == 1
    assert c["referred_by_creator_id"] == "id_B"
    assert c["referred_by_username"] == "B"
    assert c["level"] == 2
    assert get_membership_db("id_A") is None


def test_add_membership_db_rejections():
    _make_chain_db(["A", "B"])
    register_creator_db("id_X", "X")

    with pytest.raises(InvalidReferralCode):
        add_membership_db("id_X", "X", "DOESNOTEXIST")

    with pytest.raises(DuplicateMembership):
        add_membership_db("id_B", "B", issue_code_db("id_X"))

    with pytest.raises(ReferralCycle):
        add_membership_db("id_A", "A", issue_code_db("id_B"))

    # nothing was written by the rejected calls
    with get_conn() as conn:
        count = conn.execute("SELECT COUNT(*) FROM creator_network").fetchone()[0]
    assert count == 1


def test_ancestor_chain_db():
    _make_chain_db(["A", "B", "C", "D", "E", "F"])

    chain = get_ancestor_chain_db("D")
    assert [(a["username"], a["level"]) for a in chain] == [("C", 1), ("B", 2), ("A", 3)]

    assert [a["username"] for a in get_ancestor_chain_db("F")] == ["E", "D", "C", "B"]
    assert get_ancestor_chain_db("A") == []
    assert get_ancestor_chain_db("nobody") == []


def test_ancestor_chain_db_truncates_at_missing_referrer():
    _make_chain_db(["A", "B", "C", "D"])

    with get_conn() as conn:
        conn.execute("DELETE FROM creator_network WHERE creator_id = 'id_B'")
        conn.execute("DELETE FROM referral_codes WHERE owner_creator_id = 'id_B'")
        conn.execute("DELETE FROM creators WHERE id = 'id_B'")
        conn.commit()

    assert [a["username"] for a in get_ancestor_chain_db("D")] == ["C"]


def test_downline_and_tree_db():
    _make_chain_db(["A", "B", "C", "D"])
    register_creator_db("id_B2", "B2")
    add_membership_db("id_B2", "B2", issue_code_db("id_A"))

    assert [m["creator_username"] for m in get_direct_downline_db("A")] == ["B", "B2"]

    tree = get_network_tree_db("A", max_depth=2)
    assert [node["membership"]["creator_username"] for node in tree] == ["B", "B2"]
    assert tree[0]["children"][0]["membership"]["creator_username"] == "C"
    assert tree[0]["children"][0]["depth"] == 2
    assert tree[0]["children"][0]["children"] == []


def test_cycle_rejected_in_deep_chain_db():
    names = [f"n{i}" for i in range(13)]
    _make_chain_db(names)

    with pytest.raises(ReferralCycle):
        add_membership_db("id_n0", "n0", issue_code_db("id_n12"))

    assert get_membership_db("id_n0") is None


def test_concurrent_cross_referrals_cannot_form_a_cycle():
    """
    two roots sign up at the same time, each with the other's code.
    placements are serialized, so exactly one of them lands.
    """
    register_creator_db("id_A", "A")
    register_creator_db("id_B", "B")
    a_code = issue_code_db("id_A")
    b_code = issue_code_db("id_B")

    def _join(args):
        creator_id, username, code = args
        try:
            add_membership_db(creator_id, username, code)
            return "joined"
        except ReferralCycle:
            return "cycle"

    with ThreadPoolExecutor(max_workers=2) as pool:
        outcomes = sorted(pool.map(_join, [("id_A", "A", b_code), ("id_B", "B", a_code)]))

    assert outcomes == ["cycle", "joined"]
    with get_conn() as conn:
        count = conn.execute("SELECT COUNT(*) FROM creator_network").fetchone()[0]
    assert count == 1


def test_membership_username_must_match_directory_db():
    register_creator_db("id_A", "A")
    register_creator_db("id_B", "B")

    with pytest.raises(ValueError):
        add_membership_db("id_B", "someone_else", issue_code_db("id_A"))

    assert get_membership_db("id_B") is None
