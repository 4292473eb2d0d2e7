import pytest
from fastapi.testclient import TestClient

from app import app

client = TestClient(app)

pytestmark = pytest.mark.usefixtures("pg")


def _create_creator(username: str) -> str:
    creator_id = f"id_{username}"
    res = client.post("/api/creators", json={"creator_id": creator_id, "username": username})
    assert res.status_code == 200
    return creator_id


def _code_for(creator_id: str) -> str:
    res = client.post("/api/referral/generate", json={"creator_id": creator_id})
    assert res.status_code == 200
    body = res.json()
    assert body["invite_link"].endswith(f"/convite/{body['referral_code']}")
    return body["referral_code"]


def _wire_chain_via_api(usernames):
    """
    create the creators and link each one under the previous using
    /api/referral/register. returns their ids in order.
    """
    ids = [_create_creator(name) for name in usernames]
    for parent_id, child_id, child_name in zip(ids, ids[1:], usernames[1:]):
        res = client.post(
            "/api/referral/register",
            json={
                "creator_id": child_id,
                "creator_username": child_name,
                "referral_code": _code_for(parent_id),
            },
        )
        assert res.status_code == 200
    return ids


def test_full_api_flow():
    """
    end-to-end flow:
      - wire A->B->C->D
      - payment to D
      - check splits, balances and history
    """
    a_id, b_id, c_id, d_id = _wire_chain_via_api(["A", "B", "C", "D"])

    res = client.post(
        "/api/webhook/payment",
        json={
            "event_id": "pay_1",
            "payee_creator_id": d_id,
            "payer_user_id": "fan_1",
            "gross_amount": 10_000,
        },
    )
    assert res.status_code == 200
    body = res.json()
    assert body["status"] == "applied"
    assert body["creator_share"] == 7000
    assert body["total_commissions"] == 1800
    assert body["platform_revenue"] == 1200

    # replay
    res = client.post(
        "/api/webhook/payment",
        json={
            "event_id": "pay_1",
            "payee_creator_id": d_id,
            "payer_user_id": "fan_1",
            "gross_amount": 10_000,
        },
    )
    assert res.json()["status"] == "duplicate"

    res = client.get(f"/api/financials/{c_id}")
    assert res.status_code == 200
    assert res.json()["network_earnings"] == 1000

    res = client.get(f"/api/financials/{a_id}/transactions", params={"limit": 10})
    [entry] = res.json()["transactions"]
    assert entry["type"] == "commission_level_3"
    assert entry["amount"] == 300

    res = client.get(f"/api/financials/{d_id}/audit")
    assert res.json()["consistent"] is True


def test_network_endpoints():
    _wire_chain_via_api(["A", "B", "C"])

    res = client.get("/api/referral/network", params={"username": "A"})
    assert res.status_code == 200
    assert res.json()["count"] == 1
    assert res.json()["members"][0]["creator_username"] == "B"

    res = client.get("/api/referral/tree", params={"username": "A", "max_depth": 4})
    tree = res.json()["tree"]
    assert tree[0]["commission_rate"] == "0.10"
    assert tree[0]["children"][0]["commission_rate"] == "0.05"

    res = client.get("/api/referral/ancestors", params={"username": "C"})
    assert [a["username"] for a in res.json()["ancestors"]] == ["B", "A"]


def test_validate_and_deactivate_code():
    a_id = _create_creator("A")
    code = _code_for(a_id)

    res = client.get(f"/api/referral/validate/{code}")
    assert res.status_code == 200
    assert res.json()["owner_username"] == "A"

    res = client.post("/api/referral/deactivate", json={"code": code})
    assert res.status_code == 200

    assert client.get(f"/api/referral/validate/{code}").status_code == 404
    assert client.post("/api/referral/deactivate", json={"code": code}).status_code == 404


def test_error_statuses():
    a_id, b_id = _wire_chain_via_api(["A", "B"])

    # unknown code
    res = client.post(
        "/api/referral/register",
        json={"creator_id": a_id, "creator_username": "A", "referral_code": "NOPE0000"},
    )
    assert res.status_code == 400

    # already placed
    x_id = _create_creator("X")
    res = client.post(
        "/api/referral/register",
        json={"creator_id": b_id, "creator_username": "B", "referral_code": _code_for(x_id)},
    )
    assert res.status_code == 409

    # cycle
    res = client.post(
        "/api/referral/register",
        json={"creator_id": a_id, "creator_username": "A", "referral_code": _code_for(b_id)},
    )
    assert res.status_code == 400

    # duplicate creator
    res = client.post("/api/creators", json={"creator_id": a_id, "username": "A"})
    assert res.status_code == 409

    # unknown creator
    res = client.post("/api/referral/generate", json={"creator_id": "ghost"})
    assert res.status_code == 404

    # overdraw
    res = client.post(
        "/api/financials/withdraw",
        json={"withdrawal_id": "wd_1", "creator_id": a_id, "amount": 100},
    )
    assert res.status_code == 400

    # negative amounts never reach the engine
    res = client.post(
        "/api/webhook/payment",
        json={"event_id": "pay_x", "payee_creator_id": b_id, "gross_amount": -1},
    )
    assert res.status_code == 422
