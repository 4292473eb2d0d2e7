import copy

import pytest

import memory_store
from payment_engine import apply_credit, distribute_earning, get_financials
from referral_engine import deactivate_code, issue_code, register_creator, validate_code


@pytest.fixture
def deepcopies(monkeypatch):
    """records every object deep-copied while the test runs."""
    copied = []
    original = copy.deepcopy

    def _recording(obj, *args, **kwargs):
        copied.append(obj)
        return original(obj, *args, **kwargs)

    monkeypatch.setattr(memory_store.copy, "deepcopy", _recording)
    return copied


def _seed_ledger(store, rows):
    for i in range(rows):
        store.transactions[f"seed_{i}"] = {
            "id": f"seed_{i}",
            "creator_id": "seed",
            "type": "subscription",
            "amount": 1,
            "description": "seed",
            "status": "completed",
            "event_id": None,
        }


def test_rollback_restores_rows_changed_in_place(store):
    register_creator("id_ana", "ana", store)
    code = issue_code("id_ana", store)
    apply_credit("id_ana", "direct", 500, store)

    with pytest.raises(RuntimeError):
        with store.transaction():
            deactivate_code(code, store)
            apply_credit("id_ana", "direct", 250, store)
            register_creator("id_bia", "bia", store)
            raise RuntimeError("boom")

    assert validate_code(code, store) is not None
    assert get_financials("id_ana", store)["direct_earnings"] == 500
    assert "id_bia" not in store.creators


def test_reads_do_not_copy_the_ledger(store, deepcopies):
    _seed_ledger(store, 20_000)

    for _ in range(20):
        get_financials("id_ana", store)

    assert deepcopies == []


def test_event_copies_only_the_rows_it_touches(make_chain, store, deepcopies):
    make_chain(["A", "B", "C", "D"])
    _seed_ledger(store, 20_000)
    del deepcopies[:]

    distribute_earning("id_D", 10_000, "payer_1", "evt_1", store)

    assert deepcopies
    assert not any(obj is store.transactions for obj in deepcopies)
    # single rows only, never a whole table
    assert all(len(obj) < 100 for obj in deepcopies if isinstance(obj, dict))
    assert get_financials("id_C", store)["network_earnings"] == 1000
