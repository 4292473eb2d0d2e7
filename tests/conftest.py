"""Shared fixtures: in-memory stores, referral chains, and a live Postgres when available."""

import sys
from pathlib import Path

# make the top-level modules importable without installing the project
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

import pytest

from memory_store import MemoryStore
from referral_engine import add_membership, issue_code, register_creator


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def make_chain(store):
    """
    build a referral chain in `store` from a list of usernames, root first.
    creator ids are "id_<username>". returns the store.
    """

    def _make(usernames):
        for name in usernames:
            register_creator(f"id_{name}", name, store)
        for parent, child in zip(usernames, usernames[1:]):
            code = issue_code(f"id_{parent}", store)
            add_membership(f"id_{child}", child, code, store)
        return store

    return _make


@pytest.fixture
def pg():
    """
    clean Postgres schema at MLM_DATABASE_URL; tests using it are skipped
    when no database is reachable.
    """
    psycopg = pytest.importorskip("psycopg")
    from db.db import get_conn, init_schema

    try:
        init_schema()
    except psycopg.OperationalError as e:
        pytest.skip(f"Postgres not available: {e}")

    with get_conn() as conn:
        conn.execute(
            "TRUNCATE transactions, creator_financials, payment_events, "
            "creator_network, referral_codes, creators"
        )
        conn.commit()
