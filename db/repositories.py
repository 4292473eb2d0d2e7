import uuid
from typing import Any, Dict, List, Optional

from psycopg import Connection, sql
from psycopg.errors import UniqueViolation
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb

from errors import CreatorAlreadyExists
from ledger import FINANCIAL_FIELDS, credit_field

MEMBERSHIP_COLUMNS = """
    creator_id, creator_username, referred_by_creator_id, referred_by_username,
    referral_code_used, level, joined_at, is_active,
    total_earnings, monthly_earnings, subscriber_count
"""

TRANSACTION_COLUMNS = """
    id, creator_id, type, amount, description, status, from_user_id,
    related_creator_id, related_creator_username, event_id, created_at
"""


# ---------
# creators
# ---------

def create_creator_db(conn: Connection, creator_id: str, username: str) -> Dict[str, Any]:
    """
    create a creator directory entry.

    enforces:
      - username not empty and unique
      - creator_id unique
    """
    username = username.strip()
    if not username:
        raise ValueError("username cannot be empty")

    try:
        with conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO creators (id, username)
                VALUES (%s, %s)
                """,
                (creator_id, username),
            )
    except UniqueViolation:
        raise CreatorAlreadyExists(f"creator '{creator_id}' / '{username}' already exists")

    return {"creator_id": creator_id, "username": username}


def get_creator(conn: Connection, creator_id: str) -> Optional[Dict[str, Any]]:
    with conn.cursor(row_factory=dict_row) as cur:
        cur.execute(
            "SELECT id AS creator_id, username FROM creators WHERE id = %s",
            (creator_id,),
        )
        return cur.fetchone()


def get_creator_by_username(conn: Connection, username: str) -> Optional[Dict[str, Any]]:
    with conn.cursor(row_factory=dict_row) as cur:
        cur.execute(
            "SELECT id AS creator_id, username FROM creators WHERE username = %s",
            (username,),
        )
        return cur.fetchone()


# ---------
# referral codes
# ---------

def lock_creator(conn: Connection, creator_id: str) -> None:
    """per-creator lock held until the end of the current transaction."""
    with conn.cursor() as cur:
        cur.execute("SELECT pg_advisory_xact_lock(hashtext(%s))", (creator_id,))


NETWORK_LOCK_KEY = "creator_network"


def lock_network(conn: Connection) -> None:
    """
    serializes network placements until the end of the current transaction,
    so concurrent cycle checks always see each other's edges.
    """
    with conn.cursor() as cur:
        cur.execute("SELECT pg_advisory_xact_lock(hashtext(%s))", (NETWORK_LOCK_KEY,))


def get_active_code_for_creator(conn: Connection, creator_id: str) -> Optional[str]:
    with conn.cursor() as cur:
        cur.execute(
            "SELECT code FROM referral_codes WHERE owner_creator_id = %s AND active",
            (creator_id,),
        )
        row = cur.fetchone()
        return row[0] if row else None


def insert_referral_code(
    conn: Connection,
    code: str,
    owner_creator_id: str,
    owner_username: str,
) -> bool:
    """
    insert a new active code. returns False when the code already exists.
    """
    with conn.cursor() as cur:
        cur.execute(
            """
            INSERT INTO referral_codes (code, owner_creator_id, owner_username)
            VALUES (%s, %s, %s)
            ON CONFLICT (code) DO NOTHING
            RETURNING code
            """,
            (code, owner_creator_id, owner_username),
        )
        return cur.fetchone() is not None


def get_referral_code(conn: Connection, code: str) -> Optional[Dict[str, Any]]:
    with conn.cursor(row_factory=dict_row) as cur:
        cur.execute(
            """
            SELECT code, owner_creator_id, owner_username, active, created_at
            FROM referral_codes
            WHERE code = %s
            """,
            (code,),
        )
        return cur.fetchone()


def deactivate_referral_code(conn: Connection, code: str) -> bool:
    with conn.cursor() as cur:
        cur.execute(
            "UPDATE referral_codes SET active = FALSE WHERE code = %s AND active",
            (code,),
        )
        return cur.rowcount == 1


# ---------
# creator network
# ---------

def get_membership(conn: Connection, creator_id: str) -> Optional[Dict[str, Any]]:
    with conn.cursor(row_factory=dict_row) as cur:
        cur.execute(
            f"SELECT {MEMBERSHIP_COLUMNS} FROM creator_network WHERE creator_id = %s",
            (creator_id,),
        )
        return cur.fetchone()


def get_referrer_id(conn: Connection, creator_id: str) -> Optional[str]:
    """
    referred_by_creator_id for a creator, or None if they are a root.
    """
    with conn.cursor() as cur:
        cur.execute(
            "SELECT referred_by_creator_id FROM creator_network WHERE creator_id = %s",
            (creator_id,),
        )
        row = cur.fetchone()
        return row[0] if row else None


def insert_membership(conn: Connection, membership: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """
    insert a membership row. returns None if the creator already has one.
    """
    with conn.cursor(row_factory=dict_row) as cur:
        cur.execute(
            f"""
            INSERT INTO creator_network
                (creator_id, creator_username, referred_by_creator_id,
                 referred_by_username, referral_code_used, level)
            VALUES (%s, %s, %s, %s, %s, %s)
            ON CONFLICT (creator_id) DO NOTHING
            RETURNING {MEMBERSHIP_COLUMNS}
            """,
            (
                membership["creator_id"],
                membership["creator_username"],
                membership["referred_by_creator_id"],
                membership["referred_by_username"],
                membership["referral_code_used"],
                membership["level"],
            ),
        )
        return cur.fetchone()


def get_direct_downline(conn: Connection, creator_id: str) -> List[Dict[str, Any]]:
    with conn.cursor(row_factory=dict_row) as cur:
        cur.execute(
            f"""
            SELECT {MEMBERSHIP_COLUMNS}
            FROM creator_network
            WHERE referred_by_creator_id = %s
            ORDER BY joined_at, creator_id
            """,
            (creator_id,),
        )
        return cur.fetchall()


def get_upline_rows(conn: Connection, creator_id: str, max_levels: int) -> List[Dict[str, Any]]:
    """
    upline of creator_id in one round trip, nearest first:
    [{"level", "creator_id", "username"}]. username is None when the referrer
    id no longer resolves in creators.
    """
    with conn.cursor(row_factory=dict_row) as cur:
        cur.execute(
            """
            WITH RECURSIVE upline AS (
                SELECT n.referred_by_creator_id AS creator_id, 1 AS level
                FROM creator_network n
                WHERE n.creator_id = %(creator_id)s
                  AND n.referred_by_creator_id IS NOT NULL

                UNION ALL

                SELECT n.referred_by_creator_id, u.level + 1
                FROM upline u
                JOIN creator_network n ON n.creator_id = u.creator_id
                WHERE n.referred_by_creator_id IS NOT NULL
                  AND u.level < %(max_levels)s
            )
            SELECT u.level, u.creator_id, c.username
            FROM upline u
            LEFT JOIN creators c ON c.id = u.creator_id
            ORDER BY u.level
            """,
            {"creator_id": creator_id, "max_levels": max_levels},
        )
        return cur.fetchall()


# ---------
# payment events (idempotency)
# ---------

def ensure_payment_event(conn: Connection, event_id: str, kind: str) -> bool:
    """
    claim event_id for processing. returns False if it was already claimed.
    a concurrent claimer blocks until the first transaction finishes.
    """
    with conn.cursor() as cur:
        cur.execute(
            """
            INSERT INTO payment_events (event_id, kind)
            VALUES (%s, %s)
            ON CONFLICT (event_id) DO NOTHING
            RETURNING event_id
            """,
            (event_id, kind),
        )
        return cur.fetchone() is not None


def get_payment_event_result(conn: Connection, event_id: str) -> Optional[Dict[str, Any]]:
    with conn.cursor() as cur:
        cur.execute("SELECT result FROM payment_events WHERE event_id = %s", (event_id,))
        row = cur.fetchone()
        return row[0] if row else None


def save_payment_event_result(conn: Connection, event_id: str, result: Dict[str, Any]) -> None:
    with conn.cursor() as cur:
        cur.execute(
            "UPDATE payment_events SET result = %s WHERE event_id = %s",
            (Jsonb(result), event_id),
        )


# ---------
# transactions (append-only)
# ---------

def insert_transaction(conn: Connection, row: Dict[str, Any]) -> str:
    """
    append a validated ledger row. (event_id, creator_id, type) is unique, so
    replaying an event returns the id of the row already written.
    """
    with conn.cursor() as cur:
        cur.execute(
            """
            INSERT INTO transactions
                (id, creator_id, type, amount, description, status, from_user_id,
                 related_creator_id, related_creator_username, event_id)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (event_id, creator_id, type) DO NOTHING
            RETURNING id
            """,
            (
                uuid.uuid4().hex,
                row["creator_id"],
                row["type"],
                row["amount"],
                row["description"],
                row["status"],
                row["from_user_id"],
                row["related_creator_id"],
                row["related_creator_username"],
                row["event_id"],
            ),
        )
        inserted = cur.fetchone()
        if inserted is not None:
            return inserted[0]

        cur.execute(
            """
            SELECT id FROM transactions
            WHERE event_id = %s AND creator_id = %s AND type = %s
            """,
            (row["event_id"], row["creator_id"], row["type"]),
        )
        return cur.fetchone()[0]


def get_transactions(conn: Connection, creator_id: str, limit: int = 50) -> List[Dict[str, Any]]:
    with conn.cursor(row_factory=dict_row) as cur:
        cur.execute(
            f"""
            SELECT {TRANSACTION_COLUMNS}
            FROM transactions
            WHERE creator_id = %s
            ORDER BY created_at DESC, id
            LIMIT %s
            """,
            (creator_id, limit),
        )
        return cur.fetchall()


def get_all_transactions(conn: Connection, creator_id: str) -> List[Dict[str, Any]]:
    with conn.cursor(row_factory=dict_row) as cur:
        cur.execute(
            f"SELECT {TRANSACTION_COLUMNS} FROM transactions WHERE creator_id = %s",
            (creator_id,),
        )
        return cur.fetchall()


# ---------
# creator financials
# ---------

FINANCIALS_SELECT = "creator_id, " + ", ".join(FINANCIAL_FIELDS) + ", updated_at"


def get_or_create_financials(conn: Connection, creator_id: str) -> Dict[str, Any]:
    with conn.cursor(row_factory=dict_row) as cur:
        cur.execute(
            """
            INSERT INTO creator_financials (creator_id)
            VALUES (%s)
            ON CONFLICT (creator_id) DO NOTHING
            """,
            (creator_id,),
        )
        cur.execute(
            f"SELECT {FINANCIALS_SELECT} FROM creator_financials WHERE creator_id = %s",
            (creator_id,),
        )
        return cur.fetchone()


def upsert_financials_credit(
    conn: Connection,
    creator_id: str,
    bucket: str,
    amount: int,
) -> Dict[str, Any]:
    """
    increment total_earnings, available_balance and the bucket's field in a
    single statement (direct credits also feed monthly_revenue).
    creates the row if it doesn't exist.
    """
    field = credit_field(bucket)
    monthly = amount if bucket == "direct" else 0

    query = sql.SQL(
        """
        INSERT INTO creator_financials
            (creator_id, available_balance, total_earnings, monthly_revenue, {field})
        VALUES (%s, %s, %s, %s, %s)
        ON CONFLICT (creator_id)
        DO UPDATE SET
            available_balance = creator_financials.available_balance + EXCLUDED.available_balance,
            total_earnings = creator_financials.total_earnings + EXCLUDED.total_earnings,
            monthly_revenue = creator_financials.monthly_revenue + EXCLUDED.monthly_revenue,
            {field} = creator_financials.{field} + EXCLUDED.{field},
            updated_at = NOW()
        RETURNING {columns}
        """
    ).format(field=sql.Identifier(field), columns=sql.SQL(FINANCIALS_SELECT))

    with conn.cursor(row_factory=dict_row) as cur:
        cur.execute(query, (creator_id, amount, amount, monthly, amount))
        return cur.fetchone()


def debit_financials_for_withdrawal(
    conn: Connection,
    creator_id: str,
    amount: int,
) -> Optional[Dict[str, Any]]:
    """
    subtract amount from available_balance if enough is available.
    returns None (and changes nothing) otherwise.
    """
    with conn.cursor(row_factory=dict_row) as cur:
        cur.execute(
            f"""
            UPDATE creator_financials
            SET available_balance = available_balance - %s,
                total_withdrawals = total_withdrawals + %s,
                updated_at = NOW()
            WHERE creator_id = %s AND available_balance >= %s
            RETURNING {FINANCIALS_SELECT}
            """,
            (amount, amount, creator_id, amount),
        )
        return cur.fetchone()


def overwrite_financials(conn: Connection, snapshot: Dict[str, Any]) -> Dict[str, Any]:
    assignments = sql.SQL(", ").join(
        sql.SQL("{field} = EXCLUDED.{field}").format(field=sql.Identifier(f))
        for f in FINANCIAL_FIELDS
    )
    query = sql.SQL(
        """
        INSERT INTO creator_financials (creator_id, {fields})
        VALUES (%s, {placeholders})
        ON CONFLICT (creator_id)
        DO UPDATE SET {assignments}, updated_at = NOW()
        RETURNING {columns}
        """
    ).format(
        fields=sql.SQL(", ").join(sql.Identifier(f) for f in FINANCIAL_FIELDS),
        placeholders=sql.SQL(", ").join(sql.Placeholder() for _ in FINANCIAL_FIELDS),
        assignments=assignments,
        columns=sql.SQL(FINANCIALS_SELECT),
    )

    with conn.cursor(row_factory=dict_row) as cur:
        cur.execute(
            query,
            [snapshot["creator_id"]] + [snapshot[f] for f in FINANCIAL_FIELDS],
        )
        return cur.fetchone()
