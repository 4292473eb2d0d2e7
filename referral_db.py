from typing import Any, Callable, Dict, List, Optional

from loguru import logger
from psycopg import Connection

from commission_engine import MAX_COMMISSION_LEVELS, rate_for_level
from config import get_settings
from db.db import get_conn, run_in_transaction
from db.repositories import (
    create_creator_db,
    deactivate_referral_code,
    get_active_code_for_creator,
    get_creator,
    get_creator_by_username,
    get_direct_downline,
    get_membership,
    get_referral_code,
    get_referrer_id,
    get_upline_rows,
    insert_membership,
    insert_referral_code,
    lock_creator,
    lock_network,
)
from errors import (
    BrokenReferralChain,
    CodeGenerationExhausted,
    CreatorNotFound,
    DuplicateMembership,
    InvalidReferralCode,
    ReferralCycle,
)
from referral_engine import check_creator_username, generate_referral_code, normalize_code


def register_creator_db(creator_id: str, username: str) -> Dict[str, Any]:
    return run_in_transaction(create_creator_db, creator_id, username)


def _issue_code_in_tx(
    conn: Connection,
    creator_id: str,
    generate: Callable[[str], str],
) -> str:
    creator = get_creator(conn, creator_id)
    if creator is None:
        raise CreatorNotFound(f"creator {creator_id} not found")

    # serialize issuers for the same creator so lookup + insert is atomic
    lock_creator(conn, creator_id)

    existing = get_active_code_for_creator(conn, creator_id)
    if existing is not None:
        return existing

    max_attempts = get_settings().code_generation_max_attempts
    for attempt in range(1, max_attempts + 1):
        candidate = normalize_code(generate(creator["username"]))
        if insert_referral_code(conn, candidate, creator_id, creator["username"]):
            logger.info("issued referral code {} to @{}", candidate, creator["username"])
            return candidate
        logger.warning(
            "referral code collision on {} (attempt {}/{})",
            candidate, attempt, max_attempts,
        )

    raise CodeGenerationExhausted(
        f"could not generate a unique referral code for {creator_id} "
        f"after {max_attempts} attempts"
    )


def issue_code_db(
    creator_id: str,
    generate: Callable[[str], str] = generate_referral_code,
) -> str:
    """
    return the creator's active referral code, creating it on first use.
    """
    return run_in_transaction(_issue_code_in_tx, creator_id, generate)


def validate_code_db(code: str) -> Optional[Dict[str, Any]]:
    with get_conn() as conn:
        record = get_referral_code(conn, normalize_code(code))
    if record is None or not record["active"]:
        return None
    return record


def deactivate_code_db(code: str) -> bool:
    return run_in_transaction(deactivate_referral_code, normalize_code(code))


def _check_no_cycle_db(conn: Connection, creator_id: str, referrer_id: str) -> None:
    """walk up from the referrer; must never hit the new creator."""
    if referrer_id == creator_id:
        raise ReferralCycle(f"Creator {creator_id} cannot refer themselves.")

    seen = {referrer_id}
    current = referrer_id
    while True:
        current = get_referrer_id(conn, current)
        if current is None:
            return
        if current == creator_id or current in seen:
            raise ReferralCycle(
                f"Registering {referrer_id} as referrer of {creator_id} would create a cycle."
            )
        seen.add(current)


def _add_membership_in_tx(
    conn: Connection,
    creator_id: str,
    creator_username: str,
    referral_code: str,
) -> Dict[str, Any]:
    lock_network(conn)

    # 1) resolve the referrer from the code
    owner = get_referral_code(conn, normalize_code(referral_code))
    if owner is None or not owner["active"]:
        raise InvalidReferralCode(referral_code)

    creator = get_creator(conn, creator_id)
    check_creator_username(creator, creator_id, creator_username)
    creator_username = creator["username"]

    # 2) a creator is placed once
    if get_membership(conn, creator_id) is not None:
        logger.error("creator {} already has a membership row", creator_id)
        raise DuplicateMembership(creator_id)

    # 3) cycle check
    referrer_id = owner["owner_creator_id"]
    _check_no_cycle_db(conn, creator_id, referrer_id)

    # 4) level from the referrer's own row
    referrer_membership = get_membership(conn, referrer_id)
    level = referrer_membership["level"] + 1 if referrer_membership else 1

    membership = insert_membership(
        conn,
        {
            "creator_id": creator_id,
            "creator_username": creator_username,
            "referred_by_creator_id": referrer_id,
            "referred_by_username": owner["owner_username"],
            "referral_code_used": owner["code"],
            "level": level,
        },
    )
    if membership is None:
        # lost a race with a concurrent signup for the same creator
        logger.error("creator {} already has a membership row", creator_id)
        raise DuplicateMembership(creator_id)

    logger.info(
        "@{} joined the network under @{} at level {}",
        creator_username, owner["owner_username"], level,
    )
    return membership


def add_membership_db(creator_id: str, creator_username: str, referral_code: str) -> Dict[str, Any]:
    """
    DB-backed network placement.

    rules:
      - code must exist and be active
      - creator cannot already be placed
      - creator cannot refer themselves (directly or via cycle)
    """
    return run_in_transaction(
        _add_membership_in_tx, creator_id, creator_username, referral_code
    )


def get_membership_db(creator_id: str) -> Optional[Dict[str, Any]]:
    with get_conn() as conn:
        return get_membership(conn, creator_id)


def get_direct_downline_db(creator_username: str) -> List[Dict[str, Any]]:
    with get_conn() as conn:
        creator = get_creator_by_username(conn, creator_username)
        if creator is None:
            return []
        return get_direct_downline(conn, creator["creator_id"])


def _check_resolved(child_id: str, row: Dict[str, Any]) -> None:
    if row["username"] is None:
        raise BrokenReferralChain(child_id, row["creator_id"])


def ancestors_of_db(
    conn: Connection,
    creator_id: str,
    max_depth: int = MAX_COMMISSION_LEVELS,
) -> List[Dict[str, Any]]:
    """
    upline of creator_id, nearest first, truncated at the first referrer that
    no longer resolves.
    """
    chain = []
    child_id = creator_id
    for row in get_upline_rows(conn, creator_id, max_depth):
        try:
            _check_resolved(child_id, row)
        except BrokenReferralChain as e:
            logger.warning("{} stopping chain at level {}", e, row["level"])
            break
        chain.append(row)
        child_id = row["creator_id"]
    return chain


def get_ancestor_chain_db(
    creator_username: str,
    max_depth: int = MAX_COMMISSION_LEVELS,
) -> List[Dict[str, Any]]:
    with get_conn() as conn:
        creator = get_creator_by_username(conn, creator_username)
        if creator is None:
            return []
        return ancestors_of_db(conn, creator["creator_id"], max_depth)


def get_network_tree_db(
    creator_username: str,
    max_depth: int = MAX_COMMISSION_LEVELS,
) -> List[Dict[str, Any]]:
    """
    nested downline, one query per node, bounded by max_depth.
    """
    with get_conn() as conn:
        creator = get_creator_by_username(conn, creator_username)
        if creator is None:
            return []

        def _level(creator_id: str, depth: int) -> List[Dict[str, Any]]:
            if depth > max_depth:
                return []
            return [
                {
                    "membership": member,
                    "depth": depth,
                    "commission_rate": rate_for_level(depth),
                    "children": _level(member["creator_id"], depth + 1),
                }
                for member in get_direct_downline(conn, creator_id)
            ]

        return _level(creator["creator_id"], 1)
