import re
import secrets
import string
from typing import Any, Callable, Dict, List, Optional

from loguru import logger

from commission_engine import MAX_COMMISSION_LEVELS, rate_for_level
from config import get_settings
from errors import (
    BrokenReferralChain,
    CodeGenerationExhausted,
    CreatorAlreadyExists,
    CreatorNotFound,
    DuplicateMembership,
    InvalidReferralCode,
    ReferralCycle,
)
from ledger import utcnow
from memory_store import MemoryStore

CODE_ALPHABET = string.ascii_uppercase + string.digits
CODE_PREFIX_LENGTH = 8
CODE_SUFFIX_LENGTH = 4


def normalize_code(code: str) -> str:
    return code.strip().upper()


def generate_referral_code(username: str) -> str:
    """
    username-derived prefix (A-Z0-9 only, max 8 chars) + 4 random chars,
    e.g. 'mari.silva' -> 'MARISILV7Q2K'.
    """
    prefix = re.sub(r"[^A-Z0-9]", "", username.upper())[:CODE_PREFIX_LENGTH] or "REF"
    suffix = "".join(secrets.choice(CODE_ALPHABET) for _ in range(CODE_SUFFIX_LENGTH))
    return prefix + suffix


def invite_link(code: str) -> str:
    return f"{get_settings().app_base_url.rstrip('/')}/convite/{code}"


# ---------
# creator directory
# ---------

def register_creator(creator_id: str, username: str, store: MemoryStore) -> Dict[str, Any]:
    username = username.strip()
    if not username:
        raise ValueError("username cannot be empty")

    with store.transaction():
        if creator_id in store.creators:
            raise CreatorAlreadyExists(f"creator {creator_id} already exists")
        if get_creator_by_username(username, store) is not None:
            raise CreatorAlreadyExists(f"username '{username}' already exists")
        creator = {"creator_id": creator_id, "username": username}
        store.touch("creators", creator_id)
        store.creators[creator_id] = creator
        return dict(creator)


def get_creator(creator_id: str, store: MemoryStore) -> Optional[Dict[str, Any]]:
    creator = store.creators.get(creator_id)
    return dict(creator) if creator else None


def get_creator_by_username(username: str, store: MemoryStore) -> Optional[Dict[str, Any]]:
    for creator in store.creators.values():
        if creator["username"] == username:
            return dict(creator)
    return None


def check_creator_username(
    creator: Optional[Dict[str, Any]],
    creator_id: str,
    creator_username: str,
) -> None:
    """the directory entry for creator_id must exist and carry creator_username."""
    if creator is None:
        raise CreatorNotFound(f"creator {creator_id} not found")
    if creator["username"] != creator_username.strip():
        raise ValueError(
            f"creator {creator_id} is registered as @{creator['username']}, "
            f"not @{creator_username}"
        )


# ---------
# referral code registry
# ---------

def _active_code_for(creator_id: str, store: MemoryStore) -> Optional[Dict[str, Any]]:
    for record in store.referral_codes.values():
        if record["owner_creator_id"] == creator_id and record["active"]:
            return record
    return None


def issue_code(
    creator_id: str,
    store: MemoryStore,
    generate: Callable[[str], str] = generate_referral_code,
) -> str:
    """
    return the creator's active referral code, issuing one on first use.

    lookup and insert run in one unit of work, so two concurrent requests for
    the same creator end up with the same code.
    """
    max_attempts = get_settings().code_generation_max_attempts

    with store.transaction():
        creator = store.creators.get(creator_id)
        if creator is None:
            raise CreatorNotFound(f"creator {creator_id} not found")

        existing = _active_code_for(creator_id, store)
        if existing is not None:
            return existing["code"]

        for attempt in range(1, max_attempts + 1):
            candidate = normalize_code(generate(creator["username"]))
            if candidate in store.referral_codes:
                logger.warning(
                    "referral code collision on {} (attempt {}/{})",
                    candidate, attempt, max_attempts,
                )
                continue

            store.touch("referral_codes", candidate)
            store.referral_codes[candidate] = {
                "code": candidate,
                "owner_creator_id": creator_id,
                "owner_username": creator["username"],
                "active": True,
                "created_at": utcnow(),
            }
            logger.info("issued referral code {} to @{}", candidate, creator["username"])
            return candidate

    raise CodeGenerationExhausted(
        f"could not generate a unique referral code for {creator_id} "
        f"after {max_attempts} attempts"
    )


def validate_code(code: str, store: MemoryStore) -> Optional[Dict[str, Any]]:
    """referral code record if it exists and is active, else None."""
    record = store.referral_codes.get(normalize_code(code))
    if record is None or not record["active"]:
        return None
    return dict(record)


def deactivate_code(code: str, store: MemoryStore) -> bool:
    with store.transaction():
        record = store.referral_codes.get(normalize_code(code))
        if record is None or not record["active"]:
            return False
        store.touch("referral_codes", record["code"])
        record["active"] = False
        logger.info("deactivated referral code {}", record["code"])
        return True


# ---------
# referral graph
# ---------

def _check_no_cycle(creator_id: str, referrer_id: str, store: MemoryStore) -> None:
    """walk UP from the referrer; we must never reach the new creator."""
    if referrer_id == creator_id:
        raise ReferralCycle(f"Creator {creator_id} cannot refer themselves.")

    # walk to the root; a repeated id means the upline is already corrupt
    seen = {referrer_id}
    current = referrer_id
    while True:
        membership = store.creator_network.get(current)
        if membership is None or membership["referred_by_creator_id"] is None:
            return
        current = membership["referred_by_creator_id"]
        if current == creator_id or current in seen:
            raise ReferralCycle(
                f"Registering {referrer_id} as referrer of {creator_id} would create a cycle."
            )
        seen.add(current)


def add_membership(
    creator_id: str,
    creator_username: str,
    referral_code: str,
    store: MemoryStore,
) -> Dict[str, Any]:
    """
    place a creator in the referral forest under the owner of referral_code.

    rules:
      - the code must exist and be active
      - a creator can only be placed once
      - the new edge must not create a cycle
      - level = referrer.level + 1, or 1 when the referrer is a root
    """
    with store.transaction():
        owner = validate_code(referral_code, store)
        if owner is None:
            raise InvalidReferralCode(referral_code)

        check_creator_username(store.creators.get(creator_id), creator_id, creator_username)
        creator_username = store.creators[creator_id]["username"]

        if creator_id in store.creator_network:
            logger.error("creator {} already has a membership row", creator_id)
            raise DuplicateMembership(creator_id)

        referrer_id = owner["owner_creator_id"]
        _check_no_cycle(creator_id, referrer_id, store)

        referrer_membership = store.creator_network.get(referrer_id)
        level = referrer_membership["level"] + 1 if referrer_membership else 1

        membership = {
            "creator_id": creator_id,
            "creator_username": creator_username,
            "referred_by_creator_id": referrer_id,
            "referred_by_username": owner["owner_username"],
            "referral_code_used": owner["code"],
            "level": level,
            "joined_at": utcnow(),
            "is_active": True,
            "total_earnings": 0,
            "monthly_earnings": 0,
            "subscriber_count": 0,
        }
        store.touch("creator_network", creator_id)
        store.creator_network[creator_id] = membership
        logger.info(
            "@{} joined the network under @{} at level {}",
            creator_username, owner["owner_username"], level,
        )
        return dict(membership)


def get_membership(creator_id: str, store: MemoryStore) -> Optional[Dict[str, Any]]:
    membership = store.creator_network.get(creator_id)
    return dict(membership) if membership else None


def _downline_of(creator_id: str, store: MemoryStore) -> List[Dict[str, Any]]:
    return [
        dict(m)
        for m in store.creator_network.values()
        if m["referred_by_creator_id"] == creator_id
    ]


def get_direct_downline(creator_username: str, store: MemoryStore) -> List[Dict[str, Any]]:
    """memberships directly referred by creator_username, in join order."""
    with store.locked():
        creator = get_creator_by_username(creator_username, store)
        if creator is None:
            return []
        return _downline_of(creator["creator_id"], store)


def _resolve_referrer(child_id: str, referrer_id: str, store: MemoryStore) -> Dict[str, Any]:
    referrer = store.creators.get(referrer_id)
    if referrer is None:
        raise BrokenReferralChain(child_id, referrer_id)
    return referrer


def ancestors_of(
    creator_id: str,
    store: MemoryStore,
    max_depth: int = MAX_COMMISSION_LEVELS,
) -> List[Dict[str, Any]]:
    """
    upline of creator_id, nearest first: [{creator_id, username, level}, ...].

    the walk ends at a root (a referrer without a membership row, who is
    still included), at max_depth, or at a referrer that no longer resolves.
    """
    chain: List[Dict[str, Any]] = []
    child_id = creator_id
    membership = store.creator_network.get(creator_id)

    while membership is not None and len(chain) < max_depth:
        referrer_id = membership["referred_by_creator_id"]
        if referrer_id is None:
            break
        try:
            referrer = _resolve_referrer(child_id, referrer_id, store)
        except BrokenReferralChain as e:
            logger.warning("{} stopping chain at level {}", e, len(chain) + 1)
            break

        chain.append(
            {
                "creator_id": referrer_id,
                "username": referrer["username"],
                "level": len(chain) + 1,
            }
        )
        child_id = referrer_id
        membership = store.creator_network.get(referrer_id)

    return chain


def get_ancestor_chain(
    creator_username: str,
    store: MemoryStore,
    max_depth: int = MAX_COMMISSION_LEVELS,
) -> List[Dict[str, Any]]:
    with store.locked():
        creator = get_creator_by_username(creator_username, store)
        if creator is None:
            return []
        return ancestors_of(creator["creator_id"], store, max_depth)


# ---------
# network tree reader
# ---------

def get_network_tree(
    creator_username: str,
    store: MemoryStore,
    max_depth: int = MAX_COMMISSION_LEVELS,
) -> List[Dict[str, Any]]:
    """
    nested downline of creator_username:
    [{"membership", "depth", "commission_rate", "children": [...]}, ...]

    recursion is bounded by max_depth whatever the shape of the graph.
    """

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
            for member in _downline_of(creator_id, store)
        ]

    with store.locked():
        creator = get_creator_by_username(creator_username, store)
        if creator is None:
            return []
        return _level(creator["creator_id"], 1)
