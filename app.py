from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from loguru import logger
from pydantic import BaseModel, Field

from commission_engine import MAX_COMMISSION_LEVELS
from db.db import init_schema
from errors import (
    CodeGenerationExhausted,
    ConcurrentBalanceUpdateConflict,
    CreatorAlreadyExists,
    CreatorNotFound,
    DuplicateMembership,
)
from logging_config import setup_logging
from payment_engine_db import (
    audit_financials_db,
    distribute_earning_db,
    get_financials_db,
    get_transactions_db,
    handle_payment_db,
    record_withdrawal_db,
)
from referral_db import (
    add_membership_db,
    deactivate_code_db,
    get_ancestor_chain_db,
    get_direct_downline_db,
    get_network_tree_db,
    issue_code_db,
    register_creator_db,
    validate_code_db,
)
from referral_engine import invite_link


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    init_schema()
    yield


app = FastAPI(title="Creator Network Commissions", version="0.1.0", lifespan=lifespan)

# CORS middleware to allow frontend to call the API
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------
# pydantic models (requests)
# ---------

class CreatorCreateRequest(BaseModel):
    creator_id: str = Field(..., min_length=1, description="Stable creator ID")
    username: str = Field(..., min_length=1, description="Unique public username")

class ReferralGenerateRequest(BaseModel):
    creator_id: str = Field(..., description="Creator to generate or fetch a referral code for")

class ReferralDeactivateRequest(BaseModel):
    code: str

class ReferralRegisterRequest(BaseModel):
    creator_id: str = Field(..., description="ID of the creator being placed")
    creator_username: str
    referral_code: str = Field(..., description="Referral code used on signup")

class PaymentWebhookRequest(BaseModel):
    event_id: str = Field(..., description="External payment ID, used for idempotency")
    payee_creator_id: str
    payer_user_id: Optional[str] = None
    gross_amount: int = Field(..., ge=0, description="Gross amount in cents")
    description: Optional[str] = None

class WithdrawalRequest(BaseModel):
    withdrawal_id: str = Field(..., description="Idempotency key for the withdrawal")
    creator_id: str
    amount: int = Field(..., gt=0, description="Amount in cents")


# ---------
# error mapping
# ---------

STATUS_BY_ERROR = (
    (CreatorNotFound, 404),
    (DuplicateMembership, 409),
    (CreatorAlreadyExists, 409),
    (ValueError, 400),
    (ConcurrentBalanceUpdateConflict, 503),
    (CodeGenerationExhausted, 503),
)


def _status_for(exc: Exception) -> int:
    for error_type, status_code in STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status_code
    return 500


@app.exception_handler(ValueError)
@app.exception_handler(ConcurrentBalanceUpdateConflict)
@app.exception_handler(CodeGenerationExhausted)
async def business_error_handler(request: Request, exc: Exception):
    """
    business rule violations (bad code, already placed, cycle, ...) carry
    their message; transient failures tell the caller to retry.
    """
    status_code = _status_for(exc)
    if status_code >= 500:
        logger.warning("{} {} failed transiently: {}", request.method, request.url.path, exc)
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.exception("unexpected error on {} {}", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


def _serialize_tree(nodes: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    # rates are Decimals; send them as strings like "0.10"
    return [
        {
            "membership": node["membership"],
            "depth": node["depth"],
            "commission_rate": f"{node['commission_rate']:.2f}",
            "children": _serialize_tree(node["children"]),
        }
        for node in nodes
    ]


# ---------
# endpoints
# ---------


@app.post("/api/creators")
def creator_create(payload: CreatorCreateRequest):
    return register_creator_db(payload.creator_id, payload.username)


@app.post("/api/referral/generate")
def referral_generate(payload: ReferralGenerateRequest):
    """
    return the creator's referral code (creating one on first use) and the
    shareable invite link.
    """
    code = issue_code_db(payload.creator_id)
    return {
        "creator_id": payload.creator_id,
        "referral_code": code,
        "invite_link": invite_link(code),
    }


@app.get("/api/referral/validate/{code}")
def referral_validate(code: str):
    """
    used by the signup form: owner info for a valid code, 404 otherwise.
    """
    record = validate_code_db(code)
    if record is None:
        raise HTTPException(status_code=404, detail="Invalid or inactive referral code")
    return {
        "code": record["code"],
        "owner_creator_id": record["owner_creator_id"],
        "owner_username": record["owner_username"],
    }


@app.post("/api/referral/deactivate")
def referral_deactivate(payload: ReferralDeactivateRequest):
    if not deactivate_code_db(payload.code):
        raise HTTPException(status_code=404, detail="Referral code not found or already inactive")
    return {"code": payload.code, "active": False}


@app.post("/api/referral/register")
def referral_register(payload: ReferralRegisterRequest):
    """
    place a creator in the network using a referral code.
    """
    return add_membership_db(
        creator_id=payload.creator_id,
        creator_username=payload.creator_username,
        referral_code=payload.referral_code,
    )


@app.get("/api/referral/network")
def referral_network(
    username: str = Query(..., description="Creator whose direct network we want"),
):
    members = get_direct_downline_db(username)
    return {"username": username, "count": len(members), "members": members}


@app.get("/api/referral/tree")
def referral_tree(
    username: str = Query(..., description="Root creator of the tree"),
    max_depth: int = Query(MAX_COMMISSION_LEVELS, ge=1, le=10, description="How many levels deep to fetch"),
):
    """
    nested downline:
    {
      "username": "ana",
      "max_depth": 4,
      "tree": [{"membership": {...}, "depth": 1, "commission_rate": "0.10", "children": [...]}]
    }
    """
    tree = get_network_tree_db(username, max_depth=max_depth)
    return {"username": username, "max_depth": max_depth, "tree": _serialize_tree(tree)}


@app.get("/api/referral/ancestors")
def referral_ancestors(
    username: str = Query(...),
    max_depth: int = Query(MAX_COMMISSION_LEVELS, ge=1, le=10),
):
    return {"username": username, "ancestors": get_ancestor_chain_db(username, max_depth)}


@app.post("/api/webhook/payment")
def webhook_payment(payload: PaymentWebhookRequest):
    """
    completed-payment webhook: creator share, commissions and platform
    revenue. returns either 'applied' or 'duplicate'.
    """
    return handle_payment_db(payload.model_dump())


@app.post("/api/webhook/commissions")
def webhook_commissions(payload: PaymentWebhookRequest):
    """
    commission distribution only, for callers that book the creator and
    platform shares themselves.
    """
    return distribute_earning_db(
        payload.payee_creator_id,
        payload.gross_amount,
        payload.payer_user_id,
        payload.event_id,
    )


@app.post("/api/financials/withdraw")
def financials_withdraw(payload: WithdrawalRequest):
    return record_withdrawal_db(payload.creator_id, payload.amount, payload.withdrawal_id)


@app.get("/api/financials/{creator_id}")
def financials_get(creator_id: str):
    return get_financials_db(creator_id)


@app.get("/api/financials/{creator_id}/transactions")
def financials_transactions(
    creator_id: str,
    limit: int = Query(50, ge=1, le=500, description="Max number of entries to return"),
):
    transactions = get_transactions_db(creator_id, limit)
    return {"creator_id": creator_id, "transactions": transactions}


@app.get("/api/financials/{creator_id}/audit")
def financials_audit(creator_id: str):
    """snapshot vs ledger-derived balances."""
    return audit_financials_db(creator_id)
