"""
Escrow Routes - Security Deposit Escrow API

Endpoints:
- POST /escrows/                          Open an escrow account
- GET  /escrows/?role=                    Caller's accounts
- GET  /escrows/statistics?role=          Dashboard statistics
- POST /escrows/expire-overdue            Sweep overdue accounts
- GET  /escrows/{id}                      One account (parties only)
- GET  /escrows/{id}/timeline             Ordered audit events
- GET  /escrows/{id}/timeline/verify      Hash-chain check
- POST /escrows/{id}/<transition>         deposit, approve, activate, refund,
                                          refund/complete, expire, dispute,
                                          dispute/resolve, cancel
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel

from tenancy.engine import TenancyEngine
from tenancy.identity import Identity
from tenancy.schema import Role
from web.auth import get_current_caller
from web.dependencies import get_engine

router = APIRouter(prefix="/escrows", tags=["escrows"])


# =============================================================================
# Request Models
# =============================================================================


class CreateEscrowBody(BaseModel):
    rental_id: int
    property_id: int
    landlord: str
    tenant: str
    amount: int  # minor units


class TransactionBody(BaseModel):
    tx_ref: str


class CustodyBody(BaseModel):
    custody_ref: str


class RefundBody(BaseModel):
    refund_amount: int  # minor units


class DisputeBody(BaseModel):
    reason: str


class ResolveDisputeBody(BaseModel):
    note: Optional[str] = None


class CancelEscrowBody(BaseModel):
    reason: Optional[str] = None


# =============================================================================
# Collection Routes
# =============================================================================


@router.post("/", status_code=201)
def create_escrow(
    body: CreateEscrowBody,
    caller: Identity = Depends(get_current_caller),
    engine: TenancyEngine = Depends(get_engine),
):
    account = engine.create_escrow(
        caller, body.rental_id, body.property_id, body.landlord, body.tenant, body.amount
    )
    return account.to_dict()


@router.get("/")
def list_my_escrows(
    role: Optional[Role] = Query(None),
    caller: Identity = Depends(get_current_caller),
    engine: TenancyEngine = Depends(get_engine),
):
    return [a.to_dict() for a in engine.get_escrows_for(caller, role)]


@router.get("/statistics")
def get_statistics(
    role: Optional[Role] = Query(None),
    caller: Identity = Depends(get_current_caller),
    engine: TenancyEngine = Depends(get_engine),
):
    return engine.get_statistics(caller, role).to_dict()


@router.post("/expire-overdue")
def expire_overdue(
    caller: Identity = Depends(get_current_caller),
    engine: TenancyEngine = Depends(get_engine),
):
    """Expire every overdue account whose deposit was never secured."""
    expired = engine.expire_overdue_escrows(caller)
    return {"expired": [a.id for a in expired], "count": len(expired)}


# =============================================================================
# Account Routes
# =============================================================================


@router.get("/{escrow_id}")
def get_escrow(
    escrow_id: int,
    caller: Identity = Depends(get_current_caller),
    engine: TenancyEngine = Depends(get_engine),
):
    account = engine.get_escrow(caller, escrow_id)
    if account is None:
        raise HTTPException(status_code=404, detail="Escrow account not found")
    return account.to_dict()


@router.get("/{escrow_id}/timeline")
def get_timeline(
    escrow_id: int,
    offset: int = Query(0, ge=0),
    limit: Optional[int] = Query(None, ge=1),
    caller: Identity = Depends(get_current_caller),
    engine: TenancyEngine = Depends(get_engine),
):
    return [e.to_dict() for e in engine.get_timeline(caller, escrow_id, offset, limit)]


@router.get("/{escrow_id}/timeline/verify")
def verify_timeline(
    escrow_id: int,
    caller: Identity = Depends(get_current_caller),
    engine: TenancyEngine = Depends(get_engine),
):
    return engine.verify_timeline(caller, escrow_id)


@router.post("/{escrow_id}/deposit")
def submit_deposit(
    escrow_id: int,
    body: TransactionBody,
    caller: Identity = Depends(get_current_caller),
    engine: TenancyEngine = Depends(get_engine),
):
    return engine.submit_deposit(caller, escrow_id, body.tx_ref).to_dict()


@router.post("/{escrow_id}/approve")
def approve_deposit(
    escrow_id: int,
    body: CustodyBody,
    caller: Identity = Depends(get_current_caller),
    engine: TenancyEngine = Depends(get_engine),
):
    return engine.approve_deposit(caller, escrow_id, body.custody_ref).to_dict()


@router.post("/{escrow_id}/activate")
def activate_protection(
    escrow_id: int,
    caller: Identity = Depends(get_current_caller),
    engine: TenancyEngine = Depends(get_engine),
):
    return engine.activate_protection(caller, escrow_id).to_dict()


@router.post("/{escrow_id}/refund")
def initiate_refund(
    escrow_id: int,
    body: RefundBody,
    caller: Identity = Depends(get_current_caller),
    engine: TenancyEngine = Depends(get_engine),
):
    return engine.initiate_refund(caller, escrow_id, body.refund_amount).to_dict()


@router.post("/{escrow_id}/refund/complete")
def complete_refund(
    escrow_id: int,
    body: TransactionBody,
    caller: Identity = Depends(get_current_caller),
    engine: TenancyEngine = Depends(get_engine),
):
    return engine.complete_refund(caller, escrow_id, body.tx_ref).to_dict()


@router.post("/{escrow_id}/expire")
def expire_escrow(
    escrow_id: int,
    caller: Identity = Depends(get_current_caller),
    engine: TenancyEngine = Depends(get_engine),
):
    return engine.expire_escrow(caller, escrow_id).to_dict()


@router.post("/{escrow_id}/dispute")
def raise_dispute(
    escrow_id: int,
    body: DisputeBody,
    caller: Identity = Depends(get_current_caller),
    engine: TenancyEngine = Depends(get_engine),
):
    return engine.raise_dispute(caller, escrow_id, body.reason).to_dict()


@router.post("/{escrow_id}/dispute/resolve")
def resolve_dispute(
    escrow_id: int,
    body: ResolveDisputeBody,
    caller: Identity = Depends(get_current_caller),
    engine: TenancyEngine = Depends(get_engine),
):
    return engine.resolve_dispute(caller, escrow_id, body.note).to_dict()


@router.post("/{escrow_id}/cancel")
def cancel_escrow(
    escrow_id: int,
    body: CancelEscrowBody,
    caller: Identity = Depends(get_current_caller),
    engine: TenancyEngine = Depends(get_engine),
):
    return engine.cancel_escrow(caller, escrow_id, body.reason).to_dict()
