"""
Directory Routes - Users and Property Listings

Thin surface over the in-memory collaborators so the API is usable on its
own. Only what the lifecycles consume is exposed: role registration,
property listing and receipt lookup.
"""

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from tenancy.collaborators import PropertyRegistry, ReceiptRegistry, UserRegistry
from tenancy.engine import TenancyEngine
from tenancy.errors import Forbidden, NotFound
from tenancy.identity import Identity, require_authenticated
from tenancy.schema import Role
from web.auth import get_current_caller
from web.dependencies import get_engine

router = APIRouter(tags=["directory"])


class RegisterBody(BaseModel):
    role: Role


class PropertyBody(BaseModel):
    title: str
    address: str
    rent_amount: int  # minor units
    deposit_amount: int
    image: str = ""


def _property_registry(engine: TenancyEngine) -> PropertyRegistry:
    if not isinstance(engine.properties, PropertyRegistry):
        raise HTTPException(status_code=501, detail="Property directory is managed externally")
    return engine.properties


def _user_registry(engine: TenancyEngine) -> UserRegistry:
    if not isinstance(engine.roles, UserRegistry):
        raise HTTPException(status_code=501, detail="Role directory is managed externally")
    return engine.roles


@router.post("/users/register", status_code=201)
def register_user(
    body: RegisterBody,
    caller: Identity = Depends(get_current_caller),
    engine: TenancyEngine = Depends(get_engine),
):
    """Register the caller with a role."""
    user = require_authenticated(caller)
    try:
        _user_registry(engine).register(user, body.role)
    except ValueError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return {"principal": user.principal, "role": body.role.value}


@router.get("/users/me")
def get_me(
    caller: Identity = Depends(get_current_caller),
    engine: TenancyEngine = Depends(get_engine),
):
    user = require_authenticated(caller)
    role = engine.roles.role_of(user)
    return {"principal": user.principal, "role": role.value if role else None}


@router.post("/properties", status_code=201)
def list_property(
    body: PropertyBody,
    caller: Identity = Depends(get_current_caller),
    engine: TenancyEngine = Depends(get_engine),
):
    """Landlord lists a property."""
    owner = require_authenticated(caller)
    if engine.roles.role_of(owner) != Role.LANDLORD:
        raise Forbidden("Only landlords can list properties")
    listing = _property_registry(engine).add(
        owner=owner,
        title=body.title,
        address=body.address,
        rent_amount=body.rent_amount,
        deposit_amount=body.deposit_amount,
        image=body.image,
    )
    return listing.to_dict()


@router.get("/properties")
def list_available_properties(engine: TenancyEngine = Depends(get_engine)):
    return [p.to_dict() for p in _property_registry(engine).list_available()]


@router.get("/receipts/{receipt_id}")
def get_receipt(
    receipt_id: int,
    caller: Identity = Depends(get_current_caller),
    engine: TenancyEngine = Depends(get_engine),
):
    """Rental receipt, visible to its holder only."""
    holder = require_authenticated(caller)
    if not isinstance(engine.receipts, ReceiptRegistry):
        raise HTTPException(status_code=501, detail="Receipts are managed externally")
    receipt = engine.receipts.get(receipt_id)
    if not receipt or receipt.owner != holder:
        raise NotFound(f"Receipt {receipt_id} not found")
    return receipt.to_dict()
