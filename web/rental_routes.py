"""
Rental Routes - Rental Agreement Lifecycle API

Endpoints:
- POST /rentals/                      Tenant requests a property
- GET  /rentals/                      Caller's agreements (either side)
- GET  /rentals/pending               Landlord's open requests
- GET  /rentals/approved              Tenant's approved agreements
- GET  /rentals/{id}                  One agreement (parties only)
- GET  /rentals/{id}/history          Status history (parties only)
- POST /rentals/{id}/<transition>     review, approve, reject, confirm,
                                      activate, complete, cancel

Lifecycle errors are mapped to HTTP statuses by the app-level handler.
"""

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from tenancy.engine import TenancyEngine
from tenancy.identity import Identity
from web.auth import get_current_caller
from web.dependencies import get_engine

router = APIRouter(prefix="/rentals", tags=["rentals"])


# =============================================================================
# Request Models
# =============================================================================


class RentalRequestBody(BaseModel):
    """Body for a new rental request."""

    property_id: int
    start_date: int  # nanoseconds since epoch
    end_date: int


# =============================================================================
# Reads
# =============================================================================


@router.get("/")
def list_my_rentals(
    caller: Identity = Depends(get_current_caller),
    engine: TenancyEngine = Depends(get_engine),
):
    """Agreements where the caller is landlord or tenant."""
    return [r.to_dict() for r in engine.get_rentals_for(caller)]


@router.get("/pending")
def list_pending_requests(
    caller: Identity = Depends(get_current_caller),
    engine: TenancyEngine = Depends(get_engine),
):
    return [r.to_dict() for r in engine.get_pending_requests_for_landlord(caller)]


@router.get("/approved")
def list_approved_rentals(
    caller: Identity = Depends(get_current_caller),
    engine: TenancyEngine = Depends(get_engine),
):
    return [r.to_dict() for r in engine.get_approved_for_tenant(caller)]


@router.get("/{rental_id}")
def get_rental(
    rental_id: int,
    caller: Identity = Depends(get_current_caller),
    engine: TenancyEngine = Depends(get_engine),
):
    return engine.get_rental(caller, rental_id).to_dict()


@router.get("/{rental_id}/history")
def get_rental_history(
    rental_id: int,
    caller: Identity = Depends(get_current_caller),
    engine: TenancyEngine = Depends(get_engine),
):
    return [c.to_dict() for c in engine.get_rental_history(caller, rental_id)]


# =============================================================================
# Transitions
# =============================================================================


@router.post("/", status_code=201)
def request_rental(
    body: RentalRequestBody,
    caller: Identity = Depends(get_current_caller),
    engine: TenancyEngine = Depends(get_engine),
):
    """Tenant requests a property; the listing becomes unavailable."""
    rental = engine.create_rental_request(
        caller, body.property_id, body.start_date, body.end_date
    )
    return rental.to_dict()


@router.post("/{rental_id}/review")
def mark_under_review(
    rental_id: int,
    caller: Identity = Depends(get_current_caller),
    engine: TenancyEngine = Depends(get_engine),
):
    return engine.mark_under_review(caller, rental_id).to_dict()


@router.post("/{rental_id}/approve")
def approve_rental(
    rental_id: int,
    caller: Identity = Depends(get_current_caller),
    engine: TenancyEngine = Depends(get_engine),
):
    return engine.approve_rental(caller, rental_id).to_dict()


@router.post("/{rental_id}/reject")
def reject_rental(
    rental_id: int,
    caller: Identity = Depends(get_current_caller),
    engine: TenancyEngine = Depends(get_engine),
):
    return engine.reject_rental(caller, rental_id).to_dict()


@router.post("/{rental_id}/confirm")
def confirm_rental(
    rental_id: int,
    caller: Identity = Depends(get_current_caller),
    engine: TenancyEngine = Depends(get_engine),
):
    """Confirm the agreement; the response carries the minted receipt id."""
    return engine.confirm_rental(caller, rental_id).to_dict()


@router.post("/{rental_id}/activate")
def activate_rental(
    rental_id: int,
    caller: Identity = Depends(get_current_caller),
    engine: TenancyEngine = Depends(get_engine),
):
    return engine.activate_rental(caller, rental_id).to_dict()


@router.post("/{rental_id}/complete")
def complete_rental(
    rental_id: int,
    caller: Identity = Depends(get_current_caller),
    engine: TenancyEngine = Depends(get_engine),
):
    return engine.complete_rental(caller, rental_id).to_dict()


@router.post("/{rental_id}/cancel")
def cancel_rental(
    rental_id: int,
    caller: Identity = Depends(get_current_caller),
    engine: TenancyEngine = Depends(get_engine),
):
    return engine.cancel_rental(caller, rental_id).to_dict()
