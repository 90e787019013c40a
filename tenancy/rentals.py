"""
Rental Lifecycle - Rental Agreement State Machine

States:
    Requested -> UnderReview -> Approved -> Confirmed -> Active -> Completed

Cancelled is reachable from every non-terminal state except Active.
Rejection also ends in Cancelled; it differs only in the source-state check.

Rules:
- Every mutating call authenticates the caller first
- Checks run in order: authentication, existence, ownership/role, state
- Property availability flips false on request and back to true on
  rejection, cancellation and completion
- Confirmation mints a receipt; nft_id is set iff the agreement is
  Confirmed, Active or Completed
- Every successful transition appends one status-history entry after the
  agreement is persisted; a failed append is logged and the transition stands
- Receipts are revoked only after the agreement is persisted, and a receipt
  minted for a confirmation that fails to persist is revoked again
"""

from __future__ import annotations

import logging
from typing import Iterable, Optional

from tenancy.context import EngineContext
from tenancy.errors import Forbidden, InvalidRequest, InvalidState, NotFound, StorageError
from tenancy.identity import Identity, require_authenticated, resolve_caller
from tenancy.schema import (
    RentalAgreement,
    RentalStatus,
    RentalStatusChange,
    Role,
)

logger = logging.getLogger(__name__)


# Landlords may confirm straight from Requested for agreements created
# before the Approved step existed.
LANDLORD_CONFIRMABLE = frozenset({RentalStatus.REQUESTED, RentalStatus.APPROVED})
TENANT_CONFIRMABLE = frozenset({RentalStatus.APPROVED})
REVIEWABLE = frozenset({RentalStatus.REQUESTED, RentalStatus.UNDER_REVIEW})


class RentalLifecycle:
    """Rental agreement operations over an engine context."""

    def __init__(self, ctx: EngineContext):
        self._ctx = ctx

    # =========================================================================
    # Helpers
    # =========================================================================

    def _load(self, rental_id: int) -> RentalAgreement:
        rental = self._ctx.rentals.get(rental_id)
        if not rental:
            raise NotFound(f"Rental {rental_id} not found")
        return rental

    @staticmethod
    def _require_landlord(rental: RentalAgreement, caller: Identity, message: str) -> None:
        if caller != rental.landlord:
            logger.warning("Rejected %s on rental %s: not landlord", caller, rental.id)
            raise Forbidden(message)

    @staticmethod
    def _require_status(
        rental: RentalAgreement,
        allowed: Iterable[RentalStatus],
        message: str,
    ) -> None:
        if rental.status not in allowed:
            raise InvalidState(message, current_status=rental.status.value)

    def _transition(
        self,
        rental: RentalAgreement,
        target: RentalStatus,
        actor: Identity,
    ) -> RentalAgreement:
        """Persist a status change, then record it in the history."""
        now = self._ctx.now()
        previous = rental.status
        rental.transition(target, now)
        self._ctx.rentals.save(rental)
        self._record_history(rental, previous, actor)
        logger.info(
            "Rental %s: %s -> %s by %s", rental.id, previous.value, target.value, actor
        )
        return rental

    def _record_history(
        self,
        rental: RentalAgreement,
        previous: Optional[RentalStatus],
        actor: Identity,
    ) -> None:
        try:
            self._ctx.history.record(
                rental.id, previous, rental.status, actor, rental.updated_at
            )
        except StorageError:
            logger.exception(
                "Rental %s moved to %s but its history entry was not recorded",
                rental.id,
                rental.status.value,
            )

    def _revoke_receipt(self, rental_id: int, receipt_id: int) -> None:
        if not self._ctx.receipts.revoke(receipt_id):
            logger.warning("Receipt %s for rental %s not found", receipt_id, rental_id)

    def _release_property(self, rental: RentalAgreement) -> None:
        if not self._ctx.properties.set_available(rental.property_id, True):
            logger.warning(
                "Property %s for rental %s no longer listed", rental.property_id, rental.id
            )

    # =========================================================================
    # Mutating Operations
    # =========================================================================

    def create_rental_request(
        self,
        caller,
        property_id: int,
        start_date: int,
        end_date: int,
    ) -> RentalAgreement:
        """
        Request a property as a tenant.

        Rent and deposit are copied from the listing. The property is marked
        unavailable.

        Raises:
            Unauthenticated: Anonymous caller
            Forbidden: Caller is not registered as a tenant
            InvalidRequest: end_date is not after start_date
            NotFound: Unknown property
            InvalidState: Property unavailable or already under an open agreement
        """
        tenant = require_authenticated(caller)

        with self._ctx.lock:
            if self._ctx.roles.role_of(tenant) != Role.TENANT:
                raise Forbidden("Only tenants can request rentals")

            for name, value in (("start_date", start_date), ("end_date", end_date)):
                if isinstance(value, bool) or not isinstance(value, int):
                    raise InvalidRequest(f"{name} must be an integer timestamp")
            if end_date <= start_date:
                raise InvalidRequest("end_date must be after start_date")

            listing = self._ctx.properties.get(property_id)
            if not listing:
                raise NotFound(f"Property {property_id} not found")
            if not listing.is_available:
                raise InvalidState("Property is not available for rent")
            if self._ctx.rentals.find_open_for_property(property_id):
                raise InvalidState("Property already has an active rental")

            now = self._ctx.now()
            rental = self._ctx.rentals.create(
                lambda rental_id: RentalAgreement(
                    id=rental_id,
                    property_id=property_id,
                    landlord=listing.owner,
                    tenant=tenant,
                    status=RentalStatus.REQUESTED,
                    start_date=start_date,
                    end_date=end_date,
                    rent_amount=listing.rent_amount,
                    deposit_amount=listing.deposit_amount,
                    created_at=now,
                    updated_at=now,
                )
            )
            self._ctx.properties.set_available(property_id, False)
            self._record_history(rental, None, tenant)

            logger.info(
                "Rental %s requested for property %s by %s", rental.id, property_id, tenant
            )
            return rental

    def mark_under_review(self, caller, rental_id: int) -> RentalAgreement:
        """Landlord acknowledges a request (Requested -> UnderReview)."""
        landlord = require_authenticated(caller)
        with self._ctx.lock:
            rental = self._load(rental_id)
            self._require_landlord(rental, landlord, "Only landlord can mark rental under review")
            self._require_status(
                rental,
                {RentalStatus.REQUESTED},
                "Rental must be in requested state to mark under review",
            )
            return self._transition(rental, RentalStatus.UNDER_REVIEW, landlord)

    def approve_rental(self, caller, rental_id: int) -> RentalAgreement:
        """Landlord approves a request (Requested/UnderReview -> Approved)."""
        landlord = require_authenticated(caller)
        with self._ctx.lock:
            rental = self._load(rental_id)
            self._require_landlord(rental, landlord, "Only landlord can approve rental request")
            self._require_status(
                rental,
                REVIEWABLE,
                "Rental request is not in a state that can be approved",
            )
            return self._transition(rental, RentalStatus.APPROVED, landlord)

    def reject_rental(self, caller, rental_id: int) -> RentalAgreement:
        """Landlord rejects a request (Requested/UnderReview -> Cancelled)."""
        landlord = require_authenticated(caller)
        with self._ctx.lock:
            rental = self._load(rental_id)
            self._require_landlord(rental, landlord, "Only landlord can reject rental request")
            self._require_status(
                rental,
                REVIEWABLE,
                "Rental request is not in a state that can be rejected",
            )
            self._transition(rental, RentalStatus.CANCELLED, landlord)
            self._release_property(rental)
            return rental

    def confirm_rental(self, caller, rental_id: int) -> RentalAgreement:
        """
        Confirm an agreement and mint its receipt.

        Landlords confirm from Requested or Approved, tenants only from
        Approved. Property availability is left unchanged.

        Raises:
            Forbidden: Caller is not the party matching their registered role
            InvalidState: Source state not allowed for the caller's role
        """
        party = require_authenticated(caller)
        with self._ctx.lock:
            rental = self._load(rental_id)
            role = self._ctx.roles.role_of(party)

            if role == Role.LANDLORD:
                if party != rental.landlord:
                    raise Forbidden("Access denied")
                self._require_status(
                    rental,
                    LANDLORD_CONFIRMABLE,
                    "Rental must be in requested or approved state",
                )
            elif role == Role.TENANT:
                if party != rental.tenant:
                    raise Forbidden("Access denied")
                self._require_status(
                    rental,
                    TENANT_CONFIRMABLE,
                    "Rental must be approved by landlord before confirmation",
                )
            else:
                raise Forbidden("Caller has no registered role")

            receipt_id = self._ctx.receipts.mint(rental)
            rental.nft_id = receipt_id
            try:
                self._transition(rental, RentalStatus.CONFIRMED, party)
            except StorageError:
                self._revoke_receipt(rental.id, receipt_id)
                raise
            logger.info("Receipt %s minted for rental %s", rental.nft_id, rental.id)
            return rental

    def activate_rental(self, caller, rental_id: int) -> RentalAgreement:
        """Start the lease (Confirmed -> Active). Any authenticated caller."""
        actor = require_authenticated(caller)
        with self._ctx.lock:
            rental = self._load(rental_id)
            self._require_status(
                rental,
                {RentalStatus.CONFIRMED},
                "Rental must be confirmed before activation",
            )
            return self._transition(rental, RentalStatus.ACTIVE, actor)

    def complete_rental(self, caller, rental_id: int) -> RentalAgreement:
        """Landlord ends the lease (Active -> Completed); the property is relisted."""
        landlord = require_authenticated(caller)
        with self._ctx.lock:
            rental = self._load(rental_id)
            self._require_landlord(rental, landlord, "Only landlord can complete rental")
            return self._complete(rental, landlord)

    def complete_after_refund(self, caller, rental_id: int) -> RentalAgreement:
        """Close an Active lease once its deposit refund has completed."""
        actor = require_authenticated(caller)
        with self._ctx.lock:
            return self._complete(self._load(rental_id), actor)

    def _complete(self, rental: RentalAgreement, actor: Identity) -> RentalAgreement:
        self._require_status(
            rental,
            {RentalStatus.ACTIVE},
            "Only active rentals can be completed",
        )
        self._transition(rental, RentalStatus.COMPLETED, actor)
        self._release_property(rental)
        return rental

    def cancel_rental(self, caller, rental_id: int) -> RentalAgreement:
        """
        Cancel a non-terminal, non-active agreement.

        Revokes the receipt of a confirmed agreement and relists the property.
        """
        party = require_authenticated(caller)
        with self._ctx.lock:
            rental = self._load(rental_id)
            if not rental.is_party(party):
                raise Forbidden("Only landlord or tenant can cancel rental")
            if rental.status == RentalStatus.ACTIVE:
                raise InvalidState("Cannot cancel active rental", current_status=rental.status.value)
            if rental.is_terminal:
                raise InvalidState(
                    "Rental is already closed", current_status=rental.status.value
                )

            receipt_id = rental.nft_id
            rental.nft_id = None
            self._transition(rental, RentalStatus.CANCELLED, party)
            if receipt_id is not None:
                self._revoke_receipt(rental.id, receipt_id)
            self._release_property(rental)
            return rental

    # =========================================================================
    # Read Operations
    # =========================================================================

    def get_rental(self, caller, rental_id: int) -> RentalAgreement:
        """Get an agreement the caller is party to (strict)."""
        viewer = require_authenticated(caller)
        with self._ctx.lock:
            rental = self._load(rental_id)
            if not rental.is_party(viewer):
                raise Forbidden("Access denied")
            return rental

    def get_rentals_for(self, caller) -> list[RentalAgreement]:
        """Agreements where the caller is landlord or tenant; [] when anonymous."""
        viewer = resolve_caller(caller)
        if viewer.is_anonymous:
            return []
        with self._ctx.lock:
            return self._ctx.rentals.list_by_user(viewer)

    def get_pending_requests_for_landlord(self, caller) -> list[RentalAgreement]:
        """Requested/UnderReview agreements awaiting the landlord."""
        landlord = require_authenticated(caller)
        with self._ctx.lock:
            if self._ctx.roles.role_of(landlord) != Role.LANDLORD:
                raise Forbidden("Only landlords can view rental requests")
            return self._ctx.rentals.list_pending_for_landlord(landlord)

    def get_approved_for_tenant(self, caller) -> list[RentalAgreement]:
        """Approved agreements the tenant can now confirm."""
        tenant = require_authenticated(caller)
        with self._ctx.lock:
            if self._ctx.roles.role_of(tenant) != Role.TENANT:
                raise Forbidden("Only tenants can view approved rentals")
            return self._ctx.rentals.list_approved_for_tenant(tenant)

    def get_rental_history(self, caller, rental_id: int) -> list[RentalStatusChange]:
        viewer = require_authenticated(caller)
        with self._ctx.lock:
            rental = self._load(rental_id)
            if not rental.is_party(viewer):
                raise Forbidden("Access denied")
            return self._ctx.history.history_for(rental_id)
