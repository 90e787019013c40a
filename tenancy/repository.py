"""
Rental and Escrow Repositories - Typed Access to the Record Store

Converts between schema dataclasses and stored dictionaries and provides the
filtered scans the lifecycles and dashboards need.
"""

from __future__ import annotations

from typing import Callable, Final, Optional

from tenancy.identity import Identity
from tenancy.schema import (
    EscrowAccount,
    EscrowStatus,
    PENDING_REQUEST_STATUSES,
    RentalAgreement,
    RentalStatus,
)
from tenancy.storage import ESCROWS_TABLE, RENTALS_TABLE, RecordStore

# Id allocator kinds
RENTAL_KIND: Final[str] = "rental"
ESCROW_KIND: Final[str] = "escrow"


# =============================================================================
# Rental Repository
# =============================================================================


class RentalRepository:
    """Repository for rental agreements."""

    def __init__(self, store: RecordStore):
        self._store = store

    # =========================================================================
    # CRUD Operations
    # =========================================================================

    def create(self, build: Callable[[int], RentalAgreement]) -> RentalAgreement:
        """Insert a new agreement built around the next rental id."""
        rental_id = self._store.insert_new(
            RENTALS_TABLE, RENTAL_KIND, lambda new_id: build(new_id).to_dict()
        )
        return self.get(rental_id)

    def get(self, rental_id: int) -> Optional[RentalAgreement]:
        """Get an agreement by id."""
        data = self._store.get(RENTALS_TABLE, rental_id)
        return RentalAgreement.from_dict(data) if data else None

    def save(self, rental: RentalAgreement) -> RentalAgreement:
        """Replace an existing agreement."""
        self._store.update(RENTALS_TABLE, rental.id, rental.to_dict())
        return rental

    # =========================================================================
    # Query Operations
    # =========================================================================

    def _scan(self, predicate=None) -> list[RentalAgreement]:
        return [RentalAgreement.from_dict(r) for r in self._store.scan(RENTALS_TABLE, predicate)]

    def list_by_user(self, user: Identity) -> list[RentalAgreement]:
        """Agreements where user is landlord or tenant."""
        return self._scan(
            lambda r: user.principal in (r["tenant"], r["landlord"])
        )

    def list_by_property(self, property_id: int) -> list[RentalAgreement]:
        return self._scan(lambda r: r["property_id"] == property_id)

    def find_open_for_property(self, property_id: int) -> Optional[RentalAgreement]:
        """Get the non-terminal agreement for a property, if any."""
        for rental in self.list_by_property(property_id):
            if not rental.is_terminal:
                return rental
        return None

    def list_pending_for_landlord(self, landlord: Identity) -> list[RentalAgreement]:
        pending = {s.value for s in PENDING_REQUEST_STATUSES}
        return self._scan(
            lambda r: r["landlord"] == landlord.principal and r["status"] in pending
        )

    def list_approved_for_tenant(self, tenant: Identity) -> list[RentalAgreement]:
        return self._scan(
            lambda r: r["tenant"] == tenant.principal
            and r["status"] == RentalStatus.APPROVED.value
        )


# =============================================================================
# Escrow Repository
# =============================================================================


class EscrowRepository:
    """Repository for escrow accounts."""

    def __init__(self, store: RecordStore):
        self._store = store

    # =========================================================================
    # CRUD Operations
    # =========================================================================

    def create(self, build: Callable[[int], EscrowAccount]) -> EscrowAccount:
        escrow_id = self._store.insert_new(
            ESCROWS_TABLE, ESCROW_KIND, lambda new_id: build(new_id).to_dict()
        )
        return self.get(escrow_id)

    def get(self, escrow_id: int) -> Optional[EscrowAccount]:
        data = self._store.get(ESCROWS_TABLE, escrow_id)
        return EscrowAccount.from_dict(data) if data else None

    def save(self, account: EscrowAccount) -> EscrowAccount:
        self._store.update(ESCROWS_TABLE, account.id, account.to_dict())
        return account

    # =========================================================================
    # Query Operations
    # =========================================================================

    def _scan(self, predicate=None) -> list[EscrowAccount]:
        return [EscrowAccount.from_dict(r) for r in self._store.scan(ESCROWS_TABLE, predicate)]

    def list_all(self) -> list[EscrowAccount]:
        return self._scan()

    def list_by_tenant(self, tenant: Identity) -> list[EscrowAccount]:
        return self._scan(lambda r: r["tenant"] == tenant.principal)

    def list_by_landlord(self, landlord: Identity) -> list[EscrowAccount]:
        return self._scan(lambda r: r["landlord"] == landlord.principal)

    def list_by_rental(self, rental_id: int) -> list[EscrowAccount]:
        return self._scan(lambda r: r["rental_id"] == rental_id)

    def find_for_rental(self, rental_id: int) -> Optional[EscrowAccount]:
        """Get the escrow account for a rental (one per rental)."""
        accounts = self.list_by_rental(rental_id)
        return accounts[0] if accounts else None

    def list_past_deadline(self, statuses: frozenset[EscrowStatus], now: int) -> list[EscrowAccount]:
        """Accounts in one of statuses whose submission deadline has passed."""
        wanted = {s.value for s in statuses}
        return self._scan(
            lambda r: r["status"] in wanted and now > r["submission_deadline"]
        )
