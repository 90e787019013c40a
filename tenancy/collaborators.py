"""
External Collaborators - Properties, Roles and Rental Receipts

The lifecycle engine consumes three collaborators it does not own:
- PropertyDirectory: listing lookup and availability toggle
- RoleDirectory: role lookup for a caller
- ReceiptMinter: mints (and revokes) the non-transferable rental receipt

Each has an in-memory implementation so the engine runs on its own.
"""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Final, Optional

from tenancy.errors import NotFound
from tenancy.identity import Identity
from tenancy.schema import RentalAgreement, Role, validate_amount
from utils.formatting import format_timestamp


# =============================================================================
# Constants
# =============================================================================

# Receipt images larger than this are replaced with a placeholder
MAX_RECEIPT_IMAGE_BYTES: Final[int] = 50 * 1024


# =============================================================================
# Records
# =============================================================================


@dataclass
class PropertyListing:
    """Subset of a property listing the lifecycle engine reads."""

    id: int
    owner: Identity
    title: str
    address: str
    rent_amount: int
    deposit_amount: int
    is_available: bool = True
    image: str = ""

    def __post_init__(self) -> None:
        validate_amount(self.rent_amount, "rent_amount")
        validate_amount(self.deposit_amount, "deposit_amount")

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "owner": self.owner.principal,
            "title": self.title,
            "address": self.address,
            "rent_amount": self.rent_amount,
            "deposit_amount": self.deposit_amount,
            "is_available": self.is_available,
        }


@dataclass(frozen=True)
class ReceiptAttribute:
    """One trait on a rental receipt."""

    trait_type: str
    value: str


@dataclass
class ReceiptRecord:
    """Non-transferable proof-of-rental record."""

    id: int
    owner: Identity
    property_id: int
    rental_id: int
    name: str
    description: str
    image: str
    attributes: list[ReceiptAttribute] = field(default_factory=list)
    created_at: int = 0
    revoked: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "owner": self.owner.principal,
            "property_id": self.property_id,
            "rental_id": self.rental_id,
            "name": self.name,
            "description": self.description,
            "image": self.image,
            "attributes": [
                {"trait_type": a.trait_type, "value": a.value} for a in self.attributes
            ],
            "created_at": self.created_at,
            "revoked": self.revoked,
        }


# =============================================================================
# Interfaces
# =============================================================================


class PropertyDirectory(ABC):
    """Property listing lookup and availability toggle."""

    @abstractmethod
    def get(self, property_id: int) -> Optional[PropertyListing]:
        pass

    @abstractmethod
    def set_available(self, property_id: int, available: bool) -> bool:
        """
        Set a property's availability flag.

        Returns:
            True if updated, False if the property is unknown
        """
        pass


class RoleDirectory(ABC):
    """Role lookup for registered users."""

    @abstractmethod
    def role_of(self, identity: Identity) -> Optional[Role]:
        """Get the user's role, or None if the identity is not registered."""
        pass


class ReceiptMinter(ABC):
    """Mints rental receipts on confirmation."""

    @abstractmethod
    def mint(self, rental: RentalAgreement) -> int:
        """
        Mint a receipt for a rental agreement.

        Returns:
            The new receipt id

        Raises:
            NotFound: If the rental's property is unknown
        """
        pass

    @abstractmethod
    def revoke(self, receipt_id: int) -> bool:
        """
        Revoke a receipt whose rental no longer stands.

        Returns:
            True if revoked, False if the receipt is unknown
        """
        pass


# =============================================================================
# In-Memory Implementations
# =============================================================================


class PropertyRegistry(PropertyDirectory):
    """In-memory property directory."""

    def __init__(self) -> None:
        self._properties: dict[int, PropertyListing] = {}
        self._counter = 0

    def add(
        self,
        owner: Identity,
        title: str,
        address: str,
        rent_amount: int,
        deposit_amount: int,
        image: str = "",
        is_available: bool = True,
    ) -> PropertyListing:
        """List a new property."""
        self._counter += 1
        listing = PropertyListing(
            id=self._counter,
            owner=owner,
            title=title,
            address=address,
            rent_amount=rent_amount,
            deposit_amount=deposit_amount,
            is_available=is_available,
            image=image,
        )
        self._properties[listing.id] = listing
        return listing

    def get(self, property_id: int) -> Optional[PropertyListing]:
        return self._properties.get(property_id)

    def set_available(self, property_id: int, available: bool) -> bool:
        listing = self._properties.get(property_id)
        if not listing:
            return False
        listing.is_available = available
        return True

    def list_available(self) -> list[PropertyListing]:
        return [p for p in self._properties.values() if p.is_available]


class UserRegistry(RoleDirectory):
    """In-memory role directory."""

    def __init__(self) -> None:
        self._roles: dict[Identity, Role] = {}

    def register(self, identity: Identity, role: Role) -> None:
        """
        Register a user with a role.

        Raises:
            ValueError: If the identity is anonymous or already registered
        """
        if identity.is_anonymous:
            raise ValueError("Anonymous identity cannot be registered")
        if identity in self._roles:
            raise ValueError(f"User {identity} already registered")
        self._roles[identity] = role

    def role_of(self, identity: Identity) -> Optional[Role]:
        return self._roles.get(identity)


class ReceiptRegistry(ReceiptMinter):
    """In-memory receipt minter backed by a property directory."""

    def __init__(self, properties: PropertyDirectory, clock=time.time_ns):
        self._properties = properties
        self._clock = clock
        self._receipts: dict[int, ReceiptRecord] = {}
        self._counter = 0

    def mint(self, rental: RentalAgreement) -> int:
        listing = self._properties.get(rental.property_id)
        if not listing:
            raise NotFound(f"Property {rental.property_id} not found")

        image = listing.image
        if len(image) > MAX_RECEIPT_IMAGE_BYTES:
            image = f"Property ID: {listing.id} - Image too large for receipt storage"

        self._counter += 1
        receipt = ReceiptRecord(
            id=self._counter,
            owner=rental.tenant,
            property_id=rental.property_id,
            rental_id=rental.id,
            name=f"Rental Agreement Receipt - {listing.title}",
            description=(
                f"This receipt represents a rental agreement for the property at {listing.address}"
            ),
            image=image,
            attributes=[
                ReceiptAttribute("Property ID", str(rental.property_id)),
                ReceiptAttribute("Rental Agreement ID", str(rental.id)),
                ReceiptAttribute("Property Address", listing.address),
                ReceiptAttribute("Monthly Rent", str(rental.rent_amount)),
                ReceiptAttribute("Start Date", format_timestamp(rental.start_date)),
                ReceiptAttribute("End Date", format_timestamp(rental.end_date)),
            ],
            created_at=self._clock(),
        )
        self._receipts[receipt.id] = receipt
        return receipt.id

    def revoke(self, receipt_id: int) -> bool:
        receipt = self._receipts.get(receipt_id)
        if not receipt:
            return False
        receipt.revoked = True
        return True

    def get(self, receipt_id: int) -> Optional[ReceiptRecord]:
        return self._receipts.get(receipt_id)
