"""
Tenancy Schema - Rental Agreements, Escrow Accounts and Timeline Events

Defines the canonical records of the lifecycle engine.
Timestamps are integer nanoseconds since the Unix epoch.
Amounts are non-negative integers in minor currency units.

Principles:
- Records are never deleted; terminal states are retained for history
- Optional escrow fields are populated progressively, never silently cleared
- Timeline events are immutable once created
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Final, Optional

from tenancy.errors import InvalidRequest
from tenancy.identity import Identity


# =============================================================================
# Constants
# =============================================================================

NANOS_PER_SECOND: Final[int] = 1_000_000_000

# Escrow submission window (7 days in nanoseconds)
SUBMISSION_WINDOW_NS: Final[int] = 7 * 24 * 60 * 60 * NANOS_PER_SECOND


# =============================================================================
# Enums
# =============================================================================


class Role(Enum):
    """Role attached to a registered user."""

    LANDLORD = "landlord"
    TENANT = "tenant"


class RentalStatus(Enum):
    """Status of a rental agreement."""

    # Negotiation
    REQUESTED = "requested"
    UNDER_REVIEW = "under_review"
    APPROVED = "approved"

    # Agreement in force
    CONFIRMED = "confirmed"
    ACTIVE = "active"

    # Final states
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in RENTAL_TERMINAL_STATUSES


class EscrowStatus(Enum):
    """Status of a security deposit escrow account."""

    PENDING_SUBMISSION = "pending_submission"  # Tenant needs to submit deposit
    UNDER_REVIEW = "under_review"  # Landlord reviewing deposit
    FUNDS_SECURED = "funds_secured"  # Funds locked in custody
    ACTIVE_PROTECTION = "active_protection"  # Escrow active during lease
    REFUND_PROCESSING = "refund_processing"  # Refund initiated at lease end
    COMPLETED = "completed"
    DISPUTED = "disputed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"  # Deposit never secured before the deadline

    @property
    def is_terminal(self) -> bool:
        return self in ESCROW_TERMINAL_STATUSES


class EscrowEventType(Enum):
    """Closed set of escrow timeline event types."""

    CREATED = "created"
    DEPOSIT_SUBMITTED = "deposit_submitted"
    LANDLORD_APPROVAL = "landlord_approval"
    LEASE_ACTIVATED = "lease_activated"
    REFUND_INITIATED = "refund_initiated"
    REFUND_COMPLETED = "refund_completed"
    DISPUTE_RAISED = "dispute_raised"
    DISPUTE_RESOLVED = "dispute_resolved"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class DisputeResolution(Enum):
    """Where a resolved dispute sends the escrow account."""

    RESTORE = "restore"  # Back to the status held before the dispute
    CANCEL = "cancel"  # Force cancellation


# =============================================================================
# Status Groups
# =============================================================================

RENTAL_TERMINAL_STATUSES: Final[frozenset[RentalStatus]] = frozenset(
    {RentalStatus.COMPLETED, RentalStatus.CANCELLED}
)

# nft_id is set if and only if the agreement is in one of these
RECEIPT_BEARING_STATUSES: Final[frozenset[RentalStatus]] = frozenset(
    {RentalStatus.CONFIRMED, RentalStatus.ACTIVE, RentalStatus.COMPLETED}
)

PENDING_REQUEST_STATUSES: Final[frozenset[RentalStatus]] = frozenset(
    {RentalStatus.REQUESTED, RentalStatus.UNDER_REVIEW}
)

ESCROW_TERMINAL_STATUSES: Final[frozenset[EscrowStatus]] = frozenset(
    {EscrowStatus.COMPLETED, EscrowStatus.CANCELLED, EscrowStatus.EXPIRED}
)

# Expiry only applies while the deposit has not been secured
EXPIRABLE_STATUSES: Final[frozenset[EscrowStatus]] = frozenset(
    {EscrowStatus.PENDING_SUBMISSION, EscrowStatus.UNDER_REVIEW}
)

DISPUTABLE_STATUSES: Final[frozenset[EscrowStatus]] = frozenset(
    {
        EscrowStatus.UNDER_REVIEW,
        EscrowStatus.FUNDS_SECURED,
        EscrowStatus.ACTIVE_PROTECTION,
        EscrowStatus.REFUND_PROCESSING,
    }
)

CUSTODY_STATUSES: Final[frozenset[EscrowStatus]] = frozenset(
    {
        EscrowStatus.FUNDS_SECURED,
        EscrowStatus.ACTIVE_PROTECTION,
        EscrowStatus.REFUND_PROCESSING,
    }
)


# =============================================================================
# Validation Helpers
# =============================================================================


def validate_amount(value: Any, name: str) -> int:
    """Validate a non-negative integer amount in minor units."""
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidRequest(f"{name} must be an integer number of minor units")
    if value < 0:
        raise InvalidRequest(f"{name} cannot be negative")
    return value


def _identity_or_none(value: Optional[str]) -> Optional[Identity]:
    return Identity(value) if value is not None else None


# =============================================================================
# Rental Agreement
# =============================================================================


@dataclass
class RentalAgreement:
    """
    Rental agreement between a landlord and a tenant for one property.

    Created on tenant request, mutated by landlord/tenant actions, never deleted.
    """

    id: int
    property_id: int
    landlord: Identity
    tenant: Identity
    status: RentalStatus
    start_date: int
    end_date: int
    rent_amount: int
    deposit_amount: int
    created_at: int
    updated_at: int
    nft_id: Optional[int] = None

    def __post_init__(self) -> None:
        validate_amount(self.rent_amount, "rent_amount")
        validate_amount(self.deposit_amount, "deposit_amount")

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def is_party(self, identity: Identity) -> bool:
        """Check if identity is the landlord or tenant of this agreement."""
        return identity == self.landlord or identity == self.tenant

    def transition(self, status: RentalStatus, now: int) -> None:
        """Move to a new status and stamp updated_at."""
        self.status = status
        self.updated_at = now

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialisation."""
        return {
            "id": self.id,
            "property_id": self.property_id,
            "landlord": self.landlord.principal,
            "tenant": self.tenant.principal,
            "status": self.status.value,
            "start_date": self.start_date,
            "end_date": self.end_date,
            "rent_amount": self.rent_amount,
            "deposit_amount": self.deposit_amount,
            "nft_id": self.nft_id,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RentalAgreement":
        """Create agreement from dictionary."""
        return cls(
            id=data["id"],
            property_id=data["property_id"],
            landlord=Identity(data["landlord"]),
            tenant=Identity(data["tenant"]),
            status=RentalStatus(data["status"]),
            start_date=data["start_date"],
            end_date=data["end_date"],
            rent_amount=data["rent_amount"],
            deposit_amount=data["deposit_amount"],
            nft_id=data.get("nft_id"),
            created_at=data["created_at"],
            updated_at=data["updated_at"],
        )


@dataclass(frozen=True)
class RentalStatusChange:
    """Immutable record of one rental agreement status change."""

    id: int
    rental_id: int
    from_status: Optional[RentalStatus]
    to_status: RentalStatus
    actor: Optional[Identity]
    timestamp: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "rental_id": self.rental_id,
            "from_status": self.from_status.value if self.from_status else None,
            "to_status": self.to_status.value,
            "actor": self.actor.principal if self.actor else None,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RentalStatusChange":
        return cls(
            id=data["id"],
            rental_id=data["rental_id"],
            from_status=RentalStatus(data["from_status"]) if data.get("from_status") else None,
            to_status=RentalStatus(data["to_status"]),
            actor=_identity_or_none(data.get("actor")),
            timestamp=data["timestamp"],
        )


# =============================================================================
# Escrow Account
# =============================================================================


@dataclass
class EscrowAccount:
    """
    Custody record tracking a security deposit from submission to release.

    One account per rental agreement. submission_deadline is fixed at creation.
    """

    id: int
    rental_id: int
    property_id: int
    landlord: Identity
    tenant: Identity
    amount: int
    status: EscrowStatus
    submission_deadline: int
    created_at: int
    updated_at: int

    # === POPULATED PROGRESSIVELY ===
    smart_contract_address: Optional[str] = None  # Custody reference
    transaction_hash: Optional[str] = None
    refund_amount: Optional[int] = None
    dispute_reason: Optional[str] = None
    status_before_dispute: Optional[EscrowStatus] = None

    def __post_init__(self) -> None:
        validate_amount(self.amount, "amount")
        if self.refund_amount is not None:
            validate_amount(self.refund_amount, "refund_amount")

    @classmethod
    def open(
        cls,
        id: int,
        rental_id: int,
        property_id: int,
        landlord: Identity,
        tenant: Identity,
        amount: int,
        now: int,
        submission_window_ns: int = SUBMISSION_WINDOW_NS,
    ) -> "EscrowAccount":
        """Create a new account awaiting the tenant's deposit."""
        return cls(
            id=id,
            rental_id=rental_id,
            property_id=property_id,
            landlord=landlord,
            tenant=tenant,
            amount=amount,
            status=EscrowStatus.PENDING_SUBMISSION,
            submission_deadline=now + submission_window_ns,
            created_at=now,
            updated_at=now,
        )

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def is_party(self, identity: Identity) -> bool:
        """Check if identity is the landlord or tenant of this account."""
        return identity == self.landlord or identity == self.tenant

    def is_overdue(self, now: int) -> bool:
        """Deposit still outstanding after the submission deadline."""
        return self.status == EscrowStatus.PENDING_SUBMISSION and now > self.submission_deadline

    @property
    def is_holding_funds(self) -> bool:
        """Funds are in custody (including custody paused by a dispute)."""
        if self.status in CUSTODY_STATUSES:
            return True
        return (
            self.status == EscrowStatus.DISPUTED
            and self.status_before_dispute in CUSTODY_STATUSES
        )

    def transition(self, status: EscrowStatus, now: int) -> None:
        """Move to a new status and stamp updated_at."""
        self.status = status
        self.updated_at = now

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialisation."""
        return {
            "id": self.id,
            "rental_id": self.rental_id,
            "property_id": self.property_id,
            "landlord": self.landlord.principal,
            "tenant": self.tenant.principal,
            "amount": self.amount,
            "status": self.status.value,
            "submission_deadline": self.submission_deadline,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "smart_contract_address": self.smart_contract_address,
            "transaction_hash": self.transaction_hash,
            "refund_amount": self.refund_amount,
            "dispute_reason": self.dispute_reason,
            "status_before_dispute": (
                self.status_before_dispute.value if self.status_before_dispute else None
            ),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "EscrowAccount":
        """Create account from dictionary."""
        before = data.get("status_before_dispute")
        return cls(
            id=data["id"],
            rental_id=data["rental_id"],
            property_id=data["property_id"],
            landlord=Identity(data["landlord"]),
            tenant=Identity(data["tenant"]),
            amount=data["amount"],
            status=EscrowStatus(data["status"]),
            submission_deadline=data["submission_deadline"],
            created_at=data["created_at"],
            updated_at=data["updated_at"],
            smart_contract_address=data.get("smart_contract_address"),
            transaction_hash=data.get("transaction_hash"),
            refund_amount=data.get("refund_amount"),
            dispute_reason=data.get("dispute_reason"),
            status_before_dispute=EscrowStatus(before) if before else None,
        )


# =============================================================================
# Timeline Event
# =============================================================================


@dataclass(frozen=True)
class EscrowTimelineEvent:
    """
    Immutable record of one escrow state change.

    Hash Chain:
    - event_hash: SHA-256 of this event's content
    - previous_hash: hash of the previous event for the same escrow (None for the first)
    """

    id: int
    escrow_id: int
    event_type: EscrowEventType
    title: str
    description: str
    timestamp: int
    event_hash: str
    amount: Optional[int] = None
    transaction_hash: Optional[str] = None
    metadata: Optional[dict[str, Any]] = field(default=None, hash=False)
    actor: Optional[Identity] = None  # None for system-triggered events
    previous_hash: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "escrow_id": self.escrow_id,
            "event_type": self.event_type.value,
            "title": self.title,
            "description": self.description,
            "timestamp": self.timestamp,
            "amount": self.amount,
            "transaction_hash": self.transaction_hash,
            "metadata": self.metadata,
            "actor": self.actor.principal if self.actor else None,
            "previous_hash": self.previous_hash,
            "event_hash": self.event_hash,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "EscrowTimelineEvent":
        return cls(
            id=data["id"],
            escrow_id=data["escrow_id"],
            event_type=EscrowEventType(data["event_type"]),
            title=data["title"],
            description=data["description"],
            timestamp=data["timestamp"],
            amount=data.get("amount"),
            transaction_hash=data.get("transaction_hash"),
            metadata=data.get("metadata"),
            actor=_identity_or_none(data.get("actor")),
            previous_hash=data.get("previous_hash"),
            event_hash=data["event_hash"],
        )
