"""
Tenancy Engine - Rental Agreement and Security Deposit Escrow Lifecycles

This module provides the dual lifecycle engine:
1. Identity gate (authenticated writes, permissive reads)
2. Rental agreement state machine (request to completion or cancellation)
3. Escrow account state machine (deposit to refund, with disputes and expiry)
4. Append-only, hash-chained escrow timeline
5. Dashboard statistics

Principles:
1. Every transition is gated by the caller's identity
2. State is persisted before the audit event is appended
3. Records are never deleted
"""

from tenancy.identity import (
    ANONYMOUS,
    Identity,
    is_authenticated,
    require_authenticated,
    resolve_caller,
)
from tenancy.errors import (
    DeadlineNotReached,
    DuplicateRecordError,
    Forbidden,
    InvalidRequest,
    InvalidState,
    LifecycleError,
    NotFound,
    RecordNotFoundError,
    StorageError,
    Unauthenticated,
)
from tenancy.schema import (
    SUBMISSION_WINDOW_NS,
    DisputeResolution,
    EscrowAccount,
    EscrowEventType,
    EscrowStatus,
    EscrowTimelineEvent,
    RentalAgreement,
    RentalStatus,
    RentalStatusChange,
    Role,
)
from tenancy.storage import (
    InMemoryRecordStore,
    JsonFileRecordStore,
    RecordStore,
)
from tenancy.collaborators import (
    PropertyDirectory,
    PropertyListing,
    PropertyRegistry,
    ReceiptMinter,
    ReceiptRecord,
    ReceiptRegistry,
    RoleDirectory,
    UserRegistry,
)
from tenancy.timeline import (
    EscrowTimeline,
    RentalHistory,
    compute_event_hash,
    verify_event_chain,
)
from tenancy.statistics import EscrowStatistics, compute_escrow_statistics
from tenancy.context import EngineContext, LifecycleSettings, build_context
from tenancy.rentals import RentalLifecycle
from tenancy.escrow import EscrowLifecycle
from tenancy.engine import TenancyEngine, build_engine

__all__ = [
    # Identity
    "ANONYMOUS",
    "Identity",
    "is_authenticated",
    "require_authenticated",
    "resolve_caller",
    # Errors
    "DeadlineNotReached",
    "DuplicateRecordError",
    "Forbidden",
    "InvalidRequest",
    "InvalidState",
    "LifecycleError",
    "NotFound",
    "RecordNotFoundError",
    "StorageError",
    "Unauthenticated",
    # Schema
    "SUBMISSION_WINDOW_NS",
    "DisputeResolution",
    "EscrowAccount",
    "EscrowEventType",
    "EscrowStatus",
    "EscrowTimelineEvent",
    "RentalAgreement",
    "RentalStatus",
    "RentalStatusChange",
    "Role",
    # Storage
    "InMemoryRecordStore",
    "JsonFileRecordStore",
    "RecordStore",
    # Collaborators
    "PropertyDirectory",
    "PropertyListing",
    "PropertyRegistry",
    "ReceiptMinter",
    "ReceiptRecord",
    "ReceiptRegistry",
    "RoleDirectory",
    "UserRegistry",
    # Audit trail
    "EscrowTimeline",
    "RentalHistory",
    "compute_event_hash",
    "verify_event_chain",
    # Statistics
    "EscrowStatistics",
    "compute_escrow_statistics",
    # Engine
    "EngineContext",
    "LifecycleSettings",
    "build_context",
    "RentalLifecycle",
    "EscrowLifecycle",
    "TenancyEngine",
    "build_engine",
]
