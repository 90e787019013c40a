"""
Lifecycle error taxonomy.

Every error is recoverable: the caller corrects its input and calls again.
"""

from __future__ import annotations

from typing import Optional


class LifecycleError(Exception):
    """Base class for errors returned by lifecycle operations."""

    code: str = "LIFECYCLE_ERROR"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def to_dict(self) -> dict:
        """Convert to dictionary for API responses."""
        return {"error": self.code, "message": self.message}


class Unauthenticated(LifecycleError):
    """Raised when the caller is missing or anonymous."""

    code = "UNAUTHENTICATED"


class NotFound(LifecycleError):
    """Raised when a referenced record does not exist."""

    code = "NOT_FOUND"


class Forbidden(LifecycleError):
    """Raised when the caller lacks the role or ownership a transition needs."""

    code = "FORBIDDEN"


class InvalidState(LifecycleError):
    """Raised when a transition is not legal from the record's current status."""

    code = "INVALID_STATE"

    def __init__(self, message: str, current_status: Optional[str] = None):
        self.current_status = current_status
        super().__init__(message)

    def to_dict(self) -> dict:
        data = super().to_dict()
        if self.current_status is not None:
            data["current_status"] = self.current_status
        return data


class DeadlineNotReached(LifecycleError):
    """Raised when expiry is requested before the submission deadline."""

    code = "DEADLINE_NOT_REACHED"


class InvalidRequest(LifecycleError, ValueError):
    """Raised when operation arguments are malformed (negative amounts, bad dates)."""

    code = "INVALID_REQUEST"


# =============================================================================
# Storage
# =============================================================================


class StorageError(Exception):
    """Raised when the record store cannot complete an operation."""

    pass


class DuplicateRecordError(StorageError):
    """Raised when inserting a record whose id already exists."""

    def __init__(self, table: str, record_id: int):
        self.table = table
        self.record_id = record_id
        super().__init__(f"{table} record {record_id} already exists")


class RecordNotFoundError(StorageError):
    """Raised when updating a record that does not exist."""

    def __init__(self, table: str, record_id: int):
        self.table = table
        self.record_id = record_id
        super().__init__(f"{table} record {record_id} not found")
