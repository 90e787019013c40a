"""
Identity Gate - Caller Resolution for Lifecycle Operations

Every lifecycle call carries the caller's identity explicitly.
The gate turns raw principals into Identity values and rejects anonymous callers
on write paths.

Rules:
- Write paths are strict: anonymous callers raise Unauthenticated
- Read paths are permissive: callers may degrade to an empty result instead
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Final, Optional, Union

from tenancy.errors import Unauthenticated


# =============================================================================
# Constants
# =============================================================================

ANONYMOUS_PRINCIPAL: Final[str] = "anonymous"


# =============================================================================
# Identity
# =============================================================================


@dataclass(frozen=True)
class Identity:
    """
    Opaque caller token.

    The lifecycle engine only ever compares identities for equality.
    """

    principal: str

    def __post_init__(self) -> None:
        if not isinstance(self.principal, str):
            raise ValueError("principal must be a string")

    @property
    def is_anonymous(self) -> bool:
        """Check if this is the distinguished anonymous identity."""
        return self.principal == ANONYMOUS_PRINCIPAL

    def __str__(self) -> str:
        return self.principal


ANONYMOUS: Final[Identity] = Identity(ANONYMOUS_PRINCIPAL)


# =============================================================================
# Gate
# =============================================================================


def resolve_caller(raw: Union[Identity, str, None]) -> Identity:
    """
    Resolve a raw caller value into an Identity.

    None, empty strings and the anonymous principal all resolve to ANONYMOUS.
    """
    if isinstance(raw, Identity):
        return raw
    if raw is None:
        return ANONYMOUS
    principal = raw.strip()
    if not principal or principal == ANONYMOUS_PRINCIPAL:
        return ANONYMOUS
    return Identity(principal)


def require_authenticated(caller: Union[Identity, str, None]) -> Identity:
    """
    Resolve the caller and reject anonymous identities.

    Raises:
        Unauthenticated: If the caller is missing or anonymous
    """
    identity = resolve_caller(caller)
    if identity.is_anonymous:
        raise Unauthenticated("Authentication required")
    return identity


def is_authenticated(caller: Optional[Identity]) -> bool:
    """Check whether a caller would pass require_authenticated."""
    return not resolve_caller(caller).is_anonymous
