"""
Caller Authentication - Signed Bearer Tokens for the Tenancy API

Implements:
- Caller sessions carried as signed bearer tokens
- Development token issuing for a named principal
- Resolution of the request's caller into an Identity

Security:
- Tokens signed with HMAC-SHA256 over the encoded payload
- Constant-time signature comparison
- Missing, malformed, forged or expired tokens resolve to the anonymous caller
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Final, Optional

from fastapi import Request

from tenancy.identity import ANONYMOUS, Identity, resolve_caller

logger = logging.getLogger(__name__)


# =============================================================================
# Configuration
# =============================================================================

BEARER_PREFIX: Final[str] = "bearer "


def resolve_session_secret(configured: str) -> str:
    """Use the configured secret, or an ephemeral one for development."""
    if configured:
        return configured
    logger.warning("SESSION_SECRET not set; tokens will not survive a restart")
    return secrets.token_hex(32)


# =============================================================================
# Session Token Management
# =============================================================================


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class CallerSession:
    """Represents an authenticated caller session."""

    principal: str
    created_at: datetime
    expires_at: datetime
    session_id: str

    @property
    def is_expired(self) -> bool:
        """Check if session has expired."""
        return _utcnow() > self.expires_at

    @property
    def identity(self) -> Identity:
        return resolve_caller(self.principal)

    def to_dict(self) -> dict:
        """Serialize session to dictionary."""
        return {
            "principal": self.principal,
            "created_at": self.created_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "session_id": self.session_id,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "CallerSession":
        """Deserialize session from dictionary."""
        return cls(
            principal=data["principal"],
            created_at=datetime.fromisoformat(data["created_at"]),
            expires_at=datetime.fromisoformat(data["expires_at"]),
            session_id=data["session_id"],
        )


def create_session(principal: str, duration_hours: int = 8) -> CallerSession:
    """Create a new caller session."""
    now = _utcnow()
    return CallerSession(
        principal=principal,
        created_at=now,
        expires_at=now + timedelta(hours=duration_hours),
        session_id=secrets.token_hex(16),
    )


def _signature(payload_b64: str, secret: str) -> str:
    return hmac.new(
        secret.encode(),
        payload_b64.encode(),
        hashlib.sha256,
    ).hexdigest()


def sign_session(session: CallerSession, secret: str) -> str:
    """
    Sign and encode a session as a bearer token.

    Format: base64(json_payload).signature
    """
    payload = json.dumps(session.to_dict(), separators=(",", ":"))
    payload_b64 = base64.urlsafe_b64encode(payload.encode()).decode()
    return f"{payload_b64}.{_signature(payload_b64, secret)}"


def verify_session(token: str, secret: str) -> Optional[CallerSession]:
    """
    Verify and decode a signed session token.

    Returns CallerSession if valid and not expired, None otherwise.
    """
    try:
        payload_b64, signature = token.rsplit(".", 1)

        if not hmac.compare_digest(signature, _signature(payload_b64, secret)):
            return None

        payload = base64.urlsafe_b64decode(payload_b64.encode()).decode()
        session = CallerSession.from_dict(json.loads(payload))

        if session.is_expired:
            return None

        return session

    except (ValueError, KeyError, TypeError):
        # json.JSONDecodeError, binascii.Error and UnicodeDecodeError are ValueErrors
        return None


# =============================================================================
# Request Helpers
# =============================================================================


def extract_bearer_token(request: Request) -> Optional[str]:
    """Get the bearer token from the Authorization header, if any."""
    header = request.headers.get("authorization", "")
    if not header.lower().startswith(BEARER_PREFIX):
        return None
    token = header[len(BEARER_PREFIX):].strip()
    return token or None


def get_current_caller(request: Request) -> Identity:
    """
    Resolve the caller of a request.

    Used as a FastAPI dependency. Never raises: anything short of a valid,
    unexpired token is the anonymous caller, and the lifecycle decides
    whether that is acceptable.
    """
    token = extract_bearer_token(request)
    if not token:
        return ANONYMOUS

    session = verify_session(token, request.app.state.session_secret)
    if session is None:
        logger.warning("Rejected invalid or expired caller token")
        return ANONYMOUS

    return session.identity
