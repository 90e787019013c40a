"""
FastAPI application for the tenancy engine.

JSON API over the rental and escrow lifecycles. Production deployment is
configured via environment variables (see utils.config).
"""

import logging
from typing import Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from tenancy.engine import TenancyEngine, build_engine
from tenancy.errors import (
    DeadlineNotReached,
    Forbidden,
    InvalidRequest,
    InvalidState,
    LifecycleError,
    NotFound,
    StorageError,
    Unauthenticated,
)
from tenancy.identity import resolve_caller
from utils.config import Config
from web.auth import create_session, resolve_session_secret, sign_session
from web.directory_routes import router as directory_router
from web.escrow_routes import router as escrow_router
from web.rental_routes import router as rental_router

logger = logging.getLogger(__name__)

VERSION = "0.1.0"

# =============================================================================
# Error Mapping
# =============================================================================

ERROR_STATUS: dict[type, int] = {
    Unauthenticated: 401,
    Forbidden: 403,
    NotFound: 404,
    InvalidState: 409,
    DeadlineNotReached: 409,
    InvalidRequest: 400,
}


def status_for(error: LifecycleError) -> int:
    for error_type, status in ERROR_STATUS.items():
        if isinstance(error, error_type):
            return status
    return 400


# =============================================================================
# API Request Models
# =============================================================================


class TokenRequest(BaseModel):
    """Request body for development token issuing."""

    principal: str


def create_app(
    config: Optional[Config] = None,
    engine: Optional[TenancyEngine] = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""
    config = config or Config.load()
    engine = engine or build_engine(config)

    app = FastAPI(
        title="Tenancy Engine",
        description="Rental agreement and security deposit escrow lifecycles",
        version=VERSION,
        debug=config.debug,
    )
    app.state.config = config
    app.state.engine = engine
    app.state.session_secret = resolve_session_secret(config.session_secret)

    # ==========================================================================
    # Healthcheck endpoints. No dependencies, no IO.
    # ==========================================================================
    @app.get("/", include_in_schema=False)
    def root():
        return {"status": "ok"}

    @app.get("/health")
    def health():
        """Health check endpoint."""
        return {"status": "healthy", "version": VERSION}

    # ==========================================================================
    # Error handlers
    # ==========================================================================
    @app.exception_handler(LifecycleError)
    async def lifecycle_error_handler(request: Request, exc: LifecycleError):
        return JSONResponse(status_code=status_for(exc), content=exc.to_dict())

    @app.exception_handler(StorageError)
    async def storage_error_handler(request: Request, exc: StorageError):
        logger.error("Storage failure on %s %s: %s", request.method, request.url.path, exc)
        return JSONResponse(
            status_code=500,
            content={"error": "STORAGE_ERROR", "message": "Record store unavailable"},
        )

    # ==========================================================================
    # Caller tokens
    # ==========================================================================
    @app.post("/auth/token")
    def issue_token(body: TokenRequest):
        """
        Issue a signed caller token for a principal.

        Development only: disabled unless ALLOW_DEV_TOKENS is true.
        """
        if not config.allow_dev_tokens:
            raise HTTPException(status_code=403, detail="Token issuing is disabled")

        identity = resolve_caller(body.principal)
        if identity.is_anonymous:
            raise HTTPException(status_code=400, detail="A non-anonymous principal is required")

        session = create_session(identity.principal, config.token_duration_hours)
        return {
            "token": sign_session(session, app.state.session_secret),
            "token_type": "bearer",
            "principal": identity.principal,
            "expires_at": session.expires_at.isoformat(),
        }

    app.include_router(directory_router)
    app.include_router(rental_router)
    app.include_router(escrow_router)

    logger.info("Tenancy Engine app created (debug=%s)", config.debug)
    return app
