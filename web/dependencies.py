"""
Shared FastAPI dependencies for the tenancy routers.
"""

from fastapi import Request

from tenancy.engine import TenancyEngine


def get_engine(request: Request) -> TenancyEngine:
    """The engine built by create_app."""
    return request.app.state.engine
