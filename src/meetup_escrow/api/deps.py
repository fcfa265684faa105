"""FastAPI dependency injection providers.

These are used with Depends() in route handlers. The service graph is built
once in the application lifespan and stored on app.state; tests override
get_transaction_service to inject an in-memory graph.
"""

from __future__ import annotations

from fastapi import Request

from meetup_escrow.config import Settings, get_settings
from meetup_escrow.services.transaction_service import TransactionService


def get_transaction_service(request: Request) -> TransactionService:
    """Provide the TransactionService built at startup."""
    service = getattr(request.app.state, "transaction_service", None)
    if service is None:
        raise RuntimeError("TransactionService not initialized. Is the lifespan running?")
    return service


def get_app_settings() -> Settings:
    """Provide the application settings."""
    return get_settings()
