"""FastAPI dependencies for sync services and operator authentication."""

from __future__ import annotations

from fastapi import Header, HTTPException, Request, status

from src.pricesync.config import get_settings
from src.pricesync.core.security import verify_shared_secret
from src.pricesync.sync.service import SyncServices


def get_sync_services(request: Request) -> SyncServices:
    """Retrieve SyncServices from app.state, 503 if not available."""
    services = getattr(request.app.state, "sync", None)
    if services is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Sync services not initialized",
        )
    return services


async def require_operator(x_api_key: str | None = Header(default=None)) -> None:
    """Check the X-API-Key header against OPERATOR_API_KEY.

    An empty OPERATOR_API_KEY disables the check (development setups).

    Raises:
        HTTPException(401): If the key is missing or wrong.
    """
    expected = get_settings().OPERATOR_API_KEY
    if not expected:
        return
    if not verify_shared_secret(x_api_key, expected):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key",
        )
