"""
API dependencies

- verify_service_token: shared-secret guard for the trigger surface
- get_registry / get_watchdog: objects wired up by the app lifespan
"""
import hmac
import logging
from typing import Optional

from fastapi import Header, HTTPException, Request, status

from mailrelay.core.config import settings
from mailrelay.jobs.registry import RelayRegistry
from mailrelay.jobs.watchdog import PeriodicWatchdog

logger = logging.getLogger(__name__)


async def verify_service_token(
    request: Request,
    x_service_token: Optional[str] = Header(None, alias="X-Service-Token"),
) -> None:
    """Reject callers without the shared token. Open when SERVICE_TOKEN is unset (development)."""
    expected = getattr(request.app.state, "service_token", settings.SERVICE_TOKEN)
    if not expected:
        return
    if not x_service_token or not hmac.compare_digest(x_service_token, expected):
        client_ip = request.client.host if request.client else "unknown"
        logger.warning(f"[API] Rejected trigger with invalid service token from {client_ip}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid service token",
        )


def get_registry(request: Request) -> RelayRegistry:
    registry = getattr(request.app.state, "registry", None)
    if registry is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Relay engine is not running",
        )
    return registry


def get_watchdog(request: Request) -> PeriodicWatchdog:
    watchdog = getattr(request.app.state, "watchdog", None)
    if watchdog is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Watchdog is not configured",
        )
    return watchdog
