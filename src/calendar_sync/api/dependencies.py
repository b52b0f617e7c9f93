"""Route dependencies."""

from __future__ import annotations

from fastapi import HTTPException, Request, status

from calendar_sync.services import SyncServices


def get_services(request: Request) -> SyncServices:
    """The component bundle built in the app lifespan."""
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service not initialized",
        )
    return services
