"""Health and local connection status routes."""

from fastapi import APIRouter

from core.container import container
from core.health import get_health_status

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check():
    """Liveness plus hub, local client and relay status."""
    return await get_health_status(
        hub_client=container.hub_client(),
        broadcaster=container.broadcaster(),
        relay=container.relay_session(),
    )


@router.get("/ws/status")
async def websocket_status():
    broadcaster = container.broadcaster()
    return {
        "hub_connected": container.hub_client().is_connected(),
        "clients": broadcaster.client_count,
    }
