"""Health check utilities for add-on monitoring.

Provides uptime tracking and the aggregated payload for the /health endpoint.
"""
import time
from datetime import datetime, timezone
from typing import Dict, Any, TYPE_CHECKING

from constants import SERVICE_NAME, SERVICE_VERSION, WORKER_STATUS_TIMEOUT

if TYPE_CHECKING:
    from services.hub import HubEventClient
    from services.relay import RelaySessionManager
    from services.status_broadcaster import StatusBroadcaster

# Module-level startup time tracking
_startup_time: float = 0.0


def set_startup_time() -> None:
    """Record the application startup time. Call once during lifespan startup."""
    global _startup_time
    _startup_time = time.time()


def get_uptime() -> float:
    """Get uptime in seconds since startup."""
    return time.time() - _startup_time if _startup_time else 0.0


async def get_health_status(
    hub_client: "HubEventClient",
    broadcaster: "StatusBroadcaster",
    relay: "RelaySessionManager",
) -> Dict[str, Any]:
    """Get health status for /health endpoint.

    The relay worker status is fetched best-effort with a short timeout, so a
    slow relay never stalls the health check.
    """
    return {
        "status": "ok",
        "service": SERVICE_NAME,
        "version": SERVICE_VERSION,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "uptime_seconds": round(get_uptime(), 1),
        "hub_connected": hub_client.is_connected(),
        "ws_clients": broadcaster.client_count,
        "relay": relay.get_status(),
        "relay_worker_status": await relay.fetch_worker_status(WORKER_STATUS_TIMEOUT),
    }
