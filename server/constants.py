"""Centralized constants for the bridge.

Timing values are in seconds unless the name says otherwise. The relay
session manager, hub client and control routes read them from here so the
protocol timings live in one place.
"""

SERVICE_NAME = "royaframe-bridge"
SERVICE_VERSION = "1.1.0"

# =============================================================================
# RELAY
# =============================================================================

DEFAULT_RELAY_ORIGIN = "https://digital-twin.lavvimaa.workers.dev"

RELAY_CHALLENGE_PATH = "/api/agent/challenge"
RELAY_ISSUE_PATH = "/api/agent/issue"
RELAY_STATUS_PATH = "/api/status"

# Reconnect backoff
RECONNECT_BASE_DELAY = 5.0
RECONNECT_MAX_DELAY = 300.0
RECONNECT_JITTER_RATIO = 0.3

# Token lifecycle
TOKEN_REFRESH_SAFETY = 60.0
MIN_TOKEN_TTL = 60.0
DEFAULT_TOKEN_TTL = 300.0
MIN_TOKEN_REFRESH_DELAY = 10.0

# Registration handshake
REGISTER_TIMEOUT = 10.0

# Idle suspend
IDLE_TIMEOUT = 5 * 60.0
IDLE_POLL_INTERVAL = 30.0

# HTTP timeouts
AUTH_HTTP_TIMEOUT = 8.0
IDLE_POLL_TIMEOUT = 2.0
WORKER_STATUS_TIMEOUT = 2.0
WORKER_STATUS_EXPLICIT_TIMEOUT = 5.0

# Relay socket heartbeat (aiohttp autoping)
RELAY_HEARTBEAT = 30.0

# Ed25519 signatures are always 64 bytes
SIGNATURE_BYTES = 64

# Keys the relay has used for the live viewer count, in lookup order
APP_COUNT_KEYS = (
    "app_count",
    "appCount",
    "viewer_count",
    "viewerCount",
    "active_viewers",
    "activeViewers",
)

# Hub config fields tried in order when deriving the home identifier
HOME_ID_KEYS = (
    "home_id",
    "uuid",
    "internal_url",
    "external_url",
    "location_name",
)

# =============================================================================
# HUB
# =============================================================================

HUB_RECONNECT_DELAY = 5.0
HUB_REQUEST_TIMEOUT = 30.0
HUB_HTTP_TIMEOUT = 10.0

# =============================================================================
# LOCAL CLIENT PROTOCOL
# =============================================================================

LOCAL_WS_PATH = "/ws"
