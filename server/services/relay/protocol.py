"""
Relay wire protocol and session state types.

Handshake (HTTP, then WebSocket):
    POST /api/agent/challenge {public_key, agent_info}       -> {agent_id, nonce}
    POST /api/agent/issue     {agent_id, public_key, signature} -> {agent_token, ws_url, token_expires_in}
    WS   register_bridge {pair_code, home_id, agent_id?}     -> register_ok {agent_id?}

Inbound frames:  call_service, get_states, ping, app_count, viewer_online,
                 viewer_offline, agent_unauthorized, paired, error
Outbound frames: service_result, states, error, pong, state_changed
"""
from enum import Enum
from typing import Any, Dict, Optional

from constants import APP_COUNT_KEYS, HOME_ID_KEYS


class RelayStatus(str, Enum):
    DISCONNECTED = "disconnected"
    CONFIG_ERROR = "config_error"
    CONNECTING = "connecting"
    AUTHENTICATING = "authenticating"
    CONNECTED = "connected"
    REGISTERING = "registering"
    REGISTERED = "registered"
    UNAUTHORIZED = "unauthorized"
    IDLE = "idle"
    ERROR = "error"


class IdleState(str, Enum):
    ACTIVE = "active"
    PENDING = "pending"
    IDLE = "idle"


class CloseIntent(str, Enum):
    """Why we closed the relay socket ourselves. Drives the close handler."""
    IDLE = "idle"
    TOKEN_REFRESH = "token_refresh"
    UNAUTHORIZED = "unauthorized"
    REGISTER_TIMEOUT = "register_timeout"
    STOP = "stop"


# WebSocket close codes
CLOSE_NORMAL = 1000
CLOSE_ABNORMAL = 1006
CLOSE_POLICY_VIOLATION = 1008

INBOUND_REQUEST_TYPES = frozenset(["call_service", "get_states"])
REGISTER_ACK_TYPES = frozenset(["register_ok", "registered"])


def extract_app_count(data: Any) -> Optional[int]:
    """Viewer count from a relay message or status payload, if present."""
    if not isinstance(data, dict):
        return None
    for key in APP_COUNT_KEYS:
        value = data.get(key)
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return int(value)
    return None


def derive_home_id(config: Any) -> Optional[str]:
    """First usable identifier from the hub config."""
    if not isinstance(config, dict):
        return None
    for key in HOME_ID_KEYS:
        if config.get(key):
            return config[key]
    return None


def build_register_message(pair_code: Optional[str], home_id: str, agent_id: Optional[str]) -> Dict[str, Any]:
    msg = {
        "type": "register_bridge",
        "pair_code": str(pair_code or ""),
        "home_id": str(home_id),
    }
    if agent_id and isinstance(agent_id, str):
        msg["agent_id"] = agent_id
    return msg


def is_unauthorized_error(error: Any) -> bool:
    return isinstance(error, str) and "unauthorized" in error.lower()
