"""
Cloud Relay Module

Components:
- session.py: RelaySessionManager, connection state machine and routing
- api.py: RelayApiClient, challenge/issue exchange and worker status
- origin.py: relay origin resolution (override file, RELAY_URL, default)
- protocol.py: status enums, close intents, message helpers
- exceptions.py: relay error hierarchy
"""

from .api import RelayApiClient
from .exceptions import (
    AuthError,
    ProtocolError,
    RegistrationTimeoutError,
    RelayConfigError,
    RelayConnectionError,
    RelayError,
    UnauthorizedError,
)
from .origin import RelayOrigin, normalize_relay_origin, resolve_relay_origin
from .protocol import CloseIntent, IdleState, RelayStatus
from .session import RelaySessionManager

__all__ = [
    "RelaySessionManager",
    "RelayApiClient",
    "RelayOrigin",
    "normalize_relay_origin",
    "resolve_relay_origin",
    "RelayStatus",
    "IdleState",
    "CloseIntent",
    "RelayError",
    "RelayConfigError",
    "AuthError",
    "UnauthorizedError",
    "ProtocolError",
    "RegistrationTimeoutError",
    "RelayConnectionError",
]
