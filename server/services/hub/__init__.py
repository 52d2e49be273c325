"""
Hub (Home Assistant) Client Module

Components:
- client.py: HubEventClient, persistent WebSocket with correlated requests
- rest.py: HubRestClient, REST lookups through the Supervisor proxy
- exceptions.py: hub error hierarchy
"""

from .client import HubEventClient, HubConnectionState
from .rest import HubRestClient
from .exceptions import HubError, HubNotConnectedError, HubRequestError, HubAPIError

__all__ = [
    "HubEventClient",
    "HubConnectionState",
    "HubRestClient",
    "HubError",
    "HubNotConnectedError",
    "HubRequestError",
    "HubAPIError",
]
