"""Dependency injection container for the application."""

from typing import Optional

from dependency_injector import containers, providers

from core.config import Settings
from services.identity import IdentityStore
from services.hub import HubEventClient, HubRestClient
from services.status_broadcaster import StatusBroadcaster
from services.relay import RelayApiClient, RelaySessionManager, resolve_relay_origin


def _relay_api(relay_origin) -> Optional[RelayApiClient]:
    return RelayApiClient(relay_origin.origin) if relay_origin.valid else None


class Container(containers.DeclarativeContainer):
    """Application dependency injection container."""

    # Settings
    settings = providers.Singleton(
        Settings,
    )

    # Persistent agent identity (keys + pair code)
    identity = providers.Singleton(
        IdentityStore,
        storage_path=settings.provided.agent_identity_path,
    )

    # Hub connections
    hub_client = providers.Singleton(
        HubEventClient,
        ws_url=settings.provided.hub_ws_url,
        access_token=settings.provided.supervisor_token,
    )

    hub_rest = providers.Singleton(
        HubRestClient,
        base_url=settings.provided.hub_api_url,
        token=settings.provided.supervisor_token,
    )

    # Local WebSocket fan-out
    broadcaster = providers.Singleton(
        StatusBroadcaster,
        hub_client=hub_client,
    )

    # Relay (origin resolved once per process)
    relay_origin = providers.Singleton(
        resolve_relay_origin,
        override_path=settings.provided.relay_override_path,
        env_value=settings.provided.relay_url,
        default=settings.provided.default_relay_origin,
    )

    relay_api = providers.Singleton(
        _relay_api,
        relay_origin=relay_origin,
    )

    relay_session = providers.Singleton(
        RelaySessionManager,
        identity=identity,
        hub_client=hub_client,
        hub_rest=hub_rest,
        relay_origin=relay_origin,
        api=relay_api,
    )


# Global container instance
container = Container()
