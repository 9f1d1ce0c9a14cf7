"""Session object that owns one instance of each client component."""

import structlog

from .api import VelociraptorAPIClient
from .bridge import BridgeConfiguration, SubprocessQueryBridge
from .config import Settings, get_settings
from .credentials import CredentialStore
from .dispatcher import RequestDispatcher
from .events import Connector, EventStreamClient
from .keychain import KeyringSecretStore, SecretStore

logger = structlog.get_logger(__name__)


def default_secret_store(settings: Settings) -> SecretStore:
    """Platform secret store under the configured service namespace."""
    return KeyringSecretStore(settings.keychain_service)


class ConsoleSession:
    """
    Constructs the credential store, dispatcher, API client, event stream and
    subprocess bridge once and passes the shared credential store down.

    Usage:
        async with ConsoleSession() as session:
            info = await session.api.test_connection()
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        secret_store: SecretStore | None = None,
        event_connector: Connector | None = None,
    ):
        self.settings = settings or get_settings()
        self.credentials = CredentialStore(secret_store or default_secret_store(self.settings))
        self.dispatcher = RequestDispatcher(self.credentials, self.settings)
        self.api = VelociraptorAPIClient(self.dispatcher)
        self.events = EventStreamClient(self.credentials, self.settings, connector=event_connector)
        self.bridge = SubprocessQueryBridge(self.settings)

    def configure_bridge(self, configuration: BridgeConfiguration | None = None) -> SubprocessQueryBridge:
        """Configure the bridge (defaults from settings) and return it."""
        self.bridge.configure(configuration or BridgeConfiguration.from_settings(self.settings))
        return self.bridge

    async def close(self) -> None:
        """Stop the event stream and bridge, then release HTTP connections."""
        await self.events.disconnect()
        await self.bridge.aclose()
        self.api.disconnect()
        await self.dispatcher.aclose()
        logger.debug("session_closed")

    async def __aenter__(self) -> "ConsoleSession":
        return self

    async def __aexit__(self, *args) -> None:
        await self.close()


def get_session(settings: Settings | None = None) -> ConsoleSession:
    """Create a session backed by the platform secret store."""
    return ConsoleSession(settings)
