"""Tests for the session wiring."""

import pytest

from velociraptor_console.api import ConnectionPhase
from velociraptor_console.bridge import BridgeConfiguration, BridgeState
from velociraptor_console.credentials import ApiKeyAuth
from velociraptor_console.errors import BinaryNotFoundError, RequestCancelledError
from velociraptor_console.events import StreamPhase
from velociraptor_console.keychain import MemorySecretStore
from velociraptor_console.session import ConsoleSession

from .conftest import SERVER_URL


class TestConsoleSession:
    def test_components_share_credentials(self, settings) -> None:
        session = ConsoleSession(settings, secret_store=MemorySecretStore())

        assert session.dispatcher.credential_store is session.credentials
        assert session.events.credential_store is session.credentials
        assert session.api.dispatcher is session.dispatcher

    def test_loads_saved_credentials(self, settings, secret_store) -> None:
        ConsoleSession(settings, secret_store=secret_store).credentials.configure(
            SERVER_URL, ApiKeyAuth("tok-1")
        )

        session = ConsoleSession(settings, secret_store=secret_store)
        assert session.credentials.current_credentials().auth_method == ApiKeyAuth("tok-1")

    def test_configure_bridge(self, settings, fake_binary) -> None:
        session = ConsoleSession(settings, secret_store=MemorySecretStore())
        bridge = session.configure_bridge(BridgeConfiguration(binary_path=fake_binary))
        assert bridge.configuration.binary_path == fake_binary

    def test_configure_bridge_from_settings(self, settings, tmp_path) -> None:
        settings = settings.model_copy(update={"binary_path": tmp_path / "absent"})
        session = ConsoleSession(settings, secret_store=MemorySecretStore())
        with pytest.raises(BinaryNotFoundError):
            session.configure_bridge()

    @pytest.mark.asyncio
    async def test_close(self, settings) -> None:
        async with ConsoleSession(settings, secret_store=MemorySecretStore()) as session:
            session.credentials.configure(SERVER_URL, ApiKeyAuth("tok-1"))

        assert session.events.state.phase is StreamPhase.DISCONNECTED
        assert session.bridge.state is BridgeState.DISCONNECTED
        assert session.api.state.phase is ConnectionPhase.DISCONNECTED
        with pytest.raises(RequestCancelledError):
            await session.api.get_server_info()
