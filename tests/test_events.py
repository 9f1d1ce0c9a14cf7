"""Tests for the event stream client."""

import asyncio
import json
import ssl

import pytest
import pytest_asyncio

from velociraptor_console.credentials import ApiKeyAuth, MTLSAuth
from velociraptor_console.errors import NotConfiguredError, StreamNotConnectedError
from velociraptor_console.events import (
    ActivityType,
    EventStreamClient,
    HuntProgress,
    StreamPhase,
    stream_url,
)

from .conftest import SERVER_URL


class FakeSocket:
    """In-memory stand-in for a websocket connection."""

    def __init__(self):
        self.incoming: asyncio.Queue = asyncio.Queue()
        self.sent: list[str] = []
        self.closed = False
        self.pings = 0
        self.answer_pings = True

    def push(self, frame) -> None:
        self.incoming.put_nowait(frame if isinstance(frame, (str, bytes)) else json.dumps(frame))

    def drop(self) -> None:
        self.incoming.put_nowait(ConnectionResetError("connection reset by peer"))

    async def recv(self):
        item = await self.incoming.get()
        if isinstance(item, BaseException):
            raise item
        return item

    async def send(self, message: str) -> None:
        if self.closed:
            raise ConnectionResetError("socket closed")
        self.sent.append(message)

    async def ping(self):
        self.pings += 1
        waiter = asyncio.get_running_loop().create_future()
        if self.answer_pings:
            waiter.set_result(0.0)
        return waiter

    async def close(self) -> None:
        self.closed = True


class FakeConnector:
    """Hands out FakeSockets; the next `failures` attempts are refused."""

    def __init__(self):
        self.calls: list[tuple] = []
        self.sockets: list[FakeSocket] = []
        self.failures = 0
        self.answer_pings = True
        self.delay = 0.0

    async def __call__(self, url, headers, ssl_context):
        self.calls.append((url, headers, ssl_context))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.failures:
            self.failures -= 1
            raise ConnectionRefusedError("connection refused")
        ws = FakeSocket()
        ws.answer_pings = self.answer_pings
        self.sockets.append(ws)
        return ws

    @property
    def socket(self) -> FakeSocket:
        return self.sockets[-1]


async def eventually(predicate, timeout: float = 2.0) -> None:
    async def poll() -> None:
        while not predicate():
            await asyncio.sleep(0.01)

    await asyncio.wait_for(poll(), timeout)


@pytest.fixture
def connector() -> FakeConnector:
    return FakeConnector()


@pytest.fixture
def configured(credential_store):
    credential_store.configure(SERVER_URL, ApiKeyAuth("tok-1"))
    return credential_store


@pytest_asyncio.fixture
async def stream(configured, settings, connector):
    client = EventStreamClient(configured, settings, connector=connector)
    yield client
    await client.disconnect()


class TestStreamURL:
    def test_upgrades_scheme(self) -> None:
        assert stream_url("https://vr.test", "/api/v1/WatchEvents") == "wss://vr.test/api/v1/WatchEvents"
        assert stream_url("http://vr.test:8000", "/events") == "ws://vr.test:8000/events"


class TestConnection:
    @pytest.mark.asyncio
    async def test_connect_uses_active_credentials(self, stream, connector) -> None:
        await stream.connect()

        assert stream.state.is_connected
        assert connector.calls == [
            ("wss://vr.test/api/v1/WatchEvents", {"Authorization": "Bearer tok-1"}, None)
        ]

    @pytest.mark.asyncio
    async def test_mtls_presents_identity(self, credential_store, settings, connector, cert_files) -> None:
        credential_store.configure(
            SERVER_URL, MTLSAuth(str(cert_files.certificate_path), str(cert_files.key_path))
        )
        client = EventStreamClient(credential_store, settings, connector=connector)
        try:
            await client.connect()
        finally:
            await client.disconnect()

        _, headers, ssl_context = connector.calls[0]
        assert headers == {}
        assert isinstance(ssl_context, ssl.SSLContext)

    @pytest.mark.asyncio
    async def test_requires_credentials(self, credential_store, settings, connector) -> None:
        client = EventStreamClient(credential_store, settings, connector=connector)
        with pytest.raises(NotConfiguredError):
            await client.connect()
        assert connector.calls == []

    @pytest.mark.asyncio
    async def test_disconnect_stops_activity(self, stream, connector) -> None:
        await stream.connect()
        ws = connector.socket

        await stream.disconnect()
        ws.drop()
        await asyncio.sleep(0.05)

        assert stream.state.phase is StreamPhase.DISCONNECTED
        assert ws.closed
        assert len(connector.calls) == 1

    @pytest.mark.asyncio
    async def test_reconnect_before_connect(self, stream) -> None:
        with pytest.raises(NotConfiguredError):
            await stream.reconnect()

    @pytest.mark.asyncio
    async def test_disconnect_during_handshake(self, stream, connector) -> None:
        connector.delay = 0.1
        connecting = asyncio.create_task(stream.connect())
        await asyncio.sleep(0.02)

        await stream.disconnect()
        await connecting

        assert stream.state.phase is StreamPhase.DISCONNECTED
        assert connector.socket.closed
        await asyncio.sleep(0.05)
        assert stream.state.phase is StreamPhase.DISCONNECTED

    @pytest.mark.asyncio
    async def test_disconnect_during_failing_handshake(self, stream, connector) -> None:
        connector.delay = 0.1
        connector.failures = 1
        connecting = asyncio.create_task(stream.connect())
        await asyncio.sleep(0.02)

        await stream.disconnect()
        await connecting
        await asyncio.sleep(0.05)

        assert stream.state.phase is StreamPhase.DISCONNECTED
        assert len(connector.calls) == 1


class TestReconnection:
    """Dropped connections are retried with a bounded budget."""

    @pytest.mark.asyncio
    async def test_recovers_after_drop(self, stream, connector) -> None:
        states = []
        stream.on_state_change.subscribe(states.append)
        await stream.connect()

        connector.socket.drop()
        await eventually(lambda: len(connector.sockets) == 2 and stream.state.is_connected)

        assert [str(s) for s in states] == [
            "connecting",
            "connected",
            "reconnecting(attempt=1)",
            "connected",
        ]
        assert stream.reconnect_attempt == 0
        assert connector.sockets[0].closed

    @pytest.mark.asyncio
    async def test_fails_after_budget(self, stream, connector) -> None:
        states = []
        stream.on_state_change.subscribe(states.append)
        await stream.connect()

        connector.failures = 100
        connector.socket.drop()
        final = await asyncio.wait_for(stream.wait_closed(), timeout=2)

        assert final.phase is StreamPhase.FAILED
        assert final.reason == "Max reconnection attempts reached"
        attempts = [s.attempt for s in states if s.phase is StreamPhase.RECONNECTING]
        assert attempts == [1, 2, 3]
        assert stream.last_error == "connection refused"

        # Failed is terminal until an explicit reconnect
        await asyncio.sleep(0.05)
        assert stream.state.phase is StreamPhase.FAILED

        connector.failures = 0
        await stream.reconnect()
        assert stream.state.is_connected
        assert stream.reconnect_attempt == 0

    @pytest.mark.asyncio
    async def test_initial_failure_enters_reconnecting(self, stream, connector) -> None:
        connector.failures = 1
        await stream.connect()

        assert stream.state.phase is StreamPhase.RECONNECTING
        assert stream.state.attempt == 1
        await eventually(lambda: stream.state.is_connected)

    @pytest.mark.asyncio
    async def test_missed_heartbeat_keeps_connection(self, configured, settings, connector) -> None:
        fast = settings.model_copy(update={"heartbeat_interval": 0.01, "pong_timeout": 0.01})
        connector.answer_pings = False
        client = EventStreamClient(configured, fast, connector=connector)
        try:
            await client.connect()
            await eventually(lambda: connector.socket.pings >= 2)
            assert client.state.is_connected
            assert len(connector.calls) == 1
        finally:
            await client.disconnect()


class TestFrames:
    @pytest.mark.asyncio
    async def test_hunt_progress(self, stream, connector) -> None:
        updates = []
        stream.on_hunt_progress.subscribe(updates.append)
        await stream.connect()

        connector.socket.push({
            "type": "hunt_progress",
            "payload": {"hunt_id": "H.1", "progress": 0.5},
            "timestamp": "2024-03-15T12:30:45Z",
        })
        await eventually(lambda: updates)

        assert updates == [HuntProgress("H.1", 0.5)]
        assert stream.hunt_progress == {"H.1": 0.5}
        latest = stream.recent_events[0]
        assert latest.type is ActivityType.HUNT_PROGRESS
        assert latest.hunt_id == "H.1"
        assert latest.message == "Hunt H.1 progress: 50%"

    @pytest.mark.asyncio
    async def test_hunt_completed(self, stream, connector) -> None:
        completed = []
        stream.on_hunt_completed.subscribe(completed.append)
        await stream.connect()

        connector.socket.push({"type": "hunt_completed", "payload": {"hunt_id": "H.2"}})
        await eventually(lambda: completed)

        assert completed == ["H.2"]
        assert stream.hunt_progress == {"H.2": 1.0}

    @pytest.mark.asyncio
    async def test_client_status(self, stream, connector) -> None:
        await stream.connect()
        connector.socket.push({"type": "client_connected", "payload": {"client_id": "C.1"}})
        connector.socket.push({"type": "client_disconnected", "payload": {"client_id": "C.2"}})
        await eventually(lambda: len(stream.client_online) == 2)

        assert stream.client_online == {"C.1": True, "C.2": False}
        assert [e.type for e in stream.recent_events] == [
            ActivityType.CLIENT_DISCONNECTED,
            ActivityType.CLIENT_CONNECTED,
        ]

    @pytest.mark.asyncio
    async def test_unknown_and_malformed_dropped(self, stream, connector) -> None:
        await stream.connect()
        ws = connector.socket
        ws.push("{not json")
        ws.push({"type": "mystery", "payload": {}})
        ws.push({"type": "hunt_progress", "payload": {"hunt_id": "H.1"}})
        ws.push({"type": "notification", "payload": {"message": "done"}})
        await eventually(lambda: stream.recent_events)

        assert [e.message for e in stream.recent_events] == ["done"]
        assert stream.hunt_progress == {}
        assert stream.state.is_connected

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "frame",
        [
            '{"type":"hunt_progress","payload":{"hunt_id":"H.1","progress":NaN}}',
            '{"type":"hunt_progress","payload":{"hunt_id":"H.1","progress":Infinity}}',
            '{"type":"notification","payload":{"message":"old"},"timestamp":1e300}',
        ],
    )
    async def test_undecodable_frame_does_not_stop_reading(self, stream, connector, frame) -> None:
        await stream.connect()
        connector.socket.push(frame)
        connector.socket.push({"type": "notification", "payload": {"message": "after"}})
        await eventually(lambda: stream.recent_events)

        assert [e.message for e in stream.recent_events] == ["after"]
        assert stream.hunt_progress == {}
        assert stream.state.is_connected

    @pytest.mark.asyncio
    async def test_answers_ping(self, stream, connector) -> None:
        await stream.connect()
        connector.socket.push({"type": "ping"})
        await eventually(lambda: connector.socket.sent)

        assert json.loads(connector.socket.sent[0]) == {"type": "pong"}
        assert stream.recent_events == []

    @pytest.mark.asyncio
    async def test_recent_events_bounded(self, configured, settings, connector) -> None:
        client = EventStreamClient(
            configured, settings.model_copy(update={"recent_events_limit": 3}), connector=connector
        )
        try:
            await client.connect()
            for i in range(5):
                connector.socket.push({"type": "notification", "payload": {"message": f"n{i}"}})
            await eventually(lambda: client.recent_events and client.recent_events[0].message == "n4")

            assert [e.message for e in client.recent_events] == ["n4", "n3", "n2"]
        finally:
            await client.disconnect()

    @pytest.mark.asyncio
    async def test_failing_listener_is_isolated(self, stream, connector) -> None:
        def broken(message: str) -> None:
            raise RuntimeError("listener bug")

        stream.on_notification.subscribe(broken)
        await stream.connect()
        connector.socket.push({"type": "notification", "payload": {"message": "hello"}})
        await eventually(lambda: stream.recent_events)

        assert stream.recent_events[0].message == "hello"
        assert stream.state.is_connected


class TestSubscriptions:
    @pytest.mark.asyncio
    async def test_requires_connection(self, stream) -> None:
        with pytest.raises(StreamNotConnectedError):
            await stream.subscribe_to_hunt("H.1")

    @pytest.mark.asyncio
    async def test_command_frames(self, stream, connector) -> None:
        await stream.connect()

        await stream.subscribe_to_hunt("H.1")
        await stream.subscribe_to_client_status()
        await stream.unsubscribe_from_hunt("H.1")

        assert [json.loads(frame) for frame in connector.socket.sent] == [
            {"type": "subscribe", "channel": "hunt_progress", "hunt_id": "H.1"},
            {"type": "subscribe", "channel": "client_status"},
            {"type": "unsubscribe", "channel": "hunt_progress", "hunt_id": "H.1"},
        ]
