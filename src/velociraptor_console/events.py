"""Persistent event stream client with heartbeat and reconnection.

The client keeps one websocket to the server's event endpoint. Incoming JSON
frames ({type, payload, timestamp}) are classified and republished on typed
channels; every known event also lands in a bounded recent-activity buffer.

State machine::

    disconnected -> connecting -> connected
    connected -> reconnecting(1) -> reconnecting(2) ... -> connected | failed

A failed stream stays failed until reconnect() is called.
"""

import asyncio
import json
import ssl
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Generic, NamedTuple, Protocol, TypeVar
from urllib.parse import urlsplit, urlunsplit

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from websockets.asyncio.client import connect as websocket_connect
from websockets.exceptions import WebSocketException

from .config import Settings, get_settings
from .credentials import CredentialStore, Credentials, MTLSAuth, authorization_headers
from .errors import (
    EventStreamError,
    NotConfiguredError,
    StreamNotConnectedError,
    VelociraptorError,
)
from .metrics import STREAM_EVENTS, STREAM_RECONNECTS
from .models import ServerTimestamp

logger = structlog.get_logger(__name__)

E = TypeVar("E")

# Failures that mean the socket is gone
TRANSPORT_ERRORS = (WebSocketException, OSError, asyncio.TimeoutError)


# ============================================
# State
# ============================================


class StreamPhase(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    FAILED = "failed"


@dataclass(frozen=True)
class StreamState:
    phase: StreamPhase
    attempt: int = 0
    reason: str | None = None

    @property
    def is_connected(self) -> bool:
        return self.phase is StreamPhase.CONNECTED

    def __str__(self) -> str:
        if self.phase is StreamPhase.RECONNECTING:
            return f"reconnecting(attempt={self.attempt})"
        if self.phase is StreamPhase.FAILED:
            return f"failed({self.reason})"
        return self.phase.value


DISCONNECTED = StreamState(StreamPhase.DISCONNECTED)
CONNECTING = StreamState(StreamPhase.CONNECTING)
CONNECTED = StreamState(StreamPhase.CONNECTED)


# ============================================
# Frames and events
# ============================================


class EventType(str, Enum):
    PING = "ping"
    PONG = "pong"
    HUNT_PROGRESS = "hunt_progress"
    HUNT_COMPLETED = "hunt_completed"
    CLIENT_CONNECTED = "client_connected"
    CLIENT_DISCONNECTED = "client_disconnected"
    FLOW_PROGRESS = "flow_progress"
    FLOW_COMPLETED = "flow_completed"
    NOTIFICATION = "notification"
    ERROR = "error"


class EventPayload(BaseModel):
    model_config = ConfigDict(extra="allow")

    hunt_id: str | None = None
    client_id: str | None = None
    flow_id: str | None = None
    progress: float | None = Field(default=None, allow_inf_nan=False)
    message: str | None = None
    data: dict[str, Any] | None = None


class EventEnvelope(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: str
    payload: EventPayload | None = None
    timestamp: ServerTimestamp | None = None


class HuntProgress(NamedTuple):
    hunt_id: str
    progress: float


class ClientStatus(NamedTuple):
    client_id: str
    online: bool


class FlowProgress(NamedTuple):
    client_id: str
    flow_id: str
    progress: float


class FlowCompleted(NamedTuple):
    client_id: str
    flow_id: str


class ActivityType(str, Enum):
    HUNT_PROGRESS = "hunt_progress"
    HUNT_COMPLETED = "hunt_completed"
    CLIENT_CONNECTED = "client_connected"
    CLIENT_DISCONNECTED = "client_disconnected"
    FLOW_PROGRESS = "flow_progress"
    COLLECTION_COMPLETED = "collection_completed"
    SYSTEM_EVENT = "system_event"
    ERROR = "error"


@dataclass(frozen=True)
class ActivityEvent:
    type: ActivityType
    message: str
    client_id: str | None = None
    hunt_id: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    id: str = field(default_factory=lambda: str(uuid.uuid4()))


class EventChannel(Generic[E]):
    """Synchronous fan-out of one event type to its listeners."""

    def __init__(self, name: str):
        self.name = name
        self._listeners: list[Callable[[E], None]] = []

    def subscribe(self, listener: Callable[[E], None]) -> Callable[[], None]:
        """Register a listener; returns a callable that removes it again."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def emit(self, event: E) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("event_listener_failed", channel=self.name)


# ============================================
# Transport seam
# ============================================


class EventSocket(Protocol):
    """The subset of a websocket connection the client relies on."""

    async def recv(self) -> str | bytes: ...

    async def send(self, message: str) -> None: ...

    async def ping(self) -> Awaitable[Any]: ...

    async def close(self) -> None: ...


Connector = Callable[[str, dict[str, str], ssl.SSLContext | None], Awaitable[EventSocket]]


async def websocket_connector(
    url: str, headers: dict[str, str], ssl_context: ssl.SSLContext | None
) -> EventSocket:
    """Open a websocket; keepalive is driven by the client's own heartbeat."""
    return await websocket_connect(
        url,
        additional_headers=headers,
        ssl=ssl_context if url.startswith("wss://") else None,
        ping_interval=None,
        open_timeout=None,
    )


def stream_url(server_url: str, path: str) -> str:
    """Upgrade http(s) to ws(s) and point the URL at the event path."""
    parts = urlsplit(server_url)
    scheme = "wss" if parts.scheme == "https" else "ws"
    return urlunsplit((scheme, parts.netloc, path, "", ""))


# ============================================
# Client
# ============================================


class EventStreamClient:
    """
    Long-lived duplex connection to the server's push-event endpoint.

    All state lives on the event loop that called connect(); background
    receive, heartbeat and reconnect tasks report back through the client's
    own methods. Listeners are plain callables registered on the on_* channels.
    """

    def __init__(
        self,
        credential_store: CredentialStore,
        settings: Settings | None = None,
        *,
        connector: Connector | None = None,
    ):
        self.credential_store = credential_store
        self.settings = settings or get_settings()
        self._connector = connector or websocket_connector

        self._state = DISCONNECTED
        self._attempt = 0
        self._target: tuple[str, Credentials] | None = None
        self._ws: EventSocket | None = None
        self._receive_task: asyncio.Task | None = None
        self._heartbeat_task: asyncio.Task | None = None
        self._reconnect_task: asyncio.Task | None = None
        # Bumped whenever pending connection work is abandoned
        self._generation = 0

        self._hunt_progress: dict[str, float] = {}
        self._client_online: dict[str, bool] = {}
        self._recent_events: deque[ActivityEvent] = deque(
            maxlen=self.settings.recent_events_limit
        )
        self._last_error: str | None = None

        self.on_state_change: EventChannel[StreamState] = EventChannel("state")
        self.on_hunt_progress: EventChannel[HuntProgress] = EventChannel("hunt_progress")
        self.on_hunt_completed: EventChannel[str] = EventChannel("hunt_completed")
        self.on_client_status: EventChannel[ClientStatus] = EventChannel("client_status")
        self.on_flow_progress: EventChannel[FlowProgress] = EventChannel("flow_progress")
        self.on_flow_completed: EventChannel[FlowCompleted] = EventChannel("flow_completed")
        self.on_notification: EventChannel[str] = EventChannel("notification")
        self.on_error: EventChannel[str] = EventChannel("error")
        self.on_activity: EventChannel[ActivityEvent] = EventChannel("activity")

    # ----------------------------------------------------------------------------
    # Read-only views
    # ----------------------------------------------------------------------------

    @property
    def state(self) -> StreamState:
        return self._state

    @property
    def reconnect_attempt(self) -> int:
        return self._attempt

    @property
    def hunt_progress(self) -> dict[str, float]:
        """Latest progress per hunt (copy)."""
        return dict(self._hunt_progress)

    @property
    def client_online(self) -> dict[str, bool]:
        """Latest online status per client (copy)."""
        return dict(self._client_online)

    @property
    def recent_events(self) -> list[ActivityEvent]:
        """Recent activity, newest first."""
        return list(self._recent_events)

    @property
    def last_error(self) -> str | None:
        return self._last_error

    # ----------------------------------------------------------------------------
    # Connection management
    # ----------------------------------------------------------------------------

    async def connect(
        self,
        server_url: str | None = None,
        credentials: Credentials | None = None,
    ) -> None:
        """Open the stream using the given or the currently active credentials.

        A failed initial handshake is handled like a dropped connection: the
        client enters reconnecting and retries in the background.

        Raises:
            NotConfiguredError: If no credentials are given or active
        """
        credentials = credentials or self.credential_store.require_credentials()
        server_url = (server_url or credentials.server_url).rstrip("/")

        await self._stop_tasks()
        await self._close_socket()
        self._target = (server_url, credentials)
        self._attempt = 0
        self._set_state(CONNECTING)
        generation = self._generation

        try:
            await self._establish()
        except TRANSPORT_ERRORS + (VelociraptorError,) as e:
            if generation != self._generation:
                return
            logger.warning("stream_connect_failed", error=str(e) or type(e).__name__)
            self._schedule_reconnect(str(e) or type(e).__name__)

    async def disconnect(self) -> None:
        """Close the stream and stop all background activity."""
        await self._stop_tasks()
        await self._close_socket()
        self._set_state(DISCONNECTED)
        logger.info("stream_disconnected")

    async def reconnect(self) -> None:
        """Leave any state (including failed) and run the full connect sequence.

        Raises:
            NotConfiguredError: If connect() was never called
        """
        if self._target is None:
            raise NotConfiguredError("Event stream was never connected")
        server_url, credentials = self._target
        await self.disconnect()
        await self.connect(server_url, credentials)

    async def wait_closed(self) -> StreamState:
        """Block until the stream is disconnected or has failed."""
        closed = asyncio.Event()

        def watch(state: StreamState) -> None:
            if state.phase in (StreamPhase.DISCONNECTED, StreamPhase.FAILED):
                closed.set()

        unsubscribe = self.on_state_change.subscribe(watch)
        try:
            watch(self._state)
            await closed.wait()
        finally:
            unsubscribe()
        return self._state

    # ----------------------------------------------------------------------------
    # Subscriptions
    # ----------------------------------------------------------------------------

    async def subscribe_to_hunt(self, hunt_id: str) -> None:
        await self._send_command(
            {"type": "subscribe", "channel": "hunt_progress", "hunt_id": hunt_id}
        )

    async def unsubscribe_from_hunt(self, hunt_id: str) -> None:
        await self._send_command(
            {"type": "unsubscribe", "channel": "hunt_progress", "hunt_id": hunt_id}
        )

    async def subscribe_to_client_status(self) -> None:
        await self._send_command({"type": "subscribe", "channel": "client_status"})

    async def _send_command(self, frame: dict[str, Any]) -> None:
        """Send a command frame at most once; never queued for later."""
        ws = self._ws
        if ws is None or not self._state.is_connected:
            raise StreamNotConnectedError()
        try:
            await ws.send(json.dumps(frame))
        except TRANSPORT_ERRORS as e:
            await self._on_transport_failure(ws, f"send failed: {e}")
            raise EventStreamError(f"Failed to send command: {e}") from e

    # ----------------------------------------------------------------------------
    # Internals
    # ----------------------------------------------------------------------------

    def _set_state(self, state: StreamState) -> None:
        if state == self._state:
            return
        logger.debug("stream_state_changed", old=str(self._state), new=str(state))
        self._state = state
        self.on_state_change.emit(state)

    async def _establish(self) -> None:
        assert self._target is not None
        server_url, credentials = self._target
        generation = self._generation
        url = stream_url(server_url, self.settings.events_path)

        ssl_context = None
        if isinstance(credentials.auth_method, MTLSAuth):
            ssl_context = self.credential_store.materialize_identity().ssl_context

        logger.info("stream_connecting", url=url)
        ws = await asyncio.wait_for(
            self._connector(url, authorization_headers(credentials), ssl_context),
            timeout=self.settings.connect_timeout,
        )
        if generation != self._generation:
            # Disconnected or reconnected while the handshake was in flight
            logger.debug("stream_handshake_abandoned", url=url)
            await self._close_quietly(ws)
            return

        self._ws = ws
        self._attempt = 0
        self._last_error = None
        self._set_state(CONNECTED)
        self._receive_task = asyncio.create_task(self._receive_loop(ws))
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop(ws))
        logger.info("stream_connected", url=url)

    async def _receive_loop(self, ws: EventSocket) -> None:
        try:
            while True:
                frame = await ws.recv()
                await self._handle_frame(ws, frame)
        except asyncio.CancelledError:
            raise
        except TRANSPORT_ERRORS as e:
            logger.warning("stream_receive_failed", error=str(e) or type(e).__name__)
            await self._on_transport_failure(ws, str(e) or "connection lost")

    async def _heartbeat_loop(self, ws: EventSocket) -> None:
        interval = self.settings.heartbeat_interval
        while True:
            await asyncio.sleep(interval)
            try:
                pong_waiter = await ws.ping()
            except TRANSPORT_ERRORS as e:
                await self._on_transport_failure(ws, f"ping failed: {e}")
                return
            try:
                await asyncio.wait_for(pong_waiter, timeout=self.settings.pong_timeout)
            except asyncio.TimeoutError:
                # Informational; only read/write failures trigger reconnection
                logger.info("stream_heartbeat_missed", timeout=self.settings.pong_timeout)
            except WebSocketException:
                # The receive loop observes the closed socket
                return

    async def _on_transport_failure(self, ws: EventSocket, reason: str) -> None:
        if ws is not self._ws or not self._state.is_connected:
            return
        self._ws = None
        current = asyncio.current_task()
        for task in (self._receive_task, self._heartbeat_task):
            if task is not None and task is not current:
                task.cancel()
        self._receive_task = None
        self._heartbeat_task = None
        await self._close_quietly(ws)
        self._schedule_reconnect(reason)

    def _schedule_reconnect(self, reason: str) -> None:
        max_attempts = self.settings.max_reconnect_attempts
        if self._attempt >= max_attempts:
            self._last_error = reason
            self._set_state(
                StreamState(StreamPhase.FAILED, reason="Max reconnection attempts reached")
            )
            logger.error("stream_reconnect_exhausted", attempts=max_attempts, last_error=reason)
            return

        self._attempt += 1
        delay = self.settings.reconnect_base_delay * (2 ** (self._attempt - 1))
        self._set_state(StreamState(StreamPhase.RECONNECTING, attempt=self._attempt))
        STREAM_RECONNECTS.inc()
        logger.info(
            "stream_reconnecting",
            attempt=self._attempt,
            max_attempts=max_attempts,
            delay=delay,
            reason=reason,
        )
        self._reconnect_task = asyncio.create_task(self._reconnect_after(delay))

    async def _reconnect_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        generation = self._generation
        try:
            await self._establish()
        except TRANSPORT_ERRORS + (VelociraptorError,) as e:
            if generation != self._generation:
                return
            logger.warning("stream_reconnect_failed", attempt=self._attempt, error=str(e))
            self._schedule_reconnect(str(e) or type(e).__name__)

    async def _stop_tasks(self) -> None:
        self._generation += 1
        current = asyncio.current_task()
        tasks = [
            task
            for task in (self._reconnect_task, self._receive_task, self._heartbeat_task)
            if task is not None and task is not current and not task.done()
        ]
        self._reconnect_task = self._receive_task = self._heartbeat_task = None
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _close_socket(self) -> None:
        ws, self._ws = self._ws, None
        if ws is not None:
            await self._close_quietly(ws)

    @staticmethod
    async def _close_quietly(ws: EventSocket) -> None:
        try:
            await ws.close()
        except TRANSPORT_ERRORS as e:
            logger.debug("stream_close_failed", error=str(e))

    # ----------------------------------------------------------------------------
    # Frame handling
    # ----------------------------------------------------------------------------

    async def _handle_frame(self, ws: EventSocket, frame: str | bytes) -> None:
        if isinstance(frame, bytes):
            frame = frame.decode("utf-8", errors="replace")
        try:
            envelope = EventEnvelope.model_validate_json(frame)
        except (ValidationError, ValueError, OverflowError) as e:
            STREAM_EVENTS.labels(type="malformed").inc()
            logger.debug("stream_frame_invalid", error=str(e))
            return

        try:
            event_type = EventType(envelope.type)
        except ValueError:
            STREAM_EVENTS.labels(type="unknown").inc()
            logger.debug("stream_event_unknown", type=envelope.type)
            return

        STREAM_EVENTS.labels(type=event_type.value).inc()

        if event_type is EventType.PING:
            try:
                await ws.send(json.dumps({"type": "pong"}))
            except TRANSPORT_ERRORS as e:
                logger.debug("stream_pong_failed", error=str(e))
            return
        if event_type is EventType.PONG:
            return

        try:
            self._dispatch(event_type, envelope.payload or EventPayload())
        except (ValueError, OverflowError) as e:
            logger.warning("stream_frame_dropped", type=event_type.value, error=str(e))

    def _dispatch(self, event_type: EventType, payload: EventPayload) -> None:
        hunt_id = payload.hunt_id
        client_id = payload.client_id
        flow_id = payload.flow_id

        if event_type is EventType.HUNT_PROGRESS:
            if hunt_id is None or payload.progress is None:
                return self._drop_incomplete(event_type)
            self._hunt_progress[hunt_id] = payload.progress
            self.on_hunt_progress.emit(HuntProgress(hunt_id, payload.progress))
            self._record(
                ActivityType.HUNT_PROGRESS,
                f"Hunt {hunt_id} progress: {int(payload.progress * 100)}%",
                hunt_id=hunt_id,
            )

        elif event_type is EventType.HUNT_COMPLETED:
            if hunt_id is None:
                return self._drop_incomplete(event_type)
            self._hunt_progress[hunt_id] = 1.0
            self.on_hunt_progress.emit(HuntProgress(hunt_id, 1.0))
            self.on_hunt_completed.emit(hunt_id)
            self._record(ActivityType.HUNT_COMPLETED, f"Hunt {hunt_id} completed", hunt_id=hunt_id)

        elif event_type in (EventType.CLIENT_CONNECTED, EventType.CLIENT_DISCONNECTED):
            if client_id is None:
                return self._drop_incomplete(event_type)
            online = event_type is EventType.CLIENT_CONNECTED
            self._client_online[client_id] = online
            self.on_client_status.emit(ClientStatus(client_id, online))
            self._record(
                ActivityType.CLIENT_CONNECTED if online else ActivityType.CLIENT_DISCONNECTED,
                f"Client {client_id} {'connected' if online else 'disconnected'}",
                client_id=client_id,
            )

        elif event_type is EventType.FLOW_PROGRESS:
            if client_id is None or flow_id is None or payload.progress is None:
                return self._drop_incomplete(event_type)
            self.on_flow_progress.emit(FlowProgress(client_id, flow_id, payload.progress))
            self._record(
                ActivityType.FLOW_PROGRESS,
                f"Flow {flow_id} progress: {int(payload.progress * 100)}%",
                client_id=client_id,
            )

        elif event_type is EventType.FLOW_COMPLETED:
            if client_id is None or flow_id is None:
                return self._drop_incomplete(event_type)
            self.on_flow_completed.emit(FlowCompleted(client_id, flow_id))
            self._record(
                ActivityType.COLLECTION_COMPLETED,
                f"Collection completed on {client_id}",
                client_id=client_id,
            )

        elif event_type is EventType.NOTIFICATION:
            if payload.message is None:
                return self._drop_incomplete(event_type)
            self.on_notification.emit(payload.message)
            self._record(ActivityType.SYSTEM_EVENT, payload.message)

        elif event_type is EventType.ERROR:
            if payload.message is None:
                return self._drop_incomplete(event_type)
            self._last_error = payload.message
            logger.error("stream_server_error", message=payload.message)
            self.on_error.emit(payload.message)
            self._record(ActivityType.ERROR, payload.message)

    def _record(
        self,
        activity_type: ActivityType,
        message: str,
        *,
        client_id: str | None = None,
        hunt_id: str | None = None,
    ) -> None:
        event = ActivityEvent(activity_type, message, client_id=client_id, hunt_id=hunt_id)
        # deque(maxlen) evicts from the far end: oldest first
        self._recent_events.appendleft(event)
        self.on_activity.emit(event)

    @staticmethod
    def _drop_incomplete(event_type: EventType) -> None:
        logger.debug("stream_event_incomplete", type=event_type.value)
