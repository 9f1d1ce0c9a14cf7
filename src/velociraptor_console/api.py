"""High-level Velociraptor API client built on the request dispatcher."""

import json
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

import structlog
from pydantic import BaseModel, TypeAdapter, ValidationError

from .dispatcher import RequestDispatcher
from .endpoints import Endpoint
from .errors import DecodingError, VelociraptorError
from .models import (
    Artifact,
    ClientLabel,
    Flow,
    HealthResponse,
    Hunt,
    HuntState,
    ServerInfo,
    User,
    VelociraptorClient,
    VFSEntry,
    VQLResult,
)

logger = structlog.get_logger(__name__)

INTERROGATE_ARTIFACT = "Generic.Client.Info"


class ConnectionPhase(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


@dataclass(frozen=True)
class ConnectionState:
    phase: ConnectionPhase
    reason: str | None = None

    @classmethod
    def disconnected(cls) -> "ConnectionState":
        return cls(ConnectionPhase.DISCONNECTED)

    @classmethod
    def connecting(cls) -> "ConnectionState":
        return cls(ConnectionPhase.CONNECTING)

    @classmethod
    def connected(cls) -> "ConnectionState":
        return cls(ConnectionPhase.CONNECTED)

    @classmethod
    def error(cls, reason: str) -> "ConnectionState":
        return cls(ConnectionPhase.ERROR, reason)

    def __str__(self) -> str:
        if self.reason:
            return f"{self.phase.value}: {self.reason}"
        return self.phase.value


class _Items(BaseModel):
    """List envelope used by most collection endpoints."""

    items: list[Any] | None = None


class _VFSListing(BaseModel):
    Response: str | None = None


def _unwrap_items(data: Any, item_type: type) -> list:
    try:
        envelope = _Items.model_validate(data or {})
        return TypeAdapter(list[item_type]).validate_python(envelope.items or [])
    except ValidationError as e:
        raise DecodingError(str(e), e) from e


class VelociraptorAPIClient:
    """
    Typed operations for the Velociraptor server API.

    Holds the overall ConnectionState: test_connection() moves it through
    connecting to connected (or error), disconnect() back to disconnected.
    """

    def __init__(self, dispatcher: RequestDispatcher):
        self.dispatcher = dispatcher
        self._state = ConnectionState.disconnected()
        self._server_info: ServerInfo | None = None
        self._last_error: VelociraptorError | None = None

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def server_info(self) -> ServerInfo | None:
        return self._server_info

    @property
    def last_error(self) -> VelociraptorError | None:
        return self._last_error

    @property
    def is_connected(self) -> bool:
        return self._state.phase is ConnectionPhase.CONNECTED

    async def test_connection(self) -> ServerInfo:
        """Fetch server info, updating the connection state either way."""
        self._set_state(ConnectionState.connecting())
        try:
            info = await self.get_server_info()
        except VelociraptorError as e:
            self._last_error = e
            self._set_state(ConnectionState.error(str(e)))
            logger.error("connection_failed", error=str(e))
            raise
        self._server_info = info
        self._last_error = None
        self._set_state(ConnectionState.connected())
        logger.info("connected", version=info.version or "unknown")
        return info

    def disconnect(self) -> None:
        self._server_info = None
        self._set_state(ConnectionState.disconnected())
        logger.info("disconnected")

    def _set_state(self, state: ConnectionState) -> None:
        if state != self._state:
            logger.debug("connection_state_changed", old=str(self._state), new=str(state))
        self._state = state

    # ============================================
    # Health & Info
    # ============================================

    async def get_server_info(self) -> ServerInfo:
        return await self.dispatcher.execute(Endpoint.SERVER_INFO, ServerInfo)

    async def get_version(self) -> str | None:
        """Server version string, or None if the server does not report one."""
        info = await self.dispatcher.execute(Endpoint.VERSION, ServerInfo)
        return info.version

    async def get_health(self) -> HealthResponse:
        return await self.dispatcher.execute(Endpoint.HEALTH, HealthResponse)

    # ============================================
    # Clients
    # ============================================

    async def list_clients(
        self, limit: int = 50, offset: int = 0, query: str | None = None
    ) -> list[VelociraptorClient]:
        """Search clients; an empty query matches everything."""
        data = await self.dispatcher.execute(
            Endpoint.LIST_CLIENTS,
            query_params={"limit": limit, "offset": offset, "query": query or "*"},
        )
        return _unwrap_items(data, VelociraptorClient)

    async def get_client(self, client_id: str) -> VelociraptorClient:
        return await self.dispatcher.execute(
            Endpoint.GET_CLIENT, VelociraptorClient, path_params={"client_id": client_id}
        )

    async def interrogate_client(self, client_id: str) -> Flow:
        return await self.dispatcher.execute(
            Endpoint.INTERROGATE_CLIENT,
            Flow,
            body={"client_id": client_id, "artifacts": [INTERROGATE_ARTIFACT]},
        )

    async def collect_artifacts(
        self,
        client_id: str,
        artifacts: list[str],
        parameters: dict[str, dict[str, str]] | None = None,
    ) -> Flow:
        """Schedule artifact collection; parameters map artifact name to its env."""
        body: dict[str, Any] = {"client_id": client_id, "artifacts": artifacts}
        if parameters:
            body["specs"] = [
                {"artifact": artifact, "parameters": {"env": env}}
                for artifact, env in parameters.items()
            ]
        return await self.dispatcher.execute(Endpoint.COLLECT_ARTIFACTS, Flow, body=body)

    async def delete_client(self, client_id: str) -> None:
        await self.dispatcher.execute(Endpoint.DELETE_CLIENT, path_params={"client_id": client_id})

    async def get_client_flows(self, client_id: str) -> list[Flow]:
        data = await self.dispatcher.execute(
            Endpoint.GET_CLIENT_FLOWS, path_params={"client_id": client_id}
        )
        return _unwrap_items(data, Flow)

    # ============================================
    # Hunts
    # ============================================

    async def list_hunts(self, state: HuntState | None = None) -> list[Hunt]:
        data = await self.dispatcher.execute(
            Endpoint.LIST_HUNTS,
            query_params={"state": state.value if state else None},
        )
        return _unwrap_items(data, Hunt)

    async def get_hunt(self, hunt_id: str) -> Hunt:
        return await self.dispatcher.execute(
            Endpoint.GET_HUNT, Hunt, path_params={"hunt_id": hunt_id}
        )

    async def create_hunt(
        self,
        description: str,
        artifacts: list[str],
        expires: datetime | None = None,
    ) -> Hunt:
        body: dict[str, Any] = {
            "hunt_description": description,
            "artifacts": artifacts,
            "start_request": {"artifacts": artifacts},
        }
        if expires is not None:
            body["expires"] = int(expires.timestamp())
        return await self.dispatcher.execute(Endpoint.CREATE_HUNT, Hunt, body=body)

    async def start_hunt(self, hunt_id: str) -> Hunt:
        return await self._modify_hunt(Endpoint.START_HUNT, hunt_id, HuntState.RUNNING)

    async def stop_hunt(self, hunt_id: str) -> Hunt:
        return await self._modify_hunt(Endpoint.STOP_HUNT, hunt_id, HuntState.STOPPED)

    async def archive_hunt(self, hunt_id: str) -> Hunt:
        return await self._modify_hunt(Endpoint.ARCHIVE_HUNT, hunt_id, HuntState.ARCHIVED)

    async def _modify_hunt(self, endpoint: Endpoint, hunt_id: str, state: HuntState) -> Hunt:
        return await self.dispatcher.execute(
            endpoint, Hunt, path_params={"hunt_id": hunt_id}, body={"state": state.value}
        )

    async def delete_hunt(self, hunt_id: str) -> None:
        await self.dispatcher.execute(Endpoint.DELETE_HUNT, path_params={"hunt_id": hunt_id})

    async def get_hunt_results(self, hunt_id: str, artifact: str | None = None) -> VQLResult:
        return await self.dispatcher.execute(
            Endpoint.GET_HUNT_RESULTS,
            VQLResult,
            path_params={"hunt_id": hunt_id},
            query_params={"artifact": artifact},
        )

    # ============================================
    # VQL
    # ============================================

    async def execute_query(
        self,
        vql: str,
        env: dict[str, str] | None = None,
        timeout: int | None = None,
    ) -> VQLResult:
        """Run a VQL query on the server and return the whole result."""
        body: dict[str, Any] = {"query": vql}
        if env:
            body["env"] = [{"key": key, "value": value} for key, value in env.items()]
        if timeout is not None:
            body["timeout"] = timeout
        return await self.dispatcher.execute(Endpoint.EXECUTE_QUERY, VQLResult, body=body)

    # ============================================
    # VFS
    # ============================================

    async def list_vfs_directory(self, client_id: str, path: str) -> list[VFSEntry]:
        listing = await self.dispatcher.execute(
            Endpoint.LIST_VFS_DIRECTORY,
            _VFSListing,
            path_params={"client_id": client_id},
            query_params={"vfs_path": path},
        )
        if not listing.Response:
            return []
        # Entries arrive as a JSON document embedded in the Response string
        try:
            return TypeAdapter(list[VFSEntry]).validate_python(json.loads(listing.Response))
        except (ValueError, ValidationError) as e:
            raise DecodingError(str(e), e) from e

    async def download_vfs_file(self, client_id: str, path: str) -> bytes:
        return await self.dispatcher.execute_raw(
            Endpoint.DOWNLOAD_VFS_FILE,
            path_params={"client_id": client_id},
            query_params={"vfs_path": path},
        )

    async def get_vfs_metadata(self, client_id: str, path: str) -> dict[str, Any]:
        data = await self.dispatcher.execute(
            Endpoint.GET_VFS_METADATA,
            path_params={"client_id": client_id},
            query_params={"vfs_path": path},
        )
        return data or {}

    async def refresh_vfs_directory(self, client_id: str, path: str) -> Flow:
        return await self.dispatcher.execute(
            Endpoint.REFRESH_VFS_DIRECTORY,
            Flow,
            path_params={"client_id": client_id},
            body={"client_id": client_id, "vfs_path": path},
        )

    # ============================================
    # Artifacts
    # ============================================

    async def list_artifacts(self) -> list[Artifact]:
        data = await self.dispatcher.execute(Endpoint.LIST_ARTIFACTS)
        return _unwrap_items(data, Artifact)

    async def get_artifact(self, name: str) -> Artifact:
        return await self.dispatcher.execute(
            Endpoint.GET_ARTIFACT, Artifact, path_params={"name": name}
        )

    async def upload_artifact(self, yaml_definition: str) -> None:
        await self.dispatcher.execute(Endpoint.UPLOAD_ARTIFACT, body={"artifact": yaml_definition})

    # ============================================
    # Users
    # ============================================

    async def list_users(self) -> list[User]:
        data = await self.dispatcher.execute(Endpoint.LIST_USERS)
        return _unwrap_items(data, User)

    async def create_user(self, username: str, password: str, roles: list[str]) -> None:
        await self.dispatcher.execute(
            Endpoint.CREATE_USER,
            body={"name": username, "password": password, "roles": roles},
        )

    async def delete_user(self, username: str) -> None:
        await self.dispatcher.execute(Endpoint.DELETE_USER, path_params={"username": username})

    # ============================================
    # Labels
    # ============================================

    async def list_labels(self) -> list[ClientLabel]:
        data = await self.dispatcher.execute(Endpoint.LIST_LABELS)
        return _unwrap_items(data, ClientLabel)

    async def add_label(self, client_id: str, label: str) -> None:
        await self._label(Endpoint.ADD_LABEL, client_id, label, "set")

    async def remove_label(self, client_id: str, label: str) -> None:
        await self._label(Endpoint.REMOVE_LABEL, client_id, label, "remove")

    async def _label(self, endpoint: Endpoint, client_id: str, label: str, operation: str) -> None:
        await self.dispatcher.execute(
            endpoint,
            path_params={"client_id": client_id},
            body={"client_ids": [client_id], "labels": [label], "operation": operation},
        )

    # ============================================
    # Flows
    # ============================================

    async def get_flow(self, client_id: str, flow_id: str) -> Flow:
        return await self.dispatcher.execute(
            Endpoint.GET_FLOW, Flow, path_params={"client_id": client_id, "flow_id": flow_id}
        )

    async def cancel_flow(self, client_id: str, flow_id: str) -> None:
        await self.dispatcher.execute(
            Endpoint.CANCEL_FLOW, path_params={"client_id": client_id, "flow_id": flow_id}
        )

    async def get_flow_results(
        self, client_id: str, flow_id: str, artifact: str | None = None
    ) -> VQLResult:
        return await self.dispatcher.execute(
            Endpoint.GET_FLOW_RESULTS,
            VQLResult,
            path_params={"client_id": client_id, "flow_id": flow_id},
            query_params={"artifact": artifact},
        )
