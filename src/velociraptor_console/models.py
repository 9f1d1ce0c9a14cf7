"""Data model shared by the dispatcher, event stream and subprocess bridge."""

import math
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, GetCoreSchemaHandler
from pydantic_core import core_schema

# Epoch values above this magnitude are nanoseconds, below it seconds
NANOSECOND_EPOCH_THRESHOLD = 1e12

_TRAILING_FRACTION = re.compile(r"\.(\d+)")


def parse_server_timestamp(value: Any) -> datetime:
    """Decode a server timestamp.

    Accepts datetimes, epoch numbers (nanoseconds above 1e12, seconds otherwise)
    and ISO-8601 strings with or without fractional seconds.

    Raises:
        ValueError: If the value cannot be interpreted as a timestamp
    """
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)

    if isinstance(value, (int, float)) and not isinstance(value, bool):
        try:
            if not math.isfinite(value):
                raise ValueError("non-finite epoch")
            seconds = value / 1_000_000_000 if value > NANOSECOND_EPOCH_THRESHOLD else value
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError) as e:
            raise ValueError(f"Cannot decode date: {value!r}") from e

    if isinstance(value, str):
        text = value.strip()
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        # strptime accepts at most microseconds; servers may send nanoseconds
        text = _TRAILING_FRACTION.sub(lambda m: "." + m.group(1)[:6], text, count=1)
        for fmt in ("%Y-%m-%dT%H:%M:%S.%f%z", "%Y-%m-%dT%H:%M:%S%z"):
            try:
                return datetime.strptime(text, fmt)
            except ValueError:
                continue

    raise ValueError(f"Cannot decode date: {value!r}")


ServerTimestamp = Annotated[datetime, BeforeValidator(parse_server_timestamp)]


# ============================================
# Dynamic JSON values
# ============================================


class ValueKind(str, Enum):
    STRING = "string"
    NUMBER = "number"
    BOOL = "bool"
    NULL = "null"
    ARRAY = "array"
    OBJECT = "object"


@dataclass(frozen=True, slots=True)
class VQLValue:
    """One typed cell of a query result.

    Arrays hold a tuple of VQLValue, objects a dict of str to VQLValue.
    """

    kind: ValueKind
    value: Any = None

    @classmethod
    def from_json(cls, raw: Any) -> "VQLValue":
        """Convert a value produced by the JSON decoder."""
        if isinstance(raw, VQLValue):
            return raw
        if raw is None:
            return cls(ValueKind.NULL)
        # bool before number: bool is an int subclass
        if isinstance(raw, bool):
            return cls(ValueKind.BOOL, raw)
        if isinstance(raw, (int, float)):
            return cls(ValueKind.NUMBER, raw)
        if isinstance(raw, str):
            return cls(ValueKind.STRING, raw)
        if isinstance(raw, (list, tuple)):
            return cls(ValueKind.ARRAY, tuple(cls.from_json(item) for item in raw))
        if isinstance(raw, dict):
            return cls(ValueKind.OBJECT, {str(k): cls.from_json(v) for k, v in raw.items()})
        raise TypeError(f"Unsupported JSON value type: {type(raw).__name__}")

    @classmethod
    def null(cls) -> "VQLValue":
        return cls(ValueKind.NULL)

    def to_python(self) -> Any:
        """Convert back to plain JSON-compatible Python data."""
        if self.kind is ValueKind.ARRAY:
            return [item.to_python() for item in self.value]
        if self.kind is ValueKind.OBJECT:
            return {key: item.to_python() for key, item in self.value.items()}
        return self.value

    def __str__(self) -> str:
        if self.kind is ValueKind.NULL:
            return "null"
        if self.kind is ValueKind.BOOL:
            return "true" if self.value else "false"
        if self.kind is ValueKind.ARRAY:
            return "[" + ", ".join(str(item) for item in self.value) + "]"
        if self.kind is ValueKind.OBJECT:
            return "[Object]"
        return str(self.value)

    @classmethod
    def __get_pydantic_core_schema__(
        cls, source_type: Any, handler: GetCoreSchemaHandler
    ) -> core_schema.CoreSchema:
        return core_schema.no_info_plain_validator_function(
            cls.from_json,
            serialization=core_schema.plain_serializer_function_ser_schema(
                lambda v: v.to_python()
            ),
        )


@dataclass(frozen=True, slots=True)
class StreamingRow:
    """One decoded record of a streaming query.

    The terminal marker has no values, is_complete=True and the final
    row count in total_rows.
    """

    columns: tuple[str, ...]
    values: tuple[VQLValue, ...] = ()
    is_complete: bool = False
    total_rows: int | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def get(self, column: str) -> VQLValue | None:
        try:
            return self.values[self.columns.index(column)]
        except (ValueError, IndexError):
            return None

    def as_dict(self) -> dict[str, Any]:
        return {column: value.to_python() for column, value in zip(self.columns, self.values)}


@dataclass(frozen=True, slots=True)
class CertificateBundle:
    """Client certificate material extracted from a server configuration.

    Immutable; renewal produces a new bundle.
    """

    client_cert_pem: str
    client_key_pem: str
    ca_cert_pem: str
    common_name: str
    expires_at: datetime | None = None

    @property
    def is_valid(self) -> bool:
        if self.expires_at is None:
            return True
        return self.expires_at > datetime.now(timezone.utc)


# ============================================
# Wire models
# ============================================


class WireModel(BaseModel):
    """Base for server objects; unknown fields are kept, not rejected."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)


class ServerInfo(WireModel):
    name: str | None = None
    version: str | None = None
    build_time: str | None = None
    install_time: ServerTimestamp | None = None
    client_count: int | None = None


class HealthResponse(WireModel):
    status: str | None = None
    version: str | None = None
    uptime: int | None = None
    cpu_percent: float | None = None
    memory_percent: float | None = None
    disk_percent: float | None = None


class OSInfo(WireModel):
    system: str | None = None
    release: str | None = None
    version: str | None = None
    machine: str | None = None
    fqdn: str | None = None
    hostname: str | None = None


class AgentInfo(WireModel):
    version: str | None = None
    name: str | None = None
    build_time: str | None = None


class VelociraptorClient(WireModel):
    client_id: str
    hostname: str | None = None
    os: str | None = None
    os_info: OSInfo | None = None
    last_seen_at: ServerTimestamp | None = None
    first_seen_at: ServerTimestamp | None = None
    last_interrogate_flow_id: str | None = None
    labels: list[str] = Field(default_factory=list)
    agent_information: AgentInfo | None = None


class HuntState(str, Enum):
    UNSPECIFIED = "UNSPECIFIED"
    PAUSED = "PAUSED"
    RUNNING = "RUNNING"
    STOPPED = "STOPPED"
    ARCHIVED = "ARCHIVED"


class Hunt(WireModel):
    hunt_id: str
    hunt_description: str | None = None
    state: HuntState = HuntState.UNSPECIFIED
    create_time: ServerTimestamp | None = None
    start_time: ServerTimestamp | None = None
    expires: ServerTimestamp | None = None
    creator: str | None = None
    artifacts: list[str] = Field(default_factory=list)
    total_clients_scheduled: int = 0
    total_clients_with_results: int = 0
    total_clients_with_errors: int = 0


class Flow(WireModel):
    session_id: str | None = None
    client_id: str | None = None
    state: str | None = None
    create_time: ServerTimestamp | None = None
    active_time: ServerTimestamp | None = None
    total_uploaded_bytes: int | None = None
    total_collected_rows: int | None = None
    artifacts_with_results: list[str] = Field(default_factory=list)


class ArtifactParameter(WireModel):
    name: str
    description: str | None = None
    type: str | None = None
    default: str | None = None


class ArtifactSource(WireModel):
    name: str | None = None
    description: str | None = None
    query: str | None = None
    precondition: str | None = None


class Artifact(WireModel):
    name: str
    description: str | None = None
    author: str | None = None
    type: str | None = None
    parameters: list[ArtifactParameter] = Field(default_factory=list)
    sources: list[ArtifactSource] = Field(default_factory=list)
    built_in: bool | None = None


class VQLResult(WireModel):
    columns: list[str] = Field(default_factory=list)
    rows: list[list[VQLValue]] = Field(default_factory=list)
    types: list[str] | None = None
    part: int | None = None

    def value(self, row: int, column: str) -> VQLValue | None:
        if column not in self.columns or row >= len(self.rows):
            return None
        return self.rows[row][self.columns.index(column)]


class VFSEntry(WireModel):
    name: str = Field(alias="Name")
    path: str | None = Field(default=None, alias="FullPath")
    mode: str | None = Field(default=None, alias="Mode")
    size: int | None = Field(default=None, alias="Size")
    mtime: ServerTimestamp | None = Field(default=None, alias="Mtime")
    is_dir: bool = Field(default=False, alias="IsDir")


class User(WireModel):
    name: str
    roles: list[str] = Field(default_factory=list)
    type: str | None = None
    created_time: ServerTimestamp | None = None


class ClientLabel(WireModel):
    label: str | None = None
    count: int | None = None
