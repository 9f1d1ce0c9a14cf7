"""Subprocess query bridge.

Runs the local velociraptor binary as an alternate transport:

    velociraptor query [--config <path>] --format <jsonl|json> <vql>

Streaming mode reads stdout incrementally and yields one StreamingRow per
complete JSON line, followed by a terminal marker carrying the row count.
The bridge can also recover client certificate material from a server
configuration file and hand it to the credential store as mTLS credentials.
"""

import asyncio
import json
import os
import re
import shutil
import tempfile
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, AsyncIterator

import structlog
import yaml

from .config import Settings, get_settings
from .credentials import CredentialStore, Credentials, MTLSAuth
from .errors import (
    BinaryNotFoundError,
    BridgeError,
    CertificateExtractionError,
    ConfigNotFoundError,
    DecodingError,
    NotConfiguredError,
    ProcessError,
    QueryCancelledError,
    QueryInProgressError,
)
from .identity import certificate_expiry
from .metrics import BRIDGE_ROWS
from .models import CertificateBundle, StreamingRow, VQLResult, VQLValue

logger = structlog.get_logger(__name__)

CLIENT_CERT_KEY = "client_cert"
CLIENT_KEY_KEY = "client_private_key"
CA_CERT_KEY = "ca_certificate"
COMMON_NAME_KEY = "Common_Name"
DEFAULT_COMMON_NAME = "VelociraptorServer"


class BridgeState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    STREAMING = "streaming"
    ERROR = "error"


@dataclass(frozen=True)
class BridgeConfiguration:
    binary_path: Path
    config_path: str = ""
    gui_port: int = 8889

    @classmethod
    def from_settings(cls, settings: Settings) -> "BridgeConfiguration":
        return cls(
            binary_path=settings.binary_path,
            config_path=settings.config_path,
            gui_port=settings.gui_port,
        )


# ============================================
# Incremental line decoding
# ============================================


class LineBuffer:
    """Byte buffer that only releases complete newline-terminated lines."""

    def __init__(self) -> None:
        self._buffer = bytearray()

    def feed(self, chunk: bytes) -> list[bytes]:
        """Append a chunk and return every line completed by it."""
        self._buffer.extend(chunk)
        end = self._buffer.rfind(b"\n")
        if end < 0:
            return []
        complete = bytes(self._buffer[:end])
        del self._buffer[: end + 1]
        return complete.split(b"\n")

    def flush(self) -> bytes | None:
        """Return the unterminated remainder at end of stream, if any."""
        remainder = bytes(self._buffer)
        self._buffer.clear()
        return remainder if remainder.strip() else None


class JsonlRowDecoder:
    """Turns JSON object lines into rows with a column set fixed by the first row."""

    def __init__(self) -> None:
        self.columns: tuple[str, ...] | None = None
        self.row_count = 0

    def decode(self, line: bytes) -> StreamingRow | None:
        text = line.strip()
        if not text:
            return None
        try:
            obj = json.loads(text)
        except ValueError as e:
            logger.warning("bridge_line_invalid", error=str(e), length=len(text))
            return None
        if not isinstance(obj, dict):
            logger.warning("bridge_line_not_object", type=type(obj).__name__)
            return None

        if self.columns is None:
            self.columns = tuple(sorted(obj))
        values = tuple(VQLValue.from_json(obj.get(column)) for column in self.columns)
        self.row_count += 1
        BRIDGE_ROWS.inc()
        return StreamingRow(columns=self.columns, values=values, total_rows=self.row_count)

    def terminal_row(self) -> StreamingRow:
        return StreamingRow(
            columns=self.columns or (),
            is_complete=True,
            total_rows=self.row_count,
        )


def rows_to_result(records: list[dict[str, Any]]) -> VQLResult:
    """Tabulate JSON objects with sorted columns taken from the first record."""
    if not records:
        return VQLResult(columns=[], rows=[])
    columns = sorted(records[0])
    rows = [[VQLValue.from_json(record.get(column)) for column in columns] for record in records]
    return VQLResult(columns=columns, rows=rows)


# ============================================
# Configuration file parsing
# ============================================


def _find_key(node: Any, key: str) -> Any:
    """Depth-first search for the first mapping entry named key."""
    if isinstance(node, dict):
        if key in node:
            return node[key]
        children = node.values()
    elif isinstance(node, list):
        children = node
    else:
        return None
    for child in children:
        found = _find_key(child, key)
        if found is not None:
            return found
    return None


def extract_block_value(text: str, key: str) -> str | None:
    """Line based lookup of `key:` tolerating inline values and block scalars.

    A block value is every following line indented deeper than the key.
    """
    lines = text.splitlines()
    pattern = re.compile(rf"^(\s*)-?\s*{re.escape(key)}:\s*(.*)$")
    for index, line in enumerate(lines):
        match = pattern.match(line)
        if not match:
            continue
        indent = len(match.group(1))
        inline = match.group(2).strip()
        if inline and inline[0] not in "|>":
            return inline.strip("'\"") or None

        block: list[str] = []
        for following in lines[index + 1:]:
            if not following.strip():
                block.append("")
                continue
            if len(following) - len(following.lstrip()) <= indent:
                break
            block.append(following.strip())
        return "\n".join(block).strip() or None
    return None


def parse_config_fields(text: str, keys: tuple[str, ...]) -> dict[str, str | None]:
    """Look up string fields anywhere in a YAML-like configuration document."""
    try:
        document = yaml.safe_load(text)
    except yaml.YAMLError as e:
        logger.debug("config_yaml_invalid", error=str(e))
        document = None

    fields: dict[str, str | None] = {}
    for key in keys:
        value = _find_key(document, key)
        if isinstance(value, str) and value.strip():
            fields[key] = value.strip()
        else:
            fields[key] = extract_block_value(text, key)
    return fields


def _write_private(path: Path, content: str) -> None:
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        f.write(content if content.endswith("\n") else content + "\n")


# ============================================
# Bridge
# ============================================


class SubprocessQueryBridge:
    """Drives the local velociraptor executable; one query at a time."""

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or get_settings()
        self._configuration: BridgeConfiguration | None = None
        self._state = BridgeState.DISCONNECTED
        self._process: asyncio.subprocess.Process | None = None
        self._cancel_requested = False
        self._busy = False
        self.last_error: str | None = None
        self.extracted_certificates: CertificateBundle | None = None

    @property
    def state(self) -> BridgeState:
        return self._state

    @property
    def configuration(self) -> BridgeConfiguration | None:
        return self._configuration

    @property
    def is_running(self) -> bool:
        return self._process is not None

    def configure(self, configuration: BridgeConfiguration) -> None:
        """Validate and adopt the binary/config paths.

        Raises:
            BinaryNotFoundError: If the executable does not exist
            ConfigNotFoundError: If a config path is set but missing
        """
        if not Path(configuration.binary_path).is_file():
            raise BinaryNotFoundError(str(configuration.binary_path))
        if configuration.config_path and not Path(configuration.config_path).is_file():
            raise ConfigNotFoundError(configuration.config_path)
        self._configuration = configuration
        logger.info("bridge_configured", binary_path=str(configuration.binary_path))

    def _require_configuration(self) -> BridgeConfiguration:
        if self._configuration is None:
            raise NotConfiguredError("Bridge not configured")
        return self._configuration

    def _claim(self) -> BridgeConfiguration:
        """Reserve the bridge for one query; the running query's state is untouched on refusal."""
        configuration = self._require_configuration()
        if self._busy:
            raise QueryInProgressError()
        self._busy = True
        return configuration

    def _set_state(self, state: BridgeState) -> None:
        if state is not self._state:
            logger.debug("bridge_state_changed", old=self._state.value, new=state.value)
        self._state = state

    @staticmethod
    def _command(configuration: BridgeConfiguration, query: str, output_format: str) -> list[str]:
        command = [str(configuration.binary_path), "query"]
        if configuration.config_path:
            command += ["--config", configuration.config_path]
        command += ["--format", output_format, query]
        return command

    async def _spawn(self, command: list[str]) -> asyncio.subprocess.Process:
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            raise BinaryNotFoundError(command[0]) from e
        except OSError as e:
            raise BridgeError(f"Failed to launch {command[0]}: {e}") from e
        self._process = process
        self._cancel_requested = False
        logger.debug("bridge_process_started", pid=process.pid)
        return process

    async def _reap(self, process: asyncio.subprocess.Process) -> None:
        """Make sure the process is gone: terminate, then kill after the grace period."""
        if process.returncode is None:
            try:
                process.terminate()
            except ProcessLookupError:
                pass
            try:
                await asyncio.wait_for(
                    process.wait(), timeout=self.settings.process_terminate_timeout
                )
            except asyncio.TimeoutError:
                logger.warning("bridge_process_kill", pid=process.pid)
                process.kill()
                await process.wait()
        if self._process is process:
            self._process = None

    # ----------------------------------------------------------------------------
    # Queries
    # ----------------------------------------------------------------------------

    async def execute_streaming(self, query: str) -> AsyncIterator[StreamingRow]:
        """Run a query and yield rows as soon as each output line is complete.

        The last item is a terminal row (is_complete=True, no values) whose
        total_rows is the number of rows yielded.

        Raises:
            NotConfiguredError: If configure() was not called
            ProcessError: If the process exits non-zero (stderr attached)
            QueryCancelledError: If cancel() stopped the query
            QueryInProgressError: If another query is still running
        """
        configuration = self._claim()
        self._set_state(BridgeState.STREAMING)
        try:
            process = await self._spawn(self._command(configuration, query, "jsonl"))
        except BridgeError as e:
            self._busy = False
            self.last_error = str(e)
            self._set_state(BridgeState.ERROR)
            raise
        except asyncio.CancelledError:
            self._busy = False
            self._set_state(BridgeState.DISCONNECTED)
            raise

        assert process.stdout is not None and process.stderr is not None
        stderr_task = asyncio.create_task(process.stderr.read())
        buffer = LineBuffer()
        decoder = JsonlRowDecoder()
        final_state = BridgeState.DISCONNECTED

        try:
            while True:
                chunk = await process.stdout.read(self.settings.read_chunk_size)
                if not chunk:
                    break
                for line in buffer.feed(chunk):
                    row = decoder.decode(line)
                    if row is not None:
                        yield row

            tail = buffer.flush()
            if tail is not None:
                row = decoder.decode(tail)
                if row is not None:
                    yield row

            exit_code = await process.wait()
            stderr = (await stderr_task).decode("utf-8", errors="replace")

            if self._cancel_requested:
                raise QueryCancelledError()
            if exit_code != 0:
                error = ProcessError(exit_code, stderr)
                self.last_error = str(error)
                final_state = BridgeState.ERROR
                logger.warning("bridge_query_failed", exit_code=exit_code)
                raise error

            final_state = BridgeState.CONNECTED
            logger.info("bridge_query_complete", rows=decoder.row_count)
            yield decoder.terminal_row()
        finally:
            await self._reap(process)
            if not stderr_task.done():
                stderr_task.cancel()
            await asyncio.gather(stderr_task, return_exceptions=True)
            self._set_state(final_state)
            self._busy = False

    async def execute_query(self, query: str) -> VQLResult:
        """Run a query in JSON array mode and return the whole table.

        Raises:
            NotConfiguredError: If configure() was not called
            ProcessError: If the process exits non-zero
            DecodingError: If stdout is not a JSON array of objects
            QueryInProgressError: If another query is still running
        """
        configuration = self._claim()
        self._set_state(BridgeState.CONNECTING)
        try:
            process = await self._spawn(self._command(configuration, query, "json"))
        except BridgeError as e:
            self._busy = False
            self.last_error = str(e)
            self._set_state(BridgeState.ERROR)
            raise
        except asyncio.CancelledError:
            self._busy = False
            self._set_state(BridgeState.DISCONNECTED)
            raise

        try:
            stdout, stderr = await process.communicate()
        except asyncio.CancelledError:
            self._set_state(BridgeState.DISCONNECTED)
            raise
        finally:
            await self._reap(process)
            self._busy = False

        if self._cancel_requested:
            self._set_state(BridgeState.DISCONNECTED)
            raise QueryCancelledError()
        if process.returncode != 0:
            error = ProcessError(process.returncode, stderr.decode("utf-8", errors="replace"))
            self.last_error = str(error)
            self._set_state(BridgeState.ERROR)
            raise error

        try:
            result = self._parse_json_output(stdout)
        except DecodingError as e:
            self.last_error = str(e)
            self._set_state(BridgeState.ERROR)
            raise

        self._set_state(BridgeState.CONNECTED)
        logger.info("bridge_query_complete", rows=len(result.rows))
        return result

    @staticmethod
    def _parse_json_output(stdout: bytes) -> VQLResult:
        if not stdout.strip():
            return VQLResult(columns=[], rows=[])
        try:
            data = json.loads(stdout)
        except ValueError as e:
            raise DecodingError(str(e), e) from e
        if not isinstance(data, list) or not all(isinstance(item, dict) for item in data):
            raise DecodingError("expected a JSON array of objects")
        return rows_to_result(data)

    def cancel(self) -> None:
        """Terminate the running query; its consumer sees QueryCancelledError."""
        process = self._process
        if process is None or process.returncode is not None:
            return
        self._cancel_requested = True
        logger.info("bridge_query_cancelling", pid=process.pid)
        try:
            process.terminate()
        except ProcessLookupError:
            pass

    async def aclose(self) -> None:
        process = self._process
        if process is not None:
            self._cancel_requested = True
            await self._reap(process)
        self._set_state(BridgeState.DISCONNECTED)

    # ----------------------------------------------------------------------------
    # Certificates
    # ----------------------------------------------------------------------------

    def extract_certificates(self, config_path: str | Path) -> CertificateBundle:
        """Recover client certificate, key, CA and common name from a config file.

        Raises:
            ConfigNotFoundError: If the file does not exist
            CertificateExtractionError: If it is unreadable or a field is missing
        """
        path = Path(config_path)
        if not path.is_file():
            raise ConfigNotFoundError(str(config_path))
        try:
            text = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            raise CertificateExtractionError("Cannot read config file") from e

        fields = parse_config_fields(
            text, (CLIENT_CERT_KEY, CLIENT_KEY_KEY, CA_CERT_KEY, COMMON_NAME_KEY)
        )
        missing = [
            key for key in (CLIENT_CERT_KEY, CLIENT_KEY_KEY, CA_CERT_KEY) if not fields[key]
        ]
        if missing:
            raise CertificateExtractionError(
                f"Missing certificate fields in config: {', '.join(missing)}"
            )

        client_cert = fields[CLIENT_CERT_KEY]
        bundle = CertificateBundle(
            client_cert_pem=client_cert,
            client_key_pem=fields[CLIENT_KEY_KEY],
            ca_cert_pem=fields[CA_CERT_KEY],
            common_name=fields[COMMON_NAME_KEY] or DEFAULT_COMMON_NAME,
            expires_at=certificate_expiry(client_cert),
        )
        self.extracted_certificates = bundle
        logger.info(
            "certificates_extracted",
            common_name=bundle.common_name,
            expires_at=bundle.expires_at.isoformat() if bundle.expires_at else None,
        )
        return bundle

    def configure_mtls_from_config(
        self,
        config_path: str | Path,
        credential_store: CredentialStore,
        server_url: str | None = None,
    ) -> Credentials:
        """Extract certificates and activate them as mTLS credentials.

        PEM files go to a fresh private temp directory (0700, files 0600).
        Without server_url the local GUI port is used. Nothing is written and
        the store is untouched if extraction fails.
        """
        bundle = self.extract_certificates(config_path)

        gui_port = (self._configuration or BridgeConfiguration.from_settings(self.settings)).gui_port
        server_url = server_url or f"https://127.0.0.1:{gui_port}"

        cert_dir = Path(tempfile.mkdtemp(prefix="velociraptor-certs-"))
        cert_path = cert_dir / "client.crt"
        key_path = cert_dir / "client.key"
        ca_path = cert_dir / "ca.crt"
        try:
            _write_private(cert_path, bundle.client_cert_pem)
            _write_private(key_path, bundle.client_key_pem)
            _write_private(ca_path, bundle.ca_cert_pem)
            credentials = credential_store.configure(
                server_url, MTLSAuth(str(cert_path), str(key_path), str(ca_path))
            )
        except Exception:
            shutil.rmtree(cert_dir, ignore_errors=True)
            raise

        logger.info("mtls_configured_from_config", server_url=server_url, cert_dir=str(cert_dir))
        return credentials
