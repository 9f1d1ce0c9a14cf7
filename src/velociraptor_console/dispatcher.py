"""Authenticated request dispatcher with retry and exponential backoff."""

import asyncio
import time
from dataclasses import dataclass
from functools import lru_cache
from typing import Any

import httpx
import structlog
from pydantic import TypeAdapter, ValidationError

from .config import Settings, get_settings
from .credentials import CredentialStore, Credentials, MTLSAuth, authorization_headers
from .endpoints import Endpoint
from .errors import (
    AuthenticationFailedError,
    DecodingError,
    InvalidURLError,
    NetworkError,
    NotFoundError,
    RateLimitedError,
    RequestCancelledError,
    RequestTimeoutError,
    ServerError,
    UnauthorizedError,
    VelociraptorError,
    is_retryable,
)
from .metrics import REQUEST_COUNT, REQUEST_DURATION, REQUEST_RETRIES

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff: the n-th retry waits base_delay * 2**n seconds."""

    max_retries: int = 3
    base_delay: float = 1.0

    def delay_for(self, attempt: int) -> float:
        return self.base_delay * (2 ** attempt)

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(max_retries=settings.max_retries, base_delay=settings.retry_base_delay)


@lru_cache(maxsize=None)
def _adapter(response_type: Any) -> TypeAdapter:
    return TypeAdapter(response_type)


def _parse_retry_after(value: str | None) -> float | None:
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        return None


class RequestDispatcher:
    """
    Executes single-shot calls against the endpoint catalog.

    Authentication is taken from the CredentialStore on every attempt, so a
    reconfiguration only affects requests dispatched afterwards. One
    httpx.AsyncClient is kept per credential revision; mTLS revisions get a
    client whose TLS context presents the materialized identity.
    """

    def __init__(
        self,
        credential_store: CredentialStore,
        settings: Settings | None = None,
        *,
        retry_policy: RetryPolicy | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.credential_store = credential_store
        self.settings = settings or get_settings()
        self.retry_policy = retry_policy or RetryPolicy.from_settings(self.settings)
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._client_revision: int | None = None
        self._retired: list[httpx.AsyncClient] = []
        self._in_flight: dict[httpx.AsyncClient, int] = {}
        self._closing = asyncio.Event()

    async def __aenter__(self) -> "RequestDispatcher":
        return self

    async def __aexit__(self, *args) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Cancel pending backoff waits and close all HTTP clients."""
        self._closing.set()
        clients = self._retired + ([self._client] if self._client else [])
        self._client = None
        self._client_revision = None
        self._retired = []
        for client in clients:
            await self._close_client(client)

    # ----------------------------------------------------------------------------
    # Public API
    # ----------------------------------------------------------------------------

    async def execute(
        self,
        endpoint: Endpoint,
        response_type: Any = None,
        *,
        path_params: dict[str, Any] | None = None,
        query_params: dict[str, Any] | None = None,
        body: Any = None,
    ) -> Any:
        """Execute an endpoint and decode the JSON body.

        With response_type set, the body is validated into that type (a model,
        list[Model], dict, ...). Without it the decoded JSON is returned as is.

        Raises:
            NotConfiguredError: If no credentials are active
            APIError: For non-2xx responses (after retries for 5xx)
            TransportError: For timeouts and network failures (after retries)
            DecodingError: If the body does not match response_type
        """
        response = await self._send_with_retry(endpoint, path_params, query_params, body)
        return self._decode(endpoint, response, response_type)

    async def execute_raw(
        self,
        endpoint: Endpoint,
        *,
        path_params: dict[str, Any] | None = None,
        query_params: dict[str, Any] | None = None,
        body: Any = None,
    ) -> bytes:
        """Execute an endpoint and return the undecoded response body."""
        response = await self._send_with_retry(endpoint, path_params, query_params, body)
        return response.content

    # ----------------------------------------------------------------------------
    # Internals
    # ----------------------------------------------------------------------------

    async def _send_with_retry(
        self,
        endpoint: Endpoint,
        path_params: dict[str, Any] | None,
        query_params: dict[str, Any] | None,
        body: Any,
    ) -> httpx.Response:
        path = endpoint.resolve(**(path_params or {}))
        params = {k: v for k, v in (query_params or {}).items() if v is not None}
        max_retries = self.retry_policy.max_retries

        attempt = 0
        while True:
            if self._closing.is_set():
                raise RequestCancelledError()
            try:
                return await self._send_once(endpoint, path, params, body)
            except VelociraptorError as e:
                if attempt >= max_retries or not is_retryable(e):
                    raise
                delay = self.retry_policy.delay_for(attempt)
                REQUEST_RETRIES.labels(endpoint=endpoint.logical_name).inc()
                logger.warning(
                    "request_retry",
                    endpoint=endpoint.logical_name,
                    attempt=attempt + 1,
                    delay=delay,
                    error=str(e),
                )
                await self._wait_before_retry(delay)
                attempt += 1

    async def _send_once(
        self,
        endpoint: Endpoint,
        path: str,
        params: dict[str, Any],
        body: Any,
    ) -> httpx.Response:
        credentials = self.credential_store.require_credentials()
        client = await self._client_for(credentials)
        self._in_flight[client] = self._in_flight.get(client, 0) + 1

        logger.debug("request_start", method=endpoint.method, path=path)
        start_time = time.perf_counter()
        try:
            response = await client.request(
                endpoint.method,
                path,
                params=params or None,
                json=body,
                headers=authorization_headers(credentials),
            )
        except httpx.TimeoutException as e:
            REQUEST_COUNT.labels(endpoint=endpoint.logical_name, status="timeout").inc()
            raise RequestTimeoutError(f"Request timed out: {endpoint.method} {path}") from e
        except httpx.InvalidURL as e:
            raise InvalidURLError(str(e)) from e
        except httpx.TransportError as e:
            REQUEST_COUNT.labels(endpoint=endpoint.logical_name, status="network_error").inc()
            raise NetworkError(f"Network error: {e}") from e
        finally:
            REQUEST_DURATION.labels(endpoint=endpoint.logical_name).observe(
                time.perf_counter() - start_time
            )
            await self._release(client)

        REQUEST_COUNT.labels(
            endpoint=endpoint.logical_name, status=str(response.status_code)
        ).inc()
        logger.debug(
            "request_complete",
            method=endpoint.method,
            path=path,
            status_code=response.status_code,
        )
        self._raise_for_status(path, response)
        return response

    async def _client_for(self, credentials: Credentials) -> httpx.AsyncClient:
        revision = self.credential_store.revision
        if self._client is not None and self._client_revision == revision:
            return self._client

        verify: Any = True
        if isinstance(credentials.auth_method, MTLSAuth):
            verify = self.credential_store.materialize_identity().ssl_context

        previous = self._client
        self._client = httpx.AsyncClient(
            base_url=credentials.server_url,
            headers={"Accept": "application/json"},
            timeout=httpx.Timeout(
                self.settings.request_timeout, connect=self.settings.connect_timeout
            ),
            verify=verify,
            transport=self._transport,
        )
        self._client_revision = revision

        if previous is not None:
            if self._in_flight.get(previous):
                # Closed by _release once the requests dispatched before the change finish
                self._retired.append(previous)
            else:
                await self._close_client(previous)
        return self._client

    async def _release(self, client: httpx.AsyncClient) -> None:
        remaining = self._in_flight[client] - 1
        if remaining:
            self._in_flight[client] = remaining
            return
        del self._in_flight[client]
        if client in self._retired:
            self._retired.remove(client)
            await self._close_client(client)

    async def _close_client(self, client: httpx.AsyncClient) -> None:
        # An injected transport is shared by every client and owned by the caller
        if self._transport is None:
            await client.aclose()

    @staticmethod
    def _raise_for_status(path: str, response: httpx.Response) -> None:
        status = response.status_code
        if 200 <= status < 300:
            return
        if status == 401:
            raise UnauthorizedError()
        if status == 403:
            raise AuthenticationFailedError()
        if status == 404:
            raise NotFoundError(path)
        if status == 429:
            raise RateLimitedError(_parse_retry_after(response.headers.get("Retry-After")))
        raise ServerError(status, response.text)

    @staticmethod
    def _decode(endpoint: Endpoint, response: httpx.Response, response_type: Any) -> Any:
        if not response.content:
            data = None
        else:
            try:
                data = response.json()
            except ValueError as e:
                logger.warning("response_not_json", endpoint=endpoint.logical_name)
                raise DecodingError(str(e), e) from e

        if response_type is None:
            return data

        try:
            return _adapter(response_type).validate_python(data)
        except ValidationError as e:
            logger.warning(
                "response_decode_failed",
                endpoint=endpoint.logical_name,
                errors=e.error_count(),
            )
            raise DecodingError(str(e), e) from e

    async def _wait_before_retry(self, delay: float) -> None:
        """Sleep for the backoff delay; closing the dispatcher cuts it short."""
        try:
            await asyncio.wait_for(self._closing.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return
        raise RequestCancelledError()
