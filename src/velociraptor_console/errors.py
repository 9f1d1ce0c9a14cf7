"""Error taxonomy for the remote-control client layer.

Every error surfaced by the credential store, request dispatcher, event stream
client and subprocess bridge derives from VelociraptorError, so callers can
catch the whole family in one place and still branch on the concrete kind.
"""

from typing import Any


class VelociraptorError(Exception):
    """Base class for all client layer errors."""


class NotConfiguredError(VelociraptorError):
    """Raised when an operation is attempted before credentials are set."""

    def __init__(self, message: str = "API client not configured"):
        super().__init__(message)


# ============================================
# HTTP errors
# ============================================


class APIError(VelociraptorError):
    """API error with status code and details."""

    def __init__(self, status_code: int, message: str, details: dict[str, Any] | None = None):
        self.status_code = status_code
        self.message = message
        self.details = details or {}
        super().__init__(f"[{status_code}] {message}")


class UnauthorizedError(APIError):
    """401 - the server did not accept the credentials."""

    def __init__(self, message: str = "Unauthorized - check credentials"):
        super().__init__(401, message)


class AuthenticationFailedError(APIError):
    """403 - the credentials were recognised but rejected."""

    def __init__(self, message: str = "Authentication failed"):
        super().__init__(403, message)


class NotFoundError(APIError):
    """404 - the resource does not exist."""

    def __init__(self, resource: str = "Resource"):
        self.resource = resource
        super().__init__(404, f"Not found: {resource}")


class RateLimitedError(APIError):
    """429 - not retried automatically; the caller decides when to try again."""

    def __init__(self, retry_after: float | None = None):
        self.retry_after = retry_after
        super().__init__(429, "Rate limited - try again later")


class ServerError(APIError):
    """Any other non-2xx response; 5xx codes are retry eligible."""

    def __init__(self, status_code: int, body: str):
        self.body = body
        super().__init__(status_code, f"Server error: {body}" if body else "Server error")


class InvalidURLError(VelociraptorError):
    """Raised when a request URL cannot be built."""


# ============================================
# Transport errors
# ============================================


class TransportError(VelociraptorError):
    """Base class for transport-level failures."""


class NetworkError(TransportError):
    """Connection could not be established or was lost."""


class RequestTimeoutError(TransportError):
    """Connection setup or response body exceeded its time budget."""

    def __init__(self, message: str = "Request timed out"):
        super().__init__(message)


class RequestCancelledError(TransportError):
    """The request was cancelled because its owner shut down."""

    def __init__(self, message: str = "Request cancelled"):
        super().__init__(message)


class DecodingError(VelociraptorError):
    """Response body did not match the expected shape."""

    def __init__(self, message: str, cause: Exception | None = None):
        self.cause = cause
        super().__init__(f"Failed to decode response: {message}")


# ============================================
# Credential errors
# ============================================


class CredentialError(VelociraptorError):
    """Invalid or unusable credential material."""


class CredentialFileNotFoundError(CredentialError):
    """A certificate or key path referenced by mTLS credentials is absent."""

    def __init__(self, path: str):
        self.path = path
        super().__init__(f"File not found: {path}")


class SecretStoreError(CredentialError):
    """The secure storage backend refused an operation."""


class IdentityError(CredentialError):
    """Certificate/key data is malformed or the TLS layer rejected it."""


# ============================================
# Event stream errors
# ============================================


class EventStreamError(VelociraptorError):
    """Base class for event stream failures."""


class StreamNotConnectedError(EventStreamError):
    """A command frame was sent while the stream was not connected."""

    def __init__(self, message: str = "Event stream is not connected"):
        super().__init__(message)


# ============================================
# Subprocess bridge errors
# ============================================


class BridgeError(VelociraptorError):
    """Base class for subprocess bridge failures."""


class BinaryNotFoundError(BridgeError):
    def __init__(self, path: str):
        self.path = path
        super().__init__(f"Velociraptor binary not found at: {path}")


class ConfigNotFoundError(BridgeError):
    def __init__(self, path: str):
        self.path = path
        super().__init__(f"Configuration file not found at: {path}")


class ProcessError(BridgeError):
    """The subprocess exited with a non-zero code."""

    def __init__(self, exit_code: int, stderr: str):
        self.exit_code = exit_code
        self.stderr = stderr
        detail = stderr.strip()
        message = f"Process terminated with code: {exit_code}"
        super().__init__(f"{message}: {detail}" if detail else message)


class CertificateExtractionError(BridgeError):
    """certificateExtractionFailed - required certificate fields are missing."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Certificate extraction failed: {reason}")


class QueryCancelledError(BridgeError):
    """The streaming query was cancelled before the subprocess finished."""

    def __init__(self, message: str = "Query cancelled"):
        super().__init__(message)


class QueryInProgressError(BridgeError):
    """Another query is still running on this bridge."""

    def __init__(self) -> None:
        super().__init__("A query is already running")


def is_retryable(error: BaseException) -> bool:
    """Return True for timeouts, network errors and 5xx server errors."""
    if isinstance(error, (RequestTimeoutError, NetworkError)):
        return True
    if isinstance(error, ServerError):
        return 500 <= error.status_code <= 599
    return False
