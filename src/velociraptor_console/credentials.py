"""Credential store: active authentication method, persistence and mTLS identity."""

import base64
import threading
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import urlsplit

import structlog

from .errors import (
    CredentialError,
    CredentialFileNotFoundError,
    NotConfiguredError,
    SecretStoreError,
)
from .identity import ClientIdentity
from .keychain import SecretStore

logger = structlog.get_logger(__name__)

# Account names used in secure storage
ACCOUNT_API_KEY = "apiKey"
ACCOUNT_USERNAME = "username"
ACCOUNT_PASSWORD = "password"
ACCOUNT_CERTIFICATE_PATH = "certificatePath"
ACCOUNT_KEY_PATH = "keyPath"
ACCOUNT_CA_PATH = "caCertificatePath"
ACCOUNT_SERVER_URL = "serverURL"

ALL_ACCOUNTS = (
    ACCOUNT_API_KEY,
    ACCOUNT_USERNAME,
    ACCOUNT_PASSWORD,
    ACCOUNT_CERTIFICATE_PATH,
    ACCOUNT_KEY_PATH,
    ACCOUNT_CA_PATH,
    ACCOUNT_SERVER_URL,
)


@dataclass(frozen=True, slots=True)
class ApiKeyAuth:
    token: str

    def __repr__(self) -> str:
        return "ApiKeyAuth(token='***')"


@dataclass(frozen=True, slots=True)
class BasicAuth:
    username: str
    password: str

    def __repr__(self) -> str:
        return f"BasicAuth(username={self.username!r}, password='***')"


@dataclass(frozen=True, slots=True)
class MTLSAuth:
    certificate_path: str
    key_path: str
    ca_path: str | None = None


AuthMethod = ApiKeyAuth | BasicAuth | MTLSAuth


@dataclass(frozen=True, slots=True)
class Credentials:
    """The active authentication method plus the target server base URL."""

    server_url: str
    auth_method: AuthMethod

    @property
    def method_name(self) -> str:
        if isinstance(self.auth_method, ApiKeyAuth):
            return "api_key"
        if isinstance(self.auth_method, BasicAuth):
            return "basic_auth"
        return "mtls"


def authorization_headers(credentials: Credentials) -> dict[str, str]:
    """Return the Authorization header for the credentials (empty for mTLS)."""
    method = credentials.auth_method
    if isinstance(method, ApiKeyAuth):
        return {"Authorization": f"Bearer {method.token}"}
    if isinstance(method, BasicAuth):
        encoded = base64.b64encode(f"{method.username}:{method.password}".encode()).decode()
        return {"Authorization": f"Basic {encoded}"}
    return {}


def _validate_server_url(server_url: str) -> str:
    parts = urlsplit(server_url)
    if parts.scheme not in ("http", "https") or not parts.netloc:
        raise CredentialError(f"Invalid server URL: {server_url}")
    return server_url.rstrip("/")


class CredentialStore:
    """
    Owns long-lived authentication material.

    configure() validates, persists to secure storage and activates a method;
    clear_credentials() purges storage. Previously persisted credentials are
    loaded on construction; finding none leaves the store unconfigured.

    All mutation happens under one lock, so readers always see either the old
    or the new credentials, never a mix. The materialized mTLS identity is
    cached until the credentials change.
    """

    def __init__(self, secret_store: SecretStore, *, load_saved: bool = True):
        self._secrets = secret_store
        self._lock = threading.RLock()
        self._credentials: Credentials | None = None
        self._identity: ClientIdentity | None = None
        self._revision = 0
        if load_saved:
            self.load_saved_credentials()

    @property
    def revision(self) -> int:
        """Incremented on every configure/clear; lets dependents rebuild transports."""
        with self._lock:
            return self._revision

    @property
    def is_configured(self) -> bool:
        with self._lock:
            return self._credentials is not None

    def current_credentials(self) -> Credentials | None:
        with self._lock:
            return self._credentials

    def require_credentials(self) -> Credentials:
        credentials = self.current_credentials()
        if credentials is None:
            raise NotConfiguredError()
        return credentials

    def configure(self, server_url: str, auth_method: AuthMethod) -> Credentials:
        """Validate, persist and activate an authentication method.

        Raises:
            CredentialFileNotFoundError: If an mTLS certificate/key path is absent
            CredentialError: If the server URL is invalid or storage fails
        """
        server_url = _validate_server_url(server_url)

        if isinstance(auth_method, MTLSAuth):
            for path in (auth_method.certificate_path, auth_method.key_path, auth_method.ca_path):
                if path is not None and not Path(path).is_file():
                    raise CredentialFileNotFoundError(path)

        entries = self._entries_for(auth_method)
        entries[ACCOUNT_SERVER_URL] = server_url

        with self._lock:
            try:
                # Leftovers of another method would win on the next load
                self._purge()
                for account, value in entries.items():
                    self._secrets.set(account, value)
            except SecretStoreError:
                self._purge_quietly()
                self._deactivate()
                raise

            self._credentials = Credentials(server_url=server_url, auth_method=auth_method)
            self._identity = None
            self._revision += 1
            credentials = self._credentials

        logger.info("credentials_saved", method=credentials.method_name, server_url=server_url)
        return credentials

    def clear_credentials(self) -> None:
        """Remove all secrets from storage and deactivate."""
        with self._lock:
            self._purge()
            self._deactivate()
        logger.info("credentials_cleared")

    def load_saved_credentials(self) -> Credentials | None:
        """Reload persisted credentials; missing entries are not an error."""
        try:
            credentials = self._read_saved()
        except SecretStoreError as e:
            logger.warning("credentials_load_failed", error=str(e))
            return None

        if credentials is None:
            logger.debug("no_saved_credentials")
            return None

        with self._lock:
            self._credentials = credentials
            self._identity = None
            self._revision += 1
        logger.info("credentials_loaded", method=credentials.method_name)
        return credentials

    def materialize_identity(self) -> ClientIdentity:
        """Build (once per configured session) the mTLS client identity.

        Raises:
            NotConfiguredError: If no credentials are active
            CredentialError: If the active method is not mTLS
            IdentityError: If the certificate/key material is unusable
        """
        with self._lock:
            credentials = self.require_credentials()
            method = credentials.auth_method
            if not isinstance(method, MTLSAuth):
                raise CredentialError(
                    f"Client identity requires mTLS credentials, active method is {credentials.method_name}"
                )
            if self._identity is None:
                self._identity = ClientIdentity.from_files(
                    method.certificate_path, method.key_path, method.ca_path
                )
            return self._identity

    def authorization_headers(self) -> dict[str, str]:
        return authorization_headers(self.require_credentials())

    # ----------------------------------------------------------------------------

    @staticmethod
    def _entries_for(auth_method: AuthMethod) -> dict[str, str]:
        if isinstance(auth_method, ApiKeyAuth):
            if not auth_method.token:
                raise CredentialError("API key must not be empty")
            return {ACCOUNT_API_KEY: auth_method.token}
        if isinstance(auth_method, BasicAuth):
            if not auth_method.username or not auth_method.password:
                raise CredentialError("Username and password must not be empty")
            return {
                ACCOUNT_USERNAME: auth_method.username,
                ACCOUNT_PASSWORD: auth_method.password,
            }
        entries = {
            ACCOUNT_CERTIFICATE_PATH: auth_method.certificate_path,
            ACCOUNT_KEY_PATH: auth_method.key_path,
        }
        if auth_method.ca_path:
            entries[ACCOUNT_CA_PATH] = auth_method.ca_path
        return entries

    def _read_saved(self) -> Credentials | None:
        server_url = self._secrets.get(ACCOUNT_SERVER_URL)
        if not server_url:
            return None

        api_key = self._secrets.get(ACCOUNT_API_KEY)
        if api_key:
            return Credentials(server_url, ApiKeyAuth(api_key))

        username = self._secrets.get(ACCOUNT_USERNAME)
        password = self._secrets.get(ACCOUNT_PASSWORD)
        if username and password:
            return Credentials(server_url, BasicAuth(username, password))

        certificate_path = self._secrets.get(ACCOUNT_CERTIFICATE_PATH)
        key_path = self._secrets.get(ACCOUNT_KEY_PATH)
        if certificate_path and key_path:
            ca_path = self._secrets.get(ACCOUNT_CA_PATH)
            return Credentials(server_url, MTLSAuth(certificate_path, key_path, ca_path))

        return None

    def _purge(self) -> None:
        for account in ALL_ACCOUNTS:
            self._secrets.delete(account)

    def _purge_quietly(self) -> None:
        try:
            self._purge()
        except SecretStoreError as e:
            logger.warning("credentials_purge_failed", error=str(e))

    def _deactivate(self) -> None:
        self._credentials = None
        self._identity = None
        self._revision += 1
