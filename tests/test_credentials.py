"""Tests for the credential store."""

import pytest

from velociraptor_console.credentials import (
    ACCOUNT_API_KEY,
    ACCOUNT_CERTIFICATE_PATH,
    ACCOUNT_KEY_PATH,
    ACCOUNT_PASSWORD,
    ACCOUNT_SERVER_URL,
    ACCOUNT_USERNAME,
    ApiKeyAuth,
    BasicAuth,
    CredentialStore,
    MTLSAuth,
)
from velociraptor_console.errors import (
    CredentialError,
    CredentialFileNotFoundError,
    NotConfiguredError,
    SecretStoreError,
)
from velociraptor_console.keychain import MemorySecretStore

from .conftest import SERVER_URL


class FailingSecretStore(MemorySecretStore):
    """Refuses writes for one account."""

    def __init__(self, fail_on: str):
        super().__init__()
        self.fail_on = fail_on

    def set(self, account: str, value: str) -> None:
        if account == self.fail_on:
            raise SecretStoreError(f"write refused: {account}")
        super().set(account, value)


class TestConfigure:
    """configure() persists, then activates."""

    def test_api_key_persisted(self, credential_store, secret_store) -> None:
        credentials = credential_store.configure(SERVER_URL + "/", ApiKeyAuth("tok-1"))

        assert credentials.server_url == SERVER_URL
        assert credential_store.is_configured
        assert secret_store.snapshot() == {
            ACCOUNT_API_KEY: "tok-1",
            ACCOUNT_SERVER_URL: SERVER_URL,
        }

    def test_switching_method_purges_previous(self, credential_store, secret_store) -> None:
        credential_store.configure(SERVER_URL, ApiKeyAuth("tok-1"))
        credential_store.configure(SERVER_URL, BasicAuth("admin", "secret"))

        assert secret_store.snapshot() == {
            ACCOUNT_USERNAME: "admin",
            ACCOUNT_PASSWORD: "secret",
            ACCOUNT_SERVER_URL: SERVER_URL,
        }

    def test_mtls_missing_file_leaves_store_untouched(
        self, credential_store, secret_store, cert_files, tmp_path
    ) -> None:
        credential_store.configure(SERVER_URL, ApiKeyAuth("tok-1"))
        before = secret_store.snapshot()
        revision = credential_store.revision

        missing = str(tmp_path / "absent.key")
        with pytest.raises(CredentialFileNotFoundError) as exc_info:
            credential_store.configure(
                SERVER_URL, MTLSAuth(str(cert_files.certificate_path), missing)
            )

        assert exc_info.value.path == missing
        assert secret_store.snapshot() == before
        assert credential_store.revision == revision
        assert isinstance(credential_store.current_credentials().auth_method, ApiKeyAuth)

    @pytest.mark.parametrize("url", ["vr.test", "ftp://vr.test", "https://", ""])
    def test_invalid_server_url(self, credential_store, url) -> None:
        with pytest.raises(CredentialError, match="Invalid server URL"):
            credential_store.configure(url, ApiKeyAuth("tok-1"))
        assert not credential_store.is_configured

    @pytest.mark.parametrize("method", [ApiKeyAuth(""), BasicAuth("admin", ""), BasicAuth("", "pw")])
    def test_empty_secrets_rejected(self, credential_store, method) -> None:
        with pytest.raises(CredentialError):
            credential_store.configure(SERVER_URL, method)

    def test_storage_failure_deactivates(self) -> None:
        store = CredentialStore(FailingSecretStore(fail_on=ACCOUNT_SERVER_URL))
        with pytest.raises(SecretStoreError):
            store.configure(SERVER_URL, ApiKeyAuth("tok-1"))

        assert not store.is_configured
        assert store.load_saved_credentials() is None

    def test_revision_advances(self, credential_store) -> None:
        start = credential_store.revision
        credential_store.configure(SERVER_URL, ApiKeyAuth("a"))
        credential_store.configure(SERVER_URL, ApiKeyAuth("b"))
        credential_store.clear_credentials()
        assert credential_store.revision == start + 3


class TestPersistence:
    def test_reload_in_new_store(self, credential_store, secret_store) -> None:
        credential_store.configure(SERVER_URL, BasicAuth("admin", "secret"))

        reloaded = CredentialStore(secret_store)
        credentials = reloaded.current_credentials()
        assert credentials.server_url == SERVER_URL
        assert credentials.auth_method == BasicAuth("admin", "secret")

    def test_empty_store_is_unconfigured(self) -> None:
        store = CredentialStore(MemorySecretStore())
        assert not store.is_configured
        with pytest.raises(NotConfiguredError):
            store.require_credentials()

    def test_server_url_required(self) -> None:
        store = CredentialStore(MemorySecretStore({ACCOUNT_API_KEY: "tok-1"}))
        assert not store.is_configured

    def test_api_key_wins(self) -> None:
        store = CredentialStore(MemorySecretStore({
            ACCOUNT_SERVER_URL: SERVER_URL,
            ACCOUNT_API_KEY: "tok-1",
            ACCOUNT_USERNAME: "admin",
            ACCOUNT_PASSWORD: "secret",
        }))
        assert store.current_credentials().auth_method == ApiKeyAuth("tok-1")

    def test_basic_needs_both_fields(self) -> None:
        store = CredentialStore(MemorySecretStore({
            ACCOUNT_SERVER_URL: SERVER_URL,
            ACCOUNT_USERNAME: "admin",
            ACCOUNT_CERTIFICATE_PATH: "/tmp/c.crt",
            ACCOUNT_KEY_PATH: "/tmp/c.key",
        }))
        assert store.current_credentials().auth_method == MTLSAuth("/tmp/c.crt", "/tmp/c.key")

    def test_clear(self, credential_store, secret_store) -> None:
        credential_store.configure(SERVER_URL, ApiKeyAuth("tok-1"))
        credential_store.clear_credentials()

        assert not credential_store.is_configured
        assert secret_store.snapshot() == {}


class TestAuthorizationHeaders:
    def test_bearer(self, credential_store) -> None:
        credential_store.configure(SERVER_URL, ApiKeyAuth("tok-1"))
        assert credential_store.authorization_headers() == {"Authorization": "Bearer tok-1"}

    def test_basic(self, credential_store) -> None:
        credential_store.configure(SERVER_URL, BasicAuth("admin", "secret"))
        assert credential_store.authorization_headers() == {"Authorization": "Basic YWRtaW46c2VjcmV0"}

    def test_mtls_has_no_header(self, credential_store, cert_files) -> None:
        credential_store.configure(
            SERVER_URL, MTLSAuth(str(cert_files.certificate_path), str(cert_files.key_path))
        )
        assert credential_store.authorization_headers() == {}

    def test_secrets_masked_in_repr(self) -> None:
        assert "tok-1" not in repr(ApiKeyAuth("tok-1"))
        assert "secret" not in repr(BasicAuth("admin", "secret"))


class TestMaterializeIdentity:
    def test_identity_is_cached(self, credential_store, cert_files) -> None:
        credential_store.configure(
            SERVER_URL, MTLSAuth(str(cert_files.certificate_path), str(cert_files.key_path))
        )
        identity = credential_store.materialize_identity()

        # Already-built identity survives removal of the source files
        cert_files.certificate_path.unlink()
        cert_files.key_path.unlink()
        assert credential_store.materialize_identity() is identity

    def test_reconfigure_rebuilds(self, credential_store, cert_files) -> None:
        method = MTLSAuth(str(cert_files.certificate_path), str(cert_files.key_path))
        credential_store.configure(SERVER_URL, method)
        first = credential_store.materialize_identity()
        credential_store.configure(SERVER_URL, method)
        assert credential_store.materialize_identity() is not first

    def test_requires_mtls(self, credential_store) -> None:
        credential_store.configure(SERVER_URL, ApiKeyAuth("tok-1"))
        with pytest.raises(CredentialError, match="mTLS"):
            credential_store.materialize_identity()

    def test_requires_configuration(self, credential_store) -> None:
        with pytest.raises(NotConfiguredError):
            credential_store.materialize_identity()
