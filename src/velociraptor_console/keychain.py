"""Secure storage backends for long-lived credentials."""

import threading
from typing import Protocol, runtime_checkable

import keyring
import keyring.errors

from .errors import SecretStoreError


@runtime_checkable
class SecretStore(Protocol):
    """Opaque key/value persistence keyed by account name."""

    def get(self, account: str) -> str | None:
        """Return the stored value, or None when the account has no entry."""

    def set(self, account: str, value: str) -> None:
        """Create or replace the value stored for the account."""

    def delete(self, account: str) -> None:
        """Remove the account's entry; a missing entry is not an error."""


class KeyringSecretStore:
    """Platform secret store (macOS Keychain, Secret Service, Windows Vault)."""

    def __init__(self, service: str):
        self.service = service

    def get(self, account: str) -> str | None:
        try:
            return keyring.get_password(self.service, account)
        except keyring.errors.KeyringError as e:
            raise SecretStoreError(f"Cannot read '{account}' from keychain: {e}") from e

    def set(self, account: str, value: str) -> None:
        try:
            keyring.set_password(self.service, account, value)
        except keyring.errors.KeyringError as e:
            raise SecretStoreError(f"Cannot write '{account}' to keychain: {e}") from e

    def delete(self, account: str) -> None:
        try:
            keyring.delete_password(self.service, account)
        except keyring.errors.PasswordDeleteError:
            # Item not found
            pass
        except keyring.errors.KeyringError as e:
            raise SecretStoreError(f"Cannot delete '{account}' from keychain: {e}") from e


class MemorySecretStore:
    """In-process store, for tests and for sessions that must not persist."""

    def __init__(self, initial: dict[str, str] | None = None):
        self._items: dict[str, str] = dict(initial or {})
        self._lock = threading.Lock()

    def get(self, account: str) -> str | None:
        with self._lock:
            return self._items.get(account)

    def set(self, account: str, value: str) -> None:
        with self._lock:
            self._items[account] = value

    def delete(self, account: str) -> None:
        with self._lock:
            self._items.pop(account, None)

    def snapshot(self) -> dict[str, str]:
        with self._lock:
            return dict(self._items)
