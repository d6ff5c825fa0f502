"""Secret backend port and its implementations.

A :class:`SecretBackend` is a narrow string key/value store for secret
material. Keys are namespaced (``vault:<profile>:<slot>``, see
:func:`secret_key`) and never contain secrets themselves.

Two implementations ship with credvault:

- :class:`KeyringBackend` -- the platform secret store through the
  :mod:`keyring` library (macOS Keychain, Secret Service, Windows
  Credential Locker).
- :class:`FileSecretBackend` -- a single ``0o600`` JSON file under the data
  directory, written atomically, for hosts without a native store.

:func:`create_backend` picks one from :class:`~credvault.models.Settings`.
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

import keyring
from keyring.errors import KeyringError, PasswordDeleteError

from credvault.config import _atomic_write, get_data_dir
from credvault.exceptions import SecretBackendError
from credvault.models import Settings

logger = logging.getLogger(__name__)

KEYRING_SERVICE = "credvault"

SLOT_API_KEY = "apikey"
SLOT_OAUTH_ACCESS = "oauth-access"
SLOT_OAUTH_REFRESH = "oauth-refresh"
ALL_SLOTS = (SLOT_API_KEY, SLOT_OAUTH_ACCESS, SLOT_OAUTH_REFRESH)


def secret_key(profile: str, slot: str) -> str:
    """Namespaced backend key for one secret slot of *profile*."""
    return f"vault:{profile}:{slot}"


class SecretBackend(ABC):
    """Abstract key/value store for secret strings.

    Implementations raise :class:`~credvault.exceptions.SecretBackendError`
    when the underlying store fails; a missing key is not an error.
    """

    name: str = "abstract"

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        """Return the value stored under *key*, or ``None``."""

    @abstractmethod
    def set(self, key: str, value: str) -> None:
        """Store *value* under *key*, replacing any previous value."""

    @abstractmethod
    def delete(self, key: str) -> bool:
        """Remove *key*. Returns ``False`` if nothing was stored."""


class KeyringBackend(SecretBackend):
    """Secrets in the platform keychain, one entry per key under a fixed service.

    Args:
        service: Keyring service name entries are filed under.
    """

    name = "keyring"

    def __init__(self, service: str = KEYRING_SERVICE) -> None:
        self._service = service

    def get(self, key: str) -> Optional[str]:
        try:
            return keyring.get_password(self._service, key)
        except KeyringError as exc:
            raise SecretBackendError(f"Keyring read failed for {key}: {exc}") from exc

    def set(self, key: str, value: str) -> None:
        try:
            keyring.set_password(self._service, key, value)
        except KeyringError as exc:
            raise SecretBackendError(f"Keyring write failed for {key}: {exc}") from exc

    def delete(self, key: str) -> bool:
        try:
            keyring.delete_password(self._service, key)
        except PasswordDeleteError:
            return False
        except KeyringError as exc:
            raise SecretBackendError(f"Keyring delete failed for {key}: {exc}") from exc
        return True


class FileSecretBackend(SecretBackend):
    """Secrets in one JSON object on disk, readable only by the owner.

    Every write replaces the file atomically with ``0o600`` permissions so
    that secrets are never world-readable, even momentarily.

    Args:
        path: File location. Defaults to ``<data dir>/secrets.json``.
    """

    name = "file"

    def __init__(self, path: Optional[Path] = None) -> None:
        self._path = Path(path) if path is not None else get_data_dir() / "secrets.json"

    @property
    def path(self) -> Path:
        return self._path

    def get(self, key: str) -> Optional[str]:
        return self._read().get(key)

    def set(self, key: str, value: str) -> None:
        data = self._read()
        data[key] = value
        self._write(data)

    def delete(self, key: str) -> bool:
        data = self._read()
        if key not in data:
            return False
        del data[key]
        self._write(data)
        return True

    def _read(self) -> dict[str, str]:
        if not self._path.is_file():
            return {}
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError, OSError) as exc:
            raise SecretBackendError(f"Cannot read secret file {self._path}: {exc}") from exc
        if not isinstance(data, dict):
            raise SecretBackendError(f"Secret file {self._path} does not hold a JSON object")
        return {str(k): str(v) for k, v in data.items()}

    def _write(self, data: dict[str, str]) -> None:
        try:
            _atomic_write(self._path, json.dumps(data, indent=2, sort_keys=True) + "\n")
        except OSError as exc:
            raise SecretBackendError(f"Cannot write secret file {self._path}: {exc}") from exc


def create_backend(settings: Settings) -> SecretBackend:
    """Instantiate the secret backend named by ``settings.secret_backend``."""
    if settings.secret_backend == "file":
        backend: SecretBackend = FileSecretBackend()
    else:
        backend = KeyringBackend()
    logger.debug("Using %s secret backend", backend.name)
    return backend
