"""Credential storage, OAuth lifecycle, and session switching for credvault.

The main entry points are:

- :class:`SecretBackend` -- port for secret material, implemented by
  :class:`KeyringBackend` and :class:`FileSecretBackend`;
  :func:`create_backend` picks one from settings.
- :class:`CredentialRepository` -- maps profile names to typed credentials.
- :class:`OAuthLifecycleManager` -- refreshes OAuth tokens on the way out
  and imports token bundles, with :class:`HttpTokenExchange` doing the
  network exchange.
- :class:`SessionSwitchController` -- swaps a credential into a foreign
  store (:class:`KeyringForeignStore`) around a child process.

Typical usage::

    from credvault.auth import CredentialRepository, create_backend
    from credvault.config import ProfileRecordStore, load_settings

    repo = CredentialRepository(create_backend(load_settings()), ProfileRecordStore())
    credential = repo.load("work")
"""

from credvault.auth.backend import (
    FileSecretBackend,
    KeyringBackend,
    SecretBackend,
    create_backend,
)
from credvault.auth.oauth import (
    HttpTokenExchange,
    OAuthLifecycleManager,
    TokenExchange,
    token_state,
)
from credvault.auth.repository import CredentialRepository
from credvault.auth.session import ForeignStore, KeyringForeignStore, SessionSwitchController

__all__ = [
    "CredentialRepository",
    "FileSecretBackend",
    "ForeignStore",
    "HttpTokenExchange",
    "KeyringBackend",
    "KeyringForeignStore",
    "OAuthLifecycleManager",
    "SecretBackend",
    "SessionSwitchController",
    "TokenExchange",
    "create_backend",
    "token_state",
]
