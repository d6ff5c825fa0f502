"""Transactional session switching for programs with their own credential store.

Some programs (Claude Code) ignore ``ANTHROPIC_API_KEY`` when they have an
OAuth login of their own, so ``credvault delegate`` temporarily swaps the
profile's token into that program's store. :class:`SessionSwitchController`
runs the swap in four phases:

1. **Backup** the foreign store's active entry (or note that it is absent).
2. **Install** the profile's credential.
3. **Execute** the child process.
4. **Restore** the backup, on every exit path out of phases 2-3.

A failure in phase 1 or 2 leaves the store as it was and the child is never
started. A failure in phase 4 raises
:class:`~credvault.exceptions.RestoreFailedError`, which carries the child's
outcome so that both are reported.
"""

from __future__ import annotations

import contextlib
import getpass
import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Iterator, Mapping, Optional, Sequence

import keyring
from keyring.errors import KeyringError, PasswordDeleteError
from pydantic import ValidationError

from credvault.auth.oauth import parse_expiry, to_epoch_ms
from credvault.exceptions import (
    BackupFailedError,
    ForeignStoreError,
    InstallFailedError,
    RestoreFailedError,
    VaultError,
)
from credvault.models import ApiKey, CredentialValue, ForeignStoreBackup, OAuthToken, ProcessOutcome
from credvault.process import deferred_signals, run_process

logger = logging.getLogger(__name__)

CLAUDE_CODE_SERVICE = "Claude Code-credentials"
CLAUDE_CODE_ENVELOPE = "claudeAiOauth"
DEFAULT_SCOPES = ["user:inference", "user:profile", "user:sessions:claude_code"]

_TOKEN_FIELDS = frozenset({"accessToken", "refreshToken", "expiresAt"})

Runner = Callable[[Sequence[str], Optional[Mapping[str, str]]], ProcessOutcome]


class ForeignStore(ABC):
    """The single active-credential slot of another program's store."""

    @abstractmethod
    def get_active(self) -> Optional[CredentialValue]:
        """Return the active credential, or ``None`` if the slot is empty."""

    @abstractmethod
    def set_active(self, value: CredentialValue) -> None:
        """Make *value* the active credential."""

    @abstractmethod
    def clear_active(self) -> None:
        """Empty the slot."""


class KeyringForeignStore(ForeignStore):
    """Claude Code's keychain entry.

    The entry holds a JSON document whose ``claudeAiOauth`` object carries
    ``accessToken``, ``refreshToken``, ``expiresAt`` (epoch milliseconds)
    and extras such as ``scopes`` and ``subscriptionType``. Only that object
    is read or replaced; other top-level keys are left alone.

    Args:
        service: Keyring service name of the entry.
        account: Keyring account; defaults to the current user name.
    """

    def __init__(self, service: str = CLAUDE_CODE_SERVICE, account: Optional[str] = None) -> None:
        self._service = service
        self._account = account or getpass.getuser()

    def get_active(self) -> Optional[CredentialValue]:
        document = self._read_document()
        if document is None:
            return None
        entry = document.get(CLAUDE_CODE_ENVELOPE)
        if entry is None:
            return None
        if not isinstance(entry, dict):
            raise ForeignStoreError(f"'{CLAUDE_CODE_ENVELOPE}' in {self._service} is not an object")
        extras = {k: v for k, v in entry.items() if k not in _TOKEN_FIELDS}
        try:
            return OAuthToken(
                access_token=entry["accessToken"],
                refresh_token=entry.get("refreshToken") or None,
                expires_at=parse_expiry(entry["expiresAt"]),
                **extras,
            )
        except (KeyError, ValueError, ValidationError) as exc:
            raise ForeignStoreError(f"Unreadable OAuth entry in {self._service}: {exc}") from exc

    def set_active(self, value: CredentialValue) -> None:
        if isinstance(value, ApiKey):
            raise ForeignStoreError(
                "Claude Code only accepts OAuth credentials; use 'credvault exec' for API key profiles"
            )
        document = self._read_document() or {}
        entry: dict[str, Any] = {
            "accessToken": value.access_token,
            "expiresAt": to_epoch_ms(value.expires_at),
        }
        if value.refresh_token:
            entry["refreshToken"] = value.refresh_token
        entry.update(value.model_extra or {})
        entry.setdefault("scopes", list(DEFAULT_SCOPES))
        document[CLAUDE_CODE_ENVELOPE] = entry
        self._write_document(document)

    def clear_active(self) -> None:
        document = self._read_document()
        if document is None:
            return
        document.pop(CLAUDE_CODE_ENVELOPE, None)
        if document:
            self._write_document(document)
            return
        try:
            keyring.delete_password(self._service, self._account)
        except PasswordDeleteError:
            pass
        except KeyringError as exc:
            raise ForeignStoreError(f"Cannot delete {self._service} entry: {exc}") from exc

    def _read_document(self) -> Optional[dict[str, Any]]:
        try:
            raw = keyring.get_password(self._service, self._account)
        except KeyringError as exc:
            raise ForeignStoreError(f"Cannot read {self._service} entry: {exc}") from exc
        if raw is None:
            return None
        try:
            document = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ForeignStoreError(f"{self._service} entry is not valid JSON") from exc
        if not isinstance(document, dict):
            raise ForeignStoreError(f"{self._service} entry is not a JSON object")
        return document

    def _write_document(self, document: dict[str, Any]) -> None:
        try:
            keyring.set_password(self._service, self._account, json.dumps(document))
        except KeyringError as exc:
            raise ForeignStoreError(f"Cannot write {self._service} entry: {exc}") from exc


class SessionSwitchController:
    """Backup, install, execute, restore against a :class:`ForeignStore`.

    Args:
        foreign_store: The store to switch.
        runner: Executes the child; defaults to
            :func:`~credvault.process.run_process`.
    """

    def __init__(self, foreign_store: ForeignStore, runner: Runner = run_process) -> None:
        self._store = foreign_store
        self._runner = runner

    @contextlib.contextmanager
    def switched(self, credential: CredentialValue) -> Iterator[ForeignStoreBackup]:
        """Hold *credential* in the foreign store for the duration of the block.

        SIGINT, SIGTERM and SIGHUP received from the install to the end of
        the restore are held (or forwarded to a running child) and take
        effect only once the store holds the previous entry again.

        Raises:
            BackupFailedError: The store could not be read. Nothing changed.
            InstallFailedError: *credential* could not be written. The block
                does not run and no restore is attempted.
            RestoreFailedError: The previous entry could not be put back.
        """
        try:
            backup = ForeignStoreBackup(value=self._store.get_active())
        except (VaultError, OSError) as exc:
            raise BackupFailedError(f"Could not back up the active credential: {exc}") from exc

        with deferred_signals():
            try:
                self._store.set_active(credential)
            except (VaultError, OSError) as exc:
                raise InstallFailedError(f"Could not install the profile credential: {exc}") from exc
            logger.debug("Installed profile credential (previous entry %s)", "absent" if backup.absent else "saved")

            execution_error: Optional[BaseException] = None
            try:
                yield backup
            except BaseException as exc:
                execution_error = exc
                raise
            finally:
                self._restore(backup, execution_error)

    def run(
        self,
        credential: CredentialValue,
        argv: Sequence[str],
        env: Optional[Mapping[str, str]] = None,
    ) -> ProcessOutcome:
        """Run *argv* with *credential* switched in and return its outcome unchanged."""
        outcome: Optional[ProcessOutcome] = None
        try:
            with self.switched(credential):
                outcome = self._runner(argv, env)
                return outcome
        except RestoreFailedError as exc:
            if exc.outcome is None:
                exc.outcome = outcome
            raise

    def _restore(self, backup: ForeignStoreBackup, execution_error: Optional[BaseException]) -> None:
        try:
            if backup.value is None:
                self._store.clear_active()
            else:
                self._store.set_active(backup.value)
        except (VaultError, OSError) as exc:
            raise RestoreFailedError(
                f"Could not restore the previous credential: {exc}",
                execution_error=execution_error,
            ) from exc
        logger.debug("Restored previous foreign credential")
