"""Exception hierarchy for credvault.

All exceptions inherit from :class:`VaultError`, which carries an
``exit_code`` attribute mapped to a constant from :mod:`credvault.exit_codes`
and an optional ``hint`` -- a suggested corrective command that the CLI
prints after the error message. The top-level error handler in
:func:`credvault.app.main` catches ``VaultError`` and exits with the
appropriate code, while unexpected exceptions produce a crash log and exit
with :data:`EXIT_GENERIC_FAILURE`.

Subclass hierarchy::

    VaultError (exit 1)
    +-- InvalidUsageError               (exit 2)
    |   +-- InvalidProfileNameError
    |   +-- InvalidApiKeyError
    |   +-- InvalidTokenBundleError
    +-- ProfileNotFoundError            (exit 4)
    +-- DanglingProfileReferenceError   (exit 4)
    +-- NoProfileResolvedError          (exit 4)
    +-- ProfileExistsError              (exit 5)
    +-- ConfigCorruptError              (exit 6)
    +-- CredentialMissingError          (exit 3)
    +-- CredentialExpiredError          (exit 3)
    +-- RefreshDeferred                 (warning, never raised)
    +-- TokenExchangeError              (exit 3)
    +-- PartialRemovalError             (exit 1)
    +-- SecretBackendError              (exit 7)
    +-- ForeignStoreError               (exit 10)
    +-- SessionSwitchError              (exit 10)
    |   +-- BackupFailedError
    |   +-- InstallFailedError
    |   +-- RestoreFailedError
    +-- CommandNotFoundError            (exit 127)
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

from credvault.exit_codes import (
    EXIT_COMMAND_NOT_FOUND,
    EXIT_CONFIG_CORRUPT,
    EXIT_CONFLICT,
    EXIT_CREDENTIAL_FAILURE,
    EXIT_GENERIC_FAILURE,
    EXIT_INVALID_USAGE,
    EXIT_NOT_FOUND,
    EXIT_SECRET_BACKEND,
    EXIT_SESSION_SWITCH,
)

if TYPE_CHECKING:
    from credvault.models import ProcessOutcome


class VaultError(Exception):
    """Base exception for all credvault errors.

    Every subclass sets a class-level ``exit_code`` corresponding to one of
    the constants in :mod:`credvault.exit_codes`. The entry point catches
    this exception type, prints the message and hint, and calls
    ``sys.exit(exc.exit_code)``.

    Args:
        message: Human-readable error description printed to stderr.
        exit_code: Optional override for the class-level exit code.
        hint: Optional next-step suggestion (usually a command to run).
    """

    exit_code: int = EXIT_GENERIC_FAILURE

    def __init__(
        self,
        message: str,
        exit_code: int | None = None,
        hint: str | None = None,
    ):
        super().__init__(message)
        if exit_code is not None:
            self.exit_code = exit_code
        self.hint = hint


class InvalidUsageError(VaultError):
    """Raised for invalid CLI arguments, settings, or user input."""

    exit_code = EXIT_INVALID_USAGE


class InvalidProfileNameError(InvalidUsageError):
    """Raised when a profile name is empty, too long, or has illegal characters."""


class InvalidApiKeyError(InvalidUsageError):
    """Raised when an API key does not look like an Anthropic API key."""

    def __init__(self, message: str = "Invalid API key format (expected 'sk-ant-...')"):
        super().__init__(message)


class InvalidTokenBundleError(InvalidUsageError):
    """Raised when an imported OAuth token bundle is malformed or already expired."""


class ProfileNotFoundError(VaultError):
    """Raised when a named profile does not exist."""

    exit_code = EXIT_NOT_FOUND

    def __init__(self, name: str):
        super().__init__(
            f"Profile '{name}' not found",
            hint="List profiles: credvault list",
        )
        self.name = name


class DanglingProfileReferenceError(VaultError):
    """Raised when a marker file names a profile that does not exist."""

    exit_code = EXIT_NOT_FOUND

    def __init__(self, name: str, marker_path: str):
        if name:
            message = f"Profile '{name}' named in {marker_path} does not exist"
            hint = f"Create it: credvault add {name}  (or edit {marker_path})"
        else:
            message = f"Marker file {marker_path} is empty"
            hint = "Point it at a profile: credvault init <profile>"
        super().__init__(message, hint=hint)
        self.name = name
        self.marker_path = marker_path


class NoProfileResolvedError(VaultError):
    """Raised by the CLI when neither a flag, a marker, nor a default names a profile."""

    exit_code = EXIT_NOT_FOUND

    def __init__(self) -> None:
        super().__init__(
            "No profile detected and no default profile set",
            hint="Run 'credvault init <profile>' here or 'credvault default <profile>'",
        )


class ProfileExistsError(VaultError):
    """Raised when creating a profile whose name is already taken."""

    exit_code = EXIT_CONFLICT

    def __init__(self, name: str):
        super().__init__(
            f"Profile '{name}' already exists",
            hint=f"Remove it first: credvault remove {name}",
        )
        self.name = name


class ConfigCorruptError(VaultError):
    """Raised when the persisted profile configuration cannot be parsed.

    The file is never reset automatically; the user has to repair or move
    it.
    """

    exit_code = EXIT_CONFIG_CORRUPT


class CredentialMissingError(VaultError):
    """Raised when a profile record exists but the secret store has no credential for it."""

    exit_code = EXIT_CREDENTIAL_FAILURE

    def __init__(self, name: str, detail: str = "no entry in the secret store"):
        super().__init__(
            f"Credential for profile '{name}' is missing: {detail}",
            hint=f"Re-add it: credvault remove {name} && credvault add {name}",
        )
        self.name = name


class CredentialExpiredError(VaultError):
    """Raised when an OAuth token is past expiry and could not be refreshed."""

    exit_code = EXIT_CREDENTIAL_FAILURE

    def __init__(self, name: str, reason: str):
        super().__init__(
            f"OAuth token for profile '{name}' has expired and could not be refreshed: {reason}",
            hint=f"Log in again (claude /login), then: credvault import oauth --profile {name}",
        )
        self.name = name
        self.reason = reason


class RefreshDeferred(VaultError):
    """Non-fatal: a refresh failed but the current token is still usable.

    The OAuth lifecycle manager never raises this; it hands an instance to
    its warning callback and serves the stale token.
    """

    exit_code = EXIT_CREDENTIAL_FAILURE

    def __init__(self, name: str, reason: str):
        super().__init__(
            f"Could not refresh OAuth token for profile '{name}' ({reason}); "
            "using the current token until it expires",
        )
        self.name = name
        self.reason = reason


class TokenExchangeError(VaultError):
    """Raised when the refresh-token exchange fails or returns an unusable response."""

    exit_code = EXIT_CREDENTIAL_FAILURE


class PartialRemovalError(VaultError):
    """Raised when only one of the secret-store and config removals succeeded."""

    def __init__(self, name: str, removed: str, failed: str, cause: Exception):
        super().__init__(
            f"Profile '{name}' was only partially removed: {removed} removed, "
            f"but removing {failed} failed: {cause}",
        )
        self.name = name
        self.removed = removed
        self.failed = failed


class SecretBackendError(VaultError):
    """Raised when the platform secret store fails or is unavailable."""

    exit_code = EXIT_SECRET_BACKEND


class ForeignStoreError(VaultError):
    """Raised when the foreign (delegated program's) credential store cannot be read or written."""

    exit_code = EXIT_SESSION_SWITCH


class SessionSwitchError(VaultError):
    """Base class for session-switch phase failures."""

    exit_code = EXIT_SESSION_SWITCH


class BackupFailedError(SessionSwitchError):
    """Phase 1: the foreign store's current entry could not be captured. Nothing was changed."""


class InstallFailedError(SessionSwitchError):
    """Phase 2: the profile credential could not be written. The child was not started."""


class RestoreFailedError(SessionSwitchError):
    """Phase 4: the foreign store could not be put back to its previous entry.

    Reported in addition to whatever the child process produced: ``outcome``
    holds the child's result when it ran to completion, and
    ``execution_error`` holds the exception that interrupted execution, if
    any.
    """

    def __init__(
        self,
        message: str,
        outcome: Optional["ProcessOutcome"] = None,
        execution_error: Optional[BaseException] = None,
    ):
        super().__init__(
            message,
            hint="The delegated program may now use the wrong account; log in again with: claude /login",
        )
        self.outcome = outcome
        self.execution_error = execution_error


class CommandNotFoundError(VaultError):
    """Raised when the program to execute does not exist or is not executable."""

    exit_code = EXIT_COMMAND_NOT_FOUND
