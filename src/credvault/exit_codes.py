"""Numeric process exit codes following `clig.dev <https://clig.dev/>`_ conventions.

Each constant maps to a specific error category and is referenced by the
corresponding :class:`~credvault.exceptions.VaultError` subclass.
Shell wrappers can inspect the exit code to determine the failure class
without parsing stderr.

When ``credvault exec`` or ``credvault delegate`` runs a child process, the
child's own exit status is forwarded instead, so these codes only apply to
failures inside credvault itself.

Example::

    $ credvault exec -p missing -- env
    $ echo $?
    4   # EXIT_NOT_FOUND -- no such profile
"""

EXIT_SUCCESS = 0
"""The command completed successfully."""

EXIT_GENERIC_FAILURE = 1
"""An unclassified error occurred."""

EXIT_INVALID_USAGE = 2
"""The command was invoked with invalid arguments or input."""

EXIT_CREDENTIAL_FAILURE = 3
"""A credential was missing, expired, or could not be refreshed."""

EXIT_NOT_FOUND = 4
"""A named profile (or a profile named by a marker file) does not exist."""

EXIT_CONFLICT = 5
"""A profile with the requested name already exists."""

EXIT_CONFIG_CORRUPT = 6
"""The persisted profile configuration could not be parsed."""

EXIT_SECRET_BACKEND = 7
"""The platform secret store failed or is unavailable."""

EXIT_SESSION_SWITCH = 10
"""A foreign credential store could not be backed up, switched, or restored."""

EXIT_COMMAND_NOT_FOUND = 127
"""The program to execute could not be found (shell convention)."""

EXIT_INTERRUPTED = 130
"""Interrupted by SIGINT (shell convention: 128 + 2)."""
