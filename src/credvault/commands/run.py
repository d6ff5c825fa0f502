"""Run commands -- exec, env, delegate.

All three resolve a profile the same way (``--profile`` flag, then the
nearest ``.claude-profile`` marker, then the default), make sure an OAuth
token is fresh, and record the profile as used.

* ``exec`` runs a command with the credential in ``ANTHROPIC_API_KEY``.
* ``env`` prints shell ``export`` lines for ``eval``.
* ``delegate`` additionally swaps the credential into Claude Code's own
  login for the duration of the command and restores the previous login
  afterwards, whatever happens.

``exec`` and ``delegate`` exit with the child's status (``128 + N`` when
the child is killed by signal N).
"""

from __future__ import annotations

import enum
import os
import shlex
from pathlib import Path
from typing import Optional

import typer

from credvault.commands import get_services, handle_errors, report_error
from credvault.exceptions import NoProfileResolvedError, RestoreFailedError, VaultError
from credvault.exit_codes import EXIT_SESSION_SWITCH
from credvault.models import ApiKey, CredentialValue
from credvault.output import debug, print_data
from credvault.services import Services

RUN_CONTEXT_SETTINGS = {"allow_interspersed_args": False}


class Shell(str, enum.Enum):
    BASH = "bash"
    ZSH = "zsh"
    FISH = "fish"


def _detect_shell() -> Shell:
    name = Path(os.environ.get("SHELL", "")).name
    try:
        return Shell(name)
    except ValueError:
        return Shell.BASH


def _resolve(services: Services, profile: Optional[str]) -> tuple[str, CredentialValue]:
    name = services.resolver.select_profile(profile, Path.cwd())
    if name is None:
        raise NoProfileResolvedError()
    value = services.oauth.ensure_fresh(name)
    services.repository.touch_last_used(name)
    debug(f"Using profile '{name}'")
    return name, value


def _child_env(services: Services, value: CredentialValue) -> dict[str, str]:
    env = dict(os.environ)
    env[services.settings.env_var] = value.bearer
    return env


def exec_command(
    ctx: typer.Context,
    command: list[str] = typer.Argument(help="Command and arguments to run."),
    profile: Optional[str] = typer.Option(None, "--profile", "-p", help="Profile to use."),
) -> None:
    """Run a command with the resolved credential in its environment.

    Example::

        credvault exec -- claude
        credvault exec -p work -- python script.py
    """
    with handle_errors():
        services = get_services(ctx)
        _, value = _resolve(services, profile)
        outcome = services.runner(command, _child_env(services, value))
    raise typer.Exit(code=outcome.exit_status)


def env_command(
    ctx: typer.Context,
    profile: Optional[str] = typer.Option(None, "--profile", "-p", help="Profile to use."),
    shell: Optional[Shell] = typer.Option(
        None, "--shell", help="Shell syntax to print (default: from $SHELL)."
    ),
) -> None:
    """Print export lines for the resolved credential.

    Example::

        eval "$(credvault env)"
    """
    with handle_errors():
        services = get_services(ctx)
        name, value = _resolve(services, profile)
        var = services.settings.env_var
        quoted = shlex.quote(value.bearer)
        print_data(f"# Profile: {name}")
        if (shell or _detect_shell()) is Shell.FISH:
            print_data(f"set -gx {var} {quoted}")
        else:
            print_data(f"export {var}={quoted}")


def delegate_command(
    ctx: typer.Context,
    command: list[str] = typer.Argument(help="Command and arguments to run."),
    profile: Optional[str] = typer.Option(None, "--profile", "-p", help="Profile to use."),
) -> None:
    """Run a command with the profile switched into Claude Code's login.

    OAuth profiles replace the active Claude Code login while the command
    runs; the previous login is restored afterwards. API key profiles are
    passed through the environment only.
    """
    with handle_errors():
        services = get_services(ctx)
        name, value = _resolve(services, profile)
        env = _child_env(services, value)
        if isinstance(value, ApiKey):
            debug(f"Profile '{name}' holds an API key; running without a session switch")
            outcome = services.runner(command, env)
        else:
            try:
                outcome = services.session.run(value, command, env)
            except RestoreFailedError as exc:
                report_error(exc)
                failure = exc.execution_error
                if isinstance(failure, VaultError):
                    report_error(failure)
                    raise typer.Exit(code=failure.exit_code) from None
                if failure is not None:
                    raise failure
                if exc.outcome is not None and exc.outcome.exit_status != 0:
                    raise typer.Exit(code=exc.outcome.exit_status) from None
                raise typer.Exit(code=EXIT_SESSION_SWITCH) from None
    raise typer.Exit(code=outcome.exit_status)
