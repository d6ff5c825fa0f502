"""Typer application and CLI entry point for credvault.

This module wires the root Typer application, registers the built-in
commands, and configures output and logging in :func:`main_callback`.

The :func:`main` function is the console-script entry point declared in
``pyproject.toml``. It installs a SIGINT handler, invokes the Typer app,
maps any :class:`~credvault.exceptions.VaultError` that escapes a command
to its exit code, and writes a crash log for anything unexpected.

See Also:
    :mod:`credvault.commands`: The command implementations.
    :mod:`credvault.output`: Output formatting initialised in :func:`main_callback`.
"""

from __future__ import annotations

import logging
import signal
import sys
import traceback
from datetime import datetime
from typing import Any, Optional

import typer
from rich.console import Console
from rich.logging import RichHandler

from credvault import __version__
from credvault.exit_codes import EXIT_GENERIC_FAILURE, EXIT_INTERRUPTED

app = typer.Typer(
    name="credvault",
    help="Directory-aware credential vault for the Anthropic API.",
    no_args_is_help=True,
    add_completion=True,
    rich_markup_mode="rich",
)

# ------------------------------------------------------------------ #
# Commands
# ------------------------------------------------------------------ #

from credvault.commands.cache import cache_app  # noqa: E402
from credvault.commands.import_ import import_app  # noqa: E402
from credvault.commands.profiles import (  # noqa: E402
    add_command,
    default_command,
    list_command,
    refresh_command,
    remove_command,
    show_command,
)
from credvault.commands.project import detect_command, init_command  # noqa: E402
from credvault.commands.run import (  # noqa: E402
    RUN_CONTEXT_SETTINGS,
    delegate_command,
    env_command,
    exec_command,
)

app.command("add")(add_command)
app.command("list")(list_command)
app.command("show")(show_command)
app.command("remove")(remove_command)
app.command("default")(default_command)
app.command("refresh")(refresh_command)
app.command("detect")(detect_command)
app.command("init")(init_command)
app.command("exec", context_settings=RUN_CONTEXT_SETTINGS)(exec_command)
app.command("env")(env_command)
app.command("delegate", context_settings=RUN_CONTEXT_SETTINGS)(delegate_command)
app.add_typer(import_app, name="import", help="Import credentials obtained elsewhere.")
app.add_typer(cache_app, name="cache", help="Resolution cache maintenance.")


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"credvault {__version__}")
        raise typer.Exit()


_log_handler: Optional[logging.Handler] = None


def _configure_logging(verbose: bool) -> None:
    """Send ``credvault.*`` log records to stderr through Rich.

    WARNING and above by default, everything with ``--verbose``. The handler
    is rebuilt on each invocation so it always targets the current stderr.
    """
    global _log_handler
    logger = logging.getLogger("credvault")
    if _log_handler is not None:
        logger.removeHandler(_log_handler)
    _log_handler = RichHandler(
        console=Console(file=sys.stderr, stderr=True),
        show_time=False,
        show_path=False,
    )
    logger.addHandler(_log_handler)
    logger.setLevel(logging.DEBUG if verbose else logging.WARNING)


@app.callback()
def main_callback(
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        callback=_version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
    json_output: bool = typer.Option(False, "--json", help="JSON output format."),
    plain_output: bool = typer.Option(False, "--plain", help="Plain text output."),
    no_color: bool = typer.Option(False, "--no-color", help="Disable color output."),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="Suppress non-essential output."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug output."),
    force: bool = typer.Option(False, "--force", "-f", help="Skip confirmations."),
) -> None:
    """Root callback executed before every sub-command.

    Installs the global :class:`~credvault.output.OutputManager`, configures
    logging, and stores shared flags in ``ctx.obj``. A ``services`` entry
    already present in ``ctx.obj`` is kept, which lets tests inject fakes.
    """
    from credvault.output import OutputFormat, OutputManager, set_output

    fmt = OutputFormat.AUTO
    if json_output:
        fmt = OutputFormat.JSON
    elif plain_output:
        fmt = OutputFormat.PLAIN

    set_output(OutputManager(format=fmt, no_color=no_color, quiet=quiet, verbose=verbose))
    _configure_logging(verbose)

    ctx.ensure_object(dict)
    ctx.obj["force"] = force
    ctx.obj["verbose"] = verbose


def _setup_signal_handlers() -> None:
    """Install a SIGINT handler so Ctrl-C exits cleanly."""

    def _handler(signum: int, frame: Any) -> None:  # noqa: ANN401
        sys.stderr.write("\nCancelled.\n")
        sys.exit(EXIT_INTERRUPTED)

    signal.signal(signal.SIGINT, _handler)


def _write_crash_log() -> str:
    """Write the current traceback under the data directory and return its path."""
    from credvault.config import get_data_dir

    logs_dir = get_data_dir() / "logs"
    logs_dir.mkdir(parents=True, exist_ok=True)
    timestamp = datetime.now().strftime("%Y%m%d-%H%M%S")
    log_path = logs_dir / f"crash-{timestamp}.log"
    log_path.write_text(traceback.format_exc(), encoding="utf-8")
    return str(log_path)


def main() -> None:
    """CLI entry point invoked by the ``credvault`` console script.

    Unhandled :class:`~credvault.exceptions.VaultError` instances cause a
    clean exit with the error's ``exit_code``. All other exceptions produce
    a crash log and a generic failure exit.

    Raises:
        SystemExit: Always raised (either by Typer or explicitly).
    """
    _setup_signal_handlers()
    try:
        app()
    except SystemExit:
        raise
    except KeyboardInterrupt:
        sys.stderr.write("\nCancelled.\n")
        sys.exit(EXIT_INTERRUPTED)
    except Exception as exc:
        from credvault.commands import report_error
        from credvault.exceptions import VaultError
        from credvault.output import error

        if isinstance(exc, VaultError):
            report_error(exc)
            sys.exit(exc.exit_code)
        log_path = _write_crash_log()
        error(f"Unexpected error. Debug log: {log_path}")
        sys.exit(EXIT_GENERIC_FAILURE)
