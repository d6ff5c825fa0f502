"""Built-in CLI sub-commands for credvault.

* :mod:`~credvault.commands.profiles` -- add, list, show, remove, default,
  refresh.
* :mod:`~credvault.commands.project` -- detect and init (marker files).
* :mod:`~credvault.commands.run` -- exec, env, delegate.
* :mod:`~credvault.commands.import_` -- the ``import`` group.
* :mod:`~credvault.commands.cache` -- the ``cache`` group.

Single commands are plain callbacks registered on the root app; groups are
:class:`typer.Typer` sub-applications. This module holds what they share:
:func:`handle_errors` turns a :class:`~credvault.exceptions.VaultError`
into a printed error plus hint and the matching exit code, and
:func:`get_services` returns the invocation's component graph.
"""

from __future__ import annotations

import contextlib
from typing import Iterator

import typer

from credvault.exceptions import VaultError
from credvault.output import error, suggest, warning
from credvault.services import Services


def report_error(exc: VaultError) -> None:
    error(str(exc))
    if exc.hint:
        suggest(exc.hint)


@contextlib.contextmanager
def handle_errors() -> Iterator[None]:
    """Report a :class:`VaultError` and exit with its code."""
    try:
        yield
    except VaultError as exc:
        report_error(exc)
        raise typer.Exit(code=exc.exit_code) from None


def get_services(ctx: typer.Context) -> Services:
    """Return the :class:`~credvault.services.Services` for this invocation.

    Built on first use from the environment's settings, unless the caller
    supplied one in ``ctx.obj["services"]``.
    """
    from credvault.config import load_settings

    root = ctx.find_root()
    root.ensure_object(dict)
    services = root.obj.get("services")
    if services is None:
        services = Services(
            load_settings(), on_deferred=lambda deferred: warning(str(deferred))
        )
        root.obj["services"] = services
        root.call_on_close(services.close)
    return services


def is_forced(ctx: typer.Context) -> bool:
    obj = ctx.find_root().obj
    return bool(obj.get("force", False)) if isinstance(obj, dict) else False
