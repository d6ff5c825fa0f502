"""Cache commands -- inspect and clear the directory resolution cache."""

from __future__ import annotations

import typer

from credvault.commands import get_services, handle_errors
from credvault.output import print_record, success

cache_app = typer.Typer(no_args_is_help=True)


@cache_app.command("show")
def cache_show(ctx: typer.Context) -> None:
    """Show cache location, size, and TTL."""
    with handle_errors():
        print_record(get_services(ctx).cache.stats(), title="Resolution cache")


@cache_app.command("clear")
def cache_clear(ctx: typer.Context) -> None:
    """Forget every cached directory resolution."""
    with handle_errors():
        removed = get_services(ctx).cache.clear()
        success(f"Cleared {removed} cached resolution(s)")
