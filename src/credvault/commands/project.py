"""Project commands -- detect and init.

``credvault init <profile>`` pins the current directory (and everything
below it) to a profile by writing a ``.claude-profile`` marker.
``credvault detect`` reports which profile applies here.
"""

from __future__ import annotations

from pathlib import Path

import typer

from credvault.commands import get_services, handle_errors
from credvault.output import OutputFormat, get_output, info, print_data, print_json, success, suggest


def detect_command(
    ctx: typer.Context,
    no_cache: bool = typer.Option(
        False, "--no-cache", help="Ignore cached results and walk the directory tree."
    ),
) -> None:
    """Print the profile that applies to the current directory.

    Example::

        $ credvault detect
        work
    """
    with handle_errors():
        services = get_services(ctx)
        cwd = Path.cwd()
        name = services.resolver.resolve(cwd, use_cache=not no_cache)

        if get_output().format == OutputFormat.JSON:
            marker = services.resolver.find_marker(cwd) if name is not None else None
            print_json({"profile": name, "marker": str(marker) if marker else None})
            return
        if name is not None:
            print_data(name)
            return

        info("No profile detected for this directory and no default profile set.")
        names = [record.name for record in services.records.list()]
        if names:
            info(f"Available profiles: {', '.join(names)}")
            suggest(f"Pin one here: credvault init {names[0]}")
            suggest(f"Or set a default: credvault default {names[0]}")
        else:
            suggest("Add a profile first: credvault add <name>")


def init_command(
    ctx: typer.Context,
    name: str = typer.Argument(help="Profile to pin this directory to."),
) -> None:
    """Write a .claude-profile marker in the current directory."""
    with handle_errors():
        services = get_services(ctx)
        marker, gitignored = services.resolver.init_marker(Path.cwd(), name)
        success(f"Pinned {marker.parent} to profile '{name}'")
        if gitignored:
            info(f"Added {marker.name} to .gitignore")
