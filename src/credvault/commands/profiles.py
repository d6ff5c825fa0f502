"""Profile commands -- add, list, show, remove, default, refresh.

These commands manage the named profiles themselves. None of them prints
secret material: ``list`` and ``show`` work from the record store alone,
and token state comes from the expiry mirrored into each OAuth record.
"""

from __future__ import annotations

from typing import Any, Optional

import typer

from credvault.auth.oauth import expiry_state
from credvault.commands import get_services, handle_errors, is_forced
from credvault.models import ApiKey, ProfileRecord, TokenState
from credvault.output import info, print_record, print_table, success, suggest

_STATE_LABELS = {
    TokenState.VALID: "valid",
    TokenState.EXPIRING_SOON: "expires soon",
    TokenState.EXPIRED: "EXPIRED",
}


def _fmt_time(value: Any) -> str:
    return value.strftime("%Y-%m-%d %H:%M UTC") if value is not None else "-"


def _status(record: ProfileRecord, services: Any) -> str:
    if record.expires_at is None:
        return "-"
    state = expiry_state(
        record.expires_at, services.clock(), services.settings.safety_margin
    )
    return _STATE_LABELS[state]


def add_command(
    ctx: typer.Context,
    name: str = typer.Argument(help="Profile name (letters, digits, '-' and '_')."),
    description: Optional[str] = typer.Option(
        None, "--description", "-d", help="Free-form description."
    ),
) -> None:
    """Add a profile holding an API key.

    The key is read from a hidden prompt, never from the command line, so
    it does not end up in shell history.

    Example::

        credvault add work -d "Work account"
    """
    from credvault.config import validate_api_key, validate_profile_name
    from credvault.exceptions import ProfileExistsError

    with handle_errors():
        services = get_services(ctx)
        validate_profile_name(name)
        if services.records.exists(name):
            raise ProfileExistsError(name)
        key = typer.prompt("API key", hide_input=True)
        record = services.repository.store(
            name,
            ApiKey(secret=validate_api_key(key)),
            description=description,
            create_only=True,
        )
        success(f"Profile '{record.name}' added")
        if services.records.get_default() is None:
            suggest(f"Make it the default: credvault default {record.name}")


def list_command(ctx: typer.Context) -> None:
    """List profiles with their type, default marker, and token status."""
    with handle_errors():
        services = get_services(ctx)
        config = services.records.load()
        if not config.profiles:
            info("No profiles yet.")
            suggest("Add one: credvault add <name>")
            return
        rows = [
            [
                record.name,
                str(record.credential_type),
                record.description or "",
                "*" if record.name == config.default_profile else "",
                _fmt_time(record.last_used_at),
                _status(record, services),
            ]
            for record in config.profiles
        ]
        print_table(
            ["Name", "Type", "Description", "Default", "Last used", "Status"],
            rows,
            title="Profiles",
        )


def show_command(
    ctx: typer.Context,
    name: str = typer.Argument(help="Profile name."),
) -> None:
    """Show one profile's details."""
    with handle_errors():
        services = get_services(ctx)
        record = services.records.get(name)
        data: dict[str, Any] = {
            "name": record.name,
            "type": str(record.credential_type),
            "description": record.description,
            "default": record.name == services.records.get_default(),
            "created": _fmt_time(record.created_at),
            "last_used": _fmt_time(record.last_used_at),
        }
        if record.expires_at is not None:
            data["expires"] = _fmt_time(record.expires_at)
            data["status"] = _status(record, services)
        for key, value in record.metadata.items():
            data[key] = value
        print_record(data, title=f"Profile {record.name}")


def remove_command(
    ctx: typer.Context,
    name: str = typer.Argument(help="Profile to remove."),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip the confirmation prompt."),
) -> None:
    """Remove a profile and its stored secrets."""
    with handle_errors():
        services = get_services(ctx)
        services.records.get(name)
        if not (yes or is_forced(ctx)):
            if not typer.confirm(f"Remove profile '{name}' and its credentials?"):
                info("Cancelled.")
                raise typer.Exit()
        try:
            services.repository.delete(name)
        finally:
            services.cache.clear()
        success(f"Profile '{name}' removed")


def default_command(
    ctx: typer.Context,
    name: str = typer.Argument(help="Profile to use when no marker file applies."),
) -> None:
    """Set the default profile."""
    with handle_errors():
        services = get_services(ctx)
        services.records.set_default(name)
        services.cache.clear()
        success(f"Default profile set to '{name}'")


def refresh_command(
    ctx: typer.Context,
    name: str = typer.Argument(help="OAuth profile to check."),
) -> None:
    """Refresh an OAuth profile's token if it is expiring, and report its state."""
    with handle_errors():
        services = get_services(ctx)
        value = services.oauth.ensure_fresh(name)
        if isinstance(value, ApiKey):
            info(f"Profile '{name}' holds an API key; API keys do not expire.")
            return
        state = services.oauth.state_of(value)
        print_record(
            {"name": name, "expires": _fmt_time(value.expires_at), "status": _STATE_LABELS[state]},
            title=f"Token {name}",
        )
