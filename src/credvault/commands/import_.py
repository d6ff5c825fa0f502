"""Import commands -- bring externally obtained OAuth tokens into a profile.

``credvault import oauth`` copies the current Claude Code login (or a JSON
token bundle from a file or stdin) into a profile. credvault never runs an
OAuth authorization flow itself; log in with ``claude /login`` first.
"""

from __future__ import annotations

import json
import sys
from datetime import date
from pathlib import Path
from typing import Any, Optional

import typer

from credvault.commands import get_services, handle_errors
from credvault.exceptions import ForeignStoreError, InvalidTokenBundleError
from credvault.models import ApiKey
from credvault.output import info, success, suggest

import_app = typer.Typer(no_args_is_help=True)


def _read_bundle_file(source: str) -> dict[str, Any]:
    try:
        text = sys.stdin.read() if source == "-" else Path(source).read_text(encoding="utf-8")
    except OSError as exc:
        raise InvalidTokenBundleError(f"Cannot read token bundle {source}: {exc}") from exc
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise InvalidTokenBundleError(f"Token bundle is not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise InvalidTokenBundleError("Token bundle must be a JSON object")
    return data


@import_app.command("oauth")
def import_oauth(
    ctx: typer.Context,
    profile: str = typer.Option("default", "--profile", "-p", help="Profile to import into."),
    file: Optional[str] = typer.Option(
        None, "--file", "-f", help="Read a JSON token bundle from this file ('-' for stdin)."
    ),
    description: Optional[str] = typer.Option(
        None, "--description", "-d", help="Profile description."
    ),
) -> None:
    """Import an OAuth token into a profile, replacing any existing credential.

    Example::

        credvault import oauth --profile personal
        credvault import oauth -p ci --file token.json
    """
    with handle_errors():
        services = get_services(ctx)
        today = date.today().isoformat()

        if file is not None:
            bundle = _read_bundle_file(file)
            source = "stdin" if file == "-" else file
            default_description = f"Imported from {source} on {today}"
        else:
            active = services.foreign_store.get_active()
            if active is None or isinstance(active, ApiKey):
                raise ForeignStoreError(
                    "No Claude Code login found", hint="Log in first: claude /login"
                )
            bundle = active.model_dump(mode="json", exclude={"kind"})
            subscription = bundle.get("subscriptionType") or "unknown"
            default_description = f"Imported from Claude Code ({subscription}) on {today}"

        record = services.oauth.import_bundle(
            profile, bundle, description=description or default_description
        )
        services.cache.clear()
        success(f"Imported OAuth token into profile '{record.name}'")
        if record.expires_at is not None:
            info(f"Token expires {record.expires_at.strftime('%Y-%m-%d %H:%M UTC')}")
        if services.records.get_default() is None:
            suggest(f"Make it the default: credvault default {record.name}")
