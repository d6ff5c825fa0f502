"""Shared test fixtures for credvault.

Provides in-memory fakes for every external collaborator (secret backend,
foreign credential store, token exchange, process runner), a controllable
clock, isolated XDG directories, output-state management, and a CLI
invoker wired to the fakes. These fixtures are automatically discovered by
pytest and available to all test modules without explicit imports.
"""

from __future__ import annotations

import logging
import os
import threading
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Mapping, Optional, Sequence

import pytest

from credvault.auth.backend import SecretBackend
from credvault.auth.oauth import OAuthLifecycleManager, TokenExchange
from credvault.auth.repository import CredentialRepository
from credvault.auth.session import ForeignStore
from credvault.cache import ResolutionCache
from credvault.config import ProfileRecordStore
from credvault.exceptions import ForeignStoreError, SecretBackendError, TokenExchangeError
from credvault.models import (
    CacheConfig,
    CredentialValue,
    ProcessOutcome,
    Settings,
    TokenGrant,
)
from credvault.output import OutputFormat, OutputManager, reset_output, set_output
from credvault.services import Services

API_KEY = "sk-ant-REDACTED"
OTHER_API_KEY = "sk-ant-REDACTED"
NOW = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Auto-reset global output state between tests
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _reset_output_between_tests() -> None:
    """Reset the global OutputManager after every test.

    The OutputManager caches references to sys.stdout/sys.stderr at
    creation time. When Typer's CliRunner redirects those streams during
    a test and the test finishes, the cached references become stale.
    """
    yield
    reset_output()


@pytest.fixture(autouse=True)
def _reset_logging_between_tests() -> None:
    """Drop handlers the CLI callback attached to the ``credvault`` logger.

    They write to streams that CliRunner closes after each invocation.
    """
    yield
    logger = logging.getLogger("credvault")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
    logger.setLevel(logging.NOTSET)


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeClock:
    """A clock that only moves when told to."""

    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class MemorySecretBackend(SecretBackend):
    """Secret backend backed by a dict. ``fail`` names operations that raise."""

    name = "memory"

    def __init__(self) -> None:
        self.data: dict[str, str] = {}
        self.fail: set[str] = set()

    def get(self, key: str) -> Optional[str]:
        if "get" in self.fail:
            raise SecretBackendError("get failed")
        return self.data.get(key)

    def set(self, key: str, value: str) -> None:
        if "set" in self.fail:
            raise SecretBackendError("set failed")
        self.data[key] = value

    def delete(self, key: str) -> bool:
        if "delete" in self.fail:
            raise SecretBackendError("delete failed")
        return self.data.pop(key, None) is not None


class FakeForeignStore(ForeignStore):
    """One-slot foreign store that records every call.

    ``fail_get`` fails the backup, ``fail_set_on`` fails the N-th
    ``set_active`` call (1 = install, 2 = restore), ``fail_clear`` fails the
    restore of an absent backup.
    """

    def __init__(self, active: Optional[CredentialValue] = None) -> None:
        self.active = active
        self.calls: list[str] = []
        self.fail_get = False
        self.fail_set_on: Optional[int] = None
        self.fail_clear = False
        self._sets = 0

    def get_active(self) -> Optional[CredentialValue]:
        self.calls.append("get")
        if self.fail_get:
            raise ForeignStoreError("cannot read")
        return self.active

    def set_active(self, value: CredentialValue) -> None:
        self.calls.append("set")
        self._sets += 1
        if self.fail_set_on == self._sets:
            raise ForeignStoreError("cannot write")
        self.active = value

    def clear_active(self) -> None:
        self.calls.append("clear")
        if self.fail_clear:
            raise ForeignStoreError("cannot clear")
        self.active = None


class FakeTokenExchange(TokenExchange):
    """Returns ``grant`` or raises ``error``; counts calls."""

    def __init__(self, grant: Optional[TokenGrant] = None, error: Optional[Exception] = None) -> None:
        self.grant = grant
        self.error = error
        self.calls: list[str] = []

    def exchange(self, refresh_token: str) -> TokenGrant:
        self.calls.append(refresh_token)
        if self.error is not None:
            raise self.error
        if self.grant is None:
            raise TokenExchangeError("no grant configured")
        return self.grant


class FakeRunner:
    """Process runner that records its arguments instead of spawning.

    ``during`` is called while the "child" runs, e.g. to look at the foreign
    store or to raise.
    """

    def __init__(self, returncode: int = 0, during: Optional[Callable[[], None]] = None) -> None:
        self.returncode = returncode
        self.during = during
        self.calls: list[tuple[list[str], dict[str, str]]] = []

    def __call__(
        self, argv: Sequence[str], env: Optional[Mapping[str, str]] = None
    ) -> ProcessOutcome:
        self.calls.append((list(argv), dict(env or {})))
        if self.during is not None:
            self.during()
        return ProcessOutcome(returncode=self.returncode)


# ---------------------------------------------------------------------------
# Real child processes and signals
# ---------------------------------------------------------------------------

# Touches argv[1] once running, then sleeps argv[2] seconds.
SLEEPER = "import pathlib, sys, time; pathlib.Path(sys.argv[1]).touch(); time.sleep(float(sys.argv[2]))"


def signal_when_ready(ready: Path, signum: int, timeout: float = 10.0) -> threading.Thread:
    """Send *signum* to this process from a thread once *ready* exists."""

    def _send() -> None:
        deadline = time.monotonic() + timeout
        while not ready.exists() and time.monotonic() < deadline:
            time.sleep(0.01)
        os.kill(os.getpid(), signum)

    thread = threading.Thread(target=_send, daemon=True)
    thread.start()
    return thread


# ---------------------------------------------------------------------------
# Config isolation fixture
# ---------------------------------------------------------------------------


@pytest.fixture
def isolated_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Isolate configuration to a temporary directory.

    Sets XDG_CONFIG_HOME, XDG_CACHE_HOME, and XDG_DATA_HOME to
    subdirectories of tmp_path so that tests never touch real user
    config, forces the XDG layout on every platform, clears all
    CREDVAULT_* environment variables, and changes the working directory
    to a ``work`` directory under tmp_path.

    Returns:
        The tmp_path root directory for additional file creation.
    """
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "config"))
    monkeypatch.setenv("XDG_CACHE_HOME", str(tmp_path / "cache"))
    monkeypatch.setenv("XDG_DATA_HOME", str(tmp_path / "data"))
    monkeypatch.setattr("credvault.config._is_xdg_platform", lambda: True)

    for var in [
        "CREDVAULT_SECRET_BACKEND",
        "CREDVAULT_TOKEN_URL",
        "CREDVAULT_OAUTH_CLIENT_ID",
        "CREDVAULT_REFRESH_TIMEOUT",
        "CREDVAULT_SAFETY_MARGIN",
        "CREDVAULT_CACHE_TTL",
        "CREDVAULT_ENV_VAR",
    ]:
        monkeypatch.delenv(var, raising=False)

    work = tmp_path / "work"
    work.mkdir()
    monkeypatch.chdir(work)
    return tmp_path


# ---------------------------------------------------------------------------
# Component fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def backend() -> MemorySecretBackend:
    return MemorySecretBackend()


@pytest.fixture
def records(isolated_config: Path) -> ProfileRecordStore:
    return ProfileRecordStore(isolated_config / "config" / "credvault" / "profiles.json")


@pytest.fixture
def repository(backend: MemorySecretBackend, records: ProfileRecordStore) -> CredentialRepository:
    return CredentialRepository(backend, records)


@pytest.fixture
def exchange() -> FakeTokenExchange:
    return FakeTokenExchange()


@pytest.fixture
def deferred() -> list:
    """Collects RefreshDeferred warnings delivered by the OAuth manager."""
    return []


@pytest.fixture
def oauth(
    repository: CredentialRepository,
    exchange: FakeTokenExchange,
    clock: FakeClock,
    deferred: list,
) -> OAuthLifecycleManager:
    return OAuthLifecycleManager(
        repository,
        exchange,
        safety_margin=timedelta(minutes=5),
        clock=clock,
        on_deferred=deferred.append,
    )


@pytest.fixture
def resolution_cache(isolated_config: Path, clock: FakeClock) -> ResolutionCache:
    cache = ResolutionCache(isolated_config / "cache", CacheConfig(ttl_seconds=3600), clock)
    yield cache
    cache.close()


@pytest.fixture
def foreign_store() -> FakeForeignStore:
    return FakeForeignStore()


@pytest.fixture
def runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def services(
    backend: MemorySecretBackend,
    records: ProfileRecordStore,
    exchange: FakeTokenExchange,
    foreign_store: FakeForeignStore,
    runner: FakeRunner,
    resolution_cache: ResolutionCache,
    clock: FakeClock,
    deferred: list,
) -> Services:
    """A Services graph built entirely from fakes."""
    return Services(
        Settings(),
        backend=backend,
        records=records,
        exchange=exchange,
        foreign_store=foreign_store,
        runner=runner,
        cache=resolution_cache,
        clock=clock,
        on_deferred=deferred.append,
    )


# ---------------------------------------------------------------------------
# Output fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def quiet_output() -> OutputManager:
    """Install a PLAIN-format, quiet OutputManager."""
    output = OutputManager(format=OutputFormat.PLAIN, quiet=True)
    set_output(output)
    yield output
    reset_output()


# ---------------------------------------------------------------------------
# CLI fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_runner():
    """Typer CLI test runner."""
    from typer.testing import CliRunner

    return CliRunner()


@pytest.fixture
def invoke(cli_runner, services: Services) -> Callable[..., Any]:
    """Run the credvault CLI against the fake services.

    Usage: ``result = invoke("list")`` or ``invoke("add", "work", input="sk-ant-...\\n")``.
    """
    from credvault.app import app

    def _invoke(*args: str, input: Optional[str] = None) -> Any:
        return cli_runner.invoke(app, list(args), input=input, obj={"services": services})

    return _invoke
