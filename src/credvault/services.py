"""Wiring of the core components for one CLI invocation.

:class:`Services` builds the secret backend, record store, repository,
OAuth manager, resolver and session-switch controller from
:class:`~credvault.models.Settings`. Every collaborator can be passed in
explicitly, which is how the test suite swaps in in-memory fakes
(``CliRunner.invoke(app, args, obj={"services": ...})``).
"""

from __future__ import annotations

from datetime import datetime
from typing import Callable, Optional

from credvault.auth.backend import SecretBackend, create_backend
from credvault.auth.oauth import HttpTokenExchange, OAuthLifecycleManager, TokenExchange
from credvault.auth.repository import CredentialRepository
from credvault.auth.session import (
    ForeignStore,
    KeyringForeignStore,
    Runner,
    SessionSwitchController,
)
from credvault.cache import ResolutionCache
from credvault.config import ProfileRecordStore, get_cache_dir
from credvault.exceptions import RefreshDeferred
from credvault.models import Settings, utcnow
from credvault.process import run_process
from credvault.resolver import ProfileResolver


class Services:
    """Holds the component graph for one invocation.

    Args:
        settings: Runtime settings.
        backend: Secret backend; defaults to :func:`create_backend`.
        records: Profile record store; defaults to the XDG config file.
        exchange: Token exchange; defaults to :class:`HttpTokenExchange`.
        foreign_store: Store switched by ``delegate``; defaults to the
            Claude Code keychain entry.
        runner: Child process runner.
        cache: Resolution cache; defaults to one under the XDG cache dir.
        clock: Source of "now".
        on_deferred: Receives refresh-deferred warnings.
    """

    def __init__(
        self,
        settings: Settings,
        backend: Optional[SecretBackend] = None,
        records: Optional[ProfileRecordStore] = None,
        exchange: Optional[TokenExchange] = None,
        foreign_store: Optional[ForeignStore] = None,
        runner: Runner = run_process,
        cache: Optional[ResolutionCache] = None,
        clock: Callable[[], datetime] = utcnow,
        on_deferred: Optional[Callable[[RefreshDeferred], None]] = None,
    ) -> None:
        self.settings = settings
        self.clock = clock
        self.runner = runner
        self.backend = backend if backend is not None else create_backend(settings)
        self.records = records if records is not None else ProfileRecordStore()
        self.repository = CredentialRepository(self.backend, self.records)
        self.cache = (
            cache if cache is not None else ResolutionCache(get_cache_dir(), settings.cache, clock)
        )
        self.resolver = ProfileResolver(self.records, self.cache)
        self.exchange = exchange if exchange is not None else HttpTokenExchange(
            settings.token_url,
            client_id=settings.oauth_client_id,
            timeout=settings.refresh_timeout,
            clock=clock,
        )
        self.oauth = OAuthLifecycleManager(
            self.repository,
            self.exchange,
            safety_margin=settings.safety_margin,
            clock=clock,
            on_deferred=on_deferred,
        )
        self.foreign_store = foreign_store if foreign_store is not None else KeyringForeignStore()
        self.session = SessionSwitchController(self.foreign_store, runner=runner)

    def close(self) -> None:
        self.cache.close()
