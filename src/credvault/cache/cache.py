"""Disk-based cache of directory -> profile resolutions.

Uses :mod:`diskcache` to persist each resolution with a time-to-live so
that repeated invocations from the same directory skip the marker walk.
Keys are absolute directory paths; values are serialised
:class:`~credvault.models.ResolutionCacheEntry` dicts, whose ``profile``
may be ``None`` (the "nothing resolved" sentinel).

Entries are checked twice for staleness: ``diskcache`` expires them after
:attr:`~credvault.models.CacheConfig.ttl_seconds`, and :meth:`ResolutionCache.get`
also compares ``resolved_at`` against an injectable clock so that an entry
older than the TTL is never served.

See Also:
    :class:`~credvault.resolver.ProfileResolver` -- the only writer.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Optional

import diskcache
from pydantic import ValidationError

from credvault.models import CacheConfig, ResolutionCacheEntry, utcnow


class ResolutionCache:
    """TTL cache keyed by absolute directory path.

    Args:
        cache_dir: Root directory for the cache. A ``resolution/``
            subdirectory is created inside it.
        config: ``enabled`` flag and ``ttl_seconds``.
        clock: Source of "now"; tests pass a fake.

    Example::

        cache = ResolutionCache("/tmp/cv-cache", CacheConfig(ttl_seconds=60))
        cache.set(Path("/work/app"), "work")
        cache.get(Path("/work/app")).profile  # "work"
    """

    def __init__(
        self,
        cache_dir: str | Path,
        config: CacheConfig,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._config = config
        self._clock = clock
        self._cache_dir = Path(cache_dir)
        self._cache: Optional[diskcache.Cache] = None
        if config.enabled and config.ttl_seconds > 0:
            self._cache = diskcache.Cache(str(self._cache_dir / "resolution"))

    @property
    def enabled(self) -> bool:
        return self._cache is not None

    @property
    def ttl(self) -> timedelta:
        return timedelta(seconds=self._config.ttl_seconds)

    def get(self, directory: Path) -> Optional[ResolutionCacheEntry]:
        """Return the live entry for *directory*, or ``None`` on a miss."""
        if self._cache is None:
            return None
        key = self._make_key(directory)
        raw = self._cache.get(key)
        if raw is None:
            return None
        try:
            entry = ResolutionCacheEntry.model_validate(raw)
        except ValidationError:
            self._cache.delete(key)
            return None
        if entry.is_expired(self._clock(), self.ttl):
            self._cache.delete(key)
            return None
        return entry

    def set(self, directory: Path, profile: Optional[str]) -> None:
        """Record that *directory* resolves to *profile* (``None`` for nothing)."""
        if self._cache is None:
            return
        entry = ResolutionCacheEntry(profile=profile, resolved_at=self._clock())
        self._cache.set(
            self._make_key(directory),
            entry.model_dump(mode="json"),
            expire=self._config.ttl_seconds,
        )

    def invalidate(self, directory: Path) -> None:
        if self._cache is None:
            return
        self._cache.delete(self._make_key(directory))

    def clear(self) -> int:
        """Remove all entries. Returns how many were removed."""
        if self._cache is None:
            return 0
        return self._cache.clear()

    def stats(self) -> dict[str, Any]:
        """Return ``enabled``, plus ``size``, ``directory`` and ``ttl_seconds`` when enabled."""
        if self._cache is None:
            return {"enabled": False}
        return {
            "enabled": True,
            "size": len(self._cache),
            "directory": str(self._cache_dir / "resolution"),
            "ttl_seconds": self._config.ttl_seconds,
        }

    def close(self) -> None:
        if self._cache is not None:
            self._cache.close()

    def __enter__(self) -> "ResolutionCache":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    @staticmethod
    def _make_key(directory: Path) -> str:
        return str(Path(directory).absolute())
