"""Directory-aware profile resolution.

A project pins its profile with a ``.claude-profile`` marker file holding a
single profile name. :class:`ProfileResolver` walks from the working
directory up to the filesystem root; the nearest marker wins, and without
one the configured default profile applies. Results (including "nothing
resolved") are cached per directory in a
:class:`~credvault.cache.ResolutionCache`.

Precedence for commands that run something (see :meth:`ProfileResolver.select_profile`):

    1. ``--profile`` flag
    2. nearest ``.claude-profile`` marker
    3. default profile
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from credvault.cache import ResolutionCache
from credvault.config import ProfileRecordStore, validate_profile_name
from credvault.exceptions import (
    DanglingProfileReferenceError,
    InvalidUsageError,
    ProfileNotFoundError,
)

logger = logging.getLogger(__name__)

MARKER_FILENAME = ".claude-profile"


class ProfileResolver:
    """Resolve the profile for a directory.

    Args:
        records: Profile record store, for existence checks and the default.
        cache: Resolution cache; ``None`` disables caching.
        marker_name: File name of the marker.
    """

    def __init__(
        self,
        records: ProfileRecordStore,
        cache: Optional[ResolutionCache] = None,
        marker_name: str = MARKER_FILENAME,
    ) -> None:
        self._records = records
        self._cache = cache
        self._marker_name = marker_name

    @property
    def marker_name(self) -> str:
        return self._marker_name

    def resolve(self, start_dir: Optional[Path] = None, use_cache: bool = True) -> Optional[str]:
        """Return the profile name for *start_dir*, or ``None``.

        A live cache entry is returned without touching the filesystem.
        Otherwise the marker walk runs and its result is cached.
        ``use_cache=False`` skips the cache read but still records the
        result.

        Raises:
            DanglingProfileReferenceError: If the nearest marker is empty or
                names a profile that does not exist. Not cached.
        """
        directory = Path(start_dir if start_dir is not None else Path.cwd()).resolve()
        if use_cache and self._cache is not None:
            entry = self._cache.get(directory)
            if entry is not None:
                logger.debug("Resolution cache hit for %s -> %s", directory, entry.profile)
                return entry.profile

        profile = self._walk(directory)
        if profile is None:
            profile = self._records.get_default()
        if self._cache is not None:
            self._cache.set(directory, profile)
        return profile

    def select_profile(
        self,
        explicit: Optional[str],
        start_dir: Optional[Path] = None,
        use_cache: bool = True,
    ) -> Optional[str]:
        """Return *explicit* if given (it must exist), else :meth:`resolve`."""
        if explicit:
            if not self._records.exists(explicit):
                raise ProfileNotFoundError(explicit)
            return explicit
        return self.resolve(start_dir, use_cache=use_cache)

    def find_marker(self, start_dir: Optional[Path] = None) -> Optional[Path]:
        """Return the nearest marker file at or above *start_dir*."""
        directory = Path(start_dir if start_dir is not None else Path.cwd()).resolve()
        for candidate in (directory, *directory.parents):
            marker = candidate / self._marker_name
            if marker.is_file():
                return marker
        return None

    def init_marker(self, directory: Path, name: str) -> tuple[Path, bool]:
        """Pin *directory* to profile *name*.

        Writes the marker, records the cache entry, and, inside a git
        working tree root, adds the marker to ``.gitignore``.

        Returns:
            The marker path and whether ``.gitignore`` was changed.
        """
        validate_profile_name(name)
        if not self._records.exists(name):
            raise ProfileNotFoundError(name)

        directory = Path(directory).resolve()
        marker = directory / self._marker_name
        marker.write_text(f"{name}\n", encoding="utf-8")
        if self._cache is not None:
            self._cache.set(directory, name)

        gitignored = False
        if (directory / ".git").exists():
            gitignored = self._ensure_gitignored(directory)
        return marker, gitignored

    def _walk(self, directory: Path) -> Optional[str]:
        marker = self.find_marker(directory)
        if marker is None:
            return None
        try:
            name = marker.read_text(encoding="utf-8").strip()
        except (OSError, UnicodeDecodeError) as exc:
            raise InvalidUsageError(f"Cannot read marker file {marker}: {exc}") from exc
        if not name or not self._records.exists(name):
            raise DanglingProfileReferenceError(name, str(marker))
        logger.debug("Marker %s names profile %s", marker, name)
        return name

    def _ensure_gitignored(self, directory: Path) -> bool:
        gitignore = directory / ".gitignore"
        existing = gitignore.read_text(encoding="utf-8") if gitignore.is_file() else ""
        entries = {line.strip() for line in existing.splitlines()}
        if self._marker_name in entries or f"/{self._marker_name}" in entries:
            return False
        prefix = "" if not existing or existing.endswith("\n") else "\n"
        with gitignore.open("a", encoding="utf-8") as fh:
            fh.write(f"{prefix}{self._marker_name}\n")
        return True
