"""Configuration management with XDG paths, atomic writes, and the profile record store.

This module handles all persistent, non-secret state for credvault:

* **Directory layout** -- XDG Base Directory compliant on Linux/BSD,
  ``~/.credvault/`` on macOS and Windows. See :func:`get_config_dir`,
  :func:`get_cache_dir`, :func:`get_data_dir`.
* **Profile records** -- A single :class:`~credvault.models.VaultConfig`
  JSON file (``profiles.json``) holding every profile's metadata and the
  default-profile pointer, managed by :class:`ProfileRecordStore`.
* **Settings** -- :func:`load_settings` builds a
  :class:`~credvault.models.Settings` from ``CREDVAULT_*`` environment
  variables.
* **Validation** -- :func:`validate_profile_name` and
  :func:`validate_api_key` check user input before anything is stored.

All file writes use an atomic temp-file-then-rename strategy
(:func:`_atomic_write`) to prevent data loss on crash or power failure.
"""

from __future__ import annotations

import json
import logging
import os
import platform
import tempfile
from pathlib import Path
from typing import Any, Mapping, Optional

from pydantic import ValidationError

from credvault.exceptions import (
    ConfigCorruptError,
    InvalidApiKeyError,
    InvalidProfileNameError,
    InvalidUsageError,
    ProfileExistsError,
    ProfileNotFoundError,
)
from credvault.models import (
    CONFIG_VERSION,
    CacheConfig,
    ProfileRecord,
    Settings,
    VaultConfig,
    profile_name_problem,
    utcnow,
)

logger = logging.getLogger(__name__)

_APP_NAME = "credvault"
_PROFILES_FILENAME = "profiles.json"

API_KEY_PREFIX = "sk-ant-"
API_KEY_MIN_LENGTH = 20


# --- XDG path resolution ---


def _is_xdg_platform() -> bool:
    """Return True if the platform supports the XDG Base Directory layout (Linux/FreeBSD)."""
    return platform.system() == "Linux" or platform.system().endswith("BSD")


def _fallback_base_dir() -> Path:
    return Path.home() / f".{_APP_NAME}"


def _xdg_base(env_var: str, default_segments: tuple[str, ...]) -> Path:
    env_value = os.environ.get(env_var, "")
    if env_value:
        return Path(env_value)
    return Path.home().joinpath(*default_segments)


def get_config_dir() -> Path:
    """Return the configuration directory, creating it if necessary.

    On Linux/BSD: ``$XDG_CONFIG_HOME/credvault/`` (default ``~/.config/credvault/``).
    On macOS/Windows: ``~/.credvault/``.
    """
    if _is_xdg_platform():
        path = _xdg_base("XDG_CONFIG_HOME", (".config",)) / _APP_NAME
    else:
        path = _fallback_base_dir()
    path.mkdir(parents=True, exist_ok=True)
    return path


def get_cache_dir() -> Path:
    """Return the cache directory, creating it if necessary.

    Holds the directory resolution cache, which can be deleted at any time.

    On Linux/BSD: ``$XDG_CACHE_HOME/credvault/`` (default ``~/.cache/credvault/``).
    On macOS/Windows: ``~/.credvault/cache/``.
    """
    if _is_xdg_platform():
        path = _xdg_base("XDG_CACHE_HOME", (".cache",)) / _APP_NAME
    else:
        path = _fallback_base_dir() / "cache"
    path.mkdir(parents=True, exist_ok=True)
    return path


def get_data_dir() -> Path:
    """Return the data directory (crash logs, file secret backend), creating it if necessary.

    On Linux/BSD: ``$XDG_DATA_HOME/credvault/`` (default ``~/.local/share/credvault/``).
    On macOS/Windows: ``~/.credvault/data/``.
    """
    if _is_xdg_platform():
        path = _xdg_base("XDG_DATA_HOME", (".local", "share")) / _APP_NAME
    else:
        path = _fallback_base_dir() / "data"
    path.mkdir(parents=True, exist_ok=True)
    return path


# --- Atomic file writes ---


def _atomic_write(path: Path, data: str, mode: int = 0o600) -> None:
    """Write data to file atomically using temp file + rename.

    The temporary file is created in the same directory as *path* so that
    ``os.replace`` is an atomic rename on POSIX systems. Permissions are set
    to *mode* before any content is written. On any failure the temp file
    is removed and *path* is left untouched.
    """
    path.parent.mkdir(parents=True, exist_ok=True)

    fd = None
    tmp_path: Optional[str] = None
    try:
        fd = tempfile.NamedTemporaryFile(
            mode="w",
            dir=path.parent,
            prefix=f".{path.name}.",
            suffix=".tmp",
            delete=False,
            encoding="utf-8",
        )
        tmp_path = fd.name
        os.chmod(tmp_path, mode)
        fd.write(data)
        fd.flush()
        os.fsync(fd.fileno())
        fd.close()
        fd = None
        os.replace(tmp_path, path)
    except BaseException:
        if fd is not None:
            fd.close()
        if tmp_path is not None:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
        raise


# --- Input validation ---


def validate_profile_name(name: str) -> str:
    """Return *name* unchanged if it is a valid profile name.

    Raises:
        InvalidProfileNameError: If the name is empty, longer than 64
            characters, or contains anything but letters, digits, ``-``
            and ``_``.
    """
    problem = profile_name_problem(name)
    if problem is not None:
        raise InvalidProfileNameError(problem)
    return name


def validate_api_key(key: str) -> str:
    """Return the stripped *key* if it looks like an Anthropic API key.

    Raises:
        InvalidApiKeyError: If the key lacks the ``sk-ant-`` prefix or is
            shorter than 20 characters.
    """
    key = key.strip()
    if not key.startswith(API_KEY_PREFIX) or len(key) < API_KEY_MIN_LENGTH:
        raise InvalidApiKeyError()
    return key


# --- Settings ---


def _env_number(environ: Mapping[str, str], var: str, cast: type, default: Any) -> Any:
    raw = environ.get(var, "").strip()
    if not raw:
        return default
    try:
        return cast(raw)
    except ValueError as exc:
        raise InvalidUsageError(f"{var} must be a number, got {raw!r}") from exc


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    """Build :class:`~credvault.models.Settings` from ``CREDVAULT_*`` variables.

    Recognised variables:
        ``CREDVAULT_SECRET_BACKEND`` (``keyring`` or ``file``),
        ``CREDVAULT_TOKEN_URL``, ``CREDVAULT_OAUTH_CLIENT_ID``,
        ``CREDVAULT_REFRESH_TIMEOUT`` (seconds), ``CREDVAULT_SAFETY_MARGIN``
        (seconds), ``CREDVAULT_CACHE_TTL`` (seconds, ``0`` disables the
        resolution cache), and ``CREDVAULT_ENV_VAR``.

    Args:
        environ: Mapping to read instead of :data:`os.environ`.

    Raises:
        InvalidUsageError: If a variable holds an unusable value.
    """
    env = os.environ if environ is None else environ
    defaults = Settings()

    ttl = _env_number(env, "CREDVAULT_CACHE_TTL", int, defaults.cache.ttl_seconds)
    values: dict[str, Any] = {
        "secret_backend": env.get("CREDVAULT_SECRET_BACKEND", "").strip().lower()
        or defaults.secret_backend,
        "token_url": env.get("CREDVAULT_TOKEN_URL", "").strip() or defaults.token_url,
        "oauth_client_id": env.get("CREDVAULT_OAUTH_CLIENT_ID", "").strip() or None,
        "refresh_timeout": _env_number(
            env, "CREDVAULT_REFRESH_TIMEOUT", float, defaults.refresh_timeout
        ),
        "safety_margin_seconds": _env_number(
            env, "CREDVAULT_SAFETY_MARGIN", int, defaults.safety_margin_seconds
        ),
        "cache": {"enabled": ttl > 0, "ttl_seconds": max(ttl, 0)},
        "env_var": env.get("CREDVAULT_ENV_VAR", "").strip() or defaults.env_var,
    }
    try:
        return Settings.model_validate(values)
    except ValidationError as exc:
        first = exc.errors()[0]
        field = ".".join(str(part) for part in first["loc"])
        raise InvalidUsageError(f"Invalid setting '{field}': {first['msg']}") from exc


def default_cache_config() -> CacheConfig:
    """Cache settings from the environment, for callers that need only those."""
    return load_settings().cache


# --- Profile record store ---


def profiles_path() -> Path:
    """Path to the profile record file (``<config dir>/profiles.json``)."""
    return get_config_dir() / _PROFILES_FILENAME


class ProfileRecordStore:
    """CRUD over the profile record file plus the default-profile pointer.

    The file is re-read on every call and rewritten atomically on every
    mutation, so concurrent invocations see each other's completed writes
    (last writer wins on a read-modify-write race). A missing file is an
    empty configuration; a file that cannot be parsed raises
    :class:`~credvault.exceptions.ConfigCorruptError` and is never reset.

    Args:
        path: Location of the JSON file. Defaults to :func:`profiles_path`.
    """

    def __init__(self, path: Optional[Path] = None) -> None:
        self._path = Path(path) if path is not None else profiles_path()

    @property
    def path(self) -> Path:
        return self._path

    # -- reading --

    def load(self) -> VaultConfig:
        """Read and validate the whole file."""
        if not self._path.is_file():
            return VaultConfig()
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise self._corrupt(f"not valid JSON: {exc}") from exc
        except OSError as exc:
            raise ConfigCorruptError(f"Cannot read {self._path}: {exc}") from exc

        if not isinstance(data, dict):
            raise self._corrupt("top-level value must be an object")
        data = self._migrate(data)
        try:
            return VaultConfig.model_validate(data)
        except ValidationError as exc:
            raise self._corrupt(str(exc)) from exc

    def list(self) -> list[ProfileRecord]:
        """All records in insertion order."""
        return self.load().profiles

    def get(self, name: str) -> ProfileRecord:
        record = self.load().find(name)
        if record is None:
            raise ProfileNotFoundError(name)
        return record

    def exists(self, name: str) -> bool:
        return self.load().find(name) is not None

    def get_default(self) -> Optional[str]:
        return self.load().default_profile

    # -- writing --

    def upsert(self, record: ProfileRecord, create_only: bool = False) -> None:
        """Insert *record*, or replace the record with the same name in place.

        Raises:
            ProfileExistsError: If *create_only* is set and the name is taken.
        """
        config = self.load()
        for index, existing in enumerate(config.profiles):
            if existing.name == record.name:
                if create_only:
                    raise ProfileExistsError(record.name)
                config.profiles[index] = record
                break
        else:
            config.profiles.append(record)
        self._save(config)

    def remove(self, name: str) -> ProfileRecord:
        """Delete the record called *name* and return it.

        Clears the default pointer when it named the removed profile.
        """
        config = self.load()
        record = config.find(name)
        if record is None:
            raise ProfileNotFoundError(name)
        config.profiles = [r for r in config.profiles if r.name != name]
        if config.default_profile == name:
            config.default_profile = None
        self._save(config)
        return record

    def set_default(self, name: Optional[str]) -> None:
        """Point the default at *name*, or clear it with ``None``."""
        config = self.load()
        if name is not None and config.find(name) is None:
            raise ProfileNotFoundError(name)
        config.default_profile = name
        self._save(config)

    def touch(self, name: str) -> None:
        """Set ``last_used_at`` on *name* to now."""
        config = self.load()
        record = config.find(name)
        if record is None:
            raise ProfileNotFoundError(name)
        record.last_used_at = utcnow()
        self._save(config)

    # -- internals --

    def _save(self, config: VaultConfig) -> None:
        config.version = CONFIG_VERSION
        data = config.model_dump(mode="json")
        _atomic_write(self._path, json.dumps(data, indent=2) + "\n")
        logger.debug("Wrote %d profile record(s) to %s", len(config.profiles), self._path)

    def _migrate(self, data: dict[str, Any]) -> dict[str, Any]:
        version = data.get("version", CONFIG_VERSION)
        if version != CONFIG_VERSION:
            raise self._corrupt(f"unsupported version {version!r}")
        data["version"] = CONFIG_VERSION
        profiles = data.get("profiles")
        if isinstance(profiles, list):
            for entry in profiles:
                if isinstance(entry, dict) and "last_used" in entry:
                    legacy = entry.pop("last_used")
                    entry.setdefault("last_used_at", legacy)
        return data

    def _corrupt(self, detail: str) -> ConfigCorruptError:
        return ConfigCorruptError(
            f"Profile configuration at {self._path} is corrupt: {detail}",
            hint=f"Repair or move the file aside: {self._path}",
        )
