"""Canonical Pydantic models shared across all credvault modules.

This is the single source of truth for data shapes in the project. Every other
module imports from here rather than defining its own models. The models fall
into three groups:

**Persisted metadata** -- serialised as JSON in the user's config directory,
never containing secret material:
    :class:`CredentialType`, :class:`ProfileRecord`, and :class:`VaultConfig`.

**Credential values** -- live only in process memory and inside the secret
backend:
    :class:`ApiKey`, :class:`OAuthToken` and their tagged union
    :data:`CredentialValue`, plus :class:`TokenGrant` (a refresh result) and
    :class:`ForeignStoreBackup` (a transient session-switch capture).

**Runtime models** -- :class:`TokenState`, :class:`ResolutionCacheEntry`,
:class:`ProcessOutcome`, :class:`CacheConfig`, and :class:`Settings`.

All models use Pydantic v2. Timestamps are timezone-aware UTC; naive values
read from disk are treated as UTC.
"""

from __future__ import annotations

import enum
from datetime import datetime, timedelta, timezone
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

CONFIG_VERSION = "1.0"
"""Schema tag written to every saved :class:`VaultConfig`."""

PROFILE_NAME_MAX_LENGTH = 64


def utcnow() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Attach UTC to a naive datetime, or convert an aware one to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def profile_name_problem(name: str) -> Optional[str]:
    """Describe why *name* is not a valid profile name, or return ``None``.

    Valid names are 1-64 characters of letters, digits, ``-`` and ``_``.
    """
    if not name:
        return "Empty profile name"
    if len(name) > PROFILE_NAME_MAX_LENGTH:
        return f"Profile name too long (max {PROFILE_NAME_MAX_LENGTH} characters)"
    if not all(c.isalnum() or c in "-_" for c in name):
        return f"Invalid profile name: {name!r} (use letters, digits, '-' and '_')"
    return None


# --- Persisted metadata ---


class CredentialType(str, enum.Enum):
    """The kind of credential a profile holds."""

    API_KEY = "api_key"
    OAUTH = "oauth"

    def __str__(self) -> str:
        return "API Key" if self is CredentialType.API_KEY else "OAuth"


class ProfileRecord(BaseModel):
    """Metadata for one named profile, stored in the profile config file.

    Records never hold secret values; the credential itself lives in the
    secret backend under keys derived from :attr:`name`. For OAuth profiles
    :attr:`expires_at` mirrors the expiry held in the secret backend so that
    ``credvault list`` can show token status without a secret read.

    ``metadata`` holds small non-secret annotations such as the subscription
    type recorded when a token was imported.
    """

    name: str
    description: Optional[str] = None
    credential_type: CredentialType = CredentialType.API_KEY
    created_at: datetime = Field(default_factory=utcnow)
    last_used_at: Optional[datetime] = None
    expires_at: Optional[datetime] = Field(
        default=None, description="OAuth only: mirrors the stored token's expiry"
    )
    metadata: dict[str, str] = Field(default_factory=dict)

    @field_validator("name")
    @classmethod
    def _check_name(cls, value: str) -> str:
        problem = profile_name_problem(value)
        if problem is not None:
            raise ValueError(problem)
        return value

    @field_validator("created_at", "last_used_at", "expires_at")
    @classmethod
    def _normalise_timestamp(cls, value: Optional[datetime]) -> Optional[datetime]:
        return as_utc(value) if value is not None else None

    @model_validator(mode="after")
    def _expiry_matches_type(self) -> "ProfileRecord":
        if self.credential_type is CredentialType.OAUTH and self.expires_at is None:
            raise ValueError(f"OAuth profile '{self.name}' must have expires_at")
        if self.credential_type is CredentialType.API_KEY and self.expires_at is not None:
            raise ValueError(f"API key profile '{self.name}' cannot have expires_at")
        return self


class VaultConfig(BaseModel):
    """The profile config file: schema version, default pointer, and records.

    ``profiles`` keeps insertion order, which is the order ``credvault list``
    shows. Names are unique and ``default_profile`` must name an existing
    record; both are checked whenever the file is loaded.
    """

    version: str = CONFIG_VERSION
    default_profile: Optional[str] = None
    profiles: list[ProfileRecord] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_references(self) -> "VaultConfig":
        seen: set[str] = set()
        for record in self.profiles:
            if record.name in seen:
                raise ValueError(f"Duplicate profile name '{record.name}'")
            seen.add(record.name)
        if self.default_profile is not None and self.default_profile not in seen:
            raise ValueError(
                f"default_profile '{self.default_profile}' does not name a profile"
            )
        return self

    def find(self, name: str) -> Optional[ProfileRecord]:
        """Return the record called *name*, or ``None``."""
        for record in self.profiles:
            if record.name == name:
                return record
        return None


# --- Credential values ---


class ApiKey(BaseModel):
    """A static bearer API key. Never expires."""

    kind: Literal["api_key"] = "api_key"
    secret: str = Field(min_length=1, repr=False)

    @property
    def credential_type(self) -> CredentialType:
        return CredentialType.API_KEY

    @property
    def bearer(self) -> str:
        """The value exported to child processes."""
        return self.secret


class OAuthToken(BaseModel):
    """An OAuth access token with optional refresh token and a hard expiry.

    Extra fields (for example ``scopes`` or ``subscriptionType`` captured
    from the Claude Code credential entry) are preserved in ``model_extra``
    so that a token can be written back to that store unchanged.
    """

    model_config = ConfigDict(extra="allow")

    kind: Literal["oauth"] = "oauth"
    access_token: str = Field(min_length=1, repr=False)
    refresh_token: Optional[str] = Field(default=None, repr=False)
    expires_at: datetime

    @field_validator("expires_at")
    @classmethod
    def _normalise_expiry(cls, value: datetime) -> datetime:
        return as_utc(value)

    @property
    def credential_type(self) -> CredentialType:
        return CredentialType.OAUTH

    @property
    def bearer(self) -> str:
        """The value exported to child processes."""
        return self.access_token


CredentialValue = Annotated[Union[ApiKey, OAuthToken], Field(discriminator="kind")]
"""Tagged union of every credential kind, discriminated on ``kind``."""


class TokenGrant(BaseModel):
    """Result of a successful refresh-token exchange."""

    access_token: str = Field(min_length=1, repr=False)
    refresh_token: Optional[str] = Field(default=None, repr=False)
    expires_at: datetime

    @field_validator("expires_at")
    @classmethod
    def _normalise_expiry(cls, value: datetime) -> datetime:
        return as_utc(value)


class ForeignStoreBackup(BaseModel):
    """In-memory capture of a foreign credential store's active entry.

    ``value`` is ``None`` when the store had no active entry; restoring such
    a backup clears the slot instead of writing to it.
    """

    value: Optional[CredentialValue] = None
    captured_at: datetime = Field(default_factory=utcnow)

    @property
    def absent(self) -> bool:
        return self.value is None


# --- Runtime models ---


class TokenState(str, enum.Enum):
    """Freshness of an OAuth token at a given instant."""

    VALID = "valid"
    EXPIRING_SOON = "expiring_soon"
    EXPIRED = "expired"


class ResolutionCacheEntry(BaseModel):
    """A cached directory -> profile resolution.

    ``profile`` is ``None`` when the walk found nothing and no default was
    configured; that sentinel is cached like any other answer.
    """

    profile: Optional[str] = None
    resolved_at: datetime = Field(default_factory=utcnow)

    @field_validator("resolved_at")
    @classmethod
    def _normalise_timestamp(cls, value: datetime) -> datetime:
        return as_utc(value)

    def is_expired(self, now: datetime, ttl: timedelta) -> bool:
        return now - self.resolved_at >= ttl


class ProcessOutcome(BaseModel):
    """How a child process ended.

    ``returncode`` follows :mod:`subprocess`: negative values mean the child
    was killed by that signal number.
    """

    returncode: int

    @property
    def signal(self) -> Optional[int]:
        """The terminating signal number, or ``None`` for a normal exit."""
        return -self.returncode if self.returncode < 0 else None

    @property
    def exit_status(self) -> int:
        """Exit status as a shell reports it (``128 + signal`` for signal deaths)."""
        sig = self.signal
        return 128 + sig if sig is not None else self.returncode


class CacheConfig(BaseModel):
    """Resolution cache settings."""

    enabled: bool = Field(default=True, description="Enable the directory resolution cache")
    ttl_seconds: int = Field(default=3600, ge=0, description="Cache TTL in seconds")


class Settings(BaseModel):
    """Runtime settings, loaded from ``CREDVAULT_*`` environment variables.

    See :func:`~credvault.config.load_settings` for the variable names.
    """

    secret_backend: Literal["keyring", "file"] = "keyring"
    token_url: str = "https://api.anthropic.com/v1/oauth/token"
    oauth_client_id: Optional[str] = None
    refresh_timeout: float = Field(default=10.0, gt=0)
    safety_margin_seconds: int = Field(default=300, ge=0)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    env_var: str = Field(default="ANTHROPIC_API_KEY", min_length=1)

    @property
    def safety_margin(self) -> timedelta:
        return timedelta(seconds=self.safety_margin_seconds)
