"""OAuth token lifecycle: expiry state, refresh, and token-bundle import.

The pieces, from the bottom up:

- :func:`token_state` -- a pure function classifying a token as
  :attr:`~credvault.models.TokenState.VALID`, ``EXPIRING_SOON`` (inside the
  safety margin) or ``EXPIRED``.
- :class:`TokenExchange` -- the refresh-token exchange port, with
  :class:`HttpTokenExchange` talking to the token endpoint over
  :mod:`httpx`.
- :class:`OAuthLifecycleManager` -- loads a profile's credential, refreshes
  it when needed, and degrades to the stale token (with a
  :class:`~credvault.exceptions.RefreshDeferred` warning) or to
  :class:`~credvault.exceptions.CredentialExpiredError`.

There is exactly one exchange attempt per :meth:`~OAuthLifecycleManager.ensure_fresh`
call; nothing here retries.
"""

from __future__ import annotations

import json
import logging
import time
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Mapping, Optional

import httpx

from credvault.auth.repository import CredentialRepository
from credvault.exceptions import (
    CredentialExpiredError,
    InvalidTokenBundleError,
    RefreshDeferred,
    TokenExchangeError,
)
from credvault.models import (
    ApiKey,
    CredentialValue,
    OAuthToken,
    ProfileRecord,
    TokenGrant,
    TokenState,
    as_utc,
    utcnow,
)

logger = logging.getLogger(__name__)

DEFAULT_SAFETY_MARGIN = timedelta(minutes=5)
DEFAULT_EXPIRES_IN = 3600

# Epoch values at or above this are milliseconds (10**11 s is the year 5138).
_EPOCH_MS_THRESHOLD = 10**11

_BUNDLE_ENVELOPE = "claudeAiOauth"
_KNOWN_BUNDLE_KEYS = frozenset(
    {"kind", "access_token", "accessToken", "refresh_token", "refreshToken", "expires_at", "expiresAt"}
)


def token_state(token: OAuthToken, now: datetime, safety_margin: timedelta) -> TokenState:
    """Classify *token* at instant *now*.

    ``EXPIRED`` when ``now >= expires_at``; ``EXPIRING_SOON`` when *now* is
    within *safety_margin* of the expiry; ``VALID`` otherwise.
    """
    return expiry_state(token.expires_at, now, safety_margin)


def expiry_state(expires_at: datetime, now: datetime, safety_margin: timedelta) -> TokenState:
    """:func:`token_state` for a bare expiry, e.g. a record's mirrored ``expires_at``."""
    now = as_utc(now)
    expires_at = as_utc(expires_at)
    if now >= expires_at:
        return TokenState.EXPIRED
    if now >= expires_at - safety_margin:
        return TokenState.EXPIRING_SOON
    return TokenState.VALID


def parse_expiry(value: Any) -> datetime:
    """Parse an expiry given as ISO-8601 text or epoch seconds/milliseconds.

    Raises:
        ValueError: If *value* is none of those.
    """
    if isinstance(value, datetime):
        return as_utc(value)
    if isinstance(value, str):
        text = value.strip()
        try:
            value = float(text)
        except ValueError:
            if text.endswith(("Z", "z")):
                text = text[:-1] + "+00:00"
            return as_utc(datetime.fromisoformat(text))
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"unsupported expiry value {value!r}")
    seconds = value / 1000 if value >= _EPOCH_MS_THRESHOLD else value
    try:
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    except (OverflowError, OSError) as exc:
        raise ValueError(f"expiry {value!r} is out of range") from exc


def to_epoch_ms(value: datetime) -> int:
    """Inverse of :func:`parse_expiry` for millisecond epoch fields."""
    return int(round(as_utc(value).timestamp() * 1000))


class TokenExchange(ABC):
    """Port for trading a refresh token for a new access token."""

    @abstractmethod
    def exchange(self, refresh_token: str) -> TokenGrant:
        """Perform one exchange.

        Raises:
            TokenExchangeError: On any failure, including timeouts.
        """


class HttpTokenExchange(TokenExchange):
    """Refresh-token grant against an OAuth token endpoint.

    The request gets *timeout* seconds in total. The body is streamed and the
    deadline is checked after every chunk, so a server that trickles bytes
    cannot hold the exchange open; each individual network operation is
    also limited to *timeout*.

    Args:
        token_url: The endpoint to POST to.
        client_id: Sent as ``client_id`` when set.
        timeout: Total budget in seconds for the request and response.
        clock: Source of "now" for computing the new expiry.
        transport: httpx transport; tests pass :class:`httpx.MockTransport`.
        monotonic: Source of elapsed time for the deadline.
    """

    def __init__(
        self,
        token_url: str,
        client_id: Optional[str] = None,
        timeout: float = 10.0,
        clock: Callable[[], datetime] = utcnow,
        transport: Optional[httpx.BaseTransport] = None,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self._token_url = token_url
        self._client_id = client_id
        self._timeout = timeout
        self._clock = clock
        self._transport = transport
        self._monotonic = monotonic

    def exchange(self, refresh_token: str) -> TokenGrant:
        payload = {"grant_type": "refresh_token", "refresh_token": refresh_token}
        if self._client_id:
            payload["client_id"] = self._client_id

        deadline = self._monotonic() + self._timeout
        try:
            with httpx.Client(transport=self._transport, timeout=self._timeout) as client:
                with client.stream(
                    "POST",
                    self._token_url,
                    json=payload,
                    headers={"Accept": "application/json"},
                ) as response:
                    response.raise_for_status()
                    body = bytearray()
                    for chunk in response.iter_bytes():
                        body.extend(chunk)
                        if self._monotonic() > deadline:
                            raise TokenExchangeError(
                                f"Token request timed out after {self._timeout:g}s"
                            )
        except httpx.HTTPStatusError as exc:
            raise TokenExchangeError(
                f"Token endpoint returned HTTP {exc.response.status_code}"
            ) from exc
        except httpx.HTTPError as exc:
            raise TokenExchangeError(f"Token request failed: {exc}") from exc

        try:
            data: Any = json.loads(bytes(body))
        except ValueError as exc:
            raise TokenExchangeError("Token endpoint returned invalid JSON") from exc
        if not isinstance(data, dict) or not data.get("access_token"):
            raise TokenExchangeError("Token response missing 'access_token' field")

        expires_in = data.get("expires_in", DEFAULT_EXPIRES_IN)
        if isinstance(expires_in, bool) or not isinstance(expires_in, (int, float)):
            raise TokenExchangeError(f"Token response has invalid expires_in: {expires_in!r}")

        return TokenGrant(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token") or None,
            expires_at=self._clock() + timedelta(seconds=expires_in),
        )


def _log_deferred(warning: RefreshDeferred) -> None:
    logger.warning("%s", warning)


class OAuthLifecycleManager:
    """Keep OAuth credentials fresh on the way out of the repository.

    Args:
        repository: Where credentials are loaded from and written back to.
        exchange: The refresh-token exchange.
        safety_margin: How long before expiry a token counts as expiring.
        clock: Source of "now".
        on_deferred: Receives a :class:`~credvault.exceptions.RefreshDeferred`
            whenever a stale-but-unexpired token is served. Defaults to a
            log warning.
    """

    def __init__(
        self,
        repository: CredentialRepository,
        exchange: TokenExchange,
        safety_margin: timedelta = DEFAULT_SAFETY_MARGIN,
        clock: Callable[[], datetime] = utcnow,
        on_deferred: Optional[Callable[[RefreshDeferred], None]] = None,
    ) -> None:
        self._repository = repository
        self._exchange = exchange
        self._safety_margin = safety_margin
        self._clock = clock
        self._on_deferred = on_deferred or _log_deferred

    def state_of(self, token: OAuthToken) -> TokenState:
        return token_state(token, self._clock(), self._safety_margin)

    def ensure_fresh(self, name: str) -> CredentialValue:
        """Load *name*'s credential, refreshing an OAuth token if it needs it.

        Raises:
            ProfileNotFoundError: If the profile does not exist.
            CredentialMissingError: If its secret is gone.
            CredentialExpiredError: If the token is expired and could not
                be refreshed.
        """
        value = self._repository.load(name)
        if isinstance(value, ApiKey):
            return value

        state = self.state_of(value)
        if state is TokenState.VALID:
            return value
        if not value.refresh_token:
            return self._serve_stale(name, value, state, "no refresh token stored")

        logger.debug("Refreshing OAuth token for profile %s (%s)", name, state.value)
        try:
            grant = self._exchange.exchange(value.refresh_token)
        except TokenExchangeError as exc:
            return self._serve_stale(name, value, state, str(exc))

        refreshed = value.model_copy(
            update={
                "access_token": grant.access_token,
                "refresh_token": grant.refresh_token or value.refresh_token,
                "expires_at": grant.expires_at,
            }
        )
        self._repository.store(name, refreshed)
        return refreshed

    def import_bundle(
        self,
        name: str,
        bundle: Mapping[str, Any],
        description: Optional[str] = None,
    ) -> ProfileRecord:
        """Store an externally obtained token bundle as profile *name*.

        Accepts snake_case or camelCase keys, optionally wrapped in a
        ``claudeAiOauth`` object. Unknown keys are kept as token extras and
        ``subscriptionType`` is also copied to the record metadata. Any
        existing credential for *name* is replaced.

        Raises:
            InvalidTokenBundleError: If the access token or expiry is missing
                or malformed, or the token has already expired.
        """
        envelope = bundle.get(_BUNDLE_ENVELOPE)
        data: Mapping[str, Any] = envelope if isinstance(envelope, Mapping) else bundle

        access_token = data.get("access_token", data.get("accessToken"))
        if not isinstance(access_token, str) or not access_token.strip():
            raise InvalidTokenBundleError("Token bundle has no access token")

        refresh_token = data.get("refresh_token", data.get("refreshToken"))
        if refresh_token is not None and not isinstance(refresh_token, str):
            raise InvalidTokenBundleError("Token bundle refresh token must be a string")

        raw_expiry = data.get("expires_at", data.get("expiresAt"))
        if raw_expiry is None:
            raise InvalidTokenBundleError("Token bundle has no expiry")
        try:
            expires_at = parse_expiry(raw_expiry)
        except ValueError as exc:
            raise InvalidTokenBundleError(f"Token bundle expiry is invalid: {exc}") from exc
        if expires_at <= self._clock():
            raise InvalidTokenBundleError(
                f"Token bundle expired at {expires_at.isoformat()}; log in again first"
            )

        extras = {k: v for k, v in data.items() if k not in _KNOWN_BUNDLE_KEYS}
        token = OAuthToken(
            access_token=access_token.strip(),
            refresh_token=refresh_token or None,
            expires_at=expires_at,
            **extras,
        )
        metadata: dict[str, str] = {}
        subscription = extras.get("subscriptionType")
        if isinstance(subscription, str) and subscription:
            metadata["subscription_type"] = subscription
        return self._repository.store(name, token, description=description, metadata=metadata)

    def _serve_stale(
        self, name: str, token: OAuthToken, state: TokenState, reason: str
    ) -> OAuthToken:
        if state is TokenState.EXPIRED:
            raise CredentialExpiredError(name, reason)
        self._on_deferred(RefreshDeferred(name, reason))
        return token
