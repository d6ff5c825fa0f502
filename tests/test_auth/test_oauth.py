"""Tests for the OAuth lifecycle manager, token exchange, and expiry helpers."""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from credvault.auth.oauth import (
    HttpTokenExchange,
    OAuthLifecycleManager,
    parse_expiry,
    to_epoch_ms,
    token_state,
)
from credvault.auth.repository import CredentialRepository
from credvault.config import ProfileRecordStore
from credvault.exceptions import (
    CredentialExpiredError,
    InvalidTokenBundleError,
    RefreshDeferred,
    TokenExchangeError,
)
from credvault.models import ApiKey, OAuthToken, TokenGrant, TokenState

from conftest import API_KEY, NOW, FakeClock, FakeTokenExchange

MARGIN = timedelta(minutes=5)


def _token(expires_in: timedelta, refresh_token: str | None = "rt-old", **extra) -> OAuthToken:
    return OAuthToken(
        access_token="at-old", refresh_token=refresh_token, expires_at=NOW + expires_in, **extra
    )


# ------------------------------------------------------------------ #
# token_state
# ------------------------------------------------------------------ #


class TestTokenState:
    def test_valid(self) -> None:
        assert token_state(_token(timedelta(hours=1)), NOW, MARGIN) is TokenState.VALID

    def test_expiring_soon_inside_margin(self) -> None:
        assert token_state(_token(timedelta(minutes=4)), NOW, MARGIN) is TokenState.EXPIRING_SOON

    def test_margin_boundary_is_expiring(self) -> None:
        assert token_state(_token(MARGIN), NOW, MARGIN) is TokenState.EXPIRING_SOON

    def test_expired_at_exact_expiry(self) -> None:
        assert token_state(_token(timedelta(0)), NOW, MARGIN) is TokenState.EXPIRED

    def test_expired(self) -> None:
        assert token_state(_token(-timedelta(seconds=1)), NOW, MARGIN) is TokenState.EXPIRED


class TestParseExpiry:
    def test_epoch_seconds(self) -> None:
        assert parse_expiry(1_900_000_000) == datetime.fromtimestamp(1_900_000_000, tz=timezone.utc)

    def test_epoch_milliseconds(self) -> None:
        assert parse_expiry(1_900_000_000_000) == datetime.fromtimestamp(
            1_900_000_000, tz=timezone.utc
        )

    def test_iso_with_z(self) -> None:
        assert parse_expiry("2030-01-01T00:00:00Z") == datetime(2030, 1, 1, tzinfo=timezone.utc)

    def test_numeric_string(self) -> None:
        assert parse_expiry("1900000000000") == parse_expiry(1_900_000_000_000)

    @pytest.mark.parametrize("value", ["tomorrow", True, None, [1]])
    def test_rejects(self, value: object) -> None:
        with pytest.raises(ValueError):
            parse_expiry(value)

    def test_epoch_ms_round_trip(self) -> None:
        when = datetime(2030, 1, 1, 0, 0, 0, 123000, tzinfo=timezone.utc)
        assert parse_expiry(to_epoch_ms(when)) == when


# ------------------------------------------------------------------ #
# HttpTokenExchange
# ------------------------------------------------------------------ #


class _TrickleStream(httpx.SyncByteStream):
    """Yields *chunks*, moving a fake monotonic clock forward before each one."""

    def __init__(self, chunks: list[bytes], ticks: list[float], step: float) -> None:
        self._chunks = chunks
        self._ticks = ticks
        self._step = step

    def __iter__(self):
        for chunk in self._chunks:
            self._ticks[0] += self._step
            yield chunk


class TestHttpTokenExchange:
    def _exchange(self, handler, **kwargs) -> HttpTokenExchange:
        return HttpTokenExchange(
            "https://auth.test/token",
            clock=FakeClock(),
            transport=httpx.MockTransport(handler),
            **kwargs,
        )

    def test_success(self) -> None:
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(
                200, json={"access_token": "at-new", "refresh_token": "rt-new", "expires_in": 7200}
            )

        grant = self._exchange(handler, client_id="cid", timeout=3.0).exchange("rt-old")

        assert grant == TokenGrant(
            access_token="at-new", refresh_token="rt-new", expires_at=NOW + timedelta(hours=2)
        )
        assert requests[0].method == "POST"
        assert str(requests[0].url) == "https://auth.test/token"
        assert json.loads(requests[0].content) == {
            "grant_type": "refresh_token",
            "refresh_token": "rt-old",
            "client_id": "cid",
        }

    def test_defaults_expires_in_to_an_hour(self) -> None:
        grant = self._exchange(
            lambda request: httpx.Response(200, json={"access_token": "at-new"})
        ).exchange("rt")
        assert grant.expires_at == NOW + timedelta(hours=1)
        assert grant.refresh_token is None

    def test_http_error(self) -> None:
        exchange = self._exchange(lambda request: httpx.Response(400, json={"error": "invalid_grant"}))
        with pytest.raises(TokenExchangeError, match="HTTP 400"):
            exchange.exchange("rt")

    def test_transport_timeout(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("too slow", request=request)

        with pytest.raises(TokenExchangeError, match="too slow"):
            self._exchange(handler).exchange("rt")

    def test_total_deadline_caps_trickling_response(self) -> None:
        ticks = [0.0]
        body = json.dumps({"access_token": "at-new"}).encode()
        chunks = [body[i : i + 4] for i in range(0, len(body), 4)]

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, stream=_TrickleStream(chunks, ticks, step=4.0))

        exchange = self._exchange(handler, timeout=10.0, monotonic=lambda: ticks[0])
        with pytest.raises(TokenExchangeError, match="timed out after 10s"):
            exchange.exchange("rt")
        assert ticks[0] == 12.0

    def test_response_within_deadline(self) -> None:
        ticks = [0.0]
        body = json.dumps({"access_token": "at-new"}).encode()

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, stream=_TrickleStream([body], ticks, step=9.0))

        grant = self._exchange(handler, timeout=10.0, monotonic=lambda: ticks[0]).exchange("rt")
        assert grant.access_token == "at-new"

    def test_missing_access_token(self) -> None:
        with pytest.raises(TokenExchangeError, match="access_token"):
            self._exchange(lambda request: httpx.Response(200, json={})).exchange("rt")

    def test_invalid_json(self) -> None:
        with pytest.raises(TokenExchangeError, match="invalid JSON"):
            self._exchange(lambda request: httpx.Response(200, content=b"<html>")).exchange("rt")


# ------------------------------------------------------------------ #
# ensure_fresh
# ------------------------------------------------------------------ #


class TestEnsureFresh:
    def test_api_key_passes_through(
        self, oauth: OAuthLifecycleManager, repository: CredentialRepository, exchange: FakeTokenExchange
    ) -> None:
        repository.store("k", ApiKey(secret=API_KEY))
        assert oauth.ensure_fresh("k") == ApiKey(secret=API_KEY)
        assert exchange.calls == []

    def test_valid_token_never_exchanged(
        self, oauth: OAuthLifecycleManager, repository: CredentialRepository, exchange: FakeTokenExchange
    ) -> None:
        repository.store("p", _token(timedelta(hours=1)))
        assert oauth.ensure_fresh("p").access_token == "at-old"
        assert exchange.calls == []

    def test_expiring_token_is_refreshed_and_stored(
        self,
        oauth: OAuthLifecycleManager,
        repository: CredentialRepository,
        records: ProfileRecordStore,
        exchange: FakeTokenExchange,
    ) -> None:
        repository.store("p", _token(timedelta(minutes=2), scopes=["user:inference"]))
        exchange.grant = TokenGrant(
            access_token="at-new", refresh_token="rt-new", expires_at=NOW + timedelta(hours=8)
        )

        fresh = oauth.ensure_fresh("p")

        assert exchange.calls == ["rt-old"]
        assert fresh.access_token == "at-new"
        assert fresh.refresh_token == "rt-new"
        assert fresh.model_extra == {"scopes": ["user:inference"]}
        stored = repository.load("p")
        assert stored.access_token == "at-new"
        assert records.get("p").expires_at == NOW + timedelta(hours=8)

    def test_refresh_without_new_refresh_token_keeps_old(
        self, oauth: OAuthLifecycleManager, repository: CredentialRepository, exchange: FakeTokenExchange
    ) -> None:
        repository.store("p", _token(-timedelta(minutes=1)))
        exchange.grant = TokenGrant(access_token="at-new", expires_at=NOW + timedelta(hours=1))
        assert oauth.ensure_fresh("p").refresh_token == "rt-old"
        assert repository.load("p").refresh_token == "rt-old"

    def test_failed_refresh_before_expiry_serves_stale(
        self,
        oauth: OAuthLifecycleManager,
        repository: CredentialRepository,
        exchange: FakeTokenExchange,
        deferred: list,
    ) -> None:
        repository.store("p", _token(timedelta(minutes=2)))
        exchange.error = TokenExchangeError("endpoint down")

        token = oauth.ensure_fresh("p")

        assert token.access_token == "at-old"
        assert len(deferred) == 1
        assert isinstance(deferred[0], RefreshDeferred)
        assert "endpoint down" in str(deferred[0])
        assert repository.load("p").access_token == "at-old"

    def test_failed_refresh_after_expiry_raises(
        self, oauth: OAuthLifecycleManager, repository: CredentialRepository, exchange: FakeTokenExchange
    ) -> None:
        repository.store("p", _token(-timedelta(seconds=1)))
        exchange.error = TokenExchangeError("endpoint down")
        with pytest.raises(CredentialExpiredError) as exc_info:
            oauth.ensure_fresh("p")
        assert exc_info.value.name == "p"
        assert "import oauth --profile p" in exc_info.value.hint
        assert len(exchange.calls) == 1

    def test_no_refresh_token_expiring(
        self,
        oauth: OAuthLifecycleManager,
        repository: CredentialRepository,
        exchange: FakeTokenExchange,
        deferred: list,
    ) -> None:
        repository.store("p", _token(timedelta(minutes=1), refresh_token=None))
        assert oauth.ensure_fresh("p").access_token == "at-old"
        assert exchange.calls == []
        assert len(deferred) == 1

    def test_no_refresh_token_expired(
        self, oauth: OAuthLifecycleManager, repository: CredentialRepository
    ) -> None:
        repository.store("p", _token(-timedelta(hours=1), refresh_token=None))
        with pytest.raises(CredentialExpiredError):
            oauth.ensure_fresh("p")

    def test_default_warning_goes_to_log(
        self,
        repository: CredentialRepository,
        clock: FakeClock,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        manager = OAuthLifecycleManager(
            repository, FakeTokenExchange(error=TokenExchangeError("down")), clock=clock
        )
        repository.store("p", _token(timedelta(minutes=1)))
        manager.ensure_fresh("p")
        assert "Could not refresh OAuth token for profile 'p'" in caplog.text


# ------------------------------------------------------------------ #
# import_bundle
# ------------------------------------------------------------------ #


class TestImportBundle:
    def test_snake_case_bundle(
        self, oauth: OAuthLifecycleManager, repository: CredentialRepository
    ) -> None:
        record = oauth.import_bundle(
            "p",
            {
                "access_token": "at",
                "refresh_token": "rt",
                "expires_at": (NOW + timedelta(hours=1)).isoformat(),
            },
            description="imported",
        )
        assert record.description == "imported"
        assert record.expires_at == NOW + timedelta(hours=1)
        token = repository.load("p")
        assert (token.access_token, token.refresh_token) == ("at", "rt")

    def test_claude_code_envelope(
        self, oauth: OAuthLifecycleManager, repository: CredentialRepository
    ) -> None:
        expires_ms = to_epoch_ms(NOW + timedelta(hours=3))
        record = oauth.import_bundle(
            "p",
            {
                "claudeAiOauth": {
                    "accessToken": "at",
                    "refreshToken": "rt",
                    "expiresAt": expires_ms,
                    "scopes": ["user:inference", "user:profile"],
                    "subscriptionType": "max",
                }
            },
        )
        assert record.metadata == {"subscription_type": "max"}
        token = repository.load("p")
        assert token.expires_at == NOW + timedelta(hours=3)
        assert token.model_extra["scopes"] == ["user:inference", "user:profile"]

    def test_overwrites_existing(
        self, oauth: OAuthLifecycleManager, repository: CredentialRepository
    ) -> None:
        repository.store("p", ApiKey(secret=API_KEY))
        oauth.import_bundle("p", {"accessToken": "at", "expiresAt": to_epoch_ms(NOW + MARGIN * 3)})
        assert isinstance(repository.load("p"), OAuthToken)

    @pytest.mark.parametrize(
        "bundle, message",
        [
            ({"expires_at": "2031-01-01T00:00:00Z"}, "no access token"),
            ({"access_token": "at"}, "no expiry"),
            ({"access_token": "at", "expires_at": "soon"}, "invalid"),
            ({"access_token": "at", "expires_at": "2020-01-01T00:00:00Z"}, "expired"),
            ({"access_token": "at", "refresh_token": 5, "expires_at": "2031-01-01T00:00:00Z"}, "string"),
        ],
    )
    def test_invalid_bundles(
        self, oauth: OAuthLifecycleManager, records: ProfileRecordStore, bundle: dict, message: str
    ) -> None:
        with pytest.raises(InvalidTokenBundleError, match=message):
            oauth.import_bundle("p", bundle)
        assert not records.exists("p")
