"""
Tests for the Token Manager module.

The token endpoint is faked with httpx.MockTransport and time is moved
through an injectable clock.
"""

import asyncio
import base64
import tempfile
from pathlib import Path
from typing import Callable, Optional
from unittest.mock import patch
from urllib.parse import parse_qs, urlparse

import httpx
import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from st_status.config import ModuleConfig, OAuthConfig, PersistenceConfig
from st_status.credential_vault import CredentialVault
from st_status.enums import AuthMode, TokenState
from st_status.exceptions import (
    AuthenticationError,
    NoCredentialsError,
    PersistenceError,
    TokenRefreshError,
)
from st_status.models import CredentialRecord
from st_status.token_manager import (
    EXPIRING_SOON_DELAY_SECONDS,
    EXPIRING_SOON_TASK,
    PROACTIVE_REFRESH_SECONDS,
    REFRESH_TASK,
    TOKEN_URL,
    TokenManager,
    build_authorize_url,
    extract_code,
)


NOW = 1_800_000_000.0


class FakeClock:
    def __init__(self, now: float = NOW) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class FakeScheduler:
    """Records scheduling calls instead of running timers."""

    def __init__(self) -> None:
        self.recurring: dict[str, tuple[float, Callable]] = {}
        self.one_shot: dict[str, tuple[float, Callable]] = {}

    def every(self, name, interval_seconds, callback):
        self.recurring[name] = (interval_seconds, callback)

    def once(self, name, delay_seconds, callback):
        self.one_shot[name] = (delay_seconds, callback)

    def cancel_all(self) -> None:
        self.recurring.clear()
        self.one_shot.clear()


class TokenEndpoint:
    """Scripted token endpoint for MockTransport."""

    def __init__(self, status_code: int = 200, body: Optional[dict] = None, error: Optional[Exception] = None):
        self.status_code = status_code
        self.body = body if body is not None else {
            "access_token": "new-access",
            "refresh_token": "new-refresh",
            "expires_in": 86400,
            "token_type": "bearer",
        }
        self.error = error
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        return httpx.Response(self.status_code, json=self.body)

    def form(self, index: int = -1) -> dict[str, str]:
        parsed = parse_qs(self.requests[index].content.decode("ascii"))
        return {k: v[0] for k, v in parsed.items()}


def oauth_config(state_dir: Path) -> ModuleConfig:
    return ModuleConfig(
        oauth=OAuthConfig(client_id="cid", client_secret="csecret"),
        persistence=PersistenceConfig(state_dir=state_dir),
    )


def seed_record(config: ModuleConfig, expires_in: Optional[float], refresh_token: str = "old-refresh") -> None:
    CredentialVault(config.persistence).save(CredentialRecord(
        client_id="cid",
        client_secret="csecret",
        access_token="old-access",
        refresh_token=refresh_token,
        expires_at=NOW + expires_in if expires_in is not None else None,
        obtained_at=NOW - 3600,
    ))


def make_manager(
    config: ModuleConfig,
    endpoint: Optional[TokenEndpoint] = None,
    clock: Optional[FakeClock] = None,
) -> TokenManager:
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(endpoint or TokenEndpoint()))
    return TokenManager(
        config,
        CredentialVault(config.persistence),
        http_client=http_client,
        clock=clock or FakeClock(),
    )


class TestInitialize:
    """Credential loading order and initial state."""

    def test_no_credentials_raises(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            manager = make_manager(oauth_config(Path(tmpdir)))

            with pytest.raises(NoCredentialsError):
                manager.initialize()
            assert manager.state == TokenState.NO_CREDENTIALS

    def test_legacy_token_mode(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            config = ModuleConfig(token="static", persistence=PersistenceConfig(state_dir=Path(tmpdir)))
            manager = make_manager(config)

            assert manager.initialize() == TokenState.VALID
            assert manager.mode == AuthMode.LEGACY
            assert manager.authorization_header() == {"Authorization": "Bearer static"}

    def test_stored_credentials_win_over_static_token(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            config = oauth_config(Path(tmpdir))
            config.token = "static"
            seed_record(config, expires_in=86400)
            manager = make_manager(config)

            assert manager.initialize() == TokenState.VALID
            assert manager.mode == AuthMode.OAUTH
            assert manager.access_token == "old-access"

    def test_expired_credentials_need_refresh(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            config = oauth_config(Path(tmpdir))
            seed_record(config, expires_in=-60)
            manager = make_manager(config)

            assert manager.initialize() == TokenState.HAS_CREDENTIALS
            assert manager.needs_refresh()


class TestNeedsRefresh:
    """needs_refresh(buffer) is remaining <= buffer."""

    def test_four_minutes_left(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            config = oauth_config(Path(tmpdir))
            seed_record(config, expires_in=240)
            manager = make_manager(config)
            manager.initialize()

            assert manager.needs_refresh(300) is True
            assert manager.needs_refresh(60) is False

    @given(
        remaining=st.integers(min_value=-10_000, max_value=200_000),
        buffer=st.integers(min_value=0, max_value=100_000),
    )
    @settings(max_examples=50, deadline=None)
    def test_matches_remaining_lifetime(self, remaining: int, buffer: int) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            config = oauth_config(Path(tmpdir))
            seed_record(config, expires_in=86400)
            clock = FakeClock()
            manager = make_manager(config, clock=clock)
            manager.initialize()
            clock.now = manager.record.expires_at - remaining

            assert manager.needs_refresh(buffer) == (remaining <= buffer)

    def test_unknown_expiry_counts_as_stale(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            config = oauth_config(Path(tmpdir))
            seed_record(config, expires_in=None)
            manager = make_manager(config)
            manager.initialize()

            assert manager.remaining_seconds() is None
            assert manager.needs_refresh(0)

    def test_legacy_never_needs_refresh(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            config = ModuleConfig(token="static", persistence=PersistenceConfig(state_dir=Path(tmpdir)))
            manager = make_manager(config)
            manager.initialize()

            assert manager.needs_refresh(10**9) is False


class TestRefresh:
    """Refresh grant against a faked token endpoint."""

    def test_success_updates_and_persists(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            config = oauth_config(Path(tmpdir))
            seed_record(config, expires_in=60)
            endpoint = TokenEndpoint()
            manager = make_manager(config, endpoint)
            manager.initialize()

            assert asyncio.run(manager.refresh()) is True

            form = endpoint.form()
            assert form["grant_type"] == "refresh_token"
            assert form["refresh_token"] == "old-refresh"
            assert form["client_id"] == "cid"
            auth = endpoint.requests[0].headers["Authorization"]
            assert auth == "Basic " + base64.b64encode(b"cid:csecret").decode("ascii")

            assert manager.state == TokenState.VALID
            assert manager.access_token == "new-access"
            assert manager.record.expires_at == NOW + 86400

            stored = CredentialVault(config.persistence).load()
            assert stored.access_token == "new-access"
            assert stored.refresh_token == "new-refresh"

    def test_refresh_token_kept_when_not_rotated(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            config = oauth_config(Path(tmpdir))
            seed_record(config, expires_in=60)
            manager = make_manager(config, TokenEndpoint(body={"access_token": "a2", "expires_in": 100}))
            manager.initialize()

            asyncio.run(manager.refresh())

            assert manager.record.refresh_token == "old-refresh"
            assert manager.record.expires_at == NOW + 100

    @pytest.mark.parametrize("status_code,body", [
        (400, {"error": "invalid_grant"}),
        (401, {"error": "invalid_client"}),
        (401, {}),
    ])
    def test_permanent_failure_latches(self, status_code: int, body: dict) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            config = oauth_config(Path(tmpdir))
            seed_record(config, expires_in=60)
            endpoint = TokenEndpoint(status_code=status_code, body=body)
            manager = make_manager(config, endpoint)
            manager.initialize()

            with pytest.raises(TokenRefreshError) as exc_info:
                asyncio.run(manager.refresh())
            assert exc_info.value.permanent is True
            assert manager.auth_failed
            assert manager.state == TokenState.PERMANENTLY_FAILED

            # Latched: no further request reaches the endpoint
            with pytest.raises(TokenRefreshError):
                asyncio.run(manager.refresh())
            assert len(endpoint.requests) == 1
            assert asyncio.run(manager.ensure_fresh()) is False

    def test_server_error_is_transient(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            config = oauth_config(Path(tmpdir))
            seed_record(config, expires_in=60)
            manager = make_manager(config, TokenEndpoint(status_code=503, body={}))
            manager.initialize()

            with pytest.raises(TokenRefreshError) as exc_info:
                asyncio.run(manager.refresh())
            assert exc_info.value.permanent is False
            assert not manager.auth_failed
            assert manager.state == TokenState.HAS_CREDENTIALS
            assert manager.access_token == "old-access"

    def test_transport_error_is_network_error(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            config = oauth_config(Path(tmpdir))
            seed_record(config, expires_in=60)
            manager = make_manager(config, TokenEndpoint(error=httpx.ConnectError("refused")))
            manager.initialize()

            with pytest.raises(TokenRefreshError) as exc_info:
                asyncio.run(manager.refresh())
            assert exc_info.value.code == "network_error"
            assert exc_info.value.permanent is False
            assert not manager.auth_failed

    def test_missing_refresh_token_is_permanent(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            config = oauth_config(Path(tmpdir))
            seed_record(config, expires_in=60, refresh_token="")
            endpoint = TokenEndpoint()
            manager = make_manager(config, endpoint)
            manager.initialize()

            with pytest.raises(TokenRefreshError) as exc_info:
                asyncio.run(manager.refresh())
            assert exc_info.value.permanent is True
            assert endpoint.requests == []

    def test_persist_failure_is_not_fatal(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            config = oauth_config(Path(tmpdir))
            seed_record(config, expires_in=60)
            manager = make_manager(config)
            manager.initialize()

            with patch.object(CredentialVault, "save", side_effect=PersistenceError(code="io_error", message="disk full")):
                assert asyncio.run(manager.refresh()) is True
            assert manager.state == TokenState.VALID
            assert manager.access_token == "new-access"

    def test_legacy_refresh_is_noop(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            config = ModuleConfig(token="static", persistence=PersistenceConfig(state_dir=Path(tmpdir)))
            endpoint = TokenEndpoint()
            manager = make_manager(config, endpoint)
            manager.initialize()

            assert asyncio.run(manager.refresh()) is False
            assert endpoint.requests == []

    def test_legacy_rejection_latches(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            config = ModuleConfig(token="static", persistence=PersistenceConfig(state_dir=Path(tmpdir)))
            manager = make_manager(config)
            manager.initialize()

            manager.mark_rejected()

            assert manager.auth_failed
            assert manager.state == TokenState.PERMANENTLY_FAILED

    def test_ensure_fresh_only_when_close_to_expiry(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            config = oauth_config(Path(tmpdir))
            seed_record(config, expires_in=3600)
            endpoint = TokenEndpoint()
            manager = make_manager(config, endpoint)
            manager.initialize()

            assert asyncio.run(manager.ensure_fresh(600)) is False
            assert asyncio.run(manager.ensure_fresh(7200)) is True
            assert len(endpoint.requests) == 1


class TestExchangeCode:
    """Authorization-code grant."""

    def test_exchange_persists_current_generation(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            config = oauth_config(Path(tmpdir))
            endpoint = TokenEndpoint()
            manager = make_manager(config, endpoint)

            record = asyncio.run(manager.exchange_code("the-code", "https://example.test/cb"))

            form = endpoint.form()
            assert form["grant_type"] == "authorization_code"
            assert form["code"] == "the-code"
            assert form["redirect_uri"] == "https://example.test/cb"
            assert record.access_token == "new-access"
            assert manager.state == TokenState.VALID
            assert CredentialVault(config.persistence).load().refresh_token == "new-refresh"

    def test_exchange_needs_client_credentials(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            config = ModuleConfig(persistence=PersistenceConfig(state_dir=Path(tmpdir)))
            manager = make_manager(config)

            with pytest.raises(NoCredentialsError):
                asyncio.run(manager.exchange_code("the-code"))

    def test_rejected_exchange(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            config = oauth_config(Path(tmpdir))
            manager = make_manager(config, TokenEndpoint(status_code=400, body={
                "error": "invalid_grant",
                "error_description": "code expired",
            }))

            with pytest.raises(AuthenticationError) as exc_info:
                asyncio.run(manager.exchange_code("stale"))
            assert exc_info.value.code == "invalid_grant"
            assert not CredentialVault(config.persistence).exists()


class TestScheduledRefresh:
    """Proactive refresh timers."""

    def test_recurring_refresh_only_when_far_from_expiry(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            config = oauth_config(Path(tmpdir))
            seed_record(config, expires_in=86400)
            manager = make_manager(config)
            manager.initialize()
            scheduler = FakeScheduler()

            manager.schedule_refreshes(scheduler)

            assert scheduler.recurring[REFRESH_TASK][0] == PROACTIVE_REFRESH_SECONDS
            assert scheduler.one_shot == {}

    def test_expiring_soon_adds_one_shot(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            config = oauth_config(Path(tmpdir))
            seed_record(config, expires_in=1800)
            manager = make_manager(config)
            manager.initialize()
            scheduler = FakeScheduler()

            manager.schedule_refreshes(scheduler)

            assert scheduler.one_shot[EXPIRING_SOON_TASK][0] == EXPIRING_SOON_DELAY_SECONDS

    def test_legacy_schedules_nothing(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            config = ModuleConfig(token="static", persistence=PersistenceConfig(state_dir=Path(tmpdir)))
            manager = make_manager(config)
            manager.initialize()
            scheduler = FakeScheduler()

            manager.schedule_refreshes(scheduler)

            assert scheduler.recurring == {}
            assert scheduler.one_shot == {}

    def test_timed_refresh_reports_errors(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            config = oauth_config(Path(tmpdir))
            seed_record(config, expires_in=86400)
            manager = make_manager(config, TokenEndpoint(status_code=400, body={"error": "invalid_grant"}))
            manager.initialize()
            scheduler = FakeScheduler()
            errors: list[TokenRefreshError] = []

            manager.schedule_refreshes(scheduler, on_error=errors.append)
            _, callback = scheduler.recurring[REFRESH_TASK]
            asyncio.run(callback())
            asyncio.run(callback())

            # The second tick is skipped because the failure latched
            assert len(errors) == 1
            assert errors[0].permanent


class TestAuthorizationHelpers:
    """build_authorize_url() and extract_code()."""

    def test_authorize_url_parameters(self) -> None:
        url = build_authorize_url("cid", "state123", "https://example.test/cb")
        query = parse_qs(urlparse(url).query)

        assert url.startswith("https://api.smartthings.com/oauth/authorize?")
        assert query["response_type"] == ["code"]
        assert query["client_id"] == ["cid"]
        assert query["state"] == ["state123"]
        assert query["redirect_uri"] == ["https://example.test/cb"]
        assert query["scope"] == ["r:devices:* x:devices:* r:locations:*"]

    @pytest.mark.parametrize("value,expected", [
        ("abc123", "abc123"),
        ("  abc123  ", "abc123"),
        ("https://httpbin.org/get?code=xyz&state=s", "xyz"),
        ("https://httpbin.org/get?state=s", None),
        ("", None),
    ])
    def test_extract_code(self, value: str, expected: Optional[str]) -> None:
        assert extract_code(value) == expected

    def test_token_url_default(self) -> None:
        assert TOKEN_URL == "https://api.smartthings.com/oauth/token"
