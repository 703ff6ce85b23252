"""
Tests for the SmartThings REST client.

The provider is faked with httpx.MockTransport; every test asserts both
the raised exception class and the outcome reported to the observer.
"""

import asyncio
import tempfile
from pathlib import Path
from typing import Optional

import httpx
import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from st_status.api_client import API_BASE_URL, SmartThingsClient
from st_status.config import ModuleConfig, OAuthConfig, PersistenceConfig, RateLimitConfig
from st_status.credential_vault import CredentialVault
from st_status.enums import ErrorCategory
from st_status.exceptions import (
    ApiError,
    AuthenticationError,
    NetworkError,
    PermissionDeniedError,
    RateLimitError,
    SchemaError,
    ServerOutageError,
)
from st_status.models import CredentialRecord
from st_status.rate_limiter import RateLimiter
from st_status.token_manager import TOKEN_URL, TokenManager


NOW = 1_800_000_000.0


class RecordingObserver:
    def __init__(self) -> None:
        self.successes = 0
        self.failures: list[ErrorCategory] = []

    def record_success(self) -> None:
        self.successes += 1

    def record_failure(self, category: ErrorCategory) -> None:
        self.failures.append(category)


class RecordingSleep:
    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


class FakeProvider:
    """
    Scripted provider.

    Each API path maps to a list of responses consumed in order; the last
    one repeats. The token endpoint always issues "fresh-access".
    """

    def __init__(self, routes: Optional[dict] = None, token_status: int = 200) -> None:
        self.routes = routes or {}
        self.token_status = token_status
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if str(request.url) == TOKEN_URL:
            if self.token_status != 200:
                return httpx.Response(self.token_status, json={"error": "invalid_grant"})
            return httpx.Response(200, json={
                "access_token": "fresh-access",
                "refresh_token": "fresh-refresh",
                "expires_in": 86400,
            })
        path = request.url.path[len("/v1"):]
        script = self.routes.get(path)
        if script is None:
            return httpx.Response(404, json={})
        step = script.pop(0) if len(script) > 1 else script[0]
        if isinstance(step, Exception):
            raise step
        if callable(step):
            return step(request)
        # Fresh copy so a repeated step is never reused across requests
        return httpx.Response(step.status_code, headers=step.headers, content=step.content)

    def api_requests(self) -> list[httpx.Request]:
        return [r for r in self.requests if str(r.url) != TOKEN_URL]


def make_client(
    tmpdir: str,
    provider: FakeProvider,
    legacy: bool = False,
    observer: Optional[RecordingObserver] = None,
    sleep: Optional[RecordingSleep] = None,
    limiter: Optional[RateLimiter] = None,
) -> tuple[SmartThingsClient, TokenManager]:
    persistence = PersistenceConfig(state_dir=Path(tmpdir))
    if legacy:
        config = ModuleConfig(token="static-token", persistence=persistence)
    else:
        config = ModuleConfig(
            oauth=OAuthConfig(client_id="cid", client_secret="csecret"),
            persistence=persistence,
        )
        CredentialVault(persistence).save(CredentialRecord(
            client_id="cid",
            client_secret="csecret",
            access_token="stale-access",
            refresh_token="refresh",
            expires_at=NOW + 86400,
        ))
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(provider))
    tokens = TokenManager(config, CredentialVault(persistence), http_client=http_client, clock=lambda: NOW)
    tokens.initialize()
    client = SmartThingsClient(
        tokens,
        limiter or RateLimiter(RateLimitConfig()),
        http_client=http_client,
        observer=observer,
        sleep=sleep or RecordingSleep(),
    )
    return client, tokens


class TestEndpoints:
    """Read endpoints and request headers."""

    def test_device_status_with_bearer_token(self) -> None:
        provider = FakeProvider({"/devices/d1/status": [httpx.Response(200, json={"components": {}})]})
        observer = RecordingObserver()
        with tempfile.TemporaryDirectory() as tmpdir:
            client, _ = make_client(tmpdir, provider, legacy=True, observer=observer)

            body = asyncio.run(client.get_device_status("d1"))

        assert body == {"components": {}}
        request = provider.requests[0]
        assert str(request.url) == f"{API_BASE_URL}/devices/d1/status"
        assert request.headers["Authorization"] == "Bearer static-token"
        assert observer.successes == 1

    def test_list_endpoints_return_items(self) -> None:
        provider = FakeProvider({
            "/locations": [httpx.Response(200, json={"items": [{"locationId": "L1"}, "junk"]})],
            "/locations/L1/rooms": [httpx.Response(200, json={"items": [{"roomId": "R1", "name": "Kitchen"}]})],
            "/locations/L1/rooms/R1/devices": [httpx.Response(200, json={"items": [{"deviceId": "d1"}]})],
        })
        with tempfile.TemporaryDirectory() as tmpdir:
            client, _ = make_client(tmpdir, provider, legacy=True)

            async def scenario():
                return (
                    await client.list_locations(),
                    await client.list_rooms("L1"),
                    await client.list_room_devices("L1", "R1"),
                )

            locations, rooms, devices = asyncio.run(scenario())

        assert locations == [{"locationId": "L1"}]
        assert rooms == [{"roomId": "R1", "name": "Kitchen"}]
        assert devices == [{"deviceId": "d1"}]

    def test_list_without_items_is_schema_error(self) -> None:
        provider = FakeProvider({"/locations": [httpx.Response(200, json={"data": []})]})
        observer = RecordingObserver()
        with tempfile.TemporaryDirectory() as tmpdir:
            client, _ = make_client(tmpdir, provider, legacy=True, observer=observer)

            with pytest.raises(SchemaError):
                asyncio.run(client.list_locations())

        assert observer.failures == [ErrorCategory.SCHEMA]


class TestErrorMapping:
    """HTTP and transport outcomes map onto categorized exceptions."""

    @pytest.mark.parametrize("status,exc_type,category", [
        (403, PermissionDeniedError, ErrorCategory.SCOPE),
        (429, RateLimitError, ErrorCategory.RATE_LIMIT),
        (500, ServerOutageError, ErrorCategory.OUTAGE),
        (503, ServerOutageError, ErrorCategory.OUTAGE),
        (404, ApiError, ErrorCategory.OUTAGE),
        (418, ApiError, ErrorCategory.OUTAGE),
    ])
    def test_status_codes(self, status: int, exc_type: type, category: ErrorCategory) -> None:
        provider = FakeProvider({"/devices/d1/status": [httpx.Response(status, json={})]})
        observer = RecordingObserver()
        with tempfile.TemporaryDirectory() as tmpdir:
            client, _ = make_client(tmpdir, provider, legacy=True, observer=observer)

            with pytest.raises(exc_type):
                asyncio.run(client.get_device_status("d1"))

        assert observer.failures == [category]
        assert observer.successes == 0

    def test_unparseable_success_body_is_outage(self) -> None:
        provider = FakeProvider({"/devices/d1/status": [httpx.Response(200, content=b"<html>")]})
        observer = RecordingObserver()
        with tempfile.TemporaryDirectory() as tmpdir:
            client, _ = make_client(tmpdir, provider, legacy=True, observer=observer)

            with pytest.raises(ServerOutageError) as exc_info:
                asyncio.run(client.get_device_status("d1"))

        assert exc_info.value.code == "unparseable_response"
        assert observer.failures == [ErrorCategory.OUTAGE]

    @pytest.mark.parametrize("error,code", [
        (httpx.ConnectError("refused"), "connection_error"),
        (httpx.ReadTimeout("slow"), "timeout"),
    ])
    def test_transport_errors_are_network(self, error: Exception, code: str) -> None:
        provider = FakeProvider({"/devices/d1/status": [error]})
        observer = RecordingObserver()
        with tempfile.TemporaryDirectory() as tmpdir:
            client, _ = make_client(tmpdir, provider, legacy=True, observer=observer)

            with pytest.raises(NetworkError) as exc_info:
                asyncio.run(client.get_device_status("d1"))

        assert exc_info.value.code == code
        assert observer.failures == [ErrorCategory.NETWORK]


class TestUnauthorizedRetry:
    """HTTP 401: one refresh, one retry."""

    def test_refresh_and_retry_succeeds(self) -> None:
        def check_token(request: httpx.Request) -> httpx.Response:
            if request.headers["Authorization"] == "Bearer fresh-access":
                return httpx.Response(200, json={"components": {"main": {}}})
            return httpx.Response(401, json={})

        provider = FakeProvider({"/devices/d1/status": [check_token]})
        observer = RecordingObserver()
        with tempfile.TemporaryDirectory() as tmpdir:
            client, tokens = make_client(tmpdir, provider, observer=observer)

            body = asyncio.run(client.get_device_status("d1"))
            assert tokens.access_token == "fresh-access"

        assert body == {"components": {"main": {}}}
        assert len(provider.api_requests()) == 2
        assert len(provider.requests) == 3
        assert observer.failures == []
        assert observer.successes == 1

    def test_second_401_is_auth_failure(self) -> None:
        provider = FakeProvider({"/devices/d1/status": [httpx.Response(401, json={})]})
        observer = RecordingObserver()
        with tempfile.TemporaryDirectory() as tmpdir:
            client, _ = make_client(tmpdir, provider, observer=observer)

            with pytest.raises(AuthenticationError):
                asyncio.run(client.get_device_status("d1"))

        # Exactly one retry
        assert len(provider.api_requests()) == 2
        assert observer.failures == [ErrorCategory.AUTH]

    def test_permanent_refresh_failure_is_auth(self) -> None:
        provider = FakeProvider({"/devices/d1/status": [httpx.Response(401, json={})]}, token_status=400)
        observer = RecordingObserver()
        with tempfile.TemporaryDirectory() as tmpdir:
            client, tokens = make_client(tmpdir, provider, observer=observer)

            with pytest.raises(AuthenticationError):
                asyncio.run(client.get_device_status("d1"))
            assert tokens.auth_failed

        assert len(provider.api_requests()) == 1
        assert observer.failures == [ErrorCategory.AUTH]

    def test_legacy_401_latches_without_refresh(self) -> None:
        provider = FakeProvider({"/devices/d1/status": [httpx.Response(401, json={})]})
        observer = RecordingObserver()
        with tempfile.TemporaryDirectory() as tmpdir:
            client, tokens = make_client(tmpdir, provider, legacy=True, observer=observer)

            with pytest.raises(AuthenticationError):
                asyncio.run(client.get_device_status("d1"))
            assert tokens.auth_failed

        assert len(provider.requests) == 1
        assert observer.failures == [ErrorCategory.AUTH]

    def test_one_refresh_per_cycle(self) -> None:
        provider = FakeProvider({
            "/devices/d1/status": [httpx.Response(401, json={})],
            "/devices/d2/status": [httpx.Response(401, json={})],
        })
        with tempfile.TemporaryDirectory() as tmpdir:
            client, _ = make_client(tmpdir, provider)

            async def scenario() -> list[int]:
                token_calls = []
                client.begin_cycle()
                for device_id in ("d1", "d2"):
                    with pytest.raises(AuthenticationError):
                        await client.get_device_status(device_id)
                    token_calls.append(len(provider.requests) - len(provider.api_requests()))
                client.begin_cycle()
                with pytest.raises(AuthenticationError):
                    await client.get_device_status("d1")
                token_calls.append(len(provider.requests) - len(provider.api_requests()))
                return token_calls

            token_calls = asyncio.run(scenario())

        # The second device in the same cycle does not refresh again
        assert token_calls == [1, 1, 2]
        paths = [r.url.path for r in provider.api_requests()]
        assert paths == [
            "/v1/devices/d1/status", "/v1/devices/d1/status",
            "/v1/devices/d2/status",
            "/v1/devices/d1/status", "/v1/devices/d1/status",
        ]


class TestThrottling:
    """Backoff and rate window accounting."""

    def test_429_backoff_applied_before_next_request(self) -> None:
        provider = FakeProvider({"/devices/d1/status": [
            httpx.Response(429, json={}),
            httpx.Response(429, json={}),
            httpx.Response(200, json={}),
        ]})
        sleep = RecordingSleep()
        limiter = RateLimiter(RateLimitConfig())
        with tempfile.TemporaryDirectory() as tmpdir:
            client, _ = make_client(tmpdir, provider, legacy=True, sleep=sleep, limiter=limiter)

            async def scenario() -> None:
                for _ in range(2):
                    with pytest.raises(RateLimitError):
                        await client.get_device_status("d1")
                await client.get_device_status("d1")

            asyncio.run(scenario())

        assert sleep.calls == [1.0, 2.0]
        assert limiter.backoff_delay_ms == 0

    @given(count=st.integers(min_value=1, max_value=20))
    @settings(max_examples=10, deadline=None)
    def test_every_request_is_counted(self, count: int) -> None:
        provider = FakeProvider({"/devices/d1/status": [httpx.Response(200, json={})]})
        limiter = RateLimiter(RateLimitConfig())
        with tempfile.TemporaryDirectory() as tmpdir:
            client, _ = make_client(tmpdir, provider, legacy=True, limiter=limiter)

            async def scenario() -> None:
                for _ in range(count):
                    await client.get_device_status("d1")

            asyncio.run(scenario())

        assert limiter.window.request_count == count
