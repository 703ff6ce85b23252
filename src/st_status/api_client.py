"""
SmartThings REST client for the status poller.

This module provides an async client for the read endpoints the poller
needs (locations, rooms, room devices, device status). Every request:
- waits out any pending backoff and pauses when the rate window is full
- is counted against the rate window
- carries the bearer token from the token manager
- has a bounded timeout

Outcomes are mapped onto the exception hierarchy and reported to an
outcome observer (the alert state machine); httpx exceptions never
escape this module.
"""

import asyncio
from typing import Any, Awaitable, Callable, Optional

import httpx

from .enums import AuthMode, LogLevel
from .exceptions import (
    ApiError,
    AuthenticationError,
    NetworkError,
    PermissionDeniedError,
    RateLimitError,
    SchemaError,
    ServerOutageError,
    StStatusError,
    TokenRefreshError,
)
from .rate_limiter import RateLimiter
from .token_manager import TokenManager

API_BASE_URL = "https://api.smartthings.com/v1"


class SmartThingsClient:
    """
    Async client for the provider's read endpoints.

    Only the first page of list endpoints is read.
    """

    def __init__(
        self,
        token_manager: TokenManager,
        rate_limiter: RateLimiter,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 15.0,
        observer: Optional[object] = None,
        logger: Optional[object] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        base_url: str = API_BASE_URL,
    ) -> None:
        """
        Initialize the client.

        Args:
            token_manager: Source of the bearer token, refreshed once on a 401
            rate_limiter: Shared request window and backoff state
            http_client: Optional preconfigured client (tests pass a MockTransport)
            timeout: Request timeout in seconds
            observer: Receives record_success() / record_failure(category)
            logger: Optional AuditLogger
            sleep: Coroutine function used for rate-limit pauses
            base_url: API root
        """
        self._tokens = token_manager
        self._rate_limiter = rate_limiter
        self._client = http_client
        self._owns_client = http_client is None
        self._timeout = timeout
        self._observer = observer
        self._logger = logger
        self._sleep = sleep
        self._base_url = base_url.rstrip("/")
        self._refresh_attempted = False

    async def __aenter__(self) -> "SmartThingsClient":
        self._ensure_client()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    def begin_cycle(self) -> None:
        """Allow one 401-triggered token refresh in the coming cycle."""
        self._refresh_attempted = False

    async def list_locations(self) -> list[dict]:
        """GET /locations"""
        return self._items(await self.get_json("/locations"), "/locations")

    async def list_rooms(self, location_id: str) -> list[dict]:
        """GET /locations/{id}/rooms"""
        path = f"/locations/{location_id}/rooms"
        return self._items(await self.get_json(path), path)

    async def list_room_devices(self, location_id: str, room_id: str) -> list[dict]:
        """GET /locations/{id}/rooms/{roomId}/devices"""
        path = f"/locations/{location_id}/rooms/{room_id}/devices"
        return self._items(await self.get_json(path), path)

    async def get_device_status(self, device_id: str) -> Any:
        """
        GET /devices/{id}/status

        Returns the raw payload; its shape is validated by the normalizer.
        """
        return await self.get_json(f"/devices/{device_id}/status")

    async def get_json(self, path: str) -> Any:
        """
        Perform an authenticated GET and decode the JSON body.

        On HTTP 401 in OAuth mode the token is refreshed and the request
        retried once. Only one such refresh happens per cycle; a later 401
        in the same cycle is reported as an authentication failure.

        Raises:
            StStatusError: A categorized subclass describing the failure
        """
        response = await self._send(path)

        if (
            response.status_code == 401
            and self._tokens.mode == AuthMode.OAUTH
            and not self._refresh_attempted
        ):
            self._refresh_attempted = True
            self._log(LogLevel.WARN, "Unauthorized, refreshing token and retrying", {"path": path})
            try:
                await self._tokens.refresh()
            except TokenRefreshError as e:
                error: StStatusError
                if e.permanent:
                    error = AuthenticationError(
                        code=e.code,
                        message=f"Token rejected and refresh failed: {e.message}",
                        details={"path": path},
                    )
                else:
                    error = NetworkError(
                        code=e.code,
                        message=f"Token refresh failed: {e.message}",
                        details={"path": path},
                    )
                self._record_failure(error)
                raise error from e
            response = await self._send(path)

        return self._handle_response(response, path)

    async def _send(self, path: str) -> httpx.Response:
        await self._rate_limiter.wait_for_capacity(self._sleep)
        await self._rate_limiter.apply_backoff(self._sleep)
        self._rate_limiter.record_request()

        url = f"{self._base_url}{path}"
        client = self._ensure_client()
        try:
            return await client.get(url, headers={
                **self._tokens.authorization_header(),
                "Accept": "application/json",
            })
        except httpx.TimeoutException as e:
            error = NetworkError(
                code="timeout",
                message=f"Request timed out after {self._timeout}s",
                details={"url": url},
            )
            self._record_failure(error, url)
            raise error from e
        except httpx.HTTPError as e:
            error = NetworkError(
                code="connection_error",
                message=f"Request failed: {e}",
                details={"url": url},
            )
            self._record_failure(error, url)
            raise error from e

    def _handle_response(self, response: httpx.Response, path: str) -> Any:
        status = response.status_code
        details = {"path": path, "status_code": status}
        error: Optional[StStatusError] = None

        if 200 <= status < 300:
            try:
                body = response.json()
            except ValueError:
                error = ServerOutageError(
                    code="unparseable_response",
                    message="Response body is not valid JSON",
                    details=details,
                )
            else:
                self._rate_limiter.register_success()
                self._record_success()
                return body
        elif status == 401:
            # Only reached after the retry in OAuth mode, or in legacy mode
            self._tokens.mark_rejected()
            error = AuthenticationError(
                code="unauthorized",
                message="Access token rejected (HTTP 401)",
                details=details,
            )
        elif status == 403:
            error = PermissionDeniedError(
                code="forbidden",
                message="Token lacks the scope for this request (HTTP 403)",
                details=details,
            )
        elif status == 429:
            self._rate_limiter.register_throttled()
            error = RateLimitError(
                code="too_many_requests",
                message="Rate limited by provider (HTTP 429)",
                details=details,
            )
        elif status >= 500:
            error = ServerOutageError(
                code="server_error",
                message=f"Provider server error (HTTP {status})",
                details=details,
            )
        else:
            error = ApiError(
                code="unexpected_status",
                message=f"Unexpected HTTP status: {status}",
                details=details,
            )

        self._record_failure(error, path, status)
        raise error

    def _items(self, body: Any, path: str) -> list[dict]:
        items = body.get("items") if isinstance(body, dict) else None
        if not isinstance(items, list):
            error = SchemaError(
                code="missing_items",
                message="List response has no 'items' array",
                details={"path": path},
            )
            self._record_failure(error, path)
            raise error
        return [item for item in items if isinstance(item, dict)]

    def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                verify=True,
                timeout=httpx.Timeout(self._timeout),
            )
        return self._client

    def _record_success(self) -> None:
        if self._observer is not None:
            self._observer.record_success()

    def _record_failure(
        self,
        error: StStatusError,
        request_url: Optional[str] = None,
        status_code: Optional[int] = None,
    ) -> None:
        if self._logger:
            self._logger.log_error(
                "SmartThingsClient",
                error.message,
                error=error,
                request_url=request_url,
                response_status_code=status_code,
            )
        if self._observer is not None and error.category is not None:
            self._observer.record_failure(error.category)

    def _log(self, level: LogLevel, message: str, data: dict) -> None:
        if self._logger:
            self._logger.log(level, "SmartThingsClient", message, data)

