"""
Rate Limiter module for the status poller.

This module provides self-throttling against the provider's request ceiling:
- Request counting within a fixed window that resets every 60 seconds
- A warning once the count reaches the warning threshold
- Exponential backoff on provider-signaled throttling (HTTP 429), applied
  as an upfront wait before the next request
"""

import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from st_status.config import RateLimitConfig
from st_status.enums import LogLevel
from st_status.models import RateWindow


@dataclass
class RateLimitStatus:
    """Result of a capacity check."""

    allowed: bool
    wait_seconds: float
    reason: Optional[str] = None


class RateLimiter:
    """
    Fixed-window request counter with a single backoff delay.

    The window and the backoff state are shared by every request a session
    makes; the poller is single-threaded so no locking is involved.
    """

    # Pause taken when the window is exhausted before proceeding anyway
    CAPACITY_PAUSE_SECONDS = 1.0

    def __init__(
        self,
        config: RateLimitConfig,
        clock: Callable[[], float] = time.monotonic,
        logger: Optional[object] = None,
    ) -> None:
        """
        Initialize the rate limiter.

        Args:
            config: Ceiling, warning threshold, window length and backoff bounds
            clock: Monotonic time source in seconds
            logger: Optional AuditLogger
        """
        self._config = config
        self._clock = clock
        self._logger = logger
        self._window = RateWindow(
            request_count=0,
            window_reset_at=clock() + config.window_seconds,
        )
        self._backoff_ms = 0
        self._warned_this_window = False

    @property
    def window(self) -> RateWindow:
        return RateWindow(self._window.request_count, self._window.window_reset_at)

    @property
    def backoff_delay_ms(self) -> int:
        """Delay to apply before the next request (0 when not backing off)."""
        return self._backoff_ms

    def reset_window(self) -> None:
        self._window = RateWindow(
            request_count=0,
            window_reset_at=self._clock() + self._config.window_seconds,
        )
        self._warned_this_window = False

    def check_capacity(self) -> bool:
        """
        Reset the window if it has elapsed and report remaining capacity.

        Returns:
            True if another request fits in the current window
        """
        if self._clock() >= self._window.window_reset_at:
            self.reset_window()
        return self._window.request_count < self._config.max_requests

    def status(self) -> RateLimitStatus:
        """Capacity check with the time left until the window resets."""
        if self.check_capacity():
            return RateLimitStatus(allowed=True, wait_seconds=0.0)
        remaining = max(0.0, self._window.window_reset_at - self._clock())
        return RateLimitStatus(
            allowed=False,
            wait_seconds=remaining,
            reason=(
                f"Rate limit reached: {self._window.request_count}/"
                f"{self._config.max_requests} requests this window"
            ),
        )

    async def wait_for_capacity(
        self,
        sleep: Callable[[float], Awaitable[None]],
    ) -> RateLimitStatus:
        """
        Pause briefly when the window is exhausted, then let the caller proceed.

        Args:
            sleep: Coroutine function used to wait (asyncio.sleep in production)

        Returns:
            The status observed before any pause
        """
        status = self.status()
        if not status.allowed:
            self._log(LogLevel.INFO, "Rate limit approached, delaying requests", {
                "request_count": self._window.request_count,
                "max_requests": self._config.max_requests,
            })
            await sleep(self.CAPACITY_PAUSE_SECONDS)
        return status

    def record_request(self) -> int:
        """
        Count a request against the current window.

        Returns:
            The request count after this request
        """
        if self._clock() >= self._window.window_reset_at:
            self.reset_window()
        self._window.request_count += 1

        count = self._window.request_count
        if count >= self._config.warn_threshold and not self._warned_this_window:
            self._warned_this_window = True
            self._log(LogLevel.WARN, "Approaching rate limit", {
                "request_count": count,
                "max_requests": self._config.max_requests,
            })
        return count

    def register_throttled(self) -> int:
        """
        Double the backoff delay after a 429 response.

        Starts at the base delay and is capped at the maximum.

        Returns:
            The new backoff delay in milliseconds
        """
        if self._backoff_ms:
            self._backoff_ms = min(self._backoff_ms * 2, self._config.backoff_max_ms)
        else:
            self._backoff_ms = min(self._config.backoff_base_ms, self._config.backoff_max_ms)
        self._log(LogLevel.WARN, "Rate limited by provider, backing off", {
            "backoff_ms": self._backoff_ms,
        })
        return self._backoff_ms

    def register_success(self) -> None:
        """Clear the backoff after a successful response."""
        self._backoff_ms = 0

    async def apply_backoff(
        self,
        sleep: Callable[[float], Awaitable[None]],
    ) -> float:
        """
        Wait out the pending backoff delay, if any.

        Returns:
            Seconds waited
        """
        if self._backoff_ms <= 0:
            return 0.0
        seconds = self._backoff_ms / 1000.0
        self._log(LogLevel.DEBUG, "Applying backoff delay", {"backoff_ms": self._backoff_ms})
        await sleep(seconds)
        return seconds

    def _log(self, level: LogLevel, message: str, data: dict) -> None:
        if self._logger:
            self._logger.log(level, "RateLimiter", message, data)
