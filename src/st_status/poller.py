"""
Polling session for the status poller.

This module provides the orchestration layer that owns every piece of
mutable state for one display instance and coordinates:
- Credential loading and proactive token refresh
- Device resolution (kept once it finds devices)
- Sequential per-device status fetches
- Normalization, caching and publishing of each cycle's snapshot
- Routing of failures to the gateway while keeping stale data visible

Sessions are independent; several may run side by side.
"""

import asyncio
import time
from dataclasses import replace
from typing import Awaitable, Callable, Optional

import httpx

from .alert_state import AlertStateMachine
from .api_client import SmartThingsClient
from .audit_logger import AuditLogger
from .cache_store import CacheStore
from .config import ModuleConfig, config_hash
from .credential_vault import CredentialVault
from .device_resolver import DeviceResolver
from .enums import ErrorCategory, LogLevel
from .exceptions import (
    AuthenticationError,
    NetworkError,
    NoCredentialsError,
    PersistenceError,
    StStatusError,
    TokenRefreshError,
    VaultKeyError,
)
from .i18n import get_message
from .models import NormalizedDevice, to_iso
from .normalizer import Normalizer
from .notifications import NotificationGateway
from .rate_limiter import RateLimiter
from .scheduler import Scheduler
from .token_manager import TokenManager

POLL_TASK = "poll"

# Index of the mock device whose motion state flips every tick
MOCK_TOGGLE_INDEX = 4


def mock_devices() -> list[NormalizedDevice]:
    """The fixed device set published in test mode."""
    rows = [
        ("1", "Living Room Lamp", "Living Room", "switch", "on", {}),
        ("2", "Front Door", "Entry", "contact", "closed", {}),
        ("3", "Back Door", "Kitchen", "contact", "open", {}),
        ("4", "Hallway Motion", "Hallway", "motion", "inactive", {}),
        ("5", "Living Room Motion", "Living Room", "motion", "active", {}),
        ("6", "Front Door Lock", "Entry", "lock", "locked", {}),
        ("7", "Back Door Lock", "Kitchen", "lock", "unlocked", {}),
        ("8", "Thermostat", "Living Room", "temperature", 72, {"battery": 85}),
        ("9", "Bedroom Sensor", "Bedroom", "temperature", 68, {"humidity": 45, "battery": 15}),
        ("10", "Garage Door", "Garage", "contact", "closed", {"battery": 50}),
    ]
    return [
        NormalizedDevice(
            id=device_id,
            name=name,
            room=room,
            primary_capability=capability,
            primary_state=state,
            **extra,
        )
        for device_id, name, room, capability, state, extra in rows
    ]


class PollingSession:
    """
    One explicitly constructed polling session.

    Collaborators are built from the configuration unless passed in, so
    tests can substitute clocks, sleep, the scheduler and the HTTP
    transport.
    """

    def __init__(
        self,
        config: ModuleConfig,
        gateway: Optional[NotificationGateway] = None,
        logger: Optional[AuditLogger] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        scheduler: Optional[Scheduler] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        api_base_url: Optional[str] = None,
        token_url: Optional[str] = None,
    ) -> None:
        """
        Initialize the session.

        Args:
            config: Module configuration
            gateway: Receives display events; a channel-less gateway if omitted
            logger: Audit logger; built from config.logging if omitted
            http_client: Shared HTTP client for API and token requests
            scheduler: Timer abstraction; a real asyncio Scheduler if omitted
            clock: Wall clock in epoch seconds
            sleep: Coroutine function used for rate-limit and backoff pauses
            api_base_url: Override for the provider API root
            token_url: Override for the OAuth token endpoint
        """
        self._config = config
        self._clock = clock
        self._logger = logger or AuditLogger.from_level_name(
            config.logging.level, output_format=config.logging.output_format,
        )
        self._gateway = gateway or NotificationGateway(logger=self._logger)
        self._scheduler = scheduler or Scheduler(logger=self._logger)

        self._alerts = AlertStateMachine(
            on_alert=self._gateway.alert,
            on_clear=self._gateway.alert_clear,
            logger=self._logger,
        )
        self._vault = CredentialVault(config.persistence, logger=self._logger)

        token_kwargs = {"token_url": token_url} if token_url else {}
        self._tokens = TokenManager(
            config,
            self._vault,
            http_client=http_client,
            clock=clock,
            logger=self._logger,
            **token_kwargs,
        )
        self._rate_limiter = RateLimiter(config.rate_limits, logger=self._logger)

        client_kwargs = {"base_url": api_base_url} if api_base_url else {}
        self._client = SmartThingsClient(
            self._tokens,
            self._rate_limiter,
            http_client=http_client,
            timeout=config.request_timeout_seconds,
            observer=self._alerts,
            logger=self._logger,
            sleep=sleep,
            **client_kwargs,
        )
        self._cache = CacheStore(
            config.persistence.cache_file,
            config_hash(config),
            clock=clock,
            logger=self._logger,
        )
        self._resolver = DeviceResolver(self._client, cache=self._cache, logger=self._logger)
        self._normalizer = Normalizer(observer=self._alerts, logger=self._logger)

        self._started = False
        self._stopped = False
        self._last_snapshot: Optional[list[NormalizedDevice]] = None
        self._mock: Optional[list[NormalizedDevice]] = None

    @property
    def config(self) -> ModuleConfig:
        return self._config

    @property
    def alerts(self) -> AlertStateMachine:
        return self._alerts

    @property
    def tokens(self) -> TokenManager:
        return self._tokens

    @property
    def cache(self) -> CacheStore:
        return self._cache

    @property
    def resolver(self) -> DeviceResolver:
        return self._resolver

    @property
    def rate_limiter(self) -> RateLimiter:
        return self._rate_limiter

    @property
    def scheduler(self) -> Scheduler:
        return self._scheduler

    @property
    def gateway(self) -> NotificationGateway:
        return self._gateway

    @property
    def active(self) -> bool:
        return self._started and not self._stopped

    @property
    def last_snapshot(self) -> Optional[list[NormalizedDevice]]:
        return self._last_snapshot

    async def __aenter__(self) -> "PollingSession":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.stop()

    async def start(self) -> bool:
        """
        Start the session: cached data, first cycle, then timers.

        Returns:
            False if the session could not start (no credentials)

        Raises:
            VaultKeyError: If the key file is unusable
        """
        self._started = True
        if self._config.test_mode:
            await self._start_test_mode()
            return True

        if not await self.initialize():
            return False
        await self._gateway.loading()
        await self.run_cycle()
        if self._stopped:
            return True

        self._scheduler.every(POLL_TASK, self._poll_interval_seconds(), self._poll_tick)
        self._tokens.schedule_refreshes(self._scheduler, on_error=self._on_refresh_error)
        self._log(LogLevel.INFO, "Polling started", {
            "interval_ms": self._config.effective_poll_interval_ms,
        })
        return True

    async def initialize(self) -> bool:
        """
        Load the cache and the credentials.

        A valid cache restores the resolved devices and is published at once.

        Returns:
            False if no credentials exist; the operator must run setup

        Raises:
            VaultKeyError: If the key file is unusable
        """
        snapshot = self._cache.load()
        if snapshot is not None:
            self._resolver.restore(snapshot.devices, snapshot.location_id)
            if snapshot.last_status is not None:
                self._last_snapshot = list(snapshot.last_status)
                await self._gateway.device_data(snapshot.last_status, snapshot.timestamp)

        try:
            self._tokens.initialize()
        except NoCredentialsError as e:
            self._logger.log_error("PollingSession", "No credentials, run setup", error=e)
            self._alerts.record_failure(ErrorCategory.AUTH)
            await self._publish_error(get_message("gateway.no_credentials", self._config.language))
            return False
        except VaultKeyError as e:
            self._logger.log_error("PollingSession", "Credential key file unusable", error=e)
            await self._publish_error(get_message("gateway.vault_key_error", self._config.language))
            raise
        return True

    async def stop(self) -> None:
        """Clear every timer and release clients. Idempotent."""
        if self._stopped:
            return
        self._stopped = True
        self._scheduler.cancel_all()
        await self._gateway.drain()
        await self._client.aclose()
        await self._tokens.aclose()
        self._log(LogLevel.INFO, "Polling stopped", {})

    async def run_cycle(self) -> Optional[list[NormalizedDevice]]:
        """
        Run one fetch cycle.

        Returns:
            The published snapshot, an empty list when there is nothing to
            poll, or None when nothing was published
        """
        if self._stopped:
            return None
        if self._config.test_mode:
            return await self._mock_tick()
        if self._tokens.auth_failed:
            self._log(LogLevel.DEBUG, "Authentication failed permanently, skipping cycle", {})
            return None

        self._client.begin_cycle()
        try:
            await self._refresh_if_expiring()
            if self._stopped:
                return None

            if not self._resolver.is_resolved:
                await self._resolver.resolve(self._config)
                if self._stopped:
                    return None

            devices = self._resolver.devices or []
            if not devices:
                self._log(LogLevel.WARN, "No devices to poll", {})
                await self._gateway.error(get_message("gateway.no_devices", self._config.language))
                return []

            results: list[NormalizedDevice] = []
            last_error: Optional[StStatusError] = None
            for device in devices:
                if self._stopped:
                    return None
                try:
                    raw_status = await self._client.get_device_status(device.id)
                except StStatusError as e:
                    if self._stopped:
                        return None
                    # Still rejected after this cycle's refresh; the rest would be too
                    if self._tokens.auth_failed or isinstance(e, AuthenticationError):
                        raise
                    last_error = e
                    self._log(LogLevel.WARN, "Skipping device after failed fetch", {
                        "device_id": device.id,
                        "error_code": e.code,
                    })
                    continue
                if self._stopped:
                    return None
                snapshot = self._normalizer.normalize(device, raw_status)
                if snapshot is not None:
                    results.append(snapshot)

            if not results and last_error is not None:
                # Nothing came back at all; keep the cached snapshot on display
                raise last_error
        except StStatusError as e:
            await self._handle_cycle_error(e)
            return None

        self._alerts.record_success()
        timestamp = to_iso(self._clock())
        try:
            self._cache.update(last_status=results)
        except PersistenceError as e:
            self._logger.log_error("PollingSession", "Failed to write cache", error=e)
        self._last_snapshot = results
        await self._gateway.device_data(results, timestamp)
        return results

    async def _refresh_if_expiring(self) -> None:
        try:
            await self._tokens.ensure_fresh()
        except TokenRefreshError as e:
            self._on_refresh_error(e)
            if e.permanent:
                raise
            # Carry on with the current token until the next attempt
            self._log(LogLevel.WARN, "Opportunistic token refresh failed", {"error_code": e.code})

    async def _poll_tick(self) -> None:
        await self.run_cycle()

    def _on_refresh_error(self, error: TokenRefreshError) -> None:
        if error.permanent:
            category = ErrorCategory.AUTH
        elif error.code == "network_error":
            category = ErrorCategory.NETWORK
        else:
            category = ErrorCategory.OUTAGE
        self._alerts.record_failure(category)

    async def _handle_cycle_error(self, error: StStatusError) -> None:
        self._logger.log_error("PollingSession", "Poll cycle failed", error=error)
        if self._stopped:
            return
        if isinstance(error, (AuthenticationError, TokenRefreshError, NoCredentialsError)):
            key = "gateway.auth_failed"
        elif isinstance(error, NetworkError):
            key = "gateway.network_error"
        else:
            key = "gateway.cycle_error"
        await self._publish_error(get_message(key, self._config.language))

    async def _publish_error(self, message: str) -> None:
        snapshot = self._cache.snapshot
        if snapshot is not None and snapshot.last_status is not None:
            await self._gateway.error(
                message,
                cached=True,
                devices=snapshot.last_status,
                timestamp=snapshot.timestamp,
            )
        else:
            await self._gateway.error(message, cached=False)

    async def _start_test_mode(self) -> None:
        self._log(LogLevel.INFO, "Test mode enabled, publishing mock devices", {})
        self._mock = mock_devices()
        self._last_snapshot = list(self._mock)
        await self._gateway.device_data(self._mock, to_iso(self._clock()))
        self._scheduler.every(POLL_TASK, self._poll_interval_seconds(), self._poll_tick)

    async def _mock_tick(self) -> list[NormalizedDevice]:
        if self._mock is None:
            self._mock = mock_devices()
        toggled = self._mock[MOCK_TOGGLE_INDEX]
        self._mock[MOCK_TOGGLE_INDEX] = replace(
            toggled,
            primary_state="inactive" if toggled.primary_state == "active" else "active",
        )
        self._last_snapshot = list(self._mock)
        await self._gateway.device_data(self._mock, to_iso(self._clock()))
        return list(self._mock)

    def _poll_interval_seconds(self) -> float:
        return self._config.effective_poll_interval_ms / 1000.0

    def _log(self, level: LogLevel, message: str, data: dict) -> None:
        self._logger.log(level, "PollingSession", message, data)
