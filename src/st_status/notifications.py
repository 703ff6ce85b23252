"""
Notification Gateway for the status poller.

The boundary adapter towards the display layer. Events are fanned out to
every registered channel:

| event        | payload                                      |
|--------------|----------------------------------------------|
| device-data  | {devices, timestamp}                         |
| loading      | {}                                           |
| error        | {message, cached?, devices?, timestamp?}     |
| alert        | {type, messageKey}                           |
| alert-clear  | {}                                           |

Channel failures are logged and never reach the poller.
"""

import asyncio
import inspect
import json
import sys
from abc import abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Protocol, TextIO, Union, runtime_checkable

import httpx

from .enums import GatewayEventType, LogLevel
from .models import AlertState, NormalizedDevice


@dataclass
class GatewayEvent:
    """A single event for the display layer."""

    event: GatewayEventType
    payload: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"event": self.event.value, "payload": self.payload}


@dataclass
class NotificationResult:
    """Result of a delivery attempt to one channel."""

    channel: str
    success: bool
    error: Optional[str] = None


@runtime_checkable
class GatewayChannel(Protocol):
    """Protocol defining the interface for gateway channels."""

    @abstractmethod
    async def send(self, event: GatewayEvent) -> bool:
        """
        Deliver an event.

        Returns:
            True if delivery was successful, False otherwise
        """
        ...

    @abstractmethod
    def get_name(self) -> str:
        ...


class CallbackChannel:
    """Hands events to an in-process callable (sync or async)."""

    def __init__(
        self,
        callback: Callable[[GatewayEvent], Union[None, Awaitable[None]]],
        name: str = "callback",
    ) -> None:
        self._callback = callback
        self._name = name

    async def send(self, event: GatewayEvent) -> bool:
        result = self._callback(event)
        if inspect.isawaitable(result):
            await result
        return True

    def get_name(self) -> str:
        return self._name


class StreamChannel:
    """Writes each event as one JSON line."""

    def __init__(self, stream: Optional[TextIO] = None) -> None:
        self._stream = stream or sys.stdout

    async def send(self, event: GatewayEvent) -> bool:
        self._stream.write(json.dumps(event.to_dict(), ensure_ascii=False, default=str) + "\n")
        self._stream.flush()
        return True

    def get_name(self) -> str:
        return "stream"


class WebhookChannel:
    """POSTs each event as JSON to a URL."""

    def __init__(
        self,
        url: str,
        headers: Optional[dict[str, str]] = None,
        timeout: float = 10.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        """
        Initialize Webhook channel.

        Args:
            url: Endpoint receiving the events
            headers: Extra request headers
            timeout: Request timeout in seconds
            http_client: Optional preconfigured client (tests pass a MockTransport)
        """
        self._url = url
        self._headers = dict(headers or {})
        self._timeout = timeout
        self._client = http_client

    async def send(self, event: GatewayEvent) -> bool:
        headers = {"Content-Type": "application/json"}
        headers.update(self._headers)

        if self._client is not None:
            response = await self._client.post(
                self._url, json=event.to_dict(), headers=headers, timeout=self._timeout,
            )
            return 200 <= response.status_code < 300

        async with httpx.AsyncClient() as client:
            response = await client.post(
                self._url, json=event.to_dict(), headers=headers, timeout=self._timeout,
            )
            return 200 <= response.status_code < 300

    def get_name(self) -> str:
        return "webhook"


class NotificationGateway:
    """
    Fans gateway events out to the registered channels.

    publish() awaits delivery; publish_nowait() is for synchronous callers
    such as the alert state machine and is completed by drain().
    """

    def __init__(self, logger: Optional[object] = None) -> None:
        self._channels: list[GatewayChannel] = []
        self._logger = logger
        self._pending: set[asyncio.Task] = set()

    def register_channel(self, channel: GatewayChannel) -> None:
        self._channels.append(channel)

    def unregister_channel(self, channel_name: str) -> bool:
        """
        Unregister a channel by name.

        Returns:
            True if channel was found and removed, False otherwise
        """
        for i, channel in enumerate(self._channels):
            if channel.get_name() == channel_name:
                self._channels.pop(i)
                return True
        return False

    @property
    def channels(self) -> list[GatewayChannel]:
        return self._channels.copy()

    async def publish(self, event: GatewayEvent) -> list[NotificationResult]:
        results = []
        for channel in self._channels:
            name = channel.get_name()
            try:
                success = await channel.send(event)
                error = None if success else "Channel returned failure"
            except Exception as e:
                success, error = False, str(e)
            if not success:
                self._log_failure(name, event, error)
            results.append(NotificationResult(channel=name, success=success, error=error))
        return results

    def publish_nowait(self, event: GatewayEvent) -> None:
        """Schedule delivery on the running loop."""
        task = asyncio.get_running_loop().create_task(self.publish(event))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def drain(self) -> None:
        """Wait until every publish_nowait() delivery has finished."""
        while self._pending:
            await asyncio.gather(*list(self._pending))

    async def device_data(
        self,
        devices: list[NormalizedDevice],
        timestamp: str,
    ) -> list[NotificationResult]:
        return await self.publish(GatewayEvent(GatewayEventType.DEVICE_DATA, {
            "devices": [d.to_dict() for d in devices],
            "timestamp": timestamp,
        }))

    async def loading(self) -> list[NotificationResult]:
        return await self.publish(GatewayEvent(GatewayEventType.LOADING, {}))

    async def error(
        self,
        message: str,
        cached: Optional[bool] = None,
        devices: Optional[list[NormalizedDevice]] = None,
        timestamp: Optional[str] = None,
    ) -> list[NotificationResult]:
        payload: dict[str, Any] = {"message": message}
        if cached is not None:
            payload["cached"] = cached
            payload["devices"] = [d.to_dict() for d in devices] if devices is not None else None
            payload["timestamp"] = timestamp
        return await self.publish(GatewayEvent(GatewayEventType.ERROR, payload))

    def alert(self, state: AlertState) -> None:
        self.publish_nowait(GatewayEvent(GatewayEventType.ALERT, state.to_dict()))

    def alert_clear(self) -> None:
        self.publish_nowait(GatewayEvent(GatewayEventType.ALERT_CLEAR, {}))

    def _log_failure(self, channel_name: str, event: GatewayEvent, error: Optional[str]) -> None:
        if self._logger is None:
            return
        self._logger.log(
            level=LogLevel.ERROR,
            component="NotificationGateway",
            message=f"Delivery failed for channel '{channel_name}'",
            data={"channel": channel_name, "event": event.event.value, "error": error},
        )
