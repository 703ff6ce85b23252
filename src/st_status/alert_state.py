"""
Alert/Health state machine.

Observes individual request outcomes and turns failure categories into a
single prioritized, debounced health alert:

- auth and scope failures alert on the first occurrence
- every other category alerts after 10 consecutive failures (all
  categories share one counter)
- one success resets the counter and clears the active alert
- only a strictly higher-priority alert replaces the active one
"""

from typing import Callable, Optional

from .enums import AlertType, ErrorCategory, LogLevel
from .models import AlertState

DEBOUNCE_THRESHOLD = 10

# Highest precedence first
ALERT_PRIORITY = (
    AlertType.AUTH,
    AlertType.SCOPE,
    AlertType.NETWORK,
    AlertType.RATE_LIMIT,
    AlertType.OUTAGE,
    AlertType.SCHEMA,
)

IMMEDIATE_CATEGORIES = frozenset({ErrorCategory.AUTH, ErrorCategory.SCOPE})

MESSAGE_KEYS = {
    AlertType.AUTH: "ALERT_AUTH",
    AlertType.SCOPE: "ALERT_SCOPE",
    AlertType.NETWORK: "ALERT_NETWORK",
    AlertType.RATE_LIMIT: "ALERT_RATE_LIMIT",
    AlertType.OUTAGE: "ALERT_OUTAGE",
    AlertType.SCHEMA: "ALERT_SCHEMA",
}


def priority_rank(alert_type: AlertType) -> int:
    """Lower rank means higher precedence."""
    return ALERT_PRIORITY.index(alert_type)


class AlertStateMachine:
    """Holds the single active alert for one session."""

    def __init__(
        self,
        on_alert: Optional[Callable[[AlertState], None]] = None,
        on_clear: Optional[Callable[[], None]] = None,
        threshold: int = DEBOUNCE_THRESHOLD,
        logger: Optional[object] = None,
    ) -> None:
        self._on_alert = on_alert
        self._on_clear = on_clear
        self._threshold = threshold
        self._logger = logger
        self._alert: Optional[AlertState] = None
        self._consecutive_failures = 0

    @property
    def alert(self) -> Optional[AlertState]:
        return self._alert

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    def record_failure(self, category: ErrorCategory) -> Optional[AlertState]:
        """
        Count a failed request.

        Returns:
            The active alert after this failure (possibly unchanged or None)
        """
        self._consecutive_failures += 1

        if category not in IMMEDIATE_CATEGORIES and self._consecutive_failures < self._threshold:
            return self._alert

        alert_type = AlertType(category.value)
        if self._alert is not None and priority_rank(alert_type) >= priority_rank(self._alert.type):
            return self._alert

        self._alert = AlertState(type=alert_type, message_key=MESSAGE_KEYS[alert_type])
        self._log(LogLevel.WARN, "Health alert raised", {
            "type": alert_type.value,
            "consecutive_failures": self._consecutive_failures,
        })
        if self._on_alert:
            self._on_alert(self._alert)
        return self._alert

    def record_success(self) -> None:
        """Reset the failure counter and clear any active alert."""
        self._consecutive_failures = 0
        if self._alert is None:
            return
        self._log(LogLevel.INFO, "Health alert cleared", {"type": self._alert.type.value})
        self._alert = None
        if self._on_clear:
            self._on_clear()

    def _log(self, level: LogLevel, message: str, data: dict) -> None:
        if self._logger:
            self._logger.log(level, "AlertStateMachine", message, data)
