"""Reconnection backoff for an agent's transport session.

States and transitions::

    CONNECTED --close--> DISCONNECTED(0) --timer--> CONNECTING
    CONNECTING --success--> CONNECTED            (attempt counter reset)
    CONNECTING --failure--> DISCONNECTED(n + 1)  (or GAVE_UP at the limit)
    any state --connect()--> CONNECTING          (manual, attempt counter reset)

``GAVE_UP`` is terminal until someone calls ``connect()`` again.

Timers come from an injected scheduler exposing
``call_later(delay, callback)`` that returns a handle with ``cancel()``.
An asyncio event loop satisfies this directly.
"""

import time
from enum import Enum
from typing import Any, Callable

from monitor.shared.models import AgentMetadata, Alert, AlertMetadata, Severity


def next_delay(attempt: int, base_delay: float = 5.0, max_delay: float = 30.0) -> float:
    """Delay before the reconnect that follows ``attempt`` prior failures."""
    return min(base_delay * (2 ** attempt), max_delay)


class ConnectionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    GAVE_UP = "gave_up"


class BackoffStateMachine:
    """Drives reconnect attempts and reports each transition as an alert."""

    def __init__(
        self,
        scheduler,
        on_attempt: Callable[[], Any],
        on_alert: Callable[[Alert], Any],
        base_delay: float = 5.0,
        max_delay: float = 30.0,
        max_attempts: int = 5,
        agent_id: str | None = None,
        metadata: AgentMetadata | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self._scheduler = scheduler
        self._on_attempt = on_attempt
        self._on_alert = on_alert
        self._base_delay = base_delay
        self._max_delay = max_delay
        self.max_attempts = max_attempts
        self._agent_id = agent_id
        self._metadata = metadata
        self._clock = clock
        self.state = ConnectionState.DISCONNECTED
        self.attempt = 0
        self._pending = None

    @property
    def has_pending_attempt(self) -> bool:
        return self._pending is not None

    def delay(self, attempt: int) -> float:
        return next_delay(attempt, self._base_delay, self._max_delay)

    def connect(self):
        """Manual connect. Also the only way out of GAVE_UP."""
        self._cancel_pending()
        self.attempt = 0
        self._start_attempt()

    def on_connected(self):
        self._cancel_pending()
        self.state = ConnectionState.CONNECTED
        self.attempt = 0
        self._alert("AGENT_CONNECTED", "Connected to monitoring server", Severity.INFO)

    def on_connect_failed(self):
        if self.state is not ConnectionState.CONNECTING:
            return
        failures = self.attempt + 1
        if failures >= self.max_attempts:
            self.state = ConnectionState.GAVE_UP
            self.attempt = failures
            self._alert(
                "RECONNECTION_FAILED",
                f"Giving up after {failures} failed connection attempts, manual intervention required",
                Severity.ERROR,
                {"attempt": failures, "maxAttempts": self.max_attempts},
            )
            return
        self._enter_disconnected(failures)

    def on_closed(self):
        if self.state is not ConnectionState.CONNECTED:
            return
        self._enter_disconnected(0)

    def stop(self):
        """Cancel any scheduled attempt; used on shutdown."""
        self._cancel_pending()
        if self.state is not ConnectionState.GAVE_UP:
            self.state = ConnectionState.DISCONNECTED

    def _enter_disconnected(self, attempt: int):
        self.state = ConnectionState.DISCONNECTED
        self.attempt = attempt
        delay = self.delay(attempt)
        if attempt > 0:
            self._alert(
                "CONNECTION_RETRY",
                f"Connection attempt {attempt} failed, retrying in {delay:g}s",
                Severity.WARNING,
                {"attempt": attempt, "maxAttempts": self.max_attempts, "delaySeconds": delay},
            )
        self._pending = self._scheduler.call_later(delay, self._fire)

    def _fire(self):
        self._pending = None
        if self.state is ConnectionState.DISCONNECTED:
            self._start_attempt()

    def _start_attempt(self):
        self.state = ConnectionState.CONNECTING
        if self.attempt > 0:
            self._alert(
                "RECONNECTING",
                f"Reconnecting (attempt {self.attempt + 1} of {self.max_attempts})",
                Severity.INFO,
                {"attempt": self.attempt, "maxAttempts": self.max_attempts},
            )
        self._on_attempt()

    def _cancel_pending(self):
        if self._pending is not None:
            self._pending.cancel()
            self._pending = None

    def _alert(self, alert_type: str, message: str, severity: Severity, info: dict | None = None):
        self._on_alert(Alert(
            type=alert_type,
            message=message,
            severity=severity,
            timestamp=self._clock(),
            metadata=AlertMetadata.for_agent(
                self._agent_id, self._metadata, component="Connection", additional_info=info,
            ),
        ))
