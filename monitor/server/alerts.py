"""Alert deduplication, formatting and fan-out.

Every alert the server raises goes through ``AlertDispatcher``: it is
formatted for the notification sink, relayed on the alerts channel so
every instance can push it to its live viewers, and remembered per
suppression key so repeated conditions do not flood operators.
"""

import html
import json
import time
from datetime import datetime
from typing import Callable

from monitor.shared.bus import Channels, NotConnectedError
from monitor.shared.logger import get_logger
from monitor.shared.models import Alert, AlertMetadata, Severity
from monitor.shared.telegram import SEVERITY_EMOJI

DEGRADED_KEY = "relay:degraded"


def format_timestamp(ts: float) -> str:
    return datetime.fromtimestamp(ts).strftime("%Y-%m-%d %H:%M:%S")


def format_alert_message(alert: Alert) -> str:
    """Render an alert as the HTML block sent to the notification sink."""
    meta = alert.metadata
    lines = [
        f"Message: {html.escape(alert.message)}",
        f"Project: {html.escape(meta.project_name)}",
        f"Location: {html.escape(meta.location)}",
    ]
    if meta.component:
        lines.append(f"Component: {html.escape(meta.component)}")
    if meta.client_id:
        lines.append(f"Client ID: {html.escape(meta.client_id)}")
    if meta.hostname:
        lines.append(f"Host: {html.escape(meta.hostname)}")
    lines.append(f"Time: {format_timestamp(alert.timestamp)}")

    text = (
        f"{SEVERITY_EMOJI[alert.severity]} <b>{html.escape(alert.type)}</b>\n\n"
        "<code>\n" + "\n".join(lines) + "\n</code>"
    )
    if meta.additional_info:
        info = html.escape(json.dumps(meta.additional_info, indent=2, default=str))
        text += f"\n\nAdditional Info:\n<code>{info}</code>"
    return text


class AlertDispatcher:
    """Deduplicate alerts, then notify the sink and relay them."""

    def __init__(
        self,
        bus,
        notifier,
        suppression_window: float = 300,
        clock: Callable[[], float] = time.time,
    ):
        self._bus = bus
        self._notifier = notifier
        self._window = suppression_window
        self._clock = clock
        self._last_alert: dict[str, float] = {}
        self.logger = get_logger("alerts")

    def is_suppressed(self, key: str | None) -> bool:
        if key is None:
            return False
        last = self._last_alert.get(key)
        return last is not None and (self._clock() - last) < self._window

    def clear(self, key: str):
        self._last_alert.pop(key, None)

    async def raise_alert(self, alert: Alert, suppression_key: str | None = None) -> bool:
        """Dispatch an alert unless its key fired inside the suppression window.

        Returns False when the alert was suppressed. The sink is notified
        before the relay publish, so the suppression entry is recorded as
        soon as the sink has been tried. A publish that then fails still
        counts as a dispatch and a retry inside the window is suppressed.

        Raises:
            NotConnectedError: The relay bus was down before anything was
                sent (no side effects), or the publish itself failed after
                the sink was notified.
        """
        if self.is_suppressed(suppression_key):
            return False
        if not self._bus.is_connected:
            raise NotConnectedError(f"Relay bus not connected, alert {alert.type} not dispatched")

        message = format_alert_message(alert)
        try:
            await self._notifier.send_alert(message, alert.severity)
        except Exception as e:
            self.logger.error(f"Notification sink failed for {alert.type}: {e}")

        if suppression_key is not None:
            self._last_alert[suppression_key] = self._clock()
        await self._bus.publish(Channels.ALERTS, alert.to_dict())

        self.logger.info(
            f"Dispatched alert {alert.type}",
            extra={"log_data": {"severity": alert.severity.value, "key": suppression_key}},
        )
        return True

    async def report_degraded(self, error: Exception):
        """Tell the sink directly that the relay bus is failing.

        The bus cannot carry this one, so it is sent to the notification
        sink only, at most once per suppression window.
        """
        if self.is_suppressed(DEGRADED_KEY):
            return
        alert = Alert(
            type="SYSTEM_DEGRADED",
            message=f"Relay bus unavailable: {error}",
            severity=Severity.ERROR,
            timestamp=self._clock(),
            metadata=AlertMetadata(component="Relay Bus"),
        )
        try:
            await self._notifier.send_alert(format_alert_message(alert), alert.severity)
        except Exception as e:
            self.logger.error(f"Notification sink failed for degraded alert: {e}")
        self._last_alert[DEGRADED_KEY] = self._clock()
