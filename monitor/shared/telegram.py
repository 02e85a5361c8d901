"""Telegram notification sink for monitor alerts."""

import html
from datetime import datetime

import httpx

from monitor.shared.logger import get_logger
from monitor.shared.models import Severity

SEVERITY_EMOJI = {
    Severity.INFO: "ℹ️",
    Severity.WARNING: "⚠️",
    Severity.ERROR: "🚨",
}

UNKNOWN_KM = "មិនស្គាល់"


def format_client_down_notice(project_name: str | None, location: str | None, when: datetime) -> str:
    """Khmer-language notice telling a client that their desktop went down."""
    project = html.escape(project_name or UNKNOWN_KM)
    place = html.escape(location or UNKNOWN_KM)
    return (
        "🚨 <b>ការជូនដំណឹងអាសន្ន</b>\n\n"
        "<code>កុំព្យូទ័រមានបញ្ហា សូមមេត្តាពិនិត្យមើល!</code>\n\n"
        f"អតិថិជន: {project}\n"
        f"ទីតាំង: {place}\n"
        f"ពេលវេលា: {when.strftime('%Y-%m-%d %H:%M:%S')}\n\n"
        "<b>សូមពិនិត្យមើលកុំព្យូទ័ររបស់អ្នកជាបន្ទាន់!</b>"
    )


class TelegramNotifier:
    """Posts HTML-formatted alerts to a Telegram chat through the Bot API.

    Messages arrive already formatted and are sent as-is. Delivery is
    best-effort: failures are logged and never raised. When
    ``client_chat_id`` is set, down notices for clients go to that chat.
    """

    def __init__(
        self,
        token: str,
        chat_id: str,
        client_chat_id: str | None = None,
        api_url: str = "https://api.telegram.org",
        timeout: float = 10.0,
    ):
        self._token = token
        self._chat_id = chat_id
        self._client_chat_id = client_chat_id or None
        self._api_url = api_url.rstrip("/")
        self._client = httpx.AsyncClient(timeout=timeout)
        self.logger = get_logger("telegram")

    async def send_alert(self, message: str, severity: Severity = Severity.INFO) -> bool:
        """Send a message to the configured chat. Returns False on failure."""
        return await self._send(self._chat_id, message, f"{severity.value} alert")

    async def send_client_down_notice(self, project_name: str | None = None, location: str | None = None) -> bool:
        """Tell the client chat that a desktop went down, then confirm to operators.

        Does nothing and returns False when no client chat is configured.
        """
        if not self._client_chat_id:
            self.logger.debug("No client chat configured, skipped down notice")
            return False
        text = format_client_down_notice(project_name, location, datetime.now())
        if not await self._send(self._client_chat_id, text, "client down notice"):
            return False
        project = html.escape(project_name or "Unknown")
        await self.send_alert(
            f"{SEVERITY_EMOJI[Severity.ERROR]} Desktop down notice sent to client ({project})",
            Severity.ERROR,
        )
        return True

    async def _send(self, chat_id: str, text: str, what: str) -> bool:
        try:
            response = await self._client.post(
                f"{self._api_url}/bot{self._token}/sendMessage",
                json={"chat_id": chat_id, "text": text, "parse_mode": "HTML"},
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            self.logger.error(f"Failed to send Telegram {what}: {e}")
            return False
        return True

    async def close(self):
        await self._client.aclose()


class NullNotifier:
    """Stand-in sink used when no Telegram bot is configured."""

    def __init__(self):
        self.logger = get_logger("telegram")

    async def send_alert(self, message: str, severity: Severity = Severity.INFO) -> bool:
        self.logger.debug(f"Notification sink disabled, dropped {severity.value} alert")
        return True

    async def send_client_down_notice(self, project_name: str | None = None, location: str | None = None) -> bool:
        return False

    async def close(self):
        pass


def build_notifier(token: str, chat_id: str, client_chat_id: str | None = None):
    """Return a Telegram sink, or a null sink when credentials are missing."""
    if token and chat_id:
        return TelegramNotifier(token=token, chat_id=chat_id, client_chat_id=client_chat_id)
    return NullNotifier()
