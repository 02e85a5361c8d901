"""Shared utilities for the monitor server and agent client."""

from monitor.shared.bus import Channels, NotConnectedError, RelayBus
from monitor.shared.config import load_config
from monitor.shared.logger import get_logger
from monitor.shared.telegram import NullNotifier, TelegramNotifier

__all__ = [
    "Channels",
    "NotConnectedError",
    "RelayBus",
    "load_config",
    "get_logger",
    "NullNotifier",
    "TelegramNotifier",
]
