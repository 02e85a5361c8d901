"""Configuration loader for the monitor server and agent client."""

import json
from pathlib import Path
from typing import Any

DEFAULT_SERVER_CONFIG: dict[str, Any] = {
    "host": "0.0.0.0",
    "port": 3035,
    "redis_url": "redis://localhost:6379",
    "relay_retry_seconds": 5,
    "database_url": "sqlite+aiosqlite:///connection_monitor.db",
    "telegram_token": "",
    "telegram_chat_id": "",
    "telegram_client_chat_id": "",
    "sweep_interval_seconds": 60,
    "offline_threshold_seconds": 300,
    "seen_window_hours": 24,
    "suppression_window_seconds": 300,
    "report_interval_seconds": 300,
    "cpu_threshold_percent": 80,
    "memory_threshold_percent": 90,
    "handshake_timeout_seconds": 10,
    "shutdown_alert_timeout_seconds": 5,
    "log_file": None,
}

DEFAULT_CLIENT_CONFIG: dict[str, Any] = {
    "server_url": "http://localhost:3035/ws/agent",
    "agent_id": None,
    "metadata": {},
    "heartbeat_interval_seconds": 15,
    "metrics_interval_seconds": 30,
    "reconnect_base_delay_seconds": 5,
    "reconnect_max_delay_seconds": 30,
    "max_reconnect_attempts": 5,
    "connect_timeout_seconds": 10,
    "log_file": None,
}


def load_config(config_path: str | None, defaults: dict[str, Any] | None = None) -> dict[str, Any]:
    """Load configuration from a JSON file, merging with optional defaults.

    Args:
        config_path: Path to the JSON configuration file, or None to use
            the defaults alone.
        defaults: Optional dictionary of default values. File values override defaults.

    Returns:
        Merged configuration dictionary.

    Raises:
        FileNotFoundError: If the config file does not exist.
    """
    if config_path is None:
        return dict(defaults or {})

    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(path) as f:
        config = json.load(f)

    if defaults:
        merged = {**defaults, **config}
        return merged

    return config
