"""Run an agent client: python -m monitor.client [config.json]"""

import asyncio
import signal
import socket
import sys
from pathlib import Path

from monitor.client.socket_client import AgentClient
from monitor.shared.config import DEFAULT_CLIENT_CONFIG, load_config
from monitor.shared.models import AgentMetadata

DEFAULT_CONFIG = Path(__file__).parent / "config.json"


def build_client(config: dict) -> AgentClient:
    metadata = AgentMetadata.from_dict(config.get("metadata"))
    if metadata.hostname is None:
        metadata.hostname = socket.gethostname()
    return AgentClient(
        agent_id=config.get("agent_id") or socket.gethostname(),
        metadata=metadata,
        server_url=config["server_url"],
        heartbeat_interval=config["heartbeat_interval_seconds"],
        metrics_interval=config["metrics_interval_seconds"],
        base_delay=config["reconnect_base_delay_seconds"],
        max_delay=config["reconnect_max_delay_seconds"],
        max_attempts=config["max_reconnect_attempts"],
        connect_timeout=config["connect_timeout_seconds"],
        log_file=config.get("log_file"),
    )


async def run(client: AgentClient):
    shutdown = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, shutdown.set)
        except NotImplementedError:
            pass  # Windows fallback below
    if sys.platform == "win32":
        signal.signal(signal.SIGINT, lambda s, f: shutdown.set())

    await client.start()
    await shutdown.wait()
    await client.stop()


def main():
    config_path = sys.argv[1] if len(sys.argv) > 1 else None
    if config_path is None and DEFAULT_CONFIG.exists():
        config_path = str(DEFAULT_CONFIG)

    config = load_config(config_path, DEFAULT_CLIENT_CONFIG)
    client = build_client(config)
    try:
        asyncio.run(run(client))
    except KeyboardInterrupt:
        print("\nAgent client shutting down...")


if __name__ == "__main__":
    main()
