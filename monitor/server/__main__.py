"""Run the monitor server: python -m monitor.server [config.json]"""

import asyncio
import sys
from pathlib import Path

from monitor.server.service import MonitorServer
from monitor.shared.config import DEFAULT_SERVER_CONFIG, load_config

DEFAULT_CONFIG = Path(__file__).parent / "config.json"


def main():
    config_path = sys.argv[1] if len(sys.argv) > 1 else None
    if config_path is None and DEFAULT_CONFIG.exists():
        config_path = str(DEFAULT_CONFIG)

    server = MonitorServer(load_config(config_path, DEFAULT_SERVER_CONFIG))
    try:
        asyncio.run(server.run())
    except KeyboardInterrupt:
        print("\nMonitor server shutting down...")


if __name__ == "__main__":
    main()
