"""Resource sampling for the agent client."""

import time

import psutil

from monitor.shared.models import SystemMetrics


class MetricsCollector:
    """Samples CPU, memory and process uptime with psutil."""

    def __init__(self, agent_id: str | None = None):
        self._agent_id = agent_id
        self._process = psutil.Process()
        # Prime the counter so the first sample is not always 0.0.
        psutil.cpu_percent(interval=None)

    def collect(self) -> SystemMetrics:
        mem = psutil.virtual_memory()
        return SystemMetrics(
            cpu_usage=psutil.cpu_percent(interval=None),
            memory_usage=float(mem.total - mem.available),
            total_memory=float(mem.total),
            free_memory=float(mem.available),
            uptime=time.time() - self._process.create_time(),
            timestamp=time.time(),
            agent_id=self._agent_id,
        )
