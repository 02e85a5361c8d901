"""Threshold alerts and periodic health reports from agent metrics."""

import time
from typing import Callable

from monitor.shared.models import Alert, AlertMetadata, Severity, SystemMetrics

GB = 1024 ** 3
MB = 1024 ** 2


class MetricsEvaluator:
    """Turn metrics samples into alerts through the dispatcher.

    Threshold alerts are keyed per agent and condition, so a sustained
    breach alerts once per suppression window. Health reports are
    throttled separately by the record's ``last_report_sent_at``.
    """

    def __init__(
        self,
        dispatcher,
        registry,
        cpu_threshold: float = 80,
        memory_threshold: float = 90,
        report_interval: float = 300,
        clock: Callable[[], float] = time.time,
    ):
        self._dispatcher = dispatcher
        self._registry = registry
        self._cpu_threshold = cpu_threshold
        self._memory_threshold = memory_threshold
        self._report_interval = report_interval
        self._clock = clock

    async def evaluate(self, agent_id: str, metrics: SystemMetrics) -> list[Alert]:
        """Raise whatever alerts this sample warrants. Returns those dispatched."""
        record = self._registry.get(agent_id)
        agent_meta = record.metadata if record else None
        now = self._clock()
        raised = []

        if metrics.cpu_usage > self._cpu_threshold:
            alert = Alert(
                type="HIGH_CPU_USAGE",
                message="Critical CPU usage detected",
                severity=Severity.WARNING,
                timestamp=now,
                metadata=AlertMetadata.for_agent(agent_id, agent_meta, "System Monitor", {
                    "currentUsage": f"{metrics.cpu_usage:.2f}%",
                    "threshold": f"{self._cpu_threshold}%",
                }),
            )
            if await self._dispatcher.raise_alert(alert, f"{agent_id}:high_cpu"):
                raised.append(alert)

        memory_percent = metrics.memory_percent
        if memory_percent > self._memory_threshold:
            alert = Alert(
                type="HIGH_MEMORY_USAGE",
                message="Critical memory usage detected",
                severity=Severity.WARNING,
                timestamp=now,
                metadata=AlertMetadata.for_agent(agent_id, agent_meta, "System Monitor", {
                    "currentUsage": f"{memory_percent:.2f}%",
                    "threshold": f"{self._memory_threshold}%",
                    "totalMemory": f"{metrics.total_memory / GB:.2f} GB",
                    "usedMemory": f"{metrics.memory_usage / MB:.2f} MB",
                    "freeMemory": f"{metrics.free_memory / GB:.2f} GB",
                }),
            )
            if await self._dispatcher.raise_alert(alert, f"{agent_id}:high_memory"):
                raised.append(alert)

        last_report = record.last_report_sent_at if record else None
        if record is not None and (last_report is None or now - last_report > self._report_interval):
            alert = Alert(
                type="SYSTEM_HEALTH_REPORT",
                message="Periodic system health report",
                severity=Severity.INFO,
                timestamp=now,
                metadata=AlertMetadata.for_agent(agent_id, agent_meta, "System Monitor", {
                    "cpuUsage": f"{metrics.cpu_usage:.2f}%",
                    "memoryUsage": f"{memory_percent:.2f}%",
                    "totalMemory": f"{metrics.total_memory / GB:.2f} GB",
                    "freeMemory": f"{metrics.free_memory / GB:.2f} GB",
                    "uptime": f"{metrics.uptime / 3600:.2f} hours",
                }),
            )
            await self._dispatcher.raise_alert(alert)
            self._registry.mark_report_sent(agent_id, now)
            raised.append(alert)

        return raised
