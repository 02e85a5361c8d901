"""Periodic liveness sweep.

Reconciles the in-memory registry, the durable connection history and
wall-clock time to find agents that went silent without a clean
disconnect. It is the only path that corrects the registry after a crash
or a dropped transport.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Callable

from monitor.server.alerts import format_timestamp
from monitor.shared.bus import NotConnectedError
from monitor.shared.logger import get_logger
from monitor.shared.models import (
    AgentMetadata,
    AgentStatus,
    Alert,
    AlertMetadata,
    Reason,
    Severity,
)


@dataclass
class SweepResult:
    newly_offline: list[str] = field(default_factory=list)
    alerted: list[str] = field(default_factory=list)
    active: int = 0
    no_active_alert: bool = False
    store_error: bool = False


class LivenessSweep:
    """Timer-driven offline detection for the agents this process knows."""

    def __init__(
        self,
        registry,
        store,
        dispatcher,
        interval: float = 60,
        offline_threshold: float = 300,
        seen_window: float = 24 * 3600,
        fleet=None,
        notifier=None,
        clock: Callable[[], float] = time.time,
    ):
        self._registry = registry
        self._store = store
        self._dispatcher = dispatcher
        self._interval = interval
        self._threshold = offline_threshold
        self._seen_window = seen_window
        self._fleet = fleet
        self._notifier = notifier
        self._clock = clock
        self._task: asyncio.Task | None = None
        self._running = False
        self.logger = get_logger("sweep")

    def start(self):
        self._running = True
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._loop())
        self.logger.info(f"Liveness sweep started with {self._interval}s interval")

    async def stop(self):
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _loop(self):
        while self._running:
            await asyncio.sleep(self._interval)
            try:
                await self.run_cycle()
            except Exception as e:
                self.logger.error(f"Sweep cycle failed: {e}", exc_info=True)

    async def run_cycle(self) -> SweepResult:
        """Run one reconciliation pass."""
        result = SweepResult()
        now = self._clock()
        lost: dict[str, tuple[AgentMetadata, float]] = {}

        for record in self._registry.online():
            if now - record.last_heartbeat > self._threshold:
                self.logger.warning(f"Agent {record.agent_id} missed heartbeats, marking offline")
                lost[record.agent_id] = (record.metadata, record.last_heartbeat)
                await self._transition_offline(record.agent_id, record.metadata)
                result.newly_offline.append(record.agent_id)

        try:
            seen = await self._store.get_recently_seen_agents(self._seen_window)
        except Exception as e:
            self.logger.error(f"Failed to read durable agent records: {e}")
            seen = []
            result.store_error = True

        active_ids = {r.agent_id for r in self._registry.online()}
        self.logger.debug(
            f"Found {len(seen)} recently seen agents and {len(active_ids)} active agents"
        )

        for agent in seen:
            if agent.agent_id in active_ids or agent.agent_id in lost:
                continue
            if self._fleet is not None and self._fleet.is_remote_online(agent.agent_id):
                continue
            if now - agent.last_seen <= self._threshold:
                continue
            if self._registry.is_fresh(agent.agent_id, self._threshold):
                continue

            record = self._registry.get(agent.agent_id)
            metadata = record.metadata.merge(agent.metadata()) if record else agent.metadata()
            lost[agent.agent_id] = (metadata, agent.last_seen)
            if record is None or record.status is not AgentStatus.OFFLINE:
                await self._transition_offline(agent.agent_id, metadata)
                result.newly_offline.append(agent.agent_id)

        for agent_id, (metadata, last_seen) in lost.items():
            if await self._alert_connection_lost(agent_id, metadata, last_seen):
                result.alerted.append(agent_id)

        result.active = len(self._registry.online())
        remote_active = self._fleet is not None and self._fleet.any_remote_online()
        if result.active == 0 and not remote_active:
            self.logger.warning("No active agents connected")
            result.no_active_alert = await self._alert_no_active_agents()

        return result

    async def _transition_offline(self, agent_id: str, metadata: AgentMetadata):
        try:
            await self._registry.mark_offline(agent_id, Reason.CONNECTION_LOST, metadata)
        except NotConnectedError as e:
            self.logger.error(f"Could not relay offline status for {agent_id}: {e}")
            await self._dispatcher.report_degraded(e)
        try:
            await self._store.record_connection_status(
                agent_id, AgentStatus.OFFLINE, metadata, Reason.CONNECTION_LOST
            )
        except Exception as e:
            self.logger.error(f"Failed to record offline status for {agent_id}: {e}")

    async def _alert_connection_lost(self, agent_id: str, metadata: AgentMetadata, last_seen: float) -> bool:
        alert = Alert(
            type="CONNECTION_LOST",
            message="Agent stopped reporting and is considered offline",
            severity=Severity.WARNING,
            timestamp=self._clock(),
            metadata=AlertMetadata.for_agent(agent_id, metadata, additional_info={
                "lastSeen": format_timestamp(last_seen),
                "reason": Reason.CONNECTION_LOST,
            }),
        )
        try:
            sent = await self._dispatcher.raise_alert(alert, f"{agent_id}:{Reason.CONNECTION_LOST}")
        except NotConnectedError as e:
            self.logger.error(f"Could not relay offline alert for {agent_id}: {e}")
            await self._dispatcher.report_degraded(e)
            return False
        if sent:
            await self._notify_client(agent_id, metadata)
        return sent

    async def _notify_client(self, agent_id: str, metadata: AgentMetadata):
        """Send the client-facing down notice; only called for unsuppressed alerts."""
        if self._notifier is None:
            return
        try:
            await self._notifier.send_client_down_notice(metadata.project_name, metadata.location)
        except Exception as e:
            self.logger.error(f"Client down notice for {agent_id} failed: {e}")

    async def _alert_no_active_agents(self) -> bool:
        known = [
            f"{r.agent_id} ({r.status.value}) last seen {format_timestamp(r.last_heartbeat)}"
            for r in self._registry.snapshot()
        ]
        alert = Alert(
            type="NO_ACTIVE_AGENTS",
            message="No active agents connected",
            severity=Severity.WARNING,
            timestamp=self._clock(),
            metadata=AlertMetadata(
                component="Liveness Sweep",
                additional_info={"lastKnownAgents": known or ["No agents have connected yet"]},
            ),
        )
        try:
            return await self._dispatcher.raise_alert(alert)
        except NotConnectedError as e:
            self.logger.error(f"Could not relay no-active-agents alert: {e}")
            await self._dispatcher.report_degraded(e)
            return False
