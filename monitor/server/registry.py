"""In-process registry of known agents and their last observed state.

Only this process's transport sessions and its liveness sweep mutate the
registry. Status moves to online through ``register`` and to offline
through ``mark_offline``; ``touch`` refreshes liveness and never changes
status.
"""

import time
from typing import Callable

from monitor.shared.bus import Channels
from monitor.shared.models import (
    AgentMetadata,
    AgentRecord,
    AgentStatus,
    Reason,
    StatusEvent,
    SystemMetrics,
)


class ClientRegistry:
    """Authoritative map of agents this process has seen."""

    def __init__(self, bus, clock: Callable[[], float] = time.time):
        self._bus = bus
        self._clock = clock
        self._records: dict[str, AgentRecord] = {}

    async def register(self, agent_id: str, metadata: AgentMetadata | None = None) -> StatusEvent:
        """Mark an agent online after a connect and publish its status.

        Re-registering a known agent overwrites its metadata and resets its
        heartbeat but keeps the last metrics sample.
        """
        now = self._clock()
        metadata = metadata or AgentMetadata()
        record = self._records.get(agent_id)
        if record is None:
            record = AgentRecord(
                agent_id=agent_id,
                status=AgentStatus.ONLINE,
                last_heartbeat=now,
                metadata=metadata,
            )
            self._records[agent_id] = record
        else:
            record.status = AgentStatus.ONLINE
            record.last_heartbeat = now
            record.metadata = metadata

        event = StatusEvent(
            agent_id=agent_id,
            status=AgentStatus.ONLINE,
            timestamp=now,
            metadata=metadata,
            reason=Reason.INITIAL_CONNECTION,
        )
        await self._bus.publish(Channels.CONNECTION_STATUS, event.to_dict())
        return event

    def touch(
        self,
        agent_id: str,
        metadata: AgentMetadata | None = None,
        metrics: SystemMetrics | None = None,
    ) -> AgentRecord | None:
        """Record a liveness signal. Returns None for agents never registered."""
        record = self._records.get(agent_id)
        if record is None:
            return None
        record.last_heartbeat = self._clock()
        if metadata is not None:
            record.metadata = record.metadata.merge(metadata)
        if metrics is not None:
            record.metrics = metrics
        return record

    async def mark_offline(
        self,
        agent_id: str,
        reason: str,
        metadata: AgentMetadata | None = None,
    ) -> StatusEvent:
        """Mark an agent offline and publish its status.

        Agents only known from durable records get a registry entry here,
        with their last heartbeat unknown and set to now.
        """
        now = self._clock()
        record = self._records.get(agent_id)
        if record is None:
            record = AgentRecord(
                agent_id=agent_id,
                status=AgentStatus.OFFLINE,
                last_heartbeat=now,
                metadata=metadata or AgentMetadata(),
            )
            self._records[agent_id] = record
        else:
            record.status = AgentStatus.OFFLINE
            if metadata is not None:
                record.metadata = record.metadata.merge(metadata)

        event = StatusEvent(
            agent_id=agent_id,
            status=AgentStatus.OFFLINE,
            timestamp=now,
            metadata=record.metadata,
            reason=reason,
            last_heartbeat=record.last_heartbeat,
        )
        await self._bus.publish(Channels.CONNECTION_STATUS, event.to_dict())
        return event

    def mark_report_sent(self, agent_id: str, at: float | None = None):
        record = self._records.get(agent_id)
        if record is not None:
            record.last_report_sent_at = at if at is not None else self._clock()

    def get(self, agent_id: str) -> AgentRecord | None:
        return self._records.get(agent_id)

    def snapshot(self) -> list[AgentRecord]:
        """Return all records ordered by agent id."""
        return [self._records[key] for key in sorted(self._records)]

    def online(self) -> list[AgentRecord]:
        return [r for r in self.snapshot() if r.status is AgentStatus.ONLINE]

    def is_online(self, agent_id: str) -> bool:
        record = self._records.get(agent_id)
        return record is not None and record.status is AgentStatus.ONLINE

    def is_fresh(self, agent_id: str, threshold: float) -> bool:
        """True when the agent sent a liveness signal within ``threshold`` seconds."""
        record = self._records.get(agent_id)
        if record is None:
            return False
        return (self._clock() - record.last_heartbeat) <= threshold

    def __len__(self) -> int:
        return len(self._records)
