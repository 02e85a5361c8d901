"""Fleet-wide status view assembled from relayed status events.

Events cross process boundaries with no ordering or exactly-once
guarantee, so each one is applied last-write-wins by its timestamp and
duplicates or stale events are ignored.
"""

from dataclasses import dataclass

from monitor.shared.models import AgentStatus, StatusEvent


@dataclass
class FleetEntry:
    event: StatusEvent
    origin: str


class FleetView:
    """Latest known status of every agent across all server instances."""

    def __init__(self, instance_id: str):
        self._instance_id = instance_id
        self._entries: dict[str, FleetEntry] = {}

    def apply(self, event: StatusEvent, origin: str) -> bool:
        """Apply a relayed event. Returns False when it is stale or a duplicate."""
        current = self._entries.get(event.agent_id)
        if current is not None:
            if event.timestamp < current.event.timestamp:
                return False
            if event.timestamp == current.event.timestamp and event.status == current.event.status:
                return False
        self._entries[event.agent_id] = FleetEntry(event=event, origin=origin)
        return True

    def status(self, agent_id: str) -> AgentStatus | None:
        entry = self._entries.get(agent_id)
        return entry.event.status if entry else None

    def is_remote_online(self, agent_id: str) -> bool:
        """True when another instance last reported this agent online."""
        entry = self._entries.get(agent_id)
        return (
            entry is not None
            and entry.origin != self._instance_id
            and entry.event.status is AgentStatus.ONLINE
        )

    def any_remote_online(self) -> bool:
        return any(self.is_remote_online(agent_id) for agent_id in self._entries)

    def any_online(self) -> bool:
        return any(e.event.status is AgentStatus.ONLINE for e in self._entries.values())

    def snapshot(self) -> list[StatusEvent]:
        return [self._entries[key].event for key in sorted(self._entries)]
