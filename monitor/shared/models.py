"""Wire and state types shared by the monitor server and agent client.

Payloads travel as JSON objects with camelCase keys. Optional fields are
left out of the payload when absent and come back as ``None``; they are
never coerced into empty strings or zeros.
"""

from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any


class AgentStatus(Enum):
    ONLINE = "online"
    OFFLINE = "offline"
    # Part of the wire contract but never produced.
    IDLE = "idle"


class Severity(Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


class Reason:
    INITIAL_CONNECTION = "initial_connection"
    CLIENT_DISCONNECTED = "client_disconnected"
    CONNECTION_LOST = "connection_lost"
    HEARTBEAT_TIMEOUT = "heartbeat_timeout"


def _put(data: dict[str, Any], key: str, value: Any):
    if value is not None:
        data[key] = value


@dataclass
class AgentMetadata:
    project_name: str | None = None
    location: str | None = None
    owner: str | None = None
    hostname: str | None = None
    version: str | None = None
    installed_date: str | None = None

    _KEYS = {
        "project_name": "projectName",
        "location": "location",
        "owner": "owner",
        "hostname": "hostname",
        "version": "version",
        "installed_date": "installedDate",
    }

    def merge(self, other: "AgentMetadata | None") -> "AgentMetadata":
        """Return a copy with every field present in ``other`` overlaid."""
        if other is None:
            return AgentMetadata(**{f.name: getattr(self, f.name) for f in fields(self)})
        return AgentMetadata(**{
            f.name: getattr(other, f.name) if getattr(other, f.name) is not None else getattr(self, f.name)
            for f in fields(self)
        })

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {}
        for attr, key in self._KEYS.items():
            _put(data, key, getattr(self, attr))
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AgentMetadata":
        data = data or {}
        return cls(**{attr: data.get(key) for attr, key in cls._KEYS.items()})


@dataclass
class SystemMetrics:
    cpu_usage: float
    memory_usage: float
    total_memory: float
    free_memory: float
    uptime: float
    timestamp: float
    agent_id: str | None = None

    @property
    def memory_percent(self) -> float:
        if not self.total_memory:
            return 0.0
        return (self.memory_usage / self.total_memory) * 100

    def to_dict(self) -> dict[str, Any]:
        data = {
            "cpuUsage": self.cpu_usage,
            "memoryUsage": self.memory_usage,
            "totalMemory": self.total_memory,
            "freeMemory": self.free_memory,
            "uptime": self.uptime,
            "timestamp": self.timestamp,
        }
        _put(data, "agentId", self.agent_id)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SystemMetrics":
        return cls(
            cpu_usage=float(data["cpuUsage"]),
            memory_usage=float(data["memoryUsage"]),
            total_memory=float(data["totalMemory"]),
            free_memory=float(data["freeMemory"]),
            uptime=float(data["uptime"]),
            timestamp=float(data["timestamp"]),
            agent_id=data.get("agentId"),
        )


@dataclass
class AgentRecord:
    """Last observed state of one agent, owned by the client registry."""

    agent_id: str
    status: AgentStatus
    last_heartbeat: float
    metadata: AgentMetadata = field(default_factory=AgentMetadata)
    metrics: SystemMetrics | None = None
    last_report_sent_at: float | None = None

    def to_dict(self) -> dict[str, Any]:
        data = {
            "agentId": self.agent_id,
            "status": self.status.value,
            "lastHeartbeat": self.last_heartbeat,
            "metadata": self.metadata.to_dict(),
        }
        if self.metrics is not None:
            data["metrics"] = self.metrics.to_dict()
        _put(data, "lastReportSentAt", self.last_report_sent_at)
        return data


@dataclass
class StatusEvent:
    agent_id: str
    status: AgentStatus
    timestamp: float
    metadata: AgentMetadata = field(default_factory=AgentMetadata)
    reason: str | None = None
    last_heartbeat: float | None = None

    def to_dict(self) -> dict[str, Any]:
        data = {
            "agentId": self.agent_id,
            "status": self.status.value,
            "timestamp": self.timestamp,
            "metadata": self.metadata.to_dict(),
        }
        _put(data, "reason", self.reason)
        _put(data, "lastHeartbeat", self.last_heartbeat)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StatusEvent":
        return cls(
            agent_id=data["agentId"],
            status=AgentStatus(data["status"]),
            timestamp=float(data["timestamp"]),
            metadata=AgentMetadata.from_dict(data.get("metadata")),
            reason=data.get("reason"),
            last_heartbeat=data.get("lastHeartbeat"),
        )


@dataclass
class AlertMetadata:
    project_name: str = "Unknown"
    location: str = "Unknown"
    client_id: str | None = None
    component: str | None = None
    hostname: str | None = None
    version: str | None = None
    additional_info: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "projectName": self.project_name,
            "location": self.location,
        }
        _put(data, "clientId", self.client_id)
        _put(data, "component", self.component)
        _put(data, "hostname", self.hostname)
        _put(data, "version", self.version)
        _put(data, "additionalInfo", self.additional_info)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AlertMetadata":
        data = data or {}
        return cls(
            project_name=data.get("projectName", "Unknown"),
            location=data.get("location", "Unknown"),
            client_id=data.get("clientId"),
            component=data.get("component"),
            hostname=data.get("hostname"),
            version=data.get("version"),
            additional_info=data.get("additionalInfo"),
        )

    @classmethod
    def for_agent(
        cls,
        agent_id: str,
        metadata: AgentMetadata | None,
        component: str | None = None,
        additional_info: dict[str, Any] | None = None,
    ) -> "AlertMetadata":
        """Build alert metadata from what an agent reported about itself."""
        metadata = metadata or AgentMetadata()
        return cls(
            project_name=metadata.project_name or "Unknown",
            location=metadata.location or "Unknown",
            client_id=agent_id,
            component=component,
            hostname=metadata.hostname,
            version=metadata.version,
            additional_info=additional_info,
        )


@dataclass
class Alert:
    type: str
    message: str
    severity: Severity
    timestamp: float
    metadata: AlertMetadata = field(default_factory=AlertMetadata)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "message": self.message,
            "severity": self.severity.value,
            "timestamp": self.timestamp,
            "metadata": self.metadata.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Alert":
        return cls(
            type=data["type"],
            message=data["message"],
            severity=Severity(data.get("severity", "info")),
            timestamp=float(data["timestamp"]),
            metadata=AlertMetadata.from_dict(data.get("metadata")),
        )
