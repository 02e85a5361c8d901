"""Durable connection history used to reconcile liveness across restarts."""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable

from sqlalchemy import BigInteger, DateTime, Float, Integer, String, func, select
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.pool import StaticPool

from monitor.shared.models import AgentMetadata, AgentStatus


class Base(DeclarativeBase):
    """Declarative base for the record store tables."""


class ConnectionRecord(Base):
    """One online/offline transition observed for an agent."""

    __tablename__ = "connections"

    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True
    )
    client_id: Mapped[str] = mapped_column(String(255), index=True)
    project_name: Mapped[str] = mapped_column(String(255), default="Unknown")
    location: Mapped[str] = mapped_column(String(255), default="Unknown")
    status: Mapped[str] = mapped_column(String(16), index=True)
    disconnect_reason: Mapped[str | None] = mapped_column(String(255), nullable=True)
    last_seen: Mapped[float] = mapped_column(Float)
    downtime_duration: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        index=True,
    )


@dataclass
class SeenAgent:
    agent_id: str
    project_name: str
    location: str
    last_seen: float

    def metadata(self) -> AgentMetadata:
        return AgentMetadata(project_name=self.project_name, location=self.location)


@dataclass
class DowntimeStats:
    total_downtime: int
    last_downtime: int | None

    def to_dict(self) -> dict[str, Any]:
        return {"totalDowntime": self.total_downtime, "lastDowntime": self.last_downtime}


class RecordStore(ABC):
    """Fact store of agent connection history.

    The core treats writes as fire-and-forget; implementations raise on
    failure and callers log.
    """

    @abstractmethod
    async def record_connection_status(
        self,
        agent_id: str,
        status: AgentStatus,
        metadata: AgentMetadata | None = None,
        reason: str | None = None,
    ) -> None:
        ...

    @abstractmethod
    async def get_recently_seen_agents(self, window_seconds: float) -> list[SeenAgent]:
        ...

    @abstractmethod
    async def get_downtime_stats(self, agent_id: str) -> DowntimeStats:
        ...

    async def close(self) -> None:
        pass


class SqlRecordStore(RecordStore):
    """Record store on an async SQLAlchemy engine (MySQL, Postgres or SQLite)."""

    def __init__(self, database_url: str, clock: Callable[[], float] = time.time):
        kwargs: dict[str, Any] = {"echo": False}
        if database_url == "sqlite+aiosqlite://":
            kwargs["poolclass"] = StaticPool
            kwargs["connect_args"] = {"check_same_thread": False}
        self._engine: AsyncEngine = create_async_engine(database_url, **kwargs)
        self._pool: async_sessionmaker[AsyncSession] = async_sessionmaker(
            self._engine, expire_on_commit=False
        )
        self._clock = clock

    async def create_tables(self) -> None:
        async with self._engine.begin() as connection:
            await connection.run_sync(Base.metadata.create_all)

    async def record_connection_status(
        self,
        agent_id: str,
        status: AgentStatus,
        metadata: AgentMetadata | None = None,
        reason: str | None = None,
    ) -> None:
        """Append a transition row; an online row closes the open downtime."""
        metadata = metadata or AgentMetadata()
        now = self._clock()
        async with self._pool() as session:
            if status is AgentStatus.ONLINE:
                await self._close_downtime(session, agent_id, now)
            session.add(ConnectionRecord(
                client_id=agent_id,
                project_name=metadata.project_name or "Unknown",
                location=metadata.location or "Unknown",
                status=status.value,
                disconnect_reason=reason,
                last_seen=now,
            ))
            await session.commit()

    async def _close_downtime(self, session: AsyncSession, agent_id: str, now: float) -> None:
        result = await session.execute(
            select(ConnectionRecord)
            .where(
                ConnectionRecord.client_id == agent_id,
                ConnectionRecord.status == AgentStatus.OFFLINE.value,
                ConnectionRecord.downtime_duration.is_(None),
            )
            .order_by(ConnectionRecord.id.desc())
            .limit(1)
        )
        row = result.scalar_one_or_none()
        if row is not None:
            row.downtime_duration = max(0, int(now - row.last_seen))

    async def get_recently_seen_agents(self, window_seconds: float) -> list[SeenAgent]:
        """Latest row per agent among rows written inside the window."""
        cutoff = self._clock() - window_seconds
        latest_ids = (
            select(func.max(ConnectionRecord.id))
            .where(ConnectionRecord.last_seen >= cutoff)
            .group_by(ConnectionRecord.client_id)
        )
        async with self._pool() as session:
            result = await session.execute(
                select(ConnectionRecord)
                .where(ConnectionRecord.id.in_(latest_ids))
                .order_by(ConnectionRecord.client_id)
            )
            rows = result.scalars().all()
        return [
            SeenAgent(
                agent_id=row.client_id,
                project_name=row.project_name,
                location=row.location,
                last_seen=row.last_seen,
            )
            for row in rows
        ]

    async def get_downtime_stats(self, agent_id: str) -> DowntimeStats:
        async with self._pool() as session:
            total = await session.scalar(
                select(func.sum(ConnectionRecord.downtime_duration)).where(
                    ConnectionRecord.client_id == agent_id,
                    ConnectionRecord.downtime_duration.is_not(None),
                )
            )
            last = await session.scalar(
                select(ConnectionRecord.downtime_duration)
                .where(
                    ConnectionRecord.client_id == agent_id,
                    ConnectionRecord.downtime_duration.is_not(None),
                )
                .order_by(ConnectionRecord.id.desc())
                .limit(1)
            )
        return DowntimeStats(total_downtime=int(total or 0), last_downtime=last)

    async def close(self) -> None:
        await self._engine.dispose()
