"""Redis pub/sub relay bus keeping monitor server instances consistent."""

import asyncio
import json
import uuid
from collections.abc import Iterable
from datetime import datetime, timezone
from typing import Any, Callable

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from monitor.shared.logger import get_logger


class Channels:
    CONNECTION_STATUS = "connection-status"
    SYSTEM_METRICS = "system-metrics"
    ALERTS = "alerts"

    ALL = (CONNECTION_STATUS, SYSTEM_METRICS, ALERTS)


class NotConnectedError(RuntimeError):
    """Raised when publishing while the relay transport is down."""


class RelayBus:
    """Thin async wrapper around Redis pub/sub with JSON envelope.

    Publishing is a single attempt: there is no retry queue, and a call
    made while the publisher connection is down fails fast with
    ``NotConnectedError``. A watcher task pings Redis every
    ``health_interval`` seconds while the bus is marked down and restarts
    the listener when it has died, so the bus recovers once Redis is back.
    """

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379",
        instance_id: str | None = None,
        health_interval: float = 5.0,
    ):
        self._redis_url = redis_url
        self.instance_id = instance_id or uuid.uuid4().hex[:12]
        self._health_interval = health_interval
        self._publisher = None
        self._subscriber = None
        self._pubsub = None
        self._handlers: dict[str, list[Callable]] = {}
        self._listen_task = None
        self._watch_task = None
        self._connected = False
        self.logger = get_logger("bus")

    @property
    def is_connected(self) -> bool:
        return self._connected and self._publisher is not None

    async def connect(self):
        self._publisher = aioredis.from_url(self._redis_url)
        self._subscriber = aioredis.from_url(self._redis_url)
        self._pubsub = self._subscriber.pubsub()
        try:
            await self._publisher.ping()
        except (RedisError, OSError) as e:
            await self._close_clients()
            raise NotConnectedError(f"Relay bus unreachable at {self._redis_url}: {e}") from e
        self._connected = True
        if self._watch_task is None or self._watch_task.done():
            self._watch_task = asyncio.create_task(self._watch())
        self.logger.info(f"Relay bus connected to {self._redis_url}")

    async def disconnect(self):
        self._connected = False
        for task in (self._watch_task, self._listen_task):
            if task is None:
                continue
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._watch_task = None
        self._listen_task = None
        if self._pubsub:
            try:
                if self._handlers:
                    await self._pubsub.unsubscribe()
                await self._pubsub.aclose()
            except (RedisError, OSError) as e:
                self.logger.warning(f"Error closing relay subscription: {e}")
        self._handlers.clear()
        await self._close_clients()
        self.logger.info("Relay bus disconnected")

    async def _close_clients(self):
        self._pubsub = None
        if self._subscriber:
            await self._subscriber.aclose()
            self._subscriber = None
        if self._publisher:
            await self._publisher.aclose()
            self._publisher = None

    async def publish(self, channel: str, payload: dict[str, Any]):
        if not self.is_connected:
            raise NotConnectedError(f"Relay bus not connected, dropped publish on {channel}")
        envelope = {
            "from": self.instance_id,
            "channel": channel,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "payload": payload,
        }
        try:
            await self._publisher.publish(channel, json.dumps(envelope))
        except (RedisError, OSError) as e:
            self._connected = False
            raise NotConnectedError(f"Relay bus publish on {channel} failed: {e}") from e

    async def subscribe(self, channels: str | Iterable[str], handler: Callable):
        if isinstance(channels, str):
            channels = [channels]
        channels = list(channels)
        for channel in channels:
            self._handlers.setdefault(channel, []).append(handler)
        await self._pubsub.subscribe(*channels)
        if self._listen_task is None or self._listen_task.done():
            self._listen_task = asyncio.create_task(self._listen())

    async def unsubscribe(self, channel: str):
        self._handlers.pop(channel, None)
        await self._pubsub.unsubscribe(channel)

    async def check_health(self) -> bool:
        """Mark the bus connected again once Redis answers a ping.

        Also re-subscribes every handled channel and restarts the listener
        if it stopped on a Redis error. Returns the resulting connection
        state.
        """
        if self._publisher is None:
            return False
        if not self._connected:
            try:
                await self._publisher.ping()
            except (RedisError, OSError) as e:
                self.logger.debug(f"Relay bus still unreachable: {e}")
                return False
            self._connected = True
            self.logger.info(f"Relay bus reconnected to {self._redis_url}")
        listener_dead = self._listen_task is None or self._listen_task.done()
        if self._handlers and listener_dead:
            try:
                await self._pubsub.subscribe(*self._handlers)
            except (RedisError, OSError) as e:
                self._connected = False
                self.logger.warning(f"Relay bus re-subscribe failed: {e}")
                return False
            self._listen_task = asyncio.create_task(self._listen())
            self.logger.info(
                "Relay bus listener restarted",
                extra={"log_data": {"channels": sorted(self._handlers)}},
            )
        return True

    async def _watch(self):
        while True:
            await asyncio.sleep(self._health_interval)
            await self.check_health()

    async def _listen(self):
        try:
            async for message in self._pubsub.listen():
                if message["type"] != "message":
                    continue
                channel = message["channel"]
                if isinstance(channel, bytes):
                    channel = channel.decode()
                try:
                    data = json.loads(message["data"])
                except (json.JSONDecodeError, UnicodeDecodeError):
                    self.logger.error(f"Invalid JSON on {channel}: {message['data'][:100]!r}")
                    continue
                for handler in list(self._handlers.get(channel, [])):
                    await self._dispatch(handler, channel, data)
        except asyncio.CancelledError:
            pass
        except (RedisError, OSError) as e:
            self._connected = False
            self.logger.error(f"Relay bus listener stopped: {e}")

    async def _dispatch(self, handler: Callable, channel: str, data: dict):
        try:
            if asyncio.iscoroutinefunction(handler):
                await handler(channel, data)
            else:
                handler(channel, data)
        except Exception as e:
            self.logger.error(f"Handler for {channel} failed: {e}", exc_info=True)
