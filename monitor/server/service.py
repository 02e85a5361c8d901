"""Monitor server: agent sessions, live viewers and relay wiring.

Each server process terminates WebSocket sessions for some agents and
keeps its own registry for them. Status, metrics and alert events go out
on the relay bus and come back in through this process's subscription,
which is the only path that pushes them to live viewers. An offline event
detected by any instance therefore reaches every instance's viewers.
"""

import asyncio
import json
import signal
import sys
import time
from typing import Any, Callable

import aiohttp
from aiohttp import web

from monitor.server.alerts import AlertDispatcher, format_timestamp
from monitor.server.fleet import FleetView
from monitor.server.registry import ClientRegistry
from monitor.server.store import SqlRecordStore
from monitor.server.sweep import LivenessSweep
from monitor.server.thresholds import MetricsEvaluator
from monitor.shared.bus import Channels, NotConnectedError, RelayBus
from monitor.shared.config import DEFAULT_SERVER_CONFIG
from monitor.shared.logger import get_logger
from monitor.shared.models import (
    AgentMetadata,
    AgentStatus,
    Alert,
    AlertMetadata,
    Reason,
    Severity,
    StatusEvent,
    SystemMetrics,
)
from monitor.shared.telegram import build_notifier

REJECTED_CLOSE_CODE = 4001


def frame(event: str, data: dict[str, Any]) -> str:
    return json.dumps({"event": event, "data": data})


class MonitorServer:
    """Owns the registry, sweep and dispatcher of one server process."""

    def __init__(
        self,
        config: dict[str, Any] | None = None,
        bus=None,
        store=None,
        notifier=None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = {**DEFAULT_SERVER_CONFIG, **(config or {})}
        cfg = self.config
        self._clock = clock
        self.logger = get_logger("server", log_file=cfg.get("log_file"))

        self.bus = bus or RelayBus(redis_url=cfg["redis_url"], health_interval=cfg["relay_retry_seconds"])
        self.store = store or SqlRecordStore(cfg["database_url"], clock=clock)
        self.notifier = notifier or build_notifier(
            cfg["telegram_token"], cfg["telegram_chat_id"], cfg["telegram_client_chat_id"]
        )

        self.registry = ClientRegistry(self.bus, clock=clock)
        self.dispatcher = AlertDispatcher(
            self.bus,
            self.notifier,
            suppression_window=cfg["suppression_window_seconds"],
            clock=clock,
        )
        self.fleet = FleetView(self.bus.instance_id)
        self.evaluator = MetricsEvaluator(
            self.dispatcher,
            self.registry,
            cpu_threshold=cfg["cpu_threshold_percent"],
            memory_threshold=cfg["memory_threshold_percent"],
            report_interval=cfg["report_interval_seconds"],
            clock=clock,
        )
        self.sweep = LivenessSweep(
            self.registry,
            self.store,
            self.dispatcher,
            interval=cfg["sweep_interval_seconds"],
            offline_threshold=cfg["offline_threshold_seconds"],
            seen_window=cfg["seen_window_hours"] * 3600,
            fleet=self.fleet,
            notifier=self.notifier,
            clock=clock,
        )

        self._agent_sockets: dict[str, web.WebSocketResponse] = {}
        self._viewers: set[web.WebSocketResponse] = set()
        self._relay_task: asyncio.Task | None = None
        self._shutting_down = False
        self._shutdown_event: asyncio.Event | None = None
        self.app = self.build_app()

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/ws/agent", self.handle_agent)
        app.router.add_get("/ws/viewer", self.handle_viewer)
        app.router.add_get("/health", self.handle_health)
        app.router.add_get("/api/agents", self.handle_list_agents)
        app.router.add_get("/api/agents/{agent_id}/downtime", self.handle_downtime)
        app.router.add_post("/api/alerts", self.handle_post_alert)
        return app

    # --- lifecycle ---

    async def start(self):
        """Connect the relay bus and store, subscribe, and start the sweep."""
        try:
            await self.bus.connect()
        except NotConnectedError as e:
            self.logger.error(f"Relay bus unavailable at startup: {e}")
            await self.dispatcher.report_degraded(e)
        create_tables = getattr(self.store, "create_tables", None)
        if create_tables is not None:
            await create_tables()
        if self.bus.is_connected:
            await self._subscribe_relay()
        else:
            self._relay_task = asyncio.create_task(self._connect_relay())
        self.sweep.start()
        self.logger.info(f"Monitor server {self.bus.instance_id} started")

    async def _subscribe_relay(self):
        await self.bus.subscribe(Channels.CONNECTION_STATUS, self._on_relay_status)
        await self.bus.subscribe(Channels.SYSTEM_METRICS, self._on_relay_metrics)
        await self.bus.subscribe(Channels.ALERTS, self._on_relay_alert)

    async def _connect_relay(self):
        """Keep retrying the relay bus until it connects, then subscribe."""
        delay = self.config["relay_retry_seconds"]
        while not self._shutting_down:
            await asyncio.sleep(delay)
            try:
                await self.bus.connect()
            except NotConnectedError as e:
                self.logger.warning(f"Relay bus still unavailable: {e}")
                continue
            await self._subscribe_relay()
            self.logger.info("Relay bus connected after startup, subscriptions restored")
            return

    async def stop(self):
        """Shut down timers first, then notify, then close transports."""
        self.logger.info("Monitor server shutting down...")
        self._shutting_down = True
        await self.sweep.stop()
        if self._relay_task is not None:
            self._relay_task.cancel()
            try:
                await self._relay_task
            except asyncio.CancelledError:
                pass
            self._relay_task = None

        alert = Alert(
            type="SYSTEM_SHUTDOWN",
            message="Monitoring system shutting down",
            severity=Severity.WARNING,
            timestamp=self._clock(),
            metadata=AlertMetadata(component="Monitor Server"),
        )
        try:
            await asyncio.wait_for(
                self.dispatcher.raise_alert(alert),
                self.config["shutdown_alert_timeout_seconds"],
            )
        except (NotConnectedError, asyncio.TimeoutError) as e:
            self.logger.warning(f"Shutdown alert not delivered: {e}")

        for ws in list(self._agent_sockets.values()) + list(self._viewers):
            await ws.close(code=aiohttp.WSCloseCode.GOING_AWAY, message=b"Server shutdown")

        await self.bus.disconnect()
        await self.store.close()
        await self.notifier.close()
        self.logger.info("Monitor server shut down complete")

    async def run(self):
        """Serve until SIGINT/SIGTERM."""
        self._shutdown_event = asyncio.Event()
        self._install_signal_handlers()
        await self.start()
        runner = web.AppRunner(self.app)
        await runner.setup()
        site = web.TCPSite(runner, self.config["host"], self.config["port"])
        await site.start()
        self.logger.info(f"Listening on {self.config['host']}:{self.config['port']}")
        await self._shutdown_event.wait()
        await self.stop()
        await runner.cleanup()

    def _install_signal_handlers(self):
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self._shutdown_event.set)
            except NotImplementedError:
                pass  # Windows fallback below
        if sys.platform == "win32":
            signal.signal(signal.SIGINT, lambda s, f: self._shutdown_event.set())

    # --- agent sessions ---

    async def handle_agent(self, request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse()
        await ws.prepare(request)

        agent_id, metadata = await self._read_handshake(ws)
        if not agent_id:
            self.logger.warning("Agent attempted connection without agentId")
            await ws.close(code=REJECTED_CLOSE_CODE, message=b"agentId required")
            return ws

        self.logger.info(f"Agent connected: {agent_id}")
        previous = self._agent_sockets.get(agent_id)
        self._agent_sockets[agent_id] = ws
        if previous is not None and not previous.closed:
            await previous.close(code=aiohttp.WSCloseCode.POLICY_VIOLATION, message=b"Replaced by new session")
        await self.on_connect(agent_id, metadata)

        try:
            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    if await self._handle_frame(agent_id, ws, msg.data) == "disconnect":
                        break
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    self.logger.error(f"Session error for {agent_id}: {ws.exception()}")
                    break
        finally:
            if self._agent_sockets.get(agent_id) is ws:
                del self._agent_sockets[agent_id]
                if not self._shutting_down:
                    await self.on_disconnect(agent_id)
            if not ws.closed:
                await ws.close()
        return ws

    async def _read_handshake(self, ws: web.WebSocketResponse) -> tuple[str | None, AgentMetadata]:
        try:
            msg = await ws.receive(timeout=self.config["handshake_timeout_seconds"])
        except asyncio.TimeoutError:
            return None, AgentMetadata()
        if msg.type != aiohttp.WSMsgType.TEXT:
            return None, AgentMetadata()
        try:
            payload = json.loads(msg.data)
        except json.JSONDecodeError:
            return None, AgentMetadata()
        if not isinstance(payload, dict) or payload.get("event") != "handshake":
            return None, AgentMetadata()
        data = payload.get("data") or {}
        if not isinstance(data, dict):
            return None, AgentMetadata()
        agent_id = data.get("agentId")
        if not isinstance(agent_id, str) or not agent_id.strip():
            return None, AgentMetadata()
        return agent_id, AgentMetadata.from_dict(data.get("metadata"))

    async def _handle_frame(self, agent_id: str, ws: web.WebSocketResponse, raw: str) -> str | None:
        try:
            payload = json.loads(raw)
            event = payload.get("event")
            data = payload.get("data") or {}
        except (json.JSONDecodeError, AttributeError):
            self.logger.warning(f"Malformed frame from {agent_id}: {raw[:100]}")
            return None

        try:
            if event == "heartbeat":
                self.registry.touch(agent_id, metadata=AgentMetadata.from_dict(data.get("metadata")))
                await ws.send_str(frame("heartbeat:ack", {"timestamp": self._clock()}))
            elif event == "metrics":
                await self.on_metrics(agent_id, data)
            elif event == "alert":
                await self.dispatcher.raise_alert(Alert.from_dict(data))
            elif event == "disconnect":
                return "disconnect"
            else:
                self.logger.debug(f"Ignoring unknown event {event!r} from {agent_id}")
        except (KeyError, ValueError, TypeError, AttributeError) as e:
            self.logger.warning(f"Invalid {event} payload from {agent_id}: {e}")
        except NotConnectedError as e:
            self.logger.error(f"Relay failure handling {event} from {agent_id}: {e}")
            await self.dispatcher.report_degraded(e)
        return event

    async def on_connect(self, agent_id: str, metadata: AgentMetadata):
        previous = self.registry.get(agent_id)
        was_offline = previous is None or previous.status is not AgentStatus.ONLINE
        try:
            await self.registry.register(agent_id, metadata)
        except NotConnectedError as e:
            self.logger.error(f"Could not relay online status for {agent_id}: {e}")
            await self.dispatcher.report_degraded(e)
        await self._record(agent_id, AgentStatus.ONLINE, metadata)

        if not was_offline:
            return
        info: dict[str, Any] = {"owner": metadata.owner or "Unknown"}
        try:
            stats = await self.store.get_downtime_stats(agent_id)
            if stats.last_downtime:
                info["lastDowntime"] = f"{stats.last_downtime // 60}m {stats.last_downtime % 60}s"
        except Exception as e:
            self.logger.error(f"Failed to read downtime for {agent_id}: {e}")
        await self._raise(
            Alert(
                type="CLIENT_CONNECTED",
                message="Agent connected",
                severity=Severity.INFO,
                timestamp=self._clock(),
                metadata=AlertMetadata.for_agent(agent_id, metadata, additional_info=info),
            ),
            f"{agent_id}:connected",
        )

    async def on_disconnect(self, agent_id: str):
        self.logger.info(f"Agent disconnected: {agent_id}")
        record = self.registry.get(agent_id)
        if record is None or record.status is not AgentStatus.ONLINE:
            return
        try:
            await self.registry.mark_offline(agent_id, Reason.CLIENT_DISCONNECTED)
        except NotConnectedError as e:
            self.logger.error(f"Could not relay offline status for {agent_id}: {e}")
            await self.dispatcher.report_degraded(e)
        await self._record(agent_id, AgentStatus.OFFLINE, record.metadata, Reason.CLIENT_DISCONNECTED)
        await self._raise(
            Alert(
                type="CLIENT_DISCONNECTED",
                message="Agent disconnected",
                severity=Severity.WARNING,
                timestamp=self._clock(),
                metadata=AlertMetadata.for_agent(agent_id, record.metadata, additional_info={
                    "owner": record.metadata.owner or "Unknown",
                    "reason": Reason.CLIENT_DISCONNECTED,
                }),
            ),
            f"{agent_id}:{Reason.CLIENT_DISCONNECTED}",
        )

    async def on_metrics(self, agent_id: str, data: dict[str, Any]):
        metrics = SystemMetrics.from_dict({**data, "agentId": agent_id})
        self.registry.touch(agent_id, metadata=AgentMetadata.from_dict(data.get("metadata")), metrics=metrics)
        await self.bus.publish(Channels.SYSTEM_METRICS, metrics.to_dict())
        await self.evaluator.evaluate(agent_id, metrics)

    async def _record(self, agent_id: str, status: AgentStatus, metadata: AgentMetadata, reason: str | None = None):
        try:
            await self.store.record_connection_status(agent_id, status, metadata, reason)
        except Exception as e:
            self.logger.error(f"Failed to record {status.value} status for {agent_id}: {e}")

    async def _raise(self, alert: Alert, key: str | None = None):
        try:
            await self.dispatcher.raise_alert(alert, key)
        except NotConnectedError as e:
            self.logger.error(f"Could not relay alert {alert.type}: {e}")
            await self.dispatcher.report_degraded(e)

    # --- live viewers ---

    async def handle_viewer(self, request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse()
        await ws.prepare(request)
        self._viewers.add(ws)
        try:
            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.ERROR:
                    break
        finally:
            self._viewers.discard(ws)
        return ws

    async def _broadcast(self, sockets, text: str):
        for ws in list(sockets):
            if ws.closed:
                continue
            try:
                await ws.send_str(text)
            except (ConnectionResetError, RuntimeError) as e:
                self.logger.debug(f"Dropped frame to closing socket: {e}")

    async def _on_relay_status(self, channel: str, envelope: dict):
        try:
            event = StatusEvent.from_dict(envelope["payload"])
        except (KeyError, ValueError, TypeError) as e:
            self.logger.error(f"Invalid status event on {channel}: {e}")
            return
        origin = envelope.get("from", "unknown")
        if not self.fleet.apply(event, origin):
            return
        await self._broadcast(self._viewers, frame("connection-status", event.to_dict()))
        if event.status is AgentStatus.OFFLINE and origin == self.bus.instance_id:
            await self._check_all_offline(event)

    async def _check_all_offline(self, event: StatusEvent):
        """Warn once the agent that just went offline was the last one online.

        Only the instance that produced the offline event raises it, so a
        fleet of servers sends a single warning.
        """
        if self.registry.online() or self.fleet.any_online():
            return
        self.logger.warning(f"All agents offline after {event.agent_id} went down")
        await self._raise(Alert(
            type="ALL_AGENTS_OFFLINE",
            message="All agents are now offline",
            severity=Severity.WARNING,
            timestamp=self._clock(),
            metadata=AlertMetadata(
                component="Monitor Server",
                additional_info={
                    "lastAgent": event.agent_id,
                    "time": format_timestamp(event.timestamp),
                },
            ),
        ))

    async def _on_relay_metrics(self, channel: str, envelope: dict):
        await self._broadcast(self._viewers, frame("system-metrics", envelope.get("payload", {})))

    async def _on_relay_alert(self, channel: str, envelope: dict):
        text = frame("alert", envelope.get("payload", {}))
        await self._broadcast(self._viewers, text)
        await self._broadcast(self._agent_sockets.values(), text)

    # --- HTTP ---

    async def handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({
            "status": "ok",
            "instance": self.bus.instance_id,
            "relay": self.bus.is_connected,
            "agents": len(self.registry),
            "online": len(self.registry.online()),
        })

    async def handle_list_agents(self, request: web.Request) -> web.Response:
        return web.json_response({
            "agents": [r.to_dict() for r in self.registry.snapshot()],
            "fleet": [e.to_dict() for e in self.fleet.snapshot()],
        })

    async def handle_downtime(self, request: web.Request) -> web.Response:
        agent_id = request.match_info["agent_id"]
        try:
            stats = await self.store.get_downtime_stats(agent_id)
        except Exception as e:
            self.logger.error(f"Failed to read downtime for {agent_id}: {e}")
            return web.json_response({"error": "Record store unavailable"}, status=503)
        return web.json_response({"agentId": agent_id, **stats.to_dict()})

    async def handle_post_alert(self, request: web.Request) -> web.Response:
        try:
            body = await request.json()
            alert = Alert.from_dict({"timestamp": self._clock(), **body})
        except (json.JSONDecodeError, KeyError, ValueError, TypeError) as e:
            return web.json_response({"error": f"Invalid alert: {e}"}, status=400)
        try:
            await self.dispatcher.raise_alert(alert)
        except NotConnectedError as e:
            self.logger.error(f"Error publishing alert: {e}")
            return web.json_response({"error": "Failed to publish alert"}, status=503)
        return web.json_response({"success": True})
