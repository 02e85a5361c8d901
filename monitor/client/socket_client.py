"""Agent-side WebSocket session with the monitor server."""

import asyncio
import json
import time
from collections import deque

import aiohttp

from monitor.client.backoff import BackoffStateMachine, ConnectionState
from monitor.client.metrics import MetricsCollector
from monitor.shared.logger import get_logger
from monitor.shared.models import AgentMetadata, Alert, AlertMetadata, Severity

REJECTED_CLOSE_CODE = 4001


class _LoopScheduler:
    """Schedules backoff timers on whichever loop is running."""

    def call_later(self, delay, callback):
        return asyncio.get_running_loop().call_later(delay, callback)


class AgentClient:
    """Keeps one agent connected, heartbeating and reporting metrics."""

    def __init__(
        self,
        agent_id: str,
        metadata: AgentMetadata,
        server_url: str = "http://localhost:3035/ws/agent",
        heartbeat_interval: float = 15,
        metrics_interval: float = 30,
        base_delay: float = 5.0,
        max_delay: float = 30.0,
        max_attempts: int = 5,
        connect_timeout: float = 10,
        shutdown_timeout: float = 3,
        collector: MetricsCollector | None = None,
        scheduler=None,
        log_file: str | None = None,
    ):
        self.agent_id = agent_id
        self.metadata = metadata
        self._server_url = server_url
        self._heartbeat_interval = heartbeat_interval
        self._metrics_interval = metrics_interval
        self._connect_timeout = connect_timeout
        self._shutdown_timeout = shutdown_timeout
        self._collector = collector or MetricsCollector(agent_id)
        self.machine = BackoffStateMachine(
            scheduler=scheduler or _LoopScheduler(),
            on_attempt=self._on_attempt,
            on_alert=self._on_alert,
            base_delay=base_delay,
            max_delay=max_delay,
            max_attempts=max_attempts,
            agent_id=agent_id,
            metadata=metadata,
        )
        self._pending_alerts: deque[Alert] = deque(maxlen=50)
        self._session: aiohttp.ClientSession | None = None
        self._ws = None
        self._session_task: asyncio.Task | None = None
        self._loops: list[asyncio.Task] = []
        self._running = False
        self.logger = get_logger("client", log_file=log_file)

    @property
    def is_connected(self) -> bool:
        return (
            self._ws is not None
            and not self._ws.closed
            and self.machine.state is ConnectionState.CONNECTED
        )

    async def start(self):
        """Open the HTTP session, start the report timers and connect."""
        self._running = True
        self._session = aiohttp.ClientSession()
        self._loops = [
            asyncio.create_task(self._heartbeat_loop()),
            asyncio.create_task(self._metrics_loop()),
        ]
        self.logger.info(f"Starting agent {self.agent_id}", extra={"log_data": self.metadata.to_dict()})
        self.machine.connect()

    def connect(self):
        """Manually retry, including after the client gave up."""
        self.machine.connect()

    async def stop(self):
        """Cancel timers, say goodbye with a bounded wait, then close."""
        self._running = False
        for task in self._loops:
            task.cancel()
        await asyncio.gather(*self._loops, return_exceptions=True)
        self._loops.clear()
        connected = self.is_connected
        self.machine.stop()

        if connected:
            shutdown = Alert(
                type="CLIENT_SHUTDOWN",
                message="Client shutting down gracefully",
                severity=Severity.INFO,
                timestamp=time.time(),
                metadata=AlertMetadata.for_agent(self.agent_id, self.metadata),
            )
            try:
                await asyncio.wait_for(self._say_goodbye(shutdown), self._shutdown_timeout)
            except (asyncio.TimeoutError, aiohttp.ClientError, ConnectionResetError) as e:
                self.logger.warning(f"Shutdown notice not delivered: {e}")

        if self._ws is not None and not self._ws.closed:
            await self._ws.close()
        if self._session_task:
            self._session_task.cancel()
            await asyncio.gather(self._session_task, return_exceptions=True)
            self._session_task = None
        if self._session and not self._session.closed:
            await self._session.close()
        self.logger.info(f"Agent {self.agent_id} stopped")

    async def _say_goodbye(self, alert: Alert):
        await self._send("alert", alert.to_dict())
        await self._send("disconnect", {})

    def _on_attempt(self):
        if not self._running:
            return
        self._session_task = asyncio.create_task(self._run_session())

    def _on_alert(self, alert: Alert):
        log = {
            Severity.INFO: self.logger.info,
            Severity.WARNING: self.logger.warning,
            Severity.ERROR: self.logger.error,
        }[alert.severity]
        log(f"{alert.type}: {alert.message}")
        self._pending_alerts.append(alert)

    async def _run_session(self):
        try:
            self._ws = await asyncio.wait_for(
                self._session.ws_connect(self._server_url), self._connect_timeout
            )
            await self._send("handshake", {"agentId": self.agent_id, "metadata": self.metadata.to_dict()})
            # The server only acks heartbeats once it has accepted the handshake.
            await self._send("heartbeat", {"metadata": self.metadata.to_dict()})
        except (aiohttp.ClientError, OSError, asyncio.TimeoutError) as e:
            self.logger.error(f"Connection error: {e}")
            self._ws = None
            self.machine.on_connect_failed()
            return

        ws = self._ws
        accept_timer = asyncio.get_running_loop().call_later(
            self._connect_timeout, self._on_accept_timeout, ws
        )
        try:
            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    await self._handle_server_message(msg.data)
                elif msg.type in (aiohttp.WSMsgType.CLOSED, aiohttp.WSMsgType.ERROR):
                    break
        finally:
            accept_timer.cancel()
            self._ws = None
            if ws.close_code == REJECTED_CLOSE_CODE:
                self.logger.error("Server rejected the handshake, not reconnecting")
                self.machine.stop()
            elif self._running and self.machine.state is ConnectionState.CONNECTING:
                self.logger.warning(f"Server closed the session before accepting it (code {ws.close_code})")
                self.machine.on_connect_failed()
            elif self._running:
                self.logger.warning(f"Disconnected from server (code {ws.close_code})")
                self.machine.on_closed()

    def _on_accept_timeout(self, ws):
        if self.machine.state is ConnectionState.CONNECTING and not ws.closed:
            self.logger.error(f"Server did not accept the handshake within {self._connect_timeout}s")
            asyncio.create_task(ws.close())

    async def _handle_server_message(self, raw: str):
        try:
            frame = json.loads(raw)
        except json.JSONDecodeError:
            self.logger.error(f"Invalid JSON from server: {raw[:100]}")
            return
        event = frame.get("event")
        data = frame.get("data") or {}
        if event == "heartbeat:ack":
            if self.machine.state is ConnectionState.CONNECTING and self._ws is not None:
                self.logger.info("Server accepted the session")
                self.machine.on_connected()
                await self._flush_alerts()
            else:
                self.logger.debug(f"Heartbeat acknowledged at {data.get('timestamp')}")
        elif event == "alert":
            self.logger.warning(f"Received alert: {data.get('type')} - {data.get('message')}")

    async def _flush_alerts(self):
        while self._pending_alerts and self.is_connected:
            alert = self._pending_alerts.popleft()
            try:
                await self._send("alert", alert.to_dict())
            except (aiohttp.ClientError, ConnectionResetError) as e:
                self._pending_alerts.appendleft(alert)
                self.logger.error(f"Failed to deliver buffered alert: {e}")
                return

    async def send_heartbeat(self):
        if not self.is_connected:
            return
        await self._send("heartbeat", {"metadata": self.metadata.to_dict()})

    async def send_metrics(self):
        if not self.is_connected:
            return
        metrics = self._collector.collect()
        await self._send("metrics", {**metrics.to_dict(), "metadata": self.metadata.to_dict()})

    async def _heartbeat_loop(self):
        while self._running:
            try:
                await self.send_heartbeat()
            except Exception as e:
                self.logger.error(f"Heartbeat failed: {e}")
            await asyncio.sleep(self._heartbeat_interval)

    async def _metrics_loop(self):
        while self._running:
            try:
                await self.send_metrics()
            except Exception as e:
                self.logger.error(f"Metrics report failed: {e}")
            await asyncio.sleep(self._metrics_interval)

    async def _send(self, event: str, data: dict):
        await self._ws.send_json({"event": event, "data": data})
