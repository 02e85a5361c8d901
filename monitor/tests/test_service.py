"""Tests for the monitor server's sessions, relay wiring and HTTP API."""

import asyncio
import time

import aiohttp
import pytest
from aiohttp.test_utils import TestClient, TestServer

from monitor.server.service import REJECTED_CLOSE_CODE, MonitorServer
from monitor.shared.bus import Channels
from monitor.shared.models import AgentStatus, StatusEvent
from monitor.tests.fakes import FakeStore, RecordingNotifier
from monitor.tests.mock_bus import MockBus


async def _wait_until(predicate, timeout=2.0):
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


async def _receive_event(ws, event, timeout=2.0):
    while True:
        msg = await ws.receive(timeout=timeout)
        assert msg.type == aiohttp.WSMsgType.TEXT, msg
        frame = msg.json()
        if frame["event"] == event:
            return frame["data"]


def _alert_types(bus):
    return [p["type"] for p in bus.payloads(Channels.ALERTS)]


@pytest.fixture
async def monitor():
    server = MonitorServer(
        {"handshake_timeout_seconds": 1, "shutdown_alert_timeout_seconds": 1},
        bus=MockBus("me"),
        store=FakeStore(time.time),
        notifier=RecordingNotifier(),
    )
    await server.start()
    client = TestClient(TestServer(server.app))
    await client.start_server()
    yield server, client
    await server.stop()
    await client.close()


async def _connect_agent(client, agent_id="a1", project="alpha"):
    ws = await client.ws_connect("/ws/agent")
    await ws.send_json({
        "event": "handshake",
        "data": {"agentId": agent_id, "metadata": {"projectName": project, "owner": "ops"}},
    })
    return ws


@pytest.mark.asyncio
async def test_health(monitor):
    server, client = monitor
    resp = await client.get("/health")
    assert resp.status == 200
    body = await resp.json()
    assert body["status"] == "ok"
    assert body["instance"] == "me"
    assert body["relay"] is True


@pytest.mark.asyncio
async def test_handshake_registers_agent(monitor):
    server, client = monitor
    ws = await _connect_agent(client)
    await ws.send_json({"event": "heartbeat", "data": {}})
    ack = await _receive_event(ws, "heartbeat:ack")
    assert "timestamp" in ack

    assert server.registry.is_online("a1")
    assert server.registry.get("a1").metadata.project_name == "alpha"
    assert server.store.statuses("a1") == [AgentStatus.ONLINE]
    status = server.bus.payloads(Channels.CONNECTION_STATUS)[0]
    assert status["status"] == "online"
    assert status["reason"] == "initial_connection"
    assert "CLIENT_CONNECTED" in _alert_types(server.bus)
    assert server.fleet.status("a1") is AgentStatus.ONLINE
    await ws.close()


@pytest.mark.asyncio
async def test_agent_receives_relayed_alerts(monitor):
    server, client = monitor
    ws = await _connect_agent(client)
    alert = await _receive_event(ws, "alert")
    assert alert["type"] == "CLIENT_CONNECTED"
    assert alert["metadata"]["clientId"] == "a1"
    await ws.close()


@pytest.mark.asyncio
async def test_missing_agent_id_is_rejected(monitor):
    server, client = monitor
    ws = await client.ws_connect("/ws/agent")
    await ws.send_json({"event": "handshake", "data": {"metadata": {}}})
    msg = await ws.receive(timeout=2)
    assert msg.type == aiohttp.WSMsgType.CLOSE
    assert msg.data == REJECTED_CLOSE_CODE
    assert len(server.registry) == 0
    assert server.bus.published == []
    await ws.close()


@pytest.mark.asyncio
async def test_handshake_timeout_is_rejected(monitor):
    server, client = monitor
    ws = await client.ws_connect("/ws/agent")
    msg = await ws.receive(timeout=3)
    assert msg.type == aiohttp.WSMsgType.CLOSE
    assert msg.data == REJECTED_CLOSE_CODE
    await ws.close()


@pytest.mark.asyncio
async def test_disconnect_marks_offline_and_alerts(monitor):
    server, client = monitor
    ws = await _connect_agent(client)
    await ws.send_json({"event": "disconnect", "data": {}})
    while (await ws.receive(timeout=2)).type == aiohttp.WSMsgType.TEXT:
        pass

    await _wait_until(lambda: not server.registry.is_online("a1"))
    assert server.registry.get("a1").status is AgentStatus.OFFLINE
    assert server.store.statuses("a1") == [AgentStatus.ONLINE, AgentStatus.OFFLINE]
    assert server.store.rows[-1]["reason"] == "client_disconnected"
    assert "CLIENT_DISCONNECTED" in _alert_types(server.bus)


@pytest.mark.asyncio
async def test_dropped_socket_marks_offline(monitor):
    server, client = monitor
    ws = await _connect_agent(client)
    await ws.send_json({"event": "heartbeat", "data": {}})
    await _receive_event(ws, "heartbeat:ack")
    await ws.close()

    await _wait_until(lambda: not server.registry.is_online("a1"))
    assert "CLIENT_DISCONNECTED" in _alert_types(server.bus)


@pytest.mark.asyncio
async def test_metrics_are_relayed_and_evaluated(monitor):
    server, client = monitor
    ws = await _connect_agent(client)
    await ws.send_json({"event": "metrics", "data": {
        "cpuUsage": 97.0,
        "memoryUsage": 500.0,
        "totalMemory": 1000.0,
        "freeMemory": 500.0,
        "uptime": 3600.0,
        "timestamp": time.time(),
    }})
    await ws.send_json({"event": "heartbeat", "data": {}})
    await _receive_event(ws, "heartbeat:ack")

    metrics = server.bus.payloads(Channels.SYSTEM_METRICS)
    assert metrics[0]["agentId"] == "a1"
    assert server.registry.get("a1").metrics.cpu_usage == 97.0
    types = _alert_types(server.bus)
    assert "HIGH_CPU_USAGE" in types
    assert "SYSTEM_HEALTH_REPORT" in types
    await ws.close()


@pytest.mark.asyncio
async def test_malformed_frames_do_not_end_session(monitor):
    server, client = monitor
    ws = await _connect_agent(client)
    await ws.send_str("not json")
    await ws.send_json({"event": "metrics", "data": {"cpuUsage": 1}})
    await ws.send_json({"event": "heartbeat", "data": {}})
    await _receive_event(ws, "heartbeat:ack")
    assert server.registry.is_online("a1")
    await ws.close()


@pytest.mark.asyncio
async def test_agent_alert_frames_are_dispatched(monitor):
    server, client = monitor
    ws = await _connect_agent(client)
    await ws.send_json({"event": "alert", "data": {
        "type": "CONNECTION_RETRY",
        "message": "Connection attempt 1 failed",
        "severity": "warning",
        "timestamp": time.time(),
        "metadata": {"clientId": "a1"},
    }})
    await ws.send_json({"event": "heartbeat", "data": {}})
    await _receive_event(ws, "heartbeat:ack")
    assert "CONNECTION_RETRY" in _alert_types(server.bus)
    assert any("CONNECTION_RETRY" in text for text, _ in server.notifier.sent)
    await ws.close()


@pytest.mark.asyncio
async def test_viewer_sees_status_and_alerts(monitor):
    server, client = monitor
    viewer = await client.ws_connect("/ws/viewer")
    await _wait_until(lambda: len(server._viewers) == 1)

    ws = await _connect_agent(client)
    status = await _receive_event(viewer, "connection-status")
    assert status["agentId"] == "a1"
    assert status["status"] == "online"
    alert = await _receive_event(viewer, "alert")
    assert alert["type"] == "CLIENT_CONNECTED"
    await ws.close()
    await viewer.close()


@pytest.mark.asyncio
async def test_remote_status_reaches_viewers_once(monitor):
    server, client = monitor
    viewer = await client.ws_connect("/ws/viewer")
    await _wait_until(lambda: len(server._viewers) == 1)

    event = StatusEvent(agent_id="b1", status=AgentStatus.OFFLINE, timestamp=time.time(), reason="connection_lost")
    envelope = {"from": "other", "channel": Channels.CONNECTION_STATUS, "payload": event.to_dict()}
    await server._on_relay_status(Channels.CONNECTION_STATUS, envelope)
    await server._on_relay_status(Channels.CONNECTION_STATUS, envelope)

    status = await _receive_event(viewer, "connection-status")
    assert status["agentId"] == "b1"
    assert server.fleet.status("b1") is AgentStatus.OFFLINE
    with pytest.raises(asyncio.TimeoutError):
        await viewer.receive(timeout=0.2)
    await viewer.close()


@pytest.mark.asyncio
async def test_list_agents(monitor):
    server, client = monitor
    ws = await _connect_agent(client)
    await ws.send_json({"event": "heartbeat", "data": {}})
    await _receive_event(ws, "heartbeat:ack")

    resp = await client.get("/api/agents")
    body = await resp.json()
    assert body["agents"][0]["agentId"] == "a1"
    assert body["agents"][0]["status"] == "online"
    assert body["fleet"][0]["agentId"] == "a1"
    await ws.close()


@pytest.mark.asyncio
async def test_downtime_endpoint(monitor):
    server, client = monitor
    resp = await client.get("/api/agents/a1/downtime")
    assert resp.status == 200
    assert await resp.json() == {"agentId": "a1", "totalDowntime": 0, "lastDowntime": None}

    server.store.fail = True
    resp = await client.get("/api/agents/a1/downtime")
    assert resp.status == 503


@pytest.mark.asyncio
async def test_post_alert(monitor):
    server, client = monitor
    resp = await client.post("/api/alerts", json={
        "type": "MANUAL_CHECK",
        "message": "Operator test",
        "severity": "info",
    })
    assert resp.status == 200
    assert (await resp.json())["success"] is True
    assert "MANUAL_CHECK" in _alert_types(server.bus)


@pytest.mark.asyncio
async def test_post_alert_validation(monitor):
    server, client = monitor
    resp = await client.post("/api/alerts", json={"message": "no type"})
    assert resp.status == 400
    resp = await client.post("/api/alerts", json={"type": "X", "message": "m", "severity": "fatal"})
    assert resp.status == 400


@pytest.mark.asyncio
async def test_post_alert_with_relay_down(monitor):
    server, client = monitor
    server.bus.is_connected = False
    resp = await client.post("/api/alerts", json={"type": "X", "message": "m"})
    assert resp.status == 503


@pytest.mark.asyncio
async def test_relay_down_does_not_break_sessions(monitor):
    server, client = monitor
    server.bus.is_connected = False
    ws = await _connect_agent(client)
    await ws.send_json({"event": "heartbeat", "data": {}})
    await _receive_event(ws, "heartbeat:ack")

    assert server.registry.is_online("a1")
    assert any("SYSTEM_DEGRADED" in text for text, _ in server.notifier.sent)
    await ws.close()


@pytest.mark.asyncio
async def test_stop_sends_shutdown_alert_and_closes():
    bus = MockBus("me")
    store = FakeStore(time.time)
    notifier = RecordingNotifier()
    server = MonitorServer(bus=bus, store=store, notifier=notifier)
    await server.start()
    sent_to = []
    await bus.subscribe(Channels.ALERTS, lambda ch, env: sent_to.append(env["payload"]["type"]))

    await server.stop()

    assert sent_to == ["SYSTEM_SHUTDOWN"]
    assert bus.is_connected is False
    assert store.closed
    assert notifier.closed


@pytest.mark.asyncio
async def test_relay_unreachable_at_startup_is_retried():
    bus = MockBus("me")
    bus.is_connected = False
    bus.reachable = False
    notifier = RecordingNotifier()
    server = MonitorServer(
        {"relay_retry_seconds": 0.01},
        bus=bus,
        store=FakeStore(time.time),
        notifier=notifier,
    )
    await server.start()
    assert any("SYSTEM_DEGRADED" in text for text, _ in notifier.sent)
    await asyncio.sleep(0.05)
    assert bus._own == []

    bus.reachable = True
    await _wait_until(lambda: bus.is_connected and len(bus._own) == 3)

    other = MockBus("other", network=bus._network)
    event = StatusEvent(agent_id="b1", status=AgentStatus.ONLINE, timestamp=time.time())
    await other.publish(Channels.CONNECTION_STATUS, event.to_dict())
    assert server.fleet.status("b1") is AgentStatus.ONLINE
    await server.stop()


@pytest.mark.asyncio
async def test_stop_cancels_pending_relay_retry():
    bus = MockBus("me")
    bus.is_connected = False
    bus.reachable = False
    server = MonitorServer(
        {"relay_retry_seconds": 0.01},
        bus=bus,
        store=FakeStore(time.time),
        notifier=RecordingNotifier(),
    )
    await server.start()
    task = server._relay_task
    await server.stop()

    assert task.done()
    assert server._relay_task is None
    assert bus._own == []


@pytest.mark.asyncio
async def test_last_agent_offline_raises_all_offline_warning(monitor):
    server, client = monitor
    ws = await _connect_agent(client)
    await ws.send_json({"event": "heartbeat", "data": {}})
    await _receive_event(ws, "heartbeat:ack")
    await ws.close()

    await _wait_until(lambda: "ALL_AGENTS_OFFLINE" in _alert_types(server.bus))
    alert = [p for p in server.bus.payloads(Channels.ALERTS) if p["type"] == "ALL_AGENTS_OFFLINE"]
    assert len(alert) == 1
    assert alert[0]["severity"] == "warning"
    assert alert[0]["message"] == "All agents are now offline"
    assert alert[0]["metadata"]["additionalInfo"]["lastAgent"] == "a1"


@pytest.mark.asyncio
async def test_no_all_offline_warning_while_another_agent_is_online(monitor):
    server, client = monitor
    first = await _connect_agent(client, "a1")
    second = await _connect_agent(client, "a2")
    for ws in (first, second):
        await ws.send_json({"event": "heartbeat", "data": {}})
        await _receive_event(ws, "heartbeat:ack")

    await first.close()
    await _wait_until(lambda: not server.registry.is_online("a1"))
    assert "ALL_AGENTS_OFFLINE" not in _alert_types(server.bus)
    await second.close()


@pytest.mark.asyncio
async def test_remote_offline_event_does_not_raise_all_offline(monitor):
    server, client = monitor
    event = StatusEvent(agent_id="b1", status=AgentStatus.OFFLINE, timestamp=time.time(), reason="connection_lost")
    envelope = {"from": "other", "channel": Channels.CONNECTION_STATUS, "payload": event.to_dict()}
    await server._on_relay_status(Channels.CONNECTION_STATUS, envelope)
    assert "ALL_AGENTS_OFFLINE" not in _alert_types(server.bus)


@pytest.mark.asyncio
async def test_agent_online_elsewhere_blocks_all_offline_warning(monitor):
    server, client = monitor
    remote = StatusEvent(agent_id="b1", status=AgentStatus.ONLINE, timestamp=time.time())
    await server._on_relay_status(
        Channels.CONNECTION_STATUS,
        {"from": "other", "channel": Channels.CONNECTION_STATUS, "payload": remote.to_dict()},
    )
    ws = await _connect_agent(client)
    await ws.send_json({"event": "disconnect", "data": {}})
    await _wait_until(lambda: "CLIENT_DISCONNECTED" in _alert_types(server.bus))

    assert "ALL_AGENTS_OFFLINE" not in _alert_types(server.bus)
    await ws.close()
