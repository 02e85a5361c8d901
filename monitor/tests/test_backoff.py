"""Tests for the agent-side reconnection state machine."""

import pytest

from monitor.client.backoff import BackoffStateMachine, ConnectionState, next_delay
from monitor.shared.models import AgentMetadata, Severity
from monitor.tests.fakes import FakeClock, FakeScheduler


class Harness:
    def __init__(self, **kwargs):
        self.scheduler = FakeScheduler()
        self.attempts = 0
        self.alerts = []
        self.machine = BackoffStateMachine(
            scheduler=self.scheduler,
            on_attempt=self._attempt,
            on_alert=self.alerts.append,
            agent_id="a1",
            metadata=AgentMetadata(project_name="alpha"),
            clock=FakeClock(),
            **kwargs,
        )

    def _attempt(self):
        self.attempts += 1

    def types(self):
        return [a.type for a in self.alerts]


@pytest.fixture
def harness():
    return Harness()


def test_next_delay_doubles_and_caps():
    assert [next_delay(n) for n in range(6)] == [5, 10, 20, 30, 30, 30]


def test_next_delay_custom_base():
    assert next_delay(3, base_delay=1, max_delay=100) == 8


def test_connect_starts_an_attempt(harness):
    harness.machine.connect()
    assert harness.machine.state is ConnectionState.CONNECTING
    assert harness.attempts == 1
    assert harness.alerts == []


def test_failures_back_off_then_give_up(harness):
    m = harness.machine
    m.connect()
    for _ in range(4):
        m.on_connect_failed()
        assert m.state is ConnectionState.DISCONNECTED
        harness.scheduler.fire()
        assert m.state is ConnectionState.CONNECTING
    m.on_connect_failed()

    assert harness.scheduler.delays == [10, 20, 30, 30]
    assert m.state is ConnectionState.GAVE_UP
    assert harness.attempts == 5
    assert harness.scheduler.pending == []
    final = harness.alerts[-1]
    assert final.type == "RECONNECTION_FAILED"
    assert final.severity is Severity.ERROR


def test_gave_up_is_terminal(harness):
    m = harness.machine
    m.max_attempts = 1
    m.connect()
    m.on_connect_failed()
    assert m.state is ConnectionState.GAVE_UP
    m.on_connect_failed()
    m.on_closed()
    assert m.state is ConnectionState.GAVE_UP
    assert harness.attempts == 1


def test_manual_connect_resets_after_giving_up(harness):
    m = harness.machine
    m.max_attempts = 2
    m.connect()
    m.on_connect_failed()
    harness.scheduler.fire()
    m.on_connect_failed()
    assert m.state is ConnectionState.GAVE_UP

    m.connect()
    assert m.state is ConnectionState.CONNECTING
    assert m.attempt == 0
    m.on_connect_failed()
    assert m.state is ConnectionState.DISCONNECTED
    assert harness.scheduler.delays[-1] == 10


def test_close_after_connect_waits_base_delay(harness):
    m = harness.machine
    m.connect()
    m.on_connected()
    m.on_closed()
    assert m.state is ConnectionState.DISCONNECTED
    assert m.attempt == 0
    assert harness.scheduler.delays == [5]
    assert "CONNECTION_RETRY" not in harness.types()


def test_success_resets_counter(harness):
    m = harness.machine
    m.connect()
    m.on_connect_failed()
    harness.scheduler.fire()
    m.on_connect_failed()
    harness.scheduler.fire()
    m.on_connected()
    assert m.state is ConnectionState.CONNECTED
    assert m.attempt == 0
    m.on_closed()
    harness.scheduler.fire()
    m.on_connect_failed()
    assert harness.scheduler.delays[-1] == 10


def test_transition_alerts(harness):
    m = harness.machine
    m.connect()
    m.on_connect_failed()
    harness.scheduler.fire()
    m.on_connected()

    assert harness.types() == ["CONNECTION_RETRY", "RECONNECTING", "AGENT_CONNECTED"]
    retry = harness.alerts[0]
    assert retry.severity is Severity.WARNING
    assert retry.metadata.client_id == "a1"
    assert retry.metadata.project_name == "alpha"
    assert retry.metadata.additional_info["attempt"] == 1
    assert retry.metadata.additional_info["maxAttempts"] == 5


def test_manual_connect_cancels_pending_timer(harness):
    m = harness.machine
    m.connect()
    m.on_connect_failed()
    assert m.has_pending_attempt
    m.connect()
    assert not m.has_pending_attempt
    assert harness.scheduler.pending == []
    assert harness.attempts == 2


def test_stop_cancels_pending_timer(harness):
    m = harness.machine
    m.connect()
    m.on_connected()
    m.on_closed()
    m.stop()
    assert m.state is ConnectionState.DISCONNECTED
    assert harness.scheduler.pending == []


def test_stale_failure_is_ignored(harness):
    m = harness.machine
    m.connect()
    m.on_connected()
    m.on_connect_failed()
    assert m.state is ConnectionState.CONNECTED
