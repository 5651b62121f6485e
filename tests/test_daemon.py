"""Tests for the agent service, its status API and logging setup."""

from __future__ import annotations

import json
import logging
import threading
from unittest.mock import MagicMock, patch

import pytest

from podcapture.daemon import AgentService, JsonFormatter, configure_logging, get_agent_status
from podcapture.models import AgentConfig, EventType, LogFormat, WorkloadEvent, WorkloadIdentity
from podcapture.reconciler import Reconciler
from podcapture.stats import AgentState

from conftest import make_workload

P1 = WorkloadIdentity(namespace="ns", name="p1")


class FakeSource:
    """Event source that replays a fixed list of events, then idles."""

    def __init__(self, events=(), fail=None):
        self.events = list(events)
        self.fail = fail
        self.connected = False
        self.stopped = False

    def connect(self):
        self.connected = True

    def run(self, on_event, stop_event):
        if self.fail:
            raise self.fail
        for event in self.events:
            on_event(event)
        stop_event.wait()

    def stop(self):
        self.stopped = True


@pytest.fixture
def agent_config(capture_dir, fake_tool):
    return AgentConfig(
        node_name="node-1",
        capture_dir=capture_dir,
        capture_tool=fake_tool,
        grace_period=2.0,
        api_port=0,
    )


@pytest.fixture
def service_factory(agent_config):
    services = []

    def _make(events=(), fail=None):
        svc = AgentService(agent_config, source=FakeSource(events, fail))
        services.append(svc)
        return svc

    yield _make
    for svc in services:
        svc.stop()


def _added(name, annotation="3"):
    return WorkloadEvent(type=EventType.ADDED, workload=make_workload(name, annotation))


class TestAgentState:
    """Tests for the counters."""

    def test_initial_snapshot(self):
        snap = AgentState().snapshot()
        assert snap["running"] is False
        assert snap["sessions_started"] == 0
        assert snap["recent_errors"] == []

    def test_counters(self):
        state = AgentState()
        state.record_event()
        state.record_start()
        state.record_stop(forced=True)
        state.record_stop(forced=False)
        state.record_cleanup(deleted=3, failed=1)
        state.record_invalid_spec()
        state.record_resolve_failure("no pid")
        state.record_spawn_failure("ENOENT")
        snap = state.snapshot()
        assert snap["events_handled"] == 1
        assert snap["sessions_stopped"] == 2
        assert snap["forced_kills"] == 1
        assert snap["files_deleted"] == 3
        assert snap["cleanup_failures"] == 1
        assert snap["invalid_specs"] == 1
        assert snap["resolve_failures"] == 1
        assert snap["spawn_failures"] == 1
        assert len(snap["recent_errors"]) == 2
        assert snap["last_event"] is not None

    def test_errors_capped(self):
        state = AgentState()
        for i in range(60):
            state.record_error(f"err {i}")
        assert len(state.errors) == 50
        assert state.errors[-1].endswith("err 59")


class TestLogging:
    """Tests for the JSON formatter and handler setup."""

    def test_json_formatter_includes_lifecycle(self):
        record = logging.LogRecord("podcapture.x", logging.INFO, __file__, 1, "Started %s", ("ns/p1",), None)
        record.lifecycle = "start"
        record.workload = "ns/p1"
        record.pid = 42
        entry = json.loads(JsonFormatter().format(record))
        assert entry["message"] == "Started ns/p1"
        assert entry["lifecycle"] == "start"
        assert entry["pid"] == 42
        assert entry["level"] == "INFO"
        assert "returncode" not in entry

    def test_configure_logging_json(self):
        root = logging.getLogger()
        saved_handlers, saved_level = list(root.handlers), root.level
        try:
            configure_logging(LogFormat.JSON, "DEBUG")
            assert len(root.handlers) == 1
            assert isinstance(root.handlers[0].formatter, JsonFormatter)
            assert root.level == logging.DEBUG
        finally:
            for handler in list(root.handlers):
                root.removeHandler(handler)
            for handler in saved_handlers:
                root.addHandler(handler)
            root.setLevel(saved_level)


class TestAgentService:
    """Tests for the service lifecycle with a fake event source."""

    def test_requires_node_name(self, capture_dir):
        with pytest.raises(ValueError):
            AgentService(AgentConfig(capture_dir=capture_dir))

    def test_uses_given_reconciler(self, agent_config):
        reconciler = Reconciler.from_config(agent_config)
        svc = AgentService(agent_config, reconciler=reconciler, source=FakeSource())
        assert svc.reconciler is reconciler
        assert svc.state is reconciler.state

    def test_events_start_captures(self, service_factory, wait_for, first_file_written):
        svc = service_factory([_added("p1")])
        svc.start()
        assert svc.source.connected
        assert wait_for(lambda: P1 in svc.reconciler.registry)
        assert first_file_written(P1)

    def test_status_api(self, service_factory, wait_for):
        svc = service_factory([_added("p1")])
        svc.start()
        assert wait_for(lambda: P1 in svc.reconciler.registry)

        assert get_agent_status(svc.api_port, "/healthz") == {"ok": True}
        status = get_agent_status(svc.api_port, "/status")
        assert status["active_sessions"] == 1
        assert status["running"] is True
        sessions = get_agent_status(svc.api_port, "/sessions")["sessions"]
        assert sessions[0]["workload"] == "ns/p1"
        assert sessions[0]["max_files"] == 3
        assert get_agent_status(svc.api_port, "/nope") is None

    def test_stop_drains_and_cleans(self, service_factory, capture_dir, wait_for, first_file_written):
        svc = service_factory([_added("p1"), _added("p2", "2")])
        svc.start()
        assert wait_for(lambda: len(svc.reconciler.registry) == 2)
        assert first_file_written(P1)
        sessions = svc.reconciler.registry.snapshot()
        port = svc.api_port

        svc.stop()

        assert len(svc.reconciler.registry) == 0
        assert all(s.exited.is_set() for s in sessions)
        assert list(capture_dir.iterdir()) == []
        assert svc.source.stopped
        assert svc.state.running is False
        assert get_agent_status(port, "/healthz") is None

    def test_stop_waits_for_event_handlers(self, service_factory):
        svc = service_factory()
        svc.start()
        with patch.object(svc.dispatcher, "wait_idle", wraps=svc.dispatcher.wait_idle) as wait_idle, \
                patch.object(svc.reconciler, "shutdown", wraps=svc.reconciler.shutdown) as shutdown:
            order = MagicMock()
            order.attach_mock(wait_idle, "wait_idle")
            order.attach_mock(shutdown, "shutdown")
            svc.stop()
        assert [c[0] for c in order.mock_calls] == ["wait_idle", "shutdown"]

    def test_stop_is_idempotent(self, service_factory):
        svc = service_factory()
        svc.start()
        svc.stop()
        svc.stop()

    def test_events_after_stop_ignored(self, service_factory):
        svc = service_factory()
        svc.start()
        svc.stop()
        svc.submit(_added("p1"))
        assert len(svc.reconciler.registry) == 0

    def test_source_failure_ends_run_forever(self, service_factory):
        svc = service_factory(fail=RuntimeError("watch exploded"))
        svc.start()
        runner = threading.Thread(target=svc.run_forever, daemon=True)
        runner.start()
        runner.join(10)
        assert not runner.is_alive()
        assert any("watch exploded" in err for err in svc.state.errors)


class TestGetAgentStatus:
    def test_unreachable(self):
        # Port 9 (discard) is not served on the loopback of test machines.
        assert get_agent_status(9, "/status") is None
