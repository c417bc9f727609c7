"""
Tests for the session monitor.
"""

import asyncio

import pytest

from recovery_lattice.core.builtin import sleeping_plugin
from recovery_lattice.core.models import RunStatus
from recovery_lattice.core.registry import PluginRegistry
from recovery_lattice.core.result import ErrorCode
from recovery_lattice.core.session import (
    SessionIdentity,
    SessionMonitor,
    SessionRunOptions,
    session_key,
)
from recovery_lattice.core.templates import SYNTHETIC


@pytest.fixture
def identity():
    return SessionIdentity("acme", "ops", "oncall")


@pytest.fixture
def monitor(synthetic_registry, store, settings, ids):
    return SessionMonitor({"synthetic": synthetic_registry}, store, settings=settings, ids=ids)


class TestSessions:
    """Test opening and closing sessions."""

    def test_session_key(self, identity):
        assert session_key(identity, "synthetic") == "session:acme:ops:oncall:synthetic"
        assert session_key(SessionIdentity("acme", "ops", ""), "recovery").endswith(":anonymous:recovery")
        assert session_key(SessionIdentity("acme", "ops", "Jo Doe"), "synthetic").endswith(":Jo_Doe:synthetic")

    def test_invalid_identity(self):
        with pytest.raises(ValueError):
            SessionIdentity("", "ops", "me")

    def test_open_is_idempotent(self, monitor, identity):
        first = monitor.open_session(identity, "synthetic")
        second = monitor.open_session(identity, "synthetic")

        assert first is second
        assert len(monitor.list_sessions()) == 1

    def test_open_unknown_template(self, monitor, identity):
        with pytest.raises(ValueError):
            monitor.open_session(identity, "nope")

    def test_close(self, monitor, identity):
        monitor.open_session(identity, "synthetic")

        assert monitor.close_session(identity, "synthetic") is True
        assert monitor.close_session(identity, "synthetic") is False
        assert monitor.list_sessions() == []

    async def test_close_refused_while_running(self, store, settings, ids, identity):
        registry = PluginRegistry(SYNTHETIC)
        registry.register(sleeping_plugin("slow", ("ingest",), delay_ms=100))
        monitor = SessionMonitor({"synthetic": registry}, store, settings=settings, ids=ids)
        options = SessionRunOptions(identity=identity, template_id="synthetic", phases=("ingest",))

        task = asyncio.create_task(monitor.run(options, "x"))
        await asyncio.sleep(0.02)

        assert monitor.close_session(identity, "synthetic") is False
        assert (await task).ok
        assert monitor.close_session(identity, "synthetic") is True

    def test_list_sessions_returns_copies(self, monitor, identity):
        monitor.open_session(identity, "synthetic")

        monitor.list_sessions()[0].history.append("junk")

        assert monitor.list_sessions()[0].history == []


class TestSessionRuns:
    """Test planning and running inside sessions."""

    def test_plan(self, monitor, identity):
        options = SessionRunOptions(identity=identity, template_id="synthetic", phases=("ingest",))
        plan = monitor.plan(options).value

        assert plan.stage_route == ("ingest",)
        assert plan.context.actor == "oncall"

    def test_plan_unknown_template(self, monitor, identity):
        result = monitor.plan(SessionRunOptions(identity=identity, template_id="recovery"))

        assert result.error.code is ErrorCode.UNKNOWN_TEMPLATE

    async def test_run_records_history(self, monitor, identity):
        options = SessionRunOptions(identity=identity, template_id="synthetic")

        first = await monitor.run(options, {"n": 1})
        second = await monitor.run(options, {"n": 2})

        assert first.ok and second.ok
        timeline = monitor.timeline(identity)
        assert [e.run_id for e in timeline] == [first.value.run_id, second.value.run_id]
        assert all(e.status is RunStatus.SUCCEEDED for e in timeline)
        assert monitor.list_sessions()[0].active_runs == 0

    async def test_failed_run_is_recorded(self, store, settings, ids, identity):
        registry = PluginRegistry(SYNTHETIC)
        registry.register(sleeping_plugin("slow", ("ingest",), delay_ms=500, timeout_ms=10))
        monitor = SessionMonitor({"synthetic": registry}, store, settings=settings, ids=ids)

        result = await monitor.run(SessionRunOptions(identity=identity, template_id="synthetic"), "x")

        assert result.error.code is ErrorCode.PLUGIN_TIMEOUT
        [entry] = monitor.timeline(identity, "synthetic")
        assert entry.status is RunStatus.FAILED
        assert entry.stage_count == 0

    async def test_run_unknown_template(self, monitor, identity):
        result = await monitor.run(SessionRunOptions(identity=identity, template_id="horizon"))

        assert result.error.code is ErrorCode.UNKNOWN_TEMPLATE
        assert monitor.list_sessions() == []

    async def test_concurrent_runs_are_isolated(self, monitor, identity, store):
        options = SessionRunOptions(identity=identity, template_id="synthetic")

        results = await asyncio.gather(*(monitor.run(options, {"n": n}) for n in range(5)))

        assert len({r.value.run_id for r in results}) == 5
        assert sorted(r.value.payload["n"] for r in results) == list(range(5))
        assert len((await store.list_runs()).value) == 5
