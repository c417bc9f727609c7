"""
End-to-end tests through the run service.
"""

import asyncio

import pytest

from recovery_lattice.core.builtin import default_plugins
from recovery_lattice.core.contracts import ModeOptions, RunOutput, RunRequest
from recovery_lattice.core.registry import PluginRegistry
from recovery_lattice.core.result import ErrorCode, fail
from recovery_lattice.core.session import SessionMonitor
from recovery_lattice.core.templates import SYNTHETIC
from recovery_lattice.service import RunService
from recovery_lattice.storage.artifacts import LocalStore
from recovery_lattice.storage.run_store import InMemoryRunStore


def make_service(store, settings, ids, fail_stage=None, artifacts=None):
    registry = PluginRegistry(SYNTHETIC)
    assert registry.register_many(default_plugins(SYNTHETIC, fail_stage=fail_stage)).ok
    monitor = SessionMonitor(
        {"synthetic": registry}, store, settings=settings, artifact_store=artifacts, ids=ids
    )
    return RunService(monitor, store, artifact_store=artifacts, settings=settings)


def request(**kwargs):
    fields = {"tenant_id": "acme", "workspace_id": "ops", "requested_by": "oncall"}
    fields.update(kwargs)
    return RunRequest(**fields)


@pytest.fixture
def service(store, settings, ids):
    return make_service(store, settings, ids)


class TestEndToEnd:
    """Test complete runs through the service."""

    async def test_full_route_succeeds(self, service):
        result = await service.execute(request(), {"incident": 1})

        output = result.value
        assert output.status == "succeeded"
        assert len(output.timeline) == 4
        for stage in SYNTHETIC.stages:
            assert any(line.startswith(f"stage={stage}|") for line in output.diagnostics)
        assert output.error is None

    async def test_phase_subset(self, service):
        dry = (await service.execute(request(phases=["ingest", "synthesize", "simulate"], mode="dry-run"))).value
        assert "actuate" not in dry.diagnostics[0]

        output = (await service.execute(request(phases=["ingest", "synthesize", "simulate"]), "x")).value

        assert output.status == "succeeded"
        assert [e.stage for e in output.timeline] == ["ingest", "synthesize", "simulate"]
        assert not any("actuate" in line for line in output.diagnostics)

    async def test_throwing_plugin_fails_the_run(self, store, settings, ids):
        service = make_service(store, settings, ids, fail_stage="simulate")

        result = await service.execute(request(), "x")

        assert result.ok
        output = result.value
        assert output.status == "failed"
        assert [e.stage for e in output.timeline] == ["ingest", "synthesize"]
        assert output.error.startswith("PLUGIN_ERROR")

    async def test_concurrent_runs_persist_independently(self, service, store):
        first, second = await asyncio.gather(
            service.execute(request(workspace_id="one"), {"n": 1}),
            service.execute(request(workspace_id="two"), {"n": 2}),
        )

        one = (await service.get_run(first.value.run_id)).value
        two = (await service.get_run(second.value.run_id)).value
        assert one.run_id != two.run_id
        assert (one.workspace_id, one.payload) == ("one", {"n": 1})
        assert (two.workspace_id, two.payload) == ("two", {"n": 2})


class TestModes:
    """Test dry-run and replay."""

    async def test_dry_run_executes_nothing(self, service, store):
        output = (await service.execute(request(mode="dry-run"))).value

        assert output.status == "queued"
        assert output.report.stage_count == 0
        assert output.report.plugin_count == 4
        assert output.diagnostics[0].startswith("mode=dry-run|route=ingest->synthesize->simulate->actuate")
        assert (await store.list_runs()).value == []

    async def test_replay_reuses_latest_payload(self, service, store):
        await service.execute(request(), {"attempt": 1})
        await service.execute(request(), {"attempt": 2})

        output = (await service.execute(request(mode="replay"))).value

        record = (await store.get_run(output.run_id)).value
        assert record.payload == {"attempt": 2}
        assert len((await store.list_runs()).value) == 3

    async def test_replay_without_history(self, service):
        result = await service.execute(request(mode="replay"))

        assert result.error.code is ErrorCode.RUN_NOT_FOUND

    async def test_camel_case_request(self, service):
        req = RunRequest.model_validate(
            {
                "tenantId": "acme",
                "workspaceId": "ops",
                "requestedBy": "oncall",
                "modeOptions": {"parallel": True, "timeoutMs": 5000},
            }
        )

        assert req.mode_options == ModeOptions(parallel=True, timeout_ms=5000)
        assert (await service.execute(req, "x")).value.status == "succeeded"


class TestErrors:
    """Test configuration and store failures."""

    async def test_invalid_identity(self, service):
        result = await service.execute(request(tenant_id="bad tenant"))

        assert result.error.code is ErrorCode.INVALID_REQUEST

    async def test_unknown_phase(self, service):
        result = await service.execute(request(phases=["approve"]))

        assert result.error.code is ErrorCode.UNKNOWN_STAGE

    async def test_unknown_template(self, service):
        result = await service.execute(request(template_id="recovery"))

        assert result.error.code is ErrorCode.UNKNOWN_TEMPLATE

    async def test_store_failure_is_returned_as_failure(self, settings, ids):
        class ReadOnlyStore(InMemoryRunStore):
            async def save_run(self, record):
                return fail(ErrorCode.STORE_ERROR, "read-only")

        store = ReadOnlyStore()
        result = await make_service(store, settings, ids).execute(request(), "x")

        assert result.error.code is ErrorCode.STORE_ERROR
        assert isinstance(result.partial, RunOutput)
        assert result.partial.status == "failed"


class TestQueries:
    """Test run listings, logs and artifacts."""

    async def test_list_runs_filters(self, store, settings, ids):
        ok_service = make_service(store, settings, ids)
        bad_service = make_service(store, settings, ids, fail_stage="ingest")
        await ok_service.execute(request(), "x")
        await bad_service.execute(request(), "x")

        failed = (await ok_service.list_runs(tenant_id="acme", status="failed")).value
        risky = (await ok_service.list_runs(min_risk_score=0.5)).value

        assert len(failed) == 1
        assert [r.run_id for r in risky] == [r.run_id for r in failed]
        assert len((await ok_service.list_runs(limit=1)).value) == 1

    async def test_list_logs(self, service):
        output = (await service.execute(request(), "x")).value

        logs = (await service.list_logs(output.run_id)).value
        latest = (await service.list_logs(output.run_id, limit=3)).value

        assert len(logs) == 12
        assert latest == logs[-3:]

    async def test_list_logs_unknown_run(self, service):
        result = await service.list_logs("missing")

        assert result.error.code is ErrorCode.RUN_NOT_FOUND

    async def test_list_artifacts(self, store, settings, ids, tmp_path):
        artifacts = LocalStore(tmp_path / "artifacts")
        service = make_service(store, settings, ids, artifacts=artifacts)
        output = (await service.execute(request(), "x")).value

        listed = (await service.list_artifacts(output.run_id)).value

        assert len(listed) == 1
        assert listed[0].endswith("/trace.json")

    async def test_list_artifacts_without_store(self, service):
        output = (await service.execute(request(), "x")).value

        assert (await service.list_artifacts(output.run_id)).value == []
