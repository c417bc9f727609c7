"""
Tests for run persistence.
"""

import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from recovery_lattice.core.models import (
    RunEvent,
    RunQuery,
    RunRecord,
    RunStatus,
    Snapshot,
    TimelineFilter,
)
from recovery_lattice.core.result import ErrorCode
from recovery_lattice.storage.artifacts import LocalStore
from recovery_lattice.storage.run_store import ArtifactRunStore, InMemoryRunStore

T0 = datetime(2026, 1, 1, tzinfo=UTC)


def make_record(run_id, tenant="acme", workspace="ops", status=RunStatus.QUEUED, risk=0.0):
    return RunRecord(
        run_id=run_id,
        tenant_id=tenant,
        workspace_id=workspace,
        status=status,
        started_at=T0,
        updated_at=T0,
        phases=("ingest",),
        risk_score=risk,
        payload={"run": run_id},
    )


def make_event(run_id, n, stage="ingest", kind="completed", plugin="p1"):
    return RunEvent(
        event_id=f"{run_id}:event:{n:05d}",
        run_id=run_id,
        tenant_id="acme",
        workspace_id="ops",
        plugin_id=plugin,
        stage=stage,
        kind=kind,
        at=T0 + timedelta(seconds=n),
    )


def make_snapshot(run_id, n, workspace="ops", template="synthetic"):
    return Snapshot(
        snapshot_id=f"{run_id}:snapshot:{n:04d}",
        run_id=run_id,
        workspace_id=workspace,
        template_id=template,
        stage="ingest",
        metric="signal_ratio",
        value=1.0,
        at=T0 + timedelta(seconds=n),
    )


class TestRunRecords:
    """Test record upserts and listing."""

    async def test_save_and_get(self, store):
        saved = await store.save_run(make_record("r1"))

        assert saved.ok
        fetched = (await store.get_run("r1")).value
        assert fetched == saved.value
        assert fetched.updated_at > T0

    async def test_get_unknown_run(self, store):
        result = await store.get_run("missing")

        assert result.error.code is ErrorCode.RUN_NOT_FOUND

    async def test_updated_at_strictly_increases(self, store):
        stamps = []
        for _ in range(50):
            stamps.append((await store.save_run(make_record("r1"))).value.updated_at)

        assert all(a < b for a, b in zip(stamps, stamps[1:], strict=False))

    async def test_listing_is_newest_first(self, store):
        for run_id in ("r1", "r2", "r3"):
            await store.save_run(make_record(run_id))
        await store.save_run(make_record("r1", status=RunStatus.RUNNING))

        listed = [r.run_id for r in (await store.list_runs()).value]

        assert listed[0] == "r1"
        assert sorted(listed) == ["r1", "r2", "r3"]

    async def test_listing_is_idempotent(self, store):
        for n in range(10):
            await store.save_run(make_record(f"r{n}"))

        first = (await store.list_runs()).value
        second = (await store.list_runs()).value

        assert first == second

    async def test_query_filters(self, store):
        await store.save_run(make_record("a1", tenant="acme", status=RunStatus.FAILED, risk=1.0))
        await store.save_run(make_record("a2", tenant="acme", workspace="dev"))
        await store.save_run(make_record("b1", tenant="beta"))

        def ids(result):
            return sorted(r.run_id for r in result.value)

        assert ids(await store.list_runs(RunQuery(tenant_id="acme"))) == ["a1", "a2"]
        assert ids(await store.list_runs(RunQuery(workspace_id="dev"))) == ["a2"]
        assert ids(await store.list_runs(RunQuery(status=RunStatus.FAILED))) == ["a1"]
        assert ids(await store.list_runs(RunQuery(min_risk_score=0.5))) == ["a1"]
        assert ids(await store.list_runs(RunQuery(tenant_id="nobody"))) == []
        assert len((await store.list_runs(RunQuery(limit=2))).value) == 2
        assert (await store.list_runs(RunQuery(limit=0))).value == []

    async def test_concurrent_saves(self, store):
        await asyncio.gather(*(store.save_run(make_record(f"r{n % 5}")) for n in range(100)))

        listed = (await store.list_runs()).value
        assert len(listed) == 5
        stamps = [r.updated_at for r in listed]
        assert stamps == sorted(stamps, reverse=True)

    async def test_clear(self, store):
        await store.save_run(make_record("r1"))
        await store.append_event(make_event("r1", 1))

        await store.clear()

        assert (await store.list_runs()).value == []
        assert (await store.list_events("r1")).value == []


class TestEventsAndSnapshots:
    """Test event logs, snapshots and summaries."""

    async def test_events_in_time_order_with_limit(self, store):
        for n in (3, 1, 2):
            await store.append_event(make_event("r1", n))

        events = (await store.list_events("r1")).value
        assert [e.event_id for e in events] == ["r1:event:00001", "r1:event:00002", "r1:event:00003"]

        latest = (await store.list_events("r1", limit=2)).value
        assert [e.event_id for e in latest] == ["r1:event:00002", "r1:event:00003"]
        assert (await store.list_events("r1", limit=0)).value == []

    async def test_snapshot_retention(self):
        store = InMemoryRunStore(max_snapshots=3)
        for n in range(5):
            await store.append_snapshot(make_snapshot("r1", n))

        snapshots = (await store.list_snapshots("r1")).value
        assert [s.snapshot_id for s in snapshots] == [f"r1:snapshot:{n:04d}" for n in (2, 3, 4)]

    async def test_query_timeline(self, store):
        await store.append_snapshot(make_snapshot("r1", 1))
        await store.append_snapshot(make_snapshot("r1", 5))
        await store.append_snapshot(make_snapshot("r2", 3, workspace="dev", template="recovery"))

        window = TimelineFilter(start=T0 + timedelta(seconds=2))
        assert [s.run_id for s in (await store.query_timeline(window)).value] == ["r2", "r1"]

        by_workspace = await store.query_timeline(TimelineFilter(workspace_id="ops"))
        assert len(by_workspace.value) == 2
        by_template = await store.query_timeline(TimelineFilter(template="recovery"))
        assert [s.run_id for s in by_template.value] == ["r2"]
        bounded = await store.query_timeline(TimelineFilter(end=T0 + timedelta(seconds=1)))
        assert len(bounded.value) == 1

    async def test_summarize(self, store):
        await store.save_run(make_record("r1"))
        await store.append_event(make_event("r1", 1, kind="queued"))
        await store.append_event(make_event("r1", 2, kind="completed"))
        await store.append_event(make_event("r1", 3, stage="simulate", kind="failed", plugin="p2"))

        buckets = (await store.summarize("r1")).value

        assert [b.stage for b in buckets] == ["ingest", "simulate"]
        assert buckets[0].count == 2
        assert buckets[0].kinds == {"queued": 1, "completed": 1}
        assert buckets[1].plugin_ids == ("p2",)

    async def test_summarize_unknown_run(self, store):
        result = await store.summarize("missing")

        assert result.error.code is ErrorCode.RUN_NOT_FOUND


class TestStoreErrors:
    """Test conversion of unexpected exceptions."""

    async def test_exception_becomes_store_error(self, store):
        class Broken(InMemoryRunStore):
            async def _persist_run(self, record):
                raise OSError("read-only filesystem")

        result = await Broken().save_run(make_record("r1"))

        assert result.error.code is ErrorCode.STORE_ERROR
        assert "read-only filesystem" in result.error.message


class TestArtifactRunStore:
    """Test the artifact-backed store."""

    @pytest.fixture
    def artifacts(self, tmp_path):
        return LocalStore(tmp_path)

    async def test_mirrors_and_reloads(self, artifacts):
        store = ArtifactRunStore(artifacts)
        saved = (await store.save_run(make_record("run:acme:ops:1"))).value
        await store.append_event(make_event("run:acme:ops:1", 1))
        await store.append_snapshot(make_snapshot("run:acme:ops:1", 1))

        assert artifacts.list_artifacts("runs") == [
            "runs/run_acme_ops_1/events.json",
            "runs/run_acme_ops_1/record.json",
            "runs/run_acme_ops_1/snapshots.json",
        ]

        reloaded = ArtifactRunStore(artifacts)
        assert (await reloaded.load()).value == 1
        assert (await reloaded.get_run("run:acme:ops:1")).value == saved
        assert len((await reloaded.list_events("run:acme:ops:1")).value) == 1
        assert len((await reloaded.list_snapshots("run:acme:ops:1")).value) == 1

    async def test_clear_removes_artifacts(self, artifacts):
        store = ArtifactRunStore(artifacts)
        await store.save_run(make_record("r1"))

        await store.clear()

        assert artifacts.list_artifacts("runs") == []
