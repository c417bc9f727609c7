"""
Run persistence.

``RunStore`` is the single serialization point for run records, plugin events
and snapshots. Every operation is async and returns a ``Result``; unexpected
exceptions inside a store are converted to ``STORE_ERROR`` at this boundary.

Two implementations share the interface:

- ``InMemoryRunStore``: process-wide maps guarded by per-run ``asyncio.Lock``s.
- ``ArtifactRunStore``: the in-memory store mirrored to an ``ArtifactStore``
  as ``runs/<run>/record.json``, ``events.json`` and ``snapshots.json``, and
  reloaded from it by ``load()``.
"""

import asyncio
import functools
from abc import ABC, abstractmethod
from collections import Counter, deque
from dataclasses import asdict, replace
from datetime import datetime, timedelta
from typing import Any

from ..core.models import (
    EventBucket,
    RunEvent,
    RunQuery,
    RunRecord,
    RunStatus,
    Snapshot,
    TimelineFilter,
    utcnow,
)
from ..core.result import ErrorCode, Result, fail
from ..core.types import PlanId, PluginId, RunId, TenantId, WorkspaceId
from ..observability.logging import get_logger
from .artifacts import ArtifactStore, run_prefix

logger = get_logger(__name__)

_TICK = timedelta(microseconds=1)


def _guarded(op: str):
    """Convert unexpected exceptions raised inside a store operation to STORE_ERROR."""

    def decorator(func):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs) -> Result:
            try:
                return await func(*args, **kwargs)
            except Exception as e:
                logger.error("Store operation failed", op=op, error=repr(e))
                return fail(ErrorCode.STORE_ERROR, f"{op} failed: {e}", context={"op": op})

        return wrapper

    return decorator


class RunStore(ABC):
    """Abstract run store."""

    @abstractmethod
    async def save_run(self, record: RunRecord) -> Result[RunRecord]:
        """Upsert by run id; the stored copy carries the store-assigned ``updated_at``."""

    @abstractmethod
    async def get_run(self, run_id: str) -> Result[RunRecord]:
        pass

    @abstractmethod
    async def list_runs(self, query: RunQuery | None = None) -> Result[list[RunRecord]]:
        """Matching records, ``updated_at`` descending then run id."""

    @abstractmethod
    async def append_event(self, event: RunEvent) -> Result[RunEvent]:
        pass

    @abstractmethod
    async def list_events(self, run_id: str, limit: int | None = None) -> Result[list[RunEvent]]:
        pass

    @abstractmethod
    async def append_snapshot(self, snapshot: Snapshot) -> Result[Snapshot]:
        pass

    @abstractmethod
    async def list_snapshots(self, run_id: str) -> Result[list[Snapshot]]:
        pass

    @abstractmethod
    async def query_timeline(self, window: TimelineFilter) -> Result[list[Snapshot]]:
        pass

    @abstractmethod
    async def summarize(self, run_id: str) -> Result[list[EventBucket]]:
        pass

    @abstractmethod
    async def clear(self) -> None:
        pass


class InMemoryRunStore(RunStore):
    """Map-backed store safe for concurrent runs on one event loop."""

    def __init__(self, max_snapshots: int = 240):
        self.max_snapshots = max_snapshots
        self._runs: dict[RunId, RunRecord] = {}
        self._events: dict[RunId, list[RunEvent]] = {}
        self._snapshots: dict[RunId, deque[Snapshot]] = {}
        self._by_tenant: dict[str, set[RunId]] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._index_lock = asyncio.Lock()

    async def _lock_for(self, run_id: str) -> asyncio.Lock:
        async with self._index_lock:
            return self._locks.setdefault(run_id, asyncio.Lock())

    def _next_updated_at(self, run_id: str) -> datetime:
        now = utcnow()
        previous = self._runs.get(run_id)
        if previous is not None and now <= previous.updated_at:
            now = previous.updated_at + _TICK
        return now

    @_guarded("save_run")
    async def save_run(self, record: RunRecord) -> Result[RunRecord]:
        async with await self._lock_for(record.run_id):
            stored = replace(record, updated_at=self._next_updated_at(record.run_id))
            self._runs[record.run_id] = stored
            async with self._index_lock:
                self._by_tenant.setdefault(record.tenant_id, set()).add(record.run_id)
            await self._persist_run(stored)
        logger.debug("Saved run", run_id=stored.run_id, status=stored.status.value)
        return Result.success(stored)

    @_guarded("get_run")
    async def get_run(self, run_id: str) -> Result[RunRecord]:
        record = self._runs.get(run_id)
        if record is None:
            return fail(ErrorCode.RUN_NOT_FOUND, f"run '{run_id}' not found", context={"run_id": run_id})
        return Result.success(record)

    @_guarded("list_runs")
    async def list_runs(self, query: RunQuery | None = None) -> Result[list[RunRecord]]:
        query = query or RunQuery()
        if query.tenant_id is not None:
            run_ids = list(self._by_tenant.get(query.tenant_id, ()))
        else:
            run_ids = list(self._runs)

        records = [self._runs[run_id] for run_id in run_ids if run_id in self._runs]
        if query.workspace_id is not None:
            records = [r for r in records if r.workspace_id == query.workspace_id]
        if query.status is not None:
            records = [r for r in records if r.status == query.status]
        if query.min_risk_score is not None:
            records = [r for r in records if r.risk_score >= query.min_risk_score]

        records.sort(key=lambda r: r.run_id)
        records.sort(key=lambda r: r.updated_at, reverse=True)
        if query.limit is not None:
            records = records[: max(0, query.limit)]
        return Result.success(records)

    @_guarded("append_event")
    async def append_event(self, event: RunEvent) -> Result[RunEvent]:
        async with await self._lock_for(event.run_id):
            events = self._events.setdefault(event.run_id, [])
            events.append(event)
            await self._persist_events(event.run_id, events)
        return Result.success(event)

    @_guarded("list_events")
    async def list_events(self, run_id: str, limit: int | None = None) -> Result[list[RunEvent]]:
        events = sorted(self._events.get(run_id, ()), key=lambda e: e.at)
        if limit is not None:
            events = events[-limit:] if limit > 0 else []
        return Result.success(events)

    @_guarded("append_snapshot")
    async def append_snapshot(self, snapshot: Snapshot) -> Result[Snapshot]:
        async with await self._lock_for(snapshot.run_id):
            snapshots = self._snapshots.setdefault(
                snapshot.run_id, deque(maxlen=self.max_snapshots)
            )
            snapshots.append(snapshot)
            await self._persist_snapshots(snapshot.run_id, snapshots)
        return Result.success(snapshot)

    @_guarded("list_snapshots")
    async def list_snapshots(self, run_id: str) -> Result[list[Snapshot]]:
        return Result.success(sorted(self._snapshots.get(run_id, ()), key=lambda s: s.at))

    @_guarded("query_timeline")
    async def query_timeline(self, window: TimelineFilter) -> Result[list[Snapshot]]:
        matched = [
            snapshot
            for snapshots in self._snapshots.values()
            for snapshot in snapshots
            if (window.workspace_id is None or snapshot.workspace_id == window.workspace_id)
            and (window.template is None or snapshot.template_id == window.template)
            and (window.start is None or snapshot.at >= window.start)
            and (window.end is None or snapshot.at <= window.end)
        ]
        matched.sort(key=lambda s: (s.at, s.snapshot_id))
        return Result.success(matched)

    @_guarded("summarize")
    async def summarize(self, run_id: str) -> Result[list[EventBucket]]:
        if run_id not in self._runs and run_id not in self._events:
            return fail(ErrorCode.RUN_NOT_FOUND, f"run '{run_id}' not found", context={"run_id": run_id})

        grouped: dict[str, list[RunEvent]] = {}
        for event in sorted(self._events.get(run_id, ()), key=lambda e: e.at):
            grouped.setdefault(event.stage, []).append(event)

        buckets = [
            EventBucket(
                stage=stage,
                count=len(events),
                plugin_ids=tuple(dict.fromkeys(e.plugin_id for e in events)),
                kinds=dict(Counter(e.kind for e in events)),
            )
            for stage, events in grouped.items()
        ]
        return Result.success(buckets)

    async def clear(self) -> None:
        async with self._index_lock:
            self._runs.clear()
            self._events.clear()
            self._snapshots.clear()
            self._by_tenant.clear()
            self._locks.clear()
        logger.info("Run store cleared")

    # Mirroring hooks, called under the run's lock.
    async def _persist_run(self, record: RunRecord) -> None:
        pass

    async def _persist_events(self, run_id: str, events: list[RunEvent]) -> None:
        pass

    async def _persist_snapshots(self, run_id: str, snapshots: deque[Snapshot]) -> None:
        pass


def record_to_dict(record: RunRecord) -> dict[str, Any]:
    data = asdict(record)
    data["status"] = record.status.value
    data["started_at"] = record.started_at.isoformat()
    data["updated_at"] = record.updated_at.isoformat()
    data["phases"] = list(record.phases)
    data["warnings"] = list(record.warnings)
    return data


def record_from_dict(data: dict[str, Any]) -> RunRecord:
    return RunRecord(
        run_id=RunId(data["run_id"]),
        tenant_id=TenantId(data["tenant_id"]),
        workspace_id=WorkspaceId(data["workspace_id"]),
        status=RunStatus(data["status"]),
        started_at=datetime.fromisoformat(data["started_at"]),
        updated_at=datetime.fromisoformat(data["updated_at"]),
        phases=tuple(data.get("phases", ())),
        plan_id=PlanId(data["plan_id"]) if data.get("plan_id") else None,
        template_id=data.get("template_id", "synthetic"),
        requested_by=data.get("requested_by", ""),
        warnings=tuple(data.get("warnings", ())),
        plugin_count=data.get("plugin_count", 0),
        payload=data.get("payload"),
        risk_score=data.get("risk_score", 0.0),
    )


def event_to_dict(event: RunEvent) -> dict[str, Any]:
    data = asdict(event)
    data["at"] = event.at.isoformat()
    return data


def event_from_dict(data: dict[str, Any]) -> RunEvent:
    return RunEvent(
        event_id=data["event_id"],
        run_id=RunId(data["run_id"]),
        tenant_id=TenantId(data["tenant_id"]),
        workspace_id=WorkspaceId(data["workspace_id"]),
        plugin_id=PluginId(data["plugin_id"]),
        stage=data["stage"],
        kind=data["kind"],
        at=datetime.fromisoformat(data["at"]),
        payload=data.get("payload", {}),
    )


def snapshot_to_dict(snapshot: Snapshot) -> dict[str, Any]:
    data = asdict(snapshot)
    data["at"] = snapshot.at.isoformat()
    return data


def snapshot_from_dict(data: dict[str, Any]) -> Snapshot:
    return Snapshot(
        snapshot_id=data["snapshot_id"],
        run_id=RunId(data["run_id"]),
        workspace_id=WorkspaceId(data["workspace_id"]),
        template_id=data["template_id"],
        stage=data["stage"],
        metric=data["metric"],
        value=float(data["value"]),
        at=datetime.fromisoformat(data["at"]),
        payload=data.get("payload", {}),
    )


class ArtifactRunStore(InMemoryRunStore):
    """In-memory store mirrored to an artifact store; best effort, not transactional."""

    def __init__(self, artifacts: ArtifactStore, max_snapshots: int = 240):
        super().__init__(max_snapshots=max_snapshots)
        self.artifacts = artifacts

    async def _persist_run(self, record: RunRecord) -> None:
        await asyncio.to_thread(
            self.artifacts.save_json,
            f"{run_prefix(record.run_id)}/record.json",
            record_to_dict(record),
        )

    async def _persist_events(self, run_id: str, events: list[RunEvent]) -> None:
        await asyncio.to_thread(
            self.artifacts.save_json,
            f"{run_prefix(run_id)}/events.json",
            [event_to_dict(e) for e in events],
        )

    async def _persist_snapshots(self, run_id: str, snapshots: deque[Snapshot]) -> None:
        await asyncio.to_thread(
            self.artifacts.save_json,
            f"{run_prefix(run_id)}/snapshots.json",
            [snapshot_to_dict(s) for s in snapshots],
        )

    @_guarded("load")
    async def load(self) -> Result[int]:
        """Reload every persisted run; returns the number of runs loaded."""
        paths = await asyncio.to_thread(self.artifacts.list_artifacts, "runs")
        loaded = 0
        for path in paths:
            if not path.endswith("/record.json"):
                continue
            prefix = path.rsplit("/", 1)[0]
            record = record_from_dict(await asyncio.to_thread(self.artifacts.read_json, path))
            self._runs[record.run_id] = record
            self._by_tenant.setdefault(record.tenant_id, set()).add(record.run_id)

            if self.artifacts.exists(f"{prefix}/events.json"):
                raw = await asyncio.to_thread(self.artifacts.read_json, f"{prefix}/events.json")
                self._events[record.run_id] = [event_from_dict(e) for e in raw]
            if self.artifacts.exists(f"{prefix}/snapshots.json"):
                raw = await asyncio.to_thread(self.artifacts.read_json, f"{prefix}/snapshots.json")
                self._snapshots[record.run_id] = deque(
                    (snapshot_from_dict(s) for s in raw), maxlen=self.max_snapshots
                )
            loaded += 1

        logger.info("Loaded persisted runs", count=loaded)
        return Result.success(loaded)

    async def clear(self) -> None:
        await super().clear()
        await asyncio.to_thread(self.artifacts.delete, "runs")
