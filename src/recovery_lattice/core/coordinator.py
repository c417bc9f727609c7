"""
Run coordinator.

Drives one execution plan across its stage route:

    queued -> running -> for each stage: execute, aggregate, snapshot
           -> succeeded | degraded | failed

Each stage's output is the next stage's input. A failing stage stops the run;
the stages completed so far are kept and returned as the partial summary of
the failure. Every status change is persisted before the run moves on, and a
persistence failure fails the run.
"""

import asyncio
import itertools
import time
from dataclasses import replace
from typing import Any

from ..config.settings import SnapshotConfig
from ..observability.logging import get_logger, get_trace_id, set_trace_id
from ..observability.metrics import get_metrics_collector
from ..observability.probe import clear_trace_metrics, probe
from ..observability.tracing import add_span_attributes, trace_span
from ..storage.artifacts import ArtifactStore, save_trace_snapshot
from ..storage.run_store import RunStore
from .audit import create_trace_snapshot
from .lattice import StageExecutor, aggregate_stage
from .lifecycle import DEFAULT_TRANSITIONS, RunLifecycle, Transition
from .models import (
    ExecutionPlan,
    PluginRunRecord,
    RunEvent,
    RunRecord,
    RunStatus,
    RunSummary,
    Snapshot,
    StageEvent,
)
from .result import EngineError, ErrorCode, Result, fail
from .snapshots import SnapshotBuffer

logger = get_logger(__name__)

NO_SIGNAL_WARNING = "no plugin produced output"


def classify(timeline: list[StageEvent], error: EngineError | None) -> RunStatus:
    """Terminal status for a finished run."""
    if error is not None:
        return RunStatus.FAILED
    if any(event.degraded for event in timeline):
        return RunStatus.DEGRADED
    return RunStatus.SUCCEEDED


def risk_score(timeline: list[StageEvent], status: RunStatus) -> float:
    """Share of stages that were empty or warned; 1.0 for failed runs."""
    if status is RunStatus.FAILED:
        return 1.0
    if not timeline:
        return 0.0
    return sum(1 for event in timeline if event.degraded) / len(timeline)


class RunCoordinator:
    """Executes a single-use plan and persists its run."""

    def __init__(
        self,
        plan: ExecutionPlan,
        store: RunStore,
        parallel: bool = False,
        snapshots: SnapshotConfig | None = None,
        artifact_store: ArtifactStore | None = None,
        deadline_ms: int | None = None,
        transitions: tuple[Transition, ...] = DEFAULT_TRANSITIONS,
    ):
        self.plan = plan
        self.store = store
        self.parallel = parallel
        self.snapshots = snapshots or SnapshotConfig()
        self.artifact_store = artifact_store
        self.deadline_ms = deadline_ms
        self.lifecycle = RunLifecycle(plan.run_id, transitions)
        self.diagnostics: list[str] = []
        self._consumed = False
        self._event_ids = itertools.count(1)

    @property
    def consumed(self) -> bool:
        return self._consumed

    @trace_span("coordinator.run")
    async def run(self, payload: Any = None) -> Result[RunSummary]:
        """Run every stage of the plan; the failure's ``partial`` is the summary so far."""
        if self._consumed:
            return fail(
                ErrorCode.PLAN_CONSUMED,
                f"plan '{self.plan.plan_id}' has already been run",
                context={"run_id": str(self.plan.run_id)},
            )
        self._consumed = True

        previous_trace = get_trace_id()
        set_trace_id(self.plan.context.correlation_id)
        try:
            return await self._run(payload)
        finally:
            self.plan.context.cancel_signal.disarm()
            clear_trace_metrics(self.plan.context.correlation_id)
            set_trace_id(previous_trace)

    async def _run(self, payload: Any) -> Result[RunSummary]:
        plan = self.plan
        context = plan.context
        signal = context.cancel_signal
        started = time.perf_counter()
        add_span_attributes(run_id=str(plan.run_id), template=plan.template_id)

        record = RunRecord(
            run_id=plan.run_id,
            tenant_id=context.tenant_id,
            workspace_id=context.workspace_id,
            status=RunStatus.QUEUED,
            started_at=context.started_at,
            updated_at=context.started_at,
            phases=plan.stage_route,
            plan_id=plan.plan_id,
            template_id=plan.template_id,
            requested_by=context.actor,
            warnings=plan.warnings,
            plugin_count=len(plan.plugins),
            payload=payload,
        )
        timeline: list[StageEvent] = []
        warnings: list[str] = list(plan.warnings)
        buffer = SnapshotBuffer(
            self.store, self.snapshots.max_snapshots, self.snapshots.flush_interval_ms
        )

        saved = await self.store.save_run(record)
        if not saved.ok:
            return self._finish_failed(saved.error, timeline, buffer, warnings, started)

        moved = self.lifecycle.transition(RunStatus.RUNNING)
        if not moved.ok:
            failed = self._finish_failed(moved.error, timeline, buffer, warnings, started)
            await self._save_failed(record)
            return failed

        record = replace(record, status=RunStatus.RUNNING)
        saved = await self.store.save_run(record)
        if not saved.ok:
            return self._finish_failed(saved.error, timeline, buffer, warnings, started)

        logger.info(
            "Run started",
            run_id=plan.run_id,
            plan_id=plan.plan_id,
            route="->".join(plan.stage_route),
            plugins=len(plan.plugins),
        )

        if self.deadline_ms:
            signal.cancel_after(self.deadline_ms, f"run deadline of {self.deadline_ms}ms exceeded")

        error: EngineError | None = None
        current = payload
        async with StageExecutor(plan.plugins, plan.stage_route, context, self.parallel) as lattice:
            for stage in plan.stage_route:
                with probe(f"stage.{stage}", trace_id=context.correlation_id, run=plan.run_id):
                    result = await lattice.execute_by_stage(current, stage, signal)

                records: list[PluginRunRecord] = result.value if result.ok else (result.partial or [])
                written = await self._write_events(records)
                if not result.ok:
                    error = result.error
                    self._diagnose(f"stage={stage}|error={error.code.value}|message={error.message}")
                    break
                if not written.ok:
                    error = written.error
                    self._diagnose(f"stage={stage}|error={error.code.value}|message={error.message}")
                    break

                event = aggregate_stage(stage, records)
                if event.signal_count == 0:
                    event = replace(event, warnings=(*event.warnings, NO_SIGNAL_WARNING))
                timeline.append(event)
                self.lifecycle.stage_completed()

                self._diagnose(
                    f"stage={stage}|plugins={','.join(event.plugin_ids)}"
                    f"|outputs={event.signal_count}/{len(records)}"
                    f"|duration={event.duration_ms:.1f}ms"
                )
                for warning in event.warnings:
                    self._diagnose(f"stage={stage}|warning={warning}")
                    warnings.append(f"{stage}: {warning}")

                snap = await buffer.add(self._snapshot(event, len(timeline), len(records)))
                if not snap.ok:
                    error = snap.error
                    self._diagnose(f"stage={stage}|error={error.code.value}|message={error.message}")
                    break

                current = event.output

        flushed = await buffer.flush()
        if not flushed.ok and error is None:
            error = flushed.error
            self._diagnose(f"stage=-|error={error.code.value}|message={error.message}")

        status = classify(timeline, error)
        checked = self.lifecycle.check(status)
        if not checked.ok:
            error = error or checked.error
            status = RunStatus.FAILED
            self._diagnose(f"stage=-|error={checked.error.code.value}|message={checked.error.message}")

        final = replace(
            record,
            status=status,
            warnings=tuple(warnings),
            risk_score=risk_score(timeline, status),
        )
        saved = await self.store.save_run(final)
        if not saved.ok:
            # an unpersisted run is never reported as successful
            error = error or saved.error
            status = RunStatus.FAILED
            self._diagnose(f"stage=-|error={saved.error.code.value}|message={saved.error.message}")
            retry = await self.store.save_run(replace(final, status=status, risk_score=1.0))
            if not retry.ok:
                logger.error("Could not persist failed run", run_id=plan.run_id, error=str(retry.error))

        moved = self.lifecycle.transition(status)
        if not moved.ok:
            error = error or moved.error
            self._diagnose(f"stage=-|error={moved.error.code.value}|message={moved.error.message}")

        summary = self._summary(status, timeline, buffer, warnings, started, current)
        await self._save_audit(summary, error)

        get_metrics_collector().record_run(status.value, summary.elapsed_ms / 1000.0, len(timeline))
        logger.info(
            "Run finished",
            run_id=plan.run_id,
            status=status.value,
            stages=len(timeline),
            elapsed_ms=round(summary.elapsed_ms, 1),
        )

        if error is not None:
            return Result.failure(error, partial=summary)
        return Result.success(summary)

    def _diagnose(self, line: str) -> None:
        self.diagnostics.append(line)

    def _snapshot(self, event: StageEvent, index: int, plugin_count: int) -> Snapshot:
        context = self.plan.context
        return Snapshot(
            snapshot_id=f"{self.plan.run_id}:snapshot:{index:04d}",
            run_id=context.run_id,
            workspace_id=context.workspace_id,
            template_id=self.plan.template_id,
            stage=event.stage,
            metric="signal_ratio",
            value=event.signal_count / plugin_count if plugin_count else 0.0,
            at=event.finished_at,
            payload={
                "duration_ms": event.duration_ms,
                "plugins": plugin_count,
                "warnings": len(event.warnings),
            },
        )

    async def _write_events(self, records: list[PluginRunRecord]) -> Result[int]:
        context = self.plan.context
        written = 0
        for record in records:
            for kind in record.events:
                terminal = kind not in ("queued", "started")
                at = record.finished_at if terminal else record.started_at
                event = RunEvent(
                    event_id=f"{context.run_id}:event:{next(self._event_ids):05d}",
                    run_id=context.run_id,
                    tenant_id=context.tenant_id,
                    workspace_id=context.workspace_id,
                    plugin_id=record.plugin_id,
                    stage=record.stage,
                    kind=kind,
                    at=at,
                    payload={"duration_ms": record.duration_ms} if terminal else {},
                )
                result = await self.store.append_event(event)
                if not result.ok:
                    return Result.failure(result.error, partial=written)
                written += 1
        return Result.success(written)

    def _summary(
        self,
        status: RunStatus,
        timeline: list[StageEvent],
        buffer: SnapshotBuffer,
        warnings: list[str],
        started: float,
        output: Any = None,
    ) -> RunSummary:
        return RunSummary(
            run_id=self.plan.run_id,
            plan_id=self.plan.plan_id,
            state=status,
            timeline=tuple(timeline),
            snapshots=buffer.captured,
            stage_count=len(timeline),
            plugin_count=len(self.plan.plugins),
            diagnostics=tuple(self.diagnostics),
            warnings=tuple(warnings),
            elapsed_ms=(time.perf_counter() - started) * 1000,
            payload=output,
        )

    def _finish_failed(
        self,
        error: EngineError,
        timeline: list[StageEvent],
        buffer: SnapshotBuffer,
        warnings: list[str],
        started: float,
    ) -> Result[RunSummary]:
        """Fail a run that never reached its first stage."""
        self._diagnose(f"stage=-|error={error.code.value}|message={error.message}")
        moved = self.lifecycle.transition(RunStatus.FAILED)
        if not moved.ok:
            self._diagnose(f"stage=-|error={moved.error.code.value}|message={moved.error.message}")
        summary = self._summary(RunStatus.FAILED, timeline, buffer, warnings, started)
        get_metrics_collector().record_run(RunStatus.FAILED.value, summary.elapsed_ms / 1000.0, 0)
        logger.error("Run failed before its first stage", run_id=self.plan.run_id, error=str(error))
        return Result.failure(error, partial=summary)

    async def _save_failed(self, record: RunRecord) -> None:
        saved = await self.store.save_run(replace(record, status=RunStatus.FAILED, risk_score=1.0))
        if not saved.ok:
            logger.error("Could not persist failed run", run_id=self.plan.run_id, error=str(saved.error))

    async def _save_audit(self, summary: RunSummary, error: EngineError | None) -> None:
        if self.artifact_store is None:
            return
        context = self.plan.context
        snapshot = create_trace_snapshot(
            trace_id=context.correlation_id,
            summary=summary,
            tenant_id=context.tenant_id,
            workspace_id=context.workspace_id,
            template_id=self.plan.template_id,
            route=self.plan.stage_route,
            error=str(error) if error else None,
        )
        try:
            await asyncio.to_thread(save_trace_snapshot, self.artifact_store, self.plan.run_id, snapshot)
        except OSError as e:
            logger.warning("Failed to save trace artifact", run_id=self.plan.run_id, error=str(e))
