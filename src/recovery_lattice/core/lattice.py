"""
Stage executor ("lattice").

Runs the plugins bound to one stage against a payload. Every plugin call is
raced against its own timeout and the run's cancellation signal; the first
failure aborts the stage, since a stage's plugins jointly produce its
contribution to the run.

The executor owns per-run state (its copy of the plan's plugins, telemetry
counters, the records it produced) and releases it in ``close()``, which the
async context manager guarantees on every exit path:

    async with StageExecutor(plan.plugins, plan.stage_route, plan.context) as lattice:
        records = await lattice.execute_by_stage(payload, "ingest", signal)
"""

import asyncio
import inspect
import time
from collections import Counter
from collections.abc import Iterable
from enum import Enum
from typing import Any

from ..observability.logging import get_logger
from ..observability.metrics import get_metrics_collector
from ..observability.tracing import add_span_event, trace_span
from .models import (
    ExecutionContext,
    PluginDefinition,
    PluginResult,
    PluginRunRecord,
    StageEvent,
    is_empty_output,
    utcnow,
)
from .result import EngineError, ErrorCode, Result, fail
from .signals import CancellationSignal
from .types import PluginId

logger = get_logger(__name__)

# how long a timed-out or cancelled plugin gets to acknowledge cancellation
CANCEL_GRACE_MS = 50


class LatticeState(Enum):
    IDLE = "idle"
    DISPATCH = "dispatch"
    AWAIT = "await"
    RECORD = "record"
    DONE = "done"
    FAILED = "failed"
    CLOSED = "closed"


class _PluginOutcome:
    """Internal carrier for one invocation: a record on success, an error otherwise."""

    __slots__ = ("record", "error")

    def __init__(self, record: PluginRunRecord, error: EngineError | None = None):
        self.record = record
        self.error = error


class StageExecutor:
    """Executes plugins stage by stage for a single run."""

    def __init__(
        self,
        plugins: Iterable[PluginDefinition],
        route: Iterable[str],
        context: ExecutionContext,
        parallel: bool = False,
    ):
        self._plugins: dict[PluginId, PluginDefinition] = {p.id: p for p in plugins}
        self.route = tuple(route)
        self.context = context
        self.parallel = parallel
        self.state = LatticeState.IDLE
        self.records: list[PluginRunRecord] = []
        self.counters: Counter[str] = Counter()

    async def __aenter__(self) -> "StageExecutor":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.close()

    @property
    def closed(self) -> bool:
        return self.state is LatticeState.CLOSED

    @property
    def plugin_count(self) -> int:
        return len(self._plugins)

    def close(self) -> None:
        """Release per-run state."""
        if self.closed:
            return
        logger.debug(
            "Releasing stage executor",
            run_id=self.context.run_id,
            plugins=len(self._plugins),
            records=len(self.records),
        )
        self._plugins.clear()
        self.records.clear()
        self.counters.clear()
        self.state = LatticeState.CLOSED

    def plugins_for(self, stage: str) -> list[PluginDefinition]:
        return [p for p in self._plugins.values() if p.supports(stage)]

    @trace_span("lattice.execute_by_stage")
    async def execute_by_stage(
        self, payload: Any, stage: str, signal: CancellationSignal | None = None
    ) -> Result[list[PluginRunRecord]]:
        """Run every plugin bound to ``stage``; all must succeed."""
        if self.closed:
            raise RuntimeError("stage executor used after close()")

        signal = signal or self.context.cancel_signal
        selected = self.plugins_for(stage)
        if not selected:
            self.state = LatticeState.FAILED
            return fail(
                ErrorCode.NO_PLUGIN_FOR_STAGE,
                f"no plugin registered for stage '{stage}'",
                stage=stage,
            )

        if signal.cancelled:
            self.state = LatticeState.FAILED
            return fail(
                ErrorCode.RUN_CANCELLED,
                f"run cancelled before stage '{stage}': {signal.reason}",
                stage=stage,
            )

        self.state = LatticeState.DISPATCH
        logger.debug("Dispatching stage", stage=stage, plugins=len(selected), parallel=self.parallel)

        self.state = LatticeState.AWAIT
        if self.parallel and len(selected) > 1:
            outcomes, error = await self._fan_out(selected, payload, stage, signal)
        else:
            outcomes, error = [], None
            for plugin in selected:
                outcome = await self._invoke(plugin, payload, stage, signal)
                outcomes.append(outcome)
                if outcome.error is not None:
                    error = outcome.error
                    break

        self.state = LatticeState.RECORD
        stage_records = [o.record for o in outcomes]
        self.records.extend(stage_records)

        if error is not None:
            self.state = LatticeState.FAILED
            add_span_event("stage.failed", {"stage": stage, "code": error.code.value})
            return Result.failure(error, partial=stage_records)

        self.state = LatticeState.DONE
        return Result.success(stage_records)

    async def _fan_out(
        self,
        selected: list[PluginDefinition],
        payload: Any,
        stage: str,
        signal: CancellationSignal,
    ) -> tuple[list[_PluginOutcome], EngineError | None]:
        """Run plugins concurrently; the first failure cancels the siblings still running."""
        stage_signal = CancellationSignal()
        relay = asyncio.ensure_future(_relay(signal, stage_signal))
        tasks = [
            asyncio.ensure_future(self._invoke(plugin, payload, stage, stage_signal))
            for plugin in selected
        ]
        error: EngineError | None = None
        try:
            pending = set(tasks)
            while pending:
                done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
                for task in sorted(done, key=tasks.index):
                    outcome = task.result()
                    if outcome.error is not None and error is None:
                        error = outcome.error
                        stage_signal.cancel(
                            f"stage '{stage}' aborted after '{outcome.record.plugin_id}' failed"
                        )
        finally:
            relay.cancel()
            for task in tasks:
                task.cancel()
            await asyncio.gather(relay, *tasks, return_exceptions=True)

        return [task.result() for task in tasks], error

    async def _invoke(
        self,
        plugin: PluginDefinition,
        payload: Any,
        stage: str,
        signal: CancellationSignal,
    ) -> _PluginOutcome:
        events = ["queued"]
        started_at = utcnow()
        start = time.perf_counter()
        self.counters["invocations"] += 1

        async def call() -> Any:
            events.append("started")
            if inspect.iscoroutinefunction(plugin.execute):
                value = plugin.execute(payload, self.context, plugin.config)
            else:
                # blocking callables must not stall the timeout race
                value = await asyncio.to_thread(plugin.execute, payload, self.context, plugin.config)
            if inspect.isawaitable(value):
                value = await value
            return value

        plugin_task = asyncio.ensure_future(call())
        signal_task = asyncio.ensure_future(signal.wait())
        try:
            done, _ = await asyncio.wait(
                {plugin_task, signal_task},
                timeout=plugin.timeout_ms / 1000.0,
                return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            plugin_task.cancel()
            raise
        finally:
            signal_task.cancel()
            await asyncio.gather(signal_task, return_exceptions=True)

        error: EngineError | None = None
        result: PluginResult | None = None
        elapsed_ms = (time.perf_counter() - start) * 1000

        if plugin_task in done and plugin_task.cancelled():
            events.append("failed")
            error = EngineError(
                code=ErrorCode.PLUGIN_ERROR,
                message="plugin task was cancelled from inside the plugin",
                stage=stage,
                plugin_id=plugin.id,
            )
        elif plugin_task in done:
            exc = plugin_task.exception()
            if exc is not None:
                events.append("failed")
                error = EngineError(
                    code=ErrorCode.PLUGIN_ERROR,
                    message=f"{type(exc).__name__}: {exc}",
                    stage=stage,
                    plugin_id=plugin.id,
                )
                logger.error(
                    "Plugin raised", plugin_id=plugin.id, stage=stage, error=repr(exc)
                )
            elif elapsed_ms > plugin.timeout_ms:
                # finished, but held the loop past its deadline
                events.append("timeout")
                error = EngineError(
                    code=ErrorCode.PLUGIN_TIMEOUT,
                    message=f"plugin took {elapsed_ms:.0f}ms, over its {plugin.timeout_ms}ms limit",
                    stage=stage,
                    plugin_id=plugin.id,
                    context={"timeout_ms": plugin.timeout_ms},
                )
            else:
                result = _as_plugin_result(plugin_task.result())
                if result.ok:
                    events.append("completed")
                else:
                    events.append("rejected")
                    error = EngineError(
                        code=ErrorCode.PLUGIN_REJECTED,
                        message="; ".join(result.diagnostics) or "plugin reported failure",
                        stage=stage,
                        plugin_id=plugin.id,
                    )
        else:
            await self._abandon(plugin_task, plugin, stage)
            if signal.cancelled:
                events.append("cancelled")
                error = EngineError(
                    code=ErrorCode.RUN_CANCELLED,
                    message=f"run cancelled during '{plugin.id}': {signal.reason}",
                    stage=stage,
                    plugin_id=plugin.id,
                )
            else:
                events.append("timeout")
                error = EngineError(
                    code=ErrorCode.PLUGIN_TIMEOUT,
                    message=f"plugin exceeded {plugin.timeout_ms}ms",
                    stage=stage,
                    plugin_id=plugin.id,
                    context={"timeout_ms": plugin.timeout_ms},
                )

        duration = time.perf_counter() - start
        if result is not None and result.warnings:
            events.append("warning")

        record = PluginRunRecord(
            plugin_id=plugin.id,
            stage=stage,
            route=self.route,
            started_at=result.started_at if result and result.started_at else started_at,
            finished_at=result.finished_at if result and result.finished_at else utcnow(),
            duration_ms=duration * 1000,
            output=result.payload if result else None,
            events=tuple(events),
            warnings=tuple(result.warnings) if result else (),
            diagnostics=tuple(result.diagnostics) if result else (),
        )

        outcome = "completed" if error is None else events[-1]
        self.counters[outcome] += 1
        get_metrics_collector().record_plugin_call(plugin.id, stage, duration, outcome)
        return _PluginOutcome(record, error)

    async def _abandon(self, plugin_task: asyncio.Future, plugin: PluginDefinition, stage: str) -> None:
        """Cancel a plugin call, waiting at most ``CANCEL_GRACE_MS`` for it to stop."""
        plugin_task.cancel()
        settled, _ = await asyncio.wait({plugin_task}, timeout=CANCEL_GRACE_MS / 1000.0)
        if not settled:
            plugin_task.add_done_callback(_consume_result)
            self.counters["detached"] += 1
            logger.warning(
                "Plugin ignored cancellation, leaving it detached",
                plugin_id=plugin.id,
                stage=stage,
                grace_ms=CANCEL_GRACE_MS,
            )


async def _relay(source: CancellationSignal, target: CancellationSignal) -> None:
    target.cancel(await source.wait())


def _consume_result(task: asyncio.Future) -> None:
    if not task.cancelled():
        task.exception()


def _as_plugin_result(value: Any) -> PluginResult:
    if isinstance(value, PluginResult):
        return value
    return PluginResult(ok=True, payload=value)


def merge_outputs(records: list[PluginRunRecord]) -> Any:
    """Single plugin: its output. Several: outputs keyed by plugin id."""
    if len(records) == 1:
        return records[0].output
    return {str(r.plugin_id): r.output for r in records}


def aggregate_stage(stage: str, records: list[PluginRunRecord]) -> StageEvent:
    """Fold a stage's plugin records into one timeline event."""
    duration_ms = sum(r.duration_ms for r in records)
    warnings = tuple(f"{r.plugin_id}: {w}" for r in records for w in r.warnings)
    signal_count = sum(1 for r in records if not is_empty_output(r.output))

    get_metrics_collector().record_stage(stage, duration_ms / 1000.0, len(records))
    return StageEvent(
        stage=stage,
        plugin_ids=tuple(r.plugin_id for r in records),
        output=merge_outputs(records),
        duration_ms=duration_ms,
        warnings=warnings,
        signal_count=signal_count,
    )
