"""
Data model for plugins, plans, runs and sessions.

Plugin definitions, execution contexts, plans and per-plugin records are
frozen. Run records are replaced, never mutated, with ``dataclasses.replace``;
only the run store assigns ``updated_at``.
"""

from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from .signals import CancellationSignal
from .types import CorrelationId, PlanId, PluginId, RunId, TenantId, WorkspaceId


def utcnow() -> datetime:
    return datetime.now(UTC)


def is_empty_output(value: Any) -> bool:
    """True for outputs that carry no signal: None, empty containers, blank text."""
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, Mapping | list | tuple | set | frozenset):
        return len(value) == 0
    return False


@dataclass(frozen=True)
class PluginResult:
    """What a plugin returns from ``execute``."""

    ok: bool = True
    payload: Any = None
    diagnostics: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()
    started_at: datetime | None = None
    finished_at: datetime | None = None


@dataclass(frozen=True)
class ExecutionContext:
    """Per-run context handed read-only to every plugin invocation."""

    tenant_id: TenantId
    workspace_id: WorkspaceId
    run_id: RunId
    actor: str
    correlation_id: CorrelationId
    trace_tags: tuple[str, ...] = ()
    started_at: datetime = field(default_factory=utcnow)
    cancel_signal: CancellationSignal = field(default_factory=CancellationSignal, compare=False)


PluginExecute = Callable[[Any, ExecutionContext, Mapping[str, Any]], Awaitable[Any] | Any]


@dataclass(frozen=True)
class PluginDefinition:
    """A unit of work bound to one or more stages."""

    id: PluginId
    name: str
    stages: tuple[str, ...]
    execute: PluginExecute = field(compare=False)
    domain: str = "recovery"
    dependencies: tuple[PluginId, ...] = ()
    timeout_ms: int = 1000
    priority: int = 0
    config: Mapping[str, Any] = field(default_factory=dict, compare=False)
    metadata: Mapping[str, str] = field(default_factory=dict, compare=False)

    def __post_init__(self):
        if not self.stages:
            raise ValueError(f"plugin {self.id} declares no stages")
        if self.timeout_ms <= 0:
            raise ValueError(f"plugin {self.id} timeout_ms must be positive")
        object.__setattr__(self, "id", PluginId(self.id))
        object.__setattr__(self, "stages", tuple(self.stages))
        object.__setattr__(self, "dependencies", tuple(PluginId(d) for d in self.dependencies))

    @property
    def phase(self) -> str:
        return self.stages[0]

    def supports(self, stage: str) -> bool:
        return stage in self.stages


@dataclass(frozen=True)
class Blueprint:
    """Request-time description of what to run."""

    tenant_id: TenantId
    workspace_id: WorkspaceId
    requested_by: str
    phases: tuple[str, ...] = ()
    template_id: str = "synthetic"
    tags: tuple[str, ...] = ()
    metadata: Mapping[str, str] = field(default_factory=dict, compare=False)


@dataclass(frozen=True)
class ExecutionPlan:
    """Resolved, ordered, single-use plugin chain for one run."""

    plan_id: PlanId
    plugins: tuple[PluginDefinition, ...]
    stage_route: tuple[str, ...]
    context: ExecutionContext
    template_id: str
    requested_phases: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()
    created_at: datetime = field(default_factory=utcnow)

    @property
    def run_id(self) -> RunId:
        return self.context.run_id

    @property
    def plugin_ids(self) -> tuple[PluginId, ...]:
        return tuple(p.id for p in self.plugins)

    def references(self, stage: str) -> bool:
        return stage in self.stage_route or any(p.supports(stage) for p in self.plugins)


@dataclass(frozen=True)
class PluginRunRecord:
    """Outcome of one plugin invocation within a stage."""

    plugin_id: PluginId
    stage: str
    route: tuple[str, ...]
    started_at: datetime
    finished_at: datetime
    duration_ms: float
    output: Any
    events: tuple[str, ...]
    warnings: tuple[str, ...] = ()
    diagnostics: tuple[str, ...] = ()

    @property
    def outcome(self) -> str:
        return self.events[-1] if self.events else "unknown"

    @property
    def has_signal(self) -> bool:
        return not is_empty_output(self.output)


@dataclass(frozen=True)
class StageEvent:
    """Aggregated result of one stage; the run timeline is a list of these."""

    stage: str
    plugin_ids: tuple[PluginId, ...]
    output: Any
    duration_ms: float
    warnings: tuple[str, ...] = ()
    signal_count: int = 0
    finished_at: datetime = field(default_factory=utcnow)

    @property
    def degraded(self) -> bool:
        return self.signal_count == 0 or bool(self.warnings)


class RunStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    DEGRADED = "degraded"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (RunStatus.SUCCEEDED, RunStatus.DEGRADED, RunStatus.FAILED)


@dataclass(frozen=True)
class RunRecord:
    """Persisted top-level run entity."""

    run_id: RunId
    tenant_id: TenantId
    workspace_id: WorkspaceId
    status: RunStatus
    started_at: datetime
    updated_at: datetime
    phases: tuple[str, ...]
    plan_id: PlanId | None = None
    template_id: str = "synthetic"
    requested_by: str = ""
    warnings: tuple[str, ...] = ()
    plugin_count: int = 0
    payload: Any = None
    risk_score: float = 0.0


@dataclass(frozen=True)
class RunEvent:
    """A persisted plugin lifecycle event: one line of a run's log."""

    event_id: str
    run_id: RunId
    tenant_id: TenantId
    workspace_id: WorkspaceId
    plugin_id: PluginId
    stage: str
    kind: str
    at: datetime = field(default_factory=utcnow)
    payload: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Snapshot:
    """Point-in-time metric captured during a run."""

    snapshot_id: str
    run_id: RunId
    workspace_id: WorkspaceId
    template_id: str
    stage: str
    metric: str
    value: float
    at: datetime = field(default_factory=utcnow)
    payload: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class EventBucket:
    stage: str
    count: int
    plugin_ids: tuple[PluginId, ...]
    kinds: Mapping[str, int]


@dataclass(frozen=True)
class RunSummary:
    run_id: RunId
    plan_id: PlanId
    state: RunStatus
    timeline: tuple[StageEvent, ...]
    snapshots: tuple[Snapshot, ...]
    stage_count: int
    plugin_count: int
    diagnostics: tuple[str, ...]
    warnings: tuple[str, ...]
    elapsed_ms: float
    payload: Any = None


@dataclass(frozen=True)
class RunQuery:
    tenant_id: str | None = None
    workspace_id: str | None = None
    status: RunStatus | None = None
    min_risk_score: float | None = None
    limit: int | None = None


@dataclass(frozen=True)
class TimelineFilter:
    workspace_id: str | None = None
    start: datetime | None = None
    end: datetime | None = None
    template: str | None = None
