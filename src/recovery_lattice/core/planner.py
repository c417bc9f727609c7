"""
Execution planning: filter and cap an ordered plugin list and stamp a fresh
run context. Planning is a pure function of its inputs plus the id generator.
"""

import itertools
import threading
import uuid
from collections.abc import Iterable, Sequence

from ..observability.logging import get_logger
from .models import Blueprint, ExecutionContext, ExecutionPlan, PluginDefinition
from .registry import PluginRegistry
from .result import ErrorCode, Result, fail
from .types import CorrelationId, PlanId, RunId

logger = get_logger(__name__)


class IdGenerator:
    """Monotonic, process-unique run/plan/correlation ids."""

    def __init__(self, prefix: str = "lattice"):
        self.prefix = prefix
        self._counter = itertools.count(1)
        self._lock = threading.Lock()

    def _next(self) -> str:
        with self._lock:
            sequence = next(self._counter)
        return f"{sequence:06d}-{uuid.uuid4().hex[:8]}"

    def run_id(self, tenant_id: str, workspace_id: str) -> RunId:
        return RunId(f"run:{tenant_id}:{workspace_id}:{self._next()}")

    def plan_id(self, run_id: str) -> PlanId:
        return PlanId(f"plan:{run_id}")

    def correlation_id(self) -> CorrelationId:
        return CorrelationId(f"{self.prefix}-{self._next()}")


_default_ids = IdGenerator()


def build_execution_plan(
    blueprint: Blueprint,
    ordered_plugins: Sequence[PluginDefinition],
    include_phases: Iterable[str] | None = None,
    max_plugins: int | None = None,
    ids: IdGenerator | None = None,
) -> Result[ExecutionPlan]:
    """
    Build an immutable plan from plugins already in execution order.

    Plugins are kept when any of their stages is in ``include_phases``
    (default: the blueprint phases). Truncation keeps the first
    ``max_plugins`` after ordering.
    """
    ids = ids or _default_ids
    phases = tuple(include_phases) if include_phases is not None else blueprint.phases
    wanted = set(phases)

    selected = [p for p in ordered_plugins if wanted.intersection(p.stages)]
    if max_plugins is not None:
        selected = selected[: max(0, max_plugins)]

    if not selected:
        return fail(
            ErrorCode.EMPTY_PLAN,
            f"no plugins selected for phases {list(phases)}",
            context={"max_plugins": max_plugins},
        )

    stage_route = tuple(dict.fromkeys(phases))

    chosen = {p.id for p in selected}
    warnings = tuple(
        f"plugin={plugin.id}|dependency={dependency}|excluded-from-plan"
        for plugin in selected
        for dependency in plugin.dependencies
        if dependency not in chosen
    )

    run_id = ids.run_id(blueprint.tenant_id, blueprint.workspace_id)
    context = ExecutionContext(
        tenant_id=blueprint.tenant_id,
        workspace_id=blueprint.workspace_id,
        run_id=run_id,
        actor=blueprint.requested_by,
        correlation_id=ids.correlation_id(),
        trace_tags=(f"template:{blueprint.template_id}", *blueprint.tags, *stage_route[:1]),
    )

    plan = ExecutionPlan(
        plan_id=ids.plan_id(run_id),
        plugins=tuple(selected),
        stage_route=stage_route,
        context=context,
        template_id=blueprint.template_id,
        requested_phases=tuple(phases),
        warnings=warnings,
    )

    logger.info(
        "Execution plan built",
        plan_id=plan.plan_id,
        plugins=len(plan.plugins),
        route="->".join(stage_route),
    )
    return Result.success(plan)


class ExecutionPlanner:
    """Orders plugins through a registry and builds plans from blueprints."""

    def __init__(self, registry: PluginRegistry, ids: IdGenerator | None = None):
        self.registry = registry
        self.ids = ids or _default_ids

    def plan(
        self,
        blueprint: Blueprint,
        include_phases: Iterable[str] | None = None,
        max_plugins: int | None = None,
        plugin_ids: Iterable[str] | None = None,
    ) -> Result[ExecutionPlan]:
        phases = self.registry.template.route(
            tuple(include_phases) if include_phases is not None else blueprint.phases
        )
        unknown = [p for p in (include_phases or blueprint.phases) if p not in self.registry.template]
        if unknown:
            return fail(
                ErrorCode.UNKNOWN_STAGE,
                f"unknown phases {unknown} for template '{self.registry.template.template_id}'",
                stage=unknown[0],
            )

        ordered = self.registry.ordered_by_phase(phases)
        if not ordered.ok:
            return ordered

        plugins = ordered.value
        if plugin_ids:
            wanted = list(plugin_ids)
            missing = [pid for pid in wanted if pid not in self.registry]
            if missing:
                return fail(
                    ErrorCode.UNKNOWN_PLUGIN,
                    f"unknown plugin ids {missing}",
                    plugin_id=missing[0],
                )
            keep = set(wanted)
            plugins = [p for p in plugins if p.id in keep]

        return build_execution_plan(blueprint, plugins, phases, max_plugins, self.ids)
