"""
Plugin registry with phase-primary dependency ordering.

Plugins are validated against the stage template on registration and ordered
with a topological sort whose ready queue is keyed on
``(phase index, registration index)``: phase decides the bucket, dependency
edges refine the order inside it, and registration order breaks ties.
"""

import heapq
from collections.abc import Iterable, Iterator

from ..observability.logging import get_logger
from .models import PluginDefinition
from .result import ErrorCode, Result, fail
from .templates import StageTemplate
from .types import PluginId

logger = get_logger(__name__)


class PluginRegistry:
    """Holds plugin definitions for one stage template."""

    def __init__(self, template: StageTemplate):
        self.template = template
        self._plugins: dict[PluginId, PluginDefinition] = {}

    def __len__(self) -> int:
        return len(self._plugins)

    def __contains__(self, plugin_id: object) -> bool:
        return plugin_id in self._plugins

    def __iter__(self) -> Iterator[PluginDefinition]:
        return iter(self._plugins.values())

    def get(self, plugin_id: str) -> PluginDefinition | None:
        return self._plugins.get(plugin_id)

    def plugin_ids(self) -> list[PluginId]:
        return list(self._plugins)

    def for_stage(self, stage: str) -> list[PluginDefinition]:
        """Plugins supporting ``stage``, in registration order."""
        return [p for p in self._plugins.values() if p.supports(stage)]

    def _validate(
        self, plugin: PluginDefinition, known: dict[PluginId, PluginDefinition]
    ) -> Result[None]:
        if plugin.id in self._plugins:
            return fail(
                ErrorCode.DUPLICATE_PLUGIN,
                f"plugin '{plugin.id}' is already registered",
                plugin_id=plugin.id,
            )
        for stage in plugin.stages:
            if stage not in self.template:
                return fail(
                    ErrorCode.UNKNOWN_STAGE,
                    f"stage '{stage}' is not part of template '{self.template.template_id}'",
                    stage=stage,
                    plugin_id=plugin.id,
                )
        for dependency in plugin.dependencies:
            if dependency == plugin.id or dependency not in known:
                return fail(
                    ErrorCode.UNKNOWN_DEPENDENCY,
                    f"plugin '{plugin.id}' depends on unregistered plugin '{dependency}'",
                    plugin_id=plugin.id,
                    context={"dependency": str(dependency)},
                )
        return Result.success()

    def register(self, plugin: PluginDefinition) -> Result[None]:
        """Register one plugin; its dependencies must already be registered."""
        result = self._validate(plugin, self._plugins)
        if not result.ok:
            logger.warning("Plugin registration rejected", plugin_id=plugin.id, error=result.error)
            return result

        self._plugins[plugin.id] = plugin
        logger.debug("Registered plugin", plugin_id=plugin.id, stages=",".join(plugin.stages))
        return Result.success()

    def register_many(self, plugins: Iterable[PluginDefinition]) -> Result[None]:
        """
        Register a batch atomically.

        Dependencies may point at other plugins of the same batch. Nothing is
        registered if any plugin is invalid or the batch contains a cycle.
        """
        batch = list(plugins)
        staged: dict[PluginId, PluginDefinition] = {}
        for plugin in batch:
            if plugin.id in staged:
                return fail(
                    ErrorCode.DUPLICATE_PLUGIN,
                    f"plugin '{plugin.id}' appears twice in the batch",
                    plugin_id=plugin.id,
                )
            staged[plugin.id] = plugin

        known = {**self._plugins, **staged}
        for plugin in batch:
            result = self._validate(plugin, known)
            if not result.ok:
                return result

        cycle = _find_cycle(known)
        if cycle:
            return fail(
                ErrorCode.DEPENDENCY_CYCLE,
                "dependency cycle: " + " -> ".join(cycle),
                context={"cycle": cycle},
            )

        self._plugins.update(staged)
        logger.info("Registered plugin batch", count=len(batch))
        return Result.success()

    def unregister(self, plugin_id: str) -> bool:
        """Remove a plugin no other plugin depends on."""
        if plugin_id not in self._plugins:
            return False
        if any(plugin_id in p.dependencies for p in self._plugins.values()):
            return False
        del self._plugins[plugin_id]
        return True

    def ordered_by_phase(self, phases: Iterable[str]) -> Result[list[PluginDefinition]]:
        """Plugins for ``phases`` ordered by phase, then dependencies, then registration."""
        phase_list = list(dict.fromkeys(phases))
        for phase in phase_list:
            if phase not in self.template:
                return fail(
                    ErrorCode.UNKNOWN_STAGE,
                    f"stage '{phase}' is not part of template '{self.template.template_id}'",
                    stage=phase,
                )

        phase_index = {phase: i for i, phase in enumerate(phase_list)}
        registration = {plugin_id: i for i, plugin_id in enumerate(self._plugins)}

        bucket: dict[PluginId, int] = {}
        for plugin in self._plugins.values():
            indexes = [phase_index[s] for s in plugin.stages if s in phase_index]
            if indexes:
                bucket[plugin.id] = min(indexes)

        # edges only between selected plugins
        in_degree = dict.fromkeys(bucket, 0)
        dependents: dict[PluginId, list[PluginId]] = {plugin_id: [] for plugin_id in bucket}
        for plugin_id in bucket:
            for dependency in self._plugins[plugin_id].dependencies:
                if dependency not in bucket:
                    continue
                if bucket[dependency] > bucket[plugin_id]:
                    return fail(
                        ErrorCode.PHASE_ORDER_VIOLATION,
                        f"plugin '{plugin_id}' ({phase_list[bucket[plugin_id]]}) depends on "
                        f"'{dependency}' which runs in later phase {phase_list[bucket[dependency]]}",
                        plugin_id=plugin_id,
                        context={"dependency": str(dependency)},
                    )
                dependents[dependency].append(plugin_id)
                in_degree[plugin_id] += 1

        ready = [(bucket[pid], registration[pid], pid) for pid, deg in in_degree.items() if deg == 0]
        heapq.heapify(ready)
        ordered: list[PluginDefinition] = []

        while ready:
            _, _, plugin_id = heapq.heappop(ready)
            ordered.append(self._plugins[plugin_id])
            for dependent in dependents[plugin_id]:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    heapq.heappush(ready, (bucket[dependent], registration[dependent], dependent))

        if len(ordered) != len(bucket):
            remaining = sorted(pid for pid, deg in in_degree.items() if deg > 0)
            return fail(
                ErrorCode.DEPENDENCY_CYCLE,
                "dependency cycle among: " + ", ".join(remaining),
                context={"plugins": remaining},
            )

        return Result.success(ordered)

    def clear(self) -> None:
        self._plugins.clear()


def _find_cycle(plugins: dict[PluginId, PluginDefinition]) -> list[str]:
    """Return one dependency cycle as a path of ids, or an empty list."""
    visiting: set[PluginId] = set()
    done: set[PluginId] = set()
    path: list[PluginId] = []

    def visit(plugin_id: PluginId) -> list[str]:
        if plugin_id in done or plugin_id not in plugins:
            return []
        if plugin_id in visiting:
            start = path.index(plugin_id)
            return [str(p) for p in path[start:]] + [str(plugin_id)]
        visiting.add(plugin_id)
        path.append(plugin_id)
        for dependency in plugins[plugin_id].dependencies:
            cycle = visit(dependency)
            if cycle:
                return cycle
        path.pop()
        visiting.discard(plugin_id)
        done.add(plugin_id)
        return []

    for plugin_id in plugins:
        cycle = visit(plugin_id)
        if cycle:
            return cycle
    return []
