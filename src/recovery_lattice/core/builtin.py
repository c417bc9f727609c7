"""
Built-in plugins.

Small plugin factories used by the command line runner and for wiring a
registry before real plugins are available.
"""

import asyncio
from collections.abc import Iterable, Mapping
from typing import Any

from .models import ExecutionContext, PluginDefinition, PluginResult, utcnow
from .templates import StageTemplate


def echo_plugin(
    plugin_id: str,
    stages: Iterable[str],
    dependencies: Iterable[str] = (),
    timeout_ms: int = 1000,
) -> PluginDefinition:
    """A plugin that returns its input unchanged."""

    async def execute(payload: Any, context: ExecutionContext, config: Mapping[str, Any]) -> PluginResult:
        started = utcnow()
        await asyncio.sleep(0)
        return PluginResult(ok=True, payload=payload, started_at=started, finished_at=utcnow())

    return PluginDefinition(
        id=plugin_id,
        name=f"echo {plugin_id}",
        stages=tuple(stages),
        execute=execute,
        dependencies=tuple(dependencies),
        timeout_ms=timeout_ms,
        metadata={"kind": "echo"},
    )


def failing_plugin(
    plugin_id: str,
    stages: Iterable[str],
    message: str = "plugin failure",
    dependencies: Iterable[str] = (),
    timeout_ms: int = 1000,
) -> PluginDefinition:
    """A plugin that always raises."""

    async def execute(payload: Any, context: ExecutionContext, config: Mapping[str, Any]) -> Any:
        raise RuntimeError(message)

    return PluginDefinition(
        id=plugin_id,
        name=f"failing {plugin_id}",
        stages=tuple(stages),
        execute=execute,
        dependencies=tuple(dependencies),
        timeout_ms=timeout_ms,
        metadata={"kind": "failing"},
    )


def silent_plugin(plugin_id: str, stages: Iterable[str], warning: str | None = None) -> PluginDefinition:
    """A plugin that succeeds without output, optionally with a warning."""

    def execute(payload: Any, context: ExecutionContext, config: Mapping[str, Any]) -> PluginResult:
        return PluginResult(ok=True, payload=None, warnings=(warning,) if warning else ())

    return PluginDefinition(
        id=plugin_id,
        name=f"silent {plugin_id}",
        stages=tuple(stages),
        execute=execute,
        metadata={"kind": "silent"},
    )


def sleeping_plugin(
    plugin_id: str, stages: Iterable[str], delay_ms: int, timeout_ms: int = 1000
) -> PluginDefinition:
    """A plugin that sleeps for ``delay_ms`` and then echoes its input."""

    async def execute(payload: Any, context: ExecutionContext, config: Mapping[str, Any]) -> Any:
        await asyncio.sleep(delay_ms / 1000.0)
        return payload

    return PluginDefinition(
        id=plugin_id,
        name=f"sleeping {plugin_id}",
        stages=tuple(stages),
        execute=execute,
        timeout_ms=timeout_ms,
        metadata={"kind": "sleeping"},
    )


def default_plugins(
    template: StageTemplate, fail_stage: str | None = None, timeout_ms: int = 1000
) -> list[PluginDefinition]:
    """
    One plugin per stage of ``template``, chained by dependency.

    Every plugin echoes its input, except the one for ``fail_stage`` which
    raises. All of them get ``timeout_ms``.
    """
    plugins: list[PluginDefinition] = []
    previous: str | None = None
    for stage in template.stages:
        plugin_id = f"{template.template_id}.{stage}"
        dependencies = (previous,) if previous else ()
        if stage == fail_stage:
            plugin = failing_plugin(
                plugin_id,
                (stage,),
                message=f"{stage} failed on request",
                dependencies=dependencies,
                timeout_ms=timeout_ms,
            )
        else:
            plugin = echo_plugin(plugin_id, (stage,), dependencies=dependencies, timeout_ms=timeout_ms)
        plugins.append(plugin)
        previous = plugin_id
    return plugins
