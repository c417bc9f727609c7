"""
Core engine: plugin registry, planner and the per-stage executor.

The run coordinator and session monitor live in ``core.coordinator`` and
``core.session``; they depend on storage and are imported from there.
"""

from .lattice import StageExecutor
from .lifecycle import RunLifecycle, Transition
from .models import (
    Blueprint,
    ExecutionContext,
    ExecutionPlan,
    PluginDefinition,
    PluginResult,
    PluginRunRecord,
    RunRecord,
    RunStatus,
    RunSummary,
    StageEvent,
)
from .planner import ExecutionPlanner, build_execution_plan
from .registry import PluginRegistry
from .result import EngineError, ErrorCode, ErrorKind, Result
from .signals import CancellationSignal
from .templates import get_template

__all__ = [
    "Blueprint",
    "CancellationSignal",
    "EngineError",
    "ErrorCode",
    "ErrorKind",
    "ExecutionContext",
    "ExecutionPlan",
    "ExecutionPlanner",
    "PluginDefinition",
    "PluginRegistry",
    "PluginResult",
    "PluginRunRecord",
    "Result",
    "RunLifecycle",
    "RunRecord",
    "RunStatus",
    "RunSummary",
    "StageEvent",
    "StageExecutor",
    "Transition",
    "build_execution_plan",
    "get_template",
]
