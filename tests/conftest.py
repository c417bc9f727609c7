"""
Global pytest configuration and fixtures for test isolation.

Resets the process-wide observability state, the cached settings and the
cached container between tests, and provides small builders for plugins,
registries and plans.
"""

import sys

import pytest

from recovery_lattice.config.container import get_container
from recovery_lattice.config.settings import Settings, get_settings
from recovery_lattice.core.builtin import echo_plugin
from recovery_lattice.core.models import Blueprint
from recovery_lattice.core.planner import ExecutionPlanner, IdGenerator
from recovery_lattice.core.registry import PluginRegistry
from recovery_lattice.core.templates import RECOVERY, SYNTHETIC
from recovery_lattice.observability.logging import clear_trace_id
from recovery_lattice.observability.probe import clear_trace_metrics
from recovery_lattice.storage.run_store import InMemoryRunStore


def reset_all_global_state():
    """Reset global singletons and caches."""
    get_settings.cache_clear()
    get_container.cache_clear()
    clear_trace_metrics()
    clear_trace_id()

    modules_to_reset = [
        "recovery_lattice.observability.tracing",
        "recovery_lattice.observability.metrics",
    ]
    global_vars_to_reset = {
        "_tracing_manager": None,
        "_metrics_collector": None,
    }

    for module_name in modules_to_reset:
        module = sys.modules.get(module_name)
        if module is None:
            continue
        for var_name, reset_value in global_vars_to_reset.items():
            if hasattr(module, var_name):
                setattr(module, var_name, reset_value)


@pytest.fixture(autouse=True)
def test_isolation():
    """Per-test isolation to ensure clean state for each test."""
    reset_all_global_state()
    yield
    reset_all_global_state()


@pytest.fixture
def settings(tmp_path):
    """Settings with artifacts under a temporary directory."""
    return Settings(store={"artifacts_root": tmp_path / "artifacts"})


@pytest.fixture
def store():
    return InMemoryRunStore()


@pytest.fixture
def ids():
    return IdGenerator(prefix="test")


@pytest.fixture
def synthetic_registry():
    """Registry with one echo plugin per synthetic stage, chained by dependency."""
    registry = PluginRegistry(SYNTHETIC)
    previous = None
    for stage in SYNTHETIC.stages:
        plugin_id = f"synthetic.{stage}"
        result = registry.register(
            echo_plugin(plugin_id, (stage,), dependencies=(previous,) if previous else ())
        )
        assert result.ok, result.error
        previous = plugin_id
    return registry


@pytest.fixture
def recovery_registry():
    return PluginRegistry(RECOVERY)


@pytest.fixture
def blueprint():
    return Blueprint(
        tenant_id="acme",
        workspace_id="ops",
        requested_by="oncall",
        phases=SYNTHETIC.stages,
        template_id="synthetic",
    )


@pytest.fixture
def make_plan(ids):
    """Plan every phase of ``blueprint`` (or ``phases``) through ``registry``."""

    def _make(registry, blueprint, phases=None, **kwargs):
        result = ExecutionPlanner(registry, ids).plan(blueprint, include_phases=phases, **kwargs)
        assert result.ok, result.error
        return result.value

    return _make
