"""
Recovery Lattice - staged plugin pipeline execution engine

Plugins are registered against a stage template, ordered phase-first with a
dependency-aware topological sort, planned into a single-use execution plan
and run stage by stage. Every run is persisted with its timeline, plugin
events and snapshots, and grouped into sessions per tenant, workspace and
template.

Quick Start:
    >>> from recovery_lattice import RunRequest, setup_container
    >>> from recovery_lattice.core.builtin import default_plugins
    >>> from recovery_lattice.core.templates import SYNTHETIC
    >>>
    >>> container = setup_container()
    >>> container.get("registries")["synthetic"].register_many(default_plugins(SYNTHETIC))
    >>> service = container.get("run_service")
    >>> result = await service.execute(
    ...     RunRequest(tenantId="acme", workspaceId="ops", requestedBy="oncall"),
    ...     payload={"incident": "INC-1"},
    ... )
    >>> result.value.status
    'succeeded'

Command line:
    $ recovery-lattice run --template recovery --tenant acme --workspace ops
    $ recovery-lattice run --fail-stage simulate   # exercise a failed run

Templates:
    synthetic  ingest -> synthesize -> simulate -> actuate
    recovery   sense -> assess -> plan -> simulate -> approve -> execute -> verify -> close
    horizon    ingest -> analyze -> resolve -> optimize -> execute

Configuration:
    Environment variables with the LATTICE_ prefix and __ nesting:
    - LATTICE_ENGINE__DEFAULT_TEMPLATE=recovery
    - LATTICE_ENGINE__PARALLEL_STAGES=true (fan out plugins within a stage)
    - LATTICE_SNAPSHOTS__MAX_SNAPSHOTS=240 (clamped to 8-2000)
    - LATTICE_SNAPSHOTS__FLUSH_INTERVAL_MS=25 (at least 5)
    - LATTICE_STORE__BACKEND=artifacts (mirror runs to ./artifacts)
    - LATTICE_OBSERVABILITY__LOG_LEVEL=DEBUG

Observability:
    - Structured logs: t=<ISO8601> level=<lvl> trace=<correlation id> mod=<module> msg="..."
    - OpenTelemetry spans per run and per stage, OTLP export when configured
    - Prometheus counters and histograms for probed operations
    - Audit traces: artifacts/runs/<run>/trace.json
"""

__version__ = "0.4.0"

from .config.container import Container, setup_container
from .config.settings import Settings, get_settings
from .core.contracts import ModeOptions, RunOutput, RunRequest
from .core.coordinator import RunCoordinator
from .core.models import PluginDefinition, PluginResult, RunStatus
from .core.registry import PluginRegistry
from .core.result import EngineError, ErrorCode, Result
from .core.session import SessionIdentity, SessionMonitor
from .service import RunService

__all__ = [
    "Container",
    "EngineError",
    "ErrorCode",
    "ModeOptions",
    "PluginDefinition",
    "PluginRegistry",
    "PluginResult",
    "Result",
    "RunCoordinator",
    "RunOutput",
    "RunRequest",
    "RunService",
    "RunStatus",
    "SessionIdentity",
    "SessionMonitor",
    "Settings",
    "get_settings",
    "setup_container",
]
