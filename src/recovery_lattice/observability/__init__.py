"""
Observability for the lattice engine.

- Structured logging: single-line key=value records carrying the run's
  correlation id as trace id
- Tracing: OpenTelemetry spans around runs and stages
- Metrics: OpenTelemetry instruments plus in-process aggregates
- Probes: timed operations feeding Prometheus and the run audit snapshot

Environment variables:
    - LATTICE_OBSERVABILITY__LOG_LEVEL=INFO
    - LATTICE_OBSERVABILITY__ENABLE_TRACING=true
    - LATTICE_OBSERVABILITY__OTLP_ENDPOINT=http://collector:4317
"""

from .logging import get_logger, get_trace_id, set_trace_id, setup_logging
from .metrics import create_meter, get_metrics_collector, setup_metrics
from .probe import get_trace_metrics, probe
from .tracing import get_tracing_manager, setup_tracing, trace_span

__all__ = [
    "get_logger",
    "get_trace_id",
    "set_trace_id",
    "setup_logging",
    "create_meter",
    "get_metrics_collector",
    "setup_metrics",
    "get_trace_metrics",
    "probe",
    "get_tracing_manager",
    "setup_tracing",
    "trace_span",
]
