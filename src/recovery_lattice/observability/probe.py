"""
Performance probing for engine operations.
Emits a structured timing log line, Prometheus samples, and keeps per-trace
timings for the audit snapshot of a run.
"""

import contextlib
import time
from typing import Any

from opentelemetry import trace
from prometheus_client import Counter, Histogram

from .logging import get_logger

log = get_logger("lattice.probe")

tracer = trace.get_tracer("recovery-lattice")

OPS = Counter("lattice_operations_total", "Total probed operations", ["op", "ok"])
LAT = Histogram("lattice_operation_latency_seconds", "Probed operation latency", ["op"])

_METRICS_STORE: dict[str, dict[str, Any]] = {}


@contextlib.contextmanager
def probe(op: str, trace_id: str | None = None, **labels):
    """
    Time an operation.

    Args:
        op: Operation name (e.g., "coordinator.run")
        trace_id: Optional trace ID; when set the timing is kept for audit
        **labels: Additional labels written to the log line
    """
    start_time = time.perf_counter()
    ok = "true"
    error_type = None

    with tracer.start_as_current_span(op):
        try:
            yield
        except Exception as e:
            ok = "false"
            error_type = type(e).__name__
            raise
        finally:
            duration_ms = (time.perf_counter() - start_time) * 1000

            log.info(
                f'op={op} ms={duration_ms:.1f} trace={trace_id or "-"} ok={ok}'
                + (f" error={error_type}" if error_type else "")
                + "".join(f" {k}={v}" for k, v in labels.items())
            )

            OPS.labels(op=op, ok=ok).inc()
            LAT.labels(op=op).observe(duration_ms / 1000.0)

            if trace_id:
                _METRICS_STORE.setdefault(trace_id, {})[op] = {
                    "duration_ms": duration_ms,
                    "success": ok == "true",
                    "error_type": error_type,
                    "labels": labels,
                    "timestamp": time.time(),
                }


def get_trace_metrics(trace_id: str) -> dict[str, Any]:
    """Get all metrics for a specific trace ID."""
    return _METRICS_STORE.get(trace_id, {})


def clear_trace_metrics(trace_id: str | None = None) -> None:
    """Clear metrics for one trace ID, or all of them."""
    if trace_id is None:
        _METRICS_STORE.clear()
    else:
        _METRICS_STORE.pop(trace_id, None)
