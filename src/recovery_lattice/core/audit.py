"""
Audit trail for runs.
"""

import hashlib
import json
from typing import Any

from ..config.settings import Settings, get_settings
from ..observability.logging import get_logger
from ..observability.probe import get_trace_metrics
from .models import RunSummary

logger = get_logger(__name__)


def get_config_hash(settings: Settings | None = None) -> str:
    """SHA-256 of the effective settings, to tie a trace to its configuration."""
    settings = settings or get_settings()
    canonical = json.dumps(settings.model_dump(mode="json"), sort_keys=True)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def create_trace_snapshot(
    trace_id: str,
    summary: RunSummary,
    tenant_id: str,
    workspace_id: str,
    template_id: str,
    route: list[str] | tuple[str, ...],
    error: str | None = None,
    additional_data: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """
    Create a trace snapshot of one run for audit purposes.

    Args:
        trace_id: The run's correlation id; probe timings are keyed by it
        summary: Summary of the run, partial when the run failed
        tenant_id: Owning tenant
        workspace_id: Owning workspace
        template_id: Stage template the run used
        route: Planned stage route
        error: Error description for failed runs
        additional_data: Any additional data to include

    Returns:
        Snapshot dictionary, JSON serializable
    """
    timings = {
        op: {
            "duration_ms": data["duration_ms"],
            "success": data["success"],
            "error": data.get("error_type"),
        }
        for op, data in get_trace_metrics(trace_id).items()
    }

    snapshot = {
        "trace_id": trace_id,
        "run_id": str(summary.run_id),
        "plan_id": str(summary.plan_id),
        "tenant_id": tenant_id,
        "workspace_id": workspace_id,
        "template_id": template_id,
        "status": summary.state.value,
        "route": list(route),
        "executed_stages": [event.stage for event in summary.timeline],
        "plugin_count": summary.plugin_count,
        "diagnostics": list(summary.diagnostics),
        "warnings": list(summary.warnings),
        "error": error,
        "elapsed_ms": summary.elapsed_ms,
        "config_sha256": get_config_hash(),
        "timings_ms": timings,
        "metadata": {
            "total_operations": len(timings),
            "total_duration_ms": sum(data["duration_ms"] for data in timings.values()),
            "failed_operations": sum(1 for data in timings.values() if not data["success"]),
        },
    }

    if additional_data:
        snapshot.update(additional_data)

    logger.debug("Created trace snapshot", run_id=summary.run_id, operations=len(timings))
    return snapshot
