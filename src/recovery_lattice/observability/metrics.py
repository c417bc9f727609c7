"""
Engine metrics backed by OpenTelemetry instruments.

Besides the OTel counters and histograms, the collector keeps small in-process
aggregates per plugin and per run status so diagnostics can be read without a
metrics backend.
"""

from collections import defaultdict
from typing import Any

from opentelemetry.metrics import Counter as OTelCounter
from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
from opentelemetry.metrics import Histogram, Meter, NoOpMeter
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
from opentelemetry.sdk.resources import Resource

from .logging import get_logger

logger = get_logger(__name__)


class MetricsCollector:
    """Centralized metrics collection and management."""

    def __init__(self, meter: Meter):
        self.meter = meter
        self._counters: dict[str, OTelCounter] = {}
        self._histograms: dict[str, Histogram] = {}

        self._plugin_calls: defaultdict[str, int] = defaultdict(int)
        self._plugin_failures: defaultdict[str, int] = defaultdict(int)
        self._plugin_durations: defaultdict[str, list[float]] = defaultdict(list)
        self._run_outcomes: defaultdict[str, int] = defaultdict(int)

        self._setup_default_metrics()

    def _setup_default_metrics(self):
        self._counters["plugin_calls_total"] = self.meter.create_counter(
            "lattice_plugin_calls_total", description="Total plugin invocations", unit="1"
        )
        self._counters["plugin_failures_total"] = self.meter.create_counter(
            "lattice_plugin_failures_total",
            description="Plugin invocations that errored, timed out or were cancelled",
            unit="1",
        )
        self._histograms["plugin_duration"] = self.meter.create_histogram(
            "lattice_plugin_duration_seconds", description="Plugin wall-clock duration", unit="s"
        )
        self._histograms["stage_duration"] = self.meter.create_histogram(
            "lattice_stage_duration_seconds", description="Stage duration", unit="s"
        )
        self._counters["runs_total"] = self.meter.create_counter(
            "lattice_runs_total", description="Runs reaching a terminal status", unit="1"
        )
        self._histograms["run_duration"] = self.meter.create_histogram(
            "lattice_run_duration_seconds", description="Run duration", unit="s"
        )

    def record_plugin_call(self, plugin_id: str, stage: str, duration: float, outcome: str):
        """Record one plugin invocation; ``outcome`` is the last lifecycle event."""
        attributes = {"plugin_id": plugin_id, "stage": stage, "outcome": outcome}
        self._counters["plugin_calls_total"].add(1, attributes)
        self._histograms["plugin_duration"].record(duration, attributes)

        self._plugin_calls[plugin_id] += 1
        self._plugin_durations[plugin_id].append(duration)
        if outcome != "completed":
            self._counters["plugin_failures_total"].add(1, attributes)
            self._plugin_failures[plugin_id] += 1

    def record_stage(self, stage: str, duration: float, plugin_count: int):
        self._histograms["stage_duration"].record(
            duration, {"stage": stage, "plugin_count": str(plugin_count)}
        )

    def record_run(self, status: str, duration: float, stage_count: int):
        attributes = {"status": status, "stage_count": str(stage_count)}
        self._counters["runs_total"].add(1, attributes)
        self._histograms["run_duration"].record(duration, attributes)
        self._run_outcomes[status] += 1

    def get_business_metrics(self) -> dict[str, Any]:
        """Get aggregated per-plugin and per-status metrics."""
        metrics_data: dict[str, Any] = {}

        for plugin_id, calls in self._plugin_calls.items():
            failures = self._plugin_failures[plugin_id]
            durations = self._plugin_durations[plugin_id]
            metrics_data[f"plugin_{plugin_id}"] = {
                "calls": calls,
                "failures": failures,
                "success_rate": (calls - failures) / calls if calls else 0.0,
                "avg_duration": sum(durations) / len(durations) if durations else 0.0,
            }

        metrics_data["runs"] = dict(self._run_outcomes)
        return metrics_data


_metrics_collector: MetricsCollector | None = None


def setup_metrics(meter: Meter) -> MetricsCollector:
    """Setup global metrics collector."""
    global _metrics_collector
    _metrics_collector = MetricsCollector(meter)
    return _metrics_collector


def get_metrics_collector() -> MetricsCollector:
    """Get the global metrics collector, falling back to a no-op meter."""
    global _metrics_collector
    if _metrics_collector is None:
        _metrics_collector = MetricsCollector(NoOpMeter("recovery-lattice"))
    return _metrics_collector



def create_meter(service_name: str, service_version: str, otlp_endpoint: str | None = None) -> Meter:
    """
    Meter for the collector's instruments.

    With an OTLP endpoint the instruments are exported periodically through an
    SDK meter provider. Without one there is nowhere to export to, so a no-op
    meter is returned and only the in-process aggregates are kept.
    """
    if not otlp_endpoint:
        return NoOpMeter(service_name, service_version)

    resource = Resource.create({"service.name": service_name, "service.version": service_version})
    reader = PeriodicExportingMetricReader(OTLPMetricExporter(endpoint=otlp_endpoint))
    provider = MeterProvider(resource=resource, metric_readers=[reader])
    logger.info("OTLP metric export enabled", endpoint=otlp_endpoint)
    return provider.get_meter(service_name, service_version)
