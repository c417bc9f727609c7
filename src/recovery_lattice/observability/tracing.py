"""
OpenTelemetry tracing for runs, stages and plugin invocations.

Spans are created through ``trace_span`` (decorator) or ``TracingManager.span``
(context manager). Without an OTLP endpoint the provider still records spans
locally, which keeps span status and exception recording usable in tests.
"""

import functools
import inspect
from collections.abc import Callable
from contextlib import contextmanager
from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.trace import NoOpTracer, Span, Status, StatusCode

from .logging import get_logger

logger = get_logger(__name__)


class TracingManager:
    """Manages OpenTelemetry tracing configuration and utilities."""

    def __init__(self, service_name: str = "recovery-lattice", service_version: str = "0.4.0"):
        self.service_name = service_name
        self.service_version = service_version
        self.tracer_provider: TracerProvider | None = None
        self.tracer: trace.Tracer | None = None
        self._initialized = False

    def initialize(self, otlp_endpoint: str | None = None) -> None:
        """Create the tracer provider, optionally exporting over OTLP."""
        if self._initialized:
            return

        resource = Resource.create(
            {
                "service.name": self.service_name,
                "service.version": self.service_version,
            }
        )
        # Local provider; the process-global provider is left untouched.
        self.tracer_provider = TracerProvider(resource=resource)

        if otlp_endpoint:
            exporter = OTLPSpanExporter(endpoint=otlp_endpoint)
            self.tracer_provider.add_span_processor(BatchSpanProcessor(exporter))
            logger.info("OTLP span export enabled", endpoint=otlp_endpoint)

        self.tracer = self.tracer_provider.get_tracer(self.service_name, self.service_version)
        self._initialized = True

    @property
    def initialized(self) -> bool:
        return self._initialized

    def start_span(self, name: str, attributes: dict[str, Any] | None = None) -> Span:
        """Start a new span with optional attributes."""
        if self.tracer is None:
            raise RuntimeError("Tracer not initialized. Call initialize() first.")
        span = self.tracer.start_span(name)
        for key, value in (attributes or {}).items():
            span.set_attribute(key, str(value))
        return span

    @contextmanager
    def span(self, name: str, attributes: dict[str, Any] | None = None):
        """Context manager for creating spans."""
        span = self.start_span(name, attributes)
        try:
            with trace.use_span(span, end_on_exit=False):
                yield span
        except Exception as e:
            span.record_exception(e)
            span.set_status(Status(StatusCode.ERROR, str(e)))
            raise
        finally:
            span.end()

    def shutdown(self) -> None:
        if self.tracer_provider:
            self.tracer_provider.shutdown()
        self._initialized = False


_tracing_manager: TracingManager | None = None


def setup_tracing(
    service_name: str = "recovery-lattice",
    service_version: str = "0.4.0",
    otlp_endpoint: str | None = None,
    enabled: bool = True,
) -> TracingManager:
    """Setup the global tracing manager."""
    global _tracing_manager
    _tracing_manager = TracingManager(service_name, service_version)
    if enabled:
        _tracing_manager.initialize(otlp_endpoint)
    else:
        _tracing_manager.tracer = NoOpTracer()
        _tracing_manager._initialized = True
    return _tracing_manager


def get_tracing_manager() -> TracingManager:
    """Get the global tracing manager, creating a local-only one if needed."""
    global _tracing_manager
    if _tracing_manager is None:
        _tracing_manager = TracingManager()
        _tracing_manager.initialize()
    return _tracing_manager


def _annotate_result(span: Span, result: Any) -> None:
    ok = getattr(result, "ok", None)
    if isinstance(ok, bool):
        span.set_attribute("result.ok", ok)
        error = getattr(result, "error", None)
        if error is not None:
            span.set_attribute("result.error_code", str(getattr(error, "code", error)))


def trace_span(name: str | None = None, attributes: dict[str, Any] | None = None):
    """Decorator for automatic span creation around sync or async callables."""

    def decorator(func: Callable) -> Callable:
        span_name = name or f"{func.__module__}.{func.__qualname__}"
        base_attributes = {
            "function.name": func.__name__,
            "function.module": func.__module__,
            **(attributes or {}),
        }

        @functools.wraps(func)
        async def async_wrapper(*args, **kwargs):
            with get_tracing_manager().span(span_name, base_attributes) as span:
                result = await func(*args, **kwargs)
                _annotate_result(span, result)
                span.set_status(Status(StatusCode.OK))
                return result

        @functools.wraps(func)
        def sync_wrapper(*args, **kwargs):
            with get_tracing_manager().span(span_name, base_attributes) as span:
                result = func(*args, **kwargs)
                _annotate_result(span, result)
                span.set_status(Status(StatusCode.OK))
                return result

        return async_wrapper if inspect.iscoroutinefunction(func) else sync_wrapper

    return decorator


def add_span_attributes(**attributes):
    """Add attributes to the current span."""
    current_span = trace.get_current_span()
    if current_span.is_recording():
        for key, value in attributes.items():
            current_span.set_attribute(key, str(value))


def add_span_event(name: str, attributes: dict[str, Any] | None = None):
    """Add an event to the current span."""
    current_span = trace.get_current_span()
    if current_span.is_recording():
        current_span.add_event(name, attributes or {})
