"""
Dependency injection container for the engine's long-lived services.

Factories are resolved lazily and cached; the run store, artifact store,
registries, session monitor and run service are wired from ``Settings``.
"""

from contextlib import asynccontextmanager
from functools import lru_cache
from typing import Any, TypeVar

from ..observability.logging import get_logger
from .settings import Settings, get_settings

T = TypeVar("T")

logger = get_logger(__name__)


class Container:
    """Dependency injection container with async lifecycle management."""

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or get_settings()
        self._services: dict[str, Any] = {}
        self._factories: dict[str, Any] = {}
        self._singletons: dict[str, Any] = {}

    def register_factory(self, name: str, factory: Any) -> None:
        """Register a factory function for a service."""
        self._factories[name] = factory

    def register_singleton(self, name: str, instance: Any) -> None:
        """Register a singleton instance."""
        self._singletons[name] = instance

    def get(self, name: str, default: Any = None) -> Any:
        """Get a service by name."""
        if name in self._singletons:
            return self._singletons[name]

        if name in self._services:
            return self._services[name]

        if name in self._factories:
            instance = self._factories[name](self)
            self._services[name] = instance
            return instance

        return default

    async def cleanup(self) -> None:
        """Clear the run store and drop instantiated services."""
        store = self._services.get("run_store") or self._singletons.get("run_store")
        if store is not None:
            try:
                await store.clear()
            except OSError as e:
                logger.warning("Error clearing run store", error=str(e))
        self._services.clear()

    @asynccontextmanager
    async def lifespan(self):
        """Async context manager for container lifecycle."""
        try:
            yield self
        finally:
            await self.cleanup()


def setup_container(settings: Settings | None = None) -> Container:
    """Setup container with default service factories."""
    container = Container(settings)

    def _artifact_store_factory(c: Container):
        from ..storage.artifacts import LocalStore

        return LocalStore(c.settings.store.artifacts_root)

    def _run_store_factory(c: Container):
        from ..storage.run_store import ArtifactRunStore, InMemoryRunStore

        max_snapshots = c.settings.snapshots.max_snapshots
        if c.settings.store.backend == "artifacts":
            return ArtifactRunStore(c.get("artifact_store"), max_snapshots=max_snapshots)
        return InMemoryRunStore(max_snapshots=max_snapshots)

    def _registries_factory(c: Container):
        from ..core.registry import PluginRegistry
        from ..core.templates import TEMPLATES

        return {template_id: PluginRegistry(t) for template_id, t in TEMPLATES.items()}

    def _session_monitor_factory(c: Container):
        from ..core.session import SessionMonitor

        artifacts = c.get("artifact_store") if c.settings.store.save_audit_trace else None
        return SessionMonitor(
            c.get("registries"), c.get("run_store"), settings=c.settings, artifact_store=artifacts
        )

    def _run_service_factory(c: Container):
        from ..service import RunService

        artifacts = c.get("artifact_store") if c.settings.store.save_audit_trace else None
        return RunService(
            c.get("session_monitor"), c.get("run_store"), artifact_store=artifacts, settings=c.settings
        )

    container.register_factory("artifact_store", _artifact_store_factory)
    container.register_factory("run_store", _run_store_factory)
    container.register_factory("registries", _registries_factory)
    container.register_factory("session_monitor", _session_monitor_factory)
    container.register_factory("run_service", _run_service_factory)

    return container


@lru_cache
def get_container() -> Container:
    """Get cached container instance."""
    return setup_container()
