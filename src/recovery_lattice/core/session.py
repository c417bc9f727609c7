"""
Session monitor.

A session groups the runs of one identity (tenant, workspace, actor) against
one stage template. Every run gets its own planner and coordinator; the
session only counts runs in flight and keeps their history.
"""

import re
from collections.abc import AsyncIterator, Mapping
from contextlib import asynccontextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any

from ..config.settings import Settings, get_settings
from ..observability.logging import get_logger
from ..storage.artifacts import ArtifactStore
from ..storage.run_store import RunStore
from .coordinator import RunCoordinator
from .models import Blueprint, ExecutionPlan, RunStatus, RunSummary, utcnow
from .planner import ExecutionPlanner, IdGenerator
from .registry import PluginRegistry
from .result import ErrorCode, Result, fail
from .templates import TEMPLATES
from .types import RunId, SessionId, TenantId, WorkspaceId

logger = get_logger(__name__)

_UNSAFE = re.compile(r"[^A-Za-z0-9_.\-@]")


@dataclass(frozen=True)
class SessionIdentity:
    tenant_id: TenantId
    workspace_id: WorkspaceId
    actor: str

    def __post_init__(self):
        object.__setattr__(self, "tenant_id", TenantId(self.tenant_id))
        object.__setattr__(self, "workspace_id", WorkspaceId(self.workspace_id))


@dataclass(frozen=True)
class SessionRunEntry:
    run_id: RunId
    status: RunStatus
    stage_count: int
    elapsed_ms: float
    finished_at: datetime = field(default_factory=utcnow)


@dataclass
class SessionState:
    session_id: SessionId
    identity: SessionIdentity
    template_id: str
    active_runs: int = 0
    history: list[SessionRunEntry] = field(default_factory=list)
    opened_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class SessionRunOptions:
    """What to run inside a session."""

    identity: SessionIdentity
    template_id: str
    phases: tuple[str, ...] = ()
    plugin_ids: tuple[str, ...] = ()
    max_plugins: int | None = None
    parallel: bool | None = None
    deadline_ms: int | None = None
    tags: tuple[str, ...] = ()


def session_key(identity: SessionIdentity, template_id: str) -> SessionId:
    actor = _UNSAFE.sub("_", identity.actor) or "anonymous"
    return SessionId(f"session:{identity.tenant_id}:{identity.workspace_id}:{actor}:{template_id}")


class SessionMonitor:
    """Opens sessions and runs plans inside them."""

    def __init__(
        self,
        registries: Mapping[str, PluginRegistry],
        store: RunStore,
        settings: Settings | None = None,
        artifact_store: ArtifactStore | None = None,
        ids: IdGenerator | None = None,
    ):
        self.registries = dict(registries)
        self.store = store
        self.settings = settings or get_settings()
        self.artifact_store = artifact_store
        self.ids = ids
        self._sessions: dict[SessionId, SessionState] = {}

    def open_session(self, identity: SessionIdentity, template_id: str) -> SessionState:
        """Open a session, or return the one already open for this identity and template."""
        if template_id not in TEMPLATES:
            raise ValueError(f"unknown template '{template_id}'")

        session_id = session_key(identity, template_id)
        session = self._sessions.get(session_id)
        if session is None:
            session = SessionState(session_id=session_id, identity=identity, template_id=template_id)
            self._sessions[session_id] = session
            logger.info("Session opened", session_id=session_id)
        return session

    def close_session(self, identity: SessionIdentity, template_id: str) -> bool:
        """Tear a session down; refused while runs are in flight."""
        session_id = session_key(identity, template_id)
        session = self._sessions.get(session_id)
        if session is None or session.active_runs > 0:
            return False
        del self._sessions[session_id]
        logger.info("Session closed", session_id=session_id, runs=len(session.history))
        return True

    def list_sessions(self) -> list[SessionState]:
        return [replace(s, history=list(s.history)) for s in self._sessions.values()]

    def timeline(self, identity: SessionIdentity, template_id: str | None = None) -> list[SessionRunEntry]:
        """Run history of ``identity`` across its sessions, oldest first."""
        entries = [
            entry
            for session in self._sessions.values()
            if session.identity == identity
            and (template_id is None or session.template_id == template_id)
            for entry in session.history
        ]
        return sorted(entries, key=lambda e: e.finished_at)

    def plan(self, options: SessionRunOptions) -> Result[ExecutionPlan]:
        """Plan a run without executing it."""
        registry = self.registries.get(options.template_id)
        if registry is None:
            return fail(
                ErrorCode.UNKNOWN_TEMPLATE,
                f"no plugin registry for template '{options.template_id}'",
            )

        blueprint = Blueprint(
            tenant_id=options.identity.tenant_id,
            workspace_id=options.identity.workspace_id,
            requested_by=options.identity.actor,
            phases=options.phases,
            template_id=options.template_id,
            tags=options.tags,
        )
        planner = ExecutionPlanner(registry, self.ids)
        max_plugins = options.max_plugins or self.settings.engine.max_plugins
        return planner.plan(
            blueprint,
            include_phases=options.phases or None,
            max_plugins=max_plugins,
            plugin_ids=options.plugin_ids or None,
        )

    @asynccontextmanager
    async def _active(self, session: SessionState) -> AsyncIterator[SessionState]:
        session.active_runs += 1
        try:
            yield session
        finally:
            session.active_runs -= 1

    async def run(self, options: SessionRunOptions, payload: Any = None) -> Result[RunSummary]:
        """Plan and execute one run inside the options' session, opening it if needed."""
        if options.template_id not in self.registries:
            return fail(
                ErrorCode.UNKNOWN_TEMPLATE,
                f"no plugin registry for template '{options.template_id}'",
            )
        session = self.open_session(options.identity, options.template_id)

        async with self._active(session):
            planned = self.plan(options)
            if not planned.ok:
                return planned

            engine = self.settings.engine
            coordinator = RunCoordinator(
                planned.value,
                self.store,
                parallel=engine.parallel_stages if options.parallel is None else options.parallel,
                snapshots=self.settings.snapshots,
                artifact_store=self.artifact_store if self.settings.store.save_audit_trace else None,
                deadline_ms=options.deadline_ms or engine.run_deadline_ms,
            )
            result = await coordinator.run(payload)

        summary = result.value if result.ok else result.partial
        if summary is not None:
            session.history.append(
                SessionRunEntry(
                    run_id=summary.run_id,
                    status=summary.state,
                    stage_count=summary.stage_count,
                    elapsed_ms=summary.elapsed_ms,
                )
            )
        return result
