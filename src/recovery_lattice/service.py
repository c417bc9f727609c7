"""
Run service: the request/response surface over sessions and the run store.

Configuration and store errors come back as failed ``Result``s. A run that
executed always comes back as a successful ``Result[RunOutput]`` whose
``status`` tells how it went; a failed run carries its error text in
``RunOutput.error``.
"""

from typing import Any

from .config.settings import Settings, get_settings
from .core.contracts import RunOutput, RunRequest
from .core.models import RunEvent, RunQuery, RunRecord, RunStatus
from .core.result import ErrorCode, ErrorKind, Result, fail
from .core.session import SessionIdentity, SessionMonitor, SessionRunOptions
from .observability.logging import get_logger
from .observability.probe import probe
from .storage.artifacts import ArtifactStore, run_prefix
from .storage.run_store import RunStore

logger = get_logger(__name__)


class RunService:
    """Executes run requests and answers run queries."""

    def __init__(
        self,
        monitor: SessionMonitor,
        store: RunStore,
        artifact_store: ArtifactStore | None = None,
        settings: Settings | None = None,
    ):
        self.monitor = monitor
        self.store = store
        self.artifact_store = artifact_store
        self.settings = settings or get_settings()

    def _options(self, request: RunRequest) -> SessionRunOptions:
        return SessionRunOptions(
            identity=SessionIdentity(request.tenant_id, request.workspace_id, request.requested_by),
            template_id=request.template_id or self.settings.engine.default_template,
            phases=tuple(request.phases),
            plugin_ids=tuple(request.plugin_ids),
            max_plugins=request.max_plugins,
            parallel=request.mode_options.parallel,
            deadline_ms=request.mode_options.timeout_ms,
            tags=(f"mode:{request.mode}",),
        )

    async def execute(self, request: RunRequest, payload: Any = None) -> Result[RunOutput]:
        """Run, dry-run or replay ``request``."""
        try:
            options = self._options(request)
        except ValueError as e:
            return fail(ErrorCode.INVALID_REQUEST, f"invalid request: {e}")

        with probe("service.execute", mode=request.mode, tenant=request.tenant_id):
            if request.mode == "dry-run":
                planned = self.monitor.plan(options)
                if not planned.ok:
                    return planned
                return Result.success(RunOutput.from_plan(planned.value))

            if request.mode == "replay":
                latest = await self.store.list_runs(
                    RunQuery(tenant_id=request.tenant_id, workspace_id=request.workspace_id, limit=1)
                )
                if not latest.ok:
                    return latest
                if not latest.value:
                    return fail(
                        ErrorCode.RUN_NOT_FOUND,
                        f"nothing to replay for {request.tenant_id}/{request.workspace_id}",
                    )
                payload = latest.value[0].payload
                logger.info("Replaying run", source_run=latest.value[0].run_id)

            result = await self.monitor.run(options, payload)

        if result.ok:
            return Result.success(RunOutput.from_summary(result.value))

        summary = result.partial
        if summary is None or result.error.kind is ErrorKind.STORE:
            partial = RunOutput.from_summary(summary, str(result.error)) if summary else None
            return Result.failure(result.error, partial=partial)
        return Result.success(RunOutput.from_summary(summary, str(result.error)))

    async def list_runs(
        self,
        tenant_id: str | None = None,
        workspace_id: str | None = None,
        status: RunStatus | str | None = None,
        limit: int | None = None,
        min_risk_score: float | None = None,
    ) -> Result[list[RunRecord]]:
        query = RunQuery(
            tenant_id=tenant_id,
            workspace_id=workspace_id,
            status=RunStatus(status) if status is not None else None,
            min_risk_score=min_risk_score,
            limit=limit,
        )
        return await self.store.list_runs(query)

    async def get_run(self, run_id: str) -> Result[RunRecord]:
        return await self.store.get_run(run_id)

    async def list_logs(self, run_id: str, limit: int | None = None) -> Result[list[RunEvent]]:
        """Plugin lifecycle events of a run, oldest first; ``limit`` keeps the latest."""
        found = await self.store.get_run(run_id)
        if not found.ok:
            return found
        return await self.store.list_events(run_id, limit)

    async def list_artifacts(self, run_id: str) -> Result[list[str]]:
        found = await self.store.get_run(run_id)
        if not found.ok:
            return found
        if self.artifact_store is None:
            return Result.success([])
        try:
            return Result.success(self.artifact_store.list_artifacts(run_prefix(run_id)))
        except OSError as e:
            return fail(ErrorCode.STORE_ERROR, f"listing artifacts failed: {e}")
