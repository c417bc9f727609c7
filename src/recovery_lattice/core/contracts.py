"""
External request and response models.

Field names are camelCase on the wire (``tenantId``, ``modeOptions``) and
snake_case in Python; both are accepted on input.
"""

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .models import ExecutionPlan, RunSummary, StageEvent

RunMode = Literal["live", "dry-run", "replay"]
RunStatusName = Literal["queued", "running", "succeeded", "degraded", "failed"]


class ContractModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ModeOptions(ContractModel):
    parallel: bool = False
    timeout_ms: int | None = Field(None, gt=0, description="Run deadline in milliseconds")


class RunRequest(ContractModel):
    """A request to run a blueprint."""

    tenant_id: str = Field(..., min_length=1)
    workspace_id: str = Field(..., min_length=1)
    requested_by: str = ""
    template_id: str | None = None
    phases: list[str] = Field(default_factory=list)
    plugin_ids: list[str] = Field(default_factory=list)
    max_plugins: int | None = Field(None, gt=0)
    mode: RunMode = "live"
    mode_options: ModeOptions = Field(default_factory=ModeOptions)


class StageEventView(ContractModel):
    stage: str
    plugin_ids: list[str]
    output: Any = None
    duration_ms: float
    warnings: list[str] = Field(default_factory=list)
    signal_count: int
    finished_at: datetime

    @classmethod
    def from_event(cls, event: StageEvent) -> "StageEventView":
        return cls(
            stage=event.stage,
            plugin_ids=[str(p) for p in event.plugin_ids],
            output=event.output,
            duration_ms=round(event.duration_ms, 3),
            warnings=list(event.warnings),
            signal_count=event.signal_count,
            finished_at=event.finished_at,
        )


class RunReport(ContractModel):
    elapsed_ms: int
    stage_count: int
    plugin_count: int
    plan_id: str


class RunOutput(ContractModel):
    """The response to a run request."""

    run_id: str
    status: RunStatusName
    timeline: list[StageEventView] = Field(default_factory=list)
    diagnostics: list[str] = Field(default_factory=list)
    report: RunReport
    error: str | None = None

    @classmethod
    def from_summary(cls, summary: RunSummary, error: str | None = None) -> "RunOutput":
        return cls(
            run_id=str(summary.run_id),
            status=summary.state.value,
            timeline=[StageEventView.from_event(e) for e in summary.timeline],
            diagnostics=list(summary.diagnostics),
            report=RunReport(
                elapsed_ms=int(summary.elapsed_ms),
                stage_count=summary.stage_count,
                plugin_count=summary.plugin_count,
                plan_id=str(summary.plan_id),
            ),
            error=error,
        )

    @classmethod
    def from_plan(cls, plan: ExecutionPlan) -> "RunOutput":
        """Output of a dry run: the plan, nothing executed."""
        diagnostics = [
            f"mode=dry-run|route={'->'.join(plan.stage_route)}|plugins={','.join(plan.plugin_ids)}",
            *(f"plan|warning={w}" for w in plan.warnings),
        ]
        return cls(
            run_id=str(plan.run_id),
            status="queued",
            diagnostics=diagnostics,
            report=RunReport(
                elapsed_ms=0,
                stage_count=0,
                plugin_count=len(plan.plugins),
                plan_id=str(plan.plan_id),
            ),
        )
