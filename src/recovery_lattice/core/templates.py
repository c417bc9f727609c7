"""Stage templates: the known stage set and canonical route of a pipeline."""

from dataclasses import dataclass

from .result import ErrorCode, Result, fail


@dataclass(frozen=True)
class StageTemplate:
    template_id: str
    stages: tuple[str, ...]

    def __contains__(self, stage: object) -> bool:
        return stage in self.stages

    def index(self, stage: str) -> int:
        return self.stages.index(stage)

    def route(self, phases: list[str] | tuple[str, ...] | None = None) -> tuple[str, ...]:
        """Requested phases in template order; all stages when none are given."""
        if not phases:
            return self.stages
        wanted = set(phases)
        return tuple(stage for stage in self.stages if stage in wanted)


SYNTHETIC = StageTemplate("synthetic", ("ingest", "synthesize", "simulate", "actuate"))
RECOVERY = StageTemplate(
    "recovery",
    ("sense", "assess", "plan", "simulate", "approve", "execute", "verify", "close"),
)
HORIZON = StageTemplate("horizon", ("ingest", "analyze", "resolve", "optimize", "execute"))

TEMPLATES: dict[str, StageTemplate] = {t.template_id: t for t in (SYNTHETIC, RECOVERY, HORIZON)}


def get_template(template_id: str) -> Result[StageTemplate]:
    template = TEMPLATES.get(template_id)
    if template is None:
        return fail(
            ErrorCode.UNKNOWN_TEMPLATE,
            f"unknown template '{template_id}', expected one of {sorted(TEMPLATES)}",
        )
    return Result.success(template)
