"""
Run status lifecycle.

A small guarded state machine over ``RunStatus``:

    queued -> running -> succeeded | degraded | failed
    queued -> failed

Terminal statuses have no outgoing transitions. The coordinator checks every
status change against ``RunLifecycle`` before persisting it; a rejected change
fails the run with ``INVALID_TRANSITION``.
"""

import time
from collections.abc import Callable
from dataclasses import dataclass

from ..observability.logging import get_logger
from .models import RunStatus
from .result import ErrorCode, Result, fail

logger = get_logger(__name__)


@dataclass(frozen=True)
class Transition:
    """Status transition with an optional guard."""

    from_status: RunStatus
    to_status: RunStatus
    guard: Callable[["RunLifecycle"], bool] | None = None

    def can_transition(self, lifecycle: "RunLifecycle") -> bool:
        if self.guard:
            return self.guard(lifecycle)
        return True


def _has_timeline(lifecycle: "RunLifecycle") -> bool:
    return lifecycle.completed_stages > 0


DEFAULT_TRANSITIONS: tuple[Transition, ...] = (
    Transition(RunStatus.QUEUED, RunStatus.RUNNING),
    Transition(RunStatus.QUEUED, RunStatus.FAILED),
    Transition(RunStatus.RUNNING, RunStatus.SUCCEEDED, guard=_has_timeline),
    Transition(RunStatus.RUNNING, RunStatus.DEGRADED, guard=_has_timeline),
    Transition(RunStatus.RUNNING, RunStatus.FAILED),
)


class RunLifecycle:
    """Tracks one run's status and its history of transitions."""

    def __init__(self, run_id: str, transitions: tuple[Transition, ...] = DEFAULT_TRANSITIONS):
        self.run_id = run_id
        self.transitions = transitions
        self.status = RunStatus.QUEUED
        self.history: list[tuple[RunStatus, float]] = [(RunStatus.QUEUED, time.time())]
        self.completed_stages = 0

    @property
    def terminal(self) -> bool:
        return self.status.terminal

    def valid_targets(self) -> list[RunStatus]:
        return [
            t.to_status
            for t in self.transitions
            if t.from_status == self.status and t.can_transition(self)
        ]

    def check(self, to_status: RunStatus) -> Result[RunStatus]:
        """Validate a transition without applying it."""
        if to_status not in self.valid_targets():
            logger.warning(
                "Rejected status transition",
                run_id=self.run_id,
                from_status=self.status.value,
                to_status=to_status.value,
            )
            return fail(
                ErrorCode.INVALID_TRANSITION,
                f"cannot move run from {self.status.value} to {to_status.value}",
                context={"run_id": str(self.run_id)},
            )
        return Result.success(to_status)

    def transition(self, to_status: RunStatus) -> Result[RunStatus]:
        checked = self.check(to_status)
        if not checked.ok:
            return checked

        logger.debug(
            "Run status transition",
            run_id=self.run_id,
            from_status=self.status.value,
            to_status=to_status.value,
        )
        self.status = to_status
        self.history.append((to_status, time.time()))
        return Result.success(to_status)

    def stage_completed(self) -> None:
        self.completed_stages += 1

    def get_history(self) -> list[RunStatus]:
        return [status for status, _ in self.history]
