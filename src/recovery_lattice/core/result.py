"""
Result values and engine errors.

Expected failures (bad configuration, a plugin timing out, a store write
failing) are returned as ``Result.failure(EngineError(...))`` instead of being
raised. ``EngineFailure`` is raised only when a caller unwraps a failed result.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Generic, TypeVar

T = TypeVar("T")


class ErrorKind(str, Enum):
    CONFIGURATION = "configuration"
    EXECUTION = "execution"
    STORE = "store"


class ErrorCode(str, Enum):
    """Machine-readable error classification."""

    # configuration
    DUPLICATE_PLUGIN = "DUPLICATE_PLUGIN"
    UNKNOWN_STAGE = "UNKNOWN_STAGE"
    UNKNOWN_DEPENDENCY = "UNKNOWN_DEPENDENCY"
    DEPENDENCY_CYCLE = "DEPENDENCY_CYCLE"
    PHASE_ORDER_VIOLATION = "PHASE_ORDER_VIOLATION"
    UNKNOWN_TEMPLATE = "UNKNOWN_TEMPLATE"
    UNKNOWN_PLUGIN = "UNKNOWN_PLUGIN"
    EMPTY_PLAN = "EMPTY_PLAN"
    PLAN_CONSUMED = "PLAN_CONSUMED"
    INVALID_TRANSITION = "INVALID_TRANSITION"
    INVALID_REQUEST = "INVALID_REQUEST"
    # execution
    NO_PLUGIN_FOR_STAGE = "NO_PLUGIN_FOR_STAGE"
    PLUGIN_TIMEOUT = "PLUGIN_TIMEOUT"
    PLUGIN_ERROR = "PLUGIN_ERROR"
    PLUGIN_REJECTED = "PLUGIN_REJECTED"
    RUN_CANCELLED = "RUN_CANCELLED"
    # store
    STORE_ERROR = "STORE_ERROR"
    RUN_NOT_FOUND = "RUN_NOT_FOUND"

    @property
    def kind(self) -> ErrorKind:
        return _KIND_BY_CODE[self]


_KIND_BY_CODE = {
    **{
        code: ErrorKind.CONFIGURATION
        for code in (
            ErrorCode.DUPLICATE_PLUGIN,
            ErrorCode.UNKNOWN_STAGE,
            ErrorCode.UNKNOWN_DEPENDENCY,
            ErrorCode.DEPENDENCY_CYCLE,
            ErrorCode.PHASE_ORDER_VIOLATION,
            ErrorCode.UNKNOWN_TEMPLATE,
            ErrorCode.UNKNOWN_PLUGIN,
            ErrorCode.EMPTY_PLAN,
            ErrorCode.PLAN_CONSUMED,
            ErrorCode.INVALID_TRANSITION,
            ErrorCode.INVALID_REQUEST,
        )
    },
    **{
        code: ErrorKind.EXECUTION
        for code in (
            ErrorCode.NO_PLUGIN_FOR_STAGE,
            ErrorCode.PLUGIN_TIMEOUT,
            ErrorCode.PLUGIN_ERROR,
            ErrorCode.PLUGIN_REJECTED,
            ErrorCode.RUN_CANCELLED,
        )
    },
    ErrorCode.STORE_ERROR: ErrorKind.STORE,
    ErrorCode.RUN_NOT_FOUND: ErrorKind.STORE,
}


@dataclass(frozen=True)
class EngineError:
    """A classified, non-exceptional failure."""

    code: ErrorCode
    message: str
    stage: str | None = None
    plugin_id: str | None = None
    context: dict[str, Any] = field(default_factory=dict)

    @property
    def kind(self) -> ErrorKind:
        return self.code.kind

    @property
    def is_configuration(self) -> bool:
        return self.kind is ErrorKind.CONFIGURATION

    def __str__(self) -> str:
        where = f" stage={self.stage}" if self.stage else ""
        who = f" plugin={self.plugin_id}" if self.plugin_id else ""
        return f"{self.code.value}:{where}{who} {self.message}"


class EngineFailure(Exception):
    """Raised when a failed Result is unwrapped."""

    def __init__(self, error: EngineError):
        self.error = error
        super().__init__(str(error))


@dataclass(frozen=True)
class Result(Generic[T]):
    """
    Outcome of a fallible operation.

    On failure ``partial`` may carry whatever was produced before the
    failure (a run's timeline so far, for instance).
    """

    ok: bool
    value: T | None = None
    error: EngineError | None = None
    partial: Any = None

    @classmethod
    def success(cls, value: T = None) -> "Result[T]":
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, error: EngineError, partial: Any = None) -> "Result[T]":
        return cls(ok=False, error=error, partial=partial)

    def unwrap(self) -> T:
        if not self.ok:
            raise EngineFailure(self.error)
        return self.value

    def __bool__(self) -> bool:
        return self.ok


def fail(code: ErrorCode, message: str, partial: Any = None, **kwargs) -> Result:
    """Shorthand for ``Result.failure(EngineError(code, message, ...))``."""
    return Result.failure(EngineError(code=code, message=message, **kwargs), partial=partial)
