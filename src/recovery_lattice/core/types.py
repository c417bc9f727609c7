"""
Identifier types.

Each identifier kind is its own ``str`` subclass, so a ``RunId`` can be
told apart from a ``PluginId`` at runtime and by type checkers while still
behaving as a plain string for hashing, formatting and JSON.
"""

import re
from typing import Self

_IDENTIFIER = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.:\-/@]*$")


class Identifier(str):
    """Validated string identifier. Subclasses name the identifier kind."""

    kind = "identifier"

    def __new__(cls, value: str) -> Self:
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            raise TypeError(f"{cls.kind} must be a string, got {type(value).__name__}")
        if not _IDENTIFIER.match(value):
            raise ValueError(f"invalid {cls.kind}: {value!r}")
        return super().__new__(cls, value)

    def __repr__(self) -> str:
        return f"{type(self).__name__}({str.__repr__(self)})"


class PluginId(Identifier):
    kind = "plugin id"


class RunId(Identifier):
    kind = "run id"


class PlanId(Identifier):
    kind = "plan id"


class TenantId(Identifier):
    kind = "tenant id"


class WorkspaceId(Identifier):
    kind = "workspace id"


class SessionId(Identifier):
    kind = "session id"


class CorrelationId(Identifier):
    kind = "correlation id"
