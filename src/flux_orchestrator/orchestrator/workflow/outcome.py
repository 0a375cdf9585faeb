"""Result and error types for workflow evaluation.

Evaluation never raises for an action that merely fails: failures are values
(`Outcome`) carrying the integer exit status plus diagnostic context. The
status is collapsed to a bare integer only at the outer boundary (CLI exit
code, REST run record).

Exceptions are reserved for problems found before anything runs: malformed
expressions and unknown action names.
"""

from __future__ import annotations

import signal
from dataclasses import dataclass, field, replace

SUCCESS = 0
FAILURE = 1
USAGE_ERROR = 2
INTERRUPTED = 128 + signal.SIGINT


class ExpressionError(ValueError):
    """Raised when a combinator expression cannot be parsed or is malformed."""


class ActionNotFound(LookupError):
    """Raised when an expression references a name that is not registered."""

    def __init__(self, name: str) -> None:
        super().__init__(name)
        self.name = name

    def __str__(self) -> str:
        return f"No such action: {self.name!r}"


def status_from_returncode(returncode: int) -> int:
    """Map a Popen return code to a shell-style exit status.

    Processes killed by a signal report ``-signum``; shells report ``128 + signum``.
    """

    if returncode < 0:
        return 128 + (-returncode)
    return returncode


@dataclass(frozen=True, slots=True)
class Outcome:
    status: int
    label: str = ""
    message: str | None = None
    timed_out: bool = False
    cancelled: bool = False
    children: tuple[Outcome, ...] = field(default_factory=tuple)

    @property
    def ok(self) -> bool:
        return self.status == SUCCESS

    @classmethod
    def success(cls, label: str = "", message: str | None = None) -> Outcome:
        return cls(status=SUCCESS, label=label, message=message)

    @classmethod
    def failure(cls, label: str = "", status: int = FAILURE, message: str | None = None) -> Outcome:
        return cls(status=status or FAILURE, label=label, message=message)

    @classmethod
    def interrupted(cls, label: str = "") -> Outcome:
        return cls(status=INTERRUPTED, label=label, message="cancelled", cancelled=True)

    def relabel(self, label: str) -> Outcome:
        return replace(self, label=label)

    def to_json(self) -> dict[str, object]:
        out: dict[str, object] = {"status": self.status, "label": self.label}
        if self.message is not None:
            out["message"] = self.message
        if self.timed_out:
            out["timed_out"] = True
        if self.cancelled:
            out["cancelled"] = True
        if self.children:
            out["children"] = [c.to_json() for c in self.children]
        return out
