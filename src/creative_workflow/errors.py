"""Structured results and the error taxonomy of the workflow engine.

Expected failures (guards, boundaries, forbidden skips, stale reviewer
actions) are returned as :class:`Outcome` values.  Only corrupted state
raises.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from .models import Task


class ErrorKind(str, Enum):
    GUARD_FAILED = "guard_failed"
    AT_BOUNDARY = "at_boundary"
    INVALID_JUMP = "invalid_jump"
    SKIP_FORBIDDEN = "skip_forbidden"
    STALE_CASE = "stale_case"
    IRREVERSIBLE_ACTION_ALREADY_TAKEN = "irreversible_action_already_taken"
    INVALID_STATE = "invalid_state"
    CONFIRMATION_REQUIRED = "confirmation_required"


@dataclass(frozen=True)
class WorkflowError:
    """A recoverable failure with the exact message shown to the user."""

    kind: ErrorKind
    message: str

    def to_dict(self) -> dict[str, str]:
        return {"kind": self.kind.value, "message": self.message}


@dataclass
class Outcome:
    """Result of applying one operation to a task.

    On failure ``task`` is the untouched input; on success it is a new
    object that replaces the stored task as a whole.
    """

    task: Task
    error: Optional[WorkflowError] = None
    notices: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def fail(cls, task: Task, kind: ErrorKind, message: str) -> "Outcome":
        return cls(task=task, error=WorkflowError(kind, message))

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "error": self.error.to_dict() if self.error else None,
            "notices": list(self.notices),
            "task": self.task.to_dict(),
        }


class InvariantViolation(RuntimeError):
    """Raised when a task's stored state is corrupt."""


class TaskNotFoundError(LookupError):
    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task {task_id} not found")
        self.task_id = task_id
