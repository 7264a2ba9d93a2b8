"""Provide the public `creative_workflow` package exports."""

from __future__ import annotations

from .errors import ErrorKind, InvariantViolation, Outcome, TaskNotFoundError, WorkflowError
from .fsm import reduce_task
from .models import Task, TaskMode, WorkflowStage
from .service import WorkflowService

__all__ = [
    "ErrorKind",
    "InvariantViolation",
    "Outcome",
    "Task",
    "TaskMode",
    "TaskNotFoundError",
    "WorkflowError",
    "WorkflowService",
    "WorkflowStage",
    "reduce_task",
]
