"""Configure loguru and summarize workflow outcomes for logs."""

from __future__ import annotations

import json
import os
import sys
from typing import Any, Optional

from loguru import logger

from .constants import LOG_LEVEL_ENV_VAR
from .errors import Outcome


def configure_logging(level: Optional[str] = None) -> None:
    """Configure loguru logger with the specified level.

    Falls back to ``CREATIVE_WORKFLOW_LOG_LEVEL`` and then ``INFO``.
    """
    level = level or os.environ.get(LOG_LEVEL_ENV_VAR) or "INFO"
    logger.remove()
    logger.add(
        sys.stderr,
        level=level.upper(),
        format=(
            "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{module}</cyan>:<cyan>{line}</cyan>\n"
            "{message}"
        ),
    )


def summarize_outcome(outcome: Optional[Outcome]) -> dict[str, Any]:
    """Render a compact, JSON-friendly summary of an outcome.

    Args:
        outcome: Result of a workflow operation (or None).

    Returns:
        A dictionary suitable for logging or serialization.
    """
    if outcome is None:
        return {"outcome": None}

    task = outcome.task
    d: dict[str, Any] = {
        "task_id": task.id,
        "ok": outcome.ok,
        "mode": task.mode.value,
        "step": task.workflow_step,
        "completed_n": len(task.completed_steps),
    }
    if outcome.error is not None:
        d["error_kind"] = outcome.error.kind.value
        d["error"] = outcome.error.message
    if task.skipped_steps:
        d["skipped"] = sorted(task.skipped_steps)
    if task.clearance_case is not None:
        d["case_id"] = task.clearance_case.id
        d["case_status"] = task.clearance_case.status.value
    if task.clearance_rejection is not None:
        d["rejected_by"] = task.clearance_rejection.rejected_by.value
    if outcome.notices:
        notices = "; ".join(outcome.notices)
        d["notices"] = (notices[:240] + "…") if len(notices) > 240 else notices
    return d


def pretty(obj: Any, *, indent: int = 2) -> str:
    """Serialize an object as JSON for readable logs.

    Args:
        obj: Object to serialize.
        indent: Indentation level for JSON output.

    Returns:
        A JSON string when possible; otherwise `str(obj)`.
    """
    try:
        return json.dumps(obj, indent=indent, default=str)
    except (TypeError, ValueError):
        return str(obj)
