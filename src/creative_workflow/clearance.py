"""Three-lane clearance review (admin, legal, QA).

A case opens when the task enters stage 7.  Lanes resolve independently;
the case is approved only when every lane approves, and the first rejection
halts the case and raises ``clearance_rejection`` on the task.
"""

from __future__ import annotations

import copy
from typing import Mapping, Optional

from loguru import logger

from .constants import FINAL_STEP
from .errors import ErrorKind, Outcome
from .models import (
    CaseStatus,
    ClearanceCase,
    ClearanceRejection,
    LaneState,
    ResolveLane,
    ReviewLane,
    Task,
    now_iso,
)


def derive_status(lanes: Mapping[ReviewLane, LaneState]) -> CaseStatus:
    states = [lanes.get(lane, LaneState.PENDING) for lane in ReviewLane]
    if any(state == LaneState.REJECTED for state in states):
        return CaseStatus.REJECTED
    if all(state == LaneState.APPROVED for state in states):
        return CaseStatus.APPROVED
    if any(state == LaneState.APPROVED for state in states):
        return CaseStatus.IN_REVIEW
    return CaseStatus.SUBMITTED


def open_case(task: Task, *, now: Optional[str] = None) -> ClearanceCase:
    """Attach a fresh case to ``task`` in place, discarding any prior one."""
    previous = task.clearance_case
    case = ClearanceCase(task_id=task.id, submitted_at=now or now_iso())
    task.clearance_case = case
    task.clearance_rejection = None
    if previous is not None:
        logger.debug("Discarded clearance case {} for task {}", previous.id, task.id)
    return case


def _implicated_asset(task: Task, asset_id: Optional[str]) -> Optional[str]:
    if asset_id:
        return asset_id
    if task.uploaded_assets:
        return task.uploaded_assets[-1].id
    return None


def resolve_lane(task: Task, op: ResolveLane, *, now: Optional[str] = None) -> Outcome:
    """Apply a reviewer's decision for one lane of the task's current case."""
    case = task.clearance_case
    if case is None or case.id != op.case_id:
        logger.warning(
            "Discarding {} decision for stale case {} on task {}",
            op.lane.value,
            op.case_id,
            task.id,
        )
        return Outcome.fail(
            task,
            ErrorKind.STALE_CASE,
            f"Clearance case {op.case_id} is not the current case for task {task.id}.",
        )
    if op.outcome == LaneState.PENDING:
        return Outcome.fail(task, ErrorKind.INVALID_STATE, "Lane outcome must be approved or rejected.")
    if task.workflow_step != FINAL_STEP:
        return Outcome.fail(task, ErrorKind.INVALID_STATE, "Task is not awaiting clearance.")
    if case.status == CaseStatus.REJECTED:
        return Outcome.fail(task, ErrorKind.INVALID_STATE, "Clearance case is halted pending remediation.")
    if case.status == CaseStatus.APPROVED:
        return Outcome.fail(task, ErrorKind.INVALID_STATE, "Clearance case is already approved.")
    if case.lanes.get(op.lane) != LaneState.PENDING:
        return Outcome.fail(task, ErrorKind.INVALID_STATE, f"The {op.lane.value} lane has already been resolved.")

    now = now or now_iso()
    updated = copy.deepcopy(task)
    case = updated.clearance_case
    assert case is not None
    case.lanes[op.lane] = op.outcome
    if op.feedback:
        case.feedback[op.lane] = op.feedback
    case.status = derive_status(case.lanes)

    if case.status == CaseStatus.REJECTED:
        case.resolved_at = now
        updated.clearance_rejection = ClearanceRejection(
            rejected_by=op.lane,
            feedback=op.feedback or "",
            rejected_asset=_implicated_asset(updated, op.asset_id),
            case_id=case.id,
        )
    elif case.status == CaseStatus.APPROVED:
        case.resolved_at = now
        updated.completed_steps.add(FINAL_STEP)
        updated.skipped_steps.discard(FINAL_STEP)

    updated.touch(now)
    return Outcome(task=updated)
