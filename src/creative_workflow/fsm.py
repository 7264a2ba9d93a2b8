"""Workflow engine: guards, navigation and the task reducer.

``reduce_task`` is a pure function of ``(Task, Operation)``.  It never
mutates its input; a successful outcome carries a new task that replaces
the stored one as a whole.
"""

from __future__ import annotations

import copy
from typing import Any, Optional

from .clearance import derive_status, open_case, resolve_lane
from .constants import (
    CRITICAL_STEPS,
    FINAL_STEP,
    FIRST_STEP,
    GUARD_MESSAGE_SELECT_TOOL,
    GUARD_MESSAGE_UPLOAD_ASSET,
    QUALITY_CHECKS,
    SKIP_CAVEAT,
    STEP_LABELS,
    TOOL_LAUNCH_STEPS,
    TOTAL_STEPS,
)
from .errors import ErrorKind, InvariantViolation, Outcome, WorkflowError
from .evidence import initialize_session, open_session
from .models import (
    AddAsset,
    Advance,
    CaseStatus,
    ChooseRemediation,
    ConvertToManual,
    EnterAIMode,
    EvidenceStatus,
    JumpTo,
    LaunchTool,
    Operation,
    RemediationPath,
    Restart,
    Resubmit,
    ResolveLane,
    Retreat,
    SelectTool,
    SetQualityCheck,
    Skip,
    Task,
    TaskMode,
    WorkflowStage,
    now_iso,
)
from .tools import tracking_level_for

REMEDIATION_TARGETS: dict[RemediationPath, int] = {
    RemediationPath.REGENERATE: int(WorkflowStage.CREATE_PROMPT),
    RemediationPath.UPLOAD: int(WorkflowStage.UPLOAD_OUTPUT),
    RemediationPath.DOCUMENTATION: FINAL_STEP,
    RemediationPath.RESPOND: FINAL_STEP,
}

# Halted while a clearance rejection awaits remediation
_NAVIGATION_OPS = (Advance, Retreat, JumpTo, Skip)


def check_invariants(task: Task) -> None:
    """Raise :class:`InvariantViolation` if ``task`` is in an impossible state."""
    valid_steps = range(FIRST_STEP, FINAL_STEP + 1)
    if task.is_ai_mode:
        if not isinstance(task.workflow_step, int) or task.workflow_step not in valid_steps:
            raise InvariantViolation(
                f"Task {task.id} is in {task.mode.value} mode with workflow_step={task.workflow_step!r}"
            )
        if task.converted_to_manual:
            raise InvariantViolation(f"Task {task.id} was converted to manual but is in {task.mode.value} mode")
    elif task.workflow_step is not None:
        raise InvariantViolation(f"Manual task {task.id} has workflow_step={task.workflow_step!r}")
    bad = sorted(s for s in task.completed_steps | task.skipped_steps if s not in valid_steps)
    if bad:
        raise InvariantViolation(f"Task {task.id} references unknown stages {bad}")


def check_requirements(task: Task, step: int) -> Optional[str]:
    """Return the guard message blocking forward progress from ``step``, or None."""
    if step == WorkflowStage.SELECT_TOOL and not task.selected_tool:
        return GUARD_MESSAGE_SELECT_TOOL
    if step == WorkflowStage.UPLOAD_OUTPUT and len(task.uploaded_assets) < 1:
        return GUARD_MESSAGE_UPLOAD_ASSET
    return None


def _mode_error(task: Task) -> Optional[WorkflowError]:
    if task.converted_to_manual:
        return WorkflowError(
            ErrorKind.IRREVERSIBLE_ACTION_ALREADY_TAKEN,
            "Task was converted to manual; create a new task to use the AI workflow.",
        )
    if not task.is_ai_mode:
        return WorkflowError(ErrorKind.INVALID_STATE, "Task has no AI workflow.")
    return None


def _fail(task: Task, kind: ErrorKind, message: str) -> Outcome:
    return Outcome.fail(task, kind, message)


def _enter_stage(task: Task, step: int, now: str) -> None:
    previous = task.workflow_step
    task.workflow_step = step
    if step == FINAL_STEP and previous != FINAL_STEP:
        open_case(task, now=now)


def _unchecked_quality_items(task: Task) -> list[str]:
    return [label for key, label in QUALITY_CHECKS.items() if not task.quality_checks.get(key)]


def _enter_ai_mode(task: Task, op: EnterAIMode, now: str) -> Outcome:
    if task.converted_to_manual:
        return _fail(
            task,
            ErrorKind.IRREVERSIBLE_ACTION_ALREADY_TAKEN,
            "Task was converted to manual; create a new task to use the AI workflow.",
        )
    if op.mode == TaskMode.MANUAL:
        return _fail(task, ErrorKind.INVALID_STATE, "Use convert-to-manual to leave the AI workflow.")
    if task.mode == op.mode:
        return Outcome(task=task)
    updated = copy.deepcopy(task)
    updated.mode = op.mode
    if not task.is_ai_mode:
        updated.workflow_step = FIRST_STEP
        updated.completed_steps = set()
        updated.skipped_steps = set()
        updated.evidence = initialize_session(updated, now=now)
    updated.touch(now)
    return Outcome(task=updated)


def _advance(task: Task, now: str) -> Outcome:
    step = int(task.workflow_step or FIRST_STEP)
    if step == FINAL_STEP:
        return _fail(task, ErrorKind.AT_BOUNDARY, "Already at the final stage; the task is with clearance review.")
    message = check_requirements(task, step)
    if message:
        return _fail(task, ErrorKind.GUARD_FAILED, message)

    updated = copy.deepcopy(task)
    updated.completed_steps.add(step)
    updated.skipped_steps.discard(step)
    _enter_stage(updated, step + 1, now)
    updated.touch(now)

    notices = []
    if step == WorkflowStage.REVIEW:
        unchecked = _unchecked_quality_items(task)
        if unchecked:
            notices.append("Quality checklist incomplete: " + ", ".join(unchecked))
    return Outcome(task=updated, notices=notices)


def _retreat(task: Task, now: str) -> Outcome:
    step = int(task.workflow_step or FIRST_STEP)
    if step == FIRST_STEP:
        return _fail(task, ErrorKind.AT_BOUNDARY, "Already at the first stage.")
    updated = copy.deepcopy(task)
    updated.workflow_step = step - 1
    updated.touch(now)
    return Outcome(task=updated)


def _jump_to(task: Task, op: JumpTo, now: str) -> Outcome:
    step = int(task.workflow_step or FIRST_STEP)
    target = op.target_step
    if target not in range(FIRST_STEP, FINAL_STEP + 1):
        return _fail(task, ErrorKind.INVALID_JUMP, f"Stage {target} does not exist.")
    if target > step:
        return _fail(
            task,
            ErrorKind.INVALID_JUMP,
            f"Cannot jump ahead to stage {target}; complete stage {step} first.",
        )
    if target == step:
        return Outcome(task=task)
    updated = copy.deepcopy(task)
    updated.workflow_step = target
    updated.touch(now)
    return Outcome(task=updated)


def _skip(task: Task, op: Skip, now: str) -> Outcome:
    if op.step != task.workflow_step:
        return _fail(task, ErrorKind.INVALID_STATE, "Only the current stage can be skipped.")
    updated = copy.deepcopy(task)
    updated.skipped_steps.add(op.step)
    _enter_stage(updated, op.step + 1, now)
    updated.touch(now)
    caveat = SKIP_CAVEAT.format(step=op.step, label=STEP_LABELS[op.step])
    return Outcome(task=updated, notices=[caveat])


def _select_tool(task: Task, op: SelectTool, now: str) -> Outcome:
    if task.workflow_step != WorkflowStage.SELECT_TOOL:
        return _fail(task, ErrorKind.INVALID_STATE, "A tool can only be selected at stage 2 (Select Tool).")
    if WorkflowStage.SELECT_TOOL in task.completed_steps:
        return _fail(
            task,
            ErrorKind.INVALID_STATE,
            "A tool was already selected for this workflow; restart it to choose another.",
        )
    tool = (op.tool or "").strip()
    if not tool:
        return _fail(task, ErrorKind.GUARD_FAILED, GUARD_MESSAGE_SELECT_TOOL)

    updated = copy.deepcopy(task)
    updated.selected_tool = tool
    updated.tracking_level = tracking_level_for(op.tracking_label)
    updated.completed_steps.add(int(WorkflowStage.SELECT_TOOL))
    _enter_stage(updated, int(WorkflowStage.CREATE_PROMPT), now)
    updated.touch(now)
    return Outcome(task=updated, notices=[f"{tool} selected"])


def _launch_tool(task: Task, now: str) -> Outcome:
    if task.workflow_step not in TOOL_LAUNCH_STEPS:
        return _fail(task, ErrorKind.INVALID_STATE, "The tool can only be launched at stages 3 and 4.")
    if not task.selected_tool:
        return _fail(task, ErrorKind.GUARD_FAILED, GUARD_MESSAGE_SELECT_TOOL)
    if task.evidence.status == EvidenceStatus.ACTIVE:
        return Outcome(task=task, notices=[f"Launched {task.selected_tool}"])
    updated = copy.deepcopy(task)
    open_session(updated.evidence, now=now, reset_counts=False)
    updated.touch(now)
    return Outcome(task=updated, notices=[f"Launched {task.selected_tool}"])


def _add_asset(task: Task, op: AddAsset, now: str) -> Outcome:
    if task.workflow_step != WorkflowStage.UPLOAD_OUTPUT:
        return _fail(task, ErrorKind.INVALID_STATE, "Assets can only be uploaded at stage 5 (Upload Output).")
    if any(asset.id == op.asset.id for asset in task.uploaded_assets):
        return _fail(task, ErrorKind.INVALID_STATE, f"Asset {op.asset.id} is already uploaded.")
    updated = copy.deepcopy(task)
    updated.uploaded_assets.append(copy.deepcopy(op.asset))
    updated.touch(now)
    return Outcome(task=updated)


def _set_quality_check(task: Task, op: SetQualityCheck, now: str) -> Outcome:
    if op.key not in QUALITY_CHECKS:
        return _fail(task, ErrorKind.INVALID_STATE, f"Unknown quality check: {op.key}")
    updated = copy.deepcopy(task)
    updated.quality_checks[op.key] = bool(op.checked)
    updated.touch(now)
    return Outcome(task=updated)


def _restart(task: Task, op: Restart, now: str) -> Outcome:
    if not op.confirmed:
        return _fail(
            task,
            ErrorKind.CONFIRMATION_REQUIRED,
            "Restarting clears all workflow progress and cannot be undone; confirm to continue.",
        )
    updated = copy.deepcopy(task)
    updated.workflow_step = FIRST_STEP
    updated.completed_steps = set()
    updated.skipped_steps = set()
    updated.quality_checks = {key: False for key in QUALITY_CHECKS}
    updated.clearance_case = None
    updated.clearance_rejection = None
    updated.touch(now)
    return Outcome(task=updated)


def _convert_to_manual(task: Task, op: ConvertToManual, now: str) -> Outcome:
    if not op.confirmed:
        return _fail(
            task,
            ErrorKind.CONFIRMATION_REQUIRED,
            "Converting to manual discards the AI workflow permanently; confirm to continue.",
        )
    updated = copy.deepcopy(task)
    updated.mode = TaskMode.MANUAL
    updated.converted_to_manual = True
    updated.workflow_step = None
    updated.completed_steps = set()
    updated.skipped_steps = set()
    updated.selected_tool = None
    updated.tracking_level = None
    updated.clearance_case = None
    updated.clearance_rejection = None
    updated.evidence.status = EvidenceStatus.NOT_NEEDED
    updated.evidence.session_id = None
    updated.touch(now)
    return Outcome(task=updated)


def _resubmit(task: Task, now: str) -> Outcome:
    if task.workflow_step != FINAL_STEP:
        return _fail(task, ErrorKind.INVALID_STATE, "Resubmission happens from stage 7 (Submit for Clearance).")
    if task.clearance_rejection is not None:
        return _fail(task, ErrorKind.INVALID_STATE, "Choose a remediation path before resubmitting.")
    case = task.clearance_case
    if case is not None and derive_status(case.lanes) != CaseStatus.REJECTED:
        return _fail(task, ErrorKind.INVALID_STATE, f"Clearance case {case.id} is already {case.status.value}.")
    updated = copy.deepcopy(task)
    open_case(updated, now=now)
    updated.touch(now)
    return Outcome(task=updated)


def _choose_remediation(task: Task, op: ChooseRemediation, now: str) -> Outcome:
    rejection = task.clearance_rejection
    if rejection is None:
        return _fail(task, ErrorKind.INVALID_STATE, "There is no clearance rejection to remediate.")
    updated = copy.deepcopy(task)
    updated.workflow_step = REMEDIATION_TARGETS[op.path]
    updated.clearance_rejection = None
    updated.remediation_history.append(
        {
            "path": op.path.value,
            "rejected_by": rejection.rejected_by.value,
            "case_id": rejection.case_id,
            "feedback": rejection.feedback,
            "chosen_at": now,
        }
    )
    updated.touch(now)

    notices = []
    if op.path == RemediationPath.DOCUMENTATION:
        notices.append("Attach supporting documentation, then resubmit for clearance.")
    elif op.path == RemediationPath.RESPOND:
        notices.append("Reply to the reviewer in the task comments, then resubmit for clearance.")
    return Outcome(task=updated, notices=notices)


def reduce_task(task: Task, op: Operation, *, now: Optional[str] = None) -> Outcome:
    """Apply ``op`` to ``task`` and return the structured outcome.

    Raises:
        InvariantViolation: If ``task`` (or the result) is corrupt.
        TypeError: If ``op`` is not a workflow operation.
    """
    check_invariants(task)
    now = now or now_iso()

    if isinstance(op, Skip) and op.step in CRITICAL_STEPS:
        return _fail(
            task,
            ErrorKind.SKIP_FORBIDDEN,
            f"Stage {op.step} ({STEP_LABELS[op.step]}) is a critical stage and cannot be skipped.",
        )

    if isinstance(op, EnterAIMode):
        outcome = _enter_ai_mode(task, op, now)
    elif isinstance(op, ResolveLane):
        outcome = resolve_lane(task, op, now=now)
    else:
        err = _mode_error(task)
        if err is not None:
            return Outcome(task=task, error=err)
        if FINAL_STEP in task.completed_steps and not isinstance(op, (Restart, ConvertToManual)):
            return _fail(task, ErrorKind.INVALID_STATE, "Workflow is complete; clearance was approved.")
        if task.clearance_rejection is not None and isinstance(op, _NAVIGATION_OPS):
            return _fail(task, ErrorKind.INVALID_STATE, "Choose a remediation path first.")
        if isinstance(op, Advance):
            outcome = _advance(task, now)
        elif isinstance(op, Retreat):
            outcome = _retreat(task, now)
        elif isinstance(op, JumpTo):
            outcome = _jump_to(task, op, now)
        elif isinstance(op, Skip):
            outcome = _skip(task, op, now)
        elif isinstance(op, SelectTool):
            outcome = _select_tool(task, op, now)
        elif isinstance(op, LaunchTool):
            outcome = _launch_tool(task, now)
        elif isinstance(op, AddAsset):
            outcome = _add_asset(task, op, now)
        elif isinstance(op, SetQualityCheck):
            outcome = _set_quality_check(task, op, now)
        elif isinstance(op, Restart):
            outcome = _restart(task, op, now)
        elif isinstance(op, ConvertToManual):
            outcome = _convert_to_manual(task, op, now)
        elif isinstance(op, Resubmit):
            outcome = _resubmit(task, now)
        elif isinstance(op, ChooseRemediation):
            outcome = _choose_remediation(task, op, now)
        else:
            raise TypeError(f"Unsupported workflow operation: {type(op).__name__}")

    if outcome.ok and outcome.task is not task:
        check_invariants(outcome.task)
    return outcome


# ---------------------------------------------------------------------------
# Read accessors
# ---------------------------------------------------------------------------

def current_step(task: Task) -> Optional[int]:
    return task.workflow_step if task.is_ai_mode else None


def progress_percent(task: Task) -> int:
    return round(len(task.completed_steps) / TOTAL_STEPS * 100)


def guard_status(task: Task) -> dict[str, Any]:
    """Whether the current stage's guard would let ``advance`` through."""
    step = current_step(task)
    if step is None:
        return {"step": None, "passed": False, "message": "Task has no AI workflow."}
    message = check_requirements(task, step)
    return {"step": step, "passed": message is None, "message": message}


def workflow_summary(task: Task) -> dict[str, Any]:
    """Render the audit view of a task's workflow, clearance and evidence state."""
    step = current_step(task)
    steps = []
    for stage in WorkflowStage:
        num = int(stage)
        if num in task.completed_steps:
            state = "completed"
        elif num == step:
            state = "current"
        elif num in task.skipped_steps:
            state = "skipped"
        else:
            state = "upcoming"
        steps.append(
            {
                "num": num,
                "label": stage.label,
                "state": state,
                "provenance_incomplete": num in task.skipped_steps,
            }
        )
    audit_flags = [SKIP_CAVEAT.format(step=s, label=STEP_LABELS[s]) for s in sorted(task.skipped_steps)]
    case = task.clearance_case
    return {
        "task_id": task.id,
        "mode": task.mode.value,
        "converted_to_manual": task.converted_to_manual,
        "current_step": step,
        "current_label": STEP_LABELS.get(step) if step else None,
        "progress_percent": progress_percent(task),
        "completed_steps": sorted(task.completed_steps),
        "steps": steps,
        "guard": guard_status(task),
        "selected_tool": task.selected_tool,
        "tracking_level": task.tracking_level.value if task.tracking_level else None,
        "assets": len(task.uploaded_assets),
        "evidence": task.evidence.to_dict(),
        "clearance": case.to_dict() if case else None,
        "clearance_rejection": task.clearance_rejection.to_dict() if task.clearance_rejection else None,
        "audit_flags": audit_flags,
    }
