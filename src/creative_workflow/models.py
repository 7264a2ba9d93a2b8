"""Define durable task state and the operations applied to it by the workflow engine."""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum, IntEnum
from typing import Any, Optional, cast

from .constants import QUALITY_CHECKS, STEP_LABELS


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:10]}"


class TaskMode(str, Enum):
    """How a task is produced. Manual tasks never enter the workflow engine."""

    MANUAL = "manual"
    ASSISTED = "assisted"
    GENERATIVE = "generative"


class WorkflowStage(IntEnum):
    """The seven ordered stages of the AI-assisted workflow."""

    BRIEF = 1
    SELECT_TOOL = 2
    CREATE_PROMPT = 3
    GENERATE_OUTPUT = 4
    UPLOAD_OUTPUT = 5
    REVIEW = 6
    SUBMIT = 7

    @property
    def label(self) -> str:
        return STEP_LABELS[int(self)]


class TrackingLevel(str, Enum):
    """How much tool activity can be observed for the selected tool."""

    FULL = "full"
    PARTIAL = "partial"
    NONE = "none"


class ProvenanceStatus(str, Enum):
    VERIFIED = "verified"
    MATCHING = "matching"
    MANUAL_NEEDED = "manual-needed"


class EvidenceStatus(str, Enum):
    """State of the evidence capture session for a task."""

    ACTIVE = "active"
    INACTIVE = "inactive"
    NOT_DETECTED = "not-detected"
    NOT_NEEDED = "not-needed"


class ReviewLane(str, Enum):
    """Independent review tracks of a clearance case."""

    ADMIN = "admin"
    LEGAL = "legal"
    QA = "qa"


class LaneState(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class CaseStatus(str, Enum):
    """Case-level status derived from the three lanes."""

    SUBMITTED = "submitted"
    IN_REVIEW = "in_review"
    APPROVED = "approved"
    REJECTED = "rejected"


class RemediationPath(str, Enum):
    """Recovery actions offered after a clearance rejection."""

    REGENERATE = "regenerate"
    UPLOAD = "upload"
    DOCUMENTATION = "documentation"
    RESPOND = "respond"


def _coerce_enum(enum_cls: type[Enum], value: Any, default: Optional[Enum]) -> Any:
    if isinstance(value, enum_cls):
        return value
    if value is None:
        return default
    try:
        return enum_cls(value)
    except ValueError:
        return default


@dataclass
class UploadedAsset:
    """An output asset registered by asset storage."""

    id: str = field(default_factory=lambda: _id("asset"))
    name: str = ""
    size: int = 0
    uploaded_at: str = field(default_factory=now_iso)
    provenance_status: ProvenanceStatus = ProvenanceStatus.MATCHING

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["provenance_status"] = self.provenance_status.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "UploadedAsset":
        return cls(
            id=str(data.get("id") or _id("asset")),
            name=str(data.get("name") or ""),
            size=int(data.get("size") or 0),
            uploaded_at=str(data.get("uploaded_at") or now_iso()),
            provenance_status=_coerce_enum(
                ProvenanceStatus, data.get("provenance_status"), ProvenanceStatus.MATCHING
            ),
        )


@dataclass
class EvidenceCounts:
    prompts: int = 0
    generations: int = 0
    downloads: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "EvidenceCounts":
        return cls(
            prompts=int(data.get("prompts") or 0),
            generations=int(data.get("generations") or 0),
            downloads=int(data.get("downloads") or 0),
        )


@dataclass
class EvidenceSession:
    """Proof-of-work trail for AI tool usage, independent of the workflow step."""

    status: EvidenceStatus = EvidenceStatus.NOT_DETECTED
    session_id: Optional[str] = None
    last_activity_at: Optional[str] = None
    counts: EvidenceCounts = field(default_factory=EvidenceCounts)

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "session_id": self.session_id,
            "last_activity_at": self.last_activity_at,
            "counts": self.counts.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "EvidenceSession":
        return cls(
            status=_coerce_enum(EvidenceStatus, data.get("status"), EvidenceStatus.NOT_DETECTED),
            session_id=data.get("session_id"),
            last_activity_at=data.get("last_activity_at"),
            counts=EvidenceCounts.from_dict(dict(data.get("counts") or {})),
        )


@dataclass
class ClearanceRejection:
    """Task-visible signal that a clearance lane rejected the submission."""

    rejected_by: ReviewLane
    feedback: str = ""
    rejected_asset: Optional[str] = None
    case_id: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "rejected_by": self.rejected_by.value,
            "feedback": self.feedback,
            "rejected_asset": self.rejected_asset,
            "case_id": self.case_id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ClearanceRejection":
        return cls(
            rejected_by=ReviewLane(str(data.get("rejected_by"))),
            feedback=str(data.get("feedback") or ""),
            rejected_asset=data.get("rejected_asset"),
            case_id=data.get("case_id"),
        )


def _pending_lanes() -> dict[ReviewLane, LaneState]:
    return {lane: LaneState.PENDING for lane in ReviewLane}


@dataclass
class ClearanceCase:
    """One submission's three-lane review."""

    id: str = field(default_factory=lambda: _id("case"))
    task_id: str = ""
    lanes: dict[ReviewLane, LaneState] = field(default_factory=_pending_lanes)
    feedback: dict[ReviewLane, str] = field(default_factory=dict)
    status: CaseStatus = CaseStatus.SUBMITTED
    submitted_at: str = field(default_factory=now_iso)
    resolved_at: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "task_id": self.task_id,
            "lanes": {lane.value: state.value for lane, state in self.lanes.items()},
            "feedback": {lane.value: text for lane, text in self.feedback.items()},
            "status": self.status.value,
            "submitted_at": self.submitted_at,
            "resolved_at": self.resolved_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ClearanceCase":
        raw_lanes = dict(data.get("lanes") or {})
        lanes = {
            lane: _coerce_enum(LaneState, raw_lanes.get(lane.value), LaneState.PENDING)
            for lane in ReviewLane
        }
        feedback = {
            ReviewLane(key): str(value)
            for key, value in dict(data.get("feedback") or {}).items()
            if key in {lane.value for lane in ReviewLane}
        }
        return cls(
            id=str(data.get("id") or _id("case")),
            task_id=str(data.get("task_id") or ""),
            lanes=lanes,
            feedback=feedback,
            status=_coerce_enum(CaseStatus, data.get("status"), CaseStatus.SUBMITTED),
            submitted_at=str(data.get("submitted_at") or now_iso()),
            resolved_at=data.get("resolved_at"),
        )


def _default_quality_checks() -> dict[str, bool]:
    return {key: False for key in QUALITY_CHECKS}


@dataclass
class Task:
    """Single source of truth for a task's workflow, clearance and evidence state."""

    id: str = field(default_factory=lambda: _id("task"))
    title: str = ""
    description: str = ""
    project_id: Optional[str] = None

    mode: TaskMode = TaskMode.MANUAL
    workflow_step: Optional[int] = None
    completed_steps: set[int] = field(default_factory=set)
    skipped_steps: set[int] = field(default_factory=set)
    converted_to_manual: bool = False

    selected_tool: Optional[str] = None
    tracking_level: Optional[TrackingLevel] = None

    uploaded_assets: list[UploadedAsset] = field(default_factory=list)
    quality_checks: dict[str, bool] = field(default_factory=_default_quality_checks)

    clearance_case: Optional[ClearanceCase] = None
    clearance_rejection: Optional[ClearanceRejection] = None
    remediation_history: list[dict[str, Any]] = field(default_factory=list)

    evidence: EvidenceSession = field(default_factory=EvidenceSession)

    created_at: str = field(default_factory=now_iso)
    updated_at: str = field(default_factory=now_iso)
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def is_ai_mode(self) -> bool:
        return self.mode != TaskMode.MANUAL

    def touch(self, now: Optional[str] = None) -> None:
        self.updated_at = now or now_iso()

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Task":
        """Create a `Task` from a persisted dictionary.

        Args:
            data: Raw task payload from durable storage.

        Returns:
            A `Task` with unknown keys preserved in `extra`.
        """
        extra = dict(data)

        def _pop(key: str, default: Any = None) -> Any:
            return extra.pop(key, default)

        step = _pop("workflow_step", None)
        tracking = _pop("tracking_level", None)
        case = _pop("clearance_case", None)
        rejection = _pop("clearance_rejection", None)
        quality_checks = _default_quality_checks()
        quality_checks.update({str(k): bool(v) for k, v in dict(_pop("quality_checks", {}) or {}).items()})
        extra.pop("progress_percent", None)

        return cls(
            id=str(_pop("id", "") or _id("task")),
            title=str(_pop("title", "") or ""),
            description=str(_pop("description", "") or ""),
            project_id=_pop("project_id", None),
            mode=_coerce_enum(TaskMode, _pop("mode", None), TaskMode.MANUAL),
            workflow_step=int(step) if step is not None else None,
            completed_steps={int(s) for s in list(_pop("completed_steps", []) or [])},
            skipped_steps={int(s) for s in list(_pop("skipped_steps", []) or [])},
            converted_to_manual=bool(_pop("converted_to_manual", False)),
            selected_tool=_pop("selected_tool", None),
            tracking_level=_coerce_enum(TrackingLevel, tracking, None),
            uploaded_assets=[
                UploadedAsset.from_dict(a) for a in list(_pop("uploaded_assets", []) or []) if isinstance(a, dict)
            ],
            quality_checks=quality_checks,
            clearance_case=ClearanceCase.from_dict(case) if isinstance(case, dict) else None,
            clearance_rejection=ClearanceRejection.from_dict(rejection) if isinstance(rejection, dict) else None,
            remediation_history=list(_pop("remediation_history", []) or []),
            evidence=EvidenceSession.from_dict(dict(_pop("evidence", {}) or {})),
            created_at=str(_pop("created_at", None) or now_iso()),
            updated_at=str(_pop("updated_at", None) or now_iso()),
            extra=extra,
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialize the task as a plain dictionary for persistence."""
        data = dict(self.extra)
        data.update(
            {
                "id": self.id,
                "title": self.title,
                "description": self.description,
                "project_id": self.project_id,
                "mode": self.mode.value,
                "workflow_step": self.workflow_step,
                "completed_steps": sorted(self.completed_steps),
                "skipped_steps": sorted(self.skipped_steps),
                "converted_to_manual": self.converted_to_manual,
                "selected_tool": self.selected_tool,
                "tracking_level": self.tracking_level.value if self.tracking_level else None,
                "uploaded_assets": [a.to_dict() for a in self.uploaded_assets],
                "quality_checks": dict(self.quality_checks),
                "clearance_case": self.clearance_case.to_dict() if self.clearance_case else None,
                "clearance_rejection": self.clearance_rejection.to_dict() if self.clearance_rejection else None,
                "remediation_history": list(self.remediation_history),
                "evidence": self.evidence.to_dict(),
                "created_at": self.created_at,
                "updated_at": self.updated_at,
            }
        )
        return data


# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------

@dataclass
class Operation:
    """Base class for operations dispatched to the workflow reducer."""

    op_type: str = field(init=False, default="operation")

    def to_dict(self) -> dict[str, Any]:
        """Serialize the operation, converting enums to values."""
        def _serialize(value: Any) -> Any:
            if isinstance(value, Enum):
                return value.value
            if isinstance(value, list):
                return [_serialize(item) for item in value]
            if isinstance(value, dict):
                return {key: _serialize(val) for key, val in value.items()}
            return value

        data = cast(dict[str, Any], _serialize(asdict(self)))
        data["op_type"] = self.op_type
        return data


@dataclass
class EnterAIMode(Operation):
    mode: TaskMode = TaskMode.ASSISTED

    op_type: str = field(init=False, default="enter_ai_mode")


@dataclass
class Advance(Operation):
    op_type: str = field(init=False, default="advance")


@dataclass
class Retreat(Operation):
    op_type: str = field(init=False, default="retreat")


@dataclass
class JumpTo(Operation):
    target_step: int = 1

    op_type: str = field(init=False, default="jump_to")


@dataclass
class Skip(Operation):
    step: int = 1

    op_type: str = field(init=False, default="skip")


@dataclass
class SelectTool(Operation):
    """Choose the AI tool at stage 2.

    ``tracking_label`` is the catalog's advertised capability for the tool,
    e.g. ``"Full Tracking"``; ``None`` when the catalog does not know it.
    """

    tool: str = ""
    tracking_label: Optional[str] = None

    op_type: str = field(init=False, default="select_tool")


@dataclass
class LaunchTool(Operation):
    op_type: str = field(init=False, default="launch_tool")


@dataclass
class AddAsset(Operation):
    asset: UploadedAsset = field(default_factory=UploadedAsset)

    op_type: str = field(init=False, default="add_asset")


@dataclass
class SetQualityCheck(Operation):
    key: str = ""
    checked: bool = True

    op_type: str = field(init=False, default="set_quality_check")


@dataclass
class Restart(Operation):
    confirmed: bool = False

    op_type: str = field(init=False, default="restart")


@dataclass
class ConvertToManual(Operation):
    confirmed: bool = False

    op_type: str = field(init=False, default="convert_to_manual")


@dataclass
class Resubmit(Operation):
    op_type: str = field(init=False, default="resubmit")


@dataclass
class ResolveLane(Operation):
    """Reviewer decision for one lane of a clearance case."""

    case_id: str = ""
    lane: ReviewLane = ReviewLane.ADMIN
    outcome: LaneState = LaneState.APPROVED
    feedback: Optional[str] = None
    asset_id: Optional[str] = None

    op_type: str = field(init=False, default="resolve_lane")


@dataclass
class ChooseRemediation(Operation):
    path: RemediationPath = RemediationPath.REGENERATE

    op_type: str = field(init=False, default="choose_remediation")
