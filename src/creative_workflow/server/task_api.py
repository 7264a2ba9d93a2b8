"""REST API endpoints for the creative workflow engine."""

from __future__ import annotations

from typing import Any, Callable, Optional

from fastapi import APIRouter, HTTPException, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from ..errors import ErrorKind, Outcome, TaskNotFoundError
from ..evidence import EvidenceDelta
from ..fsm import workflow_summary
from ..models import LaneState, ProvenanceStatus, RemediationPath, ReviewLane, TaskMode
from ..service import WorkflowService

# ---------------------------------------------------------------------------
# Pydantic request models
# ---------------------------------------------------------------------------

class CreateTaskRequest(BaseModel):
    title: str
    description: str = ""
    project_id: Optional[str] = None
    mode: TaskMode = TaskMode.MANUAL


class ModeRequest(BaseModel):
    mode: TaskMode = TaskMode.ASSISTED


class JumpRequest(BaseModel):
    target_step: int


class SkipRequest(BaseModel):
    step: int


class SelectToolRequest(BaseModel):
    tool: str


class AddAssetRequest(BaseModel):
    name: str
    size: int = Field(default=0, ge=0)
    provenance_status: ProvenanceStatus = ProvenanceStatus.MATCHING
    asset_id: Optional[str] = None


class QualityCheckRequest(BaseModel):
    key: str
    checked: bool = True


class ConfirmRequest(BaseModel):
    confirm: bool = False


class ResolveLaneRequest(BaseModel):
    case_id: str
    lane: ReviewLane
    outcome: LaneState
    feedback: Optional[str] = None
    asset_id: Optional[str] = None


class RemediationRequest(BaseModel):
    path: RemediationPath


class EvidenceRequest(BaseModel):
    prompts: int = Field(default=0, ge=0)
    generations: int = Field(default=0, ge=0)
    downloads: int = Field(default=0, ge=0)


class PollRequest(BaseModel):
    interval_seconds: Optional[float] = Field(default=None, gt=0)


def _outcome_response(outcome: Outcome) -> Any:
    """Render an outcome; recoverable failures become 409 ``{kind, message}``.

    Stale lane actions are discarded rather than refused, so they answer
    200 with ``discarded: true``.
    """
    if outcome.error is not None:
        if outcome.error.kind == ErrorKind.STALE_CASE:
            return {"discarded": True, **outcome.error.to_dict()}
        return JSONResponse(status_code=409, content=outcome.error.to_dict())
    return {
        "task": outcome.task.to_dict(),
        "notices": list(outcome.notices),
        "summary": workflow_summary(outcome.task),
    }


def create_task_router(get_service: Callable[[Optional[str]], WorkflowService]) -> APIRouter:
    """Create the workflow task router.

    Parameters
    ----------
    get_service:
        A callable ``(project_dir_param: str | None) -> WorkflowService``
        resolving the service for the request's project directory.
    """
    router = APIRouter(prefix="/api/tasks", tags=["tasks"])

    def _call(fn: Callable[[], Outcome]) -> Any:
        try:
            return _outcome_response(fn())
        except TaskNotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc))

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    @router.get("")
    async def list_tasks(
        project_dir: Optional[str] = Query(None),
        mode: Optional[TaskMode] = Query(None),
    ) -> dict[str, Any]:
        service = get_service(project_dir)
        data = [t.to_dict() for t in service.list_tasks(mode)]
        return {"tasks": data, "total": len(data)}

    @router.post("", status_code=201)
    async def create_task(
        body: CreateTaskRequest,
        project_dir: Optional[str] = Query(None),
    ) -> dict[str, Any]:
        service = get_service(project_dir)
        task = service.create_task(**body.model_dump())
        return {"task": task.to_dict(), "summary": workflow_summary(task)}

    @router.get("/{task_id}")
    async def get_task(
        task_id: str,
        project_dir: Optional[str] = Query(None),
    ) -> dict[str, Any]:
        service = get_service(project_dir)
        try:
            task = service.get_task(task_id)
        except TaskNotFoundError:
            raise HTTPException(status_code=404, detail=f"Task {task_id} not found")
        return {"task": task.to_dict(), "summary": workflow_summary(task)}

    @router.delete("/{task_id}")
    async def delete_task(
        task_id: str,
        project_dir: Optional[str] = Query(None),
    ) -> dict[str, str]:
        service = get_service(project_dir)
        try:
            service.delete_task(task_id)
        except TaskNotFoundError:
            raise HTTPException(status_code=404, detail=f"Task {task_id} not found")
        return {"status": "deleted"}

    # ------------------------------------------------------------------
    # Navigation
    # ------------------------------------------------------------------

    @router.post("/{task_id}/mode")
    async def enter_ai_mode(task_id: str, body: ModeRequest, project_dir: Optional[str] = Query(None)) -> Any:
        service = get_service(project_dir)
        return _call(lambda: service.enter_ai_mode(task_id, body.mode))

    @router.post("/{task_id}/advance")
    async def advance(task_id: str, project_dir: Optional[str] = Query(None)) -> Any:
        service = get_service(project_dir)
        return _call(lambda: service.advance(task_id))

    @router.post("/{task_id}/retreat")
    async def retreat(task_id: str, project_dir: Optional[str] = Query(None)) -> Any:
        service = get_service(project_dir)
        return _call(lambda: service.retreat(task_id))

    @router.post("/{task_id}/jump")
    async def jump_to(task_id: str, body: JumpRequest, project_dir: Optional[str] = Query(None)) -> Any:
        service = get_service(project_dir)
        return _call(lambda: service.jump_to(task_id, body.target_step))

    @router.post("/{task_id}/skip")
    async def skip(task_id: str, body: SkipRequest, project_dir: Optional[str] = Query(None)) -> Any:
        service = get_service(project_dir)
        return _call(lambda: service.skip(task_id, body.step))

    @router.get("/{task_id}/guard")
    async def guard(task_id: str, project_dir: Optional[str] = Query(None)) -> dict[str, Any]:
        service = get_service(project_dir)
        try:
            return service.guard_status(task_id)
        except TaskNotFoundError:
            raise HTTPException(status_code=404, detail=f"Task {task_id} not found")

    # ------------------------------------------------------------------
    # Stage actions
    # ------------------------------------------------------------------

    @router.post("/{task_id}/select-tool")
    async def select_tool(task_id: str, body: SelectToolRequest, project_dir: Optional[str] = Query(None)) -> Any:
        service = get_service(project_dir)
        return _call(lambda: service.select_tool(task_id, body.tool))

    @router.post("/{task_id}/launch-tool")
    async def launch_tool(task_id: str, project_dir: Optional[str] = Query(None)) -> Any:
        service = get_service(project_dir)
        return _call(lambda: service.launch_tool(task_id))

    @router.post("/{task_id}/assets")
    async def add_asset(task_id: str, body: AddAssetRequest, project_dir: Optional[str] = Query(None)) -> Any:
        service = get_service(project_dir)
        return _call(
            lambda: service.add_asset(
                task_id,
                body.name,
                size=body.size,
                provenance_status=body.provenance_status,
                asset_id=body.asset_id,
            )
        )

    @router.post("/{task_id}/quality-checks")
    async def set_quality_check(
        task_id: str, body: QualityCheckRequest, project_dir: Optional[str] = Query(None)
    ) -> Any:
        service = get_service(project_dir)
        return _call(lambda: service.set_quality_check(task_id, body.key, body.checked))

    @router.post("/{task_id}/restart")
    async def restart(task_id: str, body: ConfirmRequest, project_dir: Optional[str] = Query(None)) -> Any:
        service = get_service(project_dir)
        return _call(lambda: service.restart(task_id, confirm=body.confirm))

    @router.post("/{task_id}/convert-to-manual")
    async def convert_to_manual(task_id: str, body: ConfirmRequest, project_dir: Optional[str] = Query(None)) -> Any:
        service = get_service(project_dir)
        return _call(lambda: service.convert_to_manual(task_id, confirm=body.confirm))

    # ------------------------------------------------------------------
    # Clearance
    # ------------------------------------------------------------------

    @router.post("/{task_id}/clearance/lanes")
    async def resolve_lane(task_id: str, body: ResolveLaneRequest, project_dir: Optional[str] = Query(None)) -> Any:
        service = get_service(project_dir)
        return _call(
            lambda: service.resolve_lane(
                task_id,
                body.case_id,
                body.lane,
                body.outcome,
                feedback=body.feedback,
                asset_id=body.asset_id,
            )
        )

    @router.post("/{task_id}/clearance/resubmit")
    async def resubmit(task_id: str, project_dir: Optional[str] = Query(None)) -> Any:
        service = get_service(project_dir)
        return _call(lambda: service.resubmit(task_id))

    @router.post("/{task_id}/remediation")
    async def choose_remediation(
        task_id: str, body: RemediationRequest, project_dir: Optional[str] = Query(None)
    ) -> Any:
        service = get_service(project_dir)
        return _call(lambda: service.choose_remediation(task_id, body.path))

    # ------------------------------------------------------------------
    # Evidence
    # ------------------------------------------------------------------

    @router.get("/{task_id}/evidence")
    async def get_evidence(task_id: str, project_dir: Optional[str] = Query(None)) -> dict[str, Any]:
        service = get_service(project_dir)
        try:
            task = service.get_task(task_id)
        except TaskNotFoundError:
            raise HTTPException(status_code=404, detail=f"Task {task_id} not found")
        return {"evidence": task.evidence.to_dict(), "polling": service.is_polling(task_id)}

    @router.post("/{task_id}/evidence/activate")
    async def activate_evidence(task_id: str, project_dir: Optional[str] = Query(None)) -> Any:
        service = get_service(project_dir)
        return _call(lambda: service.activate_evidence(task_id))

    @router.post("/{task_id}/evidence/deactivate")
    async def deactivate_evidence(task_id: str, project_dir: Optional[str] = Query(None)) -> Any:
        service = get_service(project_dir)
        return _call(lambda: service.deactivate_evidence(task_id))

    @router.post("/{task_id}/evidence/record")
    async def record_evidence(task_id: str, body: EvidenceRequest, project_dir: Optional[str] = Query(None)) -> Any:
        service = get_service(project_dir)
        delta = EvidenceDelta(**body.model_dump())
        return _call(lambda: service.record_evidence(task_id, delta))

    @router.post("/{task_id}/evidence/poll")
    async def start_polling(task_id: str, body: PollRequest, project_dir: Optional[str] = Query(None)) -> dict[str, Any]:
        service = get_service(project_dir)
        try:
            started = service.start_polling(task_id, interval_seconds=body.interval_seconds)
        except TaskNotFoundError:
            raise HTTPException(status_code=404, detail=f"Task {task_id} not found")
        if not started:
            return JSONResponse(
                status_code=409,
                content={"kind": ErrorKind.INVALID_STATE.value, "message": "Evidence session is not active."},
            )
        return {"polling": True}

    @router.delete("/{task_id}/evidence/poll")
    async def stop_polling(task_id: str, project_dir: Optional[str] = Query(None)) -> dict[str, Any]:
        service = get_service(project_dir)
        service.stop_polling(task_id)
        return {"polling": False}

    @router.get("/{task_id}/events")
    async def list_events(task_id: str, project_dir: Optional[str] = Query(None)) -> dict[str, Any]:
        service = get_service(project_dir)
        try:
            events = service.events(task_id)
        except TaskNotFoundError:
            raise HTTPException(status_code=404, detail=f"Task {task_id} not found")
        return {"events": events, "total": len(events)}

    return router
