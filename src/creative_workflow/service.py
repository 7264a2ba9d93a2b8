"""The exposed surface of the engine.

``WorkflowService`` loads a task, runs the pure reducers over it, persists
the result by whole-object replacement and records an audit event.  A
per-task lock applies operations on one task in arrival order.
"""

from __future__ import annotations

import threading
from typing import Any, Callable, Optional, Union

from loguru import logger

from .config import get_evidence_config, get_extra_tools, load_config
from .container import Container
from .errors import ErrorKind, InvariantViolation, Outcome, TaskNotFoundError
from .evidence import (
    EvidenceDelta,
    EvidencePoller,
    EvidenceSource,
    SimulatedEvidenceSource,
    activate,
    deactivate,
    record_evidence,
)
from .fsm import current_step, guard_status, reduce_task, workflow_summary
from .logging_utils import pretty, summarize_outcome
from .models import (
    AddAsset,
    Advance,
    ChooseRemediation,
    ConvertToManual,
    EnterAIMode,
    EvidenceStatus,
    JumpTo,
    LaneState,
    LaunchTool,
    Operation,
    ProvenanceStatus,
    RemediationPath,
    Restart,
    Resubmit,
    ResolveLane,
    Retreat,
    ReviewLane,
    SelectTool,
    SetQualityCheck,
    Skip,
    Task,
    TaskMode,
    UploadedAsset,
)
from .tools import ToolCatalog

SourceFactory = Callable[[], EvidenceSource]


class WorkflowService:
    def __init__(
        self,
        container: Container,
        *,
        catalog: Optional[ToolCatalog] = None,
        config: Optional[dict[str, Any]] = None,
        source_factory: Optional[SourceFactory] = None,
    ) -> None:
        self.container = container
        if config is None:
            config, err = load_config(container.project_dir)
            if err:
                logger.warning("Ignoring invalid config ({}); using defaults", err)
        self.config = config
        self.evidence_config = get_evidence_config(config)
        self.catalog = catalog or ToolCatalog.from_config(get_extra_tools(config))
        self._source_factory = source_factory or self._default_source
        self._locks: dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()
        self._pollers: dict[str, EvidencePoller] = {}
        self._pollers_lock = threading.Lock()

    def _default_source(self) -> EvidenceSource:
        return SimulatedEvidenceSource(
            activity_chance=self.evidence_config["activity_chance"],
            max_increment=self.evidence_config["max_increment"],
        )

    def _task_lock(self, task_id: str) -> threading.RLock:
        with self._locks_guard:
            lock = self._locks.get(task_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[task_id] = lock
            return lock

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    def create_task(
        self,
        title: str,
        *,
        description: str = "",
        project_id: Optional[str] = None,
        mode: Union[TaskMode, str] = TaskMode.MANUAL,
    ) -> Task:
        """Create and persist a task, entering the AI workflow for AI modes."""
        mode = TaskMode(mode)
        task = Task(title=title, description=description, project_id=project_id)
        task.evidence.status = EvidenceStatus.NOT_NEEDED
        if mode != TaskMode.MANUAL:
            task = reduce_task(task, EnterAIMode(mode=mode)).task
        self.container.tasks.upsert(task)
        self._emit(task, "task.created", {"mode": task.mode.value, "title": task.title})
        logger.info("Created {} task {} ({})", task.mode.value, task.id, task.title)
        return task

    def get_task(self, task_id: str) -> Task:
        task = self.container.tasks.get(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    def list_tasks(self, mode: Optional[Union[TaskMode, str]] = None) -> list[Task]:
        tasks = self.container.tasks.list()
        if mode is not None:
            wanted = TaskMode(mode)
            tasks = [t for t in tasks if t.mode == wanted]
        return tasks

    def delete_task(self, task_id: str) -> None:
        self.stop_polling(task_id)
        with self._task_lock(task_id):
            if not self.container.tasks.delete(task_id):
                raise TaskNotFoundError(task_id)
            self._emit_raw(task_id, "task.deleted", {})
        logger.info("Deleted task {}", task_id)

    # ------------------------------------------------------------------
    # Core apply path
    # ------------------------------------------------------------------

    def apply(self, task_id: str, op: Operation) -> Outcome:
        """Run ``op`` through the workflow reducer and persist the result."""
        return self._run(task_id, op.op_type, op.to_dict(), lambda task: reduce_task(task, op))

    def _run(
        self,
        task_id: str,
        action: str,
        payload: dict[str, Any],
        reducer: Callable[[Task], Outcome],
        *,
        autostart: bool = True,
    ) -> Outcome:
        with self._task_lock(task_id):
            task = self.get_task(task_id)
            try:
                outcome = reducer(task)
            except InvariantViolation as exc:
                logger.error("Task {} is corrupt; refusing {}: {}", task_id, action, exc)
                raise
            if outcome.ok and outcome.task is not task:
                self.container.tasks.upsert(outcome.task)
                self._emit(outcome.task, f"workflow.{action}", {**payload, "notices": outcome.notices})
            self._log(action, outcome)
        self._sync_poller(outcome.task, autostart=autostart)
        return outcome

    def _log(self, action: str, outcome: Outcome) -> None:
        task = outcome.task
        if outcome.ok:
            logger.info("Task {} {}: step={} mode={}", task.id, action, task.workflow_step, task.mode.value)
            return
        assert outcome.error is not None
        if outcome.error.kind == ErrorKind.STALE_CASE:
            logger.warning("Task {} {} discarded: {}", task.id, action, outcome.error.message)
        else:
            logger.info("Task {} {} refused [{}]: {}", task.id, action, outcome.error.kind.value, outcome.error.message)
        logger.debug("Outcome: {}", pretty(summarize_outcome(outcome)))

    def _emit(self, task: Task, event_type: str, payload: dict[str, Any]) -> None:
        self._emit_raw(task.id, event_type, payload)

    def _emit_raw(self, task_id: str, event_type: str, payload: dict[str, Any]) -> None:
        self.container.events.append(
            event_type=event_type,
            entity_id=task_id,
            payload=payload,
            project_id=self.container.project_id,
        )

    # ------------------------------------------------------------------
    # Workflow operations
    # ------------------------------------------------------------------

    def enter_ai_mode(self, task_id: str, mode: Union[TaskMode, str] = TaskMode.ASSISTED) -> Outcome:
        return self.apply(task_id, EnterAIMode(mode=TaskMode(mode)))

    def advance(self, task_id: str) -> Outcome:
        return self.apply(task_id, Advance())

    def retreat(self, task_id: str) -> Outcome:
        return self.apply(task_id, Retreat())

    def jump_to(self, task_id: str, target_step: int) -> Outcome:
        return self.apply(task_id, JumpTo(target_step=int(target_step)))

    def skip(self, task_id: str, step: int) -> Outcome:
        return self.apply(task_id, Skip(step=int(step)))

    def select_tool(self, task_id: str, tool: str) -> Outcome:
        """Select ``tool`` (catalog id or name) at stage 2.

        Catalog tools that are not approved, active and available on the
        task's project are refused.  Unknown identifiers are accepted with
        no tracking.
        """
        with self._task_lock(task_id):
            task = self.get_task(task_id)
            entry = self.catalog.resolve(tool) if tool else None
            if entry is not None and entry not in self.catalog.available_for_project(task.project_id):
                outcome = Outcome.fail(
                    task,
                    ErrorKind.INVALID_STATE,
                    f"{entry.name} is not available for this project.",
                )
                self._log("select_tool", outcome)
                return outcome
            name = entry.name if entry else tool
            label = entry.tracking_label if entry else None
            return self.apply(task_id, SelectTool(tool=name, tracking_label=label))

    def launch_tool(self, task_id: str) -> Outcome:
        return self.apply(task_id, LaunchTool())

    def add_asset(
        self,
        task_id: str,
        name: str,
        *,
        size: int = 0,
        provenance_status: Union[ProvenanceStatus, str] = ProvenanceStatus.MATCHING,
        asset_id: Optional[str] = None,
    ) -> Outcome:
        asset = UploadedAsset(name=name, size=int(size), provenance_status=ProvenanceStatus(provenance_status))
        if asset_id:
            asset.id = asset_id
        return self.apply(task_id, AddAsset(asset=asset))

    def set_quality_check(self, task_id: str, key: str, checked: bool = True) -> Outcome:
        return self.apply(task_id, SetQualityCheck(key=key, checked=checked))

    def restart(self, task_id: str, *, confirm: bool = False) -> Outcome:
        return self.apply(task_id, Restart(confirmed=confirm))

    def convert_to_manual(self, task_id: str, *, confirm: bool = False) -> Outcome:
        return self.apply(task_id, ConvertToManual(confirmed=confirm))

    def resubmit(self, task_id: str) -> Outcome:
        return self.apply(task_id, Resubmit())

    def resolve_lane(
        self,
        task_id: str,
        case_id: str,
        lane: Union[ReviewLane, str],
        outcome: Union[LaneState, str],
        *,
        feedback: Optional[str] = None,
        asset_id: Optional[str] = None,
    ) -> Outcome:
        op = ResolveLane(
            case_id=case_id,
            lane=ReviewLane(lane),
            outcome=LaneState(outcome),
            feedback=feedback,
            asset_id=asset_id,
        )
        return self.apply(task_id, op)

    def choose_remediation(self, task_id: str, path: Union[RemediationPath, str]) -> Outcome:
        return self.apply(task_id, ChooseRemediation(path=RemediationPath(path)))

    # ------------------------------------------------------------------
    # Evidence
    # ------------------------------------------------------------------

    def activate_evidence(self, task_id: str) -> Outcome:
        return self._run(task_id, "activate_evidence", {}, lambda task: activate(task))

    def deactivate_evidence(self, task_id: str) -> Outcome:
        return self._run(task_id, "deactivate_evidence", {}, lambda task: deactivate(task))

    def record_evidence(self, task_id: str, delta: EvidenceDelta, *, autostart: bool = True) -> Outcome:
        return self._run(
            task_id,
            "record_evidence",
            delta.to_dict(),
            lambda task: record_evidence(task, delta),
            autostart=autostart,
        )

    def start_polling(
        self,
        task_id: str,
        *,
        source: Optional[EvidenceSource] = None,
        interval_seconds: Optional[float] = None,
    ) -> bool:
        """Start a background poller for an active session.

        Returns False (and starts nothing) unless the session is active.
        """
        with self._task_lock(task_id):
            task = self.get_task(task_id)
            if task.evidence.status != EvidenceStatus.ACTIVE:
                return False
            with self._pollers_lock:
                poller = self._pollers.get(task_id)
                if poller is not None and poller.is_running:
                    return True
                poller = EvidencePoller(
                    task_id,
                    source or self._source_factory(),
                    self._apply_polled,
                    interval_seconds or self.evidence_config["poll_interval_seconds"],
                    is_active=self._session_active,
                )
                self._pollers[task_id] = poller
                poller.start()
        logger.info("Polling evidence for task {}", task_id)
        return True

    def stop_polling(self, task_id: str) -> bool:
        with self._pollers_lock:
            poller = self._pollers.pop(task_id, None)
        if poller is None:
            return False
        poller.stop()
        logger.info("Stopped evidence polling for task {}", task_id)
        return True

    def is_polling(self, task_id: str) -> bool:
        with self._pollers_lock:
            poller = self._pollers.get(task_id)
        return poller is not None and poller.is_running

    def _session_active(self, task_id: str) -> bool:
        task = self.container.tasks.get(task_id)
        return task is not None and task.evidence.status == EvidenceStatus.ACTIVE

    def _apply_polled(self, task_id: str, delta: EvidenceDelta) -> bool:
        outcome = self.record_evidence(task_id, delta, autostart=False)
        return outcome.task.evidence.status == EvidenceStatus.ACTIVE

    def _sync_poller(self, task: Task, *, autostart: bool = True) -> None:
        if task.evidence.status != EvidenceStatus.ACTIVE:
            self.stop_polling(task.id)
        elif autostart and self.evidence_config["auto_poll"] and not self.is_polling(task.id):
            self.start_polling(task.id)

    def close(self) -> None:
        with self._pollers_lock:
            task_ids = list(self._pollers)
        for task_id in task_ids:
            self.stop_polling(task_id)

    # ------------------------------------------------------------------
    # Read accessors
    # ------------------------------------------------------------------

    def current_step(self, task_id: str) -> Optional[int]:
        return current_step(self.get_task(task_id))

    def guard_status(self, task_id: str) -> dict[str, Any]:
        return guard_status(self.get_task(task_id))

    def evidence_counts(self, task_id: str) -> dict[str, int]:
        return self.get_task(task_id).evidence.counts.to_dict()

    def summary(self, task_id: str) -> dict[str, Any]:
        return workflow_summary(self.get_task(task_id))

    def events(self, task_id: str) -> list[dict[str, Any]]:
        self.get_task(task_id)
        return self.container.events.for_entity(task_id)
