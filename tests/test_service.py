"""Test the workflow service: persistence, ordering, events and polling."""

from __future__ import annotations

import threading
import time
from pathlib import Path
from typing import Optional

import pytest

from creative_workflow.container import Container
from creative_workflow.errors import ErrorKind, InvariantViolation, TaskNotFoundError
from creative_workflow.evidence import EvidenceDelta
from creative_workflow.models import EvidenceStatus, LaneState, ReviewLane, Task, TaskMode, TrackingLevel
from creative_workflow.service import WorkflowService
from creative_workflow.tools import AITool, ToolCatalog


class _FixedSource:
    def next_batch(self) -> Optional[EvidenceDelta]:
        return EvidenceDelta(prompts=1)


class _SilentSource:
    def next_batch(self) -> Optional[EvidenceDelta]:
        return None


@pytest.fixture
def service(tmp_path: Path):
    svc = WorkflowService(Container(tmp_path), source_factory=_FixedSource)
    yield svc
    svc.close()


def _to_stage_seven(service: WorkflowService, task_id: str) -> None:
    assert service.advance(task_id).ok
    assert service.select_tool(task_id, "Midjourney").ok
    assert service.advance(task_id).ok
    assert service.advance(task_id).ok
    assert service.add_asset(task_id, "hero.png", size=1024, asset_id="asset-1").ok
    assert service.advance(task_id).ok
    assert service.advance(task_id).ok


def _wait_for(predicate, timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


class TestTasks:
    def test_create_manual_and_ai_tasks(self, service: WorkflowService) -> None:
        manual = service.create_task("Brochure")
        assert manual.mode == TaskMode.MANUAL
        assert manual.workflow_step is None
        assert manual.evidence.status == EvidenceStatus.NOT_NEEDED

        ai = service.create_task("Poster", mode="assisted", project_id="p1")
        assert ai.workflow_step == 1
        assert ai.evidence.status == EvidenceStatus.INACTIVE
        assert {t.id for t in service.list_tasks()} == {manual.id, ai.id}
        assert [t.id for t in service.list_tasks("assisted")] == [ai.id]

    def test_unknown_task(self, service: WorkflowService) -> None:
        with pytest.raises(TaskNotFoundError):
            service.advance("task-missing")
        with pytest.raises(TaskNotFoundError):
            service.delete_task("task-missing")

    def test_state_survives_a_new_service(self, service: WorkflowService, tmp_path: Path) -> None:
        task = service.create_task("Poster", mode="generative")
        _to_stage_seven(service, task.id)

        reopened = WorkflowService(Container(tmp_path))
        loaded = reopened.get_task(task.id)
        assert loaded.workflow_step == 7
        assert loaded.tracking_level == TrackingLevel.FULL
        assert loaded.clearance_case is not None
        assert reopened.current_step(task.id) == 7
        assert reopened.guard_status(task.id)["passed"] is True

    def test_enter_ai_mode_on_manual_task(self, service: WorkflowService) -> None:
        task = service.create_task("Brochure")
        outcome = service.enter_ai_mode(task.id, "generative")
        assert outcome.ok
        assert service.current_step(task.id) == 1

    def test_delete(self, service: WorkflowService) -> None:
        task = service.create_task("Temp")
        service.delete_task(task.id)
        with pytest.raises(TaskNotFoundError):
            service.get_task(task.id)


class TestOperations:
    def test_failed_operation_is_not_persisted(self, service: WorkflowService) -> None:
        task = service.create_task("Poster", mode="assisted")
        service.advance(task.id)
        outcome = service.advance(task.id)
        assert outcome.error is not None
        assert outcome.error.kind == ErrorKind.GUARD_FAILED
        assert service.current_step(task.id) == 2
        types = [e["type"] for e in service.events(task.id)]
        assert types == ["task.created", "workflow.advance"]

    def test_select_tool_resolves_catalog_names(self, service: WorkflowService) -> None:
        task = service.create_task("Poster", mode="assisted")
        service.advance(task.id)
        outcome = service.select_tool(task.id, "3")
        assert outcome.ok
        assert outcome.task.selected_tool == "ElevenLabs"
        assert outcome.task.tracking_level == TrackingLevel.PARTIAL

    def test_unknown_tool_has_no_tracking(self, service: WorkflowService) -> None:
        task = service.create_task("Poster", mode="assisted")
        service.advance(task.id)
        outcome = service.select_tool(task.id, "ToolX")
        assert outcome.ok
        assert outcome.task.tracking_level == TrackingLevel.NONE

    def test_unavailable_tool_is_refused(self, tmp_path: Path) -> None:
        catalog = ToolCatalog([AITool(id="r", name="Restricted", project_availability="restricted")])
        service = WorkflowService(Container(tmp_path), catalog=catalog)
        task = service.create_task("Poster", mode="assisted", project_id="p1")
        service.advance(task.id)
        outcome = service.select_tool(task.id, "Restricted")
        assert outcome.error is not None
        assert outcome.error.kind == ErrorKind.INVALID_STATE
        assert service.get_task(task.id).selected_tool is None

    def test_clearance_round_trip(self, service: WorkflowService) -> None:
        task = service.create_task("Poster", mode="assisted")
        _to_stage_seven(service, task.id)
        case_id = service.get_task(task.id).clearance_case.id

        assert service.resolve_lane(task.id, case_id, "admin", "approved").ok
        rejected = service.resolve_lane(task.id, case_id, "legal", "rejected", feedback="needs revision")
        assert rejected.ok
        assert rejected.task.clearance_rejection.rejected_by.value == "legal"

        remediated = service.choose_remediation(task.id, "upload")
        assert remediated.task.workflow_step == 5
        assert remediated.task.clearance_rejection is None

        service.advance(task.id)
        service.advance(task.id)
        new_case = service.get_task(task.id).clearance_case
        assert new_case.id != case_id

        stale = service.resolve_lane(task.id, case_id, "qa", "approved")
        assert stale.error is not None
        assert stale.error.kind == ErrorKind.STALE_CASE
        assert service.get_task(task.id).clearance_case.lanes[ReviewLane.QA] == LaneState.PENDING

        for lane in ("qa", "legal", "admin"):
            assert service.resolve_lane(task.id, new_case.id, lane, "approved").ok
        summary = service.summary(task.id)
        assert summary["progress_percent"] == 100
        assert summary["clearance"]["status"] == "approved"

    def test_restart_and_convert_require_confirmation(self, service: WorkflowService) -> None:
        task = service.create_task("Poster", mode="assisted")
        assert service.restart(task.id).error.kind == ErrorKind.CONFIRMATION_REQUIRED
        assert service.convert_to_manual(task.id).error.kind == ErrorKind.CONFIRMATION_REQUIRED
        assert service.convert_to_manual(task.id, confirm=True).ok
        assert service.advance(task.id).error.kind == ErrorKind.IRREVERSIBLE_ACTION_ALREADY_TAKEN

    def test_corrupt_task_raises(self, service: WorkflowService) -> None:
        task = Task(title="corrupt", mode=TaskMode.ASSISTED, workflow_step=12)
        service.container.tasks.upsert(task)
        with pytest.raises(InvariantViolation):
            service.advance(task.id)


class TestEvidence:
    def test_manual_recording(self, service: WorkflowService) -> None:
        task = service.create_task("Poster", mode="assisted")
        assert service.activate_evidence(task.id).ok
        for _ in range(3):
            service.record_evidence(task.id, EvidenceDelta(prompts=1))
        assert service.evidence_counts(task.id) == {"prompts": 3, "generations": 0, "downloads": 0}

    def test_polling_stops_when_session_deactivates(self, service: WorkflowService) -> None:
        task = service.create_task("Poster", mode="assisted")
        assert service.start_polling(task.id) is False

        service.activate_evidence(task.id)
        assert service.start_polling(task.id, interval_seconds=0.01) is True
        assert _wait_for(lambda: service.evidence_counts(task.id)["prompts"] >= 2)

        service.deactivate_evidence(task.id)
        assert not service.is_polling(task.id)
        frozen = service.evidence_counts(task.id)["prompts"]
        time.sleep(0.05)
        assert service.evidence_counts(task.id)["prompts"] == frozen

    def test_auto_poll_on_activation(self, tmp_path: Path) -> None:
        config = {"evidence": {"auto_poll": True, "poll_interval_seconds": 0.01}}
        service = WorkflowService(Container(tmp_path), config=config, source_factory=_FixedSource)
        try:
            task = service.create_task("Poster", mode="assisted")
            service.activate_evidence(task.id)
            assert service.is_polling(task.id)
            assert _wait_for(lambda: service.evidence_counts(task.id)["prompts"] >= 1)
            service.convert_to_manual(task.id, confirm=True)
            assert not service.is_polling(task.id)
        finally:
            service.close()

    def test_quiet_poller_stops_when_another_process_deactivates(self, tmp_path: Path) -> None:
        server = WorkflowService(Container(tmp_path), source_factory=_SilentSource)
        try:
            task = server.create_task("Poster", mode="assisted")
            server.activate_evidence(task.id)
            assert server.start_polling(task.id, interval_seconds=0.01) is True

            cli = WorkflowService(Container(tmp_path))
            assert cli.deactivate_evidence(task.id).ok
            assert _wait_for(lambda: not server.is_polling(task.id))
            assert server.start_polling(task.id) is False
        finally:
            server.close()


class TestOrdering:
    def test_concurrent_records_are_all_applied(self, service: WorkflowService) -> None:
        task = service.create_task("Poster", mode="assisted")
        service.activate_evidence(task.id)
        workers = 8
        barrier = threading.Barrier(workers)

        def _record() -> None:
            barrier.wait()
            assert service.record_evidence(task.id, EvidenceDelta(prompts=1)).ok

        threads = [threading.Thread(target=_record) for _ in range(workers)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(10)

        assert service.evidence_counts(task.id)["prompts"] == workers
        recorded = [e for e in service.events(task.id) if e["type"] == "workflow.record_evidence"]
        assert len(recorded) == workers
