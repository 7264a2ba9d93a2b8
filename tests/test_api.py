"""Tests for the workflow REST API."""

from __future__ import annotations

from pathlib import Path

import pytest
from httpx import ASGITransport, AsyncClient

from creative_workflow.server.api import create_app


@pytest.fixture
def app(tmp_path: Path):
    """Create a test app with a temp project directory."""
    project_dir = tmp_path / "studio"
    project_dir.mkdir()
    return create_app(project_dir=project_dir, enable_cors=False)


@pytest.fixture
async def client(app):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


async def _create_ai_task(client: AsyncClient) -> str:
    resp = await client.post("/api/tasks", json={"title": "Launch poster", "mode": "assisted"})
    assert resp.status_code == 201
    return resp.json()["task"]["id"]


async def _walk_to_clearance(client: AsyncClient, task_id: str) -> str:
    assert (await client.post(f"/api/tasks/{task_id}/advance")).status_code == 200
    assert (await client.post(f"/api/tasks/{task_id}/select-tool", json={"tool": "Midjourney"})).status_code == 200
    assert (await client.post(f"/api/tasks/{task_id}/advance")).status_code == 200
    assert (await client.post(f"/api/tasks/{task_id}/advance")).status_code == 200
    resp = await client.post(f"/api/tasks/{task_id}/assets", json={"name": "hero.png", "size": 2048, "asset_id": "asset-1"})
    assert resp.status_code == 200
    assert (await client.post(f"/api/tasks/{task_id}/advance")).status_code == 200
    resp = await client.post(f"/api/tasks/{task_id}/advance")
    assert resp.status_code == 200
    return resp.json()["task"]["clearance_case"]["id"]


@pytest.mark.anyio
class TestTaskCRUD:
    async def test_list_empty(self, client: AsyncClient) -> None:
        resp = await client.get("/api/tasks")
        assert resp.status_code == 200
        assert resp.json() == {"tasks": [], "total": 0}

    async def test_create_and_get(self, client: AsyncClient) -> None:
        task_id = await _create_ai_task(client)
        resp = await client.get(f"/api/tasks/{task_id}")
        assert resp.status_code == 200
        body = resp.json()
        assert body["task"]["workflow_step"] == 1
        assert body["summary"]["current_label"] == "Brief & Context"

    async def test_get_nonexistent(self, client: AsyncClient) -> None:
        resp = await client.get("/api/tasks/task-nope")
        assert resp.status_code == 404

    async def test_operation_on_nonexistent(self, client: AsyncClient) -> None:
        resp = await client.post("/api/tasks/task-nope/advance")
        assert resp.status_code == 404

    async def test_delete(self, client: AsyncClient) -> None:
        task_id = await _create_ai_task(client)
        assert (await client.delete(f"/api/tasks/{task_id}")).json() == {"status": "deleted"}
        assert (await client.delete(f"/api/tasks/{task_id}")).status_code == 404

    async def test_invalid_mode_is_unprocessable(self, client: AsyncClient) -> None:
        resp = await client.post("/api/tasks", json={"title": "x", "mode": "robotic"})
        assert resp.status_code == 422


@pytest.mark.anyio
class TestWorkflowRoutes:
    async def test_guard_failure_is_a_conflict(self, client: AsyncClient) -> None:
        task_id = await _create_ai_task(client)
        await client.post(f"/api/tasks/{task_id}/advance")
        resp = await client.post(f"/api/tasks/{task_id}/advance")
        assert resp.status_code == 409
        assert resp.json() == {"kind": "guard_failed", "message": "Select an AI tool to continue."}

        guard = (await client.get(f"/api/tasks/{task_id}/guard")).json()
        assert guard == {"step": 2, "passed": False, "message": "Select an AI tool to continue."}

    async def test_select_tool_sets_tracking(self, client: AsyncClient) -> None:
        task_id = await _create_ai_task(client)
        await client.post(f"/api/tasks/{task_id}/advance")
        resp = await client.post(f"/api/tasks/{task_id}/select-tool", json={"tool": "runway"})
        assert resp.status_code == 200
        body = resp.json()
        assert body["task"]["selected_tool"] == "Runway"
        assert body["task"]["tracking_level"] == "partial"
        assert body["notices"] == ["Runway selected"]

    async def test_skip_critical_stage(self, client: AsyncClient) -> None:
        task_id = await _create_ai_task(client)
        resp = await client.post(f"/api/tasks/{task_id}/skip", json={"step": 1})
        assert resp.status_code == 409
        assert resp.json()["kind"] == "skip_forbidden"

    async def test_jump_ahead(self, client: AsyncClient) -> None:
        task_id = await _create_ai_task(client)
        resp = await client.post(f"/api/tasks/{task_id}/jump", json={"target_step": 4})
        assert resp.status_code == 409
        assert resp.json()["kind"] == "invalid_jump"

    async def test_restart_needs_confirmation(self, client: AsyncClient) -> None:
        task_id = await _create_ai_task(client)
        resp = await client.post(f"/api/tasks/{task_id}/restart", json={})
        assert resp.status_code == 409
        assert resp.json()["kind"] == "confirmation_required"
        resp = await client.post(f"/api/tasks/{task_id}/restart", json={"confirm": True})
        assert resp.status_code == 200

    async def test_convert_then_advance(self, client: AsyncClient) -> None:
        task_id = await _create_ai_task(client)
        resp = await client.post(f"/api/tasks/{task_id}/convert-to-manual", json={"confirm": True})
        assert resp.status_code == 200
        resp = await client.post(f"/api/tasks/{task_id}/advance")
        assert resp.status_code == 409
        assert resp.json()["kind"] == "irreversible_action_already_taken"


@pytest.mark.anyio
class TestClearanceRoutes:
    async def test_rejection_and_remediation(self, client: AsyncClient) -> None:
        task_id = await _create_ai_task(client)
        case_id = await _walk_to_clearance(client, task_id)

        resp = await client.post(
            f"/api/tasks/{task_id}/clearance/lanes",
            json={"case_id": case_id, "lane": "legal", "outcome": "rejected", "feedback": "needs revision"},
        )
        assert resp.status_code == 200
        rejection = resp.json()["task"]["clearance_rejection"]
        assert rejection["rejected_by"] == "legal"
        assert rejection["feedback"] == "needs revision"
        assert rejection["rejected_asset"] == "asset-1"

        resp = await client.post(f"/api/tasks/{task_id}/remediation", json={"path": "documentation"})
        assert resp.status_code == 200
        assert resp.json()["task"]["workflow_step"] == 7

        resp = await client.post(f"/api/tasks/{task_id}/clearance/resubmit")
        assert resp.status_code == 200
        new_case_id = resp.json()["task"]["clearance_case"]["id"]
        assert new_case_id != case_id

        resp = await client.post(
            f"/api/tasks/{task_id}/clearance/lanes",
            json={"case_id": case_id, "lane": "qa", "outcome": "approved"},
        )
        assert resp.status_code == 200
        assert resp.json()["discarded"] is True
        assert resp.json()["kind"] == "stale_case"

        for lane in ("admin", "legal", "qa"):
            resp = await client.post(
                f"/api/tasks/{task_id}/clearance/lanes",
                json={"case_id": new_case_id, "lane": lane, "outcome": "approved"},
            )
            assert resp.status_code == 200
        assert resp.json()["summary"]["progress_percent"] == 100

    async def test_invalid_lane(self, client: AsyncClient) -> None:
        task_id = await _create_ai_task(client)
        resp = await client.post(
            f"/api/tasks/{task_id}/clearance/lanes",
            json={"case_id": "case-x", "lane": "marketing", "outcome": "approved"},
        )
        assert resp.status_code == 422


@pytest.mark.anyio
class TestEvidenceRoutes:
    async def test_activate_and_record(self, client: AsyncClient) -> None:
        task_id = await _create_ai_task(client)
        resp = await client.post(f"/api/tasks/{task_id}/evidence/poll", json={})
        assert resp.status_code == 409

        assert (await client.post(f"/api/tasks/{task_id}/evidence/activate")).status_code == 200
        for _ in range(3):
            resp = await client.post(f"/api/tasks/{task_id}/evidence/record", json={"prompts": 1})
            assert resp.status_code == 200
        body = (await client.get(f"/api/tasks/{task_id}/evidence")).json()
        assert body["evidence"]["status"] == "active"
        assert body["evidence"]["counts"]["prompts"] == 3
        assert body["polling"] is False

        resp = await client.post(f"/api/tasks/{task_id}/evidence/deactivate")
        assert resp.json()["task"]["evidence"]["status"] == "inactive"

    async def test_negative_increment_is_unprocessable(self, client: AsyncClient) -> None:
        task_id = await _create_ai_task(client)
        resp = await client.post(f"/api/tasks/{task_id}/evidence/record", json={"prompts": -2})
        assert resp.status_code == 422

    async def test_events_are_recorded(self, client: AsyncClient) -> None:
        task_id = await _create_ai_task(client)
        await client.post(f"/api/tasks/{task_id}/advance")
        resp = await client.get(f"/api/tasks/{task_id}/events")
        types = [e["type"] for e in resp.json()["events"]]
        assert types == ["task.created", "workflow.advance"]


@pytest.mark.anyio
class TestToolRoutes:
    async def test_list_tools(self, client: AsyncClient) -> None:
        resp = await client.get("/api/tools")
        assert resp.status_code == 200
        assert resp.json()["total"] == 6

        resp = await client.get("/api/tools", params={"category": "Audio Generation"})
        assert [t["name"] for t in resp.json()["tools"]] == ["ElevenLabs"]

    async def test_get_tool(self, client: AsyncClient) -> None:
        resp = await client.get("/api/tools/5")
        assert resp.json()["tool"]["name"] == "DALL-E 3"
        assert (await client.get("/api/tools/unknown")).status_code == 404

    async def test_health(self, client: AsyncClient) -> None:
        resp = await client.get("/api/health")
        assert resp.json()["status"] == "ok"
