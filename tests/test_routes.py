"""Tests for api/routes.py -- HTTP endpoint handlers.

Uses FastAPI TestClient (backed by httpx) with a mocked CodegenWorkflow.
No real Docker or LLM calls are made.
"""

from collections.abc import Generator
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from agents.frameworks import Framework
from api.routes import router, set_workflow
from models.schemas import (
    FixResult,
    Fragment,
    Message,
    MessageRole,
    MessageType,
    Project,
    RunMode,
    RunStatus,
    TransferResult,
)
from sandbox.docker_sandbox import SandboxError, SandboxResumeError
from workflow import FragmentNotFoundError, ProjectNotFoundError, RunRecord

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


def _project(framework: Framework | None = None) -> Project:
    return Project(
        id="proj_aabb11223344",
        name="Todo App",
        framework=framework,
        created_at=1700000000.0,
        updated_at=1700000000.0,
    )


def _fragment() -> Fragment:
    return Fragment(
        id="frag_aabb11223344",
        message_id="msg_aabb11223344",
        sandbox_id="sbx_test123",
        sandbox_url="http://localhost:3000",
        title="Todo App",
        files={"app/page.tsx": "export default function Page() {}"},
        framework=Framework.NEXTJS,
        created_at=1700000000.0,
        updated_at=1700000000.0,
    )


@pytest.fixture()
def mock_workflow() -> MagicMock:
    """Create a mock CodegenWorkflow."""
    workflow = MagicMock()
    workflow.store = AsyncMock()
    workflow.store.create_project = AsyncMock(return_value=_project())
    workflow.store.get_project = AsyncMock(return_value=_project())
    workflow.store.list_messages = AsyncMock(return_value=[])
    workflow.store.get_fragment = AsyncMock(return_value=_fragment())
    workflow.start_run = AsyncMock(return_value="run_aabb11223344")
    workflow.get_run = MagicMock(
        return_value=RunRecord(
            run_id="run_aabb11223344",
            project_id="proj_aabb11223344",
            status=RunStatus.STARTED,
            created_at=1700000000.0,
        )
    )
    workflow.fix = AsyncMock(
        return_value=FixResult(
            success=True, message="No errors detected", run_id="run_fix123"
        )
    )
    workflow.transfer = AsyncMock(
        return_value=TransferResult(sandbox_id="sbx_test123", sandbox_url="http://localhost:49200")
    )
    workflow.sandbox_manager = MagicMock()
    workflow.sandbox_manager.is_docker_available = MagicMock(return_value=True)
    workflow.sandbox_manager.get_active_sandbox_ids = MagicMock(return_value=["sbx_test123"])
    return workflow


@pytest.fixture()
def client(mock_workflow: MagicMock) -> Generator[TestClient, None, None]:
    """Create a FastAPI TestClient with a mocked workflow."""
    app = FastAPI()
    app.include_router(router)
    set_workflow(mock_workflow)  # type: ignore[arg-type]
    with TestClient(app) as c:
        yield c


# =========================================================================
# Health Check
# =========================================================================


class TestHealthCheck:
    """GET /health."""

    def test_health_returns_200(self, client: TestClient) -> None:
        resp = client.get("/health")
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "healthy"
        assert data["docker_available"] is True
        assert data["active_sandboxes"] == 1
        assert "timestamp" in data

    def test_health_unhealthy_without_docker(
        self, client: TestClient, mock_workflow: MagicMock
    ) -> None:
        mock_workflow.sandbox_manager.is_docker_available.return_value = False
        data = client.get("/health").json()
        assert data["status"] == "unhealthy"


# =========================================================================
# Projects
# =========================================================================


class TestProjects:
    """POST /api/projects and GET /api/projects/{id}."""

    def test_create_project(self, client: TestClient, mock_workflow: MagicMock) -> None:
        resp = client.post("/api/projects", json={"name": "Todo App", "framework": "vue"})
        assert resp.status_code == 201
        assert resp.json()["id"] == "proj_aabb11223344"
        mock_workflow.store.create_project.assert_awaited_once_with("Todo App", Framework.VUE)

    def test_create_project_invalid_framework(self, client: TestClient) -> None:
        resp = client.post("/api/projects", json={"name": "App", "framework": "ember"})
        assert resp.status_code == 422

    def test_create_project_empty_name(self, client: TestClient) -> None:
        assert client.post("/api/projects", json={"name": ""}).status_code == 422

    def test_get_project(self, client: TestClient) -> None:
        resp = client.get("/api/projects/proj_aabb11223344")
        assert resp.status_code == 200
        assert resp.json()["name"] == "Todo App"

    def test_get_project_not_found(self, client: TestClient, mock_workflow: MagicMock) -> None:
        mock_workflow.store.get_project.return_value = None
        assert client.get("/api/projects/proj_missing").status_code == 404

    def test_list_messages(self, client: TestClient, mock_workflow: MagicMock) -> None:
        mock_workflow.store.list_messages.return_value = [
            Message(
                id="msg_1",
                project_id="proj_aabb11223344",
                content="Build a todo app",
                role=MessageRole.USER,
                type=MessageType.RESULT,
                created_at=1700000000.0,
            )
        ]
        resp = client.get("/api/projects/proj_aabb11223344/messages?limit=3")
        assert resp.status_code == 200
        assert [m["content"] for m in resp.json()] == ["Build a todo app"]
        mock_workflow.store.list_messages.assert_awaited_once_with("proj_aabb11223344", limit=3)

    def test_list_messages_unknown_project(
        self, client: TestClient, mock_workflow: MagicMock
    ) -> None:
        mock_workflow.store.get_project.return_value = None
        assert client.get("/api/projects/proj_missing/messages").status_code == 404


# =========================================================================
# Runs
# =========================================================================


class TestRuns:
    """POST /api/projects/{id}/runs and GET /api/runs/{id}."""

    def test_start_run(self, client: TestClient, mock_workflow: MagicMock) -> None:
        resp = client.post(
            "/api/projects/proj_aabb11223344/runs",
            json={"prompt": "Build a todo app", "mode": "fast"},
        )
        assert resp.status_code == 202
        data = resp.json()
        assert data["run_id"] == "run_aabb11223344"
        assert data["websocket_url"] == "/ws/run_aabb11223344"
        assert data["status"] == "started"

        request = mock_workflow.start_run.call_args.args[0]
        assert request.user_request == "Build a todo app"
        assert request.mode == RunMode.FAST

    def test_start_run_defaults_to_safe(
        self, client: TestClient, mock_workflow: MagicMock
    ) -> None:
        client.post("/api/projects/proj_aabb11223344/runs", json={"prompt": "Build it"})
        assert mock_workflow.start_run.call_args.args[0].mode == RunMode.SAFE

    def test_start_run_empty_prompt(self, client: TestClient) -> None:
        resp = client.post("/api/projects/proj_aabb11223344/runs", json={"prompt": ""})
        assert resp.status_code == 422

    def test_start_run_unknown_project(
        self, client: TestClient, mock_workflow: MagicMock
    ) -> None:
        mock_workflow.start_run.side_effect = ProjectNotFoundError("missing")
        resp = client.post("/api/projects/proj_missing/runs", json={"prompt": "Build it"})
        assert resp.status_code == 404

    def test_start_run_failure(self, client: TestClient, mock_workflow: MagicMock) -> None:
        mock_workflow.start_run.side_effect = RuntimeError("scheduler down")
        resp = client.post("/api/projects/proj_aabb11223344/runs", json={"prompt": "Build it"})
        assert resp.status_code == 500

    def test_get_run(self, client: TestClient) -> None:
        resp = client.get("/api/runs/run_aabb11223344")
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "started"
        assert data["result"] is None

    def test_get_run_not_found(self, client: TestClient, mock_workflow: MagicMock) -> None:
        mock_workflow.get_run.return_value = None
        assert client.get("/api/runs/run_missing").status_code == 404


# =========================================================================
# Fragments
# =========================================================================


class TestFragments:
    """GET /api/fragments/{id} and the fix/transfer actions."""

    def test_get_fragment(self, client: TestClient) -> None:
        resp = client.get("/api/fragments/frag_aabb11223344")
        assert resp.status_code == 200
        assert resp.json()["files"] == {"app/page.tsx": "export default function Page() {}"}

    def test_get_fragment_not_found(self, client: TestClient, mock_workflow: MagicMock) -> None:
        mock_workflow.store.get_fragment.return_value = None
        assert client.get("/api/fragments/frag_missing").status_code == 404

    def test_fix(self, client: TestClient) -> None:
        resp = client.post("/api/fragments/frag_aabb11223344/fix")
        assert resp.status_code == 200
        assert resp.json() == {
            "success": True,
            "message": "No errors detected",
            "summary": None,
            "remaining_errors": None,
            "run_id": "run_fix123",
        }

    def test_fix_not_found(self, client: TestClient, mock_workflow: MagicMock) -> None:
        mock_workflow.fix.side_effect = FragmentNotFoundError("Fragment not found")
        assert client.post("/api/fragments/frag_missing/fix").status_code == 404

    def test_fix_sandbox_gone(self, client: TestClient, mock_workflow: MagicMock) -> None:
        mock_workflow.fix.side_effect = SandboxResumeError("Sandbox is no longer active.")
        resp = client.post("/api/fragments/frag_aabb11223344/fix")
        assert resp.status_code == 410
        assert resp.json()["detail"] == "Sandbox is no longer active."

    def test_transfer(self, client: TestClient) -> None:
        resp = client.post("/api/fragments/frag_aabb11223344/transfer")
        assert resp.status_code == 200
        assert resp.json()["sandbox_url"] == "http://localhost:49200"

    def test_transfer_sandbox_gone(self, client: TestClient, mock_workflow: MagicMock) -> None:
        mock_workflow.transfer.side_effect = SandboxResumeError("Sandbox resume failed.")
        assert client.post("/api/fragments/frag_aabb11223344/transfer").status_code == 410

    def test_transfer_unresolvable_url(
        self, client: TestClient, mock_workflow: MagicMock
    ) -> None:
        mock_workflow.transfer.side_effect = SandboxError("port not published")
        assert client.post("/api/fragments/frag_aabb11223344/transfer").status_code == 500
