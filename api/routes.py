"""HTTP API routes for the code-generation backend.

This module defines the HTTP endpoints for projects, runs, fragments and
health checks. Real-time run events are handled via WebSocket in
websocket.py.
"""

from __future__ import annotations

import time
from typing import TYPE_CHECKING, Annotated

import structlog
from fastapi import APIRouter, HTTPException, Path, Query, status

from models.schemas import (
    CreateProjectRequest,
    CreateRunRequest,
    FixResult,
    Fragment,
    HealthResponse,
    Message,
    Project,
    RunDetailResponse,
    RunRequest,
    RunStartedResponse,
    RunStatus,
    TransferResult,
)
from sandbox.docker_sandbox import SandboxError, SandboxResumeError
from workflow import FragmentNotFoundError, ProjectNotFoundError

if TYPE_CHECKING:
    from workflow import CodegenWorkflow

logger = structlog.get_logger(__name__)

router = APIRouter()


# Workflow dependency (set during application startup)
_workflow: CodegenWorkflow | None = None


def set_workflow(workflow: CodegenWorkflow) -> None:
    """Set the workflow instance for the routes.

    This should be called during application startup to inject the
    workflow dependency.

    Args:
        workflow: The CodegenWorkflow instance to use for all routes.
    """
    global _workflow
    _workflow = workflow
    logger.info("workflow_configured")


def get_workflow() -> CodegenWorkflow:
    """Get the workflow instance.

    Raises:
        RuntimeError: If the workflow has not been configured.
    """
    if _workflow is None:
        logger.error("workflow_not_configured")
        raise RuntimeError("CodegenWorkflow not configured. Call set_workflow() during startup.")
    return _workflow


def _not_found(detail: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=detail)


# -----------------------------------------------------------------------------
# Projects
# -----------------------------------------------------------------------------


@router.post(
    "/api/projects",
    response_model=Project,
    status_code=status.HTTP_201_CREATED,
    summary="Create a project",
)
async def create_project(request: CreateProjectRequest) -> Project:
    """Create a project, optionally with its framework fixed up front."""
    workflow = get_workflow()
    try:
        project = await workflow.store.create_project(request.name, request.framework)
    except Exception as e:
        logger.error("project_creation_failed", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to create project: {e}",
        ) from e

    logger.info("project_created", project_id=project.id)
    return project


@router.get(
    "/api/projects/{project_id}",
    response_model=Project,
    summary="Get a project",
)
async def get_project(
    project_id: Annotated[str, Path(description="The project ID")],
) -> Project:
    project = await get_workflow().store.get_project(project_id)
    if project is None:
        logger.warning("project_not_found", project_id=project_id)
        raise _not_found(f"Project {project_id} not found")
    return project


@router.get(
    "/api/projects/{project_id}/messages",
    response_model=list[Message],
    summary="List project messages",
    description="List the project's messages oldest first, each with its fragment.",
)
async def list_messages(
    project_id: Annotated[str, Path(description="The project ID")],
    limit: Annotated[int | None, Query(ge=1, le=500)] = None,
) -> list[Message]:
    store = get_workflow().store
    if await store.get_project(project_id) is None:
        raise _not_found(f"Project {project_id} not found")
    return await store.list_messages(project_id, limit=limit)


# -----------------------------------------------------------------------------
# Runs
# -----------------------------------------------------------------------------


@router.post(
    "/api/projects/{project_id}/runs",
    response_model=RunStartedResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Start a run",
    description=(
        "Start a code-generation run in the background. Progress is streamed "
        "on the returned WebSocket URL."
    ),
)
async def start_run(
    project_id: Annotated[str, Path(description="The project ID")],
    request: CreateRunRequest,
) -> RunStartedResponse:
    """Schedule a run for a project.

    Raises:
        HTTPException: 404 if the project does not exist, 500 if scheduling fails.
    """
    workflow = get_workflow()
    try:
        run_id = await workflow.start_run(
            RunRequest(project_id=project_id, user_request=request.value, mode=request.mode)
        )
    except ProjectNotFoundError:
        logger.warning("start_run_project_not_found", project_id=project_id)
        raise _not_found(f"Project {project_id} not found") from None
    except Exception as e:
        logger.error("start_run_failed", project_id=project_id, error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to start run: {e}",
        ) from e

    record = workflow.get_run(run_id)
    logger.info("run_started", run_id=run_id, project_id=project_id, mode=request.mode.value)
    return RunStartedResponse(
        run_id=run_id,
        project_id=project_id,
        websocket_url=f"/ws/{run_id}",
        status=record.status if record else RunStatus.STARTED,
    )


@router.get(
    "/api/runs/{run_id}",
    response_model=RunDetailResponse,
    summary="Get run status",
)
async def get_run(
    run_id: Annotated[str, Path(description="The run ID")],
) -> RunDetailResponse:
    record = get_workflow().get_run(run_id)
    if record is None:
        raise _not_found(f"Run {run_id} not found")
    return RunDetailResponse(
        run_id=record.run_id,
        project_id=record.project_id,
        status=record.status,
        created_at=record.created_at,
        completed_at=record.completed_at,
        error_message=record.error_message,
        result=record.result,
    )


# -----------------------------------------------------------------------------
# Fragments
# -----------------------------------------------------------------------------


@router.get(
    "/api/fragments/{fragment_id}",
    response_model=Fragment,
    summary="Get a fragment",
)
async def get_fragment(
    fragment_id: Annotated[str, Path(description="The fragment ID")],
) -> Fragment:
    fragment = await get_workflow().store.get_fragment(fragment_id)
    if fragment is None:
        raise _not_found("Fragment not found")
    return fragment


@router.post(
    "/api/fragments/{fragment_id}/fix",
    response_model=FixResult,
    summary="Fix a fragment",
    description=(
        "Re-validate the fragment's sandbox and repair lint/build errors. "
        "Returns immediately when no errors are found."
    ),
)
async def fix_fragment(
    fragment_id: Annotated[str, Path(description="The fragment ID")],
) -> FixResult:
    """Run the fix entry point.

    Raises:
        HTTPException: 404 for an unknown fragment, 410 when its sandbox is gone.
    """
    try:
        result = await get_workflow().fix(fragment_id)
    except FragmentNotFoundError as e:
        raise _not_found(str(e)) from None
    except SandboxResumeError as e:
        logger.warning("fix_sandbox_gone", fragment_id=fragment_id, error=str(e))
        raise HTTPException(status_code=status.HTTP_410_GONE, detail=str(e)) from e

    logger.info("fragment_fixed", fragment_id=fragment_id, success=result.success)
    return result


@router.post(
    "/api/fragments/{fragment_id}/transfer",
    response_model=TransferResult,
    summary="Transfer a fragment to its sandbox",
    description="Resume the fragment's sandbox, restart its dev server and refresh the URL.",
)
async def transfer_fragment(
    fragment_id: Annotated[str, Path(description="The fragment ID")],
) -> TransferResult:
    """Run the transfer entry point.

    Raises:
        HTTPException: 404 for an unknown fragment, 410 when its sandbox is
            gone, 500 when the sandbox URL cannot be resolved.
    """
    try:
        return await get_workflow().transfer(fragment_id)
    except FragmentNotFoundError as e:
        raise _not_found(str(e)) from None
    except SandboxResumeError as e:
        logger.warning("transfer_sandbox_gone", fragment_id=fragment_id, error=str(e))
        raise HTTPException(status_code=status.HTTP_410_GONE, detail=str(e)) from e
    except (SandboxError, KeyError) as e:
        logger.error("transfer_failed", fragment_id=fragment_id, error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to transfer fragment: {e}",
        ) from e


# -----------------------------------------------------------------------------
# Health
# -----------------------------------------------------------------------------


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Health check endpoint with Docker and sandbox status.",
)
async def health_check() -> HealthResponse:
    """Health check endpoint with infrastructure status.

    Returns Docker daemon connectivity and the number of tracked sandboxes
    in addition to the basic health status and timestamp.
    """
    docker_available = False
    active_sandboxes = 0

    try:
        sandbox_manager = get_workflow().sandbox_manager
        docker_available = sandbox_manager.is_docker_available()
        active_sandboxes = len(sandbox_manager.get_active_sandbox_ids())
    except RuntimeError:
        # Workflow not configured yet (e.g., during startup)
        pass
    except Exception as e:
        logger.warning("health_check_partial_failure", error=str(e))

    return HealthResponse(
        status="healthy" if docker_available else "unhealthy",
        timestamp=time.time(),
        docker_available=docker_available,
        active_sandboxes=active_sandboxes,
    )
