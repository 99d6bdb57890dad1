"""FastAPI application entry point for the code-generation backend.

This module initializes the FastAPI application with all middleware,
routers, and lifespan handlers configured.

Usage:
    uv run uvicorn main:app --reload
"""

import contextlib
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.routes import router, set_workflow
from api.websocket import websocket_router
from config import configure_logging, settings
from events import get_event_bus
from models.database import ProjectStore
from sandbox import SandboxManager
from workflow import CodegenWorkflow

# Configure structured logging
configure_logging(settings.log_level, settings.log_format)

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager for startup and shutdown events.

    Startup wires the store, sandbox manager and workflow, and starts the
    periodic sandbox sweep. Shutdown stops the sweep, cancels background
    runs and pauses the tracked sandboxes.

    Args:
        app: The FastAPI application instance.

    Yields:
        None during application runtime.
    """
    logger.info(
        "application_starting",
        backend_port=settings.backend_port,
        log_level=settings.log_level,
        use_mock_llm=settings.use_mock_llm,
    )

    store = ProjectStore(settings.database_path)
    await store.init()

    sandbox_manager = SandboxManager()
    workflow = CodegenWorkflow(store, sandbox_manager, get_event_bus())
    set_workflow(workflow)

    app.state.workflow = workflow
    app.state.store = store
    app.state.cleanup_task = await workflow.start_cleanup_loop()

    logger.info("application_started")

    yield

    logger.info("application_shutting_down")

    cleanup_task = app.state.cleanup_task
    if cleanup_task and not cleanup_task.done():
        cleanup_task.cancel()
        with contextlib.suppress(Exception):
            await cleanup_task

    await app.state.workflow.shutdown()

    logger.info("application_shutdown_complete")


app = FastAPI(
    title="Codegen Orchestrator",
    description="Backend API that drives an LLM coding agent inside isolated sandboxes, "
    "validates the output and persists the generated fragments.",
    version="0.1.0",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["*"],
    expose_headers=["*"],
)

app.include_router(router, tags=["codegen"])
app.include_router(websocket_router, tags=["websocket"])


@app.get("/", include_in_schema=False)
async def root() -> dict[str, str]:
    """Root endpoint pointing at the API documentation."""
    return {
        "message": "Codegen Orchestrator API",
        "docs": "/docs",
        "health": "/health",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=settings.backend_port,
        reload=True,
        log_level=settings.log_level.lower(),
    )
