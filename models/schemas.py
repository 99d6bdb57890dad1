"""Pydantic schemas for persisted records and API request/response models.

This module defines the Project, Message and Fragment records, the inputs
and results of the three workflow entry points, and the HTTP API models.
All models use Pydantic v2.
"""

from enum import StrEnum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from agents.frameworks import Framework


class MessageRole(StrEnum):
    """Author of a project message."""

    USER = "USER"
    ASSISTANT = "ASSISTANT"


class MessageType(StrEnum):
    """Kind of assistant output a message carries."""

    RESULT = "RESULT"
    ERROR = "ERROR"


class MessageStatus(StrEnum):
    """Message lifecycle status."""

    PENDING = "PENDING"
    COMPLETE = "COMPLETE"
    FAILED = "FAILED"


class RunStatus(StrEnum):
    """Background run lifecycle status."""

    STARTED = "started"
    RUNNING = "running"
    COMPLETE = "complete"
    ERROR = "error"


class RunMode(StrEnum):
    """How thoroughly a run checks its output.

    ``safe`` validates, auto-fixes and merges sandbox files; ``fast`` keeps
    only the files the agent wrote.
    """

    FAST = "fast"
    SAFE = "safe"


# ---------------------------------------------------------------------
# Persisted records
# ---------------------------------------------------------------------


class Project(BaseModel):
    """A project groups messages and remembers its framework."""

    id: str = Field(examples=["proj_abc123def456"])
    name: str
    framework: Framework | None = Field(
        default=None,
        description="Framework chosen by the first run; None until then",
    )
    created_at: float
    updated_at: float


class Fragment(BaseModel):
    """The persisted artifact of one run."""

    id: str = Field(examples=["frag_abc123def456"])
    message_id: str
    sandbox_id: str | None = None
    sandbox_url: str | None = None
    title: str
    files: dict[str, str] = Field(default_factory=dict)
    framework: Framework
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: float
    updated_at: float


class Message(BaseModel):
    """A user or assistant message in a project conversation."""

    id: str = Field(examples=["msg_abc123def456"])
    project_id: str
    content: str
    role: MessageRole
    type: MessageType
    status: MessageStatus = MessageStatus.COMPLETE
    created_at: float
    fragment: Fragment | None = None


# ---------------------------------------------------------------------
# Workflow inputs and results
# ---------------------------------------------------------------------


class RunRequest(BaseModel):
    """Input of the run entry point."""

    project_id: str
    user_request: str = Field(min_length=1, max_length=10000)
    mode: RunMode = RunMode.SAFE


class RunResult(BaseModel):
    """Output of the run entry point."""

    url: str | None = Field(default=None, description="Sandbox preview URL")
    title: str
    files: dict[str, str] = Field(default_factory=dict)
    summary: str = ""
    is_error: bool
    framework: Framework
    sandbox_id: str
    message_id: str
    fragment_id: str | None = None
    warnings: list[str] = Field(default_factory=list)
    error_reasons: list[str] = Field(default_factory=list)
    auto_fix_attempts: int = 0
    degraded: bool = False


class FixResult(BaseModel):
    """Output of the fix entry point."""

    success: bool
    message: str
    summary: str | None = None
    remaining_errors: str | None = None
    run_id: str | None = None


class TransferResult(BaseModel):
    """Output of the transfer entry point."""

    sandbox_id: str
    sandbox_url: str
    run_id: str | None = None


# ---------------------------------------------------------------------
# HTTP API models
# ---------------------------------------------------------------------


class CreateProjectRequest(BaseModel):
    """Request body for creating a project."""

    name: str = Field(
        min_length=1,
        max_length=200,
        description="Display name of the project",
        examples=["Todo App"],
    )
    framework: Framework | None = Field(
        default=None,
        description="Optional framework; classified from the first request when omitted",
    )


class CreateRunRequest(BaseModel):
    """Request body for starting a run on a project."""

    model_config = ConfigDict(populate_by_name=True)

    value: str = Field(
        min_length=1,
        max_length=10000,
        alias="prompt",
        description="The user's request",
        examples=["Build a todo app with filters and local storage"],
    )
    mode: RunMode = Field(default=RunMode.SAFE, description="Run mode")


class HealthResponse(BaseModel):
    """Health check response with infrastructure status."""

    status: Literal["healthy", "unhealthy"] = Field(
        description="Overall health status",
    )
    timestamp: float = Field(
        description="Current server timestamp",
    )
    version: str = Field(
        default="0.1.0",
        description="API version",
    )
    docker_available: bool = Field(
        default=False,
        description="Whether the Docker daemon is reachable",
    )
    active_sandboxes: int = Field(
        default=0,
        description="Number of sandboxes tracked by this process",
    )


class RunStartedResponse(BaseModel):
    """Response for starting a background run."""

    run_id: str = Field(
        description="Unique run identifier",
        examples=["run_abc123def456"],
    )
    project_id: str
    websocket_url: str = Field(
        description="WebSocket URL for real-time event streaming",
        examples=["/ws/run_abc123def456"],
    )
    status: RunStatus


class RunDetailResponse(BaseModel):
    """Status and, once finished, the result of a background run."""

    run_id: str
    project_id: str
    status: RunStatus
    created_at: float
    completed_at: float | None = None
    error_message: str | None = None
    result: RunResult | None = None
