"""Persisted records, workflow results and API schemas.

This module exposes the Pydantic models and the SQLite ProjectStore.
"""

from models.database import ProjectStore
from models.schemas import (
    CreateProjectRequest,
    CreateRunRequest,
    FixResult,
    Fragment,
    HealthResponse,
    Message,
    MessageRole,
    MessageStatus,
    MessageType,
    Project,
    RunMode,
    RunDetailResponse,
    RunRequest,
    RunResult,
    RunStartedResponse,
    RunStatus,
    TransferResult,
)

__all__ = [
    "CreateProjectRequest",
    "CreateRunRequest",
    "FixResult",
    "Fragment",
    "HealthResponse",
    "Message",
    "MessageRole",
    "MessageStatus",
    "MessageType",
    "Project",
    "ProjectStore",
    "RunMode",
    "RunDetailResponse",
    "RunRequest",
    "RunResult",
    "RunStartedResponse",
    "RunStatus",
    "TransferResult",
]
