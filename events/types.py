"""Event type definitions for code generation runs.

Every meaningful step of a run (framework choice, sandbox provisioning,
agent turns, tool calls, validation, repair and completion) produces an
event that streaming clients can follow.
"""

import time
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


class EventType(StrEnum):
    """All event types emitted by the orchestrator."""

    # Run lifecycle
    RUN_STARTED = "run_started"
    RUN_COMPLETE = "run_complete"
    RUN_ERROR = "run_error"
    RUN_CLOSED = "run_closed"

    # Setup
    FRAMEWORK_SELECTED = "framework_selected"
    SANDBOX_READY = "sandbox_ready"
    CONTEXT_FETCHED = "context_fetched"

    # Agent
    AGENT_TURN = "agent_turn"
    AGENT_TOOL_CALL = "agent_tool_call"
    AGENT_TOOL_RESULT = "agent_tool_result"
    AGENT_ERROR = "agent_error"
    FILE_CHANGED = "file_changed"

    # Validation and repair
    VALIDATION_RESULT = "validation_result"
    AUTO_FIX_ATTEMPT = "auto_fix_attempt"

    # Fix and transfer entry points
    FIX_STARTED = "fix_started"
    FIX_COMPLETE = "fix_complete"
    SANDBOX_TRANSFERRED = "sandbox_transferred"

    # Observability
    LLM_CALL_COMPLETE = "llm_call_complete"


class AgentEvent(BaseModel):
    """An event emitted during a run.

    Payload schemas by event type:

    FRAMEWORK_SELECTED:
        - framework: str - Chosen framework
        - source: str - "project", "classifier" or "fallback"

    SANDBOX_READY:
        - sandbox_id: str - Provisioned sandbox
        - template: str - Template actually used

    AGENT_TURN:
        - iteration: int - Turn number
        - route: str - Router state after the turn

    AGENT_TOOL_CALL / AGENT_TOOL_RESULT:
        - tool: str - Tool name
        - args: dict - Summarized arguments (call only)
        - success: bool - Whether the tool succeeded (result only)

    FILE_CHANGED:
        - path: str - Workspace-relative path
        - sandbox_id: str - Sandbox the file was written to

    VALIDATION_RESULT:
        - lint_matched: bool
        - build_matched: bool
        - categories: list[str] - Error categories found

    AUTO_FIX_ATTEMPT:
        - attempt: int - 1-based attempt number
        - outcome: str - "success", "retry" or "exhausted"
    """

    type: EventType
    timestamp: float = Field(default_factory=time.time)
    run_id: str
    agent_id: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)


class LLMMetrics(BaseModel):
    """Token and latency metrics for a single LLM call.

    Attributes:
        model: The model identifier
        input_tokens: Number of tokens in the prompt
        output_tokens: Number of tokens in the response
        latency_ms: Time taken for the LLM call in milliseconds
    """

    model: str
    input_tokens: int
    output_tokens: int
    latency_ms: int

    @property
    def total_tokens(self) -> int:
        """Total tokens used in this call."""
        return self.input_tokens + self.output_tokens
