"""Shared test fixtures for backend tests.

Provides mock objects for SandboxManager, EventBus, LLM clients and a
temporary SQLite store so that tests never touch real Docker containers
or LLM APIs.
"""

import sys
from collections import defaultdict
from collections.abc import Callable
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

# Ensure the backend package root is on sys.path so that absolute imports
# like ``from sandbox.security import ...`` resolve correctly when running
# pytest from the repository root.
_backend_root = str(
    __import__("pathlib").Path(__file__).resolve().parent.parent
)
if _backend_root not in sys.path:
    sys.path.insert(0, _backend_root)

from agents.frameworks import Framework  # noqa: E402
from agents.llm import LLMResponse, MockLLMClient, ToolCallData  # noqa: E402
from events.bus import EventBus, reset_event_bus  # noqa: E402
from events.types import AgentEvent, LLMMetrics  # noqa: E402
from models.database import ProjectStore  # noqa: E402
from sandbox.docker_sandbox import CommandResult, FileInfo, SandboxInfo  # noqa: E402

WORKSPACE = "/home/user"

# ---------------------------------------------------------------------------
# Event Bus
# ---------------------------------------------------------------------------


@pytest.fixture()
def event_bus() -> EventBus:
    """Return a fresh EventBus instance for each test."""
    reset_event_bus()
    bus = EventBus()
    return bus


# ---------------------------------------------------------------------------
# Mock Sandbox Manager
# ---------------------------------------------------------------------------


def make_sandbox_info(
    sandbox_id: str = "sbx_test123",
    template: str = "zapdev",
) -> SandboxInfo:
    return SandboxInfo(
        sandbox_id=sandbox_id,
        container_id="container_abc",
        template=template,
        workspace_path=WORKSPACE,
        created_at=1700000000.0,
    )


def ok(stdout: str = "OK") -> CommandResult:
    return CommandResult(stdout=stdout, stderr="", exit_code=0)


def failed(output: str, exit_code: int = 1) -> CommandResult:
    return CommandResult(stdout=output, stderr="", exit_code=exit_code)


def script_commands(
    mgr: AsyncMock,
    lint: list[CommandResult] | None = None,
    build: list[CommandResult] | None = None,
) -> None:
    """Script lint/build results per validation pass.

    Each pass consumes the next result; the last one repeats. Any other
    command succeeds.
    """
    queues = {"npm run lint": list(lint or [ok()]), "npm run build": list(build or [ok()])}

    async def _execute(sandbox_id: str, command: str, timeout: int = 60) -> CommandResult:
        queue = queues.get(command)
        if queue is None:
            return ok()
        return queue.pop(0) if len(queue) > 1 else queue[0]

    mgr.execute_command = AsyncMock(side_effect=_execute)


def _make_mock_sandbox_manager() -> AsyncMock:
    """Create a fully-typed mock SandboxManager.

    All methods are AsyncMock by default. Callers can override
    return values per-test.
    """
    mgr = AsyncMock()
    mgr.workspace_path = WORKSPACE
    mgr.create_for_framework = AsyncMock(
        side_effect=lambda framework: (make_sandbox_info(), framework)
    )
    mgr.resume = AsyncMock(return_value=make_sandbox_info())
    mgr.release = AsyncMock()
    mgr.write_file = AsyncMock()
    mgr.read_file = AsyncMock(return_value="file content")
    mgr.list_files_recursive = AsyncMock(return_value=[])
    mgr.execute_command = AsyncMock(return_value=ok())
    mgr.ensure_dev_server = AsyncMock(return_value=True)
    mgr.get_host = AsyncMock(return_value="http://localhost:3000")
    mgr.sweep_paused = AsyncMock(return_value=[])
    mgr.pause_all = AsyncMock()
    mgr.is_docker_available = MagicMock(return_value=True)
    mgr.get_active_sandbox_ids = MagicMock(return_value=[])
    return mgr


@pytest.fixture()
def mock_sandbox_manager() -> AsyncMock:
    """Provide a mock SandboxManager for each test."""
    return _make_mock_sandbox_manager()


def file_entry(path: str, size: int = 100, is_directory: bool = False) -> FileInfo:
    return FileInfo(name=path.rsplit("/", 1)[-1], path=path, is_directory=is_directory, size=size)


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


@pytest.fixture()
async def store(tmp_path: Any) -> ProjectStore:
    """Provide an initialized ProjectStore backed by a temp file."""
    project_store = ProjectStore(str(tmp_path / "codegen.db"))
    await project_store.init()
    return project_store


# ---------------------------------------------------------------------------
# Mock LLM helpers
# ---------------------------------------------------------------------------


@pytest.fixture()
def mock_llm_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Set USE_MOCK_LLM=true in the environment."""
    monkeypatch.setenv("USE_MOCK_LLM", "true")


# ---------------------------------------------------------------------------
# Response Factories
# ---------------------------------------------------------------------------


def make_llm_response(
    content: str = "",
    tool_calls: list[ToolCallData] | None = None,
    finish_reason: str = "stop",
) -> LLMResponse:
    """Create an LLMResponse with sensible defaults."""
    return LLMResponse(
        content=content,
        tool_calls=tool_calls or [],
        finish_reason="tool_calls" if tool_calls else finish_reason,
        metrics=LLMMetrics(model="mock", input_tokens=10, output_tokens=20, latency_ms=100),
    )


def make_tool_call(name: str, args: dict[str, Any], call_id: str = "tc_1") -> ToolCallData:
    """Create a ToolCallData."""
    return ToolCallData(id=call_id, name=name, args=args)


def write_files_response(files: dict[str, str], call_id: str = "tc_write") -> LLMResponse:
    """An assistant turn that writes ``files`` with createOrUpdateFiles."""
    return make_llm_response(
        tool_calls=[
            make_tool_call(
                "createOrUpdateFiles",
                {"files": [{"path": p, "content": c} for p, c in files.items()]},
                call_id=call_id,
            )
        ]
    )


def summary_response(text: str = "Built the requested UI.") -> LLMResponse:
    return make_llm_response(f"Done.\n<task_summary>{text}</task_summary>")


SHADCN_PAGE = (
    'import { Button } from "@/components/ui/button";\n'
    "export default function Page() { return <Button>Add</Button>; }\n"
)


# ---------------------------------------------------------------------------
# Event Collection Helper
# ---------------------------------------------------------------------------


async def collect_events(event_bus: EventBus, run_id: str) -> list[AgentEvent]:
    """Subscribe to a run and drain all buffered events."""
    queue = event_bus.subscribe(run_id)
    events: list[AgentEvent] = []
    while not queue.empty():
        events.append(queue.get_nowait())
    return events


# ---------------------------------------------------------------------------
# RoutingMockLLMClient
# ---------------------------------------------------------------------------


class RoutingMockLLMClient(MockLLMClient):
    """Mock LLM that routes responses by agent_id.

    A run talks to several logical agents (framework selector, code agent,
    title and response generators), and title/response generation runs
    concurrently. Routing by ``agent_id`` keeps each script deterministic.

    Args:
        response_map: Dict mapping agent_id -> list of LLMResponses, or a
            callable returning the response. Use ``"default"`` for calls
            without a matching agent_id. When a list is exhausted its last
            response repeats.
    """

    def __init__(
        self,
        response_map: dict[str, list[LLMResponse] | Callable[[], LLMResponse]],
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self._response_map = {
            k: (v if callable(v) else list(v)) for k, v in response_map.items()
        }
        self._indexes: dict[str, int] = defaultdict(int)

    async def call(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        model: str | None = None,
        temperature: float = 0.7,
        max_tokens: int | None = None,
        run_id: str | None = None,
        agent_id: str | None = None,
    ) -> LLMResponse:
        self.call_history.append({"agent_id": agent_id, "messages": list(messages), "tools": tools})
        key = agent_id if agent_id in self._response_map else "default"
        script = self._response_map[key]
        if callable(script):
            return script()
        idx = min(self._indexes[key], len(script) - 1)
        self._indexes[key] += 1
        return script[idx]

    def calls_for(self, agent_id: str) -> list[dict[str, Any]]:
        return [call for call in self.call_history if call["agent_id"] == agent_id]


def failing_response() -> LLMResponse:
    raise RuntimeError("provider unavailable")


@pytest.fixture()
def nextjs() -> Framework:
    return Framework.NEXTJS
