"""The code agent's tool surface.

Exactly three tools are exposed to the model:

- ``terminal``: run a shell command in the sandbox, returning stdout
- ``createOrUpdateFiles``: write files to the sandbox
- ``readFiles``: read a batch of files as a JSON array

A ``CodeAgentTools`` instance is built per run and bound to one sandbox id.
Every handler mutates the sandbox first and reports the files it actually
wrote in ``ToolResult.files_written`` so that the router can merge them into
the agent state afterwards.
"""

import asyncio
import json
import re
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import structlog

from config import settings
from events.bus import EventBus
from events.types import AgentEvent, EventType
from sandbox.security import is_valid_file_path, to_workspace_relative

if TYPE_CHECKING:
    from sandbox.docker_sandbox import SandboxManager

logger = structlog.get_logger()

TERMINAL_TOOL = "terminal"
WRITE_FILES_TOOL = "createOrUpdateFiles"
READ_FILES_TOOL = "readFiles"

TOOL_DEFINITIONS: list[dict[str, Any]] = [
    {
        "name": TERMINAL_TOOL,
        "description": (
            "Use the terminal to run commands in the sandbox, e.g. "
            "`npm install <package> --yes`, `npm run lint`, `npm run build`."
        ),
        "parameters": {
            "type": "object",
            "properties": {
                "command": {
                    "type": "string",
                    "description": "Shell command to run in the workspace",
                },
            },
            "required": ["command"],
        },
    },
    {
        "name": WRITE_FILES_TOOL,
        "description": (
            "Create or update files in the sandbox. Paths are relative to the "
            "workspace; parent directories are created automatically."
        ),
        "parameters": {
            "type": "object",
            "properties": {
                "files": {
                    "type": "array",
                    "items": {
                        "type": "object",
                        "properties": {
                            "path": {"type": "string"},
                            "content": {"type": "string"},
                        },
                        "required": ["path", "content"],
                    },
                },
            },
            "required": ["files"],
        },
    },
    {
        "name": READ_FILES_TOOL,
        "description": "Read files from the sandbox. Returns a JSON array of {path, content}.",
        "parameters": {
            "type": "object",
            "properties": {
                "files": {
                    "type": "array",
                    "items": {"type": "string"},
                },
            },
            "required": ["files"],
        },
    },
]

MAX_COMMAND_OUTPUT_CHARS = 20_000
MAX_READ_FILE_CHARS = 60_000

# Dev servers are managed by the orchestrator; a tool call would never return.
_DEV_SERVER_COMMAND_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"^\s*(?:npm|pnpm|yarn)\s+(?:run\s+)?dev\b", re.IGNORECASE),
    re.compile(r"^\s*(?:npm|pnpm|yarn)\s+start\b", re.IGNORECASE),
    re.compile(r"^\s*(?:npx\s+)?(?:vite|next\s+dev|ng\s+serve)\b", re.IGNORECASE),
)


class ToolArgumentError(ValueError):
    """Raised when a tool call has invalid or unsupported arguments."""


def get_tool_definitions_for_llm() -> list[dict[str, Any]]:
    """Get tool definitions formatted for LLM function calling."""
    return [
        {
            "type": "function",
            "function": {
                "name": tool["name"],
                "description": tool["description"],
                "parameters": tool["parameters"],
            },
        }
        for tool in TOOL_DEFINITIONS
    ]


@dataclass
class ToolCall:
    """A parsed tool call from an LLM response."""

    id: str
    name: str
    args: dict[str, Any]


@dataclass
class ToolResult:
    """Result of executing a tool.

    Attributes:
        tool_call_id: ID of the tool call this result corresponds to
        content: The result content returned to the model
        success: Whether the tool execution succeeded
        error: Error message if execution failed
        files_written: Files confirmed written to the sandbox by this call
    """

    tool_call_id: str
    content: str
    success: bool
    error: str | None = None
    files_written: dict[str, str] = field(default_factory=dict)


def _truncate_text(text: str, *, max_chars: int) -> str:
    if len(text) <= max_chars:
        return text
    omitted = len(text) - max_chars
    return f"{text[:max_chars]}\n... [truncated {omitted} characters]"


class CodeAgentTools:
    """Tool handlers bound to a single sandbox.

    Attributes:
        sandbox_manager: Manager used for every sandbox operation.
        sandbox_id: The sandbox this tool set operates on.
    """

    def __init__(
        self,
        sandbox_manager: "SandboxManager",
        sandbox_id: str,
        event_bus: EventBus | None = None,
        run_id: str | None = None,
        command_timeout: int | None = None,
        read_timeout: float | None = None,
    ) -> None:
        self.sandbox_manager = sandbox_manager
        self.sandbox_id = sandbox_id
        self.event_bus = event_bus
        self.run_id = run_id
        self.command_timeout = command_timeout or settings.tool_timeout_seconds
        self.read_timeout = read_timeout or settings.file_read_timeout_seconds
        self.workspace = getattr(sandbox_manager, "workspace_path", settings.sandbox_workspace)

    async def execute(self, tool_call: ToolCall) -> ToolResult:
        """Execute one tool call and emit call/result events.

        Tool failures are reported to the model as text; they never raise.

        Args:
            tool_call: The parsed tool call.

        Returns:
            ToolResult describing the outcome.
        """
        start_time = time.time()
        await self._publish(
            EventType.AGENT_TOOL_CALL,
            {"tool": tool_call.name, "args": _summarize_args(tool_call.args)},
        )

        try:
            result = await self._dispatch(tool_call)
        except Exception as e:
            logger.error(
                "tool_execution_failed",
                tool_name=tool_call.name,
                sandbox_id=self.sandbox_id,
                error=str(e),
            )
            result = ToolResult(
                tool_call_id=tool_call.id,
                content=f"Error: {e}",
                success=False,
                error=str(e),
            )

        duration_ms = int((time.time() - start_time) * 1000)
        await self._publish(
            EventType.AGENT_TOOL_RESULT,
            {
                "tool": tool_call.name,
                "success": result.success,
                "result": result.content[:2000],
                "duration_ms": duration_ms,
            },
        )
        logger.debug(
            "tool_executed",
            tool_name=tool_call.name,
            sandbox_id=self.sandbox_id,
            success=result.success,
            duration_ms=duration_ms,
        )
        return result

    async def _dispatch(self, tool_call: ToolCall) -> ToolResult:
        if tool_call.name == TERMINAL_TOOL:
            return await self.terminal(tool_call.id, tool_call.args)
        if tool_call.name == WRITE_FILES_TOOL:
            return await self.create_or_update_files(tool_call.id, tool_call.args)
        if tool_call.name == READ_FILES_TOOL:
            return await self.read_files(tool_call.id, tool_call.args)
        raise ToolArgumentError(f"Unknown tool: {tool_call.name}")

    async def terminal(self, call_id: str, args: dict[str, Any]) -> ToolResult:
        """Run a command and return its stdout.

        stderr is logged but not returned to the model.
        """
        command = args.get("command")
        if not isinstance(command, str) or not command.strip():
            raise ToolArgumentError("Missing required argument: command")
        command = command.strip()

        for pattern in _DEV_SERVER_COMMAND_PATTERNS:
            if pattern.search(command):
                raise ToolArgumentError(
                    "Command blocked: the dev server is already running. "
                    "Use short commands like `npm run build` or `npm run lint`."
                )

        result = await self.sandbox_manager.execute_command(
            self.sandbox_id, command, timeout=self.command_timeout
        )
        if result.stderr:
            logger.debug(
                "terminal_stderr",
                sandbox_id=self.sandbox_id,
                command=command[:80],
                stderr=result.stderr[:500],
            )

        output = _truncate_text(result.stdout.strip(), max_chars=MAX_COMMAND_OUTPUT_CHARS)
        if result.timed_out:
            return ToolResult(
                tool_call_id=call_id,
                content=f"{output}\nCommand timed out after {self.command_timeout} seconds".strip(),
                success=False,
                error="timeout",
            )
        if result.exit_code != 0:
            return ToolResult(
                tool_call_id=call_id,
                content=f"{output}\nCommand exited with code {result.exit_code}".strip(),
                success=False,
                error=f"exit code {result.exit_code}",
            )
        return ToolResult(tool_call_id=call_id, content=output, success=True)

    async def create_or_update_files(
        self, call_id: str, args: dict[str, Any]
    ) -> ToolResult:
        """Write files to the sandbox, then report them as written.

        All paths are validated before the first write. Files are written in
        order; if a write fails, the files already written are still reported.
        """
        raw_files = args.get("files")
        if not isinstance(raw_files, list) or not raw_files:
            raise ToolArgumentError("Missing required argument: files")

        pending: list[tuple[str, str]] = []
        for entry in raw_files:
            if not isinstance(entry, dict):
                raise ToolArgumentError("Each file must be an object with path and content")
            path = entry.get("path")
            content = entry.get("content")
            if not isinstance(path, str) or not isinstance(content, str):
                raise ToolArgumentError("Each file needs string 'path' and 'content'")
            relative = to_workspace_relative(path.strip(), self.workspace)
            if not is_valid_file_path(relative, self.workspace):
                raise ToolArgumentError(f"Invalid file path: {path}")
            pending.append((relative, content))

        written: dict[str, str] = {}
        for path, content in pending:
            try:
                await self.sandbox_manager.write_file(self.sandbox_id, path, content)
            except Exception as e:
                logger.error(
                    "file_write_failed",
                    sandbox_id=self.sandbox_id,
                    path=path,
                    error=str(e),
                )
                return ToolResult(
                    tool_call_id=call_id,
                    content=f"Error writing {path}: {e}",
                    success=False,
                    error=str(e),
                    files_written=written,
                )
            written[path] = content
            await self._publish(
                EventType.FILE_CHANGED,
                {"path": path, "sandbox_id": self.sandbox_id},
            )

        return ToolResult(
            tool_call_id=call_id,
            content=f"Updated files: {', '.join(written)}",
            success=True,
            files_written=written,
        )

    async def read_files(self, call_id: str, args: dict[str, Any]) -> ToolResult:
        """Read a batch of files, skipping any that fail."""
        raw_paths = args.get("files")
        if isinstance(raw_paths, str):
            raw_paths = [raw_paths]
        if not isinstance(raw_paths, list):
            raise ToolArgumentError("Missing required argument: files")

        paths = [p.strip() for p in raw_paths if isinstance(p, str) and p.strip()]
        contents = await asyncio.gather(*(self._read_one(path) for path in paths))

        payload = [
            {"path": path, "content": _truncate_text(content, max_chars=MAX_READ_FILE_CHARS)}
            for path, content in zip(paths, contents, strict=True)
            if content is not None
        ]
        return ToolResult(
            tool_call_id=call_id,
            content=json.dumps(payload),
            success=True,
        )

    async def _read_one(self, path: str) -> str | None:
        try:
            return await asyncio.wait_for(
                self.sandbox_manager.read_file(self.sandbox_id, path),
                timeout=self.read_timeout,
            )
        except Exception as e:
            logger.warning(
                "file_read_skipped",
                sandbox_id=self.sandbox_id,
                path=path,
                error=str(e) or type(e).__name__,
            )
            return None

    async def _publish(self, event_type: EventType, data: dict[str, Any]) -> None:
        if self.event_bus is None or not self.run_id:
            return
        await self.event_bus.publish(
            AgentEvent(type=event_type, run_id=self.run_id, agent_id="code_agent", data=data)
        )


def _summarize_args(args: dict[str, Any]) -> dict[str, Any]:
    """Create a lightweight args payload for event emission."""
    summarized: dict[str, Any] = {}
    for key, value in args.items():
        if key == "files" and isinstance(value, list):
            summarized[key] = [
                item.get("path") if isinstance(item, dict) else item for item in value
            ]
        elif isinstance(value, str) and len(value) > 500:
            summarized[key] = f"{value[:500]}... [truncated]"
        else:
            summarized[key] = value
    return summarized
