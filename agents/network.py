"""Agent network router implemented as a LangGraph state machine.

The network drives the code agent through turns until it reports completion:

    START -> agent -> [tools -> agent]* -> route -> [agent | END]

A *turn* is one agent run: the model is called repeatedly, executing its
tool calls, until it answers without tool calls (or emits the completion
marker). After every turn the router evaluates the state:

- AWAITING_FILES: no files yet; the agent is invoked again.
- AWAITING_SUMMARY: files exist but no ``<task_summary>``; the agent is asked
  for the marker until the retry cap is reached, after which a summary is
  synthesized from the file list.
- TERMINAL: summary present, retry cap exhausted, or the turn ceiling hit.
"""

import operator
import re
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Annotated, Any, TypedDict

import structlog
from langgraph.graph import END, START, StateGraph

from agents.frameworks import Framework
from agents.llm import (
    LLMClient,
    format_assistant_message_with_tools,
    format_tool_result_for_llm,
    normalize_tool_args,
)
from agents.prompts import SUMMARY_REQUEST_PROMPT
from agents.tools import CodeAgentTools, ToolCall, get_tool_definitions_for_llm
from config import settings
from events.bus import EventBus
from events.types import AgentEvent, EventType

logger = structlog.get_logger()

SUMMARY_TAG_RE = re.compile(r"<task_summary>([\s\S]*?)</task_summary>", re.IGNORECASE)

# Files listed by name in a synthesized summary.
SUMMARY_PREVIEW_FILES = 5

CONTINUE_PROMPT = (
    "No files have been created yet. Continue the task and write the "
    "implementation with the createOrUpdateFiles tool."
)


class Route(StrEnum):
    """Router states."""

    AWAITING_FILES = "awaiting_files"
    AWAITING_SUMMARY = "awaiting_summary"
    TERMINAL = "terminal"


class AgentState(TypedDict):
    """State passed between the router, validation, repair and aggregation.

    Attributes:
        summary: Completion summary; empty until the agent emits the marker
        files: Files the agent wrote, keyed by workspace-relative path
        selected_framework: Framework the sandbox was provisioned for
        summary_retry_count: Turns that ended with files but no summary
        messages: Full conversation history
        iteration: Turns completed across the whole run
        last_assistant_text: Text of the most recent non-empty assistant reply
        summary_synthesized: True when the summary was built from the file list
    """

    summary: str
    files: dict[str, str]
    selected_framework: Framework
    summary_retry_count: int
    messages: Annotated[list[dict[str, Any]], operator.add]
    iteration: int
    last_assistant_text: str
    summary_synthesized: bool


class NetworkState(AgentState):
    """Graph-internal state: the agent state plus per-invocation bookkeeping."""

    route: Route
    turn_count: int
    tool_rounds: int
    error: str
    turns: Annotated[list["TurnResult"], operator.add]


@dataclass
class TurnResult:
    """Outcome of one agent turn, as seen by the router."""

    iteration: int
    route: Route
    text: str
    files_written: list[str] = field(default_factory=list)


@dataclass
class NetworkRun:
    """Result of running the network once: ordered turns plus the final state."""

    state: AgentState
    turns: list[TurnResult]
    error: str | None = None

    @property
    def last_assistant_text(self) -> str:
        return self.state["last_assistant_text"]


def create_agent_state(
    framework: Framework,
    system_prompt: str,
    files: dict[str, str] | None = None,
    summary: str = "",
    context_messages: list[dict[str, Any]] | None = None,
) -> AgentState:
    """Create the initial agent state for a run or a fix.

    Args:
        framework: Framework the sandbox was provisioned for.
        system_prompt: The code agent's system prompt.
        files: Files already known (e.g. from an existing fragment).
        summary: Existing summary, if any.
        context_messages: Extra messages placed after the system prompt.

    Returns:
        A fresh AgentState.
    """
    return AgentState(
        summary=summary,
        files=dict(files or {}),
        selected_framework=framework,
        summary_retry_count=0,
        messages=[{"role": "system", "content": system_prompt}, *(context_messages or [])],
        iteration=0,
        last_assistant_text="",
        summary_synthesized=False,
    )


def extract_summary_text(text: str) -> str:
    """Return the ``<task_summary>`` content, or the trimmed text without a tag."""
    if not text:
        return ""
    match = SUMMARY_TAG_RE.search(text)
    if match:
        return match.group(1).strip()
    return text.strip()


def has_summary_tag(text: str) -> bool:
    return bool(text) and SUMMARY_TAG_RE.search(text) is not None


def synthesize_summary(files: dict[str, str]) -> str:
    """Build a fallback summary from the generated file paths.

    Example:
        >>> synthesize_summary({"app/page.tsx": "", "app/layout.tsx": ""})
        'Generated or updated 2 files: app/page.tsx, app/layout.tsx.'
    """
    paths = list(files)
    preview = paths[:SUMMARY_PREVIEW_FILES]
    remaining = len(paths) - len(preview)
    noun = "file" if len(paths) == 1 else "files"
    more = f" (and {remaining} more)" if remaining > 0 else ""
    return f"Generated or updated {len(paths)} {noun}: {', '.join(preview)}{more}."


def decide_route(
    summary: str,
    files: dict[str, str],
    summary_retry_count: int,
    summary_retry_cap: int,
) -> tuple[Route, int]:
    """Apply the router's transition rules to the state after a turn.

    Returns:
        Tuple of (next route, updated summary retry count).
    """
    if summary:
        return Route.TERMINAL, summary_retry_count
    if not files:
        return Route.AWAITING_FILES, summary_retry_count
    if summary_retry_count >= summary_retry_cap:
        return Route.TERMINAL, summary_retry_count
    return Route.AWAITING_SUMMARY, summary_retry_count + 1


class AgentNetwork:
    """Runs the code agent under the router state machine.

    The network is built per run with an explicit tool set bound to the
    run's sandbox.

    Usage:
        >>> tools = CodeAgentTools(sandbox_manager, sandbox_id, event_bus, run_id)
        >>> network = AgentNetwork(llm_client, tools, event_bus, run_id=run_id)
        >>> run = await network.run(state, "Build a todo app")
    """

    def __init__(
        self,
        llm_client: LLMClient,
        tools: CodeAgentTools,
        event_bus: EventBus | None = None,
        run_id: str | None = None,
        max_iterations: int | None = None,
        summary_retry_cap: int | None = None,
        max_tool_rounds: int = 20,
        model: str | None = None,
    ) -> None:
        """Initialize the network.

        Args:
            llm_client: Client used for agent turns.
            tools: Tool handlers bound to the run's sandbox.
            event_bus: Optional bus for turn events.
            run_id: Run id used for events.
            max_iterations: Hard ceiling on turns per invocation.
            summary_retry_cap: Missing-summary re-prompts before synthesizing.
            max_tool_rounds: Model calls allowed within a single turn.
            model: Model override for agent turns.
        """
        self.llm_client = llm_client
        self.tools = tools
        self.event_bus = event_bus
        self.run_id = run_id
        self.max_iterations = max_iterations or settings.network_max_iterations
        self.summary_retry_cap = (
            summary_retry_cap if summary_retry_cap is not None
            else settings.summary_retry_cap
        )
        self.max_tool_rounds = max_tool_rounds
        self.model = model or settings.code_agent_model
        self._compiled_graph = self._build_graph()

    def _build_graph(self) -> Any:
        graph = StateGraph(NetworkState)

        graph.add_node("agent", self._agent_step)
        graph.add_node("tools", self._execute_tools)
        graph.add_node("route", self._route)

        graph.add_edge(START, "agent")
        graph.add_conditional_edges(
            "agent",
            self._after_agent,
            {"tools": "tools", "route": "route", "end": END},
        )
        graph.add_conditional_edges(
            "tools",
            self._after_tools,
            {"agent": "agent", "route": "route"},
        )
        graph.add_conditional_edges(
            "route",
            self._after_route,
            {"agent": "agent", "end": END},
        )

        return graph.compile()

    async def _agent_step(self, state: NetworkState) -> dict[str, Any]:
        """Call the model once with the current history and tool schemas."""
        try:
            response = await self.llm_client.call(
                messages=list(state["messages"]),
                tools=get_tool_definitions_for_llm(),
                model=self.model,
                run_id=self.run_id,
                agent_id="code_agent",
            )
        except Exception as e:
            logger.error(
                "agent_call_failed",
                run_id=self.run_id,
                iteration=state["iteration"],
                error=str(e),
            )
            return {"error": str(e), "route": Route.TERMINAL}

        update: dict[str, Any] = {
            "messages": [
                format_assistant_message_with_tools(response.content, response.tool_calls)
            ],
            "tool_rounds": state["tool_rounds"] + 1,
        }
        if response.content.strip():
            update["last_assistant_text"] = response.content
        if has_summary_tag(response.content):
            update["summary"] = extract_summary_text(response.content)
            update["summary_synthesized"] = False
            update["summary_retry_count"] = 0
        return update

    def _after_agent(self, state: NetworkState) -> str:
        if state["error"]:
            return "end"
        if state["messages"][-1].get("tool_calls"):
            return "tools"
        return "route"

    async def _execute_tools(self, state: NetworkState) -> dict[str, Any]:
        """Execute the tool calls requested by the last assistant message."""
        tool_messages: list[dict[str, Any]] = []
        files = dict(state["files"])

        for tc_raw in state["messages"][-1].get("tool_calls") or []:
            function_data = tc_raw.get("function", {})
            tool_call = ToolCall(
                id=tc_raw.get("id", ""),
                name=function_data.get("name", ""),
                args=normalize_tool_args(function_data.get("arguments", {})),
            )
            result = await self.tools.execute(tool_call)
            # The sandbox already holds these files; the state follows.
            files.update(result.files_written)
            tool_messages.append(format_tool_result_for_llm(tool_call.id, result.content))

        return {"messages": tool_messages, "files": files}

    def _after_tools(self, state: NetworkState) -> str:
        if state["summary"] or state["tool_rounds"] >= self.max_tool_rounds:
            return "route"
        return "agent"

    async def _route(self, state: NetworkState) -> dict[str, Any]:
        """Evaluate the router transition rules after a completed turn."""
        iteration = state["iteration"] + 1
        turn_count = state["turn_count"] + 1
        route, retry_count = decide_route(
            state["summary"],
            state["files"],
            state["summary_retry_count"],
            self.summary_retry_cap,
        )

        update: dict[str, Any] = {
            "iteration": iteration,
            "turn_count": turn_count,
            "tool_rounds": 0,
            "summary_retry_count": retry_count,
        }

        if route == Route.TERMINAL and not state["summary"] and state["files"]:
            logger.warning(
                "summary_missing_after_retries",
                run_id=self.run_id,
                retries=retry_count,
                files=len(state["files"]),
            )
            update["summary"] = synthesize_summary(state["files"])
            update["summary_synthesized"] = True
        elif route != Route.TERMINAL and turn_count >= self.max_iterations:
            logger.warning(
                "network_max_iterations_reached",
                run_id=self.run_id,
                iterations=turn_count,
                route=route.value,
            )
            route = Route.TERMINAL
        elif route == Route.AWAITING_SUMMARY:
            update["messages"] = [{"role": "user", "content": SUMMARY_REQUEST_PROMPT}]
        elif route == Route.AWAITING_FILES:
            update["messages"] = [{"role": "user", "content": CONTINUE_PROMPT}]

        update["route"] = route
        update["turns"] = [
            TurnResult(
                iteration=iteration,
                route=route,
                text=state["last_assistant_text"],
                files_written=sorted(set(state["files"])),
            )
        ]

        await self._publish(
            EventType.AGENT_TURN,
            {
                "iteration": iteration,
                "route": route.value,
                "files": len(state["files"]),
                "summary_retry_count": retry_count,
            },
        )
        logger.info(
            "network_turn_complete",
            run_id=self.run_id,
            iteration=iteration,
            route=route.value,
            files=len(state["files"]),
        )
        return update

    def _after_route(self, state: NetworkState) -> str:
        return "end" if state["route"] == Route.TERMINAL else "agent"

    async def run(self, state: AgentState, user_message: str) -> NetworkRun:
        """Run the network on ``state`` with a new user message.

        Any previous summary is cleared so that the agent must report
        completion for this invocation. Files carry over unchanged.

        Args:
            state: Agent state from the previous stage.
            user_message: The request, repair prompt, or follow-up.

        Returns:
            NetworkRun with the per-turn results and the final state.
        """
        initial: NetworkState = {
            **state,
            "messages": [*state["messages"], {"role": "user", "content": user_message}],
            "summary": "",
            "summary_synthesized": False,
            "summary_retry_count": 0,
            "route": Route.AWAITING_FILES,
            "turn_count": 0,
            "tool_rounds": 0,
            "error": "",
            "turns": [],
        }
        recursion_limit = self.max_iterations * (2 * self.max_tool_rounds + 1) + 10

        final = await self._compiled_graph.ainvoke(
            initial, config={"recursion_limit": recursion_limit}
        )

        agent_state = AgentState(
            summary=final["summary"],
            files=final["files"],
            selected_framework=final["selected_framework"],
            summary_retry_count=final["summary_retry_count"],
            messages=final["messages"],
            iteration=final["iteration"],
            last_assistant_text=final["last_assistant_text"],
            summary_synthesized=final["summary_synthesized"],
        )
        return NetworkRun(
            state=agent_state,
            turns=list(final["turns"]),
            error=final["error"] or None,
        )

    async def request_summary(self, state: AgentState) -> AgentState:
        """Ask once, without tools, for the completion marker.

        Used when a run ended without a summary. Files are not touched.

        Returns:
            The state with the summary set when the reply contains the marker.
        """
        messages = [*state["messages"], {"role": "user", "content": SUMMARY_REQUEST_PROMPT}]
        try:
            response = await self.llm_client.call(
                messages=messages,
                model=self.model,
                run_id=self.run_id,
                agent_id="code_agent",
            )
        except Exception as e:
            logger.warning("summary_request_failed", run_id=self.run_id, error=str(e))
            return state

        updated: AgentState = {
            **state,
            "messages": [*messages, format_assistant_message_with_tools(response.content, [])],
        }
        if response.content.strip():
            updated["last_assistant_text"] = response.content
        if has_summary_tag(response.content):
            updated["summary"] = extract_summary_text(response.content)
            updated["summary_synthesized"] = False
        return updated

    async def _publish(self, event_type: EventType, data: dict[str, Any]) -> None:
        if self.event_bus is None or not self.run_id:
            return
        await self.event_bus.publish(
            AgentEvent(type=event_type, run_id=self.run_id, agent_id="code_agent", data=data)
        )
