"""Tests for agents/network.py -- the router state machine.

Covers the transition rules, summary extraction and synthesis, and full
network runs driven by a scripted LLM against a mock sandbox.
"""

from unittest.mock import AsyncMock

from agents.frameworks import Framework
from agents.llm import MockLLMClient
from agents.network import (
    AgentNetwork,
    Route,
    create_agent_state,
    decide_route,
    extract_summary_text,
    has_summary_tag,
    synthesize_summary,
)
from agents.prompts import SUMMARY_REQUEST_PROMPT
from agents.tools import CodeAgentTools
from events.bus import EventBus
from events.types import EventType

from tests.conftest import (
    RoutingMockLLMClient,
    collect_events,
    failing_response,
    make_llm_response,
    make_tool_call,
    summary_response,
    write_files_response,
)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _network(
    llm: MockLLMClient,
    manager: AsyncMock,
    event_bus: EventBus | None = None,
    **kwargs: object,
) -> AgentNetwork:
    tools = CodeAgentTools(manager, "sbx_test123", event_bus, run_id="run_net")
    return AgentNetwork(llm, tools, event_bus, run_id="run_net", **kwargs)


def _state(**kwargs: object):
    return create_agent_state(Framework.NEXTJS, "system prompt", **kwargs)


# =========================================================================
# Pure helpers
# =========================================================================


class TestSummaryHelpers:
    def test_extract_tagged_summary(self) -> None:
        text = "All done.\n<task_summary>\n Built a todo app \n</task_summary>"
        assert extract_summary_text(text) == "Built a todo app"

    def test_extract_without_tag_returns_text(self) -> None:
        assert extract_summary_text("  plain reply ") == "plain reply"

    def test_extract_empty(self) -> None:
        assert extract_summary_text("") == ""

    def test_has_summary_tag_case_insensitive(self) -> None:
        assert has_summary_tag("<TASK_SUMMARY>x</TASK_SUMMARY>")
        assert not has_summary_tag("no tag here")

    def test_synthesize_lists_files(self) -> None:
        summary = synthesize_summary({"app/page.tsx": "", "app/layout.tsx": ""})
        assert summary == "Generated or updated 2 files: app/page.tsx, app/layout.tsx."

    def test_synthesize_single_file(self) -> None:
        assert synthesize_summary({"a.ts": ""}) == "Generated or updated 1 file: a.ts."

    def test_synthesize_truncates_long_lists(self) -> None:
        files = {f"f{i}.ts": "" for i in range(8)}
        summary = synthesize_summary(files)
        assert summary.startswith("Generated or updated 8 files: f0.ts, f1.ts")
        assert summary.endswith("(and 3 more).")
        assert "f5.ts" not in summary


class TestDecideRoute:
    def test_summary_is_terminal(self) -> None:
        assert decide_route("done", {}, 0, 2) == (Route.TERMINAL, 0)

    def test_no_files_awaits_files(self) -> None:
        assert decide_route("", {}, 0, 2) == (Route.AWAITING_FILES, 0)

    def test_files_without_summary_increments_retry(self) -> None:
        assert decide_route("", {"a.ts": ""}, 0, 2) == (Route.AWAITING_SUMMARY, 1)

    def test_retry_cap_reached_is_terminal(self) -> None:
        assert decide_route("", {"a.ts": ""}, 2, 2) == (Route.TERMINAL, 2)


# =========================================================================
# Network runs
# =========================================================================


class TestNetworkRun:
    async def test_files_then_summary_single_turn(
        self, mock_sandbox_manager: AsyncMock, event_bus: EventBus
    ) -> None:
        llm = MockLLMClient(
            responses=[
                write_files_response({"app/page.tsx": "export default 1"}),
                summary_response("Built a landing page"),
            ]
        )
        run = await _network(llm, mock_sandbox_manager, event_bus).run(
            _state(), "Build a landing page"
        )

        assert run.error is None
        assert run.state["files"] == {"app/page.tsx": "export default 1"}
        assert run.state["summary"] == "Built a landing page"
        assert not run.state["summary_synthesized"]
        assert [turn.route for turn in run.turns] == [Route.TERMINAL]
        assert run.state["iteration"] == 1
        mock_sandbox_manager.write_file.assert_awaited_once_with(
            "sbx_test123", "app/page.tsx", "export default 1"
        )

        events = await collect_events(event_bus, "run_net")
        assert EventType.AGENT_TURN in [e.type for e in events]

    async def test_missing_summary_is_synthesized_after_cap(
        self, mock_sandbox_manager: AsyncMock
    ) -> None:
        llm = MockLLMClient(
            responses=[
                write_files_response({"app/page.tsx": "x"}),
                make_llm_response("I wrote the page."),
                make_llm_response("Still working on it."),
                make_llm_response("Everything is in place."),
            ]
        )
        run = await _network(llm, mock_sandbox_manager, summary_retry_cap=2).run(
            _state(), "Build a page"
        )

        assert len(llm.call_history) == 4
        assert [turn.route for turn in run.turns] == [
            Route.AWAITING_SUMMARY,
            Route.AWAITING_SUMMARY,
            Route.TERMINAL,
        ]
        assert run.state["summary"] == "Generated or updated 1 file: app/page.tsx."
        assert run.state["summary_synthesized"]
        summary_prompts = [
            m for m in run.state["messages"]
            if m["role"] == "user" and m["content"] == SUMMARY_REQUEST_PROMPT
        ]
        assert len(summary_prompts) == 2

    async def test_no_files_reprompts_until_iteration_ceiling(
        self, mock_sandbox_manager: AsyncMock
    ) -> None:
        llm = RoutingMockLLMClient({"default": [make_llm_response("Thinking about it.")]})
        run = await _network(llm, mock_sandbox_manager, max_iterations=3).run(
            _state(), "Build a page"
        )

        assert [turn.route for turn in run.turns] == [
            Route.AWAITING_FILES,
            Route.AWAITING_FILES,
            Route.TERMINAL,
        ]
        assert run.state["files"] == {}
        assert run.state["summary"] == ""

    async def test_existing_files_carry_over_and_summary_resets(
        self, mock_sandbox_manager: AsyncMock
    ) -> None:
        llm = MockLLMClient(
            responses=[
                write_files_response({"b.ts": "b"}),
                summary_response("Added b"),
            ]
        )
        state = _state(files={"a.ts": "a"}, summary="old summary")
        run = await _network(llm, mock_sandbox_manager).run(state, "Add b")

        assert run.state["files"] == {"a.ts": "a", "b.ts": "b"}
        assert run.state["summary"] == "Added b"

    async def test_agent_error_ends_run(self, mock_sandbox_manager: AsyncMock) -> None:
        llm = RoutingMockLLMClient({"default": failing_response})
        run = await _network(llm, mock_sandbox_manager).run(_state(), "Build")

        assert run.error == "provider unavailable"
        assert run.turns == []

    async def test_tool_rounds_capped_per_turn(self, mock_sandbox_manager: AsyncMock) -> None:
        ls = make_llm_response(
            tool_calls=[make_tool_call("terminal", {"command": "ls"})]
        )
        llm = RoutingMockLLMClient({"default": [ls]})
        run = await _network(
            llm, mock_sandbox_manager, max_iterations=1, max_tool_rounds=3
        ).run(_state(), "Build")

        assert len(llm.call_history) == 3
        assert [turn.route for turn in run.turns] == [Route.TERMINAL]

    async def test_summary_in_same_reply_as_tool_call_ends_turn(
        self, mock_sandbox_manager: AsyncMock
    ) -> None:
        reply = make_llm_response(
            "<task_summary>Wrote the page</task_summary>",
            tool_calls=[
                make_tool_call(
                    "createOrUpdateFiles",
                    {"files": [{"path": "app/page.tsx", "content": "x"}]},
                )
            ],
        )
        llm = MockLLMClient(responses=[reply])
        run = await _network(llm, mock_sandbox_manager).run(_state(), "Build")

        assert len(llm.call_history) == 1
        assert run.state["files"] == {"app/page.tsx": "x"}
        assert run.state["summary"] == "Wrote the page"


class TestRequestSummary:
    async def test_summary_extracted(self, mock_sandbox_manager: AsyncMock) -> None:
        llm = MockLLMClient(responses=[summary_response("Built it")])
        state = _state(files={"a.ts": "a"})
        updated = await _network(llm, mock_sandbox_manager).request_summary(state)

        assert updated["summary"] == "Built it"
        assert updated["files"] == {"a.ts": "a"}
        assert llm.call_history[0]["tools"] is None

    async def test_reply_without_tag_leaves_summary_empty(
        self, mock_sandbox_manager: AsyncMock
    ) -> None:
        llm = MockLLMClient(responses=[make_llm_response("Sure, it is built.")])
        updated = await _network(llm, mock_sandbox_manager).request_summary(_state())
        assert updated["summary"] == ""

    async def test_llm_failure_returns_state(self, mock_sandbox_manager: AsyncMock) -> None:
        llm = MockLLMClient()
        state = _state()
        assert await _network(llm, mock_sandbox_manager).request_summary(state) is state
