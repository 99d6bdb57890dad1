"""Tests for orchestration/autofix.py -- the bounded auto-fix loop."""

from unittest.mock import AsyncMock

from agents.frameworks import Framework
from agents.llm import MockLLMClient
from agents.network import AgentNetwork, AgentState, create_agent_state
from agents.tools import CodeAgentTools
from events.bus import EventBus
from events.types import EventType
from orchestration.autofix import (
    AutoFixLoop,
    FixExhausted,
    FixRetry,
    FixSuccess,
    describe_errors,
)
from validation.pipeline import CheckResult, ValidationPipeline, ValidationReport
from validation.taxonomy import classify_errors

from tests.conftest import (
    RoutingMockLLMClient,
    failed,
    failing_response,
    make_llm_response,
    ok,
    script_commands,
    summary_response,
    write_files_response,
)

BUILD_ERROR = "Module not found: Can't resolve '@/components/ui/card'"

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _report(lint_output: str = "", build_output: str = "") -> ValidationReport:
    lint = CheckResult(
        name="lint",
        matched=bool(lint_output),
        exit_code=1 if lint_output else 0,
        output=lint_output,
        error_text=lint_output,
        classification=classify_errors(lint_output),
    )
    build = CheckResult(
        name="build",
        matched=bool(build_output),
        exit_code=1 if build_output else 0,
        output=build_output,
        error_text=f"Build failed with errors:\n{build_output}" if build_output else "",
        classification=classify_errors(build_output),
    )
    return ValidationReport(lint=lint, build=build)


def _state(summary: str = "Built a page", text: str = "Done") -> AgentState:
    state = create_agent_state(
        Framework.NEXTJS, "system", files={"app/page.tsx": "v1"}, summary=summary
    )
    return {**state, "last_assistant_text": text}


def _loop(
    llm: MockLLMClient,
    manager: AsyncMock,
    event_bus: EventBus | None = None,
    max_iterations: int | None = None,
) -> AutoFixLoop:
    tools = CodeAgentTools(manager, "sbx_test123", event_bus, run_id="run_fix")
    network = AgentNetwork(
        llm, tools, event_bus, run_id="run_fix", max_iterations=max_iterations
    )
    pipeline = ValidationPipeline(manager, event_bus)
    return AutoFixLoop(network, pipeline, "sbx_test123", event_bus, run_id="run_fix")


# =========================================================================
# evaluate
# =========================================================================


class TestEvaluate:
    def _loop(self) -> AutoFixLoop:
        return AutoFixLoop(AsyncMock(), AsyncMock(), "sbx", max_attempts=2)

    def test_clean_is_success(self) -> None:
        assert self._loop().evaluate("All good", _report(), 0) == FixSuccess(attempts=0)

    def test_validation_errors_retry(self) -> None:
        outcome = self._loop().evaluate("All good", _report(build_output=BUILD_ERROR), 0)
        assert isinstance(outcome, FixRetry)
        assert outcome.attempt == 1
        assert outcome.reason.startswith("build failed: module_resolution")

    def test_agent_reported_error_retries(self) -> None:
        outcome = self._loop().evaluate("SyntaxError: unexpected token", _report(), 0)
        assert isinstance(outcome, FixRetry)
        assert outcome.reason.startswith("agent failed: syntax")

    def test_budget_spent_is_exhausted(self) -> None:
        outcome = self._loop().evaluate("ok", _report(build_output=BUILD_ERROR), 2)
        assert isinstance(outcome, FixExhausted)
        assert outcome.attempts == 2

    def test_zero_budget_never_retries(self) -> None:
        loop = AutoFixLoop(AsyncMock(), AsyncMock(), "sbx", max_attempts=0)
        assert isinstance(loop.evaluate("ok", _report(build_output="x"), 0), FixExhausted)


class TestDescribeErrors:
    def test_validation_then_agent_text(self) -> None:
        text = describe_errors(_report(build_output=BUILD_ERROR), "agent says Error: x")
        assert text.index("Build failed with errors") < text.index("agent says")

    def test_empty(self) -> None:
        assert describe_errors(_report(), "") == ""


# =========================================================================
# run
# =========================================================================


class TestAutoFixRun:
    async def test_clean_first_pass_makes_no_calls(
        self, mock_sandbox_manager: AsyncMock
    ) -> None:
        llm = MockLLMClient()
        result = await _loop(llm, mock_sandbox_manager).run(_state(), _report())

        assert result.outcome == FixSuccess(attempts=0)
        assert result.attempts == 0
        assert not result.degraded
        assert llm.call_history == []

    async def test_one_repair_pass_fixes_build(
        self, mock_sandbox_manager: AsyncMock, event_bus: EventBus
    ) -> None:
        script_commands(mock_sandbox_manager, build=[ok()])
        llm = MockLLMClient(
            responses=[
                write_files_response({"components/ui/card.tsx": "export {}"}),
                summary_response("Added the missing card component"),
            ]
        )
        result = await _loop(llm, mock_sandbox_manager, event_bus).run(
            _state(), _report(build_output=BUILD_ERROR)
        )

        assert result.outcome == FixSuccess(attempts=1)
        assert [type(o) for o in result.history] == [FixRetry, FixSuccess]
        assert result.state["files"]["components/ui/card.tsx"] == "export {}"
        assert result.state["summary"] == "Added the missing card component"

        repair_prompt = llm.call_history[0]["messages"][-1]["content"]
        assert BUILD_ERROR in repair_prompt
        assert "Attempt 1 of 2" in repair_prompt
        assert "module_resolution" in repair_prompt

        history = event_bus.get_event_history("run_fix")
        attempts = [e for e in history if e.type == EventType.AUTO_FIX_ATTEMPT]
        assert [e.data["attempt"] for e in attempts] == [1]

    async def test_persistent_errors_exhaust_after_two_attempts(
        self, mock_sandbox_manager: AsyncMock
    ) -> None:
        script_commands(mock_sandbox_manager, build=[failed(BUILD_ERROR)])
        llm = RoutingMockLLMClient({"code_agent": [summary_response("Tried a fix")]})
        result = await _loop(llm, mock_sandbox_manager).run(
            _state(), _report(build_output=BUILD_ERROR)
        )

        assert isinstance(result.outcome, FixExhausted)
        assert result.attempts == 2
        assert result.degraded
        assert [type(o) for o in result.history] == [FixRetry, FixRetry, FixExhausted]
        assert result.report.build.matched
        assert len(llm.calls_for("code_agent")) == 2

    async def test_agent_error_text_drives_retry(self, mock_sandbox_manager: AsyncMock) -> None:
        llm = MockLLMClient(responses=[summary_response("Fixed the reference")])
        result = await _loop(llm, mock_sandbox_manager).run(
            _state(text="ReferenceError: data is not defined"), _report()
        )

        assert result.outcome == FixSuccess(attempts=1)
        repair_prompt = llm.call_history[0]["messages"][-1]["content"]
        assert "ReferenceError: data is not defined" in repair_prompt

    async def test_explicit_agent_text_overrides_last_reply(
        self, mock_sandbox_manager: AsyncMock
    ) -> None:
        llm = MockLLMClient(responses=[summary_response("Rebuilt")])
        result = await _loop(llm, mock_sandbox_manager).run(
            _state(), _report(), agent_text="[ERROR] Missing Shadcn UI usage."
        )
        assert result.outcome == FixSuccess(attempts=1)
        assert "Missing Shadcn UI usage" in llm.call_history[0]["messages"][-1]["content"]

    async def test_repair_pass_error_exhausts(self, mock_sandbox_manager: AsyncMock) -> None:
        llm = RoutingMockLLMClient({"default": failing_response})
        result = await _loop(llm, mock_sandbox_manager).run(
            _state(), _report(build_output=BUILD_ERROR)
        )

        assert isinstance(result.outcome, FixExhausted)
        assert result.attempts == 1
        assert "repair pass failed" in result.outcome.reason
        assert result.state["files"] == {"app/page.tsx": "v1"}

    async def test_previous_summary_kept_when_repair_has_none(
        self, mock_sandbox_manager: AsyncMock
    ) -> None:
        llm = MockLLMClient(responses=[make_llm_response("Adjusted imports.")])
        result = await _loop(llm, mock_sandbox_manager, max_iterations=1).run(
            _state(summary="Built a page"), _report(build_output=BUILD_ERROR)
        )

        assert result.outcome == FixSuccess(attempts=1)
        assert result.state["summary"] == "Built a page"

    async def test_files_only_grow_across_passes(
        self, mock_sandbox_manager: AsyncMock
    ) -> None:
        script_commands(mock_sandbox_manager, build=[failed(BUILD_ERROR), ok()])
        llm = MockLLMClient(
            responses=[
                write_files_response({"app/page.tsx": "v2"}),
                summary_response("Rewrote the page"),
                write_files_response({"components/ui/card.tsx": "export {}"}, call_id="tc_2"),
                summary_response("Added the card component"),
            ]
        )
        state = _state()
        before = set(state["files"])

        result = await _loop(llm, mock_sandbox_manager).run(
            state, _report(build_output=BUILD_ERROR)
        )

        assert result.outcome == FixSuccess(attempts=2)
        assert before <= set(result.state["files"])
        assert result.state["files"] == {
            "app/page.tsx": "v2",
            "components/ui/card.tsx": "export {}",
        }
