"""Tests for validation/taxonomy.py and validation/pipeline.py.

The taxonomy is checked for ordering (specific before generic); the
pipeline for the asymmetric lint/build rules and its failure tolerance.
"""

from unittest.mock import AsyncMock

import pytest

from events.bus import EventBus
from events.types import EventType
from sandbox.docker_sandbox import CommandResult
from validation.pipeline import COMMAND_NOT_FOUND_EXIT, ValidationPipeline
from validation.taxonomy import (
    ERROR_TAXONOMY,
    ErrorCategory,
    classify_errors,
    should_trigger_auto_fix,
)

from tests.conftest import collect_events, failed, ok, script_commands

# =========================================================================
# Taxonomy
# =========================================================================


class TestTaxonomy:
    def test_generic_rows_come_last(self) -> None:
        categories = [category for category, _ in ERROR_TAXONOMY]
        first_generic = categories.index(ErrorCategory.GENERIC)
        assert all(c == ErrorCategory.GENERIC for c in categories[first_generic:])

    @pytest.mark.parametrize(
        ("text", "category"),
        [
            ("SyntaxError: Unexpected token", ErrorCategory.SYNTAX),
            ("Type error: Property 'x' does not exist", ErrorCategory.TYPE),
            ("error TS2304: Cannot find name 'foo'", ErrorCategory.TYPE),
            ("Module not found: Can't resolve './Button'", ErrorCategory.MODULE_RESOLUTION),
            ("ReferenceError: window is not defined", ErrorCategory.RUNTIME_REFERENCE),
            ("Turbopack build failed", ErrorCategory.BUNDLER),
            ("Compilation error in app/page.tsx", ErrorCategory.BUILD_FAILURE),
            ("CommandExitError: exit status 1", ErrorCategory.PROCESS),
            ("[ERROR] something broke", ErrorCategory.GENERIC),
        ],
    )
    def test_first_match_is_most_specific(self, text: str, category: ErrorCategory) -> None:
        classification = classify_errors(text)
        assert classification.matched
        assert classification.first_match is not None
        assert classification.first_match.category == category

    def test_specific_wins_over_generic(self) -> None:
        classification = classify_errors("Error: Module not found: Can't resolve 'zod'")
        assert classification.categories[0] == ErrorCategory.MODULE_RESOLUTION
        assert ErrorCategory.GENERIC in classification.categories

    def test_categories_are_distinct(self) -> None:
        classification = classify_errors("SyntaxError here\nExpected a semicolon")
        assert classification.categories == [ErrorCategory.SYNTAX]
        assert len(classification.matches) == 2

    def test_excerpt_comes_from_matching_line(self) -> None:
        classification = classify_errors("line one\nModule not found: x\nline three")
        assert classification.first_match is not None
        assert classification.first_match.excerpt == "Module not found: x"

    @pytest.mark.parametrize("text", ["", None, "Compiled successfully in 2.1s"])
    def test_clean_text(self, text: str | None) -> None:
        assert not classify_errors(text).matched
        assert not should_trigger_auto_fix(text)

    def test_uppercase_error_marker_is_case_sensitive(self) -> None:
        assert should_trigger_auto_fix("BUILD ERROR")
        assert not should_trigger_auto_fix("no errors were found")


# =========================================================================
# Validation pipeline
# =========================================================================


class TestLintCheck:
    async def test_clean_lint(self, mock_sandbox_manager: AsyncMock) -> None:
        report = await ValidationPipeline(mock_sandbox_manager).run("sbx_test123")
        assert not report.lint.matched
        assert not report.has_errors

    async def test_non_zero_exit_with_error_output_matches(
        self, mock_sandbox_manager: AsyncMock
    ) -> None:
        script_commands(
            mock_sandbox_manager,
            lint=[failed("./app/page.tsx\n12:5  error  'x' is assigned a value but never used")],
        )
        report = await ValidationPipeline(mock_sandbox_manager).run("sbx_test123")

        assert report.lint.matched
        assert "never used" in report.lint.error_text
        assert report.has_errors

    async def test_non_zero_exit_with_warnings_only_is_clean(
        self, mock_sandbox_manager: AsyncMock
    ) -> None:
        script_commands(mock_sandbox_manager, lint=[failed("12:5  warning  prefer const")])
        report = await ValidationPipeline(mock_sandbox_manager).run("sbx_test123")
        assert not report.lint.matched

    async def test_error_text_with_zero_exit_is_clean(
        self, mock_sandbox_manager: AsyncMock
    ) -> None:
        script_commands(mock_sandbox_manager, lint=[ok("0 errors, 0 warnings")])
        report = await ValidationPipeline(mock_sandbox_manager).run("sbx_test123")
        assert not report.lint.matched

    async def test_missing_lint_script_is_skipped(self, mock_sandbox_manager: AsyncMock) -> None:
        script_commands(
            mock_sandbox_manager,
            lint=[failed("npm ERR! Missing script: lint", exit_code=COMMAND_NOT_FOUND_EXIT)],
        )
        report = await ValidationPipeline(mock_sandbox_manager).run("sbx_test123")

        assert report.lint.skipped
        assert not report.lint.matched


class TestBuildCheck:
    async def test_build_failure_always_matches(self, mock_sandbox_manager: AsyncMock) -> None:
        script_commands(mock_sandbox_manager, build=[failed("exit status 2")])
        report = await ValidationPipeline(mock_sandbox_manager).run("sbx_test123")

        assert report.build.matched
        assert report.build.error_text.startswith("Build failed with exit code 1:")
        assert ErrorCategory.BUILD_FAILURE in report.categories

    async def test_build_failure_with_recognized_errors(
        self, mock_sandbox_manager: AsyncMock
    ) -> None:
        script_commands(
            mock_sandbox_manager,
            build=[failed("Type error: Property 'title' does not exist on type 'Props'")],
        )
        report = await ValidationPipeline(mock_sandbox_manager).run("sbx_test123")

        assert report.build.error_text.startswith("Build failed with errors:")
        assert report.categories[0] == ErrorCategory.TYPE

    async def test_timed_out_build_is_error(self, mock_sandbox_manager: AsyncMock) -> None:
        script_commands(
            mock_sandbox_manager,
            build=[CommandResult(stdout="", stderr="", exit_code=124, timed_out=True)],
        )
        report = await ValidationPipeline(mock_sandbox_manager).run("sbx_test123")
        assert report.build.matched


class TestPipeline:
    async def test_runs_both_commands(self, mock_sandbox_manager: AsyncMock) -> None:
        await ValidationPipeline(mock_sandbox_manager).run("sbx_test123")
        commands = {call.args[1] for call in mock_sandbox_manager.execute_command.call_args_list}
        assert commands == {"npm run lint", "npm run build"}

    async def test_sandbox_failure_is_not_an_error(
        self, mock_sandbox_manager: AsyncMock
    ) -> None:
        mock_sandbox_manager.execute_command.side_effect = KeyError("sbx gone")
        report = await ValidationPipeline(mock_sandbox_manager).run("sbx_test123")

        assert not report.has_errors
        assert report.lint.exit_code is None
        assert report.build.exit_code is None

    async def test_error_text_joins_matched_checks(
        self, mock_sandbox_manager: AsyncMock
    ) -> None:
        script_commands(
            mock_sandbox_manager,
            lint=[failed("1:1  error  Unexpected any")],
            build=[failed("Build failed")],
        )
        report = await ValidationPipeline(mock_sandbox_manager).run("sbx_test123")

        lint_text, build_text = report.error_text().split("\n\n", 1)
        assert "Unexpected any" in lint_text
        assert build_text.startswith("Build failed with errors:")

    async def test_publishes_validation_event(
        self, mock_sandbox_manager: AsyncMock, event_bus: EventBus
    ) -> None:
        script_commands(mock_sandbox_manager, build=[failed("Build failed")])
        await ValidationPipeline(mock_sandbox_manager, event_bus).run("sbx_test123", run_id="run_v")

        events = await collect_events(event_bus, "run_v")
        assert len(events) == 1
        assert events[0].type == EventType.VALIDATION_RESULT
        assert events[0].data["build_matched"] is True
        assert events[0].data["lint_matched"] is False
