"""Concurrent lint and build checks against a live sandbox.

The two checks are deliberately asymmetric. Lint is advisory: a non-zero
exit only counts when the output looks like an error. A failed build is
always an error. A check that cannot run at all (sandbox unreachable) is
reported as not matched, so validation never fails a run by itself.
"""

import asyncio
import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Literal

import structlog

from config import settings
from events.bus import EventBus
from events.types import AgentEvent, EventType
from validation.taxonomy import (
    NO_ERRORS,
    ErrorCategory,
    ErrorClassification,
    ErrorMatch,
    classify_errors,
)

if TYPE_CHECKING:
    from sandbox.docker_sandbox import SandboxManager

logger = structlog.get_logger()

CheckName = Literal["lint", "build"]

# Exit code for "script not found"; the project has no such check.
COMMAND_NOT_FOUND_EXIT = 127

_LINT_ERROR_MARKERS = re.compile(r"error|✖", re.IGNORECASE)


@dataclass
class CheckResult:
    """Outcome of one validation check.

    Attributes:
        name: "lint" or "build"
        matched: True when the check found errors
        exit_code: Process exit code, or None if the check did not run
        output: Combined stdout and stderr
        error_text: Text handed to the repair prompt when matched
        skipped: True when the check script is missing
        classification: Taxonomy evaluation of the output
    """

    name: CheckName
    matched: bool
    exit_code: int | None = None
    output: str = ""
    error_text: str = ""
    skipped: bool = False
    classification: ErrorClassification = field(default=NO_ERRORS)


@dataclass
class ValidationReport:
    """Combined lint and build results."""

    lint: CheckResult
    build: CheckResult

    @property
    def has_errors(self) -> bool:
        return self.lint.matched or self.build.matched

    @property
    def classification(self) -> ErrorClassification:
        merged = NO_ERRORS
        for check in self.checks:
            if check.matched:
                merged = merged.merge(check.classification)
        return merged

    @property
    def categories(self) -> list[ErrorCategory]:
        categories = self.classification.categories
        if self.build.matched and ErrorCategory.BUILD_FAILURE not in categories:
            categories.append(ErrorCategory.BUILD_FAILURE)
        return categories

    @property
    def checks(self) -> tuple[CheckResult, CheckResult]:
        return (self.lint, self.build)

    def error_text(self) -> str:
        """Error text of the matched checks joined by blank lines."""
        return "\n\n".join(check.error_text for check in self.checks if check.matched)


def _combine_output(stdout: str, stderr: str) -> str:
    return f"{stdout}{stderr}"


class ValidationPipeline:
    """Runs lint and build checks concurrently.

    Usage:
        >>> pipeline = ValidationPipeline(sandbox_manager)
        >>> report = await pipeline.run(sandbox_id)
        >>> if report.has_errors:
        ...     print(report.error_text())
    """

    def __init__(
        self,
        sandbox_manager: "SandboxManager",
        event_bus: EventBus | None = None,
        lint_command: str | None = None,
        build_command: str | None = None,
        lint_timeout: int | None = None,
        build_timeout: int | None = None,
    ) -> None:
        self.sandbox_manager = sandbox_manager
        self.event_bus = event_bus
        self.lint_command = lint_command or settings.lint_command
        self.build_command = build_command or settings.build_command
        self.lint_timeout = lint_timeout or settings.lint_timeout_seconds
        self.build_timeout = build_timeout or settings.build_timeout_seconds

    async def run(self, sandbox_id: str, run_id: str | None = None) -> ValidationReport:
        """Run both checks against ``sandbox_id``.

        Args:
            sandbox_id: The sandbox to validate.
            run_id: Optional run id for the validation event.

        Returns:
            ValidationReport. Never raises for check failures.
        """
        lint, build = await asyncio.gather(
            self.run_lint(sandbox_id),
            self.run_build(sandbox_id),
        )
        report = ValidationReport(lint=lint, build=build)

        logger.info(
            "validation_complete",
            sandbox_id=sandbox_id,
            lint_matched=lint.matched,
            build_matched=build.matched,
            categories=[c.value for c in report.categories],
        )
        if self.event_bus is not None and run_id:
            await self.event_bus.publish(
                AgentEvent(
                    type=EventType.VALIDATION_RESULT,
                    run_id=run_id,
                    data={
                        "lint_matched": lint.matched,
                        "build_matched": build.matched,
                        "categories": [c.value for c in report.categories],
                    },
                )
            )
        return report

    async def run_lint(self, sandbox_id: str) -> CheckResult:
        """Run the lint command. Non-zero exit alone is not an error."""
        try:
            result = await self.sandbox_manager.execute_command(
                sandbox_id, self.lint_command, timeout=self.lint_timeout
            )
        except Exception as e:
            logger.warning("lint_check_failed", sandbox_id=sandbox_id, error=str(e))
            return CheckResult(name="lint", matched=False)

        output = _combine_output(result.stdout, result.stderr)
        if result.exit_code == COMMAND_NOT_FOUND_EXIT:
            logger.warning("lint_script_missing", sandbox_id=sandbox_id)
            return CheckResult(
                name="lint", matched=False, exit_code=result.exit_code, skipped=True
            )

        classification = classify_errors(output)
        matched = (
            result.exit_code != 0
            and bool(output)
            and (_LINT_ERROR_MARKERS.search(output) is not None or classification.matched)
        )
        if matched and not classification.matched:
            marker = _LINT_ERROR_MARKERS.search(output)
            classification = ErrorClassification(
                matches=(
                    ErrorMatch(
                        category=ErrorCategory.LINT,
                        pattern=_LINT_ERROR_MARKERS.pattern,
                        excerpt=output[max(0, marker.start() - 60) : marker.end() + 60].strip()
                        if marker
                        else "",
                    ),
                )
            )

        return CheckResult(
            name="lint",
            matched=matched,
            exit_code=result.exit_code,
            output=output,
            error_text=output if matched else "",
            classification=classification,
        )

    async def run_build(self, sandbox_id: str) -> CheckResult:
        """Run the build command. Any non-zero exit is an error."""
        try:
            result = await self.sandbox_manager.execute_command(
                sandbox_id, self.build_command, timeout=self.build_timeout
            )
        except Exception as e:
            logger.warning("build_check_failed", sandbox_id=sandbox_id, error=str(e))
            return CheckResult(name="build", matched=False)

        output = _combine_output(result.stdout, result.stderr)
        if result.exit_code == COMMAND_NOT_FOUND_EXIT:
            logger.warning("build_script_missing", sandbox_id=sandbox_id)
            return CheckResult(
                name="build", matched=False, exit_code=result.exit_code, skipped=True
            )

        if result.exit_code == 0:
            return CheckResult(name="build", matched=False, exit_code=0, output=output)

        classification = classify_errors(output)
        if classification.matched:
            error_text = f"Build failed with errors:\n{output}"
        else:
            error_text = f"Build failed with exit code {result.exit_code}:\n{output}"

        logger.info(
            "build_check_failed_exit",
            sandbox_id=sandbox_id,
            exit_code=result.exit_code,
            timed_out=result.timed_out,
        )
        return CheckResult(
            name="build",
            matched=True,
            exit_code=result.exit_code,
            output=output,
            error_text=error_text,
            classification=classification,
        )
