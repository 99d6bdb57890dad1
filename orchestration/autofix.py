"""Bounded auto-fix loop.

After the first network run, validation errors (or an agent reply that
reports an error) send the agent back through the router with a repair
prompt. The loop runs at most ``max_attempts`` repair passes and yields one
of three outcomes per evaluation:

- FixSuccess: nothing left to fix
- FixRetry(reason): another repair pass is starting
- FixExhausted: attempts spent (or a repair pass crashed) with errors left

Exhaustion is not fatal. The state is kept and the caller persists the run
flagged as degraded.
"""

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import structlog

from agents.network import AgentNetwork, AgentState
from agents.prompts import build_auto_fix_prompt
from config import settings
from events.bus import EventBus
from events.types import AgentEvent, EventType
from validation.pipeline import ValidationPipeline, ValidationReport
from validation.taxonomy import ErrorCategory, classify_errors

if TYPE_CHECKING:
    from validation.taxonomy import ErrorClassification

logger = structlog.get_logger()


@dataclass(frozen=True)
class FixSuccess:
    """No validation errors and no self-reported agent error remain."""

    attempts: int


@dataclass(frozen=True)
class FixRetry:
    """A repair pass is about to run."""

    attempt: int
    reason: str


@dataclass(frozen=True)
class FixExhausted:
    """The loop stopped with errors remaining."""

    attempts: int
    reason: str


FixOutcome = FixSuccess | FixRetry | FixExhausted


@dataclass
class AutoFixResult:
    """Final state of the auto-fix loop.

    Attributes:
        state: Agent state after the last repair pass
        report: Most recent validation report
        outcome: FixSuccess or FixExhausted
        history: Every outcome yielded, in order
    """

    state: AgentState
    report: ValidationReport
    outcome: FixSuccess | FixExhausted
    history: list[FixOutcome] = field(default_factory=list)

    @property
    def attempts(self) -> int:
        return self.outcome.attempts

    @property
    def degraded(self) -> bool:
        return isinstance(self.outcome, FixExhausted)


def describe_errors(report: ValidationReport, agent_error: str) -> str:
    """Error details for the repair prompt: validation output, then agent text."""
    parts = []
    validation_text = report.error_text()
    if validation_text:
        parts.append(validation_text)
    if agent_error:
        parts.append(agent_error)
    return "\n\n".join(parts)


def _reason(report: ValidationReport, agent_classification: "ErrorClassification") -> str:
    checks = [check.name for check in report.checks if check.matched]
    if agent_classification.matched:
        checks.append("agent")
    first = report.classification.first_match or agent_classification.first_match
    if first is None:
        return f"{', '.join(checks)} failed"
    return f"{', '.join(checks)} failed: {first.category.value} ({first.excerpt[:120]})"


class AutoFixLoop:
    """Re-runs the agent network with repair prompts until validation is clean.

    Usage:
        >>> loop = AutoFixLoop(network, pipeline, sandbox_id, run_id=run_id)
        >>> result = await loop.run(state, report)
        >>> if result.degraded:
        ...     ...
    """

    def __init__(
        self,
        network: AgentNetwork,
        pipeline: ValidationPipeline,
        sandbox_id: str,
        event_bus: EventBus | None = None,
        run_id: str | None = None,
        max_attempts: int | None = None,
    ) -> None:
        self.network = network
        self.pipeline = pipeline
        self.sandbox_id = sandbox_id
        self.event_bus = event_bus
        self.run_id = run_id
        self.max_attempts = (
            max_attempts if max_attempts is not None else settings.auto_fix_max_attempts
        )

    def evaluate(self, agent_text: str, report: ValidationReport, attempt: int) -> FixOutcome:
        """Decide the next step from the latest agent reply and report."""
        agent_classification = classify_errors(agent_text)
        if not report.has_errors and not agent_classification.matched:
            return FixSuccess(attempts=attempt)

        reason = _reason(report, agent_classification)
        if attempt >= self.max_attempts:
            return FixExhausted(attempts=attempt, reason=reason)
        return FixRetry(attempt=attempt + 1, reason=reason)

    async def run(
        self,
        state: AgentState,
        report: ValidationReport,
        agent_text: str | None = None,
    ) -> AutoFixResult:
        """Run repair passes until success or the attempt budget is spent.

        Args:
            state: Agent state after the first network run.
            report: Validation report for that state.
            agent_text: Agent reply to check for self-reported errors before
                the first pass; defaults to the last assistant text.

        Returns:
            AutoFixResult with the final state, report and outcome.
        """
        history: list[FixOutcome] = []
        attempt = 0
        if agent_text is None:
            agent_text = state["last_assistant_text"]

        while True:
            outcome = self.evaluate(agent_text, report, attempt)
            history.append(outcome)
            if not isinstance(outcome, FixRetry):
                break

            attempt = outcome.attempt
            logger.info(
                "auto_fix_attempt",
                run_id=self.run_id,
                attempt=attempt,
                max_attempts=self.max_attempts,
                reason=outcome.reason,
            )
            await self._publish(attempt, outcome.reason)

            agent_classification = classify_errors(agent_text)
            agent_error = agent_text if agent_classification.matched else ""
            categories: list[ErrorCategory] = report.categories
            for category in agent_classification.categories:
                if category not in categories:
                    categories.append(category)

            prompt = build_auto_fix_prompt(
                describe_errors(report, agent_error),
                [category.value for category in categories],
                attempt,
                self.max_attempts,
            )
            previous_summary = state["summary"]

            try:
                network_run = await self.network.run(state, prompt)
            except Exception as e:
                logger.error(
                    "auto_fix_network_failed",
                    run_id=self.run_id,
                    attempt=attempt,
                    error=str(e),
                )
                outcome = FixExhausted(attempts=attempt, reason=f"repair pass failed: {e}")
                history.append(outcome)
                break

            state = network_run.state
            agent_text = state["last_assistant_text"]
            if not state["summary"] and previous_summary:
                state = {**state, "summary": previous_summary}

            if network_run.error:
                logger.warning(
                    "auto_fix_agent_error",
                    run_id=self.run_id,
                    attempt=attempt,
                    error=network_run.error,
                )
                outcome = FixExhausted(
                    attempts=attempt, reason=f"repair pass failed: {network_run.error}"
                )
                history.append(outcome)
                break

            report = await self.pipeline.run(self.sandbox_id, run_id=self.run_id)

        if isinstance(outcome, FixExhausted):
            logger.warning(
                "auto_fix_exhausted",
                run_id=self.run_id,
                attempts=outcome.attempts,
                reason=outcome.reason,
            )
        else:
            logger.info("auto_fix_clean", run_id=self.run_id, attempts=outcome.attempts)

        return AutoFixResult(state=state, report=report, outcome=outcome, history=history)

    async def _publish(self, attempt: int, reason: str) -> None:
        if self.event_bus is None or not self.run_id:
            return
        await self.event_bus.publish(
            AgentEvent(
                type=EventType.AUTO_FIX_ATTEMPT,
                run_id=self.run_id,
                data={
                    "attempt": attempt,
                    "outcome": "retry",
                    "max_attempts": self.max_attempts,
                    "reason": reason,
                },
            )
        )
