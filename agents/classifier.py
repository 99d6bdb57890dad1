"""One-shot framework classification for new projects."""

from dataclasses import dataclass
from typing import Literal

import structlog

from agents.frameworks import DEFAULT_FRAMEWORK, Framework, parse_framework
from agents.llm import LLMClient
from agents.prompts import FRAMEWORK_SELECTOR_PROMPT
from config import settings

logger = structlog.get_logger()

SelectionSource = Literal["project", "classifier", "fallback"]


@dataclass(frozen=True)
class FrameworkSelection:
    """The framework chosen for a run and where the choice came from."""

    framework: Framework
    source: SelectionSource

    @property
    def is_new(self) -> bool:
        """True when the project did not have a framework before this run."""
        return self.source != "project"


def parse_classifier_output(text: str) -> Framework | None:
    """Extract a framework name from classifier output.

    The first recognizable word wins, so answers like "vue." or
    "Answer: svelte" are accepted.
    """
    direct = parse_framework(text)
    if direct is not None:
        return direct
    for token in text.replace(",", " ").replace(".", " ").replace(":", " ").split():
        framework = parse_framework(token)
        if framework is not None:
            return framework
    return None


async def classify_framework(
    user_request: str,
    current: Framework | str | None,
    llm: LLMClient,
    run_id: str | None = None,
) -> FrameworkSelection:
    """Choose the framework for a run.

    A framework already stored on the project short-circuits the call.
    Otherwise one constrained LLM call picks from the supported set;
    unrecognized output, and any error, falls back to the default.
    This function never raises.

    Args:
        user_request: The user's free-text request.
        current: Framework already stored on the project, if any.
        llm: Client used for the classification call.
        run_id: Optional run id for event attribution.

    Returns:
        The selected framework and its source.
    """
    existing = parse_framework(current) if current else None
    if existing is not None:
        return FrameworkSelection(framework=existing, source="project")

    try:
        response = await llm.call(
            messages=[
                {"role": "system", "content": FRAMEWORK_SELECTOR_PROMPT},
                {"role": "user", "content": user_request},
            ],
            model=settings.framework_selector_model,
            temperature=0.0,
            max_tokens=10,
            run_id=run_id,
            agent_id="framework_selector",
        )
    except Exception as e:
        logger.warning("framework_classification_failed", error=str(e))
        return FrameworkSelection(framework=DEFAULT_FRAMEWORK, source="fallback")

    framework = parse_classifier_output(response.content)
    if framework is None:
        logger.info(
            "framework_classification_unrecognized",
            output=response.content[:50],
        )
        return FrameworkSelection(framework=DEFAULT_FRAMEWORK, source="fallback")

    logger.info("framework_classified", framework=framework.value)
    return FrameworkSelection(framework=framework, source="classifier")
