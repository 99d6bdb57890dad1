"""Ordered error taxonomy for validation output and agent replies.

The taxonomy is a table of ``(category, pattern)`` rows. Specific categories
come first and the broad ``generic`` markers last, so ``first_match``
always names the most specific signature seen in the text. Evaluating the
table yields an ``ErrorClassification`` that the repair prompt and the
error computation can both inspect.
"""

import re
from dataclasses import dataclass, field
from enum import StrEnum


class ErrorCategory(StrEnum):
    """Kinds of error signature recognized in command output."""

    SYNTAX = "syntax"
    TYPE = "type"
    MODULE_RESOLUTION = "module_resolution"
    RUNTIME_REFERENCE = "runtime_reference"
    LINT = "lint"
    BUNDLER = "bundler"
    BUILD_FAILURE = "build_failure"
    PROCESS = "process"
    GENERIC = "generic"


def _ci(pattern: str) -> re.Pattern[str]:
    return re.compile(pattern, re.IGNORECASE)


ERROR_TAXONOMY: tuple[tuple[ErrorCategory, re.Pattern[str]], ...] = (
    (ErrorCategory.SYNTAX, _ci(r"SyntaxError")),
    (ErrorCategory.SYNTAX, _ci(r"Parsing ecmascript source code failed")),
    (ErrorCategory.SYNTAX, _ci(r"Expected a semicolon")),
    (ErrorCategory.SYNTAX, _ci(r"the name .* is defined multiple times")),
    (ErrorCategory.TYPE, _ci(r"TypeError")),
    (ErrorCategory.TYPE, _ci(r"Type error")),
    (ErrorCategory.TYPE, _ci(r"TS\d+")),
    (ErrorCategory.MODULE_RESOLUTION, _ci(r"Module not found")),
    (ErrorCategory.MODULE_RESOLUTION, _ci(r"Cannot find module")),
    (ErrorCategory.MODULE_RESOLUTION, _ci(r"Failed to resolve")),
    (ErrorCategory.MODULE_RESOLUTION, _ci(r"ENOENT")),
    (ErrorCategory.RUNTIME_REFERENCE, _ci(r"ReferenceError")),
    (ErrorCategory.RUNTIME_REFERENCE, _ci(r"undefined is not")),
    (ErrorCategory.RUNTIME_REFERENCE, _ci(r"null is not")),
    (ErrorCategory.RUNTIME_REFERENCE, _ci(r"Cannot read propert")),
    (ErrorCategory.RUNTIME_REFERENCE, _ci(r"is not a function")),
    (ErrorCategory.RUNTIME_REFERENCE, _ci(r"is not defined")),
    (ErrorCategory.LINT, _ci(r"ESLint")),
    (ErrorCategory.BUNDLER, _ci(r"Ecmascript file had an error")),
    (ErrorCategory.BUNDLER, _ci(r"Turbopack build failed")),
    (ErrorCategory.BUNDLER, _ci(r"Module build failed")),
    (ErrorCategory.BUILD_FAILURE, _ci(r"Build failed")),
    (ErrorCategory.BUILD_FAILURE, _ci(r"Compilation error")),
    (ErrorCategory.PROCESS, _ci(r"CommandExitError")),
    (ErrorCategory.GENERIC, _ci(r"Error:")),
    (ErrorCategory.GENERIC, _ci(r"\[ERROR\]")),
    (ErrorCategory.GENERIC, re.compile(r"ERROR")),
    (ErrorCategory.GENERIC, _ci(r"Failed\b")),
    (ErrorCategory.GENERIC, _ci(r"failure\b")),
    (ErrorCategory.GENERIC, _ci(r"Exception\b")),
)


@dataclass(frozen=True)
class ErrorMatch:
    """A single taxonomy row that matched."""

    category: ErrorCategory
    pattern: str
    excerpt: str


@dataclass(frozen=True)
class ErrorClassification:
    """Result of evaluating the taxonomy against a piece of text.

    Attributes:
        matches: Every matching row, in taxonomy order
    """

    matches: tuple[ErrorMatch, ...] = field(default_factory=tuple)

    @property
    def matched(self) -> bool:
        return bool(self.matches)

    @property
    def first_match(self) -> ErrorMatch | None:
        return self.matches[0] if self.matches else None

    @property
    def categories(self) -> list[ErrorCategory]:
        """Distinct matched categories, most specific first."""
        seen: list[ErrorCategory] = []
        for match in self.matches:
            if match.category not in seen:
                seen.append(match.category)
        return seen

    def merge(self, other: "ErrorClassification") -> "ErrorClassification":
        return ErrorClassification(matches=self.matches + other.matches)


NO_ERRORS = ErrorClassification()


def _excerpt(text: str, start: int, end: int, context: int = 60) -> str:
    line_start = text.rfind("\n", 0, start) + 1
    line_end = text.find("\n", end)
    if line_end == -1:
        line_end = len(text)
    snippet = text[max(line_start, start - context) : min(line_end, end + context)]
    return snippet.strip()


def classify_errors(text: str | None) -> ErrorClassification:
    """Evaluate the taxonomy once against ``text``.

    Args:
        text: Command output or assistant reply.

    Returns:
        ErrorClassification; ``matched`` is False for empty text.
    """
    if not text:
        return NO_ERRORS

    matches: list[ErrorMatch] = []
    for category, pattern in ERROR_TAXONOMY:
        found = pattern.search(text)
        if found:
            matches.append(
                ErrorMatch(
                    category=category,
                    pattern=pattern.pattern,
                    excerpt=_excerpt(text, found.start(), found.end()),
                )
            )
    return ErrorClassification(matches=tuple(matches))


def should_trigger_auto_fix(text: str | None) -> bool:
    """Whether ``text`` contains any known error signature."""
    return classify_errors(text).matched
