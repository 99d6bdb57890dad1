"""Lint and build validation against a live sandbox.

Key Components:
    - ErrorCategory / ErrorClassification: Ordered error taxonomy
    - classify_errors / should_trigger_auto_fix: Taxonomy evaluation
    - ValidationPipeline: Concurrent lint and build checks
    - ValidationReport / CheckResult: Typed check results
"""

from validation.pipeline import CheckResult, ValidationPipeline, ValidationReport
from validation.taxonomy import (
    ErrorCategory,
    ErrorClassification,
    classify_errors,
    should_trigger_auto_fix,
)

__all__ = [
    "CheckResult",
    "ErrorCategory",
    "ErrorClassification",
    "ValidationPipeline",
    "ValidationReport",
    "classify_errors",
    "should_trigger_auto_fix",
]
