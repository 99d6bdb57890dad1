"""Post-agent orchestration: repair, aggregation and request context.

Key Components:
    - AutoFixLoop: Bounded repair loop with a discriminated outcome
    - ResultAggregator: Turns the final agent state into a persisted result
    - ContextFetcher: Parallel URL fetches that enrich the first prompt
"""

from orchestration.aggregator import (
    AggregatedResult,
    MergeSizeError,
    ResultAggregator,
    compute_error_reasons,
    merge_files,
)
from orchestration.autofix import (
    AutoFixLoop,
    AutoFixResult,
    FixExhausted,
    FixOutcome,
    FixRetry,
    FixSuccess,
)
from orchestration.context_fetcher import ContextFetcher, FetchedContent, extract_urls

__all__ = [
    "AggregatedResult",
    "AutoFixLoop",
    "AutoFixResult",
    "ContextFetcher",
    "FetchedContent",
    "FixExhausted",
    "FixOutcome",
    "FixRetry",
    "FixSuccess",
    "MergeSizeError",
    "ResultAggregator",
    "compute_error_reasons",
    "extract_urls",
    "merge_files",
]
