"""Result aggregation: error computation, text generation and file merging.

The aggregator turns the final AgentState into what gets persisted:

1. ``compute_error_reasons`` decides whether the run is an error and why
2. On success, the fragment title and user-facing response are generated
   in parallel, each with a fixed fallback
3. Sandbox files are collected and merged with the agent's files, the
   agent's copy winning on every path collision
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any

import structlog

from agents.frameworks import Framework, get_profile
from agents.llm import LLMClient
from agents.network import AgentState
from agents.prompts import FRAGMENT_TITLE_PROMPT, RESPONSE_PROMPT
from config import settings
from models.schemas import MessageType
from sandbox.docker_sandbox import DEFAULT_IGNORED_DIR_NAMES, SandboxManager
from sandbox.security import is_valid_file_path
from validation.taxonomy import should_trigger_auto_fix

logger = structlog.get_logger()

GENERIC_ERROR_MESSAGE = "Something went wrong. Please try again."
DEFAULT_TITLE = "Generated Fragment"
DEFAULT_RESPONSE = "Generated code is ready."

NO_OUTPUT_MESSAGE = (
    "I wasn't able to generate any code for your request. This could be due to:\n\n"
    "• The request was unclear or too complex\n"
    "• A temporary issue with the AI model\n"
    "• The dev server failed to start\n\n"
    "Please try:\n"
    "• Rephrasing your request with more specific details\n"
    "• Breaking complex requests into smaller steps\n"
    "• Trying again in a moment"
)
NO_FILES_MESSAGE = (
    "I understood your request but couldn't generate the code files. "
    "Please try again or rephrase your request."
)
AGENT_ERROR_MESSAGE = (
    "I encountered an error while generating code. "
    "The AI agent reported issues. Please try again."
)

REASON_NO_FILES = "no files generated"
REASON_NO_SUMMARY = "no summary available"
REASON_AGENT_ERROR = "agent reported unresolved error"
REASON_UNRESOLVED_VALIDATION = "validation errors remain after auto-fix"
WARNING_MISSING_SHADCN = "missing Shadcn UI components"

SHADCN_IMPORT_MARKER = "@/components/ui/"
SHADCN_MISSING_ERROR = (
    "[ERROR] Missing Shadcn UI usage. Rebuild the UI using components imported "
    "from '@/components/ui/*' instead of plain HTML elements."
)

CRITICAL_FILES: tuple[str, ...] = (
    "package.json",
    "tsconfig.json",
    "next.config.ts",
    "next.config.js",
    "tailwind.config.ts",
    "tailwind.config.js",
)

# Home-directory and lockfile noise that is never part of a fragment.
SYSTEM_FILE_PREFIXES: tuple[str, ...] = (
    ".bash",
    ".profile",
    ".cache/",
    ".npm/",
    ".config/",
    ".local/",
    ".e2b/",
)
SYSTEM_FILE_NAMES: frozenset[str] = frozenset(
    {"package-lock.json", "pnpm-lock.yaml", "yarn.lock", ".DS_Store"}
)

MERGE_WARN_BYTES = 4 * 1024 * 1024
MAX_SCREENSHOTS = 20
FILE_READ_BATCH_SIZE = 10


class MergeSizeError(ValueError):
    """Raised when merged fragment files exceed the storage limit."""


@dataclass
class ErrorReasons:
    """Why a run is (or is not) an error.

    Attributes:
        errors: Reasons that make the run an error
        warnings: Non-fatal findings appended to the response
        has_files: The agent wrote at least one file
        has_summary: A summary is available
        agent_reported_error: The last assistant text matched an error signature
    """

    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    has_files: bool = False
    has_summary: bool = False
    agent_reported_error: bool = False

    @property
    def is_error(self) -> bool:
        return bool(self.errors)


@dataclass
class AggregatedResult:
    """Everything needed to persist one run's assistant message and fragment."""

    is_error: bool
    message_type: MessageType
    content: str
    title: str
    files: dict[str, str]
    summary: str
    reasons: ErrorReasons
    degraded: bool = False

    @property
    def warnings(self) -> list[str]:
        return self.reasons.warnings


def uses_shadcn_components(files: dict[str, str]) -> bool:
    """Whether any ``.tsx`` file imports from ``@/components/ui/``."""
    return any(
        path.endswith(".tsx") and SHADCN_IMPORT_MARKER in content
        for path, content in files.items()
    )


def compute_error_reasons(
    state: AgentState,
    last_text: str,
    framework: Framework,
) -> ErrorReasons:
    """Compute error and warning reasons for the final state.

    Args:
        state: Final agent state.
        last_text: Text of the last assistant reply.
        framework: Framework the run used.

    Returns:
        ErrorReasons; ``is_error`` is True when any error reason applies.
    """
    files = state["files"]
    reasons = ErrorReasons(
        has_files=bool(files),
        has_summary=bool(state["summary"].strip()),
        agent_reported_error=should_trigger_auto_fix(last_text),
    )
    if not reasons.has_files:
        reasons.errors.append(REASON_NO_FILES)
    if not reasons.has_summary:
        reasons.errors.append(REASON_NO_SUMMARY)
    if reasons.agent_reported_error:
        reasons.errors.append(REASON_AGENT_ERROR)
    if framework == Framework.NEXTJS and not uses_shadcn_components(files):
        reasons.warnings.append(WARNING_MISSING_SHADCN)
    return reasons


def build_error_message(reasons: ErrorReasons) -> str:
    """Pick the user-facing message for an error result."""
    if not reasons.has_files and not reasons.has_summary:
        return NO_OUTPUT_MESSAGE
    if not reasons.has_files:
        return NO_FILES_MESSAGE
    if reasons.agent_reported_error:
        return AGENT_ERROR_MESSAGE
    return GENERIC_ERROR_MESSAGE


def build_success_message(response: str, warnings: list[str]) -> str:
    content = response.strip() or DEFAULT_RESPONSE
    if warnings:
        content += "\n\nWarnings:\n- " + "\n- ".join(warnings)
    return content


def is_system_file(path: str) -> bool:
    name = path.rsplit("/", 1)[-1]
    return name in SYSTEM_FILE_NAMES or path.startswith(SYSTEM_FILE_PREFIXES)


def filter_system_files(files: dict[str, str]) -> dict[str, str]:
    """Drop home-directory and lockfile entries collected from the sandbox."""
    return {path: content for path, content in files.items() if not is_system_file(path)}


def validate_merge_strategy(
    agent_files: dict[str, str], sandbox_files: dict[str, str]
) -> list[str]:
    """Return warnings about a pending merge. Never blocks the merge."""
    warnings: list[str] = []

    overwritten = [
        path
        for path in CRITICAL_FILES
        if path in sandbox_files and path in agent_files
        and agent_files[path] != sandbox_files[path]
    ]
    if overwritten:
        warnings.append(f"Critical files were overwritten by agent: {', '.join(overwritten)}")

    preserved = [
        path for path in CRITICAL_FILES if path in sandbox_files and path not in agent_files
    ]
    if preserved:
        warnings.append(
            "Critical files from sandbox not in agent files (will be preserved): "
            + ", ".join(preserved)
        )

    if agent_files and len(sandbox_files) > len(agent_files) * 10:
        warnings.append(
            f"Large discrepancy: sandbox has {len(sandbox_files)} files but agent "
            f"only tracked {len(agent_files)} files"
        )
    return warnings


def merge_files(
    sandbox_files: dict[str, str],
    agent_files: dict[str, str],
    max_bytes: int | None = None,
) -> dict[str, str]:
    """Merge sandbox and agent files; the agent's copy wins on collision.

    Args:
        sandbox_files: Files collected from the sandbox.
        agent_files: Files the agent reported writing.
        max_bytes: Size limit for the merged map.

    Returns:
        The merged map with invalid paths removed.

    Raises:
        MergeSizeError: If the merged content exceeds ``max_bytes``.
    """
    limit = max_bytes if max_bytes is not None else settings.max_merged_size_bytes
    workspace = settings.sandbox_workspace

    for warning in validate_merge_strategy(agent_files, sandbox_files):
        logger.warning("merge_strategy_warning", warning=warning)

    merged = {**filter_system_files(sandbox_files), **agent_files}
    valid: dict[str, str] = {}
    for path, content in merged.items():
        if is_valid_file_path(path, workspace):
            valid[path] = content
        else:
            logger.warning("merge_invalid_path_dropped", path=path[:200])

    total_bytes = sum(len(content.encode("utf-8")) for content in valid.values())
    if total_bytes > limit:
        raise MergeSizeError(
            f"Merged files size ({total_bytes / (1024 * 1024):.2f} MB) exceeds maximum "
            f"limit ({limit / (1024 * 1024):.2f} MB). File count: {len(valid)}."
        )
    if total_bytes > min(MERGE_WARN_BYTES, limit):
        logger.warning("merged_files_near_limit", bytes=total_bytes, files=len(valid))

    logger.debug(
        "files_merged",
        sandbox_files=len(sandbox_files),
        agent_files=len(agent_files),
        merged=len(valid),
    )
    return valid


def sanitize_screenshots(urls: list[str]) -> list[str]:
    """Deduplicate and validate screenshot URLs, keeping at most 20."""
    seen: list[str] = []
    for url in urls:
        if not isinstance(url, str) or not url:
            continue
        if not (url.startswith(("http://", "https://", "data:image/"))):
            continue
        if url not in seen:
            seen.append(url)
        if len(seen) >= MAX_SCREENSHOTS:
            break
    return seen


async def collect_sandbox_files(
    sandbox_manager: SandboxManager,
    sandbox_id: str,
    framework: Framework,
    max_files: int | None = None,
) -> dict[str, str]:
    """Read the sandbox workspace, pruning dependency and build directories.

    Files over the size limit and failed reads are skipped. Reads run in
    batches of 10 with a per-file timeout.
    """
    limit = max_files or settings.max_file_count
    ignored = set(DEFAULT_IGNORED_DIR_NAMES) | set(get_profile(framework).build_dirs)
    entries = await sandbox_manager.list_files_recursive(
        sandbox_id, ignored_dir_names=ignored
    )

    candidates = [
        entry
        for entry in entries
        if not entry.is_directory
        and entry.size <= settings.max_file_size_bytes
        and not is_system_file(entry.path)
        and is_valid_file_path(entry.path, settings.sandbox_workspace)
    ]
    if len(candidates) > limit:
        logger.warning("sandbox_file_count_exceeded", count=len(candidates), limit=limit)
        candidates = candidates[:limit]

    async def read_one(path: str) -> str | None:
        try:
            return await asyncio.wait_for(
                sandbox_manager.read_file(sandbox_id, path),
                timeout=settings.file_read_timeout_seconds,
            )
        except Exception as e:
            logger.warning("sandbox_file_read_skipped", path=path, error=str(e) or type(e).__name__)
            return None

    files: dict[str, str] = {}
    for start in range(0, len(candidates), FILE_READ_BATCH_SIZE):
        batch = candidates[start : start + FILE_READ_BATCH_SIZE]
        contents = await asyncio.gather(*(read_one(entry.path) for entry in batch))
        for entry, content in zip(batch, contents, strict=True):
            if content is not None:
                files[entry.path] = content

    logger.info("sandbox_files_collected", sandbox_id=sandbox_id, files=len(files))
    return files


class ResultAggregator:
    """Builds the persisted result for a finished run.

    Usage:
        >>> aggregator = ResultAggregator(llm_client, sandbox_manager)
        >>> result = await aggregator.aggregate(state, Framework.NEXTJS, sandbox_id)
    """

    def __init__(
        self,
        llm_client: LLMClient,
        sandbox_manager: SandboxManager | None = None,
        title_model: str | None = None,
        run_id: str | None = None,
    ) -> None:
        self.llm_client = llm_client
        self.sandbox_manager = sandbox_manager
        self.title_model = title_model or settings.title_model
        self.run_id = run_id

    async def _generate(self, system_prompt: str, summary: str, agent_id: str) -> str:
        try:
            response = await self.llm_client.call(
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": summary},
                ],
                model=self.title_model,
                temperature=0.3,
                run_id=self.run_id,
                agent_id=agent_id,
            )
        except Exception as e:
            logger.warning("secondary_generation_failed", agent_id=agent_id, error=str(e))
            return ""
        return response.content.strip()

    async def generate_title_and_response(self, summary: str) -> tuple[str, str]:
        """Generate the fragment title and the user-facing response in parallel."""
        title, response = await asyncio.gather(
            self._generate(FRAGMENT_TITLE_PROMPT, summary, "fragment_title"),
            self._generate(RESPONSE_PROMPT, summary, "response_generator"),
        )
        title = title.strip().strip("\"'") or DEFAULT_TITLE
        return title, response or DEFAULT_RESPONSE

    async def _merged_files(
        self,
        agent_files: dict[str, str],
        framework: Framework,
        sandbox_id: str | None,
    ) -> dict[str, str]:
        if not sandbox_id or self.sandbox_manager is None:
            return agent_files
        sandbox_files = await collect_sandbox_files(self.sandbox_manager, sandbox_id, framework)
        if not sandbox_files:
            return agent_files
        return merge_files(sandbox_files, agent_files)

    async def aggregate(
        self,
        state: AgentState,
        framework: Framework,
        sandbox_id: str | None = None,
        merge_sandbox_files: bool = True,
        degraded: bool = False,
    ) -> AggregatedResult:
        """Aggregate the final state into a persistable result.

        Args:
            state: Final agent state.
            framework: Framework the run used.
            sandbox_id: Sandbox to collect files from.
            merge_sandbox_files: False in fast mode; only agent files are kept.
            degraded: The auto-fix loop ended with errors remaining.

        Returns:
            AggregatedResult.

        Raises:
            MergeSizeError: If merged files exceed the size limit.
        """
        reasons = compute_error_reasons(state, state["last_assistant_text"], framework)
        if degraded and REASON_UNRESOLVED_VALIDATION not in reasons.errors:
            reasons.errors.append(REASON_UNRESOLVED_VALIDATION)

        if reasons.warnings:
            logger.warning("completion_warnings", run_id=self.run_id, warnings=reasons.warnings)

        agent_files = dict(state["files"])
        if reasons.is_error:
            logger.warning("completion_flagged_error", run_id=self.run_id, reasons=reasons.errors)
            content = GENERIC_ERROR_MESSAGE if degraded else build_error_message(reasons)
            # Degraded fragments are persisted with the merged file set.
            files = agent_files
            if degraded and merge_sandbox_files:
                files = await self._merged_files(agent_files, framework, sandbox_id)
            return AggregatedResult(
                is_error=True,
                message_type=MessageType.ERROR,
                content=content,
                title=DEFAULT_TITLE,
                files=files,
                summary=state["summary"],
                reasons=reasons,
                degraded=degraded,
            )

        title, response = await self.generate_title_and_response(state["summary"])

        files = agent_files
        if merge_sandbox_files:
            files = await self._merged_files(agent_files, framework, sandbox_id)

        return AggregatedResult(
            is_error=False,
            message_type=MessageType.RESULT,
            content=build_success_message(response, reasons.warnings),
            title=title,
            files=files,
            summary=state["summary"],
            reasons=reasons,
        )


def fragment_metadata(
    result: AggregatedResult, model: str, screenshots: list[str] | None = None
) -> dict[str, Any]:
    """Metadata stored alongside a fragment."""
    metadata: dict[str, Any] = {"model": model}
    cleaned = sanitize_screenshots(screenshots or [])
    if cleaned:
        metadata["screenshots"] = cleaned
    if result.warnings:
        metadata["warnings"] = list(result.warnings)
    if result.degraded:
        metadata["degraded"] = True
        metadata["errorReasons"] = list(result.reasons.errors)
    return metadata
