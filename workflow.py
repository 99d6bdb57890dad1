"""Code-generation workflow: the run, fix and transfer entry points.

This module provides the CodegenWorkflow class that drives one request from
framework selection to a persisted Message and Fragment:

1. Classify the framework (skipped when the project already has one)
2. Provision a sandbox, falling back to the default template
3. Run the code agent under the router state machine
4. Validate (lint + build) and run the bounded auto-fix loop
5. Aggregate, persist, and publish the result

Only sandbox creation and sandbox resume failures propagate to callers.
Every other failure is resolved into an error message that is still
persisted, so a run always leaves one assistant message behind.

Usage:
    >>> from events import get_event_bus
    >>> from models.database import ProjectStore
    >>> from sandbox import SandboxManager
    >>> from workflow import CodegenWorkflow
    >>>
    >>> workflow = CodegenWorkflow(ProjectStore(path), SandboxManager(), get_event_bus())
    >>> result = await workflow.run(RunRequest(project_id=pid, user_request="Build a todo app"))
    >>> print(result.url, result.is_error)
"""

import asyncio
import contextlib
import time
import uuid
from collections import Counter
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

import structlog

from agents.classifier import classify_framework
from agents.frameworks import Framework, get_profile
from agents.llm import LLMClient, MockLLMClient
from agents.network import (
    AgentNetwork,
    AgentState,
    create_agent_state,
    synthesize_summary,
)
from agents.prompts import build_fix_request, get_code_agent_prompt
from agents.tools import CodeAgentTools
from config import settings
from events.bus import EventBus
from events.types import AgentEvent, EventType
from models.database import ProjectStore
from models.schemas import (
    FixResult,
    Fragment,
    Message,
    MessageRole,
    MessageType,
    Project,
    RunMode,
    RunRequest,
    RunResult,
    RunStatus,
    TransferResult,
)
from orchestration.aggregator import (
    DEFAULT_TITLE,
    GENERIC_ERROR_MESSAGE,
    SHADCN_MISSING_ERROR,
    ResultAggregator,
    fragment_metadata,
    uses_shadcn_components,
)
from orchestration.autofix import AutoFixLoop
from orchestration.context_fetcher import ContextFetcher, extract_urls
from sandbox.docker_sandbox import (
    SandboxCreationError,
    SandboxInfo,
    SandboxManager,
    SandboxResumeError,
)
from validation.pipeline import ValidationPipeline
from validation.taxonomy import should_trigger_auto_fix

logger = structlog.get_logger()

NO_ERRORS_MESSAGE = "No errors detected"
FIX_SUCCESS_MESSAGE = "Errors fixed successfully"
FIX_PARTIAL_MESSAGE = "Some errors may remain. Please check the sandbox."
FIX_TIMEOUT_MESSAGE = "Automatic fix timed out. Please refresh the fragment."
FIX_FAILED_MESSAGE = "Automatic fix failed. Please review the sandbox and try again."
NO_SANDBOX_MESSAGE = "Fragment has no sandbox"
SANDBOX_EXPIRED_MESSAGE = "Sandbox is no longer active. Please refresh the fragment."
TRANSFER_FAILED_MESSAGE = "Sandbox resume failed. Please trigger a new build."


class ProjectNotFoundError(LookupError):
    """Raised when a run targets a project that does not exist."""


class FragmentNotFoundError(LookupError):
    """Raised when fix or transfer targets a fragment that does not exist."""


@dataclass
class RunRecord:
    """Tracking information for a background run.

    Attributes:
        run_id: Unique identifier (e.g., "run_abc123def456")
        project_id: The project the run belongs to
        status: Current status (started, running, complete, error)
        created_at: Unix timestamp when the run was scheduled
        completed_at: Unix timestamp when the run finished
        error_message: Error message if status is "error"
        result: RunResult once the run completed
    """

    run_id: str
    project_id: str
    status: RunStatus
    created_at: float
    completed_at: float | None = None
    error_message: str | None = None
    result: RunResult | None = None


@dataclass
class _RunOutcome:
    """Intermediate values collected while a run is in its sandbox."""

    state: AgentState
    screenshots: list[str] = field(default_factory=list)
    auto_fix_attempts: int = 0
    degraded: bool = False


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


def _history_message(message: Message) -> dict[str, str]:
    role = "user" if message.role == MessageRole.USER else "assistant"
    return {"role": role, "content": message.content}


def initial_fix_text(state: AgentState, framework: Framework) -> str:
    """Agent text checked before the first auto-fix evaluation.

    Next.js output that never imports a Shadcn UI component is sent back for
    one repair pass by reporting it as an agent error.
    """
    text = state["last_assistant_text"]
    if (
        framework != Framework.NEXTJS
        or not state["files"]
        or uses_shadcn_components(state["files"])
    ):
        return text
    if should_trigger_auto_fix(text):
        return f"{text}\n\n{SHADCN_MISSING_ERROR}"
    return SHADCN_MISSING_ERROR


class CodegenWorkflow:
    """Coordinates classifier, sandbox, agent network, validation and storage.

    Each run builds its own tool set, network and validation pipeline bound
    to the run's sandbox id; nothing run-specific is shared between
    concurrent runs. Sandboxes referenced by in-flight runs are excluded
    from the cleanup sweep.

    Thread Safety:
        The run registry is guarded by an asyncio.Lock.

    Attributes:
        store: Persistence for projects, messages and fragments
        sandbox_manager: Provider of isolated sandboxes
        event_bus: Bus for real-time run events
        llm_client: Client shared by the classifier, agent and aggregator
    """

    def __init__(
        self,
        store: ProjectStore,
        sandbox_manager: SandboxManager,
        event_bus: EventBus,
        llm_client: LLMClient | None = None,
        context_fetcher: ContextFetcher | None = None,
    ) -> None:
        """Initialize the workflow.

        Args:
            store: Initialized ProjectStore.
            sandbox_manager: Manager for sandbox operations.
            event_bus: Event bus for emitting events.
            llm_client: Optional client override; a MockLLMClient is used
                when ``settings.use_mock_llm`` is set.
            context_fetcher: Optional URL context fetcher override.
        """
        self.store = store
        self.sandbox_manager = sandbox_manager
        self.event_bus = event_bus
        if llm_client is None:
            llm_client = (
                MockLLMClient(event_bus=event_bus)
                if settings.use_mock_llm
                else LLMClient(event_bus=event_bus)
            )
        self.llm_client = llm_client
        self.context_fetcher = context_fetcher or ContextFetcher()
        self._runs: dict[str, RunRecord] = {}
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._inflight: Counter[str] = Counter()
        self._lock = asyncio.Lock()
        logger.info("codegen_workflow_initialized")

    def _generate_run_id(self) -> str:
        return f"run_{uuid.uuid4().hex[:12]}"

    async def _publish(
        self, run_id: str, event_type: EventType, data: dict[str, Any] | None = None
    ) -> None:
        await self.event_bus.publish(
            AgentEvent(type=event_type, run_id=run_id, data=data or {})
        )

    @property
    def inflight_sandbox_ids(self) -> set[str]:
        """Sandbox ids currently used by a run or fix."""
        return set(self._inflight)

    @contextlib.asynccontextmanager
    async def _using_sandbox(self, sandbox_id: str) -> AsyncIterator[None]:
        """Mark a leased sandbox in flight and release the lease afterwards."""
        self._inflight[sandbox_id] += 1
        try:
            yield
        finally:
            self._inflight[sandbox_id] -= 1
            if self._inflight[sandbox_id] <= 0:
                del self._inflight[sandbox_id]
            await self.sandbox_manager.release(sandbox_id)

    # -----------------------------------------------------------------
    # Run
    # -----------------------------------------------------------------

    async def run(self, request: RunRequest, run_id: str | None = None) -> RunResult:
        """Generate code for a request and persist the result.

        Args:
            request: Project id, user request and run mode.
            run_id: Identifier used for events; generated when omitted.

        Returns:
            RunResult for the persisted assistant message.

        Raises:
            ProjectNotFoundError: If the project does not exist.
            SandboxCreationError: If no sandbox could be provisioned. The
                generic error message is persisted before raising.
        """
        run_id = run_id or self._generate_run_id()
        log = logger.bind(run_id=run_id, project_id=request.project_id)

        project = await self.store.get_project(request.project_id)
        if project is None:
            raise ProjectNotFoundError(f"Project '{request.project_id}' not found")

        await self._publish(run_id, EventType.RUN_STARTED, {
            "project_id": project.id,
            "mode": request.mode.value,
        })

        previous = await self.store.list_messages(
            project.id,
            limit=settings.previous_messages_context,
            include_fragments=False,
        )
        await self.store.create_message(
            project.id, request.user_request, MessageRole.USER, MessageType.RESULT
        )

        selection = await classify_framework(
            request.user_request, project.framework, self.llm_client, run_id=run_id
        )
        try:
            sandbox, framework = await self.sandbox_manager.create_for_framework(
                selection.framework
            )
        except SandboxCreationError as e:
            log.error("run_sandbox_creation_failed", error=str(e))
            await self.store.create_message(
                project.id, GENERIC_ERROR_MESSAGE, MessageRole.ASSISTANT, MessageType.ERROR
            )
            raise

        async with self._using_sandbox(sandbox.sandbox_id):
            if selection.is_new:
                await self.store.update_project_framework(project.id, framework)
            await self._publish(run_id, EventType.FRAMEWORK_SELECTED, {
                "framework": framework.value,
                "source": selection.source,
                "fallback": framework != selection.framework,
            })
            await self._publish(run_id, EventType.SANDBOX_READY, {
                "sandbox_id": sandbox.sandbox_id,
                "template": sandbox.template,
            })
            log.info(
                "run_sandbox_ready",
                sandbox_id=sandbox.sandbox_id,
                framework=framework.value,
                mode=request.mode.value,
            )
            result = await self._run_in_sandbox(
                project, request, run_id, sandbox, framework, previous
            )

        await self._publish(run_id, EventType.RUN_COMPLETE, {
            "is_error": result.is_error,
            "degraded": result.degraded,
            "message_id": result.message_id,
            "fragment_id": result.fragment_id,
            "url": result.url,
            "auto_fix_attempts": result.auto_fix_attempts,
        })
        log.info(
            "run_complete",
            is_error=result.is_error,
            degraded=result.degraded,
            files=len(result.files),
            auto_fix_attempts=result.auto_fix_attempts,
        )
        return result

    async def _run_in_sandbox(
        self,
        project: Project,
        request: RunRequest,
        run_id: str,
        sandbox: SandboxInfo,
        framework: Framework,
        previous: list[Message],
    ) -> RunResult:
        sandbox_id = sandbox.sandbox_id
        state: AgentState | None = None
        try:
            outcome = await self._generate(request, run_id, sandbox, framework, previous)
            state = outcome.state
            aggregator = ResultAggregator(self.llm_client, self.sandbox_manager, run_id=run_id)
            result = await aggregator.aggregate(
                state,
                framework,
                sandbox_id,
                merge_sandbox_files=request.mode == RunMode.SAFE,
                degraded=outcome.degraded,
            )
        except Exception as e:
            logger.error(
                "run_failed",
                run_id=run_id,
                sandbox_id=sandbox_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            message = await self.store.create_message(
                project.id, GENERIC_ERROR_MESSAGE, MessageRole.ASSISTANT, MessageType.ERROR
            )
            return RunResult(
                title=DEFAULT_TITLE,
                files=dict(state["files"]) if state else {},
                summary=state["summary"] if state else "",
                is_error=True,
                framework=framework,
                sandbox_id=sandbox_id,
                message_id=message.id,
                error_reasons=[str(e) or type(e).__name__],
            )

        keep_fragment = not result.is_error or result.degraded
        url = await self._sandbox_url(sandbox_id, framework) if keep_fragment else None

        message = await self.store.create_message(
            project.id, result.content, MessageRole.ASSISTANT, result.message_type
        )
        fragment_id = None
        if keep_fragment:
            metadata = fragment_metadata(result, settings.code_agent_model, outcome.screenshots)
            metadata["summary"] = result.summary
            metadata["autoFixAttempts"] = outcome.auto_fix_attempts
            fragment = await self.store.create_or_update_fragment(
                message_id=message.id,
                sandbox_id=sandbox_id,
                sandbox_url=url,
                title=result.title,
                files=result.files,
                framework=framework,
                metadata=metadata,
            )
            fragment_id = fragment.id

        return RunResult(
            url=url,
            title=result.title,
            files=result.files,
            summary=result.summary,
            is_error=result.is_error,
            framework=framework,
            sandbox_id=sandbox_id,
            message_id=message.id,
            fragment_id=fragment_id,
            warnings=list(result.warnings),
            error_reasons=list(result.reasons.errors),
            auto_fix_attempts=outcome.auto_fix_attempts,
            degraded=result.degraded,
        )

    async def _generate(
        self,
        request: RunRequest,
        run_id: str,
        sandbox: SandboxInfo,
        framework: Framework,
        previous: list[Message],
    ) -> _RunOutcome:
        """Fetch context, run the agent network, then validate and auto-fix."""
        sandbox_id = sandbox.sandbox_id
        contexts = await self.context_fetcher.fetch_all(extract_urls(request.user_request))
        if contexts:
            await self._publish(run_id, EventType.CONTEXT_FETCHED, {
                "urls": [context.url for context in contexts],
            })

        state = create_agent_state(
            framework,
            get_code_agent_prompt(framework, sandbox.workspace_path),
            context_messages=[
                *(_history_message(message) for message in previous),
                *(context.as_message() for context in contexts),
            ],
        )
        tools = CodeAgentTools(self.sandbox_manager, sandbox_id, self.event_bus, run_id)
        network = AgentNetwork(
            self.llm_client,
            tools,
            self.event_bus,
            run_id=run_id,
            max_iterations=settings.network_max_iterations,
            summary_retry_cap=settings.summary_retry_cap,
        )

        network_run = await network.run(state, request.user_request)
        state = network_run.state
        if network_run.error:
            logger.warning("run_network_error", run_id=run_id, error=network_run.error)
        state = await self._ensure_summary(network, state, run_id)
        self._check_entry_points(state, framework, run_id)

        outcome = _RunOutcome(
            state=state,
            screenshots=[url for context in contexts for url in context.screenshots],
        )
        if request.mode == RunMode.FAST or network_run.error:
            return outcome

        pipeline = ValidationPipeline(self.sandbox_manager, self.event_bus)
        report = await pipeline.run(sandbox_id, run_id=run_id)
        loop = AutoFixLoop(network, pipeline, sandbox_id, self.event_bus, run_id=run_id)
        fix = await loop.run(state, report, agent_text=initial_fix_text(state, framework))

        outcome.state = await self._ensure_summary(network, fix.state, run_id)
        outcome.auto_fix_attempts = fix.attempts
        outcome.degraded = fix.degraded
        return outcome

    async def _ensure_summary(
        self, network: AgentNetwork, state: AgentState, run_id: str
    ) -> AgentState:
        """Ask once more for a missing summary, then fall back to a synthesized one."""
        if state["summary"] or not state["files"]:
            return state
        state = await network.request_summary(state)
        if state["summary"]:
            return state
        logger.warning("run_summary_synthesized", run_id=run_id, files=len(state["files"]))
        return {
            **state,
            "summary": synthesize_summary(state["files"]),
            "summary_synthesized": True,
        }

    def _check_entry_points(
        self, state: AgentState, framework: Framework, run_id: str
    ) -> None:
        entry_points = get_profile(framework).entry_points
        if state["files"] and not any(path in state["files"] for path in entry_points):
            logger.warning(
                "run_entry_points_untouched",
                run_id=run_id,
                framework=framework.value,
                entry_points=list(entry_points),
            )

    async def _sandbox_url(self, sandbox_id: str, framework: Framework) -> str | None:
        """Start the dev server if needed and return the public URL."""
        try:
            await self.sandbox_manager.ensure_dev_server(sandbox_id, framework)
            return await self.sandbox_manager.get_host(sandbox_id, get_profile(framework).port)
        except Exception as e:
            logger.warning("sandbox_url_unavailable", sandbox_id=sandbox_id, error=str(e))
            return None

    # -----------------------------------------------------------------
    # Background runs
    # -----------------------------------------------------------------

    async def start_run(self, request: RunRequest) -> str:
        """Schedule a run in the background and return its id.

        Raises:
            ProjectNotFoundError: If the project does not exist.
        """
        if await self.store.get_project(request.project_id) is None:
            raise ProjectNotFoundError(f"Project '{request.project_id}' not found")

        run_id = self._generate_run_id()
        record = RunRecord(
            run_id=run_id,
            project_id=request.project_id,
            status=RunStatus.STARTED,
            created_at=time.time(),
        )
        async with self._lock:
            self._prune_runs(record.created_at)
            self._runs[run_id] = record
            background_task = asyncio.create_task(
                self._execute_run(request, record), name=f"run_{run_id}"
            )
            self._tasks[run_id] = background_task

            def _remove_task(t: asyncio.Task[None], rid: str = run_id) -> None:
                self._tasks.pop(rid, None)

            background_task.add_done_callback(_remove_task)

        logger.info("run_scheduled", run_id=run_id, project_id=request.project_id)
        return run_id

    async def _execute_run(self, request: RunRequest, record: RunRecord) -> None:
        record.status = RunStatus.RUNNING
        try:
            record.result = await self.run(request, run_id=record.run_id)
            record.status = RunStatus.COMPLETE
        except asyncio.CancelledError:
            record.status = RunStatus.ERROR
            record.error_message = "Run cancelled"
            raise
        except Exception as e:
            logger.error("run_task_failed", run_id=record.run_id, error=str(e))
            record.status = RunStatus.ERROR
            record.error_message = str(e) or GENERIC_ERROR_MESSAGE
            await self._publish(record.run_id, EventType.RUN_ERROR, {
                "error": record.error_message,
                "message": GENERIC_ERROR_MESSAGE,
            })
        finally:
            record.completed_at = time.time()
            await self.event_bus.close_run(record.run_id)

    def get_run(self, run_id: str) -> RunRecord | None:
        """Return tracking information for a background run."""
        return self._runs.get(run_id)

    def _prune_runs(self, now: float) -> None:
        """Forget finished runs older than ``settings.run_retention_seconds``."""
        expired = [
            run_id
            for run_id, record in self._runs.items()
            if record.completed_at is not None
            and now - record.completed_at >= settings.run_retention_seconds
        ]
        for run_id in expired:
            del self._runs[run_id]
        if expired:
            logger.debug("run_records_pruned", count=len(expired))

    # -----------------------------------------------------------------
    # Fix
    # -----------------------------------------------------------------

    async def _load_fragment(self, fragment_id: str) -> Fragment:
        fragment = await self.store.get_fragment(fragment_id)
        if fragment is None:
            raise FragmentNotFoundError("Fragment not found")
        if not fragment.sandbox_id:
            raise SandboxResumeError(NO_SANDBOX_MESSAGE)
        return fragment

    async def fix(self, fragment_id: str, run_id: str | None = None) -> FixResult:
        """Re-validate a fragment's sandbox and repair the errors found.

        No framework classification and no new sandbox: the fragment's own
        sandbox is resumed. When validation is clean the agent is not run.

        Args:
            fragment_id: The fragment to repair.
            run_id: Identifier used for events; generated when omitted.

        Returns:
            FixResult. Failures after the sandbox was resumed are reported
            here (and in fragment metadata) rather than raised.
            The result carries the run id its events were published under.

        Raises:
            FragmentNotFoundError: If the fragment does not exist.
            SandboxResumeError: If the fragment's sandbox cannot be resumed.
        """
        run_id = run_id or self._generate_run_id()
        try:
            result = await self._fix(fragment_id, run_id)
        finally:
            await self.event_bus.close_run(run_id)
        return result.model_copy(update={"run_id": run_id})

    async def _fix(self, fragment_id: str, run_id: str) -> FixResult:
        fragment = await self._load_fragment(fragment_id)
        await self._publish(run_id, EventType.FIX_STARTED, {
            "fragment_id": fragment.id,
            "sandbox_id": fragment.sandbox_id,
        })

        try:
            sandbox = await self.sandbox_manager.resume(fragment.sandbox_id or "")
        except SandboxResumeError as e:
            logger.warning("fix_sandbox_resume_failed", fragment_id=fragment.id, error=str(e))
            raise SandboxResumeError(SANDBOX_EXPIRED_MESSAGE) from e

        async with self._using_sandbox(sandbox.sandbox_id):
            try:
                result = await self._fix_in_sandbox(fragment, sandbox, run_id)
            except Exception as e:
                result = await self._record_fix_failure(fragment, e)

        await self._publish(run_id, EventType.FIX_COMPLETE, {
            "fragment_id": fragment.id,
            "success": result.success,
            "message": result.message,
        })
        return result

    async def _fix_in_sandbox(
        self, fragment: Fragment, sandbox: SandboxInfo, run_id: str
    ) -> FixResult:
        sandbox_id = sandbox.sandbox_id
        pipeline = ValidationPipeline(self.sandbox_manager, self.event_bus)
        report = await pipeline.run(sandbox_id, run_id=run_id)
        if not report.has_errors:
            logger.info("fix_no_errors", fragment_id=fragment.id)
            return FixResult(success=True, message=NO_ERRORS_MESSAGE)

        framework = fragment.framework
        state = create_agent_state(
            framework,
            get_code_agent_prompt(framework, sandbox.workspace_path),
            files=fragment.files,
            summary=str(fragment.metadata.get("summary", "")),
        )
        tools = CodeAgentTools(self.sandbox_manager, sandbox_id, self.event_bus, run_id)
        network = AgentNetwork(
            self.llm_client,
            tools,
            self.event_bus,
            run_id=run_id,
            max_iterations=settings.fix_network_max_iterations,
            summary_retry_cap=settings.fix_summary_retry_cap,
        )
        logger.info(
            "fix_started",
            fragment_id=fragment.id,
            categories=[category.value for category in report.categories],
        )

        network_run = await network.run(state, build_fix_request(report.error_text()))
        if network_run.error:
            raise RuntimeError(network_run.error)
        state = network_run.state
        if not state["summary"]:
            state = await network.request_summary(state)

        after = await pipeline.run(sandbox_id, run_id=run_id)
        remaining = after.error_text() or None
        if remaining:
            logger.warning("fix_errors_remain", fragment_id=fragment.id, categories=after.categories)

        await self._sync_files(sandbox_id, state["files"])

        now = _now_iso()
        metadata = {
            **fragment.metadata,
            "previousFiles": fragment.files,
            "fixedAt": now,
            "lastFixSuccess": {"summary": state["summary"], "occurredAt": now},
        }
        if state["summary"]:
            metadata["summary"] = state["summary"]
        await self.store.update_fragment_files(fragment.id, state["files"], metadata)

        return FixResult(
            success=True,
            message=FIX_PARTIAL_MESSAGE if remaining else FIX_SUCCESS_MESSAGE,
            summary=state["summary"] or None,
            remaining_errors=remaining,
        )

    async def _sync_files(self, sandbox_id: str, files: dict[str, str]) -> None:
        """Write the repaired file set back to the sandbox."""
        for path, content in files.items():
            try:
                await self.sandbox_manager.write_file(sandbox_id, path, content)
            except Exception as e:
                logger.error("fix_file_sync_failed", sandbox_id=sandbox_id, path=path, error=str(e))
        logger.debug("fix_files_synced", sandbox_id=sandbox_id, files=len(files))

    async def _record_fix_failure(self, fragment: Fragment, error: Exception) -> FixResult:
        error_message = str(error) or type(error).__name__
        friendly = (
            FIX_TIMEOUT_MESSAGE
            if "timeout" in error_message.lower() or isinstance(error, TimeoutError)
            else FIX_FAILED_MESSAGE
        )
        logger.error("fix_failed", fragment_id=fragment.id, error=error_message)

        latest = await self.store.get_fragment(fragment.id)
        metadata = {
            **(latest.metadata if latest else fragment.metadata),
            "lastFixFailure": {
                "message": error_message,
                "occurredAt": _now_iso(),
                "friendlyMessage": friendly,
            },
        }
        try:
            await self.store.update_fragment_metadata(fragment.id, metadata)
        except Exception as e:
            logger.error("fix_failure_metadata_failed", fragment_id=fragment.id, error=str(e))

        return FixResult(success=False, message=friendly, remaining_errors=error_message)

    # -----------------------------------------------------------------
    # Transfer
    # -----------------------------------------------------------------

    async def transfer(self, fragment_id: str, run_id: str | None = None) -> TransferResult:
        """Re-attach a fragment to its sandbox and refresh its URL.

        Raises:
            FragmentNotFoundError: If the fragment does not exist.
            SandboxResumeError: If the sandbox cannot be resumed.
        """
        run_id = run_id or self._generate_run_id()
        try:
            fragment = await self._load_fragment(fragment_id)

            try:
                sandbox = await self.sandbox_manager.resume(fragment.sandbox_id or "")
            except SandboxResumeError as e:
                logger.warning(
                    "transfer_sandbox_resume_failed", fragment_id=fragment.id, error=str(e)
                )
                raise SandboxResumeError(TRANSFER_FAILED_MESSAGE) from e

            async with self._using_sandbox(sandbox.sandbox_id):
                url = await self._refresh_url(fragment, sandbox)

            await self._publish(run_id, EventType.SANDBOX_TRANSFERRED, {
                "fragment_id": fragment.id,
                "sandbox_id": sandbox.sandbox_id,
                "sandbox_url": url,
            })
        finally:
            await self.event_bus.close_run(run_id)

        logger.info("transfer_complete", fragment_id=fragment.id, sandbox_url=url)
        return TransferResult(sandbox_id=sandbox.sandbox_id, sandbox_url=url, run_id=run_id)

    async def _refresh_url(self, fragment: Fragment, sandbox: SandboxInfo) -> str:
        profile = get_profile(fragment.framework)
        if not await self.sandbox_manager.ensure_dev_server(sandbox.sandbox_id, fragment.framework):
            logger.warning("transfer_dev_server_not_ready", sandbox_id=sandbox.sandbox_id)
        url = await self.sandbox_manager.get_host(sandbox.sandbox_id, profile.port)
        await self.store.update_fragment_url(fragment.id, sandbox.sandbox_id, url)
        return url

    # -----------------------------------------------------------------
    # Housekeeping
    # -----------------------------------------------------------------

    async def sweep_sandboxes(self, now: float | None = None) -> list[str]:
        """Kill paused sandboxes older than the configured age.

        Sandboxes used by in-flight runs are never touched.
        """
        return await self.sandbox_manager.sweep_paused(
            max_age_seconds=settings.sandbox_paused_max_age_days * 86400,
            exclude=self.inflight_sandbox_ids,
            now=now,
        )

    async def start_cleanup_loop(
        self, interval_seconds: float | None = None
    ) -> asyncio.Task[None]:
        """Start the background task that periodically sweeps sandboxes.

        The task runs until cancelled (typically at application shutdown).

        Args:
            interval_seconds: Seconds between sweeps; defaults to
                ``settings.sandbox_cleanup_interval_minutes``.

        Returns:
            The background asyncio.Task.
        """
        interval = interval_seconds or settings.sandbox_cleanup_interval_minutes * 60

        async def _loop() -> None:
            logger.info("sandbox_cleanup_loop_started", interval_seconds=interval)
            while True:
                try:
                    await asyncio.sleep(interval)
                    await self.sweep_sandboxes()
                except asyncio.CancelledError:
                    logger.info("sandbox_cleanup_loop_stopped")
                    return
                except Exception as e:
                    logger.error("sandbox_cleanup_loop_error", error=str(e))

        return asyncio.create_task(_loop(), name="sandbox_cleanup")

    async def shutdown(self) -> None:
        """Cancel background runs and pause every tracked sandbox.

        Sandboxes are paused rather than removed so that persisted fragments
        can still be resumed after a restart.
        """
        async with self._lock:
            tasks = list(self._tasks.items())
            self._tasks.clear()
        logger.info("workflow_shutdown_start", running=len(tasks))

        for run_id, task in tasks:
            if not task.done():
                task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                try:
                    await task
                except Exception as e:
                    logger.error("shutdown_task_failed", run_id=run_id, error=str(e))

        await self.sandbox_manager.pause_all()
        logger.info("workflow_shutdown_complete")
