"""Docker-based sandbox lifecycle manager.

Each sandbox is a Docker container started from a framework template image.
The manager provisions sandboxes (with template fallback), re-attaches to
existing ones, runs commands, moves files in and out via tar archives, and
sweeps long-paused containers.
"""

import asyncio
import os
import tarfile
import time
import uuid
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime
from io import BytesIO
from typing import Any, TypeVar

import docker
import structlog
from docker.errors import APIError, ImageNotFound, NotFound

from agents.frameworks import (
    ALL_FRAMEWORK_PORTS,
    DEFAULT_FRAMEWORK,
    DEFAULT_TEMPLATE,
    Framework,
    get_profile,
)
from config import settings
from sandbox.security import (
    sanitize_output,
    to_workspace_relative,
    validate_command,
    validate_path,
)

logger = structlog.get_logger()

T = TypeVar("T")

SANDBOX_LABEL = "codegen.sandbox"
TEMPLATE_LABEL = "codegen.template"
CREATED_AT_LABEL = "codegen.created_at"

# Dependency and build-artifact directories never collected from a sandbox.
DEFAULT_IGNORED_DIR_NAMES: set[str] = {
    "node_modules",
    ".git",
    "dist",
    "build",
}

DEV_SERVER_LOG = "/tmp/dev-server.log"


class SandboxError(RuntimeError):
    """Base class for sandbox lifecycle failures."""


class TemplateNotFoundError(SandboxError):
    """Raised when no image exists for the requested template."""


class SandboxCreationError(SandboxError):
    """Raised when a sandbox cannot be provisioned."""


class SandboxResumeError(SandboxError):
    """Raised when an existing sandbox is gone or cannot be restarted."""


@dataclass
class SandboxInfo:
    """Information about a live sandbox container."""

    sandbox_id: str
    container_id: str
    template: str
    workspace_path: str
    created_at: float
    status: str = "running"
    leases: int = 0


@dataclass
class SandboxListing:
    """A sandbox as seen by housekeeping, tracked or not."""

    sandbox_id: str
    status: str
    template: str
    started_at: float


@dataclass
class FileInfo:
    """Information about a file or directory in the sandbox."""

    name: str
    path: str
    is_directory: bool
    size: int = 0


@dataclass
class CommandResult:
    """Result of executing a command in the sandbox."""

    stdout: str
    stderr: str
    exit_code: int
    timed_out: bool = False


CONTAINER_CONFIG: dict[str, Any] = {
    "mem_limit": "2048m",
    "cpu_period": 100000,
    "cpu_quota": 100000,
    "network_mode": "bridge",
    "security_opt": ["no-new-privileges"],
}


class SandboxManager:
    """Manages Docker sandbox lifecycles for code generation runs.

    Sandboxes outlive the process: a run leaves its container in place so
    that later fix and transfer operations can resume it. ``create`` and
    ``resume`` hand out a lease that the caller returns with ``release``.
    Once the last lease is returned the sandbox keeps serving its preview
    for ``idle_timeout`` seconds, then it is paused and leaves the in-memory
    registry. Only leased sandboxes count toward ``max_sandboxes``.

    Attributes:
        image_prefix: Prefix prepended to template names to build image tags.
        workspace_path: Working directory inside containers.
        max_sandboxes: Maximum number of concurrently leased sandboxes.
        idle_timeout: Seconds a released sandbox stays up before it is paused.
    """

    def __init__(
        self,
        image_prefix: str | None = None,
        workspace_path: str | None = None,
        max_sandboxes: int | None = None,
        create_attempts: int | None = None,
        retry_delay: float = 1.0,
        idle_timeout: float | None = None,
        client: docker.DockerClient | None = None,
    ) -> None:
        """Initialize the SandboxManager.

        Args:
            image_prefix: Image name prefix (defaults to settings).
            workspace_path: Container workspace directory (defaults to settings).
            max_sandboxes: Concurrent sandbox limit (defaults to settings).
            create_attempts: Attempts for transient creation errors.
            retry_delay: Base delay in seconds for creation backoff.
            idle_timeout: Idle pause delay (defaults to settings).
            client: Optional pre-built Docker client.
        """
        self.image_prefix = (
            image_prefix if image_prefix is not None else settings.sandbox_image_prefix
        )
        self.workspace_path = workspace_path or settings.sandbox_workspace
        self.max_sandboxes = max_sandboxes or settings.max_concurrent_sandboxes
        self.create_attempts = max(1, create_attempts or settings.sandbox_create_attempts)
        self.retry_delay = retry_delay
        self.idle_timeout = (
            idle_timeout if idle_timeout is not None else settings.sandbox_idle_timeout_seconds
        )
        self._client = client
        self._sandboxes: dict[str, SandboxInfo] = {}
        self._idle_pauses: dict[str, asyncio.Task[None]] = {}
        self._paused_at: dict[str, float] = {}
        self._lock = asyncio.Lock()

    @property
    def client(self) -> docker.DockerClient:
        """Lazy initialization of Docker client."""
        if self._client is None:
            self._client = docker.from_env()
        return self._client

    def image_for_template(self, template: str) -> str:
        """Return the Docker image tag for a template name."""
        return f"{self.image_prefix}{template}:latest"

    async def _run_blocking(
        self,
        fn: Callable[..., T],
        *args: Any,
        timeout: float = 30,
    ) -> T:
        """Run a blocking Docker SDK call in the default executor."""
        return await asyncio.wait_for(
            asyncio.get_running_loop().run_in_executor(None, fn, *args),
            timeout=timeout,
        )

    # -----------------------------------------------------------------
    # Provisioning
    # -----------------------------------------------------------------

    async def create(self, template: str) -> SandboxInfo:
        """Create and start a sandbox from a template.

        Transient Docker failures are retried with exponential backoff. A
        missing template image is not retried.

        Args:
            template: Template name (e.g. "zapdev-vue").

        Returns:
            SandboxInfo for the running container, leased to the caller.

        Raises:
            TemplateNotFoundError: If the template image does not exist.
            SandboxCreationError: If creation keeps failing or the limit is hit.
        """
        async with self._lock:
            in_use = sum(1 for info in self._sandboxes.values() if info.leases > 0)
            if in_use >= self.max_sandboxes:
                raise SandboxCreationError(
                    f"Maximum sandboxes ({self.max_sandboxes}) reached"
                )

        sandbox_id = f"sbx_{uuid.uuid4().hex[:12]}"
        last_error: Exception | None = None

        for attempt in range(self.create_attempts):
            try:
                container = await self._run_blocking(
                    self._create_container, sandbox_id, template, timeout=60
                )
            except ImageNotFound as e:
                logger.warning("sandbox_template_not_found", template=template)
                raise TemplateNotFoundError(f"Template not found: {template}") from e
            except (APIError, TimeoutError) as e:
                last_error = e
                logger.warning(
                    "sandbox_creation_retry",
                    sandbox_id=sandbox_id,
                    template=template,
                    attempt=attempt + 1,
                    error=str(e),
                )
                if attempt < self.create_attempts - 1:
                    await asyncio.sleep(self.retry_delay * (2 ** attempt))
                continue

            info = SandboxInfo(
                sandbox_id=sandbox_id,
                container_id=container.id,
                template=template,
                workspace_path=self.workspace_path,
                created_at=time.time(),
                leases=1,
            )
            async with self._lock:
                self._sandboxes[sandbox_id] = info

            logger.info(
                "sandbox_created",
                sandbox_id=sandbox_id,
                container_id=container.id[:12],
                template=template,
                attempt=attempt + 1,
            )
            return info

        logger.error(
            "sandbox_creation_failed",
            sandbox_id=sandbox_id,
            template=template,
            error=str(last_error),
        )
        raise SandboxCreationError(f"Failed to create sandbox: {last_error}") from last_error

    def _create_container(self, sandbox_id: str, template: str) -> Any:
        """Create the Docker container (blocking operation)."""
        image = self.image_for_template(template)
        # Resolve locally first so a missing template never triggers a pull.
        self.client.images.get(image)

        return self.client.containers.run(
            image,
            name=f"sandbox-{sandbox_id}",
            detach=True,
            remove=False,
            ports={f"{port}/tcp": None for port in ALL_FRAMEWORK_PORTS},
            labels={
                SANDBOX_LABEL: sandbox_id,
                TEMPLATE_LABEL: template,
                CREATED_AT_LABEL: str(time.time()),
            },
            mem_limit=CONTAINER_CONFIG["mem_limit"],
            cpu_period=CONTAINER_CONFIG["cpu_period"],
            cpu_quota=CONTAINER_CONFIG["cpu_quota"],
            network_mode=CONTAINER_CONFIG["network_mode"],
            security_opt=CONTAINER_CONFIG["security_opt"],
            working_dir=self.workspace_path,
            environment={"NODE_ENV": "development"},
        )

    async def create_for_framework(
        self, framework: Framework
    ) -> tuple[SandboxInfo, Framework]:
        """Create a sandbox for a framework, falling back to the default template.

        Args:
            framework: The framework selected for the run.

        Returns:
            Tuple of (sandbox info, effective framework). The framework is
            coerced to the default when the fallback template is used.

        Raises:
            SandboxCreationError: If neither template can be provisioned.
        """
        profile = get_profile(framework)
        try:
            return await self.create(profile.template), framework
        except TemplateNotFoundError:
            if profile.template == DEFAULT_TEMPLATE:
                raise SandboxCreationError(
                    f"Default template '{DEFAULT_TEMPLATE}' is not available"
                ) from None
            logger.warning(
                "sandbox_template_fallback",
                requested_template=profile.template,
                fallback_template=DEFAULT_TEMPLATE,
                requested_framework=framework.value,
            )

        try:
            return await self.create(DEFAULT_TEMPLATE), DEFAULT_FRAMEWORK
        except TemplateNotFoundError as e:
            raise SandboxCreationError(str(e)) from e

    async def resume(self, sandbox_id: str) -> SandboxInfo:
        """Re-attach to an existing sandbox, restarting it if needed.

        Args:
            sandbox_id: Identifier stored on the fragment.

        Returns:
            SandboxInfo for the running container, leased to the caller.

        Raises:
            SandboxResumeError: If the container no longer exists or cannot run.
        """
        try:
            info = await self._run_blocking(self._resume_container, sandbox_id)
        except NotFound as e:
            logger.warning("sandbox_resume_not_found", sandbox_id=sandbox_id)
            raise SandboxResumeError(f"Sandbox '{sandbox_id}' no longer exists") from e
        except (APIError, TimeoutError) as e:
            logger.error("sandbox_resume_failed", sandbox_id=sandbox_id, error=str(e))
            raise SandboxResumeError(f"Failed to resume sandbox: {e}") from e

        async with self._lock:
            existing = self._sandboxes.get(sandbox_id)
            info.leases = (existing.leases if existing else 0) + 1
            self._sandboxes[sandbox_id] = info
            self._paused_at.pop(sandbox_id, None)
            self._cancel_idle_pause(sandbox_id)

        logger.info("sandbox_resumed", sandbox_id=sandbox_id, status=info.status)
        return info

    def _resume_container(self, sandbox_id: str) -> SandboxInfo:
        """Unpause or start a container (blocking operation)."""
        container = self.client.containers.get(f"sandbox-{sandbox_id}")

        if container.status == "paused":
            container.unpause()
        elif container.status in ("created", "exited"):
            container.start()
        elif container.status != "running":
            raise SandboxResumeError(
                f"Sandbox '{sandbox_id}' is in unrecoverable state: {container.status}"
            )

        container.reload()
        if container.status != "running":
            raise SandboxResumeError(
                f"Sandbox '{sandbox_id}' did not start (status={container.status})"
            )

        labels = container.labels or {}
        return SandboxInfo(
            sandbox_id=sandbox_id,
            container_id=container.id,
            template=labels.get(TEMPLATE_LABEL, DEFAULT_TEMPLATE),
            workspace_path=self.workspace_path,
            created_at=_parse_float(labels.get(CREATED_AT_LABEL)),
            status="running",
        )

    async def release(self, sandbox_id: str) -> None:
        """Return a lease taken by ``create`` or ``resume``.

        When the last lease is returned the sandbox is paused after
        ``idle_timeout`` seconds, or right away when the timeout is zero.
        """
        async with self._lock:
            info = self._sandboxes.get(sandbox_id)
            if info is None:
                return
            info.leases = max(0, info.leases - 1)
            if info.leases > 0:
                return
            self._cancel_idle_pause(sandbox_id)
            if self.idle_timeout > 0:
                self._idle_pauses[sandbox_id] = asyncio.create_task(
                    self._pause_after_idle(sandbox_id)
                )
                return

        await self._pause_if_idle(sandbox_id)

    async def _pause_after_idle(self, sandbox_id: str) -> None:
        await asyncio.sleep(self.idle_timeout)
        self._idle_pauses.pop(sandbox_id, None)
        await self._pause_if_idle(sandbox_id)

    async def _pause_if_idle(self, sandbox_id: str) -> None:
        info = self._sandboxes.get(sandbox_id)
        if info is None or info.leases > 0:
            return
        try:
            await self.pause(sandbox_id)
        except (APIError, NotFound, TimeoutError) as e:
            logger.warning("sandbox_idle_pause_failed", sandbox_id=sandbox_id, error=str(e))
            async with self._lock:
                self._sandboxes.pop(sandbox_id, None)

    def _cancel_idle_pause(self, sandbox_id: str) -> None:
        task = self._idle_pauses.pop(sandbox_id, None)
        if task is not None:
            task.cancel()

    async def pause(self, sandbox_id: str) -> None:
        """Pause a sandbox so it can be resumed later.

        The sandbox leaves the registry and its pause time is recorded for
        the paused sweep.

        Raises:
            KeyError: If the sandbox is not tracked.
        """
        info = self._get_sandbox(sandbox_id)
        await self._run_blocking(self._pause_container, info.container_id)
        info.status = "paused"
        async with self._lock:
            self._sandboxes.pop(sandbox_id, None)
            self._paused_at[sandbox_id] = time.time()
        logger.info("sandbox_paused", sandbox_id=sandbox_id)

    def _pause_container(self, container_id: str) -> None:
        container = self.client.containers.get(container_id)
        if container.status == "running":
            container.pause()

    async def kill(self, sandbox_id: str) -> None:
        """Remove a sandbox container, tracked or not.

        Args:
            sandbox_id: The sandbox to remove.
        """
        async with self._lock:
            self._sandboxes.pop(sandbox_id, None)
            self._paused_at.pop(sandbox_id, None)
            self._cancel_idle_pause(sandbox_id)

        try:
            await self._run_blocking(self._remove_container, sandbox_id)
            logger.info("sandbox_killed", sandbox_id=sandbox_id)
        except NotFound:
            logger.warning("sandbox_already_removed", sandbox_id=sandbox_id)

    def _remove_container(self, sandbox_id: str) -> None:
        container = self.client.containers.get(f"sandbox-{sandbox_id}")
        container.remove(force=True)

    # -----------------------------------------------------------------
    # Housekeeping
    # -----------------------------------------------------------------

    async def list_sandboxes(self) -> list[SandboxListing]:
        """List every sandbox container known to Docker."""
        return await self._run_blocking(self._list_containers)

    def _list_containers(self) -> list[SandboxListing]:
        listings: list[SandboxListing] = []
        containers = self.client.containers.list(
            all=True, filters={"label": SANDBOX_LABEL}
        )
        for container in containers:
            labels = container.labels or {}
            sandbox_id = labels.get(SANDBOX_LABEL)
            if not sandbox_id:
                continue
            state = (container.attrs or {}).get("State", {})
            started_at = _parse_docker_timestamp(state.get("StartedAt", ""))
            listings.append(
                SandboxListing(
                    sandbox_id=sandbox_id,
                    status=container.status,
                    template=labels.get(TEMPLATE_LABEL, ""),
                    started_at=started_at or _parse_float(labels.get(CREATED_AT_LABEL)),
                )
            )
        return listings

    async def sweep_paused(
        self,
        max_age_seconds: float,
        exclude: Iterable[str] = (),
        now: float | None = None,
    ) -> list[str]:
        """Kill sandboxes that have been paused longer than ``max_age_seconds``.

        Sandboxes in ``exclude`` (those referenced by in-flight runs) and
        running sandboxes are never touched. A failure to kill one sandbox
        is logged and does not stop the sweep.

        Args:
            max_age_seconds: Minimum time since the sandbox was last started or
                paused by this process.
            exclude: Sandbox ids that must be left alone.
            now: Reference timestamp (defaults to the current time).

        Returns:
            Ids of the sandboxes that were killed.
        """
        now = now if now is not None else time.time()
        excluded = set(exclude)
        killed: list[str] = []

        for listing in await self.list_sandboxes():
            if listing.sandbox_id in excluded or listing.status != "paused":
                continue
            last_active = max(listing.started_at, self._paused_at.get(listing.sandbox_id, 0.0))
            if now - last_active < max_age_seconds:
                continue
            try:
                await self.kill(listing.sandbox_id)
                killed.append(listing.sandbox_id)
            except Exception as e:
                logger.error(
                    "sandbox_sweep_kill_failed",
                    sandbox_id=listing.sandbox_id,
                    error=str(e),
                )

        logger.info("sandbox_sweep_complete", killed=len(killed))
        return killed

    # -----------------------------------------------------------------
    # Files
    # -----------------------------------------------------------------

    async def write_file(self, sandbox_id: str, path: str, content: str) -> None:
        """Write a file inside the sandbox workspace.

        Creates parent directories automatically.

        Raises:
            KeyError: If the sandbox is not tracked.
            ValueError: If path validation fails.
        """
        info = self._get_sandbox(sandbox_id)
        relative = to_workspace_relative(path, info.workspace_path)
        is_valid, error_msg, _ = validate_path(info.workspace_path, relative)
        if not is_valid:
            raise ValueError(error_msg)

        await self._run_blocking(
            self._write_file_to_container, info.container_id, relative, content
        )
        logger.debug("file_written", sandbox_id=sandbox_id, path=relative)

    def _write_file_to_container(
        self, container_id: str, path: str, content: str
    ) -> None:
        """Write file to container using a tar archive (blocking operation)."""
        container = self.client.containers.get(container_id)

        parent_dir = os.path.dirname(path)
        if parent_dir:
            container.exec_run(
                ["mkdir", "-p", f"{self.workspace_path}/{parent_dir}"],
                user=settings.sandbox_user,
            )

        tar_stream = BytesIO()
        with tarfile.open(fileobj=tar_stream, mode="w") as tar:
            file_data = content.encode("utf-8")
            tarinfo = tarfile.TarInfo(name=path)
            tarinfo.size = len(file_data)
            tarinfo.mode = 0o644
            tarinfo.mtime = int(time.time())
            tar.addfile(tarinfo, BytesIO(file_data))

        tar_stream.seek(0)
        container.put_archive(self.workspace_path, tar_stream)

        container.exec_run(
            ["chown", f"{settings.sandbox_user}:{settings.sandbox_user}",
             f"{self.workspace_path}/{path}"],
            user="root",
        )

    async def read_file(self, sandbox_id: str, path: str, timeout: float = 30) -> str:
        """Read a file from the sandbox workspace.

        Raises:
            KeyError: If the sandbox is not tracked.
            ValueError: If path validation fails.
            FileNotFoundError: If the file does not exist.
        """
        info = self._get_sandbox(sandbox_id)
        relative = to_workspace_relative(path, info.workspace_path)
        is_valid, error_msg, resolved = validate_path(info.workspace_path, relative)
        if not is_valid:
            raise ValueError(error_msg)

        return await self._run_blocking(
            self._read_file_from_container,
            info.container_id,
            resolved,
            timeout=timeout,
        )

    def _read_file_from_container(self, container_id: str, absolute_path: str) -> str:
        """Read file from container using a tar archive (blocking operation)."""
        container = self.client.containers.get(container_id)

        try:
            bits, _ = container.get_archive(absolute_path)
        except NotFound as err:
            raise FileNotFoundError(f"File not found: {absolute_path}") from err

        tar_stream = BytesIO()
        for chunk in bits:
            tar_stream.write(chunk)
        tar_stream.seek(0)

        with tarfile.open(fileobj=tar_stream, mode="r") as tar:
            member = tar.getmembers()[0]
            extracted = tar.extractfile(member)
            if extracted is None:
                raise FileNotFoundError(f"Not a regular file: {absolute_path}")
            return extracted.read().decode("utf-8", errors="replace")

    async def list_files_recursive(
        self,
        sandbox_id: str,
        *,
        ignored_dir_names: set[str] | None = None,
        max_entries: int = 5000,
    ) -> list[FileInfo]:
        """Recursively list the workspace, pruning dependency and build dirs.

        Args:
            sandbox_id: The sandbox to list.
            ignored_dir_names: Directory basenames to prune (default:
                DEFAULT_IGNORED_DIR_NAMES).
            max_entries: Soft cap on entries returned.

        Returns:
            A flat list of FileInfo entries with workspace-relative paths.

        Raises:
            KeyError: If the sandbox is not tracked.
        """
        info = self._get_sandbox(sandbox_id)
        ignored = ignored_dir_names or DEFAULT_IGNORED_DIR_NAMES

        return await self._run_blocking(
            self._find_files_in_container,
            info.container_id,
            ignored,
            max_entries,
        )

    def _find_files_in_container(
        self,
        container_id: str,
        ignored_dir_names: set[str],
        max_entries: int,
    ) -> list[FileInfo]:
        """Find files/directories via `find` (blocking operation)."""
        container = self.client.containers.get(container_id)

        cmd: list[str] = ["find", self.workspace_path, "-mindepth", "1"]
        if ignored_dir_names:
            cmd.extend(["-type", "d", "("])
            for index, name in enumerate(sorted(ignored_dir_names)):
                if index:
                    cmd.append("-o")
                cmd.extend(["-name", name])
            cmd.extend([")", "-prune", "-o"])

        # %y=type, %P=path relative to starting-point, %s=size (bytes)
        cmd.extend(["-printf", "%y\t%P\t%s\n"])

        result = container.exec_run(
            cmd, user=settings.sandbox_user, workdir=self.workspace_path
        )
        if result.exit_code != 0:
            return []

        output = result.output.decode("utf-8", errors="replace") if result.output else ""
        files: list[FileInfo] = []

        for line in output.splitlines():
            parts = line.split("\t")
            if len(parts) != 3 or not parts[1]:
                continue

            type_char, rel_path, size_str = parts
            files.append(
                FileInfo(
                    name=rel_path.rsplit("/", 1)[-1],
                    path=rel_path,
                    is_directory=type_char == "d",
                    size=int(size_str) if size_str.isdigit() else 0,
                )
            )

            if max_entries > 0 and len(files) >= max_entries:
                logger.warning(
                    "list_files_recursive_truncated",
                    container_id=container_id[:12],
                    max_entries=max_entries,
                )
                break

        return files

    # -----------------------------------------------------------------
    # Commands
    # -----------------------------------------------------------------

    async def execute_command(
        self, sandbox_id: str, command: str, timeout: int = 60
    ) -> CommandResult:
        """Execute a shell command inside the sandbox.

        Args:
            sandbox_id: The sandbox to execute in.
            command: The shell command to run.
            timeout: Maximum execution time in seconds.

        Returns:
            CommandResult with stdout, stderr and exit code. A timeout yields
            exit code 124 with ``timed_out`` set.

        Raises:
            KeyError: If the sandbox is not tracked.
        """
        info = self._get_sandbox(sandbox_id)

        is_valid, error_msg = validate_command(command)
        if not is_valid:
            return CommandResult(
                stdout="", stderr=f"Command rejected: {error_msg}", exit_code=1
            )

        try:
            result = await self._run_blocking(
                self._execute_in_container,
                info.container_id,
                command,
                timeout=timeout,
            )
        except TimeoutError:
            logger.warning(
                "command_timeout",
                sandbox_id=sandbox_id,
                command=command[:50],
                timeout=timeout,
            )
            return CommandResult(
                stdout="",
                stderr=f"Command timed out after {timeout} seconds",
                exit_code=124,
                timed_out=True,
            )

        logger.debug(
            "command_executed",
            sandbox_id=sandbox_id,
            command=command[:50],
            exit_code=result.exit_code,
        )
        return result

    def _execute_in_container(self, container_id: str, command: str) -> CommandResult:
        """Execute command in container (blocking operation)."""
        container = self.client.containers.get(container_id)

        result = container.exec_run(
            ["/bin/bash", "-lc", command],
            user=settings.sandbox_user,
            workdir=self.workspace_path,
            demux=True,
        )

        stdout_bytes: bytes = b""
        stderr_bytes: bytes = b""
        if isinstance(result.output, tuple):
            stdout_bytes = result.output[0] or b""
            stderr_bytes = result.output[1] or b""
        elif result.output:
            stdout_bytes = result.output

        return CommandResult(
            stdout=sanitize_output(stdout_bytes.decode("utf-8", errors="replace")),
            stderr=sanitize_output(stderr_bytes.decode("utf-8", errors="replace")),
            exit_code=result.exit_code,
        )

    async def is_healthy(self, sandbox_id: str) -> bool:
        """Return True if the sandbox answers a trivial command."""
        try:
            result = await self.execute_command(sandbox_id, "echo health_check", timeout=10)
        except (KeyError, APIError, NotFound) as e:
            logger.warning("sandbox_health_check_failed", sandbox_id=sandbox_id, error=str(e))
            return False
        return result.exit_code == 0 and "health_check" in result.stdout

    # -----------------------------------------------------------------
    # Preview
    # -----------------------------------------------------------------

    async def get_host(self, sandbox_id: str, port: int) -> str:
        """Return the public URL for a port exposed by the sandbox.

        Raises:
            KeyError: If the sandbox is not tracked.
            SandboxError: If the port is not published.
        """
        info = self._get_sandbox(sandbox_id)
        host_port = await self._run_blocking(
            self._published_port, info.container_id, port
        )
        if host_port is None:
            raise SandboxError(f"Port {port} is not published for sandbox '{sandbox_id}'")
        return f"{settings.sandbox_url_scheme}://{settings.sandbox_public_host}:{host_port}"

    def _published_port(self, container_id: str, port: int) -> str | None:
        container = self.client.containers.get(container_id)
        container.reload()
        bindings = (container.ports or {}).get(f"{port}/tcp") or []
        for binding in bindings:
            if binding.get("HostPort"):
                return binding["HostPort"]
        return None

    async def ensure_dev_server(
        self,
        sandbox_id: str,
        framework: Framework,
        wait_seconds: float = 30.0,
        poll_interval: float = 1.0,
    ) -> bool:
        """Start the framework's dev server if it is not already responding.

        Args:
            sandbox_id: The sandbox to check.
            framework: Framework whose dev command and port are used.
            wait_seconds: How long to wait for the server to answer.
            poll_interval: Delay between readiness probes.

        Returns:
            True if the server answered before the deadline.
        """
        profile = get_profile(framework)
        if await self._is_http_responding(sandbox_id, profile.port):
            return True

        start_cmd = f"nohup {profile.dev_command} > {DEV_SERVER_LOG} 2>&1 &"
        await self.execute_command(sandbox_id, start_cmd, timeout=15)
        logger.info(
            "dev_server_starting",
            sandbox_id=sandbox_id,
            framework=framework.value,
            port=profile.port,
        )

        deadline = time.monotonic() + wait_seconds
        while time.monotonic() < deadline:
            if await self._is_http_responding(sandbox_id, profile.port):
                logger.info("dev_server_ready", sandbox_id=sandbox_id, port=profile.port)
                return True
            await asyncio.sleep(poll_interval)

        logger.warning("dev_server_not_ready", sandbox_id=sandbox_id, port=profile.port)
        return False

    async def _is_http_responding(self, sandbox_id: str, port: int) -> bool:
        """Return True if the sandbox answers 2xx/3xx on localhost:{port}."""
        result = await self.execute_command(
            sandbox_id,
            f"curl -s -o /dev/null -w '%{{http_code}}' --max-time 2 http://localhost:{port}",
            timeout=10,
        )
        code = result.stdout.strip()
        return code.isdigit() and 200 <= int(code) < 400

    # -----------------------------------------------------------------
    # Registry
    # -----------------------------------------------------------------

    def _get_sandbox(self, sandbox_id: str) -> SandboxInfo:
        """Get sandbox info or raise KeyError."""
        if sandbox_id not in self._sandboxes:
            raise KeyError(f"Sandbox '{sandbox_id}' not found")
        return self._sandboxes[sandbox_id]

    def get_active_sandbox_ids(self) -> list[str]:
        """Return the IDs of all sandboxes tracked by this process."""
        return list(self._sandboxes.keys())

    async def pause_all(self) -> None:
        """Pause every tracked running sandbox.

        Called during shutdown. Sandboxes are paused rather than removed so
        that persisted fragments can still be resumed.
        """
        for sandbox_id in list(self._idle_pauses):
            self._cancel_idle_pause(sandbox_id)
        for sandbox_id, info in list(self._sandboxes.items()):
            if info.status != "running":
                continue
            try:
                await self.pause(sandbox_id)
            except Exception as e:
                logger.error("sandbox_pause_failed", sandbox_id=sandbox_id, error=str(e))

    def is_docker_available(self) -> bool:
        """Check if the Docker daemon is reachable."""
        try:
            self.client.ping()
            return True
        except Exception:
            return False


def _parse_float(value: str | None) -> float:
    try:
        return float(value) if value else 0.0
    except ValueError:
        return 0.0


def _parse_docker_timestamp(value: str) -> float:
    """Parse a Docker timestamp like "2024-01-15T10:30:00.123456789Z"."""
    if not value or value.startswith("0001-"):
        return 0.0
    # Docker reports nanoseconds; datetime accepts at most microseconds.
    head, _, rest = value.partition(".")
    if rest:
        fraction = rest.rstrip("Z")[:6]
        value = f"{head}.{fraction}+00:00"
    else:
        value = value.replace("Z", "+00:00")
    try:
        return datetime.fromisoformat(value).timestamp()
    except ValueError:
        return 0.0
