"""Docker-based sandbox runtime for agent execution.

This module provides the SandboxManager class that creates, executes in,
stops and removes hardened Docker containers. Each container binds one git
worktree at the workspace path and runs with a read-only root filesystem,
dropped capabilities and, by default, no network.
"""

import asyncio
import math
from dataclasses import dataclass, field

import docker
import structlog
from docker.errors import APIError, ImageNotFound, NotFound

from config import MEMORY_LIMIT_PATTERN, settings
from sandbox.security import (
    DROPPED_CAPABILITIES,
    SECURITY_OPTIONS,
    TMPFS_MOUNTS,
    sanitize_output,
    validate_volume_bind,
)

logger = structlog.get_logger()

CPU_PERIOD = 100000
KILL_GRACE_SECONDS = 5
TIMEOUT_EXIT_CODE = 124

_MEMORY_UNITS = {"b": 1, "k": 1024, "m": 1024**2, "g": 1024**3}


class SandboxError(RuntimeError):
    """Raised when the container runtime rejects a sandbox operation."""


@dataclass
class VolumeBind:
    """A host directory mounted into the sandbox."""

    host_path: str
    container_path: str
    read_only: bool = False


@dataclass
class SandboxSpec:
    """Everything needed to create one sandbox container."""

    name: str
    image: str
    memory_bytes: int
    cpu_quota: int
    cpu_period: int = CPU_PERIOD
    volume_binds: list[VolumeBind] = field(default_factory=list)
    network_mode: str = "none"
    working_dir: str = "/workspace"
    environment: dict[str, str] = field(default_factory=dict)
    read_only_root: bool = True


@dataclass
class SandboxHandle:
    """Reference to a created sandbox."""

    sandbox_id: str
    container_id: str
    workspace_path: str = "/workspace"


@dataclass
class CommandResult:
    """Result of executing a command in the sandbox."""

    stdout: str
    stderr: str
    exit_code: int
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.timed_out


def parse_memory(limit: str) -> int:
    """Convert a limit such as ``"512m"`` or ``"4g"`` to bytes.

    Raises:
        ValueError: If the limit does not match ``<digits><b|k|m|g>``.
    """
    match = MEMORY_LIMIT_PATTERN.match(limit.strip().lower())
    if not match:
        raise ValueError(f"Invalid memory limit: {limit!r}")
    amount, unit = match.groups()
    return int(amount) * _MEMORY_UNITS[unit]


def cpu_quota_for(cpus: float, period: int = CPU_PERIOD) -> int:
    """CFS quota granting ``cpus`` cores per ``period`` microseconds."""
    if cpus <= 0:
        raise ValueError(f"CPU count must be positive, got {cpus}")
    return int(cpus * period)


def build_sandbox_spec(
    name: str,
    workspace_host_path: str,
    *,
    image: str | None = None,
    memory: str | None = None,
    cpus: float | None = None,
    network_mode: str | None = None,
    environment: dict[str, str] | None = None,
) -> SandboxSpec:
    """Build a hardened spec binding one working copy at the workspace path.

    Unset resource options fall back to the global settings.
    """
    workspace = settings.sandbox_workspace_path
    return SandboxSpec(
        name=name,
        image=image or settings.sandbox_image,
        memory_bytes=parse_memory(memory or settings.sandbox_memory),
        cpu_quota=cpu_quota_for(cpus or settings.sandbox_cpus),
        volume_binds=[VolumeBind(host_path=workspace_host_path, container_path=workspace)],
        network_mode=network_mode or settings.sandbox_network_mode,
        working_dir=workspace,
        environment=dict(environment or {}),
    )


class SandboxManager:
    """Manages the lifecycle of hardened agent sandboxes.

    All Docker SDK calls are blocking and run in the default executor so
    that concurrent units never block each other's event-loop progress.

    Attributes:
        stop_timeout: Seconds Docker waits before killing a stopping container.
        kill_grace: Seconds between SIGTERM and SIGKILL for a timed-out command.
        protected_paths: Host paths that volume binds may not expose.
    """

    def __init__(
        self,
        client: docker.DockerClient | None = None,
        stop_timeout: int | None = None,
        create_timeout: float = 120,
        protected_paths: list[str] | None = None,
    ) -> None:
        self._client = client
        self.stop_timeout = (
            stop_timeout if stop_timeout is not None else settings.sandbox_stop_timeout_seconds
        )
        self.create_timeout = create_timeout
        self.protected_paths = (
            protected_paths if protected_paths is not None else [str(settings.tasks_dir)]
        )
        self.kill_grace = KILL_GRACE_SECONDS
        self._sandboxes: dict[str, SandboxHandle] = {}
        self._lock = asyncio.Lock()

    @property
    def client(self) -> docker.DockerClient:
        """Lazy initialization of Docker client."""
        if self._client is None:
            self._client = docker.from_env()
        return self._client

    async def create(self, spec: SandboxSpec) -> SandboxHandle:
        """Create and start a sandbox container.

        Args:
            spec: Container name, image, limits and binds.

        Returns:
            Handle referencing the running container.

        Raises:
            SandboxError: If a volume bind is not allowed, the name is taken,
                or Docker fails to create the container.
        """
        for bind in spec.volume_binds:
            ok, error = validate_volume_bind(bind.host_path, self.protected_paths)
            if not ok:
                raise SandboxError(f"Volume bind rejected for {spec.name}: {error}")

        async with self._lock:
            if spec.name in self._sandboxes:
                raise SandboxError(f"Sandbox '{spec.name}' already exists")

        try:
            container = await asyncio.wait_for(
                asyncio.get_running_loop().run_in_executor(None, self._create_container, spec),
                timeout=self.create_timeout,
            )
        except (APIError, ImageNotFound, TimeoutError) as e:
            logger.error("sandbox_creation_failed", sandbox_id=spec.name, error=str(e))
            raise SandboxError(f"Failed to create sandbox {spec.name}: {e}") from e

        handle = SandboxHandle(
            sandbox_id=spec.name,
            container_id=container.id,
            workspace_path=spec.working_dir,
        )
        async with self._lock:
            self._sandboxes[spec.name] = handle

        logger.info(
            "sandbox_created",
            sandbox_id=spec.name,
            container_id=container.id[:12],
            image=spec.image,
            network_mode=spec.network_mode,
        )
        return handle

    def _create_container(self, spec: SandboxSpec) -> docker.models.containers.Container:
        """Create the Docker container (blocking operation)."""
        volumes = {
            bind.host_path: {
                "bind": bind.container_path,
                "mode": "ro" if bind.read_only else "rw",
            }
            for bind in spec.volume_binds
        }
        return self.client.containers.run(
            spec.image,
            command=["sleep", "infinity"],
            name=spec.name,
            detach=True,
            remove=False,
            mem_limit=spec.memory_bytes,
            memswap_limit=spec.memory_bytes,
            cpu_period=spec.cpu_period,
            cpu_quota=spec.cpu_quota,
            network_mode=spec.network_mode,
            read_only=spec.read_only_root,
            tmpfs=dict(TMPFS_MOUNTS),
            security_opt=list(SECURITY_OPTIONS),
            cap_drop=list(DROPPED_CAPABILITIES),
            volumes=volumes,
            working_dir=spec.working_dir,
            environment=spec.environment,
            labels={"agent-dispatch.managed": "true"},
        )

    async def exec(
        self,
        handle: SandboxHandle,
        command: str,
        timeout: float | None = None,
    ) -> CommandResult:
        """Execute a shell command inside the sandbox.

        With a timeout the command runs under coreutils ``timeout`` so the
        process is terminated inside the container, then killed after
        ``kill_grace`` seconds. The host-side wait gives up only after both
        have elapsed, so a timed-out command is never left running.

        Args:
            handle: The sandbox to execute in.
            command: The shell command to run.
            timeout: Maximum execution time in seconds (None waits forever).

        Returns:
            CommandResult; a timeout yields exit code 124 with ``timed_out`` set.

        Raises:
            SandboxError: If the container no longer exists or Docker fails.
        """
        argv = ["/bin/bash", "-lc", command]
        deadline = None
        if timeout is not None:
            limit = max(1, math.ceil(timeout))
            argv = ["timeout", f"--kill-after={self.kill_grace}s", f"{limit}s", *argv]
            deadline = timeout + 2 * self.kill_grace

        try:
            result = await asyncio.wait_for(
                asyncio.get_running_loop().run_in_executor(
                    None,
                    self._execute_in_container,
                    handle.container_id,
                    argv,
                    handle.workspace_path,
                ),
                timeout=deadline,
            )
        except TimeoutError:
            result = CommandResult(stdout="", stderr="", exit_code=TIMEOUT_EXIT_CODE)
        except (NotFound, APIError) as e:
            raise SandboxError(f"Exec failed in sandbox {handle.sandbox_id}: {e}") from e

        if timeout is not None and result.exit_code == TIMEOUT_EXIT_CODE:
            logger.warning(
                "command_timeout",
                sandbox_id=handle.sandbox_id,
                command=command[:80],
                timeout=timeout,
            )
            return CommandResult(
                stdout=result.stdout,
                stderr=result.stderr or f"Command timed out after {timeout} seconds",
                exit_code=TIMEOUT_EXIT_CODE,
                timed_out=True,
            )

        logger.debug(
            "command_executed",
            sandbox_id=handle.sandbox_id,
            command=command[:80],
            exit_code=result.exit_code,
        )
        return result

    def _execute_in_container(
        self, container_id: str, argv: list[str], workdir: str
    ) -> CommandResult:
        """Execute argv in container (blocking operation)."""
        container = self.client.containers.get(container_id)
        result = container.exec_run(argv, workdir=workdir, demux=True)

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

    async def stop(self, handle: SandboxHandle) -> None:
        """Stop a sandbox; a container that is already gone is not an error."""
        try:
            await asyncio.get_running_loop().run_in_executor(
                None, self._stop_container, handle.container_id
            )
            logger.info("sandbox_stopped", sandbox_id=handle.sandbox_id)
        except NotFound:
            logger.warning("sandbox_already_removed", sandbox_id=handle.sandbox_id)

    def _stop_container(self, container_id: str) -> None:
        self.client.containers.get(container_id).stop(timeout=self.stop_timeout)

    async def remove(self, handle: SandboxHandle) -> None:
        """Force-remove a sandbox container and forget it."""
        async with self._lock:
            self._sandboxes.pop(handle.sandbox_id, None)
        try:
            await asyncio.get_running_loop().run_in_executor(
                None, self._remove_container, handle.container_id
            )
            logger.info("sandbox_removed", sandbox_id=handle.sandbox_id)
        except NotFound:
            logger.warning("sandbox_already_removed", sandbox_id=handle.sandbox_id)

    def _remove_container(self, container_id: str) -> None:
        self.client.containers.get(container_id).remove(force=True)

    def remove_blocking(self, handle: SandboxHandle) -> None:
        """Force-remove a container synchronously.

        Used from interpreter-exit hooks where no event loop is running.
        """
        self._sandboxes.pop(handle.sandbox_id, None)
        try:
            self._remove_container(handle.container_id)
        except NotFound:
            pass

    async def status(self, handle: SandboxHandle) -> str:
        """Return the Docker status of a sandbox, or ``"not_found"``."""
        try:
            container = await asyncio.get_running_loop().run_in_executor(
                None, self.client.containers.get, handle.container_id
            )
        except NotFound:
            return "not_found"
        return container.status

    async def cleanup_orphaned(self, name_prefix: str | None = None) -> int:
        """Remove leftover sandboxes from processes that died without cleanup.

        Args:
            name_prefix: Container name prefix (defaults to settings).

        Returns:
            Number of containers removed.
        """
        prefix = name_prefix or settings.sandbox_name_prefix
        return await asyncio.get_running_loop().run_in_executor(
            None, self._remove_by_prefix, prefix
        )

    def _remove_by_prefix(self, prefix: str) -> int:
        removed = 0
        containers = self.client.containers.list(all=True, filters={"name": prefix})
        for container in containers:
            # The name filter is a substring match
            if not container.name.startswith(prefix) or container.name in self._sandboxes:
                continue
            try:
                container.remove(force=True)
                removed += 1
                logger.info("orphaned_sandbox_removed", container_name=container.name)
            except (NotFound, APIError) as e:
                logger.error("cleanup_failed", container_name=container.name, error=str(e))
        return removed

    def is_docker_available(self) -> bool:
        """Check if the Docker daemon is reachable.

        Returns:
            True if the Docker daemon responds to a ping.
        """
        try:
            self.client.ping()
            return True
        except Exception:
            return False

    def get_active_sandbox_ids(self) -> list[str]:
        return list(self._sandboxes.keys())
