"""Top-level task orchestration.

The Orchestrator sequences one task through its whole lifecycle:

    setup (task branch, worktree, sandbox)
      -> decomposition -> parallel or sequential execution -> merge -> tests
      -> persisted final state -> cleanup

Stage sequencing after setup lives in ``agents.task_graph``; this module owns
the resources around it, the durable task document and emergency cleanup of
tracked sandboxes when the process is interrupted.

Usage:
    >>> orchestrator = Orchestrator()
    >>> await orchestrator.initialize()
    >>> project = ProjectConfig(name="web", repo_path="~/src/web", test_command="npm test")
    >>> task = await orchestrator.execute_task(project, "Add /users and /posts endpoints")
    >>> print(task.status)
"""

import asyncio
import atexit
import os
import shutil
import signal
import time
import uuid
from pathlib import Path
from typing import Any

import structlog

from agents.parallel_manager import branch_name_for, sandbox_name_for
from agents.task_decomposer import TaskDecomposer
from agents.task_graph import TaskExecutionGraph, create_task_run_state
from agents.utils import LLMClient
from agents.worker import AgentWorker, SandboxAgentWorker
from config import settings
from events.bus import EventBus, get_event_bus
from events.types import EventType, TaskEvent
from models.schemas import (
    ProjectConfig,
    TaskProgress,
    TaskStage,
    TaskState,
    TaskStatus,
    dump_document,
)
from sandbox.docker_sandbox import SandboxError, SandboxHandle, SandboxManager, build_sandbox_spec
from sandbox.registry import ActiveSandboxRegistry
from state.task_state import TaskNotFoundError, TaskStateManager, utc_now
from vcs.branch_merger import MergeConflictError, format_conflicts
from vcs.git_manager import GitManager

logger = structlog.get_logger()

RETRYABLE_STATUSES = frozenset({TaskStatus.FAILED, TaskStatus.INTERRUPTED})


class InvalidTransitionError(ValueError):
    """The requested operation is not valid for the task's current status."""


class Orchestrator:
    """Runs tasks end to end and owns their resources.

    Attributes:
        sandbox_manager: Sandbox runtime.
        git: Version-control collaborator.
        worker: Agent worker used for units and sequential runs.
        decomposer: Planner-backed task decomposer.
        state_manager: Durable task store.
        event_bus: Event stream for observers.
        registry: Active sandboxes, cleaned up on interruption or exit.
    """

    def __init__(
        self,
        sandbox_manager: SandboxManager | None = None,
        git: GitManager | None = None,
        worker: AgentWorker | None = None,
        planner: LLMClient | None = None,
        state_manager: TaskStateManager | None = None,
        event_bus: EventBus | None = None,
        worktrees_dir: str | Path | None = None,
    ) -> None:
        self.sandbox_manager = sandbox_manager or SandboxManager()
        self.git = git or GitManager()
        self.worker = worker or SandboxAgentWorker(self.sandbox_manager)
        self.decomposer = TaskDecomposer(planner)
        self.state_manager = state_manager or TaskStateManager()
        self.event_bus = event_bus or get_event_bus()
        self.worktrees_dir = Path(worktrees_dir) if worktrees_dir else settings.worktrees_dir
        self.registry = ActiveSandboxRegistry(self.sandbox_manager)
        self.graph = TaskExecutionGraph(
            decomposer=self.decomposer,
            git=self.git,
            sandbox_manager=self.sandbox_manager,
            worker=self.worker,
            state_manager=self.state_manager,
            registry=self.registry,
            event_bus=self.event_bus,
            worktrees_dir=self.worktrees_dir,
            on_stage=self._enter_stage,
        )
        self._active_tasks: set[str] = set()
        self._shutdown_task: asyncio.Task[None] | None = None

    # ------------------------------------------------------------------
    # Identity and lifecycle hooks
    # ------------------------------------------------------------------

    @staticmethod
    def generate_task_id() -> str:
        """Create a sortable, collision-resistant task id.

        The timestamp prefix keeps ids ordered; the random suffix makes
        concurrent creation within the same second safe.
        """
        return f"{utc_now():%Y%m%d-%H%M%S}-{uuid.uuid4().hex[:12]}"

    def register_cleanup_handlers(self) -> bool:
        """Install SIGINT/SIGTERM handlers and an exit hook, once.

        Returns:
            True if handlers were installed by this call, False if they
            already were.
        """
        if not self.registry.claim_handler_registration():
            return False

        atexit.register(self._cleanup_at_exit)

        try:
            loop: asyncio.AbstractEventLoop | None = asyncio.get_running_loop()
        except RuntimeError:
            loop = None

        for sig in (signal.SIGINT, signal.SIGTERM):
            if loop is not None:
                try:
                    loop.add_signal_handler(sig, self._handle_signal, sig)
                    continue
                except (NotImplementedError, RuntimeError):
                    # No loop signal support on this platform or thread
                    pass
            try:
                signal.signal(sig, self._handle_signal_sync)
            except ValueError:
                logger.warning("signal_handler_unavailable", signal=sig.name)

        logger.info("cleanup_handlers_registered")
        return True

    def _handle_signal(self, sig: signal.Signals) -> None:
        logger.warning("shutdown_signal_received", signal=sig.name, active=len(self.registry))
        if self._shutdown_task is None:
            self._shutdown_task = asyncio.ensure_future(self._emergency_shutdown(sig))

    def _handle_signal_sync(self, signum: int, frame: Any) -> None:
        logger.warning("shutdown_signal_received", signal=signum, active=len(self.registry))
        self.registry.cleanup_all_blocking()
        raise SystemExit(128 + signum)

    async def _emergency_shutdown(self, sig: signal.Signals) -> None:
        await self.cleanup_all()
        for task_id in list(self._active_tasks):
            try:
                await self._mark_interrupted(task_id, f"Interrupted by {sig.name}")
            except Exception as e:
                logger.error("task_interrupt_update_failed", task_id=task_id, error=str(e))
        raise SystemExit(128 + int(sig))

    def _cleanup_at_exit(self) -> None:
        count = self.registry.cleanup_all_blocking()
        if count:
            logger.warning("sandboxes_cleaned_at_exit", count=count)

    async def cleanup_container(self, handle: SandboxHandle | None) -> None:
        """Stop and remove one sandbox; never raises and always untracks it."""
        await self.registry.cleanup(handle)

    async def cleanup_all(self) -> int:
        return await self.registry.cleanup_all()

    async def initialize(self) -> list[str]:
        """Reconcile persisted state with reality before accepting work.

        Marks tasks whose owner died as interrupted, prunes old terminal
        tasks and removes leftover sandboxes when no live process owns any
        running task.

        Returns:
            Ids of the tasks marked interrupted.
        """
        interrupted = await self.state_manager.sync_task_states()
        await self.state_manager.cleanup_old_tasks()

        if not await self.state_manager.get_running_tasks():
            try:
                await self.sandbox_manager.cleanup_orphaned(settings.sandbox_name_prefix)
            except Exception as e:
                logger.warning("orphan_cleanup_failed", error=str(e))

        self.register_cleanup_handlers()
        logger.info("orchestrator_initialized", interrupted=len(interrupted))
        return interrupted

    # ------------------------------------------------------------------
    # Task execution
    # ------------------------------------------------------------------

    async def execute_task(
        self,
        project: ProjectConfig,
        description: str,
        task_id: str | None = None,
        attempt: int = 1,
    ) -> TaskState:
        """Run a task through every stage and return its final state.

        Args:
            project: Project the task belongs to.
            description: What the agents should do.
            task_id: Reuse an existing id (retries); generated when omitted.
            attempt: 1-based attempt number recorded in the task document.

        Returns:
            The completed TaskState.

        Raises:
            MergeConflictError: If any unit branch conflicted during merge.
            ParallelExecutionError: If any parallel unit failed.
            SandboxError: If Docker is unavailable or a sandbox cannot be created.
            GitCommandError: If branch or worktree setup fails.
        """
        description = description.strip()
        if not description:
            raise ValueError("Task description must not be empty")

        task_id = task_id or self.generate_task_id()
        task_branch = branch_name_for(task_id)
        worktree = self.worktrees_dir / task_id / "main"
        log = logger.bind(task_id=task_id, project=project.name)

        task = TaskState(
            task_id=task_id,
            description=description,
            project=project.name,
            project_config=project,
            status=TaskStatus.RUNNING,
            started_at=utc_now(),
            current_stage=TaskStage.SETUP,
            progress=TaskProgress(
                percent=TaskStateManager.calculate_progress(TaskStage.SETUP),
                eta_seconds=TaskStateManager.estimate_eta(TaskStage.SETUP),
            ),
            pid=os.getpid(),
            branch_name=task_branch,
            base_branch=project.base_branch,
            attempt=attempt,
        )
        await self.state_manager.save_task_state(task_id, dump_document(task))
        self._active_tasks.add(task_id)
        self.register_cleanup_handlers()
        await self._publish(
            EventType.TASK_STARTED, task_id, description=description, project=project.name
        )
        log.info("task_started", attempt=attempt)

        started = time.monotonic()
        sandbox: SandboxHandle | None = None
        worktree_created = False

        try:
            repo_path = project.repo_path.expanduser()
            if not await self.git.is_repository(repo_path):
                raise ValueError(f"Not a git repository: {repo_path}")
            loop = asyncio.get_running_loop()
            if not await loop.run_in_executor(None, self.sandbox_manager.is_docker_available):
                raise SandboxError("Docker is not available")

            if project.pull_latest:
                await self.git.pull(repo_path, project.base_branch)
            await self.git.add_worktree(repo_path, worktree, task_branch, base=project.base_branch)
            worktree_created = True

            sandbox = await self.sandbox_manager.create(
                build_sandbox_spec(
                    sandbox_name_for(task_id),
                    str(worktree),
                    image=project.sandbox_image,
                    memory=project.sandbox_memory,
                    cpus=project.sandbox_cpus,
                    network_mode=project.sandbox_network_mode,
                )
            )
            self.registry.track(sandbox)

            final = await self.graph.run(
                create_task_run_state(task_id, description, project, task_branch, worktree, sandbox)
            )

            test_results = final["test_results"]
            document = await self.state_manager.update_task_state(
                task_id,
                {
                    "status": TaskStatus.COMPLETED.value,
                    "completed_at": utc_now().isoformat(),
                    "current_stage": None,
                    "completed_stages": [stage.value for stage in TaskStage],
                    "progress": {"percent": 100, "eta_seconds": 0},
                    "cost": round(final["cost"], 6),
                    "duration_ms": int((time.monotonic() - started) * 1000),
                    "test_results": dump_document(test_results) if test_results else None,
                },
            )
            await self._publish(
                EventType.TASK_COMPLETE,
                task_id,
                cost=document["cost"],
                merged=final["merged_branches"],
                tests_passed=test_results.passed if test_results else None,
            )
            log.info(
                "task_complete",
                mode=final["mode"],
                cost=document["cost"],
                duration_ms=document["duration_ms"],
            )
            return TaskState.model_validate(document)

        except MergeConflictError as e:
            log.warning("task_merge_conflicts", report=format_conflicts(e.conflicts))
            await self._fail_task(
                task_id,
                started,
                str(e),
                conflicts=[dump_document(c) for c in e.conflicts],
            )
            raise
        except asyncio.CancelledError:
            await self._mark_interrupted(task_id, "Task was cancelled")
            raise
        except Exception as e:
            log.error("task_failed", error=str(e), error_type=type(e).__name__)
            await self._fail_task(task_id, started, str(e) or type(e).__name__)
            raise
        finally:
            self._active_tasks.discard(task_id)
            await self.cleanup_container(sandbox)
            if worktree_created:
                try:
                    await self.git.remove_worktree(project.repo_path.expanduser(), worktree)
                except Exception as e:
                    log.warning("worktree_cleanup_failed", path=str(worktree), error=str(e))
            await self.event_bus.close_task(task_id)

    async def _enter_stage(self, task_id: str, stage: TaskStage) -> None:
        """Persist a stage transition; progress never moves backwards."""
        current = await self.state_manager.load_task_state(task_id)
        if current is None:
            raise TaskNotFoundError(task_id)

        completed = list(current.get("completed_stages") or [])
        previous = current.get("current_stage")
        if previous and previous not in completed:
            completed.append(previous)

        percent = max(
            int((current.get("progress") or {}).get("percent", 0)),
            TaskStateManager.calculate_progress(stage, completed),
        )
        await self.state_manager.update_task_state(
            task_id,
            {
                "current_stage": stage.value,
                "completed_stages": completed,
                "progress": {
                    "percent": percent,
                    "eta_seconds": TaskStateManager.estimate_eta(stage, completed),
                },
            },
        )
        await self._publish(EventType.STAGE_CHANGED, task_id, stage=stage.value, percent=percent)
        logger.info("task_stage_changed", task_id=task_id, stage=stage.value, percent=percent)

    async def _fail_task(self, task_id: str, started: float, error: str, **extra: Any) -> None:
        try:
            cost = await self._committed_unit_cost(task_id)
            await self.state_manager.update_task_state(
                task_id,
                {
                    "status": TaskStatus.FAILED.value,
                    "completed_at": utc_now().isoformat(),
                    "duration_ms": int((time.monotonic() - started) * 1000),
                    "cost": cost,
                    "error": error,
                    **extra,
                },
            )
        except Exception as e:
            logger.error("task_failure_update_failed", task_id=task_id, error=str(e))
        await self._publish(EventType.TASK_FAILED, task_id, error=error)

    async def _mark_interrupted(self, task_id: str, reason: str) -> None:
        await self.state_manager.update_task_state(
            task_id,
            {
                "status": TaskStatus.INTERRUPTED.value,
                "completed_at": utc_now().isoformat(),
                "error": reason,
            },
        )
        await self._publish(EventType.TASK_INTERRUPTED, task_id, reason=reason)
        logger.warning("task_interrupted", task_id=task_id, reason=reason)

    async def _committed_unit_cost(self, task_id: str) -> float:
        total = 0.0
        for subtask in await self.state_manager.get_subtasks(task_id):
            result = subtask.get("result") or {}
            total += float(result.get("cost") or 0.0)
        return round(total, 6)

    async def _publish(self, event_type: EventType, task_id: str, **data: Any) -> None:
        await self.event_bus.publish(TaskEvent(type=event_type, task_id=task_id, data=data))

    # ------------------------------------------------------------------
    # Task operations
    # ------------------------------------------------------------------

    async def get_task(self, task_id: str) -> TaskState:
        document = await self.state_manager.load_task_state(task_id)
        if document is None:
            raise TaskNotFoundError(task_id)
        return TaskState.model_validate(document)

    async def list_tasks(
        self,
        project: str | None = None,
        status: TaskStatus | None = None,
    ) -> list[TaskState]:
        """Persisted tasks, newest first, optionally filtered."""
        if project is not None:
            documents = await self.state_manager.get_project_tasks(project, status)
        else:
            documents = [
                t
                for t in await self.state_manager.get_all_tasks()
                if status is None or t.get("status") == status
            ]
        return [TaskState.model_validate(d) for d in documents]

    async def retry_task(self, task_id: str) -> TaskState:
        """Re-run a failed or interrupted task under the same id.

        Stale branches left by the previous attempt are deleted first.

        Raises:
            TaskNotFoundError: If the task does not exist.
            InvalidTransitionError: If the task is not failed or interrupted.
        """
        task = await self.get_task(task_id)
        if task.status not in RETRYABLE_STATUSES:
            raise InvalidTransitionError(
                f"Task {task_id} is {task.status}; only failed or interrupted tasks can be retried"
            )
        if task.project_config is None:
            raise InvalidTransitionError(f"Task {task_id} has no stored project configuration")

        project = task.project_config
        repo_path = project.repo_path.expanduser()
        await self._remove_stale_worktrees(repo_path, task_id)

        subtasks = await self.state_manager.get_subtasks(task_id)
        stale = [branch_name_for(task_id)] + [
            s["branch_name"] for s in subtasks if s.get("branch_name")
        ]
        for branch in stale:
            try:
                if await self.git.branch_exists(repo_path, branch):
                    await self.git.delete_branch(repo_path, branch, force=True)
            except Exception as e:
                logger.warning("stale_branch_cleanup_failed", branch=branch, error=str(e))

        await self.state_manager.delete_task_state(task_id)
        logger.info("task_retry", task_id=task_id, attempt=task.attempt + 1)
        return await self.execute_task(
            project, task.description, task_id=task_id, attempt=task.attempt + 1
        )

    async def _remove_stale_worktrees(self, repo_path: Path, task_id: str) -> None:
        root = self.worktrees_dir / task_id
        if root.is_dir():
            for path in sorted(root.iterdir()):
                try:
                    await self.git.remove_worktree(repo_path, path)
                except Exception as e:
                    logger.warning("stale_worktree_cleanup_failed", path=str(path), error=str(e))
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(None, lambda: shutil.rmtree(root, ignore_errors=True))
        try:
            await self.git.run(repo_path, "worktree", "prune")
        except Exception as e:
            logger.warning("worktree_prune_failed", error=str(e))

    async def get_task_diff(self, task_id: str, stat_only: bool = False) -> str:
        """Diff between the task's base branch and its task branch."""
        task = await self.get_task(task_id)
        if task.project_config is None or not task.branch_name:
            raise InvalidTransitionError(f"Task {task_id} has no branch to diff")
        return await self.git.get_diff(
            task.project_config.repo_path.expanduser(),
            task.base_branch or task.project_config.base_branch,
            task.branch_name,
            stat_only=stat_only,
        )

    async def format_status(self, task_id: str) -> str:
        """One-line summary of a task, with one line per subtask."""
        task = await self.state_manager.load_task_state(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        lines = [TaskStateManager.format_task_summary(task)]
        for subtask in await self.state_manager.get_subtasks(task_id):
            lines.append(
                f"  {subtask['subtask_id']} [{subtask.get('status', 'unknown')}] "
                f"{subtask.get('role', '?')}: {subtask.get('description', '')[:60]}"
            )
        return "\n".join(lines)
