"""Concurrent execution of decomposed units.

For each validated unit the manager creates a branch and worktree from the
task branch, provisions a sandbox bound to that worktree, and invokes the
agent worker. All units run concurrently and are joined with settle
semantics: a failing unit is recorded, never cancels its siblings.
"""

import asyncio
import time
from collections import Counter
from collections.abc import Awaitable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import structlog

from agents.prompts import build_unit_instructions
from agents.worker import AgentPayload, AgentWorker
from config import settings
from events.bus import EventBus
from events.types import EventType, TaskEvent
from models.schemas import (
    AgentResult,
    DecompositionUnit,
    ProjectConfig,
    SubtaskState,
    SubtaskStatus,
    dump_document,
)
from sandbox.docker_sandbox import SandboxHandle, SandboxManager, SandboxSpec, build_sandbox_spec
from sandbox.registry import ActiveSandboxRegistry
from state.task_state import TaskStateManager, utc_now
from vcs.git_manager import GitManager

logger = structlog.get_logger()


def subtask_id_for(task_id: str, index: int) -> str:
    """Stable subtask id for the ``index``-th (1-based) unit of a task."""
    return f"{task_id}-unit{index}"


def branch_name_for(identifier: str) -> str:
    return f"{settings.branch_prefix}{identifier}"


def sandbox_name_for(identifier: str) -> str:
    return f"{settings.sandbox_name_prefix}{identifier}"


class UnitExecutionError(RuntimeError):
    """The agent reported failure for a unit."""


class ParallelExecutionError(RuntimeError):
    """Raised by callers when one or more units failed."""

    def __init__(self, failed: list["UnitOutcome"]) -> None:
        self.failed = failed
        details = "; ".join(f"{o.subtask_id}: {o.error}" for o in failed)
        super().__init__(f"{len(failed)} unit(s) failed: {details}")


@dataclass
class UnitOutcome:
    """Settled result of one unit, successful or not."""

    subtask_id: str
    unit_index: int
    role: str
    branch_name: str
    success: bool
    changes: list[str] = field(default_factory=list)
    cost: float = 0.0
    duration_ms: int = 0
    error: str | None = None


@dataclass
class ParallelExecutionResult:
    """Partitioned outcomes of a parallel run.

    Attributes:
        successful: Units whose agent succeeded and whose work was committed.
        failed: Units that raised or whose agent reported failure.
        total_cost: Sum of successful unit costs.
        total_duration_ms: Longest successful unit duration (units overlap).
    """

    successful: list[UnitOutcome]
    failed: list[UnitOutcome]
    total_cost: float
    total_duration_ms: int

    @property
    def all_succeeded(self) -> bool:
        return not self.failed

    @property
    def branches(self) -> list[str]:
        outcomes = sorted(self.successful + self.failed, key=lambda o: o.unit_index)
        return [o.branch_name for o in outcomes]


class ParallelAgentManager:
    """Runs decomposed units concurrently in isolated sandboxes.

    Attributes:
        git: Version-control collaborator.
        sandbox_manager: Sandbox runtime.
        worker: Agent worker invoked once per unit.
        state_manager: Durable store mirroring per-unit status.
        repo_path: Repository holding the task branch.
        worktrees_dir: Root under which unit worktrees are created.
        progress_interval: Seconds between progress reports.
        max_concurrency: Optional cap on simultaneously running units.
    """

    def __init__(
        self,
        git: GitManager,
        sandbox_manager: SandboxManager,
        worker: AgentWorker,
        state_manager: TaskStateManager,
        repo_path: str | Path,
        worktrees_dir: str | Path | None = None,
        registry: ActiveSandboxRegistry | None = None,
        event_bus: EventBus | None = None,
        project: ProjectConfig | None = None,
        progress_interval: float | None = None,
        max_concurrency: int | None = None,
    ) -> None:
        self.git = git
        self.sandbox_manager = sandbox_manager
        self.worker = worker
        self.state_manager = state_manager
        self.repo_path = Path(repo_path)
        self.worktrees_dir = Path(worktrees_dir) if worktrees_dir else settings.worktrees_dir
        self.registry = registry
        self.event_bus = event_bus
        self.project = project
        self.progress_interval = progress_interval or settings.progress_interval_seconds
        self.max_concurrency = (
            max_concurrency if max_concurrency is not None else settings.max_parallel_units
        )
        self._semaphore: asyncio.Semaphore | None = None
        self._progress_task: asyncio.Task[None] | None = None
        self._unit_status: dict[str, SubtaskStatus] = {}

    @property
    def is_monitoring(self) -> bool:
        return self._progress_task is not None and not self._progress_task.done()

    async def execute(
        self,
        task_id: str,
        units: Sequence[DecompositionUnit],
        base_branch: str,
        task_description: str = "",
    ) -> ParallelExecutionResult:
        """Run every unit concurrently and wait for all of them to settle.

        Args:
            task_id: Parent task id.
            units: Validated units, in decomposition order.
            base_branch: Branch each unit branch starts from.
            task_description: Overall task, included in unit instructions.

        Returns:
            ParallelExecutionResult partitioned into successful and failed units.
        """
        if not units:
            raise ValueError("No units to execute")

        self._unit_status = {}
        self._semaphore = asyncio.Semaphore(self.max_concurrency) if self.max_concurrency else None

        for index, unit in enumerate(units, start=1):
            subtask_id = subtask_id_for(task_id, index)
            state = SubtaskState(
                subtask_id=subtask_id,
                parent_task_id=task_id,
                unit_index=index,
                role=unit.role,
                description=unit.description,
                files=unit.files,
                dependencies=unit.dependencies,
                branch_name=branch_name_for(subtask_id),
                started_at=utc_now(),
            )
            await self.state_manager.save_subtask_state(task_id, subtask_id, dump_document(state))
            self._unit_status[subtask_id] = SubtaskStatus.PENDING

        logger.info("parallel_execution_started", task_id=task_id, units=len(units))
        started = time.monotonic()
        self._progress_task = asyncio.create_task(self._progress_loop(task_id, started))

        try:
            outcomes = await asyncio.gather(
                *(
                    self._bounded(
                        self._execute_unit(
                            task_id, unit, index, len(units), base_branch, task_description
                        )
                    )
                    for index, unit in enumerate(units, start=1)
                ),
                return_exceptions=True,
            )
        finally:
            await self._stop_progress_loop()

        settled: list[UnitOutcome] = []
        for index, (unit, outcome) in enumerate(zip(units, outcomes, strict=True), start=1):
            if isinstance(outcome, BaseException):
                subtask_id = subtask_id_for(task_id, index)
                settled.append(
                    UnitOutcome(
                        subtask_id=subtask_id,
                        unit_index=index,
                        role=unit.role.value,
                        branch_name=branch_name_for(subtask_id),
                        success=False,
                        error=str(outcome) or type(outcome).__name__,
                    )
                )
            else:
                settled.append(outcome)

        successful = [o for o in settled if o.success]
        failed = [o for o in settled if not o.success]
        result = ParallelExecutionResult(
            successful=successful,
            failed=failed,
            total_cost=sum(o.cost for o in successful),
            total_duration_ms=max((o.duration_ms for o in successful), default=0),
        )

        await self._report_progress(task_id, started)
        logger.info(
            "parallel_execution_complete",
            task_id=task_id,
            successful=len(successful),
            failed=len(failed),
            total_cost=result.total_cost,
            total_duration_ms=result.total_duration_ms,
        )
        return result

    async def _bounded(self, coro: Awaitable[UnitOutcome]) -> UnitOutcome:
        if self._semaphore is None:
            return await coro
        async with self._semaphore:
            return await coro

    async def _execute_unit(
        self,
        task_id: str,
        unit: DecompositionUnit,
        index: int,
        total: int,
        base_branch: str,
        task_description: str,
    ) -> UnitOutcome:
        """Run one unit end to end; failures are returned, not raised."""
        subtask_id = subtask_id_for(task_id, index)
        branch = branch_name_for(subtask_id)
        worktree = self.worktrees_dir / task_id / f"unit{index}"
        handle: SandboxHandle | None = None
        worktree_created = False
        log = logger.bind(task_id=task_id, subtask_id=subtask_id, branch=branch)

        try:
            await self._set_status(task_id, subtask_id, SubtaskStatus.RUNNING, branch_name=branch)
            await self.git.add_worktree(self.repo_path, worktree, branch, base=base_branch)
            worktree_created = True

            handle = await self.sandbox_manager.create(self._sandbox_spec(subtask_id, worktree))
            if self.registry is not None:
                self.registry.track(handle)
            await self._set_status(
                task_id, subtask_id, SubtaskStatus.EXECUTING, sandbox_id=handle.sandbox_id
            )

            payload = AgentPayload(
                role=unit.role.value,
                instructions=build_unit_instructions(
                    task_description=task_description or unit.description,
                    unit_description=unit.description,
                    role=unit.role.value,
                    files=unit.files,
                    index=index,
                    total=total,
                    workspace=handle.workspace_path,
                ),
                file_scope=unit.files,
                subtask_id=subtask_id,
            )
            result = await self.worker.invoke(handle, payload)
            if not result.success:
                raise UnitExecutionError(result.error or "Agent reported failure")

            committed = await self.git.commit_all(
                worktree, f"{unit.role.value}: {unit.description[:72]}\n\nSubtask: {subtask_id}"
            )
            self._check_scope(log, unit, committed)
            result = result.model_copy(update={"changes": result.changes or committed})

            await self._set_status(
                task_id,
                subtask_id,
                SubtaskStatus.COMPLETED,
                result=dump_document(result),
                completed_at=utc_now().isoformat(),
            )
            log.info("unit_completed", cost=result.cost, duration_ms=result.duration_ms)
            return self._outcome(subtask_id, index, unit, branch, result)

        except Exception as e:
            log.error("unit_failed", error=str(e), error_type=type(e).__name__)
            try:
                await self._set_status(
                    task_id,
                    subtask_id,
                    SubtaskStatus.FAILED,
                    error=str(e),
                    completed_at=utc_now().isoformat(),
                )
            except Exception as state_error:
                log.error("unit_state_update_failed", error=str(state_error))
            return UnitOutcome(
                subtask_id=subtask_id,
                unit_index=index,
                role=unit.role.value,
                branch_name=branch,
                success=False,
                error=str(e) or type(e).__name__,
            )

        finally:
            if handle is not None:
                await self._release_sandbox(handle)
            if worktree_created:
                try:
                    await self.git.remove_worktree(self.repo_path, worktree)
                except Exception as e:
                    log.warning("worktree_cleanup_failed", path=str(worktree), error=str(e))

    def _sandbox_spec(self, subtask_id: str, worktree: Path) -> SandboxSpec:
        project = self.project
        return build_sandbox_spec(
            sandbox_name_for(subtask_id),
            str(worktree),
            image=project.sandbox_image if project else None,
            memory=project.sandbox_memory if project else None,
            cpus=project.sandbox_cpus if project else None,
            network_mode=project.sandbox_network_mode if project else None,
        )

    async def _release_sandbox(self, handle: SandboxHandle) -> None:
        if self.registry is not None:
            await self.registry.cleanup(handle)
            return
        for step in (self.sandbox_manager.stop, self.sandbox_manager.remove):
            try:
                await step(handle)
            except Exception as e:
                logger.warning("sandbox_cleanup_failed", sandbox_id=handle.sandbox_id, error=str(e))

    @staticmethod
    def _check_scope(log: Any, unit: DecompositionUnit, committed: list[str]) -> None:
        allowed = {path.strip().lower() for path in unit.files}
        outside = [path for path in committed if path.strip().lower() not in allowed]
        if allowed and outside:
            log.warning("unit_changed_files_outside_scope", files=outside)

    @staticmethod
    def _outcome(
        subtask_id: str,
        index: int,
        unit: DecompositionUnit,
        branch: str,
        result: AgentResult,
    ) -> UnitOutcome:
        return UnitOutcome(
            subtask_id=subtask_id,
            unit_index=index,
            role=unit.role.value,
            branch_name=branch,
            success=True,
            changes=list(result.changes),
            cost=result.cost,
            duration_ms=result.duration_ms,
        )

    async def _set_status(
        self,
        task_id: str,
        subtask_id: str,
        status: SubtaskStatus,
        **fields: Any,
    ) -> None:
        self._unit_status[subtask_id] = status
        await self.state_manager.update_subtask_state(
            task_id, subtask_id, {"status": status.value, **fields}
        )
        if self.event_bus is not None:
            await self.event_bus.publish(
                TaskEvent(
                    type=EventType.UNIT_STATUS_CHANGED,
                    task_id=task_id,
                    subtask_id=subtask_id,
                    data={"status": status.value, "branch": branch_name_for(subtask_id)},
                )
            )

    async def _progress_loop(self, task_id: str, started: float) -> None:
        try:
            while True:
                await asyncio.sleep(self.progress_interval)
                try:
                    await self._report_progress(task_id, started)
                except Exception as e:
                    logger.warning("progress_report_failed", task_id=task_id, error=str(e))
        except asyncio.CancelledError:
            pass

    async def _stop_progress_loop(self) -> None:
        task, self._progress_task = self._progress_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _report_progress(self, task_id: str, started: float) -> None:
        counts = Counter(status.value for status in self._unit_status.values())
        elapsed = round(time.monotonic() - started, 1)
        logger.info("parallel_progress", task_id=task_id, elapsed_seconds=elapsed, **counts)
        if self.event_bus is not None:
            await self.event_bus.publish(
                TaskEvent(
                    type=EventType.PROGRESS_UPDATE,
                    task_id=task_id,
                    data={"counts": dict(counts), "elapsed_seconds": elapsed},
                )
            )
