"""LangGraph pipeline for executing one task.

The graph sequences the stages that follow setup:

    START -> decompose -> execute_parallel -> merge -> run_tests -> END
                       \\-> execute_sequential ------/

Setup (task branch, worktree, task sandbox) and finalization are owned by
the Orchestrator, which passes the prepared resources in the initial state.
Node failures propagate out of ``run`` unchanged.
"""

import time
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any, TypedDict

import structlog
from langgraph.graph import END, START, StateGraph

from agents.parallel_manager import (
    ParallelAgentManager,
    ParallelExecutionError,
    ParallelExecutionResult,
    UnitExecutionError,
)
from agents.prompts import build_sequential_instructions
from agents.task_decomposer import TaskDecomposer
from agents.worker import AgentPayload, AgentWorker
from config import settings
from events.bus import EventBus
from events.types import EventType, TaskEvent
from models.schemas import (
    DecompositionAnalysis,
    ExecutionMode,
    ProjectConfig,
    ProjectTestResult,
    TaskStage,
    UnitRole,
)
from sandbox.docker_sandbox import SandboxHandle, SandboxManager
from sandbox.registry import ActiveSandboxRegistry
from state.task_state import TaskStateManager
from vcs.branch_merger import BranchMerger
from vcs.git_manager import GitManager

logger = structlog.get_logger()

StageCallback = Callable[[str, TaskStage], Awaitable[None]]


class TaskRunState(TypedDict):
    """State flowing through the task graph.

    Attributes:
        task_id: The task being executed
        description: Task description given by the user
        project: Resolved project configuration
        task_branch: Branch that receives the task's work
        worktree_path: Working copy with ``task_branch`` checked out
        sandbox: Task sandbox bound to ``worktree_path``
        analysis: Decomposition outcome
        mode: Parallel or sequential
        parallel_result: Unit outcomes of a parallel run
        merged_branches: Unit branches integrated into ``task_branch``
        changes: Files changed by a sequential run
        cost: Accumulated planner and agent cost
        execution_ms: Wall-clock duration of the execution stage
        test_results: Outcome of the project test command
    """

    task_id: str
    description: str
    project: ProjectConfig
    task_branch: str
    worktree_path: str
    sandbox: SandboxHandle | None
    analysis: DecompositionAnalysis | None
    mode: ExecutionMode | None
    parallel_result: ParallelExecutionResult | None
    merged_branches: list[str]
    changes: list[str]
    cost: float
    execution_ms: int
    test_results: ProjectTestResult | None


def create_task_run_state(
    task_id: str,
    description: str,
    project: ProjectConfig,
    task_branch: str,
    worktree_path: str | Path,
    sandbox: SandboxHandle | None,
) -> TaskRunState:
    """Create the initial graph state for a prepared task."""
    return TaskRunState(
        task_id=task_id,
        description=description,
        project=project,
        task_branch=task_branch,
        worktree_path=str(worktree_path),
        sandbox=sandbox,
        analysis=None,
        mode=None,
        parallel_result=None,
        merged_branches=[],
        changes=[],
        cost=0.0,
        execution_ms=0,
        test_results=None,
    )


class TaskExecutionGraph:
    """Decompose, execute, merge and test one task.

    Usage:
        >>> graph = TaskExecutionGraph(decomposer, git, sandbox_manager, worker, state_manager)
        >>> final_state = await graph.run(create_task_run_state(...))
    """

    def __init__(
        self,
        decomposer: TaskDecomposer,
        git: GitManager,
        sandbox_manager: SandboxManager,
        worker: AgentWorker,
        state_manager: TaskStateManager,
        registry: ActiveSandboxRegistry | None = None,
        event_bus: EventBus | None = None,
        worktrees_dir: str | Path | None = None,
        on_stage: StageCallback | None = None,
    ) -> None:
        self.decomposer = decomposer
        self.git = git
        self.sandbox_manager = sandbox_manager
        self.worker = worker
        self.state_manager = state_manager
        self.registry = registry
        self.event_bus = event_bus
        self.worktrees_dir = Path(worktrees_dir) if worktrees_dir else settings.worktrees_dir
        self.on_stage = on_stage
        self._compiled_graph = self._build_graph()

    def _build_graph(self) -> Any:
        graph = StateGraph(TaskRunState)

        graph.add_node("decompose", self._decompose)
        graph.add_node("execute_parallel", self._execute_parallel)
        graph.add_node("execute_sequential", self._execute_sequential)
        graph.add_node("merge", self._merge)
        graph.add_node("run_tests", self._run_tests)

        graph.add_edge(START, "decompose")
        graph.add_conditional_edges(
            "decompose",
            self._route_after_decompose,
            {
                "parallel": "execute_parallel",
                "sequential": "execute_sequential",
            },
        )
        graph.add_edge("execute_parallel", "merge")
        graph.add_edge("merge", "run_tests")
        graph.add_edge("execute_sequential", "run_tests")
        graph.add_edge("run_tests", END)

        return graph.compile()

    async def run(self, initial_state: TaskRunState) -> TaskRunState:
        """Run the graph to completion and return the final state."""
        return await self._compiled_graph.ainvoke(initial_state)

    async def _enter(self, task_id: str, stage: TaskStage) -> None:
        if self.on_stage is not None:
            await self.on_stage(task_id, stage)

    async def _publish(self, event_type: EventType, task_id: str, **data: Any) -> None:
        if self.event_bus is not None:
            await self.event_bus.publish(TaskEvent(type=event_type, task_id=task_id, data=data))

    # ------------------------------------------------------------------
    # Nodes
    # ------------------------------------------------------------------

    async def _decompose(self, state: TaskRunState) -> dict[str, Any]:
        task_id = state["task_id"]
        await self._enter(task_id, TaskStage.DECOMPOSITION)

        if state["project"].allow_parallel:
            analysis = await self.decomposer.analyze_task(state["description"])
            planner_cost = self.decomposer.last_cost
        else:
            analysis = DecompositionAnalysis.fallback(
                "Parallel execution is disabled for this project"
            )
            planner_cost = 0.0

        mode = ExecutionMode.PARALLEL if analysis.can_parallelize else ExecutionMode.SEQUENTIAL
        await self.state_manager.update_task_state(
            task_id,
            {"execution_mode": mode.value, "reasoning": analysis.reasoning},
        )
        await self._publish(
            EventType.DECOMPOSITION_COMPLETE,
            task_id,
            can_parallelize=analysis.can_parallelize,
            unit_count=len(analysis.units),
            reasoning=analysis.reasoning,
        )
        logger.info("task_plan", task_id=task_id, plan=TaskDecomposer.get_summary(analysis))
        return {"analysis": analysis, "mode": mode, "cost": state["cost"] + planner_cost}

    def _route_after_decompose(self, state: TaskRunState) -> str:
        analysis = state["analysis"]
        if analysis is not None and analysis.can_parallelize and analysis.units:
            return "parallel"
        return "sequential"

    async def _execute_parallel(self, state: TaskRunState) -> dict[str, Any]:
        task_id = state["task_id"]
        project = state["project"]
        analysis = state["analysis"]
        if analysis is None:
            raise RuntimeError(f"Task {task_id} reached parallel execution without an analysis")
        await self._enter(task_id, TaskStage.EXECUTION)

        manager = ParallelAgentManager(
            git=self.git,
            sandbox_manager=self.sandbox_manager,
            worker=self.worker,
            state_manager=self.state_manager,
            repo_path=project.repo_path,
            worktrees_dir=self.worktrees_dir,
            registry=self.registry,
            event_bus=self.event_bus,
            project=project,
        )
        await self.state_manager.update_task_state(
            task_id,
            {"subtask_ids": [f"{task_id}-unit{i}" for i in range(1, len(analysis.units) + 1)]},
        )
        result = await manager.execute(
            task_id,
            analysis.units,
            base_branch=state["task_branch"],
            task_description=state["description"],
        )

        if result.failed:
            merger = BranchMerger(self.git, project.repo_path, task_id)
            await merger.cleanup_branches(result.branches)
            raise ParallelExecutionError(result.failed)

        return {
            "parallel_result": result,
            "cost": state["cost"] + result.total_cost,
            "execution_ms": result.total_duration_ms,
        }

    async def _merge(self, state: TaskRunState) -> dict[str, Any]:
        task_id = state["task_id"]
        result = state["parallel_result"]
        if result is None:
            raise RuntimeError(f"Task {task_id} reached merge without parallel results")
        await self._enter(task_id, TaskStage.MERGE)

        merger = BranchMerger(self.git, state["worktree_path"], task_id, self.event_bus)
        try:
            summary = await merger.merge_all(state["task_branch"], result.successful)
        finally:
            await merger.cleanup_branches(result.branches)
        return {"merged_branches": summary.merged}

    async def _execute_sequential(self, state: TaskRunState) -> dict[str, Any]:
        task_id = state["task_id"]
        sandbox = state["sandbox"]
        if sandbox is None:
            raise RuntimeError(f"Task {task_id} has no sandbox for sequential execution")
        await self._enter(task_id, TaskStage.EXECUTION)

        started = time.monotonic()
        payload = AgentPayload(
            role=UnitRole.CODER.value,
            instructions=build_sequential_instructions(
                task_description=state["description"],
                workspace=sandbox.workspace_path,
            ),
            subtask_id=task_id,
        )
        result = await self.worker.invoke(sandbox, payload)
        if not result.success:
            raise UnitExecutionError(result.error or "Agent reported failure")

        committed = await self.git.commit_all(
            state["worktree_path"], f"{state['description'][:72]}\n\nTask: {task_id}"
        )
        return {
            "changes": result.changes or committed,
            "cost": state["cost"] + result.cost,
            "execution_ms": result.duration_ms or int((time.monotonic() - started) * 1000),
        }

    async def _run_tests(self, state: TaskRunState) -> dict[str, Any]:
        task_id = state["task_id"]
        command = state["project"].test_command
        sandbox = state["sandbox"]
        if not command or sandbox is None:
            return {"test_results": None}
        await self._enter(task_id, TaskStage.TESTING)

        outcome = await self.sandbox_manager.exec(
            sandbox, command, timeout=settings.test_timeout_seconds
        )
        results = ProjectTestResult(
            command=command,
            passed=outcome.ok,
            exit_code=outcome.exit_code,
            output=(outcome.stdout + outcome.stderr)[-5000:],
            timed_out=outcome.timed_out,
        )
        if results.passed:
            logger.info("tests_passed", task_id=task_id)
        else:
            logger.warning("tests_failed", task_id=task_id, exit_code=results.exit_code)
        await self._publish(
            EventType.TESTS_COMPLETE, task_id, passed=results.passed, exit_code=results.exit_code
        )
        return {"test_results": results}
