"""Tests for orchestrator.py -- end-to-end task sequencing with mocked collaborators.

Docker, git and the planner are mocked; the durable store is real and
rooted in tmp_path. Signal handlers are claimed up front so tests never
install real process-wide handlers.
"""

import asyncio
import json
import re
import signal
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from agents.parallel_manager import ParallelExecutionError
from agents.utils import MockLLMClient
from events.bus import EventBus
from events.types import EventType
from models.schemas import AgentResult, ProjectConfig, TaskStage, TaskStatus
from orchestrator import InvalidTransitionError, Orchestrator
from sandbox.docker_sandbox import CommandResult, SandboxError, SandboxHandle
from state.task_state import TaskNotFoundError, TaskStateManager
from vcs.branch_merger import MergeConflictError
from vcs.git_manager import MergeOutcome
from tests.conftest import ScriptedWorker, make_analysis_payload, make_llm_response, make_part

SEQUENTIAL_PLAN = json.dumps(
    {"complexity": 2, "canParallelize": False, "reasoning": "Single small change", "parts": []}
)
PARALLEL_PLAN = json.dumps(
    make_analysis_payload(
        [
            make_part(["src/users.js"], description="Add /users"),
            make_part(["src/posts.js"], description="Add /posts"),
        ]
    )
)


@pytest.fixture()
def project(tmp_path: Path) -> ProjectConfig:
    return ProjectConfig(name="web", repo_path=tmp_path / "repo", test_command="npm test")


def _orchestrator(
    tmp_path: Path,
    mock_git: MagicMock,
    mock_sandbox_manager: MagicMock,
    state_manager: TaskStateManager,
    event_bus: EventBus,
    worker: ScriptedWorker | None = None,
    plan: str | None = None,
    planner_cost: float = 0.0,
) -> Orchestrator:
    responses = [make_llm_response(plan, cost=planner_cost)] if plan is not None else []
    orchestrator = Orchestrator(
        sandbox_manager=mock_sandbox_manager,
        git=mock_git,
        worker=worker or ScriptedWorker(),
        planner=MockLLMClient(responses=responses),
        state_manager=state_manager,
        event_bus=event_bus,
        worktrees_dir=tmp_path / "worktrees",
    )
    orchestrator.registry.claim_handler_registration()
    return orchestrator


# =========================================================================
# Identity and handler registration
# =========================================================================


class TestGenerateTaskId:
    def test_format(self) -> None:
        assert re.fullmatch(r"\d{8}-\d{6}-[0-9a-f]{12}", Orchestrator.generate_task_id())

    def test_unique_under_rapid_creation(self) -> None:
        ids = {Orchestrator.generate_task_id() for _ in range(2000)}
        assert len(ids) == 2000

    async def test_unique_under_concurrent_creation(self) -> None:
        async def make() -> str:
            await asyncio.sleep(0)
            return Orchestrator.generate_task_id()

        ids = await asyncio.gather(*(make() for _ in range(500)))
        assert len(set(ids)) == 500


class TestRegisterCleanupHandlers:
    async def test_registration_is_idempotent(
        self,
        mock_sandbox_manager: MagicMock,
        state_manager: TaskStateManager,
        event_bus: EventBus,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        import orchestrator as orchestrator_module

        atexit_register = MagicMock()
        monkeypatch.setattr(orchestrator_module.atexit, "register", atexit_register)
        loop = asyncio.get_running_loop()
        add_signal_handler = MagicMock()
        monkeypatch.setattr(loop, "add_signal_handler", add_signal_handler)

        orchestrator = Orchestrator(
            sandbox_manager=mock_sandbox_manager,
            git=MagicMock(),
            planner=MockLLMClient(),
            state_manager=state_manager,
            event_bus=event_bus,
        )

        assert orchestrator.register_cleanup_handlers() is True
        assert orchestrator.register_cleanup_handlers() is False

        atexit_register.assert_called_once()
        assert add_signal_handler.call_count == 2
        assert orchestrator.registry.handlers_registered is True


class TestCleanupContainer:
    async def test_none_is_tolerated(
        self, tmp_path, mock_git, mock_sandbox_manager, state_manager, event_bus
    ) -> None:
        orchestrator = _orchestrator(
            tmp_path, mock_git, mock_sandbox_manager, state_manager, event_bus
        )
        await orchestrator.cleanup_container(None)
        mock_sandbox_manager.stop.assert_not_awaited()

    async def test_untracked_even_when_stop_and_remove_fail(
        self, tmp_path, mock_git, mock_sandbox_manager, state_manager, event_bus
    ) -> None:
        mock_sandbox_manager.stop = AsyncMock(side_effect=RuntimeError("daemon gone"))
        mock_sandbox_manager.remove = AsyncMock(side_effect=RuntimeError("daemon gone"))
        orchestrator = _orchestrator(
            tmp_path, mock_git, mock_sandbox_manager, state_manager, event_bus
        )
        handle = SandboxHandle(sandbox_id="s1", container_id="c1")
        orchestrator.registry.track(handle)

        await orchestrator.cleanup_container(handle)

        assert handle not in orchestrator.registry
        mock_sandbox_manager.remove.assert_awaited_once()

    async def test_emergency_shutdown_cleans_and_interrupts(
        self, tmp_path, mock_git, mock_sandbox_manager, state_manager, event_bus
    ) -> None:
        orchestrator = _orchestrator(
            tmp_path, mock_git, mock_sandbox_manager, state_manager, event_bus
        )
        await state_manager.save_task_state(
            "t1", {"task_id": "t1", "description": "d", "project": "web", "status": "running"}
        )
        orchestrator._active_tasks.add("t1")
        handles = [SandboxHandle(sandbox_id=f"s{i}", container_id=f"c{i}") for i in range(3)]
        for handle in handles:
            orchestrator.registry.track(handle)

        with pytest.raises(SystemExit) as exc_info:
            await orchestrator._emergency_shutdown(signal.SIGTERM)

        assert exc_info.value.code == 128 + int(signal.SIGTERM)
        assert len(orchestrator.registry) == 0
        assert mock_sandbox_manager.remove.await_count == 3
        task = await state_manager.load_task_state("t1")
        assert task["status"] == "interrupted"

        for handle in handles:
            await orchestrator.cleanup_container(handle)
        assert mock_sandbox_manager.remove.await_count == 3

    def test_exit_hook_removes_tracked_sandboxes(
        self, tmp_path, mock_git, mock_sandbox_manager, state_manager, event_bus
    ) -> None:
        orchestrator = _orchestrator(
            tmp_path, mock_git, mock_sandbox_manager, state_manager, event_bus
        )
        orchestrator.registry.track(SandboxHandle(sandbox_id="s1", container_id="c1"))

        orchestrator._cleanup_at_exit()
        orchestrator._cleanup_at_exit()

        mock_sandbox_manager.remove_blocking.assert_called_once()


class TestInitialize:
    async def test_reconciles_and_cleans_orphans(
        self, tmp_path, mock_git, mock_sandbox_manager, state_manager, event_bus
    ) -> None:
        await state_manager.save_task_state(
            "dead",
            {
                "task_id": "dead",
                "description": "d",
                "project": "web",
                "status": "running",
                "pid": 999,
            },
        )
        orchestrator = _orchestrator(
            tmp_path, mock_git, mock_sandbox_manager, state_manager, event_bus
        )

        interrupted = await orchestrator.initialize()

        assert interrupted == ["dead"]
        mock_sandbox_manager.cleanup_orphaned.assert_awaited_once_with("agent-dispatch-")

    async def test_orphans_kept_while_another_process_runs_tasks(
        self, tmp_path, mock_git, mock_sandbox_manager, state_manager, event_bus, process_checker
    ) -> None:
        process_checker.alive.add(555)
        await state_manager.save_task_state(
            "live",
            {
                "task_id": "live",
                "description": "d",
                "project": "web",
                "status": "running",
                "pid": 555,
            },
        )
        orchestrator = _orchestrator(
            tmp_path, mock_git, mock_sandbox_manager, state_manager, event_bus
        )

        assert await orchestrator.initialize() == []
        mock_sandbox_manager.cleanup_orphaned.assert_not_awaited()


# =========================================================================
# execute_task
# =========================================================================


class TestExecuteSequential:
    async def test_sequential_task_completes(
        self, tmp_path, mock_git, mock_sandbox_manager, state_manager, event_bus, project
    ) -> None:
        worker = ScriptedWorker(default=AgentResult(success=True, cost=0.3, duration_ms=500))
        mock_git.commit_all = AsyncMock(return_value=["src/app.js"])
        orchestrator = _orchestrator(
            tmp_path, mock_git, mock_sandbox_manager, state_manager, event_bus,
            worker=worker, plan=SEQUENTIAL_PLAN, planner_cost=0.01,
        )

        task = await orchestrator.execute_task(project, "Fix the login bug")

        assert task.status == TaskStatus.COMPLETED
        assert task.execution_mode == "sequential"
        assert task.reasoning == "Single small change"
        assert task.cost == pytest.approx(0.31)
        assert task.progress.percent == 100
        assert task.completed_stages == list(TaskStage)
        assert task.branch_name == f"agent/{task.task_id}"
        assert task.test_results is not None and task.test_results.passed is True
        assert len(worker.calls) == 1

        worktree = tmp_path / "worktrees" / task.task_id / "main"
        mock_git.add_worktree.assert_awaited_once_with(
            project.repo_path, worktree, f"agent/{task.task_id}", base="main"
        )
        mock_git.remove_worktree.assert_awaited_once_with(project.repo_path, worktree)
        mock_sandbox_manager.exec.assert_awaited_once()
        assert mock_sandbox_manager.exec.await_args.args[1] == "npm test"
        mock_sandbox_manager.remove.assert_awaited_once()
        assert len(orchestrator.registry) == 0

    async def test_failing_tests_recorded_without_failing_task(
        self, tmp_path, mock_git, mock_sandbox_manager, state_manager, event_bus, project
    ) -> None:
        mock_sandbox_manager.exec = AsyncMock(
            return_value=CommandResult(stdout="1 failed", stderr="", exit_code=1)
        )
        orchestrator = _orchestrator(
            tmp_path, mock_git, mock_sandbox_manager, state_manager, event_bus, plan=SEQUENTIAL_PLAN
        )

        task = await orchestrator.execute_task(project, "Fix the login bug")

        assert task.status == TaskStatus.COMPLETED
        assert task.test_results.passed is False
        assert task.test_results.exit_code == 1

    async def test_parallel_disabled_skips_planner(
        self, tmp_path, mock_git, mock_sandbox_manager, state_manager, event_bus, project
    ) -> None:
        orchestrator = _orchestrator(
            tmp_path, mock_git, mock_sandbox_manager, state_manager, event_bus
        )
        project = project.model_copy(update={"allow_parallel": False, "test_command": None})

        task = await orchestrator.execute_task(project, "Add endpoints")

        assert task.execution_mode == "sequential"
        assert orchestrator.decomposer.planner.call_history == []
        mock_sandbox_manager.exec.assert_not_awaited()

    async def test_events_published_in_order(
        self, tmp_path, mock_git, mock_sandbox_manager, state_manager, event_bus, project
    ) -> None:
        orchestrator = _orchestrator(
            tmp_path, mock_git, mock_sandbox_manager, state_manager, event_bus, plan=SEQUENTIAL_PLAN
        )
        task = await orchestrator.execute_task(project, "Fix the login bug")

        history = event_bus.get_event_history(task.task_id)
        types = [e.type for e in history]
        assert types[0] == EventType.TASK_STARTED
        assert types[-1] == EventType.TASK_COMPLETE
        stages = [e.data["stage"] for e in history if e.type == EventType.STAGE_CHANGED]
        assert stages == ["decomposition", "execution", "testing"]
        percents = [e.data["percent"] for e in history if e.type == EventType.STAGE_CHANGED]
        assert percents == sorted(percents)

    async def test_empty_description_rejected(
        self, tmp_path, mock_git, mock_sandbox_manager, state_manager, event_bus, project
    ) -> None:
        orchestrator = _orchestrator(
            tmp_path, mock_git, mock_sandbox_manager, state_manager, event_bus
        )
        with pytest.raises(ValueError):
            await orchestrator.execute_task(project, "   ")


class TestExecuteParallel:
    async def test_parallel_task_merges_and_cleans_branches(
        self, tmp_path, mock_git, mock_sandbox_manager, state_manager, event_bus, project
    ) -> None:
        mock_git.merge = AsyncMock(return_value=MergeOutcome(success=True))
        orchestrator = _orchestrator(
            tmp_path, mock_git, mock_sandbox_manager, state_manager, event_bus,
            plan=PARALLEL_PLAN, planner_cost=0.02,
        )

        task = await orchestrator.execute_task(project, "Add /users and /posts")

        unit_branches = [f"agent/{task.task_id}-unit1", f"agent/{task.task_id}-unit2"]
        assert task.status == TaskStatus.COMPLETED
        assert task.execution_mode == "parallel"
        assert task.subtask_ids == [f"{task.task_id}-unit1", f"{task.task_id}-unit2"]
        assert task.cost == pytest.approx(0.22)
        merged = [call.args[1] for call in mock_git.merge.await_args_list]
        assert merged == unit_branches
        deleted = [call.args[1] for call in mock_git.delete_branch.await_args_list]
        assert deleted == unit_branches
        # One task sandbox plus one per unit, all released
        assert mock_sandbox_manager.create.await_count == 3
        assert mock_sandbox_manager.remove.await_count == 3
        assert len(orchestrator.registry) == 0

    async def test_unit_failure_fails_task_and_cleans_branches(
        self, tmp_path, mock_git, mock_sandbox_manager, state_manager, event_bus, project
    ) -> None:
        class FailSecond(ScriptedWorker):
            async def invoke(self, sandbox, payload):
                if payload.subtask_id.endswith("-unit2"):
                    raise RuntimeError("agent crashed")
                return await super().invoke(sandbox, payload)

        orchestrator = _orchestrator(
            tmp_path, mock_git, mock_sandbox_manager, state_manager, event_bus,
            worker=FailSecond(), plan=PARALLEL_PLAN,
        )

        with pytest.raises(ParallelExecutionError) as exc_info:
            await orchestrator.execute_task(project, "Add /users and /posts")

        assert len(exc_info.value.failed) == 1
        mock_git.merge.assert_not_awaited()
        assert mock_git.delete_branch.await_count == 2

        [task] = await state_manager.get_all_tasks()
        assert task["status"] == "failed"
        assert "agent crashed" in task["error"]
        assert task["completed_at"]
        assert task["cost"] == pytest.approx(0.1)
        assert len(orchestrator.registry) == 0

    async def test_merge_conflict_fails_task_with_conflicts(
        self, tmp_path, mock_git, mock_sandbox_manager, state_manager, event_bus, project
    ) -> None:
        async def _merge(path, branch, **kwargs):
            if branch.endswith("-unit2"):
                return MergeOutcome(success=False, conflicted_files=["src/routes.js"])
            return MergeOutcome(success=True)

        mock_git.merge = AsyncMock(side_effect=_merge)
        orchestrator = _orchestrator(
            tmp_path, mock_git, mock_sandbox_manager, state_manager, event_bus, plan=PARALLEL_PLAN
        )

        with pytest.raises(MergeConflictError):
            await orchestrator.execute_task(project, "Add /users and /posts")

        [task] = await state_manager.get_all_tasks()
        assert task["status"] == "failed"
        assert task["conflicts"][0]["conflicting_files"] == ["src/routes.js"]
        assert mock_git.delete_branch.await_count == 2
        mock_sandbox_manager.exec.assert_not_awaited()


class TestExecuteSetupFailures:
    async def test_not_a_repository(
        self, tmp_path, mock_git, mock_sandbox_manager, state_manager, event_bus, project
    ) -> None:
        mock_git.is_repository = AsyncMock(return_value=False)
        orchestrator = _orchestrator(
            tmp_path, mock_git, mock_sandbox_manager, state_manager, event_bus
        )

        with pytest.raises(ValueError, match="Not a git repository"):
            await orchestrator.execute_task(project, "Do things")

        [task] = await state_manager.get_all_tasks()
        assert task["status"] == "failed"
        mock_sandbox_manager.create.assert_not_awaited()
        mock_git.remove_worktree.assert_not_awaited()

    async def test_docker_unavailable(
        self, tmp_path, mock_git, mock_sandbox_manager, state_manager, event_bus, project
    ) -> None:
        mock_sandbox_manager.is_docker_available = MagicMock(return_value=False)
        orchestrator = _orchestrator(
            tmp_path, mock_git, mock_sandbox_manager, state_manager, event_bus
        )

        with pytest.raises(SandboxError):
            await orchestrator.execute_task(project, "Do things")

    async def test_sandbox_failure_removes_worktree(
        self, tmp_path, mock_git, mock_sandbox_manager, state_manager, event_bus, project
    ) -> None:
        mock_sandbox_manager.create = AsyncMock(side_effect=SandboxError("image missing"))
        orchestrator = _orchestrator(
            tmp_path, mock_git, mock_sandbox_manager, state_manager, event_bus
        )

        with pytest.raises(SandboxError):
            await orchestrator.execute_task(project, "Do things")

        mock_git.remove_worktree.assert_awaited_once()
        [task] = await state_manager.get_all_tasks()
        assert task["error"] == "image missing"


# =========================================================================
# Task operations
# =========================================================================


class TestTaskOperations:
    async def test_retry_rejects_completed_task(
        self, tmp_path, mock_git, mock_sandbox_manager, state_manager, event_bus, project
    ) -> None:
        orchestrator = _orchestrator(
            tmp_path, mock_git, mock_sandbox_manager, state_manager, event_bus, plan=SEQUENTIAL_PLAN
        )
        task = await orchestrator.execute_task(project, "Fix the login bug")

        with pytest.raises(InvalidTransitionError):
            await orchestrator.retry_task(task.task_id)

    async def test_retry_missing_task(
        self, tmp_path, mock_git, mock_sandbox_manager, state_manager, event_bus
    ) -> None:
        orchestrator = _orchestrator(
            tmp_path, mock_git, mock_sandbox_manager, state_manager, event_bus
        )
        with pytest.raises(TaskNotFoundError):
            await orchestrator.retry_task("nope")

    async def test_retry_failed_task_reuses_id(
        self, tmp_path, mock_git, mock_sandbox_manager, state_manager, event_bus, project
    ) -> None:
        mock_sandbox_manager.create = AsyncMock(
            side_effect=[SandboxError("flaky"), SandboxHandle(sandbox_id="s", container_id="c")]
        )
        orchestrator = _orchestrator(
            tmp_path, mock_git, mock_sandbox_manager, state_manager, event_bus, plan=SEQUENTIAL_PLAN
        )
        with pytest.raises(SandboxError):
            await orchestrator.execute_task(project, "Fix the login bug")
        [failed] = await state_manager.get_all_tasks()
        mock_git.branch_exists = AsyncMock(return_value=True)

        retried = await orchestrator.retry_task(failed["task_id"])

        assert retried.task_id == failed["task_id"]
        assert retried.status == TaskStatus.COMPLETED
        assert retried.attempt == 2
        mock_git.delete_branch.assert_awaited_once_with(
            project.repo_path, f"agent/{failed['task_id']}", force=True
        )

    async def test_get_task_diff(
        self, tmp_path, mock_git, mock_sandbox_manager, state_manager, event_bus, project
    ) -> None:
        mock_git.get_diff = AsyncMock(return_value=" 1 file changed")
        orchestrator = _orchestrator(
            tmp_path, mock_git, mock_sandbox_manager, state_manager, event_bus, plan=SEQUENTIAL_PLAN
        )
        task = await orchestrator.execute_task(project, "Fix the login bug")

        diff = await orchestrator.get_task_diff(task.task_id, stat_only=True)

        assert diff == " 1 file changed"
        mock_git.get_diff.assert_awaited_once_with(
            project.repo_path, "main", f"agent/{task.task_id}", stat_only=True
        )

    async def test_enter_stage_never_lowers_progress(
        self, tmp_path, mock_git, mock_sandbox_manager, state_manager, event_bus
    ) -> None:
        orchestrator = _orchestrator(
            tmp_path, mock_git, mock_sandbox_manager, state_manager, event_bus
        )
        await state_manager.save_task_state(
            "t1",
            {
                "task_id": "t1",
                "description": "d",
                "project": "web",
                "status": "running",
                "current_stage": "setup",
                "progress": {"percent": 90, "eta_seconds": 10},
            },
        )

        await orchestrator._enter_stage("t1", TaskStage.DECOMPOSITION)

        task = await state_manager.load_task_state("t1")
        assert task["progress"]["percent"] == 90
        assert task["completed_stages"] == ["setup"]
        assert task["current_stage"] == "decomposition"

    async def test_list_tasks_and_status(
        self, tmp_path, mock_git, mock_sandbox_manager, state_manager, event_bus, project
    ) -> None:
        orchestrator = _orchestrator(
            tmp_path, mock_git, mock_sandbox_manager, state_manager, event_bus, plan=SEQUENTIAL_PLAN
        )
        task = await orchestrator.execute_task(project, "Fix the login bug")

        assert [t.task_id for t in await orchestrator.list_tasks(project="web")] == [task.task_id]
        assert await orchestrator.list_tasks(status=TaskStatus.FAILED) == []
        status = await orchestrator.format_status(task.task_id)
        assert status.startswith(f"{task.task_id} [completed]")
