"""Shared test fixtures for backend tests.

Provides mock objects for SandboxManager, GitManager, EventBus, LLM
clients and process liveness so that tests never touch real Docker
containers, LLM APIs or the user's state directory.
"""

import shutil
import subprocess
import sys
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

# Ensure the backend package root is on sys.path so that absolute imports
# like ``from state.task_state import ...`` resolve correctly when running
# pytest from the repository root.
_backend_root = str(Path(__file__).resolve().parent.parent)
if _backend_root not in sys.path:
    sys.path.insert(0, _backend_root)

from agents.utils import LLMResponse  # noqa: E402
from events.bus import EventBus, reset_event_bus  # noqa: E402
from models.schemas import AgentResult, DecompositionUnit, UnitRole  # noqa: E402
from sandbox.docker_sandbox import CommandResult, SandboxHandle  # noqa: E402
from state.task_state import TaskStateManager  # noqa: E402

requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed")

# ---------------------------------------------------------------------------
# Event Bus
# ---------------------------------------------------------------------------


@pytest.fixture()
def event_bus() -> EventBus:
    """Return a fresh EventBus instance for each test."""
    reset_event_bus()
    return EventBus()


# ---------------------------------------------------------------------------
# Process liveness and state
# ---------------------------------------------------------------------------


class FakeProcessChecker:
    """ProcessChecker answering from a fixed set of live pids."""

    def __init__(self, alive: set[int] | None = None) -> None:
        self.alive = set(alive or ())
        self.checked: list[int] = []

    def is_running(self, pid: int) -> bool:
        self.checked.append(pid)
        return pid in self.alive


@pytest.fixture()
def process_checker() -> FakeProcessChecker:
    return FakeProcessChecker()


@pytest.fixture()
def state_manager(tmp_path: Path, process_checker: FakeProcessChecker) -> TaskStateManager:
    """TaskStateManager rooted in a temporary directory."""
    return TaskStateManager(tasks_dir=tmp_path / "tasks", process_checker=process_checker)


# ---------------------------------------------------------------------------
# Mock Sandbox Manager
# ---------------------------------------------------------------------------


def _make_mock_sandbox_manager() -> MagicMock:
    """Create a mock SandboxManager.

    Async methods are AsyncMock; each ``create`` returns a distinct handle
    named after the SandboxSpec. Callers can override return values per-test.
    """
    mgr = MagicMock()

    async def _create(spec: Any) -> SandboxHandle:
        return SandboxHandle(sandbox_id=spec.name, container_id=f"container_{spec.name}")

    mgr.create = AsyncMock(side_effect=_create)
    mgr.exec = AsyncMock(return_value=CommandResult(stdout="OK", stderr="", exit_code=0))
    mgr.stop = AsyncMock()
    mgr.remove = AsyncMock()
    mgr.remove_blocking = MagicMock()
    mgr.cleanup_orphaned = AsyncMock(return_value=0)
    mgr.is_docker_available = MagicMock(return_value=True)
    return mgr


@pytest.fixture()
def mock_sandbox_manager() -> MagicMock:
    """Provide a mock SandboxManager for each test."""
    return _make_mock_sandbox_manager()


# ---------------------------------------------------------------------------
# Mock Git Manager
# ---------------------------------------------------------------------------


def _make_mock_git() -> MagicMock:
    git = MagicMock()
    git.is_repository = AsyncMock(return_value=True)
    git.add_worktree = AsyncMock(side_effect=lambda repo, path, branch, base=None: Path(path))
    git.remove_worktree = AsyncMock()
    git.commit_all = AsyncMock(return_value=[])
    git.checkout = AsyncMock()
    git.merge = AsyncMock()
    git.abort_merge = AsyncMock()
    git.delete_branch = AsyncMock()
    git.branch_exists = AsyncMock(return_value=False)
    git.pull = AsyncMock()
    git.run = AsyncMock()
    git.get_diff = AsyncMock(return_value="")
    return git


@pytest.fixture()
def mock_git() -> MagicMock:
    """Provide a mock GitManager for each test."""
    return _make_mock_git()


# ---------------------------------------------------------------------------
# Mock Agent Worker
# ---------------------------------------------------------------------------


class ScriptedWorker:
    """Agent worker returning scripted results keyed by subtask id.

    A value may be an AgentResult or an exception to raise. Subtasks
    without an entry succeed with the ``default`` result.
    """

    def __init__(
        self,
        results: dict[str, AgentResult | Exception] | None = None,
        default: AgentResult | None = None,
    ) -> None:
        self.results = dict(results or {})
        self.default = default or AgentResult(success=True, cost=0.1, duration_ms=1000)
        self.calls: list[Any] = []

    async def invoke(self, sandbox: SandboxHandle, payload: Any) -> AgentResult:
        self.calls.append((sandbox, payload))
        outcome = self.results.get(payload.subtask_id, self.default)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


@pytest.fixture()
def worker() -> ScriptedWorker:
    return ScriptedWorker()


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------


def make_unit(
    files: list[str] | None = None,
    role: UnitRole = UnitRole.CODER,
    description: str = "Implement part",
    dependencies: list[int] | None = None,
) -> DecompositionUnit:
    """Create a DecompositionUnit with sensible defaults."""
    return DecompositionUnit(
        role=role,
        description=description,
        files=files or [],
        dependencies=dependencies or [],
    )


def make_part(
    files: list[str],
    role: str = "coder",
    description: str = "Implement part",
    dependencies: list[Any] | None = None,
) -> dict[str, Any]:
    """Create a raw planner part as it appears in the JSON payload."""
    return {
        "role": role,
        "description": description,
        "files": files,
        "dependencies": dependencies or [],
    }


def make_analysis_payload(
    parts: list[dict[str, Any]],
    complexity: Any = 7,
    can_parallelize: Any = True,
    reasoning: str = "Independent endpoints",
) -> dict[str, Any]:
    """Create a raw planner analysis payload."""
    return {
        "complexity": complexity,
        "canParallelize": can_parallelize,
        "reasoning": reasoning,
        "parts": parts,
    }


def make_llm_response(content: str = "", cost: float = 0.0) -> LLMResponse:
    """Create an LLMResponse with sensible defaults."""
    return LLMResponse(content=content, model="mock", input_tokens=10, output_tokens=20, cost=cost)


# ---------------------------------------------------------------------------
# Git repositories
# ---------------------------------------------------------------------------


def _git(path: Path, *args: str) -> str:
    return subprocess.run(
        ["git", "-c", "user.name=test", "-c", "user.email=test@localhost", *args],
        cwd=path,
        check=True,
        capture_output=True,
        text=True,
    ).stdout


@pytest.fixture()
def git_repo(tmp_path: Path) -> Path:
    """A git repository on ``main`` with one commit."""
    if shutil.which("git") is None:
        pytest.skip("git is not installed")
    repo = tmp_path / "repo"
    repo.mkdir()
    _git(repo, "init", "-q")
    _git(repo, "checkout", "-q", "-b", "main")
    (repo / "README.md").write_text("# project\n")
    (repo / "common.js").write_text("module.exports = {};\n")
    _git(repo, "add", "-A")
    _git(repo, "commit", "-q", "-m", "initial")
    return repo


def commit_on_branch(repo: Path, branch: str, files: dict[str, str], base: str = "main") -> None:
    """Create ``branch`` from ``base`` with one commit writing ``files``."""
    _git(repo, "checkout", "-q", "-b", branch, base)
    for name, content in files.items():
        target = repo / name
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content)
    _git(repo, "add", "-A")
    _git(repo, "commit", "-q", "-m", f"work on {branch}")
    _git(repo, "checkout", "-q", base)
