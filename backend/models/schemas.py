"""Pydantic schemas for persisted task state and decomposition results.

This module defines the data models that flow between the orchestrator,
the decomposer, the parallel manager and the durable state store.
All models use Pydantic v2; documents written to disk are produced with
``model_dump(mode="json")``.
"""

from datetime import datetime
from enum import StrEnum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class TaskStatus(StrEnum):
    """Task lifecycle status."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    INTERRUPTED = "interrupted"


TERMINAL_TASK_STATUSES = frozenset(
    {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.INTERRUPTED}
)


class SubtaskStatus(StrEnum):
    """Per-unit status as mirrored into durable state."""

    PENDING = "pending"
    RUNNING = "running"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"


class UnitRole(StrEnum):
    """Closed set of roles a decomposed unit may take."""

    CODER = "coder"
    TESTER = "tester"
    DOCUMENTER = "documenter"


class TaskStage(StrEnum):
    """Pipeline stages, in execution order."""

    SETUP = "setup"
    DECOMPOSITION = "decomposition"
    EXECUTION = "execution"
    MERGE = "merge"
    TESTING = "testing"


class ExecutionMode(StrEnum):
    """How the task's work was dispatched."""

    PARALLEL = "parallel"
    SEQUENTIAL = "sequential"


class ProjectConfig(BaseModel):
    """Per-project configuration supplied by the caller.

    Sandbox fields left as None fall back to the global settings.
    """

    name: str = Field(min_length=1, description="Project identifier used to group tasks")
    repo_path: Path = Field(description="Path to the project's git repository")
    base_branch: str = Field(default="main", description="Branch new task branches start from")
    test_command: str | None = Field(
        default=None,
        description="Command run inside the task sandbox after the merge",
        examples=["npm test", "pytest -q"],
    )
    allow_parallel: bool = Field(
        default=True,
        description="If False, decomposition is skipped and work runs sequentially",
    )
    pull_latest: bool = Field(
        default=False,
        description="Pull the base branch from its upstream before branching",
    )
    sandbox_image: str | None = None
    sandbox_memory: str | None = Field(default=None, pattern=r"^\d+[bkmgBKMG]$")
    sandbox_cpus: float | None = Field(default=None, gt=0)
    sandbox_network_mode: str | None = None


class TaskProgress(BaseModel):
    """Coarse progress derived from stage weights."""

    percent: int = Field(default=0, ge=0, le=100)
    eta_seconds: int | None = Field(default=None, ge=0)


class ProjectTestResult(BaseModel):
    """Outcome of the project test command run after execution."""

    command: str
    passed: bool
    exit_code: int
    output: str = ""
    timed_out: bool = False


class AgentResult(BaseModel):
    """Result returned by an agent worker invocation."""

    success: bool
    changes: list[str] = Field(default_factory=list)
    cost: float = Field(default=0.0, ge=0.0)
    duration_ms: int = Field(default=0, ge=0)
    output: str = Field(default="", description="Final agent message, truncated")
    error: str | None = None


class MergeConflict(BaseModel):
    """A unit branch that could not be merged cleanly."""

    branch: str
    unit_id: str
    conflicting_files: list[str] = Field(default_factory=list)
    message: str


class TaskState(BaseModel):
    """Durable task document.

    Stored as ``<tasks_dir>/<task_id>/state.json``.
    """

    model_config = ConfigDict(extra="allow")

    task_id: str
    description: str
    project: str
    project_config: ProjectConfig | None = None
    status: TaskStatus = TaskStatus.PENDING
    started_at: datetime | None = None
    completed_at: datetime | None = None
    updated_at: datetime | None = None
    current_stage: TaskStage | None = None
    completed_stages: list[TaskStage] = Field(default_factory=list)
    progress: TaskProgress = Field(default_factory=TaskProgress)
    cost: float = 0.0
    duration_ms: int | None = None
    pid: int | None = Field(default=None, description="Owning process id")
    branch_name: str | None = None
    base_branch: str | None = None
    execution_mode: ExecutionMode | None = None
    reasoning: str | None = None
    subtask_ids: list[str] = Field(default_factory=list)
    conflicts: list[MergeConflict] = Field(default_factory=list)
    test_results: ProjectTestResult | None = None
    error: str | None = None
    attempt: int = Field(default=1, ge=1)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_TASK_STATUSES


class SubtaskState(BaseModel):
    """Durable per-unit document.

    Stored as ``<tasks_dir>/<task_id>/subtasks/<subtask_id>.json``.
    """

    model_config = ConfigDict(extra="allow")

    subtask_id: str
    parent_task_id: str
    unit_index: int = Field(ge=1, description="1-based position in the decomposition")
    role: UnitRole
    description: str
    files: list[str] = Field(default_factory=list)
    dependencies: list[int] = Field(default_factory=list)
    status: SubtaskStatus = SubtaskStatus.PENDING
    branch_name: str | None = None
    sandbox_id: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    updated_at: datetime | None = None
    result: AgentResult | None = None
    error: str | None = None


class DecompositionUnit(BaseModel):
    """One independently executable slice of a decomposed task."""

    role: UnitRole
    description: str = Field(min_length=1)
    files: list[str] = Field(default_factory=list)
    dependencies: list[int] = Field(
        default_factory=list,
        description="0-based indices of units that must run first",
    )


class DecompositionAnalysis(BaseModel):
    """Validated outcome of task analysis.

    ``can_parallelize`` is True only for decompositions that passed every
    validation rule; otherwise ``units`` is empty and ``reasoning`` explains
    why execution falls back to a single sequential agent.
    """

    can_parallelize: bool
    complexity_score: int = Field(ge=0)
    reasoning: str = Field(min_length=1)
    units: list[DecompositionUnit] = Field(default_factory=list)

    @classmethod
    def fallback(cls, reasoning: str, complexity_score: int = 5) -> "DecompositionAnalysis":
        """Build the conservative sequential analysis."""
        return cls(
            can_parallelize=False,
            complexity_score=complexity_score,
            reasoning=reasoning,
            units=[],
        )


class FileConflict(BaseModel):
    """Two units declaring the same file (indices are 1-based)."""

    file: str
    units: tuple[int, int]


def dump_document(model: BaseModel) -> dict[str, Any]:
    """Serialize a model into a JSON-compatible document."""
    return model.model_dump(mode="json")
