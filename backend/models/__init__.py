"""Models module for Pydantic schemas.

This module exposes the task, subtask and decomposition models shared by
the orchestration engine.
"""

from models.schemas import (
    TERMINAL_TASK_STATUSES,
    AgentResult,
    DecompositionAnalysis,
    DecompositionUnit,
    ExecutionMode,
    FileConflict,
    MergeConflict,
    ProjectConfig,
    ProjectTestResult,
    SubtaskState,
    SubtaskStatus,
    TaskProgress,
    TaskStage,
    TaskState,
    TaskStatus,
    UnitRole,
    dump_document,
)

__all__ = [
    "TERMINAL_TASK_STATUSES",
    "AgentResult",
    "DecompositionAnalysis",
    "DecompositionUnit",
    "ExecutionMode",
    "FileConflict",
    "MergeConflict",
    "ProjectConfig",
    "ProjectTestResult",
    "SubtaskState",
    "SubtaskStatus",
    "TaskProgress",
    "TaskStage",
    "TaskState",
    "TaskStatus",
    "UnitRole",
    "dump_document",
]
