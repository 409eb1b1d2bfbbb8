"""Event type definitions for task progress reporting.

Every stage transition, unit status change and merge outcome produces an
event so that an outer CLI or daemon can render live progress.
"""

import time
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


class EventType(StrEnum):
    """All event types published by the engine.

    Events are categorized by:
    - Task lifecycle: start, stage changes and terminal states
    - Units: per-unit status changes and periodic progress snapshots
    - Integration: merge and test outcomes
    """

    # Task lifecycle
    TASK_STARTED = "task_started"
    STAGE_CHANGED = "stage_changed"
    TASK_COMPLETE = "task_complete"
    TASK_FAILED = "task_failed"
    TASK_INTERRUPTED = "task_interrupted"
    TASK_CLOSED = "task_closed"

    # Decomposition and units
    DECOMPOSITION_COMPLETE = "decomposition_complete"
    UNIT_STATUS_CHANGED = "unit_status_changed"
    PROGRESS_UPDATE = "progress_update"

    # Integration
    BRANCH_MERGED = "branch_merged"
    MERGE_CONFLICT = "merge_conflict"
    TESTS_COMPLETE = "tests_complete"


class TaskEvent(BaseModel):
    """An event emitted while a task executes.

    Payload schemas by event type:

    STAGE_CHANGED:
        - stage: str - The stage being entered
        - percent: int - Progress after the transition

    DECOMPOSITION_COMPLETE:
        - can_parallelize: bool
        - unit_count: int
        - reasoning: str

    UNIT_STATUS_CHANGED:
        - status: str - New subtask status
        - branch: str - Unit branch name

    PROGRESS_UPDATE:
        - counts: dict[str, int] - Units per status
        - elapsed_seconds: float

    BRANCH_MERGED / MERGE_CONFLICT:
        - branch: str
        - files: list[str] - Conflicting files (conflict only)

    TESTS_COMPLETE:
        - passed: bool
        - exit_code: int
    """

    type: EventType
    timestamp: float = Field(default_factory=time.time)
    task_id: str
    subtask_id: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)
