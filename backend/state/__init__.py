"""Durable task state and crash reconciliation."""

from state.task_state import (
    OsProcessChecker,
    ProcessChecker,
    TaskNotFoundError,
    TaskStateManager,
)

__all__ = [
    "OsProcessChecker",
    "ProcessChecker",
    "TaskNotFoundError",
    "TaskStateManager",
]
