"""Durable, crash-safe task state.

Task documents live in a directory tree keyed by task id::

    <tasks_dir>/<task_id>/state.json
    <tasks_dir>/<task_id>/subtasks/<subtask_id>.json

Every write goes to a temporary file in the same directory followed by
``os.replace``, so a crash mid-write never leaves a truncated document.
On startup ``sync_task_states`` reconciles persisted "running" tasks
against real process liveness.
"""

import asyncio
import json
import os
import shutil
import tempfile
from collections.abc import Iterable, Mapping
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any, Protocol

import structlog

from config import settings
from models.schemas import (
    TERMINAL_TASK_STATUSES,
    SubtaskStatus,
    TaskStage,
    TaskStatus,
)

logger = structlog.get_logger()

STATE_FILENAME = "state.json"
SUBTASKS_DIRNAME = "subtasks"

# Share of overall progress contributed by each stage; sums to 100.
STAGE_WEIGHTS: dict[str, int] = {
    TaskStage.SETUP: 10,
    TaskStage.DECOMPOSITION: 10,
    TaskStage.EXECUTION: 55,
    TaskStage.MERGE: 10,
    TaskStage.TESTING: 15,
}

# Typical stage durations in seconds, used for the ETA estimate.
STAGE_AVERAGE_SECONDS: dict[str, int] = {
    TaskStage.SETUP: 15,
    TaskStage.DECOMPOSITION: 30,
    TaskStage.EXECUTION: 300,
    TaskStage.MERGE: 15,
    TaskStage.TESTING: 60,
}

STAGE_ORDER: list[str] = list(TaskStage)

_OPEN_SUBTASK_STATUSES = {
    SubtaskStatus.PENDING,
    SubtaskStatus.RUNNING,
    SubtaskStatus.EXECUTING,
}


class TaskNotFoundError(KeyError):
    """No persisted state exists for the requested task."""


class ProcessChecker(Protocol):
    """Answers whether an OS process is still alive."""

    def is_running(self, pid: int) -> bool: ...


class OsProcessChecker:
    """Liveness probe based on sending signal 0 to the pid."""

    def is_running(self, pid: int) -> bool:
        if pid <= 0:
            return False
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            # Exists but owned by another user
            return True
        except OSError:
            return False
        return True


def utc_now() -> datetime:
    return datetime.now(UTC)


def _iso_now() -> str:
    return utc_now().isoformat()


def parse_timestamp(value: Any) -> datetime | None:
    """Parse a persisted timestamp; naive values are taken as UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value))
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def _check_key(key: str) -> str:
    if not key or key in {".", ".."} or "/" in key or "\\" in key or "\x00" in key:
        raise ValueError(f"Invalid state key: {key!r}")
    return key


def _read_json(path: Path) -> dict[str, Any] | None:
    """Read a JSON document (blocking). Missing files yield None."""
    try:
        with path.open(encoding="utf-8") as f:
            data = json.load(f)
    except FileNotFoundError:
        return None
    if not isinstance(data, dict):
        raise ValueError(f"State document is not an object: {path}")
    return data


def _write_json_atomic(path: Path, data: Mapping[str, Any]) -> None:
    """Write a JSON document via temp file + rename (blocking)."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, default=str)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


class TaskStateManager:
    """Directory-backed store for task and subtask documents.

    Documents are plain JSON objects; callers typically produce them with
    ``dump_document(TaskState(...))``. Updates are shallow merges stamped
    with ``updated_at``. Read-modify-write cycles within this process are
    serialized by an asyncio.Lock.

    Attributes:
        tasks_dir: Root of the state tree.
        process_checker: Liveness probe used during reconciliation.
    """

    def __init__(
        self,
        tasks_dir: str | Path | None = None,
        process_checker: ProcessChecker | None = None,
    ) -> None:
        self.tasks_dir = Path(tasks_dir) if tasks_dir is not None else settings.tasks_dir
        self.process_checker = process_checker or OsProcessChecker()
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Paths and blocking I/O
    # ------------------------------------------------------------------

    def task_dir(self, task_id: str) -> Path:
        return self.tasks_dir / _check_key(task_id)

    def _state_path(self, task_id: str) -> Path:
        return self.task_dir(task_id) / STATE_FILENAME

    def _subtask_path(self, task_id: str, subtask_id: str) -> Path:
        return self.task_dir(task_id) / SUBTASKS_DIRNAME / f"{_check_key(subtask_id)}.json"

    async def _read(self, path: Path) -> dict[str, Any] | None:
        return await asyncio.get_running_loop().run_in_executor(None, _read_json, path)

    async def _write(self, path: Path, data: Mapping[str, Any]) -> None:
        await asyncio.get_running_loop().run_in_executor(None, _write_json_atomic, path, data)

    # ------------------------------------------------------------------
    # Task documents
    # ------------------------------------------------------------------

    async def save_task_state(self, task_id: str, state: Mapping[str, Any]) -> dict[str, Any]:
        """Persist a full task document, replacing any previous one."""
        document = {**state, "task_id": task_id, "updated_at": _iso_now()}
        async with self._lock:
            await self._write(self._state_path(task_id), document)
        logger.debug("task_state_saved", task_id=task_id, status=document.get("status"))
        return document

    async def load_task_state(self, task_id: str) -> dict[str, Any] | None:
        return await self._read(self._state_path(task_id))

    async def update_task_state(self, task_id: str, patch: Mapping[str, Any]) -> dict[str, Any]:
        """Shallow-merge ``patch`` into the stored document.

        Raises:
            TaskNotFoundError: If the task has no persisted state.
        """
        path = self._state_path(task_id)
        async with self._lock:
            current = await self._read(path)
            if current is None:
                raise TaskNotFoundError(task_id)
            document = {**current, **patch, "updated_at": _iso_now()}
            await self._write(path, document)
        return document

    async def delete_task_state(self, task_id: str) -> bool:
        """Remove a task directory, subtasks included."""
        path = self.task_dir(task_id)
        if not path.exists():
            return False
        await asyncio.get_running_loop().run_in_executor(None, shutil.rmtree, path)
        logger.info("task_state_deleted", task_id=task_id)
        return True

    async def get_all_tasks(self) -> list[dict[str, Any]]:
        """All persisted tasks, newest start first.

        Unreadable documents are skipped with a warning.
        """
        if not self.tasks_dir.exists():
            return []

        tasks: list[dict[str, Any]] = []
        for entry in sorted(self.tasks_dir.iterdir()):
            if not entry.is_dir():
                continue
            try:
                document = await self._read(entry / STATE_FILENAME)
            except (ValueError, OSError) as e:
                logger.warning("task_state_unreadable", task_dir=str(entry), error=str(e))
                continue
            if document is not None:
                tasks.append(document)

        oldest = datetime.min.replace(tzinfo=UTC)
        tasks.sort(key=lambda t: parse_timestamp(t.get("started_at")) or oldest, reverse=True)
        return tasks

    async def get_running_tasks(self) -> list[dict[str, Any]]:
        return [t for t in await self.get_all_tasks() if t.get("status") == TaskStatus.RUNNING]

    async def get_project_tasks(
        self,
        project: str,
        status: TaskStatus | str | None = None,
    ) -> list[dict[str, Any]]:
        return [
            t
            for t in await self.get_all_tasks()
            if t.get("project") == project and (status is None or t.get("status") == status)
        ]

    # ------------------------------------------------------------------
    # Reconciliation and retention
    # ------------------------------------------------------------------

    def is_process_running(self, pid: int | None) -> bool:
        if pid is None:
            return False
        try:
            return self.process_checker.is_running(int(pid))
        except (TypeError, ValueError):
            return False

    async def sync_task_states(self) -> list[str]:
        """Mark running tasks whose owning process died as interrupted.

        A running task without a recorded owner is treated as orphaned.

        Returns:
            Ids of the tasks that were transitioned.
        """
        interrupted: list[str] = []
        for task in await self.get_running_tasks():
            task_id = task["task_id"]
            pid = task.get("pid")
            if self.is_process_running(pid):
                continue

            now = _iso_now()
            await self.update_task_state(
                task_id,
                {
                    "status": TaskStatus.INTERRUPTED.value,
                    "error": f"Owning process {pid} is no longer running; task was interrupted",
                    "completed_at": now,
                },
            )
            for subtask in await self.get_subtasks(task_id):
                if subtask.get("status") in _OPEN_SUBTASK_STATUSES:
                    await self.update_subtask_state(
                        task_id,
                        subtask["subtask_id"],
                        {
                            "status": SubtaskStatus.FAILED.value,
                            "error": "Interrupted before completion",
                            "completed_at": now,
                        },
                    )
            interrupted.append(task_id)
            logger.warning("task_marked_interrupted", task_id=task_id, pid=pid)

        if interrupted:
            logger.info("task_states_synced", interrupted=len(interrupted))
        return interrupted

    async def cleanup_old_tasks(self, retention_days: int | None = None) -> list[str]:
        """Delete terminal tasks that finished before the retention cutoff.

        Non-terminal tasks are never deleted, whatever their age.

        Returns:
            Ids of the deleted tasks.
        """
        days = retention_days if retention_days is not None else settings.task_retention_days
        cutoff = utc_now() - timedelta(days=days)
        deleted: list[str] = []

        for task in await self.get_all_tasks():
            if task.get("status") not in TERMINAL_TASK_STATUSES:
                continue
            if task.get("pid") is not None and self.is_process_running(task.get("pid")):
                continue
            finished = parse_timestamp(task.get("completed_at")) or parse_timestamp(
                task.get("started_at")
            )
            if finished is None or finished >= cutoff:
                continue
            if await self.delete_task_state(task["task_id"]):
                deleted.append(task["task_id"])

        if deleted:
            logger.info("old_tasks_cleaned", count=len(deleted), retention_days=days)
        return deleted

    # ------------------------------------------------------------------
    # Subtask documents
    # ------------------------------------------------------------------

    async def save_subtask_state(
        self,
        task_id: str,
        subtask_id: str,
        state: Mapping[str, Any],
    ) -> dict[str, Any]:
        document = {
            **state,
            "subtask_id": subtask_id,
            "parent_task_id": task_id,
            "updated_at": _iso_now(),
        }
        async with self._lock:
            await self._write(self._subtask_path(task_id, subtask_id), document)
        return document

    async def load_subtask_state(self, task_id: str, subtask_id: str) -> dict[str, Any] | None:
        return await self._read(self._subtask_path(task_id, subtask_id))

    async def update_subtask_state(
        self,
        task_id: str,
        subtask_id: str,
        patch: Mapping[str, Any],
    ) -> dict[str, Any]:
        """Shallow-merge ``patch`` into a subtask document.

        Raises:
            TaskNotFoundError: If the subtask has no persisted state.
        """
        path = self._subtask_path(task_id, subtask_id)
        async with self._lock:
            current = await self._read(path)
            if current is None:
                raise TaskNotFoundError(f"{task_id}/{subtask_id}")
            document = {**current, **patch, "updated_at": _iso_now()}
            await self._write(path, document)
        return document

    async def get_subtasks(self, task_id: str) -> list[dict[str, Any]]:
        """Subtasks of a task, earliest start first.

        Unreadable documents are skipped with a warning.
        """
        directory = self.task_dir(task_id) / SUBTASKS_DIRNAME
        if not directory.exists():
            return []
        subtasks: list[dict[str, Any]] = []
        for path in sorted(directory.glob("*.json")):
            try:
                document = await self._read(path)
            except (ValueError, OSError) as e:
                logger.warning(
                    "subtask_state_unreadable", task_id=task_id, path=str(path), error=str(e)
                )
                continue
            if document is not None:
                subtasks.append(document)
        latest = datetime.max.replace(tzinfo=UTC)
        subtasks.sort(key=lambda s: parse_timestamp(s.get("started_at")) or latest)
        return subtasks

    # ------------------------------------------------------------------
    # Progress
    # ------------------------------------------------------------------

    @staticmethod
    def calculate_progress(
        current_stage: str | None,
        completed_stages: Iterable[str] = (),
    ) -> int:
        """Percent complete from stage weights; the current stage counts half."""
        done = set(completed_stages)
        total = sum(STAGE_WEIGHTS.get(stage, 0) for stage in done)
        if current_stage and current_stage not in done:
            total += STAGE_WEIGHTS.get(current_stage, 0) / 2
        return min(100, int(total))

    @staticmethod
    def estimate_eta(
        current_stage: str | None,
        completed_stages: Iterable[str] = (),
    ) -> int:
        """Seconds remaining from average stage durations; the current stage counts half."""
        done = set(completed_stages)
        remaining = 0.0
        for stage in STAGE_ORDER:
            if stage in done:
                continue
            average = STAGE_AVERAGE_SECONDS[stage]
            remaining += average / 2 if stage == current_stage else average
        return int(remaining)

    @staticmethod
    def format_task_summary(task: Mapping[str, Any]) -> str:
        """One-line human-readable status of a task document."""
        progress = task.get("progress") or {}
        description = str(task.get("description", ""))
        if len(description) > 60:
            description = description[:57] + "..."
        parts = [
            f"{task.get('task_id', '?')} [{task.get('status', 'unknown')}]",
            f"{task.get('project', '?')}: {description}",
            f"{progress.get('percent', 0)}%",
        ]
        stage = task.get("current_stage")
        if stage and task.get("status") == TaskStatus.RUNNING:
            parts.append(f"stage={stage}")
        cost = task.get("cost")
        if cost:
            parts.append(f"${float(cost):.2f}")
        if task.get("error"):
            parts.append(f"error: {task['error']}")
        return " | ".join(parts)
