"""Sequential integration of unit branches into a task branch.

Merges happen one at a time with ``--no-ff`` so that each unit's work stays
a distinguishable merge commit. Conflicts are never resolved automatically:
the merge is aborted, recorded, and the remaining branches are still tried.
"""

from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

import structlog

from events.bus import EventBus
from events.types import EventType, TaskEvent
from models.schemas import MergeConflict
from vcs.git_manager import GitManager

logger = structlog.get_logger()


class MergeableUnit(Protocol):
    """Anything carrying a unit branch and its subtask id."""

    subtask_id: str
    branch_name: str


class MergeConflictError(Exception):
    """One or more unit branches could not be merged cleanly.

    Attributes:
        conflicts: Every conflicting branch, in merge order.
        merged: Branches that were integrated before and after the conflicts.
    """

    def __init__(self, conflicts: list[MergeConflict], merged: list[str] | None = None) -> None:
        self.conflicts = conflicts
        self.merged = merged or []
        super().__init__(
            f"{len(conflicts)} branch(es) had merge conflicts: "
            + ", ".join(conflict.branch for conflict in conflicts)
        )


@dataclass
class MergeSummary:
    """Branches integrated by a conflict-free merge_all call."""

    target_branch: str
    merged: list[str] = field(default_factory=list)


class BranchMerger:
    """Integrates unit branches into a shared target branch.

    Attributes:
        git: Version-control collaborator.
        path: Working copy in which the target branch is checked out.
        task_id: Task the merges belong to, used for events.
    """

    def __init__(
        self,
        git: GitManager,
        path: str | Path,
        task_id: str | None = None,
        event_bus: EventBus | None = None,
    ) -> None:
        self.git = git
        self.path = Path(path)
        self.task_id = task_id
        self.event_bus = event_bus

    async def merge_all(
        self,
        target_branch: str,
        unit_results: Sequence[MergeableUnit],
    ) -> MergeSummary:
        """Merge every unit branch into ``target_branch``, one at a time.

        Args:
            target_branch: Branch receiving the merges.
            unit_results: Units whose branches should be merged, in order.

        Returns:
            MergeSummary listing the merged branches.

        Raises:
            MergeConflictError: After all merges were attempted, if any conflicted.
            GitCommandError: If git fails for a reason other than a conflict.
        """
        await self.git.checkout(self.path, target_branch)
        logger.info(
            "merge_started",
            task_id=self.task_id,
            target_branch=target_branch,
            branch_count=len(unit_results),
        )

        merged: list[str] = []
        conflicts: list[MergeConflict] = []

        for unit in unit_results:
            outcome = await self.git.merge(
                self.path,
                unit.branch_name,
                no_ff=True,
                message=f"Merge {unit.branch_name} into {target_branch}",
            )
            if outcome.success:
                merged.append(unit.branch_name)
                logger.info("branch_merged", task_id=self.task_id, branch=unit.branch_name)
                await self._publish(
                    EventType.BRANCH_MERGED, unit.subtask_id, branch=unit.branch_name
                )
                continue

            await self.git.abort_merge(self.path)
            conflict = MergeConflict(
                branch=unit.branch_name,
                unit_id=unit.subtask_id,
                conflicting_files=outcome.conflicted_files,
                message=_conflict_message(outcome.output, outcome.conflicted_files),
            )
            conflicts.append(conflict)
            logger.warning(
                "merge_conflict",
                task_id=self.task_id,
                branch=unit.branch_name,
                files=outcome.conflicted_files,
            )
            await self._publish(
                EventType.MERGE_CONFLICT,
                unit.subtask_id,
                branch=unit.branch_name,
                files=outcome.conflicted_files,
            )

        if conflicts:
            raise MergeConflictError(conflicts, merged)

        logger.info("merge_complete", task_id=self.task_id, merged=len(merged))
        return MergeSummary(target_branch=target_branch, merged=merged)

    async def cleanup_branches(self, branches: Sequence[str]) -> list[str]:
        """Force-delete unit branches, continuing past individual failures.

        Returns:
            The branches that were deleted.
        """
        deleted: list[str] = []
        for branch in branches:
            try:
                await self.git.delete_branch(self.path, branch, force=True)
                deleted.append(branch)
            except Exception as e:
                logger.warning("branch_cleanup_failed", branch=branch, error=str(e))
        return deleted

    async def _publish(self, event_type: EventType, subtask_id: str, **data: object) -> None:
        if self.event_bus and self.task_id:
            await self.event_bus.publish(
                TaskEvent(type=event_type, task_id=self.task_id, subtask_id=subtask_id, data=data)
            )


def _conflict_message(output: str, files: list[str]) -> str:
    for line in output.splitlines():
        if line.startswith("CONFLICT"):
            return line.strip()
    if files:
        return f"Merge conflict in {', '.join(files)}"
    return "Merge conflict"


def format_conflicts(conflicts: Sequence[MergeConflict]) -> str:
    """Render a conflict report grouped by branch with resolution guidance."""
    by_branch: dict[str, list[MergeConflict]] = {}
    for conflict in conflicts:
        by_branch.setdefault(conflict.branch, []).append(conflict)

    lines = [
        "MERGE CONFLICTS DETECTED",
        "",
        f"{len(by_branch)} branch(es) have conflicts that must be resolved manually:",
    ]
    for branch, entries in by_branch.items():
        lines.append("")
        lines.append(f"Branch: {branch}")
        lines.append(f"Subtask: {', '.join(entry.unit_id for entry in entries)}")
        files = sorted({path for entry in entries for path in entry.conflicting_files})
        if files:
            lines.append("Conflicted files:")
            lines.extend(f"  - {path}" for path in files)
        for entry in entries:
            lines.append(f"Details: {entry.message}")

    lines += [
        "",
        "To resolve:",
        "  1. Merge the listed branches manually and resolve the conflicts",
        "  2. Or run the task again with sequential execution",
        "  3. Or split the task so that units touch different files",
    ]
    return "\n".join(lines)
