"""Version-control layer: git CLI wrapper and branch merging."""

from vcs.branch_merger import BranchMerger, MergeConflictError, MergeSummary, format_conflicts
from vcs.git_manager import GitCommandError, GitManager, MergeOutcome

__all__ = [
    "BranchMerger",
    "GitCommandError",
    "GitManager",
    "MergeConflictError",
    "MergeOutcome",
    "MergeSummary",
    "format_conflicts",
]
