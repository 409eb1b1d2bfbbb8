"""Async wrapper around the git command line.

GitManager implements the version-control operations the engine needs:
branches and worktrees for isolated unit working copies, no-fast-forward
merges that report conflicts as values, and read-only diff/status/log.
Commands run through ``asyncio.create_subprocess_exec`` so concurrent units
never block the event loop.
"""

import asyncio
import os
from dataclasses import dataclass, field
from pathlib import Path

import structlog

from config import settings

logger = structlog.get_logger()

CONFLICT_MARKERS = ("CONFLICT", "Automatic merge failed")


class GitCommandError(RuntimeError):
    """A git invocation exited with a non-zero status."""

    def __init__(self, args: list[str], returncode: int, stdout: str, stderr: str) -> None:
        self.git_args = args
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        detail = (stderr or stdout).strip()
        super().__init__(f"git {' '.join(args)} failed with exit code {returncode}: {detail}")


@dataclass
class GitResult:
    """Captured output of one git invocation."""

    stdout: str
    stderr: str
    returncode: int


@dataclass
class MergeOutcome:
    """Result of merging one branch.

    Attributes:
        success: True if the merge commit was created.
        conflicted_files: Paths left unmerged when ``success`` is False.
        output: Combined git output, useful for conflict messages.
    """

    success: bool
    conflicted_files: list[str] = field(default_factory=list)
    output: str = ""


class GitManager:
    """Runs git commands against local repositories and worktrees.

    Operations that mutate shared refs or worktree metadata of a repository
    (branch and worktree creation/removal) are serialized through an
    asyncio.Lock, since concurrent units would otherwise race on git's own
    lock files.

    Attributes:
        author_name: Identity used for commits made by the engine.
        author_email: Identity used for commits made by the engine.
        git_binary: Executable to run.
    """

    def __init__(
        self,
        author_name: str | None = None,
        author_email: str | None = None,
        git_binary: str = "git",
    ) -> None:
        self.author_name = author_name or settings.git_author_name
        self.author_email = author_email or settings.git_author_email
        self.git_binary = git_binary
        self._ref_lock = asyncio.Lock()

    def _base_args(self) -> list[str]:
        return [
            "-c", f"user.name={self.author_name}",
            "-c", f"user.email={self.author_email}",
            "-c", "commit.gpgsign=false",
        ]

    async def run(self, path: str | Path, *args: str, check: bool = True) -> GitResult:
        """Run ``git <args>`` in ``path``.

        Args:
            path: Working directory (repository or worktree).
            *args: Git arguments.
            check: Raise GitCommandError on a non-zero exit status.

        Returns:
            The captured GitResult.
        """
        env = {**os.environ, "GIT_TERMINAL_PROMPT": "0", "LC_ALL": "C"}
        process = await asyncio.create_subprocess_exec(
            self.git_binary,
            *self._base_args(),
            *args,
            cwd=str(path),
            env=env,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout_bytes, stderr_bytes = await process.communicate()
        result = GitResult(
            stdout=stdout_bytes.decode("utf-8", errors="replace"),
            stderr=stderr_bytes.decode("utf-8", errors="replace"),
            returncode=process.returncode if process.returncode is not None else -1,
        )
        logger.debug("git_command", args=list(args), cwd=str(path), returncode=result.returncode)
        if check and result.returncode != 0:
            raise GitCommandError(list(args), result.returncode, result.stdout, result.stderr)
        return result

    async def is_repository(self, path: str | Path) -> bool:
        if not Path(path).is_dir():
            return False
        result = await self.run(path, "rev-parse", "--is-inside-work-tree", check=False)
        return result.returncode == 0 and result.stdout.strip() == "true"

    async def current_branch(self, path: str | Path) -> str:
        result = await self.run(path, "rev-parse", "--abbrev-ref", "HEAD")
        return result.stdout.strip()

    async def branch_exists(self, path: str | Path, name: str) -> bool:
        result = await self.run(
            path, "rev-parse", "--verify", "--quiet", f"refs/heads/{name}", check=False
        )
        return result.returncode == 0

    async def checkout(self, path: str | Path, branch: str) -> None:
        await self.run(path, "checkout", branch)

    async def create_branch(self, path: str | Path, name: str, base: str) -> None:
        """Create branch ``name`` at ``base`` without checking it out."""
        async with self._ref_lock:
            await self.run(path, "branch", name, base)
        logger.info("branch_created", branch=name, base=base)

    async def delete_branch(self, path: str | Path, name: str, force: bool = False) -> None:
        async with self._ref_lock:
            await self.run(path, "branch", "-D" if force else "-d", name)
        logger.info("branch_deleted", branch=name, force=force)

    async def add_worktree(
        self,
        repo_path: str | Path,
        worktree_path: str | Path,
        branch: str,
        base: str | None = None,
    ) -> Path:
        """Create a worktree at ``worktree_path`` checked out on ``branch``.

        When ``base`` is given, ``branch`` is created from it; otherwise the
        existing branch is checked out.
        """
        target = Path(worktree_path)
        target.parent.mkdir(parents=True, exist_ok=True)
        args = ["worktree", "add"]
        if base is not None:
            args += ["-b", branch, str(target), base]
        else:
            args += [str(target), branch]
        async with self._ref_lock:
            await self.run(repo_path, *args)
        logger.info("worktree_added", path=str(target), branch=branch, base=base)
        return target

    async def remove_worktree(self, repo_path: str | Path, worktree_path: str | Path) -> None:
        async with self._ref_lock:
            await self.run(repo_path, "worktree", "remove", "--force", str(worktree_path))
            await self.run(repo_path, "worktree", "prune", check=False)
        logger.info("worktree_removed", path=str(worktree_path))

    async def commit_all(self, path: str | Path, message: str) -> list[str]:
        """Stage everything in ``path`` and commit it.

        Returns:
            The committed file paths; empty when there was nothing to commit.
        """
        await self.run(path, "add", "-A")
        staged = await self.run(path, "diff", "--cached", "--name-only")
        files = [line for line in staged.stdout.splitlines() if line.strip()]
        if not files:
            return []
        await self.run(path, "commit", "-m", message)
        return files

    async def merge(
        self,
        path: str | Path,
        source_branch: str,
        no_ff: bool = True,
        message: str | None = None,
    ) -> MergeOutcome:
        """Merge ``source_branch`` into the branch checked out at ``path``.

        A conflicting merge is reported through ``MergeOutcome`` and left in
        progress; callers decide whether to abort.

        Raises:
            GitCommandError: If the merge fails for a reason other than conflicts.
        """
        args = ["merge"]
        if no_ff:
            args.append("--no-ff")
        args += ["-m", message or f"Merge {source_branch}", source_branch]
        result = await self.run(path, *args, check=False)
        output = f"{result.stdout}\n{result.stderr}".strip()
        if result.returncode == 0:
            return MergeOutcome(success=True, output=output)

        conflicted = await self.conflicted_files(path)
        if conflicted or any(marker in output for marker in CONFLICT_MARKERS):
            return MergeOutcome(success=False, conflicted_files=conflicted, output=output)

        raise GitCommandError(args, result.returncode, result.stdout, result.stderr)

    async def conflicted_files(self, path: str | Path) -> list[str]:
        result = await self.run(path, "diff", "--name-only", "--diff-filter=U", check=False)
        return [line for line in result.stdout.splitlines() if line.strip()]

    async def abort_merge(self, path: str | Path) -> None:
        await self.run(path, "merge", "--abort")

    async def pull(self, path: str | Path, branch: str, remote: str = "origin") -> None:
        """Fast-forward ``branch`` from ``remote``."""
        if await self.current_branch(path) == branch:
            await self.run(path, "pull", "--ff-only", remote, branch)
        else:
            await self.run(path, "fetch", remote, f"{branch}:{branch}")
        logger.info("branch_pulled", branch=branch, remote=remote)

    async def get_diff(
        self,
        path: str | Path,
        base: str,
        head: str,
        stat_only: bool = False,
    ) -> str:
        """Diff of ``head`` against its merge base with ``base``."""
        args = ["diff"]
        if stat_only:
            args.append("--stat")
        args.append(f"{base}...{head}")
        return (await self.run(path, *args)).stdout

    async def get_status(self, path: str | Path) -> str:
        return (await self.run(path, "status", "--porcelain")).stdout

    async def get_log(
        self, path: str | Path, revision_range: str, max_count: int = 50
    ) -> list[str]:
        result = await self.run(
            path, "log", "--oneline", f"--max-count={max_count}", revision_range
        )
        return [line for line in result.stdout.splitlines() if line.strip()]
