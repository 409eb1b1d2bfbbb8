"""Tests for vcs/git_manager.py against real repositories in tmp_path."""

from pathlib import Path

import pytest

from vcs.git_manager import GitCommandError, GitManager
from tests.conftest import commit_on_branch, requires_git


@pytest.fixture()
def git() -> GitManager:
    return GitManager(author_name="engine", author_email="engine@localhost")


@requires_git
class TestBasics:
    async def test_is_repository(self, git: GitManager, git_repo: Path, tmp_path: Path) -> None:
        assert await git.is_repository(git_repo) is True
        assert await git.is_repository(tmp_path / "missing") is False
        plain = tmp_path / "plain"
        plain.mkdir()
        assert await git.is_repository(plain) is False

    async def test_current_branch(self, git: GitManager, git_repo: Path) -> None:
        assert await git.current_branch(git_repo) == "main"

    async def test_create_and_delete_branch(self, git: GitManager, git_repo: Path) -> None:
        await git.create_branch(git_repo, "agent/t1", "main")
        assert await git.branch_exists(git_repo, "agent/t1")
        assert await git.current_branch(git_repo) == "main"

        await git.delete_branch(git_repo, "agent/t1")
        assert not await git.branch_exists(git_repo, "agent/t1")

    async def test_failed_command_raises(self, git: GitManager, git_repo: Path) -> None:
        with pytest.raises(GitCommandError) as exc_info:
            await git.checkout(git_repo, "does-not-exist")
        assert exc_info.value.returncode != 0
        assert exc_info.value.git_args == ["checkout", "does-not-exist"]

    async def test_unchecked_command_returns_result(self, git: GitManager, git_repo: Path) -> None:
        result = await git.run(git_repo, "rev-parse", "--verify", "nope", check=False)
        assert result.returncode != 0


@requires_git
class TestWorktrees:
    async def test_worktree_commit_and_remove(
        self, git: GitManager, git_repo: Path, tmp_path: Path
    ) -> None:
        worktree = tmp_path / "worktrees" / "t1" / "unit1"
        await git.add_worktree(git_repo, worktree, "agent/t1-unit1", base="main")
        assert (worktree / "README.md").exists()
        assert await git.current_branch(worktree) == "agent/t1-unit1"

        (worktree / "users.js").write_text("users\n")
        committed = await git.commit_all(worktree, "coder: add users")
        assert committed == ["users.js"]

        await git.remove_worktree(git_repo, worktree)
        assert not worktree.exists()
        assert await git.branch_exists(git_repo, "agent/t1-unit1")
        log = await git.get_log(git_repo, "main..agent/t1-unit1")
        assert len(log) == 1
        assert log[0].endswith("coder: add users")

    async def test_commit_all_with_nothing_to_commit(
        self, git: GitManager, git_repo: Path
    ) -> None:
        assert await git.commit_all(git_repo, "empty") == []

    async def test_commit_uses_engine_identity(self, git: GitManager, git_repo: Path) -> None:
        (git_repo / "new.txt").write_text("x\n")
        await git.commit_all(git_repo, "add new")
        author = await git.run(git_repo, "log", "-1", "--format=%an <%ae>")
        assert author.stdout.strip() == "engine <engine@localhost>"


@requires_git
class TestMergeAndDiff:
    async def test_clean_merge(self, git: GitManager, git_repo: Path) -> None:
        commit_on_branch(git_repo, "feature", {"feature.js": "f\n"})
        outcome = await git.merge(git_repo, "feature", message="Merge feature into main")
        assert outcome.success is True
        parents = await git.run(git_repo, "log", "-1", "--format=%P")
        assert len(parents.stdout.split()) == 2

    async def test_conflicting_merge_reported(self, git: GitManager, git_repo: Path) -> None:
        commit_on_branch(git_repo, "one", {"common.js": "one\n"})
        commit_on_branch(git_repo, "two", {"common.js": "two\n"})
        assert (await git.merge(git_repo, "one")).success

        outcome = await git.merge(git_repo, "two")
        assert outcome.success is False
        assert outcome.conflicted_files == ["common.js"]
        assert "CONFLICT" in outcome.output

        await git.abort_merge(git_repo)
        assert await git.get_status(git_repo) == ""

    async def test_merge_of_unknown_branch_raises(self, git: GitManager, git_repo: Path) -> None:
        with pytest.raises(GitCommandError):
            await git.merge(git_repo, "no-such-branch")

    async def test_get_diff(self, git: GitManager, git_repo: Path) -> None:
        commit_on_branch(git_repo, "feature", {"feature.js": "hello\n"})
        diff = await git.get_diff(git_repo, "main", "feature")
        assert "+hello" in diff
        stat = await git.get_diff(git_repo, "main", "feature", stat_only=True)
        assert "feature.js" in stat
        assert "1 file changed" in stat
