"""Tests for git worktree operations."""

import subprocess
from pathlib import Path

import pytest

from review_loop.core.errors import WorkspaceError
from review_loop.core.workspaces import GitWorkspaceManager
from review_loop.integrations.git import (
    GitError,
    WorktreeEntry,
    branch_exists,
    get_current_branch,
    get_remote_url,
    has_uncommitted_changes,
    is_git_repository,
    run_git,
    worktree_list,
)


class TestWorkspaceLifecycle:
    def test_create(self, git_repo):
        manager = GitWorkspaceManager(git_repo)
        ws = manager.create("task-1", "tdd/task-1")

        assert Path(ws.path) == Path(git_repo).resolve() / ".worktrees" / "task-1"
        assert Path(ws.path, "README.md").exists()
        assert ws.branch_name == "tdd/task-1"
        assert ws.base_branch == "main"
        assert branch_exists(git_repo, "tdd/task-1")
        assert get_current_branch(ws.path) == "tdd/task-1"

    def test_custom_worktree_dir_and_base(self, git_repo):
        subprocess.run(["git", "branch", "develop"], cwd=git_repo, capture_output=True, check=True)
        manager = GitWorkspaceManager(git_repo, worktree_dir="wts", base_branch="develop")
        ws = manager.create("task-2", "feature/two")
        assert Path(ws.path).parent.name == "wts"
        assert ws.base_branch == "develop"

    def test_existing_branch_rejected(self, git_repo):
        subprocess.run(["git", "branch", "taken"], cwd=git_repo, capture_output=True, check=True)
        manager = GitWorkspaceManager(git_repo)
        with pytest.raises(WorkspaceError, match="Branch already exists"):
            manager.create("task-3", "taken")

    def test_existing_path_rejected(self, git_repo):
        manager = GitWorkspaceManager(git_repo)
        manager.worktree_path("task-4").mkdir(parents=True)
        with pytest.raises(WorkspaceError, match="already exists"):
            manager.create("task-4", "tdd/task-4")

    def test_bad_base_branch(self, git_repo):
        manager = GitWorkspaceManager(git_repo, base_branch="does-not-exist")
        with pytest.raises(WorkspaceError):
            manager.create("task-5", "tdd/task-5")

    def test_not_a_repo(self, tmp_path):
        manager = GitWorkspaceManager(tmp_path)
        with pytest.raises(WorkspaceError):
            manager.create("task-6", "tdd/task-6")

    def test_destroy(self, git_repo):
        manager = GitWorkspaceManager(git_repo)
        ws = manager.create("task-7", "tdd/task-7")
        manager.destroy(ws)

        assert not Path(ws.path).exists()
        assert not branch_exists(git_repo, "tdd/task-7")
        assert all(wt.path != ws.path for wt in worktree_list(git_repo))

    def test_destroy_dirty_worktree(self, git_repo):
        manager = GitWorkspaceManager(git_repo)
        ws = manager.create("task-8", "tdd/task-8")
        Path(ws.path, "scratch.txt").write_text("uncommitted")
        manager.destroy(ws)
        assert not Path(ws.path).exists()
        assert not branch_exists(git_repo, "tdd/task-8")

    def test_destroy_after_manual_delete(self, git_repo):
        import shutil

        manager = GitWorkspaceManager(git_repo)
        ws = manager.create("task-9", "tdd/task-9")
        shutil.rmtree(ws.path)
        manager.destroy(ws)
        assert not branch_exists(git_repo, "tdd/task-9")

    def test_list_only_task_worktrees(self, git_repo):
        manager = GitWorkspaceManager(git_repo)
        manager.create("task-a", "tdd/task-a")
        manager.create("task-b", "tdd/task-b")

        listed = manager.list()
        assert sorted(wt["task_id"] for wt in listed) == ["task-a", "task-b"]
        assert {wt["branch"] for wt in listed} == {"tdd/task-a", "tdd/task-b"}


class TestGitHelpers:
    def test_is_git_repository(self, git_repo, tmp_path):
        assert is_git_repository(git_repo)
        assert not is_git_repository(tmp_path)

    def test_run_git_error(self, git_repo):
        with pytest.raises(GitError):
            run_git(["checkout", "no-such-branch"], cwd=git_repo)

    def test_remote_url(self, git_repo):
        with pytest.raises(GitError):
            get_remote_url(git_repo)
        run_git(["remote", "add", "origin", "git@github.com:acme/widgets.git"], cwd=git_repo)
        assert get_remote_url(git_repo) == "git@github.com:acme/widgets.git"

    def test_uncommitted_changes(self, git_repo):
        assert not has_uncommitted_changes(git_repo)
        Path(git_repo, "notes.txt").write_text("scratch\n")
        assert has_uncommitted_changes(git_repo)

    def test_worktree_entry_from_porcelain(self):
        entry = WorktreeEntry.from_porcelain(
            "worktree /repo/.worktrees/task-1\nHEAD abc123\nbranch refs/heads/tdd/task-1\n"
        )
        assert entry.path == "/repo/.worktrees/task-1"
        assert entry.head == "abc123"
        assert entry.branch == "tdd/task-1"
        assert not entry.is_bare

        detached = WorktreeEntry.from_porcelain("worktree /repo/wt\nHEAD def456\ndetached")
        assert detached.branch == ""
        assert WorktreeEntry.from_porcelain("worktree /repo.git\nbare").is_bare

    def test_worktree_list_main_checkout(self, git_repo):
        entries = worktree_list(git_repo)
        assert len(entries) == 1
        assert entries[0].branch == "main"
