"""Git worktree lifecycle for review loop tasks."""

import logging
from pathlib import Path

from review_loop.core.errors import WorkspaceError
from review_loop.db.models import WorkspaceInfo
from review_loop.integrations.git import (
    GitError,
    branch_exists,
    delete_branch,
    get_current_branch,
    worktree_add,
    worktree_list,
    worktree_prune,
    worktree_remove,
)

logger = logging.getLogger(__name__)


class GitWorkspaceManager:
    """Creates one branch-scoped worktree per task under ``<repo>/<worktree_dir>``."""

    def __init__(
        self,
        repo_path: str | Path,
        worktree_dir: str = ".worktrees",
        base_branch: str | None = None,
    ):
        self.repo_path = Path(repo_path).resolve()
        self.worktree_root = self.repo_path / worktree_dir
        self.base_branch = base_branch

    def worktree_path(self, task_id: str) -> Path:
        return self.worktree_root / task_id

    def create(self, task_id: str, branch_name: str) -> WorkspaceInfo:
        """Create the worktree for a task. Raises WorkspaceError."""
        wt_path = self.worktree_path(task_id)
        if wt_path.exists():
            raise WorkspaceError(f"Worktree path already exists: {wt_path}")
        if branch_exists(self.repo_path, branch_name):
            raise WorkspaceError(f"Branch already exists: {branch_name}")

        try:
            base = self.base_branch or get_current_branch(self.repo_path)
            if not base:
                raise WorkspaceError(
                    "Cannot determine base branch (detached HEAD); set a base branch explicitly"
                )
            worktree_add(self.repo_path, wt_path, branch_name, base)
        except GitError as e:
            raise WorkspaceError(f"Worktree creation failed: {e}") from e

        logger.info("Created worktree %s on branch %s (base %s)", wt_path, branch_name, base)
        return WorkspaceInfo(path=str(wt_path), branch_name=branch_name, base_branch=base)

    def destroy(self, workspace: WorkspaceInfo) -> None:
        """Remove a task's worktree and delete its branch."""
        wt_path = Path(workspace.path)
        try:
            if wt_path.exists():
                try:
                    worktree_remove(self.repo_path, wt_path)
                except GitError:
                    logger.debug("Worktree %s is dirty, forcing removal", wt_path)
                    worktree_remove(self.repo_path, wt_path, force=True)
            else:
                worktree_prune(self.repo_path)

            if branch_exists(self.repo_path, workspace.branch_name):
                delete_branch(self.repo_path, workspace.branch_name, force=True)
        except GitError as e:
            raise WorkspaceError(f"Worktree cleanup failed: {e}") from e

        logger.info("Removed worktree %s and branch %s", wt_path, workspace.branch_name)

    def list(self) -> list[dict]:
        """List the worktrees this manager owns."""
        root = str(self.worktree_root)
        result = []
        for wt in worktree_list(self.repo_path):
            if wt.is_bare or not str(Path(wt.path).resolve()).startswith(root):
                continue
            result.append({
                "task_id": Path(wt.path).name,
                "path": wt.path,
                "branch": wt.branch,
                "head": wt.head,
            })
        return result
