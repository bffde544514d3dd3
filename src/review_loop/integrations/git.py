"""Thin wrappers over the git CLI used by the task worktree manager and preflight."""

import subprocess
from dataclasses import dataclass
from pathlib import Path

_PORCELAIN_KEYS = ("worktree", "HEAD", "branch")


class GitError(Exception):
    """A git invocation exited non-zero or git is not installed."""


@dataclass
class WorktreeEntry:
    path: str
    branch: str
    head: str
    is_bare: bool = False

    @classmethod
    def from_porcelain(cls, block: str) -> "WorktreeEntry":
        fields: dict[str, str] = {}
        bare = False
        for line in block.splitlines():
            key, _, value = line.partition(" ")
            if key in _PORCELAIN_KEYS:
                fields[key] = value
            elif key == "bare":
                bare = True
        return cls(
            path=fields.get("worktree", ""),
            branch=fields.get("branch", "").removeprefix("refs/heads/"),
            head=fields.get("HEAD", ""),
            is_bare=bare,
        )


def run_git(args: list[str], cwd: str | Path | None = None) -> str:
    """Run ``git <args>`` in ``cwd``; stripped stdout, or GitError."""
    try:
        proc = subprocess.run(
            ["git", *args],
            cwd=cwd,
            capture_output=True,
            encoding="utf-8",
            errors="replace",
            check=True,
        )
    except subprocess.CalledProcessError as e:
        detail = e.stderr.strip() or f"exit status {e.returncode}"
        raise GitError(f"git {' '.join(args)}: {detail}") from e
    except FileNotFoundError as e:
        raise GitError(f"git executable not found: {e}") from e
    return proc.stdout.strip()


def is_git_repository(cwd: str | Path) -> bool:
    try:
        run_git(["rev-parse", "--git-dir"], cwd=cwd)
    except GitError:
        return False
    return True


def worktree_add(repo_path: str | Path, worktree_path: str | Path, branch: str, base_branch: str) -> str:
    """Check out a new ``branch`` cut from ``base_branch`` at ``worktree_path``."""
    return run_git(
        ["worktree", "add", "-b", branch, str(worktree_path), base_branch],
        cwd=repo_path,
    )


def worktree_list(repo_path: str | Path) -> list[WorktreeEntry]:
    output = run_git(["worktree", "list", "--porcelain"], cwd=repo_path)
    return [WorktreeEntry.from_porcelain(b) for b in output.split("\n\n") if b.strip()]


def worktree_remove(repo_path: str | Path, worktree_path: str | Path, force: bool = False) -> str:
    flags = ["--force"] if force else []
    return run_git(["worktree", "remove", *flags, str(worktree_path)], cwd=repo_path)


def worktree_prune(repo_path: str | Path) -> str:
    return run_git(["worktree", "prune"], cwd=repo_path)


def branch_exists(repo_path: str | Path, branch: str) -> bool:
    try:
        run_git(["show-ref", "--verify", "--quiet", f"refs/heads/{branch}"], cwd=repo_path)
    except GitError:
        return False
    return True


def delete_branch(repo_path: str | Path, branch: str, force: bool = False) -> str:
    return run_git(["branch", "-D" if force else "-d", branch], cwd=repo_path)


def has_uncommitted_changes(cwd: str | Path) -> bool:
    """True when tracked files are modified or untracked files exist."""
    return bool(run_git(["status", "--porcelain"], cwd=cwd))


def get_current_branch(cwd: str | Path) -> str:
    """Empty string on a detached HEAD."""
    return run_git(["branch", "--show-current"], cwd=cwd)


def get_remote_url(cwd: str | Path, remote: str = "origin") -> str:
    return run_git(["remote", "get-url", remote], cwd=cwd)
