"""Environment checks run before a review loop starts."""

import os
import shutil
from dataclasses import dataclass, field
from pathlib import Path

from review_loop.integrations.git import (
    GitError,
    get_current_branch,
    get_remote_url,
    has_uncommitted_changes,
    is_git_repository,
)

MIN_TOKEN_LENGTH = 20


@dataclass
class PreflightResult:
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors


def validate_environment(
    repo_path: str | Path,
    github_token: str | None,
    claude_executable: str = "claude",
) -> PreflightResult:
    """Check the prerequisites of a run. Errors block the run, warnings do not."""
    result = PreflightResult()
    repo_path = Path(repo_path)

    if not is_git_repository(repo_path):
        result.errors.append(f"{repo_path} is not a git repository. Initialize with: git init")
        # Every remaining git check would fail the same way
        _check_token(result, github_token)
        _check_claude(result, claude_executable)
        return result

    try:
        remote = get_remote_url(repo_path)
        if "github.com" not in remote:
            result.warnings.append(
                "Remote origin is not a GitHub repository. Pull request lookups may fail."
            )
    except GitError:
        result.errors.append(
            "No git remote origin configured. Add with: git remote add origin <github-url>"
        )

    _check_token(result, github_token)
    _check_claude(result, claude_executable)

    if not os.access(repo_path, os.W_OK):
        result.errors.append(
            f"No write permission in {repo_path}. Cannot create worktree directories."
        )

    try:
        if has_uncommitted_changes(repo_path):
            result.warnings.append(
                "Working directory has uncommitted changes. They will not be in the task worktree."
            )
    except GitError:
        pass

    try:
        branch = get_current_branch(repo_path)
        if not branch:
            result.warnings.append("Not on any branch. Set RL_BASE_BRANCH to choose a base.")
        elif branch in ("main", "master"):
            result.warnings.append(
                f"Currently on {branch} branch. Task branches will be cut from it."
            )
    except GitError:
        result.warnings.append("Unable to determine current git branch.")

    return result


def _check_token(result: PreflightResult, github_token: str | None):
    if not github_token:
        result.errors.append(
            "GITHUB_TOKEN environment variable not set. "
            "Create a token at: https://github.com/settings/tokens"
        )
    elif len(github_token) < MIN_TOKEN_LENGTH:
        result.warnings.append("GITHUB_TOKEN appears to be invalid (too short).")


def _check_claude(result: PreflightResult, claude_executable: str):
    if shutil.which(claude_executable) is None:
        result.errors.append(
            f"'{claude_executable}' CLI not found on PATH. Install Claude Code and log in first."
        )
