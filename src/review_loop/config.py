"""Configuration loading from environment variables."""

import os
from dataclasses import dataclass, field
from pathlib import Path

from review_loop.integrations.github import DEFAULT_API_URL


@dataclass
class Config:
    db_path: Path = field(default_factory=lambda: Path.home() / ".review_loop" / "rl.db")
    repo_path: Path = field(default_factory=lambda: Path.cwd())
    worktree_dir: str = ".worktrees"
    base_branch: str | None = None
    transcript_dir: Path | None = Path(".agent_outputs")
    teams_dir: Path = field(default_factory=lambda: Path.home() / ".review_loop" / "teams")
    agent_model: str = "sonnet"
    agent_budget: float | None = None
    agent_timeout: float = 1800.0
    implementer_turns: int = 5
    reviewer_turns: int = 3
    max_iterations: int = 3
    agent_failure_policy: str = "abort"
    convergence_states: tuple[str, ...] = ("open",)
    github_token: str | None = None
    github_api_url: str = DEFAULT_API_URL
    slack_bot_token: str | None = None
    slack_channel: str | None = None

    @classmethod
    def from_env(cls) -> "Config":
        config = cls()

        if db := os.environ.get("RL_DB_PATH"):
            config.db_path = Path(db)

        if repo := os.environ.get("RL_REPO_PATH"):
            config.repo_path = Path(repo)

        if wt_dir := os.environ.get("RL_WORKTREE_DIR"):
            config.worktree_dir = wt_dir

        config.base_branch = os.environ.get("RL_BASE_BRANCH") or None

        if out_dir := os.environ.get("RL_TRANSCRIPT_DIR"):
            config.transcript_dir = Path(out_dir)

        if teams := os.environ.get("RL_TEAMS_DIR"):
            config.teams_dir = Path(teams)

        if model := os.environ.get("RL_AGENT_MODEL"):
            config.agent_model = model

        if budget := os.environ.get("RL_AGENT_BUDGET"):
            config.agent_budget = float(budget)

        if timeout := os.environ.get("RL_AGENT_TIMEOUT"):
            config.agent_timeout = float(timeout)

        if turns := os.environ.get("RL_IMPLEMENTER_TURNS"):
            config.implementer_turns = int(turns)

        if turns := os.environ.get("RL_REVIEWER_TURNS"):
            config.reviewer_turns = int(turns)

        if iterations := os.environ.get("RL_MAX_ITERATIONS"):
            config.max_iterations = int(iterations)

        if policy := os.environ.get("RL_AGENT_FAILURE_POLICY"):
            config.agent_failure_policy = policy

        if states := os.environ.get("RL_CONVERGENCE_STATES"):
            config.convergence_states = tuple(s.strip() for s in states.split(",") if s.strip())

        config.github_token = os.environ.get("GITHUB_TOKEN")

        if api_url := os.environ.get("RL_GITHUB_API_URL"):
            config.github_api_url = api_url

        config.slack_bot_token = os.environ.get("SLACK_BOT_TOKEN")
        config.slack_channel = os.environ.get("RL_SLACK_CHANNEL")

        return config


def get_config() -> Config:
    return Config.from_env()
