"""Tests for the CLI."""

import json
import os
import tempfile
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
from click.testing import CliRunner

from review_loop.cli import main
from review_loop.core import tasks as tasks_mod
from review_loop.db.engine import init_db
from review_loop.db.models import PRInfo, WorkflowResult
from review_loop.integrations.git import run_git

from conftest import init_repo

TOKEN = "ghp_" + "x" * 36


@pytest.fixture
def cli_env():
    """Set up a temp environment for CLI testing."""
    with tempfile.TemporaryDirectory() as tmp:
        db_path = Path(tmp) / "test.db"
        repo_path = Path(tmp) / "repo"
        repo_path.mkdir()
        init_repo(repo_path)
        run_git(["remote", "add", "origin", "git@github.com:acme/widgets.git"], cwd=repo_path)

        env = {
            "RL_DB_PATH": str(db_path),
            "RL_REPO_PATH": str(repo_path),
            "RL_TRANSCRIPT_DIR": str(Path(tmp) / "out"),
            "GITHUB_TOKEN": TOKEN,
            "RL_TEAMS_DIR": str(Path(tmp) / "teams"),
        }
        old_env = {}
        for k, v in env.items():
            old_env[k] = os.environ.get(k)
            os.environ[k] = v

        yield CliRunner(), repo_path, db_path

        for k, v in old_env.items():
            if v is None:
                os.environ.pop(k, None)
            else:
                os.environ[k] = v


class TestCLI:
    def test_help(self, cli_env):
        runner, _, _ = cli_env
        result = runner.invoke(main, ["--help"])
        assert result.exit_code == 0
        assert "Review Loop" in result.output

    def test_run_missing_spec(self, cli_env):
        runner, repo, _ = cli_env
        result = runner.invoke(main, ["run", str(repo / "missing.md"), "--skip-preflight"])
        assert result.exit_code == 1
        assert "specification not found" in result.output

    def test_run_spec_not_utf8(self, cli_env):
        runner, repo, _ = cli_env
        spec = repo / "spec.md"
        spec.write_bytes(b"Build \xff\xfe it\n")
        result = runner.invoke(main, ["run", str(spec), "--skip-preflight"])
        assert result.exit_code == 1
        assert "not valid UTF-8" in result.output
        assert "(validation)" in result.output

    def test_run_without_token(self, cli_env):
        runner, repo, _ = cli_env
        spec = repo / "spec.md"
        spec.write_text("Build it")
        result = runner.invoke(
            main, ["run", str(spec), "--skip-preflight"], env={"GITHUB_TOKEN": None}
        )
        assert result.exit_code == 1
        assert "GITHUB_TOKEN" in result.output

    def test_run_preflight_blocks(self, cli_env):
        runner, repo, _ = cli_env
        spec = repo / "spec.md"
        spec.write_text("Build it")
        with patch("review_loop.cli.build_orchestrator") as build:
            result = runner.invoke(main, ["run", str(spec)], env={"GITHUB_TOKEN": None})
        assert result.exit_code == 1
        assert "GITHUB_TOKEN environment variable not set" in result.output
        build.assert_not_called()

    def test_run_iteration_range(self, cli_env):
        runner, repo, _ = cli_env
        result = runner.invoke(main, ["run", str(repo / "spec.md"), "--max-iterations", "11"])
        assert result.exit_code == 2

    def test_run_success(self, cli_env):
        runner, repo, _ = cli_env
        spec = repo / "spec.md"
        spec.write_text("Build it")
        orchestrator = MagicMock()
        orchestrator.run.return_value = WorkflowResult.succeeded(
            "task-1", "https://github.com/acme/widgets/pull/9", 2
        )
        with patch("review_loop.cli.build_orchestrator", return_value=orchestrator):
            result = runner.invoke(
                main,
                ["run", str(spec), "-i", "4", "--branch", "feature/x", "--no-cleanup", "--skip-preflight"],
            )

        assert result.exit_code == 0, result.output
        assert "https://github.com/acme/widgets/pull/9" in result.output
        options = orchestrator.run.call_args.args[0]
        assert options.max_iterations == 4
        assert options.branch_name == "feature/x"
        assert options.cleanup is False

    def test_run_failure_reports_kind(self, cli_env):
        runner, repo, _ = cli_env
        spec = repo / "spec.md"
        spec.write_text("Build it")
        orchestrator = MagicMock()
        orchestrator.run.return_value = WorkflowResult.failed(
            "task-1", "iteration budget exhausted without convergence (3 iterations)", 3, "exhausted"
        )
        with patch("review_loop.cli.build_orchestrator", return_value=orchestrator):
            result = runner.invoke(main, ["run", str(spec), "--skip-preflight"])

        assert result.exit_code == 1
        assert "exhausted" in result.output
        assert orchestrator.run.call_args.args[0].max_iterations == 3

    def test_run_with_team(self, cli_env):
        runner, repo, _ = cli_env
        spec = repo / "spec.md"
        spec.write_text("Build it")
        orchestrator = MagicMock()
        orchestrator.run.return_value = WorkflowResult.succeeded("task-1", "https://x/pull/1", 1)
        with patch("review_loop.cli.build_orchestrator", return_value=orchestrator) as build:
            result = runner.invoke(main, ["run", str(spec), "--team", "tdd", "--skip-preflight"])
        assert result.exit_code == 0, result.output
        assert build.call_args.kwargs["team"] == "tdd"

    def test_run_unknown_team(self, cli_env):
        runner, repo, _ = cli_env
        spec = repo / "spec.md"
        spec.write_text("Build it")
        assert runner.invoke(main, ["init"]).exit_code == 0
        result = runner.invoke(main, ["run", str(spec), "--team", "security", "--skip-preflight"])
        assert result.exit_code == 1
        assert "Team 'security' not found" in result.output
        assert "tdd" in result.output

    def test_run_team_without_init(self, cli_env):
        runner, repo, _ = cli_env
        spec = repo / "spec.md"
        spec.write_text("Build it")
        result = runner.invoke(main, ["run", str(spec), "--team", "tdd", "--skip-preflight"])
        assert result.exit_code == 1
        assert "rl init" in result.output

    def test_resume_missing_task(self, cli_env):
        runner, _, _ = cli_env
        result = runner.invoke(main, ["resume", "task-404"])
        assert result.exit_code == 1
        assert "Task not found: task-404" in result.output


class TestTaskCommands:
    def _seed(self, db_path):
        conn = init_db(db_path)
        tasks_mod.create_task(conn, "spec.md", "Build it", 3, task_id="task-a")
        tasks_mod.add_response(conn, "task-a", 1, "implementer", "Implemented it")
        tasks_mod.add_response(conn, "task-a", 1, "reviewer", "CHANGES REQUESTED: add tests")
        tasks_mod.complete_iteration(conn, "task-a", 1)
        tasks_mod.create_task(conn, "other.md", "Other", 2, task_id="task-b")
        tasks_mod.set_task_status(conn, "task-b", "failed", error="agent failed")
        conn.close()

    def test_list_empty(self, cli_env):
        runner, _, _ = cli_env
        result = runner.invoke(main, ["task", "list"])
        assert result.exit_code == 0
        assert "No tasks found." in result.output

    def test_list(self, cli_env):
        runner, _, db_path = cli_env
        self._seed(db_path)
        result = runner.invoke(main, ["task", "list"])
        assert result.exit_code == 0
        assert "task-a" in result.output
        assert "1/3" in result.output

    def test_list_json_filtered(self, cli_env):
        runner, _, db_path = cli_env
        self._seed(db_path)
        result = runner.invoke(main, ["task", "list", "--status", "failed", "--json"])
        data = json.loads(result.output)
        assert [t["id"] for t in data] == ["task-b"]
        assert data[0]["error"] == "agent failed"

    def test_show(self, cli_env):
        runner, _, db_path = cli_env
        self._seed(db_path)
        result = runner.invoke(main, ["task", "show", "task-a"])
        assert result.exit_code == 0
        assert "Iteration 1:" in result.output
        assert "CHANGES REQUESTED: add tests" in result.output

    def test_show_missing(self, cli_env):
        runner, _, _ = cli_env
        result = runner.invoke(main, ["task", "show", "nope"])
        assert result.exit_code == 1

    def test_remove(self, cli_env):
        runner, _, db_path = cli_env
        self._seed(db_path)
        result = runner.invoke(main, ["task", "remove", "task-a"])
        assert result.exit_code == 0
        conn = init_db(db_path)
        assert tasks_mod.get_task(conn, "task-a") is None
        conn.close()


class TestOtherCommands:
    def test_worktree_list_empty(self, cli_env):
        runner, _, _ = cli_env
        result = runner.invoke(main, ["worktree", "list"])
        assert result.exit_code == 0
        assert "No worktrees found." in result.output

    def test_pr_check(self, cli_env):
        runner, _, _ = cli_env
        checker = MagicMock()
        checker.accepted_states = ("open",)
        checker.list_prs.return_value = [
            PRInfo(8, "Add parser", "https://github.com/acme/widgets/pull/8", "open", "feature/x", "main"),
        ]
        with patch("review_loop.cli.GitHubConvergenceChecker.from_repo", return_value=checker):
            result = runner.invoke(main, ["pr", "check", "feature/x"])

        assert result.exit_code == 0
        assert "#8" in result.output
        checker.list_prs.assert_called_once_with("feature/x")
        checker.close.assert_called_once()

    def test_pr_check_none(self, cli_env):
        runner, _, _ = cli_env
        checker = MagicMock()
        checker.list_prs.return_value = []
        with patch("review_loop.cli.GitHubConvergenceChecker.from_repo", return_value=checker):
            result = runner.invoke(main, ["pr", "check", "feature/x"])
        assert result.exit_code == 1
        assert "No pull requests" in result.output

    def test_preflight_ok(self, cli_env):
        runner, repo, _ = cli_env
        with patch("review_loop.core.preflight.shutil.which", return_value="/usr/bin/claude"):
            result = runner.invoke(main, ["preflight"])
        assert result.exit_code == 0
        assert "Environment OK" in result.output


class TestTeamCommands:
    def test_init_and_list(self, cli_env):
        runner, _, _ = cli_env
        result = runner.invoke(main, ["init"])
        assert result.exit_code == 0, result.output
        assert "implementer.md" in result.output

        result = runner.invoke(main, ["team", "list"])
        assert result.output.split() == ["frontend", "smart-contract", "standard", "tdd"]

    def test_init_twice_keeps_templates(self, cli_env):
        runner, _, _ = cli_env
        runner.invoke(main, ["init"])
        result = runner.invoke(main, ["init"])
        assert result.exit_code == 0
        assert "--force" in result.output

        result = runner.invoke(main, ["init", "--force"])
        assert result.output.count("Wrote") == 8

    def test_list_without_teams(self, cli_env):
        runner, _, _ = cli_env
        result = runner.invoke(main, ["team", "list"])
        assert result.exit_code == 0
        assert "rl init" in result.output
