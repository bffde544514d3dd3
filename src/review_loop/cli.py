"""CLI entry point for the review loop."""

import json
import logging
import signal
import sys
import threading

import click

from review_loop.config import get_config
from review_loop.core import tasks as tasks_mod
from review_loop.core.errors import (
    ConvergenceConfigError,
    ConvergenceError,
    TeamError,
    WorkspaceError,
)
from review_loop.core.orchestrator import build_orchestrator
from review_loop.core.preflight import validate_environment
from review_loop.core.teams import list_teams, write_default_teams
from review_loop.core.workspaces import GitWorkspaceManager
from review_loop.db.engine import get_db
from review_loop.db.models import RunOptions, WorkflowResult
from review_loop.integrations.github import GitHubConvergenceChecker

logger = logging.getLogger(__name__)


def _get_db():
    config = get_config()
    return get_db(config.db_path)


def _setup_logging(verbose: bool):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@click.group()
def main():
    """rl - Review Loop CLI"""
    pass


# ── Workflow Commands ─────────────────────────────────────────────────────────


@main.command("run")
@click.argument("spec", type=click.Path(dir_okay=False))
@click.option(
    "--max-iterations", "-i",
    type=click.IntRange(1, 10), default=None,
    help="Implement/review rounds before giving up (default: RL_MAX_ITERATIONS or 3)",
)
@click.option("--branch", default=None, help="Task branch name (default: tdd/<task-id>)")
@click.option("--team", "-t", default=None, help="Prompt team from RL_TEAMS_DIR (default: built-in prompts)")
@click.option("--no-cleanup", is_flag=True, help="Keep the worktree and task state afterwards")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
@click.option("--skip-preflight", is_flag=True, help="Skip environment checks")
def run_command(spec, max_iterations, branch, team, no_cleanup, verbose, skip_preflight):
    """Drive implementer and reviewer agents on SPEC until a PR exists."""
    _setup_logging(verbose)
    config = get_config()

    if not skip_preflight and not _preflight(config):
        sys.exit(1)

    options = RunOptions(
        spec_path=spec,
        max_iterations=max_iterations or config.max_iterations,
        branch_name=branch,
        cleanup=not no_cleanup,
    )
    with _get_db() as db:
        cancel_event = threading.Event()
        orchestrator = _build(config, db, cancel_event, team)
        with _cancel_on_sigint(cancel_event):
            result = orchestrator.run(options)
    _report(result)


@main.command("resume")
@click.argument("task_id")
@click.option("--team", "-t", default=None, help="Prompt team the task was started with")
@click.option("--no-cleanup", is_flag=True, help="Keep the worktree and task state afterwards")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
def resume_command(task_id, team, no_cleanup, verbose):
    """Continue a running task from its last completed iteration."""
    _setup_logging(verbose)
    config = get_config()
    with _get_db() as db:
        cancel_event = threading.Event()
        orchestrator = _build(config, db, cancel_event, team)
        with _cancel_on_sigint(cancel_event):
            result = orchestrator.resume(task_id, cleanup=not no_cleanup)
    _report(result)


@main.command("preflight")
def preflight_command():
    """Check git, GitHub and Claude prerequisites."""
    config = get_config()
    if not _preflight(config):
        sys.exit(1)
    click.echo("Environment OK")


@main.command("init")
@click.option("--force", is_flag=True, help="Overwrite existing team templates")
def init_command(force):
    """Write the built-in prompt teams to RL_TEAMS_DIR."""
    config = get_config()
    try:
        written = write_default_teams(config.teams_dir, force=force)
    except OSError as e:
        click.echo(f"Error: cannot write teams to {config.teams_dir}: {e}", err=True)
        sys.exit(1)

    for path in written:
        click.echo(f"  Wrote {path}")
    if not written:
        click.echo(f"Teams already present in {config.teams_dir} (use --force to overwrite)")
        return
    click.echo(f"Teams written to {config.teams_dir}")
    click.echo("Edit the templates there, then run: rl run SPEC --team <name>")


# ── Team Commands ─────────────────────────────────────────────────────────────


@main.group("team")
def team_group():
    """Inspect prompt teams."""
    pass


@team_group.command("list")
def team_list():
    """List the teams in RL_TEAMS_DIR."""
    config = get_config()
    names = list_teams(config.teams_dir)
    if not names:
        click.echo(f"No teams found in {config.teams_dir}. Run 'rl init' to create them.")
        return
    for name in names:
        click.echo(f"  {name}")


# ── Task Commands ─────────────────────────────────────────────────────────────


@main.group("task")
def task_group():
    """Inspect stored tasks."""
    pass


@task_group.command("list")
@click.option("--status", default=None, type=click.Choice(["running", "succeeded", "failed"]))
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def task_list(status, json_output):
    """List tasks."""
    with _get_db() as db:
        tasks = tasks_mod.list_tasks(db, status=status)

        if json_output:
            click.echo(json.dumps([_task_dict(t) for t in tasks], indent=2))
            return

        if not tasks:
            click.echo("No tasks found.")
            return

        status_icons = {
            "running": "●",
            "succeeded": "✓",
            "failed": "✗",
        }
        for task in tasks:
            icon = status_icons.get(task.status, "?")
            pr = f" [pr: {task.pr_url}]" if task.pr_url else ""
            click.echo(
                f"  {icon} {task.id}: {task.spec_path} "
                f"({task.status}, {task.current_iteration}/{task.max_iterations}){pr}"
            )


@task_group.command("show")
@click.argument("task_id")
def task_show(task_id):
    """Show task details and its iteration history."""
    with _get_db() as db:
        task = tasks_mod.get_task(db, task_id)
        if not task:
            click.echo(f"Task not found: {task_id}", err=True)
            sys.exit(1)

        click.echo(f"Task: {task.id}")
        click.echo(f"  Spec: {task.spec_path}")
        click.echo(f"  Status: {task.status}")
        click.echo(f"  Iterations: {task.current_iteration}/{task.max_iterations}")
        click.echo(f"  Branch: {task.branch_name}")
        if task.workspace:
            click.echo(f"  Worktree: {task.workspace.path} (base {task.workspace.base_branch})")
        if task.pr_url:
            click.echo(f"  PR: {task.pr_url}")
        if task.error:
            click.echo(f"  Error: {task.error}")
        if task.created_at:
            click.echo(f"  Created: {task.created_at}")

        for i, (impl, review) in enumerate(
            zip(task.implementer_responses, task.reviewer_responses), start=1
        ):
            click.echo(f"  Iteration {i}:")
            click.echo(f"    Implementer: {_first_line(impl)}")
            click.echo(f"    Reviewer: {_first_line(review)}")

        events = tasks_mod.get_task_events(db, task_id)
        if events:
            click.echo("  History:")
            for e in events:
                click.echo(f"    [{e.created_at}] {e.event_type}: {e.old_value} -> {e.new_value}")


@task_group.command("remove")
@click.argument("task_id")
def task_remove(task_id):
    """Delete a task, its worktree and its branch."""
    config = get_config()
    with _get_db() as db:
        task = tasks_mod.get_task(db, task_id)
        if not task:
            click.echo(f"Task not found: {task_id}", err=True)
            sys.exit(1)

        if task.workspace:
            manager = GitWorkspaceManager(config.repo_path, config.worktree_dir)
            try:
                manager.destroy(task.workspace)
                click.echo(f"  Worktree removed: {task.workspace.path}")
            except WorkspaceError as e:
                click.echo(f"  Worktree removal failed: {e}", err=True)

        tasks_mod.delete_task(db, task_id)
        click.echo(f"Removed task: {task_id}")


# ── Pull Request Commands ────────────────────────────────────────────────────


@main.group("pr")
def pr_group():
    """Query pull requests on the origin repository."""
    pass


@pr_group.command("check")
@click.argument("branch")
def pr_check(branch):
    """Show pull requests for BRANCH and whether one counts as convergence."""
    config = get_config()
    try:
        checker = GitHubConvergenceChecker.from_repo(
            config.repo_path,
            config.github_token,
            accepted_states=config.convergence_states,
            api_url=config.github_api_url,
        )
    except ConvergenceConfigError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    try:
        prs = checker.list_prs(branch)
    except ConvergenceError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    finally:
        checker.close()

    if not prs:
        click.echo(f"No pull requests for {branch}.")
        sys.exit(1)

    converged = False
    for pr in prs:
        accepted = pr.state in checker.accepted_states
        converged = converged or accepted
        mark = "✓" if accepted else " "
        click.echo(f"  {mark} #{pr.number} [{pr.state}] {pr.title} {pr.url}")
    if not converged:
        sys.exit(1)


# ── Worktree Commands ────────────────────────────────────────────────────────


@main.group("worktree")
def worktree_group():
    """Inspect task worktrees."""
    pass


@worktree_group.command("list")
def worktree_list():
    """List task worktrees and their tasks."""
    config = get_config()
    manager = GitWorkspaceManager(config.repo_path, config.worktree_dir)
    wts = manager.list()
    if not wts:
        click.echo("No worktrees found.")
        return

    with _get_db() as db:
        for wt in wts:
            task = tasks_mod.get_task(db, wt["task_id"])
            task_info = f" -> {task.id} ({task.status})" if task else ""
            click.echo(f"  {wt['branch']} at {wt['path']}{task_info}")


# ── MCP Server Command ───────────────────────────────────────────────────────


@main.group("mcp")
def mcp_group():
    """MCP server commands."""
    pass


@mcp_group.command("serve")
def mcp_serve():
    """Start the MCP server (stdio transport)."""
    from review_loop.mcp.server import mcp

    mcp.run(transport="stdio")


# ── Helpers ───────────────────────────────────────────────────────────────────


def _build(config, db, cancel_event, team=None):
    try:
        return build_orchestrator(config, db, cancel_event=cancel_event, team=team)
    except (ConvergenceConfigError, TeamError) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    except ValueError as e:
        click.echo(f"Invalid configuration: {e}", err=True)
        sys.exit(1)


def _preflight(config) -> bool:
    result = validate_environment(config.repo_path, config.github_token)
    for warning in result.warnings:
        click.echo(f"Warning: {warning}", err=True)
    for error in result.errors:
        click.echo(f"Error: {error}", err=True)
    return result.success


class _cancel_on_sigint:
    """Turn Ctrl-C into a cancellation checked between iterations."""

    def __init__(self, event: threading.Event):
        self.event = event
        self._previous = None

    def _handle(self, signum, frame):
        if self.event.is_set():
            raise KeyboardInterrupt
        logger.warning("Interrupt received, stopping after the current agent finishes")
        self.event.set()

    def __enter__(self):
        if threading.current_thread() is threading.main_thread():
            self._previous = signal.signal(signal.SIGINT, self._handle)
        return self

    def __exit__(self, *exc):
        if self._previous is not None:
            signal.signal(signal.SIGINT, self._previous)
        return False


def _report(result: WorkflowResult):
    plural = "" if result.iterations == 1 else "s"
    if result.success:
        click.echo(f"✓ Converged after {result.iterations} iteration{plural}")
        click.echo(f"  PR: {result.pr_url}")
        click.echo(f"  Task: {result.task_id}")
        return

    click.echo(f"✗ Failed after {result.iterations} iteration{plural} ({result.error_kind})", err=True)
    click.echo(f"  {result.error}", err=True)
    if result.task_id:
        click.echo(f"  Task: {result.task_id}", err=True)
    sys.exit(1)


def _first_line(text: str, limit: int = 100) -> str:
    line = text.strip().splitlines()[0] if text.strip() else ""
    return line if len(line) <= limit else line[: limit - 3] + "..."


def _task_dict(task) -> dict:
    return {
        "id": task.id,
        "spec_path": task.spec_path,
        "status": task.status,
        "current_iteration": task.current_iteration,
        "max_iterations": task.max_iterations,
        "branch": task.branch_name,
        "worktree": task.workspace.path if task.workspace else None,
        "pr_url": task.pr_url,
        "error": task.error,
    }


if __name__ == "__main__":
    main()
