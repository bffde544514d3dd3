"""MCP server exposing review loop task state."""

from __future__ import annotations

import sqlite3
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

from mcp.server.fastmcp import Context, FastMCP

from review_loop.config import Config, get_config
from review_loop.core import tasks as tasks_mod
from review_loop.core.errors import ConvergenceError
from review_loop.db.engine import init_db
from review_loop.integrations.github import GitHubConvergenceChecker


@dataclass
class AppContext:
    db: sqlite3.Connection
    config: Config


@asynccontextmanager
async def app_lifespan(server: FastMCP) -> AsyncIterator[AppContext]:
    """Initialize DB connection on startup, close on shutdown."""
    config = get_config()
    db = init_db(config.db_path)
    try:
        yield AppContext(db=db, config=config)
    finally:
        db.close()


mcp = FastMCP("review-loop", lifespan=app_lifespan)


def _ctx(ctx: Context) -> AppContext:
    return ctx.request_context.lifespan_context


@mcp.tool()
def list_tasks(ctx: Context, status: str | None = None) -> list[dict]:
    """List review loop tasks, optionally filtered by status (running/succeeded/failed)."""
    app = _ctx(ctx)
    return [_task_to_dict(t) for t in tasks_mod.list_tasks(app.db, status=status)]


@mcp.tool()
def get_task(ctx: Context, task_id: str) -> dict:
    """Get a task with its implementer and reviewer responses."""
    app = _ctx(ctx)
    task = tasks_mod.get_task(app.db, task_id)
    if not task:
        return {"error": f"Task not found: {task_id}"}
    d = _task_to_dict(task)
    d["iterations"] = [
        {"iteration": i, "implementer": impl, "reviewer": review}
        for i, (impl, review) in enumerate(
            zip(task.implementer_responses, task.reviewer_responses), start=1
        )
    ]
    return d


@mcp.tool()
def get_task_history(ctx: Context, task_id: str) -> list[dict]:
    """Get the status and workspace event history of a task."""
    app = _ctx(ctx)
    return [
        {
            "event_type": e.event_type,
            "old_value": e.old_value,
            "new_value": e.new_value,
            "created_at": str(e.created_at) if e.created_at else None,
        }
        for e in tasks_mod.get_task_events(app.db, task_id)
    ]


@mcp.tool()
def check_convergence(ctx: Context, branch: str) -> dict:
    """Check whether a pull request exists for a branch on the origin repository."""
    config = _ctx(ctx).config
    try:
        checker = GitHubConvergenceChecker.from_repo(
            config.repo_path,
            config.github_token,
            accepted_states=config.convergence_states,
            api_url=config.github_api_url,
        )
    except ConvergenceError as e:
        return {"error": str(e)}

    try:
        pr = checker.check(branch)
    except ConvergenceError as e:
        return {"error": str(e)}
    finally:
        checker.close()

    if pr is None:
        return {"converged": False, "branch": branch}
    return {
        "converged": True,
        "branch": branch,
        "number": pr.number,
        "title": pr.title,
        "url": pr.url,
        "state": pr.state,
    }


def _task_to_dict(task) -> dict:
    d = {
        "id": task.id,
        "spec_path": task.spec_path,
        "status": task.status,
        "current_iteration": task.current_iteration,
        "max_iterations": task.max_iterations,
        "branch_name": task.branch_name,
    }
    if task.workspace:
        d["worktree_path"] = task.workspace.path
        d["base_branch"] = task.workspace.base_branch
    if task.pr_url:
        d["pr_url"] = task.pr_url
    if task.error:
        d["error"] = task.error
    if task.created_at:
        d["created_at"] = str(task.created_at)
    return d
