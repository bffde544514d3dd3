"""Task state operations.

A task row is the current-status pointer; ``task_responses`` is the
append-only iteration log the implementer/reviewer history is rebuilt from.
"""

import secrets
import sqlite3
import string
import time
from datetime import datetime

from review_loop.core.errors import StoreError, TaskNotFoundError
from review_loop.db.models import (
    TASK_STATUSES,
    TERMINAL_STATUSES,
    Task,
    TaskEvent,
    TaskResponse,
    WorkspaceInfo,
)

ROLES = ("implementer", "reviewer")

_SUFFIX_ALPHABET = string.ascii_lowercase + string.digits


def generate_task_id() -> str:
    """Build a task ID from wall-clock milliseconds and a random suffix."""
    suffix = "".join(secrets.choice(_SUFFIX_ALPHABET) for _ in range(6))
    return f"task-{int(time.time() * 1000)}-{suffix}"


def default_branch_name(task_id: str) -> str:
    return f"tdd/{task_id}"


def create_task(
    db: sqlite3.Connection,
    spec_path: str,
    original_spec: str,
    max_iterations: int,
    branch_name: str | None = None,
    task_id: str | None = None,
) -> Task:
    """Create a new running task."""
    if max_iterations < 1:
        raise ValueError(f"max_iterations must be positive, got {max_iterations}")

    task_id = task_id or generate_task_id()
    branch_name = branch_name or default_branch_name(task_id)

    try:
        db.execute(
            """INSERT INTO tasks (id, spec_path, original_spec, max_iterations, branch_name)
               VALUES (?, ?, ?, ?, ?)""",
            (task_id, str(spec_path), original_spec, max_iterations, branch_name),
        )
    except sqlite3.IntegrityError as e:
        raise StoreError(f"Task already exists: {task_id}") from e

    _log_event(db, task_id, "created", None, "running")
    db.commit()
    return get_task(db, task_id)


def get_task(db: sqlite3.Connection, task_id: str) -> Task | None:
    """Get a task by ID with its response history."""
    row = db.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
    if not row:
        return None

    task = _row_to_task(row)
    for response in get_task_responses(db, task_id):
        if response.role == "implementer":
            task.implementer_responses.append(response.content)
        else:
            task.reviewer_responses.append(response.content)
    return task


def require_task(db: sqlite3.Connection, task_id: str) -> Task:
    task = get_task(db, task_id)
    if not task:
        raise TaskNotFoundError(task_id)
    return task


def list_tasks(db: sqlite3.Connection, status: str | None = None) -> list[Task]:
    """List tasks, newest first. Response history is not loaded."""
    query = "SELECT * FROM tasks"
    params: list = []
    if status:
        query += " WHERE status = ?"
        params.append(status)
    query += " ORDER BY created_at DESC, id DESC"
    return [_row_to_task(r) for r in db.execute(query, params).fetchall()]


def set_task_workspace(
    db: sqlite3.Connection,
    task_id: str,
    workspace: WorkspaceInfo,
) -> Task:
    """Record the worktree a task runs in. Set once per task."""
    task = require_task(db, task_id)
    if task.workspace is not None and task.workspace != workspace:
        raise StoreError(f"Task '{task_id}' already has a workspace at {task.workspace.path}")

    db.execute(
        """UPDATE tasks
           SET worktree_path = ?, worktree_branch = ?, base_branch = ?,
               updated_at = datetime('now')
           WHERE id = ?""",
        (workspace.path, workspace.branch_name, workspace.base_branch, task_id),
    )
    _log_event(db, task_id, "workspace_created", None, workspace.path)
    db.commit()
    return get_task(db, task_id)


def add_response(
    db: sqlite3.Connection,
    task_id: str,
    iteration: int,
    role: str,
    content: str,
) -> None:
    """Append one agent response to the task's iteration log."""
    if role not in ROLES:
        raise ValueError(f"Invalid role: {role}")
    task = require_task(db, task_id)
    if task.is_terminal:
        raise StoreError(f"Task '{task_id}' is {task.status}; responses are closed")
    if iteration != task.current_iteration + 1:
        raise StoreError(
            f"Task '{task_id}' is at iteration {task.current_iteration}; "
            f"cannot record iteration {iteration}"
        )

    try:
        db.execute(
            "INSERT INTO task_responses (task_id, iteration, role, content) VALUES (?, ?, ?, ?)",
            (task_id, iteration, role, content),
        )
    except sqlite3.IntegrityError as e:
        raise StoreError(f"{role} response for iteration {iteration} already recorded") from e
    db.execute("UPDATE tasks SET updated_at = datetime('now') WHERE id = ?", (task_id,))
    db.commit()


def complete_iteration(db: sqlite3.Connection, task_id: str, iteration: int) -> Task:
    """Advance current_iteration once both responses for it are recorded."""
    task = require_task(db, task_id)
    if iteration != task.current_iteration + 1:
        raise StoreError(
            f"Task '{task_id}' is at iteration {task.current_iteration}; "
            f"cannot complete iteration {iteration}"
        )
    if iteration > task.max_iterations:
        raise StoreError(f"Iteration {iteration} exceeds budget of {task.max_iterations}")

    roles = {
        r["role"]
        for r in db.execute(
            "SELECT role FROM task_responses WHERE task_id = ? AND iteration = ?",
            (task_id, iteration),
        ).fetchall()
    }
    missing = [role for role in ROLES if role not in roles]
    if missing:
        raise StoreError(f"Iteration {iteration} is missing {', '.join(missing)} response")

    db.execute(
        "UPDATE tasks SET current_iteration = ?, updated_at = datetime('now') WHERE id = ?",
        (iteration, task_id),
    )
    _log_event(db, task_id, "iteration_completed", str(task.current_iteration), str(iteration))
    db.commit()
    return get_task(db, task_id)


def set_task_status(
    db: sqlite3.Connection,
    task_id: str,
    status: str,
    error: str | None = None,
    pr_url: str | None = None,
) -> Task:
    """Move a task to a new status. Terminal statuses are final."""
    if status not in TASK_STATUSES:
        raise ValueError(f"Invalid status: {status}")
    task = require_task(db, task_id)
    if task.is_terminal:
        raise StoreError(f"Task '{task_id}' is already {task.status}")

    db.execute(
        """UPDATE tasks SET status = ?, error = ?, pr_url = ?, updated_at = datetime('now')
           WHERE id = ?""",
        (status, error, pr_url, task_id),
    )
    _log_event(db, task_id, "status_changed", task.status, status)
    db.commit()
    return get_task(db, task_id)


def truncate_responses(db: sqlite3.Connection, task_id: str, iteration: int) -> int:
    """Drop responses recorded after ``iteration`` (half-finished iterations)."""
    result = db.execute(
        "DELETE FROM task_responses WHERE task_id = ? AND iteration > ?",
        (task_id, iteration),
    )
    if result.rowcount:
        _log_event(db, task_id, "responses_truncated", None, str(iteration))
    db.commit()
    return result.rowcount


def delete_task(db: sqlite3.Connection, task_id: str) -> bool:
    """Delete a task with its history."""
    if not get_task(db, task_id):
        return False
    db.execute("DELETE FROM task_responses WHERE task_id = ?", (task_id,))
    db.execute("DELETE FROM task_events WHERE task_id = ?", (task_id,))
    db.execute("DELETE FROM tasks WHERE id = ?", (task_id,))
    db.commit()
    return True


def get_task_responses(db: sqlite3.Connection, task_id: str) -> list[TaskResponse]:
    rows = db.execute(
        "SELECT * FROM task_responses WHERE task_id = ? ORDER BY iteration, id",
        (task_id,),
    ).fetchall()
    return [
        TaskResponse(
            id=r["id"],
            task_id=r["task_id"],
            iteration=r["iteration"],
            role=r["role"],
            content=r["content"],
            created_at=_parse_dt(r["created_at"]),
        )
        for r in rows
    ]


def get_task_events(db: sqlite3.Connection, task_id: str) -> list[TaskEvent]:
    """Get the event history for a task."""
    rows = db.execute(
        "SELECT * FROM task_events WHERE task_id = ? ORDER BY created_at, id",
        (task_id,),
    ).fetchall()
    return [
        TaskEvent(
            id=r["id"],
            task_id=r["task_id"],
            event_type=r["event_type"],
            old_value=r["old_value"],
            new_value=r["new_value"],
            created_at=_parse_dt(r["created_at"]),
        )
        for r in rows
    ]


class SqliteTaskStore:
    """TaskStore backed by the SQLite task tables."""

    def __init__(self, db: sqlite3.Connection):
        self.db = db

    def init(
        self,
        spec_path: str,
        spec: str,
        max_iterations: int,
        branch_name: str | None = None,
        task_id: str | None = None,
    ) -> Task:
        return create_task(self.db, spec_path, spec, max_iterations, branch_name, task_id)

    def get(self, task_id: str) -> Task:
        return require_task(self.db, task_id)

    def set_workspace(self, task_id: str, workspace: WorkspaceInfo) -> Task:
        return set_task_workspace(self.db, task_id, workspace)

    def append_implementer_response(self, task_id: str, iteration: int, text: str) -> None:
        add_response(self.db, task_id, iteration, "implementer", text)

    def append_reviewer_response(self, task_id: str, iteration: int, text: str) -> None:
        add_response(self.db, task_id, iteration, "reviewer", text)

    def complete_iteration(self, task_id: str, iteration: int) -> Task:
        return complete_iteration(self.db, task_id, iteration)

    def truncate_to(self, task_id: str, iteration: int) -> None:
        truncate_responses(self.db, task_id, iteration)

    def finish(
        self,
        task_id: str,
        status: str,
        error: str | None = None,
        pr_url: str | None = None,
    ) -> Task:
        if status not in TERMINAL_STATUSES:
            raise ValueError(f"Not a terminal status: {status}")
        return set_task_status(self.db, task_id, status, error=error, pr_url=pr_url)

    def remove(self, task_id: str) -> None:
        delete_task(self.db, task_id)


def _log_event(
    db: sqlite3.Connection,
    task_id: str,
    event_type: str,
    old_value: str | None,
    new_value: str | None,
):
    db.execute(
        "INSERT INTO task_events (task_id, event_type, old_value, new_value) VALUES (?, ?, ?, ?)",
        (task_id, event_type, old_value, new_value),
    )


def _row_to_task(row: sqlite3.Row) -> Task:
    workspace = None
    if row["worktree_path"]:
        workspace = WorkspaceInfo(
            path=row["worktree_path"],
            branch_name=row["worktree_branch"],
            base_branch=row["base_branch"],
        )
    return Task(
        id=row["id"],
        spec_path=row["spec_path"],
        original_spec=row["original_spec"],
        max_iterations=row["max_iterations"],
        branch_name=row["branch_name"],
        current_iteration=row["current_iteration"],
        status=row["status"],
        workspace=workspace,
        error=row["error"],
        pr_url=row["pr_url"],
        created_at=_parse_dt(row["created_at"]),
        updated_at=_parse_dt(row["updated_at"]),
    )


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)
