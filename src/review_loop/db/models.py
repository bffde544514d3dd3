"""Data models for review loop."""

from dataclasses import dataclass, field
from datetime import datetime


TASK_STATUSES = ("running", "succeeded", "failed")
TERMINAL_STATUSES = ("succeeded", "failed")


@dataclass(frozen=True)
class WorkspaceInfo:
    path: str
    branch_name: str
    base_branch: str


@dataclass
class Task:
    id: str
    spec_path: str
    original_spec: str
    max_iterations: int
    branch_name: str
    current_iteration: int = 0
    status: str = "running"
    workspace: WorkspaceInfo | None = None
    implementer_responses: list[str] = field(default_factory=list)
    reviewer_responses: list[str] = field(default_factory=list)
    error: str | None = None
    pr_url: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def last_feedback(self) -> str | None:
        """The reviewer response the next implementer run should address."""
        if not self.reviewer_responses:
            return None
        return self.reviewer_responses[-1]

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


@dataclass
class TaskResponse:
    id: int | None = None
    task_id: str = ""
    iteration: int = 0
    role: str = ""
    content: str = ""
    created_at: datetime | None = None


@dataclass
class TaskEvent:
    id: int | None = None
    task_id: str = ""
    event_type: str = ""
    old_value: str | None = None
    new_value: str | None = None
    created_at: datetime | None = None


@dataclass
class AgentResult:
    transcript: list[dict] = field(default_factory=list)
    final_response: str = ""
    success: bool = False
    cost: float = 0.0
    duration: float = 0.0
    num_turns: int | None = None
    session_id: str | None = None


@dataclass(frozen=True)
class PRInfo:
    number: int
    title: str
    url: str
    state: str
    head_branch: str
    base_branch: str


@dataclass
class RunOptions:
    spec_path: str
    max_iterations: int = 3
    branch_name: str | None = None
    cleanup: bool = True
    task_id: str | None = None


@dataclass(frozen=True)
class WorkflowResult:
    success: bool
    iterations: int
    task_id: str | None
    pr_url: str | None = None
    error: str | None = None
    error_kind: str | None = None

    @classmethod
    def succeeded(cls, task_id: str, pr_url: str, iterations: int) -> "WorkflowResult":
        return cls(success=True, iterations=iterations, task_id=task_id, pr_url=pr_url)

    @classmethod
    def failed(
        cls,
        task_id: str | None,
        error: str,
        iterations: int,
        kind: str,
    ) -> "WorkflowResult":
        return cls(
            success=False,
            iterations=iterations,
            task_id=task_id,
            error=error,
            error_kind=kind,
        )
