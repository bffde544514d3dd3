"""
Collaborator boundaries the orchestrator depends on.

Any backend (another code host, another agent transport, another store)
can be substituted behind these protocols without touching the loop.
"""

from __future__ import annotations

from pathlib import Path
from typing import Protocol

from review_loop.db.models import AgentResult, PRInfo, Task, WorkflowResult, WorkspaceInfo


class SpecLoader(Protocol):
    def load(self, path: str | Path) -> str:
        """Return non-empty spec text. Raises ValidationError."""
        ...


class TaskStore(Protocol):
    """
    Stores what the orchestrator gives it. It never decides status
    transitions on its own.
    """

    def init(
        self,
        spec_path: str,
        spec: str,
        max_iterations: int,
        branch_name: str | None = None,
        task_id: str | None = None,
    ) -> Task:
        ...

    def get(self, task_id: str) -> Task:
        ...

    def set_workspace(self, task_id: str, workspace: WorkspaceInfo) -> Task:
        ...

    def append_implementer_response(self, task_id: str, iteration: int, text: str) -> None:
        ...

    def append_reviewer_response(self, task_id: str, iteration: int, text: str) -> None:
        ...

    def complete_iteration(self, task_id: str, iteration: int) -> Task:
        ...

    def truncate_to(self, task_id: str, iteration: int) -> None:
        ...

    def finish(
        self,
        task_id: str,
        status: str,
        error: str | None = None,
        pr_url: str | None = None,
    ) -> Task:
        ...

    def remove(self, task_id: str) -> None:
        ...


class WorkspaceManager(Protocol):
    def create(self, task_id: str, branch_name: str) -> WorkspaceInfo:
        """Raises WorkspaceError."""
        ...

    def destroy(self, workspace: WorkspaceInfo) -> None:
        ...


class PromptFormatter(Protocol):
    def format_implementer(self, spec: str, feedback: str | None = None) -> str:
        ...

    def format_reviewer(self, spec: str, handoff: str) -> str:
        ...

    def extract_handoff(self, result: AgentResult) -> str:
        ...

    def reviewer_signaled_completion(self, text: str | None) -> bool:
        ...


class AgentRunner(Protocol):
    def run(self, prompt: str, cwd: str | Path, max_turns: int) -> AgentResult:
        """Raises AgentError when no result could be produced."""
        ...


class ConvergenceChecker(Protocol):
    def check(self, branch_name: str) -> PRInfo | None:
        """Side-effect free. Raises ConvergenceError."""
        ...


class Notifier(Protocol):
    def notify(self, task: Task | None, result: WorkflowResult) -> None:
        ...
