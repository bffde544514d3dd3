"""The implement -> review -> converge loop.

One ``run`` drives a single task: load the spec, create the task record and
its worktree, then alternate implementer and reviewer agents until a pull
request appears for the task branch or the iteration budget runs out.
Every expected failure comes back as a ``WorkflowResult``; cleanup runs on
every exit once the worktree exists.
"""

import json
import logging
import sqlite3
import threading
from dataclasses import asdict, dataclass
from pathlib import Path

from review_loop.core.errors import (
    AgentError,
    ConvergenceConfigError,
    ConvergenceError,
    ErrorKind,
    PromptFormattingError,
    StoreError,
    TaskNotFoundError,
    ValidationError,
    WorkspaceError,
)
from review_loop.core.interfaces import (
    AgentRunner,
    ConvergenceChecker,
    Notifier,
    PromptFormatter,
    SpecLoader,
    TaskStore,
    WorkspaceManager,
)
from review_loop.db.models import AgentResult, PRInfo, RunOptions, Task, WorkflowResult, WorkspaceInfo

logger = logging.getLogger(__name__)

FAILURE_POLICIES = ("abort", "continue")


@dataclass
class OrchestratorSettings:
    implementer_turns: int = 5
    reviewer_turns: int = 3
    agent_failure_policy: str = "abort"
    transcript_dir: Path | None = None

    def __post_init__(self):
        if self.agent_failure_policy not in FAILURE_POLICIES:
            raise ValueError(
                f"agent_failure_policy must be one of {', '.join(FAILURE_POLICIES)}, "
                f"got {self.agent_failure_policy!r}"
            )


class Orchestrator:
    def __init__(
        self,
        spec_loader: SpecLoader,
        store: TaskStore,
        workspaces: WorkspaceManager,
        prompts: PromptFormatter,
        agents: AgentRunner,
        checker: ConvergenceChecker,
        settings: OrchestratorSettings | None = None,
        notifier: Notifier | None = None,
        log: logging.Logger | None = None,
        cancel_event: threading.Event | None = None,
    ):
        self.spec_loader = spec_loader
        self.store = store
        self.workspaces = workspaces
        self.prompts = prompts
        self.agents = agents
        self.checker = checker
        self.settings = settings or OrchestratorSettings()
        self.notifier = notifier
        self.log = log or logger
        self.cancel_event = cancel_event

    # ── Entry points ────────────────────────────────────────────────────────

    def run(self, options: RunOptions) -> WorkflowResult:
        """Run a fresh task from a spec file to a WorkflowResult."""
        if options.max_iterations < 1:
            return WorkflowResult.failed(
                options.task_id,
                f"max_iterations must be at least 1, got {options.max_iterations}",
                0,
                ErrorKind.VALIDATION,
            )

        try:
            spec = self.spec_loader.load(options.spec_path)
        except ValidationError as e:
            self.log.error("Spec validation failed: %s", e)
            return WorkflowResult.failed(options.task_id, str(e), 0, ErrorKind.VALIDATION)

        try:
            task = self.store.init(
                str(options.spec_path),
                spec,
                options.max_iterations,
                branch_name=options.branch_name,
                task_id=options.task_id,
            )
        except StoreError as e:
            self.log.error("Task initialization failed: %s", e)
            return WorkflowResult.failed(options.task_id, str(e), 0, ErrorKind.STORE)

        self.log.info(
            "Task %s: branch %s, up to %d iteration(s)",
            task.id, task.branch_name, task.max_iterations,
        )
        return self._execute(task, options.cleanup)

    def resume(self, task_id: str, cleanup: bool = True) -> WorkflowResult:
        """Continue a running task from its last completed iteration."""
        try:
            task = self.store.get(task_id)
        except TaskNotFoundError as e:
            return WorkflowResult.failed(task_id, str(e), 0, ErrorKind.VALIDATION)
        except StoreError as e:
            return WorkflowResult.failed(task_id, str(e), 0, ErrorKind.STORE)

        if task.is_terminal:
            return WorkflowResult.failed(
                task_id,
                f"Task '{task_id}' is already {task.status}",
                task.current_iteration,
                ErrorKind.VALIDATION,
            )

        try:
            self.store.truncate_to(task_id, task.current_iteration)
            task = self.store.get(task_id)
        except StoreError as e:
            return WorkflowResult.failed(task_id, str(e), task.current_iteration, ErrorKind.STORE)

        self.log.info(
            "Resuming task %s after iteration %d/%d",
            task.id, task.current_iteration, task.max_iterations,
        )
        return self._execute(task, cleanup)

    # ── Lifecycle ───────────────────────────────────────────────────────────

    def _execute(self, task: Task, cleanup: bool) -> WorkflowResult:
        workspace = task.workspace
        result = None
        try:
            if workspace is None:
                try:
                    workspace = self.workspaces.create(task.id, task.branch_name)
                except WorkspaceError as e:
                    self.log.error("Workspace creation failed for %s: %s", task.id, e)
                    result = WorkflowResult.failed(
                        task.id, str(e), task.current_iteration, ErrorKind.WORKSPACE
                    )
                    return result
                self.store.set_workspace(task.id, workspace)

            result = self._iterate(task, workspace)
            return result
        except PromptFormattingError as e:
            self.log.error("Prompt formatting failed for %s: %s", task.id, e)
            completed = self._completed(task)
            try:
                self.store.truncate_to(task.id, completed)
            except StoreError as store_error:
                self.log.warning("Could not drop partial iteration for %s: %s", task.id, store_error)
            result = WorkflowResult.failed(task.id, str(e), completed, ErrorKind.VALIDATION)
            return result
        except StoreError as e:
            self.log.error("Task store failed for %s: %s", task.id, e)
            result = WorkflowResult.failed(task.id, str(e), self._completed(task), ErrorKind.STORE)
            return result
        finally:
            self._finish(task.id, result)
            if workspace is not None:
                self._cleanup(task.id, workspace, cleanup)

    def _iterate(self, task: Task, workspace: WorkspaceInfo) -> WorkflowResult:
        spec = task.original_spec
        feedback = task.last_feedback
        completed = task.current_iteration
        abort_on_failure = self.settings.agent_failure_policy == "abort"

        for i in range(completed + 1, task.max_iterations + 1):
            if self.cancel_event is not None and self.cancel_event.is_set():
                self.log.warning("Task %s cancelled before iteration %d", task.id, i)
                return WorkflowResult.failed(
                    task.id,
                    f"cancelled after {completed} iteration(s)",
                    completed,
                    ErrorKind.CANCELLED,
                )

            self.log.info("Iteration %d/%d for %s", i, task.max_iterations, task.id)

            prompt = self.prompts.format_implementer(spec, feedback)
            implementer, failure = self._run_agent(
                "implementer", prompt, workspace, self.settings.implementer_turns, task.id, i
            )
            handoff = self.prompts.extract_handoff(implementer)
            self.store.append_implementer_response(task.id, i, handoff)
            if failure and abort_on_failure:
                self.store.truncate_to(task.id, completed)
                return WorkflowResult.failed(task.id, failure, completed, ErrorKind.AGENT)

            prompt = self.prompts.format_reviewer(spec, handoff)
            reviewer, failure = self._run_agent(
                "reviewer", prompt, workspace, self.settings.reviewer_turns, task.id, i
            )
            review = self.prompts.extract_handoff(reviewer)
            self.store.append_reviewer_response(task.id, i, review)
            if failure and abort_on_failure:
                self.store.truncate_to(task.id, completed)
                return WorkflowResult.failed(task.id, failure, completed, ErrorKind.AGENT)

            self.store.complete_iteration(task.id, i)
            completed = i
            feedback = review

            try:
                pr = self._check_convergence(task.branch_name)
            except ConvergenceConfigError as e:
                self.log.error("Convergence check cannot run: %s", e)
                return WorkflowResult.failed(task.id, str(e), completed, ErrorKind.CONVERGENCE_CONFIG)

            if pr is not None:
                self.log.info("Converged on iteration %d: %s", i, pr.url)
                return WorkflowResult.succeeded(task.id, pr.url, i)
            self.log.info("No pull request for %s yet", task.branch_name)

        if self.prompts.reviewer_signaled_completion(feedback):
            return WorkflowResult.failed(
                task.id,
                "reviewer signaled completion but no pull request was found",
                task.max_iterations,
                ErrorKind.REVIEWER_SIGNALED_WITHOUT_PR,
            )
        return WorkflowResult.failed(
            task.id,
            f"iteration budget exhausted without convergence ({task.max_iterations} iterations)",
            task.max_iterations,
            ErrorKind.EXHAUSTED,
        )

    def _run_agent(
        self,
        role: str,
        prompt: str,
        workspace: WorkspaceInfo,
        max_turns: int,
        task_id: str,
        iteration: int,
    ) -> tuple[AgentResult, str | None]:
        """Run one agent. Returns the result and a failure message, if any."""
        self.log.info("Running %s agent (max %d turns)", role, max_turns)
        try:
            result = self.agents.run(prompt, workspace.path, max_turns)
        except AgentError as e:
            self.log.error("%s agent raised: %s", role.capitalize(), e)
            return AgentResult(success=False), f"{role} agent failed: {e}"

        self._save_transcript(task_id, iteration, role, result)
        if not result.success:
            self.log.error("%s agent was not successful on iteration %d", role.capitalize(), iteration)
            return result, f"{role} agent execution was not successful"

        self.log.debug(
            "%s agent done in %.1fs ($%.4f)", role.capitalize(), result.duration, result.cost
        )
        return result, None

    def _check_convergence(self, branch_name: str) -> PRInfo | None:
        try:
            return self.checker.check(branch_name)
        except ConvergenceConfigError:
            raise
        except ConvergenceError as e:
            self.log.warning("Convergence check failed, treating as no signal: %s", e)
            return None

    def _finish(self, task_id: str, result: WorkflowResult | None) -> None:
        """Write the terminal status once, then notify."""
        if result is None:
            result = WorkflowResult.failed(task_id, "unexpected error", 0, ErrorKind.STORE)
        status = "succeeded" if result.success else "failed"
        task = None
        try:
            task = self.store.finish(task_id, status, error=result.error, pr_url=result.pr_url)
        except StoreError as e:
            self.log.warning("Could not record %s status for %s: %s", status, task_id, e)

        if self.notifier is not None:
            try:
                self.notifier.notify(task, result)
            except Exception:
                self.log.exception("Notifier failed for task %s", task_id)

    def _cleanup(self, task_id: str, workspace: WorkspaceInfo, cleanup: bool) -> None:
        if not cleanup:
            self.log.info("Keeping worktree %s and task state for %s", workspace.path, task_id)
            return

        self.log.info("Cleaning up worktree and task state for %s", task_id)
        try:
            self.workspaces.destroy(workspace)
        except Exception:
            self.log.exception("Worktree cleanup failed for %s", task_id)
        try:
            self.store.remove(task_id)
        except Exception:
            self.log.exception("Task state cleanup failed for %s", task_id)

    def _save_transcript(self, task_id: str, iteration: int, role: str, result: AgentResult) -> None:
        if self.settings.transcript_dir is None:
            return
        out_dir = Path(self.settings.transcript_dir)
        path = out_dir / f"{task_id}-{iteration}-{role}.json"
        try:
            out_dir.mkdir(parents=True, exist_ok=True)
            payload = {"task_id": task_id, "iteration": iteration, "role": role, **asdict(result)}
            path.write_text(json.dumps(payload, indent=2, default=str))
        except OSError as e:
            self.log.warning("Could not save %s transcript to %s: %s", role, path, e)

    def _completed(self, task: Task) -> int:
        try:
            return self.store.get(task.id).current_iteration
        except StoreError:
            return task.current_iteration


def build_orchestrator(
    config,
    db: sqlite3.Connection,
    cancel_event: threading.Event | None = None,
    log: logging.Logger | None = None,
    team: str | None = None,
) -> Orchestrator:
    """Wire the SQLite store, git worktrees, Claude CLI and GitHub together.

    ``team`` selects a prompt team under ``config.teams_dir``; without it the
    built-in prompts are used. Raises TeamError for an unusable team and
    ConvergenceConfigError when the GitHub checker cannot be built.
    """
    from review_loop.core.prompts import DefaultPromptFormatter
    from review_loop.core.specs import FileSpecLoader
    from review_loop.core.tasks import SqliteTaskStore
    from review_loop.core.teams import TemplatePromptFormatter, load_team
    from review_loop.core.workspaces import GitWorkspaceManager
    from review_loop.integrations.claude import ClaudeAgentRunner
    from review_loop.integrations.github import GitHubConvergenceChecker
    from review_loop.integrations.slack import SlackNotifier

    if team:
        prompts = TemplatePromptFormatter(load_team(config.teams_dir, team))
    else:
        prompts = DefaultPromptFormatter()

    checker = GitHubConvergenceChecker.from_repo(
        config.repo_path,
        config.github_token,
        accepted_states=config.convergence_states,
        api_url=config.github_api_url,
    )
    return Orchestrator(
        spec_loader=FileSpecLoader(),
        store=SqliteTaskStore(db),
        workspaces=GitWorkspaceManager(config.repo_path, config.worktree_dir, config.base_branch),
        prompts=prompts,
        agents=ClaudeAgentRunner(
            model=config.agent_model,
            max_budget=config.agent_budget,
            timeout=config.agent_timeout,
        ),
        checker=checker,
        settings=OrchestratorSettings(
            implementer_turns=config.implementer_turns,
            reviewer_turns=config.reviewer_turns,
            agent_failure_policy=config.agent_failure_policy,
            transcript_dir=config.transcript_dir,
        ),
        notifier=SlackNotifier(config.slack_bot_token, config.slack_channel),
        log=log,
        cancel_event=cancel_event,
    )
