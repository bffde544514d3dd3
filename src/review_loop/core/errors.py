"""Error taxonomy for the review loop."""


class WorkflowError(Exception):
    """Base class for every expected workflow failure."""


class ValidationError(WorkflowError):
    """The specification or a workflow input is unusable."""


class SpecNotFoundError(ValidationError):
    def __init__(self, path: str):
        super().__init__(f"specification not found: {path}")
        self.path = path


class EmptySpecError(ValidationError):
    def __init__(self, path: str):
        super().__init__("specification is empty")
        self.path = path


class SpecEncodingError(ValidationError):
    def __init__(self, path: str):
        super().__init__(f"specification is not valid UTF-8: {path}")
        self.path = path


class TeamError(ValidationError):
    """A prompt team is missing or its templates cannot be loaded."""


class TeamNotFoundError(TeamError):
    def __init__(self, name: str, available: list[str]):
        listed = ", ".join(available) if available else "none"
        super().__init__(f"Team '{name}' not found. Available teams: {listed}")
        self.name = name
        self.available = available


class WorkspaceError(WorkflowError):
    """An isolated workspace could not be created or destroyed."""


class AgentError(WorkflowError):
    """An agent invocation failed, raised, or timed out."""

    def __init__(self, message: str, role: str | None = None):
        super().__init__(message)
        self.role = role


class ConvergenceError(WorkflowError):
    """The pull request query failed; the next iteration may succeed."""


class ConvergenceConfigError(ConvergenceError):
    """The pull request query can never succeed with the current setup."""


class StoreError(WorkflowError):
    """The task state store failed."""


class TaskNotFoundError(StoreError):
    def __init__(self, task_id: str):
        super().__init__(f"Task not found: {task_id}")
        self.task_id = task_id


class PromptFormattingError(WorkflowError):
    """Prompt inputs were missing."""


class ErrorKind:
    """Values recorded on WorkflowResult.error_kind."""

    VALIDATION = "validation"
    WORKSPACE = "workspace"
    AGENT = "agent"
    EXHAUSTED = "exhausted"
    REVIEWER_SIGNALED_WITHOUT_PR = "reviewer_signaled_without_pr"
    CONVERGENCE_CONFIG = "convergence_config"
    STORE = "store"
    CANCELLED = "cancelled"
