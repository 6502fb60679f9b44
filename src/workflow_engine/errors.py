from __future__ import annotations


class WorkflowEngineError(RuntimeError):
    """Base class for every failure raised by the workflow engine."""

    def __init__(
        self,
        message: str,
        *,
        workflow_id: str | None = None,
        task_id: str | None = None,
        retriable: bool = False,
    ) -> None:
        super().__init__(message)
        self.workflow_id = workflow_id
        self.task_id = task_id
        self.retriable = retriable


class WorkspaceConflict(WorkflowEngineError):
    """Raised when a worktree path or task workspace already exists."""


class WorkspaceNotFound(WorkflowEngineError):
    """Raised when a task has no tracked or discoverable worktree."""


class VCSOperationError(WorkflowEngineError):
    """Raised when a git invocation exits non-zero."""

    def __init__(
        self,
        message: str,
        *,
        command: list[str] | None = None,
        exit_code: int | None = None,
        stderr: str = "",
        task_id: str | None = None,
    ) -> None:
        super().__init__(message, task_id=task_id)
        self.command = list(command or [])
        self.exit_code = exit_code
        self.stderr = stderr


class AlreadyRunning(WorkflowEngineError):
    """Raised when a process is already tracked for a workflow id."""

    def __init__(self, message: str, **kwargs) -> None:
        kwargs.setdefault("retriable", True)
        super().__init__(message, **kwargs)


class NotRunning(WorkflowEngineError):
    """Raised when no process is tracked for a workflow id."""

    def __init__(self, message: str, **kwargs) -> None:
        kwargs.setdefault("retriable", True)
        super().__init__(message, **kwargs)


class SpawnFailure(WorkflowEngineError):
    """Raised when the agent executable cannot be started."""


class WorkflowNotFound(WorkflowEngineError):
    """Raised when a workflow id is absent from the registry."""


class AlreadyExecuting(WorkflowEngineError):
    """Raised when a task already has a non-terminal workflow."""


class StateCorrupt(WorkflowEngineError):
    """Signals an unreadable registry file. Only used inside ``load()``."""
