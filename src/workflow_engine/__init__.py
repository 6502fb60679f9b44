from workflow_engine.config import EngineConfig, load_config, save_config
from workflow_engine.errors import (
    AlreadyExecuting,
    AlreadyRunning,
    NotRunning,
    SpawnFailure,
    StateCorrupt,
    VCSOperationError,
    WorkflowEngineError,
    WorkflowNotFound,
    WorkspaceConflict,
    WorkspaceNotFound,
)
from workflow_engine.events import ChannelClosed, EventChannel, ExecutionEvent
from workflow_engine.launchers import (
    AgentLauncher,
    ClaudeCodeLauncher,
    CodexLauncher,
    build_launcher,
)
from workflow_engine.orchestrator import (
    TaskDescriptor,
    WorkflowOptions,
    WorkflowOrchestrator,
    install_shutdown_hook,
    render_task_prompt,
)
from workflow_engine.process import ProcessSupervisor, SupervisedProcess
from workflow_engine.state import ExecutionStateStore, WorkflowExecutionContext
from workflow_engine.workspace import (
    CleanupReport,
    WorkspaceHandle,
    WorkspaceManager,
    WorkspaceRemoval,
)

__version__ = "0.1.0"

__all__ = [
    "AgentLauncher",
    "AlreadyExecuting",
    "AlreadyRunning",
    "ChannelClosed",
    "ClaudeCodeLauncher",
    "CleanupReport",
    "CodexLauncher",
    "EngineConfig",
    "EventChannel",
    "ExecutionEvent",
    "ExecutionStateStore",
    "NotRunning",
    "ProcessSupervisor",
    "SpawnFailure",
    "StateCorrupt",
    "SupervisedProcess",
    "TaskDescriptor",
    "VCSOperationError",
    "WorkflowEngineError",
    "WorkflowExecutionContext",
    "WorkflowNotFound",
    "WorkflowOptions",
    "WorkflowOrchestrator",
    "WorkspaceConflict",
    "WorkspaceHandle",
    "WorkspaceManager",
    "WorkspaceNotFound",
    "WorkspaceRemoval",
    "build_launcher",
    "install_shutdown_hook",
    "load_config",
    "render_task_prompt",
    "save_config",
]
