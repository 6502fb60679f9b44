from __future__ import annotations

import asyncio
import logging
import signal
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from workflow_engine.config import EngineConfig
from workflow_engine.errors import (
    AlreadyExecuting,
    WorkflowEngineError,
    WorkflowNotFound,
)
from workflow_engine.events import ChannelClosed, EventChannel, EventType, ExecutionEvent
from workflow_engine.launchers import AgentLauncher, build_launcher
from workflow_engine.process import ProcessSupervisor
from workflow_engine.state import ExecutionStateStore, WorkflowExecutionContext
from workflow_engine.workspace import CleanupReport, WorkspaceManager

logger = logging.getLogger(__name__)

ACTIVITY_FLUSH_SECONDS = 1.0


@dataclass(slots=True)
class TaskDescriptor:
    id: str
    title: str
    description: str = ""
    details: str | None = None
    test_strategy: str | None = None
    dependencies: list[str] = field(default_factory=list)
    priority: str | None = None

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> TaskDescriptor:
        details = payload.get("details", payload.get("implementationDetails"))
        return cls(
            id=str(payload["id"]),
            title=str(payload.get("title") or ""),
            description=str(payload.get("description") or ""),
            details=details or None,
            test_strategy=payload.get("testStrategy") or payload.get("test_strategy") or None,
            dependencies=[str(item) for item in payload.get("dependencies") or []],
            priority=payload.get("priority"),
        )


@dataclass(slots=True)
class WorkflowOptions:
    branch_name: str | None = None
    timeout_minutes: float | None = None
    env: dict[str, str] = field(default_factory=dict)
    extra_args: list[str] = field(default_factory=list)
    cleanup_on_exit: bool | None = None


def render_task_prompt(task: TaskDescriptor) -> str:
    lines = [f"Work on Task {task.id}: {task.title}", "", f"Description: {task.description}"]
    if task.details:
        lines.extend(["", f"Details: {task.details}"])
    if task.test_strategy:
        lines.extend(["", f"Test Strategy: {task.test_strategy}"])
    if task.dependencies:
        lines.extend(["", f"Dependencies: {', '.join(task.dependencies)}"])
    lines.extend(
        [
            "",
            "Implement this task following the project's existing conventions.",
            "When complete, update the task status with the available Task Master commands.",
        ]
    )
    return "\n".join(lines)


class WorkflowOrchestrator:
    """Runs one agent per task in its own worktree and tracks it in the registry.

    Process events arrive on a single bounded channel and are applied to the
    registry by one control-loop task, so status transitions for a workflow
    are handled in the order the supervisor produced them.
    """

    def __init__(
        self,
        project_root: Path,
        config: EngineConfig | None = None,
        *,
        launcher: AgentLauncher | None = None,
        workspaces: WorkspaceManager | None = None,
        supervisor: ProcessSupervisor | None = None,
        store: ExecutionStateStore | None = None,
    ) -> None:
        self.project_root = project_root.resolve()
        self.config = config or EngineConfig.default()
        self.workspaces = workspaces or WorkspaceManager(
            self.project_root,
            self.config.worktree_base_dir(self.project_root),
            branch_prefix=self.config.workspace.branch_prefix,
            start_point=self.config.workspace.start_point or None,
        )
        self.supervisor = supervisor or ProcessSupervisor(
            launcher or build_launcher(self.config.agent),
            EventChannel(name="engine"),
            grace_seconds=self.config.agent.grace_seconds,
            default_timeout_minutes=self.config.engine.default_timeout_minutes,
        )
        self.store = store or ExecutionStateStore(self.config.state_file(self.project_root))
        self._channel = self.supervisor.events
        self._subscribers: list[EventChannel] = []
        self._creating: set[str] = set()
        self._cleanup_overrides: dict[str, bool] = {}
        self._finished: dict[str, asyncio.Event] = {}
        self._last_touch: dict[str, float] = {}
        self._init_lock = asyncio.Lock()
        self._initialized = False
        self._closing = False
        self._control_task: asyncio.Task[None] | None = None

    async def initialize(self) -> None:
        async with self._init_lock:
            if self._initialized:
                return
            await asyncio.to_thread(self.store.load)
            await self._recover_stale_workflows()
            self._control_task = asyncio.create_task(
                self._control_loop(), name="workflow-control-loop"
            )
            self._initialized = True

    async def _recover_stale_workflows(self) -> None:
        for context in self.store.list_workflows():
            if context.terminal or self.supervisor.is_running(context.workflow_id):
                continue
            logger.warning(
                "Marking stale workflow %s for task %s as failed", context.workflow_id, context.task_id
            )
            await asyncio.to_thread(
                self.store.update,
                context.workflow_id,
                {"status": "failed", "metadata": {"failure_reason": "stale"}},
            )

    def subscribe(self, maxsize: int = 256) -> EventChannel:
        channel = EventChannel(maxsize=maxsize, name=f"subscriber-{len(self._subscribers)}")
        self._subscribers.append(channel)
        return channel

    def unsubscribe(self, channel: EventChannel) -> None:
        if channel in self._subscribers:
            self._subscribers.remove(channel)
        channel.close()

    def _publish(self, event: ExecutionEvent) -> None:
        for subscriber in list(self._subscribers):
            try:
                subscriber.publish_nowait(event)
            except ChannelClosed:
                self._subscribers.remove(subscriber)

    def _emit(
        self,
        event_type: EventType,
        context: WorkflowExecutionContext,
        *,
        payload: dict[str, Any] | None = None,
        error: str | None = None,
    ) -> None:
        self._publish(
            ExecutionEvent(
                type=event_type,
                workflow_id=context.workflow_id,
                task_id=context.task_id,
                payload=payload,
                error=error,
            )
        )

    def _mark_finished(self, workflow_id: str) -> None:
        finished = self._finished.pop(workflow_id, None)
        if finished is not None:
            finished.set()
        self._cleanup_overrides.pop(workflow_id, None)
        self._last_touch.pop(workflow_id, None)

    def _cleanup_on_exit(self, workflow_id: str) -> bool:
        return self._cleanup_overrides.get(workflow_id, self.config.workspace.cleanup_on_exit)

    async def create_workflow(
        self, task: TaskDescriptor, options: WorkflowOptions | None = None
    ) -> str:
        await self.initialize()
        if self._closing:
            raise WorkflowEngineError("Workflow engine is shutting down.", task_id=task.id)
        if task.id in self._creating or self.store.has_active_workflow(task.id):
            raise AlreadyExecuting(f"Task {task.id} already has an active workflow", task_id=task.id)

        self._creating.add(task.id)
        try:
            return await self._create_workflow(task, options or WorkflowOptions())
        finally:
            self._creating.discard(task.id)

    async def _create_workflow(self, task: TaskDescriptor, options: WorkflowOptions) -> str:
        handle = await self.workspaces.create_workspace(task.id, options.branch_name)
        context = WorkflowExecutionContext(
            task_id=task.id,
            title=task.title,
            description=task.description,
            details=task.details,
            project_root=str(self.project_root),
            worktree_path=str(handle.path),
            branch_name=handle.branch,
            status="initializing",
            metadata={
                "priority": task.priority,
                "dependencies": list(task.dependencies),
                "base_commit": handle.commit_hash,
            },
        )
        try:
            workflow_id = await asyncio.to_thread(self.store.register, context)
        except OSError:
            await self.workspaces.remove_workspace(task.id, force=True)
            raise
        context = self.store.get(workflow_id) or context
        self._finished[workflow_id] = asyncio.Event()
        if options.cleanup_on_exit is not None:
            self._cleanup_overrides[workflow_id] = options.cleanup_on_exit

        self._emit(
            "worktree.created",
            context,
            payload={"path": str(handle.path), "branch": handle.branch},
        )
        self._emit("workflow.created", context, payload={"branch": handle.branch})

        try:
            process = await self.supervisor.start(
                workflow_id,
                task.id,
                render_task_prompt(task),
                cwd=handle.path,
                env=options.env,
                timeout_minutes=options.timeout_minutes,
                extra_args=[*self.config.agent.extra_args, *options.extra_args],
            )
        except WorkflowEngineError as exc:
            logger.error("Workflow %s for task %s failed to start: %s", workflow_id, task.id, exc)
            await self._discard_failed_start(context, exc)
            raise

        await asyncio.to_thread(
            self.store.update, workflow_id, {"process_id": process.pid, "status": "running"}
        )
        logger.info("Workflow %s running for task %s (pid %s)", workflow_id, task.id, process.pid)
        return workflow_id

    async def _discard_failed_start(
        self, context: WorkflowExecutionContext, error: WorkflowEngineError
    ) -> None:
        # Subscribers already saw the created events; close the workflow out for them.
        self._emit(
            "workflow.failed",
            context,
            payload={"status": "failed", "stage": "spawn"},
            error=str(error),
        )
        await self._remove_workspace(context)
        try:
            await asyncio.to_thread(self.store.unregister, context.workflow_id)
        except WorkflowNotFound:
            pass
        self._mark_finished(context.workflow_id)

    async def _control_loop(self) -> None:
        async for event in self._channel:
            try:
                await self._apply_process_event(event)
            except Exception:
                logger.exception(
                    "Failed to apply %s for workflow %s", event.type, event.workflow_id
                )
        logger.debug("Workflow control loop stopped")

    async def _apply_process_event(self, event: ExecutionEvent) -> None:
        self._publish(event)
        context = self.store.get(event.workflow_id)
        if context is None:
            return

        if event.type == "process.output":
            now = time.monotonic()
            if now - self._last_touch.get(event.workflow_id, 0.0) >= ACTIVITY_FLUSH_SECONDS:
                self._last_touch[event.workflow_id] = now
                await asyncio.to_thread(self.store.touch, event.workflow_id)
        elif event.type == "process.started":
            self._emit(
                "workflow.started",
                context,
                payload={
                    "worktreePath": context.worktree_path,
                    "processId": (event.payload or {}).get("pid"),
                },
            )
        elif event.type == "process.error":
            await asyncio.to_thread(
                self.store.update, event.workflow_id, {"metadata": {"last_error": event.error}}
            )
        elif event.type == "process.stopped":
            payload = event.payload or {}
            if payload.get("requested"):
                await asyncio.to_thread(self.store.touch, event.workflow_id)
                return
            await self._finish_workflow(context, payload, event.error)

    async def _finish_workflow(
        self,
        context: WorkflowExecutionContext,
        payload: dict[str, Any],
        error: str | None,
    ) -> None:
        exit_code = payload.get("exit_code")
        if payload.get("timed_out"):
            status = "timeout"
        elif exit_code == 0:
            status = "completed"
        else:
            status = "failed"

        updated = await asyncio.to_thread(
            self.store.update,
            context.workflow_id,
            {"status": status, "metadata": {"exit_code": exit_code}},
        )
        if updated.status == status:
            logger.info("Workflow %s finished: %s (exit %s)", context.workflow_id, status, exit_code)
            self._emit(
                "workflow.completed" if status == "completed" else "workflow.failed",
                updated,
                payload={"status": status, "exit_code": exit_code},
                error=error if status != "completed" else None,
            )
            if self._cleanup_on_exit(context.workflow_id):
                await self._remove_workspace(updated)
        self._mark_finished(context.workflow_id)

    async def _remove_workspace(self, context: WorkflowExecutionContext) -> None:
        try:
            removal = await self.workspaces.remove_workspace(context.task_id, force=True)
        except WorkflowEngineError as exc:
            logger.warning("Could not remove worktree for workflow %s: %s", context.workflow_id, exc)
            return
        self._emit(
            "worktree.deleted",
            context,
            payload={
                "path": str(removal.path),
                "branchDeleted": removal.branch_deleted,
                "branchDeleteError": removal.branch_delete_error,
            },
        )

    async def stop_workflow(
        self,
        workflow_id: str,
        force: bool = False,
        remove_workspace: bool | None = None,
    ) -> WorkflowExecutionContext:
        await self.initialize()
        context = self.store.get(workflow_id)
        if context is None:
            raise WorkflowNotFound(f"Workflow not found: {workflow_id}", workflow_id=workflow_id)

        if self.supervisor.is_running(workflow_id):
            await self.supervisor.stop(workflow_id, force=force)
        updated = await asyncio.to_thread(
            self.store.update,
            workflow_id,
            {"status": "cancelled", "metadata": {"forced": force}},
        )
        if not context.terminal and updated.status == "cancelled":
            logger.info("Cancelled workflow %s for task %s", workflow_id, context.task_id)
            self._emit("workflow.cancelled", updated, payload={"forced": force})

        should_remove = (
            self._cleanup_on_exit(workflow_id) if remove_workspace is None else remove_workspace
        )
        if should_remove:
            await self.supervisor.wait_for_exit(
                workflow_id, timeout=self.supervisor.grace_seconds + 1.0
            )
            await self._remove_workspace(updated)
        self._mark_finished(workflow_id)
        return updated

    async def wait_for_completion(
        self, workflow_id: str, timeout: float | None = None
    ) -> WorkflowExecutionContext:
        """Wait until the workflow reaches a terminal status and its exit handling is done."""
        context = self.store.get(workflow_id)
        if context is None:
            raise WorkflowNotFound(f"Workflow not found: {workflow_id}", workflow_id=workflow_id)
        finished = self._finished.get(workflow_id)
        if finished is None:
            if context.terminal:
                return context
            finished = self._finished.setdefault(workflow_id, asyncio.Event())
        await asyncio.wait_for(finished.wait(), timeout=timeout)
        return self.store.get(workflow_id) or context

    async def send_input(self, workflow_id: str, text: str) -> None:
        if self.store.get(workflow_id) is None:
            raise WorkflowNotFound(f"Workflow not found: {workflow_id}", workflow_id=workflow_id)
        await self.supervisor.send_input(workflow_id, text)

    def list_active(self) -> list[WorkflowExecutionContext]:
        return self.store.list_by_status("running")

    def list_workflows(self) -> list[WorkflowExecutionContext]:
        return self.store.list_workflows()

    def get_status(self, workflow_id: str) -> WorkflowExecutionContext | None:
        return self.store.get(workflow_id)

    def get_by_task_id(self, task_id: str) -> WorkflowExecutionContext | None:
        return self.store.get_by_task_id(task_id)

    def running_count(self) -> int:
        return self.store.running_count()

    async def prune(self, hours: float | None = None) -> int:
        retention = self.config.state.retention_hours if hours is None else hours
        return await asyncio.to_thread(self.store.cleanup_older_than, retention)

    async def shutdown(
        self,
        force: bool = False,
        cleanup_workspaces: bool | None = None,
    ) -> CleanupReport | None:
        if self._closing:
            return None
        self._closing = True
        logger.info("Shutting down workflow engine")

        failures = await self.supervisor.cleanup_all(force=force)
        for workflow_id, message in failures.items():
            logger.warning("Process for workflow %s not stopped cleanly: %s", workflow_id, message)

        for context in self.store.list_workflows():
            if context.terminal:
                continue
            updated = await asyncio.to_thread(
                self.store.update,
                context.workflow_id,
                {"status": "cancelled", "metadata": {"cancel_reason": "shutdown"}},
            )
            self._emit("workflow.cancelled", updated, payload={"reason": "shutdown"})
            self._mark_finished(context.workflow_id)

        self._channel.close()
        if self._control_task is not None:
            await self._control_task

        report: CleanupReport | None = None
        if cleanup_workspaces is None:
            cleanup_workspaces = self.config.workspace.cleanup_on_shutdown
        if cleanup_workspaces:
            report = await self.workspaces.cleanup_all(force=force)
            for task_id, message in report.failed.items():
                logger.warning("Worktree for task %s left in place: %s", task_id, message)

        for finished in self._finished.values():
            finished.set()
        self._finished.clear()
        for subscriber in self._subscribers:
            subscriber.close()
        self._subscribers.clear()
        return report


_hook_owner: WorkflowOrchestrator | None = None


def install_shutdown_hook(
    orchestrator: WorkflowOrchestrator, *, force: bool = False
) -> Callable[[], None]:
    """Route SIGINT/SIGTERM to ``orchestrator.shutdown()``. One hook per process.

    A second signal during shutdown SIGKILLs the remaining agent processes.
    """
    global _hook_owner
    if _hook_owner is not None:
        raise RuntimeError("A workflow shutdown hook is already installed in this process.")

    loop = asyncio.get_running_loop()
    pending: list[asyncio.Task[Any]] = []
    escalated: list[str] = []

    def _on_signal(signal_name: str) -> None:
        if pending:
            # A repeated signal while shutting down kills agents still in their grace window.
            if not escalated and not pending[0].done():
                escalated.append(signal_name)
                logger.warning("Received %s again; killing agent processes", signal_name)
                orchestrator.supervisor.kill_all()
            return
        logger.warning("Received %s; stopping all workflows", signal_name)
        pending.append(loop.create_task(orchestrator.shutdown(force=force)))

    installed: list[signal.Signals] = []
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, _on_signal, signum.name)
        except (NotImplementedError, RuntimeError):
            # add_signal_handler is unavailable on Windows event loops.
            logger.debug("Cannot install handler for %s on this platform", signum.name)
            continue
        installed.append(signum)
    _hook_owner = orchestrator

    def _remove() -> None:
        global _hook_owner
        for signum in installed:
            loop.remove_signal_handler(signum)
        _hook_owner = None

    return _remove
