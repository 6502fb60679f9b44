from __future__ import annotations

import asyncio
import logging
import os
import signal
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Literal

from workflow_engine.errors import (
    AlreadyRunning,
    NotRunning,
    SpawnFailure,
    WorkflowEngineError,
)
from workflow_engine.events import ChannelClosed, EventChannel, EventType, ExecutionEvent
from workflow_engine.launchers import AgentLauncher

logger = logging.getLogger(__name__)

ProcessStatus = Literal["starting", "running", "stopped", "crashed", "killed"]

TERMINAL_PROCESS_STATUSES: frozenset[str] = frozenset({"stopped", "crashed", "killed"})
_TRANSITIONS: dict[str, frozenset[str]] = {
    "starting": frozenset({"running", *TERMINAL_PROCESS_STATUSES}),
    "running": TERMINAL_PROCESS_STATUSES,
}

WORKFLOW_ID_ENV = "TASKMASTER_WORKFLOW_ID"
TASK_ID_ENV = "TASKMASTER_TASK_ID"
STREAM_LIMIT_BYTES = 4 * 1024 * 1024


@dataclass(slots=True)
class SupervisedProcess:
    workflow_id: str
    task_id: str
    command: str
    args: list[str]
    cwd: str
    env: dict[str, str] = field(repr=False, default_factory=dict)
    pid: int | None = None
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    status: ProcessStatus = "starting"
    exit_code: int | None = None
    timed_out: bool = False

    @property
    def terminal(self) -> bool:
        return self.status in TERMINAL_PROCESS_STATUSES

    def transition(self, status: ProcessStatus) -> bool:
        if status not in _TRANSITIONS.get(self.status, frozenset()):
            return False
        self.status = status
        return True


class ProcessSupervisor:
    """Spawns agent processes and reports their lifecycle on one event channel."""

    def __init__(
        self,
        launcher: AgentLauncher,
        channel: EventChannel | None = None,
        *,
        grace_seconds: float = 5.0,
        default_timeout_minutes: float | None = None,
    ) -> None:
        self.launcher = launcher
        self.events = channel or EventChannel(name="process")
        self.grace_seconds = grace_seconds
        self.default_timeout_minutes = default_timeout_minutes
        self._processes: dict[str, SupervisedProcess] = {}
        self._handles: dict[str, asyncio.subprocess.Process] = {}
        self._monitors: dict[str, asyncio.Task[None]] = {}
        self._watched: dict[str, SupervisedProcess] = {}
        self._timers: dict[str, asyncio.Task[None]] = {}
        self._escalations: dict[str, asyncio.Task[None]] = {}
        self._exiting: dict[str, asyncio.subprocess.Process] = {}
        self._stop_requested: set[str] = set()

    async def _emit(
        self,
        event_type: EventType,
        record: SupervisedProcess,
        *,
        payload: dict[str, Any] | None = None,
        error: str | None = None,
    ) -> None:
        event = ExecutionEvent(
            type=event_type,
            workflow_id=record.workflow_id,
            task_id=record.task_id,
            payload=payload,
            error=error,
        )
        try:
            await self.events.publish(event)
        except ChannelClosed:
            logger.debug("Dropping %s for %s; channel closed", event_type, record.workflow_id)

    @staticmethod
    def _send_signal(handle: asyncio.subprocess.Process, *, force: bool) -> None:
        if handle.returncode is not None:
            return
        try:
            if os.name == "posix":
                # The agent leads its own session; signal its whole process group.
                os.killpg(handle.pid, signal.SIGKILL if force else signal.SIGTERM)
            elif force:
                handle.kill()
            else:
                handle.terminate()
        except ProcessLookupError:
            pass

    def is_running(self, workflow_id: str) -> bool:
        return workflow_id in self._processes

    def get(self, workflow_id: str) -> SupervisedProcess | None:
        return self._processes.get(workflow_id)

    def list_processes(self) -> list[SupervisedProcess]:
        return list(self._processes.values())

    async def start(
        self,
        workflow_id: str,
        task_id: str,
        prompt: str,
        *,
        cwd: Path | str,
        env: dict[str, str] | None = None,
        timeout_minutes: float | None = None,
        extra_args: list[str] | None = None,
    ) -> SupervisedProcess:
        if workflow_id in self._processes or workflow_id in self._monitors:
            raise AlreadyRunning(
                f"A process is already tracked for workflow {workflow_id}",
                workflow_id=workflow_id,
                task_id=task_id,
            )

        command = self.launcher.build_command(prompt, extra_args)
        process_env = {
            **os.environ,
            **(env or {}),
            WORKFLOW_ID_ENV: workflow_id,
            TASK_ID_ENV: task_id,
        }
        record = SupervisedProcess(
            workflow_id=workflow_id,
            task_id=task_id,
            command=command[0],
            args=command[1:],
            cwd=str(cwd),
            env=process_env,
        )
        self._processes[workflow_id] = record

        try:
            handle = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(cwd),
                env=process_env,
                stdin=(
                    asyncio.subprocess.PIPE
                    if self.launcher.accepts_input
                    else asyncio.subprocess.DEVNULL
                ),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=STREAM_LIMIT_BYTES,
                start_new_session=os.name == "posix",
            )
        except OSError as exc:
            record.transition("crashed")
            self._processes.pop(workflow_id, None)
            logger.error("Failed to spawn %s for workflow %s: %s", record.command, workflow_id, exc)
            await self._emit(
                "process.error",
                record,
                payload={"stage": "spawn", "command": record.command},
                error=str(exc),
            )
            raise SpawnFailure(
                f"Failed to start agent '{record.command}': {exc}",
                workflow_id=workflow_id,
                task_id=task_id,
            ) from exc

        record.pid = handle.pid
        record.transition("running")
        self._handles[workflow_id] = handle
        self._watched[workflow_id] = record
        logger.info(
            "Started %s (pid %s) for workflow %s in %s",
            record.command,
            record.pid,
            workflow_id,
            record.cwd,
        )
        # Queued before the monitor exists so it always precedes output and exit events.
        await self._emit(
            "process.started",
            record,
            payload={"pid": record.pid, "command": record.command, "cwd": record.cwd},
        )
        self._monitors[workflow_id] = asyncio.create_task(
            self._monitor(record, handle), name=f"monitor-{workflow_id}"
        )

        timeout = self.default_timeout_minutes if timeout_minutes is None else timeout_minutes
        if timeout is not None and timeout > 0:
            self._timers[workflow_id] = asyncio.create_task(
                self._expire_after(record, handle, timeout), name=f"timeout-{workflow_id}"
            )
        return record

    async def _pump(
        self,
        record: SupervisedProcess,
        stream: asyncio.StreamReader | None,
        stream_name: str,
    ) -> None:
        if stream is None:
            return
        while True:
            try:
                raw_line = await stream.readline()
            except ValueError:
                logger.warning(
                    "Discarded oversized %s line from workflow %s", stream_name, record.workflow_id
                )
                continue
            if not raw_line:
                return
            line = raw_line.decode("utf-8", errors="replace").rstrip("\r\n")
            if not line.strip():
                continue
            text = self.launcher.render_output(line) if stream_name == "stdout" else line
            if not text:
                continue
            await self._emit(
                "process.output",
                record,
                payload={"stream": stream_name, "data": text},
            )

    async def _monitor(self, record: SupervisedProcess, handle: asyncio.subprocess.Process) -> None:
        workflow_id = record.workflow_id
        readers = [
            asyncio.create_task(self._pump(record, handle.stdout, "stdout")),
            asyncio.create_task(self._pump(record, handle.stderr, "stderr")),
        ]
        try:
            exit_code = await handle.wait()
            record.exit_code = exit_code
            # Grandchildren may hold the pipes open after the agent exits.
            _, pending = await asyncio.wait(readers, timeout=self.grace_seconds)
            for reader in pending:
                reader.cancel()

            record.transition("stopped" if exit_code == 0 else "crashed")
            self._release(workflow_id, record)
            if workflow_id in self._stop_requested:
                self._stop_requested.discard(workflow_id)
                logger.debug("Workflow %s process exited after stop (%s)", workflow_id, exit_code)
                return

            logger.info(
                "Process for workflow %s exited with code %s (%s)",
                workflow_id,
                exit_code,
                record.status,
            )
            await self._emit(
                "process.stopped",
                record,
                payload={
                    "exit_code": exit_code,
                    "status": record.status,
                    "timed_out": record.timed_out,
                },
                error=None if exit_code == 0 else f"Process exited with code {exit_code}",
            )
        finally:
            for reader in readers:
                if not reader.done():
                    reader.cancel()
            if self._monitors.get(workflow_id) is asyncio.current_task():
                del self._monitors[workflow_id]
                self._watched.pop(workflow_id, None)

    async def _expire_after(
        self,
        record: SupervisedProcess,
        handle: asyncio.subprocess.Process,
        timeout_minutes: float,
    ) -> None:
        await asyncio.sleep(timeout_minutes * 60)
        self._timers.pop(record.workflow_id, None)
        if record.terminal:
            return
        logger.warning(
            "Workflow %s exceeded its %.3g minute timeout; killing pid %s",
            record.workflow_id,
            timeout_minutes,
            record.pid,
        )
        record.timed_out = True
        self._send_signal(handle, force=True)
        record.transition("killed")
        await self._emit(
            "process.error",
            record,
            payload={"timeout": True, "timeout_minutes": timeout_minutes},
            error="timeout",
        )

    async def _escalate(self, record: SupervisedProcess, handle: asyncio.subprocess.Process) -> None:
        try:
            await asyncio.wait_for(handle.wait(), timeout=self.grace_seconds)
        except TimeoutError:
            logger.warning(
                "Workflow %s did not exit within %.1fs of SIGTERM; killing pid %s",
                record.workflow_id,
                self.grace_seconds,
                record.pid,
            )
            self._send_signal(handle, force=True)
        finally:
            self._escalations.pop(record.workflow_id, None)
            self._exiting.pop(record.workflow_id, None)

    def _release(self, workflow_id: str, record: SupervisedProcess) -> None:
        if self._processes.get(workflow_id) is record:
            del self._processes[workflow_id]
            self._handles.pop(workflow_id, None)
        timer = self._timers.pop(workflow_id, None)
        if timer is not None and timer is not asyncio.current_task():
            timer.cancel()

    async def stop(self, workflow_id: str, force: bool = False) -> SupervisedProcess:
        record = self._processes.get(workflow_id)
        handle = self._handles.get(workflow_id)
        if record is None or handle is None:
            raise NotRunning(f"No running process for workflow {workflow_id}", workflow_id=workflow_id)

        self._stop_requested.add(workflow_id)
        self._send_signal(handle, force=force)
        if not force and handle.returncode is None:
            self._exiting[workflow_id] = handle
            self._escalations[workflow_id] = asyncio.create_task(
                self._escalate(record, handle), name=f"escalate-{workflow_id}"
            )
        record.transition("stopped")
        self._release(workflow_id, record)
        logger.info("Stopped workflow %s (pid %s, forced=%s)", workflow_id, record.pid, force)
        await self._emit(
            "process.stopped",
            record,
            payload={"requested": True, "forced": force, "status": record.status},
        )
        return record

    async def send_input(self, workflow_id: str, text: str) -> None:
        handle = self._handles.get(workflow_id)
        if handle is None or workflow_id not in self._processes:
            raise NotRunning(f"No running process for workflow {workflow_id}", workflow_id=workflow_id)
        if handle.stdin is None:
            raise WorkflowEngineError(
                f"Agent '{self.launcher.name}' for workflow {workflow_id} does not accept input",
                workflow_id=workflow_id,
            )
        try:
            handle.stdin.write(f"{text}\n".encode())
            await handle.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as exc:
            raise NotRunning(
                f"Input stream for workflow {workflow_id} is closed", workflow_id=workflow_id
            ) from exc

    async def wait_for_exit(self, workflow_id: str, timeout: float | None = None) -> int | None:
        monitor = self._monitors.get(workflow_id)
        record = self._watched.get(workflow_id)
        if monitor is None or record is None:
            return None
        await asyncio.wait({monitor}, timeout=timeout)
        return record.exit_code

    def kill_all(self) -> int:
        """SIGKILL every agent still alive, including those inside their SIGTERM grace window."""
        handles = [
            handle
            for handle in (*self._handles.values(), *self._exiting.values())
            if handle.returncode is None
        ]
        for handle in handles:
            self._send_signal(handle, force=True)
        if handles:
            logger.warning("Killed %d agent processes", len(handles))
        return len(handles)

    async def cleanup_all(self, force: bool = False) -> dict[str, str]:
        failures: dict[str, str] = {}
        for workflow_id in list(self._processes):
            try:
                await self.stop(workflow_id, force=force)
            except WorkflowEngineError as exc:
                logger.warning("Failed to stop workflow %s: %s", workflow_id, exc)
                failures[workflow_id] = str(exc)

        monitors = list(self._monitors.values())
        if monitors:
            _, pending = await asyncio.wait(monitors, timeout=self.grace_seconds + 1.0)
            if pending:
                logger.warning("%d agent processes still running after cleanup", len(pending))
        return failures
