import asyncio
import signal
import sys
import time
from pathlib import Path

import pytest

from workflow_engine.errors import AlreadyRunning, NotRunning, SpawnFailure, WorkflowEngineError
from workflow_engine.events import EventChannel, ExecutionEvent
from workflow_engine.launchers import AgentLauncher
from workflow_engine.process import ProcessSupervisor

SLEEPER = "import time; time.sleep(30)"
STUBBORN = (
    "import signal, time; signal.signal(signal.SIGTERM, signal.SIG_IGN); "
    "print('ready', flush=True); time.sleep(30)"
)


class ScriptLauncher(AgentLauncher):
    """Runs a fixed Python snippet instead of a real agent."""

    name = "script"

    def __init__(self, script: str, *, binary: str = sys.executable, accepts_input: bool = True) -> None:
        super().__init__(binary)
        self.script = script
        self.accepts_input = accepts_input

    def build_command(self, prompt: str, extra_args: list[str] | None = None) -> list[str]:
        _ = prompt
        return [self.binary, "-c", self.script, *(extra_args or [])]


async def _collect_until(
    channel: EventChannel, event_type: str, timeout: float = 15.0
) -> list[ExecutionEvent]:
    events: list[ExecutionEvent] = []

    async def _drain() -> None:
        while True:
            event = await channel.get()
            assert event is not None
            events.append(event)
            if event.type == event_type:
                return

    await asyncio.wait_for(_drain(), timeout=timeout)
    return events


def _output(events: list[ExecutionEvent]) -> list[str]:
    return [event.payload["data"] for event in events if event.type == "process.output"]


def test_start_streams_output_and_reports_exit(tmp_path: Path) -> None:
    script = (
        "import os, sys; print('hello'); print(os.environ['TASKMASTER_TASK_ID']); "
        "print(os.environ['TASKMASTER_WORKFLOW_ID']); print('warn', file=sys.stderr)"
    )

    async def scenario() -> None:
        supervisor = ProcessSupervisor(ScriptLauncher(script), grace_seconds=0.5)
        record = await supervisor.start("wf-1", "42", "prompt", cwd=tmp_path)
        assert record.pid is not None
        assert supervisor.is_running("wf-1")

        events = await _collect_until(supervisor.events, "process.stopped")

        assert events[0].type == "process.started"
        assert events[0].payload["pid"] == record.pid
        by_stream: dict[str, list[str]] = {"stdout": [], "stderr": []}
        for event in events:
            if event.type == "process.output":
                by_stream[event.payload["stream"]].append(event.payload["data"])
        assert by_stream == {"stdout": ["hello", "42", "wf-1"], "stderr": ["warn"]}
        assert events[-1].payload["exit_code"] == 0
        assert events[-1].payload["status"] == "stopped"
        assert events[-1].error is None
        assert record.status == "stopped"
        assert supervisor.is_running("wf-1") is False

    asyncio.run(scenario())


def test_non_zero_exit_is_crashed(tmp_path: Path) -> None:
    async def scenario() -> None:
        supervisor = ProcessSupervisor(ScriptLauncher("import sys; sys.exit(3)"), grace_seconds=0.5)
        record = await supervisor.start("wf-2", "2", "prompt", cwd=tmp_path)

        events = await _collect_until(supervisor.events, "process.stopped")

        assert events[-1].payload["exit_code"] == 3
        assert events[-1].payload["status"] == "crashed"
        assert "3" in (events[-1].error or "")
        assert record.status == "crashed"
        assert record.exit_code == 3

    asyncio.run(scenario())


def test_stop_twice_raises_not_running_without_extra_events(tmp_path: Path) -> None:
    async def scenario() -> None:
        supervisor = ProcessSupervisor(ScriptLauncher(SLEEPER), grace_seconds=0.5)
        record = await supervisor.start("wf-3", "3", "prompt", cwd=tmp_path)

        stopped = await supervisor.stop("wf-3")
        assert stopped is record
        assert record.status == "stopped"
        exit_code = await supervisor.wait_for_exit("wf-3", timeout=5.0)
        assert exit_code is not None and exit_code != 0

        with pytest.raises(NotRunning):
            await supervisor.stop("wf-3")

        types = []
        while (event := supervisor.events.get_nowait()) is not None:
            types.append(event.type)
        assert types == ["process.started", "process.stopped"]

    asyncio.run(scenario())


def test_graceful_stop_escalates_to_sigkill(tmp_path: Path) -> None:
    async def scenario() -> None:
        supervisor = ProcessSupervisor(ScriptLauncher(STUBBORN), grace_seconds=0.5)
        record = await supervisor.start("wf-g", "g", "prompt", cwd=tmp_path)
        await _collect_until(supervisor.events, "process.output")

        started = time.monotonic()
        await supervisor.stop("wf-g")
        exit_code = await supervisor.wait_for_exit("wf-g", timeout=10.0)

        assert exit_code == -signal.SIGKILL
        assert 0.4 <= time.monotonic() - started < 5.0
        assert record.status == "stopped"

    asyncio.run(scenario())


def test_kill_all_skips_the_grace_window(tmp_path: Path) -> None:
    async def scenario() -> None:
        supervisor = ProcessSupervisor(ScriptLauncher(STUBBORN), grace_seconds=30.0)
        await supervisor.start("wf-k", "k", "prompt", cwd=tmp_path)
        await _collect_until(supervisor.events, "process.output")
        await supervisor.stop("wf-k")

        assert supervisor.kill_all() == 1
        exit_code = await supervisor.wait_for_exit("wf-k", timeout=10.0)

        assert exit_code == -signal.SIGKILL
        assert supervisor.kill_all() == 0

    asyncio.run(scenario())


def test_timeout_kills_process(tmp_path: Path) -> None:
    async def scenario() -> None:
        supervisor = ProcessSupervisor(ScriptLauncher(SLEEPER), grace_seconds=0.5)
        record = await supervisor.start("wf-4", "4", "prompt", cwd=tmp_path, timeout_minutes=0.001)

        events = await _collect_until(supervisor.events, "process.stopped")

        errors = [event for event in events if event.type == "process.error"]
        assert len(errors) == 1
        assert errors[0].error == "timeout"
        assert errors[0].payload["timeout"] is True
        assert events[-1].payload["timed_out"] is True
        assert record.status == "killed"
        assert record.timed_out is True
        assert supervisor.is_running("wf-4") is False

    asyncio.run(scenario())


def test_default_timeout_applies_when_not_given(tmp_path: Path) -> None:
    async def scenario() -> None:
        supervisor = ProcessSupervisor(
            ScriptLauncher(SLEEPER), grace_seconds=0.5, default_timeout_minutes=0.001
        )
        record = await supervisor.start("wf-5", "5", "prompt", cwd=tmp_path)
        await _collect_until(supervisor.events, "process.stopped")
        assert record.status == "killed"

    asyncio.run(scenario())


def test_spawn_failure_reports_error(tmp_path: Path) -> None:
    launcher = ScriptLauncher("", binary=str(tmp_path / "missing-agent"))

    async def scenario() -> None:
        supervisor = ProcessSupervisor(launcher, grace_seconds=0.5)
        with pytest.raises(SpawnFailure) as excinfo:
            await supervisor.start("wf-6", "6", "prompt", cwd=tmp_path)

        assert excinfo.value.workflow_id == "wf-6"
        assert supervisor.is_running("wf-6") is False
        event = supervisor.events.get_nowait()
        assert event is not None
        assert event.type == "process.error"
        assert event.payload["stage"] == "spawn"

    asyncio.run(scenario())


def test_start_same_workflow_twice_raises(tmp_path: Path) -> None:
    async def scenario() -> None:
        supervisor = ProcessSupervisor(ScriptLauncher(SLEEPER), grace_seconds=0.5)
        await supervisor.start("wf-7", "7", "prompt", cwd=tmp_path)
        with pytest.raises(AlreadyRunning) as excinfo:
            await supervisor.start("wf-7", "7", "prompt", cwd=tmp_path)
        assert excinfo.value.retriable is True
        await supervisor.stop("wf-7", force=True)
        await supervisor.wait_for_exit("wf-7", timeout=5.0)

    asyncio.run(scenario())


def test_send_input_reaches_process(tmp_path: Path) -> None:
    script = "import sys; print('got:' + sys.stdin.readline().strip())"

    async def scenario() -> None:
        supervisor = ProcessSupervisor(ScriptLauncher(script), grace_seconds=0.5)
        await supervisor.start("wf-8", "8", "prompt", cwd=tmp_path)
        await supervisor.send_input("wf-8", "ping")

        events = await _collect_until(supervisor.events, "process.stopped")
        assert "got:ping" in _output(events)

        with pytest.raises(NotRunning):
            await supervisor.send_input("wf-8", "again")

    asyncio.run(scenario())


def test_send_input_to_agent_without_stdin_fails(tmp_path: Path) -> None:
    async def scenario() -> None:
        supervisor = ProcessSupervisor(
            ScriptLauncher(SLEEPER, accepts_input=False), grace_seconds=0.5
        )
        await supervisor.start("wf-9", "9", "prompt", cwd=tmp_path)
        with pytest.raises(WorkflowEngineError, match="does not accept input"):
            await supervisor.send_input("wf-9", "hello")
        await supervisor.stop("wf-9", force=True)
        await supervisor.wait_for_exit("wf-9", timeout=5.0)

    asyncio.run(scenario())


def test_cleanup_all_stops_every_process(tmp_path: Path) -> None:
    async def scenario() -> None:
        supervisor = ProcessSupervisor(ScriptLauncher(SLEEPER), grace_seconds=0.5)
        first = await supervisor.start("wf-a", "a", "prompt", cwd=tmp_path)
        second = await supervisor.start("wf-b", "b", "prompt", cwd=tmp_path)

        failures = await supervisor.cleanup_all()

        assert failures == {}
        assert supervisor.list_processes() == []
        assert first.status == "stopped"
        assert second.status == "stopped"
        assert await supervisor.wait_for_exit("wf-a") is None

    asyncio.run(scenario())
