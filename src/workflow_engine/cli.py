from __future__ import annotations

import asyncio
import json
import logging
import sys
from collections.abc import Iterator
from pathlib import Path
from typing import Any

import click

from workflow_engine.config import (
    DEFAULT_CONFIG_PATH,
    EngineConfig,
    load_config,
    save_config,
)
from workflow_engine.errors import VCSOperationError, WorkflowEngineError
from workflow_engine.events import EventChannel
from workflow_engine.launchers import AgentLauncher, build_launcher
from workflow_engine.orchestrator import (
    TaskDescriptor,
    WorkflowOptions,
    WorkflowOrchestrator,
    install_shutdown_hook,
)
from workflow_engine.state import ExecutionStateStore, WorkflowExecutionContext
from workflow_engine.workspace import WorkspaceManager

DEFAULT_TASKS_FILE = Path(".taskmaster") / "tasks" / "tasks.json"


def _configure_logging(debug: bool) -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )
    logging.getLogger("workflow_engine").setLevel(logging.DEBUG if debug else logging.INFO)


def _resolve_config_path(project_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = project_root / config_path
    return config_path.resolve()


def _load(config_value: str) -> tuple[Path, EngineConfig]:
    project_root = Path.cwd().resolve()
    config = load_config(_resolve_config_path(project_root, config_value))
    if config.engine.debug:
        _configure_logging(True)
    return project_root, config


def _build_launcher(config: EngineConfig) -> AgentLauncher:
    return build_launcher(config.agent)


def _build_workspaces(project_root: Path, config: EngineConfig) -> WorkspaceManager:
    return WorkspaceManager(
        project_root,
        config.worktree_base_dir(project_root),
        branch_prefix=config.workspace.branch_prefix,
        start_point=config.workspace.start_point or None,
    )


def _load_store(project_root: Path, config: EngineConfig) -> ExecutionStateStore:
    store = ExecutionStateStore(config.state_file(project_root))
    store.load()
    return store


def _engine_error(exc: WorkflowEngineError) -> click.ClickException:
    message = str(exc)
    if isinstance(exc, VCSOperationError) and exc.stderr and exc.stderr not in message:
        message = f"{message}\n{exc.stderr}"
    return click.ClickException(message)


def _iter_task_payloads(data: Any) -> Iterator[dict[str, Any]]:
    if isinstance(data, dict) and isinstance(data.get("tasks"), list):
        groups = [data["tasks"]]
    elif isinstance(data, dict):
        # Tagged layout: {"master": {"tasks": [...]}, "feature-x": {...}}
        groups = [
            tag["tasks"]
            for tag in data.values()
            if isinstance(tag, dict) and isinstance(tag.get("tasks"), list)
        ]
    else:
        groups = []
    for tasks in groups:
        for task in tasks:
            if not isinstance(task, dict):
                continue
            yield task
            for subtask in task.get("subtasks") or []:
                if isinstance(subtask, dict):
                    yield {**subtask, "id": f"{task.get('id')}.{subtask.get('id')}"}


def _find_task(tasks_file: Path, task_id: str) -> TaskDescriptor:
    try:
        data = json.loads(tasks_file.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise click.ClickException(f"Tasks file not found: {tasks_file}") from exc
    except json.JSONDecodeError as exc:
        raise click.ClickException(f"Tasks file is not valid JSON: {exc}") from exc
    for payload in _iter_task_payloads(data):
        if str(payload.get("id")) == task_id:
            return TaskDescriptor.from_dict(payload)
    raise click.ClickException(f"Task {task_id} not found in {tasks_file}")


def _format_workflow(context: WorkflowExecutionContext) -> str:
    pid = context.process_id if context.process_id is not None else "-"
    return (
        f"{context.workflow_id} task={context.task_id} {context.status:<12} "
        f"pid={pid} {context.branch_name} {context.worktree_path}"
    )


async def _echo_events(channel: EventChannel, quiet: bool) -> None:
    async for event in channel:
        if event.type == "process.output":
            if quiet:
                continue
            data = (event.payload or {}).get("data", "")
            click.echo(f"[{event.task_id}] {data}")
        elif event.type.startswith(("workflow.", "worktree.")):
            suffix = f": {event.error}" if event.error else ""
            click.echo(f"[{event.task_id}] {event.type}{suffix}", err=True)


async def _run_workflows(
    orchestrator: WorkflowOrchestrator,
    tasks: list[TaskDescriptor],
    options: WorkflowOptions,
    quiet: bool,
) -> list[WorkflowExecutionContext]:
    await orchestrator.initialize()
    available = orchestrator.config.engine.max_concurrent - orchestrator.running_count()
    if len(tasks) > available:
        raise click.ClickException(
            f"Cannot start {len(tasks)} workflows: {available} of "
            f"{orchestrator.config.engine.max_concurrent} slots available."
        )

    channel = orchestrator.subscribe()
    printer = asyncio.create_task(_echo_events(channel, quiet))
    remove_hook = install_shutdown_hook(orchestrator)
    try:
        workflow_ids = [await orchestrator.create_workflow(task, options) for task in tasks]
        return [await orchestrator.wait_for_completion(wid) for wid in workflow_ids]
    finally:
        remove_hook()
        # Finished worktrees hold the agents' work; only signal-driven shutdown removes them.
        await orchestrator.shutdown(cleanup_workspaces=False)
        await printer


@click.group()
@click.option("--debug", is_flag=True, default=False, help="Enable debug logging.")
def cli(debug: bool) -> None:
    """Run Task Master tasks with coding agents in isolated git worktrees."""
    _configure_logging(debug)


@cli.command("init")
@click.option("--agent", type=click.Choice(["claude", "codex"]), default=None)
@click.option("--config", "config_value", default=str(DEFAULT_CONFIG_PATH), show_default=True)
def init_command(agent: str | None, config_value: str) -> None:
    project_root = Path.cwd().resolve()
    config_path = _resolve_config_path(project_root, config_value)
    config = load_config(config_path)
    if agent:
        config.agent.kind = agent  # type: ignore[assignment]
    save_config(config_path, config)
    config.state_file(project_root).parent.mkdir(parents=True, exist_ok=True)

    click.echo(f"Initialized workflow engine in {project_root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Agent: {config.agent.kind}")
    click.echo(f"Worktrees: {config.worktree_base_dir(project_root)}")


@cli.command("run")
@click.argument("task_ids", nargs=-1, required=True)
@click.option("--title", default=None, help="Run an ad-hoc task with this title.")
@click.option("--description", default="", help="Description for an ad-hoc task.")
@click.option("--details", default=None, help="Implementation details for an ad-hoc task.")
@click.option("--tasks-file", default=str(DEFAULT_TASKS_FILE), show_default=True)
@click.option("--branch", "branch_name", default=None, help="Branch name (single task only).")
@click.option("--timeout", "timeout_minutes", type=float, default=None, help="Minutes.")
@click.option("--cleanup/--keep-worktree", "cleanup_on_exit", default=None)
@click.option("--quiet", is_flag=True, default=False, help="Do not stream agent output.")
@click.option("--config", "config_value", default=str(DEFAULT_CONFIG_PATH), show_default=True)
def run_command(
    task_ids: tuple[str, ...],
    title: str | None,
    description: str,
    details: str | None,
    tasks_file: str,
    branch_name: str | None,
    timeout_minutes: float | None,
    cleanup_on_exit: bool | None,
    quiet: bool,
    config_value: str,
) -> None:
    project_root, config = _load(config_value)
    if (title is not None or branch_name) and len(task_ids) > 1:
        raise click.ClickException("--title and --branch apply to a single task.")
    if title is not None:
        tasks = [
            TaskDescriptor(id=task_ids[0], title=title, description=description, details=details)
        ]
    else:
        tasks_path = _resolve_config_path(project_root, tasks_file)
        tasks = [_find_task(tasks_path, task_id) for task_id in task_ids]

    options = WorkflowOptions(
        branch_name=branch_name,
        timeout_minutes=timeout_minutes,
        cleanup_on_exit=cleanup_on_exit,
    )
    orchestrator = WorkflowOrchestrator(project_root, config, launcher=_build_launcher(config))
    try:
        results = asyncio.run(_run_workflows(orchestrator, tasks, options, quiet))
    except WorkflowEngineError as exc:
        raise _engine_error(exc) from exc

    for context in results:
        click.echo(_format_workflow(context))
    unfinished = [context for context in results if context.status != "completed"]
    if unfinished:
        raise click.ClickException(
            f"{len(unfinished)} of {len(results)} workflows did not complete."
        )


@cli.command("list")
@click.option("--all", "include_all", is_flag=True, default=False, help="Include finished.")
@click.option("--json", "as_json", is_flag=True, default=False)
@click.option("--config", "config_value", default=str(DEFAULT_CONFIG_PATH), show_default=True)
def list_command(include_all: bool, as_json: bool, config_value: str) -> None:
    project_root, config = _load(config_value)
    store = _load_store(project_root, config)
    workflows = store.list_workflows()
    if not include_all:
        workflows = [context for context in workflows if not context.terminal]
    workflows.sort(key=lambda context: context.started_at)
    if as_json:
        click.echo(
            json.dumps([context.to_dict() for context in workflows], ensure_ascii=False, indent=2)
        )
        return
    if not workflows:
        click.echo("No workflows found.")
        return
    for context in workflows:
        click.echo(_format_workflow(context))


@cli.command("status")
@click.argument("workflow_ref")
@click.option("--config", "config_value", default=str(DEFAULT_CONFIG_PATH), show_default=True)
def status_command(workflow_ref: str, config_value: str) -> None:
    """Show one workflow by workflow id or task id."""
    project_root, config = _load(config_value)
    store = _load_store(project_root, config)
    context = store.get(workflow_ref)
    if context is None:
        # A task id may have several finished runs; show the latest.
        runs = [ctx for ctx in store.list_workflows() if ctx.task_id == workflow_ref]
        context = max(runs, key=lambda ctx: ctx.started_at, default=None)
    if context is None:
        raise click.ClickException(f"Workflow not found: {workflow_ref}")
    click.echo(json.dumps(context.to_dict(), ensure_ascii=False, indent=2))


@cli.command("worktrees")
@click.option("--config", "config_value", default=str(DEFAULT_CONFIG_PATH), show_default=True)
def worktrees_command(config_value: str) -> None:
    project_root, config = _load(config_value)
    handles = asyncio.run(_build_workspaces(project_root, config).list_workspaces())
    if not handles:
        click.echo("No task worktrees found.")
        return
    for handle in handles:
        lock = f" locked ({handle.lock_reason or 'no reason'})" if handle.locked else ""
        click.echo(f"{handle.task_id} {handle.branch} {handle.path}{lock}")


@cli.command("cleanup")
@click.option("--force", is_flag=True, default=False, help="Discard uncommitted changes.")
@click.option("--config", "config_value", default=str(DEFAULT_CONFIG_PATH), show_default=True)
def cleanup_command(force: bool, config_value: str) -> None:
    project_root, config = _load(config_value)
    report = asyncio.run(_build_workspaces(project_root, config).cleanup_all(force=force))
    click.echo(f"Removed: {len(report.removed)}")
    if report.skipped:
        click.echo(f"Skipped (locked): {', '.join(report.skipped)}")
    for task_id, message in report.failed.items():
        click.echo(f"Failed {task_id}: {message}", err=True)
    if report.failed:
        raise click.ClickException(f"{len(report.failed)} worktrees could not be removed.")


@cli.command("prune")
@click.option("--hours", type=float, default=None, help="Retention window; config default.")
@click.option("--config", "config_value", default=str(DEFAULT_CONFIG_PATH), show_default=True)
def prune_command(hours: float | None, config_value: str) -> None:
    project_root, config = _load(config_value)
    store = _load_store(project_root, config)
    retention = config.state.retention_hours if hours is None else hours
    removed = store.cleanup_older_than(retention)
    click.echo(f"Pruned {removed} finished workflows older than {retention:g}h")


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
