from __future__ import annotations

import json
import logging
import os
import secrets
import tempfile
import threading
from dataclasses import dataclass, field, fields, replace
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any, Literal

from workflow_engine.errors import StateCorrupt, WorkflowNotFound

logger = logging.getLogger(__name__)

WorkflowStatus = Literal["initializing", "running", "completed", "failed", "cancelled", "timeout"]

TERMINAL_STATUSES: frozenset[str] = frozenset({"completed", "failed", "cancelled", "timeout"})
ACTIVE_STATUSES: frozenset[str] = frozenset({"initializing", "running"})


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _parse_timestamp(raw: Any) -> datetime:
    if not isinstance(raw, str) or not raw:
        raise ValueError(f"Invalid timestamp: {raw!r}")
    parsed = datetime.fromisoformat(raw)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def is_terminal(status: str) -> bool:
    return status in TERMINAL_STATUSES


@dataclass(slots=True)
class WorkflowExecutionContext:
    task_id: str
    title: str
    description: str
    project_root: str
    worktree_path: str
    branch_name: str
    status: WorkflowStatus = "initializing"
    workflow_id: str = ""
    details: str | None = None
    process_id: int | None = None
    started_at: datetime = field(default_factory=_utcnow)
    last_activity: datetime = field(default_factory=_utcnow)
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def terminal(self) -> bool:
        return is_terminal(self.status)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "workflowId": self.workflow_id,
            "taskId": self.task_id,
            "taskTitle": self.title,
            "taskDescription": self.description,
            "taskDetails": self.details,
            "projectRoot": self.project_root,
            "status": self.status,
            "worktreePath": self.worktree_path,
            "branchName": self.branch_name,
            "startedAt": self.started_at.isoformat(),
            "lastActivity": self.last_activity.isoformat(),
        }
        if self.process_id is not None:
            payload["processId"] = self.process_id
        if self.metadata:
            payload["metadata"] = dict(self.metadata)
        return payload

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> WorkflowExecutionContext:
        process_id = payload.get("processId")
        metadata = payload.get("metadata") or {}
        if not isinstance(metadata, dict):
            raise ValueError("metadata must be an object")
        status = payload["status"]
        if status not in TERMINAL_STATUSES and status not in ACTIVE_STATUSES:
            raise ValueError(f"unknown status {status!r}")
        return cls(
            workflow_id=str(payload["workflowId"]),
            task_id=str(payload["taskId"]),
            title=str(payload.get("taskTitle") or ""),
            description=str(payload.get("taskDescription") or ""),
            details=payload.get("taskDetails"),
            project_root=str(payload.get("projectRoot") or ""),
            status=status,
            worktree_path=str(payload["worktreePath"]),
            branch_name=str(payload["branchName"]),
            process_id=int(process_id) if process_id is not None else None,
            started_at=_parse_timestamp(payload["startedAt"]),
            last_activity=_parse_timestamp(payload["lastActivity"]),
            metadata=metadata,
        )


_MUTABLE_FIELDS = frozenset(
    item.name for item in fields(WorkflowExecutionContext) if item.name != "workflow_id"
)


class ExecutionStateStore:
    """JSON workflow registry with an in-memory mirror.

    Every mutation rewrites the whole file. The store assumes it is the only
    writer: a second engine instance sharing the file wins or loses by write
    order.
    """

    def __init__(self, state_file: Path) -> None:
        self.state_file = state_file
        self._workflows: dict[str, WorkflowExecutionContext] = {}
        self._lock = threading.RLock()

    @classmethod
    def for_project(cls, project_root: Path) -> ExecutionStateStore:
        return cls(project_root.resolve() / ".taskmaster" / "workflows.json")

    def _read_registry(self) -> dict[str, WorkflowExecutionContext]:
        try:
            raw = json.loads(self.state_file.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise StateCorrupt(f"Registry is not valid JSON: {exc}") from exc
        if not isinstance(raw, dict):
            raise StateCorrupt("Registry root must be an object keyed by workflow id.")
        workflows: dict[str, WorkflowExecutionContext] = {}
        for workflow_id, payload in raw.items():
            if not isinstance(payload, dict):
                logger.warning("Skipping registry entry %s: not an object", workflow_id)
                continue
            try:
                context = WorkflowExecutionContext.from_dict({"workflowId": workflow_id, **payload})
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning("Skipping malformed registry entry %s: %s", workflow_id, exc)
                continue
            workflows[workflow_id] = context
        return workflows

    def load(self) -> None:
        with self._lock:
            if not self.state_file.exists():
                self._workflows = {}
                return
            try:
                self._workflows = self._read_registry()
            except (OSError, StateCorrupt) as exc:
                logger.warning(
                    "Ignoring unreadable workflow registry %s: %s", self.state_file, exc
                )
                self._workflows = {}
                return
            logger.debug("Loaded %d workflows from %s", len(self._workflows), self.state_file)

    def save(self) -> None:
        with self._lock:
            serialized = json.dumps(
                {workflow_id: ctx.to_dict() for workflow_id, ctx in self._workflows.items()},
                ensure_ascii=False,
                indent=2,
            )
            self.state_file.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(
                prefix=".workflows-", suffix=".json", dir=self.state_file.parent
            )
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as handle:
                    handle.write(serialized)
                    handle.write("\n")
                os.replace(tmp_path, self.state_file)
            except BaseException:
                try:
                    os.unlink(tmp_path)
                except OSError:
                    pass
                raise

    @staticmethod
    def _generate_id(task_id: str) -> str:
        millis = int(_utcnow().timestamp() * 1000)
        return f"wf-{millis}-{secrets.token_hex(3)}-{task_id}"

    def register(self, context: WorkflowExecutionContext) -> str:
        with self._lock:
            workflow_id = self._generate_id(context.task_id)
            while workflow_id in self._workflows:
                workflow_id = self._generate_id(context.task_id)
            now = _utcnow()
            self._workflows[workflow_id] = replace(
                context,
                workflow_id=workflow_id,
                last_activity=now,
                metadata=dict(context.metadata),
            )
            self.save()
            return workflow_id

    def update(self, workflow_id: str, changes: dict[str, Any]) -> WorkflowExecutionContext:
        unknown = set(changes) - _MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown workflow fields: {', '.join(sorted(unknown))}")
        with self._lock:
            current = self._workflows.get(workflow_id)
            if current is None:
                raise WorkflowNotFound(f"Workflow not found: {workflow_id}", workflow_id=workflow_id)
            changes = dict(changes)
            new_status = changes.get("status")
            if current.terminal and new_status is not None and new_status != current.status:
                logger.debug(
                    "Workflow %s is %s; ignoring transition to %s",
                    workflow_id,
                    current.status,
                    new_status,
                )
                changes.pop("status")
            if "metadata" in changes:
                changes["metadata"] = {**current.metadata, **(changes["metadata"] or {})}
            changes["last_activity"] = _utcnow()
            updated = replace(current, **changes)
            self._workflows[workflow_id] = updated
            self.save()
            return updated

    def touch(self, workflow_id: str) -> WorkflowExecutionContext:
        return self.update(workflow_id, {})

    def unregister(self, workflow_id: str) -> None:
        with self._lock:
            if self._workflows.pop(workflow_id, None) is None:
                raise WorkflowNotFound(f"Workflow not found: {workflow_id}", workflow_id=workflow_id)
            self.save()

    def cleanup_older_than(self, hours: float) -> int:
        cutoff = _utcnow() - timedelta(hours=hours)
        with self._lock:
            stale = [
                workflow_id
                for workflow_id, ctx in self._workflows.items()
                if ctx.terminal and ctx.last_activity <= cutoff
            ]
            for workflow_id in stale:
                del self._workflows[workflow_id]
            if stale:
                self.save()
                logger.info("Removed %d finished workflows older than %sh", len(stale), hours)
            return len(stale)

    def clear(self) -> None:
        with self._lock:
            self._workflows = {}
            self.save()

    def get(self, workflow_id: str) -> WorkflowExecutionContext | None:
        with self._lock:
            return self._workflows.get(workflow_id)

    def get_by_task_id(self, task_id: str) -> WorkflowExecutionContext | None:
        with self._lock:
            for ctx in self._workflows.values():
                if ctx.task_id == task_id:
                    return ctx
            return None

    def list_workflows(self) -> list[WorkflowExecutionContext]:
        with self._lock:
            return list(self._workflows.values())

    def list_by_status(self, status: str) -> list[WorkflowExecutionContext]:
        with self._lock:
            return [ctx for ctx in self._workflows.values() if ctx.status == status]

    def running_count(self) -> int:
        return len(self.list_by_status("running"))

    def has_active_workflow(self, task_id: str) -> bool:
        with self._lock:
            return any(
                ctx.task_id == task_id and not ctx.terminal for ctx in self._workflows.values()
            )
