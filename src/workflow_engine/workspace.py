from __future__ import annotations

import asyncio
import logging
import re
import subprocess
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from workflow_engine.errors import (
    VCSOperationError,
    WorkflowEngineError,
    WorkspaceConflict,
    WorkspaceNotFound,
)

logger = logging.getLogger(__name__)

_UNSAFE_SEGMENT_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def sanitize_task_id(task_id: str) -> str:
    """Filesystem- and ref-safe form of a task id (``"1.2/a b"`` -> ``"1.2-a-b"``)."""
    segment = _UNSAFE_SEGMENT_CHARS.sub("-", str(task_id).strip()).strip(".-")
    segment = re.sub(r"\.{2,}", ".", segment)
    if not segment:
        raise ValueError(f"Task id {task_id!r} has no filesystem-safe characters.")
    return segment


@dataclass(slots=True)
class WorkspaceHandle:
    path: Path
    branch: str
    task_id: str
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    commit_hash: str | None = None
    locked: bool = False
    lock_reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": str(self.path),
            "branch": self.branch,
            "taskId": self.task_id,
            "createdAt": self.created_at.isoformat(),
            "commitHash": self.commit_hash,
            "locked": self.locked,
            "lockReason": self.lock_reason,
        }


@dataclass(slots=True)
class WorkspaceRemoval:
    task_id: str
    path: Path
    workspace_removed: bool
    branch_deleted: bool
    branch_delete_error: str | None = None


@dataclass(slots=True)
class CleanupReport:
    removed: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)


def parse_worktree_porcelain(output: str) -> list[dict[str, Any]]:
    entries: list[dict[str, Any]] = []
    current: dict[str, Any] = {}
    for raw_line in output.splitlines():
        line = raw_line.strip()
        if not line:
            if current:
                entries.append(current)
                current = {}
            continue
        key, _, value = line.partition(" ")
        if key == "worktree":
            if current:
                entries.append(current)
            current = {"worktree": value}
        elif key == "HEAD":
            current["head"] = value
        elif key == "branch":
            current["branch"] = value.removeprefix("refs/heads/")
        elif key == "locked":
            current["locked"] = True
            current["lock_reason"] = value or None
        elif key in {"detached", "bare", "prunable"}:
            current[key] = True
    if current:
        entries.append(current)
    return entries


class WorkspaceManager:
    """Per-task git linked worktrees under one base directory."""

    def __init__(
        self,
        repo_root: Path,
        base_dir: Path,
        *,
        branch_prefix: str = "task/",
        start_point: str | None = None,
    ) -> None:
        self.repo_root = repo_root.resolve()
        self.base_dir = base_dir.resolve()
        self.branch_prefix = branch_prefix
        self.start_point = start_point or None
        self._branch_pattern = re.compile(
            rf"^{re.escape(branch_prefix)}(?P<segment>.+)-(?P<stamp>\d{{10,}})$"
        )
        self._handles: dict[str, WorkspaceHandle] = {}
        self._pending: set[str] = set()

    def _run_git(
        self,
        args: list[str],
        *,
        cwd: Path | None = None,
        check: bool = True,
        task_id: str | None = None,
    ) -> subprocess.CompletedProcess[str]:
        command = ["git", "--no-pager", *args]
        try:
            proc = subprocess.run(
                command,
                cwd=cwd or self.repo_root,
                text=True,
                capture_output=True,
            )
        except OSError as exc:
            raise VCSOperationError(
                f"Failed to run git: {exc}", command=command, task_id=task_id
            ) from exc
        if check and proc.returncode != 0:
            stderr = proc.stderr.strip() or proc.stdout.strip()
            raise VCSOperationError(
                f"git {args[0]} failed with exit code {proc.returncode}: {stderr}",
                command=command,
                exit_code=proc.returncode,
                stderr=stderr,
                task_id=task_id,
            )
        return proc

    async def _git(
        self,
        args: list[str],
        *,
        cwd: Path | None = None,
        check: bool = True,
        task_id: str | None = None,
    ) -> subprocess.CompletedProcess[str]:
        return await asyncio.to_thread(
            self._run_git, args, cwd=cwd, check=check, task_id=task_id
        )

    def workspace_path(self, task_id: str) -> Path:
        path = (self.base_dir / f"task-{sanitize_task_id(task_id)}").resolve()
        if not path.is_relative_to(self.base_dir):
            raise WorkspaceConflict(
                f"Workspace path {path} escapes base directory {self.base_dir}",
                task_id=task_id,
            )
        return path

    def generate_branch_name(self, task_id: str) -> str:
        return f"{self.branch_prefix}{sanitize_task_id(task_id)}-{int(time.time() * 1000)}"

    def is_task_branch(self, branch: str | None) -> bool:
        return bool(branch) and self._branch_pattern.match(branch) is not None

    def get_workspace(self, task_id: str) -> WorkspaceHandle | None:
        return self._handles.get(task_id)

    async def create_workspace(self, task_id: str, branch_name: str | None = None) -> WorkspaceHandle:
        if task_id in self._handles or task_id in self._pending:
            raise WorkspaceConflict(f"Task {task_id} already has a workspace.", task_id=task_id)
        path = self.workspace_path(task_id)
        if path.exists():
            raise WorkspaceConflict(f"Workspace path already exists: {path}", task_id=task_id)

        branch = branch_name or self.generate_branch_name(task_id)
        self._pending.add(task_id)
        try:
            await asyncio.to_thread(self.base_dir.mkdir, parents=True, exist_ok=True)
            args = ["worktree", "add", "-b", branch, str(path)]
            if self.start_point:
                args.append(self.start_point)
            await self._git(args, task_id=task_id)
            head = await self._git(["rev-parse", "HEAD"], cwd=path, check=False, task_id=task_id)
        finally:
            self._pending.discard(task_id)

        commit_hash = head.stdout.strip() if head.returncode == 0 else ""
        handle = WorkspaceHandle(
            path=path,
            branch=branch,
            task_id=task_id,
            commit_hash=commit_hash or None,
        )
        self._handles[task_id] = handle
        logger.info("Created worktree for task %s at %s on %s", task_id, path, branch)
        return handle

    async def _resolve_handle(self, task_id: str) -> WorkspaceHandle:
        handle = self._handles.get(task_id)
        if handle is not None:
            return handle
        segment = sanitize_task_id(task_id)
        for candidate in await self.list_workspaces():
            if candidate.task_id in {task_id, segment}:
                return candidate
        raise WorkspaceNotFound(f"No workspace found for task {task_id}", task_id=task_id)

    async def _remove_handle(self, handle: WorkspaceHandle, *, force: bool) -> WorkspaceRemoval:
        args = ["worktree", "remove"]
        if force:
            args.append("--force")
            if handle.locked:
                args.append("--force")
        args.append(str(handle.path))
        await self._git(args, task_id=handle.task_id)

        branch_deleted = False
        branch_error: str | None = None
        if self.is_task_branch(handle.branch):
            try:
                await self._git(["branch", "-D", handle.branch], task_id=handle.task_id)
                branch_deleted = True
            except VCSOperationError as exc:
                branch_error = exc.stderr or str(exc)
                logger.warning(
                    "Removed worktree %s but could not delete branch %s: %s",
                    handle.path,
                    handle.branch,
                    branch_error,
                )
        else:
            logger.debug("Keeping non-task branch %s", handle.branch)

        for key, tracked in list(self._handles.items()):
            if tracked.path == handle.path:
                del self._handles[key]
        logger.info("Removed worktree for task %s at %s", handle.task_id, handle.path)
        return WorkspaceRemoval(
            task_id=handle.task_id,
            path=handle.path,
            workspace_removed=True,
            branch_deleted=branch_deleted,
            branch_delete_error=branch_error,
        )

    async def remove_workspace(self, task_id: str, force: bool = False) -> WorkspaceRemoval:
        handle = await self._resolve_handle(task_id)
        return await self._remove_handle(handle, force=force)

    def _handle_from_entry(self, entry: dict[str, Any]) -> WorkspaceHandle | None:
        raw_path = entry.get("worktree")
        if not raw_path or entry.get("bare"):
            return None
        path = Path(raw_path).resolve()
        if not path.is_relative_to(self.base_dir) or path == self.base_dir:
            return None

        locked = bool(entry.get("locked"))
        lock_reason = entry.get("lock_reason")
        for tracked in self._handles.values():
            if tracked.path == path:
                tracked.commit_hash = entry.get("head") or tracked.commit_hash
                tracked.locked = locked
                tracked.lock_reason = lock_reason
                return tracked

        branch = entry.get("branch")
        match = self._branch_pattern.match(branch or "")
        if match is None:
            return None
        return WorkspaceHandle(
            path=path,
            branch=branch,
            task_id=match.group("segment"),
            created_at=datetime.fromtimestamp(int(match.group("stamp")) / 1000, tz=UTC),
            commit_hash=entry.get("head"),
            locked=locked,
            lock_reason=lock_reason,
        )

    async def list_workspaces(self) -> list[WorkspaceHandle]:
        try:
            proc = await self._git(["worktree", "list", "--porcelain"])
        except VCSOperationError as exc:
            logger.warning("Could not list worktrees: %s", exc)
            return []
        handles: list[WorkspaceHandle] = []
        for entry in parse_worktree_porcelain(proc.stdout):
            handle = self._handle_from_entry(entry)
            if handle is not None:
                handles.append(handle)
        return handles

    async def lock_workspace(self, task_id: str, reason: str | None = None) -> WorkspaceHandle:
        handle = await self._resolve_handle(task_id)
        args = ["worktree", "lock"]
        if reason:
            args.extend(["--reason", reason])
        args.append(str(handle.path))
        await self._git(args, task_id=task_id)
        handle.locked = True
        handle.lock_reason = reason
        self._handles.setdefault(task_id, handle)
        return handle

    async def unlock_workspace(self, task_id: str) -> WorkspaceHandle:
        handle = await self._resolve_handle(task_id)
        await self._git(["worktree", "unlock", str(handle.path)], task_id=task_id)
        handle.locked = False
        handle.lock_reason = None
        return handle

    async def cleanup_all(self, force: bool = False) -> CleanupReport:
        report = CleanupReport()
        for handle in await self.list_workspaces():
            if handle.locked:
                logger.info("Skipping locked worktree %s (%s)", handle.path, handle.lock_reason)
                report.skipped.append(handle.task_id)
                continue
            try:
                await self._remove_handle(handle, force=force)
            except WorkflowEngineError as exc:
                logger.warning("Failed to remove worktree %s: %s", handle.path, exc)
                report.failed[handle.task_id] = str(exc)
            else:
                report.removed.append(handle.task_id)
        try:
            await self._git(["worktree", "prune"])
        except VCSOperationError as exc:
            logger.debug("git worktree prune failed: %s", exc)
        return report
