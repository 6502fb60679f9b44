from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal

logger = logging.getLogger(__name__)

EventType = Literal[
    "workflow.created",
    "workflow.started",
    "workflow.completed",
    "workflow.failed",
    "workflow.cancelled",
    "worktree.created",
    "worktree.deleted",
    "process.started",
    "process.stopped",
    "process.output",
    "process.error",
]

EVENT_TYPES: frozenset[str] = frozenset(
    {
        "workflow.created",
        "workflow.started",
        "workflow.completed",
        "workflow.failed",
        "workflow.cancelled",
        "worktree.created",
        "worktree.deleted",
        "process.started",
        "process.stopped",
        "process.output",
        "process.error",
    }
)


def utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(slots=True)
class ExecutionEvent:
    type: EventType
    workflow_id: str
    task_id: str
    timestamp: datetime = field(default_factory=utcnow)
    payload: dict[str, Any] | None = None
    error: str | None = None

    def __post_init__(self) -> None:
        if self.type not in EVENT_TYPES:
            raise ValueError(f"Unknown execution event type: {self.type}")

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "workflowId": self.workflow_id,
            "taskId": self.task_id,
            "timestamp": self.timestamp.isoformat(),
            "payload": dict(self.payload) if self.payload is not None else None,
            "error": self.error,
        }


class ChannelClosed(Exception):
    """Raised when publishing to a closed channel."""


class EventChannel:
    """Bounded FIFO of execution events, multiplexed by workflow id.

    ``publish`` waits for room, which back-pressures producers such as output
    readers. ``publish_nowait`` never waits: when the channel is full the
    oldest queued event is dropped to make room.
    """

    def __init__(self, maxsize: int = 1024, *, name: str = "events") -> None:
        if maxsize <= 0:
            raise ValueError("EventChannel requires a positive maxsize.")
        self.name = name
        self.maxsize = maxsize
        self._queue: asyncio.Queue[ExecutionEvent] = asyncio.Queue(maxsize=maxsize)
        self._readable = asyncio.Event()
        self._closed = False
        self.dropped = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def qsize(self) -> int:
        return self._queue.qsize()

    def _ensure_open(self) -> None:
        if self._closed:
            raise ChannelClosed(f"Channel '{self.name}' is closed.")

    async def publish(self, event: ExecutionEvent) -> None:
        self._ensure_open()
        await self._queue.put(event)
        self._readable.set()

    def publish_nowait(self, event: ExecutionEvent) -> None:
        self._ensure_open()
        if self._queue.full():
            self._queue.get_nowait()
            self.dropped += 1
            logger.warning(
                "Event channel '%s' full, dropped oldest event (total dropped: %d)",
                self.name,
                self.dropped,
            )
        self._queue.put_nowait(event)
        self._readable.set()

    def get_nowait(self) -> ExecutionEvent | None:
        if self._queue.empty():
            return None
        return self._queue.get_nowait()

    async def get(self) -> ExecutionEvent | None:
        """Next event, or ``None`` once the channel is closed and drained."""
        while True:
            if not self._queue.empty():
                return self._queue.get_nowait()
            if self._closed:
                return None
            self._readable.clear()
            await self._readable.wait()

    def close(self) -> None:
        self._closed = True
        self._readable.set()

    async def __aiter__(self) -> AsyncIterator[ExecutionEvent]:
        while True:
            event = await self.get()
            if event is None:
                return
            yield event
