"""Domain models for the task queue and session store."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any


def utc_now() -> datetime:
    """Current UTC timestamp."""

    return datetime.now(tz=UTC)


class TaskStatus(str, Enum):
    """Task lifecycle states."""

    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED},
)

ALLOWED_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.QUEUED: frozenset({TaskStatus.RUNNING, TaskStatus.CANCELLED}),
    TaskStatus.RUNNING: frozenset(
        {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED},
    ),
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.FAILED: frozenset(),
    TaskStatus.CANCELLED: frozenset(),
}


class TaskPriority(str, Enum):
    """Priority recorded on a task. Dispatch order is FIFO regardless."""

    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


class FailureKind(str, Enum):
    """Normalized failure classes reported on failed tasks."""

    SPAWN = "spawn"
    TIMEOUT = "timeout"
    PROCESS = "process"
    SESSION = "session"
    INTERNAL = "internal"


@dataclass(slots=True)
class TaskRequest:
    """Input payload for submitting a task."""

    prompt: str
    user_id: str
    session_id: str | None = None
    priority: TaskPriority = TaskPriority.NORMAL
    timeout_ms: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class Task:
    """Task record owned by the scheduler; callers only ever see copies."""

    task_id: str
    session_id: str | None
    user_id: str
    prompt: str
    status: TaskStatus
    priority: TaskPriority
    created_at: datetime
    updated_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None
    result: str | None = None
    error: str | None = None
    failure_kind: FailureKind | None = None
    exit_code: int | None = None
    error_details: dict[str, Any] = field(default_factory=dict)
    timeout_ms: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class Session:
    """Continuity record binding several tasks to one agent conversation."""

    session_id: str
    user_id: str
    created_at: datetime
    last_accessed_at: datetime
    expires_at: datetime
    external_session_id: str | None = None
    task_count: int = 0
    metadata: dict[str, Any] = field(default_factory=dict)
