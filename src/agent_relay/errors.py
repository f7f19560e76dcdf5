"""Error taxonomy shared by the supervisor, session store and scheduler."""

from __future__ import annotations

from datetime import datetime


class AgentRelayError(RuntimeError):
    """Base class for all gateway errors."""


class ProcessSpawnError(AgentRelayError):
    """Agent process could not be started; carries a retryability hint."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient


class AgentTimeoutError(AgentRelayError):
    """Task did not finish within its execution timeout."""

    def __init__(self, task_id: str, timeout_ms: int) -> None:
        super().__init__(f"Task {task_id} timed out after {timeout_ms} ms")
        self.task_id = task_id
        self.timeout_ms = timeout_ms


class AgentProcessError(AgentRelayError):
    """Agent exited non-zero without reporting success."""

    def __init__(self, task_id: str, exit_code: int, output: str) -> None:
        super().__init__(f"Agent process for task {task_id} exited with code {exit_code}")
        self.task_id = task_id
        self.exit_code = exit_code
        self.output = output


class TaskQueueFullError(AgentRelayError):
    def __init__(self, queue_size: int, max_size: int) -> None:
        super().__init__(f"Task queue is full ({queue_size}/{max_size})")
        self.queue_size = queue_size
        self.max_size = max_size


class TaskNotFoundError(AgentRelayError):
    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task not found: {task_id}")
        self.task_id = task_id


class TaskCancellationError(AgentRelayError):
    def __init__(self, task_id: str, reason: str) -> None:
        super().__init__(f"Cannot cancel task {task_id}: {reason}")
        self.task_id = task_id
        self.reason = reason


class TaskValidationError(AgentRelayError):
    """Submitted task request has an invalid field."""

    def __init__(self, field: str, message: str) -> None:
        super().__init__(f"Invalid task request field {field!r}: {message}")
        self.field = field


class SessionNotFoundError(AgentRelayError):
    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session not found: {session_id}")
        self.session_id = session_id


class SessionExpiredError(AgentRelayError):
    """Session exists but is past its expiry; it has been evicted."""

    def __init__(self, session_id: str, expired_at: datetime) -> None:
        super().__init__(f"Session {session_id} expired at {expired_at.isoformat()}")
        self.session_id = session_id
        self.expired_at = expired_at
