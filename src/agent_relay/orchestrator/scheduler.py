"""Bounded task queue with a fixed worker pool running one agent process per task."""

from __future__ import annotations

import logging
import threading
from collections import deque
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any
from uuid import uuid4

from agent_relay.config import AgentSettings, Settings
from agent_relay.errors import (
    AgentProcessError,
    AgentRelayError,
    AgentTimeoutError,
    ProcessSpawnError,
    SessionExpiredError,
    SessionNotFoundError,
    TaskCancellationError,
    TaskNotFoundError,
    TaskQueueFullError,
    TaskValidationError,
)
from agent_relay.orchestrator.backend import (
    AgentCommand,
    ProcessHandle,
    ProcessSupervisor,
    build_agent_command,
)
from agent_relay.orchestrator.cancellation import CancelToken
from agent_relay.orchestrator.decoder import iter_decoded
from agent_relay.orchestrator.events import (
    CompleteEvent,
    DecodeFailure,
    ErrorEvent,
    OutputEvent,
    StartEvent,
    StreamEvent,
    ToolResultEvent,
    ToolUseEvent,
)
from agent_relay.orchestrator.models import (
    ALLOWED_TRANSITIONS,
    FailureKind,
    Session,
    Task,
    TaskPriority,
    TaskRequest,
    TaskStatus,
    utc_now,
)
from agent_relay.orchestrator.sessions import SessionStore
from agent_relay.orchestrator.streaming import TaskEventBroker

logger = logging.getLogger(__name__)

CANCEL_REASON_USER = "cancelled"
CANCEL_REASON_TIMEOUT = "timeout"
CANCEL_REASON_SHUTDOWN = "shutdown"

_CANCEL_SETTLE_SECONDS = 5.0

CommandBuilder = Callable[..., AgentCommand]


@dataclass(slots=True)
class _RunState:
    """What the event loop accumulated from one agent run."""

    external_session_id: str | None
    output: list[str] = field(default_factory=list)
    success: bool = False
    decode_failures: int = 0

    @property
    def text(self) -> str:
        return "".join(self.output)


@dataclass(slots=True)
class _Outcome:
    """Terminal state to record for a task."""

    status: TaskStatus
    result: str | None = None
    error: str | None = None
    failure_kind: FailureKind | None = None
    exit_code: int | None = None
    details: dict[str, Any] = field(default_factory=dict)
    external_session_id: str | None = None

    @classmethod
    def cancelled(cls) -> _Outcome:
        return cls(status=TaskStatus.CANCELLED, error="Task was cancelled")

    @classmethod
    def failure(
        cls,
        kind: FailureKind,
        error: str,
        *,
        exit_code: int | None = None,
        details: dict[str, Any] | None = None,
    ) -> _Outcome:
        return cls(
            status=TaskStatus.FAILED,
            error=error,
            failure_kind=kind,
            exit_code=exit_code,
            details=details or {},
        )


class TaskScheduler:
    """Accepts tasks into a bounded FIFO queue and runs them on a worker pool.

    The task table, the queue and the running-task tokens share one lock, so
    every read-modify-write on them is a single critical section. The session
    store has its own lock and is only ever entered after this one.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        sessions: SessionStore,
        supervisor: ProcessSupervisor,
        agent_settings: AgentSettings,
        max_queue_size: int = 100,
        concurrency: int = 5,
        default_timeout_ms: int = 300_000,
        retain_finished_tasks: int = 1000,
        command_builder: CommandBuilder = build_agent_command,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        if max_queue_size <= 0:
            raise ValueError("max_queue_size must be positive.")
        if concurrency <= 0:
            raise ValueError("concurrency must be positive.")
        if retain_finished_tasks <= 0:
            raise ValueError("retain_finished_tasks must be positive.")
        self.sessions = sessions
        self.supervisor = supervisor
        self.agent_settings = agent_settings
        self.max_queue_size = max_queue_size
        self.concurrency = concurrency
        self.default_timeout_ms = default_timeout_ms
        self.retain_finished_tasks = retain_finished_tasks
        self._command_builder = command_builder
        self._clock = clock
        self._broker = TaskEventBroker()
        self._lock = threading.Lock()
        self._queue_ready = threading.Condition(self._lock)
        self._queue: deque[str] = deque()
        self._tasks: dict[str, Task] = {}
        self._running: dict[str, CancelToken] = {}
        self._finished: dict[str, threading.Event] = {}
        self._implicit_sessions: set[str] = set()
        self._retained: deque[str] = deque()
        self._workers: list[threading.Thread] = []
        self._stopping = False

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        sessions: SessionStore | None = None,
    ) -> TaskScheduler:
        return cls(
            sessions=sessions
            or SessionStore(session_timeout_ms=settings.session.session_timeout_ms),
            supervisor=ProcessSupervisor(
                grace_seconds=settings.agent.grace_seconds,
                probe_timeout_seconds=settings.agent.probe_timeout_seconds,
            ),
            agent_settings=settings.agent,
            max_queue_size=settings.scheduler.max_queue_size,
            concurrency=settings.scheduler.concurrent_task_limit,
            default_timeout_ms=settings.scheduler.task_timeout_ms,
            retain_finished_tasks=settings.scheduler.retain_finished_tasks,
        )

    # -- lifecycle -------------------------------------------------------------

    def start(self) -> None:
        """Start the worker pool; queued tasks begin dispatching immediately."""

        with self._lock:
            if self._stopping:
                raise AgentRelayError("Task scheduler has been shut down.")
            if self._workers:
                return
            for index in range(self.concurrency):
                worker = threading.Thread(
                    target=self._worker_loop,
                    daemon=True,
                    name=f"agent-relay-worker-{index}",
                )
                self._workers.append(worker)
                worker.start()
        logger.info("Task scheduler started with %d workers", self.concurrency)

    def shutdown(self, *, cancel_running: bool = True, timeout: float | None = None) -> None:
        """Cancel queued tasks, optionally cancel running ones, and join workers."""

        with self._lock:
            self._stopping = True
            cancelled: list[Task] = []
            while self._queue:
                task = self._tasks[self._queue.popleft()]
                self._transition(task, TaskStatus.CANCELLED, error="Task was cancelled")
                cancelled.append(_snapshot(task))
            tokens = list(self._running.values()) if cancel_running else []
            workers = list(self._workers)
            self._workers.clear()
            self._queue_ready.notify_all()

        for snapshot in cancelled:
            self._after_terminal(snapshot, external_session_id=None)
        for token in tokens:
            token.cancel(CANCEL_REASON_SHUTDOWN)
        for worker in workers:
            worker.join(timeout=timeout)
        logger.info(
            "Task scheduler stopped (cancelled %d queued, %d running)",
            len(cancelled),
            len(tokens),
        )

    def __enter__(self) -> TaskScheduler:
        self.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.shutdown()

    # -- public operations -----------------------------------------------------

    def submit(self, request: TaskRequest) -> Task:
        """Validate and enqueue; never waits for execution."""

        _validate_request(request)
        priority = TaskPriority(request.priority)
        with self._lock:
            if self._stopping:
                raise AgentRelayError("Task scheduler is shutting down.")
            if len(self._queue) >= self.max_queue_size:
                raise TaskQueueFullError(len(self._queue), self.max_queue_size)
            session_id = request.session_id
            implicit_session = session_id is None
            if implicit_session:
                session_id = self.sessions.create(request.user_id).session_id
            now = self._clock()
            task = Task(
                task_id=str(uuid4()),
                session_id=session_id,
                user_id=request.user_id,
                prompt=request.prompt,
                status=TaskStatus.QUEUED,
                priority=priority,
                created_at=now,
                updated_at=now,
                timeout_ms=request.timeout_ms,
                metadata=dict(request.metadata),
            )
            self._tasks[task.task_id] = task
            self._finished[task.task_id] = threading.Event()
            if implicit_session:
                self._implicit_sessions.add(task.task_id)
            self._queue.append(task.task_id)
            self._broker.open(task.task_id)
            self._queue_ready.notify()
            snapshot = _snapshot(task)
        logger.info(
            "Task queued: %s (session: %s, queue size: %d)",
            snapshot.task_id,
            snapshot.session_id,
            self.queue_size(),
        )
        return snapshot

    def get_status(self, task_id: str) -> Task:
        with self._lock:
            task = self._tasks.get(task_id)
            if task is None:
                raise TaskNotFoundError(task_id)
            return _snapshot(task)

    def cancel(self, task_id: str) -> None:
        """Cancel a queued task outright, or tear down a running task's process.

        For a running task the process is released on the calling thread, then
        this waits up to ``_CANCEL_SETTLE_SECONDS`` for the worker to record the
        terminal state. If the worker is slower than that, ``get_status`` may
        briefly still report ``running``; ``wait`` blocks until it does not.
        """

        token: CancelToken | None = None
        finished: threading.Event | None = None
        snapshot: Task | None = None
        with self._lock:
            task = self._tasks.get(task_id)
            if task is None:
                raise TaskNotFoundError(task_id)
            if task.status is TaskStatus.QUEUED:
                self._queue.remove(task_id)
                self._transition(task, TaskStatus.CANCELLED, error="Task was cancelled")
                snapshot = _snapshot(task)
            elif task.status is TaskStatus.RUNNING:
                token = self._running[task_id]
                finished = self._finished[task_id]
            else:
                raise TaskCancellationError(task_id, f"task is already {task.status.value}")

        if snapshot is not None:
            logger.info("Task cancelled before dispatch: %s", task_id)
            self._after_terminal(snapshot, external_session_id=None)
            return
        if token is not None and finished is not None:
            logger.info("Cancelling running task: %s", task_id)
            token.cancel(CANCEL_REASON_USER)
            finished.wait(_CANCEL_SETTLE_SECONDS)

    def wait(self, task_id: str, timeout: float | None = None) -> Task:
        """Block until the task is terminal (or ``timeout``) and return its snapshot."""

        with self._lock:
            finished = self._finished.get(task_id)
        if finished is None:
            raise TaskNotFoundError(task_id)
        finished.wait(timeout)
        return self.get_status(task_id)

    def stream(self, task_id: str, *, timeout: float | None = None) -> Iterator[StreamEvent]:
        """Stream events for one task, starting with ``connected``."""

        self.get_status(task_id)
        return self._broker.subscribe(task_id, timeout=timeout)

    def list_tasks(
        self,
        *,
        user_id: str | None = None,
        status: TaskStatus | None = None,
    ) -> list[Task]:
        with self._lock:
            return [
                _snapshot(task)
                for task in self._tasks.values()
                if (user_id is None or task.user_id == user_id)
                and (status is None or task.status is status)
            ]

    def queue_size(self) -> int:
        with self._lock:
            return len(self._queue)

    def running_count(self) -> int:
        with self._lock:
            return len(self._running)

    # -- worker side -----------------------------------------------------------

    def _worker_loop(self) -> None:
        while True:
            with self._queue_ready:
                while not self._queue and not self._stopping:
                    self._queue_ready.wait()
                if self._stopping:
                    return
                task_id = self._queue.popleft()
                task = self._tasks[task_id]
                token = CancelToken()
                self._running[task_id] = token
                implicit_session = task_id in self._implicit_sessions
                self._transition(task, TaskStatus.RUNNING, started_at=self._clock())
                snapshot = _snapshot(task)

            logger.info("Task started: %s", task_id)
            self._broker.publish(StreamEvent.progress(task_id, "Task started"))
            try:
                outcome = self._execute(snapshot, token, implicit_session=implicit_session)
            except Exception as error:  # noqa: BLE001
                logger.exception("Unexpected error while executing task %s", task_id)
                outcome = _Outcome.failure(FailureKind.INTERNAL, f"Internal error: {error}")
            self._finalize(task_id, outcome, token)

    def _execute(self, task: Task, token: CancelToken, *, implicit_session: bool) -> _Outcome:
        try:
            session = self._resolve_session(task, implicit=implicit_session)
        except (SessionNotFoundError, SessionExpiredError) as error:
            return _Outcome.failure(
                FailureKind.SESSION,
                str(error),
                details={"session_id": task.session_id},
            )
        if token.is_cancelled():
            return _Outcome.cancelled()

        command = self._command_builder(
            self.agent_settings,
            prompt=task.prompt,
            resume_session_id=session.external_session_id if session else None,
        )
        timeout_ms = task.timeout_ms or self.default_timeout_ms
        try:
            with self.supervisor.supervise(command, label=f"task:{task.task_id}") as handle:
                token.on_cancel(lambda: self.supervisor.release(handle))
                timer = threading.Timer(
                    timeout_ms / 1000,
                    token.cancel,
                    args=(CANCEL_REASON_TIMEOUT,),
                )
                timer.daemon = True
                timer.start()
                try:
                    state = self._consume(
                        task,
                        handle,
                        token,
                        external_session_id=session.external_session_id if session else None,
                    )
                    exit_code = handle.wait()
                finally:
                    timer.cancel()
        except ProcessSpawnError as error:
            logger.error("Task %s failed to spawn agent: %s", task.task_id, error)
            return _Outcome.failure(
                FailureKind.SPAWN,
                str(error),
                details={"transient": error.transient},
            )

        return self._conclude(task, token, state, exit_code, timeout_ms, handle.stderr_tail())

    def _resolve_session(self, task: Task, *, implicit: bool) -> Session | None:
        """Load the task's session as of dispatch.

        A session the caller named must still be valid. One created on the
        caller's behalf at submit time is renewed instead, or re-created if it
        was swept while the task sat in the queue.
        """

        if task.session_id is None:
            return None
        if not implicit:
            return self.sessions.get(task.session_id)
        try:
            return self.sessions.renew(task.session_id)
        except SessionNotFoundError:
            session = self.sessions.create(task.user_id)
            logger.info(
                "Session %s was swept before task %s started; continuing in %s",
                task.session_id,
                task.task_id,
                session.session_id,
            )
            with self._lock:
                self._tasks[task.task_id].session_id = session.session_id
            return session

    def _consume(
        self,
        task: Task,
        handle: ProcessHandle,
        token: CancelToken,
        *,
        external_session_id: str | None,
    ) -> _RunState:
        state = _RunState(external_session_id=external_session_id)
        for item in iter_decoded(handle.iter_stdout()):
            if token.is_cancelled():
                break
            if isinstance(item, DecodeFailure):
                state.decode_failures += 1
                logger.warning(
                    "Skipping undecodable agent output for task %s: %s",
                    task.task_id,
                    item.reason,
                )
                continue

            logger.debug("Agent event for task %s: %s", task.task_id, item.type)
            if isinstance(item, StartEvent):
                if state.external_session_id is None and item.session_id:
                    state.external_session_id = item.session_id
            elif isinstance(item, OutputEvent):
                state.output.append(item.content + "\n")
                self._broker.publish(StreamEvent.output(task.task_id, item.content))
            elif isinstance(item, ToolUseEvent):
                self._broker.publish(
                    StreamEvent.progress(task.task_id, f"Using tool: {item.tool_name}"),
                )
            elif isinstance(item, ToolResultEvent):
                logger.debug("Tool %s finished for task %s", item.tool_name, task.task_id)
            elif isinstance(item, ErrorEvent):
                state.output.append(f"ERROR: {item.message}\n")
                self._broker.publish(
                    StreamEvent.progress(task.task_id, f"Agent error: {item.message}"),
                )
            elif isinstance(item, CompleteEvent):
                state.success = item.succeeded
        return state

    def _conclude(  # noqa: PLR0913
        self,
        task: Task,
        token: CancelToken,
        state: _RunState,
        exit_code: int,
        timeout_ms: int,
        stderr_tail: str,
    ) -> _Outcome:
        output = state.text.strip()
        if token.reason in {CANCEL_REASON_USER, CANCEL_REASON_SHUTDOWN}:
            outcome = _Outcome.cancelled()
        elif token.reason == CANCEL_REASON_TIMEOUT and not state.success:
            error = AgentTimeoutError(task.task_id, timeout_ms)
            outcome = _Outcome.failure(
                FailureKind.TIMEOUT,
                str(error),
                details={"timeout_ms": timeout_ms, "output": output},
            )
        elif not state.success and exit_code != 0:
            error = AgentProcessError(task.task_id, exit_code, output)
            outcome = _Outcome.failure(
                FailureKind.PROCESS,
                str(error),
                exit_code=exit_code,
                details={"exit_code": exit_code, "output": output, "stderr": stderr_tail},
            )
        else:
            outcome = _Outcome(status=TaskStatus.COMPLETED, result=output, exit_code=exit_code)
        if state.decode_failures:
            outcome.details["decode_failures"] = state.decode_failures
        outcome.external_session_id = state.external_session_id
        return outcome

    def _finalize(self, task_id: str, outcome: _Outcome, token: CancelToken) -> None:
        with self._lock:
            self._running.pop(task_id, None)
            task = self._tasks[task_id]
            if token.reason == CANCEL_REASON_USER and outcome.status is not TaskStatus.CANCELLED:
                outcome = replace(outcome, status=TaskStatus.CANCELLED, error="Task was cancelled")
            self._transition(
                task,
                outcome.status,
                result=outcome.result,
                error=outcome.error,
                failure_kind=outcome.failure_kind,
                exit_code=outcome.exit_code,
                error_details=dict(outcome.details),
            )
            snapshot = _snapshot(task)
        self._after_terminal(snapshot, external_session_id=outcome.external_session_id)

    def _after_terminal(self, task: Task, *, external_session_id: str | None) -> None:
        if task.session_id is not None:
            self._record_session_outcome(task.session_id, external_session_id)

        if task.status is TaskStatus.COMPLETED:
            logger.info("Task completed: %s", task.task_id)
            self._broker.publish(StreamEvent.completed(task.task_id, task.result or ""))
        else:
            log = logger.info if task.status is TaskStatus.CANCELLED else logger.warning
            log("Task %s: %s (%s)", task.status.value, task.task_id, task.error)
            self._broker.publish(StreamEvent.failed(task.task_id, task.error or task.status.value))

        with self._lock:
            finished = self._finished[task.task_id]
            self._implicit_sessions.discard(task.task_id)
            self._retained.append(task.task_id)
            evicted: list[str] = []
            while len(self._retained) > self.retain_finished_tasks:
                oldest = self._retained.popleft()
                self._tasks.pop(oldest, None)
                self._finished.pop(oldest, None)
                evicted.append(oldest)
        finished.set()
        for task_id in evicted:
            self._broker.forget(task_id)
        if evicted:
            logger.debug("Evicted %d finished tasks", len(evicted))

    def _record_session_outcome(self, session_id: str, external_session_id: str | None) -> None:
        def _apply(session: Session) -> None:
            session.task_count += 1
            if external_session_id and not session.external_session_id:
                session.external_session_id = external_session_id

        try:
            self.sessions.mutate(session_id, _apply)
        except SessionNotFoundError:
            logger.debug("Session %s no longer exists; task count not recorded", session_id)

    def _transition(self, task: Task, status: TaskStatus, **changes: Any) -> None:
        """Apply a forward status change; caller holds ``self._lock``."""

        if status not in ALLOWED_TRANSITIONS[task.status]:
            raise AgentRelayError(
                f"Illegal task transition {task.status.value} -> {status.value} "
                f"for task {task.task_id}",
            )
        now = self._clock()
        task.status = status
        task.updated_at = now
        if status.is_terminal:
            task.completed_at = now
        for name, value in changes.items():
            setattr(task, name, value)


def _validate_request(request: TaskRequest) -> None:
    if not isinstance(request.prompt, str) or not request.prompt.strip():
        raise TaskValidationError("prompt", "must be a non-empty string")
    if not isinstance(request.user_id, str) or not request.user_id.strip():
        raise TaskValidationError("user_id", "must be a non-empty string")
    if request.session_id is not None and not request.session_id.strip():
        raise TaskValidationError("session_id", "must not be blank when provided")
    if request.timeout_ms is not None and request.timeout_ms <= 0:
        raise TaskValidationError("timeout_ms", "must be positive")
    try:
        TaskPriority(request.priority)
    except ValueError as error:
        raise TaskValidationError("priority", f"unsupported value {request.priority!r}") from error


def _snapshot(task: Task) -> Task:
    return replace(task, metadata=dict(task.metadata), error_details=dict(task.error_details))
