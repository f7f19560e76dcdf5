"""Per-task fan-out of stream events to subscribers."""

from __future__ import annotations

import queue
import threading
from collections.abc import Iterator

from agent_relay.orchestrator.events import StreamEvent


class TaskEventBroker:
    """Keeps each task's event history and pushes new events to live subscribers.

    A subscriber always sees the full history first, so subscribing after the
    task finished still yields every event up to the final one.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._history: dict[str, list[StreamEvent]] = {}
        self._subscribers: dict[str, list[queue.SimpleQueue[StreamEvent]]] = {}

    def open(self, task_id: str) -> None:
        with self._lock:
            self._history.setdefault(task_id, [])

    def publish(self, event: StreamEvent) -> None:
        with self._lock:
            history = self._history.setdefault(event.task_id, [])
            if history and history[-1].is_final:
                return
            history.append(event)
            subscribers = list(self._subscribers.get(event.task_id, ()))
        for subscriber in subscribers:
            subscriber.put(event)

    def subscribe(self, task_id: str, *, timeout: float | None = None) -> Iterator[StreamEvent]:
        """Yield ``connected`` then every event until the final one.

        ``timeout`` bounds the wait for each next event; on expiry the iterator
        simply ends.
        """

        inbox: queue.SimpleQueue[StreamEvent] = queue.SimpleQueue()
        with self._lock:
            backlog = list(self._history.get(task_id, ()))
            finished = bool(backlog) and backlog[-1].is_final
            if not finished:
                self._subscribers.setdefault(task_id, []).append(inbox)

        try:
            yield StreamEvent.connected(task_id)
            for event in backlog:
                yield event
            if finished:
                return
            while True:
                try:
                    event = inbox.get(timeout=timeout)
                except queue.Empty:
                    return
                yield event
                if event.is_final:
                    return
        finally:
            if not finished:
                self._unsubscribe(task_id, inbox)

    def forget(self, task_id: str) -> None:
        """Drop a task's history; live subscribers keep what they already hold."""

        with self._lock:
            self._history.pop(task_id, None)

    def history(self, task_id: str) -> list[StreamEvent]:
        with self._lock:
            return list(self._history.get(task_id, ()))

    def _unsubscribe(self, task_id: str, inbox: queue.SimpleQueue[StreamEvent]) -> None:
        with self._lock:
            subscribers = self._subscribers.get(task_id)
            if subscribers is None:
                return
            if inbox in subscribers:
                subscribers.remove(inbox)
            if not subscribers:
                del self._subscribers[task_id]
