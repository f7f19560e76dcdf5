"""Event variants for the agent stdout protocol and the external task stream."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Literal


@dataclass(slots=True, frozen=True)
class StartEvent:
    task_id: str
    session_id: str | None = None
    type: Literal["start"] = "start"


@dataclass(slots=True, frozen=True)
class OutputEvent:
    content: str
    type: Literal["output"] = "output"


@dataclass(slots=True, frozen=True)
class ToolUseEvent:
    tool_name: str
    tool_input: Any = None
    type: Literal["tool_use"] = "tool_use"


@dataclass(slots=True, frozen=True)
class ToolResultEvent:
    tool_name: str
    tool_output: Any = None
    type: Literal["tool_result"] = "tool_result"


@dataclass(slots=True, frozen=True)
class ErrorEvent:
    message: str
    code: str | None = None
    type: Literal["error"] = "error"


@dataclass(slots=True, frozen=True)
class CompleteEvent:
    task_id: str
    status: Literal["success", "failure"]
    type: Literal["complete"] = "complete"

    @property
    def succeeded(self) -> bool:
        return self.status == "success"


@dataclass(slots=True, frozen=True)
class DecodeFailure:
    """One line that could not be decoded into an agent event."""

    raw_line: str
    reason: str


AgentEvent = StartEvent | OutputEvent | ToolUseEvent | ToolResultEvent | ErrorEvent | CompleteEvent
DecodedItem = AgentEvent | DecodeFailure


# -- external stream events ----------------------------------------------------


@dataclass(slots=True, frozen=True)
class StreamEvent:
    """Task-scoped event published to stream subscribers."""

    type: Literal["connected", "progress", "output", "completed", "error"]
    task_id: str
    message: str | None = None
    content: str | None = None
    result: str | None = None
    error: str | None = None

    @property
    def is_final(self) -> bool:
        return self.type in {"completed", "error"}

    def to_dict(self) -> dict[str, str]:
        payload = {"type": self.type, "taskId": self.task_id}
        for key in ("message", "content", "result", "error"):
            value = getattr(self, key)
            if value is not None:
                payload[key] = value
        return payload

    @classmethod
    def connected(cls, task_id: str) -> StreamEvent:
        return cls(type="connected", task_id=task_id)

    @classmethod
    def progress(cls, task_id: str, message: str) -> StreamEvent:
        return cls(type="progress", task_id=task_id, message=message)

    @classmethod
    def output(cls, task_id: str, content: str) -> StreamEvent:
        return cls(type="output", task_id=task_id, content=content)

    @classmethod
    def completed(cls, task_id: str, result: str) -> StreamEvent:
        return cls(type="completed", task_id=task_id, result=result)

    @classmethod
    def failed(cls, task_id: str, error: str) -> StreamEvent:
        return cls(type="error", task_id=task_id, error=error)
