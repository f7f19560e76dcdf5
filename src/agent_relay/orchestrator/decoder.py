"""Incremental decoder for the agent's newline-delimited JSON stdout protocol."""

from __future__ import annotations

import codecs
import json
import logging
from collections.abc import Callable, Iterable, Iterator
from typing import Any

from agent_relay.orchestrator.events import (
    AgentEvent,
    CompleteEvent,
    DecodedItem,
    DecodeFailure,
    ErrorEvent,
    OutputEvent,
    StartEvent,
    ToolResultEvent,
    ToolUseEvent,
)

logger = logging.getLogger(__name__)


class _MissingField(ValueError):
    pass


class StreamDecoder:
    """Turns arbitrary byte chunks into decoded events, one per complete line.

    Only the trailing partial line is buffered. Multi-byte UTF-8 sequences split
    across chunks are reassembled before line splitting.
    """

    def __init__(self) -> None:
        self._text = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""

    def feed(self, chunk: bytes | str) -> list[DecodedItem]:
        """Append one chunk and return items for every line it completes."""

        text = chunk if isinstance(chunk, str) else self._text.decode(chunk)
        if not text:
            return []
        self._buffer += text
        if "\n" not in text:
            return []

        *lines, self._buffer = self._buffer.split("\n")
        items: list[DecodedItem] = []
        for line in lines:
            item = decode_line(line)
            if item is not None:
                items.append(item)
        return items

    def close(self) -> list[AgentEvent]:
        """Flush the leftover buffer once the underlying stream has closed.

        A trailing fragment that still does not decode is dropped: it is the
        expected residue of an abruptly terminated writer.
        """

        tail = self._buffer + self._text.decode(b"", final=True)
        self._buffer = ""
        item = decode_line(tail)
        if item is None:
            return []
        if isinstance(item, DecodeFailure):
            logger.debug("Dropping undecodable trailing fragment: %r", item.raw_line[:200])
            return []
        return [item]


def iter_decoded(chunks: Iterable[bytes | str]) -> Iterator[DecodedItem]:
    """Lazily decode a finite chunk stream, ending when the stream ends."""

    decoder = StreamDecoder()
    for chunk in chunks:
        yield from decoder.feed(chunk)
    yield from decoder.close()


def decode_line(line: str) -> DecodedItem | None:
    """Decode one protocol line; blank lines yield None."""

    trimmed = line.strip()
    if not trimmed:
        return None
    try:
        payload = json.loads(trimmed)
    except json.JSONDecodeError as error:
        return DecodeFailure(raw_line=trimmed, reason=f"invalid JSON: {error}")
    if not isinstance(payload, dict):
        return DecodeFailure(raw_line=trimmed, reason="expected a JSON object")

    event_type = payload.get("type")
    builder = _BUILDERS.get(event_type) if isinstance(event_type, str) else None
    if builder is None:
        return DecodeFailure(raw_line=trimmed, reason=f"unknown event type: {event_type!r}")
    try:
        return builder(payload)
    except _MissingField as error:
        return DecodeFailure(raw_line=trimmed, reason=str(error))


def _required_str(payload: dict[str, Any], key: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str):
        raise _MissingField(f"{payload.get('type')} event requires string field {key!r}")
    return value


def _optional_str(payload: dict[str, Any], key: str) -> str | None:
    value = payload.get(key)
    return value if isinstance(value, str) else None


def _build_start(payload: dict[str, Any]) -> StartEvent:
    return StartEvent(
        task_id=_required_str(payload, "taskId"),
        session_id=_optional_str(payload, "sessionId"),
    )


def _build_output(payload: dict[str, Any]) -> OutputEvent:
    return OutputEvent(content=_required_str(payload, "content"))


def _build_tool_use(payload: dict[str, Any]) -> ToolUseEvent:
    return ToolUseEvent(
        tool_name=_required_str(payload, "toolName"),
        tool_input=payload.get("toolInput"),
    )


def _build_tool_result(payload: dict[str, Any]) -> ToolResultEvent:
    return ToolResultEvent(
        tool_name=_required_str(payload, "toolName"),
        tool_output=payload.get("toolOutput"),
    )


def _build_error(payload: dict[str, Any]) -> ErrorEvent:
    return ErrorEvent(
        message=_required_str(payload, "message"),
        code=_optional_str(payload, "code"),
    )


def _build_complete(payload: dict[str, Any]) -> CompleteEvent:
    status = _required_str(payload, "status")
    if status not in {"success", "failure"}:
        raise _MissingField(f"complete event has unsupported status {status!r}")
    return CompleteEvent(task_id=_required_str(payload, "taskId"), status=status)  # type: ignore[arg-type]


_BUILDERS: dict[str, Callable[[dict[str, Any]], AgentEvent]] = {
    "start": _build_start,
    "output": _build_output,
    "tool_use": _build_tool_use,
    "tool_result": _build_tool_result,
    "error": _build_error,
    "complete": _build_complete,
}
