from __future__ import annotations

import json

import allure

from agent_relay.orchestrator.decoder import StreamDecoder, decode_line, iter_decoded
from agent_relay.orchestrator.events import (
    CompleteEvent,
    DecodeFailure,
    ErrorEvent,
    OutputEvent,
    StartEvent,
    ToolResultEvent,
    ToolUseEvent,
)

pytestmark = [
    allure.epic("Agent Protocol"),
    allure.feature("Stream Decoding"),
]


def test_events_split_across_chunk_boundaries_are_reassembled() -> None:
    decoder = StreamDecoder()

    first = decoder.feed(b'{"type":"start","taskId":"t1"}\n{"type":"out')
    second = decoder.feed(b'put","content":"hi"}\n')

    assert first == [StartEvent(task_id="t1", session_id=None)]
    assert second == [OutputEvent(content="hi")]
    assert decoder.close() == []


def test_invalid_line_is_reported_and_decoding_continues() -> None:
    decoder = StreamDecoder()

    items = decoder.feed(b'not json at all\n{"type":"output","content":"next"}\n')

    assert len(items) == 2
    assert isinstance(items[0], DecodeFailure)
    assert items[0].raw_line == "not json at all"
    assert "invalid JSON" in items[0].reason
    assert items[1] == OutputEvent(content="next")


def test_blank_lines_are_skipped() -> None:
    decoder = StreamDecoder()

    items = decoder.feed(b'\n   \n{"type":"output","content":"x"}\n\n')

    assert items == [OutputEvent(content="x")]


def test_multibyte_character_split_across_chunks() -> None:
    encoded = json.dumps({"type": "output", "content": "привет ✓"}, ensure_ascii=False).encode()
    split_at = encoded.index("✓".encode()) + 1
    decoder = StreamDecoder()

    assert decoder.feed(encoded[:split_at]) == []
    items = decoder.feed(encoded[split_at:] + b"\n")

    assert items == [OutputEvent(content="привет ✓")]


def test_trailing_fragment_is_decoded_on_close_when_complete() -> None:
    decoder = StreamDecoder()

    assert decoder.feed(b'{"type":"complete","taskId":"t1","status":"success"}') == []
    assert decoder.close() == [CompleteEvent(task_id="t1", status="success")]


def test_trailing_fragment_that_does_not_decode_is_dropped_on_close() -> None:
    decoder = StreamDecoder()

    decoder.feed(b'{"type":"output","content":"ok"}\n{"type":"outp')

    assert decoder.close() == []


def test_every_event_variant_decodes() -> None:
    lines = [
        {"type": "start", "taskId": "t1", "sessionId": "s1"},
        {"type": "output", "content": "text"},
        {"type": "tool_use", "toolName": "bash", "toolInput": {"cmd": "ls"}},
        {"type": "tool_result", "toolName": "bash", "toolOutput": "file.txt"},
        {"type": "error", "message": "boom", "code": "E1"},
        {"type": "complete", "taskId": "t1", "status": "failure"},
    ]

    decoded = [decode_line(json.dumps(line)) for line in lines]

    assert decoded == [
        StartEvent(task_id="t1", session_id="s1"),
        OutputEvent(content="text"),
        ToolUseEvent(tool_name="bash", tool_input={"cmd": "ls"}),
        ToolResultEvent(tool_name="bash", tool_output="file.txt"),
        ErrorEvent(message="boom", code="E1"),
        CompleteEvent(task_id="t1", status="failure"),
    ]
    assert decoded[-1].succeeded is False


def test_unknown_type_and_missing_fields_are_decode_failures() -> None:
    unknown = decode_line('{"type":"heartbeat"}')
    missing_content = decode_line('{"type":"output"}')
    wrong_status = decode_line('{"type":"complete","taskId":"t1","status":"maybe"}')
    not_object = decode_line("[1, 2, 3]")

    assert isinstance(unknown, DecodeFailure)
    assert "unknown event type" in unknown.reason
    assert isinstance(missing_content, DecodeFailure)
    assert "content" in missing_content.reason
    assert isinstance(wrong_status, DecodeFailure)
    assert isinstance(not_object, DecodeFailure)
    assert decode_line("   ") is None


def test_iter_decoded_ends_with_the_stream() -> None:
    chunks = [b'{"type":"output",', b'"content":"a"}\n{"type":"output","content":"b"}']

    assert list(iter_decoded(chunks)) == [OutputEvent(content="a"), OutputEvent(content="b")]
