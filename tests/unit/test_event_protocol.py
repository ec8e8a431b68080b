import json

import pytest
from pydantic import ValidationError

from agent_engine.events import protocol
from agent_engine.events.protocol import (
    RunErrorEvent,
    TextMessageContentEvent,
    ToolCallStartEvent,
    format_sse,
    parse_event,
    to_wire,
)


def test_constructors_set_type_and_timestamp() -> None:
    event = protocol.run_started("thread-1", "run-1")

    assert event.type == "run_started"
    assert event.thread_id == "thread-1"
    assert event.run_id == "run-1"
    assert event.timestamp > 0


def test_wire_format_uses_camel_case_and_drops_empty_fields() -> None:
    wire = to_wire(protocol.run_finished("run-1"))

    assert wire["type"] == "run_finished"
    assert wire["runId"] == "run-1"
    assert "threadId" not in wire
    assert "result" not in wire

    content = to_wire(protocol.text_message_content("msg-1", "Hel"))
    assert set(content) == {"type", "timestamp", "messageId", "delta"}


def test_parse_event_rebuilds_variant() -> None:
    original = protocol.tool_call_start("call-1", "search", {"query": "policy"})

    parsed = parse_event(json.dumps(to_wire(original)))

    assert isinstance(parsed, ToolCallStartEvent)
    assert parsed == original


def test_parse_event_accepts_dicts() -> None:
    parsed = parse_event({"type": "run_error", "timestamp": 1, "message": "boom"})

    assert isinstance(parsed, RunErrorEvent)
    assert parsed.message == "boom"
    assert parsed.code is None


def test_unknown_event_type_rejected() -> None:
    with pytest.raises(ValidationError):
        parse_event({"type": "state_snapshot", "timestamp": 1})


def test_content_delta_must_not_be_empty() -> None:
    with pytest.raises(ValidationError):
        protocol.text_message_content("msg-1", "")


def test_events_are_immutable() -> None:
    event = protocol.text_message_content("msg-1", "Hi")

    with pytest.raises(ValidationError):
        event.delta = "changed"
    assert isinstance(event, TextMessageContentEvent)


def test_format_sse_frame() -> None:
    frame = format_sse(protocol.run_error("Model exploded"))

    assert frame.startswith("data: ")
    assert frame.endswith("\n\n")
    payload = json.loads(frame[len("data: ") :])
    assert payload["type"] == "run_error"
    assert payload["message"] == "Model exploded"
