"""AG-UI run lifecycle events.

Every event kind is its own frozen model inside a closed, discriminated union.
Constructors below require exactly the correlation ids of their kind; the
legal ordering (run_started first, one terminal event last, start/content/end
per message id, start/end/result per tool call id) is the caller's job.

Wire format is one JSON object per event with camelCase keys, e.g.
`{"type": "text_message_content", "timestamp": 1700000000000,
"messageId": "msg_1", "delta": "Hel"}`.
"""

from __future__ import annotations

import json
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel

from agent_engine.types import now_ms


class EventType(str, Enum):
    RUN_STARTED = "run_started"
    RUN_FINISHED = "run_finished"
    RUN_ERROR = "run_error"
    TEXT_MESSAGE_START = "text_message_start"
    TEXT_MESSAGE_CONTENT = "text_message_content"
    TEXT_MESSAGE_END = "text_message_end"
    TOOL_CALL_START = "tool_call_start"
    TOOL_CALL_END = "tool_call_end"
    TOOL_CALL_RESULT = "tool_call_result"


class _EventBase(BaseModel):
    model_config = ConfigDict(
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
    )

    timestamp: int = Field(default_factory=now_ms)


class RunStartedEvent(_EventBase):
    type: Literal["run_started"] = "run_started"
    thread_id: str
    run_id: str


class RunFinishedEvent(_EventBase):
    type: Literal["run_finished"] = "run_finished"
    run_id: str
    thread_id: str | None = None
    result: dict[str, Any] | None = None


class RunErrorEvent(_EventBase):
    type: Literal["run_error"] = "run_error"
    message: str
    code: str | None = None


class TextMessageStartEvent(_EventBase):
    type: Literal["text_message_start"] = "text_message_start"
    message_id: str
    role: Literal["assistant"] = "assistant"


class TextMessageContentEvent(_EventBase):
    type: Literal["text_message_content"] = "text_message_content"
    message_id: str
    delta: str = Field(min_length=1)


class TextMessageEndEvent(_EventBase):
    type: Literal["text_message_end"] = "text_message_end"
    message_id: str


class ToolCallStartEvent(_EventBase):
    type: Literal["tool_call_start"] = "tool_call_start"
    tool_call_id: str
    tool_name: str
    args: dict[str, Any]


class ToolCallEndEvent(_EventBase):
    type: Literal["tool_call_end"] = "tool_call_end"
    tool_call_id: str


class ToolCallResultEvent(_EventBase):
    type: Literal["tool_call_result"] = "tool_call_result"
    tool_call_id: str
    message_id: str
    content: str


Event = Annotated[
    Union[
        RunStartedEvent,
        RunFinishedEvent,
        RunErrorEvent,
        TextMessageStartEvent,
        TextMessageContentEvent,
        TextMessageEndEvent,
        ToolCallStartEvent,
        ToolCallEndEvent,
        ToolCallResultEvent,
    ],
    Field(discriminator="type"),
]

TERMINAL_TYPES = frozenset({EventType.RUN_FINISHED.value, EventType.RUN_ERROR.value})

_event_adapter: TypeAdapter[Event] = TypeAdapter(Event)


def run_started(thread_id: str, run_id: str) -> RunStartedEvent:
    return RunStartedEvent(thread_id=thread_id, run_id=run_id)


def run_finished(
    run_id: str,
    *,
    thread_id: str | None = None,
    result: dict[str, Any] | None = None,
) -> RunFinishedEvent:
    return RunFinishedEvent(run_id=run_id, thread_id=thread_id, result=result)


def run_error(message: str, code: str | None = None) -> RunErrorEvent:
    return RunErrorEvent(message=message, code=code)


def text_message_start(message_id: str) -> TextMessageStartEvent:
    return TextMessageStartEvent(message_id=message_id)


def text_message_content(message_id: str, delta: str) -> TextMessageContentEvent:
    return TextMessageContentEvent(message_id=message_id, delta=delta)


def text_message_end(message_id: str) -> TextMessageEndEvent:
    return TextMessageEndEvent(message_id=message_id)


def tool_call_start(
    tool_call_id: str, tool_name: str, args: dict[str, Any]
) -> ToolCallStartEvent:
    return ToolCallStartEvent(tool_call_id=tool_call_id, tool_name=tool_name, args=args)


def tool_call_end(tool_call_id: str) -> ToolCallEndEvent:
    return ToolCallEndEvent(tool_call_id=tool_call_id)


def tool_call_result(tool_call_id: str, message_id: str, content: str) -> ToolCallResultEvent:
    return ToolCallResultEvent(
        tool_call_id=tool_call_id, message_id=message_id, content=content
    )


def to_wire(event: Event) -> dict[str, Any]:
    """Serialize an event to its JSON-compatible wire dict."""
    return event.model_dump(mode="json", by_alias=True, exclude_none=True)


def parse_event(payload: dict[str, Any] | str | bytes) -> Event:
    """Rebuild the matching event variant from a wire dict or JSON string."""
    if isinstance(payload, (str, bytes)):
        return _event_adapter.validate_json(payload)
    return _event_adapter.validate_python(payload)


def format_sse(event: Event) -> str:
    """Render one server-sent-events frame."""
    return f"data: {json.dumps(to_wire(event), ensure_ascii=False)}\n\n"
