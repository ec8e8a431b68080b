import json
import re
from collections.abc import AsyncIterator

import pytest

from agent_engine.agent.coordinator import RunCoordinator
from agent_engine.agent.presets import create_rag_agent, create_tool_agent
from agent_engine.config import AgentConfig, RetrievalConfig
from agent_engine.errors import InputError
from agent_engine.events.log import EventLog
from agent_engine.llm.fallback import DeterministicChatModel
from agent_engine.llm.model import ModelStream, ModelTurn
from agent_engine.obs.tracing import TraceStore, Usage
from agent_engine.retrieval.augmenter import RetrievalAugmenter
from agent_engine.tools.invoker import ToolInvoker
from agent_engine.tools.registry import (
    Tool,
    ToolExecutionContext,
    ToolParameter,
    ToolRegistration,
    ToolRegistry,
    ToolResult,
    ToolSchema,
)
from agent_engine.types import AgentExecutionContext, Message, ToolCallRequest

_PIECES = re.compile(r"(\s+)")


class ScriptedStream(ModelStream):
    def __init__(self, turn: ModelTurn, error: Exception | None = None) -> None:
        super().__init__()
        self._pending = turn
        self._error = error

    async def _produce(self) -> AsyncIterator[str]:
        yield ""
        for piece in _PIECES.split(self._pending.text):
            yield piece
            if self._error is not None:
                raise self._error
        self._turn = self._pending


class ScriptedModel:
    """Replays prepared turns and records the messages of every call."""

    provider = "openai"
    model_name = "gpt-4o-mini"

    def __init__(self, *turns: ModelTurn, error: Exception | None = None) -> None:
        self._turns = list(turns)
        self._error = error
        self.calls: list[list[Message]] = []
        self.tools_seen: list[list[ToolSchema] | None] = []

    def _next(self, messages: list[Message], tools: list[ToolSchema] | None) -> ModelTurn:
        self.calls.append(list(messages))
        self.tools_seen.append(tools)
        return self._turns.pop(0)

    async def generate(self, system_prompt, messages, *, temperature=None, tools=None):
        if self._error is not None:
            raise self._error
        return self._next(messages, tools)

    def stream(self, system_prompt, messages, *, temperature=None, tools=None):
        return ScriptedStream(self._next(messages, tools), self._error)


class ExplodingRetriever:
    config = RetrievalConfig()

    async def search(self, query: str, scope: str, **options: object) -> list:
        raise RuntimeError("vector store offline")


def _usage(prompt: int, completion: int) -> Usage:
    return Usage(
        input_tokens=prompt, output_tokens=completion, total_tokens=prompt + completion,
        reported=True,
    )


def _context(*messages: Message, session_id: str = "session-1") -> AgentExecutionContext:
    return AgentExecutionContext(
        session_id=session_id,
        organization_id="org1",
        user_id="u1",
        messages=list(messages) or [Message(role="user", content="Hello")],
        run_id="run-1",
    )


def _echo_invoker() -> ToolInvoker:
    async def _echo(args: dict, context: ToolExecutionContext) -> ToolResult:
        return ToolResult(success=True, data={"echo": args["message"]})

    registry = ToolRegistry()
    registry.register(
        "echo",
        ToolRegistration(
            tool=Tool(
                schema=ToolSchema(
                    name="echo",
                    description="Echo a message",
                    parameters={
                        "message": ToolParameter(
                            type="string", description="Message", required=True
                        )
                    },
                ),
                handler=_echo,
            )
        ),
    )
    return ToolInvoker(registry)


def _tool_turn(call_id: str = "call_1") -> ModelTurn:
    return ModelTurn(
        text="",
        usage=_usage(8, 2),
        finish_reason="tool_calls",
        tool_calls=[ToolCallRequest(id=call_id, name="echo", args={"message": "hi"})],
    )


async def test_streamed_run_emits_ordered_events() -> None:
    log = EventLog()
    traces = TraceStore()
    model = ScriptedModel(ModelTurn(text="Hello there world", usage=_usage(10, 5)))
    coordinator = RunCoordinator(model, log, trace_store=traces)
    chunks: list[str] = []

    response = await coordinator.execute_stream(_context(), on_chunk=chunks.append)

    events = await log.read_all("session-1")
    types = [event.type for event in events]
    assert types[0] == "run_started"
    assert types[1] == "text_message_start"
    assert set(types[2:-2]) == {"text_message_content"}
    assert types[-2:] == ["text_message_end", "run_finished"]
    assert events[0].run_id == "run-1"
    assert events[0].thread_id == "session-1"
    assert len({event.message_id for event in events[1:-1]}) == 1
    deltas = [event.delta for event in events if event.type == "text_message_content"]
    assert "".join(deltas) == "Hello there world"
    assert chunks == deltas
    assert all(deltas)

    assert response.content == "Hello there world"
    assert response.tokens_used == 15
    assert response.cost == pytest.approx(10 / 1e6 * 0.15 + 5 / 1e6 * 0.60)
    assert response.finish_reason == "stop"
    assert [event.type for event in response.events] == types
    result = events[-1].result
    assert result["tokensUsed"] == 15
    assert result["finishReason"] == "stop"
    assert result["durationMs"] >= 0
    assert traces.get("run-1").status == "finished"


async def test_batch_run_emits_one_content_event() -> None:
    log = EventLog()
    model = ScriptedModel(ModelTurn(text="All done.", usage=_usage(3, 2)))

    response = await RunCoordinator(model, log).execute(_context())

    assert [event.type for event in response.events] == [
        "run_started",
        "text_message_start",
        "text_message_content",
        "text_message_end",
        "run_finished",
    ]
    assert response.events[2].delta == "All done."
    assert [event.type for event in await log.read_all("session-1")] == [
        event.type for event in response.events
    ]


async def test_empty_messages_rejected_without_events() -> None:
    log = EventLog()
    context = _context()
    context.messages = []

    with pytest.raises(InputError):
        await RunCoordinator(ScriptedModel(), log).execute(context)
    assert await log.read_all("session-1") == []


async def test_model_failure_mid_stream_emits_single_run_error() -> None:
    log = EventLog()
    traces = TraceStore()
    model = ScriptedModel(ModelTurn(text="Partial answer"), error=RuntimeError("model exploded"))

    with pytest.raises(RuntimeError, match="model exploded"):
        await RunCoordinator(model, log, trace_store=traces).execute_stream(_context())

    events = await log.read_all("session-1")
    assert [event.type for event in events] == [
        "run_started",
        "text_message_start",
        "text_message_content",
        "run_error",
    ]
    assert events[-1].message == "model exploded"
    assert traces.get("run-1").status == "errored"
    assert traces.get("run-1").error == "model exploded"


async def test_batch_failure_is_reported_and_reraised() -> None:
    log = EventLog()
    model = ScriptedModel(error=ConnectionError("upstream 503"))

    with pytest.raises(ConnectionError):
        await RunCoordinator(model, log).execute(_context())

    types = [event.type for event in await log.read_all("session-1")]
    assert types == ["run_started", "text_message_start", "run_error"]


async def test_tool_calls_run_and_feed_back_to_model() -> None:
    log = EventLog()
    model = ScriptedModel(
        _tool_turn(),
        ModelTurn(text="The tool echoed hi.", usage=_usage(20, 6)),
    )
    coordinator = create_tool_agent(model, log, _echo_invoker())

    response = await coordinator.execute(_context(Message(role="user", content="Echo hi")))

    assert [event.type for event in response.events] == [
        "run_started",
        "text_message_start",
        "text_message_end",
        "tool_call_start",
        "tool_call_end",
        "tool_call_result",
        "text_message_start",
        "text_message_content",
        "text_message_end",
        "run_finished",
    ]
    start, end, result = response.events[3:6]
    assert start.tool_call_id == end.tool_call_id == result.tool_call_id == "call_1"
    assert start.tool_name == "echo"
    assert start.args == {"message": "hi"}
    payload = json.loads(result.content)
    assert payload["success"] is True
    assert payload["data"] == {"echo": "hi"}

    assert [schema.name for schema in model.tools_seen[0]] == ["echo"]
    second_call = model.calls[1]
    assert second_call[-2].role == "assistant"
    assert second_call[-2].tool_calls[0].id == "call_1"
    assert second_call[-1].role == "tool"
    assert second_call[-1].tool_call_id == "call_1"
    assert json.loads(second_call[-1].content)["data"] == {"echo": "hi"}

    assert response.content == "The tool echoed hi."
    assert [record.tool_name for record in response.tool_calls] == ["echo"]
    assert response.tool_calls[0].result.success
    assert response.tokens_used == 36


async def test_tool_loop_stops_at_max_iterations() -> None:
    model = ScriptedModel(_tool_turn("call_1"), _tool_turn("call_2"))
    coordinator = create_tool_agent(
        model, EventLog(), _echo_invoker(), config=AgentConfig(max_tool_iterations=1)
    )

    response = await coordinator.execute(_context())

    assert len(model.calls) == 2
    assert [record.tool_call_id for record in response.tool_calls] == ["call_1"]
    assert response.finish_reason == "tool_calls"
    assert response.events[-1].type == "run_finished"


async def test_tool_calls_ignored_without_invoker() -> None:
    model = ScriptedModel(_tool_turn())

    response = await RunCoordinator(model, EventLog()).execute(_context())

    assert response.tool_calls == []
    assert len(model.calls) == 1
    assert model.tools_seen == [None]


async def test_unreported_usage_is_estimated() -> None:
    config = AgentConfig(system_prompt="Be brief.")
    coordinator = RunCoordinator(DeterministicChatModel(), EventLog(), config=config)

    response = await coordinator.execute(_context(Message(role="user", content="What is RRF?")))

    prompt_tokens = -(-len("Be brief." + "What is RRF?") // 4)
    completion_tokens = -(-len(response.content) // 4)
    assert response.tokens_used == prompt_tokens + completion_tokens
    assert response.cost == pytest.approx(response.tokens_used * 0.00001)


async def test_run_stream_yields_events_through_terminal() -> None:
    log = EventLog()
    model = ScriptedModel(ModelTurn(text="Streaming works", usage=_usage(4, 2)))
    run_stream = RunCoordinator(model, log).stream(_context())

    events = [event async for event in run_stream]

    assert events[0].type == "run_started"
    assert events[-1].type == "run_finished"
    assert run_stream.response is not None
    assert run_stream.response.content == "Streaming works"
    assert [event.type for event in events] == [
        event.type for event in await log.read_all("session-1")
    ]


async def test_run_stream_reraises_after_run_error() -> None:
    model = ScriptedModel(ModelTurn(text="Partial"), error=RuntimeError("boom"))
    run_stream = RunCoordinator(model, EventLog()).stream(_context())
    seen: list[str] = []

    with pytest.raises(RuntimeError, match="boom"):
        async for event in run_stream:
            seen.append(event.type)

    assert seen[-1] == "run_error"
    assert seen.count("run_error") == 1
    assert run_stream.response is None


async def test_retrieval_failure_does_not_fail_the_run() -> None:
    model = ScriptedModel(ModelTurn(text="Answer without context", usage=_usage(5, 3)))
    coordinator = create_rag_agent(model, EventLog(), ExplodingRetriever())
    question = Message(role="user", content="What does the policy say?")

    response = await coordinator.execute(_context(question))

    assert response.events[-1].type == "run_finished"
    assert model.calls[0][-1].content == "What does the policy say?"
    assert isinstance(coordinator.augmenter, RetrievalAugmenter)


async def test_explicit_tool_invocation_emits_tool_events() -> None:
    log = EventLog()
    coordinator = create_tool_agent(ScriptedModel(), log, _echo_invoker())

    record = await coordinator.invoke_tool(_context(), "echo", {"message": "direct"})

    assert record.result.data == {"echo": "direct"}
    assert [event.type for event in await log.read_all("session-1")] == [
        "tool_call_start",
        "tool_call_end",
        "tool_call_result",
    ]


async def test_sessions_keep_separate_logs() -> None:
    log = EventLog()
    first = RunCoordinator(ScriptedModel(ModelTurn(text="one")), log)
    second = RunCoordinator(ScriptedModel(ModelTurn(text="two")), log)

    await first.execute(_context(session_id="a"))
    await second.execute(_context(session_id="b"))

    for session_id, expected in (("a", ["one"]), ("b", ["two"])):
        events = await log.read_all(session_id)
        assert [e.delta for e in events if e.type == "text_message_content"] == expected
