from langchain_core.language_models.fake_chat_models import GenericFakeChatModel
from langchain_core.messages import AIMessage, HumanMessage, SystemMessage, ToolMessage

from agent_engine.llm.fallback import DeterministicChatModel
from agent_engine.llm.model import LangChainChatModel, to_langchain_messages
from agent_engine.tools.registry import ToolParameter, ToolSchema
from agent_engine.types import Message, ToolCallRequest

SEARCH_SCHEMA = ToolSchema(
    name="search",
    description="Search",
    parameters={"query": ToolParameter(type="string", description="Query", required=True)},
)


def _fake(*responses: AIMessage | str) -> LangChainChatModel:
    return LangChainChatModel(
        GenericFakeChatModel(messages=iter(responses)), provider="openai", model_name="gpt-4o-mini"
    )


def test_messages_convert_to_langchain_types() -> None:
    converted = to_langchain_messages(
        "Be brief.",
        [
            Message(role="user", content="Find the policy"),
            Message(
                role="assistant",
                content="",
                tool_calls=[ToolCallRequest(id="call_1", name="search", args={"query": "policy"})],
            ),
            Message(role="tool", content='{"success": true}', tool_call_id="call_1"),
        ],
    )

    assert [type(message) for message in converted] == [
        SystemMessage,
        HumanMessage,
        AIMessage,
        ToolMessage,
    ]
    assert converted[0].content == "Be brief."
    assert converted[2].tool_calls[0]["name"] == "search"
    assert converted[3].tool_call_id == "call_1"


async def test_generate_reports_usage() -> None:
    model = _fake(
        AIMessage(
            content="Data is encrypted at rest.",
            usage_metadata={"input_tokens": 12, "output_tokens": 6, "total_tokens": 18},
        )
    )

    turn = await model.generate("system", [Message(role="user", content="How is data stored?")])

    assert turn.text == "Data is encrypted at rest."
    assert turn.usage.reported is True
    assert (turn.usage.input_tokens, turn.usage.output_tokens) == (12, 6)
    assert turn.finish_reason == "stop"
    assert turn.tool_calls == []


async def test_generate_surfaces_tool_calls() -> None:
    model = _fake(
        AIMessage(
            content="",
            tool_calls=[{"name": "search", "args": {"query": "policy"}, "id": "call_9"}],
        )
    )

    turn = await model.generate(
        "system", [Message(role="user", content="Search it")], tools=[SEARCH_SCHEMA]
    )

    assert turn.finish_reason == "tool_calls"
    assert [(call.id, call.name, call.args) for call in turn.tool_calls] == [
        ("call_9", "search", {"query": "policy"})
    ]


async def test_stream_yields_non_empty_deltas_and_final_turn() -> None:
    model = _fake("Encryption keeps customer data safe")

    stream = model.stream("system", [Message(role="user", content="Why encrypt?")])
    deltas = [delta async for delta in stream]

    assert len(deltas) > 1
    assert all(deltas)
    assert "".join(deltas) == "Encryption keeps customer data safe"
    assert stream.turn.text == "Encryption keeps customer data safe"


async def test_deterministic_model_acknowledges_plain_questions() -> None:
    turn = await DeterministicChatModel().generate(
        "system", [Message(role="user", content="What is RRF?")]
    )

    assert turn.text.startswith("No language model is configured")
    assert turn.text.endswith("You asked: What is RRF?")
    assert turn.usage.reported is False


async def test_deterministic_model_cites_injected_sources() -> None:
    content = (
        "=== KNOWLEDGE BASE CONTEXT ===\n\nFound 1 relevant document:\n\n"
        "[Source 1] policy (100.0% relevant)\n"
        "Customer data must be encrypted at rest. Keys rotate yearly.\n\n"
        "\n=== END CONTEXT ===\n\nQuestion: How is data stored?"
    )

    turn = await DeterministicChatModel().generate("system", [Message(role="user", content=content)])

    assert turn.text == "Customer data must be encrypted at rest. [Source 1]"


async def test_deterministic_model_summarises_tool_results() -> None:
    turn = await DeterministicChatModel().generate(
        "system",
        [Message(role="tool", content='{"success":true}', tool_call_id="call_1")],
    )

    assert turn.text == 'Tool result: {"success":true}'


async def test_deterministic_stream_replays_text() -> None:
    stream = DeterministicChatModel().stream("system", [Message(role="user", content="Hello there")])

    deltas = [delta async for delta in stream]

    assert "".join(deltas) == stream.turn.text
    assert all(deltas)
