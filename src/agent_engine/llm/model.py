"""Language-model boundary: send messages, stream text deltas, report usage."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any, Protocol

from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import (
    AIMessage,
    AIMessageChunk,
    BaseMessage,
    HumanMessage,
    SystemMessage,
    ToolMessage,
)

from agent_engine.obs.logging import get_logger
from agent_engine.obs.tracing import Usage
from agent_engine.tools.registry import ToolSchema
from agent_engine.types import Message, ToolCallRequest, new_id

logger = get_logger(__name__)


@dataclass(slots=True)
class ModelTurn:
    """Outcome of one model invocation."""

    text: str
    usage: Usage = field(default_factory=Usage)
    finish_reason: str = "stop"
    tool_calls: list[ToolCallRequest] = field(default_factory=list)


class ModelStream(ABC):
    """Async iterator of text deltas.

    `turn` becomes available once iteration is exhausted and carries the
    usage, finish reason and requested tool calls of the whole turn.
    """

    def __init__(self) -> None:
        self._turn: ModelTurn | None = None

    def __aiter__(self) -> AsyncIterator[str]:
        return self._produce()

    @property
    def turn(self) -> ModelTurn:
        if self._turn is None:
            raise RuntimeError("model stream has not been fully consumed")
        return self._turn

    @abstractmethod
    def _produce(self) -> AsyncIterator[str]:
        """Yield deltas and set `self._turn` before returning."""


class ChatModel(Protocol):
    provider: str | None
    model_name: str | None

    async def generate(
        self,
        system_prompt: str,
        messages: list[Message],
        *,
        temperature: float | None = None,
        tools: list[ToolSchema] | None = None,
    ) -> ModelTurn:
        ...

    def stream(
        self,
        system_prompt: str,
        messages: list[Message],
        *,
        temperature: float | None = None,
        tools: list[ToolSchema] | None = None,
    ) -> ModelStream:
        ...


def to_langchain_messages(system_prompt: str, messages: list[Message]) -> list[BaseMessage]:
    converted: list[BaseMessage] = [SystemMessage(content=system_prompt)]
    for message in messages:
        if message.role == "system":
            converted.append(SystemMessage(content=message.content))
        elif message.role == "user":
            converted.append(HumanMessage(content=message.content))
        elif message.role == "assistant":
            converted.append(
                AIMessage(
                    content=message.content,
                    tool_calls=[
                        {"name": call.name, "args": call.args, "id": call.id}
                        for call in message.tool_calls
                    ],
                )
            )
        else:
            converted.append(
                ToolMessage(content=message.text(), tool_call_id=message.tool_call_id or "")
            )
    return converted


def _content_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "".join(
            part if isinstance(part, str) else str(part.get("text", ""))
            for part in content
            if isinstance(part, str) or part.get("type") == "text"
        )
    return ""


def _turn_from_message(message: AIMessage) -> ModelTurn:
    usage = Usage()
    if message.usage_metadata:
        usage = Usage(
            input_tokens=message.usage_metadata.get("input_tokens", 0),
            output_tokens=message.usage_metadata.get("output_tokens", 0),
            total_tokens=message.usage_metadata.get("total_tokens", 0),
            reported=True,
        )
    tool_calls = [
        ToolCallRequest(id=call.get("id") or new_id("call"), name=call["name"], args=call["args"])
        for call in message.tool_calls
    ]
    finish_reason = message.response_metadata.get("finish_reason") or (
        "tool_calls" if tool_calls else "stop"
    )
    return ModelTurn(
        text=_content_text(message.content),
        usage=usage,
        finish_reason=str(finish_reason),
        tool_calls=tool_calls,
    )


class _LangChainStream(ModelStream):
    def __init__(self, runnable: Any, messages: list[BaseMessage]) -> None:
        super().__init__()
        self._runnable = runnable
        self._messages = messages

    async def _produce(self) -> AsyncIterator[str]:
        aggregate: AIMessageChunk | None = None
        async for chunk in self._runnable.astream(self._messages):
            aggregate = chunk if aggregate is None else aggregate + chunk
            delta = _content_text(chunk.content)
            if delta:
                yield delta
        self._turn = _turn_from_message(aggregate) if aggregate is not None else ModelTurn(text="")


class LangChainChatModel:
    """Adapts a LangChain chat model to the `ChatModel` boundary."""

    def __init__(
        self,
        chat_model: BaseChatModel,
        *,
        provider: str | None = None,
        model_name: str | None = None,
    ) -> None:
        self.chat_model = chat_model
        self.provider = provider
        self.model_name = model_name

    def _runnable(self, tools: list[ToolSchema] | None, temperature: float | None) -> Any:
        runnable: Any = self.chat_model
        if tools:
            try:
                runnable = self.chat_model.bind_tools(
                    [
                        {
                            "type": "function",
                            "function": {
                                "name": schema.name,
                                "description": schema.description,
                                "parameters": schema.to_json_schema(),
                            },
                        }
                        for schema in tools
                    ]
                )
            except NotImplementedError:
                logger.warning("model_tools_unsupported", model=self.model_name)
        if temperature is not None:
            runnable = runnable.bind(temperature=temperature)
        return runnable

    async def generate(
        self,
        system_prompt: str,
        messages: list[Message],
        *,
        temperature: float | None = None,
        tools: list[ToolSchema] | None = None,
    ) -> ModelTurn:
        runnable = self._runnable(tools, temperature)
        response = await runnable.ainvoke(to_langchain_messages(system_prompt, messages))
        return _turn_from_message(response)

    def stream(
        self,
        system_prompt: str,
        messages: list[Message],
        *,
        temperature: float | None = None,
        tools: list[ToolSchema] | None = None,
    ) -> ModelStream:
        return _LangChainStream(
            self._runnable(tools, temperature), to_langchain_messages(system_prompt, messages)
        )
