"""Deterministic chat model used when no external LLM is configured."""

from __future__ import annotations

import re
from collections.abc import AsyncIterator

from langchain_openai import ChatOpenAI

from agent_engine.config import AgentConfig, Settings
from agent_engine.llm.model import ChatModel, LangChainChatModel, ModelStream, ModelTurn
from agent_engine.obs.logging import get_logger
from agent_engine.tools.registry import ToolSchema
from agent_engine.types import Message

logger = get_logger(__name__)

_SOURCE_BLOCK = re.compile(
    r"\[Source (?P<index>\d+)\][^\n]*\n(?P<body>.*?)(?=\n\n\[Source \d+\]|\n\n=== END CONTEXT ===)",
    flags=re.DOTALL,
)
_SENTENCE_SPLIT = re.compile(r"(?<=[.!?])\s+")
_TOKEN_SPLIT = re.compile(r"(\s+)")


class _ReplayStream(ModelStream):
    def __init__(self, turn: ModelTurn) -> None:
        super().__init__()
        self._pending = turn

    async def _produce(self) -> AsyncIterator[str]:
        for piece in _TOKEN_SPLIT.split(self._pending.text):
            if piece:
                yield piece
        self._turn = self._pending


class DeterministicChatModel:
    """Extractive responder that keeps the `ChatModel` contract offline.

    Answers grounded prompts with the lead sentence of each injected source,
    summarises tool results fed back to it, and otherwise acknowledges the
    request. It never requests tool calls and never reports usage, so token
    counts fall back to estimates.
    """

    provider: str | None = None
    model_name: str | None = "deterministic"

    async def generate(
        self,
        system_prompt: str,
        messages: list[Message],
        *,
        temperature: float | None = None,
        tools: list[ToolSchema] | None = None,
    ) -> ModelTurn:
        del system_prompt, temperature, tools  # output depends on the conversation only.
        return ModelTurn(text=self._respond(messages))

    def stream(
        self,
        system_prompt: str,
        messages: list[Message],
        *,
        temperature: float | None = None,
        tools: list[ToolSchema] | None = None,
    ) -> ModelStream:
        return _ReplayStream(ModelTurn(text=self._respond(messages)))

    def _respond(self, messages: list[Message]) -> str:
        if not messages:
            return "No input was provided."
        last = messages[-1]
        if last.role == "tool":
            return f"Tool result: {_truncate(last.text(), 400)}"

        text = last.text().strip()
        sources = list(_SOURCE_BLOCK.finditer(text))
        if sources:
            lines = []
            for match in sources[:3]:
                body = match.group("body").strip()
                lead = _SENTENCE_SPLIT.split(body, maxsplit=1)[0] if body else ""
                lines.append(f"{lead} [Source {match.group('index')}]")
            return "\n".join(lines)
        return (
            "No language model is configured, so I cannot generate a full answer. "
            f"You asked: {_truncate(text, 200)}"
        )


def _truncate(text: str, max_length: int) -> str:
    if len(text) <= max_length:
        return text
    return text[: max_length - 3] + "..."


def create_chat_model(settings: Settings, config: AgentConfig | None = None) -> ChatModel:
    """Pick the OpenAI chat model when a key is configured, else the fallback."""
    config = config or AgentConfig()
    if not settings.openai_api_key:
        logger.info("chat_model_selected", kind="deterministic")
        return DeterministicChatModel()

    model_name = config.model or settings.openai_model
    chat_model = ChatOpenAI(
        model=model_name,
        api_key=settings.openai_api_key,
        temperature=config.temperature,
        max_tokens=config.max_tokens,
        stream_usage=True,
    )
    logger.info("chat_model_selected", kind="openai", model=model_name)
    return LangChainChatModel(chat_model, provider="openai", model_name=model_name)
