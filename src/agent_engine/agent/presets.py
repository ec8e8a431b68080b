"""Preconfigured coordinators for the assistant, RAG and tool agents."""

from __future__ import annotations

from agent_engine.agent.coordinator import RunCoordinator
from agent_engine.config import AgentConfig, AugmentationConfig
from agent_engine.events.log import EventLog
from agent_engine.llm.model import ChatModel
from agent_engine.obs.tracing import TraceStore
from agent_engine.retrieval.augmenter import RetrievalAugmenter
from agent_engine.retrieval.hybrid import HybridRetriever
from agent_engine.tools.invoker import ToolInvoker

ASSISTANT_PROMPT = """You are a helpful AI assistant. Your role is to:
- Provide clear, accurate, and helpful responses
- Understand user context and intent
- Offer practical solutions and guidance
- Maintain a friendly and professional tone
- Admit when you don't know something
- Ask clarifying questions when needed

Always prioritize user satisfaction and provide valuable assistance."""

RAG_PROMPT = """You are an AI assistant with access to a knowledge base.
When answering questions, use the provided context from the knowledge base.
Always cite your sources when using information from the context.
If the context doesn't contain relevant information, say so clearly."""

TOOL_PROMPT = """You are an AI assistant with access to tools. You can:

1. **Search** - Search the web or documents for information
2. **Database Query** - Query the database for data (read-only, SELECT queries only)
3. **File Read** - Read files from organization storage
4. **File Write** - Write files to organization storage
5. **Send Email** - Send emails to users

When you need to perform an action, use the available tools.
Always explain what tool you're using and why before using it.
After using a tool, explain the results to the user."""


def _with_prompt(config: AgentConfig | None, prompt: str) -> AgentConfig:
    config = config or AgentConfig()
    if "system_prompt" in config.model_fields_set:
        return config
    return config.model_copy(update={"system_prompt": prompt})


def create_assistant_agent(
    model: ChatModel,
    event_log: EventLog,
    *,
    config: AgentConfig | None = None,
    trace_store: TraceStore | None = None,
) -> RunCoordinator:
    return RunCoordinator(
        model,
        event_log,
        config=_with_prompt(config, ASSISTANT_PROMPT),
        trace_store=trace_store,
        name="assistant",
    )


def create_rag_agent(
    model: ChatModel,
    event_log: EventLog,
    retriever: HybridRetriever,
    *,
    config: AgentConfig | None = None,
    search_threshold: float = 0.7,
    max_context_chunks: int = 5,
    trace_store: TraceStore | None = None,
) -> RunCoordinator:
    """Coordinator that grounds the latest user question in retrieved context."""
    augmenter = RetrievalAugmenter(
        retriever,
        AugmentationConfig(threshold=search_threshold, limit=max_context_chunks),
    )
    return RunCoordinator(
        model,
        event_log,
        config=_with_prompt(config, RAG_PROMPT),
        augmenter=augmenter,
        trace_store=trace_store,
        name="rag-agent",
    )


def create_tool_agent(
    model: ChatModel,
    event_log: EventLog,
    tool_invoker: ToolInvoker,
    *,
    config: AgentConfig | None = None,
    trace_store: TraceStore | None = None,
) -> RunCoordinator:
    return RunCoordinator(
        model,
        event_log,
        config=_with_prompt(config, TOOL_PROMPT),
        tool_invoker=tool_invoker,
        trace_store=trace_store,
        name="tool-agent",
    )
