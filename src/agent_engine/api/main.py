"""FastAPI entrypoint for agent runs, event polling, tools and knowledge ingest."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import asdict, dataclass, field
from typing import Annotated, Any, Literal

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, Response
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from agent_engine.agent.coordinator import RunCoordinator
from agent_engine.agent.presets import create_assistant_agent, create_rag_agent, create_tool_agent
from agent_engine.config import AgentConfig, ChunkingConfig, RetrievalConfig, Settings
from agent_engine.errors import InputError
from agent_engine.events.log import EventLog
from agent_engine.events.protocol import format_sse, to_wire
from agent_engine.ingest.chunker import SentenceChunker
from agent_engine.ingest.embedder import Embedder, create_embedder
from agent_engine.ingest.pipeline import IngestPipeline
from agent_engine.llm.fallback import create_chat_model
from agent_engine.llm.model import ChatModel
from agent_engine.obs.logging import get_logger, setup_logging
from agent_engine.obs.tracing import TraceStore
from agent_engine.retrieval.hybrid import HybridRetriever
from agent_engine.retrieval.store import InMemoryKnowledgeStore
from agent_engine.tools.builtin import register_builtin_tools
from agent_engine.tools.invoker import ToolInvoker
from agent_engine.tools.registry import ToolExecutionContext, ToolRegistry
from agent_engine.types import AgentExecutionContext, Message, new_id

logger = get_logger(__name__)

AgentKind = Literal["assistant", "rag", "tool"]


@dataclass
class EngineServices:
    """Everything the API needs, wired once per application."""

    settings: Settings
    event_log: EventLog
    registry: ToolRegistry
    tool_invoker: ToolInvoker
    knowledge_store: InMemoryKnowledgeStore
    retriever: HybridRetriever
    ingest_pipeline: IngestPipeline
    trace_store: TraceStore
    model: ChatModel
    agents: dict[str, RunCoordinator] = field(default_factory=dict)


def build_services(
    settings: Settings | None = None,
    *,
    model: ChatModel | None = None,
    event_log: EventLog | None = None,
    embedder: Embedder | None = None,
    tool_invoker: ToolInvoker | None = None,
) -> EngineServices:
    settings = settings or Settings()
    event_log = event_log or EventLog.from_url(settings.redis_url)
    embedder = embedder or create_embedder(settings)
    store = InMemoryKnowledgeStore()
    retriever = HybridRetriever(embedder, store, store, store, RetrievalConfig())
    pipeline = IngestPipeline(SentenceChunker(ChunkingConfig()), embedder, store)

    if tool_invoker is None:
        registry = ToolRegistry()
        register_builtin_tools(registry, settings, document_searcher=retriever)
        tool_invoker = ToolInvoker.from_redis_url(registry, settings.redis_url)

    agent_config = AgentConfig(provider=settings.provider, temperature=settings.temperature)
    model = model or create_chat_model(settings, agent_config)
    trace_store = TraceStore()
    return EngineServices(
        settings=settings,
        event_log=event_log,
        registry=tool_invoker.registry,
        tool_invoker=tool_invoker,
        knowledge_store=store,
        retriever=retriever,
        ingest_pipeline=pipeline,
        trace_store=trace_store,
        model=model,
        agents={
            "assistant": create_assistant_agent(
                model, event_log, config=agent_config, trace_store=trace_store
            ),
            "rag": create_rag_agent(
                model, event_log, retriever, config=agent_config, trace_store=trace_store
            ),
            "tool": create_tool_agent(
                model, event_log, tool_invoker, config=agent_config, trace_store=trace_store
            ),
        },
    )


class MessageIn(BaseModel):
    role: Literal["system", "user", "assistant"]
    content: str | list[dict[str, Any]]


class RunRequest(BaseModel):
    messages: list[MessageIn] = Field(min_length=1)
    agent: AgentKind = "assistant"
    session_id: str | None = None
    thread_id: str | None = None
    run_id: str | None = None


class ToolExecuteRequest(BaseModel):
    args: dict[str, Any] = Field(default_factory=dict)
    session_id: str | None = None


class ToolToggleRequest(BaseModel):
    enabled: bool


class DocumentRequest(BaseModel):
    text: str = Field(min_length=1)
    document_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class HybridSearchRequest(BaseModel):
    query: str = Field(min_length=1)
    vector_top_k: int = Field(default=20, ge=1, le=100)
    text_top_k: int = Field(default=20, ge=1, le=100)
    vector_weight: float = Field(default=0.7, ge=0.0)
    text_weight: float = Field(default=0.3, ge=0.0)
    min_score: float = Field(default=0.0, ge=0.0)
    limit: int | None = Field(default=None, ge=1)


@dataclass(slots=True)
class Caller:
    user_id: str
    organization_id: str


def get_services(request: Request) -> EngineServices:
    return request.app.state.services


def get_caller(
    x_user_id: Annotated[str | None, Header()] = None,
    x_organization_id: Annotated[str | None, Header()] = None,
) -> Caller:
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Unauthorized: Authentication required")
    return Caller(user_id=x_user_id, organization_id=x_organization_id or x_user_id)


Services = Annotated[EngineServices, Depends(get_services)]
CallerDep = Annotated[Caller, Depends(get_caller)]


def _context(request: RunRequest, caller: Caller) -> AgentExecutionContext:
    session_id = request.session_id or request.thread_id or new_id("session")
    return AgentExecutionContext(
        session_id=session_id,
        organization_id=caller.organization_id,
        user_id=caller.user_id,
        messages=[Message(role=item.role, content=item.content) for item in request.messages],
        run_id=request.run_id,
        thread_id=request.thread_id or session_id,
    )


def create_app(
    settings: Settings | None = None, services: EngineServices | None = None
) -> FastAPI:
    """Build the API. Services are created at startup unless injected."""

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if getattr(app.state, "services", None) is None:
            app.state.services = build_services(settings)
        yield

    resolved = services.settings if services is not None else settings or Settings()
    setup_logging(resolved.log_level, resolved.log_format)

    app = FastAPI(title="Agent Engine", version="0.1.0", lifespan=lifespan)
    app.state.services = services

    @app.get("/health")
    def health(svc: Services) -> dict[str, Any]:
        return {
            "status": "ok",
            "model": svc.model.model_name,
            "event_log_durable": svc.event_log.durable,
            "tools_enabled": svc.registry.stats().enabled,
            "indexed_chunks": len(svc.knowledge_store),
        }

    @app.post("/agent/execute")
    async def execute(body: RunRequest, svc: Services, caller: CallerDep) -> dict[str, Any]:
        context = _context(body, caller)
        try:
            response = await svc.agents[body.agent].execute(context)
        except InputError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except Exception as exc:
            raise HTTPException(status_code=500, detail=f"Agent execution failed: {exc}") from exc
        return {
            "session_id": context.session_id,
            "run_id": response.run_id,
            "thread_id": response.thread_id,
            "content": response.content,
            "tokens_used": response.tokens_used,
            "cost": response.cost,
            "finish_reason": response.finish_reason,
            "tool_calls": [
                {
                    "tool_call_id": record.tool_call_id,
                    "tool_name": record.tool_name,
                    "args": record.args,
                    "result": record.result.model_dump() if record.result else None,
                }
                for record in response.tool_calls
            ],
            "events": [to_wire(event) for event in response.events],
        }

    @app.post("/agent/stream")
    async def stream(body: RunRequest, svc: Services, caller: CallerDep) -> StreamingResponse:
        context = _context(body, caller)
        await svc.event_log.clear(context.session_id)
        run_stream = svc.agents[body.agent].stream(context)

        async def frames() -> AsyncIterator[str]:
            try:
                async for event in run_stream:
                    yield format_sse(event)
            except Exception as exc:
                # The failure has already been delivered as a run_error frame.
                logger.warning("stream_run_failed", session_id=context.session_id, error=str(exc))

        return StreamingResponse(
            frames(),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "X-Session-Id": context.session_id},
        )

    @app.get("/agent/events/{session_id}")
    async def events(
        session_id: str, svc: Services, since: Annotated[int, Query(ge=0)] = 0
    ) -> dict[str, Any]:
        total = await svc.event_log.length(session_id)
        # A cursor past the end means the log was cleared or restarted.
        start = since if since <= total else 0
        items = await svc.event_log.read_since(session_id, start)
        return {
            "events": [to_wire(event) for event in items],
            "next_index": start + len(items),
            "reset": start != since,
        }

    @app.delete("/agent/events/{session_id}", status_code=204)
    async def clear_events(session_id: str, svc: Services) -> Response:
        await svc.event_log.clear(session_id)
        return Response(status_code=204)

    @app.get("/tools")
    def list_tools(svc: Services) -> dict[str, Any]:
        return {
            "tools": [schema.to_wire() for schema in svc.registry.list_schemas()],
            "stats": asdict(svc.registry.stats()),
        }

    @app.get("/tools/{name}/schema")
    def tool_schema(name: str, svc: Services) -> dict[str, Any]:
        registration = svc.registry.get(name)
        if registration is None:
            raise HTTPException(status_code=404, detail=f'Tool "{name}" not found')
        return registration.tool.schema.to_wire()

    @app.post("/tools/{name}/execute")
    async def execute_tool(
        name: str, body: ToolExecuteRequest, svc: Services, caller: CallerDep
    ) -> dict[str, Any]:
        result = await svc.tool_invoker.execute_tool(
            name,
            body.args,
            ToolExecutionContext(
                user_id=caller.user_id,
                organization_id=caller.organization_id,
                session_id=body.session_id,
            ),
        )
        return result.model_dump()

    @app.post("/tools/{name}/enabled")
    def toggle_tool(name: str, body: ToolToggleRequest, svc: Services) -> dict[str, Any]:
        if not svc.registry.set_enabled(name, body.enabled):
            raise HTTPException(status_code=404, detail=f'Tool "{name}" not found')
        return {"name": name, "enabled": body.enabled}

    @app.post("/rag/documents")
    async def ingest(body: DocumentRequest, svc: Services, caller: CallerDep) -> dict[str, Any]:
        document_id = body.document_id or new_id("doc")
        try:
            chunks = await svc.ingest_pipeline.ingest_text(
                document_id, body.text, caller.organization_id, body.metadata
            )
        except InputError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {
            "document_id": document_id,
            "chunks_created": len(chunks),
            "chunk_ids": [chunk.id for chunk in chunks],
        }

    @app.delete("/rag/documents/{document_id}")
    def delete_document(document_id: str, svc: Services, caller: CallerDep) -> dict[str, Any]:
        removed = svc.ingest_pipeline.delete_document(document_id, caller.organization_id)
        if removed == 0:
            raise HTTPException(status_code=404, detail=f"Document not found: {document_id}")
        return {"document_id": document_id, "chunks_deleted": removed}

    @app.post("/rag/hybrid-search")
    async def hybrid_search(
        body: HybridSearchRequest, svc: Services, caller: CallerDep
    ) -> dict[str, Any]:
        results = await svc.retriever.search(
            body.query,
            caller.organization_id,
            vector_top_k=body.vector_top_k,
            text_top_k=body.text_top_k,
            vector_weight=body.vector_weight,
            text_weight=body.text_weight,
            min_score=body.min_score,
        )
        if body.limit is not None:
            results = results[: body.limit]
        return {"query": body.query, "results": [asdict(result) for result in results]}

    @app.get("/runs")
    def runs(svc: Services, limit: Annotated[int, Query(ge=1, le=1000)] = 20) -> dict[str, Any]:
        return {"items": [asdict(record) for record in svc.trace_store.list_recent(limit=limit)]}

    @app.get("/runs/{run_id}")
    def run_detail(run_id: str, svc: Services) -> dict[str, Any]:
        try:
            record = svc.trace_store.get(run_id)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        return asdict(record)

    @app.get("/metrics")
    def metrics(svc: Services) -> dict[str, Any]:
        return {
            **svc.trace_store.summary(),
            "tools": asdict(svc.registry.stats()),
            "event_log_durable": svc.event_log.durable,
        }

    return app


app = create_app()
