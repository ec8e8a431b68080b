"""Run coordinator: drives one agent invocation and emits its event protocol."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable
from typing import Any

from agent_engine.config import AgentConfig
from agent_engine.errors import InputError
from agent_engine.events import protocol
from agent_engine.events.log import EventLog
from agent_engine.events.protocol import TERMINAL_TYPES, Event
from agent_engine.llm.model import ChatModel, ModelTurn
from agent_engine.obs.logging import bind_run_context, clear_run_context, get_logger
from agent_engine.obs.tracing import CostModel, Timer, TraceStore, Usage, estimate_token_count
from agent_engine.retrieval.augmenter import RetrievalAugmenter
from agent_engine.tools.invoker import ToolInvoker
from agent_engine.tools.registry import ToolExecutionContext, ToolResult
from agent_engine.types import (
    AgentExecutionContext,
    AgentResponse,
    Message,
    Run,
    ToolCallRecord,
    new_id,
)

logger = get_logger(__name__)

EventListener = Callable[[Event], None]


class RunCoordinator:
    """Drives runs from submitted messages to a finished or errored result.

    Every run emits exactly one `run_started` first and exactly one of
    `run_finished` / `run_error` last. Each model turn is bracketed by
    `text_message_start` / `text_message_end` for one message id, with
    non-empty deltas in generation order between them. Tool calls requested
    by the model run one at a time, each emitting start, end and result
    events, and their results are fed back to the model until it stops
    asking or `max_tool_iterations` is reached.

    Model failures are reported once as `run_error` and re-raised; the
    coordinator never retries.
    """

    def __init__(
        self,
        model: ChatModel,
        event_log: EventLog,
        *,
        config: AgentConfig | None = None,
        augmenter: RetrievalAugmenter | None = None,
        tool_invoker: ToolInvoker | None = None,
        trace_store: TraceStore | None = None,
        cost_model: CostModel | None = None,
        name: str = "assistant",
    ) -> None:
        self.model = model
        self.event_log = event_log
        self.config = config or AgentConfig()
        self.augmenter = augmenter
        self.tool_invoker = tool_invoker
        self.trace_store = trace_store
        self.cost_model = cost_model or CostModel()
        self.name = name

    @property
    def provider(self) -> str | None:
        return self.config.provider or self.model.provider

    @property
    def model_name(self) -> str | None:
        return self.config.model or self.model.model_name

    async def execute_stream(
        self,
        context: AgentExecutionContext,
        on_chunk: Callable[[str], None] | None = None,
    ) -> AgentResponse:
        """Stream model output, emitting one content event per delta."""
        return await self._run(context, streaming=True, on_chunk=on_chunk)

    async def execute(self, context: AgentExecutionContext) -> AgentResponse:
        """Batch mode; the response embeds every event emitted for the run."""
        return await self._run(context, streaming=False)

    def stream(self, context: AgentExecutionContext) -> "RunStream":
        """Iterate the run's events as they are appended to the log."""
        return RunStream(self, context)

    async def invoke_tool(
        self, context: AgentExecutionContext, name: str, args: dict[str, Any]
    ) -> ToolCallRecord:
        """Run one tool explicitly, emitting its events into the session log."""
        return await self._call_tool(
            new_id("call"), name, args, context, emit=self._emitter(context.session_id, [], None)
        )

    def _emitter(
        self, session_id: str, collected: list[Event], listener: EventListener | None
    ) -> Callable[[Event], Any]:
        async def emit(event: Event) -> None:
            await self.event_log.append(session_id, event)
            collected.append(event)
            if listener is not None:
                listener(event)

        return emit

    async def _run(
        self,
        context: AgentExecutionContext,
        *,
        streaming: bool,
        on_chunk: Callable[[str], None] | None = None,
        listener: EventListener | None = None,
    ) -> AgentResponse:
        if not context.messages:
            raise InputError("messages must not be empty")

        run = Run(
            run_id=context.run_id or new_id("run"),
            thread_id=context.thread_id or context.session_id,
        )
        events: list[Event] = []
        emit = self._emitter(context.session_id, events, listener)
        tool_records: list[ToolCallRecord] = []
        usage = Usage(reported=True)
        bind_run_context(
            run_id=run.run_id, thread_id=run.thread_id, session_id=context.session_id
        )
        timer = Timer().start()
        try:
            run.start()
            await emit(protocol.run_started(run.thread_id, run.run_id))
            logger.info("run_started", agent=self.name, streaming=streaming)

            messages = list(context.messages)
            if self.augmenter is not None:
                messages = await self.augmenter.augment(messages, context.organization_id)

            tools = (
                self.tool_invoker.registry.list_schemas() if self.tool_invoker is not None else None
            )
            texts: list[str] = []
            iterations = 0
            while True:
                turn = await self._model_turn(messages, tools, streaming, on_chunk, emit)
                self._account(usage, messages, turn)
                if turn.text:
                    texts.append(turn.text)
                if (
                    not turn.tool_calls
                    or self.tool_invoker is None
                    or iterations >= self.config.max_tool_iterations
                ):
                    break

                iterations += 1
                messages.append(
                    Message(role="assistant", content=turn.text, tool_calls=turn.tool_calls)
                )
                for call in turn.tool_calls:
                    record = await self._call_tool(call.id, call.name, call.args, context, emit)
                    tool_records.append(record)
                    messages.append(
                        Message(
                            role="tool",
                            content=record.result.model_dump_json(),
                            tool_call_id=call.id,
                        )
                    )

            cost = self.cost_model.estimate(usage, model=self.model_name, provider=self.provider)
            duration_ms = round(timer.peek_ms())
            await emit(
                protocol.run_finished(
                    run.run_id,
                    thread_id=run.thread_id,
                    result={
                        "tokensUsed": usage.total_tokens,
                        "cost": cost,
                        "durationMs": duration_ms,
                        "finishReason": turn.finish_reason,
                    },
                )
            )
            run.finish()
        except Exception as exc:
            if not run.is_terminal:
                run.fail()
                await emit(protocol.run_error(str(exc) or type(exc).__name__))
            logger.error("run_failed", agent=self.name, error=str(exc))
            self._trace(run, context, timer, usage, 0.0, tool_records, error=str(exc))
            raise
        finally:
            clear_run_context()

        self._trace(run, context, timer, usage, cost, tool_records)
        logger.info(
            "run_finished",
            agent=self.name,
            tokens=usage.total_tokens,
            cost=cost,
            tool_calls=len(tool_records),
        )
        return AgentResponse(
            content="\n\n".join(texts),
            tokens_used=usage.total_tokens,
            cost=cost,
            finish_reason=turn.finish_reason,
            run_id=run.run_id,
            thread_id=run.thread_id,
            tool_calls=tool_records,
            events=list(events),
        )

    async def _model_turn(
        self,
        messages: list[Message],
        tools: list[Any] | None,
        streaming: bool,
        on_chunk: Callable[[str], None] | None,
        emit: Callable[[Event], Any],
    ) -> ModelTurn:
        message_id = new_id("msg")
        await emit(protocol.text_message_start(message_id))
        if streaming:
            stream = self.model.stream(
                self.config.system_prompt,
                messages,
                temperature=self.config.temperature,
                tools=tools,
            )
            async for delta in stream:
                if not delta:
                    continue
                await emit(protocol.text_message_content(message_id, delta))
                if on_chunk is not None:
                    on_chunk(delta)
            turn = stream.turn
        else:
            turn = await self.model.generate(
                self.config.system_prompt,
                messages,
                temperature=self.config.temperature,
                tools=tools,
            )
            if turn.text:
                await emit(protocol.text_message_content(message_id, turn.text))
        await emit(protocol.text_message_end(message_id))
        return turn

    def _account(self, usage: Usage, messages: list[Message], turn: ModelTurn) -> None:
        if turn.usage.reported:
            usage.input_tokens += turn.usage.input_tokens
            usage.output_tokens += turn.usage.output_tokens
            usage.total_tokens += turn.usage.total_tokens
            return
        prompt = self.config.system_prompt + "".join(message.text() for message in messages)
        prompt_tokens = estimate_token_count(prompt)
        completion_tokens = estimate_token_count(turn.text)
        usage.input_tokens += prompt_tokens
        usage.output_tokens += completion_tokens
        usage.total_tokens += prompt_tokens + completion_tokens
        usage.reported = False

    async def _call_tool(
        self,
        call_id: str,
        name: str,
        args: dict[str, Any],
        context: AgentExecutionContext,
        emit: Callable[[Event], Any],
    ) -> ToolCallRecord:
        await emit(protocol.tool_call_start(call_id, name, args))
        if self.tool_invoker is None:
            result = ToolResult(success=False, error="Tool invocation is not configured")
        else:
            result = await self.tool_invoker.execute_tool(
                name,
                args,
                ToolExecutionContext(
                    user_id=context.user_id,
                    organization_id=context.organization_id,
                    session_id=context.session_id,
                ),
            )
        await emit(protocol.tool_call_end(call_id))
        await emit(protocol.tool_call_result(call_id, new_id("msg"), result.model_dump_json()))
        logger.info("tool_call_completed", tool=name, success=result.success)
        return ToolCallRecord(tool_call_id=call_id, tool_name=name, args=args, result=result)

    def _trace(
        self,
        run: Run,
        context: AgentExecutionContext,
        timer: Timer,
        usage: Usage,
        cost: float,
        tool_records: list[ToolCallRecord],
        error: str | None = None,
    ) -> None:
        if self.trace_store is None:
            return
        self.trace_store.record(
            run_id=run.run_id,
            thread_id=run.thread_id,
            session_id=context.session_id,
            status=run.status.value,
            latency_ms=timer.peek_ms(),
            tokens_used=usage.total_tokens,
            cost=cost,
            tool_names=[record.tool_name for record in tool_records],
            error=error,
        )


class RunStream:
    """Async iterator over one run's events.

    The run executes in a background task; events are yielded in emission
    order up to and including the terminal event. If the run failed, the
    error is re-raised after `run_error` has been yielded. `response` holds
    the final `AgentResponse` once iteration completes successfully.
    """

    def __init__(self, coordinator: RunCoordinator, context: AgentExecutionContext) -> None:
        self._coordinator = coordinator
        self._context = context
        self.response: AgentResponse | None = None

    def __aiter__(self) -> AsyncIterator[Event]:
        return self._events()

    async def _events(self) -> AsyncIterator[Event]:
        queue: asyncio.Queue[Event] = asyncio.Queue()
        task = asyncio.create_task(
            self._coordinator._run(self._context, streaming=True, listener=queue.put_nowait)
        )
        try:
            finished = False
            while not finished:
                getter = asyncio.ensure_future(queue.get())
                done, _ = await asyncio.wait({getter, task}, return_when=asyncio.FIRST_COMPLETED)
                if getter not in done:
                    getter.cancel()
                    while not queue.empty():
                        yield queue.get_nowait()
                    break
                event = getter.result()
                yield event
                finished = event.type in TERMINAL_TYPES
            self.response = await task
        finally:
            if not task.done():
                task.cancel()
