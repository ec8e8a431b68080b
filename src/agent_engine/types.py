"""Shared domain models."""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal

from agent_engine.errors import RunStateError

Role = Literal["system", "user", "assistant", "tool"]


def now_ms() -> int:
    return int(time.time() * 1000)


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:16]}"


@dataclass(slots=True)
class ToolCallRequest:
    """A tool call requested by the model during a turn."""

    id: str
    name: str
    args: dict[str, Any]


@dataclass(slots=True)
class Message:
    """One conversation message.

    `content` is either plain text or a list of parts such as
    `{"type": "text", "text": "..."}`. The `tool` role and the tool call
    fields are only used internally while feeding tool results back to the
    model.
    """

    role: Role
    content: str | list[dict[str, Any]]
    id: str = field(default_factory=lambda: new_id("msg"))
    tool_calls: list[ToolCallRequest] = field(default_factory=list)
    tool_call_id: str | None = None

    def text(self) -> str:
        if isinstance(self.content, str):
            return self.content
        return " ".join(
            str(part.get("text", ""))
            for part in self.content
            if isinstance(part, dict) and part.get("type") == "text"
        )


@dataclass(slots=True)
class DocumentChunk:
    """A token-bounded passage of a source document."""

    content: str
    chunk_index: int
    start_position: int
    end_position: int
    token_count: int
    has_overlap: bool


@dataclass(slots=True)
class StoredChunk:
    """A chunk persisted in the knowledge store under a stable id."""

    id: str
    document_id: str
    scope: str
    chunk_index: int
    content: str
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class SearchHit:
    """A single ranked hit from one retrieval side."""

    id: str
    score: float


@dataclass(slots=True)
class HybridSearchResult:
    """A fused retrieval result."""

    id: str
    content: str
    score: float
    source: Literal["vector", "text", "both"]
    vector_score: float | None = None
    text_score: float | None = None
    document_id: str | None = None
    chunk_index: int | None = None


class RunStatus(str, Enum):
    IDLE = "idle"
    STARTED = "started"
    FINISHED = "finished"
    ERRORED = "errored"


@dataclass(slots=True)
class Run:
    """One execution, owned by a run coordinator until it is terminal."""

    run_id: str
    thread_id: str
    status: RunStatus = RunStatus.IDLE
    started_at: int | None = None
    ended_at: int | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (RunStatus.FINISHED, RunStatus.ERRORED)

    def start(self) -> None:
        if self.status is not RunStatus.IDLE:
            raise RunStateError(f"Run {self.run_id} already {self.status.value}")
        self.status = RunStatus.STARTED
        self.started_at = now_ms()

    def finish(self) -> None:
        self._terminate(RunStatus.FINISHED)

    def fail(self) -> None:
        self._terminate(RunStatus.ERRORED)

    def _terminate(self, status: RunStatus) -> None:
        if self.status is not RunStatus.STARTED:
            raise RunStateError(
                f"Run {self.run_id} cannot become {status.value} from {self.status.value}"
            )
        self.status = status
        self.ended_at = now_ms()


@dataclass(slots=True)
class ToolCallRecord:
    """A tool invocation made during a run, closed once its result is known."""

    tool_call_id: str
    tool_name: str
    args: dict[str, Any]
    result: Any | None = None


@dataclass(slots=True)
class AgentExecutionContext:
    """Input of one run."""

    session_id: str
    organization_id: str
    user_id: str
    messages: list[Message]
    run_id: str | None = None
    thread_id: str | None = None


@dataclass(slots=True)
class AgentResponse:
    """Final outcome of a run."""

    content: str
    tokens_used: int
    cost: float
    finish_reason: str
    run_id: str
    thread_id: str
    tool_calls: list[ToolCallRecord] = field(default_factory=list)
    events: list[Any] = field(default_factory=list)
