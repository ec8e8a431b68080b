"""Argument validation, sanitization, rate limiting and audit logging for tools."""

from __future__ import annotations

import asyncio
import json
import re
import uuid
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Protocol

from redis.asyncio import Redis

from agent_engine.obs.logging import get_logger
from agent_engine.tools.registry import RateLimit, ToolExecutionContext, ToolSchema
from agent_engine.types import now_ms

logger = get_logger(__name__)

AUDIT_RETENTION_SECONDS = 7 * 24 * 60 * 60

_SCRIPT_BLOCK = re.compile(r"<script\b[^<]*(?:(?!</script>)<[^<]*)*</script>", re.IGNORECASE)
_JAVASCRIPT_SCHEME = re.compile(r"javascript:", re.IGNORECASE)

_TYPE_LABELS = {
    "string": "a string",
    "number": "a number",
    "boolean": "a boolean",
    "array": "an array",
    "object": "an object",
}


def _matches_type(value: Any, expected: str) -> bool:
    if expected == "string":
        return isinstance(value, str)
    if expected == "number":
        return isinstance(value, (int, float)) and not isinstance(value, bool)
    if expected == "boolean":
        return isinstance(value, bool)
    if expected == "array":
        return isinstance(value, list)
    if expected == "object":
        return isinstance(value, dict)
    return True


def validate_tool_args(args: dict[str, Any], schema: ToolSchema) -> list[str]:
    """Return every violation of `schema` found in `args`; empty when valid."""
    errors: list[str] = []
    for key, param in schema.parameters.items():
        if key not in args:
            if param.required:
                errors.append(f"Missing required parameter: {key}")
            continue
        value = args[key]
        if not _matches_type(value, param.type):
            errors.append(f'Parameter "{key}" must be {_TYPE_LABELS[param.type]}')
        if param.enum is not None and value not in param.enum:
            allowed = ", ".join(str(option) for option in param.enum)
            errors.append(f'Parameter "{key}" must be one of: {allowed}')
    return errors


def sanitize_args(args: dict[str, Any]) -> dict[str, Any]:
    """Strip script blocks and `javascript:` from top-level string values."""
    sanitized: dict[str, Any] = {}
    for key, value in args.items():
        if isinstance(value, str):
            value = _SCRIPT_BLOCK.sub("", value)
            value = _JAVASCRIPT_SCHEME.sub("", value).strip()
        sanitized[key] = value
    return sanitized


def hash_args(args: dict[str, Any]) -> str:
    """Fingerprint of the argument key set; values are never recorded."""
    return ",".join(sorted(args))


@dataclass(slots=True)
class RateLimitDecision:
    allowed: bool
    remaining: int
    reset_at: int


class RateLimiter(Protocol):
    async def check(self, tool_name: str, user_id: str, limit: RateLimit) -> RateLimitDecision:
        """Count the call against the trailing window, recording it if allowed."""


class InMemoryRateLimiter:
    """Sliding window of call timestamps per (tool, user) in process memory."""

    def __init__(self) -> None:
        self._calls: dict[tuple[str, str], deque[int]] = {}
        self._lock = asyncio.Lock()

    async def check(self, tool_name: str, user_id: str, limit: RateLimit) -> RateLimitDecision:
        now = now_ms()
        window_start = now - limit.window_ms
        async with self._lock:
            calls = self._calls.setdefault((tool_name, user_id), deque())
            while calls and calls[0] <= window_start:
                calls.popleft()
            if len(calls) >= limit.max_calls:
                return RateLimitDecision(
                    allowed=False, remaining=0, reset_at=calls[0] + limit.window_ms
                )
            calls.append(now)
            return RateLimitDecision(
                allowed=True,
                remaining=limit.max_calls - len(calls),
                reset_at=now + limit.window_ms,
            )


class RedisRateLimiter:
    """Sliding window kept in a Redis sorted set scored by call time."""

    def __init__(self, client: Redis, key_prefix: str = "ratelimit:tool:") -> None:
        self._client = client
        self._key_prefix = key_prefix

    async def check(self, tool_name: str, user_id: str, limit: RateLimit) -> RateLimitDecision:
        key = f"{self._key_prefix}{tool_name}:{user_id}"
        now = now_ms()
        window_start = now - limit.window_ms
        calls = await self._client.zrangebyscore(
            key, f"({window_start}", now, withscores=True
        )
        if len(calls) >= limit.max_calls:
            oldest = int(calls[0][1])
            return RateLimitDecision(
                allowed=False, remaining=0, reset_at=oldest + limit.window_ms
            )

        async with self._client.pipeline(transaction=True) as pipe:
            pipe.zadd(key, {f"{now}-{uuid.uuid4().hex[:8]}": now})
            pipe.expire(key, max(1, -(-limit.window_ms // 1000)))
            pipe.zremrangebyscore(key, 0, window_start)
            await pipe.execute()
        return RateLimitDecision(
            allowed=True,
            remaining=limit.max_calls - len(calls) - 1,
            reset_at=now + limit.window_ms,
        )


@dataclass(slots=True)
class AuditEntry:
    tool: str
    user_id: str
    organization_id: str
    session_id: str | None
    timestamp: str
    success: bool
    execution_time_ms: int
    args_hash: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "tool": self.tool,
            "userId": self.user_id,
            "organizationId": self.organization_id,
            "sessionId": self.session_id,
            "timestamp": self.timestamp,
            "success": self.success,
            "executionTime": self.execution_time_ms,
            "argsHash": self.args_hash,
        }


class AuditLog:
    """Records one entry per tool execution, retained for seven days.

    Entries go to Redis under `tool:execution:<org>:<ms>` when a client is
    given, otherwise to a bounded in-process list. Each entry is also emitted
    as a structured log line.
    """

    def __init__(
        self,
        client: Redis | None = None,
        retention_seconds: int = AUDIT_RETENTION_SECONDS,
    ) -> None:
        self._client = client
        self.retention_seconds = retention_seconds
        self._entries: deque[tuple[int, AuditEntry]] = deque()

    async def record(
        self,
        tool_name: str,
        context: ToolExecutionContext,
        args: dict[str, Any],
        *,
        success: bool,
        execution_time_ms: int,
    ) -> AuditEntry:
        entry = AuditEntry(
            tool=tool_name,
            user_id=context.user_id,
            organization_id=context.organization_id,
            session_id=context.session_id,
            timestamp=datetime.now(timezone.utc).isoformat(),
            success=success,
            execution_time_ms=execution_time_ms,
            args_hash=hash_args(args),
        )
        logger.info("tool_executed", **entry.to_dict())

        stamp = now_ms()
        if self._client is not None:
            key = f"tool:execution:{context.organization_id}:{stamp}"
            await self._client.setex(key, self.retention_seconds, json.dumps(entry.to_dict()))
            return entry

        self._entries.append((stamp, entry))
        cutoff = stamp - self.retention_seconds * 1000
        while self._entries and self._entries[0][0] < cutoff:
            self._entries.popleft()
        return entry

    def entries(self) -> list[AuditEntry]:
        """In-process entries; empty when entries are written to Redis."""
        return [entry for _, entry in self._entries]
