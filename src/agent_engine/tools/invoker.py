"""Guarded tool execution: availability, validation, rate limits, audit."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from redis.asyncio import Redis
from redis.exceptions import RedisError

from agent_engine.obs.logging import get_logger
from agent_engine.tools.middleware import (
    AuditLog,
    InMemoryRateLimiter,
    RateLimiter,
    RedisRateLimiter,
    sanitize_args,
    validate_tool_args,
)
from agent_engine.tools.registry import ToolExecutionContext, ToolRegistry, ToolResult
from agent_engine.types import now_ms

logger = get_logger(__name__)


class ToolInvoker:
    """Runs registered tools for an authenticated caller.

    `execute_tool` never raises: every failure comes back as a
    `ToolResult(success=False)` with a caller-readable error.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        *,
        rate_limiter: RateLimiter | None = None,
        audit_log: AuditLog | None = None,
    ) -> None:
        self.registry = registry
        self.rate_limiter = rate_limiter or InMemoryRateLimiter()
        self.audit_log = audit_log or AuditLog()

    @classmethod
    def from_redis_url(cls, registry: ToolRegistry, redis_url: str | None) -> "ToolInvoker":
        if not redis_url:
            return cls(registry)
        client = Redis.from_url(redis_url)
        return cls(registry, rate_limiter=RedisRateLimiter(client), audit_log=AuditLog(client))

    async def execute_tool(
        self, name: str, args: dict[str, Any], context: ToolExecutionContext
    ) -> ToolResult:
        started = now_ms()
        registration = self.registry.get(name)
        if registration is None or not registration.enabled:
            return ToolResult(success=False, error=f'Tool "{name}" is not available')

        errors = validate_tool_args(args, registration.tool.schema)
        if errors:
            return ToolResult(success=False, error=f"Invalid arguments: {', '.join(errors)}")

        try:
            if registration.rate_limit is not None:
                decision = await self.rate_limiter.check(
                    name, context.user_id, registration.rate_limit
                )
                if not decision.allowed:
                    reset = datetime.fromtimestamp(decision.reset_at / 1000, tz=timezone.utc)
                    logger.info("tool_rate_limited", tool=name, user_id=context.user_id)
                    return ToolResult(
                        success=False,
                        error=f"Rate limit exceeded. Try again at {reset.isoformat()}",
                        metadata={
                            "rateLimit": {
                                "remaining": decision.remaining,
                                "resetAt": decision.reset_at,
                            }
                        },
                    )

            clean_args = sanitize_args(args)
            result = await registration.tool.handler(clean_args, context)
            if not isinstance(result, ToolResult):
                raise TypeError(f"handler returned {type(result).__name__}, not ToolResult")
            elapsed = now_ms() - started
            timed = result.model_copy(
                update={"metadata": {**result.metadata, "executionTime": elapsed}}
            )
        except Exception as exc:
            elapsed = now_ms() - started
            logger.warning("tool_failed", tool=name, error=str(exc))
            await self._audit(name, context, args, success=False, elapsed=elapsed)
            return ToolResult(
                success=False,
                error=f"Tool execution failed: {exc}",
                metadata={"executionTime": elapsed},
            )

        await self._audit(name, context, clean_args, success=timed.success, elapsed=elapsed)
        return timed

    async def _audit(
        self,
        name: str,
        context: ToolExecutionContext,
        args: dict[str, Any],
        *,
        success: bool,
        elapsed: int,
    ) -> None:
        try:
            await self.audit_log.record(
                name, context, args, success=success, execution_time_ms=elapsed
            )
        except (RedisError, OSError) as exc:
            logger.warning("tool_audit_failed", tool=name, error=str(exc))
