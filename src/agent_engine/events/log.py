"""Append-only, per-session event log.

Events are stored as JSON strings in an ordered list per session. The durable
backend is a Redis list whose TTL slides forward on every append; without
Redis an in-process map offers the same contract (no expiry), which is only
correct for a single process. Consumers poll `read_since(session_id, n)` with
the number of events they have already seen.
"""

from __future__ import annotations

import json
from typing import Protocol

from redis.asyncio import Redis
from redis.exceptions import RedisError

from agent_engine.config import EventLogConfig
from agent_engine.events.protocol import Event, parse_event, to_wire
from agent_engine.obs.logging import get_logger

logger = get_logger(__name__)


class EventStore(Protocol):
    """Ordered list storage keyed by session."""

    async def append(self, session_id: str, payload: str) -> int:
        """Append one serialized event and return the new list length."""

    async def read(self, session_id: str, start: int) -> list[str | bytes]:
        """Return serialized events from `start` to the end."""

    async def length(self, session_id: str) -> int:
        """Return how many events a session holds."""

    async def clear(self, session_id: str) -> None:
        """Drop the whole list for a session."""


class InMemoryEventStore:
    """Process-local store, used when no durable backend is configured."""

    def __init__(self) -> None:
        self._events: dict[str, list[str]] = {}

    async def append(self, session_id: str, payload: str) -> int:
        events = self._events.setdefault(session_id, [])
        events.append(payload)
        return len(events)

    async def read(self, session_id: str, start: int) -> list[str | bytes]:
        return list(self._events.get(session_id, [])[start:])

    async def length(self, session_id: str) -> int:
        return len(self._events.get(session_id, []))

    async def clear(self, session_id: str) -> None:
        self._events.pop(session_id, None)


class RedisEventStore:
    """Redis list per session with a sliding expiry."""

    def __init__(self, client: Redis, config: EventLogConfig | None = None) -> None:
        self._client = client
        self.config = config or EventLogConfig()

    def key(self, session_id: str) -> str:
        return f"{self.config.key_prefix}{session_id}"

    async def append(self, session_id: str, payload: str) -> int:
        key = self.key(session_id)
        async with self._client.pipeline(transaction=True) as pipe:
            pipe.rpush(key, payload)
            pipe.expire(key, self.config.ttl_seconds)
            length, _ = await pipe.execute()
        return int(length)

    async def read(self, session_id: str, start: int) -> list[str | bytes]:
        return list(await self._client.lrange(self.key(session_id), start, -1))

    async def length(self, session_id: str) -> int:
        return int(await self._client.llen(self.key(session_id)))

    async def clear(self, session_id: str) -> None:
        await self._client.delete(self.key(session_id))


class EventLog:
    """Event log facade with a sticky in-memory fallback.

    The first backend error switches the log to its in-process store for the
    rest of the process lifetime, so indices stay consistent for readers from
    then on. Sessions written before the switch restart from an empty list;
    a reader whose cursor is past `length()` has to start again from zero.
    """

    def __init__(self, store: EventStore | None = None) -> None:
        self._fallback = InMemoryEventStore()
        self._store: EventStore = store or self._fallback
        self._degraded = store is None

    @classmethod
    def from_url(cls, redis_url: str | None, config: EventLogConfig | None = None) -> "EventLog":
        if not redis_url:
            logger.info("event_log_in_memory", reason="redis not configured")
            return cls()
        client = Redis.from_url(redis_url)
        return cls(RedisEventStore(client, config))

    @property
    def durable(self) -> bool:
        return not self._degraded

    async def append(self, session_id: str, event: Event) -> int:
        payload = json.dumps(to_wire(event), ensure_ascii=False)
        try:
            length = await self._store.append(session_id, payload)
        except (RedisError, OSError) as exc:
            self._degrade(exc)
            length = await self._store.append(session_id, payload)
        logger.debug(
            "event_appended", session_id=session_id, event_type=event.type, length=length
        )
        return length

    async def read_all(self, session_id: str) -> list[Event]:
        return await self.read_since(session_id, 0)

    async def read_since(self, session_id: str, from_index: int) -> list[Event]:
        start = max(0, from_index)
        try:
            raw = await self._store.read(session_id, start)
        except (RedisError, OSError) as exc:
            self._degrade(exc)
            raw = await self._store.read(session_id, start)
        return [parse_event(item) for item in raw]

    async def length(self, session_id: str) -> int:
        try:
            return await self._store.length(session_id)
        except (RedisError, OSError) as exc:
            self._degrade(exc)
            return await self._store.length(session_id)

    async def clear(self, session_id: str) -> None:
        try:
            await self._store.clear(session_id)
        except (RedisError, OSError) as exc:
            self._degrade(exc)
            await self._store.clear(session_id)

    def _degrade(self, exc: Exception) -> None:
        if self._degraded:
            raise exc
        logger.warning("event_log_degraded", error=str(exc))
        self._store = self._fallback
        self._degraded = True
