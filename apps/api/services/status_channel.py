"""Status channel — coarse progress updates for long-running requests.

The frontend polls GET /generate/status?requestId=... while a save or a
generation runs. Each request id maps to an append-only log capped at the
last N entries; whole logs are evicted once they go idle.

This is the Strategy Pattern again:
- StatusStore defines the interface
- MemoryStatusStore keeps logs in this process (default, no durability)
- RedisStatusStore shares logs across workers, with Redis TTLs doing eviction

Architecture:
    Pipeline step → StatusChannel.publish() → StatusStore
    Route         → StatusChannel.latest()/history() → StatusStore
    Lifespan      → StatusSweeper (background task) → StatusStore.evict_idle()
"""

import asyncio
import json
import logging
import time
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, asdict

import redis.asyncio as redis

logger = logging.getLogger(__name__)


@dataclass
class StatusUpdate:
    """One progress event. timestamp is epoch milliseconds."""
    step: str
    message: str
    timestamp: int
    progress: int | None = None  # 0-100

    def to_dict(self) -> dict:
        data = asdict(self)
        if data["progress"] is None:
            del data["progress"]
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "StatusUpdate":
        return cls(
            step=data["step"],
            message=data["message"],
            timestamp=int(data["timestamp"]),
            progress=data.get("progress"),
        )


def _now_ms() -> int:
    return int(time.time() * 1000)


class StatusStore(ABC):
    """Where status logs live. Implementations must tolerate concurrent writers."""

    @abstractmethod
    async def append(self, request_id: str, update: StatusUpdate) -> None:
        ...

    @abstractmethod
    async def latest(self, request_id: str) -> StatusUpdate | None:
        ...

    @abstractmethod
    async def all(self, request_id: str) -> list[StatusUpdate]:
        ...

    @abstractmethod
    async def clear(self, request_id: str) -> None:
        ...

    @abstractmethod
    async def evict_idle(self, max_idle_seconds: int) -> int:
        """Drop every log whose newest entry is older than max_idle_seconds.

        Returns how many logs were removed.
        """
        ...

    async def close(self) -> None:
        """Release connections. No-op for in-process stores."""


class MemoryStatusStore(StatusStore):
    """Process-local store. Lost on restart, which is fine for progress bars."""

    def __init__(self, max_entries: int = 50):
        self._max_entries = max_entries
        self._logs: dict[str, deque[StatusUpdate]] = {}

    async def append(self, request_id: str, update: StatusUpdate) -> None:
        # deque(maxlen) drops the oldest entry once the cap is hit
        log = self._logs.setdefault(request_id, deque(maxlen=self._max_entries))
        log.append(update)

    async def latest(self, request_id: str) -> StatusUpdate | None:
        log = self._logs.get(request_id)
        if not log:
            return None
        return log[-1]

    async def all(self, request_id: str) -> list[StatusUpdate]:
        return list(self._logs.get(request_id, ()))

    async def clear(self, request_id: str) -> None:
        self._logs.pop(request_id, None)

    async def evict_idle(self, max_idle_seconds: int) -> int:
        cutoff = _now_ms() - max_idle_seconds * 1000
        stale = [
            request_id
            for request_id, log in list(self._logs.items())
            if not log or log[-1].timestamp < cutoff
        ]
        for request_id in stale:
            self._logs.pop(request_id, None)
        return len(stale)


class RedisStatusStore(StatusStore):
    """Redis list per request id: RPUSH + LTRIM keeps the cap, EXPIRE does eviction.

    Key format: "status:{request_id}"
    """

    def __init__(self, redis_url: str, max_entries: int = 50, idle_seconds: int = 3600):
        self._redis_url = redis_url
        self._max_entries = max_entries
        self._idle_seconds = idle_seconds
        self._client: redis.Redis | None = None

    async def _get_redis(self) -> redis.Redis:
        """Lazy Redis connection."""
        if self._client is None:
            self._client = redis.from_url(self._redis_url, decode_responses=True)
        return self._client

    @staticmethod
    def _key(request_id: str) -> str:
        return f"status:{request_id}"

    async def append(self, request_id: str, update: StatusUpdate) -> None:
        client = await self._get_redis()
        key = self._key(request_id)
        async with client.pipeline(transaction=True) as pipe:
            pipe.rpush(key, json.dumps(update.to_dict()))
            pipe.ltrim(key, -self._max_entries, -1)
            pipe.expire(key, self._idle_seconds)
            await pipe.execute()

    async def latest(self, request_id: str) -> StatusUpdate | None:
        client = await self._get_redis()
        raw = await client.lindex(self._key(request_id), -1)
        if raw is None:
            return None
        return StatusUpdate.from_dict(json.loads(raw))

    async def all(self, request_id: str) -> list[StatusUpdate]:
        client = await self._get_redis()
        items = await client.lrange(self._key(request_id), 0, -1)
        return [StatusUpdate.from_dict(json.loads(item)) for item in items]

    async def clear(self, request_id: str) -> None:
        client = await self._get_redis()
        await client.delete(self._key(request_id))

    async def evict_idle(self, max_idle_seconds: int) -> int:
        # Every append refreshes the key TTL, Redis expires idle logs itself
        return 0

    async def close(self) -> None:
        if self._client:
            await self._client.close()


class StatusChannel:
    """Publishes and reads progress for a request id.

    Created once per process in the app lifespan and handed to routes and
    the build pipeline through dependency injection.
    """

    def __init__(self, store: StatusStore):
        self._store = store

    @property
    def store(self) -> StatusStore:
        return self._store

    async def publish(
        self, request_id: str | None, step: str, message: str, progress: int | None = None
    ) -> None:
        """Append an update. A None request id means nobody is listening."""
        if not request_id:
            return
        if progress is not None:
            progress = max(0, min(100, progress))
        update = StatusUpdate(step=step, message=message, timestamp=_now_ms(), progress=progress)
        await self._store.append(request_id, update)
        logger.info("[status:%s] %s: %s", request_id, step, message)

    async def latest(self, request_id: str) -> StatusUpdate | None:
        return await self._store.latest(request_id)

    async def history(self, request_id: str) -> list[StatusUpdate]:
        return await self._store.all(request_id)

    async def clear(self, request_id: str) -> None:
        await self._store.clear(request_id)


class StatusSweeper:
    """Background task that evicts idle status logs on an interval.

    Owned by the application lifespan: start() on startup, stop() on shutdown.
    """

    def __init__(self, store: StatusStore, idle_seconds: int = 3600, interval_seconds: int = 300):
        self._store = store
        self._idle_seconds = idle_seconds
        self._interval_seconds = interval_seconds
        self._task: asyncio.Task | None = None

    async def sweep_once(self) -> int:
        removed = await self._store.evict_idle(self._idle_seconds)
        if removed:
            logger.debug("Evicted %d idle status log(s)", removed)
        return removed

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._interval_seconds)
            try:
                await self.sweep_once()
            except Exception:
                logger.exception("Status sweep failed")

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run(), name="status-sweeper")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None


def create_status_store(
    backend: str,
    redis_url: str | None = None,
    max_entries: int = 50,
    idle_seconds: int = 3600,
) -> StatusStore:
    """Factory — pick the store from settings.status_backend."""
    if backend == "memory":
        return MemoryStatusStore(max_entries=max_entries)
    if backend == "redis":
        if not redis_url:
            raise ValueError("redis_url is required for the redis status backend")
        return RedisStatusStore(redis_url, max_entries=max_entries, idle_seconds=idle_seconds)
    raise ValueError(f"Unknown status backend: {backend}")
