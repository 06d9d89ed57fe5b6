"""
Work Queue — FIFO buffer of pending payments, shared by producers and the
batch processor.

Backends:
  InMemoryWorkQueue — deque behind a single asyncio.Lock (one process)
  RedisWorkQueue    — Redis list, shared by several worker processes

Contract (both backends):
  enqueue(item)          append to the tail; always succeeds
  drain_batch(n)         atomically pop up to n items from the head, FIFO
  len()                  size snapshot — racy, use for sizing only

Backend outages surface as WorkQueueUnavailable so the processor can back
off and retry on its next cycle.

The lock is held only for the duration of one enqueue/drain/len call and
never across an await on I/O.
"""
from __future__ import annotations

import asyncio
import structlog
from abc import ABC, abstractmethod
from collections import deque
from contextlib import contextmanager
from typing import Any, Generic, Iterator, Optional, TypeVar

from pydantic import BaseModel, ValidationError
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from config.settings import QueueConfig

logger = structlog.get_logger()

T = TypeVar("T")


class WorkQueueUnavailable(Exception):
    """The queue backend could not be reached."""


class WorkQueue(ABC, Generic[T]):
    """Abstract work queue interface."""

    backend: str = ""

    @abstractmethod
    async def enqueue(self, item: T) -> None:
        ...

    @abstractmethod
    async def drain_batch(self, max_items: int) -> list[T]:
        ...

    @abstractmethod
    async def len(self) -> int:
        ...

    async def close(self) -> None:
        """Release backend resources."""

    async def snapshot(self) -> dict[str, Any]:
        return {"backend": self.backend, "depth": await self.len()}


# ──────────────────────────────────────────────────────────────
#  In-Memory Implementation
# ──────────────────────────────────────────────────────────────

class InMemoryWorkQueue(WorkQueue[T]):
    """
    Single-process queue backed by a deque.
    One asyncio.Lock serializes enqueue and drain so no item is returned
    twice or skipped.
    """

    backend = "memory"

    def __init__(self):
        self._items: deque[T] = deque()
        self._lock = asyncio.Lock()

    async def enqueue(self, item: T) -> None:
        async with self._lock:
            self._items.append(item)
            depth = len(self._items)
        logger.debug("work_item_enqueued", depth=depth)

    async def drain_batch(self, max_items: int) -> list[T]:
        if max_items <= 0:
            return []
        async with self._lock:
            take = min(max_items, len(self._items))
            return [self._items.popleft() for _ in range(take)]

    async def len(self) -> int:
        async with self._lock:
            return len(self._items)


# ──────────────────────────────────────────────────────────────
#  Redis Implementation
# ──────────────────────────────────────────────────────────────

class RedisWorkQueue(WorkQueue[BaseModel]):
    """
    Queue backed by a Redis list.

    - enqueue → RPUSH of the item's JSON
    - drain   → LPOP key count (single command, atomic across processes)
    - len     → LLEN
    """

    backend = "redis"

    def __init__(
        self,
        item_model: type[BaseModel],
        redis_url: str = "redis://localhost:6379",
        key: str = "payments:pending",
        client: Any = None,
    ):
        self._item_model = item_model
        self._redis_url = redis_url
        self._key = key
        self._redis = client

    async def _client(self):
        if self._redis is None:
            import redis.asyncio as aioredis
            self._redis = aioredis.from_url(
                self._redis_url,
                decode_responses=True,
                max_connections=20,
            )
            logger.info("redis_work_queue_connected", url=self._redis_url, key=self._key)
        return self._redis

    @contextmanager
    def _backend_errors(self, op: str) -> Iterator[None]:
        try:
            yield
        except (RedisConnectionError, RedisTimeoutError) as e:
            raise WorkQueueUnavailable(f"redis {op} on {self._key} failed: {e}") from e

    async def enqueue(self, item: BaseModel) -> None:
        client = await self._client()
        with self._backend_errors("rpush"):
            depth = await client.rpush(self._key, item.model_dump_json())
        logger.debug("work_item_enqueued", depth=depth, key=self._key)

    async def drain_batch(self, max_items: int) -> list[BaseModel]:
        if max_items <= 0:
            return []
        client = await self._client()
        with self._backend_errors("lpop"):
            raw = await client.lpop(self._key, max_items)
        if not raw:
            return []
        if isinstance(raw, str):  # some clients return a scalar for count=1
            raw = [raw]

        # Already popped; one bad payload must not lose the rest
        items: list[BaseModel] = []
        for payload in raw:
            try:
                items.append(self._item_model.model_validate_json(payload))
            except ValidationError as e:
                logger.error("work_item_undecodable",
                             key=self._key,
                             error=str(e),
                             payload=str(payload)[:200])
        return items

    async def len(self) -> int:
        client = await self._client()
        with self._backend_errors("llen"):
            return int(await client.llen(self._key))

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None


# ──────────────────────────────────────────────────────────────
#  Factory
# ──────────────────────────────────────────────────────────────

def create_work_queue(config: Optional[QueueConfig] = None,
                      item_model: type[BaseModel] = None) -> WorkQueue:
    """
    Create a queue for the configured backend. Returns a new instance on
    every call; the caller owns it and hands it to producers and processor.
    """
    config = config or QueueConfig()
    if config.backend == "redis":
        if item_model is None:
            raise ValueError("Redis work queue needs an item_model to decode items")
        queue: WorkQueue = RedisWorkQueue(item_model, redis_url=config.redis_url, key=config.redis_key)
    else:
        queue = InMemoryWorkQueue()
    logger.info("work_queue_created", backend=queue.backend)
    return queue
