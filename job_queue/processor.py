"""
Batch Processor — drains the work queue in adaptively sized batches.

Runs as a background task inside the application process:

  ┌───────────┐  enqueue   ┌────────────┐  drain_batch  ┌─────────────────┐
  │ API /     │───────────▶│ WorkQueue  │──────────────▶│ BatchProcessor  │
  │ webhooks  │            └────────────┘               │  batch 1..N     │
  └───────────┘                                         │  (tasks, each   │
                                                        │  semaphore-     │
                                                        │  bounded)       │
                                                        └───────┬─────────┘
                                                                │ handler(item)
                                                                ▼
                                                        ┌─────────────────┐
                                                        │ PersistenceGate │
                                                        └─────────────────┘

State machine:
  Idle      — queue empty; wait idle_interval or until stop is signalled
  Draining  — snapshot len(), plan batches, drain + spawn one task per batch,
              join them all, then loop straight back without sleeping

A failing item is logged and counted; it never stops its siblings or its
batch. Failed items are not re-enqueued.
"""
from __future__ import annotations

import asyncio
import time
import structlog
from dataclasses import dataclass, field, asdict
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar

from config.settings import QueueConfig
from job_queue.batching import partition, plan_batches
from job_queue.work_queue import WorkQueue, WorkQueueUnavailable

logger = structlog.get_logger()

T = TypeVar("T")

ItemHandler = Callable[[Any], Awaitable[Any]]


def _describe_default(item: Any) -> dict[str, Any]:
    return {"item": repr(item)[:200]}


# ──────────────────────────────────────────────────────────────
#  Cycle reporting
# ──────────────────────────────────────────────────────────────

@dataclass
class ItemOutcome:
    position: int
    ok: bool
    result: Any = None
    error: Optional[str] = None


@dataclass
class BatchResult:
    batch: int
    size: int
    succeeded: int = 0
    failed: int = 0
    outcomes: list[ItemOutcome] = field(default_factory=list)


@dataclass
class CycleSummary:
    batches: int
    total: int
    succeeded: int
    failed: int
    duration_ms: float
    results: list[BatchResult] = field(default_factory=list)


@dataclass
class ProcessorStats:
    cycles: int = 0
    processed: int = 0
    succeeded: int = 0
    failed: int = 0

    def record(self, summary: CycleSummary) -> None:
        self.cycles += 1
        self.processed += summary.total
        self.succeeded += summary.succeeded
        self.failed += summary.failed

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


# ──────────────────────────────────────────────────────────────
#  Processor
# ──────────────────────────────────────────────────────────────

class BatchProcessor(Generic[T]):
    """
    Usage:
        processor = BatchProcessor(queue, store.persist_payment, config)
        await processor.run_cycle()          # one Draining pass, for tests/tools
        await processor.start_background()   # supervisory loop as a task
        await processor.stop()               # finish in-flight cycle, drain if configured
    """

    def __init__(
        self,
        queue: WorkQueue[T],
        handler: ItemHandler,
        config: Optional[QueueConfig] = None,
        describe: Callable[[T], dict[str, Any]] = _describe_default,
    ):
        config = config or QueueConfig()
        self.queue = queue
        self.handler = handler
        self.per_batch_concurrency = config.per_batch_concurrency
        self.idle_interval_s = config.idle_interval_ms / 1000.0
        self.drain_on_shutdown = config.drain_on_shutdown
        self._describe = describe
        self._stop = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self.stats = ProcessorStats()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    # ── Lifecycle ─────────────────────────────────────────────

    async def start_background(self) -> asyncio.Task:
        """Start the supervisory loop in a background task. Returns the task handle."""
        if self.running:
            return self._task
        self._stop.clear()
        self._task = asyncio.create_task(self._run(), name="batch_processor")
        self._task.add_done_callback(self._on_task_done)
        logger.info("batch_processor_started",
                    backend=self.queue.backend,
                    per_batch_concurrency=self.per_batch_concurrency,
                    idle_interval_s=self.idle_interval_s)
        return self._task

    async def stop(self, timeout: Optional[float] = None) -> None:
        """
        Signal the loop to stop at the next iteration boundary and wait for it.
        The in-flight cycle always completes; with drain_on_shutdown the loop
        keeps cycling until the queue is empty. If timeout elapses first the
        task is cancelled.
        """
        self._stop.set()
        if self._task is None:
            return
        done, _ = await asyncio.wait([self._task], timeout=timeout)
        if not done:
            logger.warning("batch_processor_stop_timeout", timeout_s=timeout)
            self._task.cancel()
            await asyncio.wait([self._task])
        self._task = None
        logger.info("batch_processor_stopped", **self.stats.to_dict())

    def _on_task_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("processor_crashed",
                         error=str(exc),
                         exc_info=(type(exc), exc, exc.__traceback__))

    async def _run(self) -> None:
        while not self._stop.is_set():
            try:
                summary = await self.run_cycle()
            except WorkQueueUnavailable as e:
                logger.error("work_queue_unavailable", error=str(e))
                summary = None
            if summary is None:
                await self._idle()

        if self.drain_on_shutdown:
            try:
                logger.info("batch_processor_draining", depth=await self.queue.len())
                while await self.run_cycle() is not None:
                    pass
            except WorkQueueUnavailable as e:
                logger.error("batch_processor_drain_aborted", error=str(e))

    async def _idle(self) -> None:
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=self.idle_interval_s)
        except asyncio.TimeoutError:
            pass

    # ── Draining ──────────────────────────────────────────────

    async def run_cycle(self) -> Optional[CycleSummary]:
        """
        One Draining pass over a snapshot of the queue.
        Returns None when the queue was empty.
        """
        queue_len = await self.queue.len()
        if queue_len == 0:
            return None

        started = time.monotonic()
        plan = plan_batches(queue_len)
        sizes = partition(plan, queue_len)
        logger.info("batch_cycle_started",
                    queue_len=queue_len,
                    num_batches=plan.num_batches,
                    batch_size=plan.batch_size)

        tasks: list[asyncio.Task] = []
        for idx, size in enumerate(sizes, start=1):
            try:
                items = await self.queue.drain_batch(size)
            except WorkQueueUnavailable as e:
                # Batches already drained still run to completion
                logger.error("work_queue_unavailable", batch=idx, error=str(e))
                break
            if not items:
                break
            tasks.append(asyncio.create_task(
                self._process_batch(idx, items), name=f"batch_{idx}"
            ))

        results = list(await asyncio.gather(*tasks))
        summary = CycleSummary(
            batches=len(results),
            total=sum(r.size for r in results),
            succeeded=sum(r.succeeded for r in results),
            failed=sum(r.failed for r in results),
            duration_ms=round((time.monotonic() - started) * 1000, 2),
            results=results,
        )
        self.stats.record(summary)
        logger.info("batch_cycle_completed",
                    batches=summary.batches,
                    total=summary.total,
                    succeeded=summary.succeeded,
                    failed=summary.failed,
                    duration_ms=summary.duration_ms)
        return summary

    async def _process_batch(self, batch: int, items: list[T]) -> BatchResult:
        semaphore = asyncio.Semaphore(self.per_batch_concurrency)

        async def guarded(position: int, item: T) -> ItemOutcome:
            async with semaphore:
                return await self._process_item(batch, position, item)

        outcomes = await asyncio.gather(
            *(guarded(pos, item) for pos, item in enumerate(items))
        )
        result = BatchResult(batch=batch, size=len(items), outcomes=list(outcomes))
        result.succeeded = sum(1 for o in outcomes if o.ok)
        result.failed = result.size - result.succeeded
        logger.info("batch_completed",
                    batch=batch, size=result.size,
                    succeeded=result.succeeded, failed=result.failed)
        return result

    async def _process_item(self, batch: int, position: int, item: T) -> ItemOutcome:
        try:
            value = await self.handler(item)
        except Exception as e:
            logger.error("work_item_failed",
                         batch=batch,
                         position=position,
                         error=str(e),
                         error_type=type(e).__name__,
                         **self._describe(item))
            return ItemOutcome(position=position, ok=False, error=str(e))
        return ItemOutcome(position=position, ok=True, result=value)
