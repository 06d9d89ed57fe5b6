"""
Batch strategy — how many batches to cut a queue snapshot into, and how big.

Tiers keep each batch in a 10–20 item range regardless of load, so a burst
never fans out into thousands of tasks and a tiny queue is not split into
near-empty ones:

  queue_len    num_batches                  batch_size
  0            0                            0
  1–10         1                            queue_len
  11–50        2 + min(1, n // 25)          ceil(n / num_batches)
  51–200       4 + min(4, n // 50)          ceil(n / num_batches)
  201+         10 + min(10, n // 100)       min(20, ceil(n / num_batches))
"""
from __future__ import annotations

from dataclasses import dataclass

MAX_BATCH_SIZE = 20


@dataclass(frozen=True, slots=True)
class BatchPlan:
    num_batches: int
    batch_size: int


def _ceil_div(a: int, b: int) -> int:
    return -(-a // b)


def plan_batches(queue_len: int) -> BatchPlan:
    """Map the current queue length to (num_batches, batch_size)."""
    if queue_len < 0:
        raise ValueError(f"queue_len must be >= 0, got {queue_len}")
    if queue_len == 0:
        return BatchPlan(0, 0)
    if queue_len <= 10:
        return BatchPlan(1, queue_len)
    if queue_len <= 50:
        num = 2 + min(1, queue_len // 25)
        return BatchPlan(num, _ceil_div(queue_len, num))
    if queue_len <= 200:
        num = 4 + min(4, queue_len // 50)
        return BatchPlan(num, _ceil_div(queue_len, num))
    num = 10 + min(10, queue_len // 100)
    return BatchPlan(num, min(MAX_BATCH_SIZE, _ceil_div(queue_len, num)))


def partition(plan: BatchPlan, queue_len: int) -> list[int]:
    """
    Per-batch sizes for one drain. Every batch takes plan.batch_size except
    the last, which absorbs whatever is left so the sizes sum to queue_len.
    Batches that would come out empty are dropped.
    """
    if queue_len < 0:
        raise ValueError(f"queue_len must be >= 0, got {queue_len}")
    if plan.num_batches == 0 or queue_len == 0:
        return []

    sizes: list[int] = []
    remaining = queue_len
    for idx in range(plan.num_batches):
        if remaining <= 0:
            break
        if idx == plan.num_batches - 1:
            take = remaining
        else:
            take = min(plan.batch_size, remaining)
        sizes.append(take)
        remaining -= take
    return sizes
