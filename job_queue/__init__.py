"""
Job Queue — buffers pending payments and drains them in adaptive batches.

- work_queue: FIFO queue backends (in-memory asyncio, Redis list)
- batching:   batch-count / batch-size policy for a given queue length
- processor:  background loop that drains the queue and fans out per batch
"""
