"""
Side-Effect Worker — Supervised execution of post-send hooks.

Hooks (CRM sync, notifications, webhooks to the operator's backend) must
never delay or fail a dispatch, but they must not be fire-and-forget
either: every job runs on a worker task owned by this object, failures are
logged with the hook name, and ``drain()`` / ``stop()`` give shutdown a
point to wait for outstanding work.

Usage:
    worker = SideEffectWorker(concurrency=2)
    worker.submit("crm_sync", crm_sync, message)
    await worker.drain()
    await worker.stop()
"""
from __future__ import annotations

import asyncio
import structlog
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

logger = structlog.get_logger()


@dataclass
class SideEffectJob:
    name: str
    fn: Callable[..., Awaitable[Any]]
    args: tuple = field(default_factory=tuple)


class SideEffectWorker:

    def __init__(self, concurrency: int = 2, max_queue: int = 1000):
        self.concurrency = max(1, concurrency)
        self._queue: Optional[asyncio.Queue] = None
        self._max_queue = max_queue
        self._tasks: list[asyncio.Task] = []
        self.processed = 0
        self.failed = 0
        self.dropped = 0

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._tasks)

    def _ensure_started(self):
        if self._queue is None:
            self._queue = asyncio.Queue(maxsize=self._max_queue)
        if not self.running:
            self._tasks = [
                asyncio.create_task(self._run(i)) for i in range(self.concurrency)
            ]
            logger.info("side_effect_worker_started", concurrency=self.concurrency)

    def submit(self, name: str, fn: Callable[..., Awaitable[Any]], *args: Any) -> bool:
        """Queue a hook call. Must be called from inside the event loop."""
        self._ensure_started()
        try:
            self._queue.put_nowait(SideEffectJob(name=name, fn=fn, args=args))
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning("side_effect_dropped", hook=name, queue_size=self._queue.qsize())
            return False
        return True

    async def drain(self):
        """Wait until every queued job has run."""
        if self._queue is not None:
            await self._queue.join()

    async def stop(self, drain: bool = True):
        if drain:
            await self.drain()
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks.clear()
        logger.info("side_effect_worker_stopped",
                    processed=self.processed,
                    failed=self.failed,
                    dropped=self.dropped)

    async def _run(self, index: int):
        while True:
            job = await self._queue.get()
            try:
                await job.fn(*job.args)
                self.processed += 1
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.failed += 1
                logger.error("side_effect_failed",
                             hook=job.name,
                             worker=index,
                             error=str(e),
                             exc_info=True)
            finally:
                self._queue.task_done()

    def stats(self) -> dict[str, int]:
        return {
            "queued": self._queue.qsize() if self._queue else 0,
            "processed": self.processed,
            "failed": self.failed,
            "dropped": self.dropped,
        }
