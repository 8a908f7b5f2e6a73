from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

from farebridge.bus.jobs import Job, JobQueue

logger = logging.getLogger(__name__)

JobHandler = Callable[[Job], Awaitable[Any]]


class WorkerPool:
    """Asyncio workers draining job queues; each job is handled independently."""

    def __init__(self, concurrency: int = 4) -> None:
        self.concurrency = max(1, concurrency)
        self._routes: list[tuple[JobQueue, JobHandler]] = []
        self._tasks: list[asyncio.Task[None]] = []

    def register(self, queue: JobQueue, handler: JobHandler) -> None:
        self._routes.append((queue, handler))

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    async def start(self) -> None:
        if self.running:
            return
        for queue, handler in self._routes:
            for index in range(self.concurrency):
                task = asyncio.create_task(self._work(queue, handler), name=f"{queue.name}-worker-{index}")
                self._tasks.append(task)
        logger.info("worker pool started: %s task(s)", len(self._tasks))

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

    async def drain(self) -> int:
        """Run every job that is due now, including jobs they enqueue without delay."""
        processed = 0
        while True:
            progressed = False
            for queue, handler in self._routes:
                job = queue.pop_due()
                if job is None:
                    continue
                await self.run_job(queue, handler, job)
                processed += 1
                progressed = True
            if not progressed:
                return processed

    async def _work(self, queue: JobQueue, handler: JobHandler) -> None:
        while True:
            job = await queue.get()
            await self.run_job(queue, handler, job)

    @staticmethod
    async def run_job(queue: JobQueue, handler: JobHandler, job: Job) -> None:
        try:
            await handler(job)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("job %s on %s raised", job.dedupe_key, queue.name)
            await queue.fail(job, exc)
        else:
            queue.complete(job)
