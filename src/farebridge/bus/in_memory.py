from __future__ import annotations

import asyncio
import heapq
import itertools
import logging
import time
from typing import Any, Callable

from farebridge.bus.jobs import Job

logger = logging.getLogger(__name__)


class InMemoryJobQueue:
    """Delayed job queue with job-id dedupe over pending (not yet started) jobs."""

    def __init__(self, name: str, clock: Callable[[], float] = time.time, poll_interval: float = 0.05) -> None:
        self.name = name
        self._clock = clock
        self._poll_interval = poll_interval
        self._heap: list[tuple[float, int, str]] = []
        self._sequence = itertools.count()
        self._jobs: dict[str, Job] = {}
        self._pending_keys: dict[str, str] = {}
        self.completed: list[Job] = []
        self.failed: list[Job] = []
        self.completed_count = 0
        self.failed_count = 0

    async def add(
        self,
        name: str,
        payload: dict[str, Any],
        *,
        job_id: str | None = None,
        delay: float = 0.0,
        remove_on_complete: bool = True,
        remove_on_fail: bool = True,
        max_attempts: int = 1,
        backoff_seconds: float = 2.0,
    ) -> Job | None:
        job = Job(
            queue=self.name,
            name=name,
            payload=payload,
            job_id=job_id,
            delay=delay,
            run_at=self._clock() + delay,
            remove_on_complete=remove_on_complete,
            remove_on_fail=remove_on_fail,
            max_attempts=max_attempts,
            backoff_seconds=backoff_seconds,
        )
        return self.push(job)

    def push(self, job: Job) -> Job | None:
        if job.dedupe_key in self._pending_keys:
            logger.debug("queue %s: job %s already pending", self.name, job.dedupe_key)
            return None
        self._jobs[job.id] = job
        self._pending_keys[job.dedupe_key] = job.id
        heapq.heappush(self._heap, (job.run_at, next(self._sequence), job.id))
        return job

    @property
    def pending(self) -> list[Job]:
        return sorted(self._jobs.values(), key=lambda job: job.run_at)

    def pending_job(self, job_id: str) -> Job | None:
        internal_id = self._pending_keys.get(job_id)
        return self._jobs.get(internal_id) if internal_id else None

    def next_run_at(self) -> float | None:
        return self._heap[0][0] if self._heap else None

    def pop_due(self, now: float | None = None) -> Job | None:
        now = self._clock() if now is None else now
        if not self._heap or self._heap[0][0] > now:
            return None
        _run_at, _seq, internal_id = heapq.heappop(self._heap)
        job = self._jobs.pop(internal_id)
        self._pending_keys.pop(job.dedupe_key, None)
        return job

    def pop_next(self) -> Job | None:
        """Take the earliest job regardless of its delay."""
        next_run_at = self.next_run_at()
        return self.pop_due(now=next_run_at) if next_run_at is not None else None

    async def get(self) -> Job:
        while True:
            job = self.pop_due()
            if job is not None:
                return job
            await asyncio.sleep(self._poll_interval)

    def complete(self, job: Job) -> None:
        self.completed_count += 1
        if not job.remove_on_complete:
            self.completed.append(job)

    async def fail(self, job: Job, error: BaseException) -> Job | None:
        attempts_made = job.attempts_made + 1
        if attempts_made < job.max_attempts:
            delay = job.backoff_seconds * (2 ** (attempts_made - 1))
            retry = job.model_copy(update={"attempts_made": attempts_made, "delay": delay, "run_at": self._clock() + delay})
            logger.warning(
                "queue %s: job %s failed (%s), retry %s/%s in %.1fs",
                self.name,
                job.dedupe_key,
                error,
                attempts_made,
                job.max_attempts - 1,
                delay,
            )
            return self.push(retry)
        self.failed_count += 1
        if not job.remove_on_fail:
            self.failed.append(job.model_copy(update={"attempts_made": attempts_made}))
        logger.error("queue %s: job %s failed permanently: %s", self.name, job.dedupe_key, error)
        return None
