from __future__ import annotations

from typing import Any, Iterable

from farebridge.bus.in_memory import InMemoryJobQueue
from farebridge.bus.jobs import Job


class FanoutJobQueue:
    """The primary queue schedules and dedupes; mirrors receive every accepted job."""

    def __init__(self, primary: InMemoryJobQueue, mirrors: Iterable[object]) -> None:
        self.primary = primary
        self.name = primary.name
        self._mirrors = list(mirrors)

    async def add(self, name: str, payload: dict[str, Any], **options: Any) -> Job | None:
        job = await self.primary.add(name, payload, **options)
        if job is not None:
            for mirror in self._mirrors:
                mirror.publish(job)
        return job

    async def get(self) -> Job:
        return await self.primary.get()

    def pop_due(self) -> Job | None:
        return self.primary.pop_due()

    def complete(self, job: Job) -> None:
        self.primary.complete(job)

    async def fail(self, job: Job, error: BaseException) -> Job | None:
        return await self.primary.fail(job, error)

    def close(self) -> None:
        for mirror in self._mirrors:
            close = getattr(mirror, "close", None)
            if callable(close):
                close()
