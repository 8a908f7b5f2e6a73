from __future__ import annotations

import time
from typing import Any, Protocol
from uuid import uuid4

from pydantic import BaseModel, Field

WEBHOOK_QUEUE = "booking-webhooks"
TICKET_POLL_QUEUE = "ticket-poll"


class Job(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid4()))
    queue: str
    name: str
    payload: dict[str, Any] = Field(default_factory=dict)
    job_id: str | None = None
    delay: float = 0.0
    run_at: float = Field(default_factory=time.time)
    remove_on_complete: bool = True
    remove_on_fail: bool = True
    attempts_made: int = 0
    max_attempts: int = 1
    backoff_seconds: float = 2.0

    @property
    def dedupe_key(self) -> str:
        return self.job_id or self.id


class JobQueue(Protocol):
    name: str

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
    ) -> Job | None: ...

    async def get(self) -> Job: ...

    def pop_due(self) -> Job | None: ...

    def complete(self, job: Job) -> None: ...

    async def fail(self, job: Job, error: BaseException) -> Job | None: ...
