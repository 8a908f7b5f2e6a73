from __future__ import annotations

import logging
from dataclasses import dataclass

from farebridge.bus.jobs import Job, JobQueue
from farebridge.errors import ProviderError
from farebridge.providers.base import BookingProvider
from farebridge.stores.orders import OrderStore, snapshot_values

logger = logging.getLogger(__name__)

POLL_JOB = "poll"
DEFAULT_MAX_ATTEMPTS = 15
BASE_DELAY_SECONDS = 5.0
MAX_DELAY_SECONDS = 60.0
BACKOFF_FACTOR = 1.6


def poll_delay(attempt: int) -> float:
    """Delay before the attempt that follows ``attempt``."""
    return min(MAX_DELAY_SECONDS, BASE_DELAY_SECONDS * BACKOFF_FACTOR ** (attempt - 1))


def poll_job_id(provider_order_id: str) -> str:
    return f"poll:{provider_order_id}"


async def enqueue_ticket_poll(
    queue: JobQueue,
    provider_order_id: str,
    attempt: int = 1,
    delay: float = 0.0,
) -> Job | None:
    """Schedule a poll. A no-op while a poll for the same order is already pending."""
    return await queue.add(
        POLL_JOB,
        {"order_id": provider_order_id, "attempt": attempt},
        job_id=poll_job_id(provider_order_id),
        delay=delay,
        remove_on_complete=True,
        remove_on_fail=True,
    )


@dataclass
class PollOutcome:
    order_id: str
    attempt: int
    status: str
    documents: int = 0


class TicketPoller:
    def __init__(
        self,
        booking: BookingProvider,
        store: OrderStore,
        queue: JobQueue,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ) -> None:
        self.booking = booking
        self.store = store
        self.queue = queue
        self.max_attempts = max_attempts

    async def handle(self, job: Job) -> PollOutcome:
        return await self.poll(str(job.payload["order_id"]), int(job.payload.get("attempt") or 1))

    async def poll(self, provider_order_id: str, attempt: int = 1) -> PollOutcome:
        try:
            order = await self.booking.get_order(provider_order_id)
        except ProviderError as exc:
            logger.warning("ticket poll %s attempt %s: order fetch failed: %s", provider_order_id, attempt, exc)
            tickets = []
        else:
            tickets = order.electronic_tickets

        if tickets:
            row = self.store.ensure_order(provider_order_id, seed=snapshot_values(order))
            if row is None:
                return PollOutcome(provider_order_id, attempt, "unknown_order")
            stored = self.store.persist_ticket_documents(row, tickets)
            self.store.mark_eticket_ready(provider_order_id)
            logger.info("order %s: %s ticket document(s) stored on attempt %s", provider_order_id, len(stored), attempt)
            return PollOutcome(provider_order_id, attempt, "ticketed", documents=len(stored))

        if attempt >= self.max_attempts:
            logger.warning("order %s: no ticket documents after %s attempts; giving up", provider_order_id, attempt)
            return PollOutcome(provider_order_id, attempt, "exhausted")

        delay = poll_delay(attempt)
        await enqueue_ticket_poll(self.queue, provider_order_id, attempt + 1, delay)
        logger.debug("order %s: no ticket documents yet, retry %s in %.1fs", provider_order_id, attempt + 1, delay)
        return PollOutcome(provider_order_id, attempt, "requeued")
