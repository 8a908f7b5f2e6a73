from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from farebridge.adapters.duffel_webhook import DuffelWebhookAdapter
from farebridge.bus.jobs import Job, JobQueue
from farebridge.db.repositories import WebhookEventRepository
from farebridge.ledger.idempotency import IdempotencyLedger, key_for_envelope
from farebridge.models.booking import TICKETING_STATUSES
from farebridge.models.events import (
    AirlineChangeEvent,
    BookingEvent,
    CancellationEvent,
    OrderSnapshotEvent,
    PingEvent,
)
from farebridge.stores.orders import OrderStore
from farebridge.tickets.poller import enqueue_ticket_poll

logger = logging.getLogger(__name__)

POLL_DELAY_AFTER_CONFIRMATION = 2.0


@dataclass
class ProcessOutcome:
    event_id: str
    event_type: str
    status: str
    order_id: str | None = None


class EventProcessor:
    """Applies queued booking webhooks to the Order aggregate at most once per idempotency key."""

    def __init__(
        self,
        store: OrderStore,
        ledger: IdempotencyLedger,
        events: WebhookEventRepository,
        poll_queue: JobQueue,
        adapter: DuffelWebhookAdapter | None = None,
    ) -> None:
        self.store = store
        self.ledger = ledger
        self.events = events
        self.poll_queue = poll_queue
        self.adapter = adapter or DuffelWebhookAdapter()

    async def handle(self, job: Job) -> ProcessOutcome:
        return await self.process(job.payload["event"])

    async def process(self, payload: dict[str, Any]) -> ProcessOutcome:
        event = self.adapter.parse(payload)
        envelope = event.envelope
        key = key_for_envelope(envelope)
        if self.ledger.seen(key):
            logger.info("event %s (%s) already applied", envelope.id, key)
            return ProcessOutcome(envelope.id, envelope.type, "duplicate")

        outcome = await self._apply(event)
        self.ledger.record(key)
        self._stamp_processed(envelope.id)
        return outcome

    async def _apply(self, event: BookingEvent) -> ProcessOutcome:
        envelope = event.envelope
        if isinstance(event, OrderSnapshotEvent):
            row = self.store.merge_snapshot(event.order, event_type=envelope.type)
            if row is None:
                return ProcessOutcome(envelope.id, envelope.type, "skipped", event.order.id)
            if row.get("status") in TICKETING_STATUSES:
                await enqueue_ticket_poll(self.poll_queue, event.order.id, delay=POLL_DELAY_AFTER_CONFIRMATION)
            return ProcessOutcome(envelope.id, envelope.type, "applied", event.order.id)

        if isinstance(event, AirlineChangeEvent):
            applied = self.store.record_airline_change(event.order_id, event.change_id, event.payload)
            return ProcessOutcome(envelope.id, envelope.type, "applied" if applied else "skipped", event.order_id)

        if isinstance(event, CancellationEvent):
            quote = event.cancellation
            if event.confirmed:
                self.store.confirm_cancellation(quote)
            else:
                self.store.upsert_cancellation(quote)
            return ProcessOutcome(envelope.id, envelope.type, "applied", quote.order_id)

        if isinstance(event, PingEvent):
            return ProcessOutcome(envelope.id, envelope.type, "ignored")

        logger.info("ignoring booking event %s of type %s (%s)", envelope.id, envelope.type, event.reason)
        return ProcessOutcome(envelope.id, envelope.type, "ignored")

    def _stamp_processed(self, event_id: str) -> None:
        try:
            self.events.mark_processed(event_id)
        except Exception as exc:
            logger.warning("could not stamp webhook %s as processed: %s", event_id, exc)
