from __future__ import annotations

import logging
from typing import Any

from farebridge.audit.lineage import AuditStore
from farebridge.bus.factory import build_queue_from_env
from farebridge.bus.jobs import TICKET_POLL_QUEUE, WEBHOOK_QUEUE, JobQueue
from farebridge.bus.worker import WorkerPool
from farebridge.config import EngineSettings
from farebridge.db.repositories import Repositories, build_repositories
from farebridge.ledger.idempotency import IdempotencyLedger
from farebridge.orders.service import OrderService
from farebridge.processing.events import EventProcessor
from farebridge.providers.base import BookingProvider, PaymentGateway
from farebridge.providers.duffel import DuffelClient
from farebridge.providers.stripe_gateway import StripeGateway
from farebridge.settlement.payments import PaymentOrchestrator
from farebridge.settlement.refunds import RefundOrchestrator
from farebridge.stores.orders import OrderStore
from farebridge.tickets.poller import TicketPoller
from farebridge.webhooks.ingestion import WebhookIngestion

logger = logging.getLogger(__name__)


class FarebridgeRuntime:
    """Composition root. Every collaborator is built here or passed in."""

    def __init__(
        self,
        settings: EngineSettings | None = None,
        repositories: Repositories | None = None,
        booking: BookingProvider | None = None,
        payments: PaymentGateway | None = None,
        webhook_queue: JobQueue | None = None,
        poll_queue: JobQueue | None = None,
    ) -> None:
        self.settings = settings or EngineSettings.from_env()
        self.repositories = repositories or build_repositories()
        self.booking = booking or DuffelClient.from_settings(self.settings)
        self.payments = payments or StripeGateway.from_settings(self.settings)
        self.webhook_queue = webhook_queue or build_queue_from_env(WEBHOOK_QUEUE)
        self.poll_queue = poll_queue or build_queue_from_env(TICKET_POLL_QUEUE)

        self.audit = AuditStore(self.repositories.audit)
        self.ledger = IdempotencyLedger(self.repositories.processed_keys)
        self.store = OrderStore(self.repositories, self.audit, self.settings)

        self.ingestion = WebhookIngestion(self.settings, self.repositories.webhook_events, self.webhook_queue)
        self.processor = EventProcessor(self.store, self.ledger, self.repositories.webhook_events, self.poll_queue)
        self.poller = TicketPoller(self.booking, self.store, self.poll_queue, self.settings.poll_max_attempts)
        self.refunds = RefundOrchestrator(self.booking, self.payments, self.store, self.audit)
        self.payment_orchestrator = PaymentOrchestrator(
            self.booking,
            self.payments,
            self.store,
            self.ledger,
            self.audit,
            self.poll_queue,
            self.refunds,
        )
        self.orders = OrderService(self.booking, self.store, self.poll_queue)

        self.workers = WorkerPool(self.settings.worker_concurrency)
        self.workers.register(self.webhook_queue, self.processor.handle)
        self.workers.register(self.poll_queue, self.poller.handle)

    async def start(self) -> None:
        if not self.settings.run_workers:
            logger.info("workers disabled; jobs stay queued until drained")
            return
        await self.workers.start()

    async def stop(self) -> None:
        await self.workers.stop()
        for queue in (self.webhook_queue, self.poll_queue):
            close = getattr(queue, "close", None)
            if callable(close):
                close()
        aclose = getattr(self.booking, "aclose", None)
        if callable(aclose):
            await aclose()

    async def drain(self) -> int:
        return await self.workers.drain()

    def status(self) -> dict[str, Any]:
        return {
            "environment": self.settings.environment,
            "workers_running": self.workers.running,
            "booking_provider": self.booking.name,
            "payment_provider": self.payments.name,
        }
