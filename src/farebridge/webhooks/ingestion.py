from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any

from pydantic import ValidationError

from farebridge.bus.jobs import JobQueue
from farebridge.config import EngineSettings
from farebridge.db.repositories import WebhookEventRepository
from farebridge.errors import FarebridgeError, Unauthorized, UniqueViolationError
from farebridge.models.booking import to_iso
from farebridge.models.events import WebhookEnvelope
from farebridge.webhooks.signature import verify_signature

logger = logging.getLogger(__name__)

PROCESS_JOB = "process"
PROCESS_MAX_ATTEMPTS = 5
PROCESS_BACKOFF_SECONDS = 2.0


class MalformedWebhook(FarebridgeError, ValueError):
    pass


@dataclass
class IngestionResult:
    event_id: str
    event_type: str
    verified: bool
    enqueued: bool


class WebhookIngestion:
    """Verify, audit and enqueue booking webhooks. No business logic runs here."""

    def __init__(self, settings: EngineSettings, events: WebhookEventRepository, queue: JobQueue) -> None:
        self.settings = settings
        self.events = events
        self.queue = queue

    def verify(self, header: str | None, raw_body: bytes) -> bool:
        verified = verify_signature(header, raw_body, self.settings.booking_webhook_secret)
        if verified:
            return True
        if self.settings.accept_unverified_webhooks:
            logger.warning("accepting unverified booking webhook (dev bypass enabled)")
            return False
        raise Unauthorized("Invalid webhook signature")

    async def ingest(self, header: str | None, raw_body: bytes) -> IngestionResult:
        verified = self.verify(header, raw_body)
        try:
            payload: dict[str, Any] = json.loads(raw_body)
            envelope = WebhookEnvelope.model_validate(payload)
        except (ValueError, ValidationError) as exc:
            raise MalformedWebhook(f"Malformed webhook body: {exc}") from exc

        self._audit(envelope, payload)
        job = await self.queue.add(
            PROCESS_JOB,
            {"event": payload},
            max_attempts=PROCESS_MAX_ATTEMPTS,
            backoff_seconds=PROCESS_BACKOFF_SECONDS,
        )
        logger.info("webhook %s (%s) enqueued", envelope.id, envelope.type)
        return IngestionResult(
            event_id=envelope.id,
            event_type=envelope.type,
            verified=verified,
            enqueued=job is not None,
        )

    def _audit(self, envelope: WebhookEnvelope, payload: dict[str, Any]) -> None:
        try:
            self.events.insert(
                {
                    "id": envelope.id,
                    "type": envelope.type,
                    "idempotency_key": envelope.idempotency_key,
                    "api_version": envelope.api_version,
                    "live_mode": envelope.live_mode,
                    "created_at_remote": to_iso(envelope.created_at),
                    "payload": payload,
                }
            )
        except UniqueViolationError:
            logger.debug("webhook %s already audited", envelope.id)
