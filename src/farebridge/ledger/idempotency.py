from __future__ import annotations

import logging

from farebridge.db.repositories import ProcessedKeyRepository
from farebridge.errors import UniqueViolationError
from farebridge.models.events import WebhookEnvelope

logger = logging.getLogger(__name__)


def key_for_envelope(envelope: WebhookEnvelope) -> str:
    if envelope.idempotency_key:
        return f"{envelope.type}|{envelope.idempotency_key}"
    return f"event|{envelope.id}"


def key_for_payment_event(event_id: str) -> str:
    return f"stripe|{event_id}"


class IdempotencyLedger:
    """Durable set of applied event keys; existence alone gates re-application."""

    def __init__(self, repository: ProcessedKeyRepository | None = None) -> None:
        self.repository = repository or ProcessedKeyRepository()

    def seen(self, key: str) -> bool:
        return self.repository.exists(key)

    def record(self, key: str) -> bool:
        """Best-effort. The business effect has already landed when this runs."""
        try:
            self.repository.insert(key)
        except UniqueViolationError:
            return False
        except Exception:
            logger.exception("failed to record idempotency key %s", key)
            return False
        return True
