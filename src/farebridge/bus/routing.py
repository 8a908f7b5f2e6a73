from __future__ import annotations

from farebridge.bus.jobs import TICKET_POLL_QUEUE, WEBHOOK_QUEUE

QUEUE_TOPIC_MAP = {
    WEBHOOK_QUEUE: "farebridge.webhooks.booking",
    TICKET_POLL_QUEUE: "farebridge.tickets.poll",
}
