from __future__ import annotations

from typing import Any

from pydantic import ValidationError

from farebridge.adapters.base import Adapter
from farebridge.models.booking import BookingOrder, CancellationQuote
from farebridge.models.events import (
    AirlineChangeEvent,
    BookingEvent,
    CancellationEvent,
    OrderSnapshotEvent,
    PingEvent,
    UnknownBookingEvent,
    WebhookEnvelope,
)

ORDER_SNAPSHOT_TYPES = {"order.created", "order.updated"}
CANCELLATION_TYPES = {"order_cancellation.created", "order_cancellation.confirmed"}
AIRLINE_CHANGE_TYPE = "order.airline_initiated_change_detected"
PING_TYPES = {"ping.triggered", "testing"}


class DuffelWebhookAdapter(Adapter[BookingEvent]):
    def parse(self, payload: dict[str, Any]) -> BookingEvent:
        envelope = WebhookEnvelope.model_validate(payload)
        obj = envelope.object
        try:
            if envelope.type in ORDER_SNAPSHOT_TYPES:
                return OrderSnapshotEvent(envelope=envelope, order=BookingOrder.model_validate(obj))
            if envelope.type == AIRLINE_CHANGE_TYPE:
                order_id = obj.get("order_id") or obj.get("id")
                if not order_id:
                    return UnknownBookingEvent(envelope=envelope, reason="airline change without order id")
                return AirlineChangeEvent(
                    envelope=envelope,
                    change_id=str(obj.get("id") or envelope.id),
                    order_id=str(order_id),
                    payload=obj,
                )
            if envelope.type in CANCELLATION_TYPES:
                return CancellationEvent(
                    envelope=envelope,
                    confirmed=envelope.type.endswith(".confirmed"),
                    cancellation=CancellationQuote.model_validate(obj),
                )
        except ValidationError as exc:
            return UnknownBookingEvent(envelope=envelope, reason=f"malformed object: {exc.error_count()} error(s)")
        if envelope.type in PING_TYPES:
            return PingEvent(envelope=envelope)
        return UnknownBookingEvent(envelope=envelope)
