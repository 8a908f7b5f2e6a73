from __future__ import annotations

from typing import Any

from farebridge.adapters.base import Adapter
from farebridge.models.events import ChargeFailed, ChargeSucceeded, PaymentEvent, RefundSignal, UnknownPaymentEvent

# refund.created is left out: the final state arrives with refund.updated
REFUND_EVENT_TYPES = {"charge.refund.updated", "refund.updated"}


def _metadata(obj: dict[str, Any]) -> dict[str, str]:
    raw = obj.get("metadata") or {}
    return {str(key): str(value) for key, value in raw.items()}


class StripeWebhookAdapter(Adapter[PaymentEvent]):
    def parse(self, payload: dict[str, Any]) -> PaymentEvent:
        event_id = str(payload.get("id", ""))
        event_type = str(payload.get("type", ""))
        obj = (payload.get("data") or {}).get("object") or {}

        if event_type == "payment_intent.succeeded":
            return ChargeSucceeded(
                event_id=event_id,
                event_type=event_type,
                intent_id=obj["id"],
                amount=int(obj.get("amount_received") or obj["amount"]),
                currency=str(obj["currency"]).upper(),
                metadata=_metadata(obj),
                latest_charge=obj.get("latest_charge"),
            )
        if event_type == "payment_intent.payment_failed":
            last_error = obj.get("last_payment_error") or {}
            return ChargeFailed(
                event_id=event_id,
                event_type=event_type,
                intent_id=obj["id"],
                metadata=_metadata(obj),
                failure_message=last_error.get("message"),
            )
        if event_type == "charge.refunded":
            refunds = (obj.get("refunds") or {}).get("data") or []
            return RefundSignal(
                event_id=event_id,
                event_type=event_type,
                refund_id=refunds[0]["id"] if refunds else f"{obj['id']}:{obj.get('amount_refunded', 0)}",
                intent_id=obj.get("payment_intent"),
                charge_id=obj["id"],
                amount_refunded=int(obj.get("amount_refunded") or 0),
                currency=str(obj["currency"]).upper(),
                status="succeeded",
                metadata=_metadata(obj),
            )
        if event_type in REFUND_EVENT_TYPES:
            return RefundSignal(
                event_id=event_id,
                event_type=event_type,
                refund_id=obj["id"],
                intent_id=obj.get("payment_intent"),
                charge_id=obj.get("charge"),
                amount_refunded=int(obj.get("amount") or 0),
                currency=str(obj["currency"]).upper(),
                status=str(obj.get("status") or "pending"),
                cumulative=False,
                metadata=_metadata(obj),
            )
        return UnknownPaymentEvent(event_id=event_id, event_type=event_type)
