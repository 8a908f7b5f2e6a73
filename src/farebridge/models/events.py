from __future__ import annotations

from datetime import datetime
from typing import Any, Literal, Union

from pydantic import BaseModel, Field

from farebridge.models.booking import BookingOrder, CancellationQuote


class WebhookEnvelope(BaseModel):
    id: str
    type: str
    idempotency_key: str | None = None
    api_version: str | None = None
    live_mode: bool = False
    created_at: datetime | None = None
    data: dict[str, Any] = Field(default_factory=dict)

    @property
    def object(self) -> dict[str, Any]:
        obj = self.data.get("object")
        return obj if isinstance(obj, dict) else {}


class _BookingEvent(BaseModel):
    envelope: WebhookEnvelope


class OrderSnapshotEvent(_BookingEvent):
    kind: Literal["order_snapshot"] = "order_snapshot"
    order: BookingOrder


class AirlineChangeEvent(_BookingEvent):
    kind: Literal["airline_change"] = "airline_change"
    change_id: str
    order_id: str
    payload: dict[str, Any]


class CancellationEvent(_BookingEvent):
    kind: Literal["cancellation"] = "cancellation"
    confirmed: bool
    cancellation: CancellationQuote


class PingEvent(_BookingEvent):
    kind: Literal["ping"] = "ping"


class UnknownBookingEvent(_BookingEvent):
    kind: Literal["unknown"] = "unknown"
    reason: str = "unrecognized type"


BookingEvent = Union[OrderSnapshotEvent, AirlineChangeEvent, CancellationEvent, PingEvent, UnknownBookingEvent]


class _PaymentEvent(BaseModel):
    event_id: str
    event_type: str


class ChargeSucceeded(_PaymentEvent):
    kind: Literal["charge_succeeded"] = "charge_succeeded"
    intent_id: str
    amount: int
    currency: str
    metadata: dict[str, str] = Field(default_factory=dict)
    latest_charge: str | None = None


class ChargeFailed(_PaymentEvent):
    kind: Literal["charge_failed"] = "charge_failed"
    intent_id: str
    metadata: dict[str, str] = Field(default_factory=dict)
    failure_message: str | None = None


class RefundSignal(_PaymentEvent):
    kind: Literal["refund"] = "refund"
    refund_id: str
    intent_id: str | None = None
    charge_id: str | None = None
    amount_refunded: int
    currency: str
    status: str = "succeeded"
    # charge notifications carry the running total; refund objects carry one refund
    cumulative: bool = True
    metadata: dict[str, str] = Field(default_factory=dict)


class UnknownPaymentEvent(_PaymentEvent):
    kind: Literal["unknown"] = "unknown"


PaymentEvent = Union[ChargeSucceeded, ChargeFailed, RefundSignal, UnknownPaymentEvent]
