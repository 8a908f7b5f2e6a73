from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

ELECTRONIC_TICKET = "electronic_ticket"


class OrderStatus(str, Enum):
    AWAITING_PAYMENT = "awaiting_payment"
    CONFIRMED = "confirmed"
    TICKETED = "ticketed"
    PAID = "paid"
    CHANGED = "changed"
    PARTIALLY_REFUNDED = "partially_refunded"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"
    PAYMENT_FAILED = "payment_failed"


class PaymentStatus(str, Enum):
    AWAITING_PAYMENT = "awaiting_payment"
    SUCCEEDED = "succeeded"
    PAID = "paid"
    FAILED = "failed"
    PARTIALLY_REFUNDED = "partially_refunded"
    REFUNDED = "refunded"
    CANCELLED = "cancelled"


class PaymentProvider(str, Enum):
    STRIPE = "stripe"
    DUFFEL = "duffel"
    OTHER = "other"


TERMINAL_STATUSES = frozenset({OrderStatus.CANCELLED.value, OrderStatus.REFUNDED.value})
TICKETING_STATUSES = frozenset({OrderStatus.CONFIRMED.value, OrderStatus.TICKETED.value})


class _ProviderModel(BaseModel):
    model_config = ConfigDict(extra="ignore")


class OrderOwner(_ProviderModel):
    iata_code: str | None = None
    name: str | None = None


class OrderPaymentState(_ProviderModel):
    awaiting_payment: bool | None = None
    paid_at: datetime | None = None
    payment_required_by: datetime | None = None
    price_guarantee_expires_at: datetime | None = None


class BookingDocument(_ProviderModel):
    id: str | None = None
    type: str = ""
    unique_identifier: str | None = None
    url: str | None = None

    @property
    def is_electronic_ticket(self) -> bool:
        return self.type.strip().lower() == ELECTRONIC_TICKET


class BookingOrder(_ProviderModel):
    """The subset of a provider order the engine reads."""

    id: str
    status: str | None = None
    type: str | None = None
    offer_id: str | None = None
    total_amount: str | None = None
    total_currency: str | None = None
    owner: OrderOwner | None = None
    live_mode: bool | None = None
    booking_reference: str | None = None
    cancelled_at: datetime | None = None
    price_guarantee_expires_at: datetime | None = None
    payment_status: OrderPaymentState | None = None
    documents: list[BookingDocument] | None = None
    conditions: dict[str, Any] | None = None
    slices: list[dict[str, Any]] | None = None
    passengers: list[dict[str, Any]] | None = None

    @property
    def owner_label(self) -> str | None:
        if self.owner is None:
            return None
        return self.owner.iata_code or self.owner.name

    @property
    def electronic_tickets(self) -> list[BookingDocument]:
        return [document for document in self.documents or [] if document.is_electronic_ticket]

    @property
    def awaiting_payment(self) -> bool | None:
        return self.payment_status.awaiting_payment if self.payment_status else None

    @property
    def paid_at(self) -> datetime | None:
        return self.payment_status.paid_at if self.payment_status else None

    @property
    def order_type(self) -> str:
        if self.type in {"instant", "hold"}:
            return self.type
        return "hold" if self.awaiting_payment else "instant"

    @property
    def is_awaiting_payment(self) -> bool:
        """Only hold orders that are still unpaid may receive a new charge."""
        if self.paid_at is not None:
            return False
        if self.awaiting_payment is not None:
            return self.awaiting_payment
        return self.type == "hold"

    @property
    def refund_allowed(self) -> bool | None:
        refund = (self.conditions or {}).get("refund_before_departure")
        if not isinstance(refund, dict) or "allowed" not in refund:
            return None
        return bool(refund["allowed"])

    def resolved_status(self) -> str | None:
        if self.status:
            return self.status
        if self.cancelled_at is not None:
            return OrderStatus.CANCELLED.value
        if self.electronic_tickets:
            return OrderStatus.CONFIRMED.value
        if self.awaiting_payment is True:
            return OrderStatus.AWAITING_PAYMENT.value
        return None

    def resolved_payment_status(self) -> str | None:
        if self.awaiting_payment is True:
            return PaymentStatus.AWAITING_PAYMENT.value
        if self.paid_at is not None:
            return PaymentStatus.SUCCEEDED.value
        return None


class CancellationQuote(_ProviderModel):
    id: str
    order_id: str | None = None
    refund_amount: str | None = None
    refund_currency: str | None = None
    refund_to: str | None = None
    expires_at: datetime | None = None
    confirmed_at: datetime | None = None
    live_mode: bool | None = None


class ChangeOffer(_ProviderModel):
    id: str
    order_change_id: str | None = None
    change_total_amount: str | None = None
    change_total_currency: str | None = None
    penalty_total_amount: str | None = None
    penalty_total_currency: str | None = None
    new_total_amount: str | None = None
    new_total_currency: str | None = None
    expires_at: datetime | None = None


class ChangeRequest(_ProviderModel):
    id: str
    order_id: str | None = None
    order_change_offers: list[ChangeOffer] = Field(default_factory=list)
    live_mode: bool | None = None


class OrderChange(_ProviderModel):
    id: str
    order_id: str | None = None
    selected_order_change_offer: str | None = None
    change_total_amount: str | None = None
    change_total_currency: str | None = None
    penalty_total_amount: str | None = None
    penalty_total_currency: str | None = None
    expires_at: datetime | None = None
    confirmed_at: datetime | None = None


class ProviderPayment(_ProviderModel):
    id: str
    amount: str | None = None
    currency: str | None = None
    created_at: datetime | None = None


def to_iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.isoformat()


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()
