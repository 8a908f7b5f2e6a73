from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from farebridge.models.booking import (
    BookingOrder,
    CancellationQuote,
    ChangeOffer,
    ChangeRequest,
    OrderChange,
    ProviderPayment,
)


ORDER_METADATA_KEY = "duffel_order_id"
OWNER_METADATA_KEY = "duffel_owner"
USER_METADATA_KEY = "user_id"


class BookingProvider(ABC):
    """System of record for flight orders, cancellations and ticket issuance."""

    name = "booking"

    @abstractmethod
    async def get_order(self, order_id: str) -> BookingOrder: ...

    @abstractmethod
    async def list_orders(self, after: str | None = None, limit: int | None = None) -> dict[str, Any]: ...

    @abstractmethod
    async def create_order(self, body: dict[str, Any], idempotency_key: str) -> BookingOrder: ...

    @abstractmethod
    async def create_payment(
        self, order_id: str, amount: str, currency: str, idempotency_key: str
    ) -> ProviderPayment: ...

    @abstractmethod
    async def create_cancellation(
        self, order_id: str, reason: str | None = None, idempotency_key: str | None = None
    ) -> CancellationQuote: ...

    @abstractmethod
    async def confirm_cancellation(self, cancellation_id: str) -> CancellationQuote: ...

    @abstractmethod
    async def get_cancellation(self, cancellation_id: str) -> CancellationQuote: ...

    @abstractmethod
    async def create_change_request(
        self,
        order_id: str,
        slices: dict[str, Any] | None = None,
        services: list[dict[str, Any]] | None = None,
    ) -> ChangeRequest: ...

    @abstractmethod
    async def list_change_offers(self, change_request_id: str) -> list[ChangeOffer]: ...

    @abstractmethod
    async def create_change(self, change_offer_id: str) -> OrderChange: ...

    @abstractmethod
    async def confirm_change(self, change_id: str, payment: dict[str, Any] | None = None) -> OrderChange: ...


class PaymentGateway(ABC):
    """System of record for charges, payment intents and refunds.

    Results are plain dicts shaped like the provider's JSON objects.
    """

    name = "payment"

    @abstractmethod
    async def create_intent(
        self, amount_minor: int, currency: str, metadata: dict[str, str], idempotency_key: str
    ) -> dict[str, Any]: ...

    @abstractmethod
    async def retrieve_intent(self, intent_id: str) -> dict[str, Any]: ...

    @abstractmethod
    async def search_intents_for_order(self, order_id: str) -> list[dict[str, Any]]: ...

    @abstractmethod
    async def create_refund(
        self,
        intent_id: str,
        amount_minor: int | None,
        idempotency_key: str,
        reason: str | None = None,
    ) -> dict[str, Any]: ...

    @abstractmethod
    def construct_event(self, raw_body: bytes, signature: str) -> dict[str, Any]:
        """Verify a webhook signature and return the decoded event."""
