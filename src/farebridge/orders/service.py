from __future__ import annotations

import logging
from typing import Any
from uuid import uuid4

from farebridge.bus.jobs import JobQueue
from farebridge.models.booking import ChangeOffer, ChangeRequest, OrderChange, OrderStatus, to_iso, utc_now_iso
from farebridge.providers.base import BookingProvider
from farebridge.stores.orders import OrderStore
from farebridge.tickets.poller import enqueue_ticket_poll

logger = logging.getLogger(__name__)

POLL_DELAY_AFTER_BOOKING = 3.0
MAX_ORDERS_PER_USER = 100


class OrderService:
    """User-facing booking operations: create, read, cancel and change orders."""

    def __init__(self, booking: BookingProvider, store: OrderStore, poll_queue: JobQueue) -> None:
        self.booking = booking
        self.store = store
        self.repositories = store.repositories
        self.poll_queue = poll_queue

    async def create_order(self, user_id: str, body: dict[str, Any]) -> dict[str, Any]:
        order = await self.booking.create_order(body, idempotency_key=str(uuid4()))
        row = self.store.merge_snapshot(order, event_type="order.created", user_id=user_id)
        tickets = order.electronic_tickets
        if tickets and row is not None:
            self.store.persist_ticket_documents(row, tickets)
            self.store.mark_eticket_ready(order.id)
        await enqueue_ticket_poll(self.poll_queue, order.id, delay=POLL_DELAY_AFTER_BOOKING)
        logger.info("order %s booked for user %s (%s)", order.id, user_id, order.order_type)
        return self.store.get(order.id) or {}

    def list_mine(self, user_id: str) -> list[dict[str, Any]]:
        return self.repositories.orders.list_by_user(user_id, limit=MAX_ORDERS_PER_USER)

    async def get_one(self, provider_order_id: str) -> dict[str, Any]:
        order = await self.booking.get_order(provider_order_id)
        return order.model_dump(mode="json")

    async def list_provider_orders(self, after: str | None = None, limit: int | None = None) -> dict[str, Any]:
        return await self.booking.list_orders(after=after, limit=limit)

    async def quote_cancellation(self, provider_order_id: str, reason: str | None = None) -> dict[str, Any]:
        quote = await self.booking.create_cancellation(provider_order_id, reason)
        self.store.upsert_cancellation(quote, order_id=provider_order_id)
        return quote.model_dump(mode="json")

    async def confirm_cancellation(self, cancellation_id: str) -> dict[str, Any]:
        quote = await self.booking.confirm_cancellation(cancellation_id)
        mirror = self.repositories.cancellations.get(cancellation_id) or {}
        self.store.confirm_cancellation(quote, order_id=mirror.get("order_provider_id"))
        return quote.model_dump(mode="json")

    async def get_cancellation(self, cancellation_id: str) -> dict[str, Any]:
        quote = await self.booking.get_cancellation(cancellation_id)
        self.store.upsert_cancellation(quote)
        return quote.model_dump(mode="json")

    async def request_change(
        self,
        provider_order_id: str,
        slices: dict[str, Any] | None = None,
        services: list[dict[str, Any]] | None = None,
    ) -> dict[str, Any]:
        request = await self.booking.create_change_request(provider_order_id, slices, services)
        self._persist_request(request, provider_order_id)
        self._persist_offers(request.id, request.order_change_offers)
        return request.model_dump(mode="json")

    async def list_change_offers(self, change_request_id: str) -> list[dict[str, Any]]:
        offers = await self.booking.list_change_offers(change_request_id)
        self._persist_offers(change_request_id, offers)
        return [offer.model_dump(mode="json") for offer in offers]

    async def create_change(self, change_offer_id: str) -> dict[str, Any]:
        change = await self.booking.create_change(change_offer_id)
        self._persist_change(change)
        return change.model_dump(mode="json")

    async def confirm_change(
        self,
        change_id: str | None = None,
        change_offer_id: str | None = None,
        payment: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Confirm a pending change, creating it from the selected offer when no change id is given."""
        if change_id is None:
            if change_offer_id is None:
                raise ValueError("Either change_id or change_offer_id is required")
            pending = await self.booking.create_change(change_offer_id)
            self._persist_change(pending)
            change_id = pending.id

        change = await self.booking.confirm_change(change_id, payment)
        self._persist_change(change, confirmed_at=to_iso(change.confirmed_at) or utc_now_iso())
        provider_order_id = change.order_id or (self.repositories.changes.get(change_id) or {}).get("order_provider_id")
        if provider_order_id:
            self.store.set_status(provider_order_id, OrderStatus.CHANGED.value)
        else:
            logger.warning("confirmed change %s carries no order id", change_id)
        return change.model_dump(mode="json")

    def _persist_request(self, request: ChangeRequest, provider_order_id: str) -> None:
        self.repositories.change_requests.upsert(
            {
                "provider_request_id": request.id,
                "order_provider_id": request.order_id or provider_order_id,
                "live_mode": request.live_mode,
                "payload": request.model_dump(mode="json", exclude={"order_change_offers"}),
            }
        )

    def _persist_offers(self, change_request_id: str, offers: list[ChangeOffer]) -> None:
        for offer in offers:
            self.repositories.change_offers.upsert(
                {
                    "provider_offer_id": offer.id,
                    "request_provider_id": change_request_id,
                    "change_total_amount": offer.change_total_amount,
                    "change_total_currency": offer.change_total_currency,
                    "penalty_total_amount": offer.penalty_total_amount,
                    "penalty_total_currency": offer.penalty_total_currency,
                    "new_total_amount": offer.new_total_amount,
                    "new_total_currency": offer.new_total_currency,
                    "expires_at": to_iso(offer.expires_at),
                    "payload": offer.model_dump(mode="json"),
                }
            )

    def _persist_change(self, change: OrderChange, confirmed_at: str | None = None) -> None:
        row: dict[str, Any] = {
            "provider_change_id": change.id,
            "order_provider_id": change.order_id,
            "offer_provider_id": change.selected_order_change_offer,
            "change_total_amount": change.change_total_amount,
            "change_total_currency": change.change_total_currency,
            "penalty_total_amount": change.penalty_total_amount,
            "penalty_total_currency": change.penalty_total_currency,
            "expires_at": to_iso(change.expires_at),
            "confirmed_at": confirmed_at,
            "payload": change.model_dump(mode="json"),
        }
        self.repositories.changes.upsert({key: value for key, value in row.items() if value is not None})
