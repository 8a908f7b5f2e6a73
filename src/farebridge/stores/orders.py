from __future__ import annotations

import logging
from typing import Any

from farebridge.audit.lineage import AuditStore
from farebridge.config import EngineSettings
from farebridge.db.repositories import Repositories
from farebridge.errors import MissingConstraintError, UniqueViolationError
from farebridge.models.booking import (
    TERMINAL_STATUSES,
    BookingDocument,
    BookingOrder,
    CancellationQuote,
    OrderStatus,
    PaymentProvider,
    PaymentStatus,
    to_iso,
    utc_now_iso,
)
from farebridge.models.currency import to_minor_units

logger = logging.getLogger(__name__)

# Columns a snapshot merge never writes over a terminal status.
_STATUS_FIELDS = ("status", "payment_status")
_FAILURE_LOCKED_STATUSES = frozenset(status.value for status in OrderStatus) - {OrderStatus.AWAITING_PAYMENT.value}


def snapshot_values(order: BookingOrder) -> dict[str, Any]:
    """Order row columns carried by a provider snapshot. Absent values are left out so merges never blank a column."""
    values: dict[str, Any] = {
        "offer_id": order.offer_id,
        "amount": order.total_amount,
        "currency": order.total_currency,
        "owner": order.owner_label,
        "order_type": order.order_type if order.type or order.payment_status else None,
        "live_mode": order.live_mode,
        "booking_reference": order.booking_reference,
        "awaiting_payment": order.awaiting_payment,
        "paid_at": to_iso(order.paid_at),
        "payment_required_by": to_iso(order.payment_status.payment_required_by) if order.payment_status else None,
        "price_guarantee_expires_at": to_iso(
            order.price_guarantee_expires_at
            or (order.payment_status.price_guarantee_expires_at if order.payment_status else None)
        ),
        "status": order.resolved_status(),
        "payment_status": order.resolved_payment_status(),
    }
    if order.documents is not None:
        values["documents"] = [document.model_dump(mode="json") for document in order.documents]
    return {key: value for key, value in values.items() if value is not None}


class OrderStore:
    """All writes to the Order aggregate and its child records.

    Every mutation is a keyed upsert or a keyed conditional update. Terminal
    statuses are sticky: a later non-terminal status never overwrites them.
    """

    def __init__(self, repositories: Repositories, audit: AuditStore, settings: EngineSettings) -> None:
        self.repositories = repositories
        self.orders = repositories.orders
        self.audit = audit
        self.settings = settings

    def get(self, provider_order_id: str) -> dict[str, Any] | None:
        return self.orders.get_by_provider_id(provider_order_id)

    def get_by_intent(self, intent_id: str) -> dict[str, Any] | None:
        return self.orders.get_by_intent(intent_id)

    def ensure_order(
        self,
        provider_order_id: str,
        seed: dict[str, Any] | None = None,
        user_id: str | None = None,
    ) -> dict[str, Any] | None:
        """Return the local order, creating it when unknown.

        Without an explicit owner the order is attributed to a placeholder user,
        unless placeholder creation is disabled, in which case the unknown order
        is flagged for operators and None is returned.
        """
        existing = self.orders.get_by_provider_id(provider_order_id)
        if existing is not None:
            return existing
        if user_id is None:
            if not self.settings.create_placeholder_orders:
                logger.warning("event references unknown order %s; placeholder creation disabled", provider_order_id)
                self.audit.log(
                    action="unknown_order",
                    component="order_store",
                    order_id=provider_order_id,
                    detail={"reason": "event for unknown order"},
                )
                return None
            user_id = self._placeholder_user_id()
            logger.info("creating placeholder order %s for user %s", provider_order_id, user_id)
        row = {**(seed or {}), "provider_booking_id": provider_order_id, "user_id": user_id}
        return self.orders.insert_if_absent(row)

    def _placeholder_user_id(self) -> str:
        user = self.repositories.users.first() or self.repositories.users.ensure(self.settings.system_user_email)
        return user["id"]

    def merge_snapshot(
        self,
        order: BookingOrder,
        event_type: str | None = None,
        user_id: str | None = None,
    ) -> dict[str, Any] | None:
        values = snapshot_values(order)
        if event_type:
            values["last_event_type"] = event_type
        if user_id:
            values["user_id"] = user_id
        row = self.ensure_order(order.id, seed=values, user_id=user_id)
        if row is None:
            return None

        plain = {key: value for key, value in values.items() if key not in _STATUS_FIELDS}
        lifecycle = {key: values[key] for key in _STATUS_FIELDS if key in values}
        if plain:
            self.orders.update(order.id, plain)
        if lifecycle:
            if lifecycle.get("status") in TERMINAL_STATUSES:
                self.orders.update(order.id, lifecycle)
            elif not self.orders.update(order.id, lifecycle, unless_status_in=TERMINAL_STATUSES):
                logger.info("order %s is terminal; snapshot status %s not applied", order.id, lifecycle.get("status"))
        return self.orders.get_by_provider_id(order.id)

    def set_status(
        self,
        provider_order_id: str,
        status: str | None = None,
        payment_status: str | None = None,
        extra: dict[str, Any] | None = None,
        respect_terminal: bool = True,
    ) -> bool:
        values = dict(extra or {})
        if status is not None:
            values["status"] = status
        if payment_status is not None:
            values["payment_status"] = payment_status
        guard = TERMINAL_STATUSES if respect_terminal and status not in TERMINAL_STATUSES else None
        return self.orders.update(provider_order_id, values, unless_status_in=guard)

    def link_payment(
        self,
        provider_order_id: str,
        intent_id: str,
        payment_status: str | None = None,
        provider: PaymentProvider = PaymentProvider.STRIPE,
        paid_at: str | None = None,
    ) -> bool:
        values: dict[str, Any] = {"payment_provider": provider.value, "payment_intent_id": intent_id}
        if payment_status is not None:
            values["payment_status"] = payment_status
        if paid_at is not None:
            values["paid_at"] = paid_at
        return self.orders.update(provider_order_id, values)

    def persist_ticket_documents(
        self,
        order_row: dict[str, Any],
        documents: list[BookingDocument],
    ) -> list[dict[str, Any]]:
        provider_order_id = order_row["provider_booking_id"]
        stored = []
        seen: set[str] = set()
        for index, document in enumerate(documents, start=1):
            raw_unique = document.unique_identifier or f"{provider_order_id}:{index}"
            if raw_unique in seen:
                # sandbox orders can repeat a placeholder number across passengers
                raw_unique = f"{raw_unique}:{index}"
            seen.add(raw_unique)
            row = {
                "order_id": order_row["id"],
                "type": document.type,
                "unique_id": raw_unique,
                "url": document.url,
            }
            stored.append(self._persist_document(row, provider_order_id))
        return stored

    def _persist_document(self, row: dict[str, Any], provider_order_id: str) -> dict[str, Any]:
        repository = self.repositories.ticket_documents
        raw_unique = row["unique_id"]
        try:
            return repository.upsert_by_order_unique(row)
        except (MissingConstraintError, UniqueViolationError) as exc:
            logger.warning("ticket document %s: composite upsert unavailable (%s)", raw_unique, exc)

        synthetic = {**row, "id": f"{row['order_id']}:{raw_unique}"}
        try:
            return repository.upsert_by_id(synthetic)
        except UniqueViolationError:
            logger.warning(
                "ticket document %s collides with another order; namespacing by %s", raw_unique, provider_order_id
            )
        return repository.upsert_by_id({**synthetic, "unique_id": f"{provider_order_id}:{raw_unique}"})

    def mark_eticket_ready(self, provider_order_id: str) -> bool:
        self.orders.update(provider_order_id, {"eticket_ready": True})
        return self.orders.update(
            provider_order_id,
            {"status": OrderStatus.CONFIRMED.value},
            unless_status_in=TERMINAL_STATUSES | {OrderStatus.TICKETED.value, OrderStatus.CHANGED.value},
        )

    def record_airline_change(self, provider_order_id: str, change_id: str, payload: dict[str, Any]) -> bool:
        if self.ensure_order(provider_order_id) is None:
            return False
        inserted = self.repositories.schedule_changes.insert_if_absent(
            {"provider_change_id": change_id, "order_id": provider_order_id, "payload": payload}
        )
        if not inserted:
            logger.debug("schedule change %s already recorded", change_id)
        self.set_status(provider_order_id, OrderStatus.CHANGED.value)
        return True

    def upsert_cancellation(
        self,
        quote: CancellationQuote,
        order_id: str | None = None,
        confirmed_at: str | None = None,
    ) -> dict[str, Any]:
        row: dict[str, Any] = {
            "provider_cancellation_id": quote.id,
            "order_provider_id": quote.order_id or order_id,
            "refund_amount": quote.refund_amount,
            "refund_currency": quote.refund_currency,
            "refund_to": quote.refund_to,
            "expires_at": to_iso(quote.expires_at),
            "live_mode": quote.live_mode,
        }
        row["confirmed_at"] = confirmed_at or to_iso(quote.confirmed_at)
        return self.repositories.cancellations.upsert({key: value for key, value in row.items() if value is not None})

    def confirm_cancellation(self, quote: CancellationQuote, order_id: str | None = None) -> dict[str, Any] | None:
        """Stamp the cancellation and move the order to cancelled, creating the order row if it is not known yet."""
        confirmed_at = to_iso(quote.confirmed_at) or utc_now_iso()
        mirror = self.upsert_cancellation(quote, order_id=order_id, confirmed_at=confirmed_at)
        provider_order_id = quote.order_id or order_id
        if not provider_order_id:
            logger.error("cancellation %s confirmed without an order id", quote.id)
            return mirror
        if self.ensure_order(provider_order_id) is None:
            return mirror
        self.set_status(
            provider_order_id,
            OrderStatus.CANCELLED.value,
            PaymentStatus.CANCELLED.value,
            extra={"cancelled_at": confirmed_at},
        )
        return mirror

    def record_refund(
        self,
        refund_id: str,
        provider_order_id: str | None,
        amount: str,
        currency: str,
        status: str,
        classification: str,
        source: str = "refund",
    ) -> dict[str, Any]:
        """Persist one refund; rows from charge notifications hold the charge's running total."""
        return self.repositories.refunds.upsert(
            {
                "provider_refund_id": refund_id,
                "order_id": provider_order_id,
                "amount": amount,
                "currency": currency,
                "status": status,
                "classification": classification,
                "source": source,
            }
        )

    def refunded_minor_total(self, provider_order_id: str, currency: str, excluding: str | None = None) -> int:
        """Sum of the succeeded individual refunds already recorded for an order in one currency."""
        currency = currency.upper()
        total = 0
        for row in self.repositories.refunds.list_where("order_id", provider_order_id):
            if row["provider_refund_id"] == excluding or row.get("source", "refund") != "refund":
                continue
            if row.get("status") != "succeeded" or str(row.get("currency") or "").upper() != currency:
                continue
            total += to_minor_units(row["amount"], currency)
        return total

    def mark_payment_failed(self, provider_order_id: str) -> bool:
        """Payment status always records the failure; the lifecycle status only moves from awaiting payment."""
        updated = self.set_status(provider_order_id, payment_status=PaymentStatus.FAILED.value)
        if updated:
            self.orders.update(
                provider_order_id,
                {"status": OrderStatus.PAYMENT_FAILED.value},
                unless_status_in=_FAILURE_LOCKED_STATUSES,
            )
        return updated
