from __future__ import annotations

import hashlib
import logging
from typing import Any

from farebridge.adapters.stripe_webhook import StripeWebhookAdapter
from farebridge.audit.lineage import AuditStore
from farebridge.bus.jobs import JobQueue
from farebridge.errors import ProviderError, SettlementFailed
from farebridge.ledger.idempotency import IdempotencyLedger, key_for_payment_event
from farebridge.models.booking import OrderStatus, PaymentStatus, to_iso, utc_now_iso
from farebridge.models.currency import from_minor_units, to_minor_units
from farebridge.models.events import ChargeFailed, ChargeSucceeded, PaymentEvent, RefundSignal
from farebridge.models.results import OperationResult
from farebridge.providers.base import (
    ORDER_METADATA_KEY,
    OWNER_METADATA_KEY,
    USER_METADATA_KEY,
    BookingProvider,
    PaymentGateway,
)
from farebridge.providers.retry import retry_idempotent
from farebridge.recon.reconciliation import check_charge_against_order
from farebridge.settlement.refunds import RefundOrchestrator
from farebridge.stores.orders import OrderStore
from farebridge.tickets.poller import enqueue_ticket_poll

logger = logging.getLogger(__name__)


def _sha256(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def order_intent_idempotency_key(provider_order_id: str, amount: str, currency: str) -> str:
    return _sha256(f"order:{provider_order_id}:{amount}:{currency}")


def free_intent_idempotency_key(provider_order_id: str | None, amount: str, currency: str) -> str:
    return _sha256(f"free:{provider_order_id or 'none'}:{amount}:{currency}")


def _intent_result(intent: dict[str, Any], **extra: Any) -> OperationResult:
    return OperationResult.success(
        payment_intent_id=intent["id"],
        client_secret=intent.get("client_secret"),
        status=intent.get("status"),
        **extra,
    )


class PaymentOrchestrator:
    def __init__(
        self,
        booking: BookingProvider,
        payments: PaymentGateway,
        store: OrderStore,
        ledger: IdempotencyLedger,
        audit: AuditStore,
        poll_queue: JobQueue,
        refunds: RefundOrchestrator,
        adapter: StripeWebhookAdapter | None = None,
    ) -> None:
        self.booking = booking
        self.payments = payments
        self.store = store
        self.ledger = ledger
        self.audit = audit
        self.poll_queue = poll_queue
        self.refunds = refunds
        self.adapter = adapter or StripeWebhookAdapter()

    async def create_intent(
        self,
        amount: str,
        currency: str,
        provider_order_id: str | None = None,
        metadata: dict[str, str] | None = None,
    ) -> OperationResult:
        """Charge intent for a caller-supplied amount."""
        currency = currency.upper()
        amount_minor = to_minor_units(amount, currency)
        meta = dict(metadata or {})
        if provider_order_id:
            meta[ORDER_METADATA_KEY] = provider_order_id
        key = free_intent_idempotency_key(provider_order_id, amount, currency)
        try:
            intent = await self.payments.create_intent(amount_minor, currency, meta, key)
        except ProviderError as exc:
            return OperationResult.failure("provider_error", str(exc))
        return _intent_result(intent, amount=amount, currency=currency, amount_minor=amount_minor)

    async def create_intent_for_order(self, provider_order_id: str, user_id: str | None = None) -> OperationResult:
        """Charge intent for a hold order, priced from the booking provider's own total."""
        try:
            order = await self.booking.get_order(provider_order_id)
        except ProviderError as exc:
            return OperationResult.failure("provider_error", str(exc))

        if not order.is_awaiting_payment:
            logger.warning("refusing charge intent for order %s: not awaiting payment", provider_order_id)
            return OperationResult.failure(
                "order_not_awaiting_payment",
                "Order was paid through the booking provider at creation (instant order); no charge is needed",
                order_type=order.order_type,
            )
        if not order.total_amount or not order.total_currency:
            return OperationResult.failure("order_amount_missing", "Order has no total amount to charge")

        currency = order.total_currency.upper()
        amount_minor = to_minor_units(order.total_amount, currency)
        metadata = {ORDER_METADATA_KEY: order.id, OWNER_METADATA_KEY: order.owner_label or ""}
        if user_id:
            metadata[USER_METADATA_KEY] = user_id
        key = order_intent_idempotency_key(order.id, order.total_amount, currency)
        try:
            intent = await self.payments.create_intent(amount_minor, currency, metadata, key)
        except ProviderError as exc:
            return OperationResult.failure("provider_error", str(exc))

        self.store.merge_snapshot(order, user_id=user_id)
        self.store.link_payment(order.id, intent["id"], payment_status=PaymentStatus.AWAITING_PAYMENT.value)
        return _intent_result(intent, amount=order.total_amount, currency=currency, amount_minor=amount_minor)

    async def handle_webhook(self, raw_body: bytes, signature: str) -> dict[str, Any]:
        """Verify and apply a payment notification.

        Raises SettlementFailed when the booking provider could not be settled,
        so the notification is redelivered; the event key is recorded only after
        the handler completed.
        """
        payload = self.payments.construct_event(raw_body, signature)
        event = self.adapter.parse(payload)
        key = key_for_payment_event(event.event_id)
        if self.ledger.seen(key):
            logger.info("payment event %s already applied", event.event_id)
            return {"received": True, "duplicate": True}

        result = await self.apply(event)
        self.ledger.record(key)
        return {"received": True, "type": event.event_type, "result": result.to_dict() if result else None}

    async def apply(self, event: PaymentEvent) -> OperationResult | None:
        if isinstance(event, ChargeSucceeded):
            return await self.handle_charge_succeeded(event)
        if isinstance(event, ChargeFailed):
            return self.handle_charge_failed(event)
        if isinstance(event, RefundSignal):
            return await self.refunds.handle_refund_signal(event)
        logger.debug("ignoring payment event %s of type %s", event.event_id, event.event_type)
        return None

    def _resolve_order_id(self, intent_id: str, metadata: dict[str, str]) -> str | None:
        provider_order_id = metadata.get(ORDER_METADATA_KEY)
        if provider_order_id:
            return provider_order_id
        row = self.store.get_by_intent(intent_id)
        return row["provider_booking_id"] if row else None

    async def handle_charge_succeeded(self, event: ChargeSucceeded) -> OperationResult:
        provider_order_id = self._resolve_order_id(event.intent_id, event.metadata)
        if provider_order_id is None:
            logger.error("charge %s has no linked order", event.intent_id)
            self.audit.log(
                action="charge_without_order",
                component="payment_orchestrator",
                output_reference=event.intent_id,
                detail={"amount": event.amount, "currency": event.currency},
            )
            return OperationResult.failure("order_unresolved", "Charge does not reference a known order")

        try:
            order = await self.booking.get_order(provider_order_id)
        except ProviderError as exc:
            raise SettlementFailed(f"Could not load order {provider_order_id}: {exc}") from exc
        self.store.merge_snapshot(order, user_id=event.metadata.get(USER_METADATA_KEY) or None)

        check = check_charge_against_order(event.amount, event.currency, order.total_amount, order.total_currency)
        if not check.matches:
            logger.error(
                "order %s: charge %s %s does not match order total %s %s (%s)",
                order.id,
                event.amount,
                event.currency,
                order.total_amount,
                order.total_currency,
                check.reason,
            )
            self.audit.log(
                action="charge_amount_mismatch",
                component="payment_orchestrator",
                order_id=order.id,
                output_reference=event.intent_id,
                detail={"reason": check.reason, "charged_minor": check.charged_minor, "order_minor": check.order_minor},
            )

        if not order.is_awaiting_payment:
            self.store.link_payment(order.id, event.intent_id, payment_status=PaymentStatus.SUCCEEDED.value)
            await enqueue_ticket_poll(self.poll_queue, order.id)
            return OperationResult.success(order_id=order.id, settled=False)

        amount = from_minor_units(event.amount, event.currency)
        charge_id = event.latest_charge or event.intent_id
        try:
            payment = await retry_idempotent(
                lambda: self.booking.create_payment(order.id, amount, event.currency, charge_id),
                f"settlement of {order.id}",
            )
        except ProviderError as exc:
            logger.error("order %s: settlement of charge %s failed: %s", order.id, charge_id, exc)
            self.audit.log(
                action="settlement_failed",
                component="payment_orchestrator",
                order_id=order.id,
                output_reference=charge_id,
                detail={"error": str(exc), "status_code": exc.status_code},
            )
            raise SettlementFailed(f"Settlement of order {order.id} failed: {exc}") from exc

        paid_at = to_iso(payment.created_at) or utc_now_iso()
        self.store.link_payment(order.id, event.intent_id, payment_status=PaymentStatus.PAID.value, paid_at=paid_at)
        self.store.set_status(order.id, OrderStatus.PAID.value, extra={"awaiting_payment": False})
        self.audit.log(
            action="order_settled",
            component="payment_orchestrator",
            order_id=order.id,
            output_reference=payment.id,
            detail={"amount": amount, "currency": event.currency, "charge_id": charge_id},
        )
        await enqueue_ticket_poll(self.poll_queue, order.id)
        return OperationResult.success(order_id=order.id, settled=True, provider_payment_id=payment.id)

    def handle_charge_failed(self, event: ChargeFailed) -> OperationResult:
        provider_order_id = self._resolve_order_id(event.intent_id, event.metadata)
        if provider_order_id is None:
            logger.warning("failed charge %s has no linked order", event.intent_id)
            return OperationResult.failure("order_unresolved", "Charge does not reference a known order")
        updated = self.store.mark_payment_failed(provider_order_id)
        logger.info("order %s: charge %s failed (%s)", provider_order_id, event.intent_id, event.failure_message)
        return OperationResult.success(order_id=provider_order_id, updated=updated)
