from __future__ import annotations

import logging
from typing import Any
from uuid import uuid4

from farebridge.audit.lineage import AuditStore
from farebridge.errors import ProviderError
from farebridge.models.booking import TERMINAL_STATUSES, CancellationQuote, OrderStatus, PaymentStatus, to_iso, utc_now_iso
from farebridge.models.currency import from_minor_units, to_minor_units
from farebridge.models.events import RefundSignal
from farebridge.models.results import OperationResult, RefundOutcome
from farebridge.providers.base import ORDER_METADATA_KEY, BookingProvider, PaymentGateway
from farebridge.providers.retry import retry_idempotent
from farebridge.recon.reconciliation import RefundClassification, classify_refund
from farebridge.stores.orders import OrderStore

logger = logging.getLogger(__name__)

SUCCEEDED_REFUND_STATUS = "succeeded"


def _charge_minor(intent: dict[str, Any]) -> int:
    return int(intent.get("amount_received") or intent.get("amount") or 0)


class RefundOrchestrator:
    """Keeps the booking and the charge aligned when money goes back to the customer."""

    def __init__(
        self,
        booking: BookingProvider,
        payments: PaymentGateway,
        store: OrderStore,
        audit: AuditStore,
    ) -> None:
        self.booking = booking
        self.payments = payments
        self.store = store
        self.audit = audit

    def _resolve_order(self, signal: RefundSignal) -> dict[str, Any] | None:
        provider_order_id = signal.metadata.get(ORDER_METADATA_KEY)
        if provider_order_id:
            row = self.store.get(provider_order_id)
            if row is not None:
                return row
        if signal.intent_id:
            return self.store.get_by_intent(signal.intent_id)
        return None

    async def handle_refund_signal(self, signal: RefundSignal) -> OperationResult:
        """Classify a succeeded refund against the order; only a full refund cancels the booking.

        Refund-object notifications carry a single refund, so earlier succeeded
        refunds for the order are added before classifying.
        """
        if signal.status != SUCCEEDED_REFUND_STATUS:
            logger.info("refund %s is %s; waiting for it to succeed", signal.refund_id, signal.status)
            return OperationResult.skip("refund_not_succeeded", f"Refund status is {signal.status}")

        order_row = self._resolve_order(signal)
        if order_row is None:
            logger.error("refund %s (intent %s) does not resolve to a local order", signal.refund_id, signal.intent_id)
            self.audit.log(
                action="refund_without_order",
                component="refund_orchestrator",
                output_reference=signal.refund_id,
                detail={"intent_id": signal.intent_id, "charge_id": signal.charge_id},
            )
            return OperationResult.failure("order_unresolved", "Refund does not reference a known order")

        provider_order_id = order_row["provider_booking_id"]
        refunded_minor = signal.amount_refunded
        if not signal.cumulative:
            refunded_minor += self.store.refunded_minor_total(provider_order_id, signal.currency, excluding=signal.refund_id)
        assessment = classify_refund(refunded_minor, signal.currency, order_row.get("amount"), order_row.get("currency"))
        self.store.record_refund(
            signal.refund_id,
            provider_order_id,
            from_minor_units(signal.amount_refunded, assessment.refunded_currency),
            assessment.refunded_currency,
            signal.status,
            assessment.classification.value,
            source="charge" if signal.cumulative else "refund",
        )

        if not assessment.is_full:
            self.store.set_status(
                provider_order_id,
                OrderStatus.PARTIALLY_REFUNDED.value,
                PaymentStatus.PARTIALLY_REFUNDED.value,
            )
            self.audit.log(
                action="partial_refund_recorded",
                component="refund_orchestrator",
                order_id=provider_order_id,
                output_reference=signal.refund_id,
                detail={"amount": assessment.refunded_amount, "currency": assessment.refunded_currency},
            )
            logger.info("order %s: partial refund %s recorded, booking left intact", provider_order_id, signal.refund_id)
            return OperationResult.success(classification=assessment.classification.value, cancelled=False)

        if order_row.get("status") in TERMINAL_STATUSES:
            self.store.set_status(provider_order_id, payment_status=PaymentStatus.REFUNDED.value, respect_terminal=False)
            logger.info("order %s already %s; refund %s recorded only", provider_order_id, order_row["status"], signal.refund_id)
            return OperationResult.success(classification=assessment.classification.value, cancelled=False)

        cancellation = await self.cancel_booking(provider_order_id, reason="payment_refunded")
        if cancellation.ok:
            self.store.set_status(provider_order_id, OrderStatus.CANCELLED.value, PaymentStatus.REFUNDED.value)
        else:
            self.store.set_status(provider_order_id, payment_status=PaymentStatus.REFUNDED.value)
            self.audit.log(
                action="cancellation_follow_up",
                component="refund_orchestrator",
                order_id=provider_order_id,
                output_reference=signal.refund_id,
                detail={"code": cancellation.code, "message": cancellation.message},
            )
            logger.error(
                "order %s fully refunded but booking cancellation failed: %s", provider_order_id, cancellation.message
            )
        return OperationResult.success(classification=assessment.classification.value, cancelled=cancellation.ok)

    async def cancel_booking(self, provider_order_id: str, reason: str | None = None) -> OperationResult:
        """Two-phase cancellation: request a quote, then confirm it.

        A confirm call whose outcome is unknown is resolved by reading the
        cancellation back before it is reported as failed.
        """
        try:
            quote = await retry_idempotent(
                lambda: self.booking.create_cancellation(provider_order_id, reason, f"cancel:{provider_order_id}"),
                f"cancellation quote for {provider_order_id}",
            )
        except ProviderError as exc:
            logger.warning("order %s: cancellation quote failed: %s", provider_order_id, exc)
            return OperationResult.failure("cancellation_quote_failed", str(exc))
        self.store.upsert_cancellation(quote, order_id=provider_order_id)

        try:
            confirmed = await retry_idempotent(
                lambda: self.booking.confirm_cancellation(quote.id),
                f"cancellation confirm {quote.id}",
            )
        except ProviderError as exc:
            confirmed = await self._read_back(quote.id)
            if confirmed is None or confirmed.confirmed_at is None:
                logger.warning("order %s: cancellation %s not confirmed: %s", provider_order_id, quote.id, exc)
                return OperationResult.failure("cancellation_confirm_failed", str(exc), cancellation_id=quote.id)
            logger.info("cancellation %s confirmed despite error on confirm call", quote.id)

        self.store.confirm_cancellation(confirmed, order_id=provider_order_id)
        return OperationResult.success(
            cancellation_id=confirmed.id,
            refund_amount=confirmed.refund_amount or quote.refund_amount,
            refund_currency=confirmed.refund_currency or quote.refund_currency,
            refund_to=confirmed.refund_to or quote.refund_to,
            confirmed_at=to_iso(confirmed.confirmed_at) or utc_now_iso(),
        )

    async def _read_back(self, cancellation_id: str) -> CancellationQuote | None:
        try:
            return await self.booking.get_cancellation(cancellation_id)
        except ProviderError as exc:
            logger.warning("cancellation %s read-back failed: %s", cancellation_id, exc)
            return None

    async def _resolve_charge(self, provider_order_id: str, order_row: dict[str, Any] | None) -> dict[str, Any] | None:
        intent_id = order_row.get("payment_intent_id") if order_row else None
        if intent_id:
            return await self.payments.retrieve_intent(intent_id)
        intents = await self.payments.search_intents_for_order(provider_order_id)
        succeeded = [intent for intent in intents if intent.get("status") == "succeeded"]
        return succeeded[0] if succeeded else None

    async def refund_order(
        self,
        provider_order_id: str,
        amount: str | None = None,
        reason: str | None = None,
    ) -> RefundOutcome:
        """User-initiated refund: policy check, cancel the booking, refund the charge, update the order.

        Each step reports its own result so a partial success stays visible.
        """
        outcome = RefundOutcome(order_id=provider_order_id)

        try:
            order = await self.booking.get_order(provider_order_id)
        except ProviderError as exc:
            outcome.steps["policy"] = OperationResult.failure("provider_error", str(exc))
            return outcome
        if amount is not None:
            to_minor_units(amount, order.total_currency or "")
        order_row = self.store.merge_snapshot(order)
        if order.cancelled_at is not None or (order_row or {}).get("status") in TERMINAL_STATUSES:
            outcome.steps["policy"] = OperationResult.failure("already_cancelled", "Order is already cancelled")
            return outcome
        if not order.refund_allowed:
            outcome.steps["policy"] = OperationResult.failure(
                "not_refundable", "The booking conditions do not allow a refund before departure"
            )
            return outcome
        outcome.steps["policy"] = OperationResult.success(refund_allowed=True)

        cancellation = await self.cancel_booking(provider_order_id, reason=reason or "customer_request")
        outcome.steps["cancellation"] = cancellation
        if not cancellation.ok:
            return outcome

        money = await self._refund_charge(provider_order_id, order_row, amount, cancellation, reason)
        outcome.steps["refund"] = money

        if money.ok and not money.skipped:
            payment_status = money.data["payment_status"]
        else:
            payment_status = PaymentStatus.CANCELLED.value
        if not money.ok:
            self.audit.log(
                action="refund_follow_up",
                component="refund_orchestrator",
                order_id=provider_order_id,
                output_reference=cancellation.data.get("cancellation_id"),
                detail={"code": money.code, "message": money.message},
            )
        self.store.set_status(provider_order_id, OrderStatus.CANCELLED.value, payment_status)
        outcome.steps["order"] = OperationResult.success(
            status=OrderStatus.CANCELLED.value, payment_status=payment_status
        )
        return outcome

    async def _refund_charge(
        self,
        provider_order_id: str,
        order_row: dict[str, Any] | None,
        amount: str | None,
        cancellation: OperationResult,
        reason: str | None,
    ) -> OperationResult:
        try:
            intent = await self._resolve_charge(provider_order_id, order_row)
        except ProviderError as exc:
            return OperationResult.failure("provider_error", str(exc))
        if intent is None:
            return OperationResult.skip("no_charge", "No payment-provider charge found for this order")

        currency = str(intent.get("currency") or "").upper()
        charged = _charge_minor(intent)
        quote_amount = cancellation.data.get("refund_amount")
        quote_currency = str(cancellation.data.get("refund_currency") or "").upper()
        if amount is not None:
            minor = to_minor_units(amount, currency)
        elif quote_amount and quote_currency == currency:
            minor = to_minor_units(quote_amount, currency)
        else:
            minor = charged
        if minor > charged:
            return OperationResult.failure(
                "amount_exceeds_charge", f"Refund of {minor} exceeds the charged {charged} {currency}"
            )
        if minor == 0:
            return OperationResult.skip("nothing_to_refund", "The cancellation returns no money")

        idempotency_key = f"refund:{provider_order_id}:{cancellation.data['cancellation_id']}"
        try:
            refund = await retry_idempotent(
                lambda: self.payments.create_refund(intent["id"], minor, idempotency_key, reason),
                f"refund for {provider_order_id}",
            )
        except ProviderError as exc:
            logger.error("order %s cancelled but money refund failed: %s", provider_order_id, exc)
            return OperationResult.failure("refund_failed", str(exc))

        classification = RefundClassification.FULL if minor == charged else RefundClassification.PARTIAL
        refunded_amount = from_minor_units(minor, currency)
        self.store.record_refund(
            refund["id"],
            provider_order_id,
            refunded_amount,
            currency,
            str(refund.get("status") or "pending"),
            classification.value,
        )
        payment_status = (
            PaymentStatus.REFUNDED.value
            if classification == RefundClassification.FULL
            else PaymentStatus.PARTIALLY_REFUNDED.value
        )
        return OperationResult.success(
            refund_id=refund["id"],
            amount=refunded_amount,
            currency=currency,
            classification=classification.value,
            payment_status=payment_status,
        )

    async def refund_partial(
        self,
        provider_order_id: str,
        amount: str,
        currency: str | None = None,
        reason: str | None = None,
    ) -> OperationResult:
        """Refund part of the charge without touching the booking."""
        order_row = self.store.get(provider_order_id)
        if order_row is None:
            return OperationResult.failure("order_not_found", f"Order {provider_order_id} is not known")
        to_minor_units(amount, currency or order_row.get("currency") or "")
        try:
            intent = await self._resolve_charge(provider_order_id, order_row)
        except ProviderError as exc:
            return OperationResult.failure("provider_error", str(exc))
        if intent is None:
            return OperationResult.failure("no_charge", "No payment-provider charge found for this order")

        charge_currency = str(intent.get("currency") or "").upper()
        if currency and currency.upper() != charge_currency:
            return OperationResult.failure(
                "currency_mismatch", f"Refund currency {currency.upper()} differs from charge currency {charge_currency}"
            )
        minor = to_minor_units(amount, charge_currency)
        charged = _charge_minor(intent)
        if minor <= 0 or minor > charged:
            return OperationResult.failure(
                "amount_exceeds_charge" if minor > charged else "invalid_amount",
                f"Refund of {minor} is outside the charged {charged} {charge_currency}",
            )

        idempotency_key = f"refund:{provider_order_id}:partial:{uuid4()}"
        try:
            refund = await retry_idempotent(
                lambda: self.payments.create_refund(intent["id"], minor, idempotency_key, reason),
                f"partial refund for {provider_order_id}",
            )
        except ProviderError as exc:
            return OperationResult.failure("refund_failed", str(exc))

        classification = RefundClassification.FULL if minor == charged else RefundClassification.PARTIAL
        refunded_amount = from_minor_units(minor, charge_currency)
        self.store.record_refund(
            refund["id"],
            provider_order_id,
            refunded_amount,
            charge_currency,
            str(refund.get("status") or "pending"),
            classification.value,
        )
        if classification == RefundClassification.PARTIAL:
            self.store.set_status(
                provider_order_id,
                OrderStatus.PARTIALLY_REFUNDED.value,
                PaymentStatus.PARTIALLY_REFUNDED.value,
            )
        return OperationResult.success(
            refund_id=refund["id"],
            amount=refunded_amount,
            currency=charge_currency,
            classification=classification.value,
        )
