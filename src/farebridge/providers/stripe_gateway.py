from __future__ import annotations

import json
import logging
from typing import Any

import stripe

from farebridge.config import EngineSettings
from farebridge.errors import ProviderError, ProviderTimeout, Unauthorized
from farebridge.providers.base import ORDER_METADATA_KEY, PaymentGateway

logger = logging.getLogger(__name__)


def _to_dict(obj: Any) -> dict[str, Any]:
    return json.loads(str(obj))


def _provider_error(exc: stripe.StripeError, action: str) -> ProviderError:
    if isinstance(exc, stripe.APIConnectionError):
        return ProviderTimeout("stripe", f"{action}: {exc.user_message or exc}")
    return ProviderError("stripe", f"{action}: {exc.user_message or exc}", status_code=exc.http_status)


class StripeGateway(PaymentGateway):
    name = "stripe"

    def __init__(self, api_key: str, webhook_secret: str, client: stripe.StripeClient | None = None) -> None:
        self._api_key = api_key
        self._webhook_secret = webhook_secret
        self._client = client

    @classmethod
    def from_settings(cls, settings: EngineSettings) -> StripeGateway:
        if not settings.stripe_secret_key:
            logger.warning("STRIPE_SECRET_KEY is not set; Stripe client disabled")
        return cls(settings.stripe_secret_key, settings.stripe_webhook_secret)

    @property
    def client(self) -> stripe.StripeClient:
        if self._client is None:
            if not self._api_key:
                raise ProviderError("stripe", "STRIPE_SECRET_KEY is not configured")
            self._client = stripe.StripeClient(self._api_key)
        return self._client

    async def create_intent(
        self, amount_minor: int, currency: str, metadata: dict[str, str], idempotency_key: str
    ) -> dict[str, Any]:
        try:
            intent = await self.client.payment_intents.create_async(
                params={
                    "amount": amount_minor,
                    "currency": currency.lower(),
                    "automatic_payment_methods": {"enabled": True},
                    "metadata": metadata,
                },
                options={"idempotency_key": idempotency_key},
            )
        except stripe.StripeError as exc:
            raise _provider_error(exc, "payment intent create failed") from exc
        return _to_dict(intent)

    async def retrieve_intent(self, intent_id: str) -> dict[str, Any]:
        try:
            intent = await self.client.payment_intents.retrieve_async(intent_id)
        except stripe.StripeError as exc:
            raise _provider_error(exc, "payment intent retrieve failed") from exc
        return _to_dict(intent)

    async def search_intents_for_order(self, order_id: str) -> list[dict[str, Any]]:
        try:
            result = await self.client.payment_intents.search_async(
                params={"query": f"metadata['{ORDER_METADATA_KEY}']:'{order_id}'"}
            )
        except stripe.StripeError as exc:
            raise _provider_error(exc, "payment intent search failed") from exc
        return _to_dict(result).get("data", [])

    async def create_refund(
        self,
        intent_id: str,
        amount_minor: int | None,
        idempotency_key: str,
        reason: str | None = None,
    ) -> dict[str, Any]:
        params: dict[str, Any] = {"payment_intent": intent_id}
        if amount_minor is not None:
            params["amount"] = amount_minor
        if reason:
            params["metadata"] = {"reason": reason}
        try:
            refund = await self.client.refunds.create_async(params=params, options={"idempotency_key": idempotency_key})
        except stripe.StripeError as exc:
            raise _provider_error(exc, "refund create failed") from exc
        return _to_dict(refund)

    def construct_event(self, raw_body: bytes, signature: str) -> dict[str, Any]:
        if not self._webhook_secret:
            raise ProviderError("stripe", "STRIPE_WEBHOOK_SECRET is not configured")
        if not signature:
            raise Unauthorized("Missing Stripe-Signature header")
        try:
            stripe.Webhook.construct_event(raw_body, signature, self._webhook_secret)
        except (stripe.SignatureVerificationError, ValueError) as exc:
            logger.error("stripe webhook signature verification failed: %s", exc)
            raise Unauthorized("Invalid Stripe signature") from exc
        return json.loads(raw_body)
