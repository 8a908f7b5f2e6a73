from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
import time
from typing import Any

import httpx
import pytest
import stripe

from farebridge.adapters.duffel_webhook import DuffelWebhookAdapter
from farebridge.adapters.stripe_webhook import StripeWebhookAdapter
from farebridge.errors import ProviderError, ProviderTimeout, Unauthorized
from farebridge.models.events import (
    AirlineChangeEvent,
    CancellationEvent,
    ChargeFailed,
    ChargeSucceeded,
    OrderSnapshotEvent,
    PingEvent,
    RefundSignal,
    UnknownBookingEvent,
    UnknownPaymentEvent,
)
from farebridge.providers.duffel import DuffelClient
from farebridge.providers.retry import retry_idempotent
from farebridge.providers.stripe_gateway import StripeGateway
from fakes import envelope, eticket, order_payload, stripe_event


def test_order_events_become_snapshots() -> None:
    payload = envelope("wev_1", "order.updated", order_payload(documents=[eticket("0001234567890")]))

    event = DuffelWebhookAdapter().parse(payload)

    assert isinstance(event, OrderSnapshotEvent)
    assert event.order.id == "ord_0001"
    assert [doc.unique_identifier for doc in event.order.electronic_tickets] == ["0001234567890"]


def test_airline_change_carries_order_reference() -> None:
    payload = envelope("wev_2", "order.airline_initiated_change_detected", {"id": "oaic_1", "order_id": "ord_0001"})

    event = DuffelWebhookAdapter().parse(payload)

    assert isinstance(event, AirlineChangeEvent)
    assert (event.change_id, event.order_id) == ("oaic_1", "ord_0001")


def test_cancellation_confirmation_is_flagged() -> None:
    quote = {"id": "ore_1", "order_id": "ord_0001", "refund_amount": "90.00", "refund_currency": "EUR"}

    created = DuffelWebhookAdapter().parse(envelope("wev_3", "order_cancellation.created", quote))
    confirmed = DuffelWebhookAdapter().parse(envelope("wev_4", "order_cancellation.confirmed", quote))

    assert isinstance(created, CancellationEvent) and not created.confirmed
    assert isinstance(confirmed, CancellationEvent) and confirmed.confirmed


def test_ping_and_unknown_types() -> None:
    adapter = DuffelWebhookAdapter()

    assert isinstance(adapter.parse(envelope("wev_5", "ping.triggered", {})), PingEvent)
    unknown = adapter.parse(envelope("wev_6", "air.payment.succeeded", {}))
    assert isinstance(unknown, UnknownBookingEvent)
    assert unknown.reason == "unrecognized type"


def test_malformed_order_object_is_not_applied() -> None:
    event = DuffelWebhookAdapter().parse(envelope("wev_7", "order.created", {"type": "hold"}))

    assert isinstance(event, UnknownBookingEvent)
    assert event.reason.startswith("malformed object")


def test_payment_intent_succeeded_prefers_received_amount() -> None:
    obj = {
        "id": "pi_1",
        "amount": 12000,
        "amount_received": 10000,
        "currency": "eur",
        "metadata": {"duffel_order_id": "ord_0001"},
        "latest_charge": "ch_1",
    }

    event = StripeWebhookAdapter().parse(stripe_event("evt_1", "payment_intent.succeeded", obj))

    assert isinstance(event, ChargeSucceeded)
    assert (event.amount, event.currency, event.latest_charge) == (10000, "EUR", "ch_1")
    assert event.metadata == {"duffel_order_id": "ord_0001"}


def test_payment_failure_keeps_error_message() -> None:
    obj = {"id": "pi_1", "metadata": {}, "last_payment_error": {"message": "Your card was declined."}}

    event = StripeWebhookAdapter().parse(stripe_event("evt_2", "payment_intent.payment_failed", obj))

    assert isinstance(event, ChargeFailed)
    assert event.failure_message == "Your card was declined."


def test_charge_refunded_uses_cumulative_amount() -> None:
    obj = {
        "id": "ch_1",
        "amount_refunded": 4000,
        "currency": "eur",
        "payment_intent": "pi_1",
        "refunds": {"data": [{"id": "re_9"}]},
    }

    event = StripeWebhookAdapter().parse(stripe_event("evt_3", "charge.refunded", obj))

    assert isinstance(event, RefundSignal)
    assert (event.refund_id, event.intent_id, event.amount_refunded, event.status) == ("re_9", "pi_1", 4000, "succeeded")


def test_refund_object_events_carry_status() -> None:
    obj = {"id": "re_1", "amount": 500, "currency": "jpy", "status": "pending", "charge": "ch_1"}

    event = StripeWebhookAdapter().parse(stripe_event("evt_4", "refund.updated", obj))
    created = StripeWebhookAdapter().parse(stripe_event("evt_4b", "refund.created", obj))

    assert isinstance(event, RefundSignal)
    assert (event.refund_id, event.currency, event.status, event.charge_id) == ("re_1", "JPY", "pending", "ch_1")
    assert event.cumulative is False
    assert isinstance(created, UnknownPaymentEvent)


def test_unhandled_payment_event() -> None:
    event = StripeWebhookAdapter().parse(stripe_event("evt_5", "customer.created", {"id": "cus_1"}))

    assert isinstance(event, UnknownPaymentEvent)


def _duffel(handler) -> DuffelClient:
    http = httpx.AsyncClient(base_url="https://api.duffel.test/air", transport=httpx.MockTransport(handler))
    return DuffelClient(http)


def test_duffel_client_unwraps_order_data() -> None:
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, json={"data": order_payload()})

    order = asyncio.run(_duffel(handler).get_order("ord_0001"))

    assert order.id == "ord_0001"
    assert order.is_awaiting_payment is True
    assert requests[0].url.path == "/air/orders/ord_0001"


def test_duffel_payment_sends_idempotency_key() -> None:
    captured: dict[str, Any] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["key"] = request.headers["Idempotency-Key"]
        captured["body"] = json.loads(request.content)
        return httpx.Response(201, json={"data": {"id": "pay_1", "amount": "100.00", "currency": "EUR"}})

    payment = asyncio.run(_duffel(handler).create_payment("ord_0001", "100.00", "eur", "ch_1"))

    assert payment.id == "pay_1"
    assert captured["key"] == "ch_1"
    assert captured["body"] == {
        "data": {"order_id": "ord_0001", "payment": {"type": "balance", "amount": "100.00", "currency": "EUR"}}
    }


def test_duffel_error_status_is_reported() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(422, json={"errors": [{"code": "already_cancelled"}]})

    with pytest.raises(ProviderError) as excinfo:
        asyncio.run(_duffel(handler).create_cancellation("ord_0001"))

    assert excinfo.value.status_code == 422
    assert excinfo.value.retryable is False
    assert excinfo.value.detail == {"errors": [{"code": "already_cancelled"}]}


def test_duffel_timeout_is_an_unknown_outcome() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    with pytest.raises(ProviderTimeout) as excinfo:
        asyncio.run(_duffel(handler).confirm_cancellation("ore_1"))

    assert excinfo.value.retryable is True


def test_duffel_cancellation_quote_sends_idempotency_key() -> None:
    captured: dict[str, Any] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["key"] = request.headers.get("Idempotency-Key")
        return httpx.Response(201, json={"data": {"id": "ore_1", "order_id": "ord_0001", "refund_amount": "90.00"}})

    quote = asyncio.run(_duffel(handler).create_cancellation("ord_0001", idempotency_key="cancel:ord_0001"))

    assert quote.id == "ore_1"
    assert captured["key"] == "cancel:ord_0001"


def test_retry_repeats_unknown_outcomes_until_success() -> None:
    outcomes: list[Exception | str] = [
        ProviderTimeout("fake", "timed out"),
        ProviderError("fake", "bad gateway", status_code=502),
        "ok",
    ]
    calls: list[int] = []

    async def call() -> str:
        calls.append(len(calls))
        outcome = outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    assert asyncio.run(retry_idempotent(call, "flaky call", base_delay=0)) == "ok"
    assert len(calls) == 3


def test_retry_gives_up_after_the_attempt_budget() -> None:
    calls: list[int] = []

    async def call() -> None:
        calls.append(1)
        raise ProviderTimeout("fake", "timed out")

    with pytest.raises(ProviderTimeout):
        asyncio.run(retry_idempotent(call, "dead call", attempts=3, base_delay=0))
    assert len(calls) == 3


def test_retry_does_not_repeat_rejections() -> None:
    calls: list[int] = []

    async def call() -> None:
        calls.append(1)
        raise ProviderError("fake", "unprocessable", status_code=422)

    with pytest.raises(ProviderError):
        asyncio.run(retry_idempotent(call, "rejected call", base_delay=0))
    assert calls == [1]


def _stripe_signature(secret: str, payload: str) -> str:
    timestamp = int(time.time())
    digest = hmac.new(secret.encode(), f"{timestamp}.{payload}".encode(), hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def test_stripe_gateway_accepts_signed_event() -> None:
    gateway = StripeGateway("sk_test_x", "whsec_stripe_test")
    payload = json.dumps(stripe_event("evt_1", "payment_intent.succeeded", {"id": "pi_1"}))

    event = gateway.construct_event(payload.encode(), _stripe_signature("whsec_stripe_test", payload))

    assert event["id"] == "evt_1"


def test_stripe_gateway_rejects_forged_event() -> None:
    gateway = StripeGateway("sk_test_x", "whsec_stripe_test")
    payload = json.dumps(stripe_event("evt_1", "payment_intent.succeeded", {"id": "pi_1"}))

    with pytest.raises(Unauthorized):
        gateway.construct_event(payload.encode(), _stripe_signature("whsec_other", payload))
    with pytest.raises(Unauthorized):
        gateway.construct_event(payload.encode(), "")


def test_stripe_gateway_requires_webhook_secret() -> None:
    with pytest.raises(ProviderError):
        StripeGateway("sk_test_x", "").construct_event(b"{}", "t=1,v1=abc")


class _StripeObject:
    def __init__(self, data: dict[str, Any]) -> None:
        self.data = data

    def __str__(self) -> str:
        return json.dumps(self.data)


class _FakeIntents:
    def __init__(self, error: Exception | None = None) -> None:
        self.calls: list[tuple[dict[str, Any], dict[str, Any]]] = []
        self.error = error

    async def create_async(self, params: dict[str, Any], options: dict[str, Any]) -> _StripeObject:
        self.calls.append((params, options))
        if self.error is not None:
            raise self.error
        return _StripeObject({"id": "pi_1", "amount": params["amount"], "currency": params["currency"]})


class _FakeStripeClient:
    def __init__(self, intents: _FakeIntents) -> None:
        self.payment_intents = intents


def test_stripe_gateway_creates_intent_with_idempotency_key() -> None:
    intents = _FakeIntents()
    gateway = StripeGateway("sk_test_x", "whsec", client=_FakeStripeClient(intents))  # type: ignore[arg-type]

    intent = asyncio.run(gateway.create_intent(10000, "EUR", {"duffel_order_id": "ord_0001"}, "key-1"))

    assert intent == {"id": "pi_1", "amount": 10000, "currency": "eur"}
    params, options = intents.calls[0]
    assert params["automatic_payment_methods"] == {"enabled": True}
    assert options == {"idempotency_key": "key-1"}


def test_stripe_errors_become_provider_errors() -> None:
    rejected = StripeGateway(
        "sk_test_x",
        "whsec",
        client=_FakeStripeClient(_FakeIntents(stripe.InvalidRequestError("bad currency", "currency", http_status=400))),  # type: ignore[arg-type]
    )
    offline = StripeGateway(
        "sk_test_x",
        "whsec",
        client=_FakeStripeClient(_FakeIntents(stripe.APIConnectionError("connection reset"))),  # type: ignore[arg-type]
    )

    with pytest.raises(ProviderError) as excinfo:
        asyncio.run(rejected.create_intent(100, "XXX", {}, "key-2"))
    assert excinfo.value.status_code == 400
    with pytest.raises(ProviderTimeout):
        asyncio.run(offline.create_intent(100, "EUR", {}, "key-3"))


def test_stripe_gateway_without_key_refuses_calls() -> None:
    with pytest.raises(ProviderError):
        asyncio.run(StripeGateway("", "whsec").create_intent(100, "EUR", {}, "key-4"))
