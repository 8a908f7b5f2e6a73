from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from fastapi import Body, Depends, FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, model_validator

from farebridge import __version__
from farebridge.config import configure_logging
from farebridge.errors import InvalidAmountFormat, ProviderError, SettlementFailed, Unauthorized
from farebridge.models.results import OperationResult, RefundOutcome
from farebridge.runtime import FarebridgeRuntime
from farebridge.webhooks.ingestion import MalformedWebhook

logger = logging.getLogger(__name__)

PROVIDER_FAILURE_CODES = {
    "provider_error",
    "cancellation_quote_failed",
    "cancellation_confirm_failed",
    "refund_failed",
}


def _cors_origins() -> list[str]:
    raw = os.getenv("FAREBRIDGE_CORS_ORIGINS", "http://localhost:5173,http://127.0.0.1:5173")
    parsed = [origin.strip() for origin in raw.split(",") if origin.strip()]
    if "*" in parsed:
        return ["*"]
    return parsed


class CreateIntentRequest(BaseModel):
    amount: str
    currency: str
    order_id: str | None = None
    metadata: dict[str, str] | None = None


class RefundRequest(BaseModel):
    amount: str | None = None
    reason: str | None = None


class PartialRefundRequest(BaseModel):
    amount: str
    currency: str | None = None
    reason: str | None = None


class CancelOrderRequest(BaseModel):
    reason: str | None = None


class ChangeOrderRequest(BaseModel):
    slices: dict[str, Any] | None = None
    services: list[dict[str, Any]] | None = None


class ConfirmChangeRequest(BaseModel):
    change_id: str | None = None
    offer_id: str | None = None
    payment: dict[str, Any] | None = None

    @model_validator(mode="after")
    def _require_change_or_offer(self) -> ConfirmChangeRequest:
        if not self.change_id and not self.offer_id:
            raise ValueError("change_id or offer_id is required")
        return self


def current_user(x_user_id: str | None = Header(default=None)) -> str:
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    return x_user_id


def _status_for(ok: bool, code: str | None) -> int:
    if ok:
        return 200
    return 502 if code in PROVIDER_FAILURE_CODES else 409


def result_response(result: OperationResult) -> JSONResponse:
    return JSONResponse(status_code=_status_for(result.ok, result.code), content=result.to_dict())


def outcome_response(outcome: RefundOutcome) -> JSONResponse:
    return JSONResponse(status_code=_status_for(outcome.ok, outcome.code), content=outcome.to_dict())


def create_app(runtime: FarebridgeRuntime | None = None) -> FastAPI:
    runtime = runtime or FarebridgeRuntime()
    configure_logging(runtime.settings.log_level)

    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        await runtime.start()
        try:
            yield
        finally:
            await runtime.stop()

    app = FastAPI(title="Farebridge API", version=__version__, lifespan=lifespan)
    app.state.runtime = runtime
    app.add_middleware(
        CORSMiddleware,
        allow_origins=_cors_origins(),
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(Unauthorized)
    async def _unauthorized(_request: Request, exc: Unauthorized) -> JSONResponse:
        return JSONResponse(status_code=401, content={"detail": str(exc)})

    @app.exception_handler(InvalidAmountFormat)
    async def _invalid_amount(_request: Request, exc: InvalidAmountFormat) -> JSONResponse:
        return JSONResponse(status_code=400, content={"detail": str(exc), "code": "invalid_amount"})

    @app.exception_handler(MalformedWebhook)
    async def _malformed(_request: Request, exc: MalformedWebhook) -> JSONResponse:
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.exception_handler(ProviderError)
    async def _provider_error(_request: Request, exc: ProviderError) -> JSONResponse:
        logger.warning("provider call failed: %s", exc)
        return JSONResponse(
            status_code=502,
            content={"detail": str(exc), "provider_status": exc.status_code, "provider_detail": exc.detail},
        )

    @app.exception_handler(SettlementFailed)
    async def _settlement_failed(_request: Request, exc: SettlementFailed) -> JSONResponse:
        return JSONResponse(status_code=500, content={"detail": str(exc)})

    @app.get("/")
    def root() -> dict[str, str]:
        return {"service": "farebridge-api", "status": "ok"}

    @app.get("/health")
    def health() -> dict[str, Any]:
        return {"status": "ok", **runtime.status()}

    @app.post("/webhooks/duffel")
    async def booking_webhook(request: Request) -> dict[str, Any]:
        raw_body = await request.body()
        result = await runtime.ingestion.ingest(request.headers.get("X-Duffel-Signature"), raw_body)
        return {"ok": True, "id": result.event_id, "verified": result.verified}

    @app.post("/payments/webhook/stripe")
    async def payment_webhook(request: Request) -> dict[str, Any]:
        raw_body = await request.body()
        return await runtime.payment_orchestrator.handle_webhook(raw_body, request.headers.get("Stripe-Signature", ""))

    @app.post("/payments/intents")
    async def create_intent(payload: CreateIntentRequest) -> JSONResponse:
        result = await runtime.payment_orchestrator.create_intent(
            payload.amount, payload.currency, payload.order_id, payload.metadata
        )
        return result_response(result)

    @app.post("/payments/intents/order/{order_id}")
    async def create_order_intent(order_id: str, user_id: str = Depends(current_user)) -> JSONResponse:
        return result_response(await runtime.payment_orchestrator.create_intent_for_order(order_id, user_id))

    @app.post("/payments/refund/{order_id}")
    async def refund_order(order_id: str, payload: RefundRequest | None = Body(default=None)) -> JSONResponse:
        payload = payload or RefundRequest()
        outcome = await runtime.refunds.refund_order(order_id, amount=payload.amount, reason=payload.reason)
        return outcome_response(outcome)

    @app.post("/payments/refund/stripe/{order_id}")
    async def refund_partial(order_id: str, payload: PartialRefundRequest) -> JSONResponse:
        result = await runtime.refunds.refund_partial(order_id, payload.amount, payload.currency, payload.reason)
        return result_response(result)

    @app.post("/orders")
    async def create_order(body: dict[str, Any] = Body(...), user_id: str = Depends(current_user)) -> dict[str, Any]:
        return await runtime.orders.create_order(user_id, body)

    @app.get("/orders")
    def list_orders(user_id: str = Depends(current_user)) -> list[dict[str, Any]]:
        return runtime.orders.list_mine(user_id)

    @app.get("/orders/provider")
    async def list_provider_orders(after: str | None = None, limit: int | None = None) -> dict[str, Any]:
        return await runtime.orders.list_provider_orders(after=after, limit=limit)

    @app.get("/orders/cancellations/{cancellation_id}")
    async def get_cancellation(cancellation_id: str) -> dict[str, Any]:
        return await runtime.orders.get_cancellation(cancellation_id)

    @app.post("/orders/cancellations/{cancellation_id}/confirm")
    async def confirm_cancellation(cancellation_id: str) -> dict[str, Any]:
        return await runtime.orders.confirm_cancellation(cancellation_id)

    @app.get("/orders/changes/{request_id}/offers")
    async def list_change_offers(request_id: str) -> list[dict[str, Any]]:
        return await runtime.orders.list_change_offers(request_id)

    @app.post("/orders/changes/confirm")
    async def confirm_change(payload: ConfirmChangeRequest) -> dict[str, Any]:
        return await runtime.orders.confirm_change(
            change_id=payload.change_id, change_offer_id=payload.offer_id, payment=payload.payment
        )

    @app.get("/orders/{order_id}")
    async def get_order(order_id: str) -> dict[str, Any]:
        return await runtime.orders.get_one(order_id)

    @app.post("/orders/{order_id}/cancel")
    async def cancel_order(order_id: str, payload: CancelOrderRequest | None = Body(default=None)) -> dict[str, Any]:
        return await runtime.orders.quote_cancellation(order_id, (payload or CancelOrderRequest()).reason)

    @app.post("/orders/{order_id}/changes")
    async def request_change(order_id: str, payload: ChangeOrderRequest) -> dict[str, Any]:
        return await runtime.orders.request_change(order_id, payload.slices, payload.services)

    return app
