from __future__ import annotations

import logging
from typing import Any

import httpx

from farebridge.config import EngineSettings
from farebridge.errors import ProviderError, ProviderTimeout
from farebridge.models.booking import (
    BookingOrder,
    CancellationQuote,
    ChangeOffer,
    ChangeRequest,
    OrderChange,
    ProviderPayment,
)
from farebridge.providers.base import BookingProvider

logger = logging.getLogger(__name__)


def _response_detail(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text


class DuffelClient(BookingProvider):
    name = "duffel"

    def __init__(self, http: httpx.AsyncClient) -> None:
        self._http = http

    @classmethod
    def from_settings(cls, settings: EngineSettings) -> DuffelClient:
        if not settings.booking_api_key:
            logger.warning("DUFFEL_API_KEY is not set; booking provider requests will be rejected")
        http = httpx.AsyncClient(
            base_url=f"{settings.booking_api_url}/air",
            headers={
                "Authorization": f"Bearer {settings.booking_api_key}",
                "Duffel-Version": settings.booking_api_version,
                "Content-Type": "application/json",
                "Accept": "application/json",
            },
            timeout=settings.provider_timeout_seconds,
            follow_redirects=True,
        )
        return cls(http)

    async def aclose(self) -> None:
        await self._http.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        unwrap: bool = True,
    ) -> Any:
        try:
            response = await self._http.request(method, path, json=json, params=params, headers=headers)
        except httpx.TimeoutException as exc:
            raise ProviderTimeout(self.name, f"{method} {path} timed out") from exc
        except httpx.HTTPError as exc:
            raise ProviderError(self.name, f"{method} {path} failed: {exc}") from exc
        if response.status_code >= 400:
            raise ProviderError(
                self.name,
                f"{method} {path} returned {response.status_code}",
                status_code=response.status_code,
                detail=_response_detail(response),
            )
        body = response.json()
        if unwrap and isinstance(body, dict) and "data" in body:
            return body["data"]
        return body

    async def get_order(self, order_id: str) -> BookingOrder:
        return BookingOrder.model_validate(await self._request("GET", f"/orders/{order_id}"))

    async def list_orders(self, after: str | None = None, limit: int | None = None) -> dict[str, Any]:
        params = {key: value for key, value in {"after": after, "limit": limit}.items() if value is not None}
        return await self._request("GET", "/orders", params=params, unwrap=False)

    async def create_order(self, body: dict[str, Any], idempotency_key: str) -> BookingOrder:
        data = await self._request("POST", "/orders", json={"data": body}, headers={"Idempotency-Key": idempotency_key})
        return BookingOrder.model_validate(data)

    async def create_payment(
        self, order_id: str, amount: str, currency: str, idempotency_key: str
    ) -> ProviderPayment:
        data = await self._request(
            "POST",
            "/payments",
            json={"data": {"order_id": order_id, "payment": {"type": "balance", "amount": amount, "currency": currency.upper()}}},
            headers={"Idempotency-Key": idempotency_key},
        )
        return ProviderPayment.model_validate(data)

    async def create_cancellation(
        self, order_id: str, reason: str | None = None, idempotency_key: str | None = None
    ) -> CancellationQuote:
        body: dict[str, Any] = {"order_id": order_id}
        if reason:
            body["reason"] = reason
        headers = {"Idempotency-Key": idempotency_key} if idempotency_key else None
        data = await self._request("POST", "/order_cancellations", json={"data": body}, headers=headers)
        return CancellationQuote.model_validate(data)

    async def confirm_cancellation(self, cancellation_id: str) -> CancellationQuote:
        data = await self._request("POST", f"/order_cancellations/{cancellation_id}/actions/confirm", json={"data": {}})
        return CancellationQuote.model_validate(data)

    async def get_cancellation(self, cancellation_id: str) -> CancellationQuote:
        return CancellationQuote.model_validate(await self._request("GET", f"/order_cancellations/{cancellation_id}"))

    async def create_change_request(
        self,
        order_id: str,
        slices: dict[str, Any] | None = None,
        services: list[dict[str, Any]] | None = None,
    ) -> ChangeRequest:
        body: dict[str, Any] = {"order_id": order_id}
        if slices:
            body["slices"] = slices
        if services:
            body["services"] = services
        return ChangeRequest.model_validate(await self._request("POST", "/order_change_requests", json={"data": body}))

    async def list_change_offers(self, change_request_id: str) -> list[ChangeOffer]:
        data = await self._request("GET", "/order_change_offers", params={"order_change_request_id": change_request_id})
        return [ChangeOffer.model_validate(item) for item in data or []]

    async def create_change(self, change_offer_id: str) -> OrderChange:
        data = await self._request("POST", "/order_changes", json={"data": {"selected_order_change_offer": change_offer_id}})
        return OrderChange.model_validate(data)

    async def confirm_change(self, change_id: str, payment: dict[str, Any] | None = None) -> OrderChange:
        body: dict[str, Any] = {"payment": payment} if payment else {}
        data = await self._request("POST", f"/order_changes/{change_id}/actions/confirm", json={"data": body})
        return OrderChange.model_validate(data)
