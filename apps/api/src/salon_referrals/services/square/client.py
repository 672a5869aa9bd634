"""Thin async client for the Square REST v2 endpoints used by the referral pipeline."""

from __future__ import annotations

from typing import Any, Mapping, Sequence

import httpx
from loguru import logger

from salon_referrals.core.settings import settings


class SquareAPIError(RuntimeError):
    """Raised when Square rejects a request or cannot be reached."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        errors: Sequence[Mapping[str, Any]] | None = None,
        path: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.errors = list(errors or [])
        self.path = path

    @property
    def codes(self) -> list[str]:
        return [str(error.get("code")) for error in self.errors if error.get("code")]


def _parse_response_body(response: httpx.Response) -> Mapping[str, Any]:
    if not response.content:
        return {}
    try:
        parsed = response.json()
    except ValueError:
        return {"text": response.text}
    if isinstance(parsed, Mapping):
        return parsed
    return {"data": parsed}


class SquareClient:
    """Square API wrapper.

    Every mutating call takes an explicit ``idempotency_key`` so replays of the
    same logical step collapse into one provider-side effect.
    """

    def __init__(
        self,
        *,
        access_token: str | None = None,
        base_url: str | None = None,
        api_version: str | None = None,
        location_id: str | None = None,
        http_client: httpx.AsyncClient | None = None,
        timeout_seconds: float | None = None,
    ) -> None:
        self._access_token = access_token if access_token is not None else settings.square_access_token
        self._base_url = (base_url or settings.square_base_url).rstrip("/")
        self._api_version = api_version or settings.square_api_version
        self.location_id = location_id if location_id is not None else settings.square_location_id
        self._timeout = timeout_seconds or settings.square_timeout_seconds
        self._http_client = http_client
        self._owns_client = http_client is None

    async def __aenter__(self) -> "SquareClient":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client and self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    def _client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self._timeout)
        return self._http_client

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._access_token}",
            "Square-Version": self._api_version,
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Mapping[str, Any] | None = None,
        params: Mapping[str, Any] | None = None,
    ) -> Mapping[str, Any]:
        url = f"{self._base_url}{path}"
        try:
            response = await self._client().request(
                method,
                url,
                headers=self._headers(),
                json=dict(json) if json is not None else None,
                params={key: value for key, value in (params or {}).items() if value is not None} or None,
            )
        except httpx.HTTPError as exc:
            raise SquareAPIError(f"Square request failed: {exc}", path=path) from exc

        body = _parse_response_body(response)
        if response.is_error:
            errors = body.get("errors") if isinstance(body.get("errors"), list) else []
            detail = errors[0].get("detail") if errors and isinstance(errors[0], Mapping) else None
            raise SquareAPIError(
                detail or f"Square returned HTTP {response.status_code}",
                status_code=response.status_code,
                errors=errors,
                path=path,
            )
        return body

    # Gift cards

    async def create_gift_card(self, *, idempotency_key: str, location_id: str | None = None) -> Mapping[str, Any]:
        body = await self._request(
            "POST",
            "/v2/gift-cards",
            json={
                "idempotency_key": idempotency_key,
                "location_id": location_id or self.location_id,
                "gift_card": {"type": "DIGITAL"},
            },
        )
        return body.get("gift_card") or {}

    async def retrieve_gift_card(self, gift_card_id: str) -> Mapping[str, Any]:
        body = await self._request("GET", f"/v2/gift-cards/{gift_card_id}")
        return body.get("gift_card") or {}

    async def create_gift_card_activity(
        self,
        *,
        idempotency_key: str,
        activity: Mapping[str, Any],
    ) -> Mapping[str, Any]:
        payload = dict(activity)
        payload.setdefault("location_id", self.location_id)
        body = await self._request(
            "POST",
            "/v2/gift-cards/activities",
            json={"idempotency_key": idempotency_key, "gift_card_activity": payload},
        )
        return body.get("gift_card_activity") or {}

    async def link_customer_to_gift_card(self, gift_card_id: str, customer_id: str) -> Mapping[str, Any]:
        body = await self._request(
            "POST",
            f"/v2/gift-cards/{gift_card_id}/link-customer",
            json={"customer_id": customer_id},
        )
        return body.get("gift_card") or {}

    # Customers

    async def retrieve_customer(self, customer_id: str) -> Mapping[str, Any]:
        body = await self._request("GET", f"/v2/customers/{customer_id}")
        return body.get("customer") or {}

    async def update_customer(
        self,
        customer_id: str,
        fields: Mapping[str, Any],
        *,
        version: int | None = None,
    ) -> Mapping[str, Any]:
        payload = dict(fields)
        if version is not None:
            payload["version"] = version
        body = await self._request("PUT", f"/v2/customers/{customer_id}", json=payload)
        return body.get("customer") or {}

    async def list_customer_custom_attributes(self, customer_id: str) -> list[Mapping[str, Any]]:
        body = await self._request(
            "GET",
            f"/v2/customers/{customer_id}/custom-attributes",
            params={"with_definitions": "false"},
        )
        attributes = body.get("custom_attributes")
        return [item for item in attributes if isinstance(item, Mapping)] if isinstance(attributes, list) else []

    async def upsert_customer_custom_attribute(
        self,
        customer_id: str,
        key: str,
        value: Any,
        *,
        idempotency_key: str,
    ) -> Mapping[str, Any]:
        body = await self._request(
            "POST",
            f"/v2/customers/{customer_id}/custom-attributes/{key}",
            json={"idempotency_key": idempotency_key, "custom_attribute": {"value": value}},
        )
        return body.get("custom_attribute") or {}

    # Bookings

    async def list_booking_custom_attributes(self, booking_id: str) -> list[Mapping[str, Any]]:
        body = await self._request(
            "GET",
            f"/v2/bookings/{booking_id}/custom-attributes",
            params={"with_definitions": "false"},
        )
        attributes = body.get("custom_attributes")
        return [item for item in attributes if isinstance(item, Mapping)] if isinstance(attributes, list) else []

    # Orders and payments

    async def create_order(self, *, idempotency_key: str, order: Mapping[str, Any]) -> Mapping[str, Any]:
        payload = dict(order)
        payload.setdefault("location_id", self.location_id)
        body = await self._request(
            "POST",
            "/v2/orders",
            json={"idempotency_key": idempotency_key, "order": payload},
        )
        return body.get("order") or {}

    async def create_payment(self, *, idempotency_key: str, payment: Mapping[str, Any]) -> Mapping[str, Any]:
        payload = dict(payment)
        payload["idempotency_key"] = idempotency_key
        payload.setdefault("location_id", self.location_id)
        body = await self._request("POST", "/v2/payments", json=payload)
        logger.debug("Square payment created", payment_id=(body.get("payment") or {}).get("id"))
        return body.get("payment") or {}


__all__ = ["SquareAPIError", "SquareClient"]
