import copy
import json
import sys
from pathlib import Path
from typing import Any

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine


def _configure_path() -> None:
    src_path = Path(__file__).resolve().parents[1] / "src"
    if src_path.exists():
        sys.path.insert(0, str(src_path))


_configure_path()

from salon_referrals import models  # noqa: E402,F401
from salon_referrals.db.base import Base  # noqa: E402
from salon_referrals.observability.referrals import get_referral_store  # noqa: E402
from salon_referrals.services.notifications import (  # noqa: E402
    InMemoryEmailBackend,
    InMemorySMSBackend,
    RewardNotificationService,
)
from salon_referrals.services.runs import GiftCardRunTracker  # noqa: E402
from salon_referrals.services.square import SquareClient  # noqa: E402


class FakeSquare:
    """In-memory stand-in for the Square endpoints the pipeline calls.

    Mutations honour idempotency keys the way Square does: a repeated key
    returns the stored response without applying the effect again.
    """

    def __init__(self) -> None:
        self.gift_cards: dict[str, dict[str, Any]] = {}
        self.customers: dict[str, dict[str, Any]] = {}
        self.customer_attributes: dict[str, dict[str, Any]] = {}
        self.booking_attributes: dict[str, dict[str, Any]] = {}
        self.orders: dict[str, dict[str, Any]] = {}
        self.payments: list[dict[str, Any]] = []
        self.activities: list[dict[str, Any]] = []
        self.requests: list[tuple[str, str, dict[str, Any] | None]] = []
        self.failures: dict[str, tuple[int, str]] = {}
        self._responses: dict[str, dict[str, Any]] = {}
        self._sequence = 0

    # helpers for tests

    def fail(self, action: str, status: int = 400, code: str = "INVALID_REQUEST_ERROR") -> None:
        self.failures[action] = (status, code)

    def recover(self, action: str | None = None) -> None:
        if action is None:
            self.failures.clear()
        else:
            self.failures.pop(action, None)

    def add_customer(self, customer_id: str, **fields: Any) -> None:
        self.customers[customer_id] = {"id": customer_id, **fields}

    def set_customer_attribute(self, customer_id: str, key: str, value: Any) -> None:
        self.customer_attributes.setdefault(customer_id, {})[key] = value

    def set_booking_attribute(self, booking_id: str, key: str, value: Any) -> None:
        self.booking_attributes.setdefault(booking_id, {})[key] = value

    def add_gift_card(self, gift_card_id: str, *, state: str = "ACTIVE", balance: int = 0, gan: str | None = None) -> None:
        self.gift_cards[gift_card_id] = self._card(gift_card_id, state=state, balance=balance, gan=gan)

    def calls(self, action: str) -> list[dict[str, Any] | None]:
        return [body for name, _, body in self.requests if name == action]

    def client(self) -> SquareClient:
        return SquareClient(
            access_token="test-token",
            base_url="https://square.test",
            api_version="2024-10-17",
            location_id="LOC1",
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(self.handler)),
        )

    # transport

    def handler(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content) if request.content else None
        parts = [part for part in request.url.path.split("/") if part][1:]
        method = request.method
        action, args = self._route(method, parts)
        self.requests.append((action, request.url.path, body))

        failure = self.failures.get(action)
        if failure is None and action == "gift_card_activity" and body:
            failure = self.failures.get(self._activity_action(body["gift_card_activity"]))
        if failure is not None:
            status, code = failure
            return self._error(status, code, f"{action} failed")

        return getattr(self, f"_handle_{action}")(body, *args)

    @staticmethod
    def _route(method: str, parts: list[str]) -> tuple[str, list[str]]:
        if parts == ["gift-cards"] and method == "POST":
            return "create_gift_card", []
        if parts == ["gift-cards", "activities"]:
            return "gift_card_activity", []
        if len(parts) == 3 and parts[0] == "gift-cards" and parts[2] == "link-customer":
            return "link_customer", [parts[1]]
        if len(parts) == 2 and parts[0] == "gift-cards":
            return "retrieve_gift_card", [parts[1]]
        if len(parts) == 2 and parts[0] == "customers" and method == "PUT":
            return "update_customer", [parts[1]]
        if len(parts) == 2 and parts[0] == "customers":
            return "retrieve_customer", [parts[1]]
        if len(parts) == 3 and parts[0] == "customers" and parts[2] == "custom-attributes":
            return "customer_attributes", [parts[1]]
        if len(parts) == 4 and parts[0] == "customers":
            return "upsert_customer_attribute", [parts[1], parts[3]]
        if len(parts) == 3 and parts[0] == "bookings":
            return "booking_attributes", [parts[1]]
        if parts == ["orders"]:
            return "create_order", []
        if parts == ["payments"]:
            return "create_payment", []
        raise AssertionError(f"Unexpected Square call {method} {parts}")

    @staticmethod
    def _activity_action(activity: dict[str, Any]) -> str:
        if activity["type"] == "ACTIVATE":
            details = activity.get("activate_activity_details") or {}
            return "activate_order" if details.get("order_id") else "activate_owner"
        return "adjust_increment"

    @staticmethod
    def _error(status: int, code: str, detail: str) -> httpx.Response:
        return httpx.Response(status, json={"errors": [{"category": "INVALID_REQUEST_ERROR", "code": code, "detail": detail}]})

    def _next_id(self, prefix: str) -> str:
        self._sequence += 1
        return f"{prefix}{self._sequence:04d}"

    @staticmethod
    def _card(gift_card_id: str, *, state: str, balance: int, gan: str | None = None) -> dict[str, Any]:
        return {
            "id": gift_card_id,
            "type": "DIGITAL",
            "gan_source": "SQUARE",
            "state": state,
            "balance_money": {"amount": balance, "currency": "USD"},
            "gan": gan or f"7783-{gift_card_id}",
            "customer_ids": [],
            "digital_details": {
                "activation_url": f"https://square.test/gift/{gift_card_id}",
                "pass_kit_url": f"https://square.test/pass/{gift_card_id}",
            },
        }

    def _replayed(self, key: str) -> dict[str, Any] | None:
        stored = self._responses.get(key)
        return copy.deepcopy(stored) if stored is not None else None

    def _handle_create_gift_card(self, body: dict[str, Any]) -> httpx.Response:
        key = body["idempotency_key"]
        card_id = self._responses.get(key, {}).get("gift_card_id")
        if card_id is None:
            card_id = self._next_id("gftc:")
            self.gift_cards[card_id] = self._card(card_id, state="PENDING", balance=0)
            self._responses[key] = {"gift_card_id": card_id}
        return httpx.Response(200, json={"gift_card": copy.deepcopy(self.gift_cards[card_id])})

    def _handle_gift_card_activity(self, body: dict[str, Any]) -> httpx.Response:
        key = body["idempotency_key"]
        replay = self._replayed(key)
        if replay is not None:
            return httpx.Response(200, json=replay)

        activity = body["gift_card_activity"]
        card = self.gift_cards.get(activity["gift_card_id"])
        if card is None:
            return self._error(404, "NOT_FOUND", "gift card not found")

        action = self._activity_action(activity)
        if action == "activate_order":
            details = activity["activate_activity_details"]
            order = self.orders.get(details["order_id"])
            if order is None or order.get("state") != "COMPLETED":
                return self._error(400, "INVALID_ORDER", "order is not paid")
            amount = order["line_items"][0]["base_price_money"]["amount"]
        elif action == "activate_owner":
            amount = activity["activate_activity_details"]["amount_money"]["amount"]
        else:
            amount = activity["adjust_increment_activity_details"]["amount_money"]["amount"]

        if action.startswith("activate") and card["state"] != "PENDING":
            return self._error(400, "GIFT_CARD_ALREADY_ACTIVATED", "gift card already active")
        if action == "adjust_increment" and card["state"] == "PENDING":
            return self._error(400, "INVALID_GIFT_CARD_STATE", "gift card is pending")

        card["state"] = "ACTIVE"
        card["balance_money"]["amount"] += amount
        self.activities.append({"action": action, "gift_card_id": card["id"], "amount": amount})
        response = {
            "gift_card_activity": {
                "id": self._next_id("gcact:"),
                "type": activity["type"],
                "gift_card_id": card["id"],
                "gift_card_balance_money": dict(card["balance_money"]),
            }
        }
        self._responses[key] = copy.deepcopy(response)
        return httpx.Response(200, json=response)

    def _handle_retrieve_gift_card(self, body: Any, gift_card_id: str) -> httpx.Response:
        card = self.gift_cards.get(gift_card_id)
        if card is None:
            return self._error(404, "NOT_FOUND", "gift card not found")
        return httpx.Response(200, json={"gift_card": copy.deepcopy(card)})

    def _handle_link_customer(self, body: dict[str, Any], gift_card_id: str) -> httpx.Response:
        card = self.gift_cards[gift_card_id]
        if body["customer_id"] not in card["customer_ids"]:
            card["customer_ids"].append(body["customer_id"])
        return httpx.Response(200, json={"gift_card": copy.deepcopy(card)})

    def _handle_retrieve_customer(self, body: Any, customer_id: str) -> httpx.Response:
        customer = self.customers.get(customer_id)
        if customer is None:
            return self._error(404, "NOT_FOUND", "customer not found")
        return httpx.Response(200, json={"customer": copy.deepcopy(customer)})

    def _handle_update_customer(self, body: dict[str, Any], customer_id: str) -> httpx.Response:
        customer = self.customers.get(customer_id)
        if customer is None:
            return self._error(404, "NOT_FOUND", "customer not found")
        fields = dict(body)
        expected = fields.pop("version", None)
        if expected is not None and expected != customer.get("version", 0):
            return self._error(409, "CONFLICT", "customer version mismatch")
        customer.update(fields)
        customer["version"] = customer.get("version", 0) + 1
        return httpx.Response(200, json={"customer": copy.deepcopy(customer)})

    def _handle_customer_attributes(self, body: Any, customer_id: str) -> httpx.Response:
        attributes = [{"key": key, "value": value} for key, value in self.customer_attributes.get(customer_id, {}).items()]
        return httpx.Response(200, json={"custom_attributes": attributes})

    def _handle_upsert_customer_attribute(self, body: dict[str, Any], customer_id: str, key: str) -> httpx.Response:
        value = body["custom_attribute"]["value"]
        self.set_customer_attribute(customer_id, key, value)
        return httpx.Response(200, json={"custom_attribute": {"key": key, "value": value}})

    def _handle_booking_attributes(self, body: Any, booking_id: str) -> httpx.Response:
        attributes = [{"key": key, "value": value} for key, value in self.booking_attributes.get(booking_id, {}).items()]
        return httpx.Response(200, json={"custom_attributes": attributes})

    def _handle_create_order(self, body: dict[str, Any]) -> httpx.Response:
        key = body["idempotency_key"]
        replay = self._replayed(key)
        if replay is not None:
            return httpx.Response(200, json=replay)
        order = {"id": self._next_id("order:"), "state": "OPEN", **body["order"]}
        self.orders[order["id"]] = order
        response = {"order": copy.deepcopy(order)}
        self._responses[key] = copy.deepcopy(response)
        return httpx.Response(200, json=response)

    def _handle_create_payment(self, body: dict[str, Any]) -> httpx.Response:
        key = body["idempotency_key"]
        replay = self._replayed(key)
        if replay is not None:
            return httpx.Response(200, json=replay)
        order = self.orders[body["order_id"]]
        order["state"] = "COMPLETED"
        payment = {"id": self._next_id("pay:"), "status": "COMPLETED", "order_id": order["id"]}
        self.payments.append(payment)
        response = {"payment": payment}
        self._responses[key] = copy.deepcopy(response)
        return httpx.Response(200, json=response)


@pytest_asyncio.fixture
async def session_factory():
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", future=True)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    try:
        yield factory
    finally:
        await engine.dispose()


@pytest.fixture
def fake_square() -> FakeSquare:
    return FakeSquare()


@pytest_asyncio.fixture
async def square_client(fake_square: FakeSquare):
    client = fake_square.client()
    try:
        yield client
    finally:
        await client.aclose()


@pytest.fixture(autouse=True)
def reset_referral_metrics():
    store = get_referral_store()
    store.reset()
    yield
    store.reset()


@pytest.fixture
def notifications() -> RewardNotificationService:
    return RewardNotificationService(
        InMemoryEmailBackend(),
        InMemorySMSBackend(),
        email_enabled=True,
        sms_enabled=True,
        sms_template="Hi [Name], book with [referral_url]",
        friend_reward_cents=1000,
    )


@pytest.fixture
def tracker(session_factory) -> GiftCardRunTracker:
    return GiftCardRunTracker(session_factory)
