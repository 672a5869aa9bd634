"""Gift card creation and funding against Square."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping

from loguru import logger

from salon_referrals.core.settings import settings
from salon_referrals.services.referrals.idempotency import build_idempotency_key
from salon_referrals.services.square import SquareAPIError, SquareClient

PENDING_STATE = "PENDING"
OWNER_FUNDED_INSTRUMENT = "OWNER_FUNDED"


class DeliveryChannel(str, Enum):
    SQUARE_EGIFT_ORDER = "square_egift_order"
    OWNER_FUNDED_ACTIVATE = "owner_funded_activate"
    OWNER_FUNDED_ADJUST = "owner_funded_adjust"


@dataclass(frozen=True)
class PendingOrderInfo:
    """Order references that let Square activate a card from a paid order line."""

    order_id: str
    line_item_uid: str
    payment_id: str | None = None


@dataclass
class GiftCardResult:
    success: bool
    gift_card_id: str | None = None
    gan: str | None = None
    channel: DeliveryChannel | None = None
    balance_cents: int = 0
    amount_cents: int = 0
    state: str | None = None
    order_id: str | None = None
    line_item_uid: str | None = None
    activation_url: str | None = None
    pass_kit_url: str | None = None
    digital_email: str | None = None
    reason: str | None = None
    created: bool = False
    activity_id: str | None = None
    activity_type: str | None = None
    balance_before_cents: int = 0
    payment_id: str | None = None
    attempts: List[Dict[str, Any]] = field(default_factory=list)

    def artifacts(self) -> Dict[str, Any]:
        """Column values persisted on the customer record after a successful issue."""

        return {
            "gift_card_id": self.gift_card_id,
            "gift_card_gan": self.gan,
            "gift_card_order_id": self.order_id,
            "gift_card_line_item_uid": self.line_item_uid,
            "gift_card_delivery_channel": self.channel.value if self.channel else None,
            "gift_card_activation_url": self.activation_url,
            "gift_card_pass_kit_url": self.pass_kit_url,
            "gift_card_digital_email": self.digital_email,
        }


def _balance_cents(card: Mapping[str, Any]) -> int:
    money = card.get("balance_money")
    if isinstance(money, Mapping):
        amount = money.get("amount")
        if isinstance(amount, int) and not isinstance(amount, bool):
            return amount
    return 0


class GiftCardIssuer:
    """Creates, funds, links and verifies gift cards.

    Funding strategies are tried in a fixed order and the first one Square
    accepts wins. Each strategy is keyed by ``(seed, step, card_id)`` so a
    replayed issue never funds the same card twice.
    """

    def __init__(self, square: SquareClient, *, currency: str | None = None) -> None:
        self._square = square
        self._currency = (currency or settings.reward_currency).upper()

    def _money(self, amount_cents: int) -> Dict[str, Any]:
        return {"amount": amount_cents, "currency": self._currency}

    async def issue(
        self,
        customer_id: str,
        customer_name: str | None,
        amount_cents: int,
        is_referrer_reward: bool,
        *,
        pending_order_info: PendingOrderInfo | None = None,
        idempotency_seed: str | None = None,
    ) -> GiftCardResult:
        """Create a digital gift card worth ``amount_cents`` for a customer.

        Args:
            customer_id: Square customer the card is linked to.
            customer_name: Display name used only for logging context.
            amount_cents: Amount the card must hold once funded.
            is_referrer_reward: Distinguishes the default seed for referrer cards.
            pending_order_info: Paid order line that can activate the card.
            idempotency_seed: Stable seed derived from the logical reward identity.

        Returns:
            A ``GiftCardResult``; ``success`` is true only when Square reports a
            non-zero balance after funding.
        """

        reward_kind = "referrer" if is_referrer_reward else "friend"
        seed = idempotency_seed or build_idempotency_key(["gift-card", reward_kind, customer_id])
        log = logger.bind(customer_id=customer_id, reward_kind=reward_kind, seed=seed)

        if amount_cents <= 0:
            log.warning("Refusing to issue gift card without a positive amount", amount_cents=amount_cents)
            return GiftCardResult(success=False, amount_cents=amount_cents, reason="invalid-amount")

        try:
            card = await self._square.create_gift_card(idempotency_key=build_idempotency_key([seed, "create"]))
        except SquareAPIError as exc:
            log.error("Gift card creation failed", error=str(exc), square_errors=exc.errors)
            return GiftCardResult(success=False, amount_cents=amount_cents, reason="create-failed")

        gift_card_id = card.get("id")
        if not gift_card_id:
            log.error("Gift card creation returned no card id")
            return GiftCardResult(success=False, amount_cents=amount_cents, reason="create-failed")

        result = GiftCardResult(
            success=False,
            gift_card_id=gift_card_id,
            gan=card.get("gan"),
            amount_cents=amount_cents,
            state=card.get("state"),
            balance_cents=_balance_cents(card),
            created=True,
        )
        log = log.bind(gift_card_id=gift_card_id)
        log.info("Gift card created", state=result.state, customer_name=customer_name)

        if result.state != PENDING_STATE and result.balance_cents > 0:
            # A replayed create returns the card funded by an earlier attempt.
            result.channel = (
                DeliveryChannel.SQUARE_EGIFT_ORDER if pending_order_info else DeliveryChannel.OWNER_FUNDED_ACTIVATE
            )
            if pending_order_info:
                result.order_id = pending_order_info.order_id
                result.line_item_uid = pending_order_info.line_item_uid
                result.payment_id = pending_order_info.payment_id
            log.info("Gift card already funded by an earlier attempt", balance_cents=result.balance_cents)
        else:
            await self._fund(result, seed=seed, pending_order_info=pending_order_info)

        if result.channel is None:
            log.error("Every gift card funding strategy failed", attempts=result.attempts)
            result.reason = "funding-failed"
            return result

        await self._link_customer(result, customer_id)
        await self._refresh(result)
        return self._verify(result)

    async def load(
        self,
        gift_card_id: str,
        amount_cents: int,
        customer_id: str | None,
        context_label: str,
        *,
        idempotency_seed: str | None = None,
    ) -> GiftCardResult:
        """Add ``amount_cents`` to an existing card with a single funding attempt."""

        seed = idempotency_seed or build_idempotency_key(["gift-card-load", gift_card_id, context_label])
        log = logger.bind(gift_card_id=gift_card_id, customer_id=customer_id, context=context_label)

        if amount_cents <= 0:
            log.warning("Refusing to load gift card without a positive amount", amount_cents=amount_cents)
            return GiftCardResult(success=False, gift_card_id=gift_card_id, reason="invalid-amount")

        try:
            card = await self._square.retrieve_gift_card(gift_card_id)
        except SquareAPIError as exc:
            log.error("Gift card lookup failed", error=str(exc), square_errors=exc.errors)
            return GiftCardResult(success=False, gift_card_id=gift_card_id, amount_cents=amount_cents, reason="lookup-failed")

        result = GiftCardResult(
            success=False,
            gift_card_id=gift_card_id,
            gan=card.get("gan"),
            amount_cents=amount_cents,
            state=card.get("state"),
            balance_cents=_balance_cents(card),
        )
        self._apply_digital_details(result, card)

        if result.state == PENDING_STATE:
            await self._activate_owner_funded(result, seed=seed)
        else:
            await self._adjust_increment(result, seed=seed)

        if result.channel is None:
            log.error("Gift card load failed", attempts=result.attempts)
            result.reason = "funding-failed"
            return result

        if customer_id and customer_id not in (card.get("customer_ids") or []):
            await self._link_customer(result, customer_id)
        await self._refresh(result)
        return self._verify(result)

    async def prepare_promotion_order(
        self,
        customer_id: str,
        amount_cents: int,
        *,
        idempotency_seed: str,
    ) -> PendingOrderInfo | None:
        """Create and pay an owner-funded order carrying a gift card line item.

        Returns ``None`` when no location is configured or Square rejects either
        step; callers then fall back to owner-funded activation.
        """

        if not self._square.location_id:
            return None

        line_item_uid = build_idempotency_key([idempotency_seed, "line"])
        log = logger.bind(customer_id=customer_id, seed=idempotency_seed)
        try:
            order = await self._square.create_order(
                idempotency_key=build_idempotency_key([idempotency_seed, "promo-order"]),
                order={
                    "customer_id": customer_id,
                    "line_items": [
                        {
                            "uid": line_item_uid,
                            "name": "Referral reward gift card",
                            "quantity": "1",
                            "item_type": "GIFT_CARD",
                            "base_price_money": self._money(amount_cents),
                        }
                    ],
                },
            )
            order_id = order.get("id")
            if not order_id:
                log.warning("Promotion order response had no order id")
                return None
            payment = await self._square.create_payment(
                idempotency_key=build_idempotency_key([idempotency_seed, "promo-payment"]),
                payment={
                    "source_id": "CASH",
                    "order_id": order_id,
                    "customer_id": customer_id,
                    "amount_money": self._money(amount_cents),
                    "cash_details": {"buyer_supplied_money": self._money(amount_cents)},
                    "note": "Referral reward (owner funded)",
                },
            )
        except SquareAPIError as exc:
            log.warning("Promotion order could not be prepared", error=str(exc), square_errors=exc.errors)
            return None

        log.info("Promotion order prepared", order_id=order_id, payment_id=payment.get("id"))
        return PendingOrderInfo(order_id=order_id, line_item_uid=line_item_uid, payment_id=payment.get("id"))

    async def _fund(
        self,
        result: GiftCardResult,
        *,
        seed: str,
        pending_order_info: PendingOrderInfo | None,
    ) -> None:
        if pending_order_info:
            await self._activate_from_order(result, seed=seed, pending_order_info=pending_order_info)
        if result.channel is None and result.state == PENDING_STATE:
            await self._activate_owner_funded(result, seed=seed)
        if result.channel is None and result.state != PENDING_STATE:
            await self._adjust_increment(result, seed=seed)

    async def _activate_from_order(
        self,
        result: GiftCardResult,
        *,
        seed: str,
        pending_order_info: PendingOrderInfo,
    ) -> None:
        activity = {
            "type": "ACTIVATE",
            "gift_card_id": result.gift_card_id,
            "activate_activity_details": {
                "order_id": pending_order_info.order_id,
                "line_item_uid": pending_order_info.line_item_uid,
            },
        }
        if await self._attempt(result, DeliveryChannel.SQUARE_EGIFT_ORDER, seed, "activate-order", activity):
            result.order_id = pending_order_info.order_id
            result.line_item_uid = pending_order_info.line_item_uid
            result.payment_id = pending_order_info.payment_id

    async def _activate_owner_funded(self, result: GiftCardResult, *, seed: str) -> None:
        activity = {
            "type": "ACTIVATE",
            "gift_card_id": result.gift_card_id,
            "activate_activity_details": {
                "amount_money": self._money(result.amount_cents),
                "buyer_payment_instrument_ids": [OWNER_FUNDED_INSTRUMENT],
            },
        }
        await self._attempt(result, DeliveryChannel.OWNER_FUNDED_ACTIVATE, seed, "activate-owner", activity)

    async def _adjust_increment(self, result: GiftCardResult, *, seed: str) -> None:
        activity = {
            "type": "ADJUST_INCREMENT",
            "gift_card_id": result.gift_card_id,
            "adjust_increment_activity_details": {
                "amount_money": self._money(result.amount_cents),
                "reason": "COMPLIMENTARY",
            },
        }
        await self._attempt(result, DeliveryChannel.OWNER_FUNDED_ADJUST, seed, "adjust-increment", activity)

    async def _attempt(
        self,
        result: GiftCardResult,
        channel: DeliveryChannel,
        seed: str,
        step: str,
        activity: Mapping[str, Any],
    ) -> bool:
        key = build_idempotency_key([seed, step, result.gift_card_id])
        try:
            response = await self._square.create_gift_card_activity(idempotency_key=key, activity=activity)
        except SquareAPIError as exc:
            logger.warning(
                "Gift card funding attempt failed",
                gift_card_id=result.gift_card_id,
                channel=channel.value,
                status_code=exc.status_code,
                square_errors=exc.errors,
            )
            result.attempts.append({"channel": channel.value, "ok": False, "error": str(exc), "codes": exc.codes})
            return False

        result.balance_before_cents = result.balance_cents
        result.activity_id = response.get("id")
        result.activity_type = activity["type"]
        balance = response.get("gift_card_balance_money")
        if isinstance(balance, Mapping) and isinstance(balance.get("amount"), int):
            result.balance_cents = balance["amount"]
        else:
            result.balance_cents = max(result.balance_cents, result.amount_cents)
        result.channel = channel
        result.attempts.append({"channel": channel.value, "ok": True})
        logger.info(
            "Gift card funded",
            gift_card_id=result.gift_card_id,
            channel=channel.value,
            balance_cents=result.balance_cents,
        )
        return True

    async def _link_customer(self, result: GiftCardResult, customer_id: str) -> None:
        try:
            await self._square.link_customer_to_gift_card(result.gift_card_id, customer_id)
        except SquareAPIError as exc:
            logger.warning(
                "Linking gift card to customer failed",
                gift_card_id=result.gift_card_id,
                customer_id=customer_id,
                square_errors=exc.errors,
            )

    async def _refresh(self, result: GiftCardResult) -> None:
        try:
            card = await self._square.retrieve_gift_card(result.gift_card_id)
        except SquareAPIError as exc:
            logger.warning(
                "Gift card refresh failed; keeping pre-refresh values",
                gift_card_id=result.gift_card_id,
                square_errors=exc.errors,
            )
            return

        if "balance_money" in card:
            result.balance_cents = _balance_cents(card)
        result.state = card.get("state") or result.state
        result.gan = card.get("gan") or result.gan
        self._apply_digital_details(result, card)

    @staticmethod
    def _apply_digital_details(result: GiftCardResult, card: Mapping[str, Any]) -> None:
        details = card.get("digital_details")
        if not isinstance(details, Mapping):
            return
        result.activation_url = details.get("activation_url") or result.activation_url
        result.pass_kit_url = details.get("pass_kit_url") or result.pass_kit_url
        result.digital_email = details.get("email") or result.digital_email

    @staticmethod
    def _verify(result: GiftCardResult) -> GiftCardResult:
        if result.balance_cents <= 0:
            logger.error("Gift card has no balance after funding", gift_card_id=result.gift_card_id)
            result.success = False
            result.reason = "zero-balance"
            return result
        result.success = True
        return result


__all__ = ["DeliveryChannel", "GiftCardIssuer", "GiftCardResult", "PendingOrderInfo"]
