"""Reward decisions for customer, booking and payment events."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Dict, Union

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from salon_referrals.core.settings import settings
from salon_referrals.models import CustomerReferralRecord, GiftCardRewardType, GiftCardRunStatus
from salon_referrals.observability.referrals import get_referral_store
from salon_referrals.services.gift_cards import GiftCardIssuer, GiftCardLedger, GiftCardResult, PendingOrderInfo
from salon_referrals.services.notifications import (
    NotificationArtifacts,
    NotificationChannel,
    NotificationKind,
    NotificationRecipient,
    RewardNotificationService,
)
from salon_referrals.services.referrals.codes import build_referral_url, generate_unique_personal_code
from salon_referrals.services.referrals.customers import CONTACT_FIELDS, CustomerReferralStore, DuplicatePersonalCode
from salon_referrals.services.referrals.events import (
    BookingCreatedEvent,
    CustomerCreatedEvent,
    PaymentCompletedEvent,
)
from salon_referrals.services.referrals.idempotency import (
    build_idempotency_key,
    friend_bonus_seed,
    referrer_reward_seed,
)
from salon_referrals.services.referrals.notes import append_gift_card_note, append_referral_note
from salon_referrals.services.referrals.resolver import ReferralCodeResolver
from salon_referrals.services.runs import GiftCardRunTracker
from salon_referrals.services.square import SquareAPIError, SquareClient

PERSONAL_CODE_ASSIGN_ATTEMPTS = 3

FRIEND_BONUS_LABEL = "Signup bonus gift card"
REFERRER_REWARD_LABEL = "Referrer reward gift card"

ReferralEvent = Union[CustomerCreatedEvent, BookingCreatedEvent, PaymentCompletedEvent]


class RewardIssuanceError(RuntimeError):
    """A reward step failed; the flag stays false so the event must be redelivered."""

    def __init__(self, message: str, *, customer_id: str, stage: str, reason: str | None = None) -> None:
        super().__init__(message)
        self.customer_id = customer_id
        self.stage = stage
        self.reason = reason


@dataclass
class EngineOutcome:
    action: str
    customer_id: str | None
    details: Dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        return {"action": self.action, "customerId": self.customer_id, **self.details}


class ReferralRewardEngine:
    """Decides and performs the reward side effects of one provider event.

    The flags on ``CustomerReferralRecord`` are the only idempotence source:
    every handler is safe to call again with the same event, and a flag is
    set only after the effect it guards has succeeded.
    """

    def __init__(
        self,
        db_session: AsyncSession,
        *,
        square: SquareClient,
        issuer: GiftCardIssuer | None = None,
        notifications: RewardNotificationService | None = None,
        tracker: GiftCardRunTracker | None = None,
        ledger: GiftCardLedger | None = None,
        friend_reward_cents: int | None = None,
        referrer_reward_cents: int | None = None,
        referral_base_url: str | None = None,
        promotion_orders_enabled: bool | None = None,
    ) -> None:
        self._square = square
        self._store = CustomerReferralStore(db_session)
        self._resolver = ReferralCodeResolver(self._store, square)
        self._issuer = issuer or GiftCardIssuer(square)
        self._notifications = notifications or RewardNotificationService()
        self._tracker = tracker or GiftCardRunTracker()
        # Separate sessions: a ledger rollback must not expire the records this engine holds.
        self._ledger = ledger or GiftCardLedger(
            async_sessionmaker(db_session.bind, expire_on_commit=False, class_=AsyncSession)
            if db_session.bind is not None
            else None
        )
        self._friend_reward_cents = (
            settings.friend_reward_cents if friend_reward_cents is None else friend_reward_cents
        )
        self._referrer_reward_cents = (
            settings.referrer_reward_cents if referrer_reward_cents is None else referrer_reward_cents
        )
        self._referral_base_url = referral_base_url or settings.referral_base_url
        self._promotion_orders_enabled = (
            settings.referrer_reward_promotion_orders_enabled
            if promotion_orders_enabled is None
            else promotion_orders_enabled
        )
        self._currency = settings.reward_currency.upper()
        self._metrics = get_referral_store()

    @property
    def store(self) -> CustomerReferralStore:
        return self._store

    async def dispatch(self, event: ReferralEvent, *, correlation_id: str) -> EngineOutcome:
        if isinstance(event, CustomerCreatedEvent):
            return await self.handle_customer_created(event, correlation_id=correlation_id)
        if isinstance(event, BookingCreatedEvent):
            return await self.handle_booking_created(event, correlation_id=correlation_id)
        return await self.handle_payment_completed(event, correlation_id=correlation_id)

    # customer.created

    async def handle_customer_created(self, event: CustomerCreatedEvent, *, correlation_id: str) -> EngineOutcome:
        await self._stage(correlation_id, "customer_ingest:start", context={"customerId": event.customer_id})
        record = await self._store.upsert_customer(await self._complete_profile(event))
        await self._stage(correlation_id, "customer_ingest:completed", status=GiftCardRunStatus.COMPLETED)
        return EngineOutcome("customer_ingested", record.customer_id)

    # booking.created

    async def handle_booking_created(self, event: BookingCreatedEvent, *, correlation_id: str) -> EngineOutcome:
        customer_id = event.customer_id
        await self._stage(
            correlation_id,
            "booking:received",
            context={"bookingId": event.booking_id, "customerId": customer_id},
        )
        record = await self._ensure_record(customer_id)

        if record.got_signup_bonus:
            await self._stage(
                correlation_id,
                "booking:completed",
                status=GiftCardRunStatus.COMPLETED,
                context={"outcome": "already_rewarded"},
            )
            return EngineOutcome("already_rewarded", customer_id)

        match = await self._resolver.discover(event)
        if match is None:
            await self._stage(
                correlation_id,
                "booking:completed",
                status=GiftCardRunStatus.COMPLETED,
                context={"outcome": "no_referral_code"},
            )
            return EngineOutcome("no_referral_code", customer_id)

        await self._stage(
            correlation_id,
            "friend_reward:issuing",
            context={"referralCode": match.code, "referrerId": match.referrer.customer_id, "codeSource": match.source},
        )
        pending = None
        if record.gift_card_order_id and record.gift_card_line_item_uid:
            pending = PendingOrderInfo(order_id=record.gift_card_order_id, line_item_uid=record.gift_card_line_item_uid)

        result = await self._issuer.issue(
            customer_id,
            record.display_name,
            self._friend_reward_cents,
            False,
            pending_order_info=pending,
            idempotency_seed=friend_bonus_seed(customer_id),
        )
        self._metrics.record_reward("friend", result.channel.value if result.channel else None, success=result.success)
        await self._ledger.record(
            result,
            customer_id=customer_id,
            reward_type=GiftCardRewardType.FRIEND_SIGNUP_BONUS,
            context_label=FRIEND_BONUS_LABEL,
            reason="FRIEND_BONUS",
        )
        if not result.success:
            message = f"Friend bonus issuance failed: {result.reason}"
            await self._tracker.mark_error(correlation_id, message, stage="friend_reward:error")
            raise RewardIssuanceError(message, customer_id=customer_id, stage="friend_reward", reason=result.reason)

        applied = await self._store.mark_signup_bonus(customer_id, match.code, result)
        await self._stage(correlation_id, "friend_reward:completed", context=self._result_context(result))
        if applied:
            await self._notify_gift_card(NotificationKind.FRIEND_GIFT_CARD, record, result, self._friend_reward_cents)
            await append_gift_card_note(
                self._square,
                customer_id,
                result.gan,
                self._friend_reward_cents,
                currency=self._currency,
                label=FRIEND_BONUS_LABEL,
            )
        else:
            logger.info("Signup bonus already recorded by a concurrent delivery", customer_id=customer_id)

        await self._stage(correlation_id, "booking:completed", status=GiftCardRunStatus.COMPLETED)
        return EngineOutcome(
            "friend_bonus_issued",
            customer_id,
            {"giftCardId": result.gift_card_id, "referrerId": match.referrer.customer_id, "applied": applied},
        )

    # payment.created / payment.updated

    async def handle_payment_completed(self, event: PaymentCompletedEvent, *, correlation_id: str) -> EngineOutcome:
        if not event.is_completed:
            return EngineOutcome("ignored_status", event.customer_id, {"status": event.status})
        if not event.customer_id:
            await self._stage(
                correlation_id,
                "payment:completed",
                status=GiftCardRunStatus.COMPLETED,
                context={"outcome": "no_customer", "paymentId": event.payment_id},
            )
            return EngineOutcome("no_customer", None, {"paymentId": event.payment_id})

        customer_id = event.customer_id
        await self._stage(
            correlation_id,
            "payment:received",
            context={"paymentId": event.payment_id, "customerId": customer_id},
        )
        record = await self._ensure_record(customer_id)
        if record.first_payment_completed:
            await self._stage(
                correlation_id,
                "payment:completed",
                status=GiftCardRunStatus.COMPLETED,
                context={"outcome": "already_processed"},
            )
            return EngineOutcome("already_processed", customer_id)

        failures: list[str] = []
        referrer_id: str | None = None
        if record.used_referral_code:
            referrer = await self._resolver.resolve_referrer(record.used_referral_code)
            if referrer is None:
                logger.info("Used referral code no longer resolves", customer_id=customer_id, code=record.used_referral_code)
            elif referrer.customer_id == customer_id:
                logger.warning("Skipping self-referral reward", customer_id=customer_id)
            else:
                referrer_id = referrer.customer_id
                if not await self._reward_referrer(referrer, record, event, correlation_id=correlation_id):
                    failures.append("referrer_reward")

        if record.email_address:
            if not await self._promote_to_referrer(record, correlation_id=correlation_id):
                failures.append("referrer_promotion")

        if failures:
            message = f"First payment steps failed: {', '.join(failures)}"
            await self._tracker.mark_error(correlation_id, message, stage="payment:error")
            raise RewardIssuanceError(message, customer_id=customer_id, stage="payment", reason=",".join(failures))

        await self._store.mark_first_payment_completed(customer_id)
        await self._stage(correlation_id, "payment:completed", status=GiftCardRunStatus.COMPLETED)
        return EngineOutcome("first_payment_processed", customer_id, {"referrerId": referrer_id})

    async def _reward_referrer(
        self,
        referrer: CustomerReferralRecord,
        friend: CustomerReferralRecord,
        event: PaymentCompletedEvent,
        *,
        correlation_id: str,
    ) -> bool:
        referrer_id = referrer.customer_id
        if await self._store.has_referrer_reward(referrer_id, friend.customer_id):
            logger.info("Referrer already rewarded for this friend", referrer_id=referrer_id, friend_id=friend.customer_id)
            return True

        await self._stage(correlation_id, "referrer_reward:issuing", context={"referrerId": referrer_id})
        seed = referrer_reward_seed(referrer_id, friend.customer_id)
        amount = self._referrer_reward_cents
        if referrer.gift_card_id:
            result = await self._issuer.load(
                referrer.gift_card_id,
                amount,
                referrer_id,
                "referrer-reward",
                idempotency_seed=seed,
            )
        else:
            pending = None
            if self._promotion_orders_enabled:
                pending = await self._issuer.prepare_promotion_order(referrer_id, amount, idempotency_seed=seed)
            result = await self._issuer.issue(
                referrer_id,
                referrer.display_name,
                amount,
                True,
                pending_order_info=pending,
                idempotency_seed=seed,
            )

        self._metrics.record_reward("referrer", result.channel.value if result.channel else None, success=result.success)
        await self._ledger.record(
            result,
            customer_id=referrer_id,
            reward_type=GiftCardRewardType.REFERRER_REWARD,
            context_label=REFERRER_REWARD_LABEL,
            reason="COMPLIMENTARY",
        )
        if not result.success:
            await self._tracker.mark_error(
                correlation_id,
                f"Referrer reward failed: {result.reason}",
                stage="referrer_reward:error",
            )
            return False

        saved = await self._store.save_referrer_reward(
            referrer_id,
            friend.customer_id,
            result,
            referral_code=friend.used_referral_code,
            payment_id=event.payment_id,
            currency=self._currency,
        )
        await self._stage(correlation_id, "referrer_reward:completed", context=self._result_context(result))
        if saved:
            if not result.gan:
                result.gan = referrer.gift_card_gan
            await self._notify_gift_card(NotificationKind.REFERRER_GIFT_CARD, referrer, result, amount)
            await append_gift_card_note(
                self._square,
                referrer_id,
                result.gan,
                amount,
                currency=self._currency,
                label=REFERRER_REWARD_LABEL,
            )
        return True

    async def _promote_to_referrer(self, record: CustomerReferralRecord, *, correlation_id: str) -> bool:
        customer_id = record.customer_id
        await self._stage(correlation_id, "referrer_promotion:issuing")
        try:
            code, referral_url = await self._ensure_personal_code(record)
        except DuplicatePersonalCode as exc:
            await self._tracker.mark_error(correlation_id, exc, stage="referrer_promotion:error")
            return False

        await self._store.mark_activated_as_referrer(customer_id)
        await self._publish_personal_code(customer_id, code)
        await append_referral_note(self._square, customer_id, code, referral_url)

        recipient = NotificationRecipient(
            customer_id=customer_id,
            name=record.given_name or record.display_name or None,
            email=record.email_address,
            phone=record.phone_number,
        )
        artifacts = NotificationArtifacts(currency=self._currency, personal_code=code, referral_url=referral_url)
        channels: Dict[str, str] = {}
        if not record.referral_email_sent:
            outcome = await self._notifications.notify(
                NotificationKind.REFERRAL_INVITE, recipient, artifacts, channel=NotificationChannel.EMAIL
            )
            if outcome.success:
                await self._store.mark_referral_email_sent(customer_id)
            channels["email"] = "sent" if outcome.success else (outcome.reason or "failed")
        if not record.referral_sms_sent:
            outcome = await self._notifications.notify(
                NotificationKind.REFERRAL_INVITE, recipient, artifacts, channel=NotificationChannel.SMS
            )
            if outcome.success:
                await self._store.mark_referral_sms_sent(customer_id, outcome.external_id)
            channels["sms"] = "sent" if outcome.success else (outcome.reason or "failed")

        await self._stage(
            correlation_id,
            "referrer_promotion:completed",
            context={"personalCode": code, "notifications": channels},
        )
        return True

    async def _ensure_personal_code(self, record: CustomerReferralRecord) -> tuple[str, str]:
        if record.personal_code:
            return record.personal_code, record.referral_url or build_referral_url(
                self._referral_base_url, record.personal_code
            )

        code = ""
        for _ in range(PERSONAL_CODE_ASSIGN_ATTEMPTS):
            code = await generate_unique_personal_code(
                record.given_name or record.display_name,
                record.customer_id,
                self._store.code_exists,
                max_attempts=settings.personal_code_max_attempts,
            )
            referral_url = build_referral_url(self._referral_base_url, code)
            try:
                assigned = await self._store.assign_personal_code(record.customer_id, code, referral_url)
            except DuplicatePersonalCode:
                logger.warning("Personal code taken concurrently; regenerating", customer_id=record.customer_id, code=code)
                continue
            if assigned:
                logger.info("Personal code assigned", customer_id=record.customer_id, code=code)
                return code, referral_url

            current = await self._store.get(record.customer_id)
            if current is not None and current.personal_code:
                return current.personal_code, current.referral_url or build_referral_url(
                    self._referral_base_url, current.personal_code
                )

        raise DuplicatePersonalCode(code, customer_id=record.customer_id)

    async def _publish_personal_code(self, customer_id: str, code: str) -> None:
        key = settings.square_personal_code_attribute_key
        try:
            await self._square.upsert_customer_custom_attribute(
                customer_id,
                key,
                code,
                idempotency_key=build_idempotency_key(["personal-code", customer_id, code]),
            )
        except SquareAPIError as exc:
            logger.warning("Could not publish personal code to Square", customer_id=customer_id, error=str(exc))

    async def _ensure_record(self, customer_id: str) -> CustomerReferralRecord:
        """Load the record, creating or backfilling it from the Square profile when needed."""

        record = await self._store.get(customer_id)
        if record is not None and record.email_address and record.given_name:
            return record

        profile = await self._fetch_profile(customer_id)
        if record is not None and profile is None:
            return record
        return await self._store.upsert_customer(profile or CustomerCreatedEvent(customer_id=customer_id))

    async def _complete_profile(self, event: CustomerCreatedEvent) -> CustomerCreatedEvent:
        """Fill contact fields the webhook left out from the Square customer profile."""

        missing = [name for name in CONTACT_FIELDS if getattr(event, name) is None]
        if not missing:
            return event
        profile = await self._fetch_profile(event.customer_id)
        if profile is None:
            return event
        return replace(event, **{name: getattr(profile, name) for name in missing})

    async def _fetch_profile(self, customer_id: str) -> CustomerCreatedEvent | None:
        try:
            profile = await self._square.retrieve_customer(customer_id)
        except SquareAPIError as exc:
            logger.warning("Square customer profile unavailable", customer_id=customer_id, error=str(exc))
            return None
        if not profile:
            return None
        return CustomerCreatedEvent.from_profile(customer_id, profile)

    async def _notify_gift_card(
        self,
        kind: NotificationKind,
        record: CustomerReferralRecord,
        result: GiftCardResult,
        amount_cents: int,
    ) -> None:
        await self._notifications.notify(
            kind,
            NotificationRecipient(
                customer_id=record.customer_id,
                name=record.given_name or record.display_name or None,
                email=record.email_address,
                phone=record.phone_number,
            ),
            NotificationArtifacts(
                gan=result.gan,
                amount_cents=amount_cents,
                currency=self._currency,
                activation_url=result.activation_url,
                pass_kit_url=result.pass_kit_url,
            ),
        )

    async def _stage(
        self,
        correlation_id: str,
        stage: str,
        *,
        status: GiftCardRunStatus = GiftCardRunStatus.RUNNING,
        context: Dict[str, Any] | None = None,
    ) -> None:
        await self._tracker.update_stage(correlation_id, stage=stage, status=status, context=context)

    @staticmethod
    def _result_context(result: GiftCardResult) -> Dict[str, Any]:
        return {
            "giftCardId": result.gift_card_id,
            "channel": result.channel.value if result.channel else None,
            "balanceCents": result.balance_cents,
        }


__all__ = ["EngineOutcome", "ReferralEvent", "ReferralRewardEngine", "RewardIssuanceError"]
