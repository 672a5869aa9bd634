"""Local record of issued gift cards and their balance movements."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable

from loguru import logger
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from salon_referrals.db.session import async_session
from salon_referrals.models import GiftCard, GiftCardRewardType, GiftCardTransaction, GiftCardTransactionType
from salon_referrals.services.gift_cards.issuer import GiftCardResult

SessionFactory = Callable[[], AsyncSession]


class GiftCardLedger:
    """Mirrors issuer results into ``gift_cards`` and ``gift_card_transactions``.

    The ledger is an audit trail, not the source of reward idempotence. Each
    call uses its own session, and a failure is logged and reported as
    ``None`` without touching the reward flags. Square activity ids are
    unique, so recording the same result twice adds no second transaction.
    """

    def __init__(self, session_factory: SessionFactory | None = None) -> None:
        self._session_factory = session_factory or async_session

    async def get_card(self, square_gift_card_id: str) -> GiftCard | None:
        async with self._session_factory() as session:
            return await self._get_card(session, square_gift_card_id)

    async def list_transactions(self, square_gift_card_id: str) -> list[GiftCardTransaction]:
        stmt = (
            select(GiftCardTransaction)
            .join(GiftCard, GiftCard.id == GiftCardTransaction.gift_card_id)
            .where(GiftCard.square_gift_card_id == square_gift_card_id)
            .order_by(GiftCardTransaction.created_at, GiftCardTransaction.balance_after_cents)
        )
        async with self._session_factory() as session:
            return list((await session.execute(stmt)).scalars().all())

    async def record(
        self,
        result: GiftCardResult,
        *,
        customer_id: str | None,
        reward_type: GiftCardRewardType,
        context_label: str,
        reason: str | None = None,
    ) -> GiftCard | None:
        """Upsert the card row and append the funding activity carried by ``result``.

        Cards created by this result also get a zero-amount ``create`` entry.
        Returns the card row, or ``None`` when nothing could be recorded.
        """

        if not result.gift_card_id:
            return None

        log = logger.bind(gift_card_id=result.gift_card_id, customer_id=customer_id, context=context_label)
        try:
            async with self._session_factory() as session:
                card = await self._get_card(session, result.gift_card_id)
                if card is None:
                    card = GiftCard(
                        square_gift_card_id=result.gift_card_id,
                        square_customer_id=customer_id,
                        reward_type=reward_type,
                        initial_amount_cents=result.amount_cents if result.created else 0,
                        current_balance_cents=0,
                    )
                    session.add(card)
                    await session.flush()
                    if result.created:
                        session.add(
                            GiftCardTransaction(
                                gift_card_id=card.id,
                                transaction_type=GiftCardTransactionType.CREATE,
                                amount_cents=0,
                                balance_before_cents=0,
                                balance_after_cents=0,
                                context_label=context_label,
                            )
                        )

                self._apply_result(card, result)
                if result.activity_id and not await self._has_activity(session, result.activity_id):
                    session.add(self._funding_entry(card, result, context_label=context_label, reason=reason))
                await session.commit()
        except IntegrityError:
            log.info("Gift card ledger entry already recorded by a concurrent delivery")
            return await self.get_card(result.gift_card_id)
        except Exception as exc:
            logger.exception(
                "Failed to record gift card in the ledger",
                gift_card_id=result.gift_card_id,
                customer_id=customer_id,
                error=str(exc),
            )
            return None

        log.info("Gift card ledger updated", balance_cents=card.current_balance_cents, activity_id=result.activity_id)
        return card

    @staticmethod
    async def _get_card(session: AsyncSession, square_gift_card_id: str) -> GiftCard | None:
        stmt = select(GiftCard).where(GiftCard.square_gift_card_id == square_gift_card_id)
        return (await session.execute(stmt)).scalar_one_or_none()

    @staticmethod
    async def _has_activity(session: AsyncSession, square_activity_id: str) -> bool:
        stmt = select(GiftCardTransaction.id).where(GiftCardTransaction.square_activity_id == square_activity_id)
        return (await session.execute(stmt)).first() is not None

    @staticmethod
    def _funding_entry(
        card: GiftCard,
        result: GiftCardResult,
        *,
        context_label: str,
        reason: str | None,
    ) -> GiftCardTransaction:
        return GiftCardTransaction(
            gift_card_id=card.id,
            transaction_type=GiftCardTransactionType((result.activity_type or "activate").lower()),
            amount_cents=result.amount_cents,
            balance_before_cents=result.balance_before_cents,
            balance_after_cents=result.balance_cents,
            square_activity_id=result.activity_id,
            square_order_id=result.order_id,
            square_payment_id=result.payment_id,
            reason=reason,
            context_label=context_label,
            details={
                "channel": result.channel.value if result.channel else None,
                "attempts": result.attempts,
            },
        )

    @staticmethod
    def _apply_result(card: GiftCard, result: GiftCardResult) -> None:
        card.gift_card_gan = result.gan or card.gift_card_gan
        card.state = result.state or card.state or "PENDING"
        card.current_balance_cents = result.balance_cents
        card.last_balance_check_at = datetime.now(timezone.utc)
        if result.channel is not None:
            card.delivery_channel = result.channel.value
        card.gift_card_order_id = result.order_id or card.gift_card_order_id
        card.gift_card_line_item_uid = result.line_item_uid or card.gift_card_line_item_uid
        card.activation_url = result.activation_url or card.activation_url
        card.pass_kit_url = result.pass_kit_url or card.pass_kit_url
        card.digital_email = result.digital_email or card.digital_email


__all__ = ["GiftCardLedger"]
