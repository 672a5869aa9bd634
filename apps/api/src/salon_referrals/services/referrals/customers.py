"""Persistence for customer referral records and per-friend referrer rewards."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Mapping

from loguru import logger
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from salon_referrals.models import CustomerReferralRecord, ReferralReward
from salon_referrals.services.gift_cards import GiftCardResult
from salon_referrals.services.referrals.events import CustomerCreatedEvent

CONTACT_FIELDS = ("given_name", "family_name", "email_address", "phone_number")


class DuplicatePersonalCode(RuntimeError):
    """Raised when another customer already owns the requested personal code."""

    def __init__(self, code: str, *, customer_id: str) -> None:
        super().__init__(f"Personal code {code!r} is already assigned")
        self.code = code
        self.customer_id = customer_id


def normalize_code(code: Any) -> str | None:
    if not isinstance(code, str):
        return None
    normalized = code.strip().upper()
    return normalized or None


class CustomerReferralStore:
    """Data access for ``CustomerReferralRecord`` rows.

    Every flag transition is a single conditional ``UPDATE ... WHERE flag IS
    FALSE`` and the methods return whether this call performed the transition.
    """

    def __init__(self, db_session: AsyncSession) -> None:
        self._db = db_session

    async def get(self, customer_id: str) -> CustomerReferralRecord | None:
        return await self._db.get(CustomerReferralRecord, customer_id, populate_existing=True)

    async def find_by_code(self, code: Any) -> CustomerReferralRecord | None:
        """Case-insensitive lookup on the trimmed code, then an exact match on the raw input."""

        normalized = normalize_code(code)
        if normalized is None:
            return None

        stmt = select(CustomerReferralRecord).where(
            func.upper(func.trim(CustomerReferralRecord.personal_code)) == normalized
        ).execution_options(populate_existing=True)
        record = (await self._db.execute(stmt)).scalars().first()
        if record is not None:
            return record

        stmt = select(CustomerReferralRecord).where(CustomerReferralRecord.personal_code == code).execution_options(
            populate_existing=True
        )
        return (await self._db.execute(stmt)).scalars().first()

    async def code_exists(self, code: str) -> bool:
        normalized = normalize_code(code)
        if normalized is None:
            return False
        stmt = select(func.count()).select_from(CustomerReferralRecord).where(
            func.upper(func.trim(CustomerReferralRecord.personal_code)) == normalized
        )
        return bool((await self._db.execute(stmt)).scalar_one())

    async def upsert_customer(self, profile: CustomerCreatedEvent) -> CustomerReferralRecord:
        """Create the record or fill contact fields that are still empty.

        Stored non-null values are never overwritten.
        """

        record = await self.get(profile.customer_id)
        if record is None:
            record = CustomerReferralRecord(
                customer_id=profile.customer_id,
                **{name: getattr(profile, name) for name in CONTACT_FIELDS},
            )
            self._db.add(record)
            try:
                await self._db.commit()
            except IntegrityError:
                await self._db.rollback()
                logger.warning("Detected race when creating referral record", customer_id=profile.customer_id)
                return await self.upsert_customer(profile)
            await self._db.refresh(record)
            logger.info("Created customer referral record", customer_id=profile.customer_id)
            return record

        missing = {
            name: getattr(profile, name)
            for name in CONTACT_FIELDS
            if getattr(record, name) is None and getattr(profile, name) is not None
        }
        if missing:
            await self._db.execute(
                update(CustomerReferralRecord)
                .where(CustomerReferralRecord.customer_id == profile.customer_id)
                .values(
                    **{
                        name: func.coalesce(getattr(CustomerReferralRecord, name), value)
                        for name, value in missing.items()
                    }
                )
                .execution_options(synchronize_session=False)
            )
            await self._db.commit()
            record = await self.get(profile.customer_id)
            logger.info("Backfilled referral record contact fields", customer_id=profile.customer_id, fields=sorted(missing))
        return record

    async def _conditional_update(self, customer_id: str, flag: str, values: Mapping[str, Any]) -> bool:
        column = getattr(CustomerReferralRecord, flag)
        result = await self._db.execute(
            update(CustomerReferralRecord)
            .where(CustomerReferralRecord.customer_id == customer_id, column.is_(False))
            .values({flag: True, **values})
            .execution_options(synchronize_session=False)
        )
        await self._db.commit()
        return result.rowcount == 1

    async def mark_signup_bonus(self, customer_id: str, referral_code: str, result: GiftCardResult) -> bool:
        """Record the friend bonus together with its card artifacts and the code used."""

        return await self._conditional_update(
            customer_id,
            "got_signup_bonus",
            {
                **result.artifacts(),
                "used_referral_code": func.coalesce(CustomerReferralRecord.used_referral_code, referral_code),
            },
        )

    async def has_referrer_reward(self, referrer_id: str, friend_id: str) -> bool:
        stmt = select(func.count()).select_from(ReferralReward).where(
            ReferralReward.referrer_customer_id == referrer_id,
            ReferralReward.referred_customer_id == friend_id,
        )
        return bool((await self._db.execute(stmt)).scalar_one())

    async def save_referrer_reward(
        self,
        referrer_id: str,
        friend_id: str,
        result: GiftCardResult,
        *,
        referral_code: str | None,
        payment_id: str | None,
        currency: str,
    ) -> bool:
        """Insert the per-friend reward row and bump the referrer counters atomically.

        Returns ``False`` when the pair was already rewarded.
        """

        self._db.add(
            ReferralReward(
                referrer_customer_id=referrer_id,
                referred_customer_id=friend_id,
                referral_code=referral_code,
                amount_cents=result.amount_cents,
                currency=currency,
                gift_card_id=result.gift_card_id,
                payment_id=payment_id,
            )
        )
        try:
            await self._db.flush()
        except IntegrityError:
            await self._db.rollback()
            logger.info("Referrer reward already recorded", referrer_id=referrer_id, friend_id=friend_id)
            return False

        artifacts = {key: value for key, value in result.artifacts().items() if value is not None}
        await self._db.execute(
            update(CustomerReferralRecord)
            .where(CustomerReferralRecord.customer_id == referrer_id)
            .values(
                total_referrals=CustomerReferralRecord.total_referrals + 1,
                total_rewards_cents=CustomerReferralRecord.total_rewards_cents + result.amount_cents,
                **artifacts,
            )
            .execution_options(synchronize_session=False)
        )
        await self._db.commit()
        return True

    async def assign_personal_code(self, customer_id: str, code: str, referral_url: str) -> bool:
        """Set the personal code only when none is stored yet.

        Raises:
            DuplicatePersonalCode: another customer owns the code.
        """

        try:
            result = await self._db.execute(
                update(CustomerReferralRecord)
                .where(
                    CustomerReferralRecord.customer_id == customer_id,
                    CustomerReferralRecord.personal_code.is_(None),
                )
                .values(personal_code=code, referral_url=referral_url)
                .execution_options(synchronize_session=False)
            )
            await self._db.commit()
        except IntegrityError as exc:
            await self._db.rollback()
            raise DuplicatePersonalCode(code, customer_id=customer_id) from exc
        return result.rowcount == 1

    async def mark_activated_as_referrer(self, customer_id: str) -> bool:
        return await self._conditional_update(customer_id, "activated_as_referrer", {})

    async def mark_referral_email_sent(self, customer_id: str) -> bool:
        return await self._conditional_update(
            customer_id,
            "referral_email_sent",
            {"referral_email_sent_at": datetime.now(timezone.utc)},
        )

    async def mark_referral_sms_sent(self, customer_id: str, message_sid: str | None) -> bool:
        return await self._conditional_update(
            customer_id,
            "referral_sms_sent",
            {"referral_sms_sent_at": datetime.now(timezone.utc), "referral_sms_sid": message_sid},
        )

    async def mark_first_payment_completed(self, customer_id: str) -> bool:
        return await self._conditional_update(customer_id, "first_payment_completed", {})


__all__ = ["CONTACT_FIELDS", "CustomerReferralStore", "DuplicatePersonalCode", "normalize_code"]
