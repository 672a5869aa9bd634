"""SQLAlchemy models package."""

from .customer_referral import CustomerReferralRecord  # noqa: F401
from .gift_card import GiftCard, GiftCardRewardType, GiftCardTransaction, GiftCardTransactionType  # noqa: F401
from .gift_card_run import GiftCardRun, GiftCardRunStatus  # noqa: F401
from .referral_reward import ReferralReward  # noqa: F401

__all__ = [
    "CustomerReferralRecord",
    "GiftCard",
    "GiftCardRewardType",
    "GiftCardRun",
    "GiftCardRunStatus",
    "GiftCardTransaction",
    "GiftCardTransactionType",
    "ReferralReward",
]
