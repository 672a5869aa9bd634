"""Local ledger of issued gift cards and the Square activities that moved money onto them."""

from __future__ import annotations

from enum import Enum
from uuid import uuid4

from sqlalchemy import Column, DateTime, Enum as SqlEnum, ForeignKey, Integer, JSON, String, func
from sqlalchemy.dialects.postgresql import UUID

from salon_referrals.db.base import Base


class GiftCardRewardType(str, Enum):
    FRIEND_SIGNUP_BONUS = "friend_signup_bonus"
    REFERRER_REWARD = "referrer_reward"


class GiftCardTransactionType(str, Enum):
    CREATE = "create"
    ACTIVATE = "activate"
    ADJUST_INCREMENT = "adjust_increment"


class GiftCard(Base):
    __tablename__ = "gift_cards"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    square_gift_card_id = Column(String, nullable=False, unique=True)
    square_customer_id = Column(String, nullable=True, index=True)
    gift_card_gan = Column(String, nullable=True)
    reward_type = Column(
        SqlEnum(
            GiftCardRewardType,
            name="gift_card_reward_type_enum",
            values_callable=lambda enum: [member.value for member in enum],
        ),
        nullable=False,
    )
    initial_amount_cents = Column(Integer, nullable=False, default=0, server_default="0")
    current_balance_cents = Column(Integer, nullable=False, default=0, server_default="0")
    state = Column(String, nullable=False, default="PENDING", server_default="PENDING")
    delivery_channel = Column(String, nullable=True)
    gift_card_order_id = Column(String, nullable=True)
    gift_card_line_item_uid = Column(String, nullable=True)
    activation_url = Column(String, nullable=True)
    pass_kit_url = Column(String, nullable=True)
    digital_email = Column(String, nullable=True)
    last_balance_check_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


class GiftCardTransaction(Base):
    """One balance movement; Square activity ids are unique so replays never double count."""

    __tablename__ = "gift_card_transactions"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    gift_card_id = Column(UUID(as_uuid=True), ForeignKey("gift_cards.id", ondelete="CASCADE"), nullable=False, index=True)
    transaction_type = Column(
        SqlEnum(
            GiftCardTransactionType,
            name="gift_card_transaction_type_enum",
            values_callable=lambda enum: [member.value for member in enum],
        ),
        nullable=False,
    )
    amount_cents = Column(Integer, nullable=False, default=0, server_default="0")
    balance_before_cents = Column(Integer, nullable=False, default=0, server_default="0")
    balance_after_cents = Column(Integer, nullable=False, default=0, server_default="0")
    square_activity_id = Column(String, nullable=True, unique=True)
    square_order_id = Column(String, nullable=True)
    square_payment_id = Column(String, nullable=True)
    reason = Column(String, nullable=True)
    context_label = Column(String, nullable=True)
    details = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
