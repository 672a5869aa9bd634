"""Per-friend referrer reward ledger."""

from __future__ import annotations

from uuid import uuid4

from sqlalchemy import Column, DateTime, Integer, String, UniqueConstraint, func
from sqlalchemy.dialects.postgresql import UUID

from salon_referrals.db.base import Base


class ReferralReward(Base):
    """A referrer reward earned because a referred friend completed a first payment."""

    __tablename__ = "referral_rewards"
    __table_args__ = (
        UniqueConstraint(
            "referrer_customer_id",
            "referred_customer_id",
            name="uq_referral_rewards_referrer_friend",
        ),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    referrer_customer_id = Column(String, nullable=False, index=True)
    referred_customer_id = Column(String, nullable=False)
    referral_code = Column(String, nullable=True)
    amount_cents = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False, server_default="USD")
    gift_card_id = Column(String, nullable=True)
    payment_id = Column(String, nullable=True)
    status = Column(String, nullable=False, server_default="issued")
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
