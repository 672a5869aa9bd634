"""Customer referral state keyed by the provider customer id."""

from __future__ import annotations

from sqlalchemy import Boolean, Column, DateTime, Index, Integer, String, func

from salon_referrals.db.base import Base


class CustomerReferralRecord(Base):
    """One row per provider customer; flags only ever move from false to true."""

    __tablename__ = "customer_referral_records"

    customer_id = Column(String, primary_key=True)
    given_name = Column(String, nullable=True)
    family_name = Column(String, nullable=True)
    email_address = Column(String, nullable=True, index=True)
    phone_number = Column(String, nullable=True)

    personal_code = Column(String, nullable=True, unique=True)
    referral_url = Column(String, nullable=True)
    used_referral_code = Column(String, nullable=True)

    got_signup_bonus = Column(Boolean, nullable=False, default=False, server_default="false")
    activated_as_referrer = Column(Boolean, nullable=False, default=False, server_default="false")
    first_payment_completed = Column(Boolean, nullable=False, default=False, server_default="false")
    referral_email_sent = Column(Boolean, nullable=False, default=False, server_default="false")
    referral_sms_sent = Column(Boolean, nullable=False, default=False, server_default="false")

    gift_card_id = Column(String, nullable=True)
    gift_card_gan = Column(String, nullable=True)
    gift_card_order_id = Column(String, nullable=True)
    gift_card_line_item_uid = Column(String, nullable=True)
    gift_card_delivery_channel = Column(String, nullable=True)
    gift_card_activation_url = Column(String, nullable=True)
    gift_card_pass_kit_url = Column(String, nullable=True)
    gift_card_digital_email = Column(String, nullable=True)

    total_referrals = Column(Integer, nullable=False, default=0, server_default="0")
    total_rewards_cents = Column(Integer, nullable=False, default=0, server_default="0")

    referral_email_sent_at = Column(DateTime(timezone=True), nullable=True)
    referral_sms_sent_at = Column(DateTime(timezone=True), nullable=True)
    referral_sms_sid = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    @property
    def display_name(self) -> str:
        parts = [part.strip() for part in (self.given_name, self.family_name) if part and part.strip()]
        return " ".join(parts)


Index(
    "uq_customer_referral_records_personal_code_upper",
    func.upper(func.trim(CustomerReferralRecord.personal_code)),
    unique=True,
)
