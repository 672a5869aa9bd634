"""Create customer referral, referral reward and gift card run tables."""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision: str = "20261017_01"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "customer_referral_records",
        sa.Column("customer_id", sa.String(), primary_key=True),
        sa.Column("given_name", sa.String(), nullable=True),
        sa.Column("family_name", sa.String(), nullable=True),
        sa.Column("email_address", sa.String(), nullable=True),
        sa.Column("phone_number", sa.String(), nullable=True),
        sa.Column("personal_code", sa.String(), nullable=True, unique=True),
        sa.Column("referral_url", sa.String(), nullable=True),
        sa.Column("used_referral_code", sa.String(), nullable=True),
        sa.Column("got_signup_bonus", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("activated_as_referrer", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("first_payment_completed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("referral_email_sent", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("referral_sms_sent", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("gift_card_id", sa.String(), nullable=True),
        sa.Column("gift_card_gan", sa.String(), nullable=True),
        sa.Column("gift_card_order_id", sa.String(), nullable=True),
        sa.Column("gift_card_line_item_uid", sa.String(), nullable=True),
        sa.Column("gift_card_delivery_channel", sa.String(), nullable=True),
        sa.Column("gift_card_activation_url", sa.String(), nullable=True),
        sa.Column("gift_card_pass_kit_url", sa.String(), nullable=True),
        sa.Column("gift_card_digital_email", sa.String(), nullable=True),
        sa.Column("total_referrals", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_rewards_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("referral_email_sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("referral_sms_sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("referral_sms_sid", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index(
        "ix_customer_referral_records_email_address",
        "customer_referral_records",
        ["email_address"],
    )
    op.create_index(
        "uq_customer_referral_records_personal_code_upper",
        "customer_referral_records",
        [sa.text("upper(trim(personal_code))")],
        unique=True,
    )

    op.create_table(
        "referral_rewards",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("referrer_customer_id", sa.String(), nullable=False),
        sa.Column("referred_customer_id", sa.String(), nullable=False),
        sa.Column("referral_code", sa.String(), nullable=True),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default="USD"),
        sa.Column("gift_card_id", sa.String(), nullable=True),
        sa.Column("payment_id", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False, server_default="issued"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint(
            "referrer_customer_id",
            "referred_customer_id",
            name="uq_referral_rewards_referrer_friend",
        ),
    )
    op.create_index("ix_referral_rewards_referrer_customer_id", "referral_rewards", ["referrer_customer_id"])

    giftcard_run_status = sa.Enum(
        "pending",
        "running",
        "completed",
        "error",
        name="giftcard_run_status_enum",
    )
    op.create_table(
        "giftcard_runs",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("correlation_id", sa.String(), nullable=False, unique=True),
        sa.Column("trigger_type", sa.String(), nullable=False),
        sa.Column("square_event_id", sa.String(), nullable=True),
        sa.Column("square_event_type", sa.String(), nullable=True),
        sa.Column("resource_id", sa.String(), nullable=True),
        sa.Column("stage", sa.String(), nullable=True),
        sa.Column("status", giftcard_run_status, nullable=False, server_default="pending"),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("payload", sa.JSON(), nullable=True),
        sa.Column("context", sa.JSON(), nullable=True),
        sa.Column("resumed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_giftcard_runs_square_event_id", "giftcard_runs", ["square_event_id"])


def downgrade() -> None:
    op.drop_index("ix_giftcard_runs_square_event_id", table_name="giftcard_runs")
    op.drop_table("giftcard_runs")
    sa.Enum(name="giftcard_run_status_enum").drop(op.get_bind(), checkfirst=True)
    op.drop_index("ix_referral_rewards_referrer_customer_id", table_name="referral_rewards")
    op.drop_table("referral_rewards")
    op.drop_index("uq_customer_referral_records_personal_code_upper", table_name="customer_referral_records")
    op.drop_index("ix_customer_referral_records_email_address", table_name="customer_referral_records")
    op.drop_table("customer_referral_records")
