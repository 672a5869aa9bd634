"""Create gift card ledger tables."""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision: str = "20261017_02"
down_revision: Union[str, None] = "20261017_01"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    reward_type = sa.Enum("friend_signup_bonus", "referrer_reward", name="gift_card_reward_type_enum")
    op.create_table(
        "gift_cards",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("square_gift_card_id", sa.String(), nullable=False, unique=True),
        sa.Column("square_customer_id", sa.String(), nullable=True),
        sa.Column("gift_card_gan", sa.String(), nullable=True),
        sa.Column("reward_type", reward_type, nullable=False),
        sa.Column("initial_amount_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("current_balance_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("state", sa.String(), nullable=False, server_default="PENDING"),
        sa.Column("delivery_channel", sa.String(), nullable=True),
        sa.Column("gift_card_order_id", sa.String(), nullable=True),
        sa.Column("gift_card_line_item_uid", sa.String(), nullable=True),
        sa.Column("activation_url", sa.String(), nullable=True),
        sa.Column("pass_kit_url", sa.String(), nullable=True),
        sa.Column("digital_email", sa.String(), nullable=True),
        sa.Column("last_balance_check_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_gift_cards_square_customer_id", "gift_cards", ["square_customer_id"])

    transaction_type = sa.Enum("create", "activate", "adjust_increment", name="gift_card_transaction_type_enum")
    op.create_table(
        "gift_card_transactions",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "gift_card_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("gift_cards.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("transaction_type", transaction_type, nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("balance_before_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("balance_after_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("square_activity_id", sa.String(), nullable=True, unique=True),
        sa.Column("square_order_id", sa.String(), nullable=True),
        sa.Column("square_payment_id", sa.String(), nullable=True),
        sa.Column("reason", sa.String(), nullable=True),
        sa.Column("context_label", sa.String(), nullable=True),
        sa.Column("details", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_gift_card_transactions_gift_card_id", "gift_card_transactions", ["gift_card_id"])


def downgrade() -> None:
    op.drop_index("ix_gift_card_transactions_gift_card_id", table_name="gift_card_transactions")
    op.drop_table("gift_card_transactions")
    sa.Enum(name="gift_card_transaction_type_enum").drop(op.get_bind(), checkfirst=True)
    op.drop_index("ix_gift_cards_square_customer_id", table_name="gift_cards")
    op.drop_table("gift_cards")
    sa.Enum(name="gift_card_reward_type_enum").drop(op.get_bind(), checkfirst=True)
