"""Create points ledger and referral tables."""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision: str = "20261018_01"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

UUID = postgresql.UUID(as_uuid=True)

point_transaction_type = sa.Enum("earn", "redeem", "adjust", name="point_transaction_type")
referral_status = sa.Enum(
    "pending", "registered", "qualified", "completed", "expired", "cancelled", name="referral_status"
)


def _timestamps(*, updated: bool = True) -> list[sa.Column]:
    columns = [sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now())]
    if updated:
        columns.append(sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()))
    return columns


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("email", sa.String(), nullable=False),
        sa.Column("username", sa.String(64), nullable=True, unique=True),
        sa.Column("display_name", sa.String(), nullable=True),
        sa.Column("is_verified", sa.Boolean(), nullable=False, server_default=sa.false()),
        *_timestamps(),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)

    op.create_table(
        "point_rules",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("action_type", sa.String(64), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("point_value", sa.Numeric(12, 2), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("max_daily_occurrences", sa.Integer(), nullable=True),
        sa.Column("max_total_occurrences", sa.Integer(), nullable=True),
        sa.Column("cooldown_minutes", sa.Integer(), nullable=True),
        sa.Column("multiplier_eligible", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
        sa.CheckConstraint("point_value >= 0", name="ck_point_rules_point_value_non_negative"),
    )
    op.create_index("ix_point_rules_action_type", "point_rules", ["action_type"], unique=True)

    op.create_table(
        "point_multipliers",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("name", sa.String(128), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("multiplier", sa.Numeric(6, 2), nullable=False),
        sa.Column("action_types", sa.JSON(), nullable=False),
        sa.Column("starts_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("ends_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(updated=False),
        sa.CheckConstraint("starts_at <= ends_at", name="ck_point_multipliers_window"),
        sa.CheckConstraint("multiplier >= 0", name="ck_point_multipliers_factor_non_negative"),
    )

    op.create_table(
        "user_daily_points",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("user_id", UUID, sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("action_type", sa.String(64), nullable=False),
        sa.Column("occurrence_date", sa.Date(), nullable=False),
        sa.Column("occurrence_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("points_earned", sa.Numeric(14, 2), nullable=False, server_default="0"),
        sa.Column("last_occurrence_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint(
            "user_id", "action_type", "occurrence_date", name="uq_user_daily_points_user_action_date"
        ),
    )
    op.create_index("ix_user_daily_points_user_id", "user_daily_points", ["user_id"])
    op.create_index("ix_user_daily_points_occurrence_date", "user_daily_points", ["occurrence_date"])

    op.create_table(
        "user_points",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("user_id", UUID, sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("total_points", sa.Numeric(14, 2), nullable=False, server_default="0"),
        sa.Column("available_points", sa.Numeric(14, 2), nullable=False, server_default="0"),
        sa.Column("lifetime_points", sa.Numeric(14, 2), nullable=False, server_default="0"),
        sa.Column("redeemed_points", sa.Numeric(14, 2), nullable=False, server_default="0"),
        sa.Column("pending_points", sa.Numeric(14, 2), nullable=False, server_default="0"),
        sa.Column("transaction_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("current_streak", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("longest_streak", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_login_date", sa.Date(), nullable=True),
        sa.Column("last_earned_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("user_id", name="uq_user_points_user_id"),
        sa.CheckConstraint("total_points >= 0", name="ck_user_points_total_non_negative"),
        sa.CheckConstraint("available_points >= 0", name="ck_user_points_available_non_negative"),
        sa.CheckConstraint("available_points <= total_points", name="ck_user_points_available_le_total"),
    )

    op.create_table(
        "point_transactions",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("user_id", UUID, sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("sequence", sa.Integer(), nullable=False),
        sa.Column("transaction_type", point_transaction_type, nullable=False),
        sa.Column("points", sa.Numeric(14, 2), nullable=False),
        sa.Column("balance_after", sa.Numeric(14, 2), nullable=False),
        sa.Column("rule_id", UUID, sa.ForeignKey("point_rules.id"), nullable=True),
        sa.Column("description", sa.String(), nullable=True),
        sa.Column("reference_type", sa.String(64), nullable=True),
        sa.Column("reference_id", sa.String(128), nullable=True),
        sa.Column("multiplier", sa.Numeric(6, 2), nullable=False, server_default="1"),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(updated=False),
        sa.UniqueConstraint("user_id", "sequence", name="uq_point_transactions_user_sequence"),
    )
    op.create_index("ix_point_transactions_user_id", "point_transactions", ["user_id"])
    op.create_index("ix_point_transactions_created_at", "point_transactions", ["created_at"])

    op.create_table(
        "user_referral_codes",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("user_id", UUID, sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("referral_code", sa.String(32), nullable=False),
        sa.Column("custom_code", sa.String(32), nullable=True),
        sa.Column("total_referrals", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("successful_referrals", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("pending_referrals", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_points_earned", sa.Numeric(14, 2), nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
        sa.UniqueConstraint("user_id", name="uq_user_referral_codes_user_id"),
    )
    op.create_index("ix_user_referral_codes_referral_code", "user_referral_codes", ["referral_code"], unique=True)
    op.create_index("ix_user_referral_codes_custom_code", "user_referral_codes", ["custom_code"], unique=True)

    op.create_table(
        "referral_reward_tiers",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("name", sa.String(64), nullable=False),
        sa.Column("min_referrals", sa.Integer(), nullable=False),
        sa.Column("max_referrals", sa.Integer(), nullable=True),
        sa.Column("referrer_points", sa.Integer(), nullable=False),
        sa.Column("referred_points", sa.Integer(), nullable=False),
        sa.Column("bonus_multiplier", sa.Numeric(6, 2), nullable=False, server_default="1"),
        sa.Column("additional_rewards", sa.JSON(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(updated=False),
        sa.CheckConstraint("min_referrals >= 0", name="ck_referral_reward_tiers_min_non_negative"),
        sa.CheckConstraint(
            "max_referrals IS NULL OR max_referrals >= min_referrals",
            name="ck_referral_reward_tiers_range",
        ),
    )

    op.create_table(
        "referral_campaigns",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("name", sa.String(128), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("bonus_referrer_points", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("bonus_referred_points", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("multiplier", sa.Numeric(6, 2), nullable=False, server_default="1"),
        sa.Column("starts_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("ends_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("max_referrals_per_user", sa.Integer(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(updated=False),
        sa.CheckConstraint("starts_at <= ends_at", name="ck_referral_campaigns_window"),
    )

    op.create_table(
        "referrals",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("referrer_user_id", UUID, sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("referred_user_id", UUID, sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column("referral_code", sa.String(32), nullable=False),
        sa.Column("invitee_email", sa.String(), nullable=True),
        sa.Column("status", referral_status, nullable=False, server_default="pending"),
        sa.Column("approved_review_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("referrer_points", sa.Integer(), nullable=True),
        sa.Column("referred_points", sa.Integer(), nullable=True),
        sa.Column("referrer_rewarded", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("referred_rewarded", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("reward_tier_id", UUID, sa.ForeignKey("referral_reward_tiers.id"), nullable=True),
        sa.Column("campaign_id", UUID, sa.ForeignKey("referral_campaigns.id"), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("registered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("qualified_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("referred_user_id", name="uq_referrals_referred_user_id"),
    )
    op.create_index("ix_referrals_referrer_user_id", "referrals", ["referrer_user_id"])
    op.create_index("ix_referrals_referral_code", "referrals", ["referral_code"])


def downgrade() -> None:
    op.drop_table("referrals")
    op.drop_table("referral_campaigns")
    op.drop_table("referral_reward_tiers")
    op.drop_table("user_referral_codes")
    op.drop_table("point_transactions")
    op.drop_table("user_points")
    op.drop_table("user_daily_points")
    op.drop_table("point_multipliers")
    op.drop_table("point_rules")
    op.drop_table("users")

    bind = op.get_bind()
    referral_status.drop(bind, checkfirst=True)
    point_transaction_type.drop(bind, checkfirst=True)
