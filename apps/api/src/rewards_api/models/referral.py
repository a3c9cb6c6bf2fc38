"""Referral lifecycle models."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Integer,
    JSON,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import UUID

from rewards_api.core.clock import ensure_aware, utcnow
from rewards_api.db.base import Base


class ReferralStatus(str, Enum):
    """Lifecycle statuses for referrals."""

    PENDING = "pending"
    REGISTERED = "registered"
    QUALIFIED = "qualified"
    COMPLETED = "completed"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


OPEN_REFERRAL_STATUSES = (
    ReferralStatus.PENDING,
    ReferralStatus.REGISTERED,
    ReferralStatus.QUALIFIED,
)
TERMINAL_REFERRAL_STATUSES = (
    ReferralStatus.COMPLETED,
    ReferralStatus.EXPIRED,
    ReferralStatus.CANCELLED,
)


class UserReferralCode(Base):
    """A user's shareable referral code and its running counters."""

    __tablename__ = "user_referral_codes"
    __table_args__ = (
        UniqueConstraint("user_id", name="uq_user_referral_codes_user_id"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    referral_code = Column(String(32), nullable=False, unique=True, index=True)
    custom_code = Column(String(32), nullable=True, unique=True, index=True)
    total_referrals = Column(Integer, nullable=False, default=0, server_default="0")
    successful_referrals = Column(Integer, nullable=False, default=0, server_default="0")
    pending_referrals = Column(Integer, nullable=False, default=0, server_default="0")
    total_points_earned = Column(Numeric(14, 2), nullable=False, default=0, server_default="0")
    is_active = Column(Boolean, nullable=False, default=True, server_default="true")
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    @property
    def active_code(self) -> str:
        return self.custom_code or self.referral_code


class Referral(Base):
    """Referrer to referred-user link driven through the referral lifecycle."""

    __tablename__ = "referrals"
    __table_args__ = (
        UniqueConstraint("referred_user_id", name="uq_referrals_referred_user_id"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    referrer_user_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    referred_user_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    referral_code = Column(String(32), nullable=False, index=True)
    invitee_email = Column(String, nullable=True)
    status = Column(
        SqlEnum(
            ReferralStatus,
            name="referral_status",
            values_callable=lambda enum_cls: [item.value for item in enum_cls],
        ),
        nullable=False,
        default=ReferralStatus.PENDING,
    )
    approved_review_count = Column(Integer, nullable=False, default=0, server_default="0")
    referrer_points = Column(Integer, nullable=True)
    referred_points = Column(Integer, nullable=True)
    referrer_rewarded = Column(Boolean, nullable=False, default=False, server_default="false")
    referred_rewarded = Column(Boolean, nullable=False, default=False, server_default="false")
    reward_tier_id = Column(UUID(as_uuid=True), ForeignKey("referral_reward_tiers.id"), nullable=True)
    campaign_id = Column(UUID(as_uuid=True), ForeignKey("referral_campaigns.id"), nullable=True)
    notes = Column(Text, nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    registered_at = Column(DateTime(timezone=True), nullable=True)
    qualified_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    def is_expired_at(self, moment: datetime) -> bool:
        if self.status == ReferralStatus.EXPIRED:
            return True
        expires_at = ensure_aware(self.expires_at)
        return expires_at is not None and expires_at < moment


class ReferralRewardTier(Base):
    """Reward bracket keyed by a referrer's successful referral count."""

    __tablename__ = "referral_reward_tiers"
    __table_args__ = (
        CheckConstraint("min_referrals >= 0", name="ck_referral_reward_tiers_min_non_negative"),
        CheckConstraint(
            "max_referrals IS NULL OR max_referrals >= min_referrals",
            name="ck_referral_reward_tiers_range",
        ),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    name = Column(String(64), nullable=False)
    min_referrals = Column(Integer, nullable=False)
    max_referrals = Column(Integer, nullable=True)
    referrer_points = Column(Integer, nullable=False)
    referred_points = Column(Integer, nullable=False)
    bonus_multiplier = Column(Numeric(6, 2), nullable=False, default=1, server_default="1")
    additional_rewards = Column(JSON, nullable=False, default=dict)
    is_active = Column(Boolean, nullable=False, default=True, server_default="true")
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    def applies_to(self, successful_referrals: int) -> bool:
        if successful_referrals < self.min_referrals:
            return False
        if self.max_referrals is not None and successful_referrals > self.max_referrals:
            return False
        return True


class ReferralCampaign(Base):
    """Time-windowed bonus layered on top of tier rewards."""

    __tablename__ = "referral_campaigns"
    __table_args__ = (
        CheckConstraint("starts_at <= ends_at", name="ck_referral_campaigns_window"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    name = Column(String(128), nullable=False)
    description = Column(Text, nullable=True)
    bonus_referrer_points = Column(Integer, nullable=False, default=0, server_default="0")
    bonus_referred_points = Column(Integer, nullable=False, default=0, server_default="0")
    multiplier = Column(Numeric(6, 2), nullable=False, default=1, server_default="1")
    starts_at = Column(DateTime(timezone=True), nullable=False)
    ends_at = Column(DateTime(timezone=True), nullable=False)
    max_referrals_per_user = Column(Integer, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True, server_default="true")
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    def is_active_at(self, moment: datetime) -> bool:
        if not self.is_active:
            return False
        return ensure_aware(self.starts_at) <= moment <= ensure_aware(self.ends_at)
