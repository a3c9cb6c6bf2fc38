"""Points ledger domain models."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    Date,
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


def _enum_values(enum_cls: type[Enum]) -> list[str]:
    return [item.value for item in enum_cls]


class PointTransactionType(str, Enum):
    """Kinds of entries in the append-only points log."""

    EARN = "earn"
    REDEEM = "redeem"
    ADJUST = "adjust"


class PointRule(Base):
    """Maps an action type to its point value and earning guardrails."""

    __tablename__ = "point_rules"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    action_type = Column(String(64), nullable=False, unique=True, index=True)
    description = Column(Text, nullable=True)
    point_value = Column(Numeric(12, 2), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True, server_default="true")
    max_daily_occurrences = Column(Integer, nullable=True)
    max_total_occurrences = Column(Integer, nullable=True)
    cooldown_minutes = Column(Integer, nullable=True)
    multiplier_eligible = Column(Boolean, nullable=False, default=True, server_default="true")
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint("point_value >= 0", name="ck_point_rules_point_value_non_negative"),
    )


class PointMultiplier(Base):
    """Time-boxed booster applied to eligible actions."""

    __tablename__ = "point_multipliers"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    name = Column(String(128), nullable=False)
    description = Column(Text, nullable=True)
    multiplier = Column(Numeric(6, 2), nullable=False)
    action_types = Column(JSON, nullable=False, default=list)
    starts_at = Column(DateTime(timezone=True), nullable=False)
    ends_at = Column(DateTime(timezone=True), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True, server_default="true")
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        CheckConstraint("starts_at <= ends_at", name="ck_point_multipliers_window"),
        CheckConstraint("multiplier >= 0", name="ck_point_multipliers_factor_non_negative"),
    )

    def is_active_at(self, moment: datetime) -> bool:
        if not self.is_active:
            return False
        return ensure_aware(self.starts_at) <= moment <= ensure_aware(self.ends_at)

    def applies_to(self, action_type: str) -> bool:
        scoped = self.action_types or []
        return not scoped or action_type in scoped


class UserDailyPoints(Base):
    """Per-user, per-action, per-UTC-day occurrence counter."""

    __tablename__ = "user_daily_points"
    __table_args__ = (
        UniqueConstraint(
            "user_id",
            "action_type",
            "occurrence_date",
            name="uq_user_daily_points_user_action_date",
        ),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    action_type = Column(String(64), nullable=False)
    occurrence_date = Column(Date, nullable=False, index=True)
    occurrence_count = Column(Integer, nullable=False, default=0, server_default="0")
    points_earned = Column(Numeric(14, 2), nullable=False, default=0, server_default="0")
    last_occurrence_at = Column(DateTime(timezone=True), nullable=False)


class UserPoints(Base):
    """Balance aggregate for a user; one row per user."""

    __tablename__ = "user_points"
    __table_args__ = (
        UniqueConstraint("user_id", name="uq_user_points_user_id"),
        CheckConstraint("total_points >= 0", name="ck_user_points_total_non_negative"),
        CheckConstraint("available_points >= 0", name="ck_user_points_available_non_negative"),
        CheckConstraint("available_points <= total_points", name="ck_user_points_available_le_total"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    total_points = Column(Numeric(14, 2), nullable=False, default=0, server_default="0")
    available_points = Column(Numeric(14, 2), nullable=False, default=0, server_default="0")
    lifetime_points = Column(Numeric(14, 2), nullable=False, default=0, server_default="0")
    redeemed_points = Column(Numeric(14, 2), nullable=False, default=0, server_default="0")
    pending_points = Column(Numeric(14, 2), nullable=False, default=0, server_default="0")
    transaction_count = Column(Integer, nullable=False, default=0, server_default="0")
    current_streak = Column(Integer, nullable=False, default=0, server_default="0")
    longest_streak = Column(Integer, nullable=False, default=0, server_default="0")
    last_login_date = Column(Date, nullable=True)
    last_earned_at = Column(DateTime(timezone=True), nullable=True)
    version = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    __mapper_args__ = {"version_id_col": version}


class PointTransaction(Base):
    """Append-only ledger entry; corrections are new ``adjust`` rows."""

    __tablename__ = "point_transactions"
    __table_args__ = (
        UniqueConstraint("user_id", "sequence", name="uq_point_transactions_user_sequence"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    sequence = Column(Integer, nullable=False)
    transaction_type = Column(
        SqlEnum(PointTransactionType, name="point_transaction_type", values_callable=_enum_values),
        nullable=False,
    )
    points = Column(Numeric(14, 2), nullable=False)
    balance_after = Column(Numeric(14, 2), nullable=False)
    rule_id = Column(UUID(as_uuid=True), ForeignKey("point_rules.id"), nullable=True)
    description = Column(String, nullable=True)
    reference_type = Column(String(64), nullable=True)
    reference_id = Column(String(128), nullable=True)
    multiplier = Column(Numeric(6, 2), nullable=False, default=1, server_default="1")
    expires_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)
