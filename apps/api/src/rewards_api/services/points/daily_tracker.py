"""Per-day occurrence tracking used for earn caps and cooldowns."""

from __future__ import annotations

import math
from datetime import date, datetime, timedelta
from decimal import Decimal
from uuid import UUID

from loguru import logger
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from rewards_api.core.clock import ensure_aware, utc_day
from rewards_api.models.points import UserDailyPoints


class DailyPointsTracker:
    """Reads and upserts ``UserDailyPoints`` rows keyed by UTC calendar day."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_for_day(self, user_id: UUID, action_type: str, day: date) -> UserDailyPoints | None:
        stmt = (
            select(UserDailyPoints)
            .where(
                UserDailyPoints.user_id == user_id,
                UserDailyPoints.action_type == action_type,
                UserDailyPoints.occurrence_date == day,
            )
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def latest(self, user_id: UUID, action_type: str) -> UserDailyPoints | None:
        """Most recent tracker row for the action, whichever day it belongs to."""

        stmt = (
            select(UserDailyPoints)
            .where(
                UserDailyPoints.user_id == user_id,
                UserDailyPoints.action_type == action_type,
            )
            .order_by(UserDailyPoints.occurrence_date.desc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def count_today(self, user_id: UUID, action_type: str, now: datetime) -> int:
        entry = await self.get_for_day(user_id, action_type, utc_day(now))
        return int(entry.occurrence_count) if entry else 0

    def record_occurrence(
        self,
        entry: UserDailyPoints | None,
        *,
        user_id: UUID,
        action_type: str,
        now: datetime,
        points: Decimal,
    ) -> UserDailyPoints:
        """Stage the upsert; the caller owns the transaction."""

        if entry is None:
            entry = UserDailyPoints(
                user_id=user_id,
                action_type=action_type,
                occurrence_date=utc_day(now),
                occurrence_count=1,
                points_earned=points,
                last_occurrence_at=now,
            )
            self._session.add(entry)
            return entry

        entry.occurrence_count = int(entry.occurrence_count or 0) + 1
        entry.points_earned = Decimal(entry.points_earned or 0) + points
        entry.last_occurrence_at = now
        return entry

    async def cleanup_old_records(self, *, retention_days: int, now: datetime) -> int:
        """Delete tracker rows older than the retention window."""

        cutoff = utc_day(now) - timedelta(days=max(retention_days, 0))
        stmt = delete(UserDailyPoints).where(UserDailyPoints.occurrence_date < cutoff)
        result = await self._session.execute(stmt)
        await self._session.commit()
        deleted = int(result.rowcount or 0)
        logger.info("Pruned daily points tracker", cutoff=cutoff.isoformat(), deleted=deleted)
        return deleted


def cooldown_remaining(
    last_occurrence_at: datetime | None,
    cooldown_minutes: int | None,
    now: datetime,
) -> timedelta | None:
    """Time left before the action may earn again, or ``None`` when clear."""

    if not cooldown_minutes or last_occurrence_at is None:
        return None
    elapsed = now - ensure_aware(last_occurrence_at)
    remaining = timedelta(minutes=cooldown_minutes) - elapsed
    if remaining <= timedelta(0):
        return None
    return remaining


def remaining_minutes(remaining: timedelta) -> int:
    """Whole minutes to wait, rounded up so the caller never retries too early."""

    return max(1, math.ceil(remaining.total_seconds() / 60))


__all__ = ["DailyPointsTracker", "cooldown_remaining", "remaining_minutes"]
