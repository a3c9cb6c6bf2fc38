"""Leaderboard and rank queries over point balances."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from uuid import UUID

from sqlalchemy import and_, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from rewards_api.core.settings import settings
from rewards_api.models.points import UserPoints
from rewards_api.models.user import User


@dataclass(slots=True)
class LeaderboardEntry:
    rank: int
    user_id: UUID
    username: str
    total_points: Decimal
    lifetime_points: Decimal


class Leaderboard:
    """Orders balances by total points descending, ties by user id ascending."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def top(self, count: int = 10) -> list[LeaderboardEntry]:
        bounded = max(1, min(count, settings.leaderboard_max_entries))
        stmt = (
            select(UserPoints, User.username, User.display_name)
            .outerjoin(User, User.id == UserPoints.user_id)
            .order_by(UserPoints.total_points.desc(), UserPoints.user_id.asc())
            .limit(bounded)
        )
        result = await self._session.execute(stmt)
        entries: list[LeaderboardEntry] = []
        for position, (ledger, username, display_name) in enumerate(result.all(), start=1):
            entries.append(
                LeaderboardEntry(
                    rank=position,
                    user_id=ledger.user_id,
                    username=username or display_name or "Unknown",
                    total_points=Decimal(ledger.total_points),
                    lifetime_points=Decimal(ledger.lifetime_points),
                )
            )
        return entries

    async def rank_for(self, user_id: UUID) -> int | None:
        """1-based rank consistent with :meth:`top`, or ``None`` without a ledger row."""

        total = await self._session.scalar(
            select(UserPoints.total_points).where(UserPoints.user_id == user_id)
        )
        if total is None:
            return None

        ahead = await self._session.scalar(
            select(func.count(UserPoints.id)).where(
                or_(
                    UserPoints.total_points > total,
                    and_(UserPoints.total_points == total, UserPoints.user_id < user_id),
                )
            )
        )
        return int(ahead or 0) + 1


__all__ = ["Leaderboard", "LeaderboardEntry"]
