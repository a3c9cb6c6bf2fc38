"""Request-scoped ledger service dependencies."""

from __future__ import annotations

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from rewards_api.db.session import get_session
from rewards_api.services.points import Leaderboard, PointsEngine
from rewards_api.services.referrals import ReferralService


async def get_points_engine(session: AsyncSession = Depends(get_session)) -> PointsEngine:
    return PointsEngine(session)


async def get_leaderboard(session: AsyncSession = Depends(get_session)) -> Leaderboard:
    return Leaderboard(session)


async def get_referral_service(
    session: AsyncSession = Depends(get_session),
    engine: PointsEngine = Depends(get_points_engine),
) -> ReferralService:
    return ReferralService(session, points_engine=engine)
