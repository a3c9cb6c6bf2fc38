"""Referral reward tiers and campaigns."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_DOWN, Decimal
from typing import Any
from uuid import UUID

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from rewards_api.core.clock import Clock, ensure_aware, utcnow
from rewards_api.core.settings import settings
from rewards_api.models.referral import ReferralCampaign, ReferralRewardTier

ONE = Decimal("1")


@dataclass(slots=True)
class ReferralRewardQuote:
    """Point amounts owed to each side of a completed referral."""

    referrer_points: int
    referred_points: int
    tier: ReferralRewardTier | None = None
    campaign: ReferralCampaign | None = None


class ReferralRewardCatalog:
    def __init__(self, session: AsyncSession, *, clock: Clock = utcnow) -> None:
        self._session = session
        self._clock = clock

    async def create_tier(
        self,
        name: str,
        *,
        min_referrals: int,
        max_referrals: int | None,
        referrer_points: int,
        referred_points: int,
        bonus_multiplier: Decimal | float | str = ONE,
        additional_rewards: dict[str, Any] | None = None,
    ) -> ReferralRewardTier:
        if min_referrals < 0:
            raise ValueError("min_referrals must be zero or greater")
        if max_referrals is not None and max_referrals < min_referrals:
            raise ValueError("max_referrals must not be below min_referrals")
        if referrer_points < 0 or referred_points < 0:
            raise ValueError("Tier rewards cannot be negative")
        multiplier = Decimal(str(bonus_multiplier))
        if multiplier < 0:
            raise ValueError("bonus_multiplier must be zero or greater")

        tier = ReferralRewardTier(
            name=name,
            min_referrals=min_referrals,
            max_referrals=max_referrals,
            referrer_points=referrer_points,
            referred_points=referred_points,
            bonus_multiplier=multiplier,
            additional_rewards=additional_rewards or {},
        )
        self._session.add(tier)
        await self._session.commit()
        logger.info("Created referral reward tier", tier=name, min_referrals=min_referrals, max_referrals=max_referrals)
        return tier

    async def list_tiers(self, *, include_inactive: bool = False) -> list[ReferralRewardTier]:
        stmt = select(ReferralRewardTier).order_by(ReferralRewardTier.min_referrals)
        if not include_inactive:
            stmt = stmt.where(ReferralRewardTier.is_active.is_(True))
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def set_tier_active(self, tier_id: UUID, active: bool) -> ReferralRewardTier | None:
        tier = await self._session.get(ReferralRewardTier, tier_id)
        if tier is None:
            return None
        tier.is_active = active
        await self._session.commit()
        return tier

    async def tier_for(self, successful_referrals: int) -> ReferralRewardTier | None:
        """Matching tier with the highest lower bound."""

        matches = [tier for tier in await self.list_tiers() if tier.applies_to(successful_referrals)]
        if not matches:
            return None
        return max(matches, key=lambda tier: tier.min_referrals)

    async def create_campaign(
        self,
        name: str,
        *,
        starts_at: datetime,
        ends_at: datetime,
        description: str | None = None,
        bonus_referrer_points: int = 0,
        bonus_referred_points: int = 0,
        multiplier: Decimal | float | str = ONE,
        max_referrals_per_user: int | None = None,
    ) -> ReferralCampaign:
        start = ensure_aware(starts_at)
        end = ensure_aware(ends_at)
        if start is None or end is None or start > end:
            raise ValueError("Campaign window must start on or before its end")
        factor = Decimal(str(multiplier))
        if factor < 0 or bonus_referrer_points < 0 or bonus_referred_points < 0:
            raise ValueError("Campaign bonuses cannot be negative")

        campaign = ReferralCampaign(
            name=name,
            description=description,
            bonus_referrer_points=bonus_referrer_points,
            bonus_referred_points=bonus_referred_points,
            multiplier=factor,
            starts_at=start,
            ends_at=end,
            max_referrals_per_user=max_referrals_per_user,
        )
        self._session.add(campaign)
        await self._session.commit()
        logger.info("Created referral campaign", campaign=name, starts_at=start.isoformat(), ends_at=end.isoformat())
        return campaign

    async def list_campaigns(self, *, active_at: datetime | None = None) -> list[ReferralCampaign]:
        stmt = select(ReferralCampaign).order_by(ReferralCampaign.starts_at)
        if active_at is not None:
            stmt = stmt.where(
                ReferralCampaign.is_active.is_(True),
                ReferralCampaign.starts_at <= active_at,
                ReferralCampaign.ends_at >= active_at,
            )
        result = await self._session.execute(stmt)
        campaigns = list(result.scalars().all())
        if active_at is None:
            return campaigns
        return [campaign for campaign in campaigns if campaign.is_active_at(active_at)]

    async def active_campaign(
        self,
        *,
        at: datetime | None = None,
        successful_referrals: int | None = None,
    ) -> ReferralCampaign | None:
        """Best running campaign the referrer is still eligible for."""

        moment = ensure_aware(at) if at is not None else self._clock()
        eligible = [
            campaign
            for campaign in await self.list_campaigns(active_at=moment)
            if successful_referrals is None
            or campaign.max_referrals_per_user is None
            or successful_referrals < campaign.max_referrals_per_user
        ]
        if not eligible:
            return None
        return max(
            eligible,
            key=lambda campaign: (Decimal(campaign.multiplier), campaign.bonus_referrer_points),
        )

    async def quote(self, successful_referrals: int, *, at: datetime | None = None) -> ReferralRewardQuote:
        tier = await self.tier_for(successful_referrals)
        campaign = await self.active_campaign(at=at, successful_referrals=successful_referrals)
        return quote_rewards(tier, campaign)


def quote_rewards(tier: ReferralRewardTier | None, campaign: ReferralCampaign | None) -> ReferralRewardQuote:
    """Tier amounts scaled by tier and campaign multipliers, floored, plus campaign bonuses."""

    if tier is not None:
        base_referrer = Decimal(tier.referrer_points)
        base_referred = Decimal(tier.referred_points)
        factor = Decimal(tier.bonus_multiplier)
    else:
        base_referrer = Decimal(settings.referral_default_referrer_points)
        base_referred = Decimal(settings.referral_default_referred_points)
        factor = ONE

    bonus_referrer = bonus_referred = 0
    if campaign is not None:
        factor *= Decimal(campaign.multiplier)
        bonus_referrer = int(campaign.bonus_referrer_points or 0)
        bonus_referred = int(campaign.bonus_referred_points or 0)

    return ReferralRewardQuote(
        referrer_points=int((base_referrer * factor).to_integral_value(rounding=ROUND_DOWN)) + bonus_referrer,
        referred_points=int((base_referred * factor).to_integral_value(rounding=ROUND_DOWN)) + bonus_referred,
        tier=tier,
        campaign=campaign,
    )


__all__ = ["ReferralRewardCatalog", "ReferralRewardQuote", "quote_rewards"]
