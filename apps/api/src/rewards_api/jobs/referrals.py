"""Referral expiry and completion sweeps."""

from __future__ import annotations

from typing import Any, Dict

from loguru import logger

from rewards_api.core.clock import Clock, utcnow
from rewards_api.services.referrals import ReferralService

from .sessions import SessionFactory, open_session


async def expire_referrals(
    *,
    session_factory: SessionFactory,
    limit: int | None = None,
    clock: Clock = utcnow,
) -> Dict[str, Any]:
    """Move pending and registered referrals past their deadline to expired."""

    session = await open_session(session_factory)
    async with session as managed_session:
        service = ReferralService(managed_session, clock=clock)
        expired = await service.process_expired_referrals(limit=limit)

        summary = {"expired": expired}
        logger.bind(summary=summary).info("Referral expiry sweep completed")
        return summary


async def process_qualified_referrals(
    *,
    session_factory: SessionFactory,
    limit: int | None = None,
    clock: Clock = utcnow,
) -> Dict[str, Any]:
    """Complete qualified referrals whose completion did not run inline."""

    session = await open_session(session_factory)
    async with session as managed_session:
        service = ReferralService(managed_session, clock=clock)
        summary = await service.process_qualified_referrals(limit=limit)

        if summary["candidates"] == 0:
            logger.info("No qualified referrals awaiting completion")
        else:
            logger.bind(summary=summary).info("Qualified referral sweep completed")
        return summary


__all__ = ["expire_referrals", "process_qualified_referrals"]
