"""Daily points tracker retention job."""

from __future__ import annotations

from typing import Any, Dict

from loguru import logger

from rewards_api.core.clock import Clock, utcnow
from rewards_api.core.settings import settings
from rewards_api.services.points import DailyPointsTracker

from .sessions import SessionFactory, open_session


async def cleanup_daily_points(
    *,
    session_factory: SessionFactory,
    retention_days: int | None = None,
    clock: Clock = utcnow,
) -> Dict[str, Any]:
    """Prune per-day occurrence rows that no cap or cooldown can still read."""

    days = settings.daily_points_retention_days if retention_days is None else retention_days

    session = await open_session(session_factory)
    async with session as managed_session:
        tracker = DailyPointsTracker(managed_session)
        deleted = await tracker.cleanup_old_records(retention_days=days, now=clock())

        summary = {"retention_days": days, "deleted": deleted}
        logger.bind(summary=summary).info("Daily points cleanup completed")
        return summary


__all__ = ["cleanup_daily_points"]
