"""Recurring job entrypoints for the points ledger and referral sweeps."""

from .points import cleanup_daily_points  # noqa: F401
from .referrals import expire_referrals, process_qualified_referrals  # noqa: F401

__all__ = [
    "cleanup_daily_points",
    "expire_referrals",
    "process_qualified_referrals",
]
