#!/usr/bin/env python3
"""Run the ledger maintenance sweeps once.

Intended usage: cron or a workflow runner when the in-process scheduler is
disabled.

Example:
    python tooling/scripts/run_referral_sweep.py
    python tooling/scripts/run_referral_sweep.py --only expire --limit 100

`--cleanup-days` overrides the daily tracker retention window.
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path
from typing import Any

from loguru import logger

SWEEPS = ("expire", "qualified", "cleanup")


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run referral and daily points sweeps")
    parser.add_argument(
        "--only",
        choices=SWEEPS,
        action="append",
        help="Restrict to the named sweep; repeat to select several.",
    )
    parser.add_argument("--limit", type=int, default=None, help="Maximum referrals per sweep.")
    parser.add_argument(
        "--cleanup-days",
        type=int,
        default=None,
        help="Retention window in days for the daily points tracker.",
    )
    return parser.parse_args()


async def _run(selected: tuple[str, ...], limit: int | None, cleanup_days: int | None) -> dict[str, Any]:
    repo_root = Path(__file__).resolve().parents[2]
    api_src = repo_root / "apps" / "api" / "src"
    if str(api_src) not in sys.path:
        sys.path.insert(0, str(api_src))

    from rewards_api.db.session import async_session  # type: ignore import-position
    from rewards_api.jobs import (  # type: ignore import-position
        cleanup_daily_points,
        expire_referrals,
        process_qualified_referrals,
    )

    results: dict[str, Any] = {}
    if "expire" in selected:
        results["expire"] = await expire_referrals(session_factory=async_session, limit=limit)
    if "qualified" in selected:
        results["qualified"] = await process_qualified_referrals(session_factory=async_session, limit=limit)
    if "cleanup" in selected:
        results["cleanup"] = await cleanup_daily_points(session_factory=async_session, retention_days=cleanup_days)
    return results


def main() -> int:
    args = parse_args()
    selected = tuple(args.only) if args.only else SWEEPS
    results = asyncio.run(_run(selected, args.limit, args.cleanup_days))
    logger.success("Ledger sweeps completed", sweeps=list(selected), results=results)
    return 0


if __name__ == "__main__":
    sys.exit(main())
