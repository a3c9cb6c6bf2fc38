"""Time helpers shared by the ledger services."""

from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Callable

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_aware(value: datetime | None) -> datetime | None:
    """Treat naive timestamps (sqlite round-trips) as UTC."""

    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def utc_day(value: datetime) -> date:
    """Calendar day of ``value`` in UTC."""

    aware = ensure_aware(value)
    assert aware is not None
    return aware.date()


__all__ = ["Clock", "ensure_aware", "utc_day", "utcnow"]
