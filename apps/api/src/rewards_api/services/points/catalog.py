"""Point rule and multiplier catalogs."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Iterable, Sequence
from uuid import UUID

from loguru import logger
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from rewards_api.core.clock import Clock, ensure_aware, utcnow
from rewards_api.models.points import PointMultiplier, PointRule

from .errors import DuplicatePointRuleError, PointMultiplierNotFoundError, PointRuleNotFoundError

DEFAULT_MULTIPLIER = Decimal("1.0")

_RULE_FIELDS = frozenset(
    {
        "description",
        "point_value",
        "is_active",
        "max_daily_occurrences",
        "max_total_occurrences",
        "cooldown_minutes",
        "multiplier_eligible",
    }
)
_MULTIPLIER_FIELDS = frozenset(
    {"name", "description", "multiplier", "action_types", "starts_at", "ends_at", "is_active"}
)


@dataclass(slots=True)
class MultiplierSelection:
    """Factor chosen for an earn and the booster it came from, if any."""

    factor: Decimal
    multiplier: PointMultiplier | None = None


class PointCatalog:
    """CRUD and lookups for point rules and multipliers."""

    def __init__(self, session: AsyncSession, *, clock: Clock = utcnow) -> None:
        self._session = session
        self._clock = clock

    async def create_rule(
        self,
        action_type: str,
        point_value: Decimal | int,
        *,
        description: str | None = None,
        max_daily_occurrences: int | None = None,
        max_total_occurrences: int | None = None,
        cooldown_minutes: int | None = None,
        multiplier_eligible: bool = True,
        is_active: bool = True,
    ) -> PointRule:
        """Create a rule; an action type may only have one rule."""

        action_key = _normalize_action(action_type)
        if await self.get_rule_by_action(action_key) is not None:
            raise DuplicatePointRuleError(action_key)

        rule = PointRule(
            action_type=action_key,
            description=description,
            point_value=_validate_point_value(point_value),
            max_daily_occurrences=_optional_positive("max_daily_occurrences", max_daily_occurrences),
            max_total_occurrences=_optional_positive("max_total_occurrences", max_total_occurrences),
            cooldown_minutes=_optional_positive("cooldown_minutes", cooldown_minutes),
            multiplier_eligible=multiplier_eligible,
            is_active=is_active,
        )
        self._session.add(rule)
        try:
            await self._session.commit()
        except IntegrityError as exc:
            await self._session.rollback()
            raise DuplicatePointRuleError(action_key) from exc

        logger.info("Created point rule", action_type=action_key, point_value=str(rule.point_value))
        return rule

    async def update_rule(self, rule_id: UUID, **changes: Any) -> PointRule:
        rule = await self.get_rule(rule_id)
        unknown = set(changes) - _RULE_FIELDS
        if unknown:
            raise ValueError(f"Unsupported point rule fields: {', '.join(sorted(unknown))}")

        if "point_value" in changes:
            changes["point_value"] = _validate_point_value(changes["point_value"])
        for key in ("max_daily_occurrences", "max_total_occurrences", "cooldown_minutes"):
            if key in changes:
                changes[key] = _optional_positive(key, changes[key])

        for key, value in changes.items():
            setattr(rule, key, value)
        await self._session.commit()
        logger.info("Updated point rule", action_type=rule.action_type, fields=sorted(changes))
        return rule

    async def set_rule_active(self, rule_id: UUID, active: bool) -> PointRule:
        """Rules are never deleted, only toggled."""

        return await self.update_rule(rule_id, is_active=active)

    async def get_rule(self, rule_id: UUID) -> PointRule:
        rule = await self._session.get(PointRule, rule_id)
        if rule is None:
            raise PointRuleNotFoundError(rule_id)
        return rule

    async def get_rule_by_action(self, action_type: str) -> PointRule | None:
        stmt = select(PointRule).where(PointRule.action_type == _normalize_action(action_type))
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_active_rule(self, action_type: str) -> PointRule | None:
        rule = await self.get_rule_by_action(action_type)
        if rule is None or not rule.is_active:
            return None
        return rule

    async def list_rules(self, *, include_inactive: bool = False) -> list[PointRule]:
        stmt = select(PointRule).order_by(PointRule.action_type)
        if not include_inactive:
            stmt = stmt.where(PointRule.is_active.is_(True))
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def create_multiplier(
        self,
        name: str,
        multiplier: Decimal | float | str,
        *,
        starts_at: datetime,
        ends_at: datetime,
        action_types: Iterable[str] | None = None,
        description: str | None = None,
        is_active: bool = True,
    ) -> PointMultiplier:
        factor = _validate_factor(multiplier)
        start, end = _validate_window(starts_at, ends_at)
        record = PointMultiplier(
            name=name,
            description=description,
            multiplier=factor,
            action_types=sorted({_normalize_action(item) for item in action_types or []}),
            starts_at=start,
            ends_at=end,
            is_active=is_active,
        )
        self._session.add(record)
        await self._session.commit()
        logger.info(
            "Created point multiplier",
            multiplier_id=str(record.id),
            factor=str(factor),
            action_types=record.action_types,
        )
        return record

    async def update_multiplier(self, multiplier_id: UUID, **changes: Any) -> PointMultiplier:
        record = await self.get_multiplier(multiplier_id)
        unknown = set(changes) - _MULTIPLIER_FIELDS
        if unknown:
            raise ValueError(f"Unsupported point multiplier fields: {', '.join(sorted(unknown))}")

        if "multiplier" in changes:
            changes["multiplier"] = _validate_factor(changes["multiplier"])
        if "action_types" in changes:
            changes["action_types"] = sorted({_normalize_action(item) for item in changes["action_types"] or []})
        if "starts_at" in changes or "ends_at" in changes:
            start, end = _validate_window(
                changes.get("starts_at", record.starts_at),
                changes.get("ends_at", record.ends_at),
            )
            changes["starts_at"], changes["ends_at"] = start, end

        for key, value in changes.items():
            setattr(record, key, value)
        await self._session.commit()
        return record

    async def set_multiplier_active(self, multiplier_id: UUID, active: bool) -> PointMultiplier:
        return await self.update_multiplier(multiplier_id, is_active=active)

    async def get_multiplier(self, multiplier_id: UUID) -> PointMultiplier:
        record = await self._session.get(PointMultiplier, multiplier_id)
        if record is None:
            raise PointMultiplierNotFoundError(multiplier_id)
        return record

    async def list_multipliers(self, *, active_at: datetime | None = None) -> list[PointMultiplier]:
        stmt = select(PointMultiplier).order_by(PointMultiplier.starts_at, PointMultiplier.name)
        if active_at is not None:
            stmt = stmt.where(
                PointMultiplier.is_active.is_(True),
                PointMultiplier.starts_at <= active_at,
                PointMultiplier.ends_at >= active_at,
            )
        result = await self._session.execute(stmt)
        records = list(result.scalars().all())
        if active_at is None:
            return records
        return [record for record in records if record.is_active_at(active_at)]

    async def select_multiplier(self, action_type: str, *, at: datetime | None = None) -> MultiplierSelection:
        """Pick the highest active multiplier covering ``action_type``."""

        moment = ensure_aware(at) if at is not None else self._clock()
        candidates = [
            record
            for record in await self.list_multipliers(active_at=moment)
            if record.applies_to(action_type)
        ]
        if not candidates:
            return MultiplierSelection(factor=DEFAULT_MULTIPLIER)

        best = _pick_highest(candidates)
        return MultiplierSelection(factor=Decimal(best.multiplier), multiplier=best)


def _pick_highest(candidates: Sequence[PointMultiplier]) -> PointMultiplier:
    # Equal factors resolve to the earliest-starting booster, then by id.
    return sorted(
        candidates,
        key=lambda record: (-Decimal(record.multiplier), ensure_aware(record.starts_at), str(record.id)),
    )[0]


def _normalize_action(action_type: str) -> str:
    value = (action_type or "").strip()
    if not value:
        raise ValueError("Action type is required")
    return value


def _validate_point_value(value: Decimal | int | float | str) -> Decimal:
    amount = Decimal(str(value))
    if amount < 0:
        raise ValueError("Point rules cannot carry a negative value")
    return amount


def _validate_factor(value: Decimal | int | float | str) -> Decimal:
    factor = Decimal(str(value))
    if factor < 0:
        raise ValueError("Multiplier factor must be zero or greater")
    return factor


def _validate_window(starts_at: datetime, ends_at: datetime) -> tuple[datetime, datetime]:
    start = ensure_aware(starts_at)
    end = ensure_aware(ends_at)
    if start is None or end is None or start > end:
        raise ValueError("Multiplier window must start on or before its end")
    return start, end


def _optional_positive(field: str, value: int | None) -> int | None:
    if value is None:
        return None
    if int(value) < 1:
        raise ValueError(f"{field} must be at least 1 when set")
    return int(value)


__all__ = ["DEFAULT_MULTIPLIER", "MultiplierSelection", "PointCatalog"]
