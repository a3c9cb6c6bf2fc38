"""Points engine: the single gate for every balance mutation."""

from __future__ import annotations

import asyncio
import base64
import weakref
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import ROUND_DOWN, Decimal
from typing import Any, Awaitable, Callable, Sequence, Tuple, TypeVar
from uuid import UUID

from loguru import logger
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from rewards_api.core.clock import Clock, ensure_aware, utc_day, utcnow
from rewards_api.core.settings import settings
from rewards_api.models.points import PointTransaction, PointTransactionType, UserPoints
from rewards_api.observability.ledger import get_ledger_store
from rewards_api.observability.tracing import get_tracer

from .catalog import DEFAULT_MULTIPLIER, PointCatalog
from .daily_tracker import DailyPointsTracker, cooldown_remaining, remaining_minutes
from .errors import (
    InsufficientPointsError,
    InvalidPointsAmountError,
    LedgerConflictError,
    LedgerError,
    LedgerIntegrityError,
    LedgerUserNotFoundError,
    NegativeBalanceError,
    UserPointsNotFoundError,
)
from .leaderboard import Leaderboard

T = TypeVar("T")

ZERO = Decimal("0")
DAILY_LIMIT_MESSAGE = "Daily limit reached for this action."
TOTAL_LIMIT_MESSAGE = "Total limit reached for this action."
MILESTONE_REFERENCE_TYPE = "milestone"

POINTS_TIERS: tuple[tuple[Decimal, str], ...] = (
    (Decimal("10000"), "platinum"),
    (Decimal("5000"), "gold"),
    (Decimal("1000"), "silver"),
    (ZERO, "bronze"),
)

# Unique keys two writers can both miss before inserting; losing that race is retried.
_RACE_UNIQUE_KEYS = (
    "uq_user_points_user_id",
    "uq_user_daily_points_user_action_date",
    "uq_point_transactions_user_sequence",
    "user_points.user_id",
    "user_daily_points.user_id",
    "point_transactions.user_id",
)

# Shared by every engine in the process so separate sessions still serialise per user.
_USER_LOCKS: "weakref.WeakValueDictionary[UUID, asyncio.Lock]" = weakref.WeakValueDictionary()


def _user_lock(user_id: UUID) -> asyncio.Lock:
    lock = _USER_LOCKS.get(user_id)
    if lock is None:
        lock = asyncio.Lock()
        _USER_LOCKS[user_id] = lock
    return lock


@dataclass(slots=True)
class EarnResult:
    """Outcome of an earn attempt; rule failures are reported, not raised."""

    success: bool
    points_earned: Decimal
    new_balance: Decimal
    message: str
    multiplier_applied: Decimal = DEFAULT_MULTIPLIER
    transaction_id: UUID | None = None


@dataclass(slots=True)
class AwardOutcome:
    """Result of a best-effort grant made as a side effect of another operation."""

    user_id: UUID
    success: bool
    points: Decimal = ZERO
    transaction_id: UUID | None = None
    error: str | None = None


@dataclass(slots=True)
class PointsSummary:
    user_id: UUID
    total_points: Decimal
    available_points: Decimal
    lifetime_points: Decimal
    redeemed_points: Decimal
    pending_points: Decimal
    tier: str
    current_streak: int
    longest_streak: int
    last_earned_at: datetime | None
    rank: int | None
    recent_transactions: list[PointTransaction] = field(default_factory=list)


@dataclass(slots=True)
class TransactionWindow:
    transactions: list[PointTransaction]
    earned: Decimal
    deducted: Decimal


@dataclass(slots=True)
class LedgerMismatch:
    sequence: int
    expected_balance: Decimal
    recorded_balance: Decimal


@dataclass(slots=True)
class ReconciliationReport:
    """Replay of a user's transactions against the stored aggregate."""

    user_id: UUID
    transaction_count: int
    replayed_total: Decimal
    recorded_total: Decimal
    mismatches: list[LedgerMismatch]

    @property
    def is_consistent(self) -> bool:
        return not self.mismatches and self.replayed_total == self.recorded_total


@dataclass(slots=True)
class LoginResult:
    current_streak: int
    longest_streak: int
    earn: EarnResult
    milestone: PointTransaction | None = None


@dataclass(frozen=True, slots=True)
class Milestone:
    """One-time bonus granted when a progress counter first reaches ``threshold``."""

    key: str
    threshold: int
    points: int
    description: str


class PointsEngine:
    """Earns, redeems, and adjusts per-user point balances.

    Every mutation runs under the user's in-process lock, loads the
    ``UserPoints`` row ``FOR UPDATE`` and relies on the row's version
    column; a stale write or a lost insert race is rolled back and retried.
    Each public mutation commits its own unit of work.
    """

    def __init__(
        self,
        session: AsyncSession,
        *,
        clock: Clock = utcnow,
        catalog: PointCatalog | None = None,
        tracker: DailyPointsTracker | None = None,
        max_attempts: int | None = None,
    ) -> None:
        self._session = session
        self._clock = clock
        self._catalog = catalog or PointCatalog(session, clock=clock)
        self._tracker = tracker or DailyPointsTracker(session)
        self._leaderboard = Leaderboard(session)
        self._max_attempts = max(max_attempts or settings.points_mutation_max_attempts, 1)
        self._observability = get_ledger_store()
        self._tracer = get_tracer()

    @property
    def catalog(self) -> PointCatalog:
        return self._catalog

    @property
    def tracker(self) -> DailyPointsTracker:
        return self._tracker

    async def earn_points(
        self,
        user_id: UUID,
        action_type: str,
        *,
        reference_type: str | None = None,
        reference_id: str | None = None,
        description: str | None = None,
    ) -> EarnResult:
        """Apply the rule for ``action_type`` if its caps, cooldown and limits allow."""

        with self._tracer.start_as_current_span("points.earn") as span:
            span.set_attribute("points.user_id", str(user_id))
            span.set_attribute("points.action_type", action_type)

            async def _earn(now: datetime) -> EarnResult:
                return await self._earn_once(
                    user_id,
                    action_type,
                    now,
                    reference_type=reference_type,
                    reference_id=reference_id,
                    description=description,
                )

            result = await self._mutate(user_id, "earn", _earn, applied=lambda outcome: outcome.success)
            span.set_attribute("points.success", result.success)

        if result.success:
            self._observability.record_earn("awarded")
            logger.info(
                "Points earned",
                user_id=str(user_id),
                action_type=action_type,
                points=str(result.points_earned),
                multiplier=str(result.multiplier_applied),
                balance=str(result.new_balance),
            )
        return result

    async def _earn_once(
        self,
        user_id: UUID,
        action_type: str,
        now: datetime,
        *,
        reference_type: str | None,
        reference_id: str | None,
        description: str | None,
    ) -> EarnResult:
        rule = await self._catalog.get_active_rule(action_type)
        if rule is None:
            return self._reject("no_rule", f"No active rule for action '{action_type}'")

        # The ledger row lock and version cover the tracker reads below.
        ledger = await self._load_ledger(user_id, for_update=True)
        today = await self._tracker.get_for_day(user_id, action_type, utc_day(now))
        if (
            rule.max_daily_occurrences is not None
            and today is not None
            and today.occurrence_count >= rule.max_daily_occurrences
        ):
            return self._reject("daily_limit", DAILY_LIMIT_MESSAGE)

        if rule.cooldown_minutes:
            latest = today or await self._tracker.latest(user_id, action_type)
            remaining = cooldown_remaining(
                latest.last_occurrence_at if latest else None,
                rule.cooldown_minutes,
                now,
            )
            if remaining is not None:
                minutes = remaining_minutes(remaining)
                return self._reject(
                    "cooldown",
                    f"Please wait {minutes} minute{'s' if minutes != 1 else ''} before earning points for this action again.",
                )

        if rule.max_total_occurrences is not None:
            earned_so_far = await self._count_rule_earnings(user_id, rule.id)
            if earned_so_far >= rule.max_total_occurrences:
                return self._reject("total_limit", TOTAL_LIMIT_MESSAGE)

        factor = DEFAULT_MULTIPLIER
        if rule.multiplier_eligible:
            factor = (await self._catalog.select_multiplier(action_type, at=now)).factor

        points = (Decimal(rule.point_value) * factor).to_integral_value(rounding=ROUND_DOWN)

        if ledger is None:
            ledger = await self._create_ledger(user_id, now)
        transaction = self._credit(
            ledger,
            points,
            now,
            rule_id=rule.id,
            description=description or rule.description or f"Points for {action_type}",
            reference_type=reference_type,
            reference_id=reference_id,
            multiplier=factor,
        )
        self._tracker.record_occurrence(
            today,
            user_id=user_id,
            action_type=action_type,
            now=now,
            points=points,
        )
        await self._session.flush()

        return EarnResult(
            success=True,
            points_earned=points,
            new_balance=Decimal(ledger.total_points),
            message=f"Earned {points} points for {action_type}.",
            multiplier_applied=factor,
            transaction_id=transaction.id,
        )

    def _reject(self, outcome: str, message: str) -> EarnResult:
        self._observability.record_earn(outcome)
        return EarnResult(success=False, points_earned=ZERO, new_balance=ZERO, message=message)

    async def award_points(
        self,
        user_id: UUID,
        points: Decimal | int,
        description: str,
        *,
        reference_type: str | None = None,
        reference_id: str | None = None,
        expires_at: datetime | None = None,
    ) -> PointTransaction:
        """Grant an explicit positive amount without consulting the rule catalog."""

        amount = _positive_amount(points)

        async def _award(now: datetime) -> PointTransaction:
            ledger = await self._get_or_create_ledger(user_id, now)
            transaction = self._credit(
                ledger,
                amount,
                now,
                description=description,
                reference_type=reference_type,
                reference_id=reference_id,
                expires_at=expires_at,
            )
            await self._session.flush()
            return transaction

        transaction = await self._mutate(user_id, "award", _award)
        logger.info(
            "Points awarded",
            user_id=str(user_id),
            points=str(amount),
            reference_type=reference_type,
            reference_id=reference_id,
        )
        return transaction

    async def award_best_effort(
        self,
        user_id: UUID,
        points: Decimal | int,
        description: str,
        *,
        reference_type: str | None = None,
        reference_id: str | None = None,
    ) -> AwardOutcome:
        """Like :meth:`award_points` but reports failure instead of raising."""

        try:
            transaction = await self.award_points(
                user_id,
                points,
                description,
                reference_type=reference_type,
                reference_id=reference_id,
            )
        except (LedgerError, SQLAlchemyError) as exc:
            self._observability.record_award_failure(reference_type or "award")
            return AwardOutcome(user_id=user_id, success=False, error=str(exc))
        return AwardOutcome(
            user_id=user_id,
            success=True,
            points=Decimal(transaction.points),
            transaction_id=transaction.id,
        )

    async def redeem_points(
        self,
        user_id: UUID,
        points: Decimal | int,
        description: str,
        *,
        reference_type: str | None = None,
        reference_id: str | None = None,
    ) -> PointTransaction:
        amount = _positive_amount(points)

        async def _redeem(now: datetime) -> PointTransaction:
            ledger = await self._load_ledger(user_id, for_update=True)
            if ledger is None:
                raise UserPointsNotFoundError(user_id)

            available = Decimal(ledger.available_points)
            if amount > available:
                raise InsufficientPointsError(user_id, amount, available)

            ledger.available_points = available - amount
            ledger.total_points = Decimal(ledger.total_points) - amount
            ledger.redeemed_points = Decimal(ledger.redeemed_points) + amount
            transaction = self._append(
                ledger,
                transaction_type=PointTransactionType.REDEEM,
                points=-amount,
                now=now,
                description=description,
                reference_type=reference_type,
                reference_id=reference_id,
            )
            await self._session.flush()
            return transaction

        with self._tracer.start_as_current_span("points.redeem") as span:
            span.set_attribute("points.user_id", str(user_id))
            span.set_attribute("points.amount", str(amount))
            transaction = await self._mutate(user_id, "redeem", _redeem)

        logger.info(
            "Points redeemed",
            user_id=str(user_id),
            points=str(amount),
            balance=str(transaction.balance_after),
        )
        return transaction

    async def adjust_points(self, user_id: UUID, adjustment: Decimal | int, reason: str) -> PointTransaction:
        """Administrative correction; refuses to push either balance below zero."""

        delta = Decimal(str(adjustment))
        if delta == ZERO:
            raise InvalidPointsAmountError("Adjustments require a non-zero amount.")

        async def _adjust(now: datetime) -> PointTransaction:
            ledger = await self._get_or_create_ledger(user_id, now)
            total = Decimal(ledger.total_points)
            available = Decimal(ledger.available_points)
            if total + delta < ZERO or available + delta < ZERO:
                raise NegativeBalanceError(user_id, delta, total)

            ledger.total_points = total + delta
            ledger.available_points = available + delta
            transaction = self._append(
                ledger,
                transaction_type=PointTransactionType.ADJUST,
                points=delta,
                now=now,
                description=reason,
                reference_type="admin_adjustment",
            )
            await self._session.flush()
            return transaction

        with self._tracer.start_as_current_span("points.adjust") as span:
            span.set_attribute("points.user_id", str(user_id))
            span.set_attribute("points.adjustment", str(delta))
            transaction = await self._mutate(user_id, "adjust", _adjust)

        logger.info("Points adjusted", user_id=str(user_id), adjustment=str(delta), reason=reason)
        return transaction

    async def record_login(self, user_id: UUID) -> LoginResult:
        """Advance the login streak for today, then earn the login action."""

        async def _touch(now: datetime) -> tuple[int, int]:
            ledger = await self._get_or_create_ledger(user_id, now)
            today = utc_day(now)
            last = ledger.last_login_date
            if last != today:
                if last is not None and last == today - timedelta(days=1):
                    ledger.current_streak = int(ledger.current_streak or 0) + 1
                else:
                    ledger.current_streak = 1
                ledger.longest_streak = max(int(ledger.longest_streak or 0), ledger.current_streak)
                ledger.last_login_date = today
                await self._session.flush()
            return int(ledger.current_streak), int(ledger.longest_streak)

        current, longest = await self._mutate(user_id, "login", _touch)
        earn = await self.earn_points(user_id, settings.login_action_type, reference_type="login")
        milestone = await self._award_milestone(user_id, streak_milestone(), current)
        return LoginResult(current_streak=current, longest_streak=longest, earn=earn, milestone=milestone)

    async def check_streak_milestone(self, user_id: UUID) -> PointTransaction | None:
        ledger = await self._load_ledger(user_id)
        streak = int(ledger.current_streak or 0) if ledger is not None else 0
        return await self._award_milestone(user_id, streak_milestone(), streak)

    async def check_review_milestone(self, user_id: UUID, total_reviews: int) -> PointTransaction | None:
        return await self._award_milestone(user_id, review_milestone(), total_reviews)

    async def check_helpful_vote_milestone(self, user_id: UUID, total_helpful_votes: int) -> PointTransaction | None:
        return await self._award_milestone(user_id, helpful_vote_milestone(), total_helpful_votes)

    async def _award_milestone(self, user_id: UUID, milestone: Milestone, progress: int) -> PointTransaction | None:
        """Grant ``milestone`` once per user, the first time ``progress`` reaches it."""

        if progress < milestone.threshold or milestone.points <= 0:
            return None

        async def _grant(now: datetime) -> PointTransaction | None:
            ledger = await self._get_or_create_ledger(user_id, now)
            if await self._has_milestone(user_id, milestone.key):
                return None
            transaction = self._credit(
                ledger,
                Decimal(milestone.points),
                now,
                description=milestone.description,
                reference_type=MILESTONE_REFERENCE_TYPE,
                reference_id=milestone.key,
            )
            await self._session.flush()
            return transaction

        transaction = await self._mutate(user_id, "milestone", _grant, applied=lambda granted: granted is not None)
        if transaction is not None:
            logger.info(
                "Milestone awarded",
                user_id=str(user_id),
                milestone=milestone.key,
                points=milestone.points,
            )
        return transaction

    async def _has_milestone(self, user_id: UUID, key: str) -> bool:
        stmt = select(func.count(PointTransaction.id)).where(
            PointTransaction.user_id == user_id,
            PointTransaction.reference_type == MILESTONE_REFERENCE_TYPE,
            PointTransaction.reference_id == key,
        )
        return bool(await self._session.scalar(stmt))

    async def get_points(self, user_id: UUID) -> UserPoints | None:
        return await self._load_ledger(user_id)

    async def ensure_points(self, user_id: UUID) -> UserPoints:
        """Fetch or lazily create the user's ledger row."""

        ledger = await self._load_ledger(user_id)
        if ledger is not None:
            return ledger

        ledger = _new_ledger(user_id)
        self._session.add(ledger)
        try:
            await self._session.commit()
            logger.info("Created points ledger", user_id=str(user_id))
        except IntegrityError:
            await self._session.rollback()
            logger.warning("Detected race when creating points ledger", user_id=str(user_id))
            return await self.ensure_points(user_id)
        return ledger

    async def get_summary(self, user_id: UUID, *, recent: int = 5) -> PointsSummary:
        ledger = await self.ensure_points(user_id)
        transactions, _ = await self.list_transactions(user_id, limit=recent)
        total = Decimal(ledger.total_points)
        return PointsSummary(
            user_id=user_id,
            total_points=total,
            available_points=Decimal(ledger.available_points),
            lifetime_points=Decimal(ledger.lifetime_points),
            redeemed_points=Decimal(ledger.redeemed_points),
            pending_points=Decimal(ledger.pending_points),
            tier=points_tier(total),
            current_streak=int(ledger.current_streak or 0),
            longest_streak=int(ledger.longest_streak or 0),
            last_earned_at=ensure_aware(ledger.last_earned_at),
            rank=await self._leaderboard.rank_for(user_id),
            recent_transactions=transactions,
        )

    async def list_transactions(
        self,
        user_id: UUID,
        *,
        limit: int = 25,
        cursor: Tuple[int, UUID] | None = None,
        transaction_types: Sequence[PointTransactionType] | None = None,
    ) -> tuple[list[PointTransaction], Tuple[int, UUID] | None]:
        """Return a newest-first page of transactions and the cursor for the next page."""

        bounded_limit = max(1, min(limit, 100))
        stmt = (
            select(PointTransaction)
            .where(PointTransaction.user_id == user_id)
            .order_by(PointTransaction.sequence.desc())
        )
        if transaction_types:
            stmt = stmt.where(PointTransaction.transaction_type.in_(list(transaction_types)))
        if cursor:
            cursor_sequence, _ = cursor
            stmt = stmt.where(PointTransaction.sequence < cursor_sequence)

        stmt = stmt.limit(bounded_limit + 1)
        result = await self._session.execute(stmt)
        rows = list(result.scalars().all())
        entries = rows[:bounded_limit]
        next_cursor: Tuple[int, UUID] | None = None
        if len(rows) > bounded_limit and entries:
            tail = entries[-1]
            next_cursor = (tail.sequence, tail.id)
        return entries, next_cursor

    async def transactions_in_range(self, user_id: UUID, *, start: datetime, end: datetime) -> TransactionWindow:
        stmt = (
            select(PointTransaction)
            .where(
                PointTransaction.user_id == user_id,
                PointTransaction.created_at >= ensure_aware(start),
                PointTransaction.created_at <= ensure_aware(end),
            )
            .order_by(PointTransaction.sequence)
        )
        result = await self._session.execute(stmt)
        transactions = list(result.scalars().all())
        earned = sum((Decimal(tx.points) for tx in transactions if tx.points > 0), ZERO)
        deducted = sum((-Decimal(tx.points) for tx in transactions if tx.points < 0), ZERO)
        return TransactionWindow(transactions=transactions, earned=earned, deducted=deducted)

    async def reconcile(self, user_id: UUID) -> ReconciliationReport:
        """Replay the transaction log and compare each balance snapshot."""

        ledger = await self._load_ledger(user_id)
        if ledger is None:
            raise UserPointsNotFoundError(user_id)

        stmt = (
            select(PointTransaction)
            .where(PointTransaction.user_id == user_id)
            .order_by(PointTransaction.sequence)
        )
        result = await self._session.execute(stmt)
        running = ZERO
        mismatches: list[LedgerMismatch] = []
        count = 0
        for transaction in result.scalars():
            count += 1
            running += Decimal(transaction.points)
            recorded = Decimal(transaction.balance_after)
            if recorded != running:
                mismatches.append(
                    LedgerMismatch(
                        sequence=transaction.sequence,
                        expected_balance=running,
                        recorded_balance=recorded,
                    )
                )

        report = ReconciliationReport(
            user_id=user_id,
            transaction_count=count,
            replayed_total=running,
            recorded_total=Decimal(ledger.total_points),
            mismatches=mismatches,
        )
        if not report.is_consistent:
            logger.warning(
                "Points ledger failed reconciliation",
                user_id=str(user_id),
                mismatches=len(mismatches),
                replayed_total=str(running),
                recorded_total=str(report.recorded_total),
            )
        return report

    async def _mutate(
        self,
        user_id: UUID,
        operation: str,
        work: Callable[[datetime], Awaitable[T]],
        *,
        applied: Callable[[T], bool] | None = None,
    ) -> T:
        """Run ``work`` in its own transaction, retrying lost write races.

        ``applied`` tells whether a result actually changed the ledger; only
        those results are counted as mutations.
        """

        async with _user_lock(user_id):
            for attempt in range(1, self._max_attempts + 1):
                now = self._clock()
                try:
                    result = await work(now)
                    await self._session.commit()
                except StaleDataError as exc:
                    await self._session.rollback()
                    self._record_retry(user_id, operation, attempt, exc)
                    continue
                except IntegrityError as exc:
                    await self._session.rollback()
                    if not _is_write_race(exc):
                        raise _integrity_failure(user_id, exc) from exc
                    self._record_retry(user_id, operation, attempt, exc)
                    continue
                except Exception:
                    await self._session.rollback()
                    raise
                if applied is None or applied(result):
                    self._observability.record_mutation(operation)
                return result

        raise LedgerConflictError(user_id, self._max_attempts)

    def _record_retry(self, user_id: UUID, operation: str, attempt: int, exc: Exception) -> None:
        self._observability.record_conflict(operation)
        logger.warning(
            "Points mutation conflicted; retrying",
            user_id=str(user_id),
            operation=operation,
            attempt=attempt,
            error=str(exc),
        )

    async def _load_ledger(self, user_id: UUID, *, for_update: bool = False) -> UserPoints | None:
        stmt = (
            select(UserPoints)
            .where(UserPoints.user_id == user_id)
            .execution_options(populate_existing=True)
        )
        if for_update:
            stmt = stmt.with_for_update()
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def _get_or_create_ledger(self, user_id: UUID, now: datetime) -> UserPoints:
        ledger = await self._load_ledger(user_id, for_update=True)
        if ledger is not None:
            return ledger
        return await self._create_ledger(user_id, now)

    async def _create_ledger(self, user_id: UUID, now: datetime) -> UserPoints:
        ledger = _new_ledger(user_id)
        ledger.created_at = now
        self._session.add(ledger)
        await self._session.flush()
        return ledger

    async def _count_rule_earnings(self, user_id: UUID, rule_id: UUID) -> int:
        stmt = select(func.count(PointTransaction.id)).where(
            PointTransaction.user_id == user_id,
            PointTransaction.rule_id == rule_id,
            PointTransaction.transaction_type == PointTransactionType.EARN,
        )
        return int(await self._session.scalar(stmt) or 0)

    def _credit(self, ledger: UserPoints, points: Decimal, now: datetime, **entry: Any) -> PointTransaction:
        ledger.total_points = Decimal(ledger.total_points) + points
        ledger.available_points = Decimal(ledger.available_points) + points
        ledger.lifetime_points = Decimal(ledger.lifetime_points) + points
        ledger.last_earned_at = now
        return self._append(ledger, transaction_type=PointTransactionType.EARN, points=points, now=now, **entry)

    def _append(
        self,
        ledger: UserPoints,
        *,
        transaction_type: PointTransactionType,
        points: Decimal,
        now: datetime,
        rule_id: UUID | None = None,
        description: str | None = None,
        reference_type: str | None = None,
        reference_id: str | None = None,
        multiplier: Decimal = DEFAULT_MULTIPLIER,
        expires_at: datetime | None = None,
    ) -> PointTransaction:
        ledger.transaction_count = int(ledger.transaction_count or 0) + 1
        transaction = PointTransaction(
            user_id=ledger.user_id,
            sequence=ledger.transaction_count,
            transaction_type=transaction_type,
            points=points,
            balance_after=Decimal(ledger.total_points),
            rule_id=rule_id,
            description=description,
            reference_type=reference_type,
            reference_id=str(reference_id) if reference_id is not None else None,
            multiplier=multiplier,
            expires_at=expires_at,
            created_at=now,
        )
        self._session.add(transaction)
        return transaction


def points_tier(total_points: Decimal) -> str:
    for threshold, label in POINTS_TIERS:
        if total_points >= threshold:
            return label
    return POINTS_TIERS[-1][1]


def _new_ledger(user_id: UUID) -> UserPoints:
    return UserPoints(
        user_id=user_id,
        total_points=ZERO,
        available_points=ZERO,
        lifetime_points=ZERO,
        redeemed_points=ZERO,
        pending_points=ZERO,
        transaction_count=0,
        current_streak=0,
        longest_streak=0,
    )


def _positive_amount(points: Decimal | int) -> Decimal:
    amount = Decimal(str(points))
    if amount <= ZERO:
        raise InvalidPointsAmountError("Point amounts must be greater than zero.")
    return amount


def streak_milestone() -> Milestone:
    days = settings.streak_milestone_days
    return Milestone(
        key=f"login_streak_{days}",
        threshold=days,
        points=settings.streak_milestone_points,
        description=f"{days}-day login streak milestone bonus",
    )


def review_milestone() -> Milestone:
    count = settings.review_milestone_count
    return Milestone(
        key=f"reviews_{count}",
        threshold=count,
        points=settings.review_milestone_points,
        description=f"{count} reviews milestone bonus",
    )


def helpful_vote_milestone() -> Milestone:
    count = settings.helpful_votes_milestone_count
    return Milestone(
        key=f"helpful_votes_{count}",
        threshold=count,
        points=settings.helpful_votes_milestone_points,
        description=f"{count} helpful votes milestone bonus",
    )


def _is_write_race(exc: IntegrityError) -> bool:
    message = str(exc.orig).lower()
    return "unique" in message and any(key in message for key in _RACE_UNIQUE_KEYS)


def _integrity_failure(user_id: UUID, exc: IntegrityError) -> LedgerError:
    if "foreign key" in str(exc.orig).lower():
        return LedgerUserNotFoundError(user_id)
    return LedgerIntegrityError(f"Points write for user '{user_id}' was rejected by the database: {exc.orig}")


def encode_sequence_cursor(sequence: int, identifier: UUID) -> str:
    """Encode pagination cursor for transaction history."""

    payload = f"{sequence}|{identifier}".encode("utf-8")
    return base64.urlsafe_b64encode(payload).decode("utf-8")


def decode_sequence_cursor(cursor: str) -> Tuple[int, UUID]:
    """Decode pagination cursor into sequence and UUID parts."""

    raw = base64.urlsafe_b64decode(cursor.encode("utf-8")).decode("utf-8")
    sequence_str, identifier_str = raw.split("|", 1)
    return int(sequence_str), UUID(identifier_str)


__all__ = [
    "AwardOutcome",
    "EarnResult",
    "LedgerMismatch",
    "LoginResult",
    "MILESTONE_REFERENCE_TYPE",
    "Milestone",
    "PointsEngine",
    "PointsSummary",
    "ReconciliationReport",
    "TransactionWindow",
    "decode_sequence_cursor",
    "encode_sequence_cursor",
    "helpful_vote_milestone",
    "points_tier",
    "review_milestone",
    "streak_milestone",
]
