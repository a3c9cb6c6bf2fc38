"""Referral lifecycle: codes, signups, qualification, completion and expiry."""

from __future__ import annotations

import re
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Sequence
from uuid import UUID, uuid4

from loguru import logger
from sqlalchemy import case, func, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from rewards_api.core.clock import Clock, ensure_aware, utcnow
from rewards_api.core.settings import settings
from rewards_api.models.referral import (
    OPEN_REFERRAL_STATUSES,
    Referral,
    ReferralStatus,
    UserReferralCode,
)
from rewards_api.models.user import User
from rewards_api.observability.ledger import get_ledger_store
from rewards_api.observability.tracing import get_tracer
from rewards_api.services.points import AwardOutcome, PointsEngine
from rewards_api.services.points.errors import LedgerError

from .errors import (
    InvalidReferralCodeError,
    InvalidReferralTransitionError,
    ReferralAlreadyCompletedError,
    ReferralCodeAlreadyExistsError,
    ReferralCodeInactiveError,
    ReferralCodeNotFoundError,
    ReferralExpiredError,
    ReferralNotFoundError,
    SelfReferralError,
    UserAlreadyReferredError,
)
from .rewards import ReferralRewardCatalog

EXPIRABLE_STATUSES = (ReferralStatus.PENDING, ReferralStatus.REGISTERED)
_CODE_GENERATION_ATTEMPTS = 10


@dataclass(slots=True)
class ReferralApplication:
    """A referral created by applying a code, plus the signup bonus outcome."""

    referral: Referral
    signup_bonus: AwardOutcome


@dataclass(slots=True)
class ReferralCompletion:
    referral: Referral
    referrer_award: AwardOutcome
    referred_award: AwardOutcome | None


@dataclass(slots=True)
class ReferralStats:
    user_id: UUID
    code: str
    total_referrals: int
    successful_referrals: int
    pending_referrals: int
    total_points_earned: Decimal
    by_status: dict[str, int]


@dataclass(slots=True)
class TopReferrer:
    rank: int
    user_id: UUID
    username: str
    code: str
    successful_referrals: int
    total_points_earned: Decimal


class ReferralService:
    """Coordinates the referral lifecycle and its point awards."""

    def __init__(
        self,
        session: AsyncSession,
        *,
        clock: Clock = utcnow,
        points_engine: PointsEngine | None = None,
    ) -> None:
        self._session = session
        self._clock = clock
        self._points = points_engine or PointsEngine(session, clock=clock)
        self._rewards = ReferralRewardCatalog(session, clock=clock)
        self._observability = get_ledger_store()
        self._tracer = get_tracer()

    @property
    def rewards(self) -> ReferralRewardCatalog:
        return self._rewards

    async def get_or_create_code(self, user_id: UUID) -> UserReferralCode:
        """Fetch the user's referral code, generating one on first access."""

        record = await self.get_code_for_user(user_id)
        if record is not None:
            return record

        record = UserReferralCode(user_id=user_id, referral_code=await self._generate_unique_code())
        self._session.add(record)
        try:
            await self._session.commit()
            logger.info("Created referral code", user_id=str(user_id), code=record.referral_code)
        except IntegrityError:
            await self._session.rollback()
            logger.warning("Detected race when creating referral code", user_id=str(user_id))
            return await self.get_or_create_code(user_id)
        return record

    async def get_code_for_user(self, user_id: UUID) -> UserReferralCode | None:
        stmt = (
            select(UserReferralCode)
            .where(UserReferralCode.user_id == user_id)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def set_custom_code(self, user_id: UUID, code: str) -> UserReferralCode:
        normalized = _normalize_code(code)
        if not re.fullmatch(
            rf"[A-Z0-9]{{{settings.referral_custom_code_min_length},{settings.referral_custom_code_max_length}}}",
            normalized,
        ):
            raise InvalidReferralCodeError(
                f"Custom referral codes must be {settings.referral_custom_code_min_length}-"
                f"{settings.referral_custom_code_max_length} letters or digits."
            )
        if normalized in settings.referral_reserved_codes:
            raise ReferralCodeAlreadyExistsError(normalized)

        record = await self.get_or_create_code(user_id)
        if normalized == record.custom_code:
            return record

        owner = await self._find_code(normalized)
        if owner is not None and owner.id != record.id:
            raise ReferralCodeAlreadyExistsError(normalized)

        record.custom_code = normalized
        try:
            await self._session.commit()
        except IntegrityError as exc:
            await self._session.rollback()
            raise ReferralCodeAlreadyExistsError(normalized) from exc
        logger.info("Set custom referral code", user_id=str(user_id), code=normalized)
        return record

    async def resolve_code(self, code: str) -> UserReferralCode:
        record = await self._find_code(_normalize_code(code))
        if record is None:
            raise ReferralCodeNotFoundError(code)
        return record

    async def validate_code(self, code: str, candidate_user_id: UUID) -> bool:
        """True when ``candidate_user_id`` could apply ``code`` right now."""

        try:
            await self._check_code_usable(code, candidate_user_id)
        except LedgerError:
            return False
        return True

    async def use_code(
        self,
        code: str,
        referred_user_id: UUID,
        *,
        invitee_email: str | None = None,
    ) -> ReferralApplication:
        """Link ``referred_user_id`` to the code's owner and try the signup bonus."""

        record = await self._check_code_usable(code, referred_user_id)
        now = self._clock()

        referral = await self._claim_open_invite(record.user_id, invitee_email, now)
        if referral is not None:
            referral.referred_user_id = referred_user_id
            referral.status = ReferralStatus.REGISTERED
            referral.registered_at = now
            counters: dict[str, Any] = {"total_referrals": UserReferralCode.total_referrals + 1}
        else:
            referral = Referral(
                referrer_user_id=record.user_id,
                referred_user_id=referred_user_id,
                referral_code=record.active_code,
                invitee_email=_normalize_email(invitee_email),
                status=ReferralStatus.REGISTERED,
                expires_at=now + timedelta(days=settings.referral_expiry_days),
                registered_at=now,
                created_at=now,
            )
            self._session.add(referral)
            counters = {
                "total_referrals": UserReferralCode.total_referrals + 1,
                "pending_referrals": UserReferralCode.pending_referrals + 1,
            }

        try:
            await self._session.flush()
            await self._bump_code_counters(record.user_id, **counters)
            await self._session.commit()
        except IntegrityError as exc:
            await self._session.rollback()
            raise UserAlreadyReferredError(referred_user_id) from exc

        referral_id = referral.id
        self._observability.record_referral_event("registered")
        logger.info(
            "Referral registered",
            referral_id=str(referral_id),
            referrer_user_id=str(record.user_id),
            referred_user_id=str(referred_user_id),
        )

        bonus = await self._signup_bonus(referred_user_id, referral_id)
        return ReferralApplication(referral=await self._reload(referral_id), signup_bonus=bonus)

    async def create_invite(self, referrer_user_id: UUID, *, invitee_email: str | None = None) -> Referral:
        """Open a pending referral that a later signup with the code will claim."""

        record = await self.get_or_create_code(referrer_user_id)
        if not record.is_active:
            raise ReferralCodeInactiveError(record.active_code)

        now = self._clock()
        referral = Referral(
            referrer_user_id=referrer_user_id,
            referral_code=record.active_code,
            invitee_email=_normalize_email(invitee_email),
            status=ReferralStatus.PENDING,
            expires_at=now + timedelta(days=settings.referral_expiry_days),
            created_at=now,
        )
        self._session.add(referral)
        await self._session.flush()
        await self._bump_code_counters(
            referrer_user_id,
            pending_referrals=UserReferralCode.pending_referrals + 1,
        )
        await self._session.commit()
        self._observability.record_referral_event("invited")
        logger.info("Referral invite created", referral_id=str(referral.id), referrer_user_id=str(referrer_user_id))
        return await self._reload(referral.id)

    async def complete_referral(self, referral_id: UUID) -> ReferralCompletion:
        """Mark the referral completed once and award both sides best-effort."""

        with self._tracer.start_as_current_span("referrals.complete") as span:
            span.set_attribute("referrals.referral_id", str(referral_id))
            try:
                completion = await self._complete(referral_id)
            except Exception:
                await self._session.rollback()
                raise
        return completion

    async def _complete(self, referral_id: UUID) -> ReferralCompletion:
        referral = await self.get_referral(referral_id)
        now = self._clock()

        if referral.status == ReferralStatus.COMPLETED:
            raise ReferralAlreadyCompletedError(referral_id)
        if referral.status == ReferralStatus.CANCELLED:
            raise InvalidReferralTransitionError(referral_id, referral.status, ReferralStatus.COMPLETED)
        if _missed_deadline(referral, now):
            raise ReferralExpiredError(referral_id)

        referrer_user_id = referral.referrer_user_id
        referred_user_id = referral.referred_user_id
        code_record = await self.get_code_for_user(referrer_user_id)
        successful = int(code_record.successful_referrals) if code_record else 0
        quote = await self._rewards.quote(successful, at=now)

        result = await self._session.execute(
            update(Referral)
            .where(Referral.id == referral_id, Referral.status.in_(OPEN_REFERRAL_STATUSES))
            .values(
                status=ReferralStatus.COMPLETED,
                completed_at=now,
                updated_at=now,
                referrer_points=quote.referrer_points,
                referred_points=quote.referred_points,
                reward_tier_id=quote.tier.id if quote.tier else None,
                campaign_id=quote.campaign.id if quote.campaign else None,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await self._session.rollback()
            current = await self.get_referral(referral_id)
            if current.status == ReferralStatus.EXPIRED:
                raise ReferralExpiredError(referral_id)
            if current.status == ReferralStatus.COMPLETED:
                raise ReferralAlreadyCompletedError(referral_id)
            raise InvalidReferralTransitionError(referral_id, current.status, ReferralStatus.COMPLETED)

        await self._bump_code_counters(
            referrer_user_id,
            successful_referrals=UserReferralCode.successful_referrals + 1,
            pending_referrals=_decrement(UserReferralCode.pending_referrals),
            total_points_earned=UserReferralCode.total_points_earned + quote.referrer_points,
        )
        await self._session.commit()
        self._observability.record_referral_event("completed")
        logger.info(
            "Referral completed",
            referral_id=str(referral_id),
            referrer_points=quote.referrer_points,
            referred_points=quote.referred_points,
            tier=quote.tier.name if quote.tier else None,
            campaign=quote.campaign.name if quote.campaign else None,
        )

        referrer_award = await self._award(
            referrer_user_id, quote.referrer_points, referral_id, "Referral reward", side="referrer"
        )
        referred_award: AwardOutcome | None = None
        if referred_user_id is not None:
            referred_award = await self._award(
                referred_user_id, quote.referred_points, referral_id, "Referral welcome reward", side="referred"
            )

        await self._session.execute(
            update(Referral)
            .where(Referral.id == referral_id)
            .values(
                referrer_rewarded=referrer_award.success,
                referred_rewarded=bool(referred_award and referred_award.success),
            )
            .execution_options(synchronize_session=False)
        )
        await self._session.commit()
        return ReferralCompletion(
            referral=await self._reload(referral_id),
            referrer_award=referrer_award,
            referred_award=referred_award,
        )

    async def record_qualifying_review(self, referred_user_id: UUID) -> Referral | None:
        """Count an approved review; enough of them qualify and complete the referral."""

        referral = await self.get_referral_for_referred(referred_user_id)
        if referral is None:
            return None
        if referral.status not in (ReferralStatus.REGISTERED, ReferralStatus.QUALIFIED):
            return referral

        now = self._clock()
        if referral.status == ReferralStatus.REGISTERED and referral.is_expired_at(now):
            await self._expire(referral, now)
            return await self._reload(referral.id)

        referral.approved_review_count = int(referral.approved_review_count or 0) + 1
        qualified_now = (
            referral.status == ReferralStatus.REGISTERED
            and referral.approved_review_count >= settings.referral_required_approved_reviews
        )
        if qualified_now:
            referral.status = ReferralStatus.QUALIFIED
            referral.qualified_at = now
        await self._session.commit()
        referral_id = referral.id

        if qualified_now:
            self._observability.record_referral_event("qualified")
            logger.info("Referral qualified", referral_id=str(referral_id), reviews=referral.approved_review_count)
            try:
                await self.complete_referral(referral_id)
            except LedgerError as exc:
                logger.warning(
                    "Qualified referral could not be completed yet",
                    referral_id=str(referral_id),
                    error=str(exc),
                )
        return await self._reload(referral_id)

    async def process_qualified_referrals(self, *, limit: int | None = None) -> dict[str, int]:
        """Complete qualified referrals, isolating failures per referral."""

        stmt = (
            select(Referral.id)
            .where(Referral.status == ReferralStatus.QUALIFIED)
            .order_by(Referral.qualified_at)
            .limit(limit or settings.referral_sweep_batch_size)
        )
        referral_ids = list((await self._session.execute(stmt)).scalars().all())

        completed = failed = 0
        for referral_id in referral_ids:
            try:
                await self.complete_referral(referral_id)
            except (LedgerError, SQLAlchemyError) as exc:
                failed += 1
                logger.warning("Failed to complete qualified referral", referral_id=str(referral_id), error=str(exc))
                continue
            completed += 1
        return {"candidates": len(referral_ids), "completed": completed, "failed": failed}

    async def process_expired_referrals(self, *, limit: int | None = None) -> int:
        """Expire open referrals past their deadline; expired rows never reopen."""

        now = self._clock()
        stmt = (
            select(Referral.id, Referral.referrer_user_id)
            .where(
                Referral.status.in_(EXPIRABLE_STATUSES),
                Referral.expires_at.is_not(None),
                Referral.expires_at < now,
            )
            .order_by(Referral.expires_at)
            .limit(limit or settings.referral_sweep_batch_size)
        )
        candidates = (await self._session.execute(stmt)).all()

        expired_per_referrer: Counter[UUID] = Counter()
        for referral_id, referrer_user_id in candidates:
            result = await self._session.execute(
                update(Referral)
                .where(Referral.id == referral_id, Referral.status.in_(EXPIRABLE_STATUSES))
                .values(status=ReferralStatus.EXPIRED, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount:
                expired_per_referrer[referrer_user_id] += 1

        for referrer_user_id, count in expired_per_referrer.items():
            await self._bump_code_counters(
                referrer_user_id,
                pending_referrals=_decrement(UserReferralCode.pending_referrals, count),
            )
        await self._session.commit()

        expired = sum(expired_per_referrer.values())
        if expired:
            self._observability.record_referral_event("expired")
        logger.info("Expired referrals", expired=expired, referrers=len(expired_per_referrer))
        return expired

    async def _expire(self, referral: Referral, now: datetime) -> bool:
        result = await self._session.execute(
            update(Referral)
            .where(Referral.id == referral.id, Referral.status.in_(EXPIRABLE_STATUSES))
            .values(status=ReferralStatus.EXPIRED, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await self._session.rollback()
            return False

        await self._bump_code_counters(
            referral.referrer_user_id,
            pending_referrals=_decrement(UserReferralCode.pending_referrals),
        )
        await self._session.commit()
        self._observability.record_referral_event("expired")
        logger.info("Expired referral on late activity", referral_id=str(referral.id))
        return True

    async def cancel_referral(self, referral_id: UUID, *, reason: str | None = None) -> Referral:
        referral = await self.get_referral(referral_id)
        if referral.status == ReferralStatus.CANCELLED:
            return referral
        if referral.status not in OPEN_REFERRAL_STATUSES:
            raise InvalidReferralTransitionError(referral_id, referral.status, ReferralStatus.CANCELLED)

        now = self._clock()
        result = await self._session.execute(
            update(Referral)
            .where(Referral.id == referral_id, Referral.status.in_(OPEN_REFERRAL_STATUSES))
            .values(status=ReferralStatus.CANCELLED, notes=reason, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await self._session.rollback()
            current = await self.get_referral(referral_id)
            raise InvalidReferralTransitionError(referral_id, current.status, ReferralStatus.CANCELLED)

        await self._bump_code_counters(
            referral.referrer_user_id,
            pending_referrals=_decrement(UserReferralCode.pending_referrals),
        )
        await self._session.commit()
        self._observability.record_referral_event("cancelled")
        logger.info("Cancelled referral", referral_id=str(referral_id), reason=reason)
        return await self._reload(referral_id)

    async def get_referral(self, referral_id: UUID) -> Referral:
        referral = await self._session.get(Referral, referral_id, populate_existing=True)
        if referral is None:
            raise ReferralNotFoundError(referral_id)
        return referral

    async def get_referral_for_referred(self, referred_user_id: UUID) -> Referral | None:
        stmt = (
            select(Referral)
            .where(Referral.referred_user_id == referred_user_id)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_referrals(
        self,
        referrer_user_id: UUID,
        *,
        statuses: Sequence[ReferralStatus] | None = None,
    ) -> list[Referral]:
        stmt = (
            select(Referral)
            .where(Referral.referrer_user_id == referrer_user_id)
            .order_by(Referral.created_at.desc())
        )
        if statuses:
            stmt = stmt.where(Referral.status.in_(list(statuses)))
        result = await self._session.execute(stmt.execution_options(populate_existing=True))
        return list(result.scalars().all())

    async def get_stats(self, user_id: UUID) -> ReferralStats:
        record = await self.get_or_create_code(user_id)
        rows = await self._session.execute(
            select(Referral.status, func.count(Referral.id))
            .where(Referral.referrer_user_id == user_id)
            .group_by(Referral.status)
        )
        by_status = {status.value: 0 for status in ReferralStatus}
        for status, count in rows.all():
            by_status[ReferralStatus(status).value] = int(count)
        return ReferralStats(
            user_id=user_id,
            code=record.active_code,
            total_referrals=int(record.total_referrals),
            successful_referrals=int(record.successful_referrals),
            pending_referrals=int(record.pending_referrals),
            total_points_earned=Decimal(record.total_points_earned),
            by_status=by_status,
        )

    async def top_referrers(self, limit: int = 10) -> list[TopReferrer]:
        stmt = (
            select(UserReferralCode, User.username, User.display_name)
            .outerjoin(User, User.id == UserReferralCode.user_id)
            .where(UserReferralCode.successful_referrals > 0)
            .order_by(
                UserReferralCode.successful_referrals.desc(),
                UserReferralCode.total_points_earned.desc(),
                UserReferralCode.user_id.asc(),
            )
            .limit(max(1, min(limit, settings.leaderboard_max_entries)))
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return [
            TopReferrer(
                rank=position,
                user_id=record.user_id,
                username=username or display_name or "Unknown",
                code=record.active_code,
                successful_referrals=int(record.successful_referrals),
                total_points_earned=Decimal(record.total_points_earned),
            )
            for position, (record, username, display_name) in enumerate(result.all(), start=1)
        ]

    async def _check_code_usable(self, code: str, candidate_user_id: UUID) -> UserReferralCode:
        record = await self.resolve_code(code)
        if not record.is_active:
            raise ReferralCodeInactiveError(record.active_code)
        if record.user_id == candidate_user_id:
            raise SelfReferralError(candidate_user_id)
        if await self.get_referral_for_referred(candidate_user_id) is not None:
            raise UserAlreadyReferredError(candidate_user_id)
        return record

    async def _claim_open_invite(
        self,
        referrer_user_id: UUID,
        invitee_email: str | None,
        now: datetime,
    ) -> Referral | None:
        email = _normalize_email(invitee_email)
        email_filter = Referral.invitee_email.is_(None)
        if email:
            email_filter = or_(email_filter, Referral.invitee_email == email)
        stmt = (
            select(Referral)
            .where(
                Referral.referrer_user_id == referrer_user_id,
                Referral.status == ReferralStatus.PENDING,
                Referral.referred_user_id.is_(None),
                or_(Referral.expires_at.is_(None), Referral.expires_at >= now),
                email_filter,
            )
            .order_by(Referral.created_at, Referral.id)
            .limit(1)
            .with_for_update(skip_locked=True)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def _signup_bonus(self, referred_user_id: UUID, referral_id: UUID) -> AwardOutcome:
        try:
            result = await self._points.earn_points(
                referred_user_id,
                settings.referral_signup_action,
                reference_type="referral",
                reference_id=str(referral_id),
                description="Referral signup bonus",
            )
        except (LedgerError, SQLAlchemyError) as exc:
            self._observability.record_award_failure("referral_signup")
            logger.warning("Referral signup bonus failed", referral_id=str(referral_id), error=str(exc))
            return AwardOutcome(user_id=referred_user_id, success=False, error=str(exc))

        if not result.success:
            logger.info("Referral signup bonus skipped", referral_id=str(referral_id), reason=result.message)
            return AwardOutcome(user_id=referred_user_id, success=False, error=result.message)
        return AwardOutcome(
            user_id=referred_user_id,
            success=True,
            points=result.points_earned,
            transaction_id=result.transaction_id,
        )

    async def _award(self, user_id: UUID, points: int, referral_id: UUID, description: str, *, side: str) -> AwardOutcome:
        if points <= 0:
            return AwardOutcome(user_id=user_id, success=True)
        outcome = await self._points.award_best_effort(
            user_id,
            points,
            description,
            reference_type="referral",
            reference_id=str(referral_id),
        )
        if not outcome.success:
            logger.warning(
                "Referral reward could not be granted",
                referral_id=str(referral_id),
                side=side,
                user_id=str(user_id),
                error=outcome.error,
            )
        return outcome

    async def _bump_code_counters(self, user_id: UUID, **values: Any) -> None:
        await self._session.execute(
            update(UserReferralCode)
            .where(UserReferralCode.user_id == user_id)
            .values(updated_at=self._clock(), **values)
            .execution_options(synchronize_session=False)
        )

    async def _find_code(self, normalized: str) -> UserReferralCode | None:
        stmt = (
            select(UserReferralCode)
            .where(
                or_(
                    UserReferralCode.referral_code == normalized,
                    UserReferralCode.custom_code == normalized,
                )
            )
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalars().first()

    async def _generate_unique_code(self) -> str:
        length = settings.referral_code_length
        for _ in range(_CODE_GENERATION_ATTEMPTS):
            candidate = uuid4().hex[:length].upper()
            if await self._find_code(candidate) is None:
                return candidate
        raise RuntimeError("Unable to generate a unique referral code")

    async def _reload(self, referral_id: UUID) -> Referral:
        return await self.get_referral(referral_id)


def _normalize_code(code: str) -> str:
    return (code or "").strip().upper()


def _normalize_email(email: str | None) -> str | None:
    if not email:
        return None
    return email.strip().lower() or None


def _missed_deadline(referral: Referral, now: datetime) -> bool:
    """Expired, or a referral that only qualified after its deadline had passed."""

    if referral.status == ReferralStatus.EXPIRED:
        return True
    if referral.status in EXPIRABLE_STATUSES:
        return referral.is_expired_at(now)
    if referral.status == ReferralStatus.QUALIFIED and referral.qualified_at is not None:
        return referral.is_expired_at(ensure_aware(referral.qualified_at))
    return False


def _decrement(column: Any, amount: int = 1) -> Any:
    return case((column >= amount, column - amount), else_=0)


__all__ = [
    "ReferralApplication",
    "ReferralCompletion",
    "ReferralService",
    "ReferralStats",
    "TopReferrer",
]
