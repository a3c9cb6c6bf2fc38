import asyncio
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select

from rewards_api.core.settings import settings
from rewards_api.models.points import PointTransaction
from rewards_api.models.referral import ReferralStatus
from rewards_api.models.user import User
from rewards_api.observability.ledger import get_ledger_store
from rewards_api.services.points import InsufficientPointsError, PointCatalog, PointsEngine
from rewards_api.services.points import engine as engine_module
from rewards_api.services.points.engine import DAILY_LIMIT_MESSAGE
from rewards_api.services.referrals import (
    InvalidReferralTransitionError,
    ReferralAlreadyCompletedError,
    ReferralCompletion,
    ReferralExpiredError,
    ReferralService,
)
from tests.helpers import FrozenClock


async def _seed_user(session_factory, email: str):
    async with session_factory() as session:
        user = User(email=email)
        session.add(user)
        await session.commit()
        return user.id


@pytest.mark.asyncio
async def test_concurrent_earns_do_not_lose_updates(file_session_factory) -> None:
    user_id = await _seed_user(file_session_factory, "busy@example.com")
    async with file_session_factory() as session:
        await PointCatalog(session).create_rule("review_submitted", 20)

    async def earn_once():
        async with file_session_factory() as session:
            return await PointsEngine(session).earn_points(user_id, "review_submitted")

    results = await asyncio.gather(*(earn_once() for _ in range(8)))

    assert all(result.success for result in results)
    assert sorted(result.new_balance for result in results) == [Decimal(20 * step) for step in range(1, 9)]

    async with file_session_factory() as session:
        engine = PointsEngine(session)
        ledger = await engine.get_points(user_id)
        assert Decimal(ledger.total_points) == Decimal("160")
        assert ledger.transaction_count == 8

        sequences = (
            await session.execute(
                select(PointTransaction.sequence)
                .where(PointTransaction.user_id == user_id)
                .order_by(PointTransaction.sequence)
            )
        ).scalars().all()
        assert sequences == list(range(1, 9))
        assert (await engine.reconcile(user_id)).is_consistent is True


@pytest.mark.asyncio
async def test_concurrent_redemptions_never_overdraw(file_session_factory) -> None:
    user_id = await _seed_user(file_session_factory, "spender@example.com")
    async with file_session_factory() as session:
        await PointsEngine(session).award_points(user_id, 100, "Grant")

    async def redeem_once():
        async with file_session_factory() as session:
            return await PointsEngine(session).redeem_points(user_id, 30, "Reward")

    outcomes = await asyncio.gather(*(redeem_once() for _ in range(5)), return_exceptions=True)

    succeeded = [outcome for outcome in outcomes if isinstance(outcome, PointTransaction)]
    rejected = [outcome for outcome in outcomes if isinstance(outcome, InsufficientPointsError)]
    assert len(succeeded) == 3
    assert len(rejected) == 2
    assert all(error.available == Decimal("10") for error in rejected)

    async with file_session_factory() as session:
        ledger = await PointsEngine(session).get_points(user_id)
        assert Decimal(ledger.available_points) == Decimal("10")
        assert Decimal(ledger.redeemed_points) == Decimal("90")


@pytest.mark.asyncio
async def test_concurrent_completion_awards_once(file_session_factory) -> None:
    referrer_id = await _seed_user(file_session_factory, "host@example.com")
    referred_id = await _seed_user(file_session_factory, "guest@example.com")
    async with file_session_factory() as session:
        service = ReferralService(session)
        code = (await service.get_or_create_code(referrer_id)).referral_code
        referral_id = (await service.use_code(code, referred_id)).referral.id

    async def complete_once():
        async with file_session_factory() as session:
            return await ReferralService(session).complete_referral(referral_id)

    outcomes = await asyncio.gather(complete_once(), complete_once(), return_exceptions=True)

    assert sum(isinstance(outcome, ReferralCompletion) for outcome in outcomes) == 1
    assert sum(isinstance(outcome, ReferralAlreadyCompletedError) for outcome in outcomes) == 1

    async with file_session_factory() as session:
        service = ReferralService(session)
        engine = PointsEngine(session)
        referral = await service.get_referral(referral_id)
        assert referral.status == ReferralStatus.COMPLETED
        assert (await service.get_stats(referrer_id)).successful_referrals == 1
        referrer_ledger = await engine.get_points(referrer_id)
        assert referrer_ledger.transaction_count == 1


def _unshared_user_locks(monkeypatch) -> None:
    # Each call gets its own lock, as engines in separate worker processes would.
    monkeypatch.setattr(engine_module, "_user_lock", lambda user_id: asyncio.Lock())


@pytest.mark.asyncio
async def test_daily_cap_holds_when_tracker_read_races_another_worker(file_session_factory, monkeypatch) -> None:
    _unshared_user_locks(monkeypatch)
    clock = FrozenClock()
    user_id = await _seed_user(file_session_factory, "racer@example.com")
    async with file_session_factory() as session:
        engine = PointsEngine(session, clock=clock)
        await engine.catalog.create_rule("photo_upload", 10, max_daily_occurrences=2)
        assert (await engine.earn_points(user_id, "photo_upload")).success is True

    tracker_read = asyncio.Event()
    other_committed = asyncio.Event()

    async with file_session_factory() as slow_session, file_session_factory() as fast_session:
        slow = PointsEngine(slow_session, clock=clock)
        fast = PointsEngine(fast_session, clock=clock)
        original_get_for_day = slow.tracker.get_for_day

        async def get_for_day_then_stall(*args, **kwargs):
            entry = await original_get_for_day(*args, **kwargs)
            if not tracker_read.is_set():
                tracker_read.set()
                await other_committed.wait()
            return entry

        monkeypatch.setattr(slow.tracker, "get_for_day", get_for_day_then_stall)

        slow_task = asyncio.create_task(slow.earn_points(user_id, "photo_upload"))
        await tracker_read.wait()
        fast_result = await fast.earn_points(user_id, "photo_upload")
        other_committed.set()
        slow_result = await slow_task

    assert fast_result.success is True
    assert slow_result.success is False
    assert slow_result.message == DAILY_LIMIT_MESSAGE

    async with file_session_factory() as session:
        engine = PointsEngine(session, clock=clock)
        ledger = await engine.get_points(user_id)
        assert Decimal(ledger.total_points) == Decimal("20")
        assert ledger.transaction_count == 2
        assert await engine.tracker.count_today(user_id, "photo_upload", clock()) == 2

    assert get_ledger_store().snapshot().conflicts["earn"] == 1


@pytest.mark.asyncio
async def test_first_earn_insert_race_is_retried(file_session_factory, monkeypatch) -> None:
    _unshared_user_locks(monkeypatch)
    clock = FrozenClock()
    user_id = await _seed_user(file_session_factory, "newcomer@example.com")
    async with file_session_factory() as session:
        await PointCatalog(session).create_rule("review_submitted", 20)

    ledger_missing = asyncio.Event()
    other_committed = asyncio.Event()

    async with file_session_factory() as slow_session, file_session_factory() as fast_session:
        slow = PointsEngine(slow_session, clock=clock)
        fast = PointsEngine(fast_session, clock=clock)
        original_load = slow._load_ledger

        async def load_then_stall(*args, **kwargs):
            ledger = await original_load(*args, **kwargs)
            if not ledger_missing.is_set():
                ledger_missing.set()
                await other_committed.wait()
            return ledger

        monkeypatch.setattr(slow, "_load_ledger", load_then_stall)

        slow_task = asyncio.create_task(slow.earn_points(user_id, "review_submitted"))
        await ledger_missing.wait()
        fast_result = await fast.earn_points(user_id, "review_submitted")
        other_committed.set()
        slow_result = await slow_task

    assert fast_result.success is True
    assert slow_result.success is True

    async with file_session_factory() as session:
        engine = PointsEngine(session, clock=clock)
        ledger = await engine.get_points(user_id)
        assert Decimal(ledger.total_points) == Decimal("40")
        assert (await engine.reconcile(user_id)).is_consistent is True

    snapshot = get_ledger_store().snapshot()
    assert snapshot.conflicts["earn"] == 1
    assert snapshot.mutations["earn"] == 2


async def _registered_referral(session_factory, clock):
    referrer_id = await _seed_user(session_factory, "host@example.com")
    referred_id = await _seed_user(session_factory, "guest@example.com")
    async with session_factory() as session:
        service = ReferralService(session, clock=clock)
        code = (await service.get_or_create_code(referrer_id)).referral_code
        referral_id = (await service.use_code(code, referred_id)).referral.id
    return referrer_id, referral_id


@pytest.mark.asyncio
async def test_completion_losing_to_expiry_sweep_reports_expiry(file_session_factory, monkeypatch) -> None:
    clock = FrozenClock()
    referrer_id, referral_id = await _registered_referral(file_session_factory, clock)
    after_deadline = FrozenClock(clock() + timedelta(days=settings.referral_expiry_days + 1))

    async with file_session_factory() as session:
        service = ReferralService(session, clock=clock)
        original_quote = service.rewards.quote

        async def quote_after_sweep(*args, **kwargs):
            async with file_session_factory() as sweeper:
                assert await ReferralService(sweeper, clock=after_deadline).process_expired_referrals() == 1
            return await original_quote(*args, **kwargs)

        monkeypatch.setattr(service.rewards, "quote", quote_after_sweep)

        with pytest.raises(ReferralExpiredError):
            await service.complete_referral(referral_id)

    async with file_session_factory() as session:
        service = ReferralService(session, clock=clock)
        assert (await service.get_referral(referral_id)).status == ReferralStatus.EXPIRED
        assert (await service.get_stats(referrer_id)).successful_referrals == 0


@pytest.mark.asyncio
async def test_completion_losing_to_cancellation_reports_transition(file_session_factory, monkeypatch) -> None:
    clock = FrozenClock()
    _, referral_id = await _registered_referral(file_session_factory, clock)

    async with file_session_factory() as session:
        service = ReferralService(session, clock=clock)
        original_quote = service.rewards.quote

        async def quote_after_cancel(*args, **kwargs):
            async with file_session_factory() as other:
                await ReferralService(other, clock=clock).cancel_referral(referral_id, reason="withdrawn")
            return await original_quote(*args, **kwargs)

        monkeypatch.setattr(service.rewards, "quote", quote_after_cancel)

        with pytest.raises(InvalidReferralTransitionError) as excinfo:
            await service.complete_referral(referral_id)

    assert excinfo.value.current_status == ReferralStatus.CANCELLED
    assert excinfo.value.requested_status == ReferralStatus.COMPLETED
