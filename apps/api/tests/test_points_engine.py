from datetime import timedelta
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import func, select, update

from rewards_api.core.settings import settings
from rewards_api.models.points import PointTransaction, PointTransactionType, UserDailyPoints
from rewards_api.models.user import User
from rewards_api.observability.ledger import get_ledger_store
from rewards_api.services.points import (
    InsufficientPointsError,
    InvalidPointsAmountError,
    LedgerUserNotFoundError,
    NegativeBalanceError,
    PointsEngine,
    UserPointsNotFoundError,
    decode_sequence_cursor,
    encode_sequence_cursor,
    points_tier,
)
from rewards_api.services.points.engine import DAILY_LIMIT_MESSAGE, MILESTONE_REFERENCE_TYPE, TOTAL_LIMIT_MESSAGE
from tests.helpers import FrozenClock


async def _create_user(session, email: str, **fields):
    user = User(email=email, **fields)
    session.add(user)
    await session.commit()
    return user.id


async def _transaction_count(session, user_id) -> int:
    return int(
        await session.scalar(select(func.count(PointTransaction.id)).where(PointTransaction.user_id == user_id))
    )


@pytest.mark.asyncio
async def test_earn_points_applies_rule_and_logs_transaction(session_factory) -> None:
    async with session_factory() as session:
        clock = FrozenClock()
        engine = PointsEngine(session, clock=clock)
        user_id = await _create_user(session, "reviewer@example.com")
        await engine.catalog.create_rule("review_submitted", 20, description="Review submitted")

        result = await engine.earn_points(user_id, "review_submitted", reference_type="review", reference_id="r-1")

        assert result.success is True
        assert result.points_earned == Decimal("20")
        assert result.new_balance == Decimal("20")
        assert result.multiplier_applied == Decimal("1")

        ledger = await engine.get_points(user_id)
        assert ledger is not None
        assert Decimal(ledger.total_points) == Decimal("20")
        assert Decimal(ledger.available_points) == Decimal("20")
        assert Decimal(ledger.lifetime_points) == Decimal("20")

        transactions = (
            await session.execute(select(PointTransaction).where(PointTransaction.user_id == user_id))
        ).scalars().all()
        assert len(transactions) == 1
        transaction = transactions[0]
        assert transaction.transaction_type == PointTransactionType.EARN
        assert Decimal(transaction.balance_after) == Decimal("20")
        assert transaction.reference_type == "review"
        assert transaction.reference_id == "r-1"
        assert transaction.sequence == 1

        tracker_row = await engine.tracker.get_for_day(user_id, "review_submitted", clock().date())
        assert tracker_row is not None
        assert tracker_row.occurrence_count == 1

    assert get_ledger_store().snapshot().earn["awarded"] == 1


@pytest.mark.asyncio
async def test_earn_points_applies_active_multiplier(session_factory) -> None:
    async with session_factory() as session:
        clock = FrozenClock()
        engine = PointsEngine(session, clock=clock)
        user_id = await _create_user(session, "weekend@example.com")
        await engine.catalog.create_rule("review_submitted", 20)
        await engine.catalog.create_multiplier(
            "Weekend Bonus",
            "2.0",
            starts_at=clock() - timedelta(days=1),
            ends_at=clock() + timedelta(days=1),
            action_types=["review_submitted"],
        )

        result = await engine.earn_points(user_id, "review_submitted")

        assert result.success is True
        assert result.points_earned == Decimal("40")
        assert result.multiplier_applied == Decimal("2.0")


@pytest.mark.asyncio
async def test_multiplier_result_is_truncated(session_factory) -> None:
    async with session_factory() as session:
        clock = FrozenClock()
        engine = PointsEngine(session, clock=clock)
        user_id = await _create_user(session, "truncate@example.com")
        await engine.catalog.create_rule("photo_upload", 15)
        await engine.catalog.create_multiplier(
            "Launch week",
            "1.5",
            starts_at=clock() - timedelta(hours=1),
            ends_at=clock(),
        )

        result = await engine.earn_points(user_id, "photo_upload")

        assert result.points_earned == Decimal("22")
        assert result.multiplier_applied == Decimal("1.5")


@pytest.mark.asyncio
async def test_multiplier_ignored_for_ineligible_rule_and_after_window(session_factory) -> None:
    async with session_factory() as session:
        clock = FrozenClock()
        engine = PointsEngine(session, clock=clock)
        user_id = await _create_user(session, "ineligible@example.com")
        await engine.catalog.create_rule("profile_complete", 10, multiplier_eligible=False)
        await engine.catalog.create_rule("review_submitted", 10)
        await engine.catalog.create_multiplier(
            "Everything",
            "3",
            starts_at=clock() - timedelta(days=2),
            ends_at=clock() - timedelta(seconds=1),
        )
        await engine.catalog.create_multiplier(
            "Still running",
            "2",
            starts_at=clock() - timedelta(days=2),
            ends_at=clock() + timedelta(days=2),
        )

        ineligible = await engine.earn_points(user_id, "profile_complete")
        eligible = await engine.earn_points(user_id, "review_submitted")

        assert ineligible.points_earned == Decimal("10")
        assert ineligible.multiplier_applied == Decimal("1")
        assert eligible.points_earned == Decimal("20")
        assert eligible.multiplier_applied == Decimal("2")


@pytest.mark.asyncio
async def test_earn_points_without_active_rule_has_no_side_effects(session_factory) -> None:
    async with session_factory() as session:
        engine = PointsEngine(session, clock=FrozenClock())
        user_id = await _create_user(session, "norule@example.com")
        rule = await engine.catalog.create_rule("retired_action", 50)
        await engine.catalog.set_rule_active(rule.id, False)

        missing = await engine.earn_points(user_id, "unknown_action")
        inactive = await engine.earn_points(user_id, "retired_action")

        assert missing.success is False
        assert missing.message == "No active rule for action 'unknown_action'"
        assert missing.points_earned == Decimal("0")
        assert missing.multiplier_applied == Decimal("1")
        assert inactive.success is False
        assert await engine.get_points(user_id) is None
        assert await _transaction_count(session, user_id) == 0

    snapshot = get_ledger_store().snapshot()
    assert snapshot.earn["no_rule"] == 2


@pytest.mark.asyncio
async def test_daily_limit_blocks_until_next_utc_day(session_factory) -> None:
    async with session_factory() as session:
        clock = FrozenClock()
        engine = PointsEngine(session, clock=clock)
        user_id = await _create_user(session, "daily@example.com")
        await engine.catalog.create_rule("daily_checkin", 5, max_daily_occurrences=2)

        first = await engine.earn_points(user_id, "daily_checkin")
        second = await engine.earn_points(user_id, "daily_checkin")
        third = await engine.earn_points(user_id, "daily_checkin")

        assert first.success and second.success
        assert third.success is False
        assert third.message == DAILY_LIMIT_MESSAGE
        ledger = await engine.get_points(user_id)
        assert Decimal(ledger.total_points) == Decimal("10")

        clock.advance(days=1)
        next_day = await engine.earn_points(user_id, "daily_checkin")
        assert next_day.success is True
        assert next_day.new_balance == Decimal("15")


@pytest.mark.asyncio
async def test_cooldown_reports_remaining_minutes(session_factory) -> None:
    async with session_factory() as session:
        clock = FrozenClock()
        engine = PointsEngine(session, clock=clock)
        user_id = await _create_user(session, "cooldown@example.com")
        await engine.catalog.create_rule("share_listing", 3, cooldown_minutes=30)

        assert (await engine.earn_points(user_id, "share_listing")).success is True

        clock.advance(minutes=10)
        blocked = await engine.earn_points(user_id, "share_listing")
        assert blocked.success is False
        assert blocked.message == "Please wait 20 minutes before earning points for this action again."

        clock.advance(minutes=19, seconds=30)
        almost = await engine.earn_points(user_id, "share_listing")
        assert almost.message == "Please wait 1 minute before earning points for this action again."

        clock.advance(seconds=30)
        cleared = await engine.earn_points(user_id, "share_listing")
        assert cleared.success is True
        assert cleared.new_balance == Decimal("6")


@pytest.mark.asyncio
async def test_cooldown_spans_midnight(session_factory) -> None:
    async with session_factory() as session:
        clock = FrozenClock(FrozenClock().now.replace(hour=23, minute=50))
        engine = PointsEngine(session, clock=clock)
        user_id = await _create_user(session, "midnight@example.com")
        await engine.catalog.create_rule("share_listing", 3, cooldown_minutes=30)

        assert (await engine.earn_points(user_id, "share_listing")).success is True
        clock.advance(minutes=15)

        blocked = await engine.earn_points(user_id, "share_listing")
        assert blocked.success is False
        assert "15 minutes" in blocked.message


@pytest.mark.asyncio
async def test_total_limit_caps_lifetime_occurrences(session_factory) -> None:
    async with session_factory() as session:
        clock = FrozenClock()
        engine = PointsEngine(session, clock=clock)
        user_id = await _create_user(session, "total@example.com")
        await engine.catalog.create_rule("profile_complete", 100, max_total_occurrences=1)

        assert (await engine.earn_points(user_id, "profile_complete")).success is True
        clock.advance(days=3)
        again = await engine.earn_points(user_id, "profile_complete")

        assert again.success is False
        assert again.message == TOTAL_LIMIT_MESSAGE


@pytest.mark.asyncio
async def test_redeem_points_boundaries(session_factory) -> None:
    async with session_factory() as session:
        engine = PointsEngine(session, clock=FrozenClock())
        user_id = await _create_user(session, "redeemer@example.com")
        await engine.award_points(user_id, 30, "Welcome grant")

        with pytest.raises(InsufficientPointsError) as excinfo:
            await engine.redeem_points(user_id, 31, "Gift card")
        assert excinfo.value.requested == Decimal("31")
        assert excinfo.value.available == Decimal("30")
        assert "Requested: 31, Available: 30" in str(excinfo.value)
        assert await _transaction_count(session, user_id) == 1

        transaction = await engine.redeem_points(user_id, 30, "Gift card", reference_type="reward", reference_id="gc-1")

        assert transaction.transaction_type == PointTransactionType.REDEEM
        assert Decimal(transaction.points) == Decimal("-30")
        assert Decimal(transaction.balance_after) == Decimal("0")
        ledger = await engine.get_points(user_id)
        assert Decimal(ledger.available_points) == Decimal("0")
        assert Decimal(ledger.total_points) == Decimal("0")
        assert Decimal(ledger.redeemed_points) == Decimal("30")
        assert Decimal(ledger.lifetime_points) == Decimal("30")


@pytest.mark.asyncio
async def test_redeem_scenario_reports_requested_and_available(session_factory) -> None:
    async with session_factory() as session:
        engine = PointsEngine(session, clock=FrozenClock())
        user_id = await _create_user(session, "short@example.com")
        await engine.award_points(user_id, 30, "Grant")

        with pytest.raises(InsufficientPointsError) as excinfo:
            await engine.redeem_points(user_id, 50, "Too much")

        assert excinfo.value.requested == Decimal("50")
        assert excinfo.value.available == Decimal("30")
        ledger = await engine.get_points(user_id)
        assert Decimal(ledger.available_points) == Decimal("30")


@pytest.mark.asyncio
async def test_redeem_requires_existing_ledger_and_positive_amount(session_factory) -> None:
    async with session_factory() as session:
        engine = PointsEngine(session, clock=FrozenClock())
        user_id = await _create_user(session, "noledger@example.com")

        with pytest.raises(UserPointsNotFoundError):
            await engine.redeem_points(user_id, 10, "Nothing to spend")
        with pytest.raises(InvalidPointsAmountError):
            await engine.redeem_points(user_id, 0, "Zero")
        with pytest.raises(InvalidPointsAmountError):
            await engine.award_points(user_id, -5, "Negative")


@pytest.mark.asyncio
async def test_adjust_points_guards_zero_and_negative_outcomes(session_factory) -> None:
    async with session_factory() as session:
        engine = PointsEngine(session, clock=FrozenClock())
        user_id = await _create_user(session, "adjust@example.com")

        credit = await engine.adjust_points(user_id, 25, "Support credit")
        assert credit.transaction_type == PointTransactionType.ADJUST
        assert Decimal(credit.balance_after) == Decimal("25")

        with pytest.raises(InvalidPointsAmountError):
            await engine.adjust_points(user_id, 0, "No-op")
        with pytest.raises(NegativeBalanceError):
            await engine.adjust_points(user_id, -26, "Overcorrection")

        debit = await engine.adjust_points(user_id, -10, "Clawback")
        assert Decimal(debit.balance_after) == Decimal("15")

        ledger = await engine.get_points(user_id)
        assert Decimal(ledger.total_points) == Decimal("15")
        assert Decimal(ledger.available_points) == Decimal("15")
        assert Decimal(ledger.lifetime_points) == Decimal("0")
        assert Decimal(ledger.redeemed_points) == Decimal("0")


@pytest.mark.asyncio
async def test_reconcile_detects_tampered_snapshots(session_factory) -> None:
    async with session_factory() as session:
        engine = PointsEngine(session, clock=FrozenClock())
        user_id = await _create_user(session, "audit@example.com")
        await engine.award_points(user_id, 100, "Grant")
        await engine.redeem_points(user_id, 40, "Spend")
        await engine.adjust_points(user_id, 5, "Goodwill")

        report = await engine.reconcile(user_id)
        assert report.is_consistent is True
        assert report.transaction_count == 3
        assert report.replayed_total == Decimal("65")

        await session.execute(
            update(PointTransaction)
            .where(PointTransaction.user_id == user_id, PointTransaction.sequence == 2)
            .values(balance_after=Decimal("70"))
        )
        await session.commit()

        tampered = await engine.reconcile(user_id)
        assert tampered.is_consistent is False
        assert [mismatch.sequence for mismatch in tampered.mismatches] == [2]
        assert tampered.mismatches[0].expected_balance == Decimal("60")

        with pytest.raises(UserPointsNotFoundError):
            await engine.reconcile(uuid4())


@pytest.mark.asyncio
async def test_transaction_history_paginates_newest_first(session_factory) -> None:
    async with session_factory() as session:
        clock = FrozenClock()
        engine = PointsEngine(session, clock=clock)
        user_id = await _create_user(session, "history@example.com")
        for amount in (1, 2, 3, 4, 5):
            clock.advance(minutes=1)
            await engine.award_points(user_id, amount, f"Grant {amount}")
        await engine.redeem_points(user_id, 3, "Spend")

        first_page, cursor = await engine.list_transactions(user_id, limit=2)
        assert [tx.sequence for tx in first_page] == [6, 5]
        assert cursor is not None

        token = encode_sequence_cursor(*cursor)
        assert decode_sequence_cursor(token) == cursor

        second_page, cursor = await engine.list_transactions(user_id, limit=2, cursor=decode_sequence_cursor(token))
        assert [tx.sequence for tx in second_page] == [4, 3]

        last_page, cursor = await engine.list_transactions(user_id, limit=10, cursor=cursor)
        assert [tx.sequence for tx in last_page] == [2, 1]
        assert cursor is None

        redeems, _ = await engine.list_transactions(user_id, transaction_types=[PointTransactionType.REDEEM])
        assert [tx.sequence for tx in redeems] == [6]


@pytest.mark.asyncio
async def test_transactions_in_range_sums_flows(session_factory) -> None:
    async with session_factory() as session:
        clock = FrozenClock()
        engine = PointsEngine(session, clock=clock)
        user_id = await _create_user(session, "range@example.com")
        start = clock()
        await engine.award_points(user_id, 50, "Grant")
        clock.advance(hours=1)
        await engine.redeem_points(user_id, 20, "Spend")
        clock.advance(days=2)
        await engine.award_points(user_id, 5, "Outside window")

        window = await engine.transactions_in_range(user_id, start=start, end=start + timedelta(hours=2))

        assert len(window.transactions) == 2
        assert window.earned == Decimal("50")
        assert window.deducted == Decimal("20")


@pytest.mark.asyncio
async def test_record_login_tracks_streaks(session_factory) -> None:
    async with session_factory() as session:
        clock = FrozenClock()
        engine = PointsEngine(session, clock=clock)
        user_id = await _create_user(session, "login@example.com")
        await engine.catalog.create_rule("daily_login", 5, max_daily_occurrences=1)

        first = await engine.record_login(user_id)
        assert (first.current_streak, first.longest_streak) == (1, 1)
        assert first.earn.success is True
        assert first.earn.points_earned == Decimal("5")

        repeat = await engine.record_login(user_id)
        assert repeat.current_streak == 1
        assert repeat.earn.success is False
        assert repeat.earn.message == DAILY_LIMIT_MESSAGE

        clock.advance(days=1)
        second_day = await engine.record_login(user_id)
        assert (second_day.current_streak, second_day.longest_streak) == (2, 2)

        clock.advance(days=2)
        after_gap = await engine.record_login(user_id)
        assert (after_gap.current_streak, after_gap.longest_streak) == (1, 2)

        ledger = await engine.get_points(user_id)
        assert Decimal(ledger.total_points) == Decimal("15")


@pytest.mark.asyncio
async def test_summary_reports_tier_rank_and_recent_activity(session_factory) -> None:
    async with session_factory() as session:
        engine = PointsEngine(session, clock=FrozenClock())
        leader_id = await _create_user(session, "leader@example.com", username="leader")
        member_id = await _create_user(session, "member@example.com", username="member")
        await engine.award_points(leader_id, 6000, "Big grant")
        await engine.award_points(member_id, 1200, "Grant")
        await engine.redeem_points(member_id, 100, "Spend")

        summary = await engine.get_summary(member_id, recent=1)

        assert summary.total_points == Decimal("1100")
        assert summary.available_points == Decimal("1100")
        assert summary.lifetime_points == Decimal("1200")
        assert summary.redeemed_points == Decimal("100")
        assert summary.tier == "silver"
        assert summary.rank == 2
        assert len(summary.recent_transactions) == 1
        assert summary.recent_transactions[0].transaction_type == PointTransactionType.REDEEM

        newcomer_id = await _create_user(session, "newcomer@example.com")
        fresh = await engine.get_summary(newcomer_id)
        assert fresh.total_points == Decimal("0")
        assert fresh.tier == "bronze"
        assert fresh.rank == 3
        assert fresh.recent_transactions == []


@pytest.mark.asyncio
async def test_ensure_points_creates_ledger_once(session_factory) -> None:
    async with session_factory() as session:
        engine = PointsEngine(session, clock=FrozenClock())
        user_id = await _create_user(session, "lazy@example.com")

        first = await engine.ensure_points(user_id)
        second = await engine.ensure_points(user_id)

        assert first.id == second.id
        assert Decimal(first.total_points) == Decimal("0")


@pytest.mark.asyncio
async def test_award_best_effort_reports_failures(session_factory) -> None:
    async with session_factory() as session:
        engine = PointsEngine(session, clock=FrozenClock())
        user_id = await _create_user(session, "besteffort@example.com")

        ok = await engine.award_best_effort(user_id, 10, "Bonus", reference_type="referral")
        failed = await engine.award_best_effort(user_id, 0, "Nothing", reference_type="referral")

        assert ok.success is True
        assert ok.points == Decimal("10")
        assert failed.success is False
        assert failed.error

    assert get_ledger_store().snapshot().award_failures["referral"] == 1


def test_points_tier_thresholds() -> None:
    assert points_tier(Decimal("0")) == "bronze"
    assert points_tier(Decimal("999")) == "bronze"
    assert points_tier(Decimal("1000")) == "silver"
    assert points_tier(Decimal("5000")) == "gold"
    assert points_tier(Decimal("10000")) == "platinum"


@pytest.mark.asyncio
async def test_tracker_rows_only_written_for_successful_earns(session_factory) -> None:
    async with session_factory() as session:
        engine = PointsEngine(session, clock=FrozenClock())
        user_id = await _create_user(session, "tracker@example.com")
        await engine.catalog.create_rule("daily_login", 5, max_daily_occurrences=1)

        await engine.earn_points(user_id, "daily_login")
        await engine.earn_points(user_id, "daily_login")

        rows = (await session.execute(select(UserDailyPoints))).scalars().all()
        assert len(rows) == 1
        assert rows[0].occurrence_count == 1
        assert Decimal(rows[0].points_earned) == Decimal("5")


@pytest.mark.asyncio
async def test_only_applied_earns_count_as_mutations(session_factory) -> None:
    async with session_factory() as session:
        engine = PointsEngine(session, clock=FrozenClock())
        user_id = await _create_user(session, "counted@example.com")
        await engine.catalog.create_rule("daily_login", 5, max_daily_occurrences=1)

        assert (await engine.earn_points(user_id, "daily_login")).success is True
        assert (await engine.earn_points(user_id, "daily_login")).success is False
        assert (await engine.earn_points(user_id, "unknown_action")).success is False

    snapshot = get_ledger_store().snapshot()
    assert snapshot.mutations == {"earn": 1}
    assert snapshot.earn == {"awarded": 1, "daily_limit": 1, "no_rule": 1}


@pytest.mark.asyncio
async def test_earn_for_unknown_user_fails_without_retrying(fk_session_factory) -> None:
    async with fk_session_factory() as session:
        engine = PointsEngine(session, clock=FrozenClock())
        await engine.catalog.create_rule("review_submitted", 20)
        missing_user = uuid4()

        with pytest.raises(LedgerUserNotFoundError) as excinfo:
            await engine.earn_points(missing_user, "review_submitted")

        assert excinfo.value.user_id == missing_user
        assert await engine.get_points(missing_user) is None

    snapshot = get_ledger_store().snapshot()
    assert snapshot.conflicts == {}
    assert "earn" not in snapshot.mutations


@pytest.mark.asyncio
async def test_login_streak_milestone_is_granted_once(session_factory, monkeypatch) -> None:
    monkeypatch.setattr(settings, "streak_milestone_days", 3)
    monkeypatch.setattr(settings, "streak_milestone_points", 40)
    async with session_factory() as session:
        clock = FrozenClock()
        engine = PointsEngine(session, clock=clock)
        user_id = await _create_user(session, "streaker@example.com")
        await engine.catalog.create_rule("daily_login", 5, max_daily_occurrences=1)

        logins = []
        for _ in range(4):
            logins.append(await engine.record_login(user_id))
            clock.advance(days=1)

        assert [login.current_streak for login in logins] == [1, 2, 3, 4]
        assert logins[1].milestone is None
        milestone = logins[2].milestone
        assert milestone is not None
        assert milestone.points == Decimal("40")
        assert milestone.reference_type == MILESTONE_REFERENCE_TYPE
        assert milestone.reference_id == "login_streak_3"
        assert milestone.description == "3-day login streak milestone bonus"
        assert logins[3].milestone is None
        assert await engine.check_streak_milestone(user_id) is None

        ledger = await engine.get_points(user_id)
        assert Decimal(ledger.total_points) == Decimal("60")
        assert (await engine.reconcile(user_id)).is_consistent is True

    assert get_ledger_store().snapshot().mutations["milestone"] == 1


@pytest.mark.asyncio
async def test_review_and_helpful_vote_milestones_award_once(session_factory) -> None:
    async with session_factory() as session:
        engine = PointsEngine(session, clock=FrozenClock())
        user_id = await _create_user(session, "contributor@example.com")

        assert await engine.check_review_milestone(user_id, settings.review_milestone_count - 1) is None
        assert await engine.get_points(user_id) is None

        review = await engine.check_review_milestone(user_id, settings.review_milestone_count)
        assert review is not None
        assert review.points == Decimal(settings.review_milestone_points)
        assert review.reference_id == f"reviews_{settings.review_milestone_count}"
        assert await engine.check_review_milestone(user_id, settings.review_milestone_count + 1) is None

        votes = await engine.check_helpful_vote_milestone(user_id, settings.helpful_votes_milestone_count)
        assert votes is not None
        assert votes.reference_id == f"helpful_votes_{settings.helpful_votes_milestone_count}"
        assert await engine.check_helpful_vote_milestone(user_id, settings.helpful_votes_milestone_count) is None

        ledger = await engine.get_points(user_id)
        expected = Decimal(settings.review_milestone_points + settings.helpful_votes_milestone_points)
        assert Decimal(ledger.total_points) == expected
        assert await _transaction_count(session, user_id) == 2
