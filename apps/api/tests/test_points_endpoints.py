from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest
from httpx import ASGITransport, AsyncClient

from rewards_api.core.settings import settings
from rewards_api.models.user import User


async def _create_user(session_factory, email: str, username: str | None = None):
    async with session_factory() as session:
        user = User(email=email, username=username)
        session.add(user)
        await session.commit()
        return user.id


def _client(app) -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


@pytest.mark.asyncio
async def test_earn_redeem_and_summary_flow(app_with_db) -> None:
    app, session_factory = app_with_db
    user_id = await _create_user(session_factory, "api-member@example.com", "member")

    async with _client(app) as client:
        rule_response = await client.post(
            "/api/v1/points/rules",
            json={"actionType": "review_submitted", "pointValue": 20, "description": "Review submitted"},
        )
        assert rule_response.status_code == 201
        assert rule_response.json()["actionType"] == "review_submitted"

        duplicate = await client.post("/api/v1/points/rules", json={"actionType": "review_submitted", "pointValue": 5})
        assert duplicate.status_code == 409

        earn = await client.post(f"/api/v1/points/users/{user_id}/earn", json={"actionType": "review_submitted"})
        assert earn.status_code == 200
        earn_payload = earn.json()
        assert earn_payload["success"] is True
        assert earn_payload["pointsEarned"] == 20
        assert earn_payload["newBalance"] == 20
        assert earn_payload["multiplierApplied"] == 1

        rejected = await client.post(f"/api/v1/points/users/{user_id}/earn", json={"actionType": "unknown"})
        assert rejected.status_code == 200
        assert rejected.json()["success"] is False
        assert rejected.json()["message"] == "No active rule for action 'unknown'"

        overdraw = await client.post(
            f"/api/v1/points/users/{user_id}/redeem",
            json={"points": 50, "description": "Gift card"},
        )
        assert overdraw.status_code == 409
        assert "Requested: 50, Available: 20" in overdraw.json()["detail"]

        redeem = await client.post(
            f"/api/v1/points/users/{user_id}/redeem",
            json={"points": 15, "description": "Sticker pack", "referenceType": "reward", "referenceId": "sticker"},
        )
        assert redeem.status_code == 201
        assert redeem.json()["transactionType"] == "redeem"
        assert redeem.json()["points"] == -15
        assert redeem.json()["balanceAfter"] == 5

        summary = await client.get(f"/api/v1/points/users/{user_id}/summary")
        assert summary.status_code == 200
        payload = summary.json()
        assert payload["totalPoints"] == 5
        assert payload["availablePoints"] == 5
        assert payload["lifetimePoints"] == 20
        assert payload["redeemedPoints"] == 15
        assert payload["tier"] == "bronze"
        assert payload["rank"] == 1
        assert [tx["transactionType"] for tx in payload["recentTransactions"]] == ["redeem", "earn"]


@pytest.mark.asyncio
async def test_redeem_without_ledger_returns_404(app_with_db) -> None:
    app, _ = app_with_db

    async with _client(app) as client:
        response = await client.post(
            f"/api/v1/points/users/{uuid4()}/redeem",
            json={"points": 5, "description": "Nothing there"},
        )

    assert response.status_code == 404


@pytest.mark.asyncio
async def test_adjust_validation_and_negative_guard(app_with_db) -> None:
    app, session_factory = app_with_db
    user_id = await _create_user(session_factory, "adjust@example.com")

    async with _client(app) as client:
        zero = await client.post(
            f"/api/v1/points/users/{user_id}/adjust",
            json={"adjustment": 0, "reason": "No-op"},
        )
        assert zero.status_code == 422

        credit = await client.post(
            f"/api/v1/points/users/{user_id}/adjust",
            json={"adjustment": 12.5, "reason": "Support credit"},
        )
        assert credit.status_code == 201
        assert credit.json()["transactionType"] == "adjust"
        assert credit.json()["balanceAfter"] == 12.5

        too_far = await client.post(
            f"/api/v1/points/users/{user_id}/adjust",
            json={"adjustment": -20, "reason": "Clawback"},
        )
        assert too_far.status_code == 409

        reconcile = await client.get(f"/api/v1/points/users/{user_id}/reconcile")
        assert reconcile.status_code == 200
        assert reconcile.json()["consistent"] is True
        assert reconcile.json()["transactionCount"] == 1


@pytest.mark.asyncio
async def test_transaction_history_pagination(app_with_db) -> None:
    app, session_factory = app_with_db
    user_id = await _create_user(session_factory, "history@example.com")

    async with _client(app) as client:
        for amount in (10, 20, 30):
            response = await client.post(
                f"/api/v1/points/users/{user_id}/award",
                json={"points": amount, "description": f"Grant {amount}"},
            )
            assert response.status_code == 201

        first = await client.get(f"/api/v1/points/users/{user_id}/transactions", params={"limit": 2})
        assert first.status_code == 200
        first_payload = first.json()
        assert [tx["points"] for tx in first_payload["transactions"]] == [30, 20]
        assert first_payload["nextCursor"]

        second = await client.get(
            f"/api/v1/points/users/{user_id}/transactions",
            params={"limit": 2, "cursor": first_payload["nextCursor"]},
        )
        assert [tx["points"] for tx in second.json()["transactions"]] == [10]
        assert second.json()["nextCursor"] is None

        filtered = await client.get(f"/api/v1/points/users/{user_id}/transactions", params={"types": "redeem"})
        assert filtered.json()["transactions"] == []

        bad_cursor = await client.get(f"/api/v1/points/users/{user_id}/transactions", params={"cursor": "not-a-cursor"})
        assert bad_cursor.status_code == 400

        bad_type = await client.get(f"/api/v1/points/users/{user_id}/transactions", params={"types": "refund"})
        assert bad_type.status_code == 400

        start = (datetime.now(timezone.utc) - timedelta(hours=1)).isoformat()
        end = (datetime.now(timezone.utc) + timedelta(hours=1)).isoformat()
        window = await client.get(
            f"/api/v1/points/users/{user_id}/transactions/range",
            params={"start": start, "end": end},
        )
        assert window.status_code == 200
        assert window.json()["earned"] == 60
        assert window.json()["deducted"] == 0

        backwards = await client.get(
            f"/api/v1/points/users/{user_id}/transactions/range",
            params={"start": end, "end": start},
        )
        assert backwards.status_code == 400


@pytest.mark.asyncio
async def test_leaderboard_and_rank(app_with_db) -> None:
    app, session_factory = app_with_db
    leader_id = await _create_user(session_factory, "leader@example.com", "leader")
    runner_up_id = await _create_user(session_factory, "runner@example.com", "runner")

    async with _client(app) as client:
        await client.post(f"/api/v1/points/users/{leader_id}/award", json={"points": 300, "description": "Grant"})
        await client.post(f"/api/v1/points/users/{runner_up_id}/award", json={"points": 100, "description": "Grant"})

        board = await client.get("/api/v1/points/leaderboard", params={"limit": 5})
        assert board.status_code == 200
        assert [(entry["rank"], entry["username"]) for entry in board.json()] == [(1, "leader"), (2, "runner")]

        rank = await client.get(f"/api/v1/points/users/{runner_up_id}/rank")
        assert rank.json() == {"userId": str(runner_up_id), "rank": 2}

        missing = await client.get(f"/api/v1/points/users/{uuid4()}/rank")
        assert missing.json()["rank"] is None


@pytest.mark.asyncio
async def test_login_endpoint_reports_streak(app_with_db) -> None:
    app, session_factory = app_with_db
    user_id = await _create_user(session_factory, "login@example.com")

    async with _client(app) as client:
        await client.post(
            "/api/v1/points/rules",
            json={"actionType": "daily_login", "pointValue": 5, "maxDailyOccurrences": 1},
        )
        first = await client.post(f"/api/v1/points/users/{user_id}/login")
        second = await client.post(f"/api/v1/points/users/{user_id}/login")

    assert first.status_code == 200
    assert first.json()["currentStreak"] == 1
    assert first.json()["earn"]["success"] is True
    assert first.json()["milestone"] is None
    assert second.json()["earn"]["success"] is False
    assert second.json()["earn"]["message"] == "Daily limit reached for this action."


@pytest.mark.asyncio
async def test_milestone_endpoints_award_once(app_with_db) -> None:
    app, session_factory = app_with_db
    user_id = await _create_user(session_factory, "milestones@example.com")
    base = f"/api/v1/points/users/{user_id}/milestones"

    async with _client(app) as client:
        early = await client.post(f"{base}/reviews", params={"totalReviews": 3})
        first = await client.post(f"{base}/reviews", params={"totalReviews": settings.review_milestone_count})
        repeat = await client.post(f"{base}/reviews", params={"totalReviews": settings.review_milestone_count})
        streak = await client.post(f"{base}/streak")
        invalid = await client.post(f"{base}/helpful-votes", params={"totalHelpfulVotes": -1})
        summary = await client.get(f"/api/v1/points/users/{user_id}/summary")

    assert early.status_code == 200
    assert early.json() == {"awarded": False, "transaction": None}
    assert first.json()["awarded"] is True
    assert first.json()["transaction"]["referenceType"] == "milestone"
    assert first.json()["transaction"]["points"] == settings.review_milestone_points
    assert repeat.json()["awarded"] is False
    assert streak.json()["awarded"] is False
    assert invalid.status_code == 422
    assert summary.json()["totalPoints"] == settings.review_milestone_points


@pytest.mark.asyncio
async def test_rule_and_multiplier_management(app_with_db) -> None:
    app, _ = app_with_db
    now = datetime.now(timezone.utc)

    async with _client(app) as client:
        created = await client.post(
            "/api/v1/points/rules",
            json={"actionType": "photo_upload", "pointValue": 5, "cooldownMinutes": 10},
        )
        rule_id = created.json()["id"]

        patched = await client.patch(
            f"/api/v1/points/rules/{rule_id}",
            json={"pointValue": 7, "cooldownMinutes": None, "isActive": False},
        )
        assert patched.status_code == 200
        assert patched.json()["pointValue"] == 7
        assert patched.json()["cooldownMinutes"] is None
        assert patched.json()["isActive"] is False

        active_rules = await client.get("/api/v1/points/rules")
        all_rules = await client.get("/api/v1/points/rules", params={"includeInactive": "true"})
        assert active_rules.json() == []
        assert len(all_rules.json()) == 1

        missing_rule = await client.patch(f"/api/v1/points/rules/{uuid4()}", json={"pointValue": 1})
        assert missing_rule.status_code == 404

        multiplier = await client.post(
            "/api/v1/points/multipliers",
            json={
                "name": "Weekend Bonus",
                "multiplier": 2.0,
                "startsAt": (now - timedelta(days=1)).isoformat(),
                "endsAt": (now + timedelta(days=1)).isoformat(),
                "actionTypes": ["review_submitted"],
            },
        )
        assert multiplier.status_code == 201
        multiplier_id = multiplier.json()["id"]

        backwards = await client.post(
            "/api/v1/points/multipliers",
            json={
                "name": "Backwards",
                "multiplier": 2.0,
                "startsAt": now.isoformat(),
                "endsAt": (now - timedelta(days=1)).isoformat(),
            },
        )
        assert backwards.status_code == 422

        running = await client.get("/api/v1/points/multipliers", params={"activeAt": now.isoformat()})
        assert [item["id"] for item in running.json()] == [multiplier_id]

        paused = await client.patch(f"/api/v1/points/multipliers/{multiplier_id}", json={"isActive": False})
        assert paused.json()["isActive"] is False
        running = await client.get("/api/v1/points/multipliers", params={"activeAt": now.isoformat()})
        assert running.json() == []


@pytest.mark.asyncio
async def test_admin_routes_require_api_key(app_with_db, monkeypatch) -> None:
    app, session_factory = app_with_db
    user_id = await _create_user(session_factory, "secured@example.com")
    monkeypatch.setattr(settings, "admin_api_key", "secret-key")

    async with _client(app) as client:
        denied = await client.post(
            f"/api/v1/points/users/{user_id}/award",
            json={"points": 10, "description": "Grant"},
        )
        allowed = await client.post(
            f"/api/v1/points/users/{user_id}/award",
            json={"points": 10, "description": "Grant"},
            headers={"X-API-Key": "secret-key"},
        )
        public = await client.get(f"/api/v1/points/users/{user_id}/summary")

    assert denied.status_code == 401
    assert allowed.status_code == 201
    assert public.status_code == 200
