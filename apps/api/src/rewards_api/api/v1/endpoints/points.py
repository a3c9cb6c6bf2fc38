"""API endpoints for point balances, rules, and multipliers."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field, model_validator

from rewards_api.api.dependencies.security import require_admin_api_key
from rewards_api.api.dependencies.services import get_leaderboard, get_points_engine
from rewards_api.api.errors import ledger_http_error
from rewards_api.core.clock import ensure_aware
from rewards_api.models.points import PointMultiplier, PointRule, PointTransaction, PointTransactionType
from rewards_api.services.points import (
    EarnResult,
    Leaderboard,
    LedgerError,
    PointsEngine,
    decode_sequence_cursor,
    encode_sequence_cursor,
)

router = APIRouter(prefix="/points", tags=["points"])

_RULE_FIELD_MAP = {
    "description": "description",
    "pointValue": "point_value",
    "isActive": "is_active",
    "maxDailyOccurrences": "max_daily_occurrences",
    "maxTotalOccurrences": "max_total_occurrences",
    "cooldownMinutes": "cooldown_minutes",
    "multiplierEligible": "multiplier_eligible",
}
_MULTIPLIER_FIELD_MAP = {
    "name": "name",
    "description": "description",
    "multiplier": "multiplier",
    "actionTypes": "action_types",
    "startsAt": "starts_at",
    "endsAt": "ends_at",
    "isActive": "is_active",
}
_RULE_NULLABLE = frozenset({"description", "max_daily_occurrences", "max_total_occurrences", "cooldown_minutes"})


class PointTransactionResponse(BaseModel):
    id: UUID
    sequence: int
    transactionType: str
    points: float
    balanceAfter: float
    ruleId: Optional[UUID]
    description: Optional[str]
    referenceType: Optional[str]
    referenceId: Optional[str]
    multiplier: float
    expiresAt: Optional[datetime]
    createdAt: datetime


class TransactionPageResponse(BaseModel):
    transactions: List[PointTransactionResponse]
    nextCursor: Optional[str]


class TransactionRangeResponse(BaseModel):
    transactions: List[PointTransactionResponse]
    earned: float
    deducted: float


class PointsSummaryResponse(BaseModel):
    userId: UUID
    totalPoints: float
    availablePoints: float
    lifetimePoints: float
    redeemedPoints: float
    pendingPoints: float
    tier: str
    currentStreak: int
    longestStreak: int
    lastEarnedAt: Optional[datetime]
    rank: Optional[int]
    recentTransactions: List[PointTransactionResponse]


class EarnRequest(BaseModel):
    actionType: str = Field(..., min_length=1, description="Action type matched against point rules")
    referenceType: Optional[str] = None
    referenceId: Optional[str] = None
    description: Optional[str] = None


class EarnResponse(BaseModel):
    success: bool
    pointsEarned: float
    newBalance: float
    message: str
    multiplierApplied: float
    transactionId: Optional[UUID]


class LoginResponse(BaseModel):
    currentStreak: int
    longestStreak: int
    earn: EarnResponse
    milestone: Optional[PointTransactionResponse] = None


class MilestoneResponse(BaseModel):
    awarded: bool
    transaction: Optional[PointTransactionResponse]


class RedeemRequest(BaseModel):
    points: float = Field(..., gt=0)
    description: str = Field(..., min_length=1)
    referenceType: Optional[str] = None
    referenceId: Optional[str] = None


class AwardRequest(RedeemRequest):
    expiresAt: Optional[datetime] = None


class AdjustRequest(BaseModel):
    adjustment: float
    reason: str = Field(..., min_length=1)

    @model_validator(mode="after")
    def validate_adjustment(self) -> "AdjustRequest":
        if self.adjustment == 0:
            raise ValueError("adjustment must be non-zero")
        return self


class LeaderboardEntryResponse(BaseModel):
    rank: int
    userId: UUID
    username: str
    totalPoints: float
    lifetimePoints: float


class RankResponse(BaseModel):
    userId: UUID
    rank: Optional[int]


class LedgerMismatchResponse(BaseModel):
    sequence: int
    expectedBalance: float
    recordedBalance: float


class ReconciliationResponse(BaseModel):
    userId: UUID
    consistent: bool
    transactionCount: int
    replayedTotal: float
    recordedTotal: float
    mismatches: List[LedgerMismatchResponse]


class PointRuleRequest(BaseModel):
    actionType: str = Field(..., min_length=1)
    pointValue: float = Field(..., ge=0)
    description: Optional[str] = None
    maxDailyOccurrences: Optional[int] = Field(None, ge=1)
    maxTotalOccurrences: Optional[int] = Field(None, ge=1)
    cooldownMinutes: Optional[int] = Field(None, ge=1)
    multiplierEligible: bool = True
    isActive: bool = True


class PointRuleUpdateRequest(BaseModel):
    description: Optional[str] = None
    pointValue: Optional[float] = Field(None, ge=0)
    isActive: Optional[bool] = None
    maxDailyOccurrences: Optional[int] = Field(None, ge=1)
    maxTotalOccurrences: Optional[int] = Field(None, ge=1)
    cooldownMinutes: Optional[int] = Field(None, ge=1)
    multiplierEligible: Optional[bool] = None


class PointRuleResponse(BaseModel):
    id: UUID
    actionType: str
    description: Optional[str]
    pointValue: float
    isActive: bool
    maxDailyOccurrences: Optional[int]
    maxTotalOccurrences: Optional[int]
    cooldownMinutes: Optional[int]
    multiplierEligible: bool


class PointMultiplierRequest(BaseModel):
    name: str = Field(..., min_length=1)
    multiplier: float = Field(..., ge=0)
    startsAt: datetime
    endsAt: datetime
    actionTypes: List[str] = Field(default_factory=list, description="Empty means every action")
    description: Optional[str] = None
    isActive: bool = True

    @model_validator(mode="after")
    def validate_window(self) -> "PointMultiplierRequest":
        if ensure_aware(self.startsAt) > ensure_aware(self.endsAt):
            raise ValueError("startsAt must be on or before endsAt")
        return self


class PointMultiplierUpdateRequest(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    multiplier: Optional[float] = Field(None, ge=0)
    actionTypes: Optional[List[str]] = None
    startsAt: Optional[datetime] = None
    endsAt: Optional[datetime] = None
    isActive: Optional[bool] = None


class PointMultiplierResponse(BaseModel):
    id: UUID
    name: str
    description: Optional[str]
    multiplier: float
    actionTypes: List[str]
    startsAt: datetime
    endsAt: datetime
    isActive: bool


@router.get("/users/{user_id}/summary", response_model=PointsSummaryResponse)
async def get_points_summary(
    user_id: UUID,
    engine: PointsEngine = Depends(get_points_engine),
) -> PointsSummaryResponse:
    """Balances, tier, streaks and rank; creates an empty ledger on first access."""

    summary = await engine.get_summary(user_id)
    return PointsSummaryResponse(
        userId=summary.user_id,
        totalPoints=float(summary.total_points),
        availablePoints=float(summary.available_points),
        lifetimePoints=float(summary.lifetime_points),
        redeemedPoints=float(summary.redeemed_points),
        pendingPoints=float(summary.pending_points),
        tier=summary.tier,
        currentStreak=summary.current_streak,
        longestStreak=summary.longest_streak,
        lastEarnedAt=summary.last_earned_at,
        rank=summary.rank,
        recentTransactions=[_serialize_transaction(tx) for tx in summary.recent_transactions],
    )


@router.get("/users/{user_id}/transactions", response_model=TransactionPageResponse)
async def list_point_transactions(
    user_id: UUID,
    limit: int = Query(25, ge=1, le=100),
    cursor: str | None = Query(None, description="Opaque cursor for pagination"),
    types: list[str] | None = Query(None, description="Filter transaction types"),
    engine: PointsEngine = Depends(get_points_engine),
) -> TransactionPageResponse:
    transaction_types: list[PointTransactionType] | None = None
    if types:
        transaction_types = []
        for value in types:
            try:
                transaction_types.append(PointTransactionType(value))
            except ValueError as exc:
                raise HTTPException(status_code=400, detail=f"Unsupported transaction type: {value}") from exc

    decoded_cursor = None
    if cursor:
        try:
            decoded_cursor = decode_sequence_cursor(cursor)
        except (ValueError, UnicodeDecodeError) as exc:
            raise HTTPException(status_code=400, detail="Invalid transaction cursor") from exc

    transactions, next_cursor = await engine.list_transactions(
        user_id,
        limit=limit,
        cursor=decoded_cursor,
        transaction_types=transaction_types,
    )
    return TransactionPageResponse(
        transactions=[_serialize_transaction(tx) for tx in transactions],
        nextCursor=encode_sequence_cursor(*next_cursor) if next_cursor else None,
    )


@router.get("/users/{user_id}/transactions/range", response_model=TransactionRangeResponse)
async def list_transactions_in_range(
    user_id: UUID,
    start: datetime = Query(...),
    end: datetime = Query(...),
    engine: PointsEngine = Depends(get_points_engine),
) -> TransactionRangeResponse:
    if ensure_aware(start) > ensure_aware(end):
        raise HTTPException(status_code=400, detail="start must be on or before end")
    window = await engine.transactions_in_range(user_id, start=start, end=end)
    return TransactionRangeResponse(
        transactions=[_serialize_transaction(tx) for tx in window.transactions],
        earned=float(window.earned),
        deducted=float(window.deducted),
    )


@router.post(
    "/users/{user_id}/earn",
    response_model=EarnResponse,
    dependencies=[Depends(require_admin_api_key)],
)
async def earn_points(
    user_id: UUID,
    payload: EarnRequest,
    engine: PointsEngine = Depends(get_points_engine),
) -> EarnResponse:
    """Apply the rule for an action; rule rejections come back with ``success=false``."""

    try:
        result = await engine.earn_points(
            user_id,
            payload.actionType,
            reference_type=payload.referenceType,
            reference_id=payload.referenceId,
            description=payload.description,
        )
    except LedgerError as exc:
        raise ledger_http_error(exc) from exc
    return _serialize_earn(result)


@router.post(
    "/users/{user_id}/login",
    response_model=LoginResponse,
    dependencies=[Depends(require_admin_api_key)],
)
async def record_login(
    user_id: UUID,
    engine: PointsEngine = Depends(get_points_engine),
) -> LoginResponse:
    try:
        result = await engine.record_login(user_id)
    except LedgerError as exc:
        raise ledger_http_error(exc) from exc
    return LoginResponse(
        currentStreak=result.current_streak,
        longestStreak=result.longest_streak,
        earn=_serialize_earn(result.earn),
        milestone=_serialize_transaction(result.milestone) if result.milestone else None,
    )


@router.post(
    "/users/{user_id}/milestones/streak",
    response_model=MilestoneResponse,
    dependencies=[Depends(require_admin_api_key)],
)
async def check_streak_milestone(
    user_id: UUID,
    engine: PointsEngine = Depends(get_points_engine),
) -> MilestoneResponse:
    try:
        transaction = await engine.check_streak_milestone(user_id)
    except LedgerError as exc:
        raise ledger_http_error(exc) from exc
    return _serialize_milestone(transaction)


@router.post(
    "/users/{user_id}/milestones/reviews",
    response_model=MilestoneResponse,
    dependencies=[Depends(require_admin_api_key)],
)
async def check_review_milestone(
    user_id: UUID,
    total_reviews: int = Query(..., ge=0, alias="totalReviews"),
    engine: PointsEngine = Depends(get_points_engine),
) -> MilestoneResponse:
    try:
        transaction = await engine.check_review_milestone(user_id, total_reviews)
    except LedgerError as exc:
        raise ledger_http_error(exc) from exc
    return _serialize_milestone(transaction)


@router.post(
    "/users/{user_id}/milestones/helpful-votes",
    response_model=MilestoneResponse,
    dependencies=[Depends(require_admin_api_key)],
)
async def check_helpful_vote_milestone(
    user_id: UUID,
    total_helpful_votes: int = Query(..., ge=0, alias="totalHelpfulVotes"),
    engine: PointsEngine = Depends(get_points_engine),
) -> MilestoneResponse:
    try:
        transaction = await engine.check_helpful_vote_milestone(user_id, total_helpful_votes)
    except LedgerError as exc:
        raise ledger_http_error(exc) from exc
    return _serialize_milestone(transaction)


@router.post(
    "/users/{user_id}/redeem",
    response_model=PointTransactionResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_admin_api_key)],
)
async def redeem_points(
    user_id: UUID,
    payload: RedeemRequest,
    engine: PointsEngine = Depends(get_points_engine),
) -> PointTransactionResponse:
    try:
        transaction = await engine.redeem_points(
            user_id,
            _as_points(payload.points),
            payload.description,
            reference_type=payload.referenceType,
            reference_id=payload.referenceId,
        )
    except LedgerError as exc:
        raise ledger_http_error(exc) from exc
    return _serialize_transaction(transaction)


@router.post(
    "/users/{user_id}/award",
    response_model=PointTransactionResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_admin_api_key)],
)
async def award_points(
    user_id: UUID,
    payload: AwardRequest,
    engine: PointsEngine = Depends(get_points_engine),
) -> PointTransactionResponse:
    try:
        transaction = await engine.award_points(
            user_id,
            _as_points(payload.points),
            payload.description,
            reference_type=payload.referenceType,
            reference_id=payload.referenceId,
            expires_at=payload.expiresAt,
        )
    except LedgerError as exc:
        raise ledger_http_error(exc) from exc
    return _serialize_transaction(transaction)


@router.post(
    "/users/{user_id}/adjust",
    response_model=PointTransactionResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_admin_api_key)],
)
async def adjust_points(
    user_id: UUID,
    payload: AdjustRequest,
    engine: PointsEngine = Depends(get_points_engine),
) -> PointTransactionResponse:
    """Administrative correction; refuses to drive a balance negative."""

    try:
        transaction = await engine.adjust_points(user_id, _as_points(payload.adjustment), payload.reason)
    except LedgerError as exc:
        raise ledger_http_error(exc) from exc
    return _serialize_transaction(transaction)


@router.get("/users/{user_id}/rank", response_model=RankResponse)
async def get_user_rank(
    user_id: UUID,
    leaderboard: Leaderboard = Depends(get_leaderboard),
) -> RankResponse:
    return RankResponse(userId=user_id, rank=await leaderboard.rank_for(user_id))


@router.get(
    "/users/{user_id}/reconcile",
    response_model=ReconciliationResponse,
    dependencies=[Depends(require_admin_api_key)],
)
async def reconcile_ledger(
    user_id: UUID,
    engine: PointsEngine = Depends(get_points_engine),
) -> ReconciliationResponse:
    try:
        report = await engine.reconcile(user_id)
    except LedgerError as exc:
        raise ledger_http_error(exc) from exc
    return ReconciliationResponse(
        userId=report.user_id,
        consistent=report.is_consistent,
        transactionCount=report.transaction_count,
        replayedTotal=float(report.replayed_total),
        recordedTotal=float(report.recorded_total),
        mismatches=[
            LedgerMismatchResponse(
                sequence=item.sequence,
                expectedBalance=float(item.expected_balance),
                recordedBalance=float(item.recorded_balance),
            )
            for item in report.mismatches
        ],
    )


@router.get("/leaderboard", response_model=List[LeaderboardEntryResponse])
async def get_leaderboard_entries(
    limit: int = Query(10, ge=1, le=100),
    leaderboard: Leaderboard = Depends(get_leaderboard),
) -> List[LeaderboardEntryResponse]:
    entries = await leaderboard.top(limit)
    return [
        LeaderboardEntryResponse(
            rank=entry.rank,
            userId=entry.user_id,
            username=entry.username,
            totalPoints=float(entry.total_points),
            lifetimePoints=float(entry.lifetime_points),
        )
        for entry in entries
    ]


@router.get("/rules", response_model=List[PointRuleResponse])
async def list_point_rules(
    includeInactive: bool = Query(False),
    engine: PointsEngine = Depends(get_points_engine),
) -> List[PointRuleResponse]:
    rules = await engine.catalog.list_rules(include_inactive=includeInactive)
    return [_serialize_rule(rule) for rule in rules]


@router.post(
    "/rules",
    response_model=PointRuleResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_admin_api_key)],
)
async def create_point_rule(
    payload: PointRuleRequest,
    engine: PointsEngine = Depends(get_points_engine),
) -> PointRuleResponse:
    try:
        rule = await engine.catalog.create_rule(
            payload.actionType,
            _as_points(payload.pointValue),
            description=payload.description,
            max_daily_occurrences=payload.maxDailyOccurrences,
            max_total_occurrences=payload.maxTotalOccurrences,
            cooldown_minutes=payload.cooldownMinutes,
            multiplier_eligible=payload.multiplierEligible,
            is_active=payload.isActive,
        )
    except (LedgerError, ValueError) as exc:
        raise ledger_http_error(exc) from exc
    return _serialize_rule(rule)


@router.patch(
    "/rules/{rule_id}",
    response_model=PointRuleResponse,
    dependencies=[Depends(require_admin_api_key)],
)
async def update_point_rule(
    rule_id: UUID,
    payload: PointRuleUpdateRequest,
    engine: PointsEngine = Depends(get_points_engine),
) -> PointRuleResponse:
    changes = _collect_changes(payload, _RULE_FIELD_MAP, _RULE_NULLABLE)
    if "point_value" in changes:
        changes["point_value"] = _as_points(changes["point_value"])
    try:
        rule = await engine.catalog.update_rule(rule_id, **changes)
    except (LedgerError, ValueError) as exc:
        raise ledger_http_error(exc) from exc
    return _serialize_rule(rule)


@router.get("/multipliers", response_model=List[PointMultiplierResponse])
async def list_point_multipliers(
    activeAt: Optional[datetime] = Query(None, description="Only multipliers running at this instant"),
    engine: PointsEngine = Depends(get_points_engine),
) -> List[PointMultiplierResponse]:
    records = await engine.catalog.list_multipliers(active_at=ensure_aware(activeAt))
    return [_serialize_multiplier(record) for record in records]


@router.post(
    "/multipliers",
    response_model=PointMultiplierResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_admin_api_key)],
)
async def create_point_multiplier(
    payload: PointMultiplierRequest,
    engine: PointsEngine = Depends(get_points_engine),
) -> PointMultiplierResponse:
    try:
        record = await engine.catalog.create_multiplier(
            payload.name,
            _as_points(payload.multiplier),
            starts_at=payload.startsAt,
            ends_at=payload.endsAt,
            action_types=payload.actionTypes,
            description=payload.description,
            is_active=payload.isActive,
        )
    except (LedgerError, ValueError) as exc:
        raise ledger_http_error(exc) from exc
    return _serialize_multiplier(record)


@router.patch(
    "/multipliers/{multiplier_id}",
    response_model=PointMultiplierResponse,
    dependencies=[Depends(require_admin_api_key)],
)
async def update_point_multiplier(
    multiplier_id: UUID,
    payload: PointMultiplierUpdateRequest,
    engine: PointsEngine = Depends(get_points_engine),
) -> PointMultiplierResponse:
    changes = _collect_changes(payload, _MULTIPLIER_FIELD_MAP, frozenset({"description"}))
    if "multiplier" in changes:
        changes["multiplier"] = _as_points(changes["multiplier"])
    try:
        record = await engine.catalog.update_multiplier(multiplier_id, **changes)
    except (LedgerError, ValueError) as exc:
        raise ledger_http_error(exc) from exc
    return _serialize_multiplier(record)


def _as_points(value: float) -> Decimal:
    # Through str so 12.5 stays 12.5 rather than its binary expansion.
    return Decimal(str(value))


def _collect_changes(payload: BaseModel, field_map: dict[str, str], nullable: frozenset[str]) -> dict[str, Any]:
    """Explicitly sent fields, renamed to columns; nulls only where the column allows them."""

    changes: dict[str, Any] = {}
    for key, value in payload.model_dump(exclude_unset=True).items():
        column = field_map[key]
        if value is None and column not in nullable:
            continue
        changes[column] = value
    return changes


def _serialize_earn(result: EarnResult) -> EarnResponse:
    return EarnResponse(
        success=result.success,
        pointsEarned=float(result.points_earned),
        newBalance=float(result.new_balance),
        message=result.message,
        multiplierApplied=float(result.multiplier_applied),
        transactionId=result.transaction_id,
    )


def _serialize_milestone(transaction: PointTransaction | None) -> MilestoneResponse:
    return MilestoneResponse(
        awarded=transaction is not None,
        transaction=_serialize_transaction(transaction) if transaction is not None else None,
    )


def _serialize_transaction(transaction: PointTransaction) -> PointTransactionResponse:
    return PointTransactionResponse(
        id=transaction.id,
        sequence=transaction.sequence,
        transactionType=PointTransactionType(transaction.transaction_type).value,
        points=float(transaction.points),
        balanceAfter=float(transaction.balance_after),
        ruleId=transaction.rule_id,
        description=transaction.description,
        referenceType=transaction.reference_type,
        referenceId=transaction.reference_id,
        multiplier=float(transaction.multiplier or 1),
        expiresAt=ensure_aware(transaction.expires_at),
        createdAt=ensure_aware(transaction.created_at),
    )


def _serialize_rule(rule: PointRule) -> PointRuleResponse:
    return PointRuleResponse(
        id=rule.id,
        actionType=rule.action_type,
        description=rule.description,
        pointValue=float(rule.point_value),
        isActive=bool(rule.is_active),
        maxDailyOccurrences=rule.max_daily_occurrences,
        maxTotalOccurrences=rule.max_total_occurrences,
        cooldownMinutes=rule.cooldown_minutes,
        multiplierEligible=bool(rule.multiplier_eligible),
    )


def _serialize_multiplier(record: PointMultiplier) -> PointMultiplierResponse:
    return PointMultiplierResponse(
        id=record.id,
        name=record.name,
        description=record.description,
        multiplier=float(record.multiplier),
        actionTypes=list(record.action_types or []),
        startsAt=ensure_aware(record.starts_at),
        endsAt=ensure_aware(record.ends_at),
        isActive=bool(record.is_active),
    )
