"""API endpoints for referral codes, invites, and the referral lifecycle."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field, model_validator

from rewards_api.api.dependencies.security import require_admin_api_key
from rewards_api.api.dependencies.services import get_referral_service
from rewards_api.api.errors import ledger_http_error
from rewards_api.core.clock import ensure_aware
from rewards_api.models.referral import (
    Referral,
    ReferralCampaign,
    ReferralRewardTier,
    ReferralStatus,
    UserReferralCode,
)
from rewards_api.services.points import AwardOutcome, LedgerError
from rewards_api.services.referrals import ReferralService

router = APIRouter(prefix="/referrals", tags=["referrals"])


class ReferralCodeResponse(BaseModel):
    userId: UUID
    code: str
    referralCode: str
    customCode: Optional[str]
    isActive: bool
    totalReferrals: int
    successfulReferrals: int
    pendingReferrals: int
    totalPointsEarned: float


class CustomCodeRequest(BaseModel):
    code: str = Field(..., min_length=1, description="Alphanumeric vanity code")


class CodeValidationResponse(BaseModel):
    code: str
    valid: bool


class ApplyCodeRequest(BaseModel):
    code: str = Field(..., min_length=1)
    userId: UUID = Field(..., description="Newly registered user applying the code")
    inviteeEmail: Optional[str] = None


class InviteRequest(BaseModel):
    inviteeEmail: Optional[str] = Field(None, description="Optional email address for the invitee")


class CancelRequest(BaseModel):
    reason: Optional[str] = Field(None, description="Reason recorded on the referral")


class ReferralResponse(BaseModel):
    id: UUID
    referrerUserId: UUID
    referredUserId: Optional[UUID]
    code: str
    inviteeEmail: Optional[str]
    status: str
    approvedReviewCount: int
    referrerPoints: Optional[int]
    referredPoints: Optional[int]
    referrerRewarded: bool
    referredRewarded: bool
    rewardTierId: Optional[UUID]
    campaignId: Optional[UUID]
    notes: Optional[str]
    createdAt: datetime
    expiresAt: Optional[datetime]
    registeredAt: Optional[datetime]
    qualifiedAt: Optional[datetime]
    completedAt: Optional[datetime]


class AwardOutcomeResponse(BaseModel):
    userId: UUID
    success: bool
    points: float
    transactionId: Optional[UUID]
    error: Optional[str]


class ReferralApplicationResponse(BaseModel):
    referral: ReferralResponse
    signupBonus: AwardOutcomeResponse


class ReferralCompletionResponse(BaseModel):
    referral: ReferralResponse
    referrerAward: AwardOutcomeResponse
    referredAward: Optional[AwardOutcomeResponse]


class ReferralStatsResponse(BaseModel):
    userId: UUID
    code: str
    totalReferrals: int
    successfulReferrals: int
    pendingReferrals: int
    totalPointsEarned: float
    byStatus: dict[str, int]


class TopReferrerResponse(BaseModel):
    rank: int
    userId: UUID
    username: str
    code: str
    successfulReferrals: int
    totalPointsEarned: float


class SweepResponse(BaseModel):
    expired: int = 0
    candidates: int = 0
    completed: int = 0
    failed: int = 0


class RewardTierRequest(BaseModel):
    name: str = Field(..., min_length=1)
    minReferrals: int = Field(..., ge=0)
    maxReferrals: Optional[int] = Field(None, ge=0)
    referrerPoints: int = Field(..., ge=0)
    referredPoints: int = Field(..., ge=0)
    bonusMultiplier: float = Field(1.0, ge=0)
    additionalRewards: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def validate_range(self) -> "RewardTierRequest":
        if self.maxReferrals is not None and self.maxReferrals < self.minReferrals:
            raise ValueError("maxReferrals must not be below minReferrals")
        return self


class RewardTierResponse(BaseModel):
    id: UUID
    name: str
    minReferrals: int
    maxReferrals: Optional[int]
    referrerPoints: int
    referredPoints: int
    bonusMultiplier: float
    additionalRewards: dict[str, Any]
    isActive: bool


class CampaignRequest(BaseModel):
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    bonusReferrerPoints: int = Field(0, ge=0)
    bonusReferredPoints: int = Field(0, ge=0)
    multiplier: float = Field(1.0, ge=0)
    startsAt: datetime
    endsAt: datetime
    maxReferralsPerUser: Optional[int] = Field(None, ge=1)

    @model_validator(mode="after")
    def validate_window(self) -> "CampaignRequest":
        if ensure_aware(self.startsAt) > ensure_aware(self.endsAt):
            raise ValueError("startsAt must be on or before endsAt")
        return self


class CampaignResponse(BaseModel):
    id: UUID
    name: str
    description: Optional[str]
    bonusReferrerPoints: int
    bonusReferredPoints: int
    multiplier: float
    startsAt: datetime
    endsAt: datetime
    maxReferralsPerUser: Optional[int]
    isActive: bool


@router.get("/users/{user_id}/code", response_model=ReferralCodeResponse)
async def get_referral_code(
    user_id: UUID,
    service: ReferralService = Depends(get_referral_service),
) -> ReferralCodeResponse:
    """Fetch the user's referral code, generating it on first access."""

    return _serialize_code(await service.get_or_create_code(user_id))


@router.put(
    "/users/{user_id}/code",
    response_model=ReferralCodeResponse,
    dependencies=[Depends(require_admin_api_key)],
)
async def set_custom_referral_code(
    user_id: UUID,
    payload: CustomCodeRequest,
    service: ReferralService = Depends(get_referral_service),
) -> ReferralCodeResponse:
    try:
        record = await service.set_custom_code(user_id, payload.code)
    except LedgerError as exc:
        raise ledger_http_error(exc) from exc
    return _serialize_code(record)


@router.get("/codes/{code}/validate", response_model=CodeValidationResponse)
async def validate_referral_code(
    code: str,
    userId: UUID = Query(..., description="User who would apply the code"),
    service: ReferralService = Depends(get_referral_service),
) -> CodeValidationResponse:
    return CodeValidationResponse(code=code.strip().upper(), valid=await service.validate_code(code, userId))


@router.post(
    "/apply",
    response_model=ReferralApplicationResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_admin_api_key)],
)
async def apply_referral_code(
    payload: ApplyCodeRequest,
    service: ReferralService = Depends(get_referral_service),
) -> ReferralApplicationResponse:
    """Link a new user to the code's owner; the signup bonus is best-effort."""

    try:
        application = await service.use_code(payload.code, payload.userId, invitee_email=payload.inviteeEmail)
    except LedgerError as exc:
        raise ledger_http_error(exc) from exc
    return ReferralApplicationResponse(
        referral=_serialize_referral(application.referral),
        signupBonus=_serialize_award(application.signup_bonus),
    )


@router.post(
    "/users/{user_id}/invites",
    response_model=ReferralResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_admin_api_key)],
)
async def create_referral_invite(
    user_id: UUID,
    payload: InviteRequest | None = None,
    service: ReferralService = Depends(get_referral_service),
) -> ReferralResponse:
    try:
        referral = await service.create_invite(user_id, invitee_email=payload.inviteeEmail if payload else None)
    except LedgerError as exc:
        raise ledger_http_error(exc) from exc
    return _serialize_referral(referral)


@router.get("/users/{user_id}", response_model=List[ReferralResponse])
async def list_user_referrals(
    user_id: UUID,
    statuses: list[str] | None = Query(None, description="Filter referral statuses"),
    service: ReferralService = Depends(get_referral_service),
) -> List[ReferralResponse]:
    status_filter: list[ReferralStatus] | None = None
    if statuses:
        status_filter = []
        for value in statuses:
            try:
                status_filter.append(ReferralStatus(value))
            except ValueError as exc:
                raise HTTPException(status_code=400, detail=f"Unsupported referral status: {value}") from exc

    referrals = await service.list_referrals(user_id, statuses=status_filter)
    return [_serialize_referral(referral) for referral in referrals]


@router.get("/users/{user_id}/stats", response_model=ReferralStatsResponse)
async def get_referral_stats(
    user_id: UUID,
    service: ReferralService = Depends(get_referral_service),
) -> ReferralStatsResponse:
    stats = await service.get_stats(user_id)
    return ReferralStatsResponse(
        userId=stats.user_id,
        code=stats.code,
        totalReferrals=stats.total_referrals,
        successfulReferrals=stats.successful_referrals,
        pendingReferrals=stats.pending_referrals,
        totalPointsEarned=float(stats.total_points_earned),
        byStatus=stats.by_status,
    )


@router.post(
    "/users/{user_id}/reviews",
    response_model=Optional[ReferralResponse],
    dependencies=[Depends(require_admin_api_key)],
)
async def record_qualifying_review(
    user_id: UUID,
    service: ReferralService = Depends(get_referral_service),
) -> Optional[ReferralResponse]:
    """Count an approved review by a referred user; returns null when they were not referred."""

    referral = await service.record_qualifying_review(user_id)
    return _serialize_referral(referral) if referral else None


@router.get("/top", response_model=List[TopReferrerResponse])
async def get_top_referrers(
    limit: int = Query(10, ge=1, le=100),
    service: ReferralService = Depends(get_referral_service),
) -> List[TopReferrerResponse]:
    return [
        TopReferrerResponse(
            rank=entry.rank,
            userId=entry.user_id,
            username=entry.username,
            code=entry.code,
            successfulReferrals=entry.successful_referrals,
            totalPointsEarned=float(entry.total_points_earned),
        )
        for entry in await service.top_referrers(limit)
    ]


@router.post(
    "/sweeps/expire",
    response_model=SweepResponse,
    dependencies=[Depends(require_admin_api_key)],
)
async def run_expiry_sweep(service: ReferralService = Depends(get_referral_service)) -> SweepResponse:
    return SweepResponse(expired=await service.process_expired_referrals())


@router.post(
    "/sweeps/qualified",
    response_model=SweepResponse,
    dependencies=[Depends(require_admin_api_key)],
)
async def run_qualified_sweep(service: ReferralService = Depends(get_referral_service)) -> SweepResponse:
    return SweepResponse(**await service.process_qualified_referrals())


@router.get("/tiers", response_model=List[RewardTierResponse])
async def list_reward_tiers(
    includeInactive: bool = Query(False),
    service: ReferralService = Depends(get_referral_service),
) -> List[RewardTierResponse]:
    tiers = await service.rewards.list_tiers(include_inactive=includeInactive)
    return [_serialize_tier(tier) for tier in tiers]


@router.post(
    "/tiers",
    response_model=RewardTierResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_admin_api_key)],
)
async def create_reward_tier(
    payload: RewardTierRequest,
    service: ReferralService = Depends(get_referral_service),
) -> RewardTierResponse:
    try:
        tier = await service.rewards.create_tier(
            payload.name,
            min_referrals=payload.minReferrals,
            max_referrals=payload.maxReferrals,
            referrer_points=payload.referrerPoints,
            referred_points=payload.referredPoints,
            bonus_multiplier=Decimal(str(payload.bonusMultiplier)),
            additional_rewards=payload.additionalRewards,
        )
    except ValueError as exc:
        raise ledger_http_error(exc) from exc
    return _serialize_tier(tier)


@router.get("/campaigns", response_model=List[CampaignResponse])
async def list_referral_campaigns(
    service: ReferralService = Depends(get_referral_service),
) -> List[CampaignResponse]:
    return [_serialize_campaign(campaign) for campaign in await service.rewards.list_campaigns()]


@router.get("/campaigns/active", response_model=Optional[CampaignResponse])
async def get_active_campaign(
    at: Optional[datetime] = Query(None, description="Instant to evaluate; defaults to now"),
    service: ReferralService = Depends(get_referral_service),
) -> Optional[CampaignResponse]:
    campaign = await service.rewards.active_campaign(at=at)
    return _serialize_campaign(campaign) if campaign else None


@router.post(
    "/campaigns",
    response_model=CampaignResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_admin_api_key)],
)
async def create_referral_campaign(
    payload: CampaignRequest,
    service: ReferralService = Depends(get_referral_service),
) -> CampaignResponse:
    try:
        campaign = await service.rewards.create_campaign(
            payload.name,
            starts_at=payload.startsAt,
            ends_at=payload.endsAt,
            description=payload.description,
            bonus_referrer_points=payload.bonusReferrerPoints,
            bonus_referred_points=payload.bonusReferredPoints,
            multiplier=Decimal(str(payload.multiplier)),
            max_referrals_per_user=payload.maxReferralsPerUser,
        )
    except ValueError as exc:
        raise ledger_http_error(exc) from exc
    return _serialize_campaign(campaign)


@router.get("/{referral_id}", response_model=ReferralResponse)
async def get_referral(
    referral_id: UUID,
    service: ReferralService = Depends(get_referral_service),
) -> ReferralResponse:
    try:
        referral = await service.get_referral(referral_id)
    except LedgerError as exc:
        raise ledger_http_error(exc) from exc
    return _serialize_referral(referral)


@router.post(
    "/{referral_id}/complete",
    response_model=ReferralCompletionResponse,
    dependencies=[Depends(require_admin_api_key)],
)
async def complete_referral(
    referral_id: UUID,
    service: ReferralService = Depends(get_referral_service),
) -> ReferralCompletionResponse:
    """Complete once; a second call answers 409 and awards nothing."""

    try:
        completion = await service.complete_referral(referral_id)
    except LedgerError as exc:
        raise ledger_http_error(exc) from exc
    return ReferralCompletionResponse(
        referral=_serialize_referral(completion.referral),
        referrerAward=_serialize_award(completion.referrer_award),
        referredAward=_serialize_award(completion.referred_award) if completion.referred_award else None,
    )


@router.post(
    "/{referral_id}/cancel",
    response_model=ReferralResponse,
    dependencies=[Depends(require_admin_api_key)],
)
async def cancel_referral(
    referral_id: UUID,
    payload: CancelRequest | None = None,
    service: ReferralService = Depends(get_referral_service),
) -> ReferralResponse:
    try:
        referral = await service.cancel_referral(referral_id, reason=payload.reason if payload else None)
    except LedgerError as exc:
        raise ledger_http_error(exc) from exc
    return _serialize_referral(referral)


def _serialize_code(record: UserReferralCode) -> ReferralCodeResponse:
    return ReferralCodeResponse(
        userId=record.user_id,
        code=record.active_code,
        referralCode=record.referral_code,
        customCode=record.custom_code,
        isActive=bool(record.is_active),
        totalReferrals=int(record.total_referrals or 0),
        successfulReferrals=int(record.successful_referrals or 0),
        pendingReferrals=int(record.pending_referrals or 0),
        totalPointsEarned=float(record.total_points_earned or 0),
    )


def _serialize_referral(referral: Referral) -> ReferralResponse:
    return ReferralResponse(
        id=referral.id,
        referrerUserId=referral.referrer_user_id,
        referredUserId=referral.referred_user_id,
        code=referral.referral_code,
        inviteeEmail=referral.invitee_email,
        status=ReferralStatus(referral.status).value,
        approvedReviewCount=int(referral.approved_review_count or 0),
        referrerPoints=referral.referrer_points,
        referredPoints=referral.referred_points,
        referrerRewarded=bool(referral.referrer_rewarded),
        referredRewarded=bool(referral.referred_rewarded),
        rewardTierId=referral.reward_tier_id,
        campaignId=referral.campaign_id,
        notes=referral.notes,
        createdAt=ensure_aware(referral.created_at),
        expiresAt=ensure_aware(referral.expires_at),
        registeredAt=ensure_aware(referral.registered_at),
        qualifiedAt=ensure_aware(referral.qualified_at),
        completedAt=ensure_aware(referral.completed_at),
    )


def _serialize_award(outcome: AwardOutcome) -> AwardOutcomeResponse:
    return AwardOutcomeResponse(
        userId=outcome.user_id,
        success=outcome.success,
        points=float(outcome.points),
        transactionId=outcome.transaction_id,
        error=outcome.error,
    )


def _serialize_tier(tier: ReferralRewardTier) -> RewardTierResponse:
    return RewardTierResponse(
        id=tier.id,
        name=tier.name,
        minReferrals=tier.min_referrals,
        maxReferrals=tier.max_referrals,
        referrerPoints=tier.referrer_points,
        referredPoints=tier.referred_points,
        bonusMultiplier=float(tier.bonus_multiplier),
        additionalRewards=dict(tier.additional_rewards or {}),
        isActive=bool(tier.is_active),
    )


def _serialize_campaign(campaign: ReferralCampaign) -> CampaignResponse:
    return CampaignResponse(
        id=campaign.id,
        name=campaign.name,
        description=campaign.description,
        bonusReferrerPoints=int(campaign.bonus_referrer_points or 0),
        bonusReferredPoints=int(campaign.bonus_referred_points or 0),
        multiplier=float(campaign.multiplier),
        startsAt=ensure_aware(campaign.starts_at),
        endsAt=ensure_aware(campaign.ends_at),
        maxReferralsPerUser=campaign.max_referrals_per_user,
        isActive=bool(campaign.is_active),
    )
