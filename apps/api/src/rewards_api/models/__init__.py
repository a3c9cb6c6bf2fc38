"""SQLAlchemy models package."""

from .user import User  # noqa: F401
from .points import (  # noqa: F401
    PointMultiplier,
    PointRule,
    PointTransaction,
    PointTransactionType,
    UserDailyPoints,
    UserPoints,
)
from .referral import (  # noqa: F401
    OPEN_REFERRAL_STATUSES,
    TERMINAL_REFERRAL_STATUSES,
    Referral,
    ReferralCampaign,
    ReferralRewardTier,
    ReferralStatus,
    UserReferralCode,
)
