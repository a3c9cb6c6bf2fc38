"""Referral lifecycle service exports."""

from .errors import (  # noqa: F401
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
from .rewards import ReferralRewardCatalog, ReferralRewardQuote, quote_rewards  # noqa: F401
from .service import (  # noqa: F401
    ReferralApplication,
    ReferralCompletion,
    ReferralService,
    ReferralStats,
    TopReferrer,
)
