"""Typed failures raised by the referral lifecycle."""

from __future__ import annotations

from uuid import UUID

from rewards_api.models.referral import ReferralStatus
from rewards_api.services.points.errors import LedgerNotFoundError, LedgerRuleViolation


class ReferralNotFoundError(LedgerNotFoundError):
    def __init__(self, referral_id: UUID) -> None:
        super().__init__(f"Referral '{referral_id}' was not found.")
        self.referral_id = referral_id


class ReferralCodeNotFoundError(LedgerNotFoundError):
    def __init__(self, code: str) -> None:
        super().__init__(f"Referral code '{code}' was not found.")
        self.code = code


class ReferralCodeInactiveError(LedgerRuleViolation):
    def __init__(self, code: str) -> None:
        super().__init__(f"Referral code '{code}' is not active.")
        self.code = code


class ReferralCodeAlreadyExistsError(LedgerRuleViolation):
    def __init__(self, code: str) -> None:
        super().__init__(f"Referral code '{code}' is already taken.")
        self.code = code


class InvalidReferralCodeError(LedgerRuleViolation):
    """Custom codes must be alphanumeric and within the allowed length."""


class SelfReferralError(LedgerRuleViolation):
    def __init__(self, user_id: UUID) -> None:
        super().__init__(f"User '{user_id}' cannot use their own referral code.")
        self.user_id = user_id


class UserAlreadyReferredError(LedgerRuleViolation):
    def __init__(self, user_id: UUID) -> None:
        super().__init__(f"User '{user_id}' has already been referred.")
        self.user_id = user_id


class ReferralAlreadyCompletedError(LedgerRuleViolation):
    def __init__(self, referral_id: UUID) -> None:
        super().__init__(f"Referral '{referral_id}' has already been completed.")
        self.referral_id = referral_id


class ReferralExpiredError(LedgerRuleViolation):
    def __init__(self, referral_id: UUID) -> None:
        super().__init__(f"Referral '{referral_id}' has expired.")
        self.referral_id = referral_id


class InvalidReferralTransitionError(LedgerRuleViolation):
    """Raised when a referral is asked to leave a terminal state."""

    def __init__(self, referral_id: UUID, current_status: ReferralStatus, requested_status: ReferralStatus) -> None:
        super().__init__(
            f"Cannot transition referral '{referral_id}' from {current_status.value} to {requested_status.value}"
        )
        self.referral_id = referral_id
        self.current_status = current_status
        self.requested_status = requested_status


__all__ = [
    "InvalidReferralCodeError",
    "InvalidReferralTransitionError",
    "ReferralAlreadyCompletedError",
    "ReferralCodeAlreadyExistsError",
    "ReferralCodeInactiveError",
    "ReferralCodeNotFoundError",
    "ReferralExpiredError",
    "ReferralNotFoundError",
    "SelfReferralError",
    "UserAlreadyReferredError",
]
