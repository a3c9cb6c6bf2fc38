"""Translate ledger failures into HTTP errors."""

from __future__ import annotations

from fastapi import HTTPException, status

from rewards_api.services.points.errors import (
    InvalidPointsAmountError,
    LedgerConflictError,
    LedgerError,
    LedgerNotFoundError,
)
from rewards_api.services.referrals.errors import InvalidReferralCodeError


def ledger_http_error(exc: LedgerError | ValueError) -> HTTPException:
    if isinstance(exc, LedgerNotFoundError):
        code = status.HTTP_404_NOT_FOUND
    elif isinstance(exc, LedgerConflictError):
        code = status.HTTP_503_SERVICE_UNAVAILABLE
    elif isinstance(exc, (InvalidPointsAmountError, InvalidReferralCodeError, ValueError)):
        code = status.HTTP_400_BAD_REQUEST
    else:
        code = status.HTTP_409_CONFLICT
    return HTTPException(status_code=code, detail=str(exc))


__all__ = ["ledger_http_error"]
