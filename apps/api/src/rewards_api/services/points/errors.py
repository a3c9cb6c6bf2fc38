"""Typed failures raised by the points ledger."""

from __future__ import annotations

from decimal import Decimal
from uuid import UUID


class LedgerError(RuntimeError):
    """Base exception for ledger and referral failures."""


class LedgerNotFoundError(LedgerError):
    """A referenced ledger resource does not exist."""


class LedgerRuleViolation(LedgerError):
    """The request breaks a business rule of the ledger."""


class LedgerConflictError(LedgerError):
    """Concurrent writers kept invalidating the mutation."""

    def __init__(self, user_id: UUID, attempts: int) -> None:
        super().__init__(f"Points for user '{user_id}' changed concurrently; gave up after {attempts} attempts.")
        self.user_id = user_id
        self.attempts = attempts


class UserPointsNotFoundError(LedgerNotFoundError):
    def __init__(self, user_id: UUID) -> None:
        super().__init__(f"Points record for user '{user_id}' was not found.")
        self.user_id = user_id


class LedgerUserNotFoundError(LedgerNotFoundError):
    def __init__(self, user_id: UUID) -> None:
        super().__init__(f"User '{user_id}' does not exist.")
        self.user_id = user_id


class PointRuleNotFoundError(LedgerNotFoundError):
    def __init__(self, identifier: UUID | str) -> None:
        super().__init__(f"Point rule '{identifier}' was not found.")
        self.identifier = identifier


class PointMultiplierNotFoundError(LedgerNotFoundError):
    def __init__(self, multiplier_id: UUID) -> None:
        super().__init__(f"Point multiplier '{multiplier_id}' was not found.")
        self.multiplier_id = multiplier_id


class LedgerIntegrityError(LedgerRuleViolation):
    """The database rejected a ledger write that retrying cannot fix."""


class DuplicatePointRuleError(LedgerRuleViolation):
    def __init__(self, action_type: str) -> None:
        super().__init__(f"A point rule for action '{action_type}' already exists.")
        self.action_type = action_type


class InvalidPointsAmountError(LedgerRuleViolation):
    """Amounts must be positive (or non-zero for adjustments)."""


class InsufficientPointsError(LedgerRuleViolation):
    def __init__(self, user_id: UUID, requested: Decimal, available: Decimal) -> None:
        super().__init__(
            f"User '{user_id}' has insufficient points. "
            f"Requested: {_format_points(requested)}, Available: {_format_points(available)}."
        )
        self.user_id = user_id
        self.requested = requested
        self.available = available


class NegativeBalanceError(LedgerRuleViolation):
    def __init__(self, user_id: UUID, adjustment: Decimal, total: Decimal) -> None:
        super().__init__(
            f"Adjustment of {_format_points(adjustment)} would leave user '{user_id}' "
            f"with a negative balance (current total {_format_points(total)})."
        )
        self.user_id = user_id
        self.adjustment = adjustment
        self.total = total


def _format_points(value: Decimal) -> str:
    value = Decimal(value)
    if value == value.to_integral_value():
        return str(int(value))
    return str(value.normalize())


__all__ = [
    "DuplicatePointRuleError",
    "InsufficientPointsError",
    "InvalidPointsAmountError",
    "LedgerConflictError",
    "LedgerError",
    "LedgerIntegrityError",
    "LedgerNotFoundError",
    "LedgerUserNotFoundError",
    "LedgerRuleViolation",
    "NegativeBalanceError",
    "PointMultiplierNotFoundError",
    "PointRuleNotFoundError",
    "UserPointsNotFoundError",
]
