"""Points ledger service exports."""

from .catalog import DEFAULT_MULTIPLIER, MultiplierSelection, PointCatalog  # noqa: F401
from .daily_tracker import DailyPointsTracker, cooldown_remaining, remaining_minutes  # noqa: F401
from .engine import (  # noqa: F401
    AwardOutcome,
    EarnResult,
    LoginResult,
    Milestone,
    PointsEngine,
    PointsSummary,
    ReconciliationReport,
    TransactionWindow,
    decode_sequence_cursor,
    encode_sequence_cursor,
    points_tier,
)
from .errors import (  # noqa: F401
    DuplicatePointRuleError,
    InsufficientPointsError,
    InvalidPointsAmountError,
    LedgerConflictError,
    LedgerError,
    LedgerIntegrityError,
    LedgerNotFoundError,
    LedgerUserNotFoundError,
    LedgerRuleViolation,
    NegativeBalanceError,
    PointMultiplierNotFoundError,
    PointRuleNotFoundError,
    UserPointsNotFoundError,
)
from .leaderboard import Leaderboard, LeaderboardEntry  # noqa: F401
