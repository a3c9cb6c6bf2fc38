from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from threading import Lock
from typing import Dict


@dataclass
class LedgerSnapshot:
    earn: Dict[str, int]
    mutations: Dict[str, int]
    conflicts: Dict[str, int]
    referrals: Dict[str, int]
    award_failures: Dict[str, int]

    def as_dict(self) -> Dict[str, object]:
        return {
            "earn": dict(self.earn),
            "mutations": dict(self.mutations),
            "conflicts": dict(self.conflicts),
            "referrals": dict(self.referrals),
            "award_failures": dict(self.award_failures),
        }


class LedgerObservabilityStore:
    """Collect points and referral telemetry for dashboards and alerting."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._earn: Dict[str, int] = defaultdict(int)
        self._mutations: Dict[str, int] = defaultdict(int)
        self._conflicts: Dict[str, int] = defaultdict(int)
        self._referrals: Dict[str, int] = defaultdict(int)
        self._award_failures: Dict[str, int] = defaultdict(int)

    def record_earn(self, outcome: str) -> None:
        with self._lock:
            self._earn[outcome] += 1

    def record_mutation(self, operation: str) -> None:
        with self._lock:
            self._mutations[operation] += 1

    def record_conflict(self, operation: str) -> None:
        with self._lock:
            self._conflicts[operation] += 1
            self._conflicts["total"] += 1

    def record_referral_event(self, event: str) -> None:
        with self._lock:
            self._referrals[event] += 1

    def record_award_failure(self, kind: str) -> None:
        with self._lock:
            self._award_failures[kind] += 1

    def snapshot(self) -> LedgerSnapshot:
        with self._lock:
            return LedgerSnapshot(
                earn=dict(self._earn),
                mutations=dict(self._mutations),
                conflicts=dict(self._conflicts),
                referrals=dict(self._referrals),
                award_failures=dict(self._award_failures),
            )

    def reset(self) -> None:
        with self._lock:
            self._earn.clear()
            self._mutations.clear()
            self._conflicts.clear()
            self._referrals.clear()
            self._award_failures.clear()


_STORE = LedgerObservabilityStore()


def get_ledger_store() -> LedgerObservabilityStore:
    return _STORE


__all__ = ["LedgerObservabilityStore", "LedgerSnapshot", "get_ledger_store"]
