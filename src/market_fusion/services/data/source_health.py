"""
Per-provider health bookkeeping.

Tracks fetch outcomes for each provider so that source status can be
reported. Mutated only from the event loop thread.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from market_fusion.services.data.types import SourceStatus, utc_now


@dataclass
class _SourceStats:
    successes: int = 0
    failures: int = 0
    consecutive_failures: int = 0
    last_successful_fetch: Optional[datetime] = None
    last_failed_fetch: Optional[datetime] = None
    last_error: Optional[str] = None


class SourceHealthTracker:
    """
    Success/failure counters per provider.

    A provider is "healthy" if it succeeded within the last five minutes,
    "degraded" otherwise.
    """

    HEALTHY_WITHIN = timedelta(minutes=5)

    def __init__(self, source_names: List[str]):
        self._stats: Dict[str, _SourceStats] = {name: _SourceStats() for name in source_names}

    def _get(self, name: str) -> _SourceStats:
        return self._stats.setdefault(name, _SourceStats())

    def record_success(self, name: str, at: Optional[datetime] = None) -> None:
        stats = self._get(name)
        stats.successes += 1
        stats.consecutive_failures = 0
        stats.last_successful_fetch = at or utc_now()

    def record_failure(self, name: str, error: str, at: Optional[datetime] = None) -> None:
        stats = self._get(name)
        stats.failures += 1
        stats.consecutive_failures += 1
        stats.last_failed_fetch = at or utc_now()
        stats.last_error = error

    def reliability(self, name: str) -> float:
        """Share of successful fetches (1.0 before any attempt)."""
        stats = self._get(name)
        attempts = stats.successes + stats.failures
        return stats.successes / attempts if attempts else 1.0

    def consecutive_failures(self, name: str) -> int:
        return self._get(name).consecutive_failures

    def status(
        self,
        name: str,
        weight: float,
        usage: int,
        limit_per_hour: int,
        now: Optional[datetime] = None
    ) -> SourceStatus:
        now = now or utc_now()
        stats = self._get(name)
        recent = (
            stats.last_successful_fetch is not None
            and now - stats.last_successful_fetch < self.HEALTHY_WITHIN
        )
        return SourceStatus(
            name=name,
            is_active=True,
            reliability=round(self.reliability(name), 4),
            weight=weight,
            last_successful_fetch=stats.last_successful_fetch,
            last_failed_fetch=stats.last_failed_fetch,
            consecutive_failures=stats.consecutive_failures,
            status="healthy" if recent else "degraded",
            rate_limit_usage=f"{usage}/{limit_per_hour}",
            last_error=stats.last_error
        )
