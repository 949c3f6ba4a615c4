"""
Rate Limit Models
=================
Per-limit evaluation records for the sliding window limiter.
"""

from dataclasses import dataclass


@dataclass(frozen=True)
class LimitCheck:
    """One applicable limit evaluated against its trailing-window count."""
    name: str
    count: int
    limit: int
    burst: int = 0

    @property
    def ceiling(self) -> int:
        return self.limit + self.burst

    @property
    def exceeded(self) -> bool:
        return exceeds_limit(self.count, self.limit, self.burst)


def exceeds_limit(count: int, limit: int, burst: int = 0) -> bool:
    """
    Burst is additive headroom: a request is admitted while the events already
    counted in the window stay below ``limit + burst``.

    >>> exceeds_limit(65, 60, 10)
    False
    >>> exceeds_limit(100, 100, 0)
    True
    """
    return count >= limit + burst
