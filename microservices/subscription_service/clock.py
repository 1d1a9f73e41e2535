"""
Clock implementations

Every lifecycle and dunning decision reads the time through a Clock so
threshold arithmetic stays deterministic under test.
"""
from datetime import datetime, timezone


class SystemClock:
    """Wall-clock time in UTC"""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


__all__ = ["SystemClock"]
