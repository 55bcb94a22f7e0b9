"""Absolute deadlines shared by every blocking wait of a scenario."""

import math
import time
from typing import Optional


class Deadline:
    """An absolute point in (monotonic) time.

    A deadline is derived once, e.g. at scenario start, and handed down to
    every nested wait. Callers ask for ``time_left()`` instead of recomputing
    their own timeouts.
    """

    __slots__ = ("_expires_at",)

    def __init__(self, expires_at: float):
        self._expires_at = expires_at

    @classmethod
    def from_now(cls, seconds: float) -> "Deadline":
        return cls(time.monotonic() + seconds)

    @classmethod
    def never(cls) -> "Deadline":
        """A deadline that never expires, for waits bounded elsewhere."""
        return cls(math.inf)

    @property
    def expires_at(self) -> float:
        return self._expires_at

    def time_left(self) -> float:
        """Seconds until expiry, never negative."""
        return max(0.0, self._expires_at - time.monotonic())

    def has_time_left(self) -> bool:
        return time.monotonic() < self._expires_at

    def is_overdue(self) -> bool:
        return not self.has_time_left()

    def cap(self, seconds: Optional[float]) -> float:
        """Return ``seconds`` bounded by the time left."""
        left = self.time_left()
        if seconds is None:
            return left
        return min(seconds, left)

    def __repr__(self) -> str:
        return f"Deadline(time_left={self.time_left():.2f}s)"
