"""
Invocation deadline tracking for cooperative cancellation.
"""

import time
from typing import Any


class Deadline:
    """
    Remaining-time guard for one Lambda invocation.

    Work units check should_stop() before starting; work already in
    flight is allowed to finish.
    """

    def __init__(self, expires_at: float | None, safety_margin_seconds: float = 0.0) -> None:
        self._expires_at = expires_at
        self._margin = safety_margin_seconds

    @classmethod
    def from_context(cls, context: Any, safety_margin_seconds: float) -> "Deadline":
        """Build from a Lambda context; contexts without a clock never expire."""
        get_remaining = getattr(context, "get_remaining_time_in_millis", None)
        if get_remaining is None:
            return cls(None, safety_margin_seconds)
        return cls(time.monotonic() + get_remaining() / 1000.0, safety_margin_seconds)

    @classmethod
    def unbounded(cls) -> "Deadline":
        return cls(None)

    def remaining_seconds(self) -> float | None:
        if self._expires_at is None:
            return None
        return self._expires_at - time.monotonic()

    def should_stop(self) -> bool:
        remaining = self.remaining_seconds()
        return remaining is not None and remaining < self._margin
