"""Staleness guard for asynchronous readers.

Two independent mechanisms:

- ContextToken: advanced whenever the subject a reader is looking at changes
  (e.g. another player's dashboard is opened). Multi-step reads capture the
  token when they start and check it before each expensive step; a mismatch
  raises StaleContext, which the reader swallows so the abandoned read has no
  visible effect.
- EchoGuard: remembers until when change notifications should be treated as
  echoes of a write this reader just performed. It stores an expiry instant
  and compares it against "now"; nothing is scheduled.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional

from banquet_tracker.core.config import get_echo_grace_seconds
from banquet_tracker.core.errors import StaleContext


class ContextToken:
    """Monotonic counter identifying the current subject of a reader."""

    def __init__(self) -> None:
        self._value = 0

    @property
    def value(self) -> int:
        return self._value

    def advance(self) -> int:
        self._value += 1
        return self._value

    def capture(self) -> int:
        return self._value

    def is_current(self, captured: int) -> bool:
        return captured == self._value

    def check(self, captured: int) -> None:
        """Raise StaleContext if the subject changed since ``captured``."""
        if captured != self._value:
            raise StaleContext(f"context moved from {captured} to {self._value}")


class EchoGuard:
    """Suppress change notifications for a grace window after a local write."""

    def __init__(self, grace_seconds: Optional[float] = None) -> None:
        seconds = get_echo_grace_seconds() if grace_seconds is None else float(grace_seconds)
        self.grace = timedelta(seconds=max(0.0, seconds))
        self._until: Optional[datetime] = None

    @property
    def suppressed_until(self) -> Optional[datetime]:
        return self._until

    def mark_local_write(self, now: datetime) -> datetime:
        until = now + self.grace
        # Overlapping writes extend the window, never shorten it
        if self._until is None or until > self._until:
            self._until = until
        return self._until

    def is_suppressed(self, now: datetime) -> bool:
        return self._until is not None and now < self._until

    def clear(self) -> None:
        self._until = None


__all__ = ["ContextToken", "EchoGuard"]
