"""In-process change feed.

The engine publishes a ChangeEvent after every write. Events name the table
and the keys that changed and carry nothing authoritative: a subscriber's only
correct reaction is to re-read. Delivery is synchronous and best-effort; a
failing subscriber is logged and never breaks the writer.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, List, Optional

from banquet_tracker.core.metrics import metrics

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChangeEvent:
    table: str  # players | villages | production | stocks | cards | trades
    player_id: Optional[int] = None
    site_id: Optional[int] = None


Listener = Callable[[ChangeEvent], None]


class ChangeFeed:
    def __init__(self) -> None:
        self._listeners: List[Listener] = []

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener; returns a callable that unsubscribes it."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def publish(self, event: ChangeEvent) -> None:
        metrics.increment_event(f"changes.{event.table}")
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("change_listener_failed", extra={"table": event.table})


__all__ = ["ChangeEvent", "ChangeFeed", "Listener"]
