"""Staleness-aware dashboard reader.

A DashboardSession follows one player at a time. Switching player advances
its context token, so a refresh that was started for the previous player is
abandoned at its next checkpoint instead of overwriting the new view. Change
notifications only mark the view dirty; the caller decides when to re-read.
Notifications caused by this session's own writes are ignored for a short
grace window.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Awaitable, Callable, List, Optional, TypeVar

from banquet_tracker.core.changes import ChangeEvent
from banquet_tracker.core.errors import StaleContext
from banquet_tracker.core.metrics import metrics
from banquet_tracker.core.staleness import ContextToken, EchoGuard
from banquet_tracker.models import TradeRecord
from banquet_tracker.systems.views import Dashboard

logger = logging.getLogger(__name__)

T = TypeVar("T")


class DashboardSession:
    def __init__(self, engine, player_id: Optional[int] = None, grace_seconds: Optional[float] = None) -> None:
        self.engine = engine
        self.token = ContextToken()
        self.echo = EchoGuard(grace_seconds)
        self.player_id: Optional[int] = player_id
        self.dashboard: Optional[Dashboard] = None
        self.trades: List[TradeRecord] = []
        self.dirty = False
        self._unsubscribe: Optional[Callable[[], None]] = None

    # --- feed wiring ---
    def attach(self) -> None:
        if self._unsubscribe is None:
            self._unsubscribe = self.engine.feed.subscribe(self.on_change)

    def detach(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def on_change(self, event: ChangeEvent, now: Optional[datetime] = None) -> None:
        if self.should_refresh(event, now=now):
            self.dirty = True

    def should_refresh(self, event: ChangeEvent, now: Optional[datetime] = None) -> bool:
        if self.player_id is None:
            return False
        at = self.engine.now(now)
        if self.echo.is_suppressed(at):
            metrics.increment_event("dashboard.echo_suppressed")
            return False
        # Events without a player (or from a trade partner) may still touch this view
        if event.player_id is not None and event.player_id != self.player_id and event.table != "trades":
            return False
        return True

    # --- context ---
    async def open(self, player_id: int) -> Optional[Dashboard]:
        """Switch to another player and load their dashboard."""
        self.player_id = int(player_id)
        self.token.advance()
        self.dashboard = None
        self.trades = []
        return await self.refresh()

    async def refresh(self) -> Optional[Dashboard]:
        """Reload the current player's view. Returns None if the context moved meanwhile."""
        if self.player_id is None:
            return None
        captured = self.token.capture()
        player_id = self.player_id
        try:
            dashboard = await self.engine.get_dashboard(player_id)
            self.token.check(captured)
            trades = await self.engine.list_trades(player_id=player_id)
            self.token.check(captured)
        except StaleContext:
            metrics.increment_event("dashboard.stale")
            logger.debug("dashboard_refresh_abandoned", extra={"player_id": player_id})
            return None
        self.dashboard = dashboard
        self.trades = trades
        self.dirty = False
        return dashboard

    async def refresh_if_dirty(self) -> Optional[Dashboard]:
        if not self.dirty:
            return self.dashboard
        return await self.refresh()

    async def local_write(self, operation: Awaitable[T], now: Optional[datetime] = None) -> T:
        """Run one of this session's own writes with echo suppression around it."""
        self.echo.mark_local_write(self.engine.now(now))
        result = await operation
        self.echo.mark_local_write(self.engine.now(now))
        return result


__all__ = ["DashboardSession"]
