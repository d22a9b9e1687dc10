import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from banquet_tracker.core.changes import ChangeEvent, ChangeFeed
from banquet_tracker.core.errors import StaleContext
from banquet_tracker.core.metrics import metrics
from banquet_tracker.core.staleness import ContextToken, EchoGuard
from banquet_tracker.models import ResourceType
from banquet_tracker.systems.dashboard import DashboardSession

T0 = datetime(2026, 1, 1, tzinfo=timezone.utc)


def test_context_token_detects_switch():
    token = ContextToken()
    captured = token.capture()
    token.check(captured)
    token.advance()
    assert not token.is_current(captured)
    with pytest.raises(StaleContext):
        token.check(captured)


def test_echo_guard_window():
    guard = EchoGuard(grace_seconds=3)
    assert not guard.is_suppressed(T0)
    guard.mark_local_write(T0)
    assert guard.is_suppressed(T0 + timedelta(seconds=2))
    assert not guard.is_suppressed(T0 + timedelta(seconds=3))


def test_echo_guard_never_shortens_window():
    guard = EchoGuard(grace_seconds=3)
    guard.mark_local_write(T0 + timedelta(seconds=2))
    guard.mark_local_write(T0)
    assert guard.suppressed_until == T0 + timedelta(seconds=5)
    guard.clear()
    assert guard.suppressed_until is None


def test_change_feed_unsubscribe():
    feed = ChangeFeed()
    seen = []
    unsubscribe = feed.subscribe(seen.append)
    feed.publish(ChangeEvent(table="stocks", player_id=1, site_id=2))
    unsubscribe()
    feed.publish(ChangeEvent(table="stocks", player_id=1, site_id=2))
    assert len(seen) == 1


def test_session_loads_dashboard_and_trades(engine):
    async def _run():
        player = await engine.create_player("Ana")
        await engine.create_site(player.id, "Nord")
        session = DashboardSession(engine)
        dashboard = await session.open(player.id)
        return player, session, dashboard

    player, session, dashboard = asyncio.run(_run())
    assert dashboard is not None and dashboard.player_id == player.id
    assert session.dashboard is dashboard
    assert session.trades == []


class _SwitchingEngine:
    """Wraps an engine and lets the session switch player while a read is in flight."""

    def __init__(self, inner, on_dashboard):
        self.inner = inner
        self.feed = inner.feed
        self.on_dashboard = on_dashboard

    def now(self, now=None):
        return self.inner.now(now)

    async def get_dashboard(self, player_id):
        result = await self.inner.get_dashboard(player_id)
        callback, self.on_dashboard = self.on_dashboard, None
        if callback is not None:
            callback()
        return result

    async def list_trades(self, limit=None, player_id=None):
        return await self.inner.list_trades(limit=limit, player_id=player_id)


def test_refresh_abandoned_when_player_switches(engine):
    baseline = metrics.event_count("dashboard.stale")

    async def _run():
        first = await engine.create_player("Ana")
        second = await engine.create_player("Bruno")
        session = DashboardSession(None)

        def _switch():
            session.player_id = second.id
            session.token.advance()

        session.engine = _SwitchingEngine(engine, _switch)
        stale = await session.open(first.id)
        return stale, session, second

    stale, session, second = asyncio.run(_run())
    assert stale is None
    assert session.dashboard is None
    assert session.player_id == second.id
    assert metrics.event_count("dashboard.stale") == baseline + 1


def test_own_writes_are_not_echoed(engine, clock):
    async def _run():
        player = await engine.create_player("Ana")
        site = await engine.create_site(player.id, "Nord")
        session = DashboardSession(engine, grace_seconds=3)
        await session.open(player.id)
        session.attach()
        await session.local_write(engine.set_manual_amount(site.id, ResourceType.SEL, 5))
        echoed = session.dirty
        clock.advance(seconds=5)
        await engine.set_manual_amount(site.id, ResourceType.SEL, 6)
        after_grace = session.dirty
        refreshed = await session.refresh_if_dirty()
        session.detach()
        return echoed, after_grace, refreshed, session.dirty

    echoed, after_grace, refreshed, dirty_after = asyncio.run(_run())
    assert echoed is False
    assert after_grace is True
    assert refreshed is not None
    assert dirty_after is False


def test_other_players_changes_are_ignored(engine, clock):
    async def _run():
        ana = await engine.create_player("Ana")
        bruno = await engine.create_player("Bruno")
        site = await engine.create_site(bruno.id, "Sud")
        session = DashboardSession(engine, grace_seconds=0)
        await session.open(ana.id)
        session.attach()
        await engine.set_manual_amount(site.id, ResourceType.SEL, 5)
        return session.dirty

    assert asyncio.run(_run()) is False
