"""Mutation coordinator: every write that changes how fast a village accrues.

Stock is never ticked. A village's stock for a banquet type is the last
snapshot plus whatever accrued since, so before anything changes the accrual
rate (production edit, card start or stop) the amount accrued under the old
rate is written back as a fresh snapshot dated "now". That step is the
freeze. Skipping it would either drop stock that already accrued or credit
the new rate retroactively.

Two guards close the read-compute-write race of the freeze:
- an asyncio.Lock per (village, type) held across freeze and mutation, which
  serializes writers inside this process;
- the snapshot version, checked by storage on write, which catches writers in
  other processes. A lost race re-reads and recomputes.
"""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import AsyncExitStack, asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import AsyncIterator, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple, TypeVar

from banquet_tracker.core.changes import ChangeEvent, ChangeFeed
from banquet_tracker.core.config import get_boost_duration_hours, get_snapshot_write_retries
from banquet_tracker.core.errors import ConcurrentUpdate, NotFound, ValidationError, require_non_negative_int, require_non_negative_number
from banquet_tracker.core.metrics import metrics
from banquet_tracker.core.time_utils import ensure_aware_utc, utc_now
from banquet_tracker.models import Boost, Player, RateRecord, ResourceType, Site, Snapshot, rate_or_zero, snapshot_or_zero
from banquet_tracker.storage.base import Storage
from banquet_tracker.systems.accrual import accrue_with_boosts, clamp_amount
from banquet_tracker.systems.multiplier import active_multiplier
from banquet_tracker.systems.views import round_half_up

logger = logging.getLogger(__name__)

T = TypeVar("T")
LockKey = Tuple[int, ResourceType]
Clock = Callable[[], datetime]


@dataclass
class StockReading:
    """Everything known about one (village, type) stock at one instant."""
    site: Site
    resource_type: ResourceType
    snapshot: Snapshot
    daily_amount: int
    multiplier: int
    raw_amount: float

    def clamped(self, capacity: float) -> float:
        return clamp_amount(self.raw_amount, capacity)


class MutationCoordinator:
    def __init__(self, storage: Storage, clock: Clock = utc_now, feed: Optional[ChangeFeed] = None) -> None:
        self.storage = storage
        self.clock = clock
        self.feed = feed if feed is not None else ChangeFeed()
        self._locks: Dict[LockKey, asyncio.Lock] = {}

    def now(self, now: Optional[datetime] = None) -> datetime:
        return ensure_aware_utc(now) if now is not None else self.clock()

    # --- lookups ---
    async def require_player(self, player_id: int) -> Player:
        player = await self.storage.get_player(int(player_id))
        if player is None:
            raise NotFound(f"player {player_id} not found")
        return player

    async def require_site(self, site_id: int) -> Site:
        site = await self.storage.get_site(int(site_id))
        if site is None:
            raise NotFound(f"village {site_id} not found")
        return site

    # --- locking ---
    def _lock_for(self, key: LockKey) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    def forget_site(self, site_id: int) -> None:
        """Drop the idle locks of a deleted village."""
        for key in [k for k in self._locks if k[0] == site_id]:
            if not self._locks[key].locked():
                del self._locks[key]

    @asynccontextmanager
    async def hold(self, keys: Iterable[LockKey]) -> AsyncIterator[None]:
        """Hold the locks of several stocks; acquired in sorted order to avoid deadlocks."""
        ordered = sorted(set(keys), key=lambda k: (k[0], k[1].value))
        async with AsyncExitStack() as stack:
            for key in ordered:
                await stack.enter_async_context(self._lock_for(key))
            yield

    # --- read / freeze primitives ---
    async def read(self, site: Site, resource_type: ResourceType, now: datetime) -> StockReading:
        """Compute the unclamped stock at ``now`` from stored rows. Never fails on missing rows."""
        rate = await self.storage.get_rate(site.id, resource_type)
        snapshot = snapshot_or_zero(await self.storage.get_snapshot(site.id, resource_type), site.id, resource_type, now)
        # Cards still running at the snapshot instant can affect the accrual since then
        boosts = await self.storage.list_boosts(site.player_id, resource_type=resource_type, expiring_after=snapshot.as_of)
        daily = rate_or_zero(rate)
        return StockReading(
            site=site,
            resource_type=resource_type,
            snapshot=snapshot,
            daily_amount=daily,
            multiplier=active_multiplier(boosts, now),
            raw_amount=accrue_with_boosts(snapshot, daily, boosts, now),
        )

    async def freeze(self, site: Site, resource_type: ResourceType, now: datetime) -> Snapshot:
        """Persist the stock accrued so far as a snapshot dated ``now``.

        Retries the read on a version conflict; gives up with ConcurrentUpdate.
        """
        attempts = get_snapshot_write_retries()
        for attempt in range(1, attempts + 1):
            reading = await self.read(site, resource_type, now)
            try:
                snap = await self.storage.upsert_snapshot(
                    site.id,
                    resource_type,
                    max(0.0, reading.raw_amount),
                    now,
                    expected_version=reading.snapshot.version,
                )
            except ConcurrentUpdate:
                metrics.increment_event("freeze.conflict")
                logger.info(
                    "freeze_conflict_retry",
                    extra={"site_id": site.id, "banquet_type": resource_type.value, "attempt": attempt},
                )
                continue
            metrics.increment_event("freeze.count")
            return snap
        raise ConcurrentUpdate(f"could not freeze {site.id}/{resource_type.value} after {attempts} attempts")

    async def apply_rate_change(
        self,
        site: Site,
        resource_type: ResourceType,
        mutate: Callable[[], Awaitable[T]],
        now: Optional[datetime] = None,
        skip: Optional[Callable[[], Awaitable[bool]]] = None,
    ) -> Optional[T]:
        """Freeze the stock, then run ``mutate`` while still holding the stock's lock.

        ``skip`` is evaluated under the lock before freezing; when it returns
        True nothing is written and None is returned. If ``mutate`` fails the
        frozen snapshot stays; it is value-neutral.
        """
        at = self.now(now)
        async with self.hold([(site.id, resource_type)]):
            if skip is not None and await skip():
                return None
            await self.freeze(site, resource_type, at)
            return await mutate()

    def publish(self, table: str, player_id: Optional[int] = None, site_id: Optional[int] = None) -> None:
        self.feed.publish(ChangeEvent(table=table, player_id=player_id, site_id=site_id))

    # --- production ---
    async def set_production_rate(
        self,
        site_id: int,
        resource_type: ResourceType,
        daily_amount: object,
        boosted_input: bool = False,
        now: Optional[datetime] = None,
    ) -> RateRecord:
        """Change a village's daily production for one type.

        With ``boosted_input`` the value was read off a boosted display and is
        divided by the active multiplier before being stored.
        """
        at = self.now(now)
        site = await self.require_site(site_id)
        if boosted_input:
            value = require_non_negative_number(daily_amount, "daily_amount")
            mult = active_multiplier(
                await self.storage.list_boosts(site.player_id, resource_type=resource_type, expiring_after=at), at
            )
            daily = round_half_up(value / mult)
        else:
            daily = require_non_negative_int(daily_amount, "daily_amount")

        async def _unchanged() -> bool:
            return rate_or_zero(await self.storage.get_rate(site.id, resource_type)) == daily

        async def _write() -> RateRecord:
            return await self.storage.upsert_rate(site.id, resource_type, daily)

        record = await self.apply_rate_change(site, resource_type, _write, now=at, skip=_unchanged)
        if record is None:
            metrics.increment_event("production.unchanged")
            current = await self.storage.get_rate(site.id, resource_type)
            return current if current is not None else RateRecord(site_id=site.id, resource_type=resource_type, daily_amount=daily)
        logger.info(
            "production_updated",
            extra={"site_id": site.id, "banquet_type": resource_type.value, "daily_amount": daily},
        )
        self.publish("production", player_id=site.player_id, site_id=site.id)
        return record

    # --- cards ---
    async def activate_boost(
        self,
        player_id: int,
        resource_type: ResourceType,
        multiplier: object,
        now: Optional[datetime] = None,
    ) -> Boost:
        """Start a card for a player and type, replacing any running card of that type.

        Every village of the player is frozen under the old multiplier first.
        The freezes run one after another without rollback; each is
        value-neutral, so a partial run only moves snapshot timestamps.
        """
        at = self.now(now)
        mult = require_non_negative_int(multiplier, "multiplier")
        if mult <= 1:
            raise ValidationError("multiplier must be greater than 1")
        player = await self.require_player(player_id)
        started = time.perf_counter()
        sites = await self.storage.list_sites(player.id)
        async with self.hold([(s.id, resource_type) for s in sites]):
            for site in sites:
                await self.freeze(site, resource_type, at)
            running = await self.storage.list_boosts(player.id, resource_type=resource_type, expiring_after=at)
            for old in running:
                await self.storage.delete_boost(old.id)
            boost = await self.storage.insert_boost(
                player.id,
                resource_type,
                mult,
                at,
                at + timedelta(hours=get_boost_duration_hours()),
            )
        metrics.increment_event("boost.activated")
        metrics.record_timer("boost.activate_s", time.perf_counter() - started)
        logger.info(
            "boost_activated",
            extra={
                "player_id": player.id,
                "banquet_type": resource_type.value,
                "multiplier": mult,
                "replaced": [b.id for b in running],
                "sites": len(sites),
            },
        )
        self.publish("cards", player_id=player.id)
        return boost

    async def retime_boost(
        self,
        boost_id: int,
        expires_at: Optional[datetime] = None,
        hours_remaining: Optional[object] = None,
        now: Optional[datetime] = None,
    ) -> Boost:
        """Move a card's expiry. Does not freeze: the multiplier in effect right now is unchanged."""
        at = self.now(now)
        if (expires_at is None) == (hours_remaining is None):
            raise ValidationError("provide exactly one of expires_at or hours_remaining")
        if hours_remaining is not None:
            hours = require_non_negative_number(hours_remaining, "hours_remaining")
            new_expiry = at + timedelta(hours=hours)
        else:
            new_expiry = ensure_aware_utc(expires_at)
        boost = await self.storage.get_boost(int(boost_id))
        if boost is None:
            raise NotFound(f"card {boost_id} not found")
        updated = await self.storage.update_boost_expiry(boost.id, new_expiry)
        logger.info("boost_retimed", extra={"boost_id": boost.id, "expires_at": new_expiry.isoformat()})
        self.publish("cards", player_id=boost.player_id)
        return updated

    async def remove_boost(self, boost_id: int, now: Optional[datetime] = None) -> Boost:
        """Delete a card after crediting every village the boosted accrual it earned so far."""
        at = self.now(now)
        boost = await self.storage.get_boost(int(boost_id))
        if boost is None:
            raise NotFound(f"card {boost_id} not found")
        sites = await self.storage.list_sites(boost.player_id)
        async with self.hold([(s.id, boost.resource_type) for s in sites]):
            for site in sites:
                await self.freeze(site, boost.resource_type, at)
            await self.storage.delete_boost(boost.id)
        metrics.increment_event("boost.removed")
        logger.info("boost_removed", extra={"boost_id": boost.id, "player_id": boost.player_id})
        self.publish("cards", player_id=boost.player_id)
        return boost

    # --- direct overwrites ---
    async def set_manual_amount(
        self,
        site_id: int,
        resource_type: ResourceType,
        amount: object,
        now: Optional[datetime] = None,
    ) -> Snapshot:
        """Overwrite a stock with a hand-entered value. Prior accrual is discarded, not frozen."""
        at = self.now(now)
        value = require_non_negative_number(amount, "amount")
        site = await self.require_site(site_id)
        async with self.hold([(site.id, resource_type)]):
            snap = await self.storage.upsert_snapshot(site.id, resource_type, max(0.0, value), at)
        metrics.increment_event("stock.manual")
        logger.info("stock_set_manually", extra={"site_id": site.id, "banquet_type": resource_type.value, "amount": value})
        self.publish("stocks", player_id=site.player_id, site_id=site.id)
        return snap

    async def reset_site(self, site_id: int, now: Optional[datetime] = None) -> List[Snapshot]:
        """Banquet: empty every stock of a village."""
        at = self.now(now)
        site = await self.require_site(site_id)
        snaps = []
        async with self.hold([(site.id, rt) for rt in ResourceType]):
            for rt in ResourceType:
                snaps.append(await self.storage.upsert_snapshot(site.id, rt, 0.0, at))
        metrics.increment_event("banquet.count")
        logger.info("site_reset", extra={"site_id": site.id, "player_id": site.player_id})
        self.publish("stocks", player_id=site.player_id, site_id=site.id)
        return snaps


__all__ = ["MutationCoordinator", "StockReading"]
