from __future__ import annotations

import logging
from datetime import datetime
from typing import Dict, List, Optional

from banquet_tracker.core.changes import ChangeEvent, ChangeFeed
from banquet_tracker.core.config import DEFAULT_PLAYER_CAPACITY
from banquet_tracker.core.errors import ConcurrentUpdate, ValidationError, require_non_negative_int
from banquet_tracker.core.metrics import metrics
from banquet_tracker.core.time_utils import utc_now
from banquet_tracker.models import Boost, Player, RateRecord, ResourceType, Site, Snapshot, TradeRecord
from banquet_tracker.storage.base import Storage
from banquet_tracker.storage.memory import InMemoryStorage
from banquet_tracker.systems.coordinator import Clock, MutationCoordinator, StockReading
from banquet_tracker.systems.multiplier import resolve_multiplier
from banquet_tracker.systems.transfer import TradeResult, TransferEngine, TransferResult
from banquet_tracker.systems.views import (
    Dashboard,
    TypeTotal,
    build_dashboard,
    hourly_throughput,
    percent_full,
    site_needs,
    time_to_full,
)

logger = logging.getLogger(__name__)


def _require_capacity(value: object) -> int:
    cap = require_non_negative_int(value, "capacity")
    if cap <= 0:
        raise ValidationError("capacity must be > 0")
    return cap


class BanquetEngine:
    """Facade over storage, the mutation coordinator and the transfer engine.

    Reads never write. Every amount returned to a caller is clamped to the
    owning player's capacity; stored snapshots are not.
    """

    def __init__(self, storage: Optional[Storage] = None, clock: Clock = utc_now, feed: Optional[ChangeFeed] = None) -> None:
        self.feed = feed if feed is not None else ChangeFeed()
        self.clock = clock
        self._bind(storage if storage is not None else InMemoryStorage())

    def _bind(self, storage: Storage) -> None:
        self.storage = storage
        self.coordinator = MutationCoordinator(storage, clock=self.clock, feed=self.feed)
        self.transfers = TransferEngine(self.coordinator)

    async def use_storage(self, storage: Storage) -> None:
        """Swap the backend (startup selects SQL when ENABLE_DB is set)."""
        previous = self.storage
        self._bind(storage)
        if previous is not storage:
            await previous.close()

    async def close(self) -> None:
        await self.storage.close()

    def now(self, now: Optional[datetime] = None) -> datetime:
        return self.coordinator.now(now)

    # --- players ---
    async def create_player(self, name: str, capacity: Optional[object] = None) -> Player:
        clean = (name or "").strip()
        if not clean:
            raise ValidationError("player name must not be empty")
        cap = DEFAULT_PLAYER_CAPACITY if capacity is None else _require_capacity(capacity)
        player = await self.storage.create_player(clean, cap, self.now())
        logger.info("player_created", extra={"player_id": player.id, "capacity": cap})
        self.feed.publish(ChangeEvent(table="players", player_id=player.id))
        return player

    async def get_player(self, player_id: int) -> Player:
        return await self.coordinator.require_player(player_id)

    async def list_players(self) -> List[Player]:
        return await self.storage.list_players()

    async def set_player_capacity(self, player_id: int, capacity: object) -> Player:
        """Change the shared capacity. Stored amounts are untouched; reads clamp to the new value."""
        cap = _require_capacity(capacity)
        player = await self.coordinator.require_player(player_id)
        updated = await self.storage.update_player_capacity(player.id, cap)
        logger.info("player_capacity_updated", extra={"player_id": player.id, "capacity": cap})
        self.feed.publish(ChangeEvent(table="players", player_id=player.id))
        return updated

    async def delete_player(self, player_id: int) -> None:
        player = await self.coordinator.require_player(player_id)
        sites = await self.storage.list_sites(player.id)
        await self.storage.delete_player(player.id)
        for site in sites:
            self.coordinator.forget_site(site.id)
        logger.info("player_deleted", extra={"player_id": player.id})
        self.feed.publish(ChangeEvent(table="players", player_id=player.id))

    # --- villages ---
    async def create_site(self, player_id: int, name: str) -> Site:
        """Create a village with a zero rate and an empty stock for every type."""
        clean = (name or "").strip()
        if not clean:
            raise ValidationError("village name must not be empty")
        player = await self.coordinator.require_player(player_id)
        at = self.now()
        site = await self.storage.create_site(player.id, clean, at)
        await self._ensure_rows(site, at)
        logger.info("site_created", extra={"site_id": site.id, "player_id": player.id})
        self.feed.publish(ChangeEvent(table="villages", player_id=player.id, site_id=site.id))
        return site

    async def get_site(self, site_id: int) -> Site:
        return await self.coordinator.require_site(site_id)

    async def list_sites(self, player_id: int) -> List[Site]:
        player = await self.coordinator.require_player(player_id)
        return await self.storage.list_sites(player.id)

    async def delete_site(self, site_id: int) -> None:
        site = await self.coordinator.require_site(site_id)
        await self.storage.delete_site(site.id)
        self.coordinator.forget_site(site.id)
        logger.info("site_deleted", extra={"site_id": site.id, "player_id": site.player_id})
        self.feed.publish(ChangeEvent(table="villages", player_id=site.player_id, site_id=site.id))

    async def _ensure_rows(self, site: Site, at: datetime) -> int:
        created = 0
        for rt in ResourceType:
            if await self.storage.get_rate(site.id, rt) is None:
                await self.storage.upsert_rate(site.id, rt, 0)
                created += 1
            if await self.storage.get_snapshot(site.id, rt) is None:
                try:
                    await self.storage.upsert_snapshot(site.id, rt, 0.0, at, expected_version=0)
                except ConcurrentUpdate:
                    # Another writer created the row first
                    continue
                created += 1
        return created

    async def backfill_rows(self, now: Optional[datetime] = None) -> int:
        """Materialize missing rate/snapshot rows for every village; returns how many were created."""
        at = self.now(now)
        created = 0
        for site in await self.storage.list_sites():
            created += await self._ensure_rows(site, at)
        if created:
            metrics.increment_event("backfill.rows", created)
        logger.info("backfill_complete", extra={"rows_created": created})
        return created

    # --- reads ---
    async def _reading(self, site_id: int, resource_type: ResourceType, now: Optional[datetime]) -> tuple[Site, Player, StockReading]:
        at = self.now(now)
        site = await self.coordinator.require_site(site_id)
        player = await self.coordinator.require_player(site.player_id)
        return site, player, await self.coordinator.read(site, resource_type, at)

    async def get_current_amount(self, site_id: int, resource_type: ResourceType, now: Optional[datetime] = None) -> float:
        _, player, reading = await self._reading(site_id, resource_type, now)
        return reading.clamped(player.capacity)

    async def get_percent_full(self, site_id: int, resource_type: ResourceType, now: Optional[datetime] = None) -> float:
        _, player, reading = await self._reading(site_id, resource_type, now)
        return percent_full(reading.clamped(player.capacity), player.capacity)

    async def get_time_to_full(self, site_id: int, resource_type: ResourceType, now: Optional[datetime] = None) -> Optional[str]:
        _, player, reading = await self._reading(site_id, resource_type, now)
        return time_to_full(reading.clamped(player.capacity), player.capacity, reading.daily_amount, reading.multiplier)

    async def get_stock(self, site_id: int, resource_type: ResourceType, now: Optional[datetime] = None) -> StockReading:
        _, _, reading = await self._reading(site_id, resource_type, now)
        return reading

    async def get_hourly_throughput(self, player_id: int, resource_type: ResourceType, now: Optional[datetime] = None) -> int:
        at = self.now(now)
        player = await self.coordinator.require_player(player_id)
        sites = await self.storage.list_sites(player.id)
        rates = await self.storage.list_rates([s.id for s in sites])
        mult = await resolve_multiplier(self.storage, player.id, resource_type, at)
        return hourly_throughput([r.daily_amount for r in rates if r.resource_type == resource_type], mult)

    async def get_player_totals(self, player_id: int, now: Optional[datetime] = None) -> Dict[ResourceType, TypeTotal]:
        dashboard = await self.get_dashboard(player_id, now=now)
        return {ResourceType(key): total for key, total in dashboard.totals.items()}

    async def get_site_needs(self, site_id: int, now: Optional[datetime] = None) -> Dict[ResourceType, int]:
        at = self.now(now)
        site = await self.coordinator.require_site(site_id)
        player = await self.coordinator.require_player(site.player_id)
        amounts = {}
        for rt in ResourceType:
            amounts[rt] = (await self.coordinator.read(site, rt, at)).clamped(player.capacity)
        return site_needs(player.capacity, amounts)

    async def get_dashboard(self, player_id: int, now: Optional[datetime] = None) -> Dashboard:
        at = self.now(now)
        player = await self.coordinator.require_player(player_id)
        sites = await self.storage.list_sites(player.id)
        site_ids = [s.id for s in sites]
        rates = await self.storage.list_rates(site_ids)
        snapshots = await self.storage.list_snapshots(site_ids)
        boosts = await self.storage.list_boosts(player.id)
        return build_dashboard(player, sites, rates, snapshots, boosts, at)

    async def list_boosts(self, player_id: int, active_only: bool = True, now: Optional[datetime] = None) -> List[Boost]:
        at = self.now(now)
        player = await self.coordinator.require_player(player_id)
        if not active_only:
            return await self.storage.list_boosts(player.id)
        return [b for b in await self.storage.list_boosts(player.id, expiring_after=at) if b.is_active(at)]

    # --- mutations ---
    async def set_production_rate(
        self,
        site_id: int,
        resource_type: ResourceType,
        daily_amount: object,
        boosted_input: bool = False,
        now: Optional[datetime] = None,
    ) -> RateRecord:
        return await self.coordinator.set_production_rate(site_id, resource_type, daily_amount, boosted_input=boosted_input, now=now)

    async def activate_boost(self, player_id: int, resource_type: ResourceType, multiplier: object, now: Optional[datetime] = None) -> Boost:
        return await self.coordinator.activate_boost(player_id, resource_type, multiplier, now=now)

    async def retime_boost(
        self,
        boost_id: int,
        expires_at: Optional[datetime] = None,
        hours_remaining: Optional[object] = None,
        now: Optional[datetime] = None,
    ) -> Boost:
        return await self.coordinator.retime_boost(boost_id, expires_at=expires_at, hours_remaining=hours_remaining, now=now)

    async def remove_boost(self, boost_id: int, now: Optional[datetime] = None) -> Boost:
        return await self.coordinator.remove_boost(boost_id, now=now)

    async def set_manual_amount(self, site_id: int, resource_type: ResourceType, amount: object, now: Optional[datetime] = None) -> Snapshot:
        return await self.coordinator.set_manual_amount(site_id, resource_type, amount, now=now)

    async def reset_site(self, site_id: int, now: Optional[datetime] = None) -> List[Snapshot]:
        return await self.coordinator.reset_site(site_id, now=now)

    async def transfer_internal(
        self,
        from_site_id: int,
        to_site_id: int,
        resource_type: ResourceType,
        amount: object,
        now: Optional[datetime] = None,
    ) -> TransferResult:
        return await self.transfers.transfer_internal(from_site_id, to_site_id, resource_type, amount, now=now)

    async def execute_trade(
        self,
        from_player_id: int,
        to_player_id: int,
        from_site_id: int,
        resource_type: ResourceType,
        amount: object,
        to_site_id: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> TradeResult:
        return await self.transfers.execute_trade(
            from_player_id, to_player_id, from_site_id, resource_type, amount, to_site_id=to_site_id, now=now
        )

    async def list_trades(self, limit: Optional[int] = None, player_id: Optional[int] = None) -> List[TradeRecord]:
        return await self.transfers.list_trades(limit=limit, player_id=player_id)


__all__ = ["BanquetEngine"]
