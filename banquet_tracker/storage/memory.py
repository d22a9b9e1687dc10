"""In-memory storage backend.

Used by tests and by the service when the database layer is disabled, the
same way the in-memory stores back the game when ENABLE_DB is false. Rows are
copied on the way in and out so callers can never mutate stored state by
accident.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

from banquet_tracker.core.errors import ConcurrentUpdate, NotFound
from banquet_tracker.models import Boost, Player, RateRecord, ResourceType, Site, Snapshot, TradeRecord
from banquet_tracker.storage.base import Storage

_Key = Tuple[int, ResourceType]


class InMemoryStorage(Storage):
    def __init__(self) -> None:
        self._players: Dict[int, Player] = {}
        self._sites: Dict[int, Site] = {}
        self._rates: Dict[_Key, RateRecord] = {}
        self._snapshots: Dict[_Key, Snapshot] = {}
        self._boosts: Dict[int, Boost] = {}
        self._trades: List[TradeRecord] = []
        self._next_ids: Dict[str, int] = {"player": 1, "site": 1, "boost": 1, "trade": 1}

    def _next_id(self, kind: str) -> int:
        nid = self._next_ids[kind]
        self._next_ids[kind] = nid + 1
        return nid

    # --- players ---
    async def create_player(self, name: str, capacity: int, created_at: datetime) -> Player:
        player = Player(id=self._next_id("player"), name=name, capacity=int(capacity), created_at=created_at)
        self._players[player.id] = player
        return replace(player)

    async def get_player(self, player_id: int) -> Optional[Player]:
        player = self._players.get(int(player_id))
        return replace(player) if player is not None else None

    async def list_players(self) -> List[Player]:
        return [replace(p) for _, p in sorted(self._players.items())]

    async def update_player_capacity(self, player_id: int, capacity: int) -> Player:
        player = self._players.get(int(player_id))
        if player is None:
            raise NotFound(f"player {player_id} not found")
        player.capacity = int(capacity)
        return replace(player)

    async def delete_player(self, player_id: int) -> None:
        pid = int(player_id)
        if self._players.pop(pid, None) is None:
            raise NotFound(f"player {player_id} not found")
        for site in [s for s in self._sites.values() if s.player_id == pid]:
            await self.delete_site(site.id)
        for bid in [b.id for b in self._boosts.values() if b.player_id == pid]:
            self._boosts.pop(bid, None)

    # --- sites ---
    async def create_site(self, player_id: int, name: str, created_at: datetime) -> Site:
        if int(player_id) not in self._players:
            raise NotFound(f"player {player_id} not found")
        site = Site(id=self._next_id("site"), player_id=int(player_id), name=name, created_at=created_at)
        self._sites[site.id] = site
        return replace(site)

    async def get_site(self, site_id: int) -> Optional[Site]:
        site = self._sites.get(int(site_id))
        return replace(site) if site is not None else None

    async def list_sites(self, player_id: Optional[int] = None) -> List[Site]:
        sites = [s for _, s in sorted(self._sites.items())]
        if player_id is not None:
            sites = [s for s in sites if s.player_id == int(player_id)]
        return [replace(s) for s in sites]

    async def delete_site(self, site_id: int) -> None:
        sid = int(site_id)
        if self._sites.pop(sid, None) is None:
            raise NotFound(f"village {site_id} not found")
        for key in [k for k in self._rates if k[0] == sid]:
            del self._rates[key]
        for key in [k for k in self._snapshots if k[0] == sid]:
            del self._snapshots[key]

    def _require_site(self, site_id: int) -> None:
        if int(site_id) not in self._sites:
            raise NotFound(f"village {site_id} not found")

    # --- production rates ---
    async def get_rate(self, site_id: int, resource_type: ResourceType) -> Optional[RateRecord]:
        rate = self._rates.get((int(site_id), resource_type))
        return replace(rate) if rate is not None else None

    async def upsert_rate(self, site_id: int, resource_type: ResourceType, daily_amount: int) -> RateRecord:
        self._require_site(site_id)
        rate = RateRecord(site_id=int(site_id), resource_type=resource_type, daily_amount=int(daily_amount))
        self._rates[(rate.site_id, resource_type)] = rate
        return replace(rate)

    async def list_rates(self, site_ids: Iterable[int]) -> List[RateRecord]:
        wanted = {int(s) for s in site_ids}
        return [replace(r) for (sid, _), r in self._rates.items() if sid in wanted]

    # --- snapshots ---
    async def get_snapshot(self, site_id: int, resource_type: ResourceType) -> Optional[Snapshot]:
        snap = self._snapshots.get((int(site_id), resource_type))
        return replace(snap) if snap is not None else None

    async def upsert_snapshot(
        self,
        site_id: int,
        resource_type: ResourceType,
        amount: float,
        as_of: datetime,
        expected_version: Optional[int] = None,
    ) -> Snapshot:
        self._require_site(site_id)
        key = (int(site_id), resource_type)
        current = self._snapshots.get(key)
        current_version = current.version if current is not None else 0
        if expected_version is not None and current_version != int(expected_version):
            raise ConcurrentUpdate(
                f"snapshot {site_id}/{resource_type.value} at version {current_version}, expected {expected_version}"
            )
        snap = Snapshot(
            site_id=int(site_id),
            resource_type=resource_type,
            amount=float(amount),
            as_of=as_of,
            version=current_version + 1,
        )
        self._snapshots[key] = snap
        return replace(snap)

    async def list_snapshots(self, site_ids: Iterable[int]) -> List[Snapshot]:
        wanted = {int(s) for s in site_ids}
        return [replace(s) for (sid, _), s in self._snapshots.items() if sid in wanted]

    # --- boosts ---
    async def list_boosts(
        self,
        player_id: int,
        resource_type: Optional[ResourceType] = None,
        expiring_after: Optional[datetime] = None,
    ) -> List[Boost]:
        out = []
        for _, boost in sorted(self._boosts.items()):
            if boost.player_id != int(player_id):
                continue
            if resource_type is not None and boost.resource_type != resource_type:
                continue
            if expiring_after is not None and not boost.expires_at > expiring_after:
                continue
            out.append(replace(boost))
        return out

    async def get_boost(self, boost_id: int) -> Optional[Boost]:
        boost = self._boosts.get(int(boost_id))
        return replace(boost) if boost is not None else None

    async def insert_boost(
        self,
        player_id: int,
        resource_type: ResourceType,
        multiplier: int,
        activated_at: datetime,
        expires_at: datetime,
    ) -> Boost:
        if int(player_id) not in self._players:
            raise NotFound(f"player {player_id} not found")
        boost = Boost(
            id=self._next_id("boost"),
            player_id=int(player_id),
            resource_type=resource_type,
            multiplier=int(multiplier),
            activated_at=activated_at,
            expires_at=expires_at,
        )
        self._boosts[boost.id] = boost
        return replace(boost)

    async def delete_boost(self, boost_id: int) -> None:
        if self._boosts.pop(int(boost_id), None) is None:
            raise NotFound(f"card {boost_id} not found")

    async def update_boost_expiry(self, boost_id: int, expires_at: datetime) -> Boost:
        boost = self._boosts.get(int(boost_id))
        if boost is None:
            raise NotFound(f"card {boost_id} not found")
        boost.expires_at = expires_at
        return replace(boost)

    # --- trades ---
    async def insert_trade(
        self,
        from_player_id: int,
        to_player_id: int,
        resource_type: ResourceType,
        amount: float,
        created_at: datetime,
    ) -> TradeRecord:
        record = TradeRecord(
            id=self._next_id("trade"),
            from_player_id=int(from_player_id),
            to_player_id=int(to_player_id),
            resource_type=resource_type,
            amount=float(amount),
            created_at=created_at,
        )
        self._trades.append(record)
        return self._with_names(record)

    async def list_trades(self, limit: int = 20, player_id: Optional[int] = None) -> List[TradeRecord]:
        rows = list(self._trades)
        if player_id is not None:
            pid = int(player_id)
            rows = [t for t in rows if pid in (t.from_player_id, t.to_player_id)]
        # Newest first; id breaks timestamp ties
        rows.sort(key=lambda t: (t.created_at, t.id), reverse=True)
        return [self._with_names(t) for t in rows[: max(0, int(limit))]]

    def _with_names(self, record: TradeRecord) -> TradeRecord:
        sender = self._players.get(record.from_player_id)
        recipient = self._players.get(record.to_player_id)
        return replace(
            record,
            from_player_name=sender.name if sender is not None else None,
            to_player_name=recipient.name if recipient is not None else None,
        )


__all__ = ["InMemoryStorage"]
