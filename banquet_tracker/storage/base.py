"""Storage contract consumed by the engine.

Every method is a coroutine: any call may suspend on I/O. Implementations
raise ``NotFound`` for unknown ids on mutating calls, ``ConcurrentUpdate``
when an optimistic snapshot write loses a race, and ``StorageFailure`` for
backend errors. Absence on reads is returned as ``None`` / empty lists.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Iterable, List, Optional

from banquet_tracker.models import Boost, Player, RateRecord, ResourceType, Site, Snapshot, TradeRecord


class Storage(ABC):
    # --- players ---
    @abstractmethod
    async def create_player(self, name: str, capacity: int, created_at: datetime) -> Player: ...

    @abstractmethod
    async def get_player(self, player_id: int) -> Optional[Player]: ...

    @abstractmethod
    async def list_players(self) -> List[Player]:
        """All players ordered by id."""

    @abstractmethod
    async def update_player_capacity(self, player_id: int, capacity: int) -> Player: ...

    @abstractmethod
    async def delete_player(self, player_id: int) -> None:
        """Delete a player with its villages, their rows and its cards. Trades are kept."""

    # --- sites ---
    @abstractmethod
    async def create_site(self, player_id: int, name: str, created_at: datetime) -> Site: ...

    @abstractmethod
    async def get_site(self, site_id: int) -> Optional[Site]: ...

    @abstractmethod
    async def list_sites(self, player_id: Optional[int] = None) -> List[Site]:
        """Villages in creation order, optionally restricted to one player."""

    @abstractmethod
    async def delete_site(self, site_id: int) -> None:
        """Delete a village together with its rate and snapshot rows."""

    # --- production rates ---
    @abstractmethod
    async def get_rate(self, site_id: int, resource_type: ResourceType) -> Optional[RateRecord]: ...

    @abstractmethod
    async def upsert_rate(self, site_id: int, resource_type: ResourceType, daily_amount: int) -> RateRecord: ...

    @abstractmethod
    async def list_rates(self, site_ids: Iterable[int]) -> List[RateRecord]: ...

    # --- snapshots ---
    @abstractmethod
    async def get_snapshot(self, site_id: int, resource_type: ResourceType) -> Optional[Snapshot]: ...

    @abstractmethod
    async def upsert_snapshot(
        self,
        site_id: int,
        resource_type: ResourceType,
        amount: float,
        as_of: datetime,
        expected_version: Optional[int] = None,
    ) -> Snapshot:
        """Write a snapshot, bumping its version.

        With ``expected_version`` the write only succeeds if the stored version
        (0 for a missing row) still equals it; otherwise ``ConcurrentUpdate``.
        """

    @abstractmethod
    async def list_snapshots(self, site_ids: Iterable[int]) -> List[Snapshot]: ...

    # --- boosts ---
    @abstractmethod
    async def list_boosts(
        self,
        player_id: int,
        resource_type: Optional[ResourceType] = None,
        expiring_after: Optional[datetime] = None,
    ) -> List[Boost]:
        """Cards of a player, optionally only those with ``expires_at > expiring_after``."""

    @abstractmethod
    async def get_boost(self, boost_id: int) -> Optional[Boost]: ...

    @abstractmethod
    async def insert_boost(
        self,
        player_id: int,
        resource_type: ResourceType,
        multiplier: int,
        activated_at: datetime,
        expires_at: datetime,
    ) -> Boost: ...

    @abstractmethod
    async def delete_boost(self, boost_id: int) -> None: ...

    @abstractmethod
    async def update_boost_expiry(self, boost_id: int, expires_at: datetime) -> Boost: ...

    # --- trades ---
    @abstractmethod
    async def insert_trade(
        self,
        from_player_id: int,
        to_player_id: int,
        resource_type: ResourceType,
        amount: float,
        created_at: datetime,
    ) -> TradeRecord: ...

    @abstractmethod
    async def list_trades(self, limit: int = 20, player_id: Optional[int] = None) -> List[TradeRecord]:
        """Newest first, with player names resolved where the players still exist."""

    async def close(self) -> None:
        """Release backend resources. No-op by default."""
        return None


__all__ = ["Storage"]
