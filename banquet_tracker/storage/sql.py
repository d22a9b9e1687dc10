"""SQLAlchemy (async) storage backend.

Each contract call runs in its own short session and commits before
returning, so every call is one round of I/O from the engine's point of view.
Backend errors surface as ``StorageFailure``; a lost optimistic race on a
stock row surfaces as ``ConcurrentUpdate``.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Iterable, List, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import aliased

from banquet_tracker.core.errors import BanquetError, ConcurrentUpdate, NotFound, StorageFailure
from banquet_tracker.core.metrics import metrics
from banquet_tracker.core.time_utils import ensure_aware_utc
from banquet_tracker.models import Boost, Player, RateRecord, ResourceType, Site, Snapshot, TradeRecord
from banquet_tracker.models.database import (
    Card as ORMCard,
    Player as ORMPlayer,
    Production as ORMProduction,
    Stock as ORMStock,
    Trade as ORMTrade,
    Village as ORMVillage,
)
from banquet_tracker.storage.base import Storage

logger = logging.getLogger(__name__)


def _player(row: ORMPlayer) -> Player:
    return Player(id=int(row.id), name=row.name, capacity=int(row.stock_capacity), created_at=ensure_aware_utc(row.created_at))


def _site(row: ORMVillage) -> Site:
    return Site(id=int(row.id), player_id=int(row.player_id), name=row.name, created_at=ensure_aware_utc(row.created_at))


def _rate(row: ORMProduction) -> RateRecord:
    return RateRecord(site_id=int(row.village_id), resource_type=ResourceType(row.banquet_type), daily_amount=int(row.daily_amount))


def _snapshot(row: ORMStock) -> Snapshot:
    return Snapshot(
        site_id=int(row.village_id),
        resource_type=ResourceType(row.banquet_type),
        amount=float(row.amount),
        as_of=ensure_aware_utc(row.last_updated),
        version=int(row.version),
    )


def _boost(row: ORMCard) -> Boost:
    return Boost(
        id=int(row.id),
        player_id=int(row.player_id),
        resource_type=ResourceType(row.banquet_type),
        multiplier=int(row.multiplier),
        activated_at=ensure_aware_utc(row.activated_at),
        expires_at=ensure_aware_utc(row.expires_at),
    )


def _trade(row: ORMTrade, from_name: Optional[str] = None, to_name: Optional[str] = None) -> TradeRecord:
    return TradeRecord(
        id=int(row.id),
        from_player_id=int(row.from_player_id),
        to_player_id=int(row.to_player_id),
        resource_type=ResourceType(row.banquet_type),
        amount=float(row.amount),
        created_at=ensure_aware_utc(row.created_at),
        from_player_name=from_name,
        to_player_name=to_name,
    )


class SqlStorage(Storage):
    def __init__(self, sessionmaker: async_sessionmaker) -> None:
        self._sessionmaker = sessionmaker

    @asynccontextmanager
    async def _session(self, op: str) -> AsyncIterator[AsyncSession]:
        try:
            async with self._sessionmaker() as session:
                yield session
        except BanquetError:
            raise
        except SQLAlchemyError as exc:
            metrics.increment_event("storage.failure")
            logger.warning("storage_call_failed", extra={"op": op}, exc_info=True)
            raise StorageFailure(f"storage call {op} failed") from exc

    @staticmethod
    async def _require_site(session: AsyncSession, site_id: int) -> None:
        if await session.get(ORMVillage, int(site_id)) is None:
            raise NotFound(f"village {site_id} not found")

    # --- players ---
    async def create_player(self, name: str, capacity: int, created_at: datetime) -> Player:
        async with self._session("create_player") as session:
            row = ORMPlayer(name=name, stock_capacity=int(capacity), created_at=created_at)
            session.add(row)
            await session.commit()
            return _player(row)

    async def get_player(self, player_id: int) -> Optional[Player]:
        async with self._session("get_player") as session:
            row = await session.get(ORMPlayer, int(player_id))
            return _player(row) if row is not None else None

    async def list_players(self) -> List[Player]:
        async with self._session("list_players") as session:
            rows = (await session.execute(select(ORMPlayer).order_by(ORMPlayer.id))).scalars().all()
            return [_player(r) for r in rows]

    async def update_player_capacity(self, player_id: int, capacity: int) -> Player:
        async with self._session("update_player_capacity") as session:
            row = await session.get(ORMPlayer, int(player_id))
            if row is None:
                raise NotFound(f"player {player_id} not found")
            row.stock_capacity = int(capacity)
            await session.commit()
            return _player(row)

    async def delete_player(self, player_id: int) -> None:
        async with self._session("delete_player") as session:
            row = await session.get(ORMPlayer, int(player_id))
            if row is None:
                raise NotFound(f"player {player_id} not found")
            village_ids = select(ORMVillage.id).where(ORMVillage.player_id == int(player_id))
            await session.execute(delete(ORMStock).where(ORMStock.village_id.in_(village_ids)))
            await session.execute(delete(ORMProduction).where(ORMProduction.village_id.in_(village_ids)))
            await session.execute(delete(ORMVillage).where(ORMVillage.player_id == int(player_id)))
            await session.execute(delete(ORMCard).where(ORMCard.player_id == int(player_id)))
            await session.execute(delete(ORMPlayer).where(ORMPlayer.id == int(player_id)))
            await session.commit()

    # --- sites ---
    async def create_site(self, player_id: int, name: str, created_at: datetime) -> Site:
        async with self._session("create_site") as session:
            if await session.get(ORMPlayer, int(player_id)) is None:
                raise NotFound(f"player {player_id} not found")
            row = ORMVillage(player_id=int(player_id), name=name, created_at=created_at)
            session.add(row)
            await session.commit()
            return _site(row)

    async def get_site(self, site_id: int) -> Optional[Site]:
        async with self._session("get_site") as session:
            row = await session.get(ORMVillage, int(site_id))
            return _site(row) if row is not None else None

    async def list_sites(self, player_id: Optional[int] = None) -> List[Site]:
        async with self._session("list_sites") as session:
            stmt = select(ORMVillage).order_by(ORMVillage.id)
            if player_id is not None:
                stmt = stmt.where(ORMVillage.player_id == int(player_id))
            rows = (await session.execute(stmt)).scalars().all()
            return [_site(r) for r in rows]

    async def delete_site(self, site_id: int) -> None:
        async with self._session("delete_site") as session:
            await self._require_site(session, site_id)
            await session.execute(delete(ORMStock).where(ORMStock.village_id == int(site_id)))
            await session.execute(delete(ORMProduction).where(ORMProduction.village_id == int(site_id)))
            await session.execute(delete(ORMVillage).where(ORMVillage.id == int(site_id)))
            await session.commit()

    # --- production rates ---
    async def get_rate(self, site_id: int, resource_type: ResourceType) -> Optional[RateRecord]:
        async with self._session("get_rate") as session:
            stmt = select(ORMProduction).where(
                ORMProduction.village_id == int(site_id), ORMProduction.banquet_type == resource_type.value
            )
            row = (await session.execute(stmt)).scalar_one_or_none()
            return _rate(row) if row is not None else None

    async def upsert_rate(self, site_id: int, resource_type: ResourceType, daily_amount: int) -> RateRecord:
        async with self._session("upsert_rate") as session:
            stmt = select(ORMProduction).where(
                ORMProduction.village_id == int(site_id), ORMProduction.banquet_type == resource_type.value
            )
            row = (await session.execute(stmt)).scalar_one_or_none()
            if row is None:
                await self._require_site(session, site_id)
                row = ORMProduction(village_id=int(site_id), banquet_type=resource_type.value, daily_amount=int(daily_amount))
                session.add(row)
            else:
                row.daily_amount = int(daily_amount)
            await session.commit()
            return _rate(row)

    async def list_rates(self, site_ids: Iterable[int]) -> List[RateRecord]:
        ids = [int(s) for s in site_ids]
        if not ids:
            return []
        async with self._session("list_rates") as session:
            rows = (await session.execute(select(ORMProduction).where(ORMProduction.village_id.in_(ids)))).scalars().all()
            return [_rate(r) for r in rows]

    # --- snapshots ---
    async def get_snapshot(self, site_id: int, resource_type: ResourceType) -> Optional[Snapshot]:
        async with self._session("get_snapshot") as session:
            stmt = select(ORMStock).where(ORMStock.village_id == int(site_id), ORMStock.banquet_type == resource_type.value)
            row = (await session.execute(stmt)).scalar_one_or_none()
            return _snapshot(row) if row is not None else None

    async def upsert_snapshot(
        self,
        site_id: int,
        resource_type: ResourceType,
        amount: float,
        as_of: datetime,
        expected_version: Optional[int] = None,
    ) -> Snapshot:
        async with self._session("upsert_snapshot") as session:
            stmt = select(ORMStock).where(ORMStock.village_id == int(site_id), ORMStock.banquet_type == resource_type.value)
            row = (await session.execute(stmt)).scalar_one_or_none()
            current_version = int(row.version) if row is not None else 0
            if expected_version is not None and current_version != int(expected_version):
                raise ConcurrentUpdate(
                    f"snapshot {site_id}/{resource_type.value} at version {current_version}, expected {expected_version}"
                )
            new_version = current_version + 1
            if row is None:
                await self._require_site(session, site_id)
                session.add(ORMStock(
                    village_id=int(site_id),
                    banquet_type=resource_type.value,
                    amount=float(amount),
                    last_updated=as_of,
                    version=new_version,
                ))
            else:
                guarded = update(ORMStock).where(ORMStock.id == row.id)
                if expected_version is not None:
                    guarded = guarded.where(ORMStock.version == current_version)
                result = await session.execute(
                    guarded.values(amount=float(amount), last_updated=as_of, version=new_version)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    await session.rollback()
                    raise ConcurrentUpdate(f"snapshot {site_id}/{resource_type.value} changed during write")
            try:
                await session.commit()
            except IntegrityError as exc:
                # Another writer created the row first
                await session.rollback()
                raise ConcurrentUpdate(f"snapshot {site_id}/{resource_type.value} created concurrently") from exc
            return Snapshot(
                site_id=int(site_id),
                resource_type=resource_type,
                amount=float(amount),
                as_of=as_of,
                version=new_version,
            )

    async def list_snapshots(self, site_ids: Iterable[int]) -> List[Snapshot]:
        ids = [int(s) for s in site_ids]
        if not ids:
            return []
        async with self._session("list_snapshots") as session:
            rows = (await session.execute(select(ORMStock).where(ORMStock.village_id.in_(ids)))).scalars().all()
            return [_snapshot(r) for r in rows]

    # --- boosts ---
    async def list_boosts(
        self,
        player_id: int,
        resource_type: Optional[ResourceType] = None,
        expiring_after: Optional[datetime] = None,
    ) -> List[Boost]:
        async with self._session("list_boosts") as session:
            stmt = select(ORMCard).where(ORMCard.player_id == int(player_id)).order_by(ORMCard.id)
            if resource_type is not None:
                stmt = stmt.where(ORMCard.banquet_type == resource_type.value)
            if expiring_after is not None:
                stmt = stmt.where(ORMCard.expires_at > expiring_after)
            rows = (await session.execute(stmt)).scalars().all()
            return [_boost(r) for r in rows]

    async def get_boost(self, boost_id: int) -> Optional[Boost]:
        async with self._session("get_boost") as session:
            row = await session.get(ORMCard, int(boost_id))
            return _boost(row) if row is not None else None

    async def insert_boost(
        self,
        player_id: int,
        resource_type: ResourceType,
        multiplier: int,
        activated_at: datetime,
        expires_at: datetime,
    ) -> Boost:
        async with self._session("insert_boost") as session:
            if await session.get(ORMPlayer, int(player_id)) is None:
                raise NotFound(f"player {player_id} not found")
            row = ORMCard(
                player_id=int(player_id),
                banquet_type=resource_type.value,
                multiplier=int(multiplier),
                activated_at=activated_at,
                expires_at=expires_at,
            )
            session.add(row)
            await session.commit()
            return _boost(row)

    async def delete_boost(self, boost_id: int) -> None:
        async with self._session("delete_boost") as session:
            row = await session.get(ORMCard, int(boost_id))
            if row is None:
                raise NotFound(f"card {boost_id} not found")
            await session.delete(row)
            await session.commit()

    async def update_boost_expiry(self, boost_id: int, expires_at: datetime) -> Boost:
        async with self._session("update_boost_expiry") as session:
            row = await session.get(ORMCard, int(boost_id))
            if row is None:
                raise NotFound(f"card {boost_id} not found")
            row.expires_at = expires_at
            await session.commit()
            return _boost(row)

    # --- trades ---
    async def insert_trade(
        self,
        from_player_id: int,
        to_player_id: int,
        resource_type: ResourceType,
        amount: float,
        created_at: datetime,
    ) -> TradeRecord:
        async with self._session("insert_trade") as session:
            row = ORMTrade(
                from_player_id=int(from_player_id),
                to_player_id=int(to_player_id),
                banquet_type=resource_type.value,
                amount=float(amount),
                created_at=created_at,
            )
            session.add(row)
            await session.commit()
            sender = await session.get(ORMPlayer, int(from_player_id))
            recipient = await session.get(ORMPlayer, int(to_player_id))
            return _trade(
                row,
                sender.name if sender is not None else None,
                recipient.name if recipient is not None else None,
            )

    async def list_trades(self, limit: int = 20, player_id: Optional[int] = None) -> List[TradeRecord]:
        sender = aliased(ORMPlayer)
        recipient = aliased(ORMPlayer)
        async with self._session("list_trades") as session:
            stmt = (
                select(ORMTrade, sender.name, recipient.name)
                .outerjoin(sender, sender.id == ORMTrade.from_player_id)
                .outerjoin(recipient, recipient.id == ORMTrade.to_player_id)
                .order_by(ORMTrade.created_at.desc(), ORMTrade.id.desc())
                .limit(max(0, int(limit)))
            )
            if player_id is not None:
                pid = int(player_id)
                stmt = stmt.where((ORMTrade.from_player_id == pid) | (ORMTrade.to_player_id == pid))
            rows = (await session.execute(stmt)).all()
            return [_trade(trade, from_name, to_name) for trade, from_name, to_name in rows]


__all__ = ["SqlStorage"]
