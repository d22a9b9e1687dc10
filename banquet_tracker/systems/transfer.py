"""Stock moves between villages: internal transfers and trades between players.

Both sides are read through the coordinator (snapshot plus accrual, clamped to
the owner's capacity) and written back as fresh snapshots dated "now", so a
move doubles as the freeze of both stocks. Writes are version-guarded; a lost
race re-reads that side and recomputes it.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional

from banquet_tracker.core.config import TRADE_HISTORY_LIMIT, get_snapshot_write_retries, get_trade_allow_overdraw
from banquet_tracker.core.errors import ConcurrentUpdate, InsufficientStock, ValidationError, require_non_negative_number
from banquet_tracker.core.metrics import metrics
from banquet_tracker.core.trade_events import record_trade_event
from banquet_tracker.models import ResourceType, Site, Snapshot, TradeRecord
from banquet_tracker.systems.coordinator import MutationCoordinator

logger = logging.getLogger(__name__)


@dataclass
class TransferResult:
    resource_type: ResourceType
    amount: float
    source: Snapshot
    destination: Snapshot


@dataclass
class TradeResult:
    trade: TradeRecord
    delivered: bool
    from_site_id: int
    to_site_id: Optional[int] = None
    source: Optional[Snapshot] = None
    destination: Optional[Snapshot] = None


def _require_positive_amount(amount: object) -> float:
    value = require_non_negative_number(amount, "amount")
    if value <= 0:
        raise ValidationError("amount must be > 0")
    return value


class TransferEngine:
    def __init__(self, coordinator: MutationCoordinator) -> None:
        self.coordinator = coordinator

    @property
    def storage(self):
        return self.coordinator.storage

    async def _rewrite(
        self,
        site: Site,
        resource_type: ResourceType,
        capacity: float,
        compute: Callable[[float], float],
        at: datetime,
    ) -> Snapshot:
        """Replace a stock with ``compute(current clamped amount)`` under a version guard."""
        attempts = get_snapshot_write_retries()
        for attempt in range(1, attempts + 1):
            reading = await self.coordinator.read(site, resource_type, at)
            target = max(0.0, compute(reading.clamped(capacity)))
            try:
                return await self.storage.upsert_snapshot(
                    site.id, resource_type, target, at, expected_version=reading.snapshot.version
                )
            except ConcurrentUpdate:
                metrics.increment_event("transfer.conflict")
                logger.info(
                    "transfer_conflict_retry",
                    extra={"site_id": site.id, "banquet_type": resource_type.value, "attempt": attempt},
                )
        raise ConcurrentUpdate(f"could not update {site.id}/{resource_type.value} after {attempts} attempts")

    async def transfer_internal(
        self,
        from_site_id: int,
        to_site_id: int,
        resource_type: ResourceType,
        amount: object,
        now: Optional[datetime] = None,
    ) -> TransferResult:
        """Move stock between two villages of the same player."""
        at = self.coordinator.now(now)
        value = _require_positive_amount(amount)
        if int(from_site_id) == int(to_site_id):
            raise ValidationError("source and destination villages must differ")
        source = await self.coordinator.require_site(from_site_id)
        destination = await self.coordinator.require_site(to_site_id)
        if source.player_id != destination.player_id:
            raise ValidationError("internal transfers require two villages of the same player")
        player = await self.coordinator.require_player(source.player_id)
        capacity = float(player.capacity)

        async with self.coordinator.hold([(source.id, resource_type), (destination.id, resource_type)]):
            available = (await self.coordinator.read(source, resource_type, at)).clamped(capacity)
            if value > available:
                metrics.increment_event("transfer.insufficient")
                raise InsufficientStock(value, available)
            debited = await self._rewrite(source, resource_type, capacity, lambda cur: cur - value, at)
            credited = await self._rewrite(
                destination, resource_type, capacity, lambda cur: min(cur + value, capacity), at
            )

        metrics.increment_event("transfer.internal")
        logger.info(
            "internal_transfer",
            extra={
                "player_id": player.id,
                "from_site_id": source.id,
                "to_site_id": destination.id,
                "banquet_type": resource_type.value,
                "amount": value,
            },
        )
        self.coordinator.publish("stocks", player_id=player.id, site_id=source.id)
        self.coordinator.publish("stocks", player_id=player.id, site_id=destination.id)
        return TransferResult(resource_type=resource_type, amount=value, source=debited, destination=credited)

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
        """Give stock from one player's village to another player.

        The ledger row is written before any stock moves. When the recipient
        has no village the row is still kept and nothing is credited.
        """
        at = self.coordinator.now(now)
        value = _require_positive_amount(amount)
        if int(from_player_id) == int(to_player_id):
            raise ValidationError("a player cannot trade with themselves")
        sender = await self.coordinator.require_player(from_player_id)
        recipient = await self.coordinator.require_player(to_player_id)
        source = await self.coordinator.require_site(from_site_id)
        if source.player_id != sender.id:
            raise ValidationError(f"village {source.id} does not belong to player {sender.id}")

        destination: Optional[Site] = None
        if to_site_id is not None:
            destination = await self.coordinator.require_site(to_site_id)
            if destination.player_id != recipient.id:
                raise ValidationError(f"village {destination.id} does not belong to player {recipient.id}")
        else:
            recipient_sites = await self.storage.list_sites(recipient.id)
            destination = recipient_sites[0] if recipient_sites else None

        started = time.perf_counter()
        keys = [(source.id, resource_type)]
        if destination is not None:
            keys.append((destination.id, resource_type))
        sender_capacity = float(sender.capacity)
        async with self.coordinator.hold(keys):
            if not get_trade_allow_overdraw():
                available = (await self.coordinator.read(source, resource_type, at)).clamped(sender_capacity)
                if value > available:
                    metrics.increment_event("trade.insufficient")
                    raise InsufficientStock(value, available)

            trade = await record_trade_event(self.storage, sender.id, recipient.id, resource_type, value, at)
            trade.from_player_name = sender.name
            trade.to_player_name = recipient.name

            debited = await self._rewrite(source, resource_type, sender_capacity, lambda cur: cur - value, at)
            credited: Optional[Snapshot] = None
            if destination is not None:
                recipient_capacity = float(recipient.capacity)
                credited = await self._rewrite(
                    destination,
                    resource_type,
                    recipient_capacity,
                    lambda cur: min(cur + value, recipient_capacity),
                    at,
                )

        delivered = destination is not None
        metrics.increment_event("trade.executed")
        if not delivered:
            metrics.increment_event("trade.undelivered")
        metrics.record_timer("trade.execute_s", time.perf_counter() - started)
        logger.info(
            "trade_executed",
            extra={
                "trade_id": trade.id,
                "from_player_id": sender.id,
                "to_player_id": recipient.id,
                "from_site_id": source.id,
                "to_site_id": destination.id if destination is not None else None,
                "banquet_type": resource_type.value,
                "amount": value,
                "delivered": delivered,
            },
        )
        self.coordinator.publish("trades", player_id=sender.id)
        self.coordinator.publish("stocks", player_id=sender.id, site_id=source.id)
        if destination is not None:
            self.coordinator.publish("stocks", player_id=recipient.id, site_id=destination.id)
        return TradeResult(
            trade=trade,
            delivered=delivered,
            from_site_id=source.id,
            to_site_id=destination.id if destination is not None else None,
            source=debited,
            destination=credited,
        )

    async def list_trades(self, limit: Optional[int] = None, player_id: Optional[int] = None) -> List[TradeRecord]:
        """Trade history, newest first; ``player_id`` keeps trades where that player is either side."""
        size = TRADE_HISTORY_LIMIT if limit is None else int(limit)
        if size < 0:
            raise ValidationError("limit must be >= 0")
        return await self.storage.list_trades(limit=size, player_id=player_id)


__all__ = ["TransferEngine", "TransferResult", "TradeResult"]
