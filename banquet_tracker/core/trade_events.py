from __future__ import annotations

from typing import TypedDict, Optional
from datetime import datetime
import logging

from banquet_tracker.core.metrics import metrics
from banquet_tracker.core.time_utils import isoformat_utc
from banquet_tracker.models import ResourceType, TradeRecord
from banquet_tracker.storage.base import Storage

logger = logging.getLogger(__name__)


class TradeEventPayload(TypedDict, total=False):
    # Standardized ledger entry shape for API and chat consumers
    id: int
    from_player_id: int
    from_player: Optional[str]
    to_player_id: int
    to_player: Optional[str]
    banquet_type: str
    amount: float
    timestamp: Optional[str]  # ISO8601


def trade_payload(record: TradeRecord) -> TradeEventPayload:
    return {
        "id": int(record.id),
        "from_player_id": int(record.from_player_id),
        "from_player": record.from_player_name,
        "to_player_id": int(record.to_player_id),
        "to_player": record.to_player_name,
        "banquet_type": record.resource_type.value,
        "amount": float(record.amount),
        "timestamp": isoformat_utc(record.created_at),
    }


async def record_trade_event(
    storage: Storage,
    from_player_id: int,
    to_player_id: int,
    resource_type: ResourceType,
    amount: float,
    created_at: datetime,
) -> TradeRecord:
    """Append one immutable entry to the trade ledger.

    Storage failures propagate: a trade that cannot be recorded must not move stock.
    """
    record = await storage.insert_trade(from_player_id, to_player_id, resource_type, amount, created_at)
    logger.info(
        "trade_event_recorded",
        extra={
            "event_id": record.id,
            "from_player_id": record.from_player_id,
            "to_player_id": record.to_player_id,
            "banquet_type": record.resource_type.value,
            "amount": record.amount,
            "timestamp": isoformat_utc(record.created_at),
        },
    )
    metrics.increment_event("trade.recorded")
    return record


__all__ = [
    "TradeEventPayload",
    "trade_payload",
    "record_trade_event",
]
