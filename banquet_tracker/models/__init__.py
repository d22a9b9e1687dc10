from .components import (
    Boost,
    Player,
    RateRecord,
    ResourceType,
    Site,
    Snapshot,
    TradeRecord,
    rate_or_zero,
    snapshot_or_zero,
    zero_snapshot,
)

__all__ = [
    "Boost",
    "Player",
    "RateRecord",
    "ResourceType",
    "Site",
    "Snapshot",
    "TradeRecord",
    "rate_or_zero",
    "snapshot_or_zero",
    "zero_snapshot",
]
