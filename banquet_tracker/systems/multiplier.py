"""Card multiplier resolution.

A player may hold several card rows per banquet type (history, or rows left
over from retiming). At any instant only one counts: among the rows for the
player and type that have started and not yet expired, the latest activated.
"""

from __future__ import annotations

from datetime import datetime
from typing import Iterable, List, Optional

from banquet_tracker.models import Boost, ResourceType
from banquet_tracker.storage.base import Storage


def active_boost(
    boosts: Iterable[Boost],
    now: datetime,
    player_id: Optional[int] = None,
    resource_type: Optional[ResourceType] = None,
) -> Optional[Boost]:
    """Return the card in effect at ``now``, or None."""
    best: Optional[Boost] = None
    for boost in boosts:
        if player_id is not None and boost.player_id != player_id:
            continue
        if resource_type is not None and boost.resource_type != resource_type:
            continue
        if not boost.is_active(now):
            continue
        if best is None or (boost.activated_at, boost.id) > (best.activated_at, best.id):
            best = boost
    return best


def active_multiplier(
    boosts: Iterable[Boost],
    now: datetime,
    player_id: Optional[int] = None,
    resource_type: Optional[ResourceType] = None,
) -> int:
    """Return the multiplier in effect at ``now`` (1 without an active card)."""
    boost = active_boost(boosts, now, player_id=player_id, resource_type=resource_type)
    return max(1, int(boost.multiplier)) if boost is not None else 1


def active_boosts_by_type(boosts: Iterable[Boost], now: datetime) -> dict[ResourceType, Boost]:
    """Map each banquet type to its active card, for display."""
    pool: List[Boost] = list(boosts)
    out: dict[ResourceType, Boost] = {}
    for rt in ResourceType:
        boost = active_boost(pool, now, resource_type=rt)
        if boost is not None:
            out[rt] = boost
    return out


async def resolve_multiplier(storage: Storage, player_id: int, resource_type: ResourceType, now: datetime) -> int:
    """Fetch the player's unexpired cards for a type and resolve the multiplier."""
    boosts = await storage.list_boosts(player_id, resource_type=resource_type, expiring_after=now)
    return active_multiplier(boosts, now, player_id=player_id, resource_type=resource_type)


__all__ = ["active_boost", "active_multiplier", "active_boosts_by_type", "resolve_multiplier"]
