from __future__ import annotations

from datetime import datetime
from typing import Iterable, List

from banquet_tracker.core.time_utils import elapsed_days
from banquet_tracker.models import Boost, Snapshot
from banquet_tracker.systems.multiplier import active_multiplier


def current_amount(snapshot: Snapshot, daily_rate: float, multiplier: float, now: datetime) -> float:
    """Stock implied by a snapshot after accruing ``daily_rate * multiplier`` per day until ``now``.

    Not clamped: callers clamp against the capacity of whichever player owns
    the village. A snapshot dated after ``now`` accrues nothing.
    """
    days = max(0.0, elapsed_days(snapshot.as_of, now))
    return float(snapshot.amount) + float(daily_rate) * float(multiplier) * days


def accrue_with_boosts(snapshot: Snapshot, daily_rate: float, boosts: Iterable[Boost], now: datetime) -> float:
    """Like ``current_amount`` but integrates card multipliers over time.

    The interval since the snapshot is cut at every card activation and expiry
    that falls inside it; each piece accrues at the multiplier in effect during
    that piece. ``boosts`` must already be restricted to one player and type.
    """
    start = snapshot.as_of
    if not daily_rate or now <= start:
        return float(snapshot.amount)
    pool: List[Boost] = list(boosts)
    edges = {start, now}
    for boost in pool:
        for t in (boost.activated_at, boost.expires_at):
            if start < t < now:
                edges.add(t)
    points = sorted(edges)
    total = float(snapshot.amount)
    for seg_start, seg_end in zip(points, points[1:]):
        mult = active_multiplier(pool, seg_start)
        total += float(daily_rate) * mult * elapsed_days(seg_start, seg_end)
    return total


def clamp_amount(amount: float, capacity: float) -> float:
    """Project a raw amount into ``[0, capacity]``."""
    return min(max(0.0, float(amount)), max(0.0, float(capacity)))


__all__ = ["current_amount", "accrue_with_boosts", "clamp_amount"]
