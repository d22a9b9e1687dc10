"""Read-only projections over already-fetched rows.

Nothing here touches storage or writes; every function is a pure function of
its arguments plus ``now``. Amounts shown to players are clamped to the
owner's capacity.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

from banquet_tracker.core.config import get_near_capacity_percent
from banquet_tracker.core.time_utils import isoformat_utc
from banquet_tracker.models import Boost, Player, RateRecord, ResourceType, Site, Snapshot, snapshot_or_zero
from banquet_tracker.systems.accrual import accrue_with_boosts
from banquet_tracker.systems.multiplier import active_boosts_by_type, active_multiplier


def round_half_up(value: float) -> int:
    return int(math.floor(float(value) + 0.5))


def percent_full(amount: float, capacity: float) -> float:
    if capacity <= 0:
        return 0.0
    return min(100.0, 100.0 * float(amount) / float(capacity))


def is_near_capacity(percent: float, threshold: Optional[float] = None) -> bool:
    limit = get_near_capacity_percent() if threshold is None else float(threshold)
    return percent >= limit


def time_to_full_hours(amount: float, capacity: float, daily_amount: float, multiplier: float) -> Optional[float]:
    """Hours until ``amount`` reaches ``capacity`` at the current effective rate.

    None when already full or when nothing is produced.
    """
    effective_daily = float(daily_amount) * float(multiplier)
    if amount >= capacity or effective_daily <= 0:
        return None
    return (float(capacity) - float(amount)) * 24.0 / effective_daily


def format_duration(hours: float) -> str:
    """Compact French-style duration: ``45min``, ``2h05``, ``1h``, ``3j 4h``, ``2j``."""
    if hours < 1:
        return f"{math.ceil(hours * 60)}min"
    if hours < 24:
        hh = math.floor(hours)
        mm = math.floor((hours - hh) * 60)
        return f"{hh}h{mm:02d}" if mm > 0 else f"{hh}h"
    days = math.floor(hours / 24)
    hh = math.floor(hours % 24)
    return f"{days}j {hh}h" if hh > 0 else f"{days}j"


def time_to_full(amount: float, capacity: float, daily_amount: float, multiplier: float) -> Optional[str]:
    hours = time_to_full_hours(amount, capacity, daily_amount, multiplier)
    return format_duration(hours) if hours is not None else None


def hourly_throughput(daily_amounts: Iterable[float], multiplier: float) -> int:
    """Production per hour summed over villages, at the given multiplier."""
    return round_half_up(sum(float(d) for d in daily_amounts) * float(multiplier) / 24.0)


@dataclass
class TypeTotal:
    resource_type: ResourceType
    total: float
    need: float
    site_count: int


def player_totals(capacity: float, amounts_by_type: Mapping[ResourceType, Sequence[float]], site_count: int) -> Dict[ResourceType, TypeTotal]:
    """Per type: stock summed over a player's villages and what is missing to fill them all.

    ``amounts_by_type`` holds one already-clamped amount per village.
    """
    out: Dict[ResourceType, TypeTotal] = {}
    for rt in ResourceType:
        total = float(sum(amounts_by_type.get(rt, ())))
        out[rt] = TypeTotal(
            resource_type=rt,
            total=total,
            need=max(0.0, float(capacity) * site_count - total),
            site_count=site_count,
        )
    return out


def site_needs(capacity: float, amounts: Mapping[ResourceType, float]) -> Dict[ResourceType, int]:
    """What one village still lacks per type to be full; types already full are omitted."""
    needs: Dict[ResourceType, int] = {}
    for rt in ResourceType:
        need = max(0, int(capacity) - math.floor(amounts.get(rt, 0.0)))
        if need > 0:
            needs[rt] = need
    return needs


# --- dashboard ---

@dataclass
class StockLine:
    resource_type: ResourceType
    amount: float
    display_amount: int
    capacity: int
    percent: float
    near_capacity: bool
    daily_amount: int
    multiplier: int
    effective_daily: int
    time_to_full: Optional[str]


@dataclass
class SiteDashboard:
    site_id: int
    name: str
    stocks: List[StockLine] = field(default_factory=list)


@dataclass
class BoostLine:
    id: int
    resource_type: ResourceType
    multiplier: int
    expires_at: Optional[str]
    remaining: str
    expiring_soon: bool


@dataclass
class Dashboard:
    player_id: int
    name: str
    capacity: int
    generated_at: Optional[str]
    sites: List[SiteDashboard] = field(default_factory=list)
    boosts: List[BoostLine] = field(default_factory=list)
    throughput: Dict[str, int] = field(default_factory=dict)
    totals: Dict[str, TypeTotal] = field(default_factory=dict)


def stock_line(resource_type: ResourceType, amount: float, capacity: int, daily_amount: int, multiplier: int) -> StockLine:
    clamped = min(max(0.0, amount), float(max(0, capacity)))
    percent = percent_full(clamped, capacity)
    return StockLine(
        resource_type=resource_type,
        amount=clamped,
        display_amount=math.floor(clamped),
        capacity=int(capacity),
        percent=percent,
        near_capacity=is_near_capacity(percent),
        daily_amount=int(daily_amount),
        multiplier=int(multiplier),
        effective_daily=int(daily_amount) * int(multiplier),
        time_to_full=time_to_full(clamped, capacity, daily_amount, multiplier),
    )


def boost_line(boost: Boost, now: datetime) -> BoostLine:
    remaining_s = boost.remaining_seconds(now)
    hours = int(remaining_s // 3600)
    minutes = int((remaining_s % 3600) // 60)
    return BoostLine(
        id=boost.id,
        resource_type=boost.resource_type,
        multiplier=boost.multiplier,
        expires_at=isoformat_utc(boost.expires_at),
        remaining=f"{hours}h{minutes:02d}",
        expiring_soon=remaining_s < 3600,
    )


def build_dashboard(
    player: Player,
    sites: Sequence[Site],
    rates: Iterable[RateRecord],
    snapshots: Iterable[Snapshot],
    boosts: Iterable[Boost],
    now: datetime,
) -> Dashboard:
    """Assemble one player's full dashboard from fetched rows."""
    rate_by_key = {(r.site_id, r.resource_type): r.daily_amount for r in rates}
    snap_by_key = {(s.site_id, s.resource_type): s for s in snapshots}
    boost_rows = list(boosts)
    boosts_by_type: Dict[ResourceType, List[Boost]] = {rt: [] for rt in ResourceType}
    for boost in boost_rows:
        boosts_by_type[boost.resource_type].append(boost)
    multiplier_by_type = {rt: active_multiplier(boosts_by_type[rt], now) for rt in ResourceType}

    dashboard = Dashboard(
        player_id=player.id,
        name=player.name,
        capacity=player.capacity,
        generated_at=isoformat_utc(now),
    )
    amounts_by_type: Dict[ResourceType, List[float]] = {rt: [] for rt in ResourceType}
    for site in sites:
        entry = SiteDashboard(site_id=site.id, name=site.name)
        for rt in ResourceType:
            daily = int(rate_by_key.get((site.id, rt), 0))
            snap = snapshot_or_zero(snap_by_key.get((site.id, rt)), site.id, rt, now)
            raw = accrue_with_boosts(snap, daily, boosts_by_type[rt], now)
            line = stock_line(rt, raw, player.capacity, daily, multiplier_by_type[rt])
            entry.stocks.append(line)
            amounts_by_type[rt].append(line.amount)
        dashboard.sites.append(entry)

    for boost in active_boosts_by_type(boost_rows, now).values():
        dashboard.boosts.append(boost_line(boost, now))
    for rt in ResourceType:
        dashboard.throughput[rt.value] = hourly_throughput(
            [rate_by_key.get((s.id, rt), 0) for s in sites], multiplier_by_type[rt]
        )
    dashboard.totals = {rt.value: t for rt, t in player_totals(player.capacity, amounts_by_type, len(sites)).items()}
    return dashboard


__all__ = [
    "round_half_up",
    "percent_full",
    "is_near_capacity",
    "time_to_full_hours",
    "format_duration",
    "time_to_full",
    "hourly_throughput",
    "TypeTotal",
    "player_totals",
    "site_needs",
    "StockLine",
    "SiteDashboard",
    "BoostLine",
    "Dashboard",
    "stock_line",
    "boost_line",
    "build_dashboard",
]
