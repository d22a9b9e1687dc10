from datetime import datetime, timedelta, timezone

from banquet_tracker.models import Boost, Player, RateRecord, ResourceType, Site, Snapshot
from banquet_tracker.systems.views import (
    build_dashboard,
    format_duration,
    hourly_throughput,
    is_near_capacity,
    percent_full,
    player_totals,
    round_half_up,
    site_needs,
    time_to_full,
    time_to_full_hours,
)

T0 = datetime(2026, 1, 1, tzinfo=timezone.utc)


def test_percent_full():
    assert percent_full(50, 200) == 25.0
    assert percent_full(300, 200) == 100.0
    assert percent_full(10, 0) == 0.0


def test_near_capacity_threshold():
    assert is_near_capacity(90.0, threshold=90) is True
    assert is_near_capacity(89.9, threshold=90) is False


def test_time_to_full_exact_hour():
    assert time_to_full_hours(90, 100, 240, 1) == 1.0
    assert time_to_full(90, 100, 240, 1) == "1h"


def test_time_to_full_none_cases():
    assert time_to_full(10, 100, 0, 1) is None
    assert time_to_full(100, 100, 240, 1) is None
    assert time_to_full(150, 100, 240, 1) is None


def test_time_to_full_uses_multiplier():
    # 10 missing at 24/day x2 -> 5h
    assert time_to_full(90, 100, 24, 2) == "5h"


def test_format_duration():
    assert format_duration(0.75) == "45min"
    assert format_duration(0.5) == "30min"
    assert format_duration(2.25) == "2h15"
    assert format_duration(1.0) == "1h"
    assert format_duration(50.0) == "2j 2h"
    assert format_duration(48.0) == "2j"


def test_round_half_up():
    assert round_half_up(0.5) == 1
    assert round_half_up(2.5) == 3
    assert round_half_up(2.49) == 2


def test_hourly_throughput():
    assert hourly_throughput([24, 24], 1) == 2
    assert hourly_throughput([12], 1) == 1
    assert hourly_throughput([36], 2) == 3
    assert hourly_throughput([], 5) == 0


def test_player_totals_need():
    totals = player_totals(100, {ResourceType.GIBIER: [40, 100]}, 2)
    assert totals[ResourceType.GIBIER].total == 140
    assert totals[ResourceType.GIBIER].need == 60
    assert totals[ResourceType.VIN].total == 0
    assert totals[ResourceType.VIN].need == 200


def test_site_needs_omits_full_types():
    needs = site_needs(100, {ResourceType.GIBIER: 100, ResourceType.VIN: 30.7})
    assert ResourceType.GIBIER not in needs
    assert needs[ResourceType.VIN] == 70
    assert needs[ResourceType.SOIE] == 100


def test_build_dashboard_clamps_and_reports_boosts():
    player = Player(id=1, name="Ana", capacity=100, created_at=T0)
    sites = [Site(id=1, player_id=1, name="Nord", created_at=T0), Site(id=2, player_id=1, name="Sud", created_at=T0)]
    rates = [RateRecord(1, ResourceType.VIN, 240), RateRecord(2, ResourceType.VIN, 24)]
    snaps = [
        Snapshot(1, ResourceType.VIN, 0, T0, 1),
        Snapshot(2, ResourceType.VIN, 10, T0, 1),
    ]
    boosts = [Boost(7, 1, ResourceType.VIN, 2, T0, T0 + timedelta(hours=12))]
    now = T0 + timedelta(hours=6)

    dash = build_dashboard(player, sites, rates, snaps, boosts, now)

    nord = next(line for line in dash.sites[0].stocks if line.resource_type is ResourceType.VIN)
    sud = next(line for line in dash.sites[1].stocks if line.resource_type is ResourceType.VIN)
    # 240/day x2 over 6h overflows the capacity
    assert nord.amount == 100
    assert nord.percent == 100.0
    assert nord.time_to_full is None
    # 10 + 24 x2 x 6/24 = 22
    assert sud.display_amount == 22
    assert sud.multiplier == 2
    assert dash.throughput["Vin"] == round_half_up((240 + 24) * 2 / 24)
    assert dash.totals["Vin"].need == 200 - dash.totals["Vin"].total
    assert [b.id for b in dash.boosts] == [7]
    assert dash.boosts[0].remaining == "6h00"
    assert dash.boosts[0].expiring_soon is False
