from datetime import datetime, timedelta, timezone

from banquet_tracker.models import Boost, ResourceType, Snapshot
from banquet_tracker.systems.accrual import accrue_with_boosts, clamp_amount, current_amount

T0 = datetime(2026, 1, 1, tzinfo=timezone.utc)
RT = ResourceType.GIBIER


def _snap(amount: float, as_of: datetime) -> Snapshot:
    return Snapshot(site_id=1, resource_type=RT, amount=amount, as_of=as_of, version=1)


def _boost(bid: int, mult: int, start: datetime, hours: float) -> Boost:
    return Boost(id=bid, player_id=1, resource_type=RT, multiplier=mult, activated_at=start, expires_at=start + timedelta(hours=hours))


def test_one_hour_of_accrual():
    assert current_amount(_snap(100, T0), 24, 1, T0 + timedelta(hours=1)) == 101


def test_multiplier_scales_accrual():
    assert current_amount(_snap(0, T0), 24, 3, T0 + timedelta(hours=2)) == 6


def test_snapshot_in_the_future_accrues_nothing():
    assert current_amount(_snap(50, T0 + timedelta(hours=1)), 24, 1, T0) == 50


def test_zero_rate_keeps_amount():
    assert accrue_with_boosts(_snap(42, T0), 0, [_boost(1, 5, T0, 12)], T0 + timedelta(days=3)) == 42


def test_boost_transition_from_frozen_snapshot():
    # Rate 24 from T0, x5 card at T0+12h which froze the stock at 12
    card = _boost(1, 5, T0 + timedelta(hours=12), 12)
    assert accrue_with_boosts(_snap(12, T0 + timedelta(hours=12)), 24, [card], T0 + timedelta(hours=24)) == 72


def test_boost_started_after_snapshot_is_integrated_piecewise():
    card = _boost(1, 5, T0 + timedelta(hours=12), 12)
    assert accrue_with_boosts(_snap(0, T0), 24, [card], T0 + timedelta(hours=24)) == 72


def test_expired_boost_stops_at_expiry():
    card = _boost(1, 2, T0, 12)
    # 12h at x2 then 12h at x1
    assert accrue_with_boosts(_snap(0, T0), 24, [card], T0 + timedelta(hours=24)) == 36


def test_boost_outside_interval_is_ignored():
    old = _boost(1, 10, T0 - timedelta(days=2), 12)
    assert accrue_with_boosts(_snap(0, T0), 24, [old], T0 + timedelta(hours=6)) == 6


def test_clamp_amount():
    assert clamp_amount(150, 100) == 100
    assert clamp_amount(-5, 100) == 0
    assert clamp_amount(40, 100) == 40
    assert clamp_amount(40, 0) == 0
