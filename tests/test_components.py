import math
from datetime import datetime, timedelta, timezone

import pytest

from banquet_tracker.core.errors import (
    InsufficientStock,
    NotFound,
    StorageFailure,
    ValidationError,
    require_non_negative_int,
    require_non_negative_number,
)
from banquet_tracker.core.time_utils import elapsed_days, ensure_aware_utc, isoformat_utc
from banquet_tracker.models import Boost, RateRecord, ResourceType, rate_or_zero, snapshot_or_zero

T0 = datetime(2026, 1, 1, tzinfo=timezone.utc)


def test_resource_type_has_eight_values():
    assert [rt.value for rt in ResourceType] == ["Gibier", "Chaise", "Vaisselle", "Tunique", "Vin", "Sel", "Epices", "Soie"]


@pytest.mark.parametrize("raw", ["Vin", "vin", " VIN ", ResourceType.VIN])
def test_resource_type_parse(raw):
    assert ResourceType.parse(raw) is ResourceType.VIN


def test_resource_type_parse_unknown():
    with pytest.raises(ValidationError):
        ResourceType.parse("Caviar")


def test_missing_rows_fall_back_to_zero():
    snap = snapshot_or_zero(None, 3, ResourceType.SEL, T0)
    assert (snap.amount, snap.as_of, snap.version) == (0.0, T0, 0)
    assert rate_or_zero(None) == 0
    assert rate_or_zero(RateRecord(3, ResourceType.SEL, 12)) == 12


def test_boost_activity_window():
    card = Boost(1, 1, ResourceType.SEL, 2, T0, T0 + timedelta(hours=12))
    assert card.is_active(T0)
    assert not card.is_active(T0 - timedelta(seconds=1))
    assert not card.is_active(T0 + timedelta(hours=12))
    assert card.remaining_seconds(T0 + timedelta(hours=11)) == 3600
    assert card.remaining_seconds(T0 + timedelta(hours=13)) == 0


def test_number_validation():
    assert require_non_negative_number("2.5", "amount") == 2.5
    assert require_non_negative_int(4.0, "amount") == 4
    for bad in (-1, "x", None, True, math.inf):
        with pytest.raises(ValidationError):
            require_non_negative_number(bad, "amount")
    with pytest.raises(ValidationError):
        require_non_negative_int(1.5, "amount")


def test_error_http_statuses():
    assert ValidationError("x").http_status == 400
    assert NotFound("x").http_status == 404
    assert InsufficientStock(5, 2.7).http_status == 409
    assert "available 2" in str(InsufficientStock(5, 2.7))
    assert StorageFailure("x").http_status == 503


def test_time_helpers():
    naive = datetime(2026, 1, 1, 12, 0)
    assert ensure_aware_utc(naive) == T0 + timedelta(hours=12)
    assert elapsed_days(T0, T0 + timedelta(hours=6)) == 0.25
    assert isoformat_utc(T0) == "2026-01-01T00:00:00Z"
