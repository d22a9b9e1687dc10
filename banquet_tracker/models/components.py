from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional

from banquet_tracker.core.errors import ValidationError
from banquet_tracker.core.time_utils import utc_now


class ResourceType(str, Enum):
    """Banquet goods produced by villages. Values double as storage keys."""
    GIBIER = "Gibier"
    CHAISE = "Chaise"
    VAISSELLE = "Vaisselle"
    TUNIQUE = "Tunique"
    VIN = "Vin"
    SEL = "Sel"
    EPICES = "Epices"
    SOIE = "Soie"

    @classmethod
    def parse(cls, value: object) -> "ResourceType":
        """Resolve a type from its value or name, case-insensitively."""
        if isinstance(value, cls):
            return value
        text = str(value).strip().lower()
        for member in cls:
            if member.value.lower() == text or member.name.lower() == text:
                return member
        raise ValidationError(f"unknown resource type: {value!r}")


@dataclass
class Player:
    """A player owning villages.

    Attributes:
        id: Unique player identifier.
        name: Display name.
        capacity: Ceiling shared by every resource type at every village of the player.
        created_at: Creation timestamp.
    """
    id: int
    name: str
    capacity: int
    created_at: datetime = field(default_factory=utc_now)


@dataclass
class Site:
    """A village: a production location owned by exactly one player."""
    id: int
    player_id: int
    name: str
    created_at: datetime = field(default_factory=utc_now)


@dataclass
class RateRecord:
    """Daily production of one resource type at one village, at multiplier 1."""
    site_id: int
    resource_type: ResourceType
    daily_amount: int = 0


@dataclass
class Snapshot:
    """Stock of one resource type at one village as of a given instant.

    This is the only persisted accrual state. ``version`` increments on every
    write and backs optimistic concurrency checks; 0 means "no row yet".
    """
    site_id: int
    resource_type: ResourceType
    amount: float
    as_of: datetime
    version: int = 0


@dataclass
class Boost:
    """A card: a time-limited multiplier on every village of a player for one type."""
    id: int
    player_id: int
    resource_type: ResourceType
    multiplier: int
    activated_at: datetime
    expires_at: datetime

    def is_active(self, now: datetime) -> bool:
        return self.activated_at <= now < self.expires_at

    def remaining_seconds(self, now: datetime) -> float:
        return max(0.0, (self.expires_at - now).total_seconds())


@dataclass
class TradeRecord:
    """Immutable ledger entry of a gift between two players."""
    id: int
    from_player_id: int
    to_player_id: int
    resource_type: ResourceType
    amount: float
    created_at: datetime
    from_player_name: Optional[str] = None
    to_player_name: Optional[str] = None


def zero_snapshot(site_id: int, resource_type: ResourceType, now: datetime) -> Snapshot:
    """Stand-in for a missing snapshot row: nothing stocked, accruing from now."""
    return Snapshot(site_id=site_id, resource_type=resource_type, amount=0.0, as_of=now, version=0)


def snapshot_or_zero(snapshot: Optional[Snapshot], site_id: int, resource_type: ResourceType, now: datetime) -> Snapshot:
    return snapshot if snapshot is not None else zero_snapshot(site_id, resource_type, now)


def rate_or_zero(rate: Optional[RateRecord]) -> int:
    return int(rate.daily_amount) if rate is not None else 0
