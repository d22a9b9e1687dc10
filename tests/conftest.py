from datetime import datetime, timedelta, timezone

import pytest

from banquet_tracker.core.engine import BanquetEngine
from banquet_tracker.storage import InMemoryStorage

T0 = datetime(2026, 1, 1, tzinfo=timezone.utc)


class FakeClock:
    """Deterministic clock; tests move time explicitly."""

    def __init__(self, start: datetime = T0) -> None:
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current = self.current + timedelta(**kwargs)
        return self.current

    def set(self, when: datetime) -> datetime:
        self.current = when
        return self.current


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def engine(clock) -> BanquetEngine:
    return BanquetEngine(InMemoryStorage(), clock=clock)
