"""
In-memory snapshot of the full bus stop dataset.
"""
from datetime import datetime, timedelta, timezone
from typing import NamedTuple


class Stop(NamedTuple):
    code: str
    name: str
    latitude: float
    longitude: float


class StopCache:
    """Holds one immutable snapshot of all stops. Only ever replaced wholesale."""

    def __init__(self) -> None:
        self._stops: tuple[Stop, ...] = ()
        self._last_refreshed_at: datetime | None = None

    @property
    def stops(self) -> tuple[Stop, ...]:
        return self._stops

    @property
    def last_refreshed_at(self) -> datetime | None:
        return self._last_refreshed_at

    @property
    def is_populated(self) -> bool:
        return bool(self._stops)

    def replace(self, stops: list[Stop] | tuple[Stop, ...], now: datetime | None = None) -> None:
        self._stops = tuple(stops)
        self._last_refreshed_at = now or datetime.now(timezone.utc)

    def age(self, now: datetime | None = None) -> timedelta | None:
        if self._last_refreshed_at is None:
            return None
        return (now or datetime.now(timezone.utc)) - self._last_refreshed_at

    def is_stale(self, max_age: timedelta, now: datetime | None = None) -> bool:
        age = self.age(now)
        return age is None or age > max_age

    def __len__(self) -> int:
        return len(self._stops)
