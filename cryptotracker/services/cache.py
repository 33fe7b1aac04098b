"""Small explicit cache with staleness timestamps.

Replaces ad-hoc nullable cache fields: each cached value carries the time it
was stored, readers ask for it with a maximum age, and ``invalidate`` is the
only way to drop it.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Dict, Generic, Iterator, Optional, Tuple, TypeVar

T = TypeVar("T")
K = TypeVar("K")

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class CacheEntry(Generic[T]):
    value: T
    stored_at: datetime

    def age(self, now: datetime) -> timedelta:
        return now - self.stored_at


class TimedCache(Generic[T]):
    """A single cached value with a default time-to-live."""

    def __init__(self, ttl: Optional[timedelta] = None, clock: Clock = utcnow):
        self.ttl = ttl
        self._clock = clock
        self._entry: Optional[CacheEntry[T]] = None

    @property
    def entry(self) -> Optional[CacheEntry[T]]:
        return self._entry

    def get(self, max_age: Optional[timedelta] = None) -> Optional[T]:
        """Return the value if present and not older than ``max_age`` (default: ttl)."""
        if self._entry is None:
            return None
        limit = max_age if max_age is not None else self.ttl
        if limit is not None and self._entry.age(self._clock()) >= limit:
            return None
        return self._entry.value

    def get_stale(self) -> Optional[T]:
        """Return the value regardless of age."""
        return self._entry.value if self._entry else None

    def set(self, value: T, stored_at: Optional[datetime] = None) -> None:
        self._entry = CacheEntry(value, stored_at or self._clock())

    async def get_or_compute(self, compute: Callable[[], Awaitable[T]]) -> T:
        value = self.get()
        if value is None:
            value = await compute()
            self.set(value)
        return value

    def invalidate(self) -> None:
        self._entry = None


class TimedMapCache(Generic[K, T]):
    """Per-key timed cache (prices by asset id, series by asset/day count)."""

    def __init__(self, ttl: Optional[timedelta] = None, clock: Clock = utcnow):
        self.ttl = ttl
        self._clock = clock
        self._entries: Dict[K, CacheEntry[T]] = {}

    def get(self, key: K, max_age: Optional[timedelta] = None) -> Optional[T]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        limit = max_age if max_age is not None else self.ttl
        if limit is not None and entry.age(self._clock()) >= limit:
            return None
        return entry.value

    def get_stale(self, key: K) -> Optional[T]:
        entry = self._entries.get(key)
        return entry.value if entry else None

    def set(self, key: K, value: T, stored_at: Optional[datetime] = None) -> None:
        self._entries[key] = CacheEntry(value, stored_at or self._clock())

    def items(self) -> Iterator[Tuple[K, CacheEntry[T]]]:
        return iter(list(self._entries.items()))

    def invalidate(self, key: Optional[K] = None) -> None:
        if key is None:
            self._entries.clear()
        else:
            self._entries.pop(key, None)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries
