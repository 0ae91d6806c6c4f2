import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Hashable


def utcnow() -> datetime:
    """Return the current UTC time as a timezone-aware datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime) -> datetime:
    """Make a naive datetime timezone-aware (UTC). Already-aware datetimes pass through."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def to_cents(amount: float) -> int:
    """Convert a currency amount to integer cents (half-up)."""
    return int(round(float(amount) * 100))


def from_cents(cents: int) -> float:
    return round(cents / 100, 2)


class KeyedLocks:
    """One asyncio.Lock per key.

    An entry exists only while a coroutine holds or waits for its lock, so
    the map stays bounded by in-flight work.
    """

    def __init__(self) -> None:
        self._entries: dict[Hashable, list[Any]] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def locked(self, key: Hashable) -> bool:
        entry = self._entries.get(key)
        return bool(entry and entry[0].locked())

    @asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncIterator[None]:
        entry = self._entries.get(key)
        if entry is None:
            entry = self._entries[key] = [asyncio.Lock(), 0]
        entry[1] += 1
        try:
            async with entry[0]:
                yield
        finally:
            entry[1] -= 1
            if entry[1] == 0:
                self._entries.pop(key, None)
