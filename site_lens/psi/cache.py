# site_lens/psi/cache.py
"""
Response cache and quota circuit for the category scorer.

Both objects are constructed explicitly and handed to the client; ``clock``
returns epoch seconds (``time.time`` by default) so tests drive expiry with a
fake clock.
"""
from __future__ import annotations

import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Generic, Optional, TypeVar

__all__ = ("TTLCache", "QuotaCircuit", "next_utc_midnight")

logger = logging.getLogger("SiteLens")

T = TypeVar("T")

Clock = Callable[[], float]


@dataclass(frozen=True, slots=True)
class _Entry(Generic[T]):
    value: T
    stored_at: float


class TTLCache(Generic[T]):
    """Кэш с фиксированным TTL; просроченные записи удаляются при чтении."""

    def __init__(self, ttl_ms: int, *, max_entries: int = 256, clock: Clock = time.time) -> None:
        if ttl_ms <= 0:
            raise ValueError("ttl_ms must be > 0")
        self.ttl_ms = ttl_ms
        self.max_entries = max_entries
        self._clock = clock
        self._entries: "OrderedDict[str, _Entry[T]]" = OrderedDict()

    def get(self, key: str) -> Optional[T]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if (self._clock() - entry.stored_at) * 1000 >= self.ttl_ms:
            del self._entries[key]
            return None
        return entry.value

    def set(self, key: str, value: T) -> None:
        self._entries[key] = _Entry(value, self._clock())
        self._entries.move_to_end(key)
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


def next_utc_midnight(now: float) -> float:
    current = datetime.fromtimestamp(now, tz=timezone.utc)
    midnight = (current + timedelta(days=1)).replace(hour=0, minute=0, second=0, microsecond=0)
    return midnight.timestamp()


class QuotaCircuit:
    """Open after a rate-limit signal, until the next UTC midnight but at most ``max_block_ms``."""

    def __init__(self, max_block_ms: int = 12 * 60 * 60 * 1000, *, clock: Clock = time.time) -> None:
        self.max_block_ms = max_block_ms
        self._clock = clock
        self.blocked_until = 0.0

    def is_open(self) -> bool:
        if self.blocked_until <= self._clock():
            self.blocked_until = 0.0
            return False
        return True

    def trip(self) -> float:
        now = self._clock()
        until = min(next_utc_midnight(now), now + self.max_block_ms / 1000.0)
        self.blocked_until = max(self.blocked_until, until)
        logger.warning(
            "Category scorer quota exceeded; circuit open until %s",
            datetime.fromtimestamp(self.blocked_until, tz=timezone.utc).isoformat(),
        )
        return self.blocked_until

    def reset(self) -> None:
        self.blocked_until = 0.0
