"""Bounded, expiring per-session correlation storage for backend adapters."""

from __future__ import annotations

import asyncio
import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

_V = TypeVar("_V")


@dataclass(slots=True)
class _Entry:
    value: Any
    expires_at: float


class SessionCorrelationMap(Generic[_V]):
    """Session key to value map safe for concurrent turns.

    Entries expire after ``ttl_s`` and the oldest entries are evicted once
    ``max_entries`` is exceeded.
    """

    def __init__(
        self,
        *,
        max_entries: int = 1024,
        ttl_s: float = 600.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be >= 1")
        if ttl_s <= 0:
            raise ValueError("ttl_s must be > 0")
        self._max_entries = max_entries
        self._ttl_s = ttl_s
        self._clock = clock
        self._entries: OrderedDict[str, _Entry] = OrderedDict()
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    def _prune(self, now: float) -> None:
        expired = [key for key, entry in self._entries.items() if entry.expires_at <= now]
        for key in expired:
            del self._entries[key]
        while len(self._entries) > self._max_entries:
            self._entries.popitem(last=False)

    async def put(self, key: str, value: _V) -> None:
        async with self._lock:
            now = self._clock()
            self._entries.pop(key, None)
            self._entries[key] = _Entry(value=value, expires_at=now + self._ttl_s)
            self._prune(now)

    async def get(self, key: str) -> _V | None:
        async with self._lock:
            self._prune(self._clock())
            entry = self._entries.get(key)
            return entry.value if entry is not None else None

    async def pop(self, key: str) -> _V | None:
        async with self._lock:
            self._prune(self._clock())
            entry = self._entries.pop(key, None)
            return entry.value if entry is not None else None

    async def clear(self) -> None:
        async with self._lock:
            self._entries.clear()


__all__ = ["SessionCorrelationMap"]
