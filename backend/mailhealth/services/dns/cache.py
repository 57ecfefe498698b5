"""Time-boxed single-flight cache used for DNS answers and blacklist verdicts."""
import asyncio
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional


@dataclass
class CacheEntry:
    task: asyncio.Future
    created_at: float


class SingleFlightCache:
    """Maps a key to a pending or finished computation.

    Concurrent ``get_or_compute`` calls for the same key share one in-flight
    task. A successful result is kept until ``ttl`` seconds after it
    completed; a failed computation is evicted straight away so the next
    caller retries instead of reading a cached error. Expired entries for
    keys that are never asked for again are swept on insert, at most once
    per ``ttl`` window.
    """

    def __init__(self, ttl: float, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self._last_sweep = clock()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return self._live_entry(key) is not None

    def clear(self) -> None:
        self._entries.clear()

    def _expired(self, entry: CacheEntry, now: float) -> bool:
        return entry.task.done() and now - entry.created_at >= self.ttl

    def _live_entry(self, key: str) -> Optional[CacheEntry]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._expired(entry, self._clock()):
            del self._entries[key]
            return None
        return entry

    def sweep(self) -> int:
        """Drop every expired entry; returns how many were removed."""
        now = self._clock()
        self._last_sweep = now
        stale = [key for key, entry in self._entries.items() if self._expired(entry, now)]
        for key in stale:
            del self._entries[key]
        return len(stale)

    async def get_or_compute(self, key: str, compute: Callable[[], Awaitable[Any]]) -> Any:
        entry = self._live_entry(key)
        if entry is None:
            if self._clock() - self._last_sweep >= self.ttl:
                self.sweep()
            task = asyncio.ensure_future(compute())
            entry = CacheEntry(task=task, created_at=self._clock())
            self._entries[key] = entry
            task.add_done_callback(lambda done, key=key, entry=entry: self._settle(key, entry))
        # shield: one caller giving up must not cancel the shared lookup
        return await asyncio.shield(entry.task)

    def _settle(self, key: str, entry: CacheEntry) -> None:
        if self._entries.get(key) is not entry:
            return
        if entry.task.cancelled() or entry.task.exception() is not None:
            del self._entries[key]
        else:
            entry.created_at = self._clock()
