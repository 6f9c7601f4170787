"""
In-memory TTL cache for role lookups and permission decisions.

Entries live in a ``cachetools.TTLCache`` keyed by (owner, key), where the
owner is the user id. Writes for one owner go through that owner's lock,
and every invalidation bumps the owner's generation so a lookup that
started before the invalidation cannot store its stale result afterwards.
"""

import threading
import time
from typing import Any, Callable, Dict, Hashable, Optional

import cachetools
from loguru import logger

from authz.config import MAX_CACHE_ENTRIES


class TTLCache:
    """Thread-safe owner-grouped wrapper around ``cachetools.TTLCache``."""

    def __init__(
        self,
        name: str,
        ttl: int,
        max_entries: int = MAX_CACHE_ENTRIES,
        timer: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.ttl = ttl
        self.max_entries = max_entries
        self._entries = cachetools.TTLCache(maxsize=max_entries, ttl=ttl, timer=timer)
        self._generations: Dict[Hashable, int] = {}
        self._owner_locks: Dict[Hashable, threading.Lock] = {}
        self._lock = threading.Lock()
        self._sweeper: Optional[threading.Timer] = None
        self._sweep_interval: Optional[float] = None
        self.hits = 0
        self.misses = 0

    def owner_lock(self, owner: Hashable) -> threading.Lock:
        with self._lock:
            lock = self._owner_locks.get(owner)
            if lock is None:
                lock = self._owner_locks[owner] = threading.Lock()
            return lock

    def generation(self, owner: Hashable) -> int:
        return self._generations.get(owner, 0)

    # ==================== READ / WRITE ====================

    def get(self, owner: Hashable, key: Hashable = None) -> Optional[Any]:
        with self._lock:
            value = self._entries.get((owner, key))
            if value is None:
                self.misses += 1
            else:
                self.hits += 1
        return value

    def set(self, owner: Hashable, key: Hashable, value: Any, generation: Optional[int] = None) -> bool:
        """Store *value*; refused when *generation* is older than the owner's."""
        with self.owner_lock(owner):
            with self._lock:
                if generation is not None and generation != self.generation(owner):
                    logger.debug(f"[{self.name}] dropped stale write for {owner}")
                    return False
                self._entries[(owner, key)] = value
        return True

    # ==================== INVALIDATION ====================

    def _drop(self, predicate: Callable[[Hashable, Hashable], bool]) -> list:
        doomed = [k for k in list(self._entries.keys()) if predicate(*k)]
        for cache_key in doomed:
            self._entries.pop(cache_key, None)
        return doomed

    def invalidate(self, owner: Hashable) -> None:
        """Drop every entry for *owner* and advance its generation."""
        with self.owner_lock(owner):
            with self._lock:
                self._generations[owner] = self._generations.get(owner, 0) + 1
                self._drop(lambda entry_owner, _key: entry_owner == owner)

    def invalidate_where(self, predicate: Callable[[Hashable, Hashable], bool]) -> int:
        with self._lock:
            doomed = self._drop(predicate)
            for owner in {k[0] for k in doomed}:
                self._generations[owner] = self._generations.get(owner, 0) + 1
        return len(doomed)

    def clear(self) -> None:
        with self._lock:
            for owner in {k[0] for k in self._entries.keys()} | set(self._generations):
                self._generations[owner] = self._generations.get(owner, 0) + 1
            self._entries.clear()

    def expire(self) -> int:
        """Remove expired entries; returns how many were dropped."""
        with self._lock:
            expired = self._entries.expire()
        return len(expired or ())

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def stats(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "size": len(self),
            "ttl": self.ttl,
            "hits": self.hits,
            "misses": self.misses,
        }

    # ==================== SWEEPER ====================

    def start_sweeper(self, interval: float) -> None:
        """Run expire() every *interval* seconds on a daemon timer."""
        self._sweep_interval = interval
        self._schedule_sweep()

    def _schedule_sweep(self) -> None:
        if self._sweep_interval is None:
            return
        timer = threading.Timer(self._sweep_interval, self._sweep)
        timer.daemon = True
        self._sweeper = timer
        timer.start()

    def _sweep(self) -> None:
        try:
            removed = self.expire()
            if removed:
                logger.debug(f"[{self.name}] swept {removed} expired entries")
        finally:
            self._schedule_sweep()

    def stop_sweeper(self) -> None:
        self._sweep_interval = None
        if self._sweeper is not None:
            self._sweeper.cancel()
            self._sweeper = None
