"""Last-known-good secret cache for the rotation agent.

The cache is a fallback buffer, not a performance cache: it is consulted
only when a fetch fails. Entries are replaced wholesale and hidden once
they are older than ``max_age``. Nothing is persisted; the cache dies
with the agent process.

Example:
    >>> cache = SecretCache(max_age=timedelta(hours=1))
    >>> cache.set("secret:db-creds", resolved)
    >>> cache.get("secret:db-creds").resolved.fields
    {'password': '...'}
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import timedelta

from keeper_injector.models import ResolvedSecret

DEFAULT_MAX_AGE = timedelta(hours=24)


@dataclass(frozen=True)
class CacheEntry:
    """A resolved secret and the clock reading when it was fetched."""

    resolved: ResolvedSecret
    fetched_at: float


class SecretCache:
    """Thread-safe, time-bounded store of resolved secrets.

    Readers see either the previous entry or the new one, never a partial
    update, because entries are immutable and swapped under a lock.

    Args:
        max_age: Age after which an entry is no longer returned. A zero
            value selects the 24 hour default.
        clock: Monotonic clock in seconds; injectable for tests.
    """

    def __init__(
        self,
        max_age: timedelta = DEFAULT_MAX_AGE,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_age <= timedelta(0):
            max_age = DEFAULT_MAX_AGE
        self.max_age = max_age
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._lock = threading.RLock()

    def get(self, key: str) -> CacheEntry | None:
        """Return the entry for ``key`` unless it is missing or expired."""
        with self._lock:
            entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() - entry.fetched_at > self.max_age.total_seconds():
            return None
        return entry

    def set(self, key: str, resolved: ResolvedSecret) -> CacheEntry:
        """Store ``resolved`` under ``key`` stamped with the current time."""
        entry = CacheEntry(resolved=resolved, fetched_at=self._clock())
        with self._lock:
            self._entries[key] = entry
        return entry

    def age(self, key: str) -> timedelta:
        """Return how long ago ``key`` was fetched, or zero if absent."""
        with self._lock:
            entry = self._entries.get(key)
        if entry is None:
            return timedelta(0)
        return timedelta(seconds=self._clock() - entry.fetched_at)

    def size(self) -> int:
        """Return the number of stored entries, expired ones included."""
        with self._lock:
            return len(self._entries)

    def keys(self) -> list[str]:
        """Return the stored keys in insertion order."""
        with self._lock:
            return list(self._entries)

    def clear(self) -> None:
        """Drop every entry."""
        with self._lock:
            self._entries = {}


__all__ = ["CacheEntry", "DEFAULT_MAX_AGE", "SecretCache"]
