"""In-process TTL cache with tag-based invalidation.

Values are computed on demand by get_or_compute() and kept until their
TTL expires or one of their tags is invalidated. The cache is an
explicit object passed to its users; there is no module-level instance.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Hashable, Iterable
from dataclasses import dataclass, field
from typing import Any, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class _Entry:
    value: Any
    expires_at: float
    tags: frozenset[str] = field(default_factory=frozenset)


class TTLCache:
    """Thread-safe key/value cache with expiry and tags.

    Computation happens outside the lock, so two threads missing the same
    key may both compute; the last one stored wins.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._entries: dict[Hashable, _Entry] = {}
        self._lock = threading.Lock()

    def get(self, key: Hashable) -> Any | None:
        """Return a live cached value, or None."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.expires_at <= self._clock():
                del self._entries[key]
                return None
            return entry.value

    def set(
        self,
        key: Hashable,
        value: Any,
        ttl: float,
        tags: Iterable[str] = (),
    ) -> None:
        """Store a value for ttl seconds."""
        with self._lock:
            self._entries[key] = _Entry(
                value=value,
                expires_at=self._clock() + ttl,
                tags=frozenset(tags),
            )

    def get_or_compute(
        self,
        key: Hashable,
        ttl: float,
        compute: Callable[[], T],
        tags: Iterable[str] = (),
    ) -> T:
        """Return the cached value for key, computing and storing it if absent.

        Exceptions from compute propagate and nothing is cached.

        Args:
            key: Cache key.
            ttl: Lifetime in seconds; 0 disables caching for this call.
            compute: Zero-argument function producing the value.
            tags: Tags to attach for invalidate_tag().

        Returns:
            Cached or freshly computed value.
        """
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and entry.expires_at > self._clock():
                return entry.value  # type: ignore[no-any-return]

        value = compute()
        if ttl > 0:
            self.set(key, value, ttl, tags)
        return value

    def invalidate(self, key: Hashable) -> None:
        """Drop a single key."""
        with self._lock:
            self._entries.pop(key, None)

    def invalidate_tag(self, tag: str) -> int:
        """Drop every entry carrying a tag.

        Returns:
            Number of entries dropped.
        """
        with self._lock:
            stale = [k for k, e in self._entries.items() if tag in e.tags]
            for key in stale:
                del self._entries[key]
        if stale:
            logger.debug("Invalidated %d cache entries for tag %s", len(stale), tag)
        return len(stale)

    def clear(self) -> None:
        """Drop everything."""
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


__all__ = ["TTLCache"]
