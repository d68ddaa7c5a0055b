from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from functools import lru_cache
from typing import Any

from backoffice.services.permission_context import PermissionContext
from backoffice.settings import get_permission_cache_windows

logger = logging.getLogger("backoffice.cache")

ContextLoader = Callable[[int], PermissionContext]


@dataclass(frozen=True, slots=True)
class _CacheEntry:
    context: PermissionContext
    stored_at: float


class PermissionContextCache:
    """Resolved contexts keyed by employee id.

    Entries younger than ``fresh_seconds`` are served as-is. Older entries are
    re-resolved on access, and served stale only if that resolution fails.
    Entries older than ``max_age_seconds`` are never served.
    """

    def __init__(
        self,
        *,
        fresh_seconds: float = 300,
        max_age_seconds: float = 600,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_age_seconds < fresh_seconds:
            raise ValueError("max_age_seconds must be >= fresh_seconds")
        self.fresh_seconds = fresh_seconds
        self.max_age_seconds = max_age_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict[int, _CacheEntry] = {}
        self._hits = 0
        self._misses = 0
        self._stale_served = 0
        self._generation = 0

    def get(self, employee_id: int, loader: ContextLoader) -> PermissionContext:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(employee_id)
            if entry is not None:
                age = now - entry.stored_at
                if age < self.fresh_seconds:
                    self._hits += 1
                    return entry.context
                if age >= self.max_age_seconds:
                    self._entries.pop(employee_id, None)
                    entry = None
            self._misses += 1
            generation = self._generation

        # Resolution runs outside the lock; a concurrent miss only costs a redundant load.
        try:
            context = loader(employee_id)
        except Exception:
            if entry is None:
                raise
            with self._lock:
                # An entry dropped by an invalidation is revoked, never a fallback.
                if generation != self._generation or self._entries.get(employee_id) is not entry:
                    raise
                self._stale_served += 1
            logger.warning(
                "permission_cache_stale_served",
                exc_info=True,
                extra={"employee_id": employee_id, "age_seconds": round(now - entry.stored_at, 3)},
            )
            return entry.context

        with self._lock:
            # An invalidation during the load means the loaded snapshot may predate it.
            if generation == self._generation:
                self._entries[employee_id] = _CacheEntry(context=context, stored_at=self._clock())
        return context

    def peek(self, employee_id: int) -> PermissionContext | None:
        with self._lock:
            entry = self._entries.get(employee_id)
            if entry is None or self._clock() - entry.stored_at >= self.max_age_seconds:
                return None
            return entry.context

    def invalidate(self, employee_id: int) -> bool:
        with self._lock:
            removed = self._entries.pop(employee_id, None) is not None
            self._generation += 1
        if removed:
            logger.info("permission_cache_invalidated", extra={"employee_id": employee_id})
        return removed

    def invalidate_many(self, employee_ids: Iterable[int]) -> int:
        ids = list(employee_ids)
        with self._lock:
            removed = sum(1 for employee_id in ids if self._entries.pop(employee_id, None) is not None)
            self._generation += 1
        if ids:
            logger.info(
                "permission_cache_invalidated_many",
                extra={"requested": len(ids), "removed": removed},
            )
        return removed

    def invalidate_all(self) -> int:
        with self._lock:
            removed = len(self._entries)
            self._entries.clear()
            self._generation += 1
        logger.info("permission_cache_cleared", extra={"removed": removed})
        return removed

    def purge_expired(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [
                employee_id
                for employee_id, entry in self._entries.items()
                if now - entry.stored_at >= self.max_age_seconds
            ]
            for employee_id in expired:
                del self._entries[employee_id]
        return len(expired)

    def stats(self) -> dict[str, Any]:
        with self._lock:
            return {
                "entries": len(self._entries),
                "hits": self._hits,
                "misses": self._misses,
                "stale_served": self._stale_served,
                "fresh_seconds": self.fresh_seconds,
                "max_age_seconds": self.max_age_seconds,
            }


@lru_cache
def get_permission_cache() -> PermissionContextCache:
    fresh_seconds, max_age_seconds = get_permission_cache_windows()
    return PermissionContextCache(fresh_seconds=fresh_seconds, max_age_seconds=max_age_seconds)
