"""
Result cache for ChainableQuery.

Entries are keyed on the query's owner table, bound type(s) and condition
set, and expire after a per-type TTL. The least recently used tenth of the
cache is evicted when it reaches max_size or its memory limit. Watching a
tracker drops every entry of a polymorphic type as soon as that type's
targets change.

Usage:
    cache = PolymorphicQueryCache(default_ttl_seconds=300)
    cache.watch(tracker)
    rows = await cache.execute(create_loggable_query(tracker, factory))
"""

import asyncio
import copy
import json
import logging
import time
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from typing import Any

from packages.polymorphic.execution import Row
from packages.polymorphic.query import ChainableQuery
from packages.polymorphic.schemas import (
    CacheInvalidationEvent,
    CacheMetrics,
    ConfigChange,
    ConfigChangeKind,
    InvalidationReason,
    PolymorphicType,
    utc_now,
)
from packages.polymorphic.tracker import PolymorphicTracker

logger = logging.getLogger(__name__)

InvalidationListener = Callable[[CacheInvalidationEvent], None]

BYTES_PER_MB = 1024 * 1024


def generate_cache_key(query: ChainableQuery) -> str | None:
    """
    Deterministic key for a query, or None if it cannot be cached.

    Queries carrying callables (include() refine functions or an eager
    target_callback) are not cacheable since callables cannot be compared.
    """
    conditions = query.conditions
    eager = conditions.eager_loading
    if eager.target_callback is not None:
        return None
    if any(refine is not None for _, refine in conditions.includes):
        return None

    metadata = query.get_polymorphic_metadata()
    parts: dict[str, Any] = {
        "table": query.table_name,
        "types": metadata["types"],
        "id_field": metadata["id_field"],
        "type_field": metadata["type_field"],
        "conditions": metadata["conditions"],
        "eager_loading": metadata["eager_loading"],
    }
    return json.dumps(parts, sort_keys=True, default=str)


@dataclass
class CacheEntry:
    key: str
    rows: list[Row]
    table_name: str
    polymorphic_types: tuple[str, ...]
    target_types: tuple[str, ...]
    created_at: float
    expires_at: float
    query_duration_ms: float
    size_bytes: int
    hits: int = 0
    last_accessed: float = 0.0


class PolymorphicQueryCache:
    """In-process cache of ChainableQuery results."""

    def __init__(
        self,
        *,
        max_size: int = 1000,
        default_ttl_seconds: float = 300.0,
        type_ttl_seconds: dict[PolymorphicType, float] | None = None,
        memory_limit_mb: float = 50.0,
        enable_warming: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_size = max_size
        self.default_ttl_seconds = default_ttl_seconds
        self.type_ttl_seconds = dict(type_ttl_seconds or {})
        self.memory_limit_mb = memory_limit_mb
        self.enable_warming = enable_warming
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._listeners: list[InvalidationListener] = []
        self._metrics = CacheMetrics()
        self._executed = 0
        self._total_query_ms = 0.0

    def __len__(self) -> int:
        return len(self._entries)

    # =========================================================================
    # Reads and Writes
    # =========================================================================

    def ttl_for(self, polymorphic_type: PolymorphicType | None) -> float:
        if polymorphic_type is not None and polymorphic_type in self.type_ttl_seconds:
            return self.type_ttl_seconds[polymorphic_type]
        return self.default_ttl_seconds

    def get(self, query: ChainableQuery) -> list[Row] | None:
        """Cached rows for query, or None on a miss or an expired entry."""
        key = generate_cache_key(query)
        entry = self._entries.get(key) if key is not None else None
        now = self._clock()

        if entry is not None and now >= entry.expires_at:
            del self._entries[entry.key]
            entry = None

        if entry is None:
            self._metrics.misses += 1
            self._update_metrics()
            return None

        entry.hits += 1
        entry.last_accessed = now
        self._metrics.hits += 1
        self._update_metrics()
        logger.debug(f"Cache hit for {entry.table_name} ({len(entry.rows)} rows)")
        return copy.deepcopy(entry.rows)

    def set(
        self,
        query: ChainableQuery,
        rows: list[Row],
        *,
        duration_ms: float = 0.0,
        ttl_seconds: float | None = None,
    ) -> str | None:
        """
        Store rows for query.

        Returns:
            The cache key, or None if the query is not cacheable
        """
        key = generate_cache_key(query)
        if key is None:
            return None

        if key not in self._entries and self._should_evict():
            self._evict_lru()

        now = self._clock()
        ttl = ttl_seconds if ttl_seconds is not None else self.ttl_for(query.polymorphic_type)
        target_types = set(query.get_valid_target_types())
        target_filter = query.conditions.target_type
        if target_filter is not None:
            target_types.update([target_filter] if isinstance(target_filter, str) else target_filter)

        self._entries[key] = CacheEntry(
            key=key,
            rows=copy.deepcopy(rows),
            table_name=query.table_name,
            polymorphic_types=tuple(query.get_polymorphic_metadata()["types"]),
            target_types=tuple(sorted(target_types)),
            created_at=now,
            expires_at=now + ttl,
            query_duration_ms=duration_ms,
            size_bytes=len(json.dumps(rows, default=str).encode("utf-8")),
            last_accessed=now,
        )
        self._update_metrics()
        logger.debug(f"Cached {len(rows)} {query.table_name} rows for {ttl}s")
        return key

    async def execute(self, query: ChainableQuery) -> list[Row]:
        """Return cached rows, or run query.all() and cache the result."""
        if generate_cache_key(query) is None:
            return await query.all()

        cached = self.get(query)
        if cached is not None:
            return cached

        started = time.perf_counter()
        rows = await query.all()
        duration_ms = (time.perf_counter() - started) * 1000

        self._executed += 1
        self._total_query_ms += duration_ms
        self.set(query, rows, duration_ms=duration_ms)
        return rows

    async def execute_many(self, queries: Sequence[ChainableQuery]) -> list[list[Row]]:
        return list(await asyncio.gather(*(self.execute(query) for query in queries)))

    # =========================================================================
    # Invalidation
    # =========================================================================

    def invalidate(
        self,
        *,
        tables: Iterable[str] | None = None,
        polymorphic_types: Iterable[PolymorphicType] | None = None,
        target_types: Iterable[str] | None = None,
        keys: Iterable[str] | None = None,
        all: bool = False,
        reason: InvalidationReason = InvalidationReason.MANUAL,
    ) -> CacheInvalidationEvent:
        """
        Drop entries matching any of the given criteria.

        tables match an entry's owner table or any of its target tables.
        """
        tables = set(tables or ())
        polymorphic_types = set(polymorphic_types or ())
        target_types = set(target_types or ())
        keys = set(keys or ())

        if all:
            dropped = list(self._entries)
        else:
            dropped = [
                key
                for key, entry in self._entries.items()
                if key in keys
                or entry.table_name in tables
                or tables.intersection(entry.target_types)
                or polymorphic_types.intersection(entry.polymorphic_types)
                or target_types.intersection(entry.target_types)
            ]

        for key in dropped:
            del self._entries[key]
        self._update_metrics()

        event = CacheInvalidationEvent(
            reason=reason,
            tables=sorted(tables),
            polymorphic_types=sorted(polymorphic_types),
            keys=dropped,
        )
        self._notify(event)
        logger.info(f"Cache invalidation ({reason.value}) dropped {len(dropped)} entries")
        return event

    def clear(self) -> None:
        self.invalidate(all=True)

    def purge_expired(self) -> list[str]:
        """Drop expired entries. Returns their keys."""
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if now >= entry.expires_at]
        if not expired:
            return []

        for key in expired:
            del self._entries[key]
        self._update_metrics()
        self._notify(CacheInvalidationEvent(reason=InvalidationReason.TTL_EXPIRE, keys=expired))
        logger.debug(f"Purged {len(expired)} expired cache entries")
        return expired

    def on_invalidation(self, listener: InvalidationListener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def remove_invalidation_listener(self, listener: InvalidationListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _notify(self, event: CacheInvalidationEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Cache invalidation listener failed")

    def watch(self, tracker: PolymorphicTracker) -> None:
        """Invalidate entries whenever tracker commits a change."""
        tracker.add_listener(self._on_config_change)

    def _on_config_change(self, change: ConfigChange) -> None:
        if change.kind == ConfigChangeKind.CONFIG_REPLACED or change.polymorphic_type is None:
            self.invalidate(all=True, reason=InvalidationReason.DATA_CHANGE)
        else:
            self.invalidate(
                polymorphic_types=[change.polymorphic_type],
                reason=InvalidationReason.DATA_CHANGE,
            )

    # =========================================================================
    # Warming
    # =========================================================================

    async def warm(self, queries: Sequence[tuple[ChainableQuery, int]]) -> None:
        """
        Pre-populate the cache, highest priority first.

        Failing queries are logged and skipped.
        """
        if not self.enable_warming:
            return

        warming = self._metrics.warming
        for query, _ in sorted(queries, key=lambda item: item[1], reverse=True):
            if generate_cache_key(query) in self._entries:
                warming.warming_hits += 1
                continue
            try:
                await self.execute(query)
            except Exception as e:
                logger.warning(f"Cache warming failed for {query.table_name}: {e}")
                continue
            warming.warmed_queries += 1

        warming.last_warmed = utc_now()
        logger.info(
            f"Cache warming done: {warming.warmed_queries} warmed, "
            f"{warming.warming_hits} already cached"
        )

    async def warm_common_queries(
        self,
        base_query: ChainableQuery,
        target_types: Iterable[str] = (),
        *,
        recent_limit: int = 50,
    ) -> None:
        """Warm the usual shapes of a polymorphic query."""
        queries = [(base_query, 10)]
        queries.extend((base_query.for_target_type(target), 8) for target in target_types)
        queries.append((base_query.limit(recent_limit), 7))
        queries.append((base_query.include_polymorphic_targets(), 6))
        await self.warm(queries)

    # =========================================================================
    # Metrics and Eviction
    # =========================================================================

    def get_metrics(self) -> CacheMetrics:
        return self._metrics.model_copy(deep=True)

    def _memory_usage_mb(self) -> float:
        return sum(entry.size_bytes for entry in self._entries.values()) / BYTES_PER_MB

    def _should_evict(self) -> bool:
        if len(self._entries) >= self.max_size:
            return True
        return self._memory_usage_mb() >= self.memory_limit_mb

    def _evict_lru(self) -> None:
        entries = sorted(self._entries.values(), key=lambda entry: entry.last_accessed)
        evicted = entries[: max(1, len(entries) // 10)]
        for entry in evicted:
            del self._entries[entry.key]
        self._metrics.evictions += len(evicted)
        logger.debug(f"Evicted {len(evicted)} least recently used cache entries")

    def _update_metrics(self) -> None:
        metrics = self._metrics
        lookups = metrics.hits + metrics.misses
        metrics.hit_ratio = metrics.hits / lookups if lookups else 0.0
        metrics.average_query_time_ms = (
            self._total_query_ms / self._executed if self._executed else 0.0
        )
        metrics.size = len(self._entries)
        metrics.memory_usage_mb = self._memory_usage_mb()
