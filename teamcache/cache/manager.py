"""
Main cache orchestration with tiered TTL, durable mirroring and
change-feed invalidation.
"""
import asyncio
import inspect
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Union

from .broadcast import InvalidationBroadcaster, Subscriber
from .clock import Clock, PeriodicTask, SystemClock, to_iso
from .coalescer import RequestCoalescer
from .core import CacheEntry, ConsistencyReport, PerformanceMetrics
from .dependencies import DependencyGraph
from .durable import (
    DEFAULT_NAMESPACE,
    DurableMirror,
    DurableStore,
    MemoryDurableStore,
    SQLiteDurableStore,
)
from .feed import ChangeEventFeed, InMemoryChangeEventFeed, RestChangeEventFeed
from .listener import InvalidationListener
from .metrics import PerformanceTracker
from .store import EntryStore
from .ttl_policies import get_cache_duration

logger = logging.getLogger("cache.manager")

Fetcher = Callable[[], Union[Awaitable[Any], Any]]
Prewarmer = Callable[[], Awaitable[Any]]


class EnhancedCacheManager:
    """
    Main cache orchestration with:
    - Tiered TTL based on key volatility class
    - In-memory store mirrored to a durable key-value store
    - Request coalescing for concurrent misses on the same key
    - Dependency-graph invalidation driven by a change-event feed
    - Performance metrics and consistency validation

    One instance is built by the composition root and shared by reference.
    """

    def __init__(
        self,
        feed: Optional[ChangeEventFeed] = None,
        durable_store: Optional[DurableStore] = None,
        clock: Optional[Clock] = None,
        graph: Optional[DependencyGraph] = None,
        namespace: str = DEFAULT_NAMESPACE,
        coalesce_misses: bool = True,
        reconciliation_interval: float = 30.0,
        metrics_interval: float = 60.0,
        live_event_window: int = 1024,
    ):
        """
        Initialize the cache manager.

        Args:
            feed: Change-event feed (defaults to an in-process feed)
            durable_store: Key-value store behind the durable mirror
            clock: Time source for expiry decisions
            graph: Dependency graph (defaults to the built-in table)
            namespace: Prefix of durable keys owned by this cache
            coalesce_misses: Share one fetch among concurrent misses on a key
            reconciliation_interval: Seconds between missed-event polls
            metrics_interval: Seconds between size/memory resamples
            live_event_window: Live event ids remembered to skip on replay
        """
        self._clock = clock or SystemClock()
        self._store = EntryStore(self._clock)
        self._mirror = DurableMirror(
            durable_store if durable_store is not None else MemoryDurableStore(),
            namespace=namespace,
            clock=self._clock,
        )
        self._graph = graph or DependencyGraph.default()
        self._coalescer = RequestCoalescer()
        self._coalesce_misses = coalesce_misses
        self._metrics = PerformanceTracker()
        self._broadcaster = InvalidationBroadcaster()
        self._prewarmers: Dict[str, Prewarmer] = {}

        self._feed = feed if feed is not None else InMemoryChangeEventFeed()
        self._listener = InvalidationListener(
            self._feed,
            self,
            self._graph,
            self._broadcaster,
            clock=self._clock,
            poll_interval=reconciliation_interval,
            live_event_window=live_event_window,
        )
        self._metrics_task = PeriodicTask(
            "cache-metrics", metrics_interval, self._sample_metrics_async
        )

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """Start the invalidation listener and the metrics sampler."""
        await self._listener.start()
        self._metrics_task.start()
        logger.info("Cache manager started")

    async def close(self) -> None:
        """Stop background work. Cached entries are kept."""
        await self._listener.stop()
        await self._metrics_task.stop()
        logger.info("Cache manager closed")

    async def __aenter__(self) -> "EnhancedCacheManager":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    # =========================================================================
    # Reads and writes
    # =========================================================================

    def get_cache_duration(
        self, cache_key: str, change_frequency: Optional[float] = None
    ) -> float:
        """TTL in seconds for a key, see ttl_policies.get_cache_duration."""
        return get_cache_duration(cache_key, change_frequency)

    async def get_cached_data(
        self,
        cache_key: str,
        fetcher: Fetcher,
        ttl: Optional[float] = None,
        dependencies: Optional[Iterable[str]] = None,
    ) -> Any:
        """
        Get data from cache or fetch it.

        Args:
            cache_key: Unique cache key
            fetcher: Zero-argument callable returning the data or an awaitable
            ttl: Seconds to keep the result (defaults to the key's policy)
            dependencies: Advisory key prefixes this entry depends on

        Returns:
            Cached or freshly fetched data

        Raises:
            Exception: Whatever the fetcher raises; nothing is cached then
        """
        started = time.perf_counter()

        entry = self._lookup(cache_key)
        if entry is not None:
            self._metrics.record_hit(_elapsed_ms(started))
            logger.debug(f"CACHE HIT: {cache_key} [v{entry.version}]")
            return entry.data

        logger.info(f"CACHE MISS: {cache_key}")
        deps = tuple(dependencies or ())

        async def fetch_and_store() -> Any:
            result = fetcher()
            if inspect.isawaitable(result):
                result = await result
            duration = ttl if ttl is not None else self.get_cache_duration(cache_key)
            self.set_cache(cache_key, result, duration, deps)
            return result

        try:
            if self._coalesce_misses:
                data = await self._coalescer.get_or_fetch(cache_key, fetch_and_store)
            else:
                data = await fetch_and_store()
        finally:
            self._metrics.record_miss(_elapsed_ms(started))
        return data

    def _lookup(self, cache_key: str) -> Optional[CacheEntry]:
        """Entry store first, then the durable mirror with promotion."""
        entry = self._store.get(cache_key)
        if entry is not None:
            return entry

        durable = self._mirror.load(cache_key)
        if durable is None:
            return None

        now = self._clock.now()
        if not durable.is_valid(now):
            self._mirror.remove(cache_key)
            return None
        promoted = CacheEntry(
            data=durable.data,
            timestamp=durable.timestamp,
            expires_at=durable.expires_at,
            version=durable.version,
            dependencies=durable.dependencies,
            access_count=1,
            last_accessed=now,
        )
        self._store.put(cache_key, promoted)
        logger.debug(f"CACHE HIT (durable, promoted): {cache_key}")
        return promoted

    def set_cache(
        self,
        cache_key: str,
        data: Any,
        ttl: float,
        dependencies: Optional[Iterable[str]] = None,
    ) -> CacheEntry:
        """
        Store data in cache and mirror it durably.

        A failed durable write is logged; the in-memory entry still serves reads.
        """
        entry = self._store.set(cache_key, data, ttl, dependencies or ())
        self._mirror.save(cache_key, entry)
        logger.debug(f"Cache set for key: {cache_key}, expires in {ttl}s")
        return entry

    # =========================================================================
    # Eviction
    # =========================================================================

    def clear_cache(self, cache_key: str) -> bool:
        """
        Invalidate a specific cache entry.

        Returns:
            True if the entry was held in memory
        """
        found = self._store.delete(cache_key)
        self._mirror.remove(cache_key)
        logger.debug(f"Cleared cache entry: {cache_key}")
        return found

    def clear_cache_by_pattern(self, pattern: str) -> int:
        """
        Invalidate all cache entries whose key contains a pattern.

        Args:
            pattern: Substring to match in cache keys; empty patterns are refused

        Returns:
            Number of in-memory entries invalidated
        """
        if not pattern:
            logger.warning("Refusing to clear cache with an empty pattern")
            return 0
        removed = self._store.delete_by_prefix(pattern)
        mirrored = self._mirror.remove_by_pattern(pattern)
        if removed or mirrored:
            logger.info(
                f"Invalidated {len(removed)} entries ({mirrored} durable) matching '{pattern}'"
            )
        return len(removed)

    def clear_all_cache(self) -> int:
        """
        Clear all cache entries, in memory and durable.

        Returns:
            Number of in-memory entries cleared
        """
        count = self._store.clear()
        self._mirror.remove_all()
        logger.info(f"Cleared all cache ({count} entries)")
        return count

    def invalidate_related_caches(
        self, table_name: str, affected_row_id: Optional[int] = None
    ) -> int:
        """
        Evict every entry affected by a change to ``table_name``.

        Returns:
            Number of in-memory entries evicted
        """
        prefixes = self._graph.invalidation_prefixes(table_name, affected_row_id)
        removed = sum(self.clear_cache_by_pattern(prefix) for prefix in prefixes)
        logger.info(
            f"Invalidated caches related to {table_name} (id={affected_row_id}): "
            f"{removed} entries"
        )
        return removed

    # =========================================================================
    # Invalidation fan-out
    # =========================================================================

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Receive an InvalidationNotice after every invalidation event."""
        return self._broadcaster.subscribe(callback)

    def register_prewarmer(self, name: str, prewarmer: Prewarmer) -> None:
        """
        Register a high-traffic fetch to re-run after critical-table changes.

        The prewarmer usually calls ``get_cached_data`` so its result lands in
        the cache before the next read.
        """
        self._prewarmers[name] = prewarmer

    def unregister_prewarmer(self, name: str) -> None:
        self._prewarmers.pop(name, None)

    async def prewarm(self) -> int:
        """
        Run every registered prewarmer concurrently.

        Failures are logged, never raised.

        Returns:
            Number of prewarmers that succeeded
        """
        if not self._prewarmers:
            return 0
        logger.debug("Pre-warming critical caches")

        names = list(self._prewarmers)
        results = await asyncio.gather(
            *(self._prewarmers[name]() for name in names),
            return_exceptions=True,
        )
        succeeded = 0
        for name, result in zip(names, results):
            if isinstance(result, BaseException):
                logger.error(f"Failed to pre-warm {name}: {result}")
            else:
                succeeded += 1
        logger.debug(f"Pre-warmed {succeeded}/{len(names)} critical caches")
        return succeeded

    # =========================================================================
    # Consistency and metrics
    # =========================================================================

    async def validate_cache_consistency(self) -> ConsistencyReport:
        """
        Count valid, expired and inconsistent entries, then purge expired ones.

        An entry is inconsistent when one of its declared dependencies matches
        no other valid key.
        """
        now = self._clock.now()
        items = self._store.items()
        valid_keys = [k for k, e in items if e.is_valid(now)]

        valid = expired = inconsistent = 0
        actions: List[str] = []
        for key, entry in items:
            if entry.is_valid(now):
                valid += 1
            else:
                expired += 1
                actions.append(f"Remove expired cache entry: {key}")

            if entry.dependencies:
                broken = [
                    dep for dep in entry.dependencies
                    if not any(dep in other for other in valid_keys if other != key)
                ]
                if broken:
                    inconsistent += 1
                    actions.append(f"Refresh cache with invalid dependencies: {key}")

        if expired:
            self._cleanup_expired_entries()

        report = ConsistencyReport(
            total_entries=len(items),
            valid_entries=valid,
            expired_entries=expired,
            inconsistent_entries=inconsistent,
            recommended_actions=actions,
            last_validation=to_iso(now),
        )
        logger.debug(f"Cache consistency validation completed: {report.to_dict()}")
        return report

    def _cleanup_expired_entries(self) -> int:
        expired = self._store.purge_expired()
        for key in expired:
            self._mirror.remove(key)
        logger.debug(f"Cleaned up {len(expired)} expired cache entries")
        return len(expired)

    def sample_metrics(self) -> None:
        """Resample cache size and memory estimate now."""
        self._metrics.sample(self._store.items())

    async def _sample_metrics_async(self) -> None:
        self.sample_metrics()

    def get_performance_metrics(self) -> PerformanceMetrics:
        """Copy of the current performance metrics."""
        return self._metrics.snapshot()

    def get_stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        return {
            "entries": len(self._store),
            "durable_entries": len(self._mirror.keys()),
            "hits": self._metrics.hits,
            "misses": self._metrics.misses,
            "metrics": self.get_performance_metrics().to_dict(),
            "coalescer": self._coalescer.get_stats(),
            "listener": {
                "state": self._listener.state.value,
                "events_processed": self._listener.events_processed,
                "checkpoint": self._listener.checkpoint.isoformat(),
            },
        }

    # =========================================================================
    # Collaborators
    # =========================================================================

    @property
    def store(self) -> EntryStore:
        return self._store

    @property
    def mirror(self) -> DurableMirror:
        return self._mirror

    @property
    def listener(self) -> InvalidationListener:
        return self._listener

    @property
    def feed(self) -> ChangeEventFeed:
        return self._feed

    @property
    def graph(self) -> DependencyGraph:
        return self._graph


def _elapsed_ms(started: float) -> float:
    return (time.perf_counter() - started) * 1000


def create_cache_manager(
    settings=None,
    feed: Optional[ChangeEventFeed] = None,
    durable_store: Optional[DurableStore] = None,
    clock: Optional[Clock] = None,
) -> EnhancedCacheManager:
    """
    Build a cache manager from settings.

    Uses SQLite for the durable mirror when ``durable_store_path`` is set and
    the REST feed when Supabase credentials are configured.
    """
    if settings is None:
        from teamcache.config.settings import settings

    if durable_store is None:
        if settings.durable_store_path:
            durable_store = SQLiteDurableStore(
                settings.durable_store_path, quota_bytes=settings.durable_quota_bytes
            )
        else:
            durable_store = MemoryDurableStore(quota_bytes=settings.durable_quota_bytes)

    if feed is None and settings.supabase_url and settings.supabase_key:
        feed = RestChangeEventFeed(
            settings.supabase_url,
            settings.supabase_key,
            table=settings.invalidation_events_table,
            timeout=settings.feed_request_timeout_seconds,
        )

    return EnhancedCacheManager(
        feed=feed,
        durable_store=durable_store,
        clock=clock,
        namespace=settings.cache_namespace,
        coalesce_misses=settings.coalesce_misses,
        reconciliation_interval=settings.reconciliation_interval_seconds,
        metrics_interval=settings.metrics_interval_seconds,
        live_event_window=settings.live_event_window,
    )
