"""
Tiered caching with durable mirroring, request coalescing and change-feed invalidation.
"""
from .core import (
    CacheEntry,
    ConsistencyReport,
    DataCategory,
    InvalidationEvent,
    InvalidationNotice,
    MirrorResult,
    PerformanceMetrics,
)
from .errors import (
    CacheError,
    DependencyGraphError,
    FeedError,
    FeedSubscriptionError,
    QuotaExceededError,
)
from .ttl_policies import (
    CLASSIFICATION_ORDER,
    TTL_CONFIG,
    get_cache_duration,
    get_category_for_key,
    get_ttl_for_category,
)
from .dependencies import DEFAULT_DEPENDENCIES, DependencyGraph
from .clock import Clock, ManualClock, PeriodicTask, SystemClock
from .store import EntryStore
from .durable import DurableMirror, DurableStore, MemoryDurableStore, SQLiteDurableStore
from .coalescer import RequestCoalescer
from .metrics import PerformanceTracker
from .broadcast import InvalidationBroadcaster
from .feed import ChangeEventFeed, InMemoryChangeEventFeed, RestChangeEventFeed
from .listener import InvalidationListener, ListenerState
from .manager import EnhancedCacheManager, create_cache_manager

__all__ = [
    # Core types
    "CacheEntry",
    "ConsistencyReport",
    "DataCategory",
    "InvalidationEvent",
    "InvalidationNotice",
    "MirrorResult",
    "PerformanceMetrics",
    # Errors
    "CacheError",
    "DependencyGraphError",
    "FeedError",
    "FeedSubscriptionError",
    "QuotaExceededError",
    # TTL policies
    "CLASSIFICATION_ORDER",
    "TTL_CONFIG",
    "get_cache_duration",
    "get_category_for_key",
    "get_ttl_for_category",
    # Dependencies
    "DEFAULT_DEPENDENCIES",
    "DependencyGraph",
    # Time
    "Clock",
    "ManualClock",
    "PeriodicTask",
    "SystemClock",
    # Storage
    "EntryStore",
    "DurableMirror",
    "DurableStore",
    "MemoryDurableStore",
    "SQLiteDurableStore",
    # Coalescing and metrics
    "RequestCoalescer",
    "PerformanceTracker",
    # Invalidation
    "InvalidationBroadcaster",
    "ChangeEventFeed",
    "InMemoryChangeEventFeed",
    "RestChangeEventFeed",
    "InvalidationListener",
    "ListenerState",
    # Manager
    "EnhancedCacheManager",
    "create_cache_manager",
]
