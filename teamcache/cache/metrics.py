"""
Performance tracking for the cache.

Rates and the mean response time are updated incrementally on every request;
no per-request history is kept. Size and memory figures are resampled on a
timer, so between samples they lag behind the store.
"""
import json
import logging
from dataclasses import replace
from typing import Iterable, Tuple

from .core import CacheEntry, PerformanceMetrics

logger = logging.getLogger("cache.metrics")


def estimate_entry_size(key: str, entry: CacheEntry) -> int:
    """Rough size of an entry as its serialized length."""
    try:
        return len(key) + len(json.dumps(entry.to_dict(), default=str))
    except (TypeError, ValueError):
        return len(key) + len(repr(entry.data))


class PerformanceTracker:
    """Owns the PerformanceMetrics of one cache instance."""

    def __init__(self):
        self._metrics = PerformanceMetrics()
        self.hits = 0
        self.misses = 0

    def record_hit(self, response_time_ms: float) -> None:
        self.hits += 1
        self._record(response_time_ms)

    def record_miss(self, response_time_ms: float) -> None:
        self.misses += 1
        self._record(response_time_ms)

    def _record(self, response_time_ms: float) -> None:
        m = self._metrics
        m.total_requests += 1
        m.hit_rate = self.hits / m.total_requests
        m.miss_rate = self.misses / m.total_requests
        m.average_response_time += (
            (response_time_ms - m.average_response_time) / m.total_requests
        )

    def sample(self, entries: Iterable[Tuple[str, CacheEntry]]) -> None:
        """Resample cache size and memory estimate."""
        size = 0
        memory = 0
        for key, entry in entries:
            size += 1
            memory += estimate_entry_size(key, entry)
        self._metrics.cache_size = size
        self._metrics.memory_usage_estimate = memory
        logger.debug(f"Metrics sampled: {size} entries, ~{memory} bytes")

    def snapshot(self) -> PerformanceMetrics:
        return replace(self._metrics)
