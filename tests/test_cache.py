"""
Unit tests for the cache building blocks.

Tests TTL policies, the dependency graph, the entry store, the durable mirror,
request coalescing and performance metrics using a manual clock.
"""
import asyncio
import json
import math

import pytest

from teamcache.cache.core import CacheEntry, DataCategory
from teamcache.cache.clock import ManualClock
from teamcache.cache.coalescer import RequestCoalescer
from teamcache.cache.dependencies import DependencyGraph
from teamcache.cache.durable import DurableMirror, MemoryDurableStore, SQLiteDurableStore
from teamcache.cache.errors import DependencyGraphError, QuotaExceededError
from teamcache.cache.metrics import PerformanceTracker
from teamcache.cache.store import EntryStore
from teamcache.cache.ttl_policies import (
    TTL_CONFIG,
    get_cache_duration,
    get_category_for_key,
)


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def clock():
    return ManualClock(start=1000.0)


@pytest.fixture
def store(clock):
    return EntryStore(clock)


@pytest.fixture
def durable_store():
    return MemoryDurableStore(quota_bytes=1024 * 1024)


@pytest.fixture
def mirror(durable_store, clock):
    return DurableMirror(durable_store, namespace="enhanced_cache_", clock=clock)


def make_entry(clock, data="x", ttl=60.0, version=1):
    now = clock.now()
    return CacheEntry(data=data, timestamp=now, expires_at=now + ttl, version=version)


# =============================================================================
# TTL Policy Tests
# =============================================================================

class TestTTLPolicies:
    """Tests for key classification and cache durations."""

    def test_specific_class_wins_over_general(self):
        """A validation key that mentions teams gets the validation TTL."""
        key = "validation_teams_report"
        assert get_category_for_key(key) == DataCategory.VALIDATION
        assert get_cache_duration(key) == 5 * 60

    def test_classification_of_known_keys(self):
        assert get_category_for_key("real_time_status") == DataCategory.REAL_TIME
        assert get_category_for_key("teams_all") == DataCategory.STATIC
        assert get_category_for_key("team_members_all") == DataCategory.STATIC
        assert get_category_for_key("schedule_entries_week_5") == DataCategory.DYNAMIC
        assert get_category_for_key("sprint_capacity_3") == DataCategory.CALCULATION
        assert get_category_for_key("current_global_sprint") == DataCategory.SPRINT

    def test_unknown_key_falls_back_to_dynamic(self):
        assert get_category_for_key("something_else") == DataCategory.DYNAMIC
        assert get_cache_duration("something_else") == TTL_CONFIG[DataCategory.DYNAMIC]

    def test_static_data_has_longest_ttl(self):
        assert get_cache_duration("teams_all") == max(TTL_CONFIG.values())
        assert get_cache_duration("live_board") == min(TTL_CONFIG.values())

    def test_change_frequency_overrides_classification(self):
        base = TTL_CONFIG[DataCategory.DYNAMIC]
        assert get_cache_duration("teams_all", change_frequency=2) == base / 2
        assert get_cache_duration("teams_all", change_frequency=0.5) == base * 2

    def test_change_frequency_floor(self):
        """TTL never drops below 10% of the dynamic baseline."""
        base = TTL_CONFIG[DataCategory.DYNAMIC]
        assert get_cache_duration("x", change_frequency=100) == pytest.approx(base * 0.1)
        assert get_cache_duration("x", change_frequency=1000) == pytest.approx(base * 0.1)

    def test_non_positive_frequency_is_ignored(self):
        assert get_cache_duration("teams_all", change_frequency=0) == TTL_CONFIG[DataCategory.STATIC]


# =============================================================================
# Dependency Graph Tests
# =============================================================================

class TestDependencyGraph:
    """Tests for dependency table validation and prefix resolution."""

    def test_default_graph_sources(self):
        graph = DependencyGraph.default()
        assert "teams" in graph
        assert graph.dependents_of("teams") == ("team_members", "schedule_entries")
        assert graph.dependents_of("untracked") == ()

    def test_rejects_empty_prefix(self):
        with pytest.raises(DependencyGraphError):
            DependencyGraph({"teams": ["team_members", ""]})

    def test_rejects_whitespace_source(self):
        with pytest.raises(DependencyGraphError):
            DependencyGraph({"  ": ["team_members"]})

    def test_rejects_duplicate_sources(self):
        with pytest.raises(DependencyGraphError):
            DependencyGraph([("teams", ["a"]), ("teams", ["b"])])

    def test_graph_error_is_value_error(self):
        with pytest.raises(ValueError):
            DependencyGraph({"teams": [""]})

    def test_duplicate_prefixes_collapse_in_order(self):
        graph = DependencyGraph({"teams": ["b", "a", "b"]})
        assert graph.dependents_of("teams") == ("b", "a")

    def test_invalidation_prefixes_with_row_id(self):
        graph = DependencyGraph.default()
        prefixes = graph.invalidation_prefixes("schedule_entries", affected_row_id=42)
        assert prefixes == [
            "schedule_entries",
            "team_hours",
            "sprint_capacity",
            "coo_dashboard",
            "team_dashboard",
            "schedule_entries_42",
            "team_",
            "company_totals",
        ]

    def test_invalidation_prefixes_untracked_table(self):
        graph = DependencyGraph.default()
        assert graph.invalidation_prefixes("holidays") == [
            "holidays", "company_totals", "coo_dashboard"
        ]

    def test_team_fanout_needs_row_id(self):
        graph = DependencyGraph.default()
        assert "team_" not in graph.invalidation_prefixes("team_members")
        assert "team_" in graph.invalidation_prefixes("team_members", affected_row_id=0)
        assert "team_" not in graph.invalidation_prefixes("teams", affected_row_id=3)

    def test_critical_tables(self):
        graph = DependencyGraph.default()
        assert graph.is_critical("global_sprint_settings")
        assert graph.is_critical("schedule_entries")
        assert not graph.is_critical("teams")


# =============================================================================
# Entry Store Tests
# =============================================================================

class TestEntryStore:
    """Tests for the in-memory entry store."""

    def test_entry_expires_without_eviction(self, store, clock):
        store.set("teams_1", {"id": 1}, ttl=0.1)
        assert store.get("teams_1") is not None

        clock.advance(0.15)
        assert store.get("teams_1") is None
        # Expired entries stay until purged
        assert "teams_1" in store

    def test_entry_invalid_at_exact_expiry(self, store, clock):
        store.set("teams_1", "data", ttl=5)
        clock.advance(5)
        assert store.get("teams_1") is None

    def test_version_increments_per_key(self, store):
        assert store.set("teams_1", "a", ttl=60).version == 1
        assert store.set("teams_1", "b", ttl=60).version == 2
        assert store.set("teams_2", "c", ttl=60).version == 1
        assert store.get("teams_1").data == "b"

    def test_hit_updates_access_telemetry(self, store, clock):
        store.set("teams_1", "a", ttl=60)
        clock.advance(1)
        store.get("teams_1")
        clock.advance(1)
        entry = store.get("teams_1")
        assert entry.access_count == 2
        assert entry.last_accessed == 1002.0

    def test_missing_key_is_none(self, store):
        assert store.get("nope") is None
        assert store.delete("nope") is False

    def test_delete_by_prefix_is_substring_match(self, store):
        store.set("team_hours_1", 1, ttl=60)
        store.set("sprint_team_hours", 2, ttl=60)
        store.set("teams_all", 3, ttl=60)

        removed = store.delete_by_prefix("team_hours")
        assert sorted(removed) == ["sprint_team_hours", "team_hours_1"]
        assert store.keys() == ["teams_all"]

    def test_purge_expired(self, store, clock):
        store.set("short", 1, ttl=1)
        store.set("long", 2, ttl=100)
        clock.advance(2)
        assert store.purge_expired() == ["short"]
        assert len(store) == 1

    def test_clear(self, store):
        store.set("a", 1, ttl=60)
        store.set("b", 2, ttl=60)
        assert store.clear() == 2
        assert len(store) == 0


# =============================================================================
# Durable Mirror Tests
# =============================================================================

class TestDurableMirror:
    """Tests for durable persistence, lazy expiry and space reclamation."""

    def test_save_and_load(self, mirror, clock):
        entry = make_entry(clock, data={"teams": [1, 2]}, version=3)
        assert mirror.save("teams_all", entry).ok

        loaded = mirror.load("teams_all")
        assert loaded.data == {"teams": [1, 2]}
        assert loaded.version == 3
        assert loaded.expires_at == entry.expires_at

    def test_records_are_namespaced(self, mirror, durable_store, clock):
        mirror.save("teams_all", make_entry(clock))
        assert durable_store.keys() == ["enhanced_cache_teams_all"]
        assert mirror.keys() == ["teams_all"]

    def test_expired_record_is_removed_on_load(self, mirror, durable_store, clock):
        mirror.save("teams_all", make_entry(clock, ttl=10))
        clock.advance(11)
        assert mirror.load("teams_all") is None
        assert durable_store.get_item("enhanced_cache_teams_all") is None

    def test_corrupt_record_is_removed(self, mirror, durable_store):
        durable_store.set_item("enhanced_cache_bad", "{not json")
        durable_store.set_item("enhanced_cache_partial", json.dumps({"data": 1}))

        assert mirror.load("bad") is None
        assert mirror.load("partial") is None
        assert durable_store.keys() == []

    def test_remove_by_pattern_and_all(self, mirror, durable_store, clock):
        durable_store.set_item("other_app_key", "keep")
        mirror.save("team_hours_1", make_entry(clock))
        mirror.save("team_hours_2", make_entry(clock))
        mirror.save("teams_all", make_entry(clock))

        assert mirror.remove_by_pattern("team_hours") == 2
        assert mirror.keys() == ["teams_all"]
        assert mirror.remove_all() == 1
        assert durable_store.keys() == ["other_app_key"]

    def test_quota_failure_reclaims_oldest_quarter(self, mirror, durable_store, clock):
        for i in range(8):
            mirror.save(f"entry_{i}", make_entry(clock, data=i))
            clock.advance(1)

        # Next write no longer fits
        durable_store.quota_bytes = durable_store.used_bytes
        result = mirror.save("entry_new", make_entry(clock, data="new"))

        assert result.ok is False
        assert result.reclaimed == math.ceil(0.25 * 8)
        assert sorted(mirror.keys()) == [f"entry_{i}" for i in range(2, 8)]

    def test_serialization_failure_is_reported(self, mirror, clock):
        result = mirror.save("bad", make_entry(clock, data=object()))
        assert result.ok is False
        assert result.error

    def test_reclaim_drops_unreadable_records(self, mirror, durable_store, clock):
        durable_store.set_item("enhanced_cache_bad", "][")
        for i in range(4):
            mirror.save(f"entry_{i}", make_entry(clock))
            clock.advance(1)

        assert mirror.reclaim_space() == 2  # corrupt record + oldest of 4
        assert sorted(mirror.keys()) == ["entry_1", "entry_2", "entry_3"]


class TestDurableStores:
    """Tests for the durable key-value store adapters."""

    def test_memory_store_quota(self):
        store = MemoryDurableStore(quota_bytes=10)
        store.set_item("a", "12345")
        with pytest.raises(QuotaExceededError):
            store.set_item("b", "123456789")
        # Replacing a key only counts the new value
        store.set_item("a", "123456789")
        assert store.get_item("a") == "123456789"

    def test_sqlite_store_roundtrip(self, tmp_path):
        store = SQLiteDurableStore(tmp_path / "cache" / "durable.db", quota_bytes=1024)
        store.set_item("enhanced_cache_a", "1")
        store.set_item("enhanced_cache_b", "2")
        assert store.get_item("enhanced_cache_a") == "1"
        assert sorted(store.keys()) == ["enhanced_cache_a", "enhanced_cache_b"]

        store.remove_item("enhanced_cache_a")
        assert store.get_item("enhanced_cache_a") is None

    def test_sqlite_store_persists_across_instances(self, tmp_path, clock):
        path = tmp_path / "durable.db"
        DurableMirror(SQLiteDurableStore(path), clock=clock).save("teams_all", make_entry(clock))

        reopened = DurableMirror(SQLiteDurableStore(path), clock=clock)
        assert reopened.load("teams_all").data == "x"

    def test_sqlite_store_quota(self, tmp_path):
        store = SQLiteDurableStore(tmp_path / "durable.db", quota_bytes=8)
        with pytest.raises(QuotaExceededError):
            store.set_item("key", "too long value")
        assert store.keys() == []


# =============================================================================
# Coalescer Tests
# =============================================================================

class TestRequestCoalescer:
    """Tests for in-flight fetch sharing."""

    def test_concurrent_calls_share_one_fetch(self):
        calls = []

        async def fetch():
            calls.append(1)
            await asyncio.sleep(0.01)
            return "result"

        async def scenario():
            coalescer = RequestCoalescer()
            results = await asyncio.gather(
                coalescer.get_or_fetch("k", fetch),
                coalescer.get_or_fetch("k", fetch),
                coalescer.get_or_fetch("k", fetch),
            )
            return results, coalescer.active_requests

        results, active = asyncio.run(scenario())
        assert results == ["result"] * 3
        assert len(calls) == 1
        assert active == 0

    def test_errors_reach_every_waiter(self):
        async def fetch():
            await asyncio.sleep(0.01)
            raise RuntimeError("backend down")

        async def scenario():
            coalescer = RequestCoalescer()
            return await asyncio.gather(
                coalescer.get_or_fetch("k", fetch),
                coalescer.get_or_fetch("k", fetch),
                return_exceptions=True,
            )

        results = asyncio.run(scenario())
        assert all(isinstance(r, RuntimeError) for r in results)

    def test_different_keys_fetch_independently(self):
        calls = []

        async def fetch():
            calls.append(1)
            return len(calls)

        async def scenario():
            coalescer = RequestCoalescer()
            await coalescer.get_or_fetch("a", fetch)
            await coalescer.get_or_fetch("b", fetch)

        asyncio.run(scenario())
        assert len(calls) == 2


# =============================================================================
# Metrics Tests
# =============================================================================

class TestPerformanceTracker:
    """Tests for incremental metrics."""

    def test_rates_and_running_mean(self):
        tracker = PerformanceTracker()
        tracker.record_hit(10)
        tracker.record_miss(20)
        tracker.record_hit(30)

        metrics = tracker.snapshot()
        assert metrics.total_requests == 3
        assert metrics.hit_rate == pytest.approx(2 / 3)
        assert metrics.miss_rate == pytest.approx(1 / 3)
        assert metrics.average_response_time == pytest.approx(20)

    def test_rates_sum_to_one(self):
        tracker = PerformanceTracker()
        for i in range(25):
            if i % 3:
                tracker.record_hit(1)
            else:
                tracker.record_miss(5)
            metrics = tracker.snapshot()
            assert metrics.hit_rate + metrics.miss_rate == pytest.approx(1.0)
            assert metrics.total_requests == tracker.hits + tracker.misses

    def test_sample_counts_entries(self, clock):
        tracker = PerformanceTracker()
        entries = [("a", make_entry(clock)), ("b", make_entry(clock, data="longer"))]
        tracker.sample(entries)

        metrics = tracker.snapshot()
        assert metrics.cache_size == 2
        assert metrics.memory_usage_estimate > 0

    def test_snapshot_is_a_copy(self):
        tracker = PerformanceTracker()
        snapshot = tracker.snapshot()
        tracker.record_hit(1)
        assert snapshot.total_requests == 0
