"""
Durable mirror of cache entries.

Entries are written as JSON under a namespaced key so a fresh process can warm
from them. Persistence is best-effort: the in-memory store stays authoritative,
so every failure here is logged and reported as a MirrorResult, never raised.

Space reclamation deletes the oldest 25% of records by creation time, not by
last access. That is an approximation of LRU, kept for its simplicity.
"""
import json
import logging
import math
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, List, Optional, Protocol, Tuple

from .clock import Clock, SystemClock
from .core import CacheEntry, MirrorResult
from .errors import QuotaExceededError

logger = logging.getLogger("cache.durable")

DEFAULT_NAMESPACE = "enhanced_cache_"
DEFAULT_QUOTA_BYTES = 5 * 1024 * 1024
RECLAIM_FRACTION = 0.25


class DurableStore(Protocol):
    """
    Synchronous string key-value store with a finite capacity.

    ``set_item`` raises QuotaExceededError when the write does not fit.
    """

    def get_item(self, key: str) -> Optional[str]:
        ...

    def set_item(self, key: str, value: str) -> None:
        ...

    def remove_item(self, key: str) -> None:
        ...

    def keys(self) -> List[str]:
        ...


def _record_size(key: str, value: str) -> int:
    return len(key) + len(value)


class MemoryDurableStore:
    """
    Process-local store with a character quota, shaped like browser storage.

    Useful for tests and for processes without a writable disk.
    """

    def __init__(self, quota_bytes: int = DEFAULT_QUOTA_BYTES):
        self.quota_bytes = quota_bytes
        self._items: Dict[str, str] = {}
        self._lock = threading.Lock()

    def get_item(self, key: str) -> Optional[str]:
        with self._lock:
            return self._items.get(key)

    def set_item(self, key: str, value: str) -> None:
        with self._lock:
            used = sum(_record_size(k, v) for k, v in self._items.items() if k != key)
            if used + _record_size(key, value) > self.quota_bytes:
                raise QuotaExceededError(
                    f"Writing {key} exceeds quota of {self.quota_bytes} bytes"
                )
            self._items[key] = value

    def remove_item(self, key: str) -> None:
        with self._lock:
            self._items.pop(key, None)

    def keys(self) -> List[str]:
        with self._lock:
            return list(self._items)

    @property
    def used_bytes(self) -> int:
        with self._lock:
            return sum(_record_size(k, v) for k, v in self._items.items())


SCHEMA = """
CREATE TABLE IF NOT EXISTS cache_records (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""


class SQLiteDurableStore:
    """
    SQLite-backed durable store with a byte quota.

    Survives process restarts; several processes may share one file with
    last-write-wins semantics.
    """

    def __init__(self, db_path: Path, quota_bytes: int = DEFAULT_QUOTA_BYTES):
        self.db_path = Path(db_path)
        self.quota_bytes = quota_bytes
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _init_db(self):
        """Initialize database with schema."""
        with self._get_connection() as conn:
            conn.executescript(SCHEMA)
            conn.commit()

    @contextmanager
    def _get_connection(self):
        """Get a database connection."""
        conn = sqlite3.connect(str(self.db_path))
        try:
            yield conn
        finally:
            conn.close()

    def get_item(self, key: str) -> Optional[str]:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT value FROM cache_records WHERE key = ?", (key,)
            ).fetchone()
        return row[0] if row else None

    def set_item(self, key: str, value: str) -> None:
        with self._get_connection() as conn:
            used = conn.execute(
                """
                SELECT COALESCE(SUM(LENGTH(key) + LENGTH(value)), 0)
                FROM cache_records WHERE key != ?
                """,
                (key,),
            ).fetchone()[0]
            if used + _record_size(key, value) > self.quota_bytes:
                raise QuotaExceededError(
                    f"Writing {key} exceeds quota of {self.quota_bytes} bytes"
                )
            conn.execute(
                "INSERT OR REPLACE INTO cache_records (key, value) VALUES (?, ?)",
                (key, value),
            )
            conn.commit()

    def remove_item(self, key: str) -> None:
        with self._get_connection() as conn:
            conn.execute("DELETE FROM cache_records WHERE key = ?", (key,))
            conn.commit()

    def keys(self) -> List[str]:
        with self._get_connection() as conn:
            return [row[0] for row in conn.execute("SELECT key FROM cache_records")]


class DurableMirror:
    """
    Namespaced JSON persistence of cache entries over a DurableStore.

    Usage:
        mirror = DurableMirror(MemoryDurableStore())
        mirror.save("teams_all", entry)
        entry = mirror.load("teams_all")
    """

    def __init__(
        self,
        store: DurableStore,
        namespace: str = DEFAULT_NAMESPACE,
        clock: Optional[Clock] = None,
    ):
        self._store = store
        self.namespace = namespace
        self._clock = clock or SystemClock()

    def _storage_key(self, key: str) -> str:
        return f"{self.namespace}{key}"

    def _namespaced_keys(self) -> List[str]:
        try:
            return [k for k in self._store.keys() if k.startswith(self.namespace)]
        except Exception as e:
            logger.warning(f"Failed to enumerate durable cache: {e}")
            return []

    def _remove_storage_key(self, storage_key: str) -> None:
        try:
            self._store.remove_item(storage_key)
        except Exception as e:
            logger.warning(f"Failed to remove durable record {storage_key}: {e}")

    def save(self, key: str, entry: CacheEntry) -> MirrorResult:
        """
        Persist an entry.

        On any write failure the key's previous record is dropped, a
        reclamation pass runs and the write is given up.
        """
        storage_key = self._storage_key(key)
        try:
            payload = json.dumps(entry.to_dict())
            self._store.set_item(storage_key, payload)
        except Exception as e:
            # The old record would outlive the entry that replaced it
            self._remove_storage_key(storage_key)
            reclaimed = self.reclaim_space()
            logger.warning(
                f"Durable write failed for {key} ({type(e).__name__}: {e}); "
                f"reclaimed {reclaimed} records"
            )
            return MirrorResult(ok=False, error=str(e), reclaimed=reclaimed)
        return MirrorResult(ok=True)

    def load(self, key: str) -> Optional[CacheEntry]:
        """
        Load an unexpired entry.

        Expired, unreadable or corrupt records are removed and reported absent.
        """
        storage_key = self._storage_key(key)
        try:
            stored = self._store.get_item(storage_key)
        except Exception as e:
            logger.warning(f"Durable read failed for {key}: {e}")
            return None
        if stored is None:
            return None

        try:
            entry = CacheEntry.from_dict(json.loads(stored))
        except (ValueError, TypeError) as e:
            logger.warning(f"Discarding corrupt durable record {key}: {e}")
            self._remove_storage_key(storage_key)
            return None

        if self._clock.now() > entry.expires_at:
            self._remove_storage_key(storage_key)
            return None
        return entry

    def remove(self, key: str) -> None:
        self._remove_storage_key(self._storage_key(key))

    def remove_by_pattern(self, pattern: str) -> int:
        """Remove records whose cache key contains ``pattern``."""
        prefix_len = len(self.namespace)
        matching = [k for k in self._namespaced_keys() if pattern in k[prefix_len:]]
        for storage_key in matching:
            self._remove_storage_key(storage_key)
        return len(matching)

    def remove_all(self) -> int:
        keys = self._namespaced_keys()
        for storage_key in keys:
            self._remove_storage_key(storage_key)
        return len(keys)

    def keys(self) -> List[str]:
        """Cache keys currently mirrored (without namespace)."""
        prefix_len = len(self.namespace)
        return [k[prefix_len:] for k in self._namespaced_keys()]

    def reclaim_space(self) -> int:
        """
        Delete the oldest 25% of mirrored records by creation timestamp.

        Unreadable records are dropped first and do not count toward the 25%.

        Returns:
            Number of records removed
        """
        records: List[Tuple[float, str]] = []
        removed = 0
        for storage_key in self._namespaced_keys():
            try:
                raw = json.loads(self._store.get_item(storage_key) or "{}")
                records.append((float(raw.get("timestamp") or 0), storage_key))
            except (ValueError, TypeError, AttributeError):
                self._remove_storage_key(storage_key)
                removed += 1
            except Exception as e:
                logger.warning(f"Failed to read {storage_key} during reclamation: {e}")

        records.sort()
        to_remove = math.ceil(len(records) * RECLAIM_FRACTION)
        for _, storage_key in records[:to_remove]:
            self._remove_storage_key(storage_key)

        removed += to_remove
        if removed:
            logger.info(f"Reclaimed {removed} durable cache records")
        return removed
