"""
In-memory entry store, authoritative for lookups during the process lifetime.

All mutations are synchronous, so on a single event loop no caller ever sees a
partially written entry.
"""
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple

from .clock import Clock, SystemClock
from .core import CacheEntry


class EntryStore:
    """Maps cache keys to entries. Absence is returned as None, never raised."""

    def __init__(self, clock: Optional[Clock] = None):
        self._clock = clock or SystemClock()
        self._entries: Dict[str, CacheEntry] = {}

    def get(self, key: str) -> Optional[CacheEntry]:
        """
        Get a valid entry and record the hit.

        Expired entries are left in place; ``purge_expired`` removes them.
        """
        entry = self._entries.get(key)
        if entry is None:
            return None
        now = self._clock.now()
        if not entry.is_valid(now):
            return None
        entry.touch(now)
        return entry

    def peek(self, key: str) -> Optional[CacheEntry]:
        """Raw lookup without validity check or telemetry."""
        return self._entries.get(key)

    def set(
        self,
        key: str,
        data: Any,
        ttl: float,
        dependencies: Iterable[str] = (),
    ) -> CacheEntry:
        """Build a new entry with the next version for the key and store it."""
        now = self._clock.now()
        prior = self._entries.get(key)
        entry = CacheEntry(
            data=data,
            timestamp=now,
            expires_at=now + ttl,
            version=prior.version + 1 if prior else 1,
            dependencies=tuple(dependencies),
            access_count=0,
            last_accessed=now,
        )
        self._entries[key] = entry
        return entry

    def put(self, key: str, entry: CacheEntry) -> None:
        """Insert a pre-built entry (used when promoting from the durable mirror)."""
        self._entries[key] = entry

    def delete(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    def delete_by_prefix(self, pattern: str) -> List[str]:
        """Remove every entry whose key contains ``pattern``."""
        to_delete = [k for k in self._entries if pattern in k]
        for key in to_delete:
            del self._entries[key]
        return to_delete

    def purge_expired(self) -> List[str]:
        now = self._clock.now()
        expired = [k for k, e in self._entries.items() if not e.is_valid(now)]
        for key in expired:
            del self._entries[key]
        return expired

    def clear(self) -> int:
        count = len(self._entries)
        self._entries.clear()
        return count

    def keys(self) -> List[str]:
        return list(self._entries)

    def items(self) -> List[Tuple[str, CacheEntry]]:
        return list(self._entries.items())

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._entries))
