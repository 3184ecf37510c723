"""
Core cache data structures.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple
from enum import Enum


class DataCategory(Enum):
    """Volatility classes with different cache durations."""
    REAL_TIME = "real_time"        # 30 seconds - live status
    VALIDATION = "validation"      # 5 minutes - consistency checks
    CALCULATION = "calculation"    # 2 minutes - calculated metrics
    SPRINT = "sprint"              # 30 minutes - sprint settings
    DYNAMIC = "dynamic"            # 5 minutes - schedule entries
    STATIC = "static"              # 2 hours - teams, members


@dataclass
class CacheEntry:
    """
    A cached value with expiry, version and usage telemetry.

    An entry is valid only while ``now < expires_at``.
    """
    data: Any
    timestamp: float
    expires_at: float
    version: int = 1
    dependencies: Tuple[str, ...] = ()
    access_count: int = 0
    last_accessed: float = 0.0

    def is_valid(self, now: float) -> bool:
        return now < self.expires_at

    @property
    def ttl_seconds(self) -> float:
        return self.expires_at - self.timestamp

    def touch(self, now: float) -> None:
        """Record a cache hit."""
        self.access_count += 1
        self.last_accessed = now

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the durable JSON shape."""
        return {
            "data": self.data,
            "timestamp": self.timestamp,
            "expiresAt": self.expires_at,
            "version": self.version,
            "dependencies": list(self.dependencies),
            "accessCount": self.access_count,
            "lastAccessed": self.last_accessed,
        }

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "CacheEntry":
        """
        Rebuild an entry from its durable JSON shape.

        Raises:
            ValueError: If a required field is missing or malformed
        """
        if not isinstance(raw, dict):
            raise ValueError("cache record is not an object")
        try:
            timestamp = float(raw["timestamp"])
            expires_at = float(raw["expiresAt"])
            data = raw["data"]
        except (KeyError, TypeError) as e:
            raise ValueError(f"malformed cache record: {e}") from e

        return cls(
            data=data,
            timestamp=timestamp,
            expires_at=expires_at,
            version=int(raw.get("version") or 1),
            dependencies=tuple(raw.get("dependencies") or ()),
            access_count=int(raw.get("accessCount") or 0),
            last_accessed=float(raw.get("lastAccessed") or timestamp),
        )


@dataclass(frozen=True)
class InvalidationEvent:
    """A change notification produced by the system of record."""
    source_id: str
    table_name: str
    operation_type: str
    created_at: datetime
    affected_row_id: Optional[int] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "InvalidationEvent":
        """Parse a row of the invalidation events table."""
        created_at = row["created_at"]
        if isinstance(created_at, str):
            created_at = datetime.fromisoformat(created_at.replace("Z", "+00:00"))
        if created_at.tzinfo is None:
            created_at = created_at.replace(tzinfo=timezone.utc)

        affected = row.get("affected_id")
        return cls(
            source_id=str(row["id"]),
            table_name=row["table_name"],
            operation_type=row.get("operation_type") or "UPDATE",
            created_at=created_at,
            affected_row_id=int(affected) if affected is not None else None,
        )


@dataclass(frozen=True)
class InvalidationNotice:
    """Local broadcast payload sent after every invalidation."""
    table_name: str
    operation_type: str
    timestamp: float

    def to_dict(self) -> dict:
        return {
            "tableName": self.table_name,
            "operationType": self.operation_type,
            "timestamp": self.timestamp,
        }


@dataclass
class PerformanceMetrics:
    """Point-in-time view of cache performance."""
    hit_rate: float = 0.0
    miss_rate: float = 0.0
    average_response_time: float = 0.0  # milliseconds
    total_requests: int = 0
    cache_size: int = 0
    memory_usage_estimate: int = 0  # bytes

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON response."""
        return {
            "hitRate": self.hit_rate,
            "missRate": self.miss_rate,
            "averageResponseTime": round(self.average_response_time, 3),
            "totalRequests": self.total_requests,
            "cacheSize": self.cache_size,
            "memoryUsage": self.memory_usage_estimate,
        }


@dataclass
class ConsistencyReport:
    """Result of a cache consistency validation pass."""
    total_entries: int
    valid_entries: int
    expired_entries: int
    inconsistent_entries: int
    recommended_actions: List[str] = field(default_factory=list)
    last_validation: str = ""

    def to_dict(self) -> dict:
        return {
            "totalEntries": self.total_entries,
            "validEntries": self.valid_entries,
            "expiredEntries": self.expired_entries,
            "inconsistentEntries": self.inconsistent_entries,
            "recommendedActions": list(self.recommended_actions),
            "lastValidation": self.last_validation,
        }


@dataclass
class MirrorResult:
    """Outcome of a durable mirror write. Never raised, only returned."""
    ok: bool
    error: Optional[str] = None
    reclaimed: int = 0
