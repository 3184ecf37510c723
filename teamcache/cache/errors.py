"""
Exception types raised inside the cache package.

Only fetcher errors ever reach callers of the public cache API; the types
below are raised between cache components and caught at the manager seam.
"""


class CacheError(Exception):
    """Base class for cache-internal failures."""


class DependencyGraphError(CacheError, ValueError):
    """Raised when a dependency table fails validation."""


class QuotaExceededError(CacheError):
    """Raised by a durable store when a write would exceed its capacity."""


class FeedError(CacheError):
    """Raised when the change-event feed cannot be queried."""


class FeedSubscriptionError(FeedError):
    """Raised when a live subscription to the change-event feed fails."""
