"""
TTL configuration and key-to-category mapping.
"""
from typing import Dict, Optional, Tuple

from .core import DataCategory


# TTL Configuration by category (in seconds)
TTL_CONFIG: Dict[DataCategory, float] = {
    DataCategory.STATIC: 2 * 60 * 60,      # 2 hours - teams, members
    DataCategory.SPRINT: 30 * 60,          # 30 minutes - sprint settings
    DataCategory.CALCULATION: 2 * 60,      # 2 minutes - calculated metrics
    DataCategory.DYNAMIC: 5 * 60,          # 5 minutes - schedule entries
    DataCategory.VALIDATION: 5 * 60,       # 5 minutes - consistency checks
    DataCategory.REAL_TIME: 30,            # 30 seconds - live status
}

DEFAULT_CATEGORY = DataCategory.DYNAMIC

# Keys are free-form, so a key may contain substrings of several classes.
# More specific classes are tested first; the first match wins.
CLASSIFICATION_ORDER: Tuple[Tuple[DataCategory, Tuple[str, ...]], ...] = (
    (DataCategory.REAL_TIME, ("real_time", "live", "current_status")),
    (DataCategory.VALIDATION, ("validation", "consistency", "integrity")),
    (DataCategory.CALCULATION, ("calculation", "capacity", "hours", "utilization")),
    (DataCategory.SPRINT, ("sprint", "global_sprint")),
    (DataCategory.DYNAMIC, ("schedule_entries", "availability", "daily_status")),
    (DataCategory.STATIC, ("teams", "team_members", "operational_teams")),
)

# Floor applied to the change-frequency adjustment (10% of the dynamic TTL)
MIN_FREQUENCY_FACTOR = 0.1


def get_category_for_key(cache_key: str) -> DataCategory:
    """
    Determine the volatility class for a cache key.

    Args:
        cache_key: Free-form cache key (e.g. "schedule_entries_week_5")

    Returns:
        The first matching DataCategory, or DYNAMIC when nothing matches
    """
    for category, markers in CLASSIFICATION_ORDER:
        if any(marker in cache_key for marker in markers):
            return category
    return DEFAULT_CATEGORY


def get_ttl_for_category(category: DataCategory) -> float:
    """Get the TTL in seconds for a data category."""
    return TTL_CONFIG.get(category, TTL_CONFIG[DEFAULT_CATEGORY])


def get_cache_duration(
    cache_key: str,
    change_frequency: Optional[float] = None,
) -> float:
    """
    Get the cache duration for a key.

    An observed change frequency, when positive, takes precedence over the
    key classification: the dynamic TTL is divided by the frequency, but
    never shrinks below 10% of the dynamic TTL.

    Args:
        cache_key: Cache key to classify
        change_frequency: Observed changes per TTL window (optional)

    Returns:
        TTL in seconds
    """
    if change_frequency is not None and change_frequency > 0:
        base = TTL_CONFIG[DataCategory.DYNAMIC]
        return base * max(MIN_FREQUENCY_FACTOR, 1 / change_frequency)

    return get_ttl_for_category(get_category_for_key(cache_key))
