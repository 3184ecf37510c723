"""
Team scheduling cache: tiered caching with change-feed invalidation.
"""
__version__ = "0.3.0"
