"""
Team Cache - FastAPI application

Exposes cache health, metrics, consistency validation and manual
invalidation for the scheduling application's cache.
"""
import uuid
from datetime import datetime, timezone
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from pydantic import BaseModel, Field

from teamcache import __version__
from teamcache.cache import (
    DependencyGraphError,
    EnhancedCacheManager,
    InvalidationEvent,
    create_cache_manager,
)

# Version tracking
APP_VERSION = f"v{__version__}"
APP_NAME = "Team Cache"


class InvalidationRequest(BaseModel):
    """Manual invalidation of everything depending on a table."""
    table_name: str = Field(min_length=1)
    operation_type: str = "UPDATE"
    affected_row_id: Optional[int] = None


def create_app(cache: Optional[EnhancedCacheManager] = None) -> FastAPI:
    """
    Build the application.

    Args:
        cache: Pre-built cache manager; built from settings when omitted
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        manager = cache or create_cache_manager()
        app.state.cache = manager
        await manager.start()
        try:
            yield
        finally:
            await manager.close()

    app = FastAPI(
        title=APP_NAME,
        description="Tiered cache with change-feed invalidation",
        version=APP_VERSION,
        lifespan=lifespan,
    )
    _register_routes(app)
    return app


def get_cache(request: Request) -> EnhancedCacheManager:
    """FastAPI dependency returning the application's cache manager."""
    manager = getattr(request.app.state, "cache", None)
    if manager is None:
        raise HTTPException(status_code=503, detail="Cache not initialized")
    return manager


def _register_routes(app: FastAPI) -> None:
    # Cache routes are async so they run on the event loop that owns the cache

    @app.get("/health")
    def health():
        """Health check endpoint."""
        return {"status": "ok"}

    @app.get("/version")
    def version_info():
        """Version information endpoint."""
        return {
            "name": APP_NAME,
            "version": APP_VERSION,
            "full": f"{APP_NAME} {APP_VERSION}",
        }

    @app.get("/cache/stats")
    async def cache_stats(cache: EnhancedCacheManager = Depends(get_cache)):
        """Get cache statistics."""
        return cache.get_stats()

    @app.get("/cache/metrics")
    async def cache_metrics(
        resample: bool = Query(default=False, description="Resample size and memory first"),
        cache: EnhancedCacheManager = Depends(get_cache),
    ):
        """Get cache performance metrics."""
        if resample:
            cache.sample_metrics()
        return cache.get_performance_metrics().to_dict()

    @app.get("/cache/consistency")
    async def cache_consistency(cache: EnhancedCacheManager = Depends(get_cache)):
        """Validate cache consistency. Expired entries are purged as a side effect."""
        report = await cache.validate_cache_consistency()
        return report.to_dict()

    @app.delete("/cache/entries/{cache_key}")
    async def clear_entry(cache_key: str, cache: EnhancedCacheManager = Depends(get_cache)):
        """Invalidate one cache entry."""
        return {"key": cache_key, "cleared": cache.clear_cache(cache_key)}

    @app.delete("/cache/entries")
    async def clear_by_pattern(
        pattern: str = Query(..., min_length=1, description="Substring of keys to clear"),
        cache: EnhancedCacheManager = Depends(get_cache),
    ):
        """Invalidate every entry whose key contains the pattern."""
        return {"pattern": pattern, "cleared": cache.clear_cache_by_pattern(pattern)}

    @app.delete("/cache")
    async def clear_all(cache: EnhancedCacheManager = Depends(get_cache)):
        """Clear the whole cache."""
        return {"cleared": cache.clear_all_cache()}

    @app.post("/cache/invalidate")
    async def invalidate(
        body: InvalidationRequest,
        cache: EnhancedCacheManager = Depends(get_cache),
    ):
        """
        Run the invalidation algorithm for a change made outside the feed.

        Subscribers are notified and critical tables are pre-warmed, exactly
        as for a feed event.
        """
        event = InvalidationEvent(
            source_id=f"manual-{uuid.uuid4().hex}",
            table_name=body.table_name,
            operation_type=body.operation_type,
            created_at=datetime.now(timezone.utc),
            affected_row_id=body.affected_row_id,
        )
        try:
            evicted = await cache.listener.handle_event(event)
        except DependencyGraphError as e:
            raise HTTPException(status_code=422, detail=str(e))
        return {"tableName": body.table_name, "evicted": evicted}


app = create_app()
