"""
Request coalescing to prevent duplicate fetches on concurrent misses.

When several coroutines miss on the same key at once, only one fetch runs and
every awaiter shares its result (or its exception).
"""
import asyncio
import time
import logging
from typing import Dict, Callable, Any, Awaitable
from dataclasses import dataclass, field

logger = logging.getLogger("cache.coalescer")


@dataclass
class InFlightRequest:
    """Tracks an in-progress fetch."""
    task: asyncio.Task
    started_at: float = field(default_factory=time.time)
    waiter_count: int = 0


def _consume_result(task: asyncio.Task) -> None:
    # Keeps an unobserved failure from being reported as never retrieved
    if not task.cancelled():
        task.exception()


class RequestCoalescer:
    """
    Ensures concurrent misses for the same cache key share one fetch.

    Pattern:
    - First caller for a key starts the fetch as a task
    - Later callers for the same key await that task
    - The task is shielded, so a caller that gives up does not cancel it

    Usage:
        coalescer = RequestCoalescer()
        result = await coalescer.get_or_fetch(
            cache_key="team_hours_5",
            fetch_fn=load_and_store,
        )
    """

    def __init__(self):
        self._in_flight: Dict[str, InFlightRequest] = {}

    async def get_or_fetch(
        self,
        cache_key: str,
        fetch_fn: Callable[[], Awaitable[Any]],
    ) -> Any:
        """
        Either join an existing in-flight fetch or start a new one.

        Args:
            cache_key: Unique key for this request
            fetch_fn: Coroutine function to call if we need to fetch

        Returns:
            The fetched data (shared among all concurrent callers)

        Raises:
            Exception: Any error from fetch_fn is propagated to every caller
        """
        in_flight = self._in_flight.get(cache_key)
        if in_flight is not None:
            in_flight.waiter_count += 1
            logger.debug(
                f"Coalescing request for {cache_key} "
                f"(waiters: {in_flight.waiter_count})"
            )
        else:
            logger.debug(f"Initiating fetch for {cache_key}")
            task = asyncio.get_running_loop().create_task(self._run(cache_key, fetch_fn))
            task.add_done_callback(_consume_result)
            in_flight = InFlightRequest(task=task)
            self._in_flight[cache_key] = in_flight

        return await asyncio.shield(in_flight.task)

    async def _run(self, cache_key: str, fetch_fn: Callable[[], Awaitable[Any]]) -> Any:
        try:
            return await fetch_fn()
        except Exception as e:
            logger.warning(f"Fetch failed for {cache_key}: {e}")
            raise
        finally:
            self._in_flight.pop(cache_key, None)

    @property
    def active_requests(self) -> int:
        """Number of currently in-flight fetches."""
        return len(self._in_flight)

    def get_stats(self) -> Dict[str, Any]:
        """Get coalescer statistics."""
        return {
            "active_requests": len(self._in_flight),
            "active_keys": list(self._in_flight.keys()),
        }
