"""
Change-event feed interface and implementations.

The feed pattern lets the listener swap an in-process feed for a hosted
backend without changing the invalidation logic.
"""
import asyncio
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol

import requests
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
)

from .core import InvalidationEvent
from .errors import FeedError, FeedSubscriptionError

logger = logging.getLogger("cache.feed")

EventHandler = Callable[[InvalidationEvent], Awaitable[None]]


class FeedSubscription(Protocol):
    def unsubscribe(self) -> None:
        ...


class ChangeEventFeed(Protocol):
    """
    Interface for invalidation event sources.

    Implementations:
    - InMemoryChangeEventFeed: in-process publish/subscribe (tests, single process)
    - RestChangeEventFeed: PostgREST query against the hosted events table
    """

    def subscribe(self, handler: EventHandler) -> FeedSubscription:
        """
        Deliver future events to ``handler`` as they are produced.

        Raises:
            FeedSubscriptionError: If live delivery is unavailable
        """
        ...

    async def fetch_events_since(self, since: datetime) -> List[InvalidationEvent]:
        """
        Events created strictly after ``since``, oldest first.

        Raises:
            FeedError: If the system of record cannot be queried
        """
        ...


class _HandlerSubscription:
    def __init__(self, handlers: List[EventHandler], handler: EventHandler):
        self._handlers = handlers
        self._handler = handler

    def unsubscribe(self) -> None:
        if self._handler in self._handlers:
            self._handlers.remove(self._handler)


class InMemoryChangeEventFeed:
    """
    Event log kept in process memory.

    ``publish(event, deliver=False)`` records an event without live delivery,
    which is how a dropped subscription looks to the listener.
    """

    def __init__(self):
        self._events: List[InvalidationEvent] = []
        self._handlers: List[EventHandler] = []

    def subscribe(self, handler: EventHandler) -> FeedSubscription:
        self._handlers.append(handler)
        return _HandlerSubscription(self._handlers, handler)

    async def publish(self, event: InvalidationEvent, deliver: bool = True) -> None:
        self._events.append(event)
        if not deliver:
            return
        for handler in list(self._handlers):
            await handler(event)

    async def fetch_events_since(self, since: datetime) -> List[InvalidationEvent]:
        events = [e for e in self._events if e.created_at > since]
        return sorted(events, key=lambda e: e.created_at)

    @property
    def subscriber_count(self) -> int:
        return len(self._handlers)


class RestChangeEventFeed:
    """
    Reads invalidation events from a Supabase / PostgREST table.

    Live subscriptions need the realtime websocket protocol, which this client
    does not speak; ``subscribe`` raises and the listener falls back to polling.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        table: str = "cache_invalidation_events",
        timeout: float = 10.0,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.table = table
        self.timeout = timeout
        self._session = session or requests.Session()
        self._api_key = api_key

    def _get_headers(self) -> Dict[str, str]:
        """Get API authentication headers."""
        return {
            "apikey": self._api_key,
            "Authorization": f"Bearer {self._api_key}",
            "Accept": "application/json",
        }

    def subscribe(self, handler: EventHandler) -> FeedSubscription:
        raise FeedSubscriptionError(
            "REST change feed does not support live subscriptions"
        )

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception_type((requests.ConnectionError, requests.Timeout)),
        reraise=True,
    )
    def _get(self, params: Dict[str, str]) -> requests.Response:
        """GET the events table, retrying transient network failures."""
        return self._session.get(
            f"{self.base_url}/rest/v1/{self.table}",
            params=params,
            headers=self._get_headers(),
            timeout=self.timeout,
        )

    def _query(self, since: datetime) -> List[Dict[str, Any]]:
        params = {
            "select": "*",
            "created_at": f"gt.{since.isoformat()}",
            "order": "created_at.asc",
        }
        try:
            response = self._get(params)
            response.raise_for_status()
            rows = response.json()
        except (requests.RequestException, ValueError) as e:
            raise FeedError(f"Failed to query {self.table}: {e}") from e

        if not isinstance(rows, list):
            raise FeedError(f"Unexpected response from {self.table}: {type(rows).__name__}")
        return rows

    async def fetch_events_since(self, since: datetime) -> List[InvalidationEvent]:
        rows = await asyncio.to_thread(self._query, since)

        events = []
        for row in rows:
            try:
                events.append(InvalidationEvent.from_row(row))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping malformed invalidation event {row!r}: {e}")
        events.sort(key=lambda e: e.created_at)
        return events
