"""
Invalidation listener: keeps the cache eventually consistent with the system
of record.

Two inputs drive evictions:
- the live subscription to the change-event feed,
- a reconciliation poll that replays events created after the last
  checkpoint, so a silently dropped subscription only delays invalidation
  by one poll interval.

Reconnecting a dropped subscription is the feed's job; the listener only
reacts to events and polls for missed ones.
"""
import logging
from collections import deque
from datetime import datetime
from enum import Enum
from typing import Deque, List, Optional, Protocol

from .broadcast import InvalidationBroadcaster
from .clock import Clock, PeriodicTask, SystemClock, to_datetime
from .core import InvalidationEvent, InvalidationNotice
from .dependencies import DependencyGraph
from .errors import DependencyGraphError
from .feed import ChangeEventFeed, FeedSubscription

logger = logging.getLogger("cache.listener")


class ListenerState(Enum):
    DISCONNECTED = "disconnected"
    SUBSCRIBING = "subscribing"
    ACTIVE = "active"
    PROCESSING = "processing"


class InvalidationTarget(Protocol):
    """The cache operations the listener needs."""

    def invalidate_related_caches(
        self, table_name: str, affected_row_id: Optional[int] = None
    ) -> int:
        ...

    async def prewarm(self) -> int:
        ...


class InvalidationListener:
    """
    Subscribes to a ChangeEventFeed and evicts affected cache entries.

    Usage:
        listener = InvalidationListener(feed, cache, graph, broadcaster)
        await listener.start()
        ...
        await listener.stop()
    """

    def __init__(
        self,
        feed: ChangeEventFeed,
        target: InvalidationTarget,
        graph: DependencyGraph,
        broadcaster: InvalidationBroadcaster,
        clock: Optional[Clock] = None,
        poll_interval: float = 30.0,
        live_event_window: int = 1024,
    ):
        """
        Args:
            feed: Source of invalidation events
            target: Cache that performs evictions and pre-warming
            graph: Dependency graph resolving tables to key prefixes
            broadcaster: Local channel notified after each invalidation
            clock: Time source (defaults to wall clock)
            poll_interval: Seconds between reconciliation passes
            live_event_window: Number of live event ids remembered to skip on replay
        """
        self._feed = feed
        self._target = target
        self._graph = graph
        self._broadcaster = broadcaster
        self._clock = clock or SystemClock()
        self._subscription: Optional[FeedSubscription] = None
        self._state = ListenerState.DISCONNECTED
        self._processing = 0
        self._live_seen: Deque[str] = deque(maxlen=live_event_window)
        self._checkpoint: datetime = to_datetime(self._clock.now())
        self._poller = PeriodicTask(
            "cache-reconciliation", poll_interval, self.reconcile
        )

        self.events_processed = 0
        self.reconciliation_failures = 0

    @property
    def state(self) -> ListenerState:
        if self._state is ListenerState.ACTIVE and self._processing:
            return ListenerState.PROCESSING
        return self._state

    @property
    def checkpoint(self) -> datetime:
        """Creation time of the newest event replayed by reconciliation."""
        return self._checkpoint

    async def start(self) -> None:
        """Subscribe to the feed and start the reconciliation poll."""
        if self._state is not ListenerState.DISCONNECTED:
            return

        self._state = ListenerState.SUBSCRIBING
        logger.debug("Initializing cache invalidation listener")
        try:
            self._subscription = self._feed.subscribe(self._on_live_event)
        except Exception as e:
            # Polling still delivers every event, only later
            logger.warning(f"Live invalidation subscription failed, polling only: {e}")
            self._subscription = None

        self._state = ListenerState.ACTIVE
        self._poller.start()

    async def stop(self) -> None:
        """Tear down the subscription and the poll."""
        if self._subscription is not None:
            try:
                self._subscription.unsubscribe()
            except Exception as e:
                logger.warning(f"Failed to unsubscribe from change feed: {e}")
            self._subscription = None
        await self._poller.stop()
        self._state = ListenerState.DISCONNECTED
        logger.debug("Cache invalidation listener stopped")

    async def _on_live_event(self, event: InvalidationEvent) -> None:
        self._live_seen.append(event.source_id)
        try:
            await self.handle_event(event)
        except Exception as e:
            logger.error(f"Failed to process invalidation event {event.source_id}: {e}")

    async def handle_event(self, event: InvalidationEvent) -> int:
        """
        Evict everything affected by ``event``, notify views, and pre-warm
        after changes to critical tables.

        Evicting is idempotent: handling the same event twice leaves the
        same end state.

        Returns:
            Number of cache entries evicted
        """
        logger.debug(
            f"Processing cache invalidation event {event.source_id}: "
            f"{event.operation_type} {event.table_name} id={event.affected_row_id}"
        )
        self._processing += 1
        try:
            removed = self._target.invalidate_related_caches(
                event.table_name, event.affected_row_id
            )
            self._broadcaster.publish(InvalidationNotice(
                table_name=event.table_name,
                operation_type=event.operation_type,
                timestamp=self._clock.now(),
            ))

            if self._graph.is_critical(event.table_name):
                try:
                    await self._target.prewarm()
                except Exception as e:
                    logger.error(f"Failed to pre-warm critical caches: {e}")

            self.events_processed += 1
            return removed
        finally:
            self._processing -= 1

    async def reconcile(self) -> int:
        """
        Replay events created after the checkpoint, oldest first.

        A failed feed query is logged and leaves the checkpoint unchanged, so
        the same window is queried again on the next tick. The checkpoint also
        stops short of an event whose replay failed, so it is retried; events
        naming an invalid table are skipped.

        Returns:
            Number of events replayed
        """
        try:
            events = await self._feed.fetch_events_since(self._checkpoint)
        except Exception as e:
            self.reconciliation_failures += 1
            logger.error(f"Failed to check missed invalidation events: {e}")
            return 0

        if not events:
            return 0

        replayed = 0
        done: List[datetime] = []
        failed_at: Optional[datetime] = None
        for event in sorted(events, key=lambda e: e.created_at):
            if event.source_id not in self._live_seen:
                try:
                    await self.handle_event(event)
                    replayed += 1
                except DependencyGraphError as e:
                    # Invalid table name: replaying it again cannot succeed
                    logger.warning(f"Skipping invalid invalidation event {event.source_id}: {e}")
                except Exception as e:
                    logger.error(
                        f"Failed to replay invalidation event {event.source_id}, "
                        f"retrying on next poll: {e}"
                    )
                    failed_at = event.created_at
                    break
            done.append(event.created_at)

        # Never move past a failed event, including its same-instant siblings
        if failed_at is not None:
            done = [t for t in done if t < failed_at]
        if done and max(done) > self._checkpoint:
            self._checkpoint = max(done)

        if replayed:
            logger.info(f"Processed {replayed} missed invalidation events")
        return replayed
