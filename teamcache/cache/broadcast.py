"""
Local notification channel for invalidations.

Views subscribe to learn that data they display may have changed and should
be re-requested.
"""
import logging
from typing import Callable, List

from .core import InvalidationNotice

logger = logging.getLogger("cache.broadcast")

Subscriber = Callable[[InvalidationNotice], None]


class InvalidationBroadcaster:
    """Fan-out of InvalidationNotice to in-process subscribers."""

    def __init__(self):
        self._subscribers: List[Subscriber] = []

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """
        Register a subscriber.

        Returns:
            A function that removes the subscription
        """
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def publish(self, notice: InvalidationNotice) -> int:
        """
        Deliver a notice to every subscriber.

        A failing subscriber is logged and does not stop delivery to the rest.

        Returns:
            Number of subscribers that received the notice
        """
        delivered = 0
        for callback in list(self._subscribers):
            try:
                callback(notice)
                delivered += 1
            except Exception as e:
                logger.warning(f"Invalidation subscriber failed for {notice.table_name}: {e}")
        return delivered

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)
