"""In-process change feed delivering committed writes to subscribers."""

import inspect
import itertools
import logging
from typing import Any

from tasklink.core.repository import ChangeEvent, ChangeType, OnChange, matches_filters


logger = logging.getLogger(__name__)


class FeedSubscription:
    """Subscription handle bound to a ChangeFeed."""

    def __init__(self, feed: "ChangeFeed", subscription_id: int) -> None:
        self._feed = feed
        self._id = subscription_id

    def unsubscribe(self) -> None:
        self._feed.remove(self._id)


class ChangeFeed:
    """Fan committed repository writes out to registered subscribers.

    Callbacks may be plain functions or coroutines. A failing callback is
    logged and skipped; it never fails the write that produced the event.
    """

    def __init__(self) -> None:
        self._subscribers: dict[int, tuple[str, dict[str, Any] | None, OnChange]] = {}
        self._ids = itertools.count(1)

    def add(self, table: str, filters: dict[str, Any] | None, on_change: OnChange) -> FeedSubscription:
        subscription_id = next(self._ids)
        self._subscribers[subscription_id] = (table, dict(filters) if filters else None, on_change)
        logger.debug("Subscribed to %s (id=%d, filters=%s)", table, subscription_id, filters)
        return FeedSubscription(self, subscription_id)

    def remove(self, subscription_id: int) -> None:
        if self._subscribers.pop(subscription_id, None) is not None:
            logger.debug("Unsubscribed id=%d", subscription_id)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    async def publish(self, table: str, change: ChangeType, record: dict[str, Any]) -> None:
        """Deliver a change event to every matching subscriber, in subscription order."""
        event = ChangeEvent(table=table, change=change, record=record)
        for subscription_id, (sub_table, filters, on_change) in list(self._subscribers.items()):
            if sub_table != table or not matches_filters(record, filters):
                continue
            try:
                result = on_change(event.model_copy(deep=True))
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Change subscriber %d failed for %s %s", subscription_id, change, table)
