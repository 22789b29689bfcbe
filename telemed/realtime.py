# telemed/realtime.py - In-process change feed
"""Publish/subscribe of committed row changes.

CRUD helpers record a `ChangeEvent` on the session; the events are published
once the session commits and thrown away if it rolls back. Subscribers are
called synchronously and are expected to re-run their whole query.
"""
import logging
import threading
from collections import defaultdict
from typing import Callable, Dict, List, NamedTuple, Optional, Union

from sqlalchemy import event
from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)

PENDING_CHANGES_KEY = "telemed.pending_changes"
FEED_KEY = "telemed.change_feed"


class ChangeEvent(NamedTuple):
    table: str
    event: str  # INSERT, UPDATE, DELETE
    record_id: Optional[Union[int, str]]


class Subscription:
    """Handle returned by `ChangeFeed.subscribe`."""

    def __init__(self, feed: "ChangeFeed", table: str, callback: Callable[[ChangeEvent], None]):
        self.feed = feed
        self.table = table
        self.callback = callback
        self.active = True

    def unsubscribe(self) -> None:
        if self.active:
            self.feed._remove(self)
            self.active = False


class ChangeFeed:
    def __init__(self):
        self._subscribers: Dict[str, List[Subscription]] = defaultdict(list)
        self._lock = threading.Lock()

    def subscribe(self, table: str, callback: Callable[[ChangeEvent], None]) -> Subscription:
        subscription = Subscription(self, table, callback)
        with self._lock:
            self._subscribers[table].append(subscription)
        logger.debug(f"Subscribed to changes on '{table}'")
        return subscription

    def _remove(self, subscription: Subscription) -> None:
        with self._lock:
            subs = self._subscribers.get(subscription.table, [])
            if subscription in subs:
                subs.remove(subscription)

    def subscriber_count(self, table: str) -> int:
        with self._lock:
            return len(self._subscribers.get(table, []))

    def publish(self, change: ChangeEvent) -> None:
        with self._lock:
            targets = list(self._subscribers.get(change.table, []))
        for subscription in targets:
            try:
                subscription.callback(change)
            except Exception as e:
                # One failing subscriber must not starve the others
                logger.error(f"Subscriber on '{change.table}' failed for {change.event} {change.record_id}: {e}")


# Process-wide feed used when a session has none bound
change_feed = ChangeFeed()


def bind_feed(db: Session, feed: ChangeFeed) -> None:
    db.info[FEED_KEY] = feed


def record_change(db: Session, table: str, event_type: str, record_id=None) -> None:
    db.info.setdefault(PENDING_CHANGES_KEY, []).append(ChangeEvent(table, event_type, record_id))


@event.listens_for(Session, "after_commit")
def _publish_pending_changes(session: Session):
    pending = session.info.pop(PENDING_CHANGES_KEY, [])
    if not pending:
        return
    feed = session.info.get(FEED_KEY, change_feed)
    for change in pending:
        feed.publish(change)


@event.listens_for(Session, "after_rollback")
def _discard_pending_changes(session: Session):
    session.info.pop(PENDING_CHANGES_KEY, None)
