"""In-process change feed.

Data-access functions publish ``insert``/``update`` events after they commit;
dashboards subscribe per table and re-fetch what they show.  Delivery is
synchronous and best effort: there is no queue, no persistence and no
replay for subscribers that attach later.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional
import logging
import threading

logger = logging.getLogger(__name__)

INSERT = "insert"
UPDATE = "update"
DELETE = "delete"


@dataclass(frozen=True)
class ChangeEvent:
    table: str
    event: str
    row_id: Optional[int] = None
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


Callback = Callable[[ChangeEvent], None]


class Subscription:
    def __init__(self, feed: "ChangeFeed", table: str, callback: Callback):
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
        self._lock = threading.Lock()
        self._subscriptions: Dict[str, List[Subscription]] = {}

    def on_change(self, table: str, callback: Callback) -> Subscription:
        subscription = Subscription(self, table, callback)
        with self._lock:
            self._subscriptions.setdefault(table, []).append(subscription)
        return subscription

    def _remove(self, subscription: Subscription) -> None:
        with self._lock:
            subscribers = self._subscriptions.get(subscription.table, [])
            if subscription in subscribers:
                subscribers.remove(subscription)

    def subscriber_count(self, table: str) -> int:
        with self._lock:
            return len(self._subscriptions.get(table, []))

    def publish(self, table: str, event: str, row_id: Optional[int] = None) -> ChangeEvent:
        change = ChangeEvent(table=table, event=event, row_id=row_id)
        with self._lock:
            subscribers = list(self._subscriptions.get(table, []))

        for subscription in subscribers:
            try:
                subscription.callback(change)
            except Exception:
                logger.error("Change feed subscriber failed for %s %s", table, event, exc_info=True)
        return change


class AdminNotifications:
    """Unread counter for new borrow and return requests, kept per admin."""

    TABLES = ("book_requests", "return_requests")

    def __init__(self, feed: ChangeFeed):
        self._lock = threading.Lock()
        self._total = 0
        self._seen: Dict[int, int] = {}
        self.latest: Optional[ChangeEvent] = None
        self._subscriptions = [feed.on_change(table, self._on_change) for table in self.TABLES]

    def _on_change(self, change: ChangeEvent) -> None:
        if change.event != INSERT:
            return
        with self._lock:
            self._total += 1
            self.latest = change
        logger.info("New %s row %s", change.table, change.row_id)

    def unread(self, admin_id: int) -> int:
        with self._lock:
            return self._total - self._seen.get(admin_id, 0)

    def mark_read(self, admin_id: int) -> None:
        with self._lock:
            self._seen[admin_id] = self._total

    def close(self) -> None:
        for subscription in self._subscriptions:
            subscription.unsubscribe()
