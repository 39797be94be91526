"""
swap.engine.notification_feed — Notification Bell Cache
=======================================================

Keeps the newest notifications of one user plus an unread counter, fed by
three inputs:

1. ``fetch_all()``     — full resync from the store (replaces the cache)
2. change-feed inserts — prepended to the cache as they arrive
3. ``mark_as_read()`` / ``mark_all_as_read()`` — persisted first, applied
   locally only once the store accepted the write

After every operation settles ``unread_count`` equals the number of cached
items with ``is_read == False``.

Lifecycle::

    feed = NotificationFeed(engine, change_feed)
    await feed.start(user_id)        # subscribe, then resync
    ...
    feed.stop()                      # synchronous teardown
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from swap.constants import DEFAULT_BADGE_CAP, badge_label
from swap.database.engine import run_db
from swap.engine.events import ChangeEvent, NotificationInserted, NotificationItem
from swap.errors import StoreReadError, StoreWriteError, SubscriptionError
from swap.services.notification_service import (
    DEFAULT_FETCH_LIMIT,
    fetch_recent_notifications,
    mark_all_notifications_read,
    mark_notification_read,
)

if TYPE_CHECKING:
    from sqlalchemy import Engine

    from swap.engine.feed import ChangeFeed, Subscription

logger = logging.getLogger(__name__)


class NotificationFeed:
    """Per-user notification cache for the bell icon."""

    def __init__(
        self,
        engine: Engine,
        feed: ChangeFeed,
        fetch_limit: int = DEFAULT_FETCH_LIMIT,
        badge_cap: int = DEFAULT_BADGE_CAP,
    ) -> None:
        self._engine = engine
        self._feed = feed
        self._fetch_limit = fetch_limit
        self._badge_cap = badge_cap

        self._user_id: str | None = None
        self._items: list[NotificationItem] = []
        self._unread_count = 0
        self._loading = False

        self._subscription: Subscription | None = None
        self._consumer: asyncio.Task | None = None
        # Bumped on every teardown; results from an older scope are dropped.
        self._generation = 0

    # -------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------
    @property
    def user_id(self) -> str | None:
        return self._user_id

    @property
    def notifications(self) -> list[NotificationItem]:
        return list(self._items)

    @property
    def unread_count(self) -> int:
        return self._unread_count

    @property
    def loading(self) -> bool:
        return self._loading

    @property
    def badge(self) -> str:
        return badge_label(self._unread_count, self._badge_cap)

    @property
    def subscribed(self) -> bool:
        return self._subscription is not None and self._subscription.active

    # -------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------
    async def start(self, user_id: str | None) -> None:
        """Begin a scope for *user_id* (``None`` = logged out).

        The subscription is opened before the resync so inserts racing the
        fetch are buffered and merged afterwards instead of lost.
        """
        self.stop()
        self._user_id = user_id
        if user_id is None:
            return

        generation = self._generation
        self._loading = True

        sub = self._feed.subscribe("notifications", "user_id", user_id)
        try:
            sub.start()
            self._subscription = sub
        except SubscriptionError:
            logger.warning(
                "No realtime notifications for user %s; showing fetched state only",
                user_id, exc_info=True,
            )

        await self.fetch_all()
        if generation != self._generation or self._subscription is None:
            return

        self._consumer = asyncio.create_task(
            self._consume(self._subscription, generation),
            name=f"notifications-{user_id}",
        )
        logger.info(
            "Notification feed started for %s: %d cached, %d unread",
            user_id, len(self._items), self._unread_count,
        )

    def stop(self) -> None:
        """Tear the scope down: close the subscription and clear the cache."""
        self._generation += 1
        if self._consumer is not None:
            self._consumer.cancel()
            self._consumer = None
        if self._subscription is not None:
            self._subscription.stop()
            self._subscription = None
        self._items = []
        self._unread_count = 0
        self._loading = False

    async def on_identity_change(self, user_id: str | None) -> None:
        await self.start(user_id)

    async def settle(self) -> None:
        """Wait until every change event delivered so far has been applied."""
        if self._subscription is not None:
            await self._subscription.join()

    async def _consume(self, sub: Subscription, generation: int) -> None:
        while True:
            event = await sub.get()
            try:
                if generation == self._generation:
                    self.apply(event)
            except Exception:
                logger.exception("Failed to apply change event %r", event)
            finally:
                sub.task_done()

    # -------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------
    async def fetch_all(self) -> None:
        """Replace the cache with the newest notifications from the store.

        Store failures degrade to an empty cache.
        """
        generation = self._generation
        user_id = self._user_id
        if user_id is None:
            self._items = []
            self._unread_count = 0
            self._loading = False
            return

        try:
            items = await run_db(
                fetch_recent_notifications, self._engine, user_id, self._fetch_limit,
            )
        except StoreReadError:
            logger.exception("Notification fetch failed for user %s", user_id)
            items = []

        if generation != self._generation:
            logger.debug("Discarding notification fetch for torn-down scope %s", user_id)
            return

        self._items = list(items)
        self._unread_count = sum(1 for n in self._items if not n.is_read)
        self._loading = False

    async def refetch(self) -> None:
        await self.fetch_all()

    async def mark_as_read(self, notification_id: str) -> bool:
        """Acknowledge one cached notification.  Returns True once persisted."""
        generation = self._generation
        if self._find(notification_id) is None:
            logger.warning(
                "mark_as_read: notification %s is not in the cache", notification_id,
            )
            return False

        try:
            await run_db(mark_notification_read, self._engine, notification_id)
        except StoreWriteError:
            logger.exception("Could not mark notification %s read", notification_id)
            return False

        if generation != self._generation:
            return False

        idx = self._find(notification_id)
        if idx is not None and not self._items[idx].is_read:
            self._items[idx] = self._items[idx].as_read()
            self._unread_count = max(0, self._unread_count - 1)
        return True

    async def mark_all_as_read(self) -> bool:
        """Acknowledge every unread notification of the user in one batch."""
        generation = self._generation
        user_id = self._user_id
        if user_id is None:
            return False

        try:
            changed = await run_db(mark_all_notifications_read, self._engine, user_id)
        except StoreWriteError:
            logger.exception("Could not mark all notifications read for %s", user_id)
            return False

        if generation != self._generation:
            return False

        self._items = [n if n.is_read else n.as_read() for n in self._items]
        self._unread_count = 0
        logger.debug("Marked %d notifications read for %s", changed, user_id)
        return True

    def apply(self, event: ChangeEvent) -> bool:
        """Merge one change event into the cache.  Returns True if it changed."""
        if not isinstance(event, NotificationInserted):
            return False
        item = event.notification
        if item.user_id != self._user_id:
            return False
        # Already fetched in the resync that raced this insert.
        if self._find(item.id) is not None:
            return False

        self._items.insert(0, item)
        if not item.is_read:
            self._unread_count += 1
        return True

    def _find(self, notification_id: str) -> int | None:
        for idx, item in enumerate(self._items):
            if item.id == notification_id:
                return idx
        return None
