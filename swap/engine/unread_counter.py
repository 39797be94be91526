"""
swap.engine.unread_counter — Messages Badge Aggregate
=====================================================

Maintains the number of unread messages across every conversation a user
participates in.

- ``refresh()`` recomputes the total from the participant bookmarks: one
  count query per conversation, summed.  A failing query counts as 0.
- ``poll_loop`` re-runs ``refresh()`` every ``unread_poll_seconds`` while a
  user is signed in.
- Message inserts from someone else bump the total immediately; the next
  refresh corrects any drift.

``refresh()`` calls are serialized, so a slow refresh and a timer tick
never interleave.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from discord.ext import tasks

from swap.constants import DEFAULT_BADGE_CAP, badge_label
from swap.database.engine import run_db
from swap.engine.events import ChangeEvent, MessageInserted
from swap.errors import StoreReadError, StoreWriteError, SubscriptionError
from swap.services.message_service import (
    count_unread_in_conversation,
    get_participations,
    mark_conversation_read,
)

if TYPE_CHECKING:
    from sqlalchemy import Engine

    from swap.engine.feed import ChangeFeed, Subscription

logger = logging.getLogger(__name__)

DEFAULT_POLL_SECONDS = 30.0


class UnreadMessageCounter:
    """Per-user unread message total for the messages badge."""

    def __init__(
        self,
        engine: Engine,
        feed: ChangeFeed,
        poll_seconds: float = DEFAULT_POLL_SECONDS,
        badge_cap: int = DEFAULT_BADGE_CAP,
    ) -> None:
        self._engine = engine
        self._feed = feed
        self._poll_seconds = poll_seconds
        self._badge_cap = badge_cap

        self._user_id: str | None = None
        self._count = 0
        # Conversation ids seen on the last successful refresh (None = unknown)
        self._conversation_ids: set[str] | None = None

        self._refresh_lock = asyncio.Lock()
        self._subscription: Subscription | None = None
        self._consumer: asyncio.Task | None = None
        self._generation = 0

        self.poll_loop.change_interval(seconds=poll_seconds)

    # -------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------
    @property
    def user_id(self) -> str | None:
        return self._user_id

    @property
    def unread_count(self) -> int:
        return self._count

    @property
    def badge(self) -> str:
        return badge_label(self._count, self._badge_cap)

    @property
    def polling(self) -> bool:
        return self.poll_loop.is_running()

    # -------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------
    async def start(self, user_id: str | None) -> None:
        """Begin a scope for *user_id*: subscribe, refresh once, start polling."""
        self.stop()
        generation = self._generation
        previous = self.poll_loop.get_task()
        if previous is not None and not previous.done():
            await asyncio.wait({previous})
            # A newer start() took over while the old loop was unwinding.
            if generation != self._generation:
                return

        self._user_id = user_id
        if user_id is None:
            return

        sub = self._feed.subscribe("messages")
        try:
            sub.start()
            self._subscription = sub
        except SubscriptionError:
            logger.warning(
                "No realtime messages for user %s; relying on polling",
                user_id, exc_info=True,
            )

        await self.refresh()
        if generation != self._generation:
            return

        if self._subscription is not None:
            self._consumer = asyncio.create_task(
                self._consume(self._subscription, generation),
                name=f"unread-messages-{user_id}",
            )
        self.poll_loop.start()
        logger.info("Unread counter started for %s: %d unread", user_id, self._count)

    def stop(self) -> None:
        """Cancel the poll loop, close the subscription and zero the count."""
        self._generation += 1
        self.poll_loop.cancel()
        if self._consumer is not None:
            self._consumer.cancel()
            self._consumer = None
        if self._subscription is not None:
            self._subscription.stop()
            self._subscription = None
        self._count = 0
        self._conversation_ids = None

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
    # Polling
    # -------------------------------------------------------------------
    @tasks.loop(seconds=DEFAULT_POLL_SECONDS)
    async def poll_loop(self):
        """Recompute the total from the store on every tick."""
        try:
            await self.refresh()
        except Exception:
            logger.exception("Unread poll failed", extra={"task": "unread_poll"})

    @poll_loop.before_loop
    async def _wait_first_tick(self):
        # start() already ran the first refresh.
        await asyncio.sleep(self._poll_seconds)

    # -------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------
    async def refresh(self) -> int:
        """Recompute the unread total from bookmarks and return it."""
        async with self._refresh_lock:
            generation = self._generation
            user_id = self._user_id
            if user_id is None:
                self._count = 0
                return 0

            try:
                participations = await run_db(get_participations, self._engine, user_id)
            except StoreReadError:
                logger.exception("Fetching bookmarks failed for user %s", user_id)
                if generation == self._generation:
                    self._count = 0
                return self._count

            if generation != self._generation:
                return self._count

            if not participations:
                self._count = 0
                self._conversation_ids = set()
                return 0

            total = 0
            failed = 0
            for p in participations:
                try:
                    total += await run_db(
                        count_unread_in_conversation,
                        self._engine, p.conversation_id, user_id, p.last_read_at,
                    )
                except StoreReadError:
                    failed += 1
                    logger.warning(
                        "Unread count failed for conversation %s; counting 0",
                        p.conversation_id, exc_info=True,
                    )

            if generation != self._generation:
                return self._count

            self._count = total
            self._conversation_ids = {p.conversation_id for p in participations}
            if failed:
                logger.warning(
                    "Unread refresh for %s: %d/%d conversation counts failed",
                    user_id, failed, len(participations),
                )
            return total

    async def mark_conversation_read(self, conversation_id: str) -> bool:
        """Move the user's bookmark in *conversation_id* to now, then refresh."""
        user_id = self._user_id
        if user_id is None:
            return False
        try:
            updated = await run_db(
                mark_conversation_read, self._engine, conversation_id, user_id,
            )
        except StoreWriteError:
            logger.exception(
                "Could not update bookmark of %s in %s", user_id, conversation_id,
            )
            return False
        if not updated:
            logger.warning("%s is not a participant of %s", user_id, conversation_id)
            return False
        await self.refresh()
        return True

    def apply(self, event: ChangeEvent) -> bool:
        """Fast path for a message insert.  Returns True if the total changed."""
        if not isinstance(event, MessageInserted):
            return False
        if self._user_id is None or event.sender_id == self._user_id:
            return False
        known = self._conversation_ids
        if known is not None and event.conversation_id not in known:
            return False
        self._count += 1
        return True
