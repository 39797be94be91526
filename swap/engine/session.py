"""
swap.engine.session — Inbox Scope
=================================

An :class:`InboxSession` owns the notification bell cache and the messages
badge counter for whoever the :class:`~swap.engine.identity.IdentityProvider`
says is signed in.  On login, logout and account switch both subsystems are
torn down (subscriptions closed, poll loop cancelled, caches cleared) before
the new scope starts, so nothing from one user is visible to the next.

Usage::

    identity = IdentityProvider()
    async with InboxSession(engine, feed, identity, cfg) as inbox:
        await identity.set_user(user_id)
        print(inbox.notifications.unread_count, inbox.unread_messages.badge)
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import TYPE_CHECKING

from swap.config import SwapConfig
from swap.engine.notification_feed import NotificationFeed
from swap.engine.unread_counter import UnreadMessageCounter

if TYPE_CHECKING:
    from sqlalchemy import Engine

    from swap.engine.feed import ChangeFeed
    from swap.engine.identity import IdentityProvider

logger = logging.getLogger(__name__)


class InboxSession:
    """Scope object owning both inbox subsystems for one identity provider."""

    def __init__(
        self,
        engine: Engine,
        feed: ChangeFeed,
        identity: IdentityProvider,
        cfg: SwapConfig | None = None,
    ) -> None:
        cfg = cfg or SwapConfig()
        self._identity = identity
        self._remove_listener: Callable[[], None] | None = None

        self.notifications = NotificationFeed(
            engine,
            feed,
            fetch_limit=cfg.notification_fetch_limit,
            badge_cap=cfg.badge_cap,
        )
        self.unread_messages = UnreadMessageCounter(
            engine,
            feed,
            poll_seconds=cfg.unread_poll_seconds,
            badge_cap=cfg.badge_cap,
        )

    @property
    def user_id(self) -> str | None:
        return self._identity.current_user_id

    async def start(self) -> None:
        """Follow the identity provider and start for the current user."""
        if self._remove_listener is None:
            self._remove_listener = self._identity.add_listener(self.on_identity_change)
        await self.on_identity_change(self._identity.current_user_id)

    async def on_identity_change(self, user_id: str | None) -> None:
        # Both scopes are released before either restarts.
        self.notifications.stop()
        self.unread_messages.stop()
        await self.notifications.start(user_id)
        await self.unread_messages.start(user_id)
        logger.info("Inbox session now scoped to %s", user_id or "<signed out>")

    def close(self) -> None:
        """Release subscriptions, the poll loop and the identity listener."""
        if self._remove_listener is not None:
            self._remove_listener()
            self._remove_listener = None
        self.notifications.stop()
        self.unread_messages.stop()

    async def __aenter__(self) -> InboxSession:
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        poll_task = self.unread_messages.poll_loop.get_task()
        self.close()
        if poll_task is not None and not poll_task.done():
            await asyncio.wait({poll_task})
