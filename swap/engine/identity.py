"""
swap.engine.identity — Current User Holder
==========================================

The authenticated user id is passed around explicitly rather than read from
ambient state.  Scopes that depend on it register an async listener and are
re-driven on login, logout and account switch.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)

IdentityListener = Callable[[str | None], Awaitable[None]]


class IdentityProvider:
    """Holds ``current_user_id`` and notifies listeners when it changes."""

    def __init__(self, user_id: str | None = None) -> None:
        self._user_id = user_id
        self._listeners: list[IdentityListener] = []

    @property
    def current_user_id(self) -> str | None:
        return self._user_id

    def add_listener(self, listener: IdentityListener) -> Callable[[], None]:
        """Register *listener*; returns a function that unregisters it."""
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    async def set_user(self, user_id: str | None) -> None:
        """Switch identity (``None`` = logged out) and await every listener."""
        if user_id == self._user_id:
            return
        previous, self._user_id = self._user_id, user_id
        logger.info("Identity changed: %s → %s", previous, user_id)
        for listener in list(self._listeners):
            await listener(user_id)
