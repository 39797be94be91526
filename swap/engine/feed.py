"""
swap.engine.feed — Realtime Change Feed over PG LISTEN/NOTIFY
=============================================================

Row inserts on the feed tables fire ``pg_notify('swap_changes', …)`` from a
trigger (see :func:`swap.database.engine.install_change_triggers`).  A single
:class:`ChangeFeed` per process LISTENs on that channel from a background
thread and routes each row to the :class:`Subscription` objects whose table
and equality filter match.

Subscriptions never expose callbacks: each one owns an ``asyncio.Queue`` on
the subscriber's event loop and the listener thread hands events over with
``call_soon_threadsafe``.

Usage::

    feed = ChangeFeed(engine)
    feed.start_listener()

    sub = feed.subscribe("notifications", "user_id", user_id)
    sub.start()
    event = await sub.get()          # NotificationInserted
    sub.task_done()
    sub.stop()
"""

from __future__ import annotations

import asyncio
import json
import logging
import random
import select as _select
import threading
from typing import TYPE_CHECKING, Any

from swap.database.engine import CHANGE_CHANNEL, FEED_TABLES
from swap.engine.events import ChangeEvent, parse_change
from swap.errors import SubscriptionError

if TYPE_CHECKING:
    from sqlalchemy import Engine

logger = logging.getLogger(__name__)

DEFAULT_MAX_RECONNECTS = 10


class Subscription:
    """One consumer's view of the change feed for one table.

    Events that arrive between :meth:`start` and the first :meth:`get` are
    buffered in the queue, never dropped.
    """

    def __init__(
        self,
        feed: ChangeFeed,
        table: str,
        column: str | None = None,
        value: Any = None,
    ) -> None:
        self._feed = feed
        self.table = table
        self.column = column
        self.value = value
        self.queue: asyncio.Queue[ChangeEvent] = asyncio.Queue()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._active = False

    def __repr__(self) -> str:
        flt = f" {self.column}=eq.{self.value}" if self.column else ""
        return f"<Subscription {self.table}{flt} active={self._active}>"

    @property
    def active(self) -> bool:
        return self._active

    def start(self) -> None:
        """Attach to the feed.  Must be called from the consuming event loop.

        Raises
        ------
        SubscriptionError
            If the feed listener has permanently failed.
        """
        if self._active:
            return
        if self._feed.listener_failed:
            raise SubscriptionError(
                f"Change feed listener is down; cannot subscribe to {self.table}"
            )
        self._loop = asyncio.get_running_loop()
        self._feed._attach(self)
        self._active = True
        logger.debug("Subscribed %r", self)

    def stop(self) -> None:
        """Detach from the feed.  Buffered events are discarded."""
        if not self._active:
            return
        self._feed._detach(self)
        self._active = False
        while not self.queue.empty():
            self.queue.get_nowait()
            self.queue.task_done()
        logger.debug("Unsubscribed %r", self)

    def matches(self, table: str, record: dict[str, Any]) -> bool:
        if table != self.table:
            return False
        if self.column is None:
            return True
        return str(record.get(self.column)) == str(self.value)

    def deliver(self, event: ChangeEvent) -> None:
        """Enqueue *event* on the subscriber's loop from any thread."""
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            self.queue.put_nowait(event)
        else:
            loop.call_soon_threadsafe(self.queue.put_nowait, event)

    async def get(self) -> ChangeEvent:
        return await self.queue.get()

    def task_done(self) -> None:
        self.queue.task_done()

    async def join(self) -> None:
        """Wait until every delivered event has been processed."""
        await self.queue.join()


class ChangeFeed:
    """Process-wide router from PG NOTIFY payloads to subscriptions."""

    def __init__(
        self, engine: Engine | None = None, max_reconnects: int = DEFAULT_MAX_RECONNECTS,
    ) -> None:
        self._engine = engine
        self._max_reconnects = max_reconnects
        self._lock = threading.Lock()
        self._subscriptions: list[Subscription] = []

        self._listener_healthy: bool = False
        self._listener_failed: bool = False
        self._listener_thread: threading.Thread | None = None
        self._shutdown_event = threading.Event()

    # -------------------------------------------------------------------
    # Subscriptions
    # -------------------------------------------------------------------
    def subscribe(
        self, table: str, column: str | None = None, value: Any = None,
    ) -> Subscription:
        """Create (but do not start) a subscription on *table*.

        Raises
        ------
        ValueError
            If *table* is not broadcast on the feed.
        """
        if table not in FEED_TABLES:
            raise ValueError(
                f"Invalid table for subscription: '{table}'. "
                f"Allowed: {sorted(FEED_TABLES)}"
            )
        return Subscription(self, table, column, value)

    def _attach(self, sub: Subscription) -> None:
        with self._lock:
            self._subscriptions.append(sub)

    def _detach(self, sub: Subscription) -> None:
        with self._lock:
            if sub in self._subscriptions:
                self._subscriptions.remove(sub)

    @property
    def subscription_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    # -------------------------------------------------------------------
    # Dispatch
    # -------------------------------------------------------------------
    def publish(self, table: str, record: dict[str, Any]) -> int:
        """Route one inserted row to every matching subscription.

        Returns the number of subscriptions it was delivered to.
        """
        with self._lock:
            targets = [s for s in self._subscriptions if s.matches(table, record)]
        if not targets:
            return 0
        try:
            event = parse_change(table, record)
        except (KeyError, ValueError):
            logger.warning("Malformed %s row on change feed: %s", table, record)
            return 0
        for sub in targets:
            sub.deliver(event)
        return len(targets)

    def handle_notify(self, raw_payload: str) -> None:
        """Parse a ``swap_changes`` payload and publish its row."""
        try:
            data = json.loads(raw_payload)
        except (json.JSONDecodeError, TypeError):
            logger.warning("Invalid change payload (not JSON): %s", raw_payload)
            return

        table = data.get("table")
        record = data.get("record")
        if data.get("type", "INSERT") != "INSERT":
            logger.debug("Ignoring %s change on %s", data.get("type"), table)
            return
        if table not in FEED_TABLES or not isinstance(record, dict):
            logger.warning("Unexpected change payload: %s", raw_payload)
            return
        self.publish(table, record)

    # -------------------------------------------------------------------
    # LISTEN thread
    # -------------------------------------------------------------------
    @property
    def listener_healthy(self) -> bool:
        """Return True if the LISTEN thread is alive and connected."""
        return self._listener_healthy and not self._listener_failed

    @property
    def listener_failed(self) -> bool:
        """Return True if the listener exhausted reconnect attempts."""
        return self._listener_failed

    def stop_listener(self) -> None:
        """Signal the listener thread to stop and wait for it to exit."""
        self._shutdown_event.set()
        if self._listener_thread is not None and self._listener_thread.is_alive():
            self._listener_thread.join(timeout=5)
            logger.info("Change feed listener thread stopped")

    def start_listener(self) -> None:
        """Start a background thread that LISTENs on the change channel.

        Uses a raw psycopg2 connection + select() so the asyncio loop is
        never blocked.  Reconnects with exponential backoff + jitter; after
        ``max_reconnects`` consecutive failures the feed is marked failed and
        new subscriptions raise :class:`SubscriptionError`.
        """
        import psycopg2

        if self._engine is None:
            raise RuntimeError("ChangeFeed needs an engine to LISTEN")

        max_backoff = 60.0
        base_backoff = 1.0
        max_reconnect_attempts = self._max_reconnects

        def _listen_thread() -> None:
            # str(engine.url) masks the password; psycopg2 needs the real one.
            raw_url = self._engine.url.render_as_string(hide_password=False)
            dsn = raw_url.replace("postgresql+psycopg2://", "postgresql://")
            attempt = 0

            while not self._shutdown_event.is_set():
                conn = None
                try:
                    conn = psycopg2.connect(dsn)
                    conn.set_isolation_level(0)  # autocommit
                    cur = conn.cursor()
                    cur.execute(f"LISTEN {CHANGE_CHANNEL};")
                    logger.info("PG LISTEN started on channel '%s'", CHANGE_CHANNEL)

                    attempt = 0
                    self._listener_healthy = True

                    while not self._shutdown_event.is_set():
                        if _select.select([conn], [], [], 5.0) == ([], [], []):
                            continue
                        conn.poll()
                        while conn.notifies:
                            notify = conn.notifies.pop(0)
                            payload = notify.payload or ""
                            logger.debug("NOTIFY received: %s", payload)
                            try:
                                self.handle_notify(payload)
                            except Exception:
                                logger.exception("Error handling NOTIFY: %s", payload)

                except Exception:
                    self._listener_healthy = False
                    attempt += 1

                    if attempt >= max_reconnect_attempts:
                        logger.critical(
                            "PG LISTEN exhausted %d retries. "
                            "Realtime inbox updates disabled.",
                            max_reconnect_attempts,
                        )
                        self._listener_failed = True
                        break

                    backoff = min(base_backoff * (2 ** (attempt - 1)), max_backoff)
                    wait = backoff + random.uniform(0, backoff * 0.5)
                    logger.exception(
                        "PG LISTEN connection lost (attempt %d/%d). "
                        "Reconnecting in %.1fs…",
                        attempt, max_reconnect_attempts, wait,
                    )
                    if self._shutdown_event.wait(timeout=wait):
                        break
                finally:
                    if conn is not None:
                        try:
                            conn.close()
                        except Exception:
                            logger.debug("Closing LISTEN connection failed", exc_info=True)

        thread = threading.Thread(
            target=_listen_thread, daemon=True, name="swap-change-listener",
        )
        self._listener_thread = thread
        thread.start()
        logger.info("Change feed listener thread started")
