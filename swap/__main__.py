"""
swap.__main__ — Inbox watcher for ``python -m swap <user_id>``
==============================================================

Developer tool that follows one user's notification bell and messages badge
from a terminal.

Wiring:
1. Load .env (DATABASE_URL).
2. Load config.yaml (tuning values; defaults if absent).
3. Create the SQLAlchemy engine and ensure tables + triggers exist.
4. Start the PG LISTEN/NOTIFY change feed.
5. Open an InboxSession for the given user and log its state every few
   seconds until Ctrl+C.

Run with::

    uv run python -m swap 6f1c2b1e-…
"""

from __future__ import annotations

import asyncio
import logging
import sys

from dotenv import load_dotenv

from swap.config import SwapConfig, load_config
from swap.database.engine import create_db_engine, init_db
from swap.engine.feed import ChangeFeed
from swap.engine.identity import IdentityProvider
from swap.engine.session import InboxSession

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s │ %(levelname)-8s │ %(name)s │ %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("swap")

REPORT_SECONDS = 5


async def watch(user_id: str, cfg: SwapConfig) -> None:
    engine = create_db_engine()
    init_db(engine)

    feed = ChangeFeed(engine, max_reconnects=cfg.listener_max_reconnects)
    feed.start_listener()

    identity = IdentityProvider(user_id)
    try:
        async with InboxSession(engine, feed, identity, cfg) as inbox:
            while True:
                bell = inbox.notifications
                logger.info(
                    "🔔 %s (%d cached) │ ✉️ %s │ feed %s",
                    bell.badge or "0",
                    len(bell.notifications),
                    inbox.unread_messages.badge or "0",
                    "up" if feed.listener_healthy else "down",
                )
                await asyncio.sleep(REPORT_SECONDS)
    finally:
        feed.stop_listener()
        engine.dispose()


def main() -> None:
    """Bootstrap and run the inbox watcher."""
    load_dotenv()

    if len(sys.argv) != 2:
        logger.critical("Usage: python -m swap <user_id>")
        sys.exit(1)

    try:
        cfg = load_config()
    except FileNotFoundError:
        logger.warning("config.yaml not found — using defaults")
        cfg = SwapConfig()

    logger.info("Watching inbox of %s…", sys.argv[1])
    try:
        asyncio.run(watch(sys.argv[1], cfg))
    except KeyboardInterrupt:
        logger.info("Shutting down gracefully…")


if __name__ == "__main__":
    main()
