"""
swap.database.engine — Database Connection & Async Helper
=========================================================

The inbox subsystems live on an ``asyncio`` event loop, while SQLAlchemy +
psycopg2 is synchronous.  Every store call is therefore a plain sync
function shipped to a worker thread with :func:`run_db`::

    1. NotificationFeed.fetch_all() awaits run_db(fetch_recent_notifications, …)
    2. run_db hands the function to asyncio.to_thread()
    3. the query runs on the default ThreadPoolExecutor
    4. the result is awaited back on the loop, which never blocks

Usage::

    from swap.database.engine import create_db_engine, init_db, run_db

    engine = create_db_engine()          # reads DATABASE_URL from .env
    init_db(engine)                      # CREATE TABLE IF NOT EXISTS …

    rows = await run_db(fetch_recent_notifications, engine, user_id)
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Callable
from contextlib import contextmanager
from typing import ParamSpec, TypeVar

from sqlalchemy import Engine, create_engine, text
from sqlalchemy.orm import Session

from swap.database.models import Base

logger = logging.getLogger(__name__)

P = ParamSpec("P")
T = TypeVar("T")

# Tables whose inserts are broadcast on the change feed.
FEED_TABLES: tuple[str, ...] = ("notifications", "messages")

# PG channel carrying row-insert payloads
CHANGE_CHANNEL = "swap_changes"

CHANGE_TRIGGER_FUNCTION_SQL = f"""
CREATE OR REPLACE FUNCTION swap_notify_insert() RETURNS trigger AS $$
BEGIN
    PERFORM pg_notify(
        '{CHANGE_CHANNEL}',
        json_build_object(
            'table', TG_TABLE_NAME,
            'type', TG_OP,
            'record', row_to_json(NEW)
        )::text
    );
    RETURN NEW;
END;
$$ LANGUAGE plpgsql;
"""


def change_trigger_sql(table: str) -> list[str]:
    """Statements (re)creating the AFTER INSERT trigger on *table*."""
    if table not in FEED_TABLES:
        raise ValueError(f"Invalid table for change trigger: '{table}'")
    name = f"trg_{table}_notify_insert"
    return [
        f"DROP TRIGGER IF EXISTS {name} ON {table}",
        f"CREATE TRIGGER {name} AFTER INSERT ON {table} "
        "FOR EACH ROW EXECUTE FUNCTION swap_notify_insert()",
    ]


# ---------------------------------------------------------------------------
# Engine creation
# ---------------------------------------------------------------------------
def create_db_engine() -> Engine:
    """Build a SQLAlchemy :class:`Engine` from the ``DATABASE_URL`` env var.

    Pool sizing matches a single inbox process serving a handful of
    concurrent scopes: five persistent connections plus ten overflow,
    failing after 10 s instead of hanging.

    Raises
    ------
    RuntimeError
        If ``DATABASE_URL`` is not set.
    """
    url = os.getenv("DATABASE_URL")
    if not url:
        raise RuntimeError(
            "DATABASE_URL is not set.  "
            "Copy .env.example → .env and set a valid PostgreSQL URL."
        )

    engine = create_engine(
        url,
        echo=False,        # Set True for SQL debugging
        pool_size=5,
        max_overflow=10,
        pool_pre_ping=True,
        pool_timeout=10,
        pool_recycle=3600,
    )
    logger.info("Database engine created → %s", engine.url.host)
    return engine


# ---------------------------------------------------------------------------
# Schema initialization
# ---------------------------------------------------------------------------
def init_db(engine: Engine) -> None:
    """Create all tables defined in :mod:`swap.database.models`.

    Safe to call on every startup.  On PostgreSQL the row-insert triggers
    feeding :class:`~swap.engine.feed.ChangeFeed` are (re)installed too.

    .. note::

        In production the schema is managed by Alembic (``alembic upgrade
        head``).  ``create_all`` is retained for dev/test environments.
    """
    Base.metadata.create_all(engine)
    logger.info("Database tables verified / created.")

    if engine.dialect.name == "postgresql":
        install_change_triggers(engine)


def install_change_triggers(engine: Engine) -> None:
    """Install the ``pg_notify`` insert triggers on every feed table."""
    with engine.begin() as conn:
        conn.execute(text(CHANGE_TRIGGER_FUNCTION_SQL))
        for table in FEED_TABLES:
            for stmt in change_trigger_sql(table):
                conn.execute(text(stmt))
    logger.info("Change triggers installed on %s", ", ".join(FEED_TABLES))


# ---------------------------------------------------------------------------
# Session helper
# ---------------------------------------------------------------------------
@contextmanager
def get_session(engine: Engine):
    """Yield a :class:`Session` that auto-commits on success and rolls back
    on exception.

    Usage::

        with get_session(engine) as session:
            session.add(Notification(user_id=uid, title="Welcome"))
            # commit happens automatically on block exit
    """
    session = Session(engine)
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


# ---------------------------------------------------------------------------
# Async bridge
# ---------------------------------------------------------------------------
async def run_db(func: Callable[P, T], *args: P.args, **kwargs: P.kwargs) -> T:
    """Run a **synchronous** database function on a background thread.

    Every store call made by the inbox subsystems goes through here::

        count = await run_db(count_unread_in_conversation, engine, conv_id, uid, ts)

    Under the hood it calls :func:`asyncio.to_thread`, so the event loop is
    never blocked by a query.
    """
    return await asyncio.to_thread(func, *args, **kwargs)
