"""
swap.services.notification_service — Notification Store Operations
==================================================================

Synchronous reads and writes against the ``notifications`` table.  Callers
on the event loop go through :func:`~swap.database.engine.run_db`.

Any ``SQLAlchemyError`` is re-raised as :class:`~swap.errors.StoreReadError`
or :class:`~swap.errors.StoreWriteError` so callers handle one taxonomy.
"""

from __future__ import annotations

import logging

from sqlalchemy import Engine, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from swap.database.engine import get_session
from swap.database.models import Notification, NotificationType
from swap.engine.events import NotificationItem
from swap.errors import StoreReadError, StoreWriteError

logger = logging.getLogger(__name__)

DEFAULT_FETCH_LIMIT = 50


def _to_item(row: Notification) -> NotificationItem:
    return NotificationItem(
        id=row.id,
        user_id=row.user_id,
        type=row.type,
        title=row.title,
        created_at=row.created_at,
        body=row.body,
        related_id=row.related_id,
        is_read=row.is_read,
    )


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------
def fetch_recent_notifications(
    engine: Engine, user_id: str, limit: int = DEFAULT_FETCH_LIMIT,
) -> list[NotificationItem]:
    """Return the user's *limit* newest notifications, newest first."""
    try:
        with Session(engine) as session:
            rows = session.scalars(
                select(Notification)
                .where(Notification.user_id == user_id)
                .order_by(Notification.created_at.desc())
                .limit(limit)
            ).all()
            return [_to_item(r) for r in rows]
    except SQLAlchemyError as exc:
        raise StoreReadError(f"Fetching notifications for {user_id} failed") from exc


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------
def mark_notification_read(engine: Engine, notification_id: str) -> bool:
    """Set ``is_read`` on one notification.  Returns False if no row matched."""
    try:
        with get_session(engine) as session:
            result = session.execute(
                update(Notification)
                .where(Notification.id == notification_id)
                .values(is_read=True)
            )
            return result.rowcount > 0
    except SQLAlchemyError as exc:
        raise StoreWriteError(
            f"Marking notification {notification_id} read failed"
        ) from exc


def mark_all_notifications_read(engine: Engine, user_id: str) -> int:
    """Batch-acknowledge every unread notification of *user_id*.

    Returns the number of rows changed.
    """
    try:
        with get_session(engine) as session:
            result = session.execute(
                update(Notification)
                .where(
                    Notification.user_id == user_id,
                    Notification.is_read.is_(False),
                )
                .values(is_read=True)
            )
            return result.rowcount
    except SQLAlchemyError as exc:
        raise StoreWriteError(
            f"Marking all notifications read for {user_id} failed"
        ) from exc


def create_notification(
    engine: Engine,
    user_id: str,
    notification_type: NotificationType | str,
    title: str,
    body: str | None = None,
    related_id: str | None = None,
) -> NotificationItem:
    """Insert a new unread notification and return it.

    On PostgreSQL the insert trigger broadcasts the row on the change feed;
    elsewhere the caller publishes ``item.to_record()`` itself.
    """
    notification_type = NotificationType(notification_type)
    if not title:
        raise ValueError("Notification title is required")
    try:
        with get_session(engine) as session:
            row = Notification(
                user_id=user_id,
                type=notification_type.value,
                title=title,
                body=body,
                related_id=related_id,
                is_read=False,
            )
            session.add(row)
            session.flush()
            item = _to_item(row)
    except SQLAlchemyError as exc:
        raise StoreWriteError(f"Creating notification for {user_id} failed") from exc

    logger.info(
        "Notification %s (%s) created for user %s",
        item.id, item.type, user_id,
    )
    return item
