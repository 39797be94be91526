"""
swap.engine.events — Change-Feed Events and Cached Notification Items
=====================================================================

Every row-insert broadcast on the change feed is normalized into one of two
typed events before a subsystem sees it:

- :class:`NotificationInserted` — a new row in ``notifications``
- :class:`MessageInserted`      — a new row in ``messages``

:class:`NotificationItem` is the immutable value held in the notification
cache; acknowledging an item replaces it with a read copy.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, replace
from datetime import datetime
from typing import Any

from swap.constants import notification_link

__all__ = [
    "ChangeEvent",
    "MessageInserted",
    "NotificationInserted",
    "NotificationItem",
    "parse_change",
    "parse_timestamp",
]


def parse_timestamp(value: Any) -> datetime:
    """Accept a datetime or the ISO-8601 string PG's ``row_to_json`` emits."""
    if isinstance(value, datetime):
        return value
    if isinstance(value, str):
        return datetime.fromisoformat(value)
    raise ValueError(f"Not a timestamp: {value!r}")


# ---------------------------------------------------------------------------
# NotificationItem — one cached notification
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class NotificationItem:
    id: str
    user_id: str
    type: str
    title: str
    created_at: datetime
    body: str | None = None
    related_id: str | None = None
    is_read: bool = False

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> NotificationItem:
        """Build an item from a plain row dict (change-feed payload)."""
        return cls(
            id=str(record["id"]),
            user_id=str(record["user_id"]),
            type=record.get("type") or "system",
            title=record["title"],
            created_at=parse_timestamp(record["created_at"]),
            body=record.get("body"),
            related_id=record.get("related_id"),
            is_read=bool(record.get("is_read", False)),
        )

    def as_read(self) -> NotificationItem:
        return replace(self, is_read=True)

    @property
    def link(self) -> str:
        return notification_link(self.type, self.related_id)

    def to_record(self) -> dict[str, Any]:
        """Row dict shaped like a ``notifications`` change-feed payload."""
        record = asdict(self)
        record["created_at"] = self.created_at.isoformat()
        return record


# ---------------------------------------------------------------------------
# Change events
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class NotificationInserted:
    notification: NotificationItem

    table = "notifications"


@dataclass(frozen=True, slots=True)
class MessageInserted:
    id: str
    conversation_id: str
    sender_id: str
    created_at: datetime

    table = "messages"


ChangeEvent = NotificationInserted | MessageInserted


def parse_change(table: str, record: dict[str, Any]) -> ChangeEvent:
    """Turn a raw ``(table, row)`` pair into a typed event.

    Raises
    ------
    ValueError
        If *table* is not a feed table.
    KeyError
        If the row lacks a required column.
    """
    if table == "notifications":
        return NotificationInserted(NotificationItem.from_record(record))
    if table == "messages":
        return MessageInserted(
            id=str(record["id"]),
            conversation_id=str(record["conversation_id"]),
            sender_id=str(record["sender_id"]),
            created_at=parse_timestamp(record["created_at"]),
        )
    raise ValueError(f"No change event for table '{table}'")
