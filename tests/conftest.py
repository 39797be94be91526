"""
tests/conftest.py — Shared Test Fixtures
========================================
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import Session
from sqlalchemy.pool import StaticPool

from swap.database.models import (
    Base,
    Conversation,
    ConversationParticipant,
    Message,
    Notification,
)
from swap.engine.feed import ChangeFeed

ALICE = "00000000-0000-4000-8000-00000000a11c"
BOB = "00000000-0000-4000-8000-000000000b0b"
CAROL = "00000000-0000-4000-8000-0000000ca201"

T0 = datetime(2026, 1, 15, 12, 0, 0, tzinfo=UTC)


@pytest.fixture
def db_engine() -> Engine:
    """Create an in-memory SQLite engine with all SWAP tables.

    Uses StaticPool so the worker threads used by ``run_db`` share the same
    in-memory database.
    """
    engine = create_engine(
        "sqlite://",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return engine


@pytest.fixture
def db_session(db_engine: Engine):
    """Provide a transactional session that rolls back after each test."""
    with Session(db_engine) as session:
        yield session
        session.rollback()


@pytest.fixture
def change_feed() -> ChangeFeed:
    """An in-process change feed (no LISTEN thread)."""
    return ChangeFeed()


def add_notification(
    engine: Engine,
    user_id: str = ALICE,
    *,
    minutes: int = 0,
    is_read: bool = False,
    title: str = "New quest nearby",
    notification_type: str = "quest",
    related_id: str | None = None,
) -> str:
    """Insert a notification created *minutes* after T0 and return its id."""
    with Session(engine) as session:
        row = Notification(
            user_id=user_id,
            type=notification_type,
            title=title,
            related_id=related_id,
            is_read=is_read,
            created_at=T0 + timedelta(minutes=minutes),
        )
        session.add(row)
        session.commit()
        return row.id


def add_conversation(
    engine: Engine,
    members: dict[str, datetime | None],
    created_by: str | None = None,
) -> str:
    """Create a conversation whose participants have the given last_read_at."""
    with Session(engine) as session:
        conv = Conversation(created_by=created_by or next(iter(members)))
        session.add(conv)
        session.flush()
        for uid, last_read_at in members.items():
            session.add(ConversationParticipant(
                conversation_id=conv.id, user_id=uid, last_read_at=last_read_at,
            ))
        session.commit()
        return conv.id


def add_message(
    engine: Engine, conversation_id: str, sender_id: str, created_at: datetime,
) -> str:
    with Session(engine) as session:
        msg = Message(
            conversation_id=conversation_id,
            sender_id=sender_id,
            content="hello",
            created_at=created_at,
        )
        session.add(msg)
        session.commit()
        return msg.id


def notification_record(
    notification_id: str,
    user_id: str = ALICE,
    *,
    minutes: int = 0,
    is_read: bool = False,
) -> dict:
    """A row dict shaped like a change-feed ``notifications`` insert."""
    return {
        "id": notification_id,
        "user_id": user_id,
        "type": "system",
        "title": f"Notification {notification_id}",
        "body": None,
        "related_id": None,
        "is_read": is_read,
        "created_at": (T0 + timedelta(minutes=minutes)).isoformat(),
    }


def message_record(
    conversation_id: str, sender_id: str, *, minutes: int = 0, message_id: str = "m1",
) -> dict:
    return {
        "id": message_id,
        "conversation_id": conversation_id,
        "sender_id": sender_id,
        "content": "hi",
        "created_at": (T0 + timedelta(minutes=minutes)).isoformat(),
    }
