"""
tests/test_services.py — Store Operations
=========================================

Notification and message/bookmark queries against in-memory SQLite,
including the error taxonomy raised on database failures.
"""

from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session

from conftest import (
    ALICE,
    BOB,
    CAROL,
    T0,
    add_conversation,
    add_message,
    add_notification,
)
from swap.database.models import ConversationParticipant, Message, Notification
from swap.errors import StoreReadError, StoreWriteError
from swap.services import message_service, notification_service


@pytest.fixture
def broken_engine():
    """An engine with no tables: every query fails."""
    return create_engine("sqlite://")


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------
class TestNotificationStore:

    def test_fetch_orders_newest_first_and_scopes_to_user(self, db_engine):
        add_notification(db_engine, ALICE, minutes=1, title="old")
        add_notification(db_engine, ALICE, minutes=5, title="new")
        add_notification(db_engine, BOB, minutes=9, title="bob's")

        items = notification_service.fetch_recent_notifications(db_engine, ALICE)

        assert [n.title for n in items] == ["new", "old"]
        assert all(n.user_id == ALICE for n in items)

    def test_fetch_respects_limit(self, db_engine):
        for i in range(60):
            add_notification(db_engine, ALICE, minutes=i)
        items = notification_service.fetch_recent_notifications(db_engine, ALICE)
        assert len(items) == 50
        assert items[0].created_at > items[-1].created_at

    def test_mark_read(self, db_engine):
        nid = add_notification(db_engine, ALICE)
        assert notification_service.mark_notification_read(db_engine, nid) is True
        with Session(db_engine) as session:
            assert session.get(Notification, nid).is_read is True

    def test_mark_read_unknown_id(self, db_engine):
        assert notification_service.mark_notification_read(db_engine, "missing") is False

    def test_mark_all_read_only_touches_users_unread(self, db_engine):
        add_notification(db_engine, ALICE)
        add_notification(db_engine, ALICE)
        add_notification(db_engine, ALICE, is_read=True)
        bob_id = add_notification(db_engine, BOB)

        changed = notification_service.mark_all_notifications_read(db_engine, ALICE)

        assert changed == 2
        with Session(db_engine) as session:
            assert session.get(Notification, bob_id).is_read is False

    def test_create_notification(self, db_engine):
        item = notification_service.create_notification(
            db_engine, ALICE, "listing", "Your listing was saved", related_id="l-1",
        )
        assert item.is_read is False
        assert item.link == "/listing/l-1"
        fetched = notification_service.fetch_recent_notifications(db_engine, ALICE)
        assert [n.id for n in fetched] == [item.id]

    def test_create_rejects_unknown_type(self, db_engine):
        with pytest.raises(ValueError):
            notification_service.create_notification(db_engine, ALICE, "spam", "x")

    def test_read_failure_is_store_read_error(self, broken_engine):
        with pytest.raises(StoreReadError):
            notification_service.fetch_recent_notifications(broken_engine, ALICE)

    def test_write_failure_is_store_write_error(self, broken_engine):
        with pytest.raises(StoreWriteError):
            notification_service.mark_all_notifications_read(broken_engine, ALICE)


# ---------------------------------------------------------------------------
# Bookmarks & messages
# ---------------------------------------------------------------------------
class TestMessageStore:

    def test_participations(self, db_engine):
        c1 = add_conversation(db_engine, {ALICE: T0, BOB: None})
        c2 = add_conversation(db_engine, {ALICE: None, CAROL: None})
        add_conversation(db_engine, {BOB: None, CAROL: None})

        parts = message_service.get_participations(db_engine, ALICE)

        assert {p.conversation_id for p in parts} == {c1, c2}

    def test_count_unread_predicate(self, db_engine):
        t1 = T0
        conv = add_conversation(db_engine, {ALICE: t1, BOB: None})
        add_message(db_engine, conv, BOB, t1 + timedelta(minutes=1))     # unread
        add_message(db_engine, conv, ALICE, t1 + timedelta(minutes=2))   # own
        add_message(db_engine, conv, BOB, t1 - timedelta(minutes=1))     # already read

        assert message_service.count_unread_in_conversation(
            db_engine, conv, ALICE, t1,
        ) == 1

    def test_count_without_watermark_counts_all_non_self(self, db_engine):
        conv = add_conversation(db_engine, {ALICE: None, BOB: None})
        add_message(db_engine, conv, BOB, T0)
        add_message(db_engine, conv, BOB, T0 + timedelta(minutes=1))
        add_message(db_engine, conv, ALICE, T0 + timedelta(minutes=2))

        assert message_service.count_unread_in_conversation(
            db_engine, conv, ALICE, None,
        ) == 2

    def test_mark_conversation_read(self, db_engine):
        conv = add_conversation(db_engine, {ALICE: None, BOB: None})
        add_message(db_engine, conv, BOB, T0)
        read_at = T0 + timedelta(minutes=1)

        assert message_service.mark_conversation_read(db_engine, conv, ALICE, read_at)
        [part] = message_service.get_participations(db_engine, ALICE)
        assert message_service.count_unread_in_conversation(
            db_engine, conv, ALICE, part.last_read_at,
        ) == 0

    def test_mark_conversation_read_non_participant(self, db_engine):
        conv = add_conversation(db_engine, {ALICE: None, BOB: None})
        assert message_service.mark_conversation_read(db_engine, conv, CAROL) is False

    def test_create_and_join_conversation(self, db_engine):
        conv = message_service.create_conversation(db_engine, ALICE, [BOB, ALICE])
        assert message_service.join_conversation(db_engine, conv, CAROL) is True
        assert message_service.join_conversation(db_engine, conv, CAROL) is False

        with Session(db_engine) as session:
            rows = session.scalars(
                select(ConversationParticipant).where(
                    ConversationParticipant.conversation_id == conv
                )
            ).all()
            assert sorted(r.user_id for r in rows) == sorted([ALICE, BOB, CAROL])
            assert [r.user_id for r in rows if r.is_admin] == [ALICE]

    def test_post_message_moves_sender_bookmark(self, db_engine):
        conv = message_service.create_conversation(db_engine, ALICE, [BOB])
        record = message_service.post_message(db_engine, conv, BOB, "is the bike still free?")

        assert record["sender_id"] == BOB
        with Session(db_engine) as session:
            assert session.get(Message, record["id"]) is not None

        by_id = {
            p.conversation_id: p
            for p in message_service.get_participations(db_engine, BOB)
        }
        assert message_service.count_unread_in_conversation(
            db_engine, conv, BOB, by_id[conv].last_read_at,
        ) == 0
        [alice_part] = message_service.get_participations(db_engine, ALICE)
        assert message_service.count_unread_in_conversation(
            db_engine, conv, ALICE, alice_part.last_read_at,
        ) == 1

    def test_post_empty_message_rejected(self, db_engine):
        conv = message_service.create_conversation(db_engine, ALICE, [BOB])
        with pytest.raises(ValueError):
            message_service.post_message(db_engine, conv, ALICE, "   ")

    def test_read_failure_is_store_read_error(self, broken_engine):
        with pytest.raises(StoreReadError):
            message_service.get_participations(broken_engine, ALICE)
        with pytest.raises(StoreReadError):
            message_service.count_unread_in_conversation(broken_engine, "c", ALICE)
