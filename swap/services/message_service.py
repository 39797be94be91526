"""
swap.services.message_service — Conversation Bookmarks & Messages
================================================================

Store operations behind the unread-message badge:

- read each conversation bookmark (``last_read_at`` watermark) of a user
- count the messages past a watermark that the user did not send
- move a bookmark forward when the user opens a conversation

plus the producer side (creating conversations, joining them, posting
messages) used by the messaging pages and the test-suite.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import Engine, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from swap.constants import EPOCH
from swap.database.engine import get_session
from swap.database.models import (
    Conversation,
    ConversationParticipant,
    ConversationType,
    Message,
)
from swap.errors import StoreReadError, StoreWriteError

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class Participation:
    """A user's bookmark in one conversation."""

    conversation_id: str
    last_read_at: datetime | None = None

    @property
    def watermark(self) -> datetime:
        return self.last_read_at or EPOCH


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------
def get_participations(engine: Engine, user_id: str) -> list[Participation]:
    """Every conversation bookmark belonging to *user_id*."""
    try:
        with Session(engine) as session:
            rows = session.execute(
                select(
                    ConversationParticipant.conversation_id,
                    ConversationParticipant.last_read_at,
                ).where(ConversationParticipant.user_id == user_id)
            ).all()
            return [Participation(r.conversation_id, r.last_read_at) for r in rows]
    except SQLAlchemyError as exc:
        raise StoreReadError(f"Fetching participations for {user_id} failed") from exc


def count_unread_in_conversation(
    engine: Engine,
    conversation_id: str,
    user_id: str,
    since: datetime | None = None,
) -> int:
    """Count messages in *conversation_id* newer than *since* not sent by *user_id*.

    ``since=None`` means the whole history is unread.
    """
    try:
        with Session(engine) as session:
            return session.scalar(
                select(func.count())
                .select_from(Message)
                .where(
                    Message.conversation_id == conversation_id,
                    Message.sender_id != user_id,
                    Message.created_at > (since or EPOCH),
                )
            ) or 0
    except SQLAlchemyError as exc:
        raise StoreReadError(
            f"Counting unread messages in {conversation_id} failed"
        ) from exc


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------
def mark_conversation_read(
    engine: Engine,
    conversation_id: str,
    user_id: str,
    read_at: datetime | None = None,
) -> bool:
    """Move the user's bookmark in *conversation_id* to *read_at* (default now).

    Returns False when the user is not a participant.
    """
    read_at = read_at or datetime.now(UTC)
    try:
        with get_session(engine) as session:
            result = session.execute(
                update(ConversationParticipant)
                .where(
                    ConversationParticipant.conversation_id == conversation_id,
                    ConversationParticipant.user_id == user_id,
                )
                .values(last_read_at=read_at)
            )
            return result.rowcount > 0
    except SQLAlchemyError as exc:
        raise StoreWriteError(
            f"Updating bookmark of {user_id} in {conversation_id} failed"
        ) from exc


def create_conversation(
    engine: Engine,
    created_by: str,
    participant_ids: list[str],
    conversation_type: ConversationType | str = ConversationType.DIRECT,
    title: str | None = None,
    listing_id: str | None = None,
) -> str:
    """Create a conversation with its creator as admin participant.

    Returns the new conversation id.
    """
    conversation_type = ConversationType(conversation_type)
    members = [created_by] + [p for p in dict.fromkeys(participant_ids) if p != created_by]
    try:
        with get_session(engine) as session:
            conv = Conversation(
                conversation_type=conversation_type.value,
                title=title,
                listing_id=listing_id,
                created_by=created_by,
            )
            session.add(conv)
            session.flush()
            for uid in members:
                session.add(ConversationParticipant(
                    conversation_id=conv.id,
                    user_id=uid,
                    is_admin=(uid == created_by),
                ))
            conv_id = conv.id
    except SQLAlchemyError as exc:
        raise StoreWriteError("Creating conversation failed") from exc

    logger.info(
        "Conversation %s (%s) created with %d participants",
        conv_id, conversation_type.value, len(members),
    )
    return conv_id


def join_conversation(
    engine: Engine, conversation_id: str, user_id: str, is_admin: bool = False,
) -> bool:
    """Add *user_id* to a conversation.  Idempotent.

    Returns True if a bookmark was created, False if one already existed.
    """
    try:
        with get_session(engine) as session:
            existing = session.scalar(
                select(ConversationParticipant.id).where(
                    ConversationParticipant.conversation_id == conversation_id,
                    ConversationParticipant.user_id == user_id,
                )
            )
            if existing is not None:
                return False
            session.add(ConversationParticipant(
                conversation_id=conversation_id,
                user_id=user_id,
                is_admin=is_admin,
            ))
            session.flush()
            return True
    except IntegrityError:
        # Lost a race with a concurrent join; the unique constraint holds.
        return False
    except SQLAlchemyError as exc:
        raise StoreWriteError(
            f"Adding {user_id} to conversation {conversation_id} failed"
        ) from exc


def post_message(
    engine: Engine, conversation_id: str, sender_id: str, content: str,
) -> dict[str, Any]:
    """Insert a message, bump the conversation and return the new row as a dict.

    The sender's own bookmark moves to the message time, so their own
    message never counts as unread for them on another device either.
    """
    if not content or not content.strip():
        raise ValueError("Message content must not be empty")
    try:
        with get_session(engine) as session:
            msg = Message(
                conversation_id=conversation_id,
                sender_id=sender_id,
                content=content,
            )
            session.add(msg)
            session.flush()
            session.execute(
                update(Conversation)
                .where(Conversation.id == conversation_id)
                .values(updated_at=msg.created_at)
            )
            session.execute(
                update(ConversationParticipant)
                .where(
                    ConversationParticipant.conversation_id == conversation_id,
                    ConversationParticipant.user_id == sender_id,
                )
                .values(last_read_at=msg.created_at)
            )
            record = {
                "id": msg.id,
                "conversation_id": msg.conversation_id,
                "sender_id": msg.sender_id,
                "content": msg.content,
                "is_deleted": msg.is_deleted,
                "edited_at": None,
                "created_at": msg.created_at,
            }
    except SQLAlchemyError as exc:
        raise StoreWriteError(f"Posting message to {conversation_id} failed") from exc

    logger.debug("Message %s posted to %s by %s", record["id"], conversation_id, sender_id)
    return record
