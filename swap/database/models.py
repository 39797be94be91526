"""
swap.database.models — SQLAlchemy 2.0 Data Models
=================================================

Tables:
- notifications              — Per-user inbox items (bell icon)
- conversations              — Direct, listing and group threads
- conversation_participants  — Membership + last_read_at watermark
- messages                   — Conversation messages
"""

from __future__ import annotations

import enum
import uuid
from datetime import UTC, datetime

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def _new_id() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------
class Base(DeclarativeBase):
    """Shared base for all SWAP ORM models."""


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------
class NotificationType(enum.StrEnum):
    """What a notification is about; decides where it links to."""
    MESSAGE = "message"
    QUEST = "quest"
    LISTING = "listing"
    SAVED_SEARCH = "saved_search"
    SYSTEM = "system"


class ConversationType(enum.StrEnum):
    DIRECT = "direct"
    LISTING = "listing"
    GROUP = "group"


# ---------------------------------------------------------------------------
# Notification — one row per delivered inbox item
# ---------------------------------------------------------------------------
class Notification(Base):
    __tablename__ = "notifications"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String(36), nullable=False)
    type: Mapped[str] = mapped_column(
        String(32), nullable=False, default=NotificationType.SYSTEM
    )
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    body: Mapped[str | None] = mapped_column(Text, default=None)
    related_id: Mapped[str | None] = mapped_column(String(36), default=None)
    is_read: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now()
    )

    __table_args__ = (
        Index("ix_notifications_user_created", "user_id", "created_at"),
        Index("ix_notifications_user_unread", "user_id", "is_read"),
    )

    def __repr__(self) -> str:
        return f"<Notification id={self.id} user={self.user_id} type={self.type}>"


# ---------------------------------------------------------------------------
# Conversation — a thread between two or more participants
# ---------------------------------------------------------------------------
class Conversation(Base):
    __tablename__ = "conversations"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    conversation_type: Mapped[str] = mapped_column(
        String(20), nullable=False, default=ConversationType.DIRECT
    )
    title: Mapped[str | None] = mapped_column(String(200), default=None)
    listing_id: Mapped[str | None] = mapped_column(String(36), default=None)
    created_by: Mapped[str] = mapped_column(String(36), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now(),
        onupdate=_utcnow,
    )

    participants: Mapped[list[ConversationParticipant]] = relationship(
        back_populates="conversation", cascade="all, delete-orphan"
    )
    messages: Mapped[list[Message]] = relationship(
        back_populates="conversation", cascade="all, delete-orphan"
    )

    def __repr__(self) -> str:
        return f"<Conversation id={self.id} type={self.conversation_type}>"


# ---------------------------------------------------------------------------
# ConversationParticipant — membership + read watermark
# ---------------------------------------------------------------------------
class ConversationParticipant(Base):
    """One bookmark per (conversation, user).

    Messages newer than ``last_read_at`` that the user did not send are
    unread.  ``NULL`` means the user has read nothing yet.
    """
    __tablename__ = "conversation_participants"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    conversation_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[str] = mapped_column(String(36), nullable=False)
    is_admin: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    joined_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now()
    )
    last_read_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), default=None
    )

    conversation: Mapped[Conversation] = relationship(back_populates="participants")

    __table_args__ = (
        UniqueConstraint(
            "conversation_id", "user_id", name="uq_participant_conversation_user"
        ),
        Index("ix_participants_user", "user_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<ConversationParticipant conv={self.conversation_id} "
            f"user={self.user_id}>"
        )


# ---------------------------------------------------------------------------
# Message
# ---------------------------------------------------------------------------
class Message(Base):
    __tablename__ = "messages"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    conversation_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False
    )
    sender_id: Mapped[str] = mapped_column(String(36), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    is_deleted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    edited_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), default=None
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now()
    )

    conversation: Mapped[Conversation] = relationship(back_populates="messages")

    __table_args__ = (
        Index("ix_messages_conversation_created", "conversation_id", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<Message id={self.id} conv={self.conversation_id} sender={self.sender_id}>"
