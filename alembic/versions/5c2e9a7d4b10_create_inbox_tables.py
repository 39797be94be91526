"""Create inbox tables and change-feed triggers

Revision ID: 5c2e9a7d4b10
Revises:
Create Date: 2026-10-19 09:12:41.208113

"""
from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op
from swap.database.engine import CHANGE_TRIGGER_FUNCTION_SQL, FEED_TABLES, change_trigger_sql

# revision identifiers, used by Alembic.
revision: str = '5c2e9a7d4b10'
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    """Create notifications, conversations, participants and messages."""

    # --- notifications ---
    op.create_table(
        "notifications",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("user_id", sa.String(36), nullable=False),
        sa.Column("type", sa.String(32), nullable=False, server_default="system"),
        sa.Column("title", sa.String(200), nullable=False),
        sa.Column("body", sa.Text, nullable=True),
        sa.Column("related_id", sa.String(36), nullable=True),
        sa.Column("is_read", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column(
            "created_at", sa.DateTime(timezone=True),
            nullable=False, server_default=sa.func.now(),
        ),
    )
    op.create_index(
        "ix_notifications_user_created", "notifications", ["user_id", "created_at"],
    )
    op.create_index(
        "ix_notifications_user_unread", "notifications", ["user_id", "is_read"],
    )

    # --- conversations ---
    op.create_table(
        "conversations",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("conversation_type", sa.String(20), nullable=False, server_default="direct"),
        sa.Column("title", sa.String(200), nullable=True),
        sa.Column("listing_id", sa.String(36), nullable=True),
        sa.Column("created_by", sa.String(36), nullable=False),
        sa.Column(
            "created_at", sa.DateTime(timezone=True),
            nullable=False, server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at", sa.DateTime(timezone=True),
            nullable=False, server_default=sa.func.now(),
        ),
    )

    # --- conversation_participants ---
    op.create_table(
        "conversation_participants",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "conversation_id", sa.String(36),
            sa.ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("user_id", sa.String(36), nullable=False),
        sa.Column("is_admin", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column(
            "joined_at", sa.DateTime(timezone=True),
            nullable=False, server_default=sa.func.now(),
        ),
        sa.Column("last_read_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint(
            "conversation_id", "user_id", name="uq_participant_conversation_user",
        ),
    )
    op.create_index("ix_participants_user", "conversation_participants", ["user_id"])

    # --- messages ---
    op.create_table(
        "messages",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "conversation_id", sa.String(36),
            sa.ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("sender_id", sa.String(36), nullable=False),
        sa.Column("content", sa.Text, nullable=False),
        sa.Column("is_deleted", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("edited_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "created_at", sa.DateTime(timezone=True),
            nullable=False, server_default=sa.func.now(),
        ),
    )
    op.create_index(
        "ix_messages_conversation_created", "messages", ["conversation_id", "created_at"],
    )

    # --- change feed triggers ---
    op.execute(CHANGE_TRIGGER_FUNCTION_SQL)
    for table in FEED_TABLES:
        for stmt in change_trigger_sql(table):
            op.execute(stmt)


def downgrade() -> None:
    """Drop triggers and inbox tables."""
    for table in FEED_TABLES:
        op.execute(f"DROP TRIGGER IF EXISTS trg_{table}_notify_insert ON {table}")
    op.execute("DROP FUNCTION IF EXISTS swap_notify_insert()")

    op.drop_index("ix_messages_conversation_created", table_name="messages")
    op.drop_table("messages")
    op.drop_index("ix_participants_user", table_name="conversation_participants")
    op.drop_table("conversation_participants")
    op.drop_table("conversations")
    op.drop_index("ix_notifications_user_unread", table_name="notifications")
    op.drop_index("ix_notifications_user_created", table_name="notifications")
    op.drop_table("notifications")
