"""initial_schema: whatsapp_sessions, contacts, messages, reactions.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-19

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB

revision: str = "001_initial"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    ]


def upgrade() -> None:
    op.execute("CREATE EXTENSION IF NOT EXISTS pg_trgm")

    op.create_table(
        "whatsapp_sessions",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("account_id", sa.String(64), nullable=False),
        sa.Column("status", sa.String(32), nullable=False, server_default="disconnected"),
        sa.Column("phone_number", sa.String(32), nullable=True),
        sa.Column("challenge", sa.Text(), nullable=True),
        sa.Column("last_error_code", sa.Integer(), nullable=True),
        sa.Column("last_error_message", sa.Text(), nullable=True),
        sa.Column("needs_relink", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("last_connected_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("credentials", JSONB, nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("account_id", name="uq_whatsapp_sessions_account_id"),
    )

    op.create_table(
        "contacts",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("account_id", sa.String(64), nullable=False),
        sa.Column("wa_id", sa.String(256), nullable=False),
        sa.Column("alias_wa_id", sa.String(256), nullable=True),
        sa.Column("phone_number", sa.String(32), nullable=True),
        sa.Column("name", sa.String(512), nullable=True),
        sa.Column("push_name", sa.String(512), nullable=True),
        sa.Column("profile_pic_url", sa.Text(), nullable=True),
        sa.Column("is_group", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("tags", JSONB, nullable=True),
        sa.Column("birthday", sa.Date(), nullable=True),
        sa.Column("company", sa.String(256), nullable=True),
        sa.Column("job_title", sa.String(256), nullable=True),
        sa.Column("location", sa.String(256), nullable=True),
        sa.Column("relationship_type", sa.String(32), nullable=True),
        sa.Column("contact_frequency", sa.String(32), nullable=True),
        sa.Column("importance", sa.Integer(), nullable=True),
        sa.Column("custom_fields", JSONB, nullable=True),
        sa.Column("interaction_count_7d", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("interaction_count_30d", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("interaction_count_90d", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("stats_updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_interaction", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("account_id", "wa_id", name="uq_contacts_account_wa_id"),
        sa.UniqueConstraint("account_id", "alias_wa_id", name="uq_contacts_account_alias"),
    )
    op.create_index(
        "ix_contacts_account_last_interaction", "contacts", ["account_id", "last_interaction"], unique=False
    )
    op.execute(
        "CREATE INDEX ix_contacts_name_trgm ON contacts USING GIN (coalesce(name, '') gin_trgm_ops)"
    )
    op.execute(
        "CREATE INDEX ix_contacts_push_name_trgm ON contacts USING GIN (coalesce(push_name, '') gin_trgm_ops)"
    )

    op.create_table(
        "messages",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("account_id", sa.String(64), nullable=False),
        sa.Column("contact_id", sa.BigInteger(), nullable=False),
        sa.Column("wa_message_id", sa.String(128), nullable=False),
        sa.Column("from_me", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("message_type", sa.String(16), nullable=False, server_default="TEXT"),
        sa.Column("body_text", sa.Text(), nullable=True),
        sa.Column("has_media", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("media_url", sa.Text(), nullable=True),
        sa.Column("media_mime_type", sa.String(128), nullable=True),
        sa.Column("media_size", sa.BigInteger(), nullable=True),
        sa.Column("quoted_wa_message_id", sa.String(128), nullable=True),
        sa.Column("quoted_message_id", sa.BigInteger(), nullable=True),
        sa.Column("quoted_body", sa.Text(), nullable=True),
        sa.Column("participant", sa.String(256), nullable=True),
        sa.Column("participant_alt", sa.String(256), nullable=True),
        sa.Column("participant_push_name", sa.String(512), nullable=True),
        sa.Column("mentions", JSONB, nullable=True),
        sa.Column("is_read", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.ForeignKeyConstraint(["contact_id"], ["contacts.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["quoted_message_id"], ["messages.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("account_id", "wa_message_id", name="uq_messages_account_wa_message_id"),
    )
    op.create_index(
        "ix_messages_contact_timestamp", "messages", ["contact_id", sa.text("timestamp DESC")], unique=False
    )
    op.create_index(
        "ix_messages_account_timestamp", "messages", ["account_id", sa.text("timestamp DESC")], unique=False
    )

    op.create_table(
        "reactions",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("account_id", sa.String(64), nullable=False),
        sa.Column("message_id", sa.BigInteger(), nullable=False),
        sa.Column("from_me", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("emoji", sa.String(32), nullable=False),
        sa.Column("sender", sa.String(256), nullable=True),
        sa.Column("reacted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.ForeignKeyConstraint(["message_id"], ["messages.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("message_id", "from_me", name="uq_reactions_message_direction"),
    )


def downgrade() -> None:
    op.drop_table("reactions")
    op.drop_index("ix_messages_account_timestamp", table_name="messages")
    op.drop_index("ix_messages_contact_timestamp", table_name="messages")
    op.drop_table("messages")
    op.execute("DROP INDEX IF EXISTS ix_contacts_push_name_trgm")
    op.execute("DROP INDEX IF EXISTS ix_contacts_name_trgm")
    op.drop_index("ix_contacts_account_last_interaction", table_name="contacts")
    op.drop_table("contacts")
    op.drop_table("whatsapp_sessions")
