"""CRM schema: sessions, contacts, messages, reactions. Everything is scoped by account_id."""

from datetime import date, datetime, timezone
from enum import Enum
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.sql import func

# JSONB on PostgreSQL, plain JSON elsewhere (tests run on SQLite).
JSONType = JSON().with_variant(JSONB(), "postgresql")
# SQLite only autoincrements INTEGER primary keys.
BigIntPK = BigInteger().with_variant(Integer(), "sqlite")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class SessionStatus(str, Enum):
    DISCONNECTED = "disconnected"
    AWAITING_CREDENTIAL = "awaiting_credential"
    CONNECTED = "connected"


class MessageType(str, Enum):
    TEXT = "TEXT"
    IMAGE = "IMAGE"
    VIDEO = "VIDEO"
    AUDIO = "AUDIO"
    DOCUMENT = "DOCUMENT"
    STICKER = "STICKER"
    LOCATION = "LOCATION"
    CONTACT = "CONTACT"
    POLL = "POLL"
    OTHER = "OTHER"


class Base(DeclarativeBase):
    pass


class WhatsAppSession(Base):
    __tablename__ = "whatsapp_sessions"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    account_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    status: Mapped[str] = mapped_column(
        String(32), default=SessionStatus.DISCONNECTED.value, nullable=False
    )
    phone_number: Mapped[str | None] = mapped_column(String(32), nullable=True)
    challenge: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_error_code: Mapped[int | None] = mapped_column(Integer, nullable=True)
    last_error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    needs_relink: Mapped[bool] = mapped_column(Boolean, default=False)
    last_connected_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    # Opaque; only core.session reads or writes it.
    credentials: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
    )


class Contact(Base):
    __tablename__ = "contacts"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    account_id: Mapped[str] = mapped_column(String(64), nullable=False)
    wa_id: Mapped[str] = mapped_column(String(256), nullable=False)
    alias_wa_id: Mapped[str | None] = mapped_column(String(256), nullable=True)
    phone_number: Mapped[str | None] = mapped_column(String(32), nullable=True)
    name: Mapped[str | None] = mapped_column(String(512), nullable=True)
    push_name: Mapped[str | None] = mapped_column(String(512), nullable=True)
    profile_pic_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_group: Mapped[bool] = mapped_column(Boolean, default=False)

    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    tags: Mapped[list[str] | None] = mapped_column(JSONType, nullable=True)
    birthday: Mapped[date | None] = mapped_column(Date, nullable=True)
    company: Mapped[str | None] = mapped_column(String(256), nullable=True)
    job_title: Mapped[str | None] = mapped_column(String(256), nullable=True)
    location: Mapped[str | None] = mapped_column(String(256), nullable=True)
    relationship_type: Mapped[str | None] = mapped_column(String(32), nullable=True)
    contact_frequency: Mapped[str | None] = mapped_column(String(32), nullable=True)
    importance: Mapped[int | None] = mapped_column(Integer, nullable=True)
    custom_fields: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)

    interaction_count_7d: Mapped[int] = mapped_column(Integer, default=0)
    interaction_count_30d: Mapped[int] = mapped_column(Integer, default=0)
    interaction_count_90d: Mapped[int] = mapped_column(Integer, default=0)
    stats_updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    last_interaction: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
    )

    messages: Mapped[list["Message"]] = relationship(
        back_populates="contact", cascade="all, delete-orphan"
    )

    __table_args__ = (
        UniqueConstraint("account_id", "wa_id", name="uq_contacts_account_wa_id"),
        UniqueConstraint("account_id", "alias_wa_id", name="uq_contacts_account_alias"),
        Index("ix_contacts_account_last_interaction", "account_id", "last_interaction"),
    )


class Message(Base):
    __tablename__ = "messages"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    account_id: Mapped[str] = mapped_column(String(64), nullable=False)
    contact_id: Mapped[int] = mapped_column(
        ForeignKey("contacts.id", ondelete="CASCADE"), nullable=False
    )
    wa_message_id: Mapped[str] = mapped_column(String(128), nullable=False)
    from_me: Mapped[bool] = mapped_column(Boolean, default=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    message_type: Mapped[str] = mapped_column(String(16), default=MessageType.TEXT.value)
    body_text: Mapped[str | None] = mapped_column(Text, nullable=True)

    has_media: Mapped[bool] = mapped_column(Boolean, default=False)
    media_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    media_mime_type: Mapped[str | None] = mapped_column(String(128), nullable=True)
    media_size: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    quoted_wa_message_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    quoted_message_id: Mapped[int | None] = mapped_column(
        ForeignKey("messages.id", ondelete="SET NULL"), nullable=True
    )
    quoted_body: Mapped[str | None] = mapped_column(Text, nullable=True)

    participant: Mapped[str | None] = mapped_column(String(256), nullable=True)
    participant_alt: Mapped[str | None] = mapped_column(String(256), nullable=True)
    participant_push_name: Mapped[str | None] = mapped_column(String(512), nullable=True)
    mentions: Mapped[list[str] | None] = mapped_column(JSONType, nullable=True)

    is_read: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    contact: Mapped["Contact"] = relationship(back_populates="messages")
    reactions: Mapped[list["Reaction"]] = relationship(
        back_populates="message", cascade="all, delete-orphan"
    )

    __table_args__ = (
        UniqueConstraint(
            "account_id", "wa_message_id", name="uq_messages_account_wa_message_id"
        ),
        Index("ix_messages_contact_timestamp", "contact_id", "timestamp"),
    )


class Reaction(Base):
    __tablename__ = "reactions"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    account_id: Mapped[str] = mapped_column(String(64), nullable=False)
    message_id: Mapped[int] = mapped_column(
        ForeignKey("messages.id", ondelete="CASCADE"), nullable=False
    )
    from_me: Mapped[bool] = mapped_column(Boolean, default=False)
    emoji: Mapped[str] = mapped_column(String(32), nullable=False)
    sender: Mapped[str | None] = mapped_column(String(256), nullable=True)
    reacted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
    )

    message: Mapped["Message"] = relationship(back_populates="reactions")

    __table_args__ = (
        UniqueConstraint("message_id", "from_me", name="uq_reactions_message_direction"),
    )
