"""Message and reaction rows: dedup insert, reaction upsert, read state, listing."""

import logging
from datetime import datetime
from typing import Any

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from core.models import Message, Reaction, as_utc

logger = logging.getLogger(__name__)

MIN_LIMIT = 1
MAX_LIMIT = 200


def clamp_limit(limit: int | None, default: int) -> int:
    if limit is None:
        return default
    return min(max(MIN_LIMIT, int(limit)), MAX_LIMIT)


def clamp_offset(offset: int | None) -> int:
    return max(0, int(offset or 0))


def find_message_id(db: Session, account_id: str, wa_message_id: str) -> int | None:
    return db.execute(
        select(Message.id).where(
            Message.account_id == account_id, Message.wa_message_id == wa_message_id
        )
    ).scalar_one_or_none()


def insert_message(db: Session, message: Message) -> bool:
    """Insert unless (account_id, wa_message_id) exists. False means duplicate.

    A unique-constraint violation rolls back the caller's transaction, so the
    insert must be the last write before commit, or the first in a fresh one.
    """
    if find_message_id(db, message.account_id, message.wa_message_id) is not None:
        return False
    db.add(message)
    try:
        db.flush()
    except IntegrityError:
        db.rollback()
        logger.debug("account=%s message %s lost insert race", message.account_id, message.wa_message_id)
        return False
    return True


def attach_media(
    db: Session,
    message_id: int,
    *,
    media_url: str,
    mime_type: str | None,
    size: int | None,
) -> bool:
    result = db.execute(
        update(Message)
        .where(Message.id == message_id)
        .values(media_url=media_url, media_mime_type=mime_type, media_size=size)
    )
    return result.rowcount > 0


def mark_read(db: Session, account_id: str, contact_id: int) -> int:
    """Mark inbound messages read. Returns rows changed (0 on repeat calls)."""
    result = db.execute(
        update(Message)
        .where(
            Message.account_id == account_id,
            Message.contact_id == contact_id,
            Message.from_me.is_(False),
            Message.is_read.is_(False),
        )
        .values(is_read=True)
    )
    return result.rowcount


def set_reaction(
    db: Session,
    account_id: str,
    message_id: int,
    *,
    from_me: bool,
    emoji: str,
    sender: str | None = None,
    reacted_at: datetime | None = None,
) -> Reaction | None:
    """Upsert the (message, direction) reaction; an empty emoji removes it."""
    if not emoji:
        db.execute(
            delete(Reaction).where(Reaction.message_id == message_id, Reaction.from_me == from_me)
        )
        return None
    reaction = db.execute(
        select(Reaction).where(Reaction.message_id == message_id, Reaction.from_me == from_me)
    ).scalar_one_or_none()
    if reaction is None:
        reaction = Reaction(account_id=account_id, message_id=message_id, from_me=from_me, emoji=emoji)
        db.add(reaction)
    reaction.emoji = emoji
    reaction.sender = sender
    reaction.reacted_at = reacted_at
    db.flush()
    return reaction


def list_messages(
    db: Session, account_id: str, contact_id: int, limit: int | None = 50, offset: int | None = 0
) -> list[Message]:
    """Newest first."""
    stmt = (
        select(Message)
        .options(selectinload(Message.reactions))
        .where(Message.account_id == account_id, Message.contact_id == contact_id)
        .order_by(Message.timestamp.desc(), Message.id.desc())
        .limit(clamp_limit(limit, 50))
        .offset(clamp_offset(offset))
    )
    return list(db.execute(stmt).scalars())


def _iso(value: datetime | None) -> str | None:
    value = as_utc(value)
    return value.isoformat() if value else None


def serialize_message(msg: Message) -> dict[str, Any]:
    return {
        "id": msg.id,
        "wa_message_id": msg.wa_message_id,
        "contact_id": msg.contact_id,
        "from_me": msg.from_me,
        "type": msg.message_type,
        "body": msg.body_text,
        "timestamp": _iso(msg.timestamp),
        "has_media": msg.has_media,
        "media_url": msg.media_url,
        "media_mime_type": msg.media_mime_type,
        "media_size": msg.media_size,
        "quoted": (
            {
                "wa_message_id": msg.quoted_wa_message_id,
                "message_id": msg.quoted_message_id,
                "body": msg.quoted_body,
            }
            if msg.quoted_wa_message_id
            else None
        ),
        "sender": (
            {
                "participant": msg.participant,
                "participant_alt": msg.participant_alt,
                "push_name": msg.participant_push_name,
            }
            if msg.participant
            else None
        ),
        "mentions": list(msg.mentions or []),
        "reactions": [
            {"emoji": r.emoji, "from_me": r.from_me, "sender": r.sender}
            for r in msg.reactions
        ],
        "is_read": msg.is_read,
    }
