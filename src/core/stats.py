"""Rolling interaction counters and the conversations projection.

Counters (7/30/90 days) are recomputed from messages after each committed
message and lazily on read when ``counters_need_refresh`` says so. The
conversations view is a grouped query over messages, not a stored table.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import and_, case, func, or_, select
from sqlalchemy.orm import Session

from core.config import settings
from core.contacts import contact_summary, get_contact
from core.messages import clamp_limit, clamp_offset, serialize_message
from core.models import Contact, Message, as_utc, utcnow

logger = logging.getLogger(__name__)

WINDOWS_DAYS = (7, 30, 90)
STATS_STALE_AFTER = timedelta(seconds=settings.STATS_STALE_AFTER_SECONDS)


@dataclass(frozen=True, slots=True)
class InteractionCounts:
    count_7d: int = 0
    count_30d: int = 0
    count_90d: int = 0


@dataclass
class ConversationPage:
    conversations: list[dict[str, Any]] = field(default_factory=list)
    has_more: bool = False


def count_interactions(
    db: Session, account_id: str, contact_id: int, now: datetime | None = None
) -> InteractionCounts:
    """Scan messages for the three windows in one query."""
    now = now or utcnow()
    sums = [
        func.coalesce(
            func.sum(case((Message.timestamp >= now - timedelta(days=days), 1), else_=0)), 0
        )
        for days in WINDOWS_DAYS
    ]
    row = db.execute(
        select(*sums).where(Message.account_id == account_id, Message.contact_id == contact_id)
    ).one()
    return InteractionCounts(int(row[0]), int(row[1]), int(row[2]))


def recompute_interaction_counts(
    db: Session, account_id: str, contact_id: int, now: datetime | None = None
) -> InteractionCounts | None:
    contact = get_contact(db, account_id, contact_id)
    if contact is None:
        return None
    now = now or utcnow()
    counts = count_interactions(db, account_id, contact_id, now)
    contact.interaction_count_7d = counts.count_7d
    contact.interaction_count_30d = counts.count_30d
    contact.interaction_count_90d = counts.count_90d
    contact.stats_updated_at = now
    db.flush()
    return counts


def on_message_committed(db: Session, account_id: str, contact_id: int) -> InteractionCounts | None:
    return recompute_interaction_counts(db, account_id, contact_id)


def counters_need_refresh(
    contact: Contact, now: datetime | None = None, stale_after: timedelta = STATS_STALE_AFTER
) -> bool:
    """Never computed, older than ``stale_after``, or zero despite a recent interaction."""
    now = now or utcnow()
    updated = as_utc(contact.stats_updated_at)
    if updated is None or now - updated > stale_after:
        return True
    last = as_utc(contact.last_interaction)
    recent = last is not None and now - last <= timedelta(days=WINDOWS_DAYS[-1])
    return recent and not contact.interaction_count_90d


def get_contact_stats(
    db: Session, account_id: str, contact_id: int, now: datetime | None = None
) -> dict[str, Any] | None:
    contact = get_contact(db, account_id, contact_id)
    if contact is None:
        return None
    now = now or utcnow()
    if counters_need_refresh(contact, now):
        logger.debug("account=%s contact=%s recomputing stale counters", account_id, contact_id)
        recompute_interaction_counts(db, account_id, contact_id, now)

    total, sent = db.execute(
        select(
            func.count(Message.id),
            func.coalesce(func.sum(case((Message.from_me.is_(True), 1), else_=0)), 0),
        ).where(Message.account_id == account_id, Message.contact_id == contact_id)
    ).one()
    last = as_utc(contact.last_interaction)
    return {
        "contact_id": contact.id,
        "last_interaction": last.isoformat() if last else None,
        "interaction_count_7d": contact.interaction_count_7d or 0,
        "interaction_count_30d": contact.interaction_count_30d or 0,
        "interaction_count_90d": contact.interaction_count_90d or 0,
        "total_messages": int(total),
        "sent_by_user": int(sent),
        "received_from_contact": int(total) - int(sent),
    }


def latest_messages(db: Session, contact_ids: list[int]) -> dict[int, Message]:
    if not contact_ids:
        return {}
    rank = (
        func.row_number()
        .over(
            partition_by=Message.contact_id,
            order_by=(Message.timestamp.desc(), Message.id.desc()),
        )
        .label("rank")
    )
    ranked = select(Message.id, rank).where(Message.contact_id.in_(contact_ids)).subquery()
    rows = db.execute(
        select(Message).join(ranked, ranked.c.id == Message.id).where(ranked.c.rank == 1)
    ).scalars()
    return {m.contact_id: m for m in rows}


def list_conversations(
    db: Session,
    account_id: str,
    limit: int | None = 20,
    offset: int | None = 0,
    search: str | None = None,
) -> ConversationPage:
    """Contacts with at least one message, latest message first; one lookahead row sets has_more."""
    limit = clamp_limit(limit, 20)
    offset = clamp_offset(offset)
    unread = func.coalesce(
        func.sum(
            case((and_(Message.from_me.is_(False), Message.is_read.is_(False)), 1), else_=0)
        ),
        0,
    )
    agg = (
        select(
            Message.contact_id.label("contact_id"),
            func.max(Message.timestamp).label("last_message_at"),
            unread.label("unread_count"),
        )
        .where(Message.account_id == account_id)
        .group_by(Message.contact_id)
        .subquery()
    )
    stmt = (
        select(Contact, agg.c.last_message_at, agg.c.unread_count)
        .join(agg, agg.c.contact_id == Contact.id)
        .where(Contact.account_id == account_id)
    )
    term = (search or "").strip()
    if term:
        pattern = f"%{term}%"
        stmt = stmt.where(
            or_(
                Contact.name.ilike(pattern),
                Contact.push_name.ilike(pattern),
                Contact.phone_number.ilike(pattern),
                Contact.wa_id.ilike(pattern),
            )
        )
    stmt = (
        stmt.order_by(agg.c.last_message_at.desc().nullslast(), Contact.id.desc())
        .limit(limit + 1)
        .offset(offset)
    )
    rows = db.execute(stmt).all()
    has_more = len(rows) > limit
    rows = rows[:limit]

    latest = latest_messages(db, [row[0].id for row in rows])
    conversations = []
    for contact, last_message_at, unread_count in rows:
        last_message = latest.get(contact.id)
        last_at = as_utc(last_message_at)
        conversations.append(
            {
                "contact": contact_summary(contact),
                "last_message": serialize_message(last_message) if last_message else None,
                "last_message_at": last_at.isoformat() if last_at else None,
                "unread_count": int(unread_count or 0),
            }
        )
    return ConversationPage(conversations=conversations, has_more=has_more)
