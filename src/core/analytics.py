"""Relationship dashboard: reply backlog, cadence targets, health score."""

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Any

from sqlalchemy import case, distinct, func, select
from sqlalchemy.orm import Session

from core.contacts import FREQUENCY_DAYS, contact_summary
from core.models import Contact, Message, MessageType, as_utc, utcnow
from core.stats import latest_messages

logger = logging.getLogger(__name__)

SNIPPET_LENGTH = 60
REPLY_MEDIUM_AFTER = timedelta(hours=24)
REPLY_HIGH_AFTER = timedelta(hours=72)
# A cadence target shows up once this share of it has elapsed.
REACH_OUT_THRESHOLD = 0.8
BIRTHDAY_HIGH_WITHIN_DAYS = 7
BIRTHDAY_MEDIUM_WITHIN_DAYS = 14

LOW, MEDIUM, HIGH = "low", "medium", "high"
EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


@dataclass(frozen=True, slots=True)
class Cadence:
    contact: Contact
    target_days: int
    last_interaction: datetime | None
    days_since: int

    @property
    def days_overdue(self) -> int:
        return self.days_since - self.target_days

    @property
    def urgency(self) -> str:
        if self.days_overdue > self.target_days:
            return HIGH
        if self.days_overdue > 0:
            return MEDIUM
        return LOW


def _start_of_day(now: datetime) -> datetime:
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


def _display_name(contact: Contact) -> str:
    return contact.name or contact.push_name or contact.phone_number or "Unknown"


def _snippet(message: Message) -> str:
    if message.message_type != MessageType.TEXT.value:
        return f"({message.message_type.lower()})"
    body = message.body_text or ""
    return body if len(body) <= SNIPPET_LENGTH else body[:SNIPPET_LENGTH] + "…"


def reply_urgency(waiting: timedelta) -> str:
    if waiting > REPLY_HIGH_AFTER:
        return HIGH
    if waiting > REPLY_MEDIUM_AFTER:
        return MEDIUM
    return LOW


def today_stats(db: Session, account_id: str, now: datetime) -> dict[str, int]:
    total, sent, contacts = db.execute(
        select(
            func.count(Message.id),
            func.coalesce(func.sum(case((Message.from_me.is_(True), 1), else_=0)), 0),
            func.count(distinct(Message.contact_id)),
        ).where(Message.account_id == account_id, Message.timestamp >= _start_of_day(now))
    ).one()
    return {
        "total_messages": int(total),
        "sent": int(sent),
        "received": int(total) - int(sent),
        "unique_contacts": int(contacts),
    }


def active_contacts(db: Session, account_id: str, now: datetime) -> dict[str, int]:
    thresholds = {
        "today": _start_of_day(now),
        "last_7_days": now - timedelta(days=7),
        "last_30_days": now - timedelta(days=30),
        "last_90_days": now - timedelta(days=90),
    }
    counts = [
        func.coalesce(func.sum(case((Contact.last_interaction >= since, 1), else_=0)), 0)
        for since in thresholds.values()
    ]
    row = db.execute(
        select(*counts, func.count(Contact.id)).where(Contact.account_id == account_id)
    ).one()
    result = {key: int(value) for key, value in zip(thresholds, row)}
    result["total"] = int(row[-1])
    return result


def awaiting_replies(db: Session, account_id: str, now: datetime, limit: int = 10) -> list[dict[str, Any]]:
    """Direct chats whose latest message is inbound, oldest first."""
    contacts = db.execute(
        select(Contact).where(
            Contact.account_id == account_id,
            Contact.is_group.is_(False),
        )
    ).scalars().all()
    by_id = {c.id: c for c in contacts}
    waiting = []
    for contact_id, message in latest_messages(db, list(by_id)).items():
        if message.from_me:
            continue
        sent_at = as_utc(message.timestamp)
        waiting.append(
            {
                **contact_summary(by_id[contact_id]),
                "relationship_type": by_id[contact_id].relationship_type,
                "last_message_snippet": _snippet(message),
                "last_message_time": sent_at.isoformat(),
                "urgency": reply_urgency(now - sent_at),
            }
        )
    waiting.sort(key=lambda item: item["last_message_time"])
    return waiting[:limit]


def cadences(db: Session, account_id: str, now: datetime) -> list[Cadence]:
    """Every direct contact with a cadence target, measured against its latest interaction."""
    contacts = db.execute(
        select(Contact).where(
            Contact.account_id == account_id,
            Contact.is_group.is_(False),
            Contact.contact_frequency.is_not(None),
        )
    ).scalars().all()
    latest = latest_messages(db, [c.id for c in contacts])
    result = []
    for contact in contacts:
        target = FREQUENCY_DAYS.get(contact.contact_frequency or "")
        if not target:
            continue
        last = as_utc(contact.last_interaction)
        message = latest.get(contact.id)
        if message is not None:
            message_at = as_utc(message.timestamp)
            if last is None or message_at > last:
                last = message_at
        since = (now - (last or EPOCH)).days
        result.append(Cadence(contact, target, last, since))
    return result


def contacts_to_reach_out(cadence_list: list[Cadence], limit: int = 10) -> list[dict[str, Any]]:
    due = [c for c in cadence_list if c.days_since >= c.target_days * REACH_OUT_THRESHOLD]
    due.sort(key=lambda c: c.days_overdue, reverse=True)
    return [
        {
            **contact_summary(c.contact),
            "contact_frequency": c.contact.contact_frequency,
            "last_interaction": c.last_interaction.isoformat() if c.last_interaction else None,
            "days_overdue": max(0, c.days_overdue),
            "urgency": c.urgency,
        }
        for c in due[:limit]
    ]


def relationship_health(cadence_list: list[Cadence]) -> dict[str, Any]:
    total = len(cadence_list)
    on_track = sum(1 for c in cadence_list if c.urgency == LOW)
    needs_attention = sum(1 for c in cadence_list if c.urgency == MEDIUM)
    at_risk = [c for c in cadence_list if c.urgency == HIGH]

    top_suggestion = None
    if at_risk:
        worst = max(at_risk, key=lambda c: c.days_overdue)
        top_suggestion = f"Check in with {_display_name(worst.contact)} ({worst.days_overdue} days overdue)"
    elif needs_attention:
        noun = "contact needs" if needs_attention == 1 else "contacts need"
        top_suggestion = f"{needs_attention} {noun} attention"

    return {
        "score": round(on_track / total * 100) if total else 100,
        "on_track": on_track,
        "needs_attention": needs_attention,
        "at_risk": len(at_risk),
        "total": total,
        "top_suggestion": top_suggestion,
    }


def _next_occurrence(day: date, today: date) -> date:
    try:
        upcoming = day.replace(year=today.year)
    except ValueError:
        # 29 February outside a leap year
        upcoming = date(today.year, 3, 1)
    if upcoming < today:
        try:
            upcoming = day.replace(year=today.year + 1)
        except ValueError:
            upcoming = date(today.year + 1, 3, 1)
    return upcoming


def upcoming_birthdays(db: Session, account_id: str, now: datetime, limit: int = 5) -> list[dict[str, Any]]:
    contacts = db.execute(
        select(Contact).where(
            Contact.account_id == account_id,
            Contact.is_group.is_(False),
            Contact.birthday.is_not(None),
        )
    ).scalars().all()
    today = now.date()
    upcoming = []
    for contact in contacts:
        nxt = _next_occurrence(contact.birthday, today)
        days_until = (nxt - today).days
        if days_until <= BIRTHDAY_HIGH_WITHIN_DAYS:
            urgency = HIGH
        elif days_until <= BIRTHDAY_MEDIUM_WITHIN_DAYS:
            urgency = MEDIUM
        else:
            urgency = LOW
        upcoming.append(
            {
                **contact_summary(contact),
                "birthday": contact.birthday.isoformat(),
                "age": nxt.year - contact.birthday.year,
                "days_until": days_until,
                "urgency": urgency,
            }
        )
    upcoming.sort(key=lambda item: item["days_until"])
    return upcoming[:limit]


def weekly_insights(db: Session, account_id: str, now: datetime) -> dict[str, int]:
    since = now - timedelta(days=7)
    messages = db.execute(
        select(func.count(Message.id)).where(Message.account_id == account_id, Message.timestamp >= since)
    ).scalar_one()
    new_contacts = db.execute(
        select(func.count(Contact.id)).where(Contact.account_id == account_id, Contact.created_at >= since)
    ).scalar_one()
    return {"weekly_messages": int(messages), "new_contacts": int(new_contacts)}


def dashboard(db: Session, account_id: str, now: datetime | None = None) -> dict[str, Any]:
    now = now or utcnow()
    cadence_list = cadences(db, account_id, now)
    return {
        "today": today_stats(db, account_id, now),
        "active_contacts": active_contacts(db, account_id, now),
        "awaiting_replies": awaiting_replies(db, account_id, now),
        "to_contact": contacts_to_reach_out(cadence_list),
        "upcoming_birthdays": upcoming_birthdays(db, account_id, now),
        "relationship_health": relationship_health(cadence_list),
        "weekly_insights": weekly_insights(db, account_id, now),
    }
