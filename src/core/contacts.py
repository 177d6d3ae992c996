"""Contact rows: get-or-create by canonical address, alias pairings, user-edited metadata."""

import logging
from datetime import date
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from sqlalchemy import or_, select, update
from sqlalchemy.orm import Session

from core import identity
from core.errors import ContactNotFoundError, ContactValidationError
from core.events import ContactInfo
from core.messages import clamp_limit, clamp_offset
from core.models import Contact, as_utc

logger = logging.getLogger(__name__)

SAVED_MESSAGES_NAME = "Saved Messages"

RelationshipType = Literal["family", "close_friend", "colleague", "acquaintance", "other"]
ContactFrequency = Literal["daily", "weekly", "biweekly", "monthly", "quarterly", "yearly"]

# Cadence targets in days.
FREQUENCY_DAYS: dict[str, int] = {
    "daily": 1,
    "weekly": 7,
    "biweekly": 14,
    "monthly": 30,
    "quarterly": 90,
    "yearly": 365,
}


class ContactUpdate(BaseModel):
    """Fields a user may edit. Unset fields are left alone; explicit None clears."""

    model_config = ConfigDict(extra="forbid")

    notes: str | None = None
    tags: list[str] | None = None
    birthday: date | None = None
    company: str | None = Field(default=None, max_length=256)
    job_title: str | None = Field(default=None, max_length=256)
    location: str | None = Field(default=None, max_length=256)
    relationship_type: RelationshipType | None = None
    contact_frequency: ContactFrequency | None = None
    importance: int | None = Field(default=None, ge=0, le=5)
    custom_fields: dict[str, Any] | None = None


def _describe(e: ValidationError) -> str:
    parts = []
    for err in e.errors():
        loc = ".".join(str(p) for p in err["loc"]) or "contact"
        parts.append(f"{loc}: {err['msg']}")
    return "; ".join(parts)


def get_contact(db: Session, account_id: str, contact_id: int) -> Contact | None:
    return db.execute(
        select(Contact).where(Contact.account_id == account_id, Contact.id == contact_id)
    ).scalar_one_or_none()


def get_contact_by_wa_id(db: Session, account_id: str, wa_id: str) -> Contact | None:
    return db.execute(
        select(Contact).where(Contact.account_id == account_id, Contact.wa_id == wa_id)
    ).scalar_one_or_none()


def get_or_create_contact(db: Session, account_id: str, wa_id: str) -> Contact:
    contact = get_contact_by_wa_id(db, account_id, wa_id)
    if contact is None:
        contact = Contact(
            account_id=account_id,
            wa_id=wa_id,
            is_group=identity.is_group(wa_id),
            phone_number=identity.phone_number_of(wa_id),
        )
        db.add(contact)
        db.flush()
        logger.debug("account=%s created contact %s", account_id, wa_id)
    return contact


def upsert_contact(
    db: Session,
    account_id: str,
    wa_id: str,
    *,
    name: str | None = None,
    push_name: str | None = None,
    profile_pic_url: str | None = None,
) -> Contact:
    """Create or update; only supplied (non-None) values overwrite stored ones."""
    contact = get_or_create_contact(db, account_id, wa_id)
    if name is not None:
        contact.name = name
    if push_name is not None:
        contact.push_name = push_name
    if profile_pic_url is not None:
        contact.profile_pic_url = profile_pic_url
    return contact


class AliasTable:
    """Temporary-address (LID) to canonical-address mapping, backed by contacts.alias_wa_id."""

    def __init__(self, db: Session, account_id: str) -> None:
        self.db = db
        self.account_id = account_id
        self._cache: dict[str, str | None] = {}

    def __call__(self, alias: str) -> str | None:
        if alias not in self._cache:
            self._cache[alias] = self.db.execute(
                select(Contact.wa_id).where(
                    Contact.account_id == self.account_id, Contact.alias_wa_id == alias
                )
            ).scalar_one_or_none()
        return self._cache[alias]

    def resolve(self, raw: str | None) -> str | None:
        return identity.resolve(raw, self)

    def record(self, first: str | None, second: str | None) -> str | None:
        """Persist a permanent/temporary pairing if ``first``/``second`` form one.

        Returns the canonical address of the pairing, or None.
        """
        pairing = identity.pair_addresses(first, second)
        if pairing is None:
            return None
        canonical, alias = pairing
        if self(alias) == canonical:
            return canonical
        contact = get_or_create_contact(self.db, self.account_id, canonical)
        # An alias has at most one owner.
        self.db.execute(
            update(Contact)
            .where(
                Contact.account_id == self.account_id,
                Contact.alias_wa_id == alias,
                Contact.id != contact.id,
            )
            .values(alias_wa_id=None)
        )
        self.db.flush()
        contact.alias_wa_id = alias
        self.db.flush()
        self._cache[alias] = canonical
        logger.info("account=%s alias %s -> %s", self.account_id, alias, canonical)
        return canonical


def apply_contact_info(db: Session, aliases: AliasTable, info: ContactInfo) -> Contact | None:
    """Upsert from a contacts/history record. LID-only records without a pairing are skipped."""
    canonical = aliases.record(info.jid, info.lid) or aliases.record(info.jid, info.phone_number)
    if canonical is None:
        canonical = aliases.resolve(info.jid)
    if canonical is None:
        logger.debug("account=%s skipping unresolvable contact %s", aliases.account_id, info.jid)
        return None
    return upsert_contact(
        db,
        aliases.account_id,
        canonical,
        name=info.name,
        push_name=info.notify,
        profile_pic_url=info.img_url,
    )


def update_contact(
    db: Session, account_id: str, contact_id: int, changes: dict[str, Any]
) -> Contact:
    """Apply user edits after validating all of them; raises before writing anything."""
    try:
        validated = ContactUpdate.model_validate(changes)
    except ValidationError as e:
        raise ContactValidationError(_describe(e)) from e
    contact = get_contact(db, account_id, contact_id)
    if contact is None:
        raise ContactNotFoundError(f"contact {contact_id} not found")
    for field_name, value in validated.model_dump(exclude_unset=True).items():
        setattr(contact, field_name, value)
    db.flush()
    return contact


def contact_summary(contact: Contact) -> dict[str, Any]:
    return {
        "id": contact.id,
        "wa_id": contact.wa_id,
        "name": contact.name,
        "push_name": contact.push_name,
        "phone_number": contact.phone_number,
        "profile_pic_url": contact.profile_pic_url,
        "is_group": contact.is_group,
    }


def contact_detail(contact: Contact) -> dict[str, Any]:
    """Summary plus the user-edited relationship metadata and counters."""
    last = as_utc(contact.last_interaction)
    return {
        **contact_summary(contact),
        "alias_wa_id": contact.alias_wa_id,
        "notes": contact.notes,
        "tags": contact.tags,
        "birthday": contact.birthday.isoformat() if contact.birthday else None,
        "company": contact.company,
        "job_title": contact.job_title,
        "location": contact.location,
        "relationship_type": contact.relationship_type,
        "contact_frequency": contact.contact_frequency,
        "importance": contact.importance,
        "custom_fields": contact.custom_fields,
        "last_interaction": last.isoformat() if last else None,
        "interaction_count_7d": contact.interaction_count_7d or 0,
        "interaction_count_30d": contact.interaction_count_30d or 0,
        "interaction_count_90d": contact.interaction_count_90d or 0,
    }


def list_contacts(
    db: Session,
    account_id: str,
    search: str | None = None,
    limit: int | None = 100,
    offset: int | None = 0,
) -> list[Contact]:
    """Most recent interaction first; contacts never talked to come last."""
    stmt = select(Contact).where(Contact.account_id == account_id)
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
        stmt.order_by(Contact.last_interaction.desc().nullslast(), Contact.id.desc())
        .limit(clamp_limit(limit, 100))
        .offset(clamp_offset(offset))
    )
    return list(db.execute(stmt).scalars())


def get_contact_detail(db: Session, account_id: str, contact_id: int) -> dict[str, Any]:
    contact = get_contact(db, account_id, contact_id)
    if contact is None:
        raise ContactNotFoundError(f"contact {contact_id} not found")
    return contact_detail(contact)
