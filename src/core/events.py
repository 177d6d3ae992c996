"""Typed events from the messaging connection, decoded once at the boundary.

The transport yields ``(name, payload)`` pairs shaped like Baileys events.
``decode_event`` turns each into one member of the ``Event`` union; the
session actor and the ingestion dispatcher only ever see these types.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from core.content import Content, decode_content
from core.errors import IngestionError

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ConnectionUpdate:
    connection: str | None = None  # "connecting" | "open" | "close"
    qr: str | None = None
    status_code: int | None = None
    error: str | None = None


@dataclass(frozen=True, slots=True)
class CredentialsUpdate:
    credentials: dict[str, Any]


@dataclass(frozen=True, slots=True)
class InboundMessage:
    wa_message_id: str
    remote_jid: str
    from_me: bool
    timestamp: datetime
    content: Content
    remote_jid_alt: str | None = None
    participant: str | None = None
    participant_alt: str | None = None
    push_name: str | None = None
    raw: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)


@dataclass(frozen=True, slots=True)
class MessagesUpsert:
    messages: tuple[InboundMessage, ...]
    live: bool = True


@dataclass(frozen=True, slots=True)
class ReactionUpdate:
    target_id: str
    remote_jid: str | None
    from_me: bool
    emoji: str
    sender: str | None = None
    timestamp: datetime | None = None


@dataclass(frozen=True, slots=True)
class ContactInfo:
    jid: str
    name: str | None = None
    notify: str | None = None
    lid: str | None = None
    phone_number: str | None = None
    img_url: str | None = None


@dataclass(frozen=True, slots=True)
class ContactsUpsert:
    contacts: tuple[ContactInfo, ...]
    is_update: bool = False


@dataclass(frozen=True, slots=True)
class HistorySync:
    contacts: tuple[ContactInfo, ...] = ()
    messages: tuple[InboundMessage, ...] = ()


@dataclass(frozen=True, slots=True)
class UnknownEvent:
    name: str


Event = (
    ConnectionUpdate
    | CredentialsUpdate
    | MessagesUpsert
    | ReactionUpdate
    | ContactsUpsert
    | HistorySync
    | UnknownEvent
)


def parse_timestamp(value: Any, *, millis: bool = False) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, dict):  # protobuf Long
        value = (int(value.get("high", 0) or 0) << 32) + (int(value.get("low", 0) or 0) & 0xFFFFFFFF)
    try:
        seconds = float(value)
    except (TypeError, ValueError):
        return None
    if millis:
        seconds /= 1000.0
    if seconds <= 0:
        return None
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


def decode_message(raw: dict[str, Any]) -> InboundMessage:
    """Decode one WAMessage dict. Raises IngestionError when the key is unusable."""
    if not isinstance(raw, dict):
        raise IngestionError(f"message is not an object: {type(raw).__name__}")
    key = raw.get("key")
    if not isinstance(key, dict):
        raise IngestionError("message has no key")
    wa_message_id = key.get("id")
    remote_jid = key.get("remoteJid")
    if not wa_message_id or not remote_jid:
        raise IngestionError(f"message key missing id or remoteJid: {key!r}")
    timestamp = parse_timestamp(raw.get("messageTimestamp")) or datetime.now(timezone.utc)
    return InboundMessage(
        wa_message_id=str(wa_message_id),
        remote_jid=str(remote_jid),
        from_me=bool(key.get("fromMe")),
        timestamp=timestamp,
        content=decode_content(raw.get("message")),
        remote_jid_alt=key.get("remoteJidAlt") or None,
        participant=key.get("participant") or raw.get("participant") or None,
        participant_alt=key.get("participantAlt") or None,
        push_name=raw.get("pushName") or None,
        raw=raw,
    )


def _decode_messages(items: Any) -> tuple[InboundMessage, ...]:
    decoded = []
    for item in items or []:
        try:
            decoded.append(decode_message(item))
        except IngestionError as e:
            logger.warning("Dropping malformed message: %s", e)
    return tuple(decoded)


def decode_contact(raw: dict[str, Any]) -> ContactInfo | None:
    if not isinstance(raw, dict) or not raw.get("id"):
        return None
    img_url = raw.get("imgUrl")
    return ContactInfo(
        jid=str(raw["id"]),
        name=raw.get("name"),
        notify=raw.get("notify"),
        lid=raw.get("lid") or None,
        phone_number=raw.get("phoneNumber") or raw.get("jid") or None,
        # "changed" means the picture changed but the URL is not known yet.
        img_url=img_url if img_url and img_url != "changed" else None,
    )


def _decode_contacts(items: Any) -> tuple[ContactInfo, ...]:
    return tuple(c for c in (decode_contact(i) for i in items or []) if c is not None)


def _decode_reactions(payload: Any) -> list[ReactionUpdate]:
    updates = []
    for item in payload or []:
        if not isinstance(item, dict):
            continue
        key = item.get("key") or {}
        reaction = item.get("reaction") or {}
        reactor_key = reaction.get("key") or {}
        if not key.get("id"):
            logger.warning("Dropping reaction without target id: %r", item)
            continue
        updates.append(
            ReactionUpdate(
                target_id=str(key["id"]),
                remote_jid=key.get("remoteJid"),
                from_me=bool(reactor_key.get("fromMe", key.get("fromMe", False))),
                emoji=reaction.get("text") or "",
                sender=reactor_key.get("participant") or reactor_key.get("remoteJid"),
                timestamp=parse_timestamp(reaction.get("senderTimestampMs"), millis=True),
            )
        )
    return updates


def decode_event(name: str, payload: Any) -> list[Event]:
    """Decode one transport event into zero or more typed events."""
    if name == "connection.update":
        payload = payload or {}
        last = payload.get("lastDisconnect") or {}
        error = last.get("error") or {}
        status_code = error.get("statusCode")
        if status_code is None:
            status_code = (error.get("output") or {}).get("statusCode")
        return [
            ConnectionUpdate(
                connection=payload.get("connection"),
                qr=payload.get("qr") or None,
                status_code=int(status_code) if status_code is not None else None,
                error=error.get("message"),
            )
        ]
    if name == "creds.update":
        return [CredentialsUpdate(credentials=dict(payload or {}))]
    if name == "messages.upsert":
        payload = payload or {}
        kind = payload.get("type")
        if kind not in ("notify", "append"):
            return []
        return [MessagesUpsert(messages=_decode_messages(payload.get("messages")), live=kind == "notify")]
    if name == "messages.reaction":
        return _decode_reactions(payload)
    if name in ("contacts.upsert", "contacts.update"):
        return [ContactsUpsert(contacts=_decode_contacts(payload), is_update=name == "contacts.update")]
    if name == "messaging-history.set":
        payload = payload or {}
        return [
            HistorySync(
                contacts=_decode_contacts(payload.get("contacts")),
                messages=_decode_messages(payload.get("messages")),
            )
        ]
    return [UnknownEvent(name=name)]
