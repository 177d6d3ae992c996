"""Decode the loosely-typed WhatsApp ``message`` payload into a closed set of content types.

This is the only place that inspects raw payload shape. Everything downstream
works with the dataclasses below.
"""

from dataclasses import dataclass, field
from typing import Any, ClassVar

from core.models import MessageType

# Containers whose ``message`` field holds the real content.
_WRAPPERS = (
    "ephemeralMessage",
    "viewOnceMessage",
    "viewOnceMessageV2",
    "viewOnceMessageV2Extension",
    "documentWithCaptionMessage",
    "deviceSentMessage",
)

_MEDIA_KINDS: dict[str, MessageType] = {
    "imageMessage": MessageType.IMAGE,
    "videoMessage": MessageType.VIDEO,
    "ptvMessage": MessageType.VIDEO,
    "audioMessage": MessageType.AUDIO,
    "documentMessage": MessageType.DOCUMENT,
    "stickerMessage": MessageType.STICKER,
}

_POLL_KEYS = ("pollCreationMessage", "pollCreationMessageV2", "pollCreationMessageV3")

# Carry no user-visible content of their own.
_PROTOCOL_KEYS = (
    "protocolMessage",
    "pollUpdateMessage",
    "senderKeyDistributionMessage",
    "editedMessage",
    "keepInChatMessage",
    "encReactionMessage",
    "callLogMesssage",
)

# Ignored when deciding what a message "is".
_METADATA_KEYS = ("messageContextInfo", "senderKeyDistributionMessage")


@dataclass(frozen=True, slots=True)
class QuotedRef:
    wa_message_id: str
    body: str | None = None
    participant: str | None = None


@dataclass(frozen=True, slots=True)
class MessageContext:
    """Reply reference and mentions from ``contextInfo``."""

    quoted: QuotedRef | None = None
    mentioned: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class Content:
    message_type: ClassVar[MessageType] = MessageType.OTHER
    body: str | None = None
    context: MessageContext = field(default_factory=MessageContext)

    @property
    def has_media(self) -> bool:
        return False


@dataclass(frozen=True, slots=True)
class TextContent(Content):
    message_type: ClassVar[MessageType] = MessageType.TEXT


@dataclass(frozen=True, slots=True)
class MediaContent(Content):
    kind: MessageType = MessageType.DOCUMENT
    mime_type: str | None = None
    file_name: str | None = None
    file_length: int | None = None

    @property
    def has_media(self) -> bool:
        return True

    @property
    def message_type(self) -> MessageType:  # type: ignore[override]
        return self.kind


@dataclass(frozen=True, slots=True)
class LocationContent(Content):
    message_type: ClassVar[MessageType] = MessageType.LOCATION
    latitude: float | None = None
    longitude: float | None = None
    name: str | None = None
    address: str | None = None


@dataclass(frozen=True, slots=True)
class ContactCardContent(Content):
    message_type: ClassVar[MessageType] = MessageType.CONTACT
    display_name: str | None = None
    vcards: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class PollContent(Content):
    message_type: ClassVar[MessageType] = MessageType.POLL
    options: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class UnknownContent(Content):
    """Unrecognized structure: stored as OTHER with a null body."""

    keys: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class ReactionContent(Content):
    """A reaction sent as a message; routed to the reaction path, never stored as a message."""

    target_id: str = ""
    target_remote_jid: str | None = None
    target_from_me: bool = False
    emoji: str = ""


@dataclass(frozen=True, slots=True)
class ProtocolContent(Content):
    """No user-visible content (revokes, edits, poll votes, key distribution, empty stubs)."""

    kind: str = "empty"


def _unwrap(message: dict[str, Any]) -> dict[str, Any]:
    for _ in range(4):
        for key in _WRAPPERS:
            inner = message.get(key)
            if isinstance(inner, dict) and isinstance(inner.get("message"), dict):
                message = inner["message"]
                break
        else:
            return message
    return message


def _as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _text(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value
    return None


def _int(value: Any) -> int | None:
    if isinstance(value, dict):  # protobuf Long as {"low": .., "high": ..}
        low, high = value.get("low", 0) or 0, value.get("high", 0) or 0
        return (int(high) << 32) + (int(low) & 0xFFFFFFFF)
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def extract_body(message: dict[str, Any]) -> str | None:
    """Plain text > extended text > media caption > poll title."""
    body = _text(message.get("conversation"))
    if body:
        return body
    body = _text(_as_dict(message.get("extendedTextMessage")).get("text"))
    if body:
        return body
    for key in ("imageMessage", "videoMessage", "documentMessage"):
        body = _text(_as_dict(message.get(key)).get("caption"))
        if body:
            return body
    for key in _POLL_KEYS:
        body = _text(_as_dict(message.get(key)).get("name"))
        if body:
            return body
    return None


def _context_info(message: dict[str, Any]) -> dict[str, Any]:
    for value in message.values():
        if isinstance(value, dict) and isinstance(value.get("contextInfo"), dict):
            return value["contextInfo"]
    return {}


def extract_context(message: dict[str, Any]) -> MessageContext:
    info = _context_info(message)
    if not info:
        return MessageContext()
    quoted = None
    stanza_id = info.get("stanzaId")
    if isinstance(stanza_id, str) and stanza_id:
        quoted_message = _as_dict(info.get("quotedMessage"))
        quoted = QuotedRef(
            wa_message_id=stanza_id,
            body=extract_body(_unwrap(quoted_message)) if quoted_message else None,
            participant=info.get("participant") or None,
        )
    mentioned = tuple(
        jid for jid in (info.get("mentionedJid") or []) if isinstance(jid, str) and jid
    )
    return MessageContext(quoted=quoted, mentioned=mentioned)


def decode_content(message: dict[str, Any] | None) -> Content:
    """Decode a raw ``message`` object. Never raises on unexpected shapes."""
    if not isinstance(message, dict) or not message:
        return ProtocolContent(kind="empty")
    message = _unwrap(message)

    reaction = message.get("reactionMessage")
    if isinstance(reaction, dict):
        key = _as_dict(reaction.get("key"))
        return ReactionContent(
            target_id=str(key.get("id") or ""),
            target_remote_jid=key.get("remoteJid"),
            target_from_me=bool(key.get("fromMe")),
            emoji=reaction.get("text") or "",
        )

    meaningful = [k for k in message if k not in _METADATA_KEYS and message[k] is not None]
    if not meaningful:
        return ProtocolContent(kind="empty")
    for key in _PROTOCOL_KEYS:
        if key in meaningful:
            return ProtocolContent(kind=key)

    body = extract_body(message)
    context = extract_context(message)

    for key, kind in _MEDIA_KINDS.items():
        media = message.get(key)
        if isinstance(media, dict):
            return MediaContent(
                kind=kind,
                body=body,
                context=context,
                mime_type=media.get("mimetype") or None,
                file_name=media.get("fileName") or None,
                file_length=_int(media.get("fileLength")),
            )

    for key in ("locationMessage", "liveLocationMessage"):
        location = message.get(key)
        if isinstance(location, dict):
            return LocationContent(
                body=body,
                context=context,
                latitude=location.get("degreesLatitude"),
                longitude=location.get("degreesLongitude"),
                name=location.get("name"),
                address=location.get("address"),
            )

    if isinstance(message.get("contactMessage"), dict):
        card = message["contactMessage"]
        return ContactCardContent(
            body=body,
            context=context,
            display_name=card.get("displayName"),
            vcards=tuple(v for v in [card.get("vcard")] if v),
        )
    if isinstance(message.get("contactsArrayMessage"), dict):
        cards = message["contactsArrayMessage"]
        return ContactCardContent(
            body=body,
            context=context,
            display_name=cards.get("displayName"),
            vcards=tuple(
                c.get("vcard") for c in cards.get("contacts") or [] if isinstance(c, dict) and c.get("vcard")
            ),
        )

    for key in _POLL_KEYS:
        poll = message.get(key)
        if isinstance(poll, dict):
            return PollContent(
                body=body,
                context=context,
                options=tuple(
                    o.get("optionName") for o in poll.get("options") or []
                    if isinstance(o, dict) and o.get("optionName")
                ),
            )

    if "conversation" in message or "extendedTextMessage" in message:
        return TextContent(body=body, context=context)

    return UnknownContent(context=context, keys=tuple(sorted(meaningful)))
