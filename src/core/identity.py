"""WhatsApp address (JID) normalization and canonical contact keys.

Address grammar: ``user[_agent][:device]@server``. Permanent phone-number
addresses (``@s.whatsapp.net``, legacy ``@c.us``) and groups (``@g.us``) are
canonical. Temporary LID addresses (``@lid``) only resolve through a known
pairing. Broadcast/status and newsletter addresses never resolve.

Nothing here touches the database: the alias table is passed in as a lookup.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Callable, Mapping

USER_SERVER = "s.whatsapp.net"
LEGACY_USER_SERVER = "c.us"
GROUP_SERVER = "g.us"
LID_SERVER = "lid"
BROADCAST_SERVER = "broadcast"
NEWSLETTER_SERVER = "newsletter"

AliasLookup = Callable[[str], str | None] | Mapping[str, str]


class AddressKind(str, Enum):
    USER = "user"
    GROUP = "group"
    LID = "lid"
    BROADCAST = "broadcast"
    UNKNOWN = "unknown"


@dataclass(frozen=True, slots=True)
class Jid:
    user: str
    server: str
    device: int | None = None
    agent: str | None = None


def parse_jid(raw: str | None) -> Jid | None:
    if not raw:
        return None
    raw = raw.strip()
    sep = raw.find("@")
    if sep <= 0 or sep == len(raw) - 1:
        return None
    server = raw[sep + 1 :].lower()
    user_agent, _, device_part = raw[:sep].partition(":")
    user, _, agent = user_agent.partition("_")
    if not user:
        return None
    device = int(device_part) if device_part.isdigit() else None
    return Jid(user=user, server=server, device=device, agent=agent or None)


def classify(raw: str | None) -> AddressKind:
    jid = parse_jid(raw)
    if jid is None:
        return AddressKind.UNKNOWN
    if jid.server in (USER_SERVER, LEGACY_USER_SERVER):
        return AddressKind.USER
    if jid.server == GROUP_SERVER:
        return AddressKind.GROUP
    if jid.server == LID_SERVER:
        return AddressKind.LID
    if jid.server in (BROADCAST_SERVER, NEWSLETTER_SERVER):
        return AddressKind.BROADCAST
    return AddressKind.UNKNOWN


def normalize(raw: str | None) -> str | None:
    """Strip device/agent suffixes and map ``c.us`` to ``s.whatsapp.net``."""
    jid = parse_jid(raw)
    if jid is None:
        return None
    server = USER_SERVER if jid.server == LEGACY_USER_SERVER else jid.server
    return f"{jid.user}@{server}"


def is_group(raw: str | None) -> bool:
    return classify(raw) is AddressKind.GROUP


def is_broadcast(raw: str | None) -> bool:
    """Status stories, broadcast lists and channels; missing addresses count too."""
    return not raw or classify(raw) is AddressKind.BROADCAST


def phone_number_of(raw: str | None) -> str | None:
    if classify(raw) is not AddressKind.USER:
        return None
    jid = parse_jid(raw)
    return jid.user if jid else None


def _lookup(aliases: AliasLookup | None, key: str) -> str | None:
    if aliases is None:
        return None
    if callable(aliases):
        return aliases(key)
    return aliases.get(key)


def resolve(raw: str | None, aliases: AliasLookup | None = None) -> str | None:
    """Canonical contact key for ``raw``, or None when the address must be dropped."""
    kind = classify(raw)
    if kind in (AddressKind.USER, AddressKind.GROUP):
        return normalize(raw)
    if kind is AddressKind.LID:
        lid = normalize(raw)
        if lid is None:
            return None
        return _lookup(aliases, lid)
    return None


def pair_addresses(first: str | None, second: str | None) -> tuple[str, str] | None:
    """(canonical, alias) when one address is a phone-number JID and the other a LID."""
    kinds = (classify(first), classify(second))
    if kinds == (AddressKind.USER, AddressKind.LID):
        pn, lid = first, second
    elif kinds == (AddressKind.LID, AddressKind.USER):
        pn, lid = second, first
    else:
        return None
    canonical, alias = normalize(pn), normalize(lid)
    if canonical is None or alias is None:
        return None
    return canonical, alias
