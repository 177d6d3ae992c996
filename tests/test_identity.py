"""Address parsing, normalization and LID/phone-number resolution."""

import pytest

from core import identity
from core.identity import AddressKind


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("5551@s.whatsapp.net", "5551@s.whatsapp.net"),
        ("5551:12@s.whatsapp.net", "5551@s.whatsapp.net"),
        ("5551_1:3@s.whatsapp.net", "5551@s.whatsapp.net"),
        ("5551@c.us", "5551@s.whatsapp.net"),
        ("1203630@g.us", "1203630@g.us"),
        ("99887766:4@lid", "99887766@lid"),
        ("", None),
        ("no-server", None),
        ("@s.whatsapp.net", None),
    ],
)
def test_normalize(raw, expected):
    assert identity.normalize(raw) == expected


def test_classify():
    assert identity.classify("5551@s.whatsapp.net") is AddressKind.USER
    assert identity.classify("1203630@g.us") is AddressKind.GROUP
    assert identity.classify("123@lid") is AddressKind.LID
    assert identity.classify("status@broadcast") is AddressKind.BROADCAST
    assert identity.classify("120363@newsletter") is AddressKind.BROADCAST
    assert identity.classify("x@example.org") is AddressKind.UNKNOWN


def test_missing_address_is_treated_as_broadcast():
    assert identity.is_broadcast(None)
    assert identity.is_broadcast("status@broadcast")
    assert not identity.is_broadcast("5551@s.whatsapp.net")


def test_phone_number_only_for_user_addresses():
    assert identity.phone_number_of("5551:2@s.whatsapp.net") == "5551"
    assert identity.phone_number_of("123@lid") is None
    assert identity.phone_number_of("1203630@g.us") is None


def test_resolve_lid_needs_a_known_pairing():
    assert identity.resolve("123@lid") is None
    assert identity.resolve("123:7@lid", {"123@lid": "5551@s.whatsapp.net"}) == "5551@s.whatsapp.net"
    assert identity.resolve("123@lid", lambda lid: None) is None


def test_resolve_drops_broadcast_and_unknown():
    assert identity.resolve("status@broadcast") is None
    assert identity.resolve("x@example.org") is None
    assert identity.resolve("1203630@g.us") == "1203630@g.us"


def test_pair_addresses_puts_phone_number_first():
    pair = ("5551@s.whatsapp.net", "123@lid")
    assert identity.pair_addresses("5551:2@s.whatsapp.net", "123@lid") == pair
    assert identity.pair_addresses("123@lid", "5551@s.whatsapp.net") == pair
    assert identity.pair_addresses("5551@s.whatsapp.net", "5552@s.whatsapp.net") is None
    assert identity.pair_addresses("5551@s.whatsapp.net", None) is None


def test_resolution_gives_none_when_normalization_fails(monkeypatch):
    monkeypatch.setattr(identity, "normalize", lambda raw: None)
    assert identity.resolve("123@lid", lambda lid: "5551@s.whatsapp.net") is None
    assert identity.pair_addresses("5551@s.whatsapp.net", "123@lid") is None
