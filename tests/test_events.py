"""Boundary decoding of transport events into the typed event union."""

from datetime import datetime, timezone

import pytest

from core.errors import IngestionError
from core.events import (
    ConnectionUpdate,
    ContactsUpsert,
    CredentialsUpdate,
    HistorySync,
    MessagesUpsert,
    ReactionUpdate,
    UnknownEvent,
    decode_event,
    decode_message,
    parse_timestamp,
)
from fakes import close_event, upsert, wa_message


def test_connection_close_carries_status_code():
    [update] = decode_event(*close_event(401, "Logged Out"))
    assert update == ConnectionUpdate(connection="close", status_code=401, error="Logged Out")


def test_connection_qr():
    [update] = decode_event("connection.update", {"qr": "2@abc"})
    assert update.qr == "2@abc"
    assert update.connection is None


def test_creds_update():
    [update] = decode_event("creds.update", {"me": {"id": "5551:2@s.whatsapp.net"}})
    assert isinstance(update, CredentialsUpdate)
    assert update.credentials["me"]["id"] == "5551:2@s.whatsapp.net"


def test_messages_upsert_live_and_backfill():
    [live] = decode_event(*upsert(wa_message("m1", "5551@s.whatsapp.net")))
    [backfill] = decode_event(*upsert(wa_message("m2", "5551@s.whatsapp.net"), live=False))
    assert isinstance(live, MessagesUpsert) and live.live
    assert not backfill.live
    assert live.messages[0].wa_message_id == "m1"


def test_messages_upsert_ignores_other_types():
    assert decode_event("messages.upsert", {"type": "prepend", "messages": []}) == []


def test_malformed_messages_are_dropped_from_batch():
    payload = {"type": "notify", "messages": [{"key": {}}, "junk", wa_message("m1", "5551@s.whatsapp.net")]}
    [event] = decode_event("messages.upsert", payload)
    assert [m.wa_message_id for m in event.messages] == ["m1"]


def test_decode_message_requires_id_and_remote():
    with pytest.raises(IngestionError):
        decode_message({"key": {"id": "m1"}})
    with pytest.raises(IngestionError):
        decode_message({"message": {}})


def test_decode_message_fields():
    msg = decode_message(
        wa_message(
            "m1",
            "123@lid",
            timestamp=1700000000,
            push_name="Ana",
            remoteJidAlt="5551@s.whatsapp.net",
        )
    )
    assert msg.remote_jid_alt == "5551@s.whatsapp.net"
    assert msg.push_name == "Ana"
    assert msg.timestamp == datetime(2023, 11, 14, 22, 13, 20, tzinfo=timezone.utc)


def test_reactions():
    payload = [
        {
            "key": {"id": "m1", "remoteJid": "5551@s.whatsapp.net", "fromMe": False},
            "reaction": {"text": "👍", "key": {"fromMe": True}, "senderTimestampMs": 1700000000000},
        },
        {"key": {}, "reaction": {"text": "x"}},
    ]
    [reaction] = decode_event("messages.reaction", payload)
    assert reaction == ReactionUpdate(
        target_id="m1",
        remote_jid="5551@s.whatsapp.net",
        from_me=True,
        emoji="👍",
        sender=None,
        timestamp=datetime(2023, 11, 14, 22, 13, 20, tzinfo=timezone.utc),
    )


def test_contacts_and_history():
    [contacts] = decode_event(
        "contacts.update", [{"id": "5551@s.whatsapp.net", "imgUrl": "changed"}, {"name": "no id"}]
    )
    assert isinstance(contacts, ContactsUpsert) and contacts.is_update
    assert len(contacts.contacts) == 1
    assert contacts.contacts[0].img_url is None

    [history] = decode_event(
        "messaging-history.set",
        {"contacts": [{"id": "5551@s.whatsapp.net", "name": "Ana"}], "messages": [wa_message("m1", "5551@s.whatsapp.net")]},
    )
    assert isinstance(history, HistorySync)
    assert history.contacts[0].name == "Ana"
    assert len(history.messages) == 1


def test_unknown_event():
    assert decode_event("presence.update", {}) == [UnknownEvent(name="presence.update")]


def test_parse_timestamp_forms():
    expected = datetime(2023, 11, 14, 22, 13, 20, tzinfo=timezone.utc)
    assert parse_timestamp(1700000000) == expected
    assert parse_timestamp("1700000000") == expected
    assert parse_timestamp({"low": 1700000000, "high": 0}) == expected
    assert parse_timestamp(1700000000000, millis=True) == expected
    assert parse_timestamp(None) is None
    assert parse_timestamp("soon") is None
