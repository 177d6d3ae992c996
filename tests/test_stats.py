"""Interaction counters, staleness policy, conversations projection, read state."""

from datetime import timedelta

import pytest

from core.contacts import get_contact_by_wa_id, update_contact
from core.database import db_session
from core.events import decode_message
from core.ingestion import IngestionPipeline
from core.messages import mark_read
from core.models import Contact, utcnow
from core.stats import (
    count_interactions,
    counters_need_refresh,
    get_contact_stats,
    list_conversations,
    recompute_interaction_counts,
)
from fakes import wa_message

ACCOUNT = "acct-1"


@pytest.fixture
def ingest(session_factory):
    pipeline = IngestionPipeline(ACCOUNT, session_factory)

    def _ingest(wa_message_id, remote, text="hi", **kwargs):
        return pipeline.ingest_message(decode_message(wa_message(wa_message_id, remote, text, **kwargs)))

    return _ingest


def test_maintained_counters_equal_recomputed(ingest, db):
    now = utcnow()
    for i, days in enumerate((0, 2, 10, 45, 100)):
        ingest(f"m{i}", "5551@s.whatsapp.net", timestamp=now - timedelta(days=days, minutes=5))

    contact = get_contact_by_wa_id(db, ACCOUNT, "5551@s.whatsapp.net")
    fresh = count_interactions(db, ACCOUNT, contact.id)
    maintained = (contact.interaction_count_7d, contact.interaction_count_30d, contact.interaction_count_90d)
    assert maintained == (fresh.count_7d, fresh.count_30d, fresh.count_90d) == (2, 3, 4)


def test_recompute_repairs_drifted_counters(ingest, session_factory):
    ingest("m1", "5551@s.whatsapp.net")
    with db_session(session_factory) as db:
        contact = get_contact_by_wa_id(db, ACCOUNT, "5551@s.whatsapp.net")
        contact.interaction_count_7d = 99
        contact_id = contact.id
    with db_session(session_factory) as db:
        counts = recompute_interaction_counts(db, ACCOUNT, contact_id)
        assert counts.count_7d == 1
        assert get_contact_by_wa_id(db, ACCOUNT, "5551@s.whatsapp.net").interaction_count_7d == 1


def test_recompute_unknown_contact_returns_none(db):
    assert recompute_interaction_counts(db, ACCOUNT, 12345) is None


def test_counters_need_refresh_policy():
    now = utcnow()
    assert counters_need_refresh(Contact(), now)
    fresh = Contact(stats_updated_at=now - timedelta(minutes=5), interaction_count_90d=3, last_interaction=now)
    assert not counters_need_refresh(fresh, now)
    stale = Contact(stats_updated_at=now - timedelta(hours=2), interaction_count_90d=3, last_interaction=now)
    assert counters_need_refresh(stale, now)
    zero_but_recent = Contact(
        stats_updated_at=now - timedelta(minutes=5), interaction_count_90d=0, last_interaction=now - timedelta(days=1)
    )
    assert counters_need_refresh(zero_but_recent, now)
    zero_and_quiet = Contact(
        stats_updated_at=now - timedelta(minutes=5), interaction_count_90d=0, last_interaction=now - timedelta(days=200)
    )
    assert not counters_need_refresh(zero_and_quiet, now)


def test_contact_stats_refreshes_stale_counters(ingest, session_factory):
    ingest("m1", "5551@s.whatsapp.net")
    ingest("m2", "5551@s.whatsapp.net", from_me=True)
    with db_session(session_factory) as db:
        contact = get_contact_by_wa_id(db, ACCOUNT, "5551@s.whatsapp.net")
        contact.interaction_count_7d = contact.interaction_count_30d = contact.interaction_count_90d = 0
        contact.stats_updated_at = utcnow() - timedelta(days=2)
        contact_id = contact.id

    with db_session(session_factory) as db:
        stats = get_contact_stats(db, ACCOUNT, contact_id)

    assert stats["interaction_count_7d"] == 2
    assert stats["total_messages"] == 2
    assert stats["sent_by_user"] == 1
    assert stats["received_from_contact"] == 1
    with db_session(session_factory) as db:
        assert get_contact_stats(db, ACCOUNT, 999) is None


def test_conversations_ordered_by_latest_message(ingest, session_factory):
    now = utcnow()
    ingest("a1", "5551@s.whatsapp.net", timestamp=now - timedelta(hours=5))
    ingest("a2", "5551@s.whatsapp.net", timestamp=now - timedelta(hours=3))
    ingest("b1", "5552@s.whatsapp.net", "latest", timestamp=now - timedelta(hours=1))
    ingest("c1", "5553@s.whatsapp.net", timestamp=now - timedelta(hours=8))
    with db_session(session_factory) as db:
        db.add(Contact(account_id=ACCOUNT, wa_id="5554@s.whatsapp.net", name="No messages"))

    with db_session(session_factory) as db:
        page = list_conversations(db, ACCOUNT, limit=2)
        rest = list_conversations(db, ACCOUNT, limit=2, offset=2)
        everything = list_conversations(db, ACCOUNT)

    assert [c["contact"]["wa_id"] for c in page.conversations] == ["5552@s.whatsapp.net", "5551@s.whatsapp.net"]
    assert page.has_more
    assert page.conversations[0]["last_message"]["body"] == "latest"
    assert page.conversations[1]["last_message"]["wa_message_id"] == "a2"
    assert [c["contact"]["wa_id"] for c in rest.conversations] == ["5553@s.whatsapp.net"]
    assert not rest.has_more
    assert len(everything.conversations) == 3
    assert not everything.has_more


def test_conversations_are_scoped_and_searchable(ingest, session_factory):
    ingest("a1", "5551@s.whatsapp.net", push_name="Ana Lima")
    ingest("b1", "5552@s.whatsapp.net", push_name="Bruno")
    IngestionPipeline("other", session_factory).ingest_message(
        decode_message(wa_message("x1", "5553@s.whatsapp.net"))
    )

    with db_session(session_factory) as db:
        found = list_conversations(db, ACCOUNT, search="lima")
        by_number = list_conversations(db, ACCOUNT, search="5552")
        scoped = list_conversations(db, ACCOUNT)

    assert [c["contact"]["push_name"] for c in found.conversations] == ["Ana Lima"]
    assert [c["contact"]["wa_id"] for c in by_number.conversations] == ["5552@s.whatsapp.net"]
    assert len(scoped.conversations) == 2


def test_mark_read_is_idempotent(ingest, session_factory):
    ingest("m1", "5551@s.whatsapp.net")
    ingest("m2", "5551@s.whatsapp.net")
    ingest("m3", "5551@s.whatsapp.net", from_me=True)
    with db_session(session_factory) as db:
        contact_id = get_contact_by_wa_id(db, ACCOUNT, "5551@s.whatsapp.net").id
        assert list_conversations(db, ACCOUNT).conversations[0]["unread_count"] == 2

    with db_session(session_factory) as db:
        assert mark_read(db, ACCOUNT, contact_id) == 2
    with db_session(session_factory) as db:
        assert mark_read(db, ACCOUNT, contact_id) == 0
        assert list_conversations(db, ACCOUNT).conversations[0]["unread_count"] == 0


def test_limit_is_clamped(ingest, session_factory):
    for i in range(3):
        ingest(f"m{i}", f"555{i}@s.whatsapp.net")
    with db_session(session_factory) as db:
        assert len(list_conversations(db, ACCOUNT, limit=0).conversations) == 1
        assert len(list_conversations(db, ACCOUNT, limit=10_000).conversations) == 3


def test_contact_edits_do_not_touch_counters(ingest, session_factory):
    ingest("m1", "5551@s.whatsapp.net")
    with db_session(session_factory) as db:
        contact = get_contact_by_wa_id(db, ACCOUNT, "5551@s.whatsapp.net")
        update_contact(db, ACCOUNT, contact.id, {"notes": "met at conf"})
    with db_session(session_factory) as db:
        contact = get_contact_by_wa_id(db, ACCOUNT, "5551@s.whatsapp.net")
        assert contact.notes == "met at conf"
        assert contact.interaction_count_7d == 1
