"""Relationship dashboard over a small, fixed history."""

from datetime import timedelta

import pytest

from core import analytics
from core.contacts import get_contact_by_wa_id, get_or_create_contact, update_contact
from core.database import db_session
from core.events import decode_message
from core.ingestion import IngestionPipeline
from core.models import utcnow
from fakes import wa_message

ACCOUNT = "acct-1"
ANA, BRUNO, CAIO, DORA, EVA = (f"555{i}@s.whatsapp.net" for i in range(1, 6))


@pytest.fixture
def now():
    return utcnow().replace(hour=12, minute=0, second=0, microsecond=0)


@pytest.fixture
def history(session_factory, now):
    pipeline = IngestionPipeline(ACCOUNT, session_factory)

    def ingest(wa_id, remote, hours_ago, **kwargs):
        raw = wa_message(wa_id, remote, f"msg {wa_id}", timestamp=now - timedelta(hours=hours_ago), **kwargs)
        pipeline.ingest_message(decode_message(raw))

    ingest("a1", ANA, 30)
    ingest("b1", BRUNO, 80)
    ingest("c1", CAIO, 3)
    ingest("c2", CAIO, 1, from_me=True)
    ingest("d1", DORA, 2)

    birthday = (now + timedelta(days=3)).date().replace(year=1992)
    with db_session(session_factory) as db:
        eva = get_or_create_contact(db, ACCOUNT, EVA)
        for wa_id, changes in (
            (ANA, {"contact_frequency": "daily", "birthday": birthday.isoformat()}),
            (BRUNO, {"contact_frequency": "daily"}),
            (CAIO, {"contact_frequency": "weekly"}),
        ):
            update_contact(db, ACCOUNT, get_contact_by_wa_id(db, ACCOUNT, wa_id).id, changes)
        update_contact(db, ACCOUNT, eva.id, {"contact_frequency": "weekly"})


def _dashboard(session_factory, now):
    with db_session(session_factory) as db:
        return analytics.dashboard(db, ACCOUNT, now=now)


def test_awaiting_replies_oldest_first_with_urgency(history, session_factory, now):
    awaiting = _dashboard(session_factory, now)["awaiting_replies"]
    assert [(a["wa_id"], a["urgency"]) for a in awaiting] == [
        (BRUNO, "high"),
        (ANA, "medium"),
        (DORA, "low"),
    ]
    assert awaiting[0]["last_message_snippet"] == "msg b1"


def test_contacts_to_reach_out_and_health(history, session_factory, now):
    result = _dashboard(session_factory, now)

    assert [c["wa_id"] for c in result["to_contact"]] == [EVA, BRUNO, ANA]
    assert result["to_contact"][1]["days_overdue"] == 2
    assert result["to_contact"][1]["urgency"] == "high"
    assert result["to_contact"][2]["urgency"] == "low"

    health = result["relationship_health"]
    assert health["total"] == 4
    assert health["on_track"] == 2
    assert health["at_risk"] == 2
    assert health["score"] == 50
    assert health["top_suggestion"].startswith("Check in with 5555 (")


def test_activity_summaries(history, session_factory, now):
    result = _dashboard(session_factory, now)
    assert result["today"] == {"total_messages": 3, "sent": 1, "received": 2, "unique_contacts": 2}
    assert result["active_contacts"]["today"] == 2
    assert result["active_contacts"]["last_7_days"] == 4
    assert result["active_contacts"]["total"] == 5
    assert result["weekly_insights"]["weekly_messages"] == 5
    [birthday] = result["upcoming_birthdays"]
    assert birthday["wa_id"] == ANA
    assert birthday["days_until"] == 3
    assert birthday["urgency"] == "high"


def test_health_is_perfect_without_targets(session_factory, now):
    result = _dashboard(session_factory, now)
    assert result["relationship_health"]["score"] == 100
    assert result["relationship_health"]["top_suggestion"] is None
    assert result["awaiting_replies"] == []


def test_reply_urgency_thresholds():
    assert analytics.reply_urgency(timedelta(hours=2)) == "low"
    assert analytics.reply_urgency(timedelta(hours=25)) == "medium"
    assert analytics.reply_urgency(timedelta(hours=73)) == "high"
