"""Consistency checks and the recompute maintenance command."""

import os
from datetime import timedelta

import pytest

from core.consistency import recompute_all, run_consistency_checks
from core.contacts import get_contact_by_wa_id
from core.database import db_session
from core.events import decode_message
from core.ingestion import IngestionPipeline
from core.models import Contact, utcnow
from fakes import wa_message

ACCOUNT = "acct-1"
PN = "5551@s.whatsapp.net"


@pytest.fixture
def ingested(session_factory):
    pipeline = IngestionPipeline(ACCOUNT, session_factory)
    now = utcnow()
    for i, days in enumerate((1, 12, 40)):
        pipeline.ingest_message(decode_message(wa_message(f"m{i}", PN, timestamp=now - timedelta(days=days))))


def _by_name(results):
    return {r.name: r for r in results}


def test_clean_history_passes(ingested, session_factory):
    results = run_consistency_checks(session_factory)
    assert all(r.passed for r in results)
    assert sum(r.error_count + r.warning_count for r in results) == 0


def test_drift_and_lagging_last_interaction_are_reported_then_fixed(ingested, session_factory):
    with db_session(session_factory) as db:
        contact = get_contact_by_wa_id(db, ACCOUNT, PN)
        contact.interaction_count_30d = 0
        contact.last_interaction = None
        db.add(Contact(account_id=ACCOUNT, wa_id="42@lid"))

    results = _by_name(run_consistency_checks(session_factory))
    assert results["Interaction counters match messages"].warning_count == 1
    assert results["last_interaction covers latest message"].error_count == 1
    assert results["No contacts keyed by temporary address"].error_count == 1

    assert recompute_all(session_factory, account_id=ACCOUNT) == 2

    results = _by_name(run_consistency_checks(session_factory))
    assert results["Interaction counters match messages"].warning_count == 0
    assert results["last_interaction covers latest message"].error_count == 0
    with db_session(session_factory) as db:
        contact = get_contact_by_wa_id(db, ACCOUNT, PN)
        assert (contact.interaction_count_7d, contact.interaction_count_30d, contact.interaction_count_90d) == (1, 2, 3)


@pytest.mark.integration
def test_checks_run_against_configured_database():
    """Read-only checks over the real database (requires DATABASE_URL)."""
    if not os.environ.get("DATABASE_URL"):
        pytest.skip("DATABASE_URL not set")

    results = run_consistency_checks()
    assert {r.name for r in results} >= {
        "Message-contact account alignment",
        "No contacts keyed by temporary address",
    }
