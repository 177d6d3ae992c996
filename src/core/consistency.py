"""
Consistency checks for contacts and messages, plus counter maintenance.

Run: python main.py check        (read-only)
     python main.py recompute    (rewrites counters and last_interaction)

Validates:
- Every message belongs to a contact of the same account.
- No contact is keyed by a temporary (@lid) address; those are aliases only.
- Maintained 7/30/90-day counters equal a fresh count over messages.
- last_interaction is not behind the contact's latest message.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy import func, select, text

from core.database import SessionFactory, db_session
from core.models import Contact, Message, as_utc, utcnow
from core.stats import count_interactions, recompute_interaction_counts

logger = logging.getLogger(__name__)

DETAIL_CAP = 100


@dataclass
class CheckResult:
    name: str
    passed: bool
    error_count: int = 0
    warning_count: int = 0
    details: list[str] = field(default_factory=list)


def _capped(lines: list[str]) -> list[str]:
    if len(lines) <= DETAIL_CAP:
        return lines
    return lines[:DETAIL_CAP] + [f"  ... and {len(lines) - DETAIL_CAP} more"]


def _run_check_message_contact_account(session) -> CheckResult:
    """A message and its contact must belong to the same account."""
    rows = session.execute(
        text("""
            SELECT m.id, m.account_id, c.id, c.account_id
            FROM messages m
            JOIN contacts c ON c.id = m.contact_id
            WHERE m.account_id <> c.account_id
            ORDER BY m.id
        """)
    ).fetchall()
    if not rows:
        return CheckResult("Message-contact account alignment", True)
    details = [
        f"  message_id={r[0]} account={r[1]!r} contact_id={r[2]} contact.account={r[3]!r}" for r in rows
    ]
    return CheckResult(
        "Message-contact account alignment", False, error_count=len(rows), details=_capped(details)
    )


def _run_check_no_lid_contacts(session) -> CheckResult:
    """Temporary addresses live in alias_wa_id, never in wa_id."""
    rows = session.execute(
        select(Contact.id, Contact.account_id, Contact.wa_id)
        .where(Contact.wa_id.like("%@lid"))
        .order_by(Contact.id)
    ).all()
    if not rows:
        return CheckResult("No contacts keyed by temporary address", True)
    details = [f"  contact_id={r[0]} account={r[1]!r} wa_id={r[2]!r}" for r in rows]
    return CheckResult(
        "No contacts keyed by temporary address", False, error_count=len(rows), details=_capped(details)
    )


def _run_check_counters(session, now: datetime) -> CheckResult:
    """Maintained counters drift only if a post-commit refresh failed."""
    contacts = session.execute(
        select(Contact).where(Contact.stats_updated_at.is_not(None)).order_by(Contact.id)
    ).scalars().all()
    drifted = []
    for contact in contacts:
        fresh = count_interactions(session, contact.account_id, contact.id, now)
        stored = (
            contact.interaction_count_7d or 0,
            contact.interaction_count_30d or 0,
            contact.interaction_count_90d or 0,
        )
        if stored != (fresh.count_7d, fresh.count_30d, fresh.count_90d):
            drifted.append(
                f"  contact_id={contact.id} stored={stored} "
                f"fresh={(fresh.count_7d, fresh.count_30d, fresh.count_90d)}"
            )
    if not drifted:
        return CheckResult("Interaction counters match messages", True)
    # Windows slide with time, so drift is expected between refreshes.
    return CheckResult(
        "Interaction counters match messages", True, warning_count=len(drifted), details=_capped(drifted)
    )


def _latest_by_contact(session) -> dict[int, datetime]:
    rows = session.execute(
        select(Message.contact_id, func.max(Message.timestamp)).group_by(Message.contact_id)
    ).all()
    return {contact_id: as_utc(latest) for contact_id, latest in rows}


def _run_check_last_interaction(session) -> CheckResult:
    latest = _latest_by_contact(session)
    behind = []
    for contact in session.execute(select(Contact).where(Contact.id.in_(list(latest)))).scalars().all():
        last = as_utc(contact.last_interaction)
        if last is None or last < latest[contact.id]:
            behind.append(
                f"  contact_id={contact.id} last_interaction={last} latest_message={latest[contact.id]}"
            )
    if not behind:
        return CheckResult("last_interaction covers latest message", True)
    return CheckResult(
        "last_interaction covers latest message", False, error_count=len(behind), details=_capped(behind)
    )


def run_consistency_checks(session_factory: SessionFactory | None = None) -> list[CheckResult]:
    """Run all read-only consistency checks. No writes."""
    now = utcnow()
    results: list[CheckResult] = []
    with db_session(session_factory) as session:
        results.append(_run_check_message_contact_account(session))
        results.append(_run_check_no_lid_contacts(session))
        results.append(_run_check_counters(session, now))
        results.append(_run_check_last_interaction(session))
    return results


def recompute_all(session_factory: SessionFactory | None = None, account_id: str | None = None) -> int:
    """Recompute every contact's counters and bring last_interaction up to its latest message."""
    with db_session(session_factory) as session:
        stmt = select(Contact.id, Contact.account_id).order_by(Contact.id)
        if account_id:
            stmt = stmt.where(Contact.account_id == account_id)
        targets = session.execute(stmt).all()
        latest = _latest_by_contact(session)

    now = utcnow()
    updated = 0
    for contact_id, owner in targets:
        with db_session(session_factory) as session:
            recompute_interaction_counts(session, owner, contact_id, now)
            if contact_id in latest:
                contact = session.get(Contact, contact_id)
                last = as_utc(contact.last_interaction)
                if last is None or last < latest[contact_id]:
                    contact.last_interaction = latest[contact_id]
        updated += 1
    logger.info("Recomputed counters for %d contacts", updated)
    return updated


def print_report(results: list[CheckResult]) -> None:
    for r in results:
        status = "PASS" if r.passed and r.error_count == 0 else "FAIL"
        w = f" ({r.warning_count} warnings)" if r.warning_count else ""
        print(f"[{status}] {r.name}{w}")
        for line in r.details:
            print(line)
        if r.details:
            print()
    errors = sum(x.error_count for x in results)
    warnings = sum(x.warning_count for x in results)
    if errors:
        print(f"Total: {errors} error(s), {warnings} warning(s); data is inconsistent.")
    elif warnings:
        print(f"Total: 0 errors, {warnings} warning(s); run `recompute` to refresh counters.")
    else:
        print("Total: 0 errors, 0 warnings; data is consistent.")
