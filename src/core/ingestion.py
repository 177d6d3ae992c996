"""Turn typed connection events into idempotent, identity-resolved writes.

``IngestionPipeline`` is synchronous (one transaction per event, SQLAlchemy
sessions). ``EventDispatcher`` is the single async consumer of the event
union: it runs the pipeline off the event loop and, only after a commit,
publishes notifications and queues media offload.
"""

import asyncio
import logging
from collections import Counter
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable

from core import identity
from core.contacts import (
    SAVED_MESSAGES_NAME,
    AliasTable,
    apply_contact_info,
    contact_summary,
    get_or_create_contact,
)
from core.content import MediaContent, ProtocolContent, ReactionContent
from core.database import SessionFactory, db_session
from core.events import (
    ContactInfo,
    ContactsUpsert,
    Event,
    HistorySync,
    InboundMessage,
    MessagesUpsert,
    ReactionUpdate,
    decode_contact,
    decode_message,
)
from core.media import MediaJob, MediaOffloadWorker
from core.messages import find_message_id, insert_message, serialize_message, set_reaction
from core.models import Message, as_utc
from core.notifier import NEW_MESSAGE, Notifier
from core.stats import on_message_committed

logger = logging.getLogger(__name__)

REACTION = "reaction"


class IngestOutcome(str, Enum):
    ACCEPTED = "accepted"
    DUPLICATE = "duplicate"
    DROPPED = "dropped"


@dataclass
class IngestResult:
    outcome: IngestOutcome
    reason: str | None = None
    message: dict[str, Any] | None = None
    contact: dict[str, Any] | None = None
    media_job: MediaJob | None = None


def _dropped(reason: str) -> IngestResult:
    return IngestResult(IngestOutcome.DROPPED, reason=reason)


def _unique(values: Iterable[str | None]) -> list[str]:
    seen: dict[str, None] = {}
    for v in values:
        if v:
            seen.setdefault(v, None)
    return list(seen)


class IngestionPipeline:
    def __init__(
        self,
        account_id: str,
        session_factory: SessionFactory | None = None,
        self_jid: str | None = None,
    ) -> None:
        self.account_id = account_id
        self.session_factory = session_factory
        self.self_jid = self_jid

    def ingest_message(self, msg: InboundMessage) -> IngestResult:
        try:
            return self._ingest_message(msg)
        except Exception:
            logger.exception(
                "account=%s failed to ingest message %s; dropped", self.account_id, msg.wa_message_id
            )
            return _dropped("error")

    def _ingest_message(self, msg: InboundMessage) -> IngestResult:
        if identity.is_broadcast(msg.remote_jid):
            return _dropped("broadcast")
        content = msg.content
        if isinstance(content, ReactionContent):
            return self.ingest_reaction(
                ReactionUpdate(
                    target_id=content.target_id,
                    remote_jid=content.target_remote_jid or msg.remote_jid,
                    from_me=msg.from_me,
                    emoji=content.emoji,
                    sender=msg.participant or msg.remote_jid,
                    timestamp=msg.timestamp,
                )
            )
        if isinstance(content, ProtocolContent):
            return _dropped(f"protocol:{content.kind}")

        with db_session(self.session_factory) as db:
            if find_message_id(db, self.account_id, msg.wa_message_id) is not None:
                return IngestResult(IngestOutcome.DUPLICATE)

            aliases = AliasTable(db, self.account_id)
            group = identity.is_group(msg.remote_jid)
            if not group:
                aliases.record(msg.remote_jid, msg.remote_jid_alt)
            canonical = aliases.resolve(msg.remote_jid) or aliases.resolve(msg.remote_jid_alt)
            if canonical is None:
                logger.info(
                    "account=%s dropping %s: no canonical address for %s",
                    self.account_id,
                    msg.wa_message_id,
                    msg.remote_jid,
                )
                return _dropped("unresolvable")

            participant = participant_alt = None
            if group and msg.participant:
                aliases.record(msg.participant, msg.participant_alt)
                participant = identity.normalize(msg.participant)
                participant_alt = identity.normalize(msg.participant_alt)

            contact = get_or_create_contact(db, self.account_id, canonical)
            if self.self_jid and identity.normalize(self.self_jid) == canonical:
                contact.name = contact.push_name = SAVED_MESSAGES_NAME
            elif msg.push_name and not msg.from_me and not group:
                contact.push_name = msg.push_name

            quoted = content.context.quoted
            message = Message(
                account_id=self.account_id,
                contact_id=contact.id,
                wa_message_id=msg.wa_message_id,
                from_me=msg.from_me,
                timestamp=msg.timestamp,
                message_type=content.message_type.value,
                body_text=content.body,
                has_media=content.has_media,
                quoted_wa_message_id=quoted.wa_message_id if quoted else None,
                quoted_body=quoted.body if quoted else None,
                quoted_message_id=(
                    find_message_id(db, self.account_id, quoted.wa_message_id) if quoted else None
                ),
                participant=participant,
                participant_alt=participant_alt,
                participant_push_name=msg.push_name if group and not msg.from_me else None,
                mentions=_unique(aliases.resolve(j) for j in content.context.mentioned) or None,
                is_read=msg.from_me,
            )
            if not insert_message(db, message):
                return IngestResult(IngestOutcome.DUPLICATE)

            last = as_utc(contact.last_interaction)
            if last is None or msg.timestamp > last:
                contact.last_interaction = msg.timestamp
            db.flush()

            contact_id = contact.id
            result = IngestResult(
                IngestOutcome.ACCEPTED,
                message=serialize_message(message),
                contact=contact_summary(contact),
            )
            if isinstance(content, MediaContent):
                result.media_job = MediaJob(
                    account_id=self.account_id,
                    message_id=message.id,
                    contact_id=contact_id,
                    wa_message_id=msg.wa_message_id,
                    raw=msg.raw,
                    mime_type=content.mime_type,
                    file_name=content.file_name,
                )

        # The message is committed; counter failures must not undo it.
        try:
            with db_session(self.session_factory) as db:
                on_message_committed(db, self.account_id, contact_id)
        except Exception:
            logger.exception("account=%s counter refresh failed for contact=%s", self.account_id, contact_id)
        return result

    def ingest_reaction(self, update: ReactionUpdate) -> IngestResult:
        try:
            with db_session(self.session_factory) as db:
                message_id = find_message_id(db, self.account_id, update.target_id)
                if message_id is None:
                    logger.debug("account=%s reaction to unknown message %s", self.account_id, update.target_id)
                    return _dropped("unknown_target")
                set_reaction(
                    db,
                    self.account_id,
                    message_id,
                    from_me=update.from_me,
                    emoji=update.emoji,
                    sender=identity.normalize(update.sender),
                    reacted_at=update.timestamp,
                )
                return IngestResult(
                    IngestOutcome.ACCEPTED,
                    message={
                        "id": message_id,
                        "wa_message_id": update.target_id,
                        "reaction": {"emoji": update.emoji, "from_me": update.from_me},
                    },
                )
        except Exception:
            logger.exception("account=%s failed to apply reaction to %s", self.account_id, update.target_id)
            return _dropped("error")

    def upsert_contacts(self, contacts: Iterable[ContactInfo]) -> int:
        applied = 0
        for info in contacts:
            try:
                with db_session(self.session_factory) as db:
                    if apply_contact_info(db, AliasTable(db, self.account_id), info) is not None:
                        applied += 1
            except Exception:
                logger.exception("account=%s failed to upsert contact %s", self.account_id, info.jid)
        return applied

    def sync_contacts(self, snapshot: Iterable[dict[str, Any]]) -> int:
        """Contact backfill from the connection's own contact store."""
        infos = [c for c in (decode_contact(raw) for raw in snapshot) if c is not None]
        applied = self.upsert_contacts(infos)
        logger.info("account=%s synced %d contacts from store", self.account_id, applied)
        return applied


class EventDispatcher:
    """filter -> resolve -> persist -> notify, for every data event of one account."""

    def __init__(
        self,
        pipeline: IngestionPipeline,
        notifier: Notifier | None = None,
        media_worker: MediaOffloadWorker | None = None,
    ) -> None:
        self.pipeline = pipeline
        self.notifier = notifier
        self.media_worker = media_worker

    @property
    def account_id(self) -> str:
        return self.pipeline.account_id

    async def dispatch(self, event: Event) -> list[IngestResult]:
        if isinstance(event, MessagesUpsert):
            return await self._messages(event.messages, live=event.live)
        if isinstance(event, ReactionUpdate):
            result = await asyncio.to_thread(self.pipeline.ingest_reaction, event)
            self._after_commit(result, live=True, event_name=REACTION)
            return [result]
        if isinstance(event, ContactsUpsert):
            await asyncio.to_thread(self.pipeline.upsert_contacts, event.contacts)
            return []
        if isinstance(event, HistorySync):
            logger.info(
                "account=%s history sync received: %d messages, %d contacts",
                self.account_id,
                len(event.messages),
                len(event.contacts),
            )
            await asyncio.to_thread(self.pipeline.upsert_contacts, event.contacts)
            results = await self._messages(event.messages, live=False)
            tally = Counter(r.outcome.value for r in results)
            logger.info("account=%s history sync processed: %s", self.account_id, dict(tally))
            return results
        logger.debug("account=%s ignoring event %r", self.account_id, event)
        return []

    async def ingest_outbound(self, raw_message: dict[str, Any]) -> IngestResult:
        """Store a message we just sent, exactly as if it arrived on the stream."""
        results = await self._messages((decode_message(raw_message),), live=True)
        return results[0]

    async def _messages(self, messages: Iterable[InboundMessage], *, live: bool) -> list[IngestResult]:
        results = []
        for msg in messages:
            result = await asyncio.to_thread(self.pipeline.ingest_message, msg)
            self._after_commit(result, live=live)
            results.append(result)
        return results

    def _after_commit(self, result: IngestResult, *, live: bool, event_name: str = NEW_MESSAGE) -> None:
        if result.outcome is not IngestOutcome.ACCEPTED:
            return
        if live and self.notifier is not None:
            self.notifier.publish(
                self.account_id, event_name, {"message": result.message, "contact": result.contact}
            )
        if result.media_job is not None and self.media_worker is not None:
            self.media_worker.submit(result.media_job)
