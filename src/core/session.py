"""Connection lifecycle: one actor per account, addressed through a registry.

States::

    idle -> awaiting_credential -> connected -> closing -> idle

Errors are data (``LastError``) rather than a state, so a recoverable close
goes back to ``idle`` and reconnects on its own. A terminal close (logged out,
unauthorized, forbidden) discards the credentials and needs a fresh QR or
pairing code.

Each actor serializes its commands with a lock and consumes its connection's
events from a single pump task, so events are handled in arrival order.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy import select

from core import identity
from core.config import settings
from core.contacts import get_contact
from core.database import SessionFactory, db_session
from core.errors import ContactNotFoundError, NotConnectedError
from core.events import ConnectionUpdate, CredentialsUpdate, Event, decode_event
from core.ingestion import EventDispatcher, IngestionPipeline, IngestResult
from core.media import MediaOffloadWorker, ObjectStore
from core.models import SessionStatus, WhatsAppSession, as_utc, utcnow
from core.notifier import Notifier
from core.transport import Connection, TransportFactory
from core.utils.asyncio import cancel_suppress, ensure_task

logger = logging.getLogger(__name__)

LOGGED_OUT = 401  # also "unauthorized"
FORBIDDEN = 403
TERMINAL_STATUS_CODES = frozenset({LOGGED_OUT, FORBIDDEN})

MEDIA_TYPES = ("image", "video", "audio", "document")


class SessionState(str, Enum):
    IDLE = "idle"
    AWAITING_CREDENTIAL = "awaiting_credential"
    CONNECTED = "connected"
    CLOSING = "closing"


@dataclass(frozen=True, slots=True)
class LastError:
    status_code: int | None = None
    message: str | None = None

    @property
    def terminal(self) -> bool:
        return self.status_code in TERMINAL_STATUS_CODES

    def as_dict(self) -> dict[str, Any]:
        return {"status_code": self.status_code, "message": self.message}


@dataclass(frozen=True, slots=True)
class Challenge:
    """What ``initialize``/``pair`` hand back: a QR payload, a pairing code, or nothing."""

    kind: str | None = None  # "qr" | "pairing_code"
    value: str | None = None
    connected: bool = False


class SessionStore:
    """The whatsapp_sessions row. Synchronous; call through ``asyncio.to_thread``."""

    def __init__(self, session_factory: SessionFactory | None = None) -> None:
        self.session_factory = session_factory

    def _row(self, db, account_id: str) -> WhatsAppSession:
        row = db.execute(
            select(WhatsAppSession).where(WhatsAppSession.account_id == account_id)
        ).scalar_one_or_none()
        if row is None:
            row = WhatsAppSession(account_id=account_id, status=SessionStatus.DISCONNECTED.value)
            db.add(row)
        return row

    def _update(self, account_id: str, **values: Any) -> None:
        with db_session(self.session_factory) as db:
            row = self._row(db, account_id)
            for key, value in values.items():
                setattr(row, key, value)

    def load_credentials(self, account_id: str) -> dict[str, Any] | None:
        with db_session(self.session_factory) as db:
            return db.execute(
                select(WhatsAppSession.credentials).where(WhatsAppSession.account_id == account_id)
            ).scalar_one_or_none()

    def save_credentials(self, account_id: str, credentials: dict[str, Any]) -> None:
        with db_session(self.session_factory) as db:
            row = self._row(db, account_id)
            merged = dict(row.credentials or {})
            merged.update(credentials)
            row.credentials = merged

    def set_challenge(self, account_id: str, challenge: str) -> None:
        self._update(
            account_id, challenge=challenge, status=SessionStatus.AWAITING_CREDENTIAL.value
        )

    def mark_connected(self, account_id: str, phone_number: str | None, at: datetime) -> None:
        self._update(
            account_id,
            status=SessionStatus.CONNECTED.value,
            phone_number=phone_number,
            last_connected_at=at,
            challenge=None,
            last_error_code=None,
            last_error_message=None,
            needs_relink=False,
        )

    def mark_disconnected(self, account_id: str, error: LastError | None) -> None:
        self._update(
            account_id,
            status=SessionStatus.DISCONNECTED.value,
            challenge=None,
            last_error_code=error.status_code if error else None,
            last_error_message=error.message if error else None,
        )

    def reset(self, account_id: str, error: LastError | None = None, needs_relink: bool = False) -> None:
        """Forget credentials and identity; the next initialize starts from a fresh challenge."""
        self._update(
            account_id,
            status=SessionStatus.DISCONNECTED.value,
            credentials=None,
            phone_number=None,
            challenge=None,
            last_error_code=error.status_code if error else None,
            last_error_message=error.message if error else None,
            needs_relink=needs_relink,
        )

    def snapshot(self, account_id: str) -> dict[str, Any] | None:
        with db_session(self.session_factory) as db:
            row = db.execute(
                select(WhatsAppSession).where(WhatsAppSession.account_id == account_id)
            ).scalar_one_or_none()
            if row is None:
                return None
            last_connected = as_utc(row.last_connected_at)
            return {
                "status": row.status,
                "phone_number": row.phone_number,
                "challenge": row.challenge,
                "last_connected_at": last_connected.isoformat() if last_connected else None,
                "needs_relink": row.needs_relink,
                "has_credentials": row.credentials is not None,
                "last_error": (
                    {"status_code": row.last_error_code, "message": row.last_error_message}
                    if row.last_error_code is not None or row.last_error_message
                    else None
                ),
            }

    def connected_accounts(self) -> list[str]:
        with db_session(self.session_factory) as db:
            return list(
                db.execute(
                    select(WhatsAppSession.account_id).where(
                        WhatsAppSession.status == SessionStatus.CONNECTED.value
                    )
                ).scalars()
            )


class SessionActor:
    def __init__(
        self,
        account_id: str,
        transport_factory: TransportFactory,
        store: SessionStore,
        dispatcher: EventDispatcher,
        *,
        challenge_timeout_s: float | None = None,
        reconnect_delay_s: float | None = None,
        pairing_delay_s: float | None = None,
    ) -> None:
        self.account_id = account_id
        self.transport_factory = transport_factory
        self.store = store
        self.dispatcher = dispatcher
        self.challenge_timeout_s = (
            settings.SESSION_CHALLENGE_TIMEOUT_SECONDS if challenge_timeout_s is None else challenge_timeout_s
        )
        self.reconnect_delay_s = (
            settings.RECONNECT_DELAY_SECONDS if reconnect_delay_s is None else reconnect_delay_s
        )
        self.pairing_delay_s = (
            settings.PAIRING_REQUEST_DELAY_SECONDS if pairing_delay_s is None else pairing_delay_s
        )

        self.state = SessionState.IDLE
        self.last_error: LastError | None = None
        self.connection: Connection | None = None
        self._lock = asyncio.Lock()
        self._in_flight = False
        self._stopping = False
        self._generation = 0
        self._challenge: asyncio.Future[Challenge] | None = None
        self._current_challenge: Challenge | None = None
        self._pairing_phone: str | None = None
        self._pairing_requested = False
        self._pump_task: asyncio.Task[None] | None = None
        self._reconnect_task: asyncio.Task[None] | None = None
        self._sync_task: asyncio.Task[None] | None = None

    def _log(self, message: str, *args: Any, level: int = logging.INFO) -> None:
        logger.log(level, "account=%s " + message, self.account_id, *args)

    @property
    def connected(self) -> bool:
        return self.state is SessionState.CONNECTED and self.connection is not None

    @property
    def reconnecting(self) -> bool:
        return self._reconnect_task is not None and not self._reconnect_task.done()

    # -- commands ---------------------------------------------------------

    async def initialize(self) -> Challenge:
        async with self._lock:
            if self.connected:
                self._log("already connected; skipping init")
                return Challenge(connected=True)
            if self._in_flight:
                self._log("init already in progress; skipping duplicate")
                return Challenge()
            if self.state is SessionState.AWAITING_CREDENTIAL and self._current_challenge:
                return self._current_challenge
            await self._teardown(logout=False)
            if self.last_error is not None and self.last_error.terminal:
                self._log(
                    "clearing stale credentials (last error: %s %s)",
                    self.last_error.status_code,
                    self.last_error.message,
                )
                await asyncio.to_thread(self.store.reset, self.account_id)
                self.last_error = None
            waiter = await self._open()
        return await self._await_challenge(waiter)

    async def pair(self, phone_number: str) -> Challenge:
        """Link with a pairing code instead of a QR. ``phone_number`` in E.164, '+' optional."""
        digits = "".join(ch for ch in phone_number if ch.isdigit())
        if not digits:
            raise ValueError("phone number must contain digits")
        async with self._lock:
            if self.connected:
                self._log("already connected; skipping pairing init")
                return Challenge(connected=True)
            if self._in_flight:
                self._log("init already in progress; skipping duplicate")
                return Challenge()
            await self._teardown(logout=False)
            self._log("clearing session for fresh pairing")
            await asyncio.to_thread(self.store.reset, self.account_id)
            self.last_error = None
            waiter = await self._open(pairing_phone=digits)
        return await self._await_challenge(waiter)

    async def disconnect(self) -> bool:
        """Log out and forget credentials. Always succeeds locally."""
        self._stopping = True
        try:
            await self._cancel_reconnect()
            async with self._lock:
                self.state = SessionState.CLOSING
                await self._teardown(logout=True)
                # A close handled while waiting for the lock may have scheduled one.
                await self._cancel_reconnect()
                self.last_error = None
                try:
                    await asyncio.to_thread(self.store.reset, self.account_id)
                except Exception:
                    logger.exception("account=%s failed to reset session row on disconnect", self.account_id)
        finally:
            self._stopping = False
        self._log("disconnected")
        return True

    async def shutdown(self) -> None:
        """Stop without logging out; credentials stay so the session can be restored."""
        self._stopping = True
        try:
            await self._cancel_reconnect()
            async with self._lock:
                self.state = SessionState.CLOSING
                await self._teardown(logout=False)
                await self._cancel_reconnect()
        finally:
            self._stopping = False

    async def send_message(
        self,
        contact_id: int,
        *,
        text: str | None = None,
        media_url: str | None = None,
        media_type: str | None = None,
        file_name: str | None = None,
        mime_type: str | None = None,
    ) -> IngestResult | None:
        connection = self.connection
        if not self.connected or connection is None:
            raise NotConnectedError("WhatsApp not connected")
        content = build_outbound_content(
            text=text, media_url=media_url, media_type=media_type, file_name=file_name, mime_type=mime_type
        )
        address = await asyncio.to_thread(self._contact_address, contact_id)
        sent = await connection.send(address, content)
        if not sent:
            return None
        return await self.dispatcher.ingest_outbound(sent)

    def _contact_address(self, contact_id: int) -> str:
        with db_session(self.store.session_factory) as db:
            contact = get_contact(db, self.account_id, contact_id)
            if contact is None or not contact.wa_id:
                raise ContactNotFoundError(f"contact {contact_id} not found")
            return contact.wa_id

    async def status(self) -> dict[str, Any]:
        snapshot = await asyncio.to_thread(self.store.snapshot, self.account_id) or {}
        last_error = self.last_error.as_dict() if self.last_error else snapshot.get("last_error")
        return {
            "account_id": self.account_id,
            "state": self.state.value,
            "connected": self.connected,
            "reconnecting": self.reconnecting,
            "phone_number": snapshot.get("phone_number"),
            "last_connected_at": snapshot.get("last_connected_at"),
            "challenge": snapshot.get("challenge"),
            "needs_relink": bool(snapshot.get("needs_relink")),
            "last_error": last_error,
        }

    # -- lifecycle --------------------------------------------------------

    async def _open(self, pairing_phone: str | None = None) -> asyncio.Future[Challenge]:
        """Open a connection. Caller holds the lock."""
        loop = asyncio.get_running_loop()
        waiter: asyncio.Future[Challenge] = loop.create_future()
        self._challenge = waiter
        self._current_challenge = None
        self._pairing_phone = pairing_phone
        self._pairing_requested = False
        self._in_flight = True

        credentials = await asyncio.to_thread(self.store.load_credentials, self.account_id)
        try:
            connection = await self.transport_factory(self.account_id, credentials)
        except Exception as e:
            self._in_flight = False
            self.last_error = LastError(None, str(e))
            self._log("failed to open connection: %s", e, level=logging.WARNING)
            await asyncio.to_thread(self.store.mark_disconnected, self.account_id, self.last_error)
            if not waiter.done():
                waiter.set_result(Challenge())
            raise

        self._generation += 1
        self.connection = connection
        self.state = SessionState.AWAITING_CREDENTIAL
        self._pump_task = ensure_task(
            self._pump(connection, self._generation), name=f"session-pump-{self.account_id}"
        )
        if credentials is None:
            try:
                await connection.request_challenge()
            except Exception:
                logger.exception("account=%s challenge request failed", self.account_id)
        return waiter

    async def _await_challenge(self, waiter: asyncio.Future[Challenge]) -> Challenge:
        try:
            return await asyncio.wait_for(asyncio.shield(waiter), timeout=self.challenge_timeout_s)
        except asyncio.TimeoutError:
            self._log("init timeout; no challenge or connection within %ss", self.challenge_timeout_s)
            self._in_flight = False
            return Challenge()

    def _resolve(self, challenge: Challenge) -> None:
        self._in_flight = False
        if self._challenge is not None and not self._challenge.done():
            self._challenge.set_result(challenge)

    async def _teardown(self, *, logout: bool) -> None:
        """Drop the current connection, if any. Caller holds the lock."""
        connection = self.connection
        self._generation += 1  # late events from the old connection are ignored
        self.connection = None
        if connection is not None:
            if logout:
                try:
                    await connection.logout()
                except Exception:
                    logger.exception("account=%s logout error (continuing cleanup)", self.account_id)
            try:
                await connection.close()
            except Exception:
                logger.exception("account=%s close error (continuing cleanup)", self.account_id)
        await cancel_suppress(self._pump_task)
        await cancel_suppress(self._sync_task)
        self._pump_task = self._sync_task = None
        self._current_challenge = None
        self.state = SessionState.IDLE
        self._resolve(Challenge())

    async def _pump(self, connection: Connection, generation: int) -> None:
        try:
            async for name, payload in connection.events():
                for event in decode_event(name, payload):
                    if generation != self._generation:
                        return
                    await self._handle(connection, event)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("account=%s event stream failed", self.account_id)
            if generation == self._generation:
                await self._on_close(ConnectionUpdate(connection="close", error=str(e)))

    async def _handle(self, connection: Connection, event: Event) -> None:
        if isinstance(event, ConnectionUpdate):
            if event.qr:
                await self._on_challenge(connection, event.qr)
            if event.connection == "open":
                await self._on_open(connection)
            elif event.connection == "close":
                await self._on_close(event)
        elif isinstance(event, CredentialsUpdate):
            await asyncio.to_thread(self.store.save_credentials, self.account_id, event.credentials)
        else:
            await self.dispatcher.dispatch(event)

    async def _on_challenge(self, connection: Connection, qr: str) -> None:
        if self._pairing_phone is None:
            self._log("QR code ready")
            await asyncio.to_thread(self.store.set_challenge, self.account_id, qr)
            self._current_challenge = Challenge(kind="qr", value=qr)
            self._resolve(self._current_challenge)
            return
        if self._pairing_requested:
            return
        self._pairing_requested = True
        self._log("requesting pairing code")
        # The socket needs a moment after its first QR before it accepts the request.
        await asyncio.sleep(self.pairing_delay_s)
        try:
            code = await connection.request_pairing_code(self._pairing_phone)
        except Exception:
            logger.exception("account=%s failed to request pairing code", self.account_id)
            self._resolve(Challenge())
            return
        await asyncio.to_thread(self.store.set_challenge, self.account_id, code)
        self._current_challenge = Challenge(kind="pairing_code", value=code)
        self._resolve(self._current_challenge)

    async def _on_open(self, connection: Connection) -> None:
        user_id = connection.user_id
        jid = identity.parse_jid(user_id)
        phone = jid.user if jid else None
        self._log("connected phone=%s", phone or "n/a")
        self.dispatcher.pipeline.self_jid = user_id
        await asyncio.to_thread(self.store.mark_connected, self.account_id, phone, utcnow())
        self.state = SessionState.CONNECTED
        self.last_error = None
        self._current_challenge = None
        self._pairing_phone = None
        self._resolve(Challenge(connected=True))
        self._sync_task = ensure_task(self._sync_contacts(connection), name=f"contact-sync-{self.account_id}")

    async def _sync_contacts(self, connection: Connection) -> None:
        try:
            snapshot = await connection.contacts_snapshot()
            await asyncio.to_thread(self.dispatcher.pipeline.sync_contacts, snapshot or [])
        except Exception:
            logger.exception("account=%s error syncing contacts", self.account_id)

    async def _on_close(self, update: ConnectionUpdate) -> None:
        error = LastError(update.status_code, update.error)
        self._log(
            "connection close; statusCode=%s message=%s terminal=%s",
            error.status_code,
            error.message or "n/a",
            error.terminal,
        )
        if self.state is SessionState.CLOSING:
            return
        self._generation += 1
        self.connection = None
        self._current_challenge = None
        self.state = SessionState.IDLE
        self.last_error = error
        self._resolve(Challenge())
        if error.terminal:
            await asyncio.to_thread(self.store.reset, self.account_id, error, True)
            return
        await asyncio.to_thread(self.store.mark_disconnected, self.account_id, error)
        self._schedule_reconnect()

    async def _cancel_reconnect(self) -> None:
        await cancel_suppress(self._reconnect_task)
        self._reconnect_task = None

    def _schedule_reconnect(self) -> None:
        if self._stopping:
            self._log("stop requested; not reconnecting")
            return
        if self.reconnecting:
            return
        self._reconnect_task = ensure_task(self._reconnect(), name=f"session-reconnect-{self.account_id}")

    async def _reconnect(self) -> None:
        """Reopen with the stored credentials until it works or a disconnect cancels it."""
        while True:
            await asyncio.sleep(self.reconnect_delay_s)
            async with self._lock:
                if self._stopping or self.connection is not None or self.state is SessionState.CLOSING:
                    return
                self._log("reconnecting...")
                try:
                    waiter = await self._open()
                except Exception:
                    continue
            await self._await_challenge(waiter)
            return


def build_outbound_content(
    *,
    text: str | None = None,
    media_url: str | None = None,
    media_type: str | None = None,
    file_name: str | None = None,
    mime_type: str | None = None,
) -> dict[str, Any]:
    if media_url:
        if media_type not in MEDIA_TYPES:
            raise ValueError(f"media_type must be one of: {', '.join(MEDIA_TYPES)}")
        media = {"url": media_url}
        if media_type in ("image", "video"):
            return {media_type: media, "caption": text} if text else {media_type: media}
        if media_type == "audio":
            return {"audio": media, "mimetype": mime_type or "audio/mp4"}
        return {
            "document": media,
            "mimetype": mime_type or "application/octet-stream",
            "fileName": file_name or media_url.rsplit("/", 1)[-1] or "file",
            **({"caption": text} if text else {}),
        }
    if text:
        return {"text": text}
    raise ValueError("a text body or a media URL is required")


class SessionRegistry:
    """Owns one ``SessionActor`` per account. ``get`` returns the actor or None."""

    def __init__(
        self,
        transport_factory: TransportFactory,
        *,
        session_factory: SessionFactory | None = None,
        notifier: Notifier | None = None,
        object_store: ObjectStore | None = None,
        **actor_options: Any,
    ) -> None:
        self.transport_factory = transport_factory
        self.session_factory = session_factory
        self.store = SessionStore(session_factory)
        self.notifier = notifier
        self.media_worker = (
            MediaOffloadWorker(object_store, self.connection_for, session_factory)
            if object_store is not None
            else None
        )
        self._actor_options = actor_options
        self._actors: dict[str, SessionActor] = {}

    def get(self, account_id: str) -> SessionActor | None:
        return self._actors.get(account_id)

    def get_or_create(self, account_id: str) -> SessionActor:
        actor = self._actors.get(account_id)
        if actor is None:
            pipeline = IngestionPipeline(account_id, self.session_factory)
            dispatcher = EventDispatcher(pipeline, self.notifier, self.media_worker)
            actor = SessionActor(
                account_id, self.transport_factory, self.store, dispatcher, **self._actor_options
            )
            self._actors[account_id] = actor
        return actor

    def connection_for(self, account_id: str) -> Connection | None:
        actor = self._actors.get(account_id)
        if actor is None or not actor.connected:
            return None
        return actor.connection

    async def start(self) -> int:
        if self.media_worker is not None:
            self.media_worker.start()
        return await self.restore()

    async def restore(self) -> int:
        """Re-initialize every account whose session row says connected, in the background."""
        accounts = await asyncio.to_thread(self.store.connected_accounts)
        logger.info("Restoring %d sessions...", len(accounts))
        for account_id in accounts:
            ensure_task(self._restore_one(account_id), name=f"session-restore-{account_id}")
        return len(accounts)

    async def _restore_one(self, account_id: str) -> None:
        try:
            await self.get_or_create(account_id).initialize()
        except Exception:
            logger.exception("Failed to restore session for account=%s", account_id)

    async def shutdown(self) -> None:
        for actor in list(self._actors.values()):
            await actor.shutdown()
        if self.media_worker is not None:
            await self.media_worker.stop()
