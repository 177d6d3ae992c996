"""MCP tools over the WhatsApp CRM: session commands and CRM queries.

Every tool takes the owning ``account_id``. Failures are returned as
``{"success": False, "error": ...}``, never raised to the client.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator

from mcp.server.fastmcp import FastMCP

from core import analytics, stats
from core.config import settings
from core.contacts import contact_detail, contact_summary, get_contact_detail
from core.contacts import list_contacts as fetch_contacts
from core.contacts import update_contact as apply_contact_update
from core.database import SessionFactory, db_session
from core.errors import CrmError, NotConnectedError
from core.messages import list_messages as fetch_messages
from core.messages import mark_read as mark_messages_read
from core.messages import serialize_message
from core.media import ObjectStore
from core.models import as_utc
from core.notifier import Notifier
from core.session import Challenge, SessionRegistry, SessionStore
from core.transport import load_transport_factory

logger = logging.getLogger("mcp_server")


@dataclass
class Runtime:
    """Process-wide state shared by the tools; filled in by the lifespan."""

    registry: SessionRegistry | None = None
    notifier: Notifier = field(default_factory=Notifier)
    session_factory: SessionFactory | None = None


runtime = Runtime()


def build_registry() -> SessionRegistry | None:
    if not settings.TRANSPORT_FACTORY:
        logger.warning("TRANSPORT_FACTORY is not set; session tools are disabled")
        return None
    transport_factory = load_transport_factory(settings.TRANSPORT_FACTORY)
    object_store = ObjectStore() if settings.OBJECT_STORE_URL else None
    if object_store is None:
        logger.info("OBJECT_STORE_URL is not set; media offload is disabled")
    return SessionRegistry(
        transport_factory,
        session_factory=runtime.session_factory,
        notifier=runtime.notifier,
        object_store=object_store,
    )


@asynccontextmanager
async def lifespan(_server: FastMCP) -> AsyncIterator[Runtime]:
    if runtime.registry is None:
        runtime.registry = build_registry()
    if runtime.registry is not None:
        restored = await runtime.registry.start()
        logger.info("Session registry started (%d sessions restoring)", restored)
    try:
        yield runtime
    finally:
        if runtime.registry is not None:
            await runtime.registry.shutdown()
            media_worker = runtime.registry.media_worker
            if media_worker is not None:
                await media_worker.store.aclose()


mcp = FastMCP("WhatsApp CRM", json_response=True, lifespan=lifespan)


def _registry() -> SessionRegistry:
    if runtime.registry is None:
        raise CrmError("WhatsApp transport is not configured (set TRANSPORT_FACTORY)")
    return runtime.registry


def _iso(value) -> str | None:
    return value.isoformat() if value else None


def _challenge_result(challenge: Challenge) -> dict[str, Any]:
    return {
        "success": True,
        "connected": challenge.connected,
        "qr": challenge.value if challenge.kind == "qr" else None,
        "pairing_code": challenge.value if challenge.kind == "pairing_code" else None,
    }


@mcp.tool()
async def initialize_whatsapp(account_id: str) -> dict:
    """Start linking: returns a QR payload to scan, or connected=true if already linked."""
    try:
        challenge = await _registry().get_or_create(account_id).initialize()
        return _challenge_result(challenge)
    except Exception as e:
        logger.exception("initialize_whatsapp failed")
        return {"success": False, "error": str(e)}


@mcp.tool()
async def pair_whatsapp(account_id: str, phone_number: str) -> dict:
    """Link with an 8-character pairing code instead of a QR. Discards any existing link."""
    try:
        challenge = await _registry().get_or_create(account_id).pair(phone_number)
        return _challenge_result(challenge)
    except Exception as e:
        logger.exception("pair_whatsapp failed")
        return {"success": False, "error": str(e)}


@mcp.tool()
async def disconnect_whatsapp(account_id: str) -> dict:
    """Log out and forget the link."""
    try:
        actor = _registry().get_or_create(account_id)
        await actor.disconnect()
        return {"success": True}
    except Exception as e:
        logger.exception("disconnect_whatsapp failed")
        return {"success": False, "error": str(e)}


@mcp.tool()
async def whatsapp_status(account_id: str) -> dict:
    """Connection state, linked phone number, and the last error if any."""
    try:
        actor = runtime.registry.get(account_id) if runtime.registry else None
        if actor is not None:
            return {"success": True, **(await actor.status())}
        store = SessionStore(runtime.session_factory)
        snapshot = await asyncio.to_thread(store.snapshot, account_id) or {}
        return {
            "success": True,
            "account_id": account_id,
            "state": "idle",
            "connected": False,
            "reconnecting": False,
            "phone_number": snapshot.get("phone_number"),
            "last_connected_at": snapshot.get("last_connected_at"),
            "challenge": snapshot.get("challenge"),
            "needs_relink": bool(snapshot.get("needs_relink")),
            "last_error": snapshot.get("last_error"),
        }
    except Exception as e:
        logger.exception("whatsapp_status failed")
        return {"success": False, "error": str(e)}


@mcp.tool()
async def send_message(
    account_id: str,
    contact_id: int,
    text: str | None = None,
    media_url: str | None = None,
    media_type: str | None = None,
    file_name: str | None = None,
) -> dict:
    """Send text or media (image | video | audio | document, by URL) to a contact."""
    try:
        actor = _registry().get(account_id)
        if actor is None:
            raise NotConnectedError("WhatsApp not connected")
        result = await actor.send_message(
            contact_id, text=text, media_url=media_url, media_type=media_type, file_name=file_name
        )
        return {
            "success": True,
            "outcome": result.outcome.value if result else None,
            "message": result.message if result else None,
        }
    except Exception as e:
        logger.exception("send_message failed")
        return {"success": False, "error": str(e)}


@mcp.tool()
def list_conversations(
    account_id: str, limit: int = 20, offset: int = 0, search: str | None = None
) -> dict:
    """Contacts with messages, most recent conversation first."""
    try:
        with db_session(runtime.session_factory) as db:
            page = stats.list_conversations(db, account_id, limit=limit, offset=offset, search=search)
        return {"success": True, "conversations": page.conversations, "has_more": page.has_more}
    except Exception as e:
        logger.exception("list_conversations failed")
        return {"success": False, "error": str(e)}


@mcp.tool()
def list_messages(account_id: str, contact_id: int, limit: int = 50, offset: int = 0) -> dict:
    """Messages with one contact, newest first."""
    try:
        with db_session(runtime.session_factory) as db:
            messages = [serialize_message(m) for m in fetch_messages(db, account_id, contact_id, limit, offset)]
        return {"success": True, "messages": messages}
    except Exception as e:
        logger.exception("list_messages failed")
        return {"success": False, "error": str(e)}


@mcp.tool()
def contact_stats(account_id: str, contact_id: int) -> dict:
    """Interaction counts (7/30/90 days) and message totals for a contact."""
    try:
        with db_session(runtime.session_factory) as db:
            result = stats.get_contact_stats(db, account_id, contact_id)
        if result is None:
            return {"success": False, "error": f"contact {contact_id} not found"}
        return {"success": True, **result}
    except Exception as e:
        logger.exception("contact_stats failed")
        return {"success": False, "error": str(e)}


@mcp.tool()
def mark_read(account_id: str, contact_id: int) -> dict:
    """Mark a contact's inbound messages read."""
    try:
        with db_session(runtime.session_factory) as db:
            updated = mark_messages_read(db, account_id, contact_id)
        return {"success": True, "updated": updated}
    except Exception as e:
        logger.exception("mark_read failed")
        return {"success": False, "error": str(e)}


@mcp.tool()
def list_contacts(
    account_id: str, search: str | None = None, limit: int = 100, offset: int = 0
) -> dict:
    """Contacts by most recent interaction; search matches name, push name, phone or address."""
    try:
        with db_session(runtime.session_factory) as db:
            contacts = [
                {
                    **contact_summary(c),
                    "relationship_type": c.relationship_type,
                    "contact_frequency": c.contact_frequency,
                    "importance": c.importance,
                    "tags": c.tags,
                    "last_interaction": _iso(as_utc(c.last_interaction)),
                }
                for c in fetch_contacts(db, account_id, search=search, limit=limit, offset=offset)
            ]
        return {"success": True, "contacts": contacts}
    except Exception as e:
        logger.exception("list_contacts failed")
        return {"success": False, "error": str(e)}


@mcp.tool()
def get_contact(account_id: str, contact_id: int) -> dict:
    """One contact with notes, tags, birthday, cadence, importance and interaction counters."""
    try:
        with db_session(runtime.session_factory) as db:
            contact = get_contact_detail(db, account_id, contact_id)
        return {"success": True, "contact": contact}
    except CrmError as e:
        return {"success": False, "error": str(e)}
    except Exception as e:
        logger.exception("get_contact failed")
        return {"success": False, "error": str(e)}


@mcp.tool()
def update_contact(account_id: str, contact_id: int, changes: dict) -> dict:
    """Edit relationship metadata: notes, tags, birthday, company, job_title, location,
    relationship_type, contact_frequency, importance (0-5), custom_fields."""
    try:
        with db_session(runtime.session_factory) as db:
            result = contact_detail(apply_contact_update(db, account_id, contact_id, changes))
        return {"success": True, "contact": result}
    except CrmError as e:
        return {"success": False, "error": str(e)}
    except Exception as e:
        logger.exception("update_contact failed")
        return {"success": False, "error": str(e)}


@mcp.tool()
def dashboard(account_id: str) -> dict:
    """Reply backlog, contacts to reach out to, relationship health, and activity summaries."""
    try:
        with db_session(runtime.session_factory) as db:
            result = analytics.dashboard(db, account_id)
        return {"success": True, **result}
    except Exception as e:
        logger.exception("dashboard failed")
        return {"success": False, "error": str(e)}
