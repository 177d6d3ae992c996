"""Contract for the messaging-protocol collaborator.

The wire protocol lives outside this repository. A transport package provides
a factory ``async (account_id, credentials) -> Connection``; it is configured
as ``TRANSPORT_FACTORY="package.module:attr"``.

Event names and payload shapes follow Baileys: ``connection.update``,
``creds.update``, ``messages.upsert``, ``messages.reaction``,
``contacts.upsert``, ``contacts.update``, ``messaging-history.set``.
"""

import importlib
from typing import Any, AsyncIterator, Awaitable, Callable, Protocol, runtime_checkable

from core.errors import TransportLoadError

RawEvent = tuple[str, Any]


@runtime_checkable
class Connection(Protocol):
    @property
    def user_id(self) -> str | None:
        """Own JID once connected, e.g. ``5551:12@s.whatsapp.net``."""

    def events(self) -> AsyncIterator[RawEvent]:
        """Events in arrival order; ends when the connection is closed."""

    async def request_challenge(self) -> None:
        """Ask for a QR challenge; it arrives as a ``connection.update``."""

    async def request_pairing_code(self, phone_number: str) -> str: ...

    async def send(self, address: str, content: dict[str, Any]) -> dict[str, Any] | None:
        """Send and return the sent WAMessage (same shape as inbound ones)."""

    async def fetch_media_payload(self, raw_message: dict[str, Any]) -> bytes | None:
        """Download and decrypt media; None when the payload is gone."""

    async def contacts_snapshot(self) -> list[dict[str, Any]]: ...

    async def logout(self) -> None: ...

    async def close(self) -> None: ...


TransportFactory = Callable[[str, dict[str, Any] | None], Awaitable[Connection]]


def load_transport_factory(path: str) -> TransportFactory:
    """Import ``package.module:attr``."""
    module_name, sep, attr = path.partition(":")
    if not module_name or not sep or not attr:
        raise TransportLoadError(f"TRANSPORT_FACTORY must look like 'package.module:attr', got {path!r}")
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise TransportLoadError(f"cannot import {module_name!r}: {e}") from e
    factory = getattr(module, attr, None)
    if not callable(factory):
        raise TransportLoadError(f"{path!r} is not callable")
    return factory
