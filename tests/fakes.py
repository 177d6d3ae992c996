"""Fake transport connections and WAMessage builders shared by the tests."""

import asyncio
import itertools
from datetime import datetime, timezone
from typing import Any, Callable

SELF_JID = "15550001111:3@s.whatsapp.net"

_ids = itertools.count(1)


def wa_message(
    wa_message_id: str,
    remote_jid: str,
    text: str | None = "hi",
    *,
    from_me: bool = False,
    timestamp: datetime | int | None = None,
    message: dict[str, Any] | None = None,
    push_name: str | None = None,
    **key_extra: Any,
) -> dict[str, Any]:
    """A Baileys-shaped WAMessage dict."""
    if isinstance(timestamp, datetime):
        timestamp = int(timestamp.timestamp())
    return {
        "key": {"id": wa_message_id, "remoteJid": remote_jid, "fromMe": from_me, **key_extra},
        "messageTimestamp": timestamp or int(datetime.now(timezone.utc).timestamp()),
        "message": message if message is not None else {"conversation": text},
        "pushName": push_name,
    }


def upsert(*messages: dict[str, Any], live: bool = True) -> tuple[str, dict[str, Any]]:
    return "messages.upsert", {"type": "notify" if live else "append", "messages": list(messages)}


def close_event(status_code: int | None, message: str = "closed") -> tuple[str, dict[str, Any]]:
    return "connection.update", {
        "connection": "close",
        "lastDisconnect": {"error": {"message": message, "output": {"statusCode": status_code}}},
    }


class FakeConnection:
    def __init__(self, account_id: str, credentials: dict[str, Any] | None) -> None:
        self.account_id = account_id
        self.credentials = credentials
        self._queue: asyncio.Queue = asyncio.Queue()
        self._user_id: str | None = None
        self.auto_challenge = True
        self.challenge_requests = 0
        self.pairing_requests: list[str] = []
        self.sent: list[tuple[str, dict[str, Any]]] = []
        self.contacts: list[dict[str, Any]] = []
        self.media: dict[str, bytes] = {}
        self.fail_logout = False
        self.logged_out = False
        self.closed = False

    @property
    def user_id(self) -> str | None:
        return self._user_id

    async def events(self):
        while True:
            item = await self._queue.get()
            if item is None:
                return
            yield item

    def emit(self, name: str, payload: Any) -> None:
        self._queue.put_nowait((name, payload))

    def open(self, user_id: str = SELF_JID) -> None:
        self._user_id = user_id
        self.emit("connection.update", {"connection": "open"})

    def drop(self, status_code: int | None, message: str = "closed") -> None:
        self._queue.put_nowait(close_event(status_code, message))
        self._queue.put_nowait(None)

    async def request_challenge(self) -> None:
        self.challenge_requests += 1
        if self.auto_challenge:
            self.emit("connection.update", {"qr": f"qr-{self.challenge_requests}"})

    async def request_pairing_code(self, phone_number: str) -> str:
        self.pairing_requests.append(phone_number)
        return "ABCD1234"

    async def send(self, address: str, content: dict[str, Any]) -> dict[str, Any] | None:
        self.sent.append((address, content))
        return wa_message(f"OUT{next(_ids)}", address, content.get("text"), from_me=True)

    async def fetch_media_payload(self, raw_message: dict[str, Any]) -> bytes | None:
        return self.media.get(raw_message["key"]["id"])

    async def contacts_snapshot(self) -> list[dict[str, Any]]:
        return list(self.contacts)

    async def logout(self) -> None:
        if self.fail_logout:
            raise RuntimeError("socket already gone")
        self.logged_out = True

    async def close(self) -> None:
        self.closed = True
        self._queue.put_nowait(None)


class FakeTransport:
    """Factory that records every connection; stored credentials open straight away."""

    def __init__(self) -> None:
        self.connections: list[FakeConnection] = []
        self.auto_challenge = True
        self.fail_next = 0
        self.configure: Callable[[FakeConnection], None] | None = None

    async def __call__(self, account_id: str, credentials: dict[str, Any] | None) -> FakeConnection:
        if self.fail_next:
            self.fail_next -= 1
            raise ConnectionError("network unreachable")
        conn = FakeConnection(account_id, credentials)
        conn.auto_challenge = self.auto_challenge
        if self.configure is not None:
            self.configure(conn)
        self.connections.append(conn)
        if credentials:
            conn.open()
        return conn

    @property
    def latest(self) -> FakeConnection:
        return self.connections[-1]


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)
