"""Best-effort, per-account fan-out of real-time notifications.

Publishing never blocks: each subscriber owns a bounded queue and a full
queue drops the notification for that subscriber only. A missed notification
only delays a client's view; the database stays authoritative.
"""

import asyncio
import contextlib
import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, AsyncIterator

from core.config import settings

logger = logging.getLogger(__name__)

NEW_MESSAGE = "new_message"


@dataclass(frozen=True, slots=True)
class Notification:
    account_id: str
    event: str
    data: dict[str, Any]


class Subscription:
    def __init__(self, notifier: "Notifier", account_id: str, maxsize: int) -> None:
        self._notifier = notifier
        self.account_id = account_id
        self.queue: asyncio.Queue[Notification] = asyncio.Queue(maxsize=maxsize)

    async def get(self, timeout_s: float | None = None) -> Notification:
        if timeout_s is None:
            return await self.queue.get()
        return await asyncio.wait_for(self.queue.get(), timeout=timeout_s)

    def close(self) -> None:
        self._notifier.unsubscribe(self)

    def __aiter__(self) -> AsyncIterator[Notification]:
        return self._iter()

    async def _iter(self) -> AsyncIterator[Notification]:
        while True:
            yield await self.queue.get()

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()


class Notifier:
    def __init__(self, queue_size: int | None = None) -> None:
        self.queue_size = queue_size or settings.NOTIFY_QUEUE_SIZE
        self._subscribers: dict[str, list[Subscription]] = defaultdict(list)

    def subscribe(self, account_id: str) -> Subscription:
        sub = Subscription(self, account_id, self.queue_size)
        self._subscribers[account_id].append(sub)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        subs = self._subscribers.get(sub.account_id)
        if not subs:
            return
        with contextlib.suppress(ValueError):
            subs.remove(sub)
        if not subs:
            self._subscribers.pop(sub.account_id, None)

    def publish(self, account_id: str, event: str, data: dict[str, Any]) -> int:
        """Deliver to current subscribers of ``account_id``. Returns how many received it."""
        note = Notification(account_id=account_id, event=event, data=data)
        delivered = 0
        for sub in list(self._subscribers.get(account_id, [])):
            try:
                sub.queue.put_nowait(note)
                delivered += 1
            except asyncio.QueueFull:
                logger.warning("account=%s subscriber queue full; dropped %s", account_id, event)
        return delivered
