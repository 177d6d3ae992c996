"""Background offload of message media to an object store.

Jobs are queued after the message row commits. The worker downloads the
payload from the live connection, uploads it, and patches the message with
the public URL. Every failure is logged and leaves ``media_url`` null.
"""

import asyncio
import logging
import mimetypes
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable

import httpx

from core.config import settings
from core.database import SessionFactory, db_session
from core.errors import MediaUnavailableError, ObjectStoreError
from core.messages import attach_media
from core.utils.asyncio import cancel_suppress

if TYPE_CHECKING:
    from core.transport import Connection

logger = logging.getLogger(__name__)

DEFAULT_MIME_TYPE = "application/octet-stream"


@dataclass(frozen=True)
class MediaJob:
    account_id: str
    message_id: int
    contact_id: int
    wa_message_id: str
    raw: dict[str, Any] = field(default_factory=dict, repr=False)
    mime_type: str | None = None
    file_name: str | None = None


def detect_mime_type(declared: str | None, file_name: str | None) -> str:
    if declared:
        # "audio/ogg; codecs=opus" -> "audio/ogg"
        return declared.split(";", 1)[0].strip() or DEFAULT_MIME_TYPE
    if file_name:
        guessed, _ = mimetypes.guess_type(file_name)
        if guessed:
            return guessed
    return DEFAULT_MIME_TYPE


def content_path(job: MediaJob, mime_type: str) -> str:
    ext = mimetypes.guess_extension(mime_type) or ".bin"
    safe_id = "".join(ch for ch in job.wa_message_id if ch.isalnum() or ch in "-_")
    return f"{job.account_id}/{job.contact_id}/{safe_id}{ext}"


class ObjectStore:
    """Supabase-storage style REST bucket: POST to upload, public URL to read."""

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        bucket: str | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = (base_url if base_url is not None else settings.OBJECT_STORE_URL).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.OBJECT_STORE_KEY
        self.bucket = bucket or settings.OBJECT_STORE_BUCKET
        if not self.base_url:
            raise RuntimeError("OBJECT_STORE_URL is not set.")
        self._client = client or httpx.AsyncClient(timeout=60.0)

    def public_url(self, path: str) -> str:
        return f"{self.base_url}/object/public/{self.bucket}/{path}"

    async def upload(self, path: str, data: bytes, mime_type: str) -> str:
        headers = {"Content-Type": mime_type, "x-upsert": "true"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        try:
            resp = await self._client.post(
                f"{self.base_url}/object/{self.bucket}/{path}", content=data, headers=headers
            )
            resp.raise_for_status()
        except httpx.HTTPError as e:
            raise ObjectStoreError(f"upload of {path} failed: {e}") from e
        return self.public_url(path)

    async def aclose(self) -> None:
        await self._client.aclose()


class MediaOffloadWorker:
    def __init__(
        self,
        store: ObjectStore,
        connection_for: Callable[[str], "Connection | None"],
        session_factory: SessionFactory | None = None,
        queue_size: int | None = None,
    ) -> None:
        self.store = store
        self.connection_for = connection_for
        self.session_factory = session_factory
        self.queue: asyncio.Queue[MediaJob] = asyncio.Queue(maxsize=queue_size or settings.MEDIA_QUEUE_SIZE)
        self._task: asyncio.Task[None] | None = None

    def submit(self, job: MediaJob) -> bool:
        """Queue without waiting. False when the job was not accepted."""
        if self.connection_for(job.account_id) is None:
            logger.debug("account=%s no live session; skipping media for %s", job.account_id, job.wa_message_id)
            return False
        try:
            self.queue.put_nowait(job)
        except asyncio.QueueFull:
            logger.warning("account=%s media queue full; skipping %s", job.account_id, job.wa_message_id)
            return False
        return True

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run(), name="media-offload")

    async def stop(self) -> None:
        await cancel_suppress(self._task)
        self._task = None

    async def drain(self) -> None:
        await self.queue.join()

    async def _run(self) -> None:
        while True:
            job = await self.queue.get()
            try:
                await self.process(job)
            finally:
                self.queue.task_done()

    async def process(self, job: MediaJob) -> str | None:
        """Offload one job. Returns the public URL, or None on any failure."""
        try:
            connection = self.connection_for(job.account_id)
            if connection is None:
                raise MediaUnavailableError("session is no longer connected")
            payload = await connection.fetch_media_payload(job.raw)
            if not payload:
                raise MediaUnavailableError("payload no longer available")
            mime_type = detect_mime_type(job.mime_type, job.file_name)
            url = await self.store.upload(content_path(job, mime_type), payload, mime_type)
            await asyncio.to_thread(self._patch, job.message_id, url, mime_type, len(payload))
            logger.info("account=%s media for %s stored at %s", job.account_id, job.wa_message_id, url)
            return url
        except MediaUnavailableError as e:
            logger.info("account=%s media for %s unavailable: %s", job.account_id, job.wa_message_id, e)
        except Exception:
            logger.exception("account=%s media offload failed for %s", job.account_id, job.wa_message_id)
        return None

    def _patch(self, message_id: int, url: str, mime_type: str, size: int) -> None:
        with db_session(self.session_factory) as db:
            attach_media(db, message_id, media_url=url, mime_type=mime_type, size=size)
