"""Media offload: queued after commit, uploaded, message patched with the URL."""

import asyncio

import httpx
import pytest

from core.database import db_session
from core.errors import ObjectStoreError
from core.events import decode_event
from core.ingestion import EventDispatcher, IngestionPipeline
from core.media import MediaJob, MediaOffloadWorker, ObjectStore, content_path, detect_mime_type
from core.messages import list_messages, serialize_message
from fakes import FakeConnection, upsert, wa_message

ACCOUNT = "acct-1"
PN = "5551@s.whatsapp.net"
BASE = "https://store.example/storage/v1"
IMAGE = {"imageMessage": {"mimetype": "image/jpeg", "caption": "beach"}}


def _store(handler, uploads):
    def record(request: httpx.Request) -> httpx.Response:
        uploads.append(request)
        return handler(request)

    client = httpx.AsyncClient(transport=httpx.MockTransport(record))
    return ObjectStore(BASE, "secret", "media", client=client)


def _messages(session_factory, contact_id):
    with db_session(session_factory) as db:
        return [serialize_message(m) for m in list_messages(db, ACCOUNT, contact_id)]


@pytest.mark.asyncio
async def test_media_url_appears_after_worker_runs(session_factory):
    uploads: list[httpx.Request] = []
    store = _store(lambda request: httpx.Response(200, json={"Key": "ok"}), uploads)
    conn = FakeConnection(ACCOUNT, None)
    conn.media["img1"] = b"\xff\xd8fake-jpeg"
    worker = MediaOffloadWorker(store, lambda account_id: conn, session_factory)
    dispatcher = EventDispatcher(IngestionPipeline(ACCOUNT, session_factory), media_worker=worker)

    [event] = decode_event(*upsert(wa_message("img1", PN, message=IMAGE)))
    [result] = await dispatcher.dispatch(event)
    contact_id = result.contact["id"]

    [before] = _messages(session_factory, contact_id)
    assert before["has_media"] is True
    assert before["media_url"] is None
    assert before["body"] == "beach"

    worker.start()
    await asyncio.wait_for(worker.drain(), timeout=2)
    await worker.stop()

    [after] = _messages(session_factory, contact_id)
    assert after["media_url"].startswith(f"{BASE}/object/public/media/{ACCOUNT}/{contact_id}/img1")
    assert after["media_mime_type"] == "image/jpeg"
    assert after["media_size"] == len(b"\xff\xd8fake-jpeg")
    [upload] = uploads
    assert upload.url.path.startswith(f"/storage/v1/object/media/{ACCOUNT}/{contact_id}/img1")
    assert upload.headers["authorization"] == "Bearer secret"
    assert upload.headers["x-upsert"] == "true"
    assert upload.content == b"\xff\xd8fake-jpeg"
    await store.aclose()


@pytest.mark.asyncio
async def test_missing_payload_leaves_url_null(session_factory):
    uploads: list[httpx.Request] = []
    store = _store(lambda request: httpx.Response(200), uploads)
    conn = FakeConnection(ACCOUNT, None)
    worker = MediaOffloadWorker(store, lambda account_id: conn, session_factory)
    dispatcher = EventDispatcher(IngestionPipeline(ACCOUNT, session_factory), media_worker=worker)
    [event] = decode_event(*upsert(wa_message("img1", PN, message=IMAGE)))
    [result] = await dispatcher.dispatch(event)

    assert await worker.process(result.media_job) is None
    assert uploads == []
    [message] = _messages(session_factory, result.contact["id"])
    assert message["has_media"] is True
    assert message["media_url"] is None


@pytest.mark.asyncio
async def test_upload_failure_is_logged_not_raised(session_factory, caplog):
    uploads: list[httpx.Request] = []
    store = _store(lambda request: httpx.Response(500, text="boom"), uploads)
    conn = FakeConnection(ACCOUNT, None)
    conn.media["img1"] = b"data"
    worker = MediaOffloadWorker(store, lambda account_id: conn, session_factory)
    job = MediaJob(ACCOUNT, message_id=1, contact_id=1, wa_message_id="img1", raw={"key": {"id": "img1"}})

    assert await worker.process(job) is None
    assert len(uploads) == 1
    assert "media offload failed" in caplog.text


@pytest.mark.asyncio
async def test_upload_raises_object_store_error():
    store = _store(lambda request: httpx.Response(403), [])
    with pytest.raises(ObjectStoreError):
        await store.upload("a/b.jpg", b"x", "image/jpeg")


def test_submit_skips_without_live_session():
    store = ObjectStore(BASE, "", "media", client=httpx.AsyncClient(transport=httpx.MockTransport(lambda r: None)))
    worker = MediaOffloadWorker(store, lambda account_id: None, queue_size=1)
    job = MediaJob(ACCOUNT, 1, 1, "img1")
    assert worker.submit(job) is False
    assert worker.queue.qsize() == 0


def test_submit_skips_when_queue_full():
    store = ObjectStore(BASE, "", "media", client=httpx.AsyncClient(transport=httpx.MockTransport(lambda r: None)))
    conn = FakeConnection(ACCOUNT, None)
    worker = MediaOffloadWorker(store, lambda account_id: conn, queue_size=1)
    assert worker.submit(MediaJob(ACCOUNT, 1, 1, "img1")) is True
    assert worker.submit(MediaJob(ACCOUNT, 2, 1, "img2")) is False


def test_mime_type_detection_and_path():
    assert detect_mime_type("audio/ogg; codecs=opus", None) == "audio/ogg"
    assert detect_mime_type(None, "report.pdf") == "application/pdf"
    assert detect_mime_type(None, None) == "application/octet-stream"
    job = MediaJob(ACCOUNT, 1, 7, "3EB0/../x")
    assert content_path(job, "application/pdf") == f"{ACCOUNT}/7/3EB0x.pdf"
