"""Best-effort per-account notification fan-out."""

import asyncio

import pytest

from core.notifier import NEW_MESSAGE, Notifier


@pytest.mark.asyncio
async def test_publish_reaches_only_that_account():
    notifier = Notifier(queue_size=4)
    mine = notifier.subscribe("a")
    theirs = notifier.subscribe("b")

    assert notifier.publish("a", NEW_MESSAGE, {"message": {"id": 1}}) == 1

    note = await mine.get(timeout_s=1)
    assert note.account_id == "a"
    assert note.data == {"message": {"id": 1}}
    with pytest.raises(asyncio.TimeoutError):
        await theirs.get(timeout_s=0.05)


def test_publish_without_subscribers():
    assert Notifier(queue_size=4).publish("a", NEW_MESSAGE, {}) == 0


def test_full_queue_drops_for_slow_subscriber_only():
    notifier = Notifier(queue_size=1)
    slow = notifier.subscribe("a")
    fast = notifier.subscribe("a")
    assert notifier.publish("a", NEW_MESSAGE, {"n": 1}) == 2
    fast.queue.get_nowait()

    assert notifier.publish("a", NEW_MESSAGE, {"n": 2}) == 1
    assert slow.queue.get_nowait().data == {"n": 1}
    assert fast.queue.get_nowait().data == {"n": 2}


def test_closed_subscription_stops_receiving():
    notifier = Notifier(queue_size=4)
    with notifier.subscribe("a") as sub:
        pass
    assert notifier.publish("a", NEW_MESSAGE, {}) == 0
    assert sub.queue.empty()
