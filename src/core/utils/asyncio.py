import asyncio
import contextlib
from typing import Any, Coroutine, TypeVar

T = TypeVar("T")


async def cancel_suppress(task: asyncio.Task[Any] | None) -> None:
    if not task or task.done():
        return
    # Awaiting the current task from itself would deadlock.
    if task is asyncio.current_task():
        return
    task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await task


def ensure_task(coro: Coroutine[Any, Any, T], *, name: str | None = None) -> asyncio.Task[T]:
    return asyncio.create_task(coro, name=name)
