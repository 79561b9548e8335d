"""Cancellation token shared by one user-initiated request."""

import asyncio
import threading
from typing import Callable

from .report import CancellationError


class CancellationToken:
    """Idempotent, awaitable cancellation signal.

    One token is created per user request and passed by reference into every
    suspension point: the model stream read, each pending approval and each
    executing tool. ``cancel()`` may be called any number of times, from any
    thread; callbacks fire exactly once.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._cancelled = False
        self._reason: str | None = None
        self._callbacks: list[Callable[[], None]] = []
        self._events: list[tuple[asyncio.AbstractEventLoop, asyncio.Event]] = []

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str = "cancelled by user") -> None:
        with self._lock:
            if self._cancelled:
                return
            self._cancelled = True
            self._reason = reason
            events = list(self._events)
            callbacks, self._callbacks = self._callbacks, []
        # Wake-ups and callbacks run outside the lock; a callback may touch
        # the token again.
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        for loop, event in events:
            if running is loop:
                event.set()
            elif not loop.is_closed():
                loop.call_soon_threadsafe(event.set)
        for cb in callbacks:
            cb()

    def add_callback(self, cb: Callable[[], None]) -> None:
        """Run cb on cancellation (immediately if already cancelled)."""
        with self._lock:
            if not self._cancelled:
                self._callbacks.append(cb)
                return
        cb()

    def remove_callback(self, cb: Callable[[], None]) -> None:
        with self._lock:
            if cb in self._callbacks:
                self._callbacks.remove(cb)

    async def wait(self) -> None:
        """Suspend until the token is cancelled."""
        event = asyncio.Event()
        entry = (asyncio.get_running_loop(), event)
        with self._lock:
            if self._cancelled:
                return
            self._events.append(entry)
        try:
            await event.wait()
        finally:
            with self._lock:
                self._events.remove(entry)

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise CancellationError(self._reason or "cancelled")


async def until_cancelled(aw, token: CancellationToken):
    """Await aw unless token fires first; then raise CancellationError."""
    task = asyncio.ensure_future(aw)
    waiter = asyncio.ensure_future(token.wait())
    try:
        done, _ = await asyncio.wait(
            {task, waiter}, return_when=asyncio.FIRST_COMPLETED
        )
    except asyncio.CancelledError:
        task.cancel()
        raise
    finally:
        waiter.cancel()
    if task in done:
        return task.result()
    task.cancel()
    raise CancellationError(token.reason or "cancelled")
