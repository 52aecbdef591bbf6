"""Process-wide cancellable timers backed by a background event loop."""

from __future__ import annotations

import asyncio
import concurrent.futures
import logging
import threading
from typing import Callable, Protocol

LOG = logging.getLogger(__name__)

TimerCallback = Callable[[], None]


class Timer(Protocol):
    """Handle returned by a timer facility."""

    def cancel(self) -> bool: ...

    @property
    def cancelled(self) -> bool: ...

    @property
    def fired(self) -> bool: ...


class TimerFacility(Protocol):
    """Anything that can schedule a callback after a delay."""

    def call_later(self, delay: float, callback: TimerCallback) -> Timer: ...


class TimerHandle:
    """A single scheduled callback; cancelling after it fired is a no-op."""

    def __init__(self, delay: float, callback: TimerCallback) -> None:
        self.delay = delay
        self._callback = callback
        self._lock = threading.Lock()
        self._cancelled = False
        self._fired = False
        self._future: concurrent.futures.Future[None] | None = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def fired(self) -> bool:
        return self._fired

    def cancel(self) -> bool:
        """Cancel the timer; returns False if it already fired."""

        with self._lock:
            if self._fired:
                return False
            if self._cancelled:
                return True
            self._cancelled = True
            future = self._future
        if future is not None:
            future.cancel()
        return True

    def _attach(self, future: concurrent.futures.Future[None]) -> None:
        with self._lock:
            self._future = future
            cancelled = self._cancelled
        if cancelled:
            future.cancel()

    def _claim(self) -> bool:
        with self._lock:
            if self._cancelled:
                return False
            self._fired = True
            return True

    def _run(self) -> None:
        try:
            self._callback()
        except Exception:
            LOG.exception("Timer callback failed", extra={"delay": self.delay})


class TimerService:
    """Runs timer callbacks on a dedicated daemon event loop thread."""

    def __init__(self, *, name: str = "appclient-timers") -> None:
        self._loop = asyncio.new_event_loop()
        self._loop_thread = threading.Thread(target=self._loop.run_forever, name=name, daemon=True)
        self._loop_thread.start()
        self._lock = threading.Lock()
        self._pending: set[TimerHandle] = set()
        self._stopped = False

    def call_later(self, delay: float, callback: TimerCallback) -> TimerHandle:
        """Schedule ``callback`` to run after ``delay`` seconds."""

        handle = TimerHandle(delay, callback)
        with self._lock:
            if self._stopped:
                raise RuntimeError("Timer service has been shut down")
            self._pending.add(handle)
        future = asyncio.run_coroutine_threadsafe(self._runner(handle), self._loop)
        future.add_done_callback(lambda _: self._forget(handle))
        handle._attach(future)
        return handle

    @property
    def pending(self) -> int:
        """Number of timers not yet fired or cancelled."""

        with self._lock:
            return len(self._pending)

    def shutdown(self) -> None:
        """Cancel pending timers and stop the loop thread."""

        with self._lock:
            if self._stopped:
                return
            self._stopped = True
            pending = tuple(self._pending)
            self._pending.clear()
        for handle in pending:
            handle.cancel()
        if self._loop.is_running():
            self._loop.call_soon_threadsafe(self._loop.stop)
        self._loop_thread.join(timeout=1)

    def __del__(self) -> None:  # pragma: no cover - best effort cleanup
        try:
            self.shutdown()
        except Exception:
            pass

    def _forget(self, handle: TimerHandle) -> None:
        with self._lock:
            self._pending.discard(handle)

    async def _runner(self, handle: TimerHandle) -> None:
        try:
            await asyncio.sleep(handle.delay)
        except asyncio.CancelledError:
            return
        if handle._claim():
            handle._run()


__all__ = [
    "Timer",
    "TimerCallback",
    "TimerFacility",
    "TimerHandle",
    "TimerService",
]
