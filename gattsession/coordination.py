"""Event loop coordination for asynchronous GATT operations."""

import asyncio
from concurrent.futures import Future
from threading import RLock, Thread, current_thread
from typing import Any, Callable, Coroutine, Optional

from gattsession.constants import BLEConfig, logger
from gattsession.errors import BLEErrorHandler

__all__ = ["Deadline", "LoopCoordinator"]


class Deadline:
    """
    Cancellable handle for a callback armed on a coordinator's event loop.

    The handle is returned to the caller before the loop has actually armed the
    timer, so cancellation is tracked with a flag that the timer checks before
    firing. A cancelled deadline never invokes its callback.
    """

    def __init__(self, callback: Callable[[], None]):
        self._callback = callback
        self._lock = RLock()
        self._cancelled = False
        self._handle: Optional[asyncio.TimerHandle] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    @property
    def cancelled(self) -> bool:
        with self._lock:
            return self._cancelled

    def arm(self, loop: asyncio.AbstractEventLoop, delay: float) -> None:
        """Schedule the callback; must run on `loop`'s thread."""
        with self._lock:
            if self._cancelled:
                return
            self._loop = loop
            self._handle = loop.call_later(delay, self._fire)

    def cancel(self) -> None:
        """Prevent the callback from running. Safe to call from any thread, more than once."""
        with self._lock:
            if self._cancelled:
                return
            self._cancelled = True
            handle, loop = self._handle, self._loop
            self._handle = None
        if handle is not None and loop is not None and not loop.is_closed():
            BLEErrorHandler.safe_cleanup(
                lambda: loop.call_soon_threadsafe(handle.cancel), "deadline cancel"
            )

    def _fire(self) -> None:
        with self._lock:
            if self._cancelled:
                return
            self._cancelled = True
            self._handle = None
        self._callback()


class LoopCoordinator:
    """
    Own a dedicated asyncio event loop running in a background thread.

    The loop serves two purposes for a session: it runs the transport's
    coroutines (bleak is asyncio-native) and it hosts operation deadlines, so
    any number of in-flight operations share a single thread instead of one
    thread per pending call.
    """

    def __init__(self, name: str = "GattSessionLoop"):
        """
        Create the event loop and start the thread that runs it.

        Parameters:
            name (str): Name assigned to the background thread.
        """
        self.error_handler = BLEErrorHandler()
        self._lock = RLock()
        self._closed = False
        self._eventLoop = asyncio.new_event_loop()
        self._eventThread = Thread(
            target=self._run_event_loop, name=name, daemon=True
        )
        try:
            self._eventThread.start()
        except RuntimeError:
            self._eventLoop.close()
            raise

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        return self._eventLoop

    @property
    def closed(self) -> bool:
        with self._lock:
            return self._closed

    def is_loop_thread(self) -> bool:
        """Return True when called from the coordinator's own loop thread."""
        return current_thread() is self._eventThread

    def run_coroutine(self, coro: Coroutine[Any, Any, Any]) -> Future:
        """
        Schedule a coroutine on the internal event loop.

        Returns:
            concurrent.futures.Future: Future representing the scheduled coroutine's eventual result.

        Raises:
            RuntimeError: If the coordinator has been closed.
        """
        with self._lock:
            if self._closed:
                raise RuntimeError("Event loop coordinator is closed")
            return asyncio.run_coroutine_threadsafe(coro, self._eventLoop)

    def call_later(self, delay: float, callback: Callable[[], None]) -> Deadline:
        """
        Arrange for `callback` to run on the loop thread after `delay` seconds.

        Returns:
            Deadline: Handle whose `cancel()` prevents the callback from running.

        Raises:
            RuntimeError: If the coordinator has been closed.
        """
        deadline = Deadline(callback)
        with self._lock:
            if self._closed:
                raise RuntimeError("Event loop coordinator is closed")
            self._eventLoop.call_soon_threadsafe(deadline.arm, self._eventLoop, delay)
        return deadline

    def close(self) -> None:
        """
        Cancel outstanding tasks, stop the event loop and join its thread.

        Idempotent. Logs a warning if the thread does not exit within
        BLEConfig.EVENT_THREAD_JOIN_TIMEOUT.
        """
        with self._lock:
            if self._closed:
                return
            self._closed = True
        self.error_handler.safe_cleanup(
            lambda: asyncio.run_coroutine_threadsafe(
                self._stop_event_loop(), self._eventLoop
            ),
            "event loop stop",
        )
        if self.is_loop_thread():
            return
        self._eventThread.join(timeout=BLEConfig.EVENT_THREAD_JOIN_TIMEOUT)
        if self._eventThread.is_alive():
            logger.warning(
                "Event loop thread did not exit within %.1fs",
                BLEConfig.EVENT_THREAD_JOIN_TIMEOUT,
            )

    def __enter__(self):
        return self

    def __exit__(self, _type, _value, _traceback):
        self.close()

    def _run_event_loop(self):
        asyncio.set_event_loop(self._eventLoop)
        self.error_handler.safe_execute(
            self._eventLoop.run_forever, error_msg="Error in event loop", reraise=False
        )
        self._eventLoop.close()  # Clean up resources when loop stops

    async def _stop_event_loop(self):
        current = asyncio.current_task()
        pending = [task for task in asyncio.all_tasks() if task is not current]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._eventLoop.stop()
