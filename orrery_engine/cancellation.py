"""
Cooperative cancellation shared by every participant of one operation.

A single CancellationSource is created with the OperationContext and passed
by reference through delegation, so cancelling it anywhere (caller, hook,
tool, sub-agent) is observed by every step loop in the tree.

Usage:
    source = CancellationSource()

    # any holder
    source.cancel("policy violation")

    # step loop
    source.raise_if_cancelled()
    await source.wait()
"""
import asyncio
import logging
import threading
from typing import Callable

from orrery_engine.exceptions import OperationCancelled

logger = logging.getLogger("orrery.engine.cancellation")


class CancellationSource:
    """One-shot cancellation flag with an awaitable signal.

    ``cancel`` may be called from sync tool handlers running in executor
    threads; the asyncio side is woken through ``call_soon_threadsafe``.
    """

    def __init__(self, operation_id: str | None = None):
        self.operation_id = operation_id
        self._lock = threading.Lock()
        self._cancelled = False
        self._reason: str | None = None
        self._event: asyncio.Event | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._callbacks: list[Callable[[str], None]] = []

    @property
    def is_cancelled(self) -> bool:
        return self._cancelled

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str = "cancelled") -> bool:
        """Request cancellation. Returns False if it was already cancelled."""
        with self._lock:
            if self._cancelled:
                return False
            self._cancelled = True
            self._reason = reason
            callbacks = list(self._callbacks)
            event, loop = self._event, self._loop

        logger.info("Operation %s cancelled: %s", self.operation_id or "-", reason)

        if event is not None and loop is not None:
            try:
                running = asyncio.get_running_loop()
            except RuntimeError:
                running = None
            if running is loop:
                event.set()
            elif not loop.is_closed():
                loop.call_soon_threadsafe(event.set)

        for cb in callbacks:
            try:
                cb(reason)
            except Exception as e:
                logger.warning("Cancellation callback failed: %s", e)
        return True

    def add_callback(self, callback: Callable[[str], None]) -> None:
        """Run ``callback(reason)`` on cancel (immediately if already cancelled)."""
        with self._lock:
            if not self._cancelled:
                self._callbacks.append(callback)
                return
        callback(self._reason or "cancelled")

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise OperationCancelled(self._reason or "cancelled", self.operation_id)

    def _get_event(self) -> asyncio.Event:
        with self._lock:
            if self._event is None:
                self._event = asyncio.Event()
                self._loop = asyncio.get_running_loop()
                if self._cancelled:
                    self._event.set()
            return self._event

    async def wait(self) -> str:
        """Block until cancelled; returns the reason."""
        await self._get_event().wait()
        return self._reason or "cancelled"

    async def race(self, awaitable):
        """
        Await ``awaitable`` unless cancellation fires first.

        On cancellation the pending work is cancelled and abandoned, and
        OperationCancelled is raised.
        """
        self.raise_if_cancelled()
        work = asyncio.ensure_future(awaitable)
        watcher = asyncio.ensure_future(self.wait())
        try:
            done, _ = await asyncio.wait(
                {work, watcher}, return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            # our own task was cancelled; let the abandoned work unwind first
            watcher.cancel()
            work.cancel()
            await asyncio.wait({work})
            raise
        if work in done:
            watcher.cancel()
            return work.result()
        work.cancel()
        try:
            await work
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.debug("Abandoned work raised after cancellation: %s", e)
        raise OperationCancelled(self._reason or "cancelled", self.operation_id)

    def __repr__(self) -> str:
        state = f"cancelled({self._reason!r})" if self._cancelled else "active"
        return f"CancellationSource(operation_id={self.operation_id!r}, {state})"
