"""Fallible, latency-bearing calls into native camera/model code.

Blocking work (OpenCV reads, FaceMesh inference, model loading) runs on a
single worker thread so the event loop driving the render and audio loops
never blocks on it. A call that outlives its deadline is abandoned: the
awaiting coroutine gets ``BridgeTimeoutError`` and the eventual result is
dropped, but the call keeps counting as pending until the worker is free.
Results that own a resource (a camera handle, a model session) can name a
``discard`` hook so an abandoned result is released instead of leaked.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, Optional

from kiosk_avatar.errors import BridgeClosedError, BridgeTimeoutError

logger = logging.getLogger(__name__)


class _Call:
    """One submitted call; decides which side releases an abandoned result."""

    def __init__(self, fn: Callable[..., Any], args: tuple, discard: Optional[Callable[[Any], Any]]) -> None:
        self.fn = fn
        self.args = args
        self.discard = discard
        self._lock = threading.Lock()
        self._finished = False
        self._abandoned = False

    def run(self) -> Any:
        result = self.fn(*self.args)
        with self._lock:
            self._finished = True
            abandoned = self._abandoned
        if abandoned:
            self.release(result)
        return result

    def abandon(self, fut: asyncio.Future) -> None:
        with self._lock:
            self._abandoned = True
            finished = self._finished
        # The worker already returned; its result is on its way into ``fut``.
        if finished and self.discard is not None:
            fut.add_done_callback(self._release_outcome)

    def _release_outcome(self, fut: asyncio.Future) -> None:
        if not fut.cancelled() and fut.exception() is None:
            self.release(fut.result())

    def release(self, result: Any) -> None:
        if self.discard is None:
            return
        try:
            self.discard(result)
        except Exception:
            logger.warning("Releasing abandoned result of %s failed", _name(self.fn), exc_info=True)


def _name(fn: Callable[..., Any]) -> str:
    return getattr(fn, "__qualname__", repr(fn))


class HostBridge:
    def __init__(self, name: str = "host-bridge") -> None:
        self.name = name
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=name)
        self._pending: Dict[asyncio.Future, Optional[str]] = {}
        self._closed = False
        self.calls = 0
        self.timeouts = 0
        self.abandoned = 0

    @property
    def busy(self) -> bool:
        return bool(self._pending)

    @property
    def closed(self) -> bool:
        return self._closed

    def _settle(self, fut: asyncio.Future) -> None:
        self._pending.pop(fut, None)
        # Retrieve the outcome so abandoned calls don't warn on collection.
        if not fut.cancelled():
            exc = fut.exception()
            if exc is not None:
                logger.debug("%s call finished with %r", self.name, exc)

    async def call(
        self,
        fn: Callable[..., Any],
        *args: Any,
        timeout: Optional[float] = None,
        tag: Optional[str] = None,
        discard: Optional[Callable[[Any], Any]] = None,
    ) -> Any:
        """Run ``fn(*args)`` on the worker.

        ``tag`` names the resource the call touches so ``drain`` can wait on
        just that resource. ``discard`` receives the result if the caller
        gave up (timeout or cancellation) before it arrived.
        """
        if self._closed:
            raise BridgeClosedError(f"{self.name} is closed")
        loop = asyncio.get_running_loop()
        job = _Call(fn, args, discard)
        fut = loop.run_in_executor(self._executor, job.run)
        self._pending[fut] = tag
        fut.add_done_callback(self._settle)
        self.calls += 1
        try:
            if timeout is None:
                return await asyncio.shield(fut)
            return await asyncio.wait_for(asyncio.shield(fut), timeout)
        except asyncio.TimeoutError:
            self.timeouts += 1
            self.abandoned += 1
            job.abandon(fut)
            raise BridgeTimeoutError(f"{_name(fn)} exceeded {timeout:.3f}s") from None
        except asyncio.CancelledError:
            if not fut.done():
                self.abandoned += 1
                job.abandon(fut)
            elif discard is not None and not fut.cancelled() and fut.exception() is None:
                job.release(fut.result())
            raise

    async def drain(self, timeout: Optional[float] = None, tag: Optional[str] = None) -> bool:
        """Wait for outstanding calls, or only those carrying ``tag``.

        Returns False if some are still running.
        """
        waiting = {fut for fut, t in self._pending.items() if tag is None or t == tag}
        if not waiting:
            return True
        _, still_running = await asyncio.wait(waiting, timeout=timeout)
        return not still_running

    def defer(self, fn: Callable[[], Any]) -> None:
        """Queue ``fn`` on the worker, behind whatever call is stuck there."""
        if self._closed:
            raise BridgeClosedError(f"{self.name} is closed")
        self._executor.submit(self._run_deferred, fn)

    async def run_when_idle(
        self, fn: Callable[[], Any], timeout: Optional[float] = None, tag: Optional[str] = None
    ) -> bool:
        """Run ``fn`` once no call tagged ``tag`` is running.

        Runs inline and returns True if those calls settle within
        ``timeout``; otherwise defers ``fn`` behind them and returns False.
        """
        if await self.drain(timeout, tag=tag):
            fn()
            return True
        self.defer(fn)
        return False

    def close(self) -> None:
        """Refuse new calls and let the worker exit once deferred work ran."""
        if self._closed:
            return
        self._closed = True
        if self._pending:
            logger.warning("%s closing with %d call(s) still running", self.name, len(self._pending))
        self._executor.shutdown(wait=False)

    def _run_deferred(self, fn: Callable[[], Any]) -> None:
        try:
            fn()
        except Exception:
            logger.warning("%s deferred cleanup failed", self.name, exc_info=True)
