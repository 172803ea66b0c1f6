"""Clock, deadline and cancellation primitives used at every suspension point."""

from __future__ import annotations

import asyncio
import inspect
import time
from typing import Any, Awaitable, Callable, Optional, TypeVar

from .errors import SessionDisconnected

T = TypeVar("T")


class MonotonicClock:
    """Default clock: ``time.monotonic`` and ``asyncio.sleep``."""

    def now(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(max(0.0, seconds))


class Lifeline:
    """Cancellation signal tripped when the owning node closes or disconnects.

    A tripped lifeline stays tripped; :meth:`check` and :meth:`error` hand back
    the :class:`SessionDisconnected` describing why.
    """

    def __init__(self, node_id: str) -> None:
        self.node_id = node_id
        self._event: Optional[asyncio.Event] = None
        self._reason: Optional[str] = None

    @property
    def tripped(self) -> bool:
        return self._reason is not None

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def trip(self, reason: str) -> None:
        if self._reason is not None:
            return
        self._reason = reason
        if self._event is not None:
            self._event.set()

    def error(self) -> SessionDisconnected:
        return SessionDisconnected(self._reason or f"{self.node_id} closed", node_id=self.node_id)

    def check(self) -> None:
        if self._reason is not None:
            raise self.error()

    async def wait(self) -> None:
        if self._event is None:
            self._event = asyncio.Event()
            if self._reason is not None:
                self._event.set()
        await self._event.wait()


class Deadline:
    """Absolute deadline measured on a :class:`MonotonicClock`-like clock."""

    def __init__(self, clock: Any, timeout_ms: float) -> None:
        self.clock = clock
        self.timeout_ms = float(timeout_ms)
        self.started = clock.now()
        self.expires = self.started + self.timeout_ms / 1000

    def remaining(self) -> float:
        return max(0.0, self.expires - self.clock.now())

    def elapsed_ms(self) -> float:
        return (self.clock.now() - self.started) * 1000

    @property
    def expired(self) -> bool:
        return self.clock.now() >= self.expires


async def guarded(
    awaitable: Awaitable[T],
    lifeline: Optional[Lifeline],
    timeout: Optional[float] = None,
) -> T:
    """Await ``awaitable`` unless ``lifeline`` trips or ``timeout`` elapses first.

    Raises :class:`SessionDisconnected` on a tripped lifeline and
    :class:`asyncio.TimeoutError` on timeout; the losing task is cancelled
    either way so nothing keeps running detached.
    """

    if lifeline is not None and lifeline.tripped:
        if inspect.iscoroutine(awaitable):
            awaitable.close()
        raise lifeline.error()
    work = asyncio.ensure_future(awaitable)
    waiters = {work}
    watcher: Optional[asyncio.Future] = None
    if lifeline is not None:
        watcher = asyncio.ensure_future(lifeline.wait())
        waiters.add(watcher)
    try:
        done, _ = await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
    except BaseException:
        work.cancel()
        if watcher is not None:
            watcher.cancel()
        raise
    if watcher is not None and not watcher.done():
        watcher.cancel()
    if work in done:
        return work.result()
    work.cancel()
    await _drain(work)
    if watcher is not None and watcher in done:
        raise lifeline.error()
    raise asyncio.TimeoutError()


async def pause(clock: Any, seconds: float, lifeline: Optional[Lifeline]) -> None:
    """Cooperative sleep that aborts as soon as ``lifeline`` trips."""

    if lifeline is None:
        await clock.sleep(seconds)
        return
    await guarded(clock.sleep(seconds), lifeline)


async def _drain(task: asyncio.Future) -> None:
    try:
        await task
    except asyncio.CancelledError:
        pass


async def maybe_await(fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
    """Call ``fn`` and await the result when it is awaitable."""

    result = fn(*args, **kwargs)
    if inspect.isawaitable(result):
        return await result
    return result
