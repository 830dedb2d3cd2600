"""Asyncio helpers for bounded dispatch, time limits on hooks and gates, and stall watchdogs."""

from __future__ import annotations

import asyncio
import inspect
import time
from collections.abc import Callable
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, TypeVar

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Awaitable

T = TypeVar("T")

MonotonicClock = Callable[[], float]

_MAX_POLL_SECONDS = 1.0


class StallTimeoutError(TimeoutError):
    """A watched task went ``stall_timeout_seconds`` without a heartbeat."""

    def __init__(self, stall_timeout_seconds: float, idle_seconds: float) -> None:
        self.stall_timeout_seconds = stall_timeout_seconds
        self.idle_seconds = idle_seconds
        super().__init__(
            f"stalled: no progress for {idle_seconds:.3f}s "
            f"(stall threshold {stall_timeout_seconds}s)"
        )


class BoundedSemaphore:
    """
    ``asyncio.Semaphore`` that also counts permits in use.

    The controller takes one permit per dispatched task, so ``in_use`` is the
    number of agents currently working on the build.
    """

    def __init__(self, limit: int) -> None:
        if limit <= 0:
            raise ValueError("limit must be > 0")
        self.limit = limit
        self.in_use = 0
        self._permits = asyncio.Semaphore(limit)

    @property
    def available(self) -> int:
        return self.limit - self.in_use

    async def acquire(self) -> None:
        await self._permits.acquire()
        self.in_use += 1

    def release(self) -> None:
        if not self.in_use:
            raise RuntimeError("release called more times than acquire")
        self.in_use -= 1
        self._permits.release()

    @asynccontextmanager
    async def permit(self) -> AsyncIterator[None]:
        await self.acquire()
        try:
            yield
        finally:
            self.release()

    def snapshot(self) -> dict[str, int]:
        return {"limit": self.limit, "in_use": self.in_use, "available": self.available}


class ProgressHeartbeat:
    """
    Last-progress marker shared between a running task and its stall watchdog.

    Agents call :meth:`beat` whenever they make observable progress; the watchdog
    compares :attr:`idle_seconds` against the stall threshold.
    """

    __slots__ = ("_clock", "_last_beat", "_beats")

    def __init__(self, clock: MonotonicClock | None = None) -> None:
        self._clock = clock if clock is not None else time.monotonic
        self._last_beat = self._clock()
        self._beats = 0

    def beat(self) -> None:
        self._last_beat = self._clock()
        self._beats += 1

    @property
    def beats(self) -> int:
        return self._beats

    @property
    def idle_seconds(self) -> float:
        return max(0.0, self._clock() - self._last_beat)


async def run_with_timeout(awaitable: Awaitable[T], timeout_seconds: float) -> T:
    """Await ``awaitable`` for at most ``timeout_seconds``; raises ``TimeoutError`` after."""
    if timeout_seconds <= 0:
        _discard(awaitable)
        raise ValueError("timeout_seconds must be > 0")
    async with asyncio.timeout(timeout_seconds):
        return await awaitable


async def run_with_stall_detection(
    coroutine: Awaitable[T],
    heartbeat: ProgressHeartbeat,
    stall_timeout_seconds: float,
    *,
    poll_interval_seconds: float | None = None,
) -> T:
    """
    Await ``coroutine`` while watching ``heartbeat``.

    There is no overall deadline: the coroutine may run as long as it keeps
    beating. Once ``stall_timeout_seconds`` pass without a beat it is cancelled
    and ``StallTimeoutError`` is raised. Cancelling the caller cancels the
    coroutine too.
    """
    if stall_timeout_seconds <= 0:
        _discard(coroutine)
        raise ValueError("stall_timeout_seconds must be > 0")

    poll = poll_interval_seconds or min(stall_timeout_seconds / 4.0, _MAX_POLL_SECONDS)
    work: asyncio.Future[T] = asyncio.ensure_future(coroutine)
    try:
        while not work.done():
            idle = heartbeat.idle_seconds
            if idle >= stall_timeout_seconds:
                raise StallTimeoutError(stall_timeout_seconds, idle)
            await asyncio.wait({work}, timeout=min(stall_timeout_seconds - idle, poll))
        return work.result()
    finally:
        if not work.done():
            work.cancel()
            await asyncio.gather(work, return_exceptions=True)


def _discard(awaitable: Awaitable[object]) -> None:
    # A coroutine rejected before it was scheduled must be closed, or CPython
    # warns "coroutine was never awaited" when it is collected.
    if inspect.iscoroutine(awaitable):
        awaitable.close()


__all__ = [
    "BoundedSemaphore",
    "ProgressHeartbeat",
    "StallTimeoutError",
    "run_with_stall_detection",
    "run_with_timeout",
]
