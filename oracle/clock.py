"""Injectable time source so deadlines, polling and backoff run without real sleeps in tests."""

import asyncio
import inspect
import time
from collections.abc import Awaitable, Callable
from typing import Protocol, TypeVar

T = TypeVar("T")


class Clock(Protocol):
    def now(self) -> float:
        """Monotonic seconds."""
        ...

    async def sleep(self, seconds: float) -> None:
        ...


class SystemClock:
    """Wall clock backed by time.monotonic and asyncio.sleep."""

    def now(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


async def await_before(
    awaitable: Awaitable[T],
    clock: Clock,
    deadline: float,
    on_timeout: Callable[[], BaseException],
) -> T:
    """Await with whatever time is left before deadline; raise on_timeout() when it runs out.

    A TimeoutError raised by the awaitable itself (not by the deadline) propagates unchanged.
    """
    remaining = deadline - clock.now()
    if remaining <= 0:
        if inspect.iscoroutine(awaitable):
            awaitable.close()
        raise on_timeout()
    scope = asyncio.timeout(remaining)
    try:
        async with scope:
            return await awaitable
    except TimeoutError as exc:
        if scope.expired():
            raise on_timeout() from exc
        raise
