"""Periodic "still waiting" log lines while a model call is in flight."""

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator, Callable

from oracle.clock import Clock

logger = logging.getLogger(__name__)


class Heartbeat:
    """Logs make_message(elapsed_sec) every interval until stopped."""

    def __init__(self, interval_sec: float, make_message: Callable[[float], str], clock: Clock) -> None:
        self._interval_sec = interval_sec
        self._make_message = make_message
        self._clock = clock
        self._task: asyncio.Task | None = None

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self._interval_sec > 0 and self._task is None:
            self._task = asyncio.create_task(self._run())

    def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None

    async def _run(self) -> None:
        started = self._clock.now()
        while True:
            # Real sleep: the heartbeat must not advance an injected test clock.
            await asyncio.sleep(self._interval_sec)
            logger.info(self._make_message(self._clock.now() - started))


@contextlib.asynccontextmanager
async def heartbeat(
    interval_sec: float | None,
    make_message: Callable[[float], str],
    clock: Clock,
) -> AsyncIterator[Heartbeat]:
    beat = Heartbeat(interval_sec or 0, make_message, clock)
    beat.start()
    try:
        yield beat
    finally:
        beat.stop()
