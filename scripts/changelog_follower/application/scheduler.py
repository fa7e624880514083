from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable

from changelog_follower.domain.interfaces import ILease

log = logging.getLogger(__name__)


class ScheduledTask:
    """
    Runs an idempotent action on a fixed interval.

    Every tick first takes a short lease named after the task, so when
    several instances are scheduled only one of them does the work. The
    lease is an optimisation, not a correctness guarantee: the actions
    are safe to overlap.
    """

    def __init__(self, name: str, interval: float, action: Callable[[], Any],
                 lease: ILease | None = None,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep) -> None:
        self.name     = name
        self.interval = interval
        self._action  = action
        self._lease   = lease
        self._sleep   = sleep

    async def tick(self) -> bool:
        """Run the action once if the lease allows. Returns whether it ran."""
        if self._lease is not None:
            ttl = max(1, int(self.interval * 0.9))
            if not self._lease.acquire(self.name, ttl):
                log.debug("%s tick skipped: lease held elsewhere", self.name)
                return False

        result = self._action()
        if inspect.isawaitable(result):
            await result
        return True

    async def run_forever(self, stop: asyncio.Event | None = None) -> None:
        stop = stop or asyncio.Event()
        log.info("%s scheduled every %ss", self.name, self.interval)
        while not stop.is_set():
            try:
                await self.tick()
            except Exception as exc:
                log.error("%s tick failed: %s", self.name, exc, exc_info=True)
            await self._sleep(self.interval)
