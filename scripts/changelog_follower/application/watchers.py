from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Awaitable, Callable

from changelog_follower.domain.entities import (
    DispatchCause,
    DispatchMessage,
    RecentChange,
    WatchResult,
)
from changelog_follower.domain.errors import (
    DispatchDeliveryError,
    PermanentFetchError,
    TransientFetchError,
)
from changelog_follower.domain.interfaces import IChangeStore, IDispatchBus, IRegistryClient
from changelog_follower.domain.records import utcnow

log = logging.getLogger(__name__)

# A freshly discovered record becomes due for reconciliation after this,
# which re-dispatches it if the Discovered message never got through.
PENDING_GRACE       = timedelta(minutes=10)
RECONNECT_DELAY     = 5
MAX_RECONNECT_DELAY = 300


class RegistryWatcher:
    """
    Turns a registry's changes into DispatchMessages.

    Holds no memory between invocations: whether a change is new is
    decided by reading the Change Store fresh every time. Two watchers
    racing on the same change both dispatch, and the crawl worker's
    version check makes the duplicate harmless.
    """

    def __init__(self, client: IRegistryClient, store: IChangeStore, bus: IDispatchBus,
                 clock: Callable[[], datetime] = utcnow) -> None:
        self._client = client
        self._store  = store
        self._bus    = bus
        self._clock  = clock

    def _needs_crawl(self, change: RecentChange) -> bool:
        key    = str(change.identity)
        record = self._store.get(key)
        if record is None:
            now = self._clock()
            self._store.insert_pending(change.identity, now, now + PENDING_GRACE)
            return True
        if change.version is None:
            # Feed events without a version are changes by definition
            return True
        return record.last_known_version != change.version

    def _dispatch_all(self, changes: list[RecentChange]) -> WatchResult:
        seen: set[str] = set()
        dispatched = 0
        failed: list[str] = []

        for change in changes:
            key = str(change.identity)
            if key in seen:
                continue
            seen.add(key)

            if not self._needs_crawl(change):
                continue
            try:
                self._bus.publish(DispatchMessage(key, DispatchCause.DISCOVERED))
                dispatched += 1
            except DispatchDeliveryError as exc:
                # Record stays pending; the reconciler picks it up after PENDING_GRACE
                log.error("Dispatch failed for %s: %s", key, exc)
                failed.append(key)

        return WatchResult(seen=len(seen), dispatched=dispatched, failed=failed)


class RecentReleasePoller(RegistryWatcher):
    """
    Scheduled watcher for registries that only publish a "recently
    released" listing (PyPI, RubyGems). One call = one poll.
    """

    async def run_once(self) -> WatchResult:
        registry = self._client.registry.value
        try:
            batch = await self._client.fetch_recent_changes()
        except TransientFetchError as exc:
            log.warning("%s listing unavailable, deferring to next poll: %s", registry, exc)
            return WatchResult()
        except PermanentFetchError as exc:
            log.error("%s listing unusable, deferring to next poll: %s", registry, exc)
            return WatchResult()

        result = self._dispatch_all(batch.changes)
        log.info("%s poll | %d recent | %d dispatched | %d failed",
                 registry, result.seen, result.dispatched, len(result.failed))
        return result


class NpmFollower(RegistryWatcher):
    """
    Persistent follower of npm's sequence-numbered change feed.

    The cursor lives in the Change Store, not in this process, and only
    moves once every change of a batch has been dispatched. A restart
    resumes exactly where the last acknowledged batch ended.
    """

    name = "npm-follower"

    def __init__(self, client: IRegistryClient, store: IChangeStore, bus: IDispatchBus,
                 clock: Callable[[], datetime] = utcnow,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep) -> None:
        super().__init__(client, store, bus, clock)
        self._sleep = sleep

    async def run_once(self) -> WatchResult:
        since = self._store.get_cursor(self.name)
        batch = await self._client.fetch_recent_changes(since)
        result = self._dispatch_all(batch.changes)

        if result.failed:
            log.error("Holding cursor at %s: %d changes could not be dispatched", since, len(result.failed))
        elif batch.next_cursor is not None and batch.next_cursor != since:
            self._store.set_cursor(self.name, batch.next_cursor)

        if result.seen:
            log.info("npm changes since %s | %d seen | %d dispatched | cursor=%s",
                     since, result.seen, result.dispatched, batch.next_cursor)
        return result

    async def run(self, stop: asyncio.Event | None = None) -> None:
        stop  = stop or asyncio.Event()
        delay = RECONNECT_DELAY
        log.info("npm follower starting from cursor %s", self._store.get_cursor(self.name))

        while not stop.is_set():
            try:
                result = await self.run_once()
            except (TransientFetchError, PermanentFetchError) as exc:
                log.warning("npm change feed unavailable: %s — reconnecting in %ds", exc, delay)
                await self._sleep(delay)
                delay = min(delay * 2, MAX_RECONNECT_DELAY)
                continue
            except Exception as exc:
                # Store or bus outage; the cursor only moves on a clean batch
                log.error("npm follower batch failed: %s — retrying in %ds", exc, delay, exc_info=True)
                await self._sleep(delay)
                delay = min(delay * 2, MAX_RECONNECT_DELAY)
                continue

            delay = RECONNECT_DELAY
            if result.failed:
                await self._sleep(delay)

        log.info("npm follower stopped")
