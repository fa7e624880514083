from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Awaitable, Callable

from changelog_follower.domain.entities import (
    ChangelogRecord,
    CrawlStatus,
    Delivery,
    DispatchMessage,
    PackageDetail,
    PackageIdentity,
    RecordUpdate,
    Registry,
)
from changelog_follower.domain.errors import (
    FetchError,
    PermanentFetchError,
    StoreContentionError,
    TransientFetchError,
)
from changelog_follower.domain.interfaces import (
    IArtifactStore,
    IBroadcaster,
    IChangeStore,
    IDispatchBus,
    IRegistryClient,
)
from changelog_follower.domain.records import utcnow
from . import rendering

log = logging.getLogger(__name__)

RECRAWL_BACKOFF     = timedelta(hours=6)
FETCH_ATTEMPTS      = 3
MAX_CONCURRENT      = 15
RECEIVE_BATCH       = 20
RECEIVE_BLOCK_MS    = 5000
BUS_RETRY_DELAY     = 1
MAX_BUS_RETRY_DELAY = 60


@dataclass(frozen=True)
class CrawlOutcome:
    identity: str
    status:   CrawlStatus | None
    applied:  bool = False


class CrawlWorker:
    """
    Crawls one package per DispatchMessage.

    Order-tolerant and idempotent: the store only overwrites content when
    the fetched version is the same or newer, so stale or duplicated
    messages end as a timestamp bump.

    StoreContentionError is not swallowed here. The fetched result may be
    the newer one, so the delivery must stay unacked and come back.
    """

    def __init__(self, clients: dict[Registry, IRegistryClient], store: IChangeStore,
                 api_artifacts: IArtifactStore, web_artifacts: IArtifactStore, broadcaster: IBroadcaster,
                 clock: Callable[[], datetime] = utcnow,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
                 fetch_attempts: int = FETCH_ATTEMPTS,
                 recrawl_backoff: timedelta = RECRAWL_BACKOFF) -> None:
        self._clients         = clients
        self._store           = store
        self._api_artifacts   = api_artifacts
        self._web_artifacts   = web_artifacts
        self._broadcaster     = broadcaster
        self._clock           = clock
        self._sleep           = sleep
        self._fetch_attempts  = max(1, fetch_attempts)
        self._recrawl_backoff = recrawl_backoff

    async def handle(self, message: DispatchMessage) -> CrawlOutcome:
        try:
            identity = PackageIdentity.parse(message.identity)
        except ValueError as exc:
            # Nothing to record against: the identity can't exist in the store
            log.error("Dropping unroutable message %s: %s", message, exc)
            return CrawlOutcome(message.identity, None)

        client = self._clients.get(identity.registry)
        try:
            if client is None:
                raise PermanentFetchError(str(identity), "no client configured for this registry")
            detail = await self._fetch(client, identity)
        except FetchError as exc:
            return self._record_failure(identity, exc)

        return self._record_success(identity, detail)

    async def _fetch(self, client: IRegistryClient, identity: PackageIdentity) -> PackageDetail:
        for attempt in range(self._fetch_attempts):
            try:
                return await client.fetch_package_detail(identity.name)
            except TransientFetchError as exc:
                if attempt + 1 >= self._fetch_attempts:
                    raise
                wait = 2 ** attempt   # 1s, 2s, 4s …
                log.warning("Fetch of %s failed (attempt %d/%d): %s — retrying in %ds",
                            identity, attempt + 1, self._fetch_attempts, exc, wait)
                await self._sleep(wait)
        raise RuntimeError(f"Exhausted {self._fetch_attempts} fetch attempts for {identity}")

    def _record_success(self, identity: PackageIdentity, detail: PackageDetail) -> CrawlOutcome:
        now = self._clock()
        update = RecordUpdate(
            status           = CrawlStatus.CRAWLED,
            next_eligible_at = now + self._recrawl_backoff,
            crawled_at       = now,
            version          = detail.version,
            changelog        = detail.changelog,
            changelog_url    = detail.changelog_url,
        )
        record, applied = self._store.upsert(identity, update)
        if not applied:
            log.info("%s fetched %s but %s is already stored — content kept",
                     identity, detail.version, record.last_known_version)

        self._publish(record)
        log.info("Crawled %s @ %s", identity, record.last_known_version)
        return CrawlOutcome(str(identity), CrawlStatus.CRAWLED, applied=applied)

    def _record_failure(self, identity: PackageIdentity, exc: FetchError) -> CrawlOutcome:
        now = self._clock()
        log.warning("Crawl of %s failed, next attempt after %s: %s",
                    identity, now + self._recrawl_backoff, exc)
        self._store.upsert(identity, RecordUpdate(
            status           = CrawlStatus.FAILED,
            next_eligible_at = now + self._recrawl_backoff,
        ))
        return CrawlOutcome(str(identity), CrawlStatus.FAILED)

    def _publish(self, record: ChangelogRecord) -> None:
        """Write-through of the stored (not the fetched) state."""
        self._api_artifacts.put(
            rendering.changelog_json_path(record),
            rendering.render_changelog_json(record),
            "application/json",
        )
        self._web_artifacts.put(
            rendering.changelog_html_path(record),
            rendering.render_changelog_html(record),
            "text/html; charset=utf-8",
        )
        self._broadcaster.publish("crawled", {
            "identity":   record.identity,
            "version":    record.last_known_version,
            "crawled_at": record.last_crawled_at.isoformat() if record.last_crawled_at else None,
        })


class CrawlWorkerService:
    """
    Drains the dispatch bus. Each batch is handled concurrently under a
    semaphore; a delivery is acked once handle() returns, whatever the
    crawl result. Deliveries that blow up are left unacked so the bus
    hands them out again, and they never take the loop down with them.
    """

    def __init__(self, worker: CrawlWorker, bus: IDispatchBus, max_concurrent: int = MAX_CONCURRENT,
                 batch_size: int = RECEIVE_BATCH,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep) -> None:
        self._worker     = worker
        self._bus        = bus
        self._semaphore  = asyncio.Semaphore(max_concurrent)
        self._batch_size = batch_size
        self._sleep      = sleep

    async def _handle_one(self, delivery: Delivery) -> bool:
        async with self._semaphore:
            try:
                await self._worker.handle(delivery.message)
            except StoreContentionError as exc:
                log.info("%s is being written elsewhere, leaving delivery %s for redelivery: %s",
                         delivery.message.identity, delivery.delivery_id, exc)
                return False
            except Exception as exc:
                log.error("Crawl of %s raised on delivery %d, leaving it for redelivery: %s",
                          delivery.message.identity, delivery.attempt, exc, exc_info=True)
                return False
        try:
            self._bus.ack(delivery)
        except Exception as exc:
            # The crawl landed; an unacked delivery is reclaimed and lands again as a no-op
            log.error("Ack of %s failed: %s", delivery.delivery_id, exc, exc_info=True)
            return False
        return True

    async def process(self, deliveries: list[Delivery]) -> int:
        """Handle one batch. Returns how many deliveries were acked."""
        results = await asyncio.gather(*[self._handle_one(d) for d in deliveries])
        return sum(results)

    async def run(self, consumer: str, stop: asyncio.Event | None = None) -> None:
        stop  = stop or asyncio.Event()
        total = 0
        delay = BUS_RETRY_DELAY
        log.info("Crawl worker %s listening", consumer)

        while not stop.is_set():
            try:
                deliveries = await asyncio.to_thread(
                    self._bus.receive, consumer, self._batch_size, RECEIVE_BLOCK_MS
                )
                if not deliveries:
                    continue
                acked = await self.process(deliveries)
            except Exception as exc:
                log.error("Dispatch bus unavailable: %s — retrying in %ds", exc, delay, exc_info=True)
                await self._sleep(delay)
                delay = min(delay * 2, MAX_BUS_RETRY_DELAY)
                continue

            delay  = BUS_RETRY_DELAY
            total += acked
            log.info("Batch done | %d/%d acked | %d total", acked, len(deliveries), total)

        log.info("Crawl worker %s stopped after %d crawls", consumer, total)
