from __future__ import annotations

import asyncio
import json
from datetime import timedelta

import pytest
import redis

from changelog_follower.application.crawl_worker import RECRAWL_BACKOFF, CrawlWorker, CrawlWorkerService
from changelog_follower.domain.entities import (
    CrawlStatus,
    DispatchCause,
    DispatchMessage,
    Registry,
)
from changelog_follower.domain.errors import PermanentFetchError, StoreContentionError, TransientFetchError
from fakes import (
    Clock,
    FakeRegistryClient,
    InMemoryChangeStore,
    InMemoryDispatchBus,
    RecordingArtifactStore,
    RecordingBroadcaster,
)


class Harness:

    def __init__(self) -> None:
        self.clock       = Clock()
        self.client      = FakeRegistryClient(Registry.NPM)
        self.store       = InMemoryChangeStore()
        self.api         = RecordingArtifactStore()
        self.web         = RecordingArtifactStore()
        self.broadcaster = RecordingBroadcaster()
        self.sleeps: list[float] = []
        self.worker = CrawlWorker(
            {Registry.NPM: self.client}, self.store, self.api, self.web, self.broadcaster,
            clock=self.clock, sleep=self._sleep,
        )

    async def _sleep(self, seconds):
        self.sleeps.append(seconds)


@pytest.fixture
def h():
    return Harness()


def discovered(identity: str = "npm/lodash") -> DispatchMessage:
    return DispatchMessage(identity, DispatchCause.DISCOVERED)


@pytest.mark.asyncio
async def test_successful_crawl_stores_and_publishes(h):
    h.client.versions["lodash"] = "4.17.21"

    outcome = await h.worker.handle(discovered())

    assert outcome.status is CrawlStatus.CRAWLED and outcome.applied
    record = h.store.get("npm/lodash")
    assert record.crawl_status is CrawlStatus.CRAWLED
    assert record.last_known_version == "4.17.21"
    assert record.last_crawled_at == h.clock.now
    assert record.next_eligible_at == h.clock.now + RECRAWL_BACKOFF

    document, content_type = h.api.documents["api/changelogs/npm/lodash.json"]
    assert content_type == "application/json"
    assert json.loads(document)["version"] == "4.17.21"
    assert "changelogs/npm/lodash/index.html" in h.web.documents
    assert h.broadcaster.events == [("crawled", {
        "identity": "npm/lodash", "version": "4.17.21", "crawled_at": h.clock.now.isoformat(),
    })]


@pytest.mark.asyncio
async def test_redelivery_reaches_same_final_state(h):
    h.client.versions["lodash"] = "4.17.21"

    await h.worker.handle(discovered())
    once = h.store.get("npm/lodash")
    for _ in range(3):
        await h.worker.handle(discovered())

    assert h.store.get("npm/lodash") == once


@pytest.mark.asyncio
async def test_stale_fetch_only_bumps_timestamps(h):
    h.client.versions["lodash"] = "5.0.0"
    await h.worker.handle(discovered())

    # A lagging registry mirror answers with an older version
    h.client.versions["lodash"] = "4.17.21"
    h.clock.advance(minutes=30)
    outcome = await h.worker.handle(discovered())

    record = h.store.get("npm/lodash")
    assert not outcome.applied
    assert record.last_known_version == "5.0.0"
    assert record.changelog == "# lodash 5.0.0\n\n* changes"
    assert record.last_crawled_at == h.clock.now
    # Published artifacts follow the stored version, not the fetched one
    assert json.loads(h.api.documents["api/changelogs/npm/lodash.json"][0])["version"] == "5.0.0"


@pytest.mark.asyncio
async def test_transient_errors_are_retried_with_backoff(h):
    h.client.versions["lodash"] = "1.0.0"
    h.client.errors["lodash"] = [TransientFetchError("npm/lodash", "429"), TransientFetchError("npm/lodash", "503")]

    outcome = await h.worker.handle(discovered())

    assert outcome.status is CrawlStatus.CRAWLED
    assert h.sleeps == [1, 2]
    assert len(h.client.detail_calls) == 3


@pytest.mark.asyncio
async def test_exhausted_retries_mark_failed(h):
    h.client.versions["lodash"] = "1.0.0"
    h.client.errors["lodash"] = [TransientFetchError("npm/lodash", "timeout")] * 3

    outcome = await h.worker.handle(discovered())

    record = h.store.get("npm/lodash")
    assert outcome.status is CrawlStatus.FAILED
    assert record.crawl_status is CrawlStatus.FAILED
    assert record.next_eligible_at == h.clock.now + RECRAWL_BACKOFF
    assert record.last_crawled_at is None
    assert h.api.documents == {}


@pytest.mark.asyncio
async def test_permanent_failure_keeps_last_known_good_content(h):
    h.client.versions["lodash"] = "1.0.0"
    await h.worker.handle(discovered())
    good = h.store.get("npm/lodash")

    h.clock.advance(hours=6)
    h.client.errors["lodash"] = [PermanentFetchError("npm/lodash", "HTTP 404")]
    outcome = await h.worker.handle(DispatchMessage("npm/lodash", DispatchCause.RECRAWL_DUE))

    record = h.store.get("npm/lodash")
    assert outcome.status is CrawlStatus.FAILED
    assert h.sleeps == []
    assert record.crawl_status is CrawlStatus.FAILED
    assert (record.changelog, record.last_known_version) == (good.changelog, good.last_known_version)
    assert record.next_eligible_at == h.clock.now + timedelta(hours=6)


@pytest.mark.asyncio
async def test_unconfigured_registry_is_a_permanent_failure(h):
    outcome = await h.worker.handle(DispatchMessage("pypi/requests", DispatchCause.DISCOVERED))
    assert outcome.status is CrawlStatus.FAILED
    assert h.store.get("pypi/requests").crawl_status is CrawlStatus.FAILED


@pytest.mark.asyncio
async def test_malformed_identity_is_dropped(h):
    outcome = await h.worker.handle(DispatchMessage("not-an-identity", DispatchCause.DISCOVERED))
    assert outcome.status is None
    assert h.store.records == {}


@pytest.mark.asyncio
async def test_locked_row_surfaces_contention(h):
    h.client.versions["lodash"] = "1.0.0"
    h.store.locked.add("npm/lodash")

    with pytest.raises(StoreContentionError):
        await h.worker.handle(discovered())

    assert h.api.documents == {}


class TestCrawlWorkerService:

    @pytest.mark.asyncio
    async def test_acks_handled_deliveries(self, h):
        bus = InMemoryDispatchBus()
        h.client.versions.update({"a": "1.0.0", "b": "2.0.0"})
        h.client.errors["b"] = [PermanentFetchError("npm/b", "gone")]
        bus.publish(discovered("npm/a"))
        bus.publish(discovered("npm/b"))

        acked = await CrawlWorkerService(h.worker, bus).process(bus.receive("w1"))

        assert acked == 2
        assert bus.in_flight == {}

    @pytest.mark.asyncio
    async def test_unexpected_error_leaves_delivery_for_redelivery(self, h):
        bus = InMemoryDispatchBus()
        h.client.versions.update({"a": "1.0.0", "boom": "1.0.0"})
        h.client.errors["boom"] = [RuntimeError("parser exploded")]
        bus.publish(discovered("npm/boom"))
        bus.publish(discovered("npm/a"))

        service = CrawlWorkerService(h.worker, bus)
        acked = await service.process(bus.receive("w1"))

        assert acked == 1
        assert h.store.get("npm/a").crawl_status is CrawlStatus.CRAWLED

        bus.redeliver()
        redelivered = bus.receive("w2")
        assert [(d.message.identity, d.attempt) for d in redelivered] == [("npm/boom", 2)]
        assert await service.process(redelivered) == 1
        assert h.store.get("npm/boom").crawl_status is CrawlStatus.CRAWLED

    @pytest.mark.asyncio
    async def test_newer_fetch_blocked_by_lock_lands_on_redelivery(self, h):
        bus = InMemoryDispatchBus()
        h.client.versions["lodash"] = "1.0.0"
        await h.worker.handle(discovered())

        h.client.versions["lodash"] = "2.0.0"
        h.store.locked.add("npm/lodash")
        bus.publish(discovered())
        service = CrawlWorkerService(h.worker, bus)

        assert await service.process(bus.receive("w1")) == 0
        assert len(bus.in_flight) == 1
        assert h.store.get("npm/lodash").last_known_version == "1.0.0"

        h.store.locked.clear()
        bus.redeliver()
        assert await service.process(bus.receive("w2")) == 1
        assert h.store.get("npm/lodash").last_known_version == "2.0.0"

    @pytest.mark.asyncio
    async def test_run_survives_receive_failure(self, h):
        stop   = asyncio.Event()
        sleeps: list[float] = []
        h.client.versions["lodash"] = "1.0.0"

        class DroppingBus(InMemoryDispatchBus):
            calls = 0

            def receive(self, consumer, count=10, block_ms=0):
                self.calls += 1
                if self.calls == 1:
                    raise redis.ConnectionError("Connection reset by peer")
                stop.set()
                return super().receive(consumer, count, block_ms)

        async def sleep(seconds):
            sleeps.append(seconds)

        bus = DroppingBus()
        bus.publish(discovered())

        await CrawlWorkerService(h.worker, bus, sleep=sleep).run("w1", stop)

        assert bus.calls == 2
        assert sleeps == [1]
        assert h.store.get("npm/lodash").crawl_status is CrawlStatus.CRAWLED
        assert bus.in_flight == {}

    @pytest.mark.asyncio
    async def test_failed_ack_leaves_delivery_unacked(self, h):
        h.client.versions["lodash"] = "1.0.0"

        class NoAckBus(InMemoryDispatchBus):
            def ack(self, delivery):
                raise redis.TimeoutError("Timeout writing to socket")

        bus = NoAckBus()
        bus.publish(discovered())

        assert await CrawlWorkerService(h.worker, bus).process(bus.receive("w1")) == 0
        assert len(bus.in_flight) == 1
        assert h.store.get("npm/lodash").crawl_status is CrawlStatus.CRAWLED
