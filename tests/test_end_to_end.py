"""Watcher → bus → worker → views, wired with the in-memory stores."""

from __future__ import annotations

import json
from datetime import timedelta

import pytest

from changelog_follower.application.crawl_worker import CrawlWorker, CrawlWorkerService
from changelog_follower.application.reconciler import Reconciler
from changelog_follower.application.views import (
    Autocompleter,
    HomepageRegenerator,
    RecentFeedBuilder,
    SearchIndexBuilder,
)
from changelog_follower.application.watchers import RecentReleasePoller
from changelog_follower.domain.entities import ChangeBatch, CrawlStatus, Registry
from changelog_follower.domain.errors import TransientFetchError
from fakes import (
    Clock,
    FakeRegistryClient,
    InMemoryChangeStore,
    InMemoryDispatchBus,
    InMemoryFeedStore,
    InMemorySearchIndex,
    RecordingArtifactStore,
    RecordingBroadcaster,
)


class Pipeline:

    def __init__(self) -> None:
        self.clock   = Clock()
        self.client  = FakeRegistryClient(Registry.NPM)
        self.store   = InMemoryChangeStore()
        self.bus     = InMemoryDispatchBus()
        self.feeds   = InMemoryFeedStore()
        self.index   = InMemorySearchIndex()
        self.api     = RecordingArtifactStore()
        self.web     = RecordingArtifactStore()
        self.poller  = RecentReleasePoller(self.client, self.store, self.bus, clock=self.clock)
        self.service = CrawlWorkerService(
            CrawlWorker({Registry.NPM: self.client}, self.store, self.api, self.web,
                        RecordingBroadcaster(), clock=self.clock, sleep=self._sleep),
            self.bus,
        )

    async def _sleep(self, seconds):
        return None

    async def drain(self) -> int:
        return await self.service.process(self.bus.receive("worker-1", count=100))

    def refresh_views(self) -> None:
        SearchIndexBuilder(self.store, self.index, clock=self.clock).build()
        RecentFeedBuilder(self.store, self.feeds, self.api, clock=self.clock).build()
        HomepageRegenerator(self.store, self.feeds, self.web, clock=self.clock).build()


@pytest.fixture
def pipeline():
    return Pipeline()


@pytest.mark.asyncio
async def test_new_release_flows_to_every_view(pipeline):
    pipeline.client.batches.append(ChangeBatch([pipeline.client.release("pkg-a", "1.0.0")]))

    await pipeline.poller.run_once()
    assert await pipeline.drain() == 1
    pipeline.refresh_views()

    record = pipeline.store.get("npm/pkg-a")
    assert record.crawl_status is CrawlStatus.CRAWLED
    assert record.last_known_version == "1.0.0"

    autocomplete = Autocompleter(pipeline.index, clock=pipeline.clock)
    for prefix in ("p", "pk", "pkg", "pkg-", "pkg-a"):
        assert [e.identity for e in autocomplete.query(prefix)] == ["npm/pkg-a"]

    assert pipeline.feeds.get_feed("npm").entries[0].identity == "npm/pkg-a"
    assert json.loads(pipeline.api.documents["api/changelogs/npm/pkg-a.json"][0])["version"] == "1.0.0"
    assert "npm/pkg-a" in pipeline.web.documents["index.html"][0]


@pytest.mark.asyncio
async def test_failed_crawl_is_recovered_by_reconciler(pipeline):
    pipeline.client.batches.append(ChangeBatch([pipeline.client.release("pkg-b", "2.0.0")]))
    pipeline.client.errors["pkg-b"] = [TransientFetchError("npm/pkg-b", "HTTP 503")] * 3

    await pipeline.poller.run_once()
    await pipeline.drain()
    pipeline.refresh_views()

    assert pipeline.store.get("npm/pkg-b").crawl_status is CrawlStatus.FAILED
    assert pipeline.feeds.get_feed("npm").entries == ()

    reconciler = Reconciler(pipeline.store, pipeline.bus, clock=pipeline.clock)
    assert reconciler.tick() == []

    pipeline.clock.advance(hours=6)
    assert reconciler.tick() == ["npm/pkg-b"]
    await pipeline.drain()
    pipeline.refresh_views()

    record = pipeline.store.get("npm/pkg-b")
    assert record.crawl_status is CrawlStatus.CRAWLED
    assert record.next_eligible_at == pipeline.clock.now + timedelta(hours=6)
    assert [e.identity for e in pipeline.feeds.get_feed("npm").entries] == ["npm/pkg-b"]
