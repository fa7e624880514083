"""
Derived views
-------------
Each builder recomputes its artifact from the current Change Store state
rather than from deltas, so running it twice, or twice at once, gives the
same result. Only records with known-good content (crawled at least once)
ever show up: a package that fails a recrawl keeps serving its last good
version, and one that never crawled stays invisible.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable

from changelog_follower.domain.entities import (
    FeedEntry,
    FeedRecord,
    RecordFilter,
    Registry,
    SearchIndexEntry,
)
from changelog_follower.domain.interfaces import (
    IArtifactStore,
    IChangeStore,
    IFeedStore,
    ISearchIndex,
)
from changelog_follower.domain.records import search_fragments, utcnow
from . import rendering

log = logging.getLogger(__name__)

MIN_FRAGMENT_LENGTH = 1
INDEX_TTL           = timedelta(days=2)
INDEX_BATCH         = 500
FEED_LENGTH         = 25
HOMEPAGE_SAMPLE     = 10
SEARCH_LIMIT        = 10
ALL_FEED            = "all"
FEED_NAMES          = [ALL_FEED] + [r.value for r in Registry]
RECENT_FEED_PATH    = "api/recently-crawled.json"
HOMEPAGE_PATH       = "index.html"


class SearchIndexBuilder:

    def __init__(self, store: IChangeStore, index: ISearchIndex, ttl: timedelta = INDEX_TTL,
                 clock: Callable[[], datetime] = utcnow) -> None:
        self._store = store
        self._index = index
        self._ttl   = ttl
        self._clock = clock

    def build(self) -> int:
        now         = self._clock()
        valid_until = now + self._ttl
        written     = 0
        batch: list[SearchIndexEntry] = []

        for record in self._store.scan(RecordFilter(crawled_only=True), order_by="identity"):
            score = record.last_crawled_at.timestamp()
            for fragment in search_fragments(record.name, MIN_FRAGMENT_LENGTH):
                batch.append(SearchIndexEntry(fragment, score, record.identity, valid_until))
            if len(batch) >= INDEX_BATCH:
                self._index.put_entries(batch)
                written += len(batch)
                batch = []

        if batch:
            self._index.put_entries(batch)
            written += len(batch)

        purged = self._index.purge_expired(now)
        log.info("Search index rebuilt | %d entries written | %d expired purged", written, purged)
        return written


class Autocompleter:
    """Read side of the search index, served behind the search* route."""

    def __init__(self, index: ISearchIndex, clock: Callable[[], datetime] = utcnow) -> None:
        self._index = index
        self._clock = clock

    def query(self, prefix: str, limit: int = SEARCH_LIMIT) -> list[SearchIndexEntry]:
        fragment = prefix.strip().lower()
        if len(fragment) < MIN_FRAGMENT_LENGTH:
            return []
        now = self._clock()
        # The store already filters, but expiry is a reader-side guarantee
        entries = [e for e in self._index.lookup(fragment, now, limit) if e.is_live(now)]
        return sorted(entries, key=lambda e: (-e.score, e.identity))

    def handle(self, params: dict[str, str]) -> dict:
        prefix = params.get("q", "")
        try:
            limit = max(1, min(int(params.get("limit", SEARCH_LIMIT)), 50))
        except ValueError:
            limit = SEARCH_LIMIT
        return {
            "query":   prefix,
            "results": [e.identity for e in self.query(prefix, limit)],
        }


class RecentFeedBuilder:

    def __init__(self, store: IChangeStore, feeds: IFeedStore, api_artifacts: IArtifactStore,
                 length: int = FEED_LENGTH, clock: Callable[[], datetime] = utcnow) -> None:
        self._store         = store
        self._feeds         = feeds
        self._api_artifacts = api_artifacts
        self._length        = length
        self._clock         = clock

    def build(self) -> list[FeedRecord]:
        now = self._clock()
        built: list[FeedRecord] = []

        for feed_name in FEED_NAMES:
            registry = None if feed_name == ALL_FEED else Registry(feed_name)
            records = self._store.scan(
                RecordFilter(registry=registry, crawled_only=True),
                order_by = "last_crawled_at",
                limit    = self._length,
            )
            feed = FeedRecord(
                feed         = feed_name,
                entries      = tuple(FeedEntry(r.identity, r.last_known_version, r.last_crawled_at) for r in records),
                refreshed_at = now,
            )
            self._feeds.put_feed(feed)
            built.append(feed)

        self._api_artifacts.put(RECENT_FEED_PATH, rendering.render_feeds_json(built), "application/json")
        log.info("Recent feeds refreshed | %s",
                 ", ".join(f"{f.feed}={len(f.entries)}" for f in built))
        return built


class HomepageRegenerator:

    def __init__(self, store: IChangeStore, feeds: IFeedStore, web_artifacts: IArtifactStore,
                 sample_size: int = HOMEPAGE_SAMPLE, clock: Callable[[], datetime] = utcnow) -> None:
        self._store         = store
        self._feeds         = feeds
        self._web_artifacts = web_artifacts
        self._sample_size   = sample_size
        self._clock         = clock

    def build(self) -> str:
        feeds = [feed for name in FEED_NAMES if (feed := self._feeds.get_feed(name)) is not None]
        sample = self._store.scan(RecordFilter(crawled_only=True), order_by="last_crawled_at",
                                  limit=self._sample_size)
        document = rendering.render_homepage(feeds, sample, self._clock())
        self._web_artifacts.put(HOMEPAGE_PATH, document, "text/html; charset=utf-8")
        log.info("Homepage regenerated | %d feeds | %d highlights", len(feeds), len(sample))
        return document
