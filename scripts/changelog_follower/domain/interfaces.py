"""
Domain Layer — Interfaces (Abstract Contracts)
-----------------------------------------------
What the infrastructure must provide. Watchers, the crawl worker, the
reconciler and the view builders are written against these, never
against PostgreSQL, Redis, S3 or a particular registry.

Every component is stateless between invocations: cursors, dedup state
and crawl status all live behind IChangeStore, so any number of
instances can run side by side.
"""

from __future__ import annotations
from abc import ABC, abstractmethod
from datetime import datetime

from .entities import (
    ChangeBatch,
    ChangelogRecord,
    Delivery,
    DispatchMessage,
    FeedRecord,
    PackageDetail,
    PackageIdentity,
    RecordFilter,
    RecordUpdate,
    Registry,
    SearchIndexEntry,
)


class IRegistryClient(ABC):
    """
    Capability set of one package registry.
    One concrete class per registry; callers never branch on which.
    """

    registry: Registry

    @abstractmethod
    async def fetch_recent_changes(self, since: str | None = None) -> ChangeBatch:
        """
        Fetch the next batch of changes.

        Feed-style registries resume after `since` and return the cursor to
        persist; listing-style registries ignore it and return None.
        """
        ...

    @abstractmethod
    async def fetch_package_detail(self, name: str) -> PackageDetail:
        """Fetch current version + changelog. Raises a FetchError subclass."""
        ...


class IChangeStore(ABC):
    """Durable ChangelogRecords plus the follower cursors."""

    @abstractmethod
    def get(self, identity: str) -> ChangelogRecord | None:
        ...

    @abstractmethod
    def insert_pending(self, identity: PackageIdentity, now: datetime, next_eligible_at: datetime) -> bool:
        """Create a pending record if none exists. Returns True if created."""
        ...

    @abstractmethod
    def upsert(self, identity: PackageIdentity, update: RecordUpdate) -> tuple[ChangelogRecord, bool]:
        """
        Version-guarded upsert (see domain.records.merge_record).
        Returns (stored record, content_applied).
        Raises StoreContentionError if another writer holds the record.
        """
        ...

    @abstractmethod
    def reschedule(self, identity: str, next_eligible_at: datetime) -> None:
        """Move next_eligible_at without touching anything else."""
        ...

    @abstractmethod
    def scan(self, record_filter: RecordFilter, order_by: str, limit: int | None = None) -> list[ChangelogRecord]:
        """
        order_by is one of:
          "next_eligible_at" — oldest first, ties by identity
          "last_crawled_at"  — most recent first, ties by identity
          "identity"
        """
        ...

    @abstractmethod
    def get_cursor(self, follower: str) -> str | None:
        ...

    @abstractmethod
    def set_cursor(self, follower: str, cursor: str) -> None:
        ...


class IDispatchBus(ABC):
    """At-least-once publish/subscribe between watchers and crawl workers."""

    @abstractmethod
    def publish(self, message: DispatchMessage) -> str:
        """Returns the bus ack id. Raises DispatchDeliveryError."""
        ...

    @abstractmethod
    def receive(self, consumer: str, count: int = 10, block_ms: int = 5000) -> list[Delivery]:
        """New deliveries plus any unacked ones abandoned by dead consumers."""
        ...

    @abstractmethod
    def ack(self, delivery: Delivery) -> None:
        ...


class IFeedStore(ABC):

    @abstractmethod
    def put_feed(self, feed: FeedRecord) -> None:
        ...

    @abstractmethod
    def get_feed(self, feed: str) -> FeedRecord | None:
        ...


class ISearchIndex(ABC):

    @abstractmethod
    def put_entries(self, entries: list[SearchIndexEntry]) -> None:
        """Write or overwrite entries keyed by (fragment, identity)."""
        ...

    @abstractmethod
    def lookup(self, fragment: str, now: datetime, limit: int) -> list[SearchIndexEntry]:
        """Live entries only (valid_until > now), score desc then identity."""
        ...

    @abstractmethod
    def purge_expired(self, now: datetime) -> int:
        ...


class IArtifactStore(ABC):
    """Public, read-optimized documents. put() replaces atomically."""

    @abstractmethod
    def put(self, path: str, content: str, content_type: str) -> None:
        ...


class IBroadcaster(ABC):
    """Fan-out of live events to every connected client."""

    @abstractmethod
    def publish(self, event: str, payload: dict) -> None:
        ...


class ILease(ABC):
    """Short lease that keeps periodic ticks single-flight."""

    @abstractmethod
    def acquire(self, name: str, ttl_seconds: int) -> bool:
        ...
