from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class Registry(str, Enum):
    NPM      = "npm"
    PYPI     = "pypi"
    RUBYGEMS = "rubygems"


class CrawlStatus(str, Enum):
    PENDING = "pending"
    CRAWLED = "crawled"
    FAILED  = "failed"


class DispatchCause(str, Enum):
    DISCOVERED  = "discovered"
    RECRAWL_DUE = "recrawl_due"


@dataclass(frozen=True)
class PackageIdentity:
    """
    The unique key of a tracked package: registry + package name.

    The same name on two registries is two different packages, so the
    string form always carries the registry: "npm/lodash", "pypi/requests".
    """
    registry: Registry
    name:     str

    def __str__(self) -> str:
        return f"{self.registry.value}/{self.name}"

    @classmethod
    def parse(cls, value: str) -> PackageIdentity:
        registry, sep, name = value.partition("/")
        if not sep or not name:
            raise ValueError(f"Malformed package identity: {value!r}")
        try:
            return cls(Registry(registry), name)
        except ValueError:
            raise ValueError(f"Unknown registry in identity: {value!r}") from None


@dataclass(frozen=True)
class ChangelogRecord:
    """
    Durable crawl state of one package. One row per identity, never deleted.

    last_crawled_at is only set by a successful crawl, so a record with
    last_crawled_at set always has last-known-good content to serve.
    """
    identity:           str
    registry:           Registry
    name:               str
    crawl_status:       CrawlStatus
    next_eligible_at:   datetime
    discovered_at:      datetime
    last_known_version: str | None      = None
    changelog:          str | None      = None
    changelog_url:      str | None      = None
    last_crawled_at:    datetime | None = None

    @property
    def has_content(self) -> bool:
        return self.last_crawled_at is not None


@dataclass(frozen=True)
class RecordUpdate:
    """What a crawl attempt writes back to the Change Store."""
    status:           CrawlStatus
    next_eligible_at: datetime
    crawled_at:       datetime | None = None
    version:          str | None      = None
    changelog:        str | None      = None
    changelog_url:    str | None      = None


@dataclass(frozen=True)
class RecentChange:
    """One entry of a registry's change feed or recent-release listing."""
    identity: PackageIdentity
    version:  str | None = None


@dataclass(frozen=True)
class ChangeBatch:
    changes:     list[RecentChange]
    next_cursor: str | None = None


@dataclass(frozen=True)
class PackageDetail:
    identity:      PackageIdentity
    version:       str
    changelog:     str | None = None
    changelog_url: str | None = None


@dataclass(frozen=True)
class DispatchMessage:
    identity: str
    cause:    DispatchCause

    def to_fields(self) -> dict[str, str]:
        return {"identity": self.identity, "cause": self.cause.value}

    @classmethod
    def from_fields(cls, fields: dict[str, str]) -> DispatchMessage:
        return cls(identity=fields["identity"], cause=DispatchCause(fields["cause"]))


@dataclass(frozen=True)
class Delivery:
    message:     DispatchMessage
    delivery_id: str
    attempt:     int = 1


@dataclass(frozen=True)
class FeedEntry:
    identity:   str
    version:    str | None
    crawled_at: datetime


@dataclass(frozen=True)
class FeedRecord:
    feed:         str
    entries:      tuple[FeedEntry, ...]
    refreshed_at: datetime


@dataclass(frozen=True)
class SearchIndexEntry:
    fragment:    str
    score:       float
    identity:    str
    valid_until: datetime

    def is_live(self, now: datetime) -> bool:
        return self.valid_until > now


@dataclass(frozen=True)
class RecordFilter:
    """Selection used by ChangeStore.scan. Unset fields do not filter."""
    registry:     Registry | None = None
    due_before:   datetime | None = None
    crawled_only: bool            = False


@dataclass(frozen=True)
class WatchResult:
    seen:       int = 0
    dispatched: int = 0
    failed:     list[str] = field(default_factory=list)
