"""
Domain Layer — Record merge rules
---------------------------------
The single place that decides how a crawl result lands on a stored
ChangelogRecord. Every ChangeStore implementation calls merge_record
under its own per-identity lock, so the rules cannot drift between
PostgreSQL and the in-memory stores used in tests.

Ordering is "last write wins by version", never by message order:
  - fetched version >= stored version  → content + version overwritten
  - fetched version <  stored version  → content kept, timestamps move
  - failed crawl                       → content kept, status = failed
"""

from __future__ import annotations

import re
from dataclasses import replace
from datetime import datetime, timezone

from packaging.version import InvalidVersion, Version

from .entities import ChangelogRecord, CrawlStatus, PackageIdentity, RecordUpdate

_NUMBER = re.compile(r"(\d+)")


def _fallback_key(value: str) -> tuple:
    # Natural sort for versions PEP 440 can't parse ("2.0.0.pre.rc1", "1.0.0-beta.x")
    return tuple(
        (0, int(part), "") if part.isdigit() else (1, 0, part)
        for part in _NUMBER.split(value.lower())
        if part
    )


def compare_versions(a: str, b: str) -> int:
    """Return -1, 0 or 1 as a is older than, equal to or newer than b."""
    try:
        left, right = Version(a), Version(b)
    except InvalidVersion:
        left, right = _fallback_key(a), _fallback_key(b)
    return (left > right) - (left < right)


def is_same_or_newer(candidate: str | None, stored: str | None) -> bool:
    if stored is None:
        return True
    if candidate is None:
        return False
    return compare_versions(candidate, stored) >= 0


def new_pending_record(identity: PackageIdentity, now: datetime, next_eligible_at: datetime) -> ChangelogRecord:
    return ChangelogRecord(
        identity         = str(identity),
        registry         = identity.registry,
        name             = identity.name,
        crawl_status     = CrawlStatus.PENDING,
        next_eligible_at = next_eligible_at,
        discovered_at    = now,
    )


def merge_record(existing: ChangelogRecord | None, identity: PackageIdentity, update: RecordUpdate) -> tuple[ChangelogRecord, bool]:
    """
    Apply one crawl result. Returns (merged record, content_applied).

    Pure function: safe to call again with the same inputs, which is what
    makes redelivered DispatchMessages harmless.
    """
    if existing is None:
        existing = new_pending_record(identity, update.crawled_at or update.next_eligible_at, update.next_eligible_at)

    if update.status is not CrawlStatus.CRAWLED:
        merged = replace(
            existing,
            crawl_status     = update.status,
            next_eligible_at = update.next_eligible_at,
        )
        return merged, False

    last_crawled = existing.last_crawled_at
    if update.crawled_at is not None and (last_crawled is None or update.crawled_at > last_crawled):
        last_crawled = update.crawled_at

    applied = is_same_or_newer(update.version, existing.last_known_version)
    merged = replace(
        existing,
        crawl_status     = CrawlStatus.CRAWLED,
        next_eligible_at = update.next_eligible_at,
        last_crawled_at  = last_crawled,
    )
    if applied:
        merged = replace(
            merged,
            last_known_version = update.version,
            changelog          = update.changelog,
            changelog_url      = update.changelog_url,
        )
    return merged, applied


def search_fragments(name: str, min_length: int = 1) -> list[str]:
    """Every prefix of the lower-cased name, shortest first."""
    normalized = name.strip().lower()
    return [normalized[:end] for end in range(max(min_length, 1), len(normalized) + 1)]


def utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)
