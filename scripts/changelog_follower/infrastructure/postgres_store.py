from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator

import psycopg2.errors
from psycopg2.extras import execute_values

from changelog_follower.domain.entities import (
    ChangelogRecord,
    CrawlStatus,
    FeedEntry,
    FeedRecord,
    PackageIdentity,
    RecordFilter,
    RecordUpdate,
    Registry,
    SearchIndexEntry,
)
from changelog_follower.domain.errors import StoreContentionError
from changelog_follower.domain.interfaces import IChangeStore, IFeedStore, ISearchIndex
from changelog_follower.domain.records import merge_record

log = logging.getLogger(__name__)

# How long an upsert waits for a concurrent writer before giving up
LOCK_TIMEOUT = "5s"

SCHEMA = """
CREATE TABLE IF NOT EXISTS changelogs (
    identity           TEXT PRIMARY KEY,
    registry           TEXT        NOT NULL,
    name               TEXT        NOT NULL,
    crawl_status       TEXT        NOT NULL,
    next_eligible_at   TIMESTAMPTZ NOT NULL,
    discovered_at      TIMESTAMPTZ NOT NULL,
    last_known_version TEXT,
    changelog          TEXT,
    changelog_url      TEXT,
    last_crawled_at    TIMESTAMPTZ
);
CREATE INDEX IF NOT EXISTS changelogs_next_eligible_idx ON changelogs (next_eligible_at, identity);
CREATE INDEX IF NOT EXISTS changelogs_last_crawled_idx  ON changelogs (registry, last_crawled_at DESC);

CREATE TABLE IF NOT EXISTS follower_cursors (
    follower   TEXT PRIMARY KEY,
    cursor     TEXT        NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL
);

CREATE TABLE IF NOT EXISTS feeds (
    feed         TEXT PRIMARY KEY,
    entries      JSONB       NOT NULL,
    refreshed_at TIMESTAMPTZ NOT NULL
);

CREATE TABLE IF NOT EXISTS search_index (
    fragment    TEXT             NOT NULL,
    identity    TEXT             NOT NULL,
    score       DOUBLE PRECISION NOT NULL,
    valid_until TIMESTAMPTZ      NOT NULL,
    PRIMARY KEY (fragment, identity)
);
CREATE INDEX IF NOT EXISTS search_index_lookup_idx ON search_index (fragment, score DESC, identity);
"""

RECORD_COLUMNS = (
    "identity, registry, name, crawl_status, next_eligible_at, discovered_at, "
    "last_known_version, changelog, changelog_url, last_crawled_at"
)

ORDERINGS = {
    "next_eligible_at": "next_eligible_at ASC, identity ASC",
    "last_crawled_at":  "last_crawled_at DESC NULLS LAST, identity ASC",
    "identity":         "identity ASC",
}


@contextmanager
def transaction(conn) -> Iterator:
    """
    One cursor, one transaction. Commits on success and rolls back on any
    error, so a failed statement never leaves the shared connection in an
    aborted transaction for the next caller.
    """
    try:
        with conn.cursor() as cur:
            yield cur
        conn.commit()
    except Exception:
        conn.rollback()
        raise


def _row_to_record(row: tuple) -> ChangelogRecord:
    return ChangelogRecord(
        identity           = row[0],
        registry           = Registry(row[1]),
        name               = row[2],
        crawl_status       = CrawlStatus(row[3]),
        next_eligible_at   = row[4],
        discovered_at      = row[5],
        last_known_version = row[6],
        changelog          = row[7],
        changelog_url      = row[8],
        last_crawled_at    = row[9],
    )


class PostgresChangeStore(IChangeStore):
    """
    IChangeStore on PostgreSQL.

    Receives an already-connected psycopg2 connection (injected); the
    composition root owns it. Upserts lock the row with FOR UPDATE and
    apply domain.records.merge_record under that lock, so concurrent
    writers for one identity are serialized and the version check alone
    decides what is kept. A writer that waits longer than LOCK_TIMEOUT
    gets StoreContentionError and is expected to retry later.
    """

    def __init__(self, conn) -> None:
        self._conn = conn

    def ensure_schema(self) -> None:
        with transaction(self._conn) as cur:
            cur.execute(SCHEMA)
        log.info("PostgreSQL schema is up to date")

    def get(self, identity: str) -> ChangelogRecord | None:
        with transaction(self._conn) as cur:
            cur.execute(f"SELECT {RECORD_COLUMNS} FROM changelogs WHERE identity = %s", (identity,))
            row = cur.fetchone()
        return _row_to_record(row) if row else None

    def insert_pending(self, identity: PackageIdentity, now: datetime, next_eligible_at: datetime) -> bool:
        with transaction(self._conn) as cur:
            cur.execute(
                """
                INSERT INTO changelogs
                    (identity, registry, name, crawl_status, next_eligible_at, discovered_at)
                VALUES (%s, %s, %s, %s, %s, %s)
                ON CONFLICT (identity) DO NOTHING
                """,
                (str(identity), identity.registry.value, identity.name,
                 CrawlStatus.PENDING.value, next_eligible_at, now),
            )
            created = cur.rowcount == 1
        return created

    def upsert(self, identity: PackageIdentity, update: RecordUpdate) -> tuple[ChangelogRecord, bool]:
        key = str(identity)
        now = update.crawled_at or datetime.now(tz=timezone.utc)
        try:
            with transaction(self._conn) as cur:
                # Make sure there is a row to lock, then wait for it
                cur.execute(
                    """
                    INSERT INTO changelogs
                        (identity, registry, name, crawl_status, next_eligible_at, discovered_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    ON CONFLICT (identity) DO NOTHING
                    """,
                    (key, identity.registry.value, identity.name,
                     CrawlStatus.PENDING.value, update.next_eligible_at, now),
                )
                cur.execute(f"SET LOCAL lock_timeout = '{LOCK_TIMEOUT}'")
                cur.execute(
                    f"SELECT {RECORD_COLUMNS} FROM changelogs WHERE identity = %s FOR UPDATE",
                    (key,),
                )
                existing = _row_to_record(cur.fetchone())
                merged, applied = merge_record(existing, identity, update)
                cur.execute(
                    """
                    UPDATE changelogs
                    SET crawl_status       = %s,
                        next_eligible_at   = %s,
                        last_known_version = %s,
                        changelog          = %s,
                        changelog_url      = %s,
                        last_crawled_at    = %s
                    WHERE identity = %s
                    """,
                    (merged.crawl_status.value, merged.next_eligible_at, merged.last_known_version,
                     merged.changelog, merged.changelog_url, merged.last_crawled_at, key),
                )
        except psycopg2.errors.LockNotAvailable as exc:
            raise StoreContentionError(f"{key} stayed locked for {LOCK_TIMEOUT}") from exc

        log.debug("Upserted %s | status=%s | applied=%s", key, merged.crawl_status.value, applied)
        return merged, applied

    def reschedule(self, identity: str, next_eligible_at: datetime) -> None:
        with transaction(self._conn) as cur:
            cur.execute(
                "UPDATE changelogs SET next_eligible_at = %s WHERE identity = %s",
                (next_eligible_at, identity),
            )

    def scan(self, record_filter: RecordFilter, order_by: str, limit: int | None = None) -> list[ChangelogRecord]:
        if order_by not in ORDERINGS:
            raise ValueError(f"Unsupported ordering: {order_by}")

        clauses: list[str] = []
        params: list = []
        if record_filter.registry is not None:
            clauses.append("registry = %s")
            params.append(record_filter.registry.value)
        if record_filter.due_before is not None:
            clauses.append("next_eligible_at <= %s")
            params.append(record_filter.due_before)
        if record_filter.crawled_only:
            clauses.append("last_crawled_at IS NOT NULL")

        sql = f"SELECT {RECORD_COLUMNS} FROM changelogs"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += f" ORDER BY {ORDERINGS[order_by]}"
        if limit is not None:
            sql += " LIMIT %s"
            params.append(limit)

        with transaction(self._conn) as cur:
            cur.execute(sql, params)
            rows = cur.fetchall()
        return [_row_to_record(row) for row in rows]

    def get_cursor(self, follower: str) -> str | None:
        with transaction(self._conn) as cur:
            cur.execute("SELECT cursor FROM follower_cursors WHERE follower = %s", (follower,))
            row = cur.fetchone()
        return row[0] if row else None

    def set_cursor(self, follower: str, cursor: str) -> None:
        with transaction(self._conn) as cur:
            cur.execute(
                """
                INSERT INTO follower_cursors (follower, cursor, updated_at)
                VALUES (%s, %s, NOW())
                ON CONFLICT (follower) DO UPDATE SET
                    cursor     = EXCLUDED.cursor,
                    updated_at = EXCLUDED.updated_at
                """,
                (follower, cursor),
            )
        log.debug("Cursor for %s advanced to %s", follower, cursor)


class PostgresFeedStore(IFeedStore):

    def __init__(self, conn) -> None:
        self._conn = conn

    def put_feed(self, feed: FeedRecord) -> None:
        entries = json.dumps([
            {
                "identity":   e.identity,
                "version":    e.version,
                "crawled_at": e.crawled_at.isoformat(),
            }
            for e in feed.entries
        ])
        with transaction(self._conn) as cur:
            cur.execute(
                """
                INSERT INTO feeds (feed, entries, refreshed_at)
                VALUES (%s, %s, %s)
                ON CONFLICT (feed) DO UPDATE SET
                    entries      = EXCLUDED.entries,
                    refreshed_at = EXCLUDED.refreshed_at
                """,
                (feed.feed, entries, feed.refreshed_at),
            )

    def get_feed(self, feed: str) -> FeedRecord | None:
        with transaction(self._conn) as cur:
            cur.execute("SELECT entries, refreshed_at FROM feeds WHERE feed = %s", (feed,))
            row = cur.fetchone()
        if not row:
            return None
        raw = row[0] if isinstance(row[0], list) else json.loads(row[0])
        entries = tuple(
            FeedEntry(
                identity   = e["identity"],
                version    = e.get("version"),
                crawled_at = datetime.fromisoformat(e["crawled_at"]),
            )
            for e in raw
        )
        return FeedRecord(feed=feed, entries=entries, refreshed_at=row[1])


class PostgresSearchIndex(ISearchIndex):
    """
    Typeahead index keyed by (fragment, identity).

    Expired rows may linger until purge_expired runs; lookup filters on
    valid_until itself rather than trusting the purge.
    """

    def __init__(self, conn) -> None:
        self._conn = conn

    def put_entries(self, entries: list[SearchIndexEntry]) -> None:
        if not entries:
            return
        rows = [(e.fragment, e.identity, e.score, e.valid_until) for e in entries]
        with transaction(self._conn) as cur:
            execute_values(
                cur,
                """
                INSERT INTO search_index (fragment, identity, score, valid_until)
                VALUES %s
                ON CONFLICT (fragment, identity) DO UPDATE SET
                    score       = EXCLUDED.score,
                    valid_until = EXCLUDED.valid_until
                """,
                rows,
            )
        log.debug("Wrote %d search index entries", len(rows))

    def lookup(self, fragment: str, now: datetime, limit: int) -> list[SearchIndexEntry]:
        with transaction(self._conn) as cur:
            cur.execute(
                """
                SELECT fragment, score, identity, valid_until
                FROM search_index
                WHERE fragment = %s AND valid_until > %s
                ORDER BY score DESC, identity ASC
                LIMIT %s
                """,
                (fragment, now, limit),
            )
            rows = cur.fetchall()
        return [SearchIndexEntry(fragment=r[0], score=r[1], identity=r[2], valid_until=r[3]) for r in rows]

    def purge_expired(self, now: datetime) -> int:
        with transaction(self._conn) as cur:
            cur.execute("DELETE FROM search_index WHERE valid_until <= %s", (now,))
            purged = cur.rowcount
        return purged
