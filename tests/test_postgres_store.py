from __future__ import annotations

from datetime import timedelta
from unittest.mock import MagicMock

import psycopg2.errors
import pytest

from changelog_follower.domain.entities import CrawlStatus, PackageIdentity, RecordFilter, RecordUpdate, Registry
from changelog_follower.domain.errors import StoreContentionError
from changelog_follower.infrastructure.postgres_store import LOCK_TIMEOUT, PostgresChangeStore, PostgresSearchIndex
from fakes import T0

IDENTITY = PackageIdentity(Registry.NPM, "lodash")


def connection(cur: MagicMock) -> MagicMock:
    conn = MagicMock()
    conn.cursor.return_value.__enter__.return_value = cur
    return conn


def stored_row(version="4.17.20", changelog="old notes"):
    return ("npm/lodash", "npm", "lodash", "crawled", T0, T0 - timedelta(days=30),
            version, changelog, None, T0 - timedelta(hours=6))


def crawled(version: str) -> RecordUpdate:
    return RecordUpdate(
        status           = CrawlStatus.CRAWLED,
        next_eligible_at = T0 + timedelta(hours=6),
        crawled_at       = T0,
        version          = version,
        changelog        = f"{version} notes",
    )


def test_upsert_waits_for_row_lock_then_merges():
    cur = MagicMock()
    cur.fetchone.return_value = stored_row()
    conn = connection(cur)

    record, applied = PostgresChangeStore(conn).upsert(IDENTITY, crawled("4.17.21"))

    assert applied
    assert record.last_known_version == "4.17.21"
    statements = [c.args[0] for c in cur.execute.call_args_list]
    assert "ON CONFLICT (identity) DO NOTHING" in statements[0]
    assert statements[1] == f"SET LOCAL lock_timeout = '{LOCK_TIMEOUT}'"
    assert statements[2].endswith("FOR UPDATE")
    assert statements[3].strip().startswith("UPDATE changelogs")
    assert cur.execute.call_args_list[3].args[1][2] == "4.17.21"
    conn.commit.assert_called_once()


def test_upsert_keeps_newer_stored_version():
    cur = MagicMock()
    cur.fetchone.return_value = stored_row(version="5.0.0", changelog="five")

    record, applied = PostgresChangeStore(connection(cur)).upsert(IDENTITY, crawled("4.17.21"))

    assert not applied
    assert (record.last_known_version, record.changelog) == ("5.0.0", "five")
    assert record.last_crawled_at == T0


def test_lock_timeout_raises_contention_and_rolls_back():
    cur = MagicMock()
    cur.execute.side_effect = [None, None, psycopg2.errors.LockNotAvailable("canceling statement due to lock timeout")]
    conn = connection(cur)

    with pytest.raises(StoreContentionError):
        PostgresChangeStore(conn).upsert(IDENTITY, crawled("4.17.21"))

    conn.rollback.assert_called_once()
    conn.commit.assert_not_called()


def test_other_database_errors_propagate_after_rollback():
    cur = MagicMock()
    cur.execute.side_effect = psycopg2.OperationalError("server closed the connection")
    conn = connection(cur)

    with pytest.raises(psycopg2.OperationalError):
        PostgresChangeStore(conn).upsert(IDENTITY, crawled("4.17.21"))

    conn.rollback.assert_called_once()


def test_scan_builds_filtered_ordered_query():
    cur = MagicMock()
    cur.fetchall.return_value = [stored_row()]

    records = PostgresChangeStore(connection(cur)).scan(
        RecordFilter(registry=Registry.NPM, due_before=T0, crawled_only=True),
        order_by="next_eligible_at", limit=100,
    )

    sql, params = cur.execute.call_args.args
    assert "WHERE registry = %s AND next_eligible_at <= %s AND last_crawled_at IS NOT NULL" in sql
    assert sql.endswith("ORDER BY next_eligible_at ASC, identity ASC LIMIT %s")
    assert params == ["npm", T0, 100]
    assert records[0].registry is Registry.NPM


def test_scan_rejects_unknown_ordering():
    with pytest.raises(ValueError):
        PostgresChangeStore(MagicMock()).scan(RecordFilter(), order_by="name; DROP TABLE changelogs")


def test_insert_pending_reports_creation():
    cur = MagicMock()
    cur.rowcount = 0
    assert not PostgresChangeStore(connection(cur)).insert_pending(IDENTITY, T0, T0)
    cur.rowcount = 1
    assert PostgresChangeStore(connection(cur)).insert_pending(IDENTITY, T0, T0)


def test_search_lookup_filters_expired_rows_in_sql():
    cur = MagicMock()
    cur.fetchall.return_value = [("lod", 10.0, "npm/lodash", T0 + timedelta(days=2))]

    entries = PostgresSearchIndex(connection(cur)).lookup("lod", T0, 10)

    sql, params = cur.execute.call_args.args
    assert "valid_until > %s" in sql
    assert params == ("lod", T0, 10)
    assert entries[0].identity == "npm/lodash"


def test_failed_statement_rolls_back_the_shared_connection():
    cur = MagicMock()
    cur.execute.side_effect = psycopg2.errors.QueryCanceled("canceling statement due to statement timeout")
    conn = connection(cur)
    store = PostgresChangeStore(conn)

    with pytest.raises(psycopg2.errors.QueryCanceled):
        store.reschedule("npm/lodash", T0)
    with pytest.raises(psycopg2.errors.QueryCanceled):
        store.scan(RecordFilter(), order_by="identity")
    with pytest.raises(psycopg2.errors.QueryCanceled):
        PostgresSearchIndex(conn).purge_expired(T0)

    assert conn.rollback.call_count == 3
    conn.commit.assert_not_called()
