"""
main.py — Dependency Wiring (Composition Root)
------------------------------------------------
The only module that knows which concrete class implements each
interface. Every command below:
  1. Reads configuration from environment variables
  2. Creates the concrete infrastructure (PostgreSQL, Redis, S3, httpx)
  3. Injects it into the application service the command runs
  4. Runs one tick, or a lease-guarded loop with --every
  5. Closes every connection, even on failure

Dependency graph:
                              main.py
                                 │
        ┌──────────────┬─────────┼──────────────┬────────────────┐
        ▼              ▼         ▼              ▼                ▼
   NpmFollower   RecentReleasePoller   CrawlWorker   Reconciler   View builders
        │              │         │              │                │
        ▼              ▼         ▼              ▼                ▼
  IRegistryClient   IChangeStore   IDispatchBus   IArtifactStore   ISearchIndex …
  (npm/PyPI/Gems)   (PostgreSQL)   (Redis Stream)  (S3 / local)    (PostgreSQL)
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import socket
import sys
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator

import httpx
import psycopg2

from changelog_follower.application.crawl_worker import CrawlWorker, CrawlWorkerService
from changelog_follower.application.reconciler import Reconciler
from changelog_follower.application.router import EdgeRouter
from changelog_follower.application.scheduler import ScheduledTask
from changelog_follower.application.views import (
    Autocompleter,
    HomepageRegenerator,
    RecentFeedBuilder,
    SearchIndexBuilder,
)
from changelog_follower.application.watchers import NpmFollower, RecentReleasePoller
from changelog_follower.config import ConfigError, Settings, load_settings
from changelog_follower.domain.entities import Registry
from changelog_follower.domain.interfaces import IArtifactStore
from changelog_follower.infrastructure import redis_bus
from changelog_follower.infrastructure.artifact_store import LocalArtifactStore, S3ArtifactStore
from changelog_follower.infrastructure.postgres_store import (
    PostgresChangeStore,
    PostgresFeedStore,
    PostgresSearchIndex,
)
from changelog_follower.infrastructure.registries import build_clients
from changelog_follower.infrastructure.search_api import run_search_server

log = logging.getLogger("changelog_follower")

# Deployed cadences, in seconds
POLL_INTERVAL    = 300
RECRAWL_INTERVAL = 60
VIEW_INTERVAL    = 60


@dataclass
class Wiring:
    """Every concrete dependency a command may need, built once."""
    settings:      Settings
    store:         PostgresChangeStore
    feeds:         PostgresFeedStore
    index:         PostgresSearchIndex
    bus:           redis_bus.RedisDispatchBus
    lease:         redis_bus.RedisLease
    broadcaster:   redis_bus.RedisBroadcaster
    web_artifacts: IArtifactStore
    api_artifacts: IArtifactStore
    http:          httpx.AsyncClient


def _artifact_stores(settings: Settings) -> tuple[IArtifactStore, IArtifactStore]:
    if settings.artifact_backend == "local":
        return (
            LocalArtifactStore(os.path.join(settings.artifact_root, "web")),
            LocalArtifactStore(os.path.join(settings.artifact_root, "api")),
        )
    return (
        S3ArtifactStore(settings.web_bucket, region=settings.aws_region),
        S3ArtifactStore(settings.api_bucket, region=settings.aws_region),
    )


@asynccontextmanager
async def wired(settings: Settings) -> AsyncIterator[Wiring]:
    conn   = psycopg2.connect(settings.database_url)
    redis  = redis_bus.connect(settings.redis_url)
    client = httpx.AsyncClient(follow_redirects=True)
    try:
        web_artifacts, api_artifacts = _artifact_stores(settings)
        yield Wiring(
            settings      = settings,
            store         = PostgresChangeStore(conn),
            feeds         = PostgresFeedStore(conn),
            index         = PostgresSearchIndex(conn),
            bus           = redis_bus.RedisDispatchBus(redis),
            lease         = redis_bus.RedisLease(redis),
            broadcaster   = redis_bus.RedisBroadcaster(redis),
            web_artifacts = web_artifacts,
            api_artifacts = api_artifacts,
            http          = client,
        )
    finally:
        # Always clean up connections, even if an exception occurred
        await client.aclose()
        redis.close()
        conn.close()


async def _run_periodic(task: ScheduledTask, every: float | None) -> None:
    if every is None:
        await task.tick()
    else:
        task.interval = every
        await task.run_forever()


async def run_command(args: argparse.Namespace, settings: Settings) -> int:
    async with wired(settings) as w:
        if args.command == "init-db":
            w.store.ensure_schema()
            return 0

        if args.command == "npm-follower":
            clients  = build_clients(w.http)
            follower = NpmFollower(clients[Registry.NPM], w.store, w.bus)
            await follower.run()
            return 0

        if args.command == "poll":
            clients = build_clients(w.http)
            poller  = RecentReleasePoller(clients[Registry(args.registry)], w.store, w.bus)
            await _run_periodic(ScheduledTask(f"poll-{args.registry}", POLL_INTERVAL, poller.run_once, w.lease), args.every)
            return 0

        if args.command == "crawl-worker":
            worker = CrawlWorker(build_clients(w.http), w.store, w.api_artifacts, w.web_artifacts, w.broadcaster)
            await CrawlWorkerService(worker, w.bus, max_concurrent=args.concurrency).run(args.consumer)
            return 0

        if args.command == "recrawl":
            reconciler = Reconciler(w.store, w.bus)
            await _run_periodic(ScheduledTask("recrawl", RECRAWL_INTERVAL, reconciler.tick, w.lease), args.every)
            return 0

        if args.command == "search-index":
            builder = SearchIndexBuilder(w.store, w.index)
            await _run_periodic(ScheduledTask("search-index", VIEW_INTERVAL, builder.build, w.lease), args.every)
            return 0

        if args.command == "recent-feed":
            builder = RecentFeedBuilder(w.store, w.feeds, w.api_artifacts)
            await _run_periodic(ScheduledTask("recent-feed", VIEW_INTERVAL, builder.build, w.lease), args.every)
            return 0

        if args.command == "homepage":
            builder = HomepageRegenerator(w.store, w.feeds, w.web_artifacts)
            await _run_periodic(ScheduledTask("homepage", VIEW_INTERVAL, builder.build, w.lease), args.every)
            return 0

        if args.command == "search":
            response = Autocompleter(w.index).handle({"q": args.prefix, "limit": str(args.limit)})
            print(json.dumps(response, indent=2))
            return 0

    raise ValueError(f"Unknown command: {args.command}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="changelog-follower",
        description="Follow npm, PyPI and RubyGems and keep their changelogs crawled",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="Create the PostgreSQL tables")
    sub.add_parser("npm-follower", help="Follow npm's change feed (runs until stopped)")

    poll = sub.add_parser("poll", help="Poll a recent-release listing")
    poll.add_argument("registry", choices=[Registry.PYPI.value, Registry.RUBYGEMS.value])

    worker = sub.add_parser("crawl-worker", help="Consume the dispatch bus and crawl")
    worker.add_argument("--consumer", default=f"{socket.gethostname()}-{os.getpid()}",
                        help="Consumer name within the crawlers group")
    worker.add_argument("--concurrency", type=int, default=15, help="Concurrent crawls (default: 15)")

    for name, default, helptext in (
        ("recrawl",      RECRAWL_INTERVAL, "Re-dispatch records due for recrawl"),
        ("search-index", VIEW_INTERVAL,    "Rebuild the typeahead index"),
        ("recent-feed",  VIEW_INTERVAL,    "Rebuild the recently-crawled feeds"),
        ("homepage",     VIEW_INTERVAL,    "Regenerate index.html"),
    ):
        cmd = sub.add_parser(name, help=helptext)
        cmd.add_argument("--every", type=float, default=None, metavar="SECONDS",
                         help=f"Run forever on this interval (deployed at {default}s); default is one tick")
    poll.add_argument("--every", type=float, default=None, metavar="SECONDS",
                      help=f"Run forever on this interval (deployed at {POLL_INTERVAL}s); default is one tick")

    search = sub.add_parser("search", help="Query the typeahead index")
    search.add_argument("prefix")
    search.add_argument("--limit", type=int, default=10)

    serve = sub.add_parser("serve-search", help="Serve the search origin over HTTP")
    serve.add_argument("--host", default="0.0.0.0")
    serve.add_argument("--port", type=int, default=8080)

    route = sub.add_parser("route", help="Show which origin serves a path")
    route.add_argument("path")
    route.add_argument("--config", action="store_true", help="Print the whole routing table instead")

    return parser


def main(argv: list[str] | None = None) -> int:
    logging.basicConfig(
        level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s [%(levelname)s] %(name)s — %(message)s",
        datefmt="%H:%M:%S",
    )
    args = build_parser().parse_args(argv)

    if args.command == "route":
        router = EdgeRouter()
        if args.config:
            print(json.dumps(router.to_config(), indent=2))
        else:
            decision = router.route(args.path)
            print(json.dumps({"path": decision.path, **decision.rule.to_config()}, indent=2))
        return 0

    try:
        settings = load_settings()
    except ConfigError as exc:
        log.error("%s", exc)
        return 1

    if args.command == "serve-search":
        # uvicorn owns its own event loop, so this one stays outside asyncio.run
        conn = psycopg2.connect(settings.database_url)
        try:
            run_search_server(Autocompleter(PostgresSearchIndex(conn)), host=args.host, port=args.port)
        finally:
            conn.close()
        return 0

    try:
        return asyncio.run(run_command(args, settings))
    except KeyboardInterrupt:
        log.info("Interrupted")
        return 130


if __name__ == "__main__":
    sys.exit(main())
