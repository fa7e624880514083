"""Thin renderers for the published artifacts. Presentation is deliberately plain."""

from __future__ import annotations

import json
from datetime import datetime
from html import escape

from changelog_follower.domain.entities import ChangelogRecord, FeedRecord

FEED_TITLES = {
    "all":      "Recently crawled",
    "npm":      "npm",
    "pypi":     "PyPI",
    "rubygems": "RubyGems",
}


def changelog_json_path(record: ChangelogRecord) -> str:
    return f"api/changelogs/{record.registry.value}/{record.name}.json"


def changelog_html_path(record: ChangelogRecord) -> str:
    return f"changelogs/{record.registry.value}/{record.name}/index.html"


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def changelog_document(record: ChangelogRecord) -> dict:
    return {
        "identity":      record.identity,
        "registry":      record.registry.value,
        "name":          record.name,
        "version":       record.last_known_version,
        "changelog":     record.changelog,
        "changelog_url": record.changelog_url,
        "crawled_at":    _iso(record.last_crawled_at),
    }


def render_changelog_json(record: ChangelogRecord) -> str:
    return json.dumps(changelog_document(record), ensure_ascii=False, indent=2)


def render_changelog_html(record: ChangelogRecord) -> str:
    link = ""
    if record.changelog_url:
        link = f'<p><a href="{escape(record.changelog_url)}">Full changelog</a></p>'
    return (
        "<!doctype html>\n"
        f"<html><head><meta charset=\"utf-8\"><title>{escape(record.identity)}</title>"
        "<link rel=\"stylesheet\" href=\"/css/styles.css\"></head><body>"
        f"<h1>{escape(record.name)} <small>{escape(record.last_known_version or '')}</small></h1>"
        f"<p class=\"registry\">{escape(record.registry.value)}</p>"
        f"{link}"
        f"<pre class=\"changelog\">{escape(record.changelog or '')}</pre>"
        "</body></html>\n"
    )


def render_feeds_json(feeds: list[FeedRecord]) -> str:
    return json.dumps(
        {
            feed.feed: {
                "refreshed_at": feed.refreshed_at.isoformat(),
                "entries": [
                    {"identity": e.identity, "version": e.version, "crawled_at": e.crawled_at.isoformat()}
                    for e in feed.entries
                ],
            }
            for feed in feeds
        },
        indent=2,
    )


def render_homepage(feeds: list[FeedRecord], sample: list[ChangelogRecord], generated_at: datetime) -> str:
    sections = []
    for feed in feeds:
        items = "".join(
            f'<li><a href="/changelogs/{escape(e.identity)}/">{escape(e.identity)}</a> '
            f'<span class="version">{escape(e.version or "")}</span></li>'
            for e in feed.entries
        )
        title = FEED_TITLES.get(feed.feed, feed.feed)
        sections.append(f'<section class="feed" id="feed-{escape(feed.feed)}"><h2>{escape(title)}</h2><ul>{items}</ul></section>')

    highlights = "".join(
        f'<article><h3><a href="/{escape(changelog_html_path(r).removesuffix("index.html"))}">'
        f"{escape(r.identity)}</a></h3><p>{escape((r.changelog or '')[:280])}</p></article>"
        for r in sample
    )
    return (
        "<!doctype html>\n"
        "<html><head><meta charset=\"utf-8\"><title>Changelogs</title>"
        "<link rel=\"stylesheet\" href=\"/css/styles.css\"></head><body>"
        "<h1>Changelogs</h1>"
        f"<div class=\"highlights\">{highlights}</div>"
        f"{''.join(sections)}"
        f"<footer>Generated {escape(generated_at.isoformat())}</footer>"
        "<script src=\"/socket.io/socket.io.js\"></script><script src=\"/js/live.js\"></script>"
        "</body></html>\n"
    )
