from __future__ import annotations

from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from changelog_follower.application.router import EdgeRouter, Origin
from changelog_follower.application.views import Autocompleter
from changelog_follower.domain.entities import SearchIndexEntry
from changelog_follower.infrastructure.search_api import create_app
from fakes import Clock, InMemorySearchIndex


@pytest.fixture
def client():
    clock = Clock()
    index = InMemorySearchIndex()
    index.put_entries([
        SearchIndexEntry("lod", 20.0, "npm/lodash-es", clock.now + timedelta(days=1)),
        SearchIndexEntry("lod", 10.0, "npm/lodash", clock.now + timedelta(days=1)),
        SearchIndexEntry("lod", 30.0, "npm/lodestar", clock.now - timedelta(minutes=1)),
    ])
    with TestClient(create_app(Autocompleter(index, clock=clock))) as c:
        yield c


def test_search_returns_live_matches_best_first(client):
    response = client.get("/search", params={"q": "Lod"})

    assert response.status_code == 200
    assert response.json() == {"query": "Lod", "results": ["npm/lodash-es", "npm/lodash"]}
    assert response.headers["cache-control"] == "public, max-age=60"


def test_search_honours_limit_and_ignores_bad_limit(client):
    assert client.get("/search", params={"q": "lod", "limit": "1"}).json()["results"] == ["npm/lodash-es"]
    assert len(client.get("/search", params={"q": "lod", "limit": "many"}).json()["results"]) == 2


def test_search_without_prefix_is_empty(client):
    assert client.get("/search").json() == {"query": "", "results": []}


def test_search_path_is_the_routed_search_origin(client):
    assert EdgeRouter().route("/search?q=lod").origin is Origin.SEARCH
    assert client.get("/health").json() == {"status": "ok"}
