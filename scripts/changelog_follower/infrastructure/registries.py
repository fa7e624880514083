from __future__ import annotations

import logging
import xml.etree.ElementTree as ET
from urllib.parse import quote

import httpx

from changelog_follower.domain.entities import (
    ChangeBatch,
    PackageDetail,
    PackageIdentity,
    RecentChange,
    Registry,
)
from changelog_follower.domain.errors import PermanentFetchError, TransientFetchError
from changelog_follower.domain.interfaces import IRegistryClient

log = logging.getLogger(__name__)

REQUEST_TIMEOUT   = 30.0
USER_AGENT        = "changelog-follower/1.0"
PERMANENT_STATUS  = {400, 401, 403, 404, 410}

NPM_CHANGES_URL   = "https://replicate.npmjs.com/_changes"
NPM_REGISTRY_URL  = "https://registry.npmjs.org"
NPM_CHANGES_LIMIT = 100
NPM_LONGPOLL_MS   = 25_000

PYPI_RSS_URL      = "https://pypi.org/rss/updates.xml"
PYPI_JSON_URL     = "https://pypi.org/pypi/{name}/json"

RUBYGEMS_RECENT_URL = "https://rubygems.org/api/v1/activity/just_updated.json"
RUBYGEMS_GEM_URL    = "https://rubygems.org/api/v1/gems/{name}.json"

CHANGELOG_URL_KEYS = ("changelog", "changes", "release notes", "history", "news")


class BaseRegistryClient(IRegistryClient):
    """
    Shared HTTP plumbing. Receives an injected httpx.AsyncClient so the
    caller owns its lifecycle and tests can hand in a MockTransport.

    Every httpx failure is translated here, and only here, into the
    Transient/Permanent error taxonomy.
    """

    registry: Registry

    def __init__(self, client: httpx.AsyncClient, timeout: float = REQUEST_TIMEOUT) -> None:
        self._client  = client
        self._timeout = timeout

    async def _get(self, subject: str, url: str, **kwargs) -> httpx.Response:
        headers = kwargs.pop("headers", {})
        headers.setdefault("User-Agent", USER_AGENT)
        timeout = kwargs.pop("timeout", self._timeout)
        try:
            response = await self._client.get(url, headers=headers, timeout=timeout, **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            if status in PERMANENT_STATUS:
                raise PermanentFetchError(subject, f"HTTP {status} from {url}") from exc
            raise TransientFetchError(subject, f"HTTP {status} from {url}") from exc
        except httpx.RequestError as exc:
            # Covers timeouts, DNS failures and dropped connections
            raise TransientFetchError(subject, f"{type(exc).__name__}: {exc}") from exc
        return response

    async def _get_json(self, subject: str, url: str, **kwargs):
        response = await self._get(subject, url, **kwargs)
        try:
            return response.json()
        except ValueError as exc:
            raise PermanentFetchError(subject, f"Undecodable JSON from {url}") from exc

    def _identity(self, name: str) -> PackageIdentity:
        return PackageIdentity(self.registry, name)


class NpmClient(BaseRegistryClient):
    """
    npm exposes its registry as a CouchDB database. The _changes feed is
    sequence numbered, so the follower can resume from a persisted cursor.
    Change events carry no version; every event is treated as a change.
    """

    registry = Registry.NPM

    def __init__(self, client: httpx.AsyncClient, timeout: float = REQUEST_TIMEOUT,
                 changes_url: str = NPM_CHANGES_URL, registry_url: str = NPM_REGISTRY_URL) -> None:
        super().__init__(client, timeout)
        self._changes_url  = changes_url
        self._registry_url = registry_url.rstrip("/")

    async def fetch_recent_changes(self, since: str | None = None) -> ChangeBatch:
        params = {
            "feed":    "longpoll",
            "since":   since or "now",
            "limit":   NPM_CHANGES_LIMIT,
            "timeout": NPM_LONGPOLL_MS,
        }
        # The long-poll may legitimately hold the connection open for its whole timeout
        data = await self._get_json(
            "npm/_changes",
            self._changes_url,
            params  = params,
            timeout = self._timeout + NPM_LONGPOLL_MS / 1000,
        )
        try:
            results  = data["results"]
            last_seq = data["last_seq"]
        except (KeyError, TypeError) as exc:
            raise PermanentFetchError("npm/_changes", f"Malformed changes batch: {exc}") from exc

        changes = [
            RecentChange(self._identity(row["id"]))
            for row in results
            if row.get("id") and not row["id"].startswith("_design/") and not row.get("deleted")
        ]
        return ChangeBatch(changes=changes, next_cursor=str(last_seq))

    async def fetch_package_detail(self, name: str) -> PackageDetail:
        identity = self._identity(name)
        data = await self._get_json(str(identity), f"{self._registry_url}/{quote(name, safe='@')}")
        try:
            version = data["dist-tags"]["latest"]
        except (KeyError, TypeError) as exc:
            raise PermanentFetchError(str(identity), "Packument has no latest dist-tag") from exc

        manifest = (data.get("versions") or {}).get(version) or {}
        return PackageDetail(
            identity      = identity,
            version       = version,
            changelog     = data.get("readme") or manifest.get("readme"),
            changelog_url = _repository_changelog_url(data.get("repository") or manifest.get("repository")),
        )


class PyPIClient(BaseRegistryClient):
    """PyPI has no change feed; its RSS of recent uploads is polled instead."""

    registry = Registry.PYPI

    def __init__(self, client: httpx.AsyncClient, timeout: float = REQUEST_TIMEOUT,
                 rss_url: str = PYPI_RSS_URL, json_url: str = PYPI_JSON_URL) -> None:
        super().__init__(client, timeout)
        self._rss_url  = rss_url
        self._json_url = json_url

    async def fetch_recent_changes(self, since: str | None = None) -> ChangeBatch:
        response = await self._get("pypi/updates", self._rss_url)
        try:
            root = ET.fromstring(response.text)
        except ET.ParseError as exc:
            raise PermanentFetchError("pypi/updates", f"Malformed RSS: {exc}") from exc

        changes: list[RecentChange] = []
        for item in root.iter("item"):
            # <title>requests 2.32.3</title>
            title = (item.findtext("title") or "").strip()
            name, _, version = title.rpartition(" ")
            if not name or not version:
                log.debug("Skipping unparseable PyPI item: %r", title)
                continue
            changes.append(RecentChange(self._identity(name), version))
        return ChangeBatch(changes=changes)

    async def fetch_package_detail(self, name: str) -> PackageDetail:
        identity = self._identity(name)
        data = await self._get_json(str(identity), self._json_url.format(name=quote(name)))
        try:
            info    = data["info"]
            version = info["version"]
        except (KeyError, TypeError) as exc:
            raise PermanentFetchError(str(identity), f"Malformed project JSON: {exc}") from exc

        return PackageDetail(
            identity      = identity,
            version       = version,
            changelog     = info.get("description"),
            changelog_url = _pick_changelog_url(info.get("project_urls") or {}),
        )


class RubyGemsClient(BaseRegistryClient):

    registry = Registry.RUBYGEMS

    def __init__(self, client: httpx.AsyncClient, timeout: float = REQUEST_TIMEOUT,
                 recent_url: str = RUBYGEMS_RECENT_URL, gem_url: str = RUBYGEMS_GEM_URL) -> None:
        super().__init__(client, timeout)
        self._recent_url = recent_url
        self._gem_url    = gem_url

    async def fetch_recent_changes(self, since: str | None = None) -> ChangeBatch:
        data = await self._get_json("rubygems/just_updated", self._recent_url)
        if not isinstance(data, list):
            raise PermanentFetchError("rubygems/just_updated", "Expected a JSON list")
        changes = [
            RecentChange(self._identity(gem["name"]), gem.get("version"))
            for gem in data
            if isinstance(gem, dict) and gem.get("name")
        ]
        return ChangeBatch(changes=changes)

    async def fetch_package_detail(self, name: str) -> PackageDetail:
        identity = self._identity(name)
        data = await self._get_json(str(identity), self._gem_url.format(name=quote(name)))
        try:
            version = data["version"]
        except (KeyError, TypeError) as exc:
            raise PermanentFetchError(str(identity), f"Malformed gem JSON: {exc}") from exc

        return PackageDetail(
            identity      = identity,
            version       = version,
            changelog     = data.get("info"),
            changelog_url = data.get("changelog_uri") or data.get("source_code_uri"),
        )


def _pick_changelog_url(project_urls: dict) -> str | None:
    for label, url in project_urls.items():
        if label.strip().lower() in CHANGELOG_URL_KEYS:
            return url
    return None


def _repository_changelog_url(repository) -> str | None:
    """npm's repository field is either a string or {"type", "url"}."""
    url = repository.get("url") if isinstance(repository, dict) else repository
    if not isinstance(url, str) or "github.com" not in url:
        return None
    path = url.split("github.com", 1)[1].lstrip(":/")
    if path.endswith(".git"):
        path = path[:-4]
    return f"https://github.com/{path}/blob/HEAD/CHANGELOG.md"


def build_clients(client: httpx.AsyncClient) -> dict[Registry, IRegistryClient]:
    return {
        Registry.NPM:      NpmClient(client),
        Registry.PYPI:     PyPIClient(client),
        Registry.RUBYGEMS: RubyGemsClient(client),
    }
