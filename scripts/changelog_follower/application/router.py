from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from fnmatch import fnmatchcase


class Origin(str, Enum):
    STATIC         = "static"
    GENERATED_HTML = "generated-html"
    GENERATED_JSON = "generated-json"
    SEARCH         = "search"
    LIVE_BROADCAST = "live-broadcast"


class CookiePolicy(str, Enum):
    NONE = "none"
    ALL  = "all"


@dataclass(frozen=True)
class RouteRule:
    path_pattern:         str
    origin:               Origin
    forward_query_string: bool         = False
    forward_cookies:      CookiePolicy = CookiePolicy.NONE

    def matches(self, path: str) -> bool:
        return fnmatchcase(path, self.path_pattern)

    def to_config(self) -> dict:
        return {
            "pathPattern":         self.path_pattern,
            "origin":              self.origin.value,
            "forwardQueryString":  self.forward_query_string,
            "forwardCookiePolicy": self.forward_cookies.value,
        }


@dataclass(frozen=True)
class RouteDecision:
    rule:    RouteRule
    path:    str
    query:   dict[str, str] = field(default_factory=dict)
    cookies: dict[str, str] = field(default_factory=dict)

    @property
    def origin(self) -> Origin:
        return self.rule.origin


DEFAULT_RULES = (
    RouteRule("changelogs/*", Origin.GENERATED_HTML),
    RouteRule("index.html",   Origin.GENERATED_HTML),
    RouteRule("api/*",        Origin.GENERATED_JSON),
    RouteRule("search*",      Origin.SEARCH, forward_query_string=True),
    # Session affinity for the websocket tier rides on a cookie
    RouteRule("socket.io*",   Origin.LIVE_BROADCAST, forward_query_string=True, forward_cookies=CookiePolicy.ALL),
)
DEFAULT_RULE = RouteRule("*", Origin.STATIC)


class EdgeRouter:
    """
    Static path-pattern table. First matching rule wins; the default
    rule catches everything else, so exactly one behaviour applies.
    """

    def __init__(self, rules: tuple[RouteRule, ...] = DEFAULT_RULES, default: RouteRule = DEFAULT_RULE) -> None:
        self._rules   = rules
        self._default = default

    def route(self, path: str, query: dict[str, str] | None = None,
              cookies: dict[str, str] | None = None) -> RouteDecision:
        normalized = path.split("?", 1)[0].lstrip("/") or "index.html"
        rule = next((r for r in self._rules if r.matches(normalized)), self._default)
        return RouteDecision(
            rule    = rule,
            path    = normalized,
            query   = dict(query or {}) if rule.forward_query_string else {},
            cookies = dict(cookies or {}) if rule.forward_cookies is CookiePolicy.ALL else {},
        )

    def to_config(self) -> list[dict]:
        return [r.to_config() for r in self._rules] + [self._default.to_config()]
