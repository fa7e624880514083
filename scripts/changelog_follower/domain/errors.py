"""
Domain Layer — Error taxonomy
-----------------------------
Infrastructure translates library exceptions (httpx, psycopg2, redis)
into these at the boundary. Application code only ever catches these.
"""

from __future__ import annotations


class ChangelogFollowerError(Exception):
    """Base class for every error raised by this package."""


class FetchError(ChangelogFollowerError):
    def __init__(self, identity: str, reason: str) -> None:
        self.identity = identity
        self.reason   = reason
        super().__init__(f"{identity}: {reason}")


class TransientFetchError(FetchError):
    """Registry unreachable, rate limited or timed out. Retry with backoff."""


class PermanentFetchError(FetchError):
    """Package gone or response malformed. Wait for the next recrawl cycle."""


class StoreContentionError(ChangelogFollowerError):
    """Another writer holds the record. The losing upsert is a no-op."""


class DispatchDeliveryError(ChangelogFollowerError):
    """The bus could not accept or deliver a message after bounded retry."""
