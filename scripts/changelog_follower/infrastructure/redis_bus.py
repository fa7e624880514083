"""
Redis-backed coordination: dispatch bus, tick leases and live broadcast.

The bus is a Redis Stream read through a consumer group. A message stays
in the group's pending list until a worker acks it; if the worker dies,
another consumer claims it once it has been idle for CLAIM_IDLE_MS. That
is the whole at-least-once guarantee, and it survives worker restarts
without any other durable queue.
"""

from __future__ import annotations

import json
import logging
import time
import uuid
from typing import Callable

import redis

from changelog_follower.domain.entities import Delivery, DispatchMessage
from changelog_follower.domain.errors import DispatchDeliveryError
from changelog_follower.domain.interfaces import IBroadcaster, IDispatchBus, ILease

log = logging.getLogger(__name__)

STREAM           = "changelogs:to-crawl"
DEAD_LETTER      = "changelogs:dead-letter"
GROUP            = "crawlers"
CLAIM_IDLE_MS    = 120_000
MAX_DELIVERIES   = 5
PUBLISH_ATTEMPTS = 4
STREAM_MAXLEN    = 100_000
BROADCAST_CHANNEL = "changelogs:live"


def connect(url: str) -> redis.Redis:
    return redis.Redis.from_url(url, decode_responses=True, socket_timeout=10.0)


class RedisDispatchBus(IDispatchBus):

    def __init__(self, client: redis.Redis, stream: str = STREAM, group: str = GROUP,
                 claim_idle_ms: int = CLAIM_IDLE_MS, max_deliveries: int = MAX_DELIVERIES,
                 sleep: Callable[[float], None] = time.sleep) -> None:
        self._client         = client
        self._stream         = stream
        self._group          = group
        self._claim_idle_ms  = claim_idle_ms
        self._max_deliveries = max_deliveries
        self._sleep          = sleep
        self._group_ready    = False

    def _ensure_group(self) -> None:
        if self._group_ready:
            return
        try:
            self._client.xgroup_create(self._stream, self._group, id="0", mkstream=True)
            log.info("Created consumer group %s on %s", self._group, self._stream)
        except redis.ResponseError as exc:
            if "BUSYGROUP" not in str(exc):
                raise
        self._group_ready = True

    def publish(self, message: DispatchMessage) -> str:
        for attempt in range(PUBLISH_ATTEMPTS):
            try:
                return self._client.xadd(
                    self._stream,
                    message.to_fields(),
                    maxlen=STREAM_MAXLEN,
                    approximate=True,
                )
            except redis.RedisError as exc:
                wait = 2 ** attempt * 0.5
                log.warning("Publish of %s failed (attempt %d/%d): %s — retrying in %.1fs",
                            message.identity, attempt + 1, PUBLISH_ATTEMPTS, exc, wait)
                if attempt + 1 < PUBLISH_ATTEMPTS:
                    self._sleep(wait)

        raise DispatchDeliveryError(
            f"Could not publish {message.cause.value} for {message.identity} after {PUBLISH_ATTEMPTS} attempts"
        )

    def receive(self, consumer: str, count: int = 10, block_ms: int = 5000) -> list[Delivery]:
        self._ensure_group()
        deliveries = self._reclaim(consumer, count)
        if len(deliveries) >= count:
            return deliveries

        response = self._client.xreadgroup(
            self._group, consumer, {self._stream: ">"},
            count=count - len(deliveries), block=block_ms,
        )
        for _stream, entries in response or []:
            for entry_id, fields in entries:
                delivery = self._to_delivery(entry_id, fields, attempt=1)
                if delivery is not None:
                    deliveries.append(delivery)
        return deliveries

    def _reclaim(self, consumer: str, count: int) -> list[Delivery]:
        """Take over messages whose consumer went quiet without acking."""
        claimed = self._client.xautoclaim(
            self._stream, self._group, consumer,
            min_idle_time=self._claim_idle_ms, start_id="0-0", count=count,
        )
        entries = claimed[1] if claimed else []
        deliveries: list[Delivery] = []
        for entry_id, fields in entries:
            attempt = self._times_delivered(entry_id)
            if attempt > self._max_deliveries:
                self._dead_letter(entry_id, fields, f"gave up after {attempt - 1} deliveries")
                continue
            delivery = self._to_delivery(entry_id, fields, attempt=attempt)
            if delivery is not None:
                deliveries.append(delivery)
        if deliveries:
            log.info("Reclaimed %d abandoned deliveries", len(deliveries))
        return deliveries

    def _times_delivered(self, entry_id: str) -> int:
        pending = self._client.xpending_range(self._stream, self._group, min=entry_id, max=entry_id, count=1)
        return pending[0]["times_delivered"] if pending else 1

    def _to_delivery(self, entry_id: str, fields: dict, attempt: int) -> Delivery | None:
        try:
            message = DispatchMessage.from_fields(fields)
        except (KeyError, ValueError) as exc:
            self._dead_letter(entry_id, fields, f"undecodable message: {exc}")
            return None
        return Delivery(message=message, delivery_id=entry_id, attempt=attempt)

    def _dead_letter(self, entry_id: str, fields: dict, reason: str) -> None:
        self._client.xadd(DEAD_LETTER, {**fields, "source_id": entry_id, "reason": reason})
        self._client.xack(self._stream, self._group, entry_id)
        log.error("DispatchDeliveryError: %s (%s) moved to %s — %s",
                  fields.get("identity"), entry_id, DEAD_LETTER, reason)

    def ack(self, delivery: Delivery) -> None:
        self._client.xack(self._stream, self._group, delivery.delivery_id)


class RedisLease(ILease):
    """SET NX EX: the first instance to take the key owns the tick."""

    def __init__(self, client: redis.Redis, prefix: str = "changelogs:lease:") -> None:
        self._client = client
        self._prefix = prefix
        self._token  = uuid.uuid4().hex

    def acquire(self, name: str, ttl_seconds: int) -> bool:
        return bool(self._client.set(f"{self._prefix}{name}", self._token, nx=True, ex=max(1, int(ttl_seconds))))


class RedisBroadcaster(IBroadcaster):
    """
    Publishes live events to the channel the websocket tier fans out from.
    Broadcast is a derived view: a Redis hiccup is logged, never raised
    into the crawl.
    """

    def __init__(self, client: redis.Redis, channel: str = BROADCAST_CHANNEL) -> None:
        self._client  = client
        self._channel = channel

    def publish(self, event: str, payload: dict) -> None:
        try:
            receivers = self._client.publish(self._channel, json.dumps({"event": event, "payload": payload}))
            log.debug("Broadcast %s to %d subscribers", event, receivers)
        except redis.RedisError as exc:
            log.warning("Broadcast of %s failed: %s", event, exc)
