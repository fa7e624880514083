from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable

from changelog_follower.domain.entities import DispatchCause, DispatchMessage, RecordFilter
from changelog_follower.domain.errors import DispatchDeliveryError
from changelog_follower.domain.interfaces import IChangeStore, IDispatchBus
from changelog_follower.domain.records import utcnow

log = logging.getLogger(__name__)

RECRAWL_BATCH  = 100
# Long enough for a worker to finish before the record is due again
DISPATCH_GRACE = timedelta(minutes=10)


class Reconciler:
    """
    Re-dispatches every record whose next_eligible_at has elapsed, oldest
    first, at most `batch_size` per tick. This is how failed, stale and
    never-delivered records get crawled without a watcher seeing them.
    """

    def __init__(self, store: IChangeStore, bus: IDispatchBus, batch_size: int = RECRAWL_BATCH,
                 grace: timedelta = DISPATCH_GRACE, clock: Callable[[], datetime] = utcnow) -> None:
        self._store      = store
        self._bus        = bus
        self._batch_size = batch_size
        self._grace      = grace
        self._clock      = clock

    def tick(self) -> list[str]:
        now = self._clock()
        due = self._store.scan(RecordFilter(due_before=now), order_by="next_eligible_at", limit=self._batch_size)
        dispatched: list[str] = []

        for record in due:
            try:
                # Push the record out of the due window first so an overlapping
                # tick doesn't pick it up again while the worker is busy
                self._store.reschedule(record.identity, now + self._grace)
                self._bus.publish(DispatchMessage(record.identity, DispatchCause.RECRAWL_DUE))
            except DispatchDeliveryError as exc:
                log.error("Recrawl dispatch failed for %s, due again at %s: %s",
                          record.identity, now + self._grace, exc)
                continue
            except Exception as exc:
                log.error("Recrawl of %s skipped this tick: %s", record.identity, exc, exc_info=True)
                continue
            dispatched.append(record.identity)

        if due:
            log.info("Reconciliation | %d due | %d dispatched | cap %d",
                     len(due), len(dispatched), self._batch_size)
        return dispatched
