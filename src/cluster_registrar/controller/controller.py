"""Controller: turns change notifications into reconciliation passes.

Events pass through the ``NotificationFilter`` and land in a
``RequeueQueue``.  ``process_due`` runs one pass per due key and requeues
it according to the outcome:

- ``RETRY``      -> again after ``requeue_after`` seconds
- ``ERROR``      -> again after the key's exponential backoff
- ``COMPLETED``  -> backoff reset, nothing queued

``resync`` is the poll-mode safety net: it queues every participating
descriptor plus every record whose descriptor no longer exists, so a
missed delete notification still ends in deregistration.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from typing import TYPE_CHECKING

from cluster_registrar.cluster.source import ClusterSource, ClusterSourceError
from cluster_registrar.controller.queue import RequeueQueue
from cluster_registrar.models import ChangeEvent, ClusterKey, ReconcileOutcome, ReconcileResult
from cluster_registrar.reconciler.filter import NotificationFilter

if TYPE_CHECKING:
    from cluster_registrar.reconciler.reconciler import Reconciler
    from cluster_registrar.store.record_store import RecordStore

logger = logging.getLogger(__name__)

DEFAULT_RESYNC_SECONDS = 60.0


class Controller:
    """Schedules reconciliation passes for cluster descriptors."""

    def __init__(
        self,
        reconciler: Reconciler,
        source: ClusterSource,
        store: RecordStore,
        notification_filter: NotificationFilter | None = None,
        queue: RequeueQueue | None = None,
        namespace: str | None = None,
    ) -> None:
        self._reconciler = reconciler
        self._source = source
        self._store = store
        self._filter = notification_filter or NotificationFilter()
        self._queue = queue or RequeueQueue(base_delay=reconciler.requeue_seconds)
        self._namespace = namespace

    @property
    def queue(self) -> RequeueQueue:
        return self._queue

    def handle_event(self, event: ChangeEvent) -> bool:
        """Queue a pass for the event's descriptor if the filter admits it."""
        if not self._filter.accepts(event):
            return False
        self._queue.add(event.descriptor.key)
        return True

    def resync(self) -> list[ClusterKey]:
        """Queue all participating descriptors and all orphaned records.

        The source is reloaded first.  If that fails the resync is skipped,
        so an unreadable inventory never looks like an empty one.
        """
        try:
            self._source.reload()
        except ClusterSourceError as exc:
            logger.error("Cannot reload cluster source, skipping resync: %s", exc)
            return []

        queued: list[ClusterKey] = []
        live: set[ClusterKey] = set()
        for descriptor in self._source.list_descriptors(self._namespace):
            live.add(descriptor.key)
            if self._filter.should_reconcile(descriptor):
                queued.append(descriptor.key)

        for record in self._store.list(self._namespace):
            if record.key not in live:
                logger.info("Descriptor for record %s is gone, scheduling deletion", record.key)
                queued.append(record.key)

        for key in queued:
            self._queue.add(key)
        return queued

    def process_due(self) -> list[ReconcileResult]:
        """Run one pass for every due key and requeue by outcome."""
        results: list[ReconcileResult] = []
        for key in self._queue.pop_due():
            result = self._reconciler.reconcile(key)
            self._requeue(result)
            results.append(result)
        return results

    def run(
        self,
        resync_seconds: float = DEFAULT_RESYNC_SECONDS,
        stop: threading.Event | None = None,
        _sleep: Callable[[float], None] | None = None,
        _clock: Callable[[], float] | None = None,
    ) -> None:
        """Resync periodically and process due keys until ``stop`` is set."""
        stop = stop or threading.Event()
        sleep = _sleep or stop.wait
        clock = _clock or time.monotonic
        next_resync = clock()

        while not stop.is_set():
            if clock() >= next_resync:
                self.resync()
                next_resync = clock() + resync_seconds
            self.process_due()

            wait = next_resync - clock()
            due_in = self._queue.next_due_in()
            if due_in is not None:
                wait = min(wait, due_in)
            sleep(max(wait, 0.0))

    def _requeue(self, result: ReconcileResult) -> None:
        key = result.key
        if result.outcome == ReconcileOutcome.RETRY:
            self._queue.add_after(key, result.requeue_after or self._reconciler.requeue_seconds)
        elif result.outcome == ReconcileOutcome.ERROR:
            delay = self._queue.add_rate_limited(key)
            logger.warning(
                "Pass for %s failed (%s), retrying in %.1fs", key, result.reason, delay,
            )
        else:
            self._queue.forget(key)
