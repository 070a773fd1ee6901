"""
Durable FIFO queue of local mutations awaiting transmission.

The queue is persisted after every enqueue and after every drain, so what
is on disk always matches memory before a network call starts. A crash
mid-drain replays the same items on restart (at-least-once); reconcile is
idempotent, so replay is safe.

Retry policy is a pure function of the outcome kind (see decide()). Items
that keep failing are dropped once they reach the retry ceiling; the drop
is reported in DrainReport so the orchestrator counts it as a failure.
"""
import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import List

from pydantic import ValidationError

from fieldsync.models.job import WorkRecord
from fieldsync.models.sync import MediaRejection, SyncAction, SyncQueueItem
from fieldsync.storage.local import QUEUE_KEY
from fieldsync.sync.outcomes import ErrorKind, SyncOutcome

logger = logging.getLogger(__name__)


class RetryDecision(str, Enum):
    REMOVE = "remove"  # synced
    RETRY = "retry"  # keep, retry_count incremented
    DROP = "drop"  # give up
    ABORT = "abort"  # stop the drain; remaining items untouched


def decide(outcome: SyncOutcome, retry_count: int, max_retries: int) -> RetryDecision:
    """Next step for an item given its reconcile outcome.

    `retry_count` is the count before this attempt.
    """
    if outcome.ok:
        return RetryDecision.REMOVE
    if outcome.error_kind == ErrorKind.NOT_AUTHENTICATED:
        return RetryDecision.ABORT
    if not outcome.retryable:
        return RetryDecision.DROP
    if retry_count + 1 >= max_retries:
        return RetryDecision.DROP
    return RetryDecision.RETRY


@dataclass
class DrainReport:
    attempted: int = 0
    synced: int = 0
    retried: int = 0
    dropped: int = 0
    aborted: bool = False
    rejections: List[MediaRejection] = field(default_factory=list)

    @property
    def failed(self) -> int:
        return self.retried + self.dropped


class SyncQueue:
    """Ordered, persisted list of SyncQueueItems."""

    def __init__(self, store, reconciler, max_retries: int = 5):
        """
        Args:
            store: Local key/value store (get/set/remove).
            reconciler: Anything with `async reconcile(record) -> SyncOutcome`.
            max_retries: Failed attempts after which an item is dropped.
        """
        self.store = store
        self.reconciler = reconciler
        self.max_retries = max_retries
        self._items: List[SyncQueueItem] = []

    def __len__(self) -> int:
        return len(self._items)

    @property
    def items(self) -> List[SyncQueueItem]:
        return list(self._items)

    @property
    def is_empty(self) -> bool:
        return not self._items

    # ── Persistence ───────────────────────────────────────────────────────────

    def load(self) -> None:
        """Restore the persisted queue. Unreadable data yields an empty queue."""
        try:
            raw = self.store.get(QUEUE_KEY)
            self._items = [SyncQueueItem.model_validate(i) for i in json.loads(raw)] if raw else []
        except (ValueError, ValidationError) as exc:
            logger.error("Failed to load sync queue: %s", exc)
            self._items = []
        except Exception as exc:
            logger.error("Failed to read sync queue: %s", exc)
            self._items = []

    def save(self) -> bool:
        """Persist the queue. Returns False (and logs) if the write failed."""
        payload = [i.model_dump(mode="json", by_alias=True) for i in self._items]
        try:
            self.store.set(QUEUE_KEY, json.dumps(payload).encode("utf-8"))
        except Exception as exc:
            logger.error("Failed to save sync queue: %s", exc)
            return False
        return True

    # ── Operations ────────────────────────────────────────────────────────────

    def enqueue(self, record: WorkRecord, action: SyncAction) -> SyncQueueItem:
        """Append a snapshot of `record`; persisted before returning."""
        item = SyncQueueItem.for_record(record, action)
        self._items.append(item)
        self.save()
        logger.debug("Queued %s", item.id)
        return item

    def clear(self) -> None:
        self._items = []
        self.save()

    async def drain_once(self) -> DrainReport:
        """
        Attempt every queued item once, oldest first.

        Items enqueued while the drain is running stay queued for the next
        pass. Reconcile may rewrite the snapshot's ids in place; the rewritten
        snapshot is what gets persisted.
        """
        report = DrainReport()
        finished = set()  # object ids; queue ids can repeat within one millisecond

        for item in list(self._items):
            outcome = await self.reconciler.reconcile(item.job)
            decision = decide(outcome, item.retry_count, self.max_retries)
            report.rejections.extend(outcome.rejections)

            if decision == RetryDecision.ABORT:
                logger.info("Drain stopped: not authenticated")
                report.aborted = True
                break

            report.attempted += 1
            if decision == RetryDecision.REMOVE:
                report.synced += 1
                finished.add(id(item))
                continue

            item.retry_count += 1
            if decision == RetryDecision.DROP:
                logger.warning(
                    "Dropping sync item %s after %d failures: %s",
                    item.id,
                    item.retry_count,
                    outcome.error,
                )
                report.dropped += 1
                finished.add(id(item))
            else:
                report.retried += 1

        if report.attempted:
            self._items = [i for i in self._items if id(i) not in finished]
            self.save()
        return report

