"""
SyncOrchestrator: decides when a sync pass runs and tracks its status.

A pass is: drain the queue once, then reconcile the whole local corpus
(catches jobs that changed without an explicit enqueue).

Triggers (connectivity, app lifecycle, the periodic timer, enqueue) only
call request_sync(), which sets a single asyncio.Event. The worker task
wakes on it and runs one pass; any number of requests that arrive before
it wakes collapse into that one pass. Requests that arrive while a pass
is in flight are dropped, not deferred: the next natural trigger picks up
whatever is left.

The `_syncing` flag is the only permit. It is set before the first await,
so two coroutines can never both start a pass. It does not cancel a pass
already running.

Failures stay invisible until `failure_threshold` passes in a row have
failed. Media rejections (missing file, too large, wrong type) are
published as soon as a pass finishes, since the user can retake the photo.
"""
import asyncio
import logging
from contextlib import suppress
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, List, Optional

from fieldsync.config import Settings, get_settings
from fieldsync.models.job import WorkRecord
from fieldsync.models.sync import ForceSyncResult, MediaRejection, SyncAction, SyncQueueItem, SyncStatus
from fieldsync.storage.local import LAST_SYNC_KEY, JobRepository
from fieldsync.sync.outcomes import CorpusReport
from fieldsync.sync.queue import SyncQueue

logger = logging.getLogger(__name__)

StatusCallback = Callable[[SyncStatus], None]


class AppState(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    BACKGROUND = "background"


class SyncOrchestrator:
    """Single-worker scheduler for sync passes."""

    def __init__(
        self,
        queue: SyncQueue,
        reconciler,
        jobs: JobRepository,
        session,
        normalizer=None,
        settings: Optional[Settings] = None,
    ):
        """
        Args:
            queue: The durable sync queue (already wired to `reconciler`).
            reconciler: RemoteReconciler used for the full-corpus pass.
            jobs: Local job corpus; its store also holds the last sync time.
            session: SessionStore providing get_current_user().
            normalizer: IdentifierNormalizer; runs the corpus id migration
                on initialize() when given.
        """
        self.queue = queue
        self.reconciler = reconciler
        self.jobs = jobs
        self.session = session
        self.normalizer = normalizer
        self.settings = settings or get_settings()

        self._status = SyncStatus()
        self._app_state = AppState.ACTIVE
        self._syncing = False
        self._wakeup = asyncio.Event()
        self._worker: Optional[asyncio.Task] = None
        self._subscribers: List[StatusCallback] = []
        self._last_full_pass: Optional[datetime] = None
        self._timer_fired = False

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    async def initialize(self) -> None:
        """Load persisted state, migrate legacy ids, start the worker."""
        self.queue.load()
        self._status.has_pending_changes = not self.queue.is_empty
        self._status.last_successful_sync = self._load_last_sync_time()
        if self.normalizer is not None:
            report = self.normalizer.run_migration_if_needed()
            if report and report.migrated:
                logger.info("Migrated ids on %d/%d jobs", report.migrated, report.total)
        self.start()
        self.request_sync()
        logger.info("Background sync initialized (%d queued)", len(self.queue))

    def start(self) -> None:
        if self._worker is None:
            self._worker = asyncio.create_task(self._run_worker())

    async def stop(self) -> None:
        if self._worker is not None:
            self._worker.cancel()
            with suppress(asyncio.CancelledError):
                await self._worker
            self._worker = None

    async def _run_worker(self) -> None:
        while True:
            await self._wakeup.wait()
            await self.run_pending()

    # ── Intake ────────────────────────────────────────────────────────────────

    def request_sync(self) -> bool:
        """Ask for a pass. Returns False if dropped because one is running."""
        if self._syncing:
            logger.debug("Sync in progress; request dropped")
            return False
        self._wakeup.set()
        return True

    async def run_pending(self) -> bool:
        """Run one pass if any request is pending. Returns True if a pass ran.

        A pending timer tick always runs the full-corpus pass, even when the
        previous one finished less than an interval ago.
        """
        if not self._wakeup.is_set():
            return False
        self._wakeup.clear()
        periodic, self._timer_fired = self._timer_fired, False
        return await self.attempt_sync(force=periodic)

    def on_connectivity_change(self, online: bool) -> None:
        was_online = self._status.is_online
        self._status.is_online = online
        if online and not was_online:
            logger.info("Back online; requesting sync")
            self.request_sync()
        self._notify()

    def on_app_state_change(self, state: AppState) -> None:
        previous, self._app_state = self._app_state, AppState(state)
        if self._app_state == previous:
            return
        # Leaving the foreground gets one last best-effort pass
        if self._app_state in (AppState.ACTIVE, AppState.BACKGROUND):
            self.request_sync()

    def on_timer(self) -> None:
        if self._app_state == AppState.ACTIVE and self._status.is_online:
            if self.request_sync():
                self._timer_fired = True

    # ── UI-facing API ─────────────────────────────────────────────────────────

    def enqueue(self, record: WorkRecord, action: SyncAction) -> SyncQueueItem:
        """Queue a local mutation; persisted before this returns."""
        item = self.queue.enqueue(record, SyncAction(action))
        self._status.has_pending_changes = True
        self._notify()
        if self._status.is_online:
            self.request_sync()
        return item

    async def force_sync(self) -> ForceSyncResult:
        """Run a pass now. Answered immediately if one is already running."""
        if self._syncing:
            return ForceSyncResult(success=True, skipped=True, status=self.get_sync_status())

        failures_before = self._status.failure_count
        ran = await self.attempt_sync(force=True)
        if not ran:
            return ForceSyncResult(success=False, error="Not authenticated", status=self.get_sync_status())
        if self._status.failure_count > failures_before:
            return ForceSyncResult(success=False, error="Sync failed", status=self.get_sync_status())
        return ForceSyncResult(success=True, status=self.get_sync_status())

    def get_sync_status(self) -> SyncStatus:
        return self._status.model_copy(deep=True)

    def subscribe(self, callback: StatusCallback) -> Callable[[], None]:
        """Register for status changes. Returns an unsubscribe function."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def clear_queue(self) -> None:
        """Drop all pending work (sign-out)."""
        self.queue.clear()
        self._status.has_pending_changes = False
        self._status.failure_count = 0
        self._status.show_failure_indicator = False
        self._status.rejected_media = []
        self._notify()

    async def restore(self) -> Optional[CorpusReport]:
        """Download remote jobs missing locally. None if a pass is running."""
        if self._syncing:
            return None
        self._syncing = True
        try:
            return await self.reconciler.restore_from_remote()
        finally:
            self._syncing = False

    # ── Pass ──────────────────────────────────────────────────────────────────

    def _full_pass_due(self) -> bool:
        if self._last_full_pass is None:
            return True
        interval = timedelta(minutes=self.settings.sync_interval_minutes)
        return datetime.utcnow() - self._last_full_pass >= interval

    async def attempt_sync(self, force: bool = False) -> bool:
        """
        Run one pass unless one is already running or there is nothing to do.

        Returns:
            True if a pass ran (successfully or not).
        """
        if self._syncing:
            return False
        if not force and self.queue.is_empty and not self._full_pass_due():
            return False

        self._syncing = True
        self._status.is_syncing = True
        try:
            if self.session.get_current_user() is None:
                # Signed out: nothing here is worth retrying later
                if not self.queue.is_empty:
                    logger.info("No session; clearing %d queued items", len(self.queue))
                    self.queue.clear()
                self._status.has_pending_changes = False
                return False

            try:
                failed = await self._run_pass()
            except Exception as exc:
                logger.warning("Background sync failed (silent): %s", exc)
                failed = True

            if failed is None:
                logger.info("Session ended mid-pass; stopping")
            elif failed:
                self._record_failure()
            else:
                self._record_success()
            return True
        finally:
            self._syncing = False
            self._status.is_syncing = False

    async def _run_pass(self) -> Optional[bool]:
        """Drain, then full-corpus pass. Returns failed?, or None if signed out."""
        drain = await self.queue.drain_once()
        if drain.rejections:
            self._publish_rejections(drain.rejections)
        if drain.aborted:
            return None

        corpus = await self.reconciler.reconcile_all(self.jobs.load_all())
        self._last_full_pass = datetime.utcnow()
        if corpus.rejections:
            self._publish_rejections(drain.rejections + corpus.rejections)
        if corpus.not_authenticated:
            return None

        logger.info(
            "Sync pass: queue %d synced / %d retried / %d dropped; corpus %d synced / %d failed",
            drain.synced,
            drain.retried,
            drain.dropped,
            corpus.synced,
            corpus.failed,
        )
        return drain.failed > 0 or corpus.failed > 0

    def _record_success(self) -> None:
        previous = (self._status.has_pending_changes, self._status.show_failure_indicator)
        now = datetime.utcnow()
        self._status.failure_count = 0
        self._status.show_failure_indicator = False
        self._status.last_successful_sync = now
        self._status.has_pending_changes = not self.queue.is_empty
        self._save_last_sync_time(now)
        if previous != (self._status.has_pending_changes, self._status.show_failure_indicator):
            self._notify()

    def _record_failure(self) -> None:
        self._status.failure_count += 1
        self._status.has_pending_changes = not self.queue.is_empty
        # Isolated failures stay invisible
        if self._status.failure_count >= self.settings.failure_threshold:
            self._status.show_failure_indicator = True
            self._notify()

    def _publish_rejections(self, rejections: List[MediaRejection]) -> None:
        # One entry per photo; the drain and the full pass can both reject it
        unique = {}
        for rejection in rejections:
            unique.setdefault((rejection.record_id, rejection.media_id), rejection)
        self._status.rejected_media = list(unique.values())
        self._notify()

    def _notify(self) -> None:
        snapshot = self.get_sync_status()
        for callback in list(self._subscribers):
            try:
                callback(snapshot)
            except Exception:
                logger.exception("Sync status subscriber failed")

    # ── Last sync time ────────────────────────────────────────────────────────

    def _load_last_sync_time(self) -> Optional[datetime]:
        try:
            raw = self.jobs.store.get(LAST_SYNC_KEY)
            return datetime.fromisoformat(raw.decode("utf-8")) if raw else None
        except Exception as exc:
            logger.error("Failed to load last sync time: %s", exc)
            return None

    def _save_last_sync_time(self, when: datetime) -> None:
        try:
            self.jobs.store.set(LAST_SYNC_KEY, when.isoformat().encode("utf-8"))
        except Exception as exc:
            logger.error("Failed to save last sync time: %s", exc)
