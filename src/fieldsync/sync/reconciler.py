"""
RemoteReconciler: brings one job's remote representation up to date.

Flow for a single job:
  1. Check the session (no user → NOT_AUTHENTICATED outcome, nothing sent)
  2. Normalize legacy ids (written back locally before anything remote)
  3. Probe `jobs` for (id, user_id) to choose update vs insert
  4. Upsert the job row; an insert that hits a duplicate becomes an update
  5. For each photo independently:
       probe `job_photos` → present: skip, no bytes read
       absent: prepare → upload to the deterministic path → insert metadata
       (duplicate metadata row → update); a photo with no local file
       (restored from the remote) is counted failed and never prepared

Idempotency: ids are stable after step 2 and every write is either a
probe-guarded insert or an update keyed by id, so replaying a partially
successful attempt converges on one row per job and per photo.

A job whose row synced but some photos failed still reports ok=True with
failed_count=1; partial success is a normal outcome, not a rollback case.
"""
import asyncio
import logging
from typing import List, Optional

from pydantic import ValidationError

from fieldsync.config import Settings, get_settings
from fieldsync.models.job import MediaItem, WorkRecord
from fieldsync.models.sync import JobAllowance, MediaRejection
from fieldsync.remote.client import is_conflict
from fieldsync.storage.local import JobRepository
from fieldsync.sync.identifiers import IdentifierNormalizer
from fieldsync.sync.media import MediaPipeline, resolve_local_path
from fieldsync.sync.outcomes import (
    CorpusReport,
    ErrorKind,
    MediaCompressionError,
    MediaValidationError,
    SyncOutcome,
)

logger = logging.getLogger(__name__)

JOBS_TABLE = "jobs"
PHOTOS_TABLE = "job_photos"
PROFILES_TABLE = "profiles"


class RemoteReconciler:
    """Idempotent create-or-update of jobs and their photos."""

    def __init__(
        self,
        remote,
        session,
        jobs: JobRepository,
        media: MediaPipeline,
        normalizer: IdentifierNormalizer,
        settings: Optional[Settings] = None,
    ):
        """
        Args:
            remote: RemoteStoreClient (or a fake with the same methods in tests).
            session: SessionStore providing get_current_user().
            jobs: Local job corpus.
            media: Photo validation/compression pipeline.
            normalizer: Legacy id normalizer.
        """
        self.remote = remote
        self.session = session
        self.jobs = jobs
        self.media = media
        self.normalizer = normalizer
        self.settings = settings or get_settings()

    async def reconcile(self, record: WorkRecord) -> SyncOutcome:
        """
        Sync one job and its photos.

        Returns:
            SyncOutcome. Never raises: unexpected errors become a TRANSIENT
            outcome so the queue can retry them.
        """
        user = self.session.get_current_user()
        if user is None:
            return SyncOutcome.not_authenticated()

        try:
            self.normalizer.normalize(record)

            error = await self._upsert_job(record, user.id)
            if error:
                logger.warning("Job %s not synced: %s", record.id, error)
                return SyncOutcome.failure(ErrorKind.TRANSIENT, error)

            outcome = SyncOutcome(ok=True, synced_count=1)
            for photo in record.photos:
                await self._sync_photo(photo, record.id, user.id, outcome)
            outcome.failed_count = 1 if outcome.media_failed else 0

            logger.info(
                "Job %s synced: %d photos ok, %d failed",
                record.id,
                outcome.media_synced,
                outcome.media_failed,
            )
            return outcome

        except Exception as exc:
            logger.exception("Unexpected error syncing job %s", record.id)
            return SyncOutcome.failure(ErrorKind.TRANSIENT, str(exc))

    async def reconcile_all(self, records: List[WorkRecord], delay: Optional[float] = None) -> CorpusReport:
        """Reconcile records one after another with a short pause between them.

        Stops early if the session disappears mid-pass. Finishes by
        updating the profile's job count (best-effort).
        """
        if delay is None:
            delay = self.settings.record_delay_seconds
        report = CorpusReport()
        user = self.session.get_current_user()
        if user is None:
            report.not_authenticated = True
            return report

        logger.info("Starting full sync of %d jobs", len(records))
        for i, record in enumerate(records):
            if i and delay:
                await asyncio.sleep(delay)
            outcome = await self.reconcile(record)
            report.rejections.extend(outcome.rejections)
            if outcome.error_kind == ErrorKind.NOT_AUTHENTICATED:
                report.not_authenticated = True
                return report
            if outcome.ok:
                report.synced += outcome.synced_count
            else:
                report.failed += 1

        result = await self.remote.update(PROFILES_TABLE, {"jobs_count": len(records)}, {"id": user.id})
        if not result.ok:
            logger.warning("Failed to update job count: %s", result.error)
        return report

    async def restore_from_remote(self) -> CorpusReport:
        """Pull the user's jobs down and add any missing locally.

        Local records win: a job already present (by id or by client name,
        creation time and service type) is left as it is.
        """
        report = CorpusReport()
        user = self.session.get_current_user()
        if user is None:
            report.not_authenticated = True
            return report

        jobs_result = await self.remote.select(JOBS_TABLE, "*", {"user_id": user.id})
        if not jobs_result.ok:
            logger.warning("Failed to download jobs: %s", jobs_result.error)
            report.failed += 1
            return report

        remote_records = []
        for row in jobs_result.data or []:
            photos_result = await self.remote.select(PHOTOS_TABLE, "*", {"job_id": row.get("id")})
            try:
                remote_records.append(WorkRecord.from_remote_row(row, photos_result.data or []))
            except (KeyError, ValidationError) as exc:
                logger.warning("Skipping malformed remote job %s: %s", row.get("id"), exc)
                report.failed += 1

        # No await between load_all and save_all: jobs written locally during
        # the downloads must survive the merge
        local = self.jobs.load_all()
        known_ids = {r.id for r in local}
        known_keys = {r.natural_key() for r in local}
        for record in remote_records:
            if record.id in known_ids or record.natural_key() in known_keys:
                continue
            local.append(record)
            known_ids.add(record.id)
            report.synced += 1

        if report.synced:
            try:
                self.jobs.save_all(local)
            except Exception as exc:
                logger.error("Failed to save restored jobs: %s", exc)
                report.failed += report.synced
                report.synced = 0
        logger.info("Restored %d jobs from remote", report.synced)
        return report

    async def can_create_job(self) -> JobAllowance:
        """Check the profile's lifetime job count against its plan limit."""
        user = self.session.get_current_user()
        if user is None:
            return JobAllowance(allowed=False, reason="Please sign in to create jobs")

        result = await self.remote.select(PROFILES_TABLE, "*", {"id": user.id})
        if not result.ok:
            logger.error("Error checking job limit: %s", result.error)
            return JobAllowance(allowed=False, reason="Error checking job limit")
        if not result.data:
            return JobAllowance(allowed=False, reason="User profile not found")

        profile = result.data[0]
        limits = self.settings.tier_job_limits
        tier = profile.get("subscription_tier")
        limit = limits[tier] if tier in limits else limits.get("free")
        count = int(profile.get("jobs_count") or 0)
        if limit is not None and count >= limit:
            return JobAllowance(
                allowed=False,
                reason=f"You've created {count}/{limit} jobs. Upgrade your plan to create more jobs.",
                jobs_count=count,
                limit=limit,
            )
        return JobAllowance(allowed=True, jobs_count=count, limit=limit)

    # ─── Internal helpers ─────────────────────────────────────────────────────

    async def _exists(self, table: str, row_id: str, user_id: str) -> bool:
        """Probe for a row. Errors count as "absent" (insert path handles races)."""
        result = await self.remote.select(table, "id", {"id": row_id, "user_id": user_id})
        if not result.ok:
            logger.debug("Existence probe on %s for %s failed: %s", table, row_id, result.error)
            return False
        return bool(result.data)

    async def _upsert_job(self, record: WorkRecord, user_id: str) -> Optional[str]:
        """Insert or update the job row. Returns an error string or None."""
        row = record.to_remote_row(user_id)

        if await self._exists(JOBS_TABLE, record.id, user_id):
            result = await self.remote.update(JOBS_TABLE, row, {"id": record.id})
            return result.error

        result = await self.remote.insert(JOBS_TABLE, row)
        if is_conflict(result):
            # A previous attempt created the row but we never saw the reply
            logger.info("Job %s already exists remotely, updating", record.id)
            result = await self.remote.update(JOBS_TABLE, row, {"id": record.id})
        return result.error

    async def _sync_photo(self, photo: MediaItem, record_id: str, user_id: str, outcome: SyncOutcome) -> None:
        if await self._exists(PHOTOS_TABLE, photo.id, user_id):
            logger.debug("Photo %s already synced, skipping upload", photo.id)
            outcome.media_synced += 1
            return

        if resolve_local_path(photo.local_ref) is None:
            # Restored photo whose bytes only exist remotely; never a rejection
            logger.warning("Photo %s has no local file (%s), retrying next pass", photo.id, photo.local_ref)
            outcome.media_failed += 1
            return

        try:
            prepared = await self.media.prepare_async(photo.local_ref)
        except MediaValidationError as exc:
            logger.warning("Photo %s rejected (%s): %s", photo.id, exc.kind, exc)
            outcome.media_failed += 1
            outcome.rejections.append(
                MediaRejection(record_id=record_id, media_id=photo.id, kind=exc.kind, message=str(exc))
            )
            return
        except MediaCompressionError as exc:
            logger.warning("Photo %s not compressed: %s", photo.id, exc)
            outcome.media_failed += 1
            return

        try:
            path = photo.remote_path(user_id, record_id)
            upload = await self.remote.upload_file(self.settings.photo_bucket, path, prepared.read_bytes())
            if not upload.ok and not is_conflict(upload):
                logger.warning("Upload of photo %s failed: %s", photo.id, upload.error)
                outcome.media_failed += 1
                return

            row = photo.to_remote_row(user_id, record_id, prepared.compressed_size)
            result = await self.remote.insert(PHOTOS_TABLE, row)
            if is_conflict(result):
                result = await self.remote.update(PHOTOS_TABLE, row, {"id": photo.id})
            if not result.ok:
                logger.warning("Photo %s uploaded but metadata save failed: %s", photo.id, result.error)
                outcome.media_failed += 1
                return
            outcome.media_synced += 1
        finally:
            prepared.discard()
