"""
Identifier normalization for legacy job and photo ids.

Early builds of the app keyed jobs and photos by Date.now() timestamps
(10-13 digit numeric strings). Those collide across devices, so every
such id is replaced with a UUID before a record is ever sent remotely.
Anything else that is not UUID-formatted (e.g. a short counter like "99")
is treated the same way; UUID ids are never touched.

Replacement ids are adopted from the record's local counterpart when it
has already been normalized, so a stale queue snapshot cannot mint a
second remote identity for the same job.
"""
import logging
import re
import uuid
from dataclasses import dataclass
from typing import Dict, Optional

from fieldsync.models.job import WorkRecord
from fieldsync.storage.local import MIGRATION_FLAG_KEY, JobRepository

logger = logging.getLogger(__name__)

_UUID_RE = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[1-5][0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$",
    re.IGNORECASE,
)
_TIMESTAMP_ID_RE = re.compile(r"^\d{10,13}$")


def is_uuid(value: str) -> bool:
    return bool(_UUID_RE.match(value or ""))


def is_timestamp_id(value: str) -> bool:
    """True for epoch-seconds (10 digits) through epoch-millis (13 digits)."""
    return bool(_TIMESTAMP_ID_RE.match(value or ""))


def is_legacy_id(value: str) -> bool:
    return is_timestamp_id(value) or not is_uuid(value)


def has_legacy_ids(record: WorkRecord) -> bool:
    return is_legacy_id(record.id) or any(is_legacy_id(p.id) for p in record.photos)


@dataclass
class MigrationReport:
    migrated: int
    total: int


@dataclass
class MigrationStatus:
    migration_complete: bool
    total_jobs: int
    jobs_with_old_ids: int
    photos_with_old_ids: int


class IdentifierNormalizer:
    """Replaces legacy ids on records and keeps the local corpus in step."""

    def __init__(self, jobs: JobRepository):
        self.jobs = jobs

    def normalize(self, record: WorkRecord) -> WorkRecord:
        """
        Give `record` (in place) and its photos UUID identifiers.

        The id change is written back to the stored job before returning.
        Never raises: a failed local write is logged and the in-memory
        record still carries the new ids.

        Returns:
            The same record object.
        """
        if not has_legacy_ids(record):
            return record

        stored = self.jobs.load_all()
        index = self.jobs.find_counterpart(stored, record, record.id)
        counterpart = stored[index] if index is not None else None

        old_id = record.id
        self._assign_ids(record, counterpart)
        logger.info("Normalized job id %s -> %s", old_id, record.id)

        if counterpart is None:
            logger.warning("Job %s has no local entry; normalized ids not persisted", record.id)
            return record

        if self._assign_ids(counterpart, record):
            try:
                self.jobs.save_all(stored)
            except Exception as exc:
                logger.error("Local write failed for normalized job %s: %s", record.id, exc)
        return record

    def _assign_ids(self, record: WorkRecord, source: Optional[WorkRecord]) -> bool:
        """Replace legacy ids on `record`, preferring ids already on `source`.

        Photos are paired with `source` photos by local ref. Returns True if
        anything changed.
        """
        changed = False
        if is_legacy_id(record.id):
            if source is not None and not is_legacy_id(source.id):
                record.id = source.id
            else:
                record.id = str(uuid.uuid4())
            changed = True

        source_ids: Dict[str, str] = {}
        if source is not None:
            source_ids = {p.local_ref: p.id for p in source.photos if not is_legacy_id(p.id)}
        for photo in record.photos:
            if is_legacy_id(photo.id):
                old = photo.id
                photo.id = source_ids.get(photo.local_ref) or str(uuid.uuid4())
                logger.debug("Photo id %s -> %s (job %s)", old, photo.id, record.id)
                changed = True
        return changed

    # ── Corpus migration ──────────────────────────────────────────────────────

    def migrate_corpus(self) -> MigrationReport:
        """Normalize every stored job in one write."""
        records = self.jobs.load_all()
        migrated = sum(1 for r in records if self._assign_ids(r, None))
        if migrated:
            try:
                self.jobs.save_all(records)
            except Exception as exc:
                logger.error("Local write failed during id migration: %s", exc)
                return MigrationReport(migrated=0, total=len(records))
            logger.info("Migration completed: %d/%d jobs migrated", migrated, len(records))
        return MigrationReport(migrated=migrated, total=len(records))

    def needs_migration(self) -> bool:
        try:
            flag = self.jobs.store.get(MIGRATION_FLAG_KEY)
        except Exception:
            return True
        if flag != b"true":
            return True
        return any(has_legacy_ids(r) for r in self.jobs.load_all())

    def run_migration_if_needed(self) -> Optional[MigrationReport]:
        if not self.needs_migration():
            return None
        report = self.migrate_corpus()
        try:
            self.jobs.store.set(MIGRATION_FLAG_KEY, b"true")
        except Exception as exc:
            logger.error("Failed to mark id migration complete: %s", exc)
        return report

    def migration_status(self) -> MigrationStatus:
        try:
            complete = self.jobs.store.get(MIGRATION_FLAG_KEY) == b"true"
        except Exception:
            complete = False
        records = self.jobs.load_all()
        return MigrationStatus(
            migration_complete=complete,
            total_jobs=len(records),
            jobs_with_old_ids=sum(1 for r in records if is_legacy_id(r.id)),
            photos_with_old_ids=sum(1 for r in records for p in r.photos if is_legacy_id(p.id)),
        )
