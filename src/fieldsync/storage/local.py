"""
Local durable store: a key/value blob store over SQLModel, plus the job
corpus repository built on top of it.

The sync engine only ever sees get/set/remove on opaque bytes. Writes
raise on failure; the callers (queue, normalizer, orchestrator) decide
whether a failed write is logged or surfaced.
"""
import json
import logging
from typing import List, Optional

from pydantic import ValidationError
from sqlmodel import Session

from fieldsync.models.job import WorkRecord
from fieldsync.models.store import KeyValueEntry, utc_now

logger = logging.getLogger(__name__)

JOBS_KEY = "proofly_jobs"
QUEUE_KEY = "background_sync_queue"
LAST_SYNC_KEY = "last_sync_time"
MIGRATION_FLAG_KEY = "migration_v1_complete"


class SQLKeyValueStore:
    """get/set/remove over the KeyValueEntry table."""

    def __init__(self, engine):
        """
        Args:
            engine: SQLAlchemy engine (SQLModel create_engine result).
        """
        self.engine = engine

    def get(self, key: str) -> Optional[bytes]:
        with Session(self.engine) as s:
            entry = s.get(KeyValueEntry, key)
            return entry.value if entry else None

    def set(self, key: str, value: bytes) -> None:
        with Session(self.engine) as s:
            entry = s.get(KeyValueEntry, key)
            if entry:
                entry.value = value
                entry.updated_at = utc_now()
            else:
                entry = KeyValueEntry(key=key, value=value)
            s.add(entry)
            s.commit()

    def remove(self, key: str) -> None:
        with Session(self.engine) as s:
            entry = s.get(KeyValueEntry, key)
            if entry:
                s.delete(entry)
                s.commit()


class JobRepository:
    """The locally recorded job corpus, stored as one JSON list."""

    def __init__(self, store):
        self.store = store

    def load_all(self) -> List[WorkRecord]:
        """Return every stored job. Unreadable data yields an empty list."""
        try:
            raw = self.store.get(JOBS_KEY)
        except Exception as exc:
            logger.error("Failed to read job corpus: %s", exc)
            return []
        if not raw:
            return []
        try:
            return [WorkRecord.model_validate(item) for item in json.loads(raw)]
        except (ValueError, ValidationError) as exc:
            logger.error("Job corpus is corrupt, ignoring it: %s", exc)
            return []

    def save_all(self, records: List[WorkRecord]) -> None:
        payload = [r.model_dump(mode="json", by_alias=True) for r in records]
        self.store.set(JOBS_KEY, json.dumps(payload).encode("utf-8"))

    def get(self, record_id: str) -> Optional[WorkRecord]:
        return next((r for r in self.load_all() if r.id == record_id), None)

    def find_counterpart(self, records: List[WorkRecord], record: WorkRecord, key_id: str) -> Optional[int]:
        """Index of the stored entry for `record`.

        Looks up by `key_id` first, then by (client name, creation time,
        service type) for the case where the primary key itself just changed.
        """
        for i, stored in enumerate(records):
            if stored.id == key_id:
                return i
        for i, stored in enumerate(records):
            if stored.natural_key() == record.natural_key():
                return i
        return None

    def upsert(self, record: WorkRecord) -> None:
        """Insert or overwrite by id (used by callers recording local work)."""
        records = self.load_all()
        for i, stored in enumerate(records):
            if stored.id == record.id:
                records[i] = record
                break
        else:
            records.append(record)
        self.save_all(records)
