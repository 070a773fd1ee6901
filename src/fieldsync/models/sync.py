"""Sync queue item and sync status models."""
from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from fieldsync.models.job import WorkRecord


class SyncAction(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    COMPLETE = "complete"


class SyncQueueItem(BaseModel):
    """A pending local mutation awaiting transmission."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str
    job: WorkRecord
    action: SyncAction
    enqueued_at: datetime = Field(alias="timestamp")
    retry_count: int = 0

    @classmethod
    def for_record(cls, record: WorkRecord, action: SyncAction, now: Optional[datetime] = None) -> "SyncQueueItem":
        now = now or datetime.utcnow()
        millis = int(now.timestamp() * 1000)
        return cls(
            id=f"{record.id}-{action.value}-{millis}",
            job=record.model_copy(deep=True),
            action=action,
            enqueued_at=now,
        )


class MediaRejection(BaseModel):
    """A photo the pipeline refused; the user can act on it (retake)."""

    record_id: str
    media_id: str
    kind: str  # "FileMissing", "TooLarge", "UnsupportedType"
    message: str = ""


class SyncStatus(BaseModel):
    has_pending_changes: bool = False
    failure_count: int = 0
    is_online: bool = True
    last_successful_sync: Optional[datetime] = None
    is_syncing: bool = False
    show_failure_indicator: bool = False
    rejected_media: List[MediaRejection] = Field(default_factory=list)


class ForceSyncResult(BaseModel):
    success: bool
    error: Optional[str] = None
    skipped: bool = False  # another pass was already in flight
    status: SyncStatus


class JobAllowance(BaseModel):
    """Whether the signed-in user's plan allows recording another job."""

    allowed: bool
    reason: Optional[str] = None
    jobs_count: int = 0
    limit: Optional[int] = None  # None: unlimited plan
