"""Work record (job) and media item models.

Local JSON keeps the mobile app's camelCase keys (clientName, createdAt,
photos[].uri, photos[].type ...). Python code uses the snake_case names.
"""
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class JobStatus(str, Enum):
    CREATED = "created"
    IN_PROGRESS = "in_progress"
    PHOTOS_TAKEN = "photos_taken"
    SIGNED = "signed"
    COMPLETED = "completed"


class PhotoCategory(str, Enum):
    BEFORE = "before"
    DURING = "during"
    AFTER = "after"


class MediaItem(BaseModel):
    """One photo attached to a job, tagged by capture phase."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str
    local_ref: str = Field(alias="uri")
    category: PhotoCategory = Field(default=PhotoCategory.DURING, alias="type")
    captured_at: Optional[datetime] = Field(default=None, alias="timestamp")

    def remote_path(self, user_id: str, record_id: str) -> str:
        """Deterministic object path; safe to re-upload under the same id."""
        return f"users/{user_id}/photos/{record_id}/{self.id}.jpg"

    def to_remote_row(self, user_id: str, record_id: str, file_size: int) -> Dict[str, Any]:
        return {
            "id": self.id,
            "job_id": record_id,
            "user_id": user_id,
            "photo_type": self.category.value,
            "file_path": self.remote_path(user_id, record_id),
            "file_size": file_size,
            "compressed": True,
            "created_at": self.captured_at.isoformat() if self.captured_at else None,
        }


class WorkRecord(BaseModel):
    """One unit of billable field work with its photographic evidence."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str
    client_name: str
    client_email: Optional[str] = None
    client_phone: str = ""
    service_type: str = ""
    description: Optional[str] = None
    address: str = ""
    status: JobStatus = JobStatus.CREATED
    created_at: datetime
    photos: List[MediaItem] = Field(default_factory=list)
    signature: Optional[str] = None
    client_signed_name: Optional[str] = None
    job_satisfaction: Optional[str] = None
    completed_at: Optional[datetime] = None

    def natural_key(self) -> tuple:
        """Fallback identity used when the primary key has just changed."""
        return (self.client_name, self.created_at, self.service_type)

    def to_remote_row(self, user_id: str) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": user_id,
            "client_name": self.client_name,
            "client_email": self.client_email,
            "client_phone": self.client_phone,
            "service_type": self.service_type,
            "description": self.description,
            "address": self.address,
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
            "updated_at": datetime.utcnow().isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "signature_data": self.signature,
            "client_signed_name": self.client_signed_name,
            "job_satisfaction": self.job_satisfaction,
        }

    @classmethod
    def from_remote_row(cls, row: Dict[str, Any], photo_rows: List[Dict[str, Any]]) -> "WorkRecord":
        """Map a remote jobs row (and its job_photos rows) back to a local record.

        Restored photos point at the remote object with a cloud:// ref; they
        are never re-uploaded because the metadata row already exists.
        """
        return cls(
            id=row["id"],
            client_name=row.get("client_name") or "",
            client_email=row.get("client_email"),
            client_phone=row.get("client_phone") or "",
            service_type=row.get("service_type") or "",
            description=row.get("description"),
            address=row.get("address") or "",
            status=row.get("status") or JobStatus.CREATED,
            created_at=row["created_at"],
            photos=[
                MediaItem(
                    id=p["id"],
                    local_ref=f"cloud://{p['file_path']}",
                    category=p.get("photo_type") or PhotoCategory.DURING,
                    captured_at=p.get("created_at"),
                )
                for p in photo_rows
            ],
            signature=row.get("signature_data"),
            client_signed_name=row.get("client_signed_name"),
            job_satisfaction=row.get("job_satisfaction"),
            completed_at=row.get("completed_at"),
        )
