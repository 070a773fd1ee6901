"""Key/value blob table backing the local durable store."""
from datetime import datetime, timezone

from sqlmodel import Field, SQLModel


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class KeyValueEntry(SQLModel, table=True):
    """One opaque blob per key (job corpus, sync queue, last sync time)."""

    key: str = Field(primary_key=True)
    value: bytes
    # Aware: current SQLModel refuses naive datetimes on write
    updated_at: datetime = Field(default_factory=utc_now)
