"""
Tagged results and the error taxonomy shared by the sync components.

Recoverable conditions are converted into outcome values so the queue's
retry decision depends only on `ErrorKind`, never on exception text.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from fieldsync.models.sync import MediaRejection


class ErrorKind(str, Enum):
    NOT_AUTHENTICATED = "not_authenticated"
    VALIDATION = "validation"
    TRANSIENT = "transient"
    PERSISTENCE = "persistence"


# ── Exceptions ────────────────────────────────────────────────────────────────

class MediaValidationError(Exception):
    """A photo was rejected before compression. Terminal for that photo."""

    kind = "ValidationFailure"


class FileMissingError(MediaValidationError):
    kind = "FileMissing"


class MediaTooLargeError(MediaValidationError):
    kind = "TooLarge"


class UnsupportedMediaTypeError(MediaValidationError):
    kind = "UnsupportedType"


class MediaCompressionError(Exception):
    """Re-encoding failed. The source file is left untouched."""


# ── Outcomes ──────────────────────────────────────────────────────────────────

@dataclass
class SyncOutcome:
    """Result of reconciling one work record."""

    ok: bool
    synced_count: int = 0
    failed_count: int = 0
    media_synced: int = 0
    media_failed: int = 0
    error_kind: Optional[ErrorKind] = None
    error: Optional[str] = None
    rejections: List[MediaRejection] = field(default_factory=list)

    @classmethod
    def not_authenticated(cls) -> "SyncOutcome":
        return cls(ok=False, error_kind=ErrorKind.NOT_AUTHENTICATED, error="Not authenticated")

    @classmethod
    def failure(cls, kind: ErrorKind, error: str) -> "SyncOutcome":
        return cls(ok=False, failed_count=1, error_kind=kind, error=error)

    @property
    def retryable(self) -> bool:
        return not self.ok and self.error_kind in (ErrorKind.TRANSIENT, ErrorKind.PERSISTENCE)


@dataclass
class CorpusReport:
    """Result of reconciling a whole set of records (full pass or restore)."""

    synced: int = 0
    failed: int = 0
    not_authenticated: bool = False
    rejections: List[MediaRejection] = field(default_factory=list)
