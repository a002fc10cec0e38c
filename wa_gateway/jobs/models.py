"""Job record data model and lifecycle state machine for bulk sends."""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field, model_validator
import uuid

from wa_gateway.clock import utcnow
from wa_gateway.errors import InvalidTransition


class JobType(str, Enum):
    SEND_TEXT = "send-text"
    SEND_MEDIA = "send-media"


class JobStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset(
    {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED}
)

# processing <-> paused is the only reversible edge
ALLOWED_TRANSITIONS: Dict[JobStatus, frozenset] = {
    JobStatus.QUEUED: frozenset({JobStatus.PROCESSING, JobStatus.CANCELLED}),
    JobStatus.PROCESSING: frozenset(
        {JobStatus.PAUSED, JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED}
    ),
    JobStatus.PAUSED: frozenset({JobStatus.PROCESSING, JobStatus.CANCELLED}),
}


class MediaType(str, Enum):
    IMAGE = "image"
    VIDEO = "video"
    DOCUMENT = "document"
    AUDIO = "audio"


_DEFAULT_MIMETYPES = {
    MediaType.IMAGE: "image/jpeg",
    MediaType.VIDEO: "video/mp4",
    MediaType.DOCUMENT: "application/pdf",
    MediaType.AUDIO: "audio/mpeg",
}


class MediaPayload(BaseModel):
    """One media attachment. Exactly one of base64 / url carries the data."""
    media_type: MediaType
    base64: Optional[str] = None
    url: Optional[str] = None
    caption: Optional[str] = None
    file_name: Optional[str] = None
    mimetype: Optional[str] = None

    @model_validator(mode="after")
    def _require_source(self):
        if not self.base64 and not self.url:
            raise ValueError("media requires either 'base64' or 'url'")
        return self

    def resolved_mimetype(self) -> str:
        if self.mimetype:
            return self.mimetype
        return _DEFAULT_MIMETYPES.get(self.media_type, "application/octet-stream")

    def raw_base64(self) -> Optional[str]:
        """Base64 body with any ``data:<mime>;base64,`` prefix removed."""
        if self.base64 and self.base64.startswith("data:"):
            return self.base64.split(",", 1)[1]
        return self.base64


class JobItem(BaseModel):
    """One recipient + payload pair."""
    target: str
    message: Optional[str] = None
    media: Optional[MediaPayload] = None


class JobOptions(BaseModel):
    delay_seconds: float = Field(default=3.0, ge=0)
    auto_start: bool = True


class JobProgress(BaseModel):
    total: int = 0
    completed: int = 0
    failed: int = 0


class ItemOutcome(str, Enum):
    SUCCESS = "success"
    ERROR = "error"


class JobResultEntry(BaseModel):
    index: int
    target: str
    outcome: ItemOutcome
    detail: Any = None
    timestamp: datetime = Field(default_factory=utcnow)


class JobRecord(BaseModel):
    """Tracks the lifecycle of one bulk-send job.

    ``items`` is fixed at creation. ``cursor`` only moves forward and
    always equals ``progress.completed + progress.failed``. Once the job
    is terminal nothing on it changes; a retry builds a sibling record.
    """
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    type: JobType
    device_id: str
    status: JobStatus = JobStatus.QUEUED
    items: List[JobItem]
    cursor: int = 0
    progress: JobProgress = Field(default_factory=JobProgress)
    results: List[JobResultEntry] = Field(default_factory=list)
    options: JobOptions = Field(default_factory=JobOptions)
    error: Optional[str] = None
    retry_of: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @model_validator(mode="after")
    def _init_total(self):
        self.progress.total = len(self.items)
        return self

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def remaining(self) -> int:
        return len(self.items) - self.cursor

    def can_transition(self, new_status: JobStatus) -> bool:
        return new_status in ALLOWED_TRANSITIONS.get(self.status, frozenset())

    def transition(self, new_status: JobStatus) -> None:
        """Move to ``new_status`` and stamp lifecycle timestamps once each."""
        if not self.can_transition(new_status):
            raise InvalidTransition(
                f"Job {self.id} cannot move from {self.status.value} to {new_status.value}"
            )
        self.status = new_status
        now = utcnow()
        if new_status == JobStatus.PROCESSING and self.started_at is None:
            self.started_at = now
        if new_status in TERMINAL_STATUSES and self.completed_at is None:
            self.completed_at = now

    def finish(self) -> None:
        """Settle a fully attempted job: failed if any item failed."""
        if self.progress.failed > 0:
            self.transition(JobStatus.FAILED)
        else:
            self.transition(JobStatus.COMPLETED)

    def fail_fatally(self, error: str) -> None:
        """Abort outside per-item handling. Only reachable through a bug."""
        self.error = error
        self.status = JobStatus.FAILED
        if self.completed_at is None:
            self.completed_at = utcnow()

    def record_success(self, receipt: Any) -> JobResultEntry:
        return self._record(ItemOutcome.SUCCESS, receipt)

    def record_failure(self, message: str) -> JobResultEntry:
        return self._record(ItemOutcome.ERROR, message)

    def _record(self, outcome: ItemOutcome, detail: Any) -> JobResultEntry:
        item = self.items[self.cursor]
        entry = JobResultEntry(
            index=self.cursor, target=item.target, outcome=outcome, detail=detail
        )
        self.results.append(entry)
        if outcome == ItemOutcome.SUCCESS:
            self.progress.completed += 1
        else:
            self.progress.failed += 1
        self.cursor += 1
        return entry

    def failed_items(self) -> List[JobItem]:
        """Original payloads of every item whose attempt failed, in order."""
        return [
            self.items[entry.index].model_copy(deep=True)
            for entry in self.results
            if entry.outcome == ItemOutcome.ERROR
        ]

    def snapshot(self) -> "JobRecord":
        return self.model_copy(deep=True)

    def progress_event(self) -> Dict[str, Any]:
        """Compact payload pushed to progress subscribers."""
        return {
            "job_id": self.id,
            "type": self.type.value,
            "device_id": self.device_id,
            "status": self.status.value,
            "progress": self.progress.model_dump(),
            "cursor": self.cursor,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "error": self.error,
        }
