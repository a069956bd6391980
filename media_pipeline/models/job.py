"""Job record Pydantic models."""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator, model_validator


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    UPLOADING = "uploading"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ProcessingStep(str, Enum):
    VALIDATING = "validating"
    TRANSCODING = "transcoding"
    UPLOADING = "uploading"
    NOTIFYING = "notifying"
    CLEANUP = "cleanup"


ACTIVE_STATUSES = frozenset({JobStatus.PENDING, JobStatus.PROCESSING, JobStatus.UPLOADING})
TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})

# Self-loops are resumptions of an interrupted stage.
# pending -> uploading is the image pipeline, which has no transcode stage.
TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PENDING: frozenset(
        {JobStatus.PROCESSING, JobStatus.UPLOADING, JobStatus.CANCELLED}
    ),
    JobStatus.PROCESSING: frozenset(
        {JobStatus.PROCESSING, JobStatus.UPLOADING, JobStatus.FAILED, JobStatus.CANCELLED}
    ),
    JobStatus.UPLOADING: frozenset(
        {JobStatus.UPLOADING, JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED}
    ),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
    JobStatus.CANCELLED: frozenset(),
}


def can_transition(current: JobStatus, target: JobStatus) -> bool:
    return target in TRANSITIONS[current]


class JobResult(BaseModel):
    """Playable output of a completed job."""

    url: str = Field(min_length=1)
    duration: Optional[float] = None
    resolution: Optional[str] = None
    format: str = "hls"


class JobError(BaseModel):
    """Structured failure of a job."""

    code: str = "PROCESSING_ERROR"
    message: str = ""


class JobRecord(BaseModel):
    """Tracks one uploaded file from admission to a terminal status."""

    job_id: str = Field(min_length=1)
    status: JobStatus = JobStatus.PENDING
    progress: int = Field(default=0, ge=0, le=100)
    current_step: Optional[ProcessingStep] = None
    file_type: Optional[str] = None
    original_name: Optional[str] = None
    file_size: Optional[int] = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    media_info: Optional[dict[str, Any]] = None
    result: Optional[JobResult] = None
    error: Optional[JobError] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
    completed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None

    @field_validator("job_id")
    @classmethod
    def job_id_not_whitespace(cls, v: str) -> str:
        """Validate that job_id is not only whitespace."""
        if not v.strip():
            raise ValueError("job_id cannot be only whitespace")
        return v

    @model_validator(mode="after")
    def outcome_matches_status(self) -> "JobRecord":
        """A result only exists on completed jobs, an error only on failed ones."""
        if self.result is not None and self.status != JobStatus.COMPLETED:
            raise ValueError("result is only allowed on completed jobs")
        if self.error is not None and self.status != JobStatus.FAILED:
            raise ValueError("error is only allowed on failed jobs")
        return self

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_image(self) -> bool:
        return bool(self.file_type and self.file_type.startswith("image/"))

    def with_updates(self, **fields: Any) -> "JobRecord":
        """Return a validated copy with fields replaced."""
        return JobRecord.model_validate({**self.model_dump(), **fields})


class Pagination(BaseModel):
    page: int
    page_size: int
    total: int
    total_pages: int


class JobPage(BaseModel):
    """One page of a filtered, sorted job listing."""

    items: list[JobRecord]
    pagination: Pagination


class JobStats(BaseModel):
    """Job counts by status."""

    total: int = 0
    pending: int = 0
    processing: int = 0
    uploading: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: int = 0
