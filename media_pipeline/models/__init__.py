"""Pydantic data models for the media pipeline."""

from media_pipeline.models.job import (
    JobError,
    JobPage,
    JobRecord,
    JobResult,
    JobStats,
    JobStatus,
    Pagination,
    ProcessingStep,
)
from media_pipeline.models.queue import QueueJob, QueueJobStatus, QueueMetrics
from media_pipeline.models.upload import UploadRecord

__all__ = [
    "JobError",
    "JobPage",
    "JobRecord",
    "JobResult",
    "JobStats",
    "JobStatus",
    "Pagination",
    "ProcessingStep",
    "QueueJob",
    "QueueJobStatus",
    "QueueMetrics",
    "UploadRecord",
]
