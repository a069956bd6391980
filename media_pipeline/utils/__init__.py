"""Utility modules for the media pipeline."""

from media_pipeline.utils.errors import (
    FileValidationError,
    JobNotFoundError,
    JobStateError,
    MediaPipelineError,
    QueueError,
    StorageError,
    StoreUnavailableError,
    TranscodeError,
)
from media_pipeline.utils.retry import with_retry

__all__ = [
    "MediaPipelineError",
    "FileValidationError",
    "JobNotFoundError",
    "JobStateError",
    "TranscodeError",
    "StorageError",
    "StoreUnavailableError",
    "QueueError",
    "with_retry",
]
