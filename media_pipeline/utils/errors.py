"""Custom exception classes for the media pipeline."""


class MediaPipelineError(Exception):
    """Base exception for all application errors."""

    code = "INTERNAL_ERROR"


class FileValidationError(MediaPipelineError):
    """An uploaded file was rejected before admission."""

    def __init__(self, code: str, message: str) -> None:
        self.code = code
        super().__init__(message)


class JobNotFoundError(MediaPipelineError):
    """No job record exists for the identifier."""

    code = "JOB_NOT_FOUND"

    def __init__(self, job_id: str) -> None:
        self.job_id = job_id
        super().__init__(f"Job {job_id} not found")


class JobStateError(MediaPipelineError):
    """The job is in a status that does not allow the operation."""

    code = "JOB_ALREADY_COMPLETED"

    def __init__(self, job_id: str, status: str) -> None:
        self.job_id = job_id
        self.status = status
        super().__init__(f"Cannot cancel job {job_id} in status {status}")


class TranscodeError(MediaPipelineError):
    """The transcoding engine failed or could not read the input."""

    def __init__(self, message: str, code: str = "FFMPEG_ERROR") -> None:
        self.code = code
        super().__init__(message)


class StorageError(MediaPipelineError):
    """Object storage rejected an upload."""

    code = "STORAGE_ERROR"

    def __init__(self, message: str, transient: bool = True) -> None:
        self.transient = transient
        super().__init__(message)


class StoreUnavailableError(MediaPipelineError):
    """The primary job store could not be reached."""

    code = "DATABASE_ERROR"


class QueueError(MediaPipelineError):
    """Invalid work queue usage."""

    code = "QUEUE_ERROR"
