"""Service layer for the media pipeline."""

from media_pipeline.services.job_store import JobStore, create_job_store
from media_pipeline.services.notification import NotificationClient, create_notification_client
from media_pipeline.services.pipeline import PipelineOrchestrator, create_pipeline
from media_pipeline.services.recovery import RecoveryReconciler, create_recovery_reconciler
from media_pipeline.services.storage import SupabaseObjectStorage, create_object_storage
from media_pipeline.services.transcoder import FFmpegTranscoder, MediaInfo, create_transcoder
from media_pipeline.services.work_queue import QueueEventLogger, WorkQueue, create_work_queue

__all__ = [
    "JobStore",
    "create_job_store",
    "NotificationClient",
    "create_notification_client",
    "PipelineOrchestrator",
    "create_pipeline",
    "RecoveryReconciler",
    "create_recovery_reconciler",
    "SupabaseObjectStorage",
    "create_object_storage",
    "FFmpegTranscoder",
    "MediaInfo",
    "create_transcoder",
    "QueueEventLogger",
    "WorkQueue",
    "create_work_queue",
]
