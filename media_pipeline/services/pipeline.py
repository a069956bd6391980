"""Pipeline orchestrator: drives jobs through transcode, upload and notify."""

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Optional

from media_pipeline.config import Settings
from media_pipeline.models.job import (
    JobError,
    JobPage,
    JobRecord,
    JobResult,
    JobStats,
    JobStatus,
    ProcessingStep,
    can_transition,
)
from media_pipeline.models.queue import QueueJob
from media_pipeline.services.job_store import JobStore
from media_pipeline.services.notification import NotificationClient
from media_pipeline.services.storage import ObjectStorage
from media_pipeline.services.transcoder import MANIFEST_NAME, Transcoder
from media_pipeline.services.work_queue import WorkQueue
from media_pipeline.utils.errors import (
    JobNotFoundError,
    JobStateError,
    StorageError,
)
from media_pipeline.utils.files import (
    cleanup_upload,
    get_mime_type,
    remove_path,
    temporary_artifacts,
    validate_upload,
)

logger = logging.getLogger(__name__)

TRANSCODE_QUEUE = "video-transcode"
UPLOAD_QUEUE = "storage-upload"
IMAGE_QUEUE = "image-process"

STAGE_QUEUES = (TRANSCODE_QUEUE, UPLOAD_QUEUE, IMAGE_QUEUE)

# Status strings the backend expects in callbacks
NOTIFY_STATUS = {JobStatus.COMPLETED: "COMPLETED", JobStatus.FAILED: "FAILED"}


class PipelineOrchestrator:
    """
    Owns every JobRecord and moves it through the processing state machine.

    Videos go ``pending -> processing -> uploading -> completed``; images
    skip the transcode stage. Each stage runs as a WorkQueue attempt, and
    every status write goes through ``_transition``, which refuses moves the
    state machine does not allow. That is what stops a stage finishing
    after a cancel from overwriting ``cancelled``.

    Writes for one job_id are serialized with an in-process lock. This is a
    single-instance design: two orchestrators sharing a store would need a
    distributed lease instead.
    """

    def __init__(
        self,
        store: JobStore,
        queue: WorkQueue,
        transcoder: Transcoder,
        storage: ObjectStorage,
        notifier: NotificationClient,
        settings: Settings,
    ) -> None:
        self.store = store
        self.queue = queue
        self.transcoder = transcoder
        self.storage = storage
        self.notifier = notifier
        self.settings = settings
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

        queue.configure(TRANSCODE_QUEUE, settings.transcode_concurrency)
        queue.configure(UPLOAD_QUEUE, settings.upload_concurrency)
        queue.configure(IMAGE_QUEUE, settings.image_concurrency)
        queue.register_handler(TRANSCODE_QUEUE, self._run_transcode)
        queue.register_handler(UPLOAD_QUEUE, self._run_upload)
        queue.register_handler(IMAGE_QUEUE, self._run_image)
        queue.subscribe("failed", self._on_stage_failed)

    # ==================== ENTRY POINTS ====================

    async def admit(
        self, job_id: str, file_path: str, metadata: Optional[dict[str, Any]] = None
    ) -> JobRecord:
        """
        Admit a completed upload into the pipeline.

        Creates a pending JobRecord and queues its first stage. Admitting a
        job that is already in flight, or already terminal, changes nothing.
        A non-terminal record with nothing in flight (left behind by a
        restart) is resumed.

        Raises:
            FileValidationError: If the upload is missing or not an allowed
                type; nothing is recorded or queued
        """
        metadata = dict(metadata or {})

        async with self._job_lock(job_id):
            existing = await self.store.get(job_id)
            if existing is not None:
                if existing.is_terminal:
                    logger.info(f"Job {job_id} already {existing.status.value}, not re-admitting")
                    return existing
                if self.is_active(job_id):
                    logger.info(f"Job {job_id} is already in flight, not re-admitting")
                    return existing
                return await self._resume(existing, file_path)

            detected = validate_upload(file_path, metadata, self.settings)
            record = JobRecord(
                job_id=job_id,
                file_type=detected.mime,
                original_name=metadata.get("filename")
                or metadata.get("name")
                or os.path.basename(file_path),
                file_size=detected.size,
                metadata=metadata,
                current_step=ProcessingStep.VALIDATING,
            )
            await self.store.save(job_id, record)
            logger.info(f"Admitted job {job_id} ({detected.mime}, {detected.size} bytes)")

            if record.is_image:
                await self._enqueue_image(job_id, file_path)
            else:
                await self._enqueue_transcode(job_id, file_path)
            return record

    async def get_status(self, job_id: str) -> Optional[JobRecord]:
        return await self.store.get(job_id)

    async def list_jobs(
        self,
        status: Optional[JobStatus] = None,
        sort_by: str = "created_at",
        order: str = "desc",
        page: int = 1,
        page_size: int = 20,
    ) -> JobPage:
        return await self.store.find_all(
            status=status, sort_by=sort_by, order=order, page=page, page_size=page_size
        )

    async def stats(self) -> JobStats:
        return await self.store.stats()

    async def cancel_job(self, job_id: str) -> JobRecord:
        """
        Cancel a job that has not finished.

        In-flight stages are not interrupted; their later writes are
        discarded. Attempts still waiting in a queue are dropped.

        Raises:
            JobNotFoundError: If no record exists
            JobStateError: If the job already completed or failed
        """
        async with self._job_lock(job_id):
            record = await self.store.get(job_id)
            if record is None:
                raise JobNotFoundError(job_id)
            if record.status == JobStatus.CANCELLED:
                return record
            if record.is_terminal:
                raise JobStateError(job_id, record.status.value)

            record = await self.store.update(
                job_id, status=JobStatus.CANCELLED, cancelled_at=datetime.utcnow()
            )

        # Waiting attempts are dropped. A running one cleans up after itself
        # when its next write is refused.
        for queue_job in self.queue.find(lambda j: _job_id(j) == job_id):
            if self.queue.remove(queue_job.id):
                cleanup_upload(queue_job.payload.get("file_path", ""))
                remove_path(self._output_dir(job_id))
        logger.info(f"Job cancelled: {job_id}")
        return record

    def start(self) -> None:
        """Start background maintenance. Requires a running event loop."""
        self.store.start_cleanup(self.settings.memory_cleanup_interval_seconds)

    async def shutdown(self) -> None:
        await self.store.stop_cleanup()
        await self.queue.shutdown()
        logger.info("Pipeline stopped")

    def is_active(self, job_id: str) -> bool:
        """Whether a stage attempt for the job is pending or running."""
        return bool(self.queue.find(lambda j: _job_id(j) == job_id))

    async def health(self) -> dict[str, Any]:
        """Store backend mode and per-queue metrics."""
        queues = {}
        for name in STAGE_QUEUES:
            metrics = self.queue.metrics(name)
            queues[name] = metrics.model_dump() if metrics else None
        return {
            "status": "healthy" if self.store.mode == "primary" else "degraded",
            "store": self.store.mode,
            "queues": queues,
        }

    # ==================== STAGES ====================

    async def _run_transcode(self, queue_job: QueueJob) -> dict[str, Any]:
        job_id = queue_job.payload["job_id"]
        input_path = queue_job.payload["file_path"]
        output_dir = self._output_dir(job_id)

        record = await self._transition(
            job_id,
            JobStatus.PROCESSING,
            progress=0,
            current_step=ProcessingStep.TRANSCODING,
        )
        if record is None:
            logger.info(f"Skipping transcode for {job_id}: job is no longer active")
            cleanup_upload(input_path)
            return {"job_id": job_id, "skipped": True}

        # A failed attempt leaves no partial output behind for the retry
        async with temporary_artifacts(output_dir):
            remove_path(output_dir)
            info = await self.transcoder.probe(input_path)
            manifest = await self.transcoder.transcode(
                input_path,
                output_dir,
                lambda percent: self._report_progress(job_id, JobStatus.PROCESSING, percent),
                info=info,
            )

        media_info = info.model_dump()
        record = await self._transition(
            job_id,
            JobStatus.UPLOADING,
            progress=0,
            current_step=ProcessingStep.UPLOADING,
            media_info=media_info,
        )
        if record is None:
            logger.info(f"Job {job_id} was cancelled during transcoding, discarding output")
            cleanup_upload(input_path)
            remove_path(output_dir)
            return {"job_id": job_id, "skipped": True}

        await self._enqueue_upload(job_id, input_path, os.path.basename(manifest))
        return {"job_id": job_id, "manifest": manifest}

    async def _run_upload(self, queue_job: QueueJob) -> dict[str, Any]:
        job_id = queue_job.payload["job_id"]
        input_path = queue_job.payload["file_path"]
        manifest_name = queue_job.payload.get("manifest", MANIFEST_NAME)
        output_dir = self._output_dir(job_id)

        record = await self.store.get(job_id)
        if record is None or record.status != JobStatus.UPLOADING:
            logger.info(f"Skipping upload for {job_id}: job is no longer uploading")
            cleanup_upload(input_path)
            remove_path(output_dir)
            return {"job_id": job_id, "skipped": True}

        # Remote objects published before a failure are left in place.
        # Local artifacts are removed here or by _on_stage_failed.
        await self._publish_directory(job_id, output_dir)
        cleanup_upload(input_path)
        remove_path(output_dir)

        info = record.media_info or {}
        video = info.get("video") or {}
        url = self.storage.public_url(f"{job_id}/{manifest_name}")
        result = JobResult(
            url=url,
            duration=info.get("duration"),
            resolution=f"{video['width']}x{video['height']}"
            if video.get("width") and video.get("height")
            else None,
            format="hls",
        )
        record = await self._transition(
            job_id,
            JobStatus.COMPLETED,
            progress=100,
            current_step=ProcessingStep.NOTIFYING,
            result=result,
            completed_at=datetime.utcnow(),
        )
        if record is None:
            logger.info(f"Job {job_id} was cancelled during upload, result discarded")
            return {"job_id": job_id, "skipped": True}

        logger.info(f"Video processing completed for {job_id}")
        await self._notify(record)
        return {"job_id": job_id, "url": url}

    async def _run_image(self, queue_job: QueueJob) -> dict[str, Any]:
        job_id = queue_job.payload["job_id"]
        input_path = queue_job.payload["file_path"]

        record = await self._transition(
            job_id,
            JobStatus.UPLOADING,
            progress=0,
            current_step=ProcessingStep.UPLOADING,
        )
        if record is None:
            logger.info(f"Skipping image upload for {job_id}: job is no longer active")
            cleanup_upload(input_path)
            return {"job_id": job_id, "skipped": True}

        metadata = record.metadata
        original = metadata.get("filename") or metadata.get("name") or record.original_name or ""
        ext = os.path.splitext(original)[1] or os.path.splitext(input_path)[1] or ".jpg"
        key = f"{job_id}{ext}"
        content_type = record.file_type or get_mime_type(key)

        await self.storage.put(input_path, key, content_type)
        cleanup_upload(input_path)

        url = self.storage.public_url(key)
        record = await self._transition(
            job_id,
            JobStatus.COMPLETED,
            progress=100,
            current_step=ProcessingStep.NOTIFYING,
            result=JobResult(url=url, format=ext.lstrip(".")),
            completed_at=datetime.utcnow(),
        )
        if record is None:
            logger.info(f"Job {job_id} was cancelled during image upload, result discarded")
            return {"job_id": job_id, "skipped": True}

        logger.info(f"Image processing completed for {job_id}")
        await self._notify(record)
        return {"job_id": job_id, "url": url}

    async def _on_stage_failed(self, queue_job: QueueJob, error: Exception) -> None:
        """A stage exhausted its attempts: fail the job and clean up."""
        if queue_job.queue_name not in STAGE_QUEUES:
            return
        job_id = _job_id(queue_job)
        if job_id is None:
            return

        logger.error(f"Processing failed for {job_id}: {error}")
        record = await self._transition(
            job_id,
            JobStatus.FAILED,
            current_step=ProcessingStep.CLEANUP,
            error=JobError(
                code=getattr(error, "code", None) or "PROCESSING_ERROR",
                message=str(error),
            ),
            failed_at=datetime.utcnow(),
        )
        cleanup_upload(queue_job.payload.get("file_path", ""))
        remove_path(self._output_dir(job_id))

        if record is not None:
            await self._notify(record)

    # ==================== HELPERS ====================

    async def _resume(self, record: JobRecord, file_path: str) -> JobRecord:
        """Re-queue a non-terminal record that has nothing in flight."""
        job_id = record.job_id
        logger.warning(f"Resuming interrupted job {job_id} from {record.status.value}")

        if record.is_image:
            await self._enqueue_image(job_id, file_path)
        elif record.status in (JobStatus.PENDING, JobStatus.PROCESSING):
            await self._enqueue_transcode(job_id, file_path)
        elif os.path.isfile(os.path.join(self._output_dir(job_id), MANIFEST_NAME)):
            await self._enqueue_upload(job_id, file_path, MANIFEST_NAME)
        else:
            failed = await self._apply(
                record,
                JobStatus.FAILED,
                current_step=ProcessingStep.CLEANUP,
                error=JobError(
                    code="RECOVERY_ERROR",
                    message="Transcoded output was lost before upload finished",
                ),
                failed_at=datetime.utcnow(),
            )
            cleanup_upload(file_path)
            remove_path(self._output_dir(job_id))
            if failed is not None:
                await self._notify(failed)
                return failed
        return record

    async def _enqueue_transcode(self, job_id: str, file_path: str) -> None:
        await self.queue.enqueue(
            TRANSCODE_QUEUE,
            {"job_id": job_id, "file_path": file_path},
            attempts=self.settings.transcode_attempts,
            priority=10,
        )

    async def _enqueue_upload(self, job_id: str, file_path: str, manifest: str) -> None:
        await self.queue.enqueue(
            UPLOAD_QUEUE,
            {"job_id": job_id, "file_path": file_path, "manifest": manifest},
            attempts=self.settings.upload_attempts,
        )

    async def _enqueue_image(self, job_id: str, file_path: str) -> None:
        await self.queue.enqueue(
            IMAGE_QUEUE,
            {"job_id": job_id, "file_path": file_path},
            attempts=self.settings.upload_attempts,
        )

    async def _publish_directory(self, job_id: str, output_dir: str) -> None:
        """Upload every file of a rendition in bounded parallel batches."""
        files = sorted(os.listdir(output_dir)) if os.path.isdir(output_dir) else []
        if not files:
            raise StorageError(f"No files found in {output_dir}", transient=False)

        logger.info(f"Starting HLS upload for {job_id}: {len(files)} files")
        batch_size = self.settings.upload_concurrency
        uploaded = 0

        for start in range(0, len(files), batch_size):
            batch = files[start : start + batch_size]
            await asyncio.gather(
                *(
                    self.storage.put(
                        os.path.join(output_dir, name),
                        f"{job_id}/{name}",
                        get_mime_type(name),
                    )
                    for name in batch
                )
            )
            uploaded += len(batch)
            await self._report_progress(
                job_id, JobStatus.UPLOADING, round(uploaded / len(files) * 100)
            )
            logger.debug(f"Upload progress for {job_id}: {uploaded}/{len(files)}")

    async def _report_progress(self, job_id: str, stage: JobStatus, percent: float) -> None:
        """Record stage progress, clamped and never moving backwards."""
        percent = max(0, min(100, int(percent)))
        async with self._job_lock(job_id):
            record = await self.store.get(job_id)
            if record is None or record.status != stage or percent <= record.progress:
                return
            await self.store.update(job_id, progress=percent)

    async def _transition(
        self, job_id: str, target: JobStatus, **fields: Any
    ) -> Optional[JobRecord]:
        """Move a job to target if the state machine allows it, else None."""
        async with self._job_lock(job_id):
            record = await self.store.get(job_id)
            if record is None:
                logger.warning(f"Job {job_id} not found for transition to {target.value}")
                return None
            return await self._apply(record, target, **fields)

    async def _apply(self, record: JobRecord, target: JobStatus, **fields: Any) -> Optional[JobRecord]:
        """Write a transition for a record already read under the job lock."""
        if not can_transition(record.status, target):
            logger.info(
                f"Ignoring transition of {record.job_id} from "
                f"{record.status.value} to {target.value}"
            )
            return None
        return await self.store.update(record.job_id, status=target, **fields)

    async def _notify(self, record: JobRecord) -> None:
        status = NOTIFY_STATUS.get(record.status)
        if status is None:
            return
        extra: dict[str, Any] = {}
        if record.media_info:
            extra["metadata"] = record.media_info
        if record.error:
            extra["error"] = record.error.model_dump()
        url = record.result.url if record.result else None
        await self.notifier.notify(record.job_id, status, url, extra)

    def _output_dir(self, job_id: str) -> str:
        return os.path.join(self.settings.output_dir, job_id)

    @asynccontextmanager
    async def _job_lock(self, job_id: str) -> AsyncIterator[None]:
        """Serialize writes for one job. The lock lives while anyone holds or awaits it."""
        lock = self._locks.setdefault(job_id, asyncio.Lock())
        self._lock_users[job_id] = self._lock_users.get(job_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[job_id] -= 1
            if not self._lock_users[job_id]:
                del self._lock_users[job_id]
                del self._locks[job_id]


def _job_id(queue_job: QueueJob) -> Optional[str]:
    return queue_job.payload.get("job_id")


def create_pipeline(supabase_client: Optional[Any] = None) -> PipelineOrchestrator:
    """
    Create a fully wired PipelineOrchestrator using application settings.

    Args:
        supabase_client: Optional Supabase client shared by the job store
            and object storage

    Returns:
        Configured PipelineOrchestrator instance
    """
    from media_pipeline.config import get_settings
    from media_pipeline.services.job_store import create_job_store
    from media_pipeline.services.notification import create_notification_client
    from media_pipeline.services.storage import create_object_storage
    from media_pipeline.services.transcoder import create_transcoder
    from media_pipeline.services.work_queue import create_work_queue

    settings = get_settings()
    if supabase_client is None and settings.supabase_url and settings.supabase_key:
        from supabase import create_client

        supabase_client = create_client(settings.supabase_url, settings.supabase_key)

    os.makedirs(settings.output_dir, exist_ok=True)
    return PipelineOrchestrator(
        store=create_job_store(supabase_client),
        queue=create_work_queue(),
        transcoder=create_transcoder(),
        storage=create_object_storage(supabase_client),
        notifier=create_notification_client(),
        settings=settings,
    )
