"""Recovery of uploads interrupted by a crash or restart."""

import asyncio
import json
import logging
import os
import time
from typing import Any, Callable, Optional

from media_pipeline.models.upload import UploadRecord
from media_pipeline.utils.files import METADATA_SUFFIX, metadata_path

logger = logging.getLogger(__name__)


class RecoveryReconciler:
    """
    Periodically sweeps the upload landing area for abandoned transfers.

    A data file is stale when it has not been modified for longer than
    ``stale_threshold`` seconds and no stage attempt is in flight for its
    job. Stale files are handed to ``orchestrator.admit`` exactly as a
    freshly completed upload would be, so admission decides whether the
    job is new, resumable or already finished.
    """

    def __init__(
        self,
        orchestrator: Any,
        upload_dir: str,
        stale_threshold: float = 15 * 60,
        check_interval: float = 10 * 60,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.orchestrator = orchestrator
        self.upload_dir = upload_dir
        self.stale_threshold = stale_threshold
        self.check_interval = check_interval
        self._clock = clock
        self._scanning = False
        self._task: Optional[asyncio.Task] = None

    def start(self) -> None:
        """Sweep once now, then every ``check_interval`` seconds."""
        if self._task is not None:
            return
        logger.info(
            f"Starting upload recovery (interval={self.check_interval}s, "
            f"threshold={self.stale_threshold}s)"
        )
        self._task = asyncio.get_running_loop().create_task(self._loop())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Stopped upload recovery")

    async def _loop(self) -> None:
        while True:
            await self.scan_and_recover()
            await asyncio.sleep(self.check_interval)

    async def scan_and_recover(self) -> list[str]:
        """
        Re-admit every stale upload that has no job in flight.

        Returns:
            The job ids handed to admission during this sweep. Empty if a
            sweep was already running.
        """
        if self._scanning:
            logger.debug("Recovery scan already in progress, skipping")
            return []

        self._scanning = True
        recovered: list[str] = []
        try:
            os.makedirs(self.upload_dir, exist_ok=True)
            names = sorted(
                name for name in os.listdir(self.upload_dir) if not name.endswith(METADATA_SUFFIX)
            )
            for name in names:
                path = os.path.join(self.upload_dir, name)
                try:
                    job_id = await self._recover_file(path)
                except Exception as e:
                    logger.error(f"Error checking upload {name}: {e}")
                    continue
                if job_id is not None:
                    recovered.append(job_id)
        finally:
            self._scanning = False

        if recovered:
            logger.info(f"Recovery scan re-admitted {len(recovered)} upload(s)")
        return recovered

    async def _recover_file(self, path: str) -> Optional[str]:
        if not os.path.isfile(path):
            return None

        stat = os.stat(path)
        age = self._clock() - stat.st_mtime
        if age <= self.stale_threshold:
            return None

        upload = self._read_upload(path, stat.st_size)
        job_id = upload.db_id or os.path.basename(path)

        if self.orchestrator.is_active(job_id):
            logger.debug(f"Upload {job_id} already has a job in flight")
            return None

        logger.info(f"Found stale upload: {job_id} ({int(age / 60)} minutes old)")
        await self.orchestrator.admit(job_id, path, upload.metadata)
        return job_id

    def _read_upload(self, path: str, size: int) -> UploadRecord:
        """
        Load the sidecar for a landing file, repairing a zero offset.

        A sidecar stuck at offset 0 next to a file with content means the
        upload layer failed to persist progress; it is rewritten with the
        file's real size.
        """
        sidecar = metadata_path(path)
        if not os.path.exists(sidecar):
            return UploadRecord(local_path=path, offset=size, size=size)

        raw = UploadRecord.load_raw(sidecar)
        upload = UploadRecord.from_sidecar(path, raw)
        if upload.offset == 0 and size > 0:
            logger.warning(f"Repairing upload offset for {os.path.basename(path)}: 0 -> {size}")
            raw.update(offset=size, size=raw.get("size") or size)
            with open(sidecar, "w") as f:
                json.dump(raw, f)
            upload = UploadRecord.from_sidecar(path, raw)
        return upload


def create_recovery_reconciler(orchestrator: Any) -> RecoveryReconciler:
    """Create a RecoveryReconciler using application settings."""
    from media_pipeline.config import get_settings

    settings = get_settings()
    return RecoveryReconciler(
        orchestrator,
        upload_dir=settings.upload_dir,
        stale_threshold=settings.stale_threshold_seconds,
        check_interval=settings.check_interval_seconds,
    )
