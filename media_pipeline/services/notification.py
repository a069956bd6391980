"""Best-effort status callbacks to the backend."""

import asyncio
import logging
from datetime import datetime
from typing import Any, Optional

import httpx

logger = logging.getLogger(__name__)


class NotificationClient:
    """Sends terminal job statuses to the backend. Never raises."""

    def __init__(
        self,
        backend_url: str,
        timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        """
        Initialize the NotificationClient.

        Args:
            backend_url: Base URL of the backend receiving status updates
            timeout: Seconds before a callback is abandoned
            transport: Optional httpx transport (used by tests)
        """
        self.backend_url = backend_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    def status_url(self, job_id: str) -> str:
        return f"{self.backend_url}/api/files/{job_id}/status"

    async def notify(
        self,
        job_id: str,
        status: str,
        url: Optional[str] = None,
        extra: Optional[dict[str, Any]] = None,
    ) -> bool:
        """
        PATCH the job's status resource on the backend.

        Returns:
            True if the backend answered 2xx, False on any error or timeout
        """
        payload = {
            "status": status,
            "url": url,
            **(extra or {}),
            "updatedAt": datetime.utcnow().isoformat(),
        }
        logger.info(f"Notifying backend for {job_id}: status={status} url={url}")

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.patch(self.status_url(job_id), json=payload)
            response.raise_for_status()
        except (httpx.HTTPError, TypeError, ValueError) as e:
            logger.error(f"Failed to notify backend for {job_id}: {e}")
            return False

        logger.info(f"Successfully notified backend for {job_id}")
        return True

    async def notify_batch(self, notifications: list[dict[str, Any]]) -> dict[str, int]:
        """
        Send several notifications concurrently.

        Args:
            notifications: Items with ``job_id``, ``status`` and optional
                ``url`` and ``extra``

        Returns:
            Counts of successful and failed notifications
        """
        results = await asyncio.gather(
            *(
                self.notify(n["job_id"], n["status"], n.get("url"), n.get("extra"))
                for n in notifications
            )
        )
        successful = sum(1 for ok in results if ok)
        failed = len(results) - successful
        logger.info(
            f"Batch notification completed: total={len(results)} "
            f"successful={successful} failed={failed}"
        )
        return {"successful": successful, "failed": failed}


def create_notification_client() -> NotificationClient:
    """Create a NotificationClient using application settings."""
    from media_pipeline.config import get_settings

    settings = get_settings()
    return NotificationClient(
        backend_url=settings.backend_url,
        timeout=settings.backend_notify_timeout,
    )
