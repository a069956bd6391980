"""Object storage for published media, backed by Supabase Storage."""

import asyncio
import logging
from typing import Any, Optional, Protocol

from media_pipeline.utils.errors import StorageError
from media_pipeline.utils.files import get_mime_type
from media_pipeline.utils.retry import is_transient, with_retry

logger = logging.getLogger(__name__)


class ObjectStorage(Protocol):
    """The storage collaborator the orchestrator publishes through."""

    async def put(self, local_path: str, key: str, content_type: Optional[str] = None) -> str: ...

    def public_url(self, key: str) -> str: ...


class SupabaseObjectStorage:
    """Uploads files to a Supabase Storage bucket."""

    def __init__(self, supabase_client: Optional[Any] = None, bucket: str = "videos") -> None:
        """
        Initialize the SupabaseObjectStorage.

        Args:
            supabase_client: Supabase client instance (optional)
            bucket: Storage bucket receiving published files
        """
        self.supabase = supabase_client
        self.bucket = bucket

    @with_retry(max_attempts=3, base_delay=0.5, exceptions=(StorageError,), retry_if=is_transient)
    async def put(self, local_path: str, key: str, content_type: Optional[str] = None) -> str:
        """
        Upload a single file.

        Args:
            local_path: File to upload
            key: Object key inside the bucket
            content_type: Content type; looked up by extension when omitted

        Returns:
            The object key

        Raises:
            StorageError: If the upload fails after retries, or at once when
                the failure is not transient
        """
        if not self.supabase:
            raise StorageError("Supabase client not configured", transient=False)

        content_type = content_type or get_mime_type(local_path)
        try:
            data = await asyncio.to_thread(_read_bytes, local_path)
        except OSError as e:
            raise StorageError(f"Failed to read {local_path}: {e}", transient=False) from e

        bucket = self.supabase.storage.from_(self.bucket)
        try:
            await asyncio.to_thread(
                bucket.upload,
                path=key,
                file=data,
                file_options={"content-type": content_type, "upsert": "true"},
            )
        except Exception as e:
            raise StorageError(f"Failed to upload {key}: {e}", transient=_is_transient(e)) from e

        logger.debug(f"Uploaded file: {key}")
        return key

    def public_url(self, key: str) -> str:
        if not self.supabase:
            raise StorageError("Supabase client not configured", transient=False)
        return self.supabase.storage.from_(self.bucket).get_public_url(key)


def _read_bytes(path: str) -> bytes:
    with open(path, "rb") as f:
        return f.read()


def _is_transient(error: Exception) -> bool:
    """Client errors (4xx other than timeout and throttling) will not heal."""
    status = getattr(error, "status", None) or getattr(error, "status_code", None)
    try:
        status = int(status)
    except (TypeError, ValueError):
        return True
    return not (400 <= status < 500) or status in (408, 429)


def create_object_storage(supabase_client: Optional[Any] = None) -> SupabaseObjectStorage:
    """
    Create a SupabaseObjectStorage using application settings.

    Args:
        supabase_client: Optional Supabase client; created from settings if
            omitted and a URL and key are configured

    Returns:
        Configured SupabaseObjectStorage instance
    """
    from media_pipeline.config import get_settings

    settings = get_settings()
    if supabase_client is None and settings.supabase_url and settings.supabase_key:
        from supabase import create_client

        supabase_client = create_client(settings.supabase_url, settings.supabase_key)
    return SupabaseObjectStorage(supabase_client, bucket=settings.storage_bucket)
