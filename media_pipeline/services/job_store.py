"""Job record store backed by Supabase with an in-process fallback."""

import asyncio
import json
import logging
import math
import time
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Optional

from media_pipeline.models.job import JobPage, JobRecord, JobStats, JobStatus, Pagination
from media_pipeline.utils.errors import StoreUnavailableError

logger = logging.getLogger(__name__)

SORTABLE_FIELDS = frozenset(
    {
        "job_id",
        "status",
        "progress",
        "current_step",
        "file_type",
        "original_name",
        "file_size",
        "created_at",
        "updated_at",
        "completed_at",
        "failed_at",
        "cancelled_at",
    }
)


class SupabaseJobBackend:
    """
    Key/value rows in a Supabase table.

    Expected schema::

        create table media_jobs (
            id bigserial primary key,
            key text unique not null,
            value jsonb not null,
            expires_at double precision not null
        );

    Supabase has no native row expiry, so expired rows are filtered out on
    read and deleted when encountered. Rows are listed in ``id`` order,
    which is first-insert order because saves upsert on ``key``.
    """

    def __init__(self, supabase_client: Any, table: str) -> None:
        self.supabase = supabase_client
        self.table = table

    def _execute(self, query: Any) -> list[dict[str, Any]]:
        try:
            result = query.execute()
        except Exception as e:
            raise StoreUnavailableError(f"Supabase request failed: {e}") from e
        return result.data or []

    def put(self, key: str, value: str, expires_at: float) -> None:
        self._execute(
            self.supabase.table(self.table).upsert(
                {"key": key, "value": json.loads(value), "expires_at": expires_at},
                on_conflict="key",
            )
        )

    def get(self, key: str, now: float) -> Optional[str]:
        rows = self._execute(self.supabase.table(self.table).select("*").eq("key", key))
        if not rows:
            return None
        row = rows[0]
        if row["expires_at"] <= now:
            self.remove(key)
            return None
        return json.dumps(row["value"])

    def remove(self, key: str) -> None:
        self._execute(self.supabase.table(self.table).delete().eq("key", key))

    def values(self, prefix: str, now: float) -> list[str]:
        rows = self._execute(
            self.supabase.table(self.table).select("*").like("key", f"{prefix}%").order("id")
        )
        return [json.dumps(row["value"]) for row in rows if row["expires_at"] > now]


class MemoryJobBackend:
    """In-process mapping with the same expiry semantics as the primary."""

    def __init__(self) -> None:
        self._entries: dict[str, tuple[str, float]] = {}

    def put(self, key: str, value: str, expires_at: float) -> None:
        self._entries[key] = (value, expires_at)

    def get(self, key: str, now: float) -> Optional[str]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at <= now:
            del self._entries[key]
            return None
        return value

    def remove(self, key: str) -> None:
        self._entries.pop(key, None)

    def values(self, prefix: str, now: float) -> list[str]:
        return [
            value
            for key, (value, expires_at) in self._entries.items()
            if key.startswith(prefix) and expires_at > now
        ]

    def entries(self, prefix: str, now: float) -> list[tuple[str, str, float]]:
        return [
            (key, value, expires_at)
            for key, (value, expires_at) in self._entries.items()
            if key.startswith(prefix) and expires_at > now
        ]

    def purge_expired(self, now: float) -> int:
        expired = [key for key, (_, expires_at) in self._entries.items() if expires_at <= now]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def __len__(self) -> int:
        return len(self._entries)


class JobStore:
    """
    Durable job record persistence with transparent degrade.

    Every record is a whole-record overwrite under ``<prefix><job_id>`` with
    an absolute expiry of ``ttl_seconds`` from its last write. When the
    primary backend is missing or fails, calls are served by the in-process
    fallback instead; callers never see the failure. After a failure the
    primary is not retried until ``retry_interval`` seconds have passed.

    The store holds no business rules. Concurrent updates to one job_id must
    be serialized by the caller.
    """

    def __init__(
        self,
        primary: Optional[SupabaseJobBackend] = None,
        prefix: str = "job:",
        ttl_seconds: int = 7 * 24 * 60 * 60,
        retry_interval: float = 30.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.primary = primary
        self.fallback = MemoryJobBackend()
        self.prefix = prefix
        self.ttl_seconds = ttl_seconds
        self.retry_interval = retry_interval
        self._clock = clock
        self._primary_down_since: Optional[float] = None
        self._cleanup_task: Optional[asyncio.Task] = None
        self._removed_while_down: set[str] = set()

        if primary is None:
            logger.info("Job store primary not configured - using in-memory storage")

    @property
    def mode(self) -> str:
        """Which backend currently serves requests: primary or fallback."""
        return "primary" if self._primary_usable() else "fallback"

    def _key(self, job_id: str) -> str:
        return f"{self.prefix}{job_id}"

    def _primary_usable(self) -> bool:
        if self.primary is None:
            return False
        if self._primary_down_since is None:
            return True
        return self._clock() - self._primary_down_since >= self.retry_interval

    def _run(self, command: Callable[[Any], Any]) -> Any:
        """Run a backend command against the primary, degrading on failure."""
        if self._primary_usable():
            try:
                if self._primary_down_since is not None:
                    self._restore_primary()
                result = command(self.primary)
            except StoreUnavailableError as e:
                if self._primary_down_since is None:
                    logger.warning(f"Job store primary unavailable - falling back to memory: {e}")
                else:
                    logger.debug(f"Job store primary still unavailable: {e}")
                self._primary_down_since = self._clock()
            else:
                if self._primary_down_since is not None:
                    logger.info("Job store primary recovered")
                    self._primary_down_since = None
                return result
        return command(self.fallback)

    def _restore_primary(self) -> None:
        """Move entries written while degraded into the primary."""
        now = self._clock()
        for key in self._removed_while_down:
            self.primary.remove(key)
        self._removed_while_down.clear()

        entries = self.fallback.entries(self.prefix, now)
        for key, value, expires_at in entries:
            self.primary.put(key, value, expires_at)
        for key, _, _ in entries:
            self.fallback.remove(key)
        if entries:
            logger.info(f"Restored {len(entries)} jobs from memory to the primary store")

    async def save(self, job_id: str, record: JobRecord) -> None:
        key = self._key(job_id)
        value = record.model_dump_json()
        expires_at = self._clock() + self.ttl_seconds
        self._run(lambda backend: backend.put(key, value, expires_at))
        logger.debug(f"Job {job_id} saved ({self.mode})")

    async def get(self, job_id: str) -> Optional[JobRecord]:
        key = self._key(job_id)
        now = self._clock()
        value = self._run(lambda backend: backend.get(key, now))
        return JobRecord.model_validate_json(value) if value else None

    async def update(self, job_id: str, **fields: Any) -> Optional[JobRecord]:
        """
        Overwrite some fields of an existing record.

        Returns:
            The updated record, or None if no record exists (not an upsert)
        """
        existing = await self.get(job_id)
        if existing is None:
            logger.warning(f"Job {job_id} not found for update")
            return None

        updated = existing.with_updates(**fields, updated_at=datetime.utcnow())
        await self.save(job_id, updated)
        return updated

    async def delete(self, job_id: str) -> None:
        key = self._key(job_id)
        self._run(lambda backend: backend.remove(key))
        if self.primary is not None and self.mode == "fallback":
            self._removed_while_down.add(key)
        logger.debug(f"Job {job_id} deleted ({self.mode})")

    async def _all(self) -> list[JobRecord]:
        now = self._clock()
        values = self._run(lambda backend: backend.values(self.prefix, now))
        records = []
        for value in values:
            try:
                records.append(JobRecord.model_validate_json(value))
            except ValueError as e:
                logger.warning(f"Skipping unreadable job record: {e}")
        return records

    async def find_all(
        self,
        status: Optional[JobStatus] = None,
        sort_by: str = "created_at",
        order: str = "desc",
        page: int = 1,
        page_size: int = 20,
    ) -> JobPage:
        """
        List jobs filtered by exact status, sorted and paginated.

        Ties keep insertion order. Records without a value for ``sort_by``
        sort after all others in either order.
        """
        if sort_by not in SORTABLE_FIELDS:
            raise ValueError(f"Cannot sort by {sort_by}")
        if order not in ("asc", "desc"):
            raise ValueError("order must be 'asc' or 'desc'")
        page = max(1, page)
        page_size = max(1, page_size)

        records = await self._all()
        if status is not None:
            records = [r for r in records if r.status == JobStatus(status)]

        present = [r for r in records if getattr(r, sort_by) is not None]
        missing = [r for r in records if getattr(r, sort_by) is None]
        present.sort(key=lambda r: _sort_value(getattr(r, sort_by)), reverse=order == "desc")
        ordered = present + missing

        start = (page - 1) * page_size
        total = len(ordered)
        return JobPage(
            items=ordered[start : start + page_size],
            pagination=Pagination(
                page=page,
                page_size=page_size,
                total=total,
                total_pages=math.ceil(total / page_size),
            ),
        )

    async def stats(self) -> JobStats:
        counts: dict[str, int] = {}
        records = await self._all()
        for record in records:
            counts[record.status.value] = counts.get(record.status.value, 0) + 1
        return JobStats(total=len(records), **counts)

    def cleanup_expired(self) -> int:
        """Drop expired entries from the in-process fallback."""
        cleaned = self.fallback.purge_expired(self._clock())
        if cleaned:
            logger.debug(f"Cleaned up {cleaned} expired jobs from memory")
        return cleaned

    def start_cleanup(self, interval: float = 60.0) -> None:
        """Periodically purge the fallback while the primary is not in use."""
        if self._cleanup_task is not None:
            return

        async def _loop() -> None:
            while True:
                await asyncio.sleep(interval)
                if self.mode == "fallback":
                    self.cleanup_expired()

        self._cleanup_task = asyncio.get_running_loop().create_task(_loop())

    async def stop_cleanup(self) -> None:
        if self._cleanup_task is None:
            return
        self._cleanup_task.cancel()
        try:
            await self._cleanup_task
        except asyncio.CancelledError:
            pass
        self._cleanup_task = None


def _sort_value(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    return value


def create_job_store(supabase_client: Optional[Any] = None) -> JobStore:
    """
    Create a JobStore using application settings.

    Args:
        supabase_client: Optional Supabase client; when omitted one is
            created from settings if a URL and key are configured

    Returns:
        Configured JobStore instance
    """
    from media_pipeline.config import get_settings

    settings = get_settings()
    if supabase_client is None and settings.supabase_url and settings.supabase_key:
        from supabase import create_client

        supabase_client = create_client(settings.supabase_url, settings.supabase_key)

    primary = (
        SupabaseJobBackend(supabase_client, settings.jobs_table)
        if supabase_client is not None
        else None
    )
    return JobStore(
        primary=primary,
        prefix=settings.job_key_prefix,
        ttl_seconds=settings.job_ttl_seconds,
        retry_interval=settings.store_retry_interval_seconds,
    )
