"""Work queue execution-attempt models."""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


class QueueJobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class QueueJob(BaseModel):
    """One execution attempt wrapper, owned by the WorkQueue."""

    id: str
    queue_name: str
    payload: dict[str, Any] = Field(default_factory=dict)
    status: QueueJobStatus = QueueJobStatus.PENDING
    attempts: int = 0
    max_attempts: int = Field(default=1, ge=1)
    priority: int = 0
    result: Any = None
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (QueueJobStatus.COMPLETED, QueueJobStatus.FAILED)


class QueueMetrics(BaseModel):
    pending: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    total: int = 0
