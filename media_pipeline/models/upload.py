"""Resumable-upload sidecar model read by the recovery reconciler."""

import json
from typing import Any

from pydantic import BaseModel, Field


class UploadRecord(BaseModel):
    """Progress record the upload layer keeps next to each landing file."""

    local_path: str
    offset: int = Field(default=0, ge=0)
    size: int | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_sidecar(cls, local_path: str, raw: dict[str, Any]) -> "UploadRecord":
        return cls(
            local_path=local_path,
            offset=raw.get("offset") or 0,
            size=raw.get("size"),
            metadata=raw.get("metadata") or {},
        )

    @property
    def db_id(self) -> str | None:
        """Caller-assigned job identifier, if the client sent one."""
        value = self.metadata.get("dbId")
        return str(value) if value else None

    @staticmethod
    def load_raw(path: str) -> dict[str, Any]:
        with open(path, "r") as f:
            data = json.load(f)
        if not isinstance(data, dict):
            raise ValueError(f"Upload metadata in {path} is not an object")
        return data
