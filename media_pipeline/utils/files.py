"""Filesystem helpers: upload validation, MIME lookup and local cleanup."""

import logging
import os
import shutil
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Mapping, Optional

from media_pipeline.config import Settings
from media_pipeline.utils.errors import FileValidationError

logger = logging.getLogger(__name__)

METADATA_SUFFIX = ".json"

MIME_TYPES = {
    ".m3u8": "application/x-mpegURL",
    ".ts": "video/MP2T",
    ".mp4": "video/mp4",
    ".mov": "video/quicktime",
    ".webm": "video/webm",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".webp": "image/webp",
}

EXTENSIONS = {
    "video/mp4": ".mp4",
    "video/quicktime": ".mov",
    "video/webm": ".webm",
    "image/jpeg": ".jpg",
    "image/png": ".png",
    "image/webp": ".webp",
}

# Metadata keys the resumable upload client may use for the MIME hint
MIME_HINT_KEYS = ("filetype", "type", "mimeType")


@dataclass(frozen=True)
class DetectedFile:
    """Result of validating an uploaded file."""

    mime: str
    ext: str
    size: int

    @property
    def is_image(self) -> bool:
        return self.mime.startswith("image/")


def get_mime_type(filename: str) -> str:
    """Look up a content type by extension."""
    ext = os.path.splitext(filename)[1].lower()
    return MIME_TYPES.get(ext, "application/octet-stream")


def sniff_mime_type(path: str) -> Optional[str]:
    """Detect a MIME type from the file's leading bytes."""
    with open(path, "rb") as f:
        head = f.read(16)

    if head.startswith(b"\xff\xd8\xff"):
        return "image/jpeg"
    if head.startswith(b"\x89PNG\r\n\x1a\n"):
        return "image/png"
    if head[:4] == b"RIFF" and head[8:12] == b"WEBP":
        return "image/webp"
    if head.startswith(b"\x1a\x45\xdf\xa3"):
        return "video/webm"
    if head[4:8] == b"ftyp":
        brand = head[8:12]
        if brand == b"qt  ":
            return "video/quicktime"
        return "video/mp4"
    return None


def mime_hint(metadata: Mapping[str, str]) -> Optional[str]:
    for key in MIME_HINT_KEYS:
        value = metadata.get(key)
        if value:
            return value.split(";")[0].strip().lower()
    return None


def validate_upload(
    path: str, metadata: Mapping[str, str], settings: Settings
) -> DetectedFile:
    """
    Validate a completed upload before it is admitted.

    The type is taken from the file's magic bytes when recognisable,
    otherwise from the client MIME hint, otherwise from the extension.

    Raises:
        FileValidationError: If the file is missing, too large or of a
            type that is not allowed
    """
    if not os.path.isfile(path):
        raise FileValidationError("MISSING_FILE", f"Upload not found: {path}")

    size = os.path.getsize(path)
    if size > settings.max_file_size:
        raise FileValidationError(
            "FILE_TOO_LARGE",
            f"File is {size} bytes, limit is {settings.max_file_size}",
        )

    mime = sniff_mime_type(path) or mime_hint(metadata)
    if mime is None:
        by_ext = get_mime_type(metadata.get("filename") or path)
        if by_ext == "application/octet-stream":
            raise FileValidationError("UNKNOWN_FILE_TYPE", "Unable to determine file type")
        mime = by_ext

    if mime not in settings.allowed_types:
        raise FileValidationError("INVALID_FILE_TYPE", f"File type {mime} is not allowed")

    return DetectedFile(mime=mime, ext=EXTENSIONS.get(mime, ""), size=size)


def metadata_path(path: str) -> str:
    return f"{path}{METADATA_SUFFIX}"


def remove_path(path: str) -> None:
    """Remove a file or directory tree, logging instead of raising."""
    try:
        if os.path.isdir(path):
            shutil.rmtree(path)
        elif os.path.lexists(path):
            os.remove(path)
    except OSError as e:
        logger.warning(f"Failed to remove {path}: {e}")


def cleanup_upload(path: str) -> None:
    """Remove an uploaded file and its resumable-upload sidecar."""
    remove_path(path)
    remove_path(metadata_path(path))
    logger.debug(f"Cleaned up upload: {path}")


@asynccontextmanager
async def temporary_artifacts(*paths: str, keep_on_success: bool = True) -> AsyncIterator[None]:
    """
    Scope local working files to a block.

    The paths are removed if the block raises, and also on success unless
    keep_on_success is set. Removal failures are logged, never raised, so
    the original exception always propagates.
    """
    succeeded = False
    try:
        yield
        succeeded = True
    finally:
        if not (succeeded and keep_on_success):
            for path in paths:
                remove_path(path)
