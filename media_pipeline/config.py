"""Application settings from environment variables."""

import logging
from functools import lru_cache

from dotenv import load_dotenv
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings

# Load environment variables
load_dotenv()

FFMPEG_PRESETS = (
    "ultrafast",
    "superfast",
    "veryfast",
    "faster",
    "fast",
    "medium",
    "slow",
    "slower",
    "veryslow",
)


class Settings(BaseSettings):
    """Application settings from environment."""

    # Supabase (primary job store and object storage)
    supabase_url: str = ""
    supabase_key: str = ""
    jobs_table: str = "media_jobs"
    storage_bucket: str = "videos"

    # Job store
    job_key_prefix: str = "job:"
    job_ttl_seconds: int = 7 * 24 * 60 * 60
    memory_cleanup_interval_seconds: float = 60.0
    store_retry_interval_seconds: float = 30.0

    # Work queue
    transcode_concurrency: int = Field(default=2, ge=1)
    upload_concurrency: int = Field(default=5, ge=1)
    image_concurrency: int = Field(default=5, ge=1)
    transcode_attempts: int = Field(default=2, ge=1)
    upload_attempts: int = Field(default=1, ge=1)

    # FFmpeg
    ffmpeg_path: str = "ffmpeg"
    ffprobe_path: str = "ffprobe"
    ffmpeg_crf: int = Field(default=23, ge=0, le=51)
    ffmpeg_preset: str = "fast"
    hls_time: int = Field(default=10, ge=1)

    # Directories
    upload_dir: str = "uploads"
    output_dir: str = "output"

    # Upload validation
    max_file_size: int = 5 * 1024 * 1024 * 1024
    allowed_video_types: list[str] = ["video/mp4", "video/quicktime"]
    allowed_image_types: list[str] = ["image/jpeg", "image/png", "image/webp"]

    # Backend notification
    backend_url: str = "http://localhost:4000"
    backend_notify_timeout: float = 5.0

    # Recovery
    stale_threshold_seconds: float = 15 * 60
    check_interval_seconds: float = 10 * 60

    # Logging
    log_level: str = "INFO"

    model_config = {"env_file": ".env", "extra": "ignore"}

    @field_validator("ffmpeg_preset")
    @classmethod
    def known_preset(cls, v: str) -> str:
        """Validate that the preset is one x264 understands."""
        if v not in FFMPEG_PRESETS:
            raise ValueError(f"ffmpeg_preset must be one of {', '.join(FFMPEG_PRESETS)}")
        return v

    @property
    def allowed_types(self) -> list[str]:
        return [*self.allowed_video_types, *self.allowed_image_types]


@lru_cache
def get_settings() -> Settings:
    """Get cached application settings."""
    return Settings()


def configure_logging(level: str | None = None) -> None:
    """Configure root logging from settings."""
    logging.basicConfig(
        level=(level or get_settings().log_level).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
