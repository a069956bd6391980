"""FFmpeg-backed HLS transcoding engine."""

import asyncio
import json
import logging
import os
from typing import Any, Awaitable, Callable, Optional, Protocol

from pydantic import BaseModel

from media_pipeline.utils.errors import TranscodeError

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int], Awaitable[None]]

MANIFEST_NAME = "index.m3u8"


class VideoStream(BaseModel):
    codec: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None
    fps: Optional[float] = None


class AudioStream(BaseModel):
    codec: Optional[str] = None
    sample_rate: Optional[int] = None
    channels: Optional[int] = None


class MediaInfo(BaseModel):
    """What ffprobe reports about an input file."""

    duration: Optional[float] = None
    size: Optional[int] = None
    bitrate: Optional[int] = None
    format: Optional[str] = None
    video: Optional[VideoStream] = None
    audio: Optional[AudioStream] = None

    @property
    def resolution(self) -> Optional[str]:
        if self.video and self.video.width and self.video.height:
            return f"{self.video.width}x{self.video.height}"
        return None


class Transcoder(Protocol):
    """The transcoding collaborator the orchestrator drives."""

    async def probe(self, input_path: str) -> MediaInfo: ...

    async def transcode(
        self,
        input_path: str,
        output_dir: str,
        on_progress: Optional[ProgressCallback] = None,
        info: Optional[MediaInfo] = None,
    ) -> str: ...


def _parse_fps(rate: Optional[str]) -> Optional[float]:
    """Parse an ffprobe frame rate such as ``30000/1001``."""
    if not rate:
        return None
    num, _, den = rate.partition("/")
    try:
        if den:
            return round(float(num) / float(den), 3) if float(den) else None
        return float(num)
    except ValueError:
        return None


def _to_int(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _to_float(value: Any) -> Optional[float]:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def parse_probe_output(data: dict[str, Any]) -> MediaInfo:
    """Build MediaInfo from ``ffprobe -print_format json`` output."""
    fmt = data.get("format") or {}
    streams = data.get("streams") or []
    video = next((s for s in streams if s.get("codec_type") == "video"), None)
    audio = next((s for s in streams if s.get("codec_type") == "audio"), None)

    return MediaInfo(
        duration=_to_float(fmt.get("duration")),
        size=_to_int(fmt.get("size")),
        bitrate=_to_int(fmt.get("bit_rate")),
        format=fmt.get("format_name"),
        video=VideoStream(
            codec=video.get("codec_name"),
            width=video.get("width"),
            height=video.get("height"),
            fps=_parse_fps(video.get("r_frame_rate")),
        )
        if video
        else None,
        audio=AudioStream(
            codec=audio.get("codec_name"),
            sample_rate=_to_int(audio.get("sample_rate")),
            channels=audio.get("channels"),
        )
        if audio
        else None,
    )


def progress_percent(line: str, duration: Optional[float]) -> Optional[int]:
    """Convert one ``-progress`` output line to a 0-100 percentage."""
    key, _, value = line.strip().partition("=")
    if key == "progress" and value == "end":
        return 100
    if key not in ("out_time_us", "out_time_ms") or not duration:
        return None
    try:
        # ffmpeg reports out_time_ms in microseconds as well
        seconds = int(value) / 1_000_000
    except ValueError:
        return None
    return max(0, min(100, int(seconds / duration * 100)))


class FFmpegTranscoder:
    """Runs ffprobe/ffmpeg as subprocesses and produces an HLS rendition."""

    def __init__(
        self,
        ffmpeg_path: str = "ffmpeg",
        ffprobe_path: str = "ffprobe",
        crf: int = 23,
        preset: str = "fast",
        hls_time: int = 10,
    ) -> None:
        self.ffmpeg_path = ffmpeg_path
        self.ffprobe_path = ffprobe_path
        self.crf = crf
        self.preset = preset
        self.hls_time = hls_time

    def build_command(self, input_path: str, output_dir: str) -> list[str]:
        return [
            self.ffmpeg_path,
            "-y",
            "-i", input_path,
            "-c:v", "libx264",
            "-c:a", "aac",
            "-crf", str(self.crf),
            "-preset", self.preset,
            "-g", "48",  # keyframe every ~2s at 24fps
            "-sc_threshold", "0",
            "-hls_time", str(self.hls_time),
            "-hls_list_size", "0",
            "-f", "hls",
            "-progress", "pipe:1",
            "-nostats",
            os.path.join(output_dir, MANIFEST_NAME),
        ]  # fmt: skip

    async def probe(self, input_path: str) -> MediaInfo:
        """
        Read container and stream metadata.

        Raises:
            TranscodeError: If ffprobe fails or its output is unreadable
        """
        try:
            process = await asyncio.create_subprocess_exec(
                self.ffprobe_path,
                "-v", "error",
                "-print_format", "json",
                "-show_format",
                "-show_streams",
                input_path,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )  # fmt: skip
        except OSError as e:
            raise TranscodeError(f"Failed to start ffprobe: {e}")

        stdout, stderr = await process.communicate()
        if process.returncode != 0:
            logger.error(f"FFprobe error for {input_path}: {stderr.decode(errors='replace')}")
            raise TranscodeError("Failed to read video metadata")

        try:
            info = parse_probe_output(json.loads(stdout))
        except ValueError as e:
            raise TranscodeError(f"Failed to read video metadata: {e}")

        logger.debug(f"Video metadata extracted: {info.model_dump()}")
        return info

    async def transcode(
        self,
        input_path: str,
        output_dir: str,
        on_progress: Optional[ProgressCallback] = None,
        info: Optional[MediaInfo] = None,
    ) -> str:
        """
        Transcode to H.264/AAC HLS segments under output_dir.

        Progress is measured against the duration in info; the input is
        probed only when the caller has not already done so.

        Returns:
            Path of the HLS manifest

        Raises:
            TranscodeError: If ffmpeg exits non-zero
        """
        if info is None:
            info = await self.probe(input_path)
        os.makedirs(output_dir, exist_ok=True)
        cmd = self.build_command(input_path, output_dir)
        logger.info(f"Starting FFmpeg transcoding: {input_path} -> {output_dir}")
        logger.debug(f"FFmpeg command: {' '.join(cmd)}")

        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise TranscodeError(f"Failed to start ffmpeg: {e}")

        async def read_progress() -> None:
            last = -1
            assert process.stdout is not None
            async for raw in process.stdout:
                percent = progress_percent(raw.decode(errors="replace"), info.duration)
                if percent is not None and percent != last and on_progress:
                    last = percent
                    await on_progress(percent)

        try:
            _, stderr = await asyncio.gather(read_progress(), process.stderr.read())
            await process.wait()
        except BaseException:
            if process.returncode is None:
                process.kill()
                await process.wait()
            raise

        if process.returncode != 0:
            tail = stderr.decode(errors="replace").strip().splitlines()[-5:]
            logger.error(f"FFmpeg error for {input_path}: {' | '.join(tail)}")
            raise TranscodeError(f"Video transcoding failed with exit code {process.returncode}")

        manifest = os.path.join(output_dir, MANIFEST_NAME)
        logger.info(f"FFmpeg transcoding completed: {output_dir}")
        return manifest


def create_transcoder() -> FFmpegTranscoder:
    """Create an FFmpegTranscoder using application settings."""
    from media_pipeline.config import get_settings

    settings = get_settings()
    return FFmpegTranscoder(
        ffmpeg_path=settings.ffmpeg_path,
        ffprobe_path=settings.ffprobe_path,
        crf=settings.ffmpeg_crf,
        preset=settings.ffmpeg_preset,
        hls_time=settings.hls_time,
    )
