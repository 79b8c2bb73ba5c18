"""FFmpeg/ffprobe adapter used by the video pipeline."""

from __future__ import annotations

import json
import logging
import os
import re
import subprocess
import threading
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Deque, Dict, List, Optional, Protocol

from ..errors import MediaToolError


LOGGER = logging.getLogger(__name__)

ProgressCallback = Callable[[int], None]

# ffmpeg -progress pipe:1 prints out_time_ms in microseconds.
_RE_OUT_TIME_MS = re.compile(r"out_time_ms=(\d+)")

_STDERR_TAIL_LINES = 50
_DIAGNOSTIC_LIMIT = 2000


@dataclass(frozen=True)
class QualityConfig:
    width: int
    height: int
    bitrate: str


QUALITY_CONFIGS: Dict[str, QualityConfig] = {
    "360p": QualityConfig(width=640, height=360, bitrate="800k"),
    "480p": QualityConfig(width=854, height=480, bitrate="1400k"),
    "720p": QualityConfig(width=1280, height=720, bitrate="2800k"),
    "1080p": QualityConfig(width=1920, height=1080, bitrate="5000k"),
}


@dataclass(frozen=True)
class MediaMetadata:
    duration: float
    resolution: str
    codec: str
    format: str


class MediaTool(Protocol):
    def extract_metadata(self, path: Path) -> MediaMetadata: ...

    def transcode(
        self,
        input_path: Path,
        output_path: Path,
        quality: str,
        on_progress: Optional[ProgressCallback] = None,
        *,
        duration: Optional[float] = None,
        timeout: Optional[float] = None,
    ) -> None: ...

    def generate_thumbnail(
        self,
        input_path: Path,
        output_path: Path,
        at_seconds: float,
        *,
        timeout: Optional[float] = None,
    ) -> None: ...


def trim_tail(text: str, limit: int = _DIAGNOSTIC_LIMIT) -> str:
    if not text:
        return ""
    return text[-limit:] if len(text) > limit else text


def get_quality_config(quality: str) -> QualityConfig:
    try:
        return QUALITY_CONFIGS[quality]
    except KeyError:
        raise MediaToolError(f"Invalid quality level: {quality}") from None


def parse_progress_line(line: str, duration: float) -> Optional[int]:
    """Return the percent complete encoded in one ``-progress`` line, if any."""

    match = _RE_OUT_TIME_MS.search(line)
    if not match or duration <= 0:
        return None
    current = int(match.group(1)) / 1_000_000.0
    return max(0, min(99, int(current / duration * 100)))


class FFmpegMediaTool:
    """Run ffprobe/ffmpeg as subprocesses and translate failures into ``MediaToolError``."""

    def __init__(
        self,
        *,
        ffmpeg_binary: str = "ffmpeg",
        ffprobe_binary: str = "ffprobe",
        probe_timeout: float = 60.0,
        transcode_timeout: float = 3600.0,
        thumbnail_timeout: float = 300.0,
    ) -> None:
        self._ffmpeg = ffmpeg_binary
        self._ffprobe = ffprobe_binary
        self._probe_timeout = probe_timeout
        self._transcode_timeout = transcode_timeout
        self._thumbnail_timeout = thumbnail_timeout

    def _run(self, command: List[str], *, timeout: float, label: str) -> subprocess.CompletedProcess:
        LOGGER.debug("Executing %s command: %s", label, " ".join(command))
        try:
            return subprocess.run(
                command,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                timeout=timeout,
                check=False,
            )
        except FileNotFoundError as error:
            raise MediaToolError(f"{label} is not installed: {command[0]}") from error
        except subprocess.TimeoutExpired as error:
            stderr = error.stderr.decode("utf-8", "ignore") if isinstance(error.stderr, bytes) else error.stderr
            raise MediaToolError(f"{label} timed out after {timeout:g}s", trim_tail(stderr or "")) from error

    # ------------------------------------------------------------------
    # Metadata
    # ------------------------------------------------------------------
    def extract_metadata(self, path: Path) -> MediaMetadata:
        if not Path(path).exists():
            raise MediaToolError(f"Video file not found: {path}")
        command = [
            self._ffprobe,
            "-v",
            "error",
            "-print_format",
            "json",
            "-show_format",
            "-show_streams",
            str(path),
        ]
        completed = self._run(command, timeout=self._probe_timeout, label="ffprobe")
        if completed.returncode != 0:
            raise MediaToolError("Failed to extract metadata from video", trim_tail(completed.stderr))

        try:
            data = json.loads(completed.stdout or "")
        except json.JSONDecodeError as error:
            raise MediaToolError("Invalid metadata returned from ffprobe", trim_tail(completed.stdout)) from error
        if not isinstance(data, dict) or "format" not in data or "streams" not in data:
            raise MediaToolError("Invalid metadata returned from ffprobe", trim_tail(completed.stdout))

        video_stream = next(
            (stream for stream in data["streams"] if stream.get("codec_type") == "video"),
            None,
        )
        if video_stream is None:
            raise MediaToolError("No video stream found in file")

        fmt = data["format"]
        try:
            duration = float(fmt.get("duration") or 0.0)
        except (TypeError, ValueError):
            duration = 0.0
        metadata = MediaMetadata(
            duration=duration,
            resolution=f"{int(video_stream.get('width') or 0)}x{int(video_stream.get('height') or 0)}",
            codec=str(video_stream.get("codec_name") or "unknown"),
            format=str(fmt.get("format_name") or "unknown"),
        )
        LOGGER.debug("Extracted metadata for %s: %s", path, metadata)
        return metadata

    # ------------------------------------------------------------------
    # Transcoding
    # ------------------------------------------------------------------
    def build_transcode_command(self, input_path: Path, output_path: Path, quality: str) -> List[str]:
        config = get_quality_config(quality)
        return [
            self._ffmpeg,
            "-hide_banner",
            "-nostats",
            "-y",
            "-i",
            str(input_path),
            "-vf",
            f"scale={config.width}:{config.height}",
            "-c:v",
            "libx264",
            "-b:v",
            config.bitrate,
            "-c:a",
            "aac",
            "-b:a",
            "128k",
            "-movflags",
            "+faststart",
            "-progress",
            "pipe:1",
            str(output_path),
        ]

    def transcode(
        self,
        input_path: Path,
        output_path: Path,
        quality: str,
        on_progress: Optional[ProgressCallback] = None,
        *,
        duration: Optional[float] = None,
        timeout: Optional[float] = None,
    ) -> None:
        """Transcode *input_path* into *output_path* at *quality*.

        Output is written next to the target and renamed once ffmpeg exits
        cleanly, so a failed run never leaves a truncated rendition behind.
        ``on_progress`` receives strictly increasing percentages below 100.
        """

        input_path = Path(input_path)
        output_path = Path(output_path)
        if not input_path.exists():
            raise MediaToolError(f"Input video file not found: {input_path}")
        effective_timeout = float(timeout or self._transcode_timeout)
        if duration is None:
            try:
                duration = self.extract_metadata(input_path).duration
            except MediaToolError as error:
                LOGGER.warning("Could not probe duration of %s for progress: %s", input_path, error)
                duration = 0.0

        output_path.parent.mkdir(parents=True, exist_ok=True)
        partial = output_path.with_name(f"{output_path.stem}.part{output_path.suffix}")
        command = self.build_transcode_command(input_path, partial, quality)
        LOGGER.info("Starting ffmpeg transcode of %s to %s", input_path, quality)

        try:
            process = subprocess.Popen(
                command,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                bufsize=1,
            )
        except FileNotFoundError as error:
            raise MediaToolError(f"ffmpeg is not installed: {self._ffmpeg}") from error

        stderr_tail: Deque[str] = deque(maxlen=_STDERR_TAIL_LINES)
        last_reported = -1

        def read_progress() -> None:
            nonlocal last_reported
            for line in process.stdout or []:
                percent = parse_progress_line(line, duration or 0.0)
                if percent is None or percent <= last_reported:
                    continue
                last_reported = percent
                if on_progress is not None:
                    try:
                        on_progress(percent)
                    except Exception:
                        LOGGER.exception("Progress callback failed for %s", output_path)

        def read_stderr() -> None:
            for line in process.stderr or []:
                stderr_tail.append(line)

        readers = [
            threading.Thread(target=read_progress, daemon=True),
            threading.Thread(target=read_stderr, daemon=True),
        ]
        for reader in readers:
            reader.start()

        try:
            process.wait(timeout=effective_timeout)
        except subprocess.TimeoutExpired as error:
            process.kill()
            process.wait()
            partial.unlink(missing_ok=True)
            raise MediaToolError(
                f"ffmpeg timed out after {effective_timeout:g}s transcoding to {quality}",
                trim_tail("".join(stderr_tail)),
            ) from error
        finally:
            for reader in readers:
                reader.join(timeout=2.0)

        if process.returncode != 0:
            partial.unlink(missing_ok=True)
            raise MediaToolError(
                f"Failed to transcode video to {quality}",
                trim_tail("".join(stderr_tail)),
            )
        if not partial.exists():
            raise MediaToolError("Transcoded video file was not created", trim_tail("".join(stderr_tail)))
        os.replace(partial, output_path)
        LOGGER.info("Finished ffmpeg transcode of %s to %s", input_path, quality)

    # ------------------------------------------------------------------
    # Thumbnails
    # ------------------------------------------------------------------
    def generate_thumbnail(
        self,
        input_path: Path,
        output_path: Path,
        at_seconds: float,
        *,
        timeout: Optional[float] = None,
    ) -> None:
        if not Path(input_path).exists():
            raise MediaToolError(f"Video file not found: {input_path}")
        Path(output_path).parent.mkdir(parents=True, exist_ok=True)
        command = [
            self._ffmpeg,
            "-hide_banner",
            "-y",
            "-ss",
            f"{float(at_seconds):.3f}",
            "-i",
            str(input_path),
            "-frames:v",
            "1",
            "-q:v",
            "2",
            str(output_path),
        ]
        completed = self._run(
            command,
            timeout=float(timeout or self._thumbnail_timeout),
            label="ffmpeg",
        )
        if completed.returncode != 0:
            raise MediaToolError("Failed to generate thumbnail", trim_tail(completed.stderr))
        if not Path(output_path).exists():
            raise MediaToolError("Thumbnail file was not created", trim_tail(completed.stderr))


__all__ = [
    "FFmpegMediaTool",
    "MediaMetadata",
    "MediaTool",
    "ProgressCallback",
    "QUALITY_CONFIGS",
    "QualityConfig",
    "get_quality_config",
    "parse_progress_line",
    "trim_tail",
]
