"""Media merge: lay an audio track over an image, GIF or video with ffmpeg.

WHY: Transcoding is delegated to ffmpeg, but the audio length policy is
ours: the result must not depend on ffmpeg defaults. Videos keep their
length (audio loops when short, is cut when long); stills and GIFs
become a clip of fixed length whatever the audio length.

HOW: ``build_command`` is a pure function from (MergeJob, settings,
output path, video duration) to an argv list, so the policy is tested
without ffmpeg. ``FfmpegTranscoder.merge`` probes video durations, runs
the command with asyncio subprocesses under a timeout, and maps
failures onto the error taxonomy. ``LimitedTranscoder`` caps how many
merges run at once.

RULES:
- Video: -stream_loop -1 on the audio input, output -t <video duration>, video copied
- Image: looped still, scaled/padded to WIDTHxHEIGHT, output -t CLIP
- Animation: looped GIF, scaled/padded, output -t CLIP
- Nonzero exit → TranscodeFailedError; unreadable input → UnsupportedMediaError
- No retries: the same inputs fail the same way
- The output file is written inside the caller's directory; the caller deletes it
"""

from __future__ import annotations

import asyncio
import logging
import shlex
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from soundtracker.config import (
    CLIP_SECONDS,
    FFMPEG_BIN,
    FFPROBE_BIN,
    MAX_CONCURRENT_MERGES,
    OUTPUT_FRAMERATE,
    OUTPUT_HEIGHT,
    OUTPUT_WIDTH,
    TRANSCODE_TIMEOUT_S,
)
from soundtracker.core.media import MediaKind, aprobe_duration
from soundtracker.errors import TranscodeFailedError, UnsupportedMediaError

logger = logging.getLogger(__name__)

_UNREADABLE_MARKERS = (
    "Invalid data found when processing input",
    "could not find codec parameters",
    "Unknown input format",
)

_STDERR_TAIL_CHARS = 2000


@dataclass(frozen=True)
class MergeJob:
    """Inputs of one merge: media file, audio file, media kind, audio offset."""

    media_path: Path
    audio_path: Path
    kind: MediaKind
    audio_start_s: float = 0.0


@dataclass(frozen=True)
class MergeSettings:
    clip_s: float = CLIP_SECONDS
    width: int = OUTPUT_WIDTH
    height: int = OUTPUT_HEIGHT
    framerate: int = OUTPUT_FRAMERATE


class Transcoder(Protocol):
    """Capability the pipeline depends on: merge a job into ``output_dir``."""

    async def merge(self, job: MergeJob, output_dir: Path) -> Path:
        ...


def output_format_for(job: MergeJob) -> tuple[str, str]:
    """Return (output suffix, audio encoder) for a job.

    Copied video streams must fit the container, so WebM stays WebM
    (with Opus audio) and Matroska stays Matroska. Everything else,
    including every re-encoded still or GIF, becomes MP4 with AAC.
    """
    if job.kind is MediaKind.VIDEO:
        suffix = job.media_path.suffix.lower()
        if suffix == ".webm":
            return ".webm", "libopus"
        if suffix == ".mkv":
            return ".mkv", "aac"
    return ".mp4", "aac"


def _fmt_seconds(value: float) -> str:
    return "{:.3f}".format(value).rstrip("0").rstrip(".")


def build_command(
    job: MergeJob,
    output_path: Path,
    settings: MergeSettings,
    video_duration_s: float | None = None,
    ffmpeg: str = FFMPEG_BIN,
) -> list[str]:
    """Build the ffmpeg argv for a merge.

    RULES:
    - VIDEO requires video_duration_s (ValueError otherwise)
    - Input 0 is always the media, input 1 always the audio
    - The audio start offset is applied with -ss on the audio input
    """
    _, audio_codec = output_format_for(job)
    cmd = [ffmpeg, "-hide_banner", "-loglevel", "error", "-nostdin", "-y"]

    if job.kind is MediaKind.VIDEO:
        if video_duration_s is None:
            raise ValueError("video merges need the video duration")
        duration = _fmt_seconds(video_duration_s)
        cmd += ["-i", str(job.media_path)]
        # Loop the audio forever; -t on the output cuts it at the video's end.
        cmd += ["-stream_loop", "-1"]
        if job.audio_start_s > 0:
            cmd += ["-ss", _fmt_seconds(job.audio_start_s)]
        cmd += ["-i", str(job.audio_path)]
        cmd += [
            "-map", "0:v:0",
            "-map", "1:a:0",
            "-c:v", "copy",
            "-c:a", audio_codec,
            "-t", duration,
        ]
    else:
        clip = _fmt_seconds(settings.clip_s)
        if job.kind is MediaKind.IMAGE:
            cmd += ["-loop", "1", "-framerate", str(settings.framerate), "-t", clip]
        else:
            cmd += ["-stream_loop", "-1", "-t", clip]
        cmd += ["-i", str(job.media_path)]
        if job.audio_start_s > 0:
            cmd += ["-ss", _fmt_seconds(job.audio_start_s)]
        cmd += ["-t", clip, "-i", str(job.audio_path)]

        scale = (
            "scale={w}:{h}:force_original_aspect_ratio=decrease,"
            "pad={w}:{h}:(ow-iw)/2:(oh-ih)/2,"
            "fps={fps},format=yuv420p"
        ).format(w=settings.width, h=settings.height, fps=settings.framerate)
        cmd += [
            "-map", "0:v:0",
            "-map", "1:a:0",
            "-vf", scale,
            "-c:v", "libx264",
            "-preset", "veryfast",
            "-c:a", audio_codec,
            "-t", clip,
        ]

    if output_path.suffix == ".mp4":
        cmd += ["-movflags", "+faststart"]
    cmd.append(str(output_path))
    return cmd


class FfmpegTranscoder:
    """Transcoder backed by the ffmpeg and ffprobe executables."""

    def __init__(
        self,
        ffmpeg: str = FFMPEG_BIN,
        ffprobe: str = FFPROBE_BIN,
        settings: MergeSettings | None = None,
        timeout_s: float = TRANSCODE_TIMEOUT_S,
    ) -> None:
        self._ffmpeg = ffmpeg
        self._ffprobe = ffprobe
        self._settings = settings or MergeSettings()
        self._timeout_s = timeout_s

    async def merge(self, job: MergeJob, output_dir: Path) -> Path:
        started = time.monotonic()
        suffix, _ = output_format_for(job)
        output_path = output_dir / f"soundtrack-{job.media_path.stem}{suffix}"

        video_duration = None
        if job.kind is MediaKind.VIDEO:
            video_duration = await aprobe_duration(job.media_path, self._ffprobe)

        cmd = build_command(job, output_path, self._settings, video_duration, self._ffmpeg)
        logger.debug("%s", shlex.join(cmd))

        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise TranscodeFailedError(f"could not start {self._ffmpeg}: {exc}") from exc

        try:
            _, stderr_bytes = await asyncio.wait_for(proc.communicate(), timeout=self._timeout_s)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise TranscodeFailedError(f"ffmpeg timed out after {self._timeout_s:.0f}s")
        except asyncio.CancelledError:
            proc.kill()
            await proc.wait()
            raise

        stderr = stderr_bytes.decode(errors="replace").strip()[-_STDERR_TAIL_CHARS:]
        if proc.returncode != 0:
            if any(marker in stderr for marker in _UNREADABLE_MARKERS):
                raise UnsupportedMediaError(f"ffmpeg cannot read {job.media_path.name}: {stderr}")
            raise TranscodeFailedError(
                f"ffmpeg exited with {proc.returncode}",
                returncode=proc.returncode,
                stderr=stderr,
            )
        if stderr:
            logger.debug("ffmpeg stderr: %s", stderr)

        logger.debug(
            "Merged %s (%s) in %.1fs",
            job.media_path.name, job.kind.value, time.monotonic() - started,
        )
        return output_path


class LimitedTranscoder:
    """Wraps a Transcoder so at most ``max_concurrent`` merges run at once.

    WHY: ffmpeg is CPU and IO heavy; a burst of requests must queue
    rather than start dozens of encoders.
    """

    def __init__(self, inner: Transcoder, max_concurrent: int = MAX_CONCURRENT_MERGES) -> None:
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self._inner = inner
        self._semaphore = asyncio.Semaphore(max_concurrent)
        self.max_concurrent = max_concurrent

    async def merge(self, job: MergeJob, output_dir: Path) -> Path:
        async with self._semaphore:
            return await self._inner.merge(job, output_dir)
