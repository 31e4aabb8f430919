"""Media classification and duration probing with ffprobe.

WHY: The merger treats stills, GIFs and videos differently, and both the
library scan and the video merge need durations. Keeping ffprobe usage
in one module means one place knows its arguments and output format.

HOW: ``media_kind_for`` maps a MIME type onto MediaKind. Probing runs
``ffprobe -show_entries format=duration`` and parses the single number it
prints, either synchronously (startup scan) or via asyncio subprocesses
(per-request merge).

RULES:
- Unknown content types map to None; the attachment is not processed
- ``probe_duration`` returns None on any failure (startup must not crash)
- ``aprobe_duration`` raises UnsupportedMediaError on any failure
"""

from __future__ import annotations

import asyncio
import enum
import logging
import subprocess
from pathlib import Path

from soundtracker.config import ANIMATION_CONTENT_TYPES, FFPROBE_BIN, IMAGE_CONTENT_TYPES
from soundtracker.errors import UnsupportedMediaError

logger = logging.getLogger(__name__)


class MediaKind(str, enum.Enum):
    """How an attachment is turned into a video stream.

    RULES:
    - image: a single still, rendered as a fixed-length video
    - animation: a GIF, looped for the fixed length
    - video: the video stream is copied unchanged
    """

    IMAGE = "image"
    ANIMATION = "animation"
    VIDEO = "video"


def media_kind_for(content_type: str | None) -> MediaKind | None:
    """Classify an attachment by its MIME type, or None if unsupported."""
    if not content_type:
        return None
    mime = content_type.split(";")[0].strip().lower()
    if mime in IMAGE_CONTENT_TYPES:
        return MediaKind.IMAGE
    if mime in ANIMATION_CONTENT_TYPES:
        return MediaKind.ANIMATION
    if mime.startswith("video/"):
        return MediaKind.VIDEO
    return None


def _probe_args(ffprobe: str, path: Path) -> list[str]:
    return [
        ffprobe,
        "-v", "error",
        "-show_entries", "format=duration",
        "-of", "default=noprint_wrappers=1:nokey=1",
        str(path),
    ]


def parse_duration(output: str) -> float | None:
    """Parse ffprobe's duration output; None for "N/A", blanks or garbage."""
    text = output.strip().splitlines()[0].strip() if output.strip() else ""
    try:
        value = float(text)
    except ValueError:
        return None
    if value <= 0:
        return None
    return value


def probe_duration(path: Path, ffprobe: str = FFPROBE_BIN) -> float | None:
    """Return the duration of a media file in seconds, or None if unknown.

    Used during the startup library scan, where one unreadable file must
    not stop the bot from starting.
    """
    try:
        proc = subprocess.run(
            _probe_args(ffprobe, path),
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            timeout=30,
        )
    except (OSError, subprocess.TimeoutExpired) as exc:
        logger.warning("ffprobe failed for %s: %s", path, exc)
        return None
    if proc.returncode != 0:
        logger.warning("ffprobe exited %d for %s: %s", proc.returncode, path, proc.stderr.strip())
        return None
    return parse_duration(proc.stdout)


async def aprobe_duration(path: Path, ffprobe: str = FFPROBE_BIN, timeout_s: float = 30.0) -> float:
    """Return the duration of a media file, raising UnsupportedMediaError.

    WHY: Video merges need the exact input duration to apply the
    loop-or-truncate audio policy. If ffprobe cannot read the file,
    ffmpeg cannot either, so the media is reported as unsupported.
    """
    try:
        proc = await asyncio.create_subprocess_exec(
            *_probe_args(ffprobe, path),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as exc:
        raise UnsupportedMediaError(f"ffprobe could not start: {exc}") from exc

    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout_s)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        raise UnsupportedMediaError(f"ffprobe timed out on {path.name}")

    if proc.returncode != 0:
        raise UnsupportedMediaError(
            f"ffprobe exited {proc.returncode}: {stderr.decode(errors='replace').strip()}"
        )

    duration = parse_duration(stdout.decode(errors="replace"))
    if duration is None:
        raise UnsupportedMediaError(f"no duration for {path.name}")
    return duration
