"""Shared test fixtures for the soundtracker test suite.

WHY: Pipeline, resolver and Slack tests all need the same building
blocks: a request for an attachment, a small music library on disk,
and fakes for the gateway and the transcoder. Centralizing them keeps
each test module about the behavior it checks.

HOW: Fakes record every call and can be told to fail at a given stage.
The fake transcoder writes a real output file so the pipeline's size
accounting and cleanup are exercised.

RULES:
- No test talks to Slack, Spotify or a real ffmpeg
- Every filesystem fixture lives under pytest's tmp_path
"""

from __future__ import annotations

import asyncio
import random
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

from soundtracker.core.library import AudioLibrary, LibraryTrack
from soundtracker.core.merge import MergeJob
from soundtracker.core.pipeline import Attachment, MediaRequest


def make_request(
    text: str = "",
    content_type: str = "image/png",
    name: str = "cat.png",
    channel: str = "C123",
    ts: str = "1700000000.000100",
) -> MediaRequest:
    return MediaRequest(
        channel=channel,
        thread_ts=ts,
        message_ts=ts,
        author="U777",
        text=text,
        attachment=Attachment(
            name=name,
            content_type=content_type,
            url="https://files.slack.com/files-pri/T1-F1/" + name,
        ),
    )


class FakeGateway:
    """Gateway double that writes fake attachments and records replies."""

    def __init__(
        self,
        download_error: Optional[BaseException] = None,
        result_error: Optional[BaseException] = None,
        notice_error: Optional[BaseException] = None,
        busy_error: Optional[BaseException] = None,
        download_delay_s: float = 0.0,
        busy_delay_s: float = 0.0,
    ) -> None:
        self.download_error = download_error
        self.result_error = result_error
        self.notice_error = notice_error
        self.busy_error = busy_error
        self.download_delay_s = download_delay_s
        self.busy_delay_s = busy_delay_s
        self.downloads: List[Path] = []
        self.results: List[Dict[str, Any]] = []
        self.notices: List[Dict[str, Any]] = []
        self.busy: List[str] = []

    async def download_attachment(self, attachment: Attachment, dest: Path) -> None:
        if self.download_delay_s:
            await asyncio.sleep(self.download_delay_s)
        if self.download_error is not None:
            raise self.download_error
        dest.write_bytes(b"media:" + attachment.name.encode())
        self.downloads.append(dest)

    async def post_result(self, request: MediaRequest, output_path: Path, audio_label: str) -> None:
        if self.result_error is not None:
            raise self.result_error
        self.results.append({
            "request": request,
            "path": output_path,
            "exists": output_path.exists(),
            "label": audio_label,
            "at": time.monotonic(),
        })

    async def post_notice(self, request: MediaRequest, failure: str) -> None:
        self.notices.append({"request": request, "failure": failure, "at": time.monotonic()})
        if self.notice_error is not None:
            raise self.notice_error

    async def mark_busy(self, request: MediaRequest) -> None:
        self.busy.append("add")
        if self.busy_delay_s:
            await asyncio.sleep(self.busy_delay_s)
        if self.busy_error is not None:
            raise self.busy_error

    async def clear_busy(self, request: MediaRequest) -> None:
        self.busy.append("remove")
        if self.busy_error is not None:
            raise self.busy_error


class FakeTranscoder:
    """Transcoder double that writes a small output file next to the inputs."""

    def __init__(self, error: Optional[BaseException] = None, delay_s: float = 0.0) -> None:
        self.error = error
        self.delay_s = delay_s
        self.jobs: List[MergeJob] = []
        self.running = 0
        self.max_running = 0

    async def merge(self, job: MergeJob, output_dir: Path) -> Path:
        self.jobs.append(job)
        self.running += 1
        self.max_running = max(self.max_running, self.running)
        try:
            if self.delay_s:
                await asyncio.sleep(self.delay_s)
            if self.error is not None:
                raise self.error
            output = output_dir / "soundtrack-{}.mp4".format(job.media_path.stem)
            output.write_bytes(b"x" * 1234)
            return output
        finally:
            self.running -= 1


@pytest.fixture
def music_dir(tmp_path: Path) -> Path:
    """A music directory with three .ogg files and one ignored .txt."""
    directory = tmp_path / "music"
    directory.mkdir()
    for name in ("alpha.ogg", "bravo.ogg", "charlie.ogg"):
        (directory / name).write_bytes(b"OggS")
    (directory / "notes.txt").write_text("not music")
    return directory


@pytest.fixture
def library(music_dir: Path) -> AudioLibrary:
    """A library of three 60-second tracks with a seeded RNG."""
    tracks = [
        LibraryTrack(path=path, duration_s=60.0)
        for path in sorted(music_dir.glob("*.ogg"))
    ]
    return AudioLibrary(tracks, rng=random.Random(7))


@pytest.fixture
def workdir(tmp_path: Path) -> Path:
    path = tmp_path / "work"
    path.mkdir()
    return path
