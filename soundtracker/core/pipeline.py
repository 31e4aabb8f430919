"""Per-request pipeline, request state machine, and task dispatcher.

WHY: Each accepted message attachment goes through download → resolve
→ merge → reply. Requests are slow (seconds to minutes of ffmpeg) and
independent, so each runs as its own asyncio task. Whatever happens,
the user should hear back, and nothing the request wrote should stay
on disk.

HOW: Three components work together:
  RequestState     — enum of the states a request moves through
  RequestProcessor — runs one request in a private work directory,
                     records each transition, maps failures to a notice
  TaskDispatcher   — starts one task per request, keeps references,
                     and drains or cancels tasks on shutdown
The chat side is reached only through the Gateway protocol, so the
pipeline is tested with a fake gateway and a fake transcoder.

RULES:
- States: received → accepted → downloading → resolving → merging → replying → done
- failed is reachable from downloading, resolving, merging and replying
- The work directory is removed on every exit path, including cancellation
- A failed notice is logged and swallowed; it never fails the task
- Errors in one request never reach the dispatcher or other requests
"""

from __future__ import annotations

import asyncio
import enum
import logging
import shutil
import tempfile
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Dict, List, Optional, Protocol, Set

from soundtracker.config import TEMP_ROOT, suffix_for
from soundtracker.core.media import MediaKind, media_kind_for
from soundtracker.core.merge import MergeJob, Transcoder
from soundtracker.core.sources import AudioResolver, ResolvedAudio, parse_audio_source
from soundtracker.errors import ReplyFailedError, SoundtrackerError, UnsupportedMediaError

logger = logging.getLogger(__name__)

WORKDIR_PREFIX = "request_"


class RequestState(str, enum.Enum):
    RECEIVED = "received"
    ACCEPTED = "accepted"
    DOWNLOADING = "downloading"
    RESOLVING = "resolving"
    MERGING = "merging"
    REPLYING = "replying"
    DONE = "done"
    FAILED = "failed"


_TERMINAL_STATES = frozenset({RequestState.DONE, RequestState.FAILED})


@dataclass(frozen=True)
class Attachment:
    """A file on an incoming message, as described by the gateway."""

    name: str
    content_type: str
    url: str

    @property
    def kind(self) -> Optional[MediaKind]:
        return media_kind_for(self.content_type)


@dataclass(frozen=True)
class MediaRequest:
    """One attachment of one message, plus where to reply.

    RULES:
    - channel/thread_ts identify the conversation to reply into
    - text is the message text with bot mentions removed
    - attachment.kind is never None (the filter drops unsupported files)
    """

    channel: str
    thread_ts: str
    message_ts: str
    author: str
    text: str
    attachment: Attachment


@dataclass
class RequestRecord:
    """State trace of one request, returned by RequestProcessor.process."""

    request: MediaRequest
    state: RequestState = RequestState.RECEIVED
    history: List[RequestState] = field(default_factory=lambda: [RequestState.RECEIVED])
    failure: Optional[BaseException] = None
    audio_label: str = ""
    output_bytes: int = 0

    def advance(self, state: RequestState) -> None:
        if self.state in _TERMINAL_STATES:
            raise RuntimeError(f"request already finished as {self.state.value}")
        self.state = state
        self.history.append(state)
        logger.debug(
            "Request %s/%s: %s", self.request.channel, self.request.message_ts, state.value
        )


class Gateway(Protocol):
    """What the pipeline needs from the chat service."""

    async def download_attachment(self, attachment: Attachment, dest: Path) -> None:
        ...

    async def post_result(self, request: MediaRequest, output_path: Path, audio_label: str) -> None:
        ...

    async def post_notice(self, request: MediaRequest, failure: str) -> None:
        ...

    async def mark_busy(self, request: MediaRequest) -> None:
        ...

    async def clear_busy(self, request: MediaRequest) -> None:
        ...


def failure_label(exc: BaseException) -> str:
    """The failure class shown to users; never the exception message."""
    if isinstance(exc, SoundtrackerError):
        return exc.label
    return SoundtrackerError.label


class RequestProcessor:
    """Runs the download → resolve → merge → reply pipeline for one request."""

    def __init__(
        self,
        gateway: Gateway,
        resolver: AudioResolver,
        transcoder: Transcoder,
        temp_root: Path = TEMP_ROOT,
    ) -> None:
        self._gateway = gateway
        self._resolver = resolver
        self._transcoder = transcoder
        self._temp_root = Path(temp_root)

    def _make_workdir(self) -> Path:
        self._temp_root.mkdir(parents=True, exist_ok=True)
        return Path(tempfile.mkdtemp(prefix=WORKDIR_PREFIX, dir=self._temp_root))

    async def process(self, request: MediaRequest) -> RequestRecord:
        """Handle one request end to end and return its final record.

        WHY: This is the single place that guarantees a reply or a notice
        and the removal of every temporary file.

        HOW: Creates a work directory, then runs the stages in order,
        advancing the record before each. Failures are caught here and
        turned into a notice; the work directory is removed in finally.

        RULES:
        - Never raises for pipeline errors (SoundtrackerError or Exception)
        - Propagates asyncio.CancelledError after cleanup
        """
        record = RequestRecord(request=request)
        record.advance(RequestState.ACCEPTED)
        started = time.monotonic()
        workdir = self._make_workdir()
        audio = None  # type: Optional[ResolvedAudio]

        try:
            await self._best_effort(self._gateway.mark_busy(request), "mark busy")

            record.advance(RequestState.DOWNLOADING)
            attachment = request.attachment
            kind = attachment.kind
            if kind is None:
                raise UnsupportedMediaError(
                    "{} has unsupported type {}".format(attachment.name, attachment.content_type)
                )
            media_path = workdir / "input{}".format(suffix_for(attachment.content_type))
            await self._gateway.download_attachment(attachment, media_path)

            record.advance(RequestState.RESOLVING)
            source = parse_audio_source(request.text)
            logger.debug("Using %s AudioSource", source or "library")
            audio = await self._resolver.resolve(source, workdir)
            record.audio_label = audio.label

            record.advance(RequestState.MERGING)
            job = MergeJob(
                media_path=media_path,
                audio_path=audio.path,
                kind=kind,
                audio_start_s=audio.start_s,
            )
            output_path = await self._transcoder.merge(job, workdir)
            record.output_bytes = output_path.stat().st_size

            record.advance(RequestState.REPLYING)
            await self._gateway.post_result(request, output_path, audio.label)

            record.advance(RequestState.DONE)
            logger.info(
                "Processed %s\n\tSize: %d bytes\n\tTime: %.1fs\n\tTrack: %s",
                attachment.name,
                record.output_bytes,
                time.monotonic() - started,
                audio.label,
            )
        except ReplyFailedError as exc:
            logger.error("Failed to post result for %s: %s", request.attachment.name, exc)
            await self._fail(record, exc)
        except SoundtrackerError as exc:
            logger.warning(
                "Request for %s failed while %s: %s",
                request.attachment.name, record.state.value, exc,
            )
            await self._fail(record, exc)
        except Exception as exc:
            logger.exception("Unexpected error processing %s", request.attachment.name)
            await self._fail(record, exc)
        finally:
            if audio is not None:
                audio.discard()
            self._remove_workdir(workdir)
            await self._best_effort(self._gateway.clear_busy(request), "clear busy")

        return record

    async def _fail(self, record: RequestRecord, exc: BaseException) -> None:
        record.failure = exc
        record.advance(RequestState.FAILED)
        try:
            await self._gateway.post_notice(record.request, failure_label(exc))
        except ReplyFailedError as notice_exc:
            logger.warning("Failed to send error message: %s", notice_exc)
        except Exception as notice_exc:
            logger.warning("Failed to send error message: %r", notice_exc)

    @staticmethod
    async def _best_effort(call: Awaitable[Any], what: str) -> None:
        # The busy marker never decides the outcome of a request.
        try:
            await call
        except Exception as exc:
            logger.debug("Could not %s: %r", what, exc)

    @staticmethod
    def _remove_workdir(workdir: Path) -> None:
        if workdir.exists():
            try:
                shutil.rmtree(workdir)
            except OSError:
                logger.warning("Failed to clean up temp dir: %s", workdir)


def reap_stale_workdirs(temp_root: Path = TEMP_ROOT) -> int:
    """Remove request directories left behind by a crashed process.

    WHY: Cleanup runs in ``finally`` blocks, which a killed process never
    reaches. Reaping at startup bounds the leak to one crash.

    RULES:
    - Only directories named request_* directly under temp_root are removed
    - Returns the number of directories removed
    """
    temp_root = Path(temp_root)
    if not temp_root.is_dir():
        return 0
    removed = 0
    for path in temp_root.glob(WORKDIR_PREFIX + "*"):
        if path.is_dir():
            shutil.rmtree(path, ignore_errors=True)
            removed += 1
    if removed:
        logger.info("Removed %d stale request directories from %s", removed, temp_root)
    return removed


class TaskDispatcher:
    """Runs each request as an independent asyncio task.

    WHY: One slow ffmpeg run must not hold up other messages, and the
    event loop only keeps weak references to tasks, so someone has to
    hold them until they finish.

    RULES:
    - submit() never blocks; it returns the created task
    - Unhandled task exceptions are logged, never re-raised
    - shutdown() waits up to grace_s, then cancels what is left
    """

    def __init__(self) -> None:
        self._tasks: Set[asyncio.Task] = set()

    @property
    def active(self) -> int:
        return len(self._tasks)

    def submit(self, coro: Awaitable[Any], name: Optional[str] = None) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        if name:
            task.set_name(name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Request task %s crashed", task.get_name(), exc_info=exc)

    async def shutdown(self, grace_s: float) -> Dict[str, int]:
        """Let in-flight requests finish for grace_s seconds, then cancel them."""
        pending = set(self._tasks)
        if not pending:
            return {"finished": 0, "cancelled": 0}

        logger.info("Waiting up to %.0fs for %d in-flight requests", grace_s, len(pending))
        done, still_running = await asyncio.wait(pending, timeout=grace_s)
        for task in still_running:
            task.cancel()
        if still_running:
            await asyncio.gather(*still_running, return_exceptions=True)
            logger.warning("Cancelled %d requests at shutdown", len(still_running))
        return {"finished": len(done), "cancelled": len(still_running)}
