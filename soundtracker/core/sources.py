"""Audio source parsing and resolution.

WHY: A message may name the audio to use: a direct link to an audio
file or a Spotify track. Without one, a random library track is used.
The pipeline needs all three cases turned into "a local file to feed
ffmpeg", with temporary downloads clearly marked for deletion.

HOW: ``parse_audio_source`` scans the message text for candidate links
and keeps the first one in reading order. ``AudioResolver.resolve``
turns the request (or its absence) into a ResolvedAudio:
  library → random LibraryTrack, random start within long tracks
  url     → streamed download into the request's work directory
  spotify → track metadata via SpotifyClient, then its 30 s preview
            downloaded like a URL (approximate, not the full recording)

RULES:
- First recognized candidate in the text wins; later ones are ignored
- Only https:// links are recognized
- Downloads are temporary and live in the caller-provided work directory
- Library tracks are never temporary and never deleted
- A Spotify track without a preview is a MetadataLookupFailedError
"""

from __future__ import annotations

import enum
import logging
import random
import re
import uuid
from dataclasses import dataclass
from pathlib import Path

import httpx

from soundtracker.api.spotify import SpotifyClient
from soundtracker.config import AUDIO_CONTENT_TYPES, CLIP_SECONDS, MAX_DOWNLOAD_BYTES, suffix_for
from soundtracker.core.downloads import download_to_file
from soundtracker.core.library import AudioLibrary
from soundtracker.errors import InvalidSourceError, MetadataLookupFailedError

logger = logging.getLogger(__name__)

# Slack wraps links as <https://example.com|label>, so stop at < > | too.
_URL_RE = re.compile(r"https://[^\s<>|]+")
_SPOTIFY_URI_RE = re.compile(r"spotify:track:([A-Za-z0-9]+)")
_SPOTIFY_TRACK_URL_RE = re.compile(
    r"^https://open\.spotify\.com/(?:intl-[A-Za-z-]+/)?track/([A-Za-z0-9]+)(?:[/?#].*)?$"
)


class SourceKind(str, enum.Enum):
    URL = "url"
    SPOTIFY = "spotify"


@dataclass(frozen=True)
class AudioSourceRequest:
    """An audio override found in a message: a URL or a Spotify track id."""

    kind: SourceKind
    value: str

    def __str__(self) -> str:
        if self.kind is SourceKind.SPOTIFY:
            return f"Spotify track:{self.value}"
        return f"Url:{self.value}"


def parse_audio_source(text: str | None) -> AudioSourceRequest | None:
    """Find the audio override in a message, or None for "use the library".

    Candidates are https URLs and ``spotify:track:`` URIs. The earliest
    one in the text is used. A Spotify track page URL becomes a Spotify
    request; every other URL becomes a URL request, even if it points
    at something that is not audio (that is reported when resolving).
    """
    if not text:
        return None

    candidates = []
    for match in _URL_RE.finditer(text):
        candidates.append((match.start(), match.group(0).rstrip(".,;:!?)")))
    for match in _SPOTIFY_URI_RE.finditer(text):
        candidates.append((match.start(), match.group(0)))
    if not candidates:
        return None

    _, first = min(candidates, key=lambda c: c[0])

    uri = _SPOTIFY_URI_RE.fullmatch(first)
    if uri:
        return AudioSourceRequest(SourceKind.SPOTIFY, uri.group(1))
    track = _SPOTIFY_TRACK_URL_RE.match(first)
    if track:
        return AudioSourceRequest(SourceKind.SPOTIFY, track.group(1))
    return AudioSourceRequest(SourceKind.URL, first)


@dataclass
class ResolvedAudio:
    """A playable local audio file for one request.

    RULES:
    - temporary: True for downloads; discard() deletes only those
    - start_s: offset into the file where playback starts
    - label: human-readable description for logs and replies
    """

    path: Path
    temporary: bool
    start_s: float = 0.0
    label: str = ""

    def discard(self) -> None:
        if self.temporary:
            self.path.unlink(missing_ok=True)


class AudioResolver:
    """Turns an optional AudioSourceRequest into a ResolvedAudio."""

    def __init__(
        self,
        library: AudioLibrary,
        http: httpx.AsyncClient,
        spotify: SpotifyClient | None = None,
        clip_s: float = CLIP_SECONDS,
        max_bytes: int = MAX_DOWNLOAD_BYTES,
        rng: random.Random | None = None,
    ) -> None:
        self._library = library
        self._http = http
        self._spotify = spotify
        self._clip_s = clip_s
        self._max_bytes = max_bytes
        self._rng = rng or random.Random()

    async def resolve(self, request: AudioSourceRequest | None, workdir: Path) -> ResolvedAudio:
        if request is None:
            return self._from_library()
        if request.kind is SourceKind.URL:
            return await self._from_url(request.value, workdir)
        return await self._from_spotify(request.value, workdir)

    def _from_library(self) -> ResolvedAudio:
        track = self._library.pick_random()

        # Long tracks start somewhere random so repeats don't always open the same way.
        start = 0.0
        if track.duration_s is not None and track.duration_s > self._clip_s:
            start = self._rng.uniform(0.0, track.duration_s - self._clip_s)

        logger.debug("Using %s starting at %.2f seconds", track.path, start)
        return ResolvedAudio(
            path=track.path,
            temporary=False,
            start_s=start,
            label=track.path.stem,
        )

    async def _download(self, url: str, workdir: Path, label: str | None = None) -> ResolvedAudio:
        try:
            parsed = httpx.URL(url)
        except httpx.InvalidURL as exc:
            raise InvalidSourceError(f"malformed URL {url!r}") from exc
        if parsed.scheme != "https" or not parsed.host:
            raise InvalidSourceError(f"malformed URL {url!r}")
        if label is None:
            label = parsed.path.rsplit("/", 1)[-1] or url

        dest = workdir / f"audio-{uuid.uuid4().hex[:8]}.part"
        content_type = await download_to_file(
            self._http,
            url,
            dest,
            accept=AUDIO_CONTENT_TYPES,
            max_bytes=self._max_bytes,
        )
        path = dest.rename(dest.with_suffix(suffix_for(content_type, ".audio")))
        return ResolvedAudio(path=path, temporary=True, label=label)

    async def _from_url(self, url: str, workdir: Path) -> ResolvedAudio:
        return await self._download(url, workdir)

    async def _from_spotify(self, track_id: str, workdir: Path) -> ResolvedAudio:
        if self._spotify is None:
            raise InvalidSourceError("Spotify links are not enabled on this bot")

        track = await self._spotify.get_track(track_id)
        if not track.preview_url:
            raise MetadataLookupFailedError(f"no preview available for {track.label}")

        logger.info("Using Spotify preview for %s", track.label)
        return await self._download(track.preview_url, workdir, label=track.label)
