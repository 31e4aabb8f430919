"""Tests for audio source parsing and resolution.

WHY: The text of a message decides which audio a user gets. Parsing
must pick the first link in reading order, recognize Spotify tracks in
both URL and URI form, and never fail on arbitrary text. Resolution
must leave library files alone and keep downloads inside the request's
work directory.

HOW: parse_audio_source is tested as a pure function. AudioResolver is
tested with an httpx.MockTransport and a mocked SpotifyClient.
"""

from __future__ import annotations

import asyncio
import random
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from soundtracker.api.models import SpotifyTrack
from soundtracker.core.sources import (
    AudioResolver,
    AudioSourceRequest,
    ResolvedAudio,
    SourceKind,
    parse_audio_source,
)
from soundtracker.errors import (
    DownloadFailedError,
    EmptyLibraryError,
    InvalidSourceError,
    MetadataLookupFailedError,
)
from soundtracker.core.library import AudioLibrary


# ---------------------------------------------------------------------------
# parse_audio_source
# ---------------------------------------------------------------------------


class TestParseAudioSource:
    """Link extraction from message text."""

    def test_no_text(self):
        assert parse_audio_source("") is None
        assert parse_audio_source(None) is None

    def test_text_without_links(self):
        assert parse_audio_source("make it groovy please") is None

    def test_plain_http_is_ignored(self):
        assert parse_audio_source("http://example.com/song.mp3") is None

    def test_direct_url(self):
        result = parse_audio_source("use https://example.com/song.mp3 thanks")
        assert result == AudioSourceRequest(SourceKind.URL, "https://example.com/song.mp3")

    def test_spotify_track_url(self):
        result = parse_audio_source("https://open.spotify.com/track/4uLU6hMCjMI75M1A2tKUQC?si=abc")
        assert result == AudioSourceRequest(SourceKind.SPOTIFY, "4uLU6hMCjMI75M1A2tKUQC")

    def test_spotify_intl_track_url(self):
        result = parse_audio_source("https://open.spotify.com/intl-de/track/4uLU6hMCjMI75M1A2tKUQC")
        assert result == AudioSourceRequest(SourceKind.SPOTIFY, "4uLU6hMCjMI75M1A2tKUQC")

    def test_spotify_uri(self):
        result = parse_audio_source("play spotify:track:4uLU6hMCjMI75M1A2tKUQC")
        assert result == AudioSourceRequest(SourceKind.SPOTIFY, "4uLU6hMCjMI75M1A2tKUQC")

    def test_spotify_album_url_is_a_plain_url(self):
        result = parse_audio_source("https://open.spotify.com/album/1DFixLWuPkv3KT3TnV35m3")
        assert result.kind is SourceKind.URL

    def test_first_link_wins(self):
        text = "https://example.com/a.ogg or https://open.spotify.com/track/abc123"
        assert parse_audio_source(text) == AudioSourceRequest(SourceKind.URL, "https://example.com/a.ogg")

    def test_first_link_wins_spotify_first(self):
        text = "spotify:track:abc123 then https://example.com/a.ogg"
        assert parse_audio_source(text) == AudioSourceRequest(SourceKind.SPOTIFY, "abc123")

    def test_slack_wrapped_link(self):
        result = parse_audio_source("<https://example.com/song.mp3|song.mp3>")
        assert result == AudioSourceRequest(SourceKind.URL, "https://example.com/song.mp3")

    def test_trailing_punctuation_stripped(self):
        result = parse_audio_source("try this: https://example.com/song.mp3.")
        assert result.value == "https://example.com/song.mp3"

    def test_str_forms(self):
        assert str(AudioSourceRequest(SourceKind.URL, "https://x/y")) == "Url:https://x/y"
        assert str(AudioSourceRequest(SourceKind.SPOTIFY, "abc")) == "Spotify track:abc"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _http(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def _audio_handler(request: httpx.Request) -> httpx.Response:
    if request.url.path.endswith(".mp3"):
        return httpx.Response(200, headers={"content-type": "audio/mpeg"}, content=b"ID3" + b"\0" * 100)
    if request.url.path.endswith(".html"):
        return httpx.Response(200, headers={"content-type": "text/html"}, content=b"<html></html>")
    return httpx.Response(404)


# ---------------------------------------------------------------------------
# AudioResolver
# ---------------------------------------------------------------------------


class TestResolveLibrary:
    """No override: a random library track."""

    def test_returns_library_track_not_temporary(self, library, workdir):
        resolver = AudioResolver(library, _http(_audio_handler), rng=random.Random(1))
        audio = asyncio.run(resolver.resolve(None, workdir))
        assert audio.temporary is False
        assert audio.path in {t.path for t in library.tracks}
        assert audio.label == audio.path.stem

    def test_start_offset_within_track(self, library, workdir):
        resolver = AudioResolver(library, _http(_audio_handler), clip_s=10.0, rng=random.Random(1))
        for _ in range(20):
            audio = asyncio.run(resolver.resolve(None, workdir))
            assert 0.0 <= audio.start_s <= 50.0

    def test_short_or_unknown_tracks_start_at_zero(self, music_dir, workdir):
        from soundtracker.core.library import LibraryTrack

        tracks = [
            LibraryTrack(path=music_dir / "alpha.ogg", duration_s=None),
            LibraryTrack(path=music_dir / "bravo.ogg", duration_s=10.0),
        ]
        resolver = AudioResolver(AudioLibrary(tracks), _http(_audio_handler), clip_s=10.0)
        for _ in range(10):
            assert asyncio.run(resolver.resolve(None, workdir)).start_s == 0.0

    def test_discard_keeps_library_file(self, library, workdir):
        resolver = AudioResolver(library, _http(_audio_handler))
        audio = asyncio.run(resolver.resolve(None, workdir))
        audio.discard()
        assert audio.path.exists()

    def test_empty_library(self, workdir):
        resolver = AudioResolver(AudioLibrary([]), _http(_audio_handler))
        with pytest.raises(EmptyLibraryError):
            asyncio.run(resolver.resolve(None, workdir))


class TestResolveUrl:
    """Direct links are downloaded into the work directory."""

    def test_downloads_audio(self, library, workdir):
        resolver = AudioResolver(library, _http(_audio_handler))
        request = AudioSourceRequest(SourceKind.URL, "https://cdn.example.com/tune.mp3")
        audio = asyncio.run(resolver.resolve(request, workdir))
        assert audio.temporary is True
        assert audio.path.parent == workdir
        assert audio.path.suffix == ".mp3"
        assert audio.label == "tune.mp3"
        assert audio.path.read_bytes().startswith(b"ID3")

    def test_discard_removes_download(self, library, workdir):
        resolver = AudioResolver(library, _http(_audio_handler))
        request = AudioSourceRequest(SourceKind.URL, "https://cdn.example.com/tune.mp3")
        audio = asyncio.run(resolver.resolve(request, workdir))
        audio.discard()
        assert not audio.path.exists()
        audio.discard()

    def test_non_audio_content_is_invalid_source(self, library, workdir):
        resolver = AudioResolver(library, _http(_audio_handler))
        request = AudioSourceRequest(SourceKind.URL, "https://example.com/page.html")
        with pytest.raises(InvalidSourceError):
            asyncio.run(resolver.resolve(request, workdir))
        assert list(workdir.iterdir()) == []

    def test_http_error_is_download_failed(self, library, workdir):
        resolver = AudioResolver(library, _http(_audio_handler))
        request = AudioSourceRequest(SourceKind.URL, "https://example.com/missing.ogg")
        with pytest.raises(DownloadFailedError):
            asyncio.run(resolver.resolve(request, workdir))
        assert list(workdir.iterdir()) == []

    def test_hostless_url_is_invalid_source(self, library, workdir):
        resolver = AudioResolver(library, _http(_audio_handler))
        request = AudioSourceRequest(SourceKind.URL, "https:///nohost.mp3")
        with pytest.raises(InvalidSourceError):
            asyncio.run(resolver.resolve(request, workdir))


class TestResolveSpotify:
    """Spotify tracks resolve to their preview clip."""

    def _spotify(self, track):
        spotify = MagicMock()
        spotify.get_track = AsyncMock(return_value=track)
        return spotify

    def test_downloads_preview(self, library, workdir):
        track = SpotifyTrack(
            id="abc",
            title="Song",
            artists=["Band"],
            preview_url="https://p.scdn.co/mp3-preview/abc.mp3",
        )
        spotify = self._spotify(track)
        resolver = AudioResolver(library, _http(_audio_handler), spotify=spotify)
        audio = asyncio.run(resolver.resolve(AudioSourceRequest(SourceKind.SPOTIFY, "abc"), workdir))
        spotify.get_track.assert_awaited_once_with("abc")
        assert audio.temporary is True
        assert audio.label == "Band – Song"
        assert audio.path.parent == workdir

    def test_no_preview_is_lookup_failure(self, library, workdir):
        track = SpotifyTrack(id="abc", title="Song", artists=["Band"], preview_url=None)
        resolver = AudioResolver(library, _http(_audio_handler), spotify=self._spotify(track))
        with pytest.raises(MetadataLookupFailedError):
            asyncio.run(resolver.resolve(AudioSourceRequest(SourceKind.SPOTIFY, "abc"), workdir))

    def test_spotify_not_configured(self, library, workdir):
        resolver = AudioResolver(library, _http(_audio_handler), spotify=None)
        with pytest.raises(InvalidSourceError):
            asyncio.run(resolver.resolve(AudioSourceRequest(SourceKind.SPOTIFY, "abc"), workdir))


class TestResolvedAudio:
    def test_discard_missing_temporary_file_is_noop(self, tmp_path):
        ResolvedAudio(path=tmp_path / "gone.mp3", temporary=True).discard()
