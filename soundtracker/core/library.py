"""In-memory index of the local music library.

WHY: When a message carries no audio override, the bot picks a random
track from a directory of pre-validated audio files. Scanning once at
startup keeps requests cheap, and an immutable snapshot lets any number
of concurrent requests pick without coordination.

HOW: ``AudioLibrary.build`` globs the directory (non-recursive), sorts
the matches, optionally probes each file's duration, and stores the
result as a tuple of frozen LibraryTrack records. ``pick_random`` draws
a uniform index over that tuple.

RULES:
- The snapshot never changes after build (rebuild = restart)
- Encoding is not validated; non-conformant files are a setup error
- With a probe and a minimum duration, shorter tracks are skipped
- pick_random raises EmptyLibraryError when there is nothing to pick
"""

from __future__ import annotations

import logging
import random
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from pathlib import Path

from soundtracker.errors import EmptyLibraryError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LibraryTrack:
    """A locally stored audio file known at startup.

    RULES:
    - path: absolute or working-dir-relative path to the file
    - duration_s: length in seconds, None when not probed or unknown
    """

    path: Path
    duration_s: float | None = None


class AudioLibrary:
    """Read-only, ordered snapshot of library tracks with random selection."""

    def __init__(
        self,
        tracks: Iterable[LibraryTrack],
        rng: random.Random | None = None,
    ) -> None:
        self._tracks: tuple[LibraryTrack, ...] = tuple(tracks)
        self._rng = rng or random.Random()

    @classmethod
    def build(
        cls,
        directory: Path,
        pattern: str = "*.ogg",
        probe: Callable[[Path], float | None] | None = None,
        min_duration_s: float | None = None,
        rng: random.Random | None = None,
    ) -> AudioLibrary:
        """Scan ``directory`` for files matching ``pattern``.

        WHY: The library is the default audio source. Durations let the
        resolver start long tracks at a random point.

        HOW: Path.glob on the directory only, regular files only, sorted
        by name so the index is deterministic for a given directory.

        RULES:
        - A missing directory yields an empty library and a warning
        - Tracks with unknown duration are kept
        - Tracks shorter than min_duration_s are skipped (info log)
        """
        directory = Path(directory)
        if not directory.is_dir():
            logger.warning("Music directory %s does not exist", directory)
            return cls((), rng=rng)

        tracks = []
        for path in sorted(p for p in directory.glob(pattern) if p.is_file()):
            duration = probe(path) if probe else None
            if (
                duration is not None
                and min_duration_s is not None
                and duration < min_duration_s
            ):
                logger.info(
                    "Ignoring '%s'. Duration: %.1fs, minimum: %.1fs",
                    path, duration, min_duration_s,
                )
                continue
            tracks.append(LibraryTrack(path=path, duration_s=duration))

        return cls(tracks, rng=rng)

    @property
    def tracks(self) -> tuple[LibraryTrack, ...]:
        return self._tracks

    def __len__(self) -> int:
        return len(self._tracks)

    def pick_random(self) -> LibraryTrack:
        """Return a uniformly random track from the snapshot."""
        if not self._tracks:
            raise EmptyLibraryError("the music library is empty")
        return self._tracks[self._rng.randrange(len(self._tracks))]
