"""Exception taxonomy shared by the resolver, merger, pipeline and gateway.

WHY: A request can fail at several stages and the user should learn
which kind of failure happened without seeing internal error text. One
base class with a fixed, user-facing label per subclass gives the
pipeline a single thing to catch and the reply layer a safe thing to say.

HOW: Every error derives from SoundtrackerError. The class attribute
``label`` is the failure class shown to users; the exception message is
for logs only.

RULES:
- Never put user-facing text in exception messages; use ``label``
- Errors raised inside one request never propagate to the dispatcher
"""

from __future__ import annotations


class SoundtrackerError(Exception):
    """Base class for all errors raised while handling a request."""

    label = "Something went wrong"


class EmptyLibraryError(SoundtrackerError):
    """Raised when a random track is requested from an empty library."""

    label = "No music available"


class InvalidSourceError(SoundtrackerError):
    """Raised for a malformed URL, non-audio content, or an unusable identifier."""

    label = "Unsupported audio source"


class DownloadFailedError(SoundtrackerError):
    """Raised on a network error, a non-2xx response, or an oversized download."""

    label = "Download failed"


class MetadataLookupFailedError(SoundtrackerError):
    """Raised when the streaming-service API fails or has no usable track."""

    label = "Track lookup failed"


class SpotifyAPIError(MetadataLookupFailedError):
    """Raised when the Spotify API returns an error response.

    WHY: Callers (and logs) need the HTTP status to tell an expired token
    from a missing track or an outage.

    RULES:
    - Always include status_code and message
    """

    def __init__(self, status_code: int, message: str) -> None:
        self.status_code = status_code
        self.message = message
        super().__init__(f"Spotify API error {status_code}: {message}")


class TranscodeFailedError(SoundtrackerError):
    """Raised when ffmpeg exits nonzero, crashes, times out, or is missing."""

    label = "Could not render the video"

    def __init__(self, message: str, returncode: int | None = None, stderr: str = "") -> None:
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(message)


class UnsupportedMediaError(SoundtrackerError):
    """Raised when the attachment is in a format the transcoder cannot read."""

    label = "Unsupported media file"


class ReplyFailedError(SoundtrackerError):
    """Raised when posting a reply or notice to the chat fails."""

    label = "Could not post the result"


class GatewayError(SoundtrackerError):
    """Raised for transport-level gateway failures outside a single reply."""

    label = "Chat connection problem"
