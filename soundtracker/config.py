"""Configuration constants, accepted media types, and .env loading.

WHY: Centralizes every tunable value (paths, limits, clip geometry,
endpoints) so operators can change behavior from the environment without
touching code, and tests can pass explicit values instead.

HOW: python-dotenv loads the .env file on import. Constants are module
level and read from os.environ with defaults. Credentials are loaded by
functions that raise a clear error when something required is missing.

RULES:
- SLACK_BOT_TOKEN and SLACK_APP_TOKEN are required to run the bot
- SPOTIFY_ID is optional; when set, SPOTIFY_SECRET becomes required
- Secrets are never given defaults or hardcoded
- All numeric defaults can be overridden via environment variables
"""

from __future__ import annotations

import os
import tempfile
from pathlib import Path

from dotenv import load_dotenv

# Load .env from the project root (where the bot is started from)
load_dotenv()

# ---------------------------------------------------------------------------
# Music library
# ---------------------------------------------------------------------------

MUSIC_DIR = Path(os.getenv("MUSIC_DIR", "resources/music"))
MUSIC_PATTERN = os.getenv("MUSIC_PATTERN", "*.ogg")

# ---------------------------------------------------------------------------
# Output clip geometry
# ---------------------------------------------------------------------------

CLIP_SECONDS = float(os.getenv("CLIP_SECONDS", "10"))
"""Length of videos made from still images, and minimum library track length."""

OUTPUT_WIDTH = int(os.getenv("OUTPUT_WIDTH", "1280"))
OUTPUT_HEIGHT = int(os.getenv("OUTPUT_HEIGHT", "720"))
OUTPUT_FRAMERATE = int(os.getenv("OUTPUT_FRAMERATE", "24"))

# ---------------------------------------------------------------------------
# Accepted content types
# ---------------------------------------------------------------------------

IMAGE_CONTENT_TYPES: set[str] = {
    "image/png", "image/jpeg", "image/webp", "image/bmp",
}
ANIMATION_CONTENT_TYPES: set[str] = {"image/gif"}

AUDIO_CONTENT_TYPES: set[str] = {
    "audio/mpeg", "audio/ogg", "audio/vorbis", "audio/opus",
    "audio/wav", "audio/x-wav", "audio/aac", "audio/mp4",
    "audio/flac", "audio/webm",
}
"""Content types accepted when downloading audio from a URL."""

CONTENT_TYPE_SUFFIXES: dict[str, str] = {
    "image/png": ".png",
    "image/jpeg": ".jpg",
    "image/webp": ".webp",
    "image/bmp": ".bmp",
    "image/gif": ".gif",
    "video/mp4": ".mp4",
    "video/webm": ".webm",
    "video/quicktime": ".mov",
    "video/x-matroska": ".mkv",
    "audio/mpeg": ".mp3",
    "audio/ogg": ".ogg",
    "audio/vorbis": ".ogg",
    "audio/opus": ".opus",
    "audio/wav": ".wav",
    "audio/x-wav": ".wav",
    "audio/aac": ".aac",
    "audio/mp4": ".m4a",
    "audio/flac": ".flac",
    "audio/webm": ".webm",
}


def suffix_for(content_type: str, default: str = ".bin") -> str:
    """Return the file suffix used when saving a download of this type."""
    return CONTENT_TYPE_SUFFIXES.get(content_type.split(";")[0].strip().lower(), default)


# ---------------------------------------------------------------------------
# Limits and external tools
# ---------------------------------------------------------------------------

MAX_CONCURRENT_MERGES = int(os.getenv("MAX_CONCURRENT_MERGES", "2"))
MAX_ATTACHMENTS_PER_MESSAGE = int(os.getenv("MAX_ATTACHMENTS_PER_MESSAGE", "4"))
MAX_DOWNLOAD_BYTES = int(os.getenv("MAX_DOWNLOAD_BYTES", str(50 * 1024 * 1024)))

FFMPEG_BIN = os.getenv("FFMPEG_BIN", "ffmpeg")
FFPROBE_BIN = os.getenv("FFPROBE_BIN", "ffprobe")
TRANSCODE_TIMEOUT_S = float(os.getenv("TRANSCODE_TIMEOUT_S", "300"))

SHUTDOWN_GRACE_S = float(os.getenv("SHUTDOWN_GRACE_S", "30"))
TEMP_ROOT = Path(os.getenv("TEMP_ROOT", os.path.join(tempfile.gettempdir(), "soundtracker")))

# ---------------------------------------------------------------------------
# Slack
# ---------------------------------------------------------------------------

TRIGGER_REACTION = os.getenv("TRIGGER_REACTION", "musical_note")
BUSY_REACTION = os.getenv("BUSY_REACTION", "hourglass_flowing_sand")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# ---------------------------------------------------------------------------
# Spotify
# ---------------------------------------------------------------------------

SPOTIFY_API_URL = os.getenv("SPOTIFY_API_URL", "https://api.spotify.com/v1")
SPOTIFY_TOKEN_URL = os.getenv("SPOTIFY_TOKEN_URL", "https://accounts.spotify.com/api/token")
SPOTIFY_MARKET = os.getenv("SPOTIFY_MARKET", "AU")


def load_slack_tokens() -> tuple[str, str]:
    """Load the Slack bot and app-level tokens from the environment.

    WHY: Socket Mode needs both: the bot token (xoxb-) for Web API calls
    and the app token (xapp-) for the WebSocket connection.

    RULES:
    - Raises ValueError naming the first missing variable
    - Whitespace-only values count as missing
    """
    bot_token = os.getenv("SLACK_BOT_TOKEN", "").strip()
    app_token = os.getenv("SLACK_APP_TOKEN", "").strip()
    if not bot_token:
        raise ValueError("SLACK_BOT_TOKEN environment variable is required")
    if not app_token:
        raise ValueError("SLACK_APP_TOKEN environment variable is required")
    return bot_token, app_token


def load_spotify_credentials() -> tuple[str, str] | None:
    """Load the optional Spotify client credentials.

    WHY: Spotify track links are an optional feature. Without credentials
    the bot still works with the music library and direct URLs.

    RULES:
    - Returns None when SPOTIFY_ID is unset or empty
    - Raises ValueError when SPOTIFY_ID is set but SPOTIFY_SECRET is not
    """
    client_id = os.getenv("SPOTIFY_ID", "").strip()
    if not client_id:
        return None
    client_secret = os.getenv("SPOTIFY_SECRET", "").strip()
    if not client_secret:
        raise ValueError("SPOTIFY_SECRET is required when SPOTIFY_ID is provided")
    return client_id, client_secret
