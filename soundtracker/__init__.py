"""Soundtracker — a chat bot that puts music under your pictures and clips.

WHY: People share images and short videos in chat and want them with a
soundtrack. Mentioning the bot on such a message returns the same media
as a video with an audio track laid over it.

HOW: Four stages per request: download the attachment, resolve an audio
source (random library track, direct URL or Spotify preview), merge the
two with ffmpeg, and upload the result to the thread. The gateway
(Slack) only delivers events and accepts replies.

RULES:
- The core pipeline (soundtracker.core) has no Slack imports
- Every request owns a private work directory that is removed when it ends
- Only the Spotify credential cache is shared between requests
"""

__version__ = "0.1.0"
