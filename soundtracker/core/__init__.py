"""Core request pipeline: library, audio sources, downloads, merging.

WHY: Everything that turns "an attachment plus maybe a link" into "a
video with music" lives here, independent of the chat service. The
Slack package only feeds requests in and carries replies out.

HOW: library.py indexes local tracks, sources.py parses and resolves
audio overrides, downloads.py streams files to disk, media.py and
merge.py drive ffprobe/ffmpeg, and pipeline.py runs each request as a
task through those stages.

RULES:
- No Slack imports in this package; the chat side is the Gateway protocol
- Per-request state stays in the request's work directory
"""
