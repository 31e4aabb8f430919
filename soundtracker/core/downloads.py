"""Streaming HTTP downloads into a request's work directory.

WHY: Attachments, direct audio URLs and Spotify previews are all fetched
the same way: stream the body to disk without holding it in memory,
refuse oversized bodies, and turn every network failure into one
error type the pipeline understands.

HOW: ``download_to_file`` opens an httpx stream, checks the status code
and (optionally) the content type, then writes chunks to a file. A
partially written file is removed when the download fails.

RULES:
- Non-2xx responses and httpx.HTTPError raise DownloadFailedError
- A content type outside ``accept`` raises InvalidSourceError
- Bodies larger than max_bytes raise DownloadFailedError
- Returns the response's bare MIME type (parameters stripped)
"""

from __future__ import annotations

import logging
from collections.abc import Collection
from pathlib import Path

import httpx

from soundtracker.config import MAX_DOWNLOAD_BYTES
from soundtracker.errors import DownloadFailedError, InvalidSourceError

logger = logging.getLogger(__name__)

_CHUNK_SIZE = 64 * 1024


def bare_content_type(value: str | None) -> str:
    """Strip parameters from a Content-Type header ("audio/ogg; x=y" → "audio/ogg")."""
    if not value:
        return ""
    return value.split(";")[0].strip().lower()


async def download_to_file(
    client: httpx.AsyncClient,
    url: str,
    dest: Path,
    headers: dict[str, str] | None = None,
    accept: Collection[str] | None = None,
    max_bytes: int = MAX_DOWNLOAD_BYTES,
) -> str:
    """Stream ``url`` into ``dest`` and return the response MIME type."""
    written = 0
    try:
        async with client.stream("GET", url, headers=headers, follow_redirects=True) as resp:
            if not resp.is_success:
                raise DownloadFailedError(f"GET {url} returned HTTP {resp.status_code}")

            content_type = bare_content_type(resp.headers.get("content-type"))
            if accept is not None and content_type not in accept:
                raise InvalidSourceError(
                    f"{url} has content type '{content_type or 'unknown'}'"
                )

            with open(dest, "wb") as f:
                async for chunk in resp.aiter_bytes(_CHUNK_SIZE):
                    written += len(chunk)
                    if written > max_bytes:
                        raise DownloadFailedError(
                            f"{url} exceeds the {max_bytes} byte download limit"
                        )
                    f.write(chunk)
    except httpx.InvalidURL as exc:
        raise InvalidSourceError(f"invalid URL {url!r}: {exc}") from exc
    except httpx.HTTPError as exc:
        dest.unlink(missing_ok=True)
        raise DownloadFailedError(f"GET {url} failed: {exc}") from exc
    except (DownloadFailedError, InvalidSourceError):
        dest.unlink(missing_ok=True)
        raise

    logger.debug("Downloaded %s (%d bytes, %s) to %s", url, written, content_type, dest.name)
    return content_type
