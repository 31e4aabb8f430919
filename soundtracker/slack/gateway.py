"""Slack implementation of the pipeline's Gateway protocol.

WHY: The pipeline only knows "download this attachment", "post this
file", "post this notice". This adapter does those with the Slack Web
API and turns Slack failures into the pipeline's error types.

HOW: Private file URLs are fetched with httpx using the bot token as a
Bearer header (Slack requires auth for url_private). Results go up with
files_upload_v2 into the originating thread. The "busy" marker is a
reaction on the original message.

RULES:
- SlackApiError or a transport error on replies → ReplyFailedError
- Download failures → DownloadFailedError (via download_to_file)
- Reaction failures → GatewayError (callers treat them as best-effort)
- Uses files_upload_v2 (v1 is deprecated)
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Dict, Optional

import aiohttp
import httpx
from slack_sdk.errors import SlackApiError
from slack_sdk.web.async_client import AsyncWebClient

from soundtracker.config import BUSY_REACTION, MAX_DOWNLOAD_BYTES
from soundtracker.core.downloads import download_to_file
from soundtracker.core.pipeline import Attachment, MediaRequest
from soundtracker.errors import GatewayError, ReplyFailedError
from soundtracker.slack.messages import (
    format_failure_notice,
    format_result_comment,
    result_filename,
)

logger = logging.getLogger(__name__)

# Raised by the aiohttp-backed AsyncWebClient before Slack answers.
TRANSPORT_ERRORS = (aiohttp.ClientError, asyncio.TimeoutError)


class SlackGateway:
    """Gateway backed by an AsyncWebClient and an httpx client for downloads."""

    def __init__(
        self,
        client: AsyncWebClient,
        http: httpx.AsyncClient,
        busy_reaction: str = BUSY_REACTION,
        max_download_bytes: int = MAX_DOWNLOAD_BYTES,
    ) -> None:
        self._client = client
        self._http = http
        self._busy_reaction = busy_reaction
        self._max_download_bytes = max_download_bytes

    async def download_attachment(self, attachment: Attachment, dest: Path) -> None:
        await download_to_file(
            self._http,
            attachment.url,
            dest,
            headers={"Authorization": "Bearer {}".format(self._client.token)},
            max_bytes=self._max_download_bytes,
        )

    async def post_result(self, request: MediaRequest, output_path: Path, audio_label: str) -> None:
        filename = result_filename(request.attachment.name, output_path.suffix)
        try:
            await self._client.files_upload_v2(
                channel=request.channel,
                thread_ts=request.thread_ts,
                file=str(output_path),
                filename=filename,
                title=filename,
                initial_comment=format_result_comment(audio_label),
            )
        except SlackApiError as exc:
            raise ReplyFailedError("upload failed: {}".format(exc.response.get("error"))) from exc
        except TRANSPORT_ERRORS as exc:
            raise ReplyFailedError("upload failed: {!r}".format(exc)) from exc

    async def post_notice(self, request: MediaRequest, failure: str) -> None:
        try:
            await self._client.chat_postMessage(
                channel=request.channel,
                thread_ts=request.thread_ts,
                text=format_failure_notice(failure),
            )
        except SlackApiError as exc:
            raise ReplyFailedError("notice failed: {}".format(exc.response.get("error"))) from exc
        except TRANSPORT_ERRORS as exc:
            raise ReplyFailedError("notice failed: {!r}".format(exc)) from exc

    async def mark_busy(self, request: MediaRequest) -> None:
        await self._react("reactions_add", request)

    async def clear_busy(self, request: MediaRequest) -> None:
        await self._react("reactions_remove", request)

    async def _react(self, method: str, request: MediaRequest) -> None:
        if not self._busy_reaction or not request.message_ts:
            return
        try:
            await getattr(self._client, method)(
                channel=request.channel,
                timestamp=request.message_ts,
                name=self._busy_reaction,
            )
        except SlackApiError as exc:
            error = exc.response.get("error")
            # Several attachments of one message share the reaction.
            if error in ("already_reacted", "no_reaction"):
                logger.debug("%s on %s: %s", method, request.message_ts, error)
                return
            raise GatewayError("{} failed: {}".format(method, error)) from exc
        except TRANSPORT_ERRORS as exc:
            raise GatewayError("{} failed: {!r}".format(method, exc)) from exc

    async def fetch_message(self, channel: str, ts: str) -> Optional[Dict[str, Any]]:
        """Fetch one message by channel and timestamp (for reaction triggers).

        RULES:
        - Returns the message dict with "channel" filled in, or None if not found
        - SlackApiError or a transport error → GatewayError
        """
        try:
            resp = await self._client.conversations_history(
                channel=channel,
                latest=ts,
                inclusive=True,
                limit=1,
            )
        except SlackApiError as exc:
            raise GatewayError(
                "conversations_history failed: {}".format(exc.response.get("error"))
            ) from exc
        except TRANSPORT_ERRORS as exc:
            raise GatewayError("conversations_history failed: {!r}".format(exc)) from exc

        for message in resp.get("messages", []):
            if message.get("ts") == ts:
                return dict(message, channel=channel)
        return None
