"""Slack bot: Socket Mode event handlers and the process entry point.

WHY: Users mention the bot on a message with a picture, GIF or clip and
get it back as a video with music. This module is the glue between
Slack events and the request pipeline: it decides which events become
work, hands each request to the dispatcher, and wires every component
together at startup.

HOW: Uses slack-bolt's AsyncApp with the async Socket Mode adapter (no
public URL needed). ``SoundtrackerHandlers`` holds the per-event logic
and is tested directly; ``create_app`` registers thin listeners that
delegate to it. ``main`` scans the music library, builds the shared
clients, connects, and on SIGINT/SIGTERM disconnects and drains
in-flight requests.

RULES:
- Handlers never await the pipeline; each request runs as its own task
- Events are acked by bolt automatically; handlers return quickly
- app_mention → requests from the message; reaction_added with the
  trigger emoji → requests from the reacted-to message, no mention needed
- Plain message events are acknowledged and ignored
- Python 3.9+ compatible (no match/case, no PEP 604 unions)
- Runnable as: python -m soundtracker
"""

from __future__ import annotations

import asyncio
import logging
import signal
from typing import Any, Dict, List, Optional

import httpx
from slack_bolt.adapter.socket_mode.async_handler import AsyncSocketModeHandler
from slack_bolt.async_app import AsyncApp
from slack_sdk.web.async_client import AsyncWebClient

from soundtracker.api.spotify import SpotifyClient, SpotifyTokenCache
from soundtracker.config import (
    CLIP_SECONDS,
    LOG_LEVEL,
    MUSIC_DIR,
    MUSIC_PATTERN,
    SHUTDOWN_GRACE_S,
    TEMP_ROOT,
    TRIGGER_REACTION,
    load_slack_tokens,
    load_spotify_credentials,
)
from soundtracker.core.library import AudioLibrary
from soundtracker.core.media import probe_duration
from soundtracker.core.merge import FfmpegTranscoder, LimitedTranscoder
from soundtracker.core.pipeline import (
    MediaRequest,
    RequestProcessor,
    TaskDispatcher,
    reap_stale_workdirs,
)
from soundtracker.core.sources import AudioResolver
from soundtracker.errors import GatewayError
from soundtracker.slack.gateway import SlackGateway
from soundtracker.slack.messages import requests_from_event

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Event handling
# ---------------------------------------------------------------------------


class SoundtrackerHandlers:
    """Turns Slack events into dispatched pipeline tasks."""

    def __init__(
        self,
        processor: RequestProcessor,
        dispatcher: TaskDispatcher,
        gateway: SlackGateway,
        trigger_reaction: str = TRIGGER_REACTION,
    ) -> None:
        self._processor = processor
        self._dispatcher = dispatcher
        self._gateway = gateway
        self._trigger_reaction = trigger_reaction

    def _submit(self, requests: List[MediaRequest]) -> List[asyncio.Task]:
        tasks = []
        for index, request in enumerate(requests):
            logger.info(
                "Accepted %s from %s in %s",
                request.attachment.name, request.author or "unknown", request.channel,
            )
            name = "request-{}-{}-{}".format(request.channel, request.message_ts, index)
            tasks.append(self._dispatcher.submit(self._processor.process(request), name=name))
        return tasks

    async def on_mention(
        self, event: Dict[str, Any], bot_user_id: Optional[str]
    ) -> List[asyncio.Task]:
        """Handle app_mention: one task per supported attachment."""
        requests = requests_from_event(event, bot_user_id)
        if not requests:
            logger.debug("Mention in %s has no usable attachments", event.get("channel"))
        return self._submit(requests)

    async def on_reaction(
        self, event: Dict[str, Any], bot_user_id: Optional[str]
    ) -> List[asyncio.Task]:
        """Handle reaction_added: re-run the reacted-to message.

        WHY: Lets anyone ask for a (new) soundtrack on an existing post
        without writing a reply that mentions the bot.

        RULES:
        - Only the configured trigger emoji, only on messages
        - Reactions added by the bot itself are ignored
        - A message that cannot be fetched is logged and skipped
        """
        if event.get("reaction") != self._trigger_reaction:
            return []
        if bot_user_id and event.get("user") == bot_user_id:
            return []
        item = event.get("item") or {}
        if item.get("type") != "message":
            return []

        channel = item.get("channel", "")
        ts = item.get("ts", "")
        try:
            message = await self._gateway.fetch_message(channel, ts)
        except GatewayError as exc:
            logger.warning("Could not fetch reacted message %s/%s: %s", channel, ts, exc)
            return []
        if message is None:
            logger.info("Reacted message %s/%s not found", channel, ts)
            return []

        return self._submit(requests_from_event(message, bot_user_id, require_mention=False))


def create_app(client: AsyncWebClient, handlers: SoundtrackerHandlers) -> AsyncApp:
    """Create the Bolt app and register all listeners.

    WHY: Factory function keeps module import free of side effects and
    lets tests build an app around a fake client.

    RULES:
    - All listeners are registered before returning
    - Listeners only delegate; logic lives in SoundtrackerHandlers
    """
    app = AsyncApp(client=client)

    @app.event("app_mention")
    async def handle_app_mention(event: Dict[str, Any], context: Dict[str, Any]) -> None:
        await handlers.on_mention(event, context.get("bot_user_id"))

    @app.event("reaction_added")
    async def handle_reaction_added(event: Dict[str, Any], context: Dict[str, Any]) -> None:
        await handlers.on_reaction(event, context.get("bot_user_id"))

    # Mentions arrive as app_mention; the plain message copy is dropped.
    @app.event("message")
    async def handle_message(event: Dict[str, Any]) -> None:
        return None

    return app


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def _load_library() -> AudioLibrary:
    library = AudioLibrary.build(
        MUSIC_DIR,
        MUSIC_PATTERN,
        probe=probe_duration,
        min_duration_s=CLIP_SECONDS,
    )
    if len(library):
        logger.info("Loaded %d tracks from %s", len(library), MUSIC_DIR)
    else:
        logger.error(
            "No usable tracks in %s matching %s; requests without a link will fail",
            MUSIC_DIR, MUSIC_PATTERN,
        )
    return library


async def _serve(bot_token: str, app_token: str, library: AudioLibrary) -> None:
    spotify_credentials = load_spotify_credentials()
    dispatcher = TaskDispatcher()

    async with httpx.AsyncClient(timeout=httpx.Timeout(60.0, connect=10.0)) as http:
        spotify = None  # type: Optional[SpotifyClient]
        if spotify_credentials is not None:
            spotify = SpotifyClient(SpotifyTokenCache(*spotify_credentials), http=http)
            await spotify.warm_up()
            logger.info("Spotify links enabled")
        else:
            logger.info("SPOTIFY_ID not set; Spotify links disabled")

        client = AsyncWebClient(token=bot_token)
        gateway = SlackGateway(client, http)
        processor = RequestProcessor(
            gateway,
            AudioResolver(library, http, spotify),
            LimitedTranscoder(FfmpegTranscoder()),
            temp_root=TEMP_ROOT,
        )
        app = create_app(client, SoundtrackerHandlers(processor, dispatcher, gateway))
        handler = AsyncSocketModeHandler(app, app_token)

        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop.set)
            except NotImplementedError:
                # Not available on Windows event loops; Ctrl+C still ends asyncio.run
                pass

        logger.info("Starting Slack bot in Socket Mode...")
        await handler.connect_async()
        try:
            await stop.wait()
        finally:
            logger.info("Shutting down")
            await handler.close_async()
            result = await dispatcher.shutdown(SHUTDOWN_GRACE_S)
            logger.info(
                "Shutdown complete: %d finished, %d cancelled",
                result["finished"], result["cancelled"],
            )


def main() -> None:
    """Start the bot in Socket Mode.

    WHY: The bot runs as a standalone process via ``python -m soundtracker``
    or the ``soundtracker`` console script.

    HOW: Configures logging, validates tokens, removes work directories
    left by a previous crash, scans the music library, then runs the
    async server until SIGINT/SIGTERM.

    RULES:
    - Requires SLACK_BOT_TOKEN and SLACK_APP_TOKEN environment variables
    - Bad Spotify credentials fail at startup, not on the first link
    """
    logging.basicConfig(
        level=getattr(logging, LOG_LEVEL, logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    bot_token, app_token = load_slack_tokens()
    reap_stale_workdirs(TEMP_ROOT)
    library = _load_library()

    try:
        asyncio.run(_serve(bot_token, app_token, library))
    except KeyboardInterrupt:
        logger.info("Interrupted")


if __name__ == "__main__":
    main()
