"""Async client for the Spotify Web API with a shared credential cache.

WHY: Spotify track links resolve to audio through the Web API, which
needs a bearer token from the client-credentials flow. Tokens last an
hour and are shared by every request, so fetching one per request would
be wasteful and, under a burst of requests, would stampede the token
endpoint.

HOW: ``SpotifyTokenCache`` owns the token. Readers take the cached value
without locking while it is valid; a stale or missing token is refreshed
under an asyncio.Lock with a second check inside the lock, so concurrent
callers that all see an expired token trigger a single exchange.
``SpotifyClient`` wraps an httpx.AsyncClient (injected or owned) and
uses the cache for each call, retrying once after a 401.

RULES:
- The cache is an explicit object passed to the client, not a global
- Refresh is single-writer; readers see the old or the new token, never a partial one
- Tokens are refreshed 60 s before their stated expiry
- All Spotify failures surface as MetadataLookupFailedError (or its SpotifyAPIError subclass)
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable

import httpx

from soundtracker.api.models import AccessToken, SpotifyTrack
from soundtracker.config import SPOTIFY_API_URL, SPOTIFY_MARKET, SPOTIFY_TOKEN_URL
from soundtracker.errors import InvalidSourceError, MetadataLookupFailedError, SpotifyAPIError

logger = logging.getLogger(__name__)

_TOKEN_LEEWAY_S = 60.0


def _error_message(resp: httpx.Response) -> str:
    """Extract the API's error text from a response body.

    Spotify uses two shapes: ``{"error": "invalid_client", ...}`` on the
    accounts service and ``{"error": {"status": 404, "message": "..."}}``
    on the Web API. Anything else falls back to the reason phrase.
    """
    try:
        data = resp.json()
    except ValueError:
        return resp.reason_phrase or "Unknown Error"

    error = data.get("error") if isinstance(data, dict) else None
    if isinstance(error, str):
        description = data.get("error_description")
        return f"{error}: {description}" if description else error
    if isinstance(error, dict) and error.get("message"):
        return str(error["message"])
    return "Unknown Error"


class SpotifyTokenCache:
    """Process-wide holder of the Spotify bearer token."""

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        token_url: str = SPOTIFY_TOKEN_URL,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._client_id = client_id
        self._client_secret = client_secret
        self._token_url = token_url
        self._clock = clock
        self._token: AccessToken | None = None
        self._lock = asyncio.Lock()
        self.exchanges = 0

    def _current(self) -> str | None:
        token = self._token
        if token is not None and token.is_valid(self._clock(), _TOKEN_LEEWAY_S):
            return token.value
        return None

    async def get_token(self, http: httpx.AsyncClient) -> str:
        """Return a valid bearer token, refreshing it if needed."""
        value = self._current()
        if value is not None:
            return value

        async with self._lock:
            # Another task may have refreshed while we waited.
            value = self._current()
            if value is not None:
                return value
            self._token = await self._exchange(http)
            return self._token.value

    def invalidate(self) -> None:
        """Forget the cached token so the next call performs an exchange."""
        self._token = None

    async def _exchange(self, http: httpx.AsyncClient) -> AccessToken:
        logger.debug("Requesting Spotify token from %s", self._token_url)
        self.exchanges += 1
        try:
            resp = await http.post(
                self._token_url,
                data={"grant_type": "client_credentials"},
                auth=(self._client_id, self._client_secret),
            )
        except httpx.HTTPError as exc:
            raise MetadataLookupFailedError(f"token request failed: {exc}") from exc

        if resp.status_code != 200:
            raise SpotifyAPIError(resp.status_code, _error_message(resp))

        try:
            token = AccessToken.from_dict(resp.json(), now=self._clock())
        except ValueError as exc:
            raise SpotifyAPIError(resp.status_code, f"invalid token: {exc}") from exc

        logger.info("Obtained Spotify token (valid for %.0fs)", token.expires_at - self._clock())
        return token


class SpotifyClient:
    """Async client for Spotify track metadata.

    WHY: The resolver needs title, artists and a preview URL for a track
    id, without knowing about tokens or HTTP.

    HOW: Use as ``async with SpotifyClient(cache) as spotify:`` to have it
    own an httpx.AsyncClient, or pass ``http=`` to share one.

    RULES:
    - One retry after a 401, with the cached token invalidated
    - 400 (malformed id) raises InvalidSourceError
    - 404 raises MetadataLookupFailedError; other non-2xx raise SpotifyAPIError
    """

    def __init__(
        self,
        token_cache: SpotifyTokenCache,
        http: httpx.AsyncClient | None = None,
        api_base: str = SPOTIFY_API_URL,
        market: str = SPOTIFY_MARKET,
    ) -> None:
        self._tokens = token_cache
        self._http = http
        self._owns_http = False
        self._api_base = api_base.rstrip("/")
        self._market = market

    async def __aenter__(self) -> SpotifyClient:
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=httpx.Timeout(30.0, connect=10.0))
            self._owns_http = True
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:  # noqa: ANN001
        if self._owns_http and self._http is not None:
            await self._http.aclose()
            self._http = None
            self._owns_http = False

    def _ensure_client(self) -> httpx.AsyncClient:
        if self._http is None:
            raise RuntimeError(
                "SpotifyClient needs an http client: pass http= or use "
                "async with SpotifyClient(...) as client: ..."
            )
        return self._http

    async def warm_up(self) -> None:
        """Fetch the first token eagerly so bad credentials fail at startup."""
        await self._tokens.get_token(self._ensure_client())

    async def get_track(self, track_id: str) -> SpotifyTrack:
        """Fetch a track's metadata by its base-62 id."""
        http = self._ensure_client()
        url = f"{self._api_base}/tracks/{track_id}"

        for attempt in range(2):
            token = await self._tokens.get_token(http)
            try:
                resp = await http.get(
                    url,
                    params={"market": self._market},
                    headers={"Authorization": f"Bearer {token}"},
                )
            except httpx.HTTPError as exc:
                raise MetadataLookupFailedError(f"track request failed: {exc}") from exc

            if resp.status_code == 401 and attempt == 0:
                logger.info("Spotify rejected the cached token; refreshing")
                self._tokens.invalidate()
                continue
            break

        if resp.status_code == 404:
            raise MetadataLookupFailedError(f"track {track_id} not found")
        if resp.status_code == 400:
            raise InvalidSourceError(f"track id {track_id!r} rejected: {_error_message(resp)}")
        if not resp.is_success:
            raise SpotifyAPIError(resp.status_code, _error_message(resp))

        track = SpotifyTrack.from_dict(resp.json())
        logger.debug("Spotify track %s: %s (preview: %s)", track_id, track.label, bool(track.preview_url))
        return track
