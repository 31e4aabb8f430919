"""Spotify Web API response dataclasses.

WHY: The token endpoint and the track endpoint return plain JSON. Typed
dataclasses make the few fields we use explicit and keep parsing rules
(token type check, expiry arithmetic, artist joining) out of the client.

HOW: Each dataclass has a ``from_dict`` factory for the raw response.

RULES:
- AccessToken.expires_at is on the monotonic clock of the caller
- Only "Bearer" tokens are accepted
- SpotifyTrack.preview_url is None when Spotify offers no preview
"""

from __future__ import annotations

from dataclasses import dataclass, field

_DEFAULT_EXPIRES_IN_S = 3600


@dataclass(frozen=True)
class AccessToken:
    """A bearer token from the client-credentials exchange.

    RULES:
    - value: the opaque access_token string
    - expires_at: monotonic timestamp after which the token is stale
    """

    value: str
    expires_at: float

    @classmethod
    def from_dict(cls, data: dict, now: float) -> AccessToken:
        """Parse the token endpoint response.

        RULES:
        - token_type must be "Bearer" (case-insensitive), else ValueError
        - access_token is required, else ValueError
        - expires_in defaults to one hour when absent
        """
        token_type = str(data.get("token_type", ""))
        if token_type.lower() != "bearer":
            raise ValueError(f"token type is {token_type!r}, not 'Bearer'")
        value = data.get("access_token")
        if not value:
            raise ValueError("token response has no access_token")
        expires_in = float(data.get("expires_in", _DEFAULT_EXPIRES_IN_S))
        return cls(value=value, expires_at=now + expires_in)

    def is_valid(self, now: float, leeway_s: float = 0.0) -> bool:
        return now < self.expires_at - leeway_s


@dataclass(frozen=True)
class SpotifyTrack:
    """The subset of a Spotify track object the resolver needs."""

    id: str
    title: str
    artists: list[str] = field(default_factory=list)
    preview_url: str | None = None

    @classmethod
    def from_dict(cls, data: dict) -> SpotifyTrack:
        return cls(
            id=data.get("id", ""),
            title=data.get("name", ""),
            artists=[a.get("name", "") for a in data.get("artists", []) if a.get("name")],
            preview_url=data.get("preview_url") or None,
        )

    @property
    def label(self) -> str:
        """Display string such as "Artist A, Artist B – Title"."""
        if self.artists:
            return "{} – {}".format(", ".join(self.artists), self.title)
        return self.title
