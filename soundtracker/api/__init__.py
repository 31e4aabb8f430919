"""Spotify Web API package — track metadata behind a shared token cache.

WHY: Spotify track links are resolved to a playable preview through the
Web API. This package keeps HTTP, authentication and response parsing
away from the resolver.

RULES:
- All Spotify HTTP calls go through SpotifyClient
- The token cache is created once per process and passed in explicitly
"""

from soundtracker.api.models import AccessToken, SpotifyTrack
from soundtracker.api.spotify import SpotifyClient, SpotifyTokenCache

__all__ = ["AccessToken", "SpotifyClient", "SpotifyTokenCache", "SpotifyTrack"]
