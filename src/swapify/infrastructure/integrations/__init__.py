"""External integration client implementations."""

from swapify.infrastructure.integrations.spotify_client import SpotifyClient

__all__ = ["SpotifyClient"]
