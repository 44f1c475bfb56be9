"""Domain ports (interfaces) for dependency inversion."""

from abc import ABC, abstractmethod
from typing import Any

from swapify.domain.ports.notification import (
    INotificationProvider,
    Notification,
    NotificationPriority,
    NotificationResult,
    NotificationType,
)


# Hey future me, ISpotifyClient is a PORT! The poll engine only talks to this interface,
# never to httpx directly. Tests hand in an AsyncMock with these methods. Every method may
# raise TokenInvalidError (401), RateLimitedError (429), BudgetExceededError (our own
# budget ran dry) or ExternalServiceError (everything else). Return values are Spotify's
# JSON shapes - normalizing them is the caller's job (see playback_fetcher).
class ISpotifyClient(ABC):
    """Port for the Spotify Web API capabilities the reconciliation engine consumes."""

    @abstractmethod
    async def get_playback_state(self, access_token: str) -> dict[str, Any] | None:
        """Get the user's current playback, or None when nothing is active."""
        pass

    @abstractmethod
    async def get_recently_played(
        self, access_token: str, after_ms: int | None = None, limit: int = 50
    ) -> list[dict[str, Any]]:
        """Get recently-played history items strictly after the cursor (epoch ms)."""
        pass

    @abstractmethod
    async def get_playlist_items(
        self, access_token: str, playlist_id: str
    ) -> list[dict[str, Any]]:
        """Get ALL items of a playlist in order (pagination handled inside)."""
        pass

    @abstractmethod
    async def add_items_to_playlist(
        self,
        access_token: str,
        playlist_id: str,
        uris: list[str],
        position: int | None = None,
    ) -> None:
        """Add items to a playlist."""
        pass

    @abstractmethod
    async def remove_items_from_playlist(
        self, access_token: str, playlist_id: str, uris: list[str]
    ) -> None:
        """Remove every occurrence of the given URIs from a playlist."""
        pass

    @abstractmethod
    async def reorder_playlist_tracks(
        self,
        access_token: str,
        playlist_id: str,
        range_start: int,
        insert_before: int,
        range_length: int = 1,
    ) -> None:
        """Move a block of playlist items to a new position."""
        pass

    @abstractmethod
    async def create_playlist(
        self, access_token: str, name: str, description: str = "", public: bool = False
    ) -> dict[str, Any]:
        """Create a playlist owned by the token's user and return it."""
        pass


class ICredentialProvider(ABC):
    """Port for "a valid access token for user X" and "mark X's token invalid".

    Hey future me - the OAuth dance and token refresh live outside the engine.
    The engine only asks for a token and reports when Spotify rejected it.
    """

    @abstractmethod
    async def get_access_token(self, user_id: str) -> str | None:
        """Return a usable access token, or None if the user has none."""
        pass

    @abstractmethod
    async def mark_invalid(self, user_id: str) -> bool:
        """Flag the credential invalid. True only the first time (one re-auth prompt)."""
        pass


__all__ = [
    "ICredentialProvider",
    "INotificationProvider",
    "ISpotifyClient",
    "Notification",
    "NotificationPriority",
    "NotificationResult",
    "NotificationType",
]
