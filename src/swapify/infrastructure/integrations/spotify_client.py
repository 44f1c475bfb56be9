"""Spotify Web API client used by the reconciliation engine."""

import logging
from typing import Any, cast

import httpx

from swapify.config.settings import SpotifySettings
from swapify.domain.exceptions import (
    ExternalServiceError,
    RateLimitedError,
    TokenInvalidError,
)
from swapify.domain.ports import ISpotifyClient
from swapify.infrastructure.rate_limiter import CallBudget, get_spotify_budget

logger = logging.getLogger(__name__)

# Spotify accepts at most 100 items per add/remove request
_MUTATION_BATCH_SIZE = 100
_PLAYLIST_PAGE_SIZE = 100


def _batched(items: list[str], size: int) -> list[list[str]]:
    return [items[i : i + size] for i in range(0, len(items), size)]


class SpotifyClient(ISpotifyClient):
    """HTTP client for the Spotify endpoints the poll engine needs."""

    # Hey future me, this init is deceptively simple - we DON'T create the HTTP client here
    # because we need to be async-friendly. The actual client gets lazy-loaded in _get_client().
    def __init__(
        self,
        settings: SpotifySettings,
        budget: CallBudget | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.settings = settings
        self.api_base_url = settings.api_base_url.rstrip("/")
        self._budget = budget
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @property
    def budget(self) -> CallBudget:
        if self._budget is None:
            self._budget = get_spotify_budget()
        return self._budget

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.settings.timeout_seconds, transport=self._transport
            )
        return self._client

    # Hey, this close() is IMPORTANT - if you don't call it, you'll leak connections.
    async def close(self) -> None:
        """Close HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    # Hey future me - CENTRALIZED API REQUEST!
    # Every Spotify call goes through the shared call budget first. Unlike a retrying
    # client we do NOT retry 429s here: a 429 means the whole poll cycle stops issuing
    # calls, so we note the cooldown on the budget and raise RateLimitedError.
    async def _api_request(
        self,
        method: str,
        path: str,
        access_token: str,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
    ) -> dict[str, Any] | None:
        """Make a budget-gated API request and map failures to domain errors.

        Returns:
            Parsed JSON body, or None for empty (204) responses

        Raises:
            BudgetExceededError: Call budget stayed exhausted too long
            TokenInvalidError: 401 from Spotify
            RateLimitedError: 429 from Spotify
            ExternalServiceError: Any other HTTP or transport failure
        """
        await self.budget.wait_for_budget(self.settings.budget_max_wait_seconds)

        client = await self._get_client()
        url = path if path.startswith("http") else f"{self.api_base_url}{path}"
        try:
            response = await client.request(
                method=method,
                url=url,
                params=params,
                json=json,
                headers={"Authorization": f"Bearer {access_token}"},
            )
        except httpx.HTTPError as e:
            raise ExternalServiceError(f"Spotify request failed: {method} {path}: {e}") from e

        if response.status_code == 401:
            raise TokenInvalidError(message=f"Spotify rejected access token ({method} {path})")

        if response.status_code == 429:
            retry_after_str = response.headers.get("Retry-After")
            try:
                retry_after = float(retry_after_str) if retry_after_str else None
            except ValueError:
                retry_after = None
            self.budget.note_rate_limited(retry_after)
            logger.warning(
                "spotify.rate_limited",
                extra={"path": path, "retry_after": retry_after},
            )
            raise RateLimitedError(retry_after=retry_after)

        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise ExternalServiceError(
                f"Spotify returned {response.status_code} for {method} {path}",
                status_code=response.status_code,
            ) from e

        if response.status_code == 204 or not response.content:
            return None
        return cast(dict[str, Any], response.json())

    async def get_playback_state(self, access_token: str) -> dict[str, Any] | None:
        """Get current playback; None when no device is active (204)."""
        return await self._api_request(
            "GET",
            "/me/player",
            access_token,
            params={"additional_types": "track"},
        )

    async def get_recently_played(
        self, access_token: str, after_ms: int | None = None, limit: int = 50
    ) -> list[dict[str, Any]]:
        params: dict[str, Any] = {"limit": min(max(limit, 1), 50)}
        if after_ms is not None:
            params["after"] = after_ms
        data = await self._api_request(
            "GET", "/me/player/recently-played", access_token, params=params
        )
        if not data:
            return []
        return cast(list[dict[str, Any]], data.get("items") or [])

    async def get_playlist_items(
        self, access_token: str, playlist_id: str
    ) -> list[dict[str, Any]]:
        """Get every item of a playlist, following pagination."""
        items: list[dict[str, Any]] = []
        next_url: str | None = f"/playlists/{playlist_id}/tracks"
        params: dict[str, Any] | None = {"limit": _PLAYLIST_PAGE_SIZE, "offset": 0}
        while next_url:
            data = await self._api_request("GET", next_url, access_token, params=params)
            if not data:
                break
            items.extend(data.get("items") or [])
            next_url = data.get("next")
            # the "next" URL already carries limit/offset
            params = None
        return items

    async def add_items_to_playlist(
        self,
        access_token: str,
        playlist_id: str,
        uris: list[str],
        position: int | None = None,
    ) -> None:
        for offset, batch in enumerate(_batched(uris, _MUTATION_BATCH_SIZE)):
            body: dict[str, Any] = {"uris": batch}
            if position is not None:
                body["position"] = position + offset * _MUTATION_BATCH_SIZE
            await self._api_request(
                "POST", f"/playlists/{playlist_id}/tracks", access_token, json=body
            )

    async def remove_items_from_playlist(
        self, access_token: str, playlist_id: str, uris: list[str]
    ) -> None:
        for batch in _batched(uris, _MUTATION_BATCH_SIZE):
            await self._api_request(
                "DELETE",
                f"/playlists/{playlist_id}/tracks",
                access_token,
                json={"tracks": [{"uri": uri} for uri in batch]},
            )

    async def reorder_playlist_tracks(
        self,
        access_token: str,
        playlist_id: str,
        range_start: int,
        insert_before: int,
        range_length: int = 1,
    ) -> None:
        await self._api_request(
            "PUT",
            f"/playlists/{playlist_id}/tracks",
            access_token,
            json={
                "range_start": range_start,
                "insert_before": insert_before,
                "range_length": range_length,
            },
        )

    async def create_playlist(
        self, access_token: str, name: str, description: str = "", public: bool = False
    ) -> dict[str, Any]:
        data = await self._api_request(
            "POST",
            "/me/playlists",
            access_token,
            json={"name": name, "description": description, "public": public},
        )
        if not data or "id" not in data:
            raise ExternalServiceError(f"Spotify did not return the created playlist '{name}'")
        return data

    async def __aenter__(self) -> "SpotifyClient":
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()
