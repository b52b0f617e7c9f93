"""Google Calendar API client.

Async client for the three provider operations the sync engine relies on:

- Change feed: `events.list` with either `syncToken` or a bounded `timeMin`
- Subscribe: `events.watch` (also used to renew an existing channel id)
- Unsubscribe: `channels.stop`

## API Documentation

https://developers.google.com/calendar/api/v3/reference

## Timeouts and failures

Every request carries a bounded timeout. Failures are classified as:

| Provider answer | Raised |
|---|---|
| 410 Gone on a change-feed call | `CursorExpiredError` |
| 401 | `TokenInvalidError` |
| 429, 5xx, timeout, network error | `ProviderUnavailableError` |
| other non-2xx | `ProviderError` |

Nothing is retried here.

## Sync token restrictions

When `syncToken` is sent, Google rejects `timeMin`, `timeMax` and `orderBy`,
so a delta request carries the cursor and paging parameters only.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from urllib.parse import quote

import httpx

from calendar_sync.clock import from_epoch_millis
from calendar_sync.config import get_settings
from calendar_sync.errors import (
    CursorExpiredError,
    ProviderError,
    ProviderUnavailableError,
    TokenInvalidError,
)

logger = logging.getLogger(__name__)


@dataclass
class ChangePage:
    """One page of the provider's change feed."""

    items: list[dict[str, Any]] = field(default_factory=list)
    next_page_token: str | None = None
    next_sync_token: str | None = None

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> ChangePage:
        return cls(
            items=list(data.get("items", [])),
            next_page_token=data.get("nextPageToken"),
            next_sync_token=data.get("nextSyncToken"),
        )


@dataclass
class WatchResponse:
    """Result of a subscribe/renew call."""

    channel_id: str
    resource_id: str | None
    resource_uri: str | None
    expiration_at: datetime

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> WatchResponse:
        """Create from Google Calendar API response.

        `expiration` arrives as epoch milliseconds encoded as a string.
        """
        return cls(
            channel_id=data["id"],
            resource_id=data.get("resourceId"),
            resource_uri=data.get("resourceUri"),
            expiration_at=from_epoch_millis(data["expiration"]),
        )


class GoogleCalendarClient:
    """Client for the Google Calendar API.

    The access token is passed per call; the client itself holds no
    account state and can be shared across accounts.

    Example:
        ```python
        client = GoogleCalendarClient(http_client)

        page = await client.list_changes(token, "primary", sync_token=cursor)
        watch = await client.watch(token, "primary", channel_id, webhook_url)
        ```
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        api_base: str | None = None,
        timeout: float | None = None,
        page_size: int | None = None,
    ):
        """Initialize the client.

        Args:
            http_client: Shared HTTP client
            api_base: API root (or from settings)
            timeout: Per-request timeout in seconds (or from settings)
            page_size: maxResults for change-feed pages (or from settings)
        """
        settings = get_settings()

        self._http = http_client
        self.api_base = (api_base or settings.google_calendar_api_base).rstrip("/")
        self.timeout = timeout or settings.provider_timeout_seconds
        self.page_size = page_size or settings.full_sync_page_size

    def _calendar_url(self, resource_id: str, suffix: str) -> str:
        return f"{self.api_base}/calendars/{quote(resource_id, safe='')}/{suffix}"

    async def _request(
        self,
        method: str,
        url: str,
        access_token: str,
        **kwargs: Any,
    ) -> httpx.Response:
        headers = {
            "Authorization": f"Bearer {access_token}",
            "Accept": "application/json",
        }
        try:
            response = await self._http.request(
                method, url, headers=headers, timeout=self.timeout, **kwargs
            )
        except httpx.TimeoutException as e:
            raise ProviderUnavailableError(f"{method} {url} timed out") from e
        except httpx.TransportError as e:
            raise ProviderUnavailableError(f"{method} {url} failed: {e}") from e

        if response.status_code == 401:
            raise TokenInvalidError(
                "Access token rejected",
                status_code=401,
                response_body=response.text,
            )
        if response.status_code == 429 or response.status_code >= 500:
            raise ProviderUnavailableError(
                f"API request failed: {response.status_code}",
                status_code=response.status_code,
                response_body=response.text,
            )
        return response

    async def list_changes(
        self,
        access_token: str,
        resource_id: str,
        sync_token: str | None = None,
        time_min: datetime | None = None,
        page_token: str | None = None,
    ) -> ChangePage:
        """Fetch one page of the change feed.

        Args:
            access_token: Valid OAuth access token
            resource_id: Calendar ID ('primary' for the primary calendar)
            sync_token: Cursor from a previous sync; delta request if present
            time_min: Lower bound for a full listing (ignored with sync_token)
            page_token: Token of the page to fetch

        Raises:
            CursorExpiredError: The provider answered 410 Gone
        """
        params: dict[str, Any] = {"maxResults": self.page_size}
        if sync_token:
            params["syncToken"] = sync_token
        elif time_min is not None:
            params["timeMin"] = time_min.isoformat()
        if page_token:
            params["pageToken"] = page_token

        response = await self._request(
            "GET", self._calendar_url(resource_id, "events"), access_token, params=params
        )

        if response.status_code == 410:
            raise CursorExpiredError(
                f"Sync token expired for calendar {resource_id}",
                status_code=410,
                response_body=response.text,
            )
        if response.status_code != 200:
            raise ProviderError(
                f"Listing events failed: {response.status_code}",
                status_code=response.status_code,
                response_body=response.text,
            )

        return ChangePage.from_api(response.json())

    async def watch(
        self,
        access_token: str,
        resource_id: str,
        channel_id: str,
        address: str,
        token: str | None = None,
    ) -> WatchResponse:
        """Subscribe to push notifications for a calendar.

        Renewal calls this again with the same channel id.

        Args:
            access_token: Valid OAuth access token
            resource_id: Calendar ID to watch
            channel_id: Caller-generated channel identifier
            address: Webhook URL to receive notifications
            token: Optional validation token echoed in X-Goog-Channel-Token
        """
        body: dict[str, Any] = {
            "id": channel_id,
            "type": "web_hook",
            "address": address,
        }
        if token:
            body["token"] = token

        response = await self._request(
            "POST", self._calendar_url(resource_id, "events/watch"), access_token, json=body
        )
        if response.status_code != 200:
            raise ProviderError(
                f"Watch request failed: {response.status_code}",
                status_code=response.status_code,
                response_body=response.text,
            )

        return WatchResponse.from_api(response.json())

    async def stop_channel(
        self,
        access_token: str,
        channel_id: str,
        provider_resource_id: str,
    ) -> None:
        """Stop a watch channel.

        Args:
            channel_id: The channel ID from watch setup
            provider_resource_id: The resourceId from the watch response
        """
        response = await self._request(
            "POST",
            f"{self.api_base}/channels/stop",
            access_token,
            json={"id": channel_id, "resourceId": provider_resource_id},
        )
        if response.status_code not in (200, 204, 404):
            raise ProviderError(
                f"Stopping channel failed: {response.status_code}",
                status_code=response.status_code,
                response_body=response.text,
            )
