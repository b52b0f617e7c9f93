"""Google OAuth token endpoint client.

Covers the parts of the OAuth 2.0 flow the sync engine needs:

- Refreshing an access token from a stored refresh token
- Exchanging an authorization code when an account is connected
- Revoking a refresh token when an account is disconnected

## OAuth Endpoints

- Authorization: https://accounts.google.com/o/oauth2/v2/auth
- Token: https://oauth2.googleapis.com/token
- Revoke: https://oauth2.googleapis.com/revoke

## Failure classification

| Token endpoint answer | Raised |
|---|---|
| 400 / 401 (e.g. `invalid_grant`) | `RefreshDeniedError` |
| 429, 5xx, timeout, network error | `ProviderUnavailableError` |
| anything else non-2xx | `ProviderError` |

No call is retried here; retry policy belongs to the caller.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

import httpx

from calendar_sync.clock import utc_now
from calendar_sync.config import get_settings
from calendar_sync.errors import ProviderError, ProviderUnavailableError, RefreshDeniedError

logger = logging.getLogger(__name__)

GOOGLE_REVOKE_URL = "https://oauth2.googleapis.com/revoke"


@dataclass
class GoogleTokens:
    """OAuth tokens from Google."""

    access_token: str
    refresh_token: str | None
    token_type: str
    expires_at: datetime | None
    scope: str


class GoogleOAuth:
    """Google OAuth 2.0 client.

    Example:
        ```python
        async with httpx.AsyncClient(timeout=15) as http:
            oauth = GoogleOAuth(http_client=http)
            tokens = await oauth.refresh_access_token(refresh_token)
        ```
    """

    def __init__(
        self,
        client_id: str | None = None,
        client_secret: str | None = None,
        redirect_uri: str | None = None,
        token_url: str | None = None,
        http_client: httpx.AsyncClient | None = None,
        timeout: float | None = None,
    ):
        """Initialize Google OAuth client.

        Args:
            client_id: Google OAuth client ID (or from settings)
            client_secret: Google OAuth client secret (or from settings)
            redirect_uri: OAuth callback URL (or from settings)
            token_url: Token endpoint (or from settings)
            http_client: Shared HTTP client; a short-lived one is used otherwise
            timeout: Request timeout in seconds (or from settings)
        """
        settings = get_settings()

        self.client_id = client_id or settings.google_client_id
        self.client_secret = client_secret or settings.google_client_secret
        self.redirect_uri = redirect_uri or settings.google_redirect_uri
        self.token_url = token_url or settings.google_token_url
        self.timeout = timeout or settings.provider_timeout_seconds
        self._http_client = http_client

        if not self.client_id or not self.client_secret:
            logger.warning(
                "Google OAuth not configured. Set GOOGLE_CLIENT_ID and "
                "GOOGLE_CLIENT_SECRET environment variables."
            )

    @property
    def is_configured(self) -> bool:
        """Check if Google OAuth is properly configured."""
        return bool(self.client_id and self.client_secret)

    async def _post(self, url: str, **kwargs: Any) -> httpx.Response:
        try:
            if self._http_client is not None:
                return await self._http_client.post(url, timeout=self.timeout, **kwargs)
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                return await client.post(url, **kwargs)
        except httpx.TimeoutException as e:
            raise ProviderUnavailableError(f"Token endpoint timed out: {e}") from e
        except httpx.TransportError as e:
            raise ProviderUnavailableError(f"Token endpoint unreachable: {e}") from e

    def _parse_tokens(self, data: dict[str, Any], fallback_refresh: str | None) -> GoogleTokens:
        expires_at = None
        if "expires_in" in data:
            expires_at = utc_now().replace(microsecond=0) + timedelta(
                seconds=int(data["expires_in"])
            )

        return GoogleTokens(
            access_token=data["access_token"],
            # Google may not return a new refresh token
            refresh_token=data.get("refresh_token", fallback_refresh),
            token_type=data.get("token_type", "Bearer"),
            expires_at=expires_at,
            scope=data.get("scope", ""),
        )

    async def exchange_code(self, code: str) -> GoogleTokens:
        """Exchange an authorization code for tokens.

        Raises:
            ProviderError: If the token exchange fails
        """
        if not self.is_configured:
            raise RuntimeError("Google OAuth not configured")

        response = await self._post(
            self.token_url,
            data={
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "code": code,
                "grant_type": "authorization_code",
                "redirect_uri": self.redirect_uri,
            },
        )

        if response.status_code != 200:
            logger.error(f"Token exchange failed: {response.status_code}")
            raise ProviderError(
                f"Token exchange failed: {response.status_code}",
                status_code=response.status_code,
                response_body=response.text,
            )

        return self._parse_tokens(response.json(), fallback_refresh=None)

    async def refresh_access_token(self, refresh_token: str, account_id: str = "") -> GoogleTokens:
        """Obtain a fresh access token.

        Args:
            refresh_token: The refresh token
            account_id: Used only for error reporting

        Returns:
            New GoogleTokens (refresh_token is the old one unless Google rotated it)

        Raises:
            RefreshDeniedError: The provider rejected the refresh token
            ProviderUnavailableError: Transient failure (timeout, 5xx, 429)
        """
        if not self.is_configured:
            raise RuntimeError("Google OAuth not configured")

        response = await self._post(
            self.token_url,
            data={
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "refresh_token": refresh_token,
                "grant_type": "refresh_token",
            },
        )

        if response.status_code in (400, 401):
            logger.error(f"Token refresh rejected for account {account_id}: {response.status_code}")
            raise RefreshDeniedError(
                account_id,
                status_code=response.status_code,
                response_body=response.text,
            )
        if response.status_code == 429 or response.status_code >= 500:
            raise ProviderUnavailableError(
                f"Token refresh failed: {response.status_code}",
                status_code=response.status_code,
                response_body=response.text,
            )
        if response.status_code != 200:
            raise ProviderError(
                f"Token refresh failed: {response.status_code}",
                status_code=response.status_code,
                response_body=response.text,
            )

        return self._parse_tokens(response.json(), fallback_refresh=refresh_token)

    async def revoke_token(self, token: str) -> bool:
        """Revoke an access or refresh token.

        Returns:
            True if revocation succeeded
        """
        response = await self._post(GOOGLE_REVOKE_URL, params={"token": token})
        return response.status_code == 200
