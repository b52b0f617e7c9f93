"""OAuth and internal-route authentication.

## OAuth

The engine never runs the interactive consent flow itself. It receives
either tokens or an authorization code from whatever owns user sign-in, and
afterwards only talks to the token endpoint:

1. Exchange an authorization code (`GoogleOAuth.exchange_code`)
2. Refresh the access token (`GoogleOAuth.refresh_access_token`)
3. Revoke the refresh token on disconnect (`GoogleOAuth.revoke_token`)

## Scopes

- calendar.readonly: To read calendar events and watch for changes

## Security

- All tokens are encrypted at rest
- Internal routes require the `X-Internal-Api-Key` header
- HTTPS required in production
"""

from calendar_sync.auth.dependencies import require_internal_api_key
from calendar_sync.auth.google import GoogleOAuth, GoogleTokens

__all__ = [
    "GoogleOAuth",
    "GoogleTokens",
    "require_internal_api_key",
]
