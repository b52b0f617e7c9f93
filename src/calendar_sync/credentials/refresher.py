"""Token refresher.

Hands out a valid access token for an account, going to the provider's token
endpoint only when the stored token is missing or about to expire.

## Algorithm

1. Read the credential (`CredentialMissingError` if there is none). An
   account already flagged `reauth_required` fails with `RefreshDeniedError`
   without contacting the provider; only a new authorization clears the flag.
2. If the access token expires more than `margin` from now, return it. No
   network call.
3. Otherwise refresh with the refresh token and persist the new access token
   and expiry in a single UPDATE.
4. If the provider rejects the refresh token, flag the account as
   `reauth_required` and raise `RefreshDeniedError`. The stale credential
   stays in place.

Transient failures (`ProviderUnavailableError`) propagate untouched; this
class never retries.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta

from calendar_sync.auth.google import GoogleOAuth
from calendar_sync.clock import utc_now
from calendar_sync.credentials.store import CredentialStore
from calendar_sync.database.models import SyncStatus
from calendar_sync.errors import CredentialMissingError, RefreshDeniedError

logger = logging.getLogger(__name__)

DEFAULT_REFRESH_MARGIN = timedelta(minutes=5)


class TokenRefresher:
    """Ensures a usable access token per account."""

    def __init__(
        self,
        store: CredentialStore,
        oauth: GoogleOAuth,
        margin: timedelta = DEFAULT_REFRESH_MARGIN,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.oauth = oauth
        self.margin = margin
        self._clock = clock

    async def ensure_valid_access_token(self, account_id: str) -> str:
        """Return a valid access token for the account.

        Raises:
            CredentialMissingError: No credential / refresh token stored
            RefreshDeniedError: Provider rejected the refresh token, now or on
                an earlier call, and the account was not re-authorized since
            ProviderUnavailableError: Token endpoint unreachable or failing
        """
        credential = await self.store.get(account_id)
        if credential is None:
            raise CredentialMissingError(account_id)

        if credential.sync_status == SyncStatus.REAUTH_REQUIRED.value:
            logger.info(f"Account {account_id} awaits re-authorization, not refreshing")
            raise RefreshDeniedError(account_id)

        now = self._clock()
        expires_at = credential.access_token_expires_at
        if credential.access_token and expires_at and expires_at > now + self.margin:
            return credential.access_token

        if not credential.refresh_token:
            raise CredentialMissingError(account_id, reason="no refresh token")

        logger.info(f"Access token for account {account_id} expired or missing, refreshing")

        try:
            tokens = await self.oauth.refresh_access_token(
                credential.refresh_token, account_id=account_id
            )
        except RefreshDeniedError as e:
            reason = f"refresh token rejected ({e.status_code})"
            await self.store.mark_reauth_required(account_id, reason)
            raise

        expires_at = tokens.expires_at or now + timedelta(hours=1)
        rotated = tokens.refresh_token if tokens.refresh_token != credential.refresh_token else None
        await self.store.update_access_token(
            account_id,
            tokens.access_token,
            expires_at,
            refresh_token=rotated,
        )

        return tokens.access_token
