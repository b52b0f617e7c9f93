"""Credential store and token lifecycle.

## Token lifecycle

- Created on first successful authorization (`save_authorization`)
- Access token and expiry rewritten on every refresh
- Refresh token rewritten only when the provider rotates it
- Deleted only when the account is removed

An account whose refresh token is rejected is flagged `reauth_required`.
The flag is exposed through `CredentialStore.get_sync_health` so whatever
manages authorization can prompt a reconnect.
"""

from calendar_sync.credentials.refresher import TokenRefresher
from calendar_sync.credentials.store import (
    CredentialStore,
    StoredCredential,
    SyncHealth,
)

__all__ = [
    "CredentialStore",
    "StoredCredential",
    "SyncHealth",
    "TokenRefresher",
]
