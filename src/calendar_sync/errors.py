"""Error taxonomy for the synchronization engine.

Only some of these ever reach a caller:

- `CredentialMissingError` and `RefreshDeniedError` are terminal for an
  account until it is re-authorized.
- `ProviderUnavailableError` is transient; the outer caller decides whether
  and when to retry. The core never retries it.
- `CursorExpiredError` is handled inside the delta sync engine by a single
  full resync and does not escape it.
- `ChannelNotFoundError` is raised by `ChannelRegistry.require` and answered
  with a silent acknowledgement by the notification receiver.
- `SyncLeaseLostError` aborts a sync whose channel lease was taken over or
  whose channel was removed; nothing is written after it is raised.
"""

from __future__ import annotations


class SyncEngineError(Exception):
    """Base exception for synchronization engine errors."""


class CredentialMissingError(SyncEngineError):
    """No usable credential is stored for the account."""

    def __init__(self, account_id: str, reason: str = "no stored credential"):
        super().__init__(f"Credential missing for account {account_id}: {reason}")
        self.account_id = account_id
        self.reason = reason


class RefreshDeniedError(SyncEngineError):
    """The provider rejected the refresh token."""

    def __init__(
        self,
        account_id: str,
        status_code: int | None = None,
        response_body: str | None = None,
    ):
        super().__init__(f"Refresh token rejected for account {account_id}")
        self.account_id = account_id
        self.status_code = status_code
        self.response_body = response_body


class ProviderError(SyncEngineError):
    """Base exception for calendar provider errors."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        response_body: str | None = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.response_body = response_body


class ProviderUnavailableError(ProviderError):
    """Transient provider failure: timeout, network error, 5xx or rate limit."""


class TokenInvalidError(ProviderError):
    """The provider rejected the access token on a data call."""


class CursorExpiredError(ProviderError):
    """The provider no longer holds the history needed to resume from a cursor."""


class ChannelNotFoundError(SyncEngineError):
    """A notification references a channel this instance does not know."""

    def __init__(self, channel_id: str):
        super().__init__(f"Watch channel not found: {channel_id}")
        self.channel_id = channel_id


class SyncLeaseLostError(SyncEngineError):
    """The sync no longer holds its channel's lease, or the channel is gone."""

    def __init__(self, channel_id: str, owner: str | None = None):
        super().__init__(f"Lost sync lease on channel {channel_id} (owner {owner})")
        self.channel_id = channel_id
        self.owner = owner


class InvalidNotificationError(SyncEngineError):
    """An inbound push notification is missing required headers."""

    def __init__(self, missing: list[str]):
        super().__init__(f"Missing notification headers: {', '.join(missing)}")
        self.missing = missing
