"""Notification receiver.

Turns an inbound provider push into an action on the channel it names.

## Resource states

| `X-Goog-Resource-State` | Action |
|---|---|
| `sync` | Full sync. Any stored cursor is ignored. |
| `exists` | Delta sync from the channel's stored cursor |
| `not_exists` | Delete the channel and the resource's events in one transaction |
| anything else | Acknowledge, do nothing |

## Response codes

The provider only looks at the status code. Anything that should not be
redelivered is acknowledged with 200: unknown channels, a foreign resource
id, a sync already running for the channel, a sync that lost its lease to a
newer one or to a removal. Credential problems answer 403.
Provider and store failures in the middle of a sync answer 500 so the
provider redelivers.

## Deferred processing

With `defer=True` the receiver stops after validation and channel lookup and
returns `SYNC_DEFERRED`; the caller runs `process_deferred` in the
background. Transient provider failures are retried there with tenacity.
Failures in that mode only show up in the logs.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum

from sqlalchemy.exc import SQLAlchemyError
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from calendar_sync.calendar.sync import DeltaSyncEngine, SyncResult
from calendar_sync.channels.registry import ChannelRecord, ChannelRegistry, SyncLease
from calendar_sync.config import get_settings
from calendar_sync.credentials.store import CredentialStore
from calendar_sync.errors import (
    ChannelNotFoundError,
    CredentialMissingError,
    InvalidNotificationError,
    ProviderError,
    ProviderUnavailableError,
    RefreshDeniedError,
    SyncLeaseLostError,
    TokenInvalidError,
)

logger = logging.getLogger(__name__)

CHANNEL_ID_HEADER = "X-Goog-Channel-Id"
RESOURCE_STATE_HEADER = "X-Goog-Resource-State"
RESOURCE_ID_HEADER = "X-Goog-Resource-Id"
CHANNEL_TOKEN_HEADER = "X-Goog-Channel-Token"
MESSAGE_NUMBER_HEADER = "X-Goog-Message-Number"
RESOURCE_URI_HEADER = "X-Goog-Resource-Uri"

REQUIRED_HEADERS = (CHANNEL_ID_HEADER, RESOURCE_STATE_HEADER, RESOURCE_ID_HEADER)


class ResourceState(str, Enum):
    """Provider classification of a push notification."""

    SYNC = "sync"
    EXISTS = "exists"
    NOT_EXISTS = "not_exists"


class NotificationAction(str, Enum):
    """What the receiver did with a notification."""

    SYNCED = "synced"
    SYNC_DEFERRED = "sync_deferred"
    SYNC_IN_PROGRESS = "sync_in_progress"
    LEASE_LOST = "lease_lost"
    RESOURCE_REMOVED = "resource_removed"
    UNKNOWN_CHANNEL = "unknown_channel"
    RESOURCE_MISMATCH = "resource_mismatch"
    UNKNOWN_STATE = "unknown_state"
    TOKEN_MISMATCH = "token_mismatch"
    CREDENTIALS_INVALID = "credentials_invalid"
    PROVIDER_FAILED = "provider_failed"
    STORE_FAILED = "store_failed"


@dataclass(frozen=True)
class PushNotification:
    """Header contents of one provider push."""

    channel_id: str
    resource_state: str
    resource_id: str
    channel_token: str | None = None
    message_number: int | None = None
    resource_uri: str | None = None

    @classmethod
    def from_headers(cls, headers: Mapping[str, str]) -> PushNotification:
        """Parse notification headers (lookup must be case-insensitive).

        Raises:
            InvalidNotificationError: A required header is missing or empty
        """
        missing = [name for name in REQUIRED_HEADERS if not headers.get(name)]
        if missing:
            raise InvalidNotificationError(missing)

        message_number = headers.get(MESSAGE_NUMBER_HEADER) or ""
        return cls(
            channel_id=headers[CHANNEL_ID_HEADER],
            resource_state=headers[RESOURCE_STATE_HEADER].strip().lower(),
            resource_id=headers[RESOURCE_ID_HEADER],
            channel_token=headers.get(CHANNEL_TOKEN_HEADER),
            message_number=int(message_number) if message_number.isdigit() else None,
            resource_uri=headers.get(RESOURCE_URI_HEADER),
        )

    @property
    def state(self) -> ResourceState | None:
        try:
            return ResourceState(self.resource_state)
        except ValueError:
            return None


@dataclass
class NotificationOutcome:
    """Action taken plus the status code to answer the provider with."""

    action: NotificationAction
    status_code: int = 200
    detail: str | None = None
    sync_result: SyncResult | None = None

    @property
    def acknowledged(self) -> bool:
        return 200 <= self.status_code < 300


class NotificationReceiver:
    """Validates push notifications and drives the sync engine.

    Example:
        ```python
        receiver = NotificationReceiver(registry, credentials, engine)

        notification = PushNotification.from_headers(request.headers)
        outcome = await receiver.receive(notification)
        return Response(status_code=outcome.status_code)
        ```
    """

    def __init__(
        self,
        registry: ChannelRegistry,
        credentials: CredentialStore,
        engine: DeltaSyncEngine,
        lease_ttl: timedelta | None = None,
        max_attempts: int | None = None,
        retry_wait=None,
    ):
        settings = get_settings()

        self.registry = registry
        self.credentials = credentials
        self.engine = engine
        self.lease_ttl = lease_ttl or timedelta(seconds=settings.sync_lease_seconds)
        self.max_attempts = max_attempts or settings.deferred_sync_max_attempts
        self.retry_wait = retry_wait or wait_exponential(multiplier=1, min=2, max=10)

    async def receive(
        self,
        notification: PushNotification,
        defer: bool = False,
    ) -> NotificationOutcome:
        """Handle one notification.

        Args:
            notification: Parsed notification headers
            defer: Stop after validation; caller schedules `process_deferred`
        """
        try:
            channel = await self.registry.require(notification.channel_id)
        except ChannelNotFoundError:
            logger.warning(
                f"Notification for unknown channel {notification.channel_id}, acknowledging"
            )
            return NotificationOutcome(NotificationAction.UNKNOWN_CHANNEL)

        if channel.channel_token and notification.channel_token != channel.channel_token:
            logger.warning(f"Channel token mismatch on channel {channel.channel_id}")
            return NotificationOutcome(
                NotificationAction.TOKEN_MISMATCH, 403, "channel token mismatch"
            )

        if (
            channel.provider_resource_id
            and notification.resource_id != channel.provider_resource_id
        ):
            logger.warning(
                f"Notification on channel {channel.channel_id} names resource "
                f"{notification.resource_id}, expected {channel.provider_resource_id}"
            )
            return NotificationOutcome(NotificationAction.RESOURCE_MISMATCH)

        state = notification.state
        if state is None:
            logger.info(
                f"Ignoring resource state {notification.resource_state!r} "
                f"on channel {channel.channel_id}"
            )
            return NotificationOutcome(NotificationAction.UNKNOWN_STATE)

        if state is ResourceState.NOT_EXISTS:
            return await self._remove_resource(channel)

        if defer:
            return NotificationOutcome(NotificationAction.SYNC_DEFERRED)

        return await self._sync_channel(channel, self._cursor_for(state, channel))

    async def process_deferred(self, notification: PushNotification) -> NotificationOutcome:
        """Background half of a deferred notification.

        Retries transient provider failures; never raises.
        """
        try:
            channel = await self.registry.require(notification.channel_id)
        except ChannelNotFoundError:
            logger.info(f"Channel {notification.channel_id} removed before deferred sync")
            return NotificationOutcome(NotificationAction.UNKNOWN_CHANNEL)

        state = notification.state or ResourceState.EXISTS
        outcome = None
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.max_attempts),
                wait=self.retry_wait,
                retry=retry_if_exception_type(ProviderUnavailableError),
                reraise=True,
            ):
                with attempt:
                    outcome = await self._sync_channel(
                        channel, self._cursor_for(state, channel), reraise_transient=True
                    )
        except ProviderUnavailableError as e:
            logger.error(
                f"Deferred sync for channel {channel.channel_id} gave up after "
                f"{self.max_attempts} attempts: {e}"
            )
            return NotificationOutcome(NotificationAction.PROVIDER_FAILED, 500, str(e))
        except Exception:
            logger.exception(f"Deferred sync for channel {channel.channel_id} failed")
            return NotificationOutcome(NotificationAction.STORE_FAILED, 500)

        if not outcome.acknowledged:
            logger.error(
                f"Deferred sync for channel {channel.channel_id} failed: "
                f"{outcome.action.value} {outcome.detail or ''}"
            )
        return outcome

    @staticmethod
    def _cursor_for(state: ResourceState, channel: ChannelRecord) -> str | None:
        if state is ResourceState.SYNC:
            return None
        return channel.last_sync_cursor

    async def _remove_resource(self, channel: ChannelRecord) -> NotificationOutcome:
        removed = await self.registry.remove_with_events(channel)

        logger.info(
            f"Resource {channel.resource_id} of account {channel.account_id} is gone: "
            f"removed channel {channel.channel_id} and {removed} events"
        )
        return NotificationOutcome(NotificationAction.RESOURCE_REMOVED)

    async def _sync_channel(
        self,
        channel: ChannelRecord,
        cursor: str | None,
        reraise_transient: bool = False,
    ) -> NotificationOutcome:
        lease = SyncLease(channel.channel_id, uuid.uuid4().hex, self.lease_ttl)
        if not await self.registry.acquire_sync_lease(lease.channel_id, lease.owner, lease.ttl):
            logger.info(f"Sync already running for channel {channel.channel_id}, acknowledging")
            return NotificationOutcome(NotificationAction.SYNC_IN_PROGRESS)

        try:
            result = await self.engine.sync(channel, cursor, lease)
        except SyncLeaseLostError:
            logger.warning(
                f"Sync of channel {channel.channel_id} abandoned: lease lost or channel removed"
            )
            return NotificationOutcome(NotificationAction.LEASE_LOST)
        except (CredentialMissingError, RefreshDeniedError) as e:
            logger.error(f"Cannot sync channel {channel.channel_id}: {e}")
            return NotificationOutcome(NotificationAction.CREDENTIALS_INVALID, 403, str(e))
        except TokenInvalidError as e:
            await self.credentials.invalidate_access_token(channel.account_id)
            logger.error(f"Access token rejected while syncing channel {channel.channel_id}")
            return NotificationOutcome(NotificationAction.CREDENTIALS_INVALID, 403, str(e))
        except ProviderUnavailableError as e:
            if reraise_transient:
                raise
            logger.warning(f"Provider unavailable while syncing channel {channel.channel_id}: {e}")
            return NotificationOutcome(NotificationAction.PROVIDER_FAILED, 500, str(e))
        except ProviderError as e:
            logger.error(f"Provider error while syncing channel {channel.channel_id}: {e}")
            return NotificationOutcome(NotificationAction.PROVIDER_FAILED, 500, str(e))
        except SQLAlchemyError as e:
            logger.exception(f"Store failure while syncing channel {channel.channel_id}")
            return NotificationOutcome(NotificationAction.STORE_FAILED, 500, type(e).__name__)
        finally:
            await self.registry.release_sync_lease(lease.channel_id, lease.owner)

        return NotificationOutcome(NotificationAction.SYNCED, sync_result=result)
