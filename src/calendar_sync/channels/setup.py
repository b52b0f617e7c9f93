"""Account connect / disconnect.

Connecting an account stores its authorization, subscribes a fresh watch
channel for the calendar and registers it with a null cursor. The provider's
first `sync` notification on that channel then triggers the initial full
sync.

Disconnecting stops every channel with the provider, removes channels,
events and the credential, and revokes the refresh token. Provider-side
cleanup is best effort; local cleanup always happens.
"""

from __future__ import annotations

import logging
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta

from calendar_sync.auth.google import GoogleOAuth
from calendar_sync.calendar.event_store import EventStore
from calendar_sync.calendar.google_calendar import GoogleCalendarClient
from calendar_sync.channels.registry import ChannelRecord, ChannelRegistry
from calendar_sync.clock import utc_now
from calendar_sync.credentials.refresher import TokenRefresher
from calendar_sync.errors import SyncEngineError

logger = logging.getLogger(__name__)

DEFAULT_RESOURCE_ID = "primary"


@dataclass
class DisconnectReport:
    """What `disconnect_account` removed."""

    account_id: str
    channels_removed: int = 0
    channels_stopped: int = 0
    events_removed: int = 0
    credential_removed: bool = False
    token_revoked: bool = False


class ChannelSetupService:
    """Creates and tears down an account's subscriptions."""

    def __init__(
        self,
        refresher: TokenRefresher,
        registry: ChannelRegistry,
        events: EventStore,
        client: GoogleCalendarClient,
        oauth: GoogleOAuth,
        webhook_url: str | None,
    ):
        self.refresher = refresher
        self.store = refresher.store
        self.registry = registry
        self.events = events
        self.client = client
        self.oauth = oauth
        self.webhook_url = webhook_url

    async def connect_account(
        self,
        account_id: str,
        access_token: str,
        refresh_token: str | None,
        expires_at: datetime,
        resource_id: str = DEFAULT_RESOURCE_ID,
        scope: str | None = None,
    ) -> ChannelRecord:
        """Store an authorization and subscribe a new channel.

        An existing channel for the same resource is replaced and stopped
        with the provider.

        Raises:
            RuntimeError: WEBHOOK_URL is not configured
            ProviderError: The subscribe call failed
        """
        if not self.webhook_url:
            raise RuntimeError("WEBHOOK_URL is not configured")

        await self.store.save_authorization(
            account_id, access_token, refresh_token, expires_at, scope=scope
        )
        token = await self.refresher.ensure_valid_access_token(account_id)

        previous = await self.registry.get_for_resource(account_id, resource_id)

        channel_id = str(uuid.uuid4())
        channel_token = secrets.token_urlsafe(32)
        watch = await self.client.watch(
            token, resource_id, channel_id, self.webhook_url, token=channel_token
        )

        channel = await self.registry.upsert(
            account_id,
            resource_id,
            channel_id,
            watch.expiration_at,
            provider_resource_id=watch.resource_id,
            channel_token=channel_token,
        )

        if previous is not None and previous.channel_id != channel_id:
            await self._stop(token, previous)

        logger.info(
            f"Connected account {account_id}: channel {channel_id} on {resource_id} "
            f"expires {watch.expiration_at.isoformat()}"
        )
        return channel

    async def connect_with_code(
        self,
        account_id: str,
        code: str,
        resource_id: str = DEFAULT_RESOURCE_ID,
    ) -> ChannelRecord:
        """Exchange an authorization code, then `connect_account`."""
        tokens = await self.oauth.exchange_code(code)
        expires_at = tokens.expires_at or utc_now() + timedelta(hours=1)
        return await self.connect_account(
            account_id,
            tokens.access_token,
            tokens.refresh_token,
            expires_at,
            resource_id=resource_id,
            scope=tokens.scope or None,
        )

    async def disconnect_account(self, account_id: str) -> DisconnectReport:
        """Remove everything held for the account."""
        report = DisconnectReport(account_id=account_id)
        credential = await self.store.get(account_id)
        channels = await self.registry.list_for_account(account_id)

        token = None
        if channels and credential is not None:
            try:
                token = await self.refresher.ensure_valid_access_token(account_id)
            except SyncEngineError as e:
                logger.warning(
                    f"No usable token for account {account_id}, "
                    f"channels are left to expire on the provider: {e}"
                )

        for channel in channels:
            if token and await self._stop(token, channel):
                report.channels_stopped += 1
            if await self.registry.delete(channel.channel_id):
                report.channels_removed += 1

        report.events_removed = await self.events.delete_for_account(account_id)

        if credential is not None and credential.refresh_token:
            try:
                report.token_revoked = await self.oauth.revoke_token(credential.refresh_token)
            except SyncEngineError as e:
                logger.warning(f"Revoking token for account {account_id} failed: {e}")

        report.credential_removed = await self.store.delete(account_id)

        logger.info(
            f"Disconnected account {account_id}: {report.channels_removed} channels, "
            f"{report.events_removed} events removed"
        )
        return report

    async def _stop(self, access_token: str, channel: ChannelRecord) -> bool:
        if not channel.provider_resource_id:
            return False
        try:
            await self.client.stop_channel(
                access_token, channel.channel_id, channel.provider_resource_id
            )
        except SyncEngineError as e:
            logger.warning(f"Stopping channel {channel.channel_id} failed: {e}")
            return False
        return True
