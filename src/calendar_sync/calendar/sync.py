"""Delta sync engine.

Pulls a channel's change feed from the provider and materializes it into the
event store.

## Sync Process

1. Get a valid access token for the channel's account
2. Request changes since the cursor, or a full listing from the start of
   today when there is no cursor
3. Drain every page; nothing is written while pages are outstanding
4. Split items into upserts and deletions (cancelled items)
5. Apply both in one store transaction
6. Persist the provider's next cursor, only after step 5 committed
7. Hand new and attendee-changed events to the effect dispatcher

If the process dies between 5 and 6 the next notification replays the same
page against the old cursor. Upserts and deletions are keyed on provider ids,
so the replay converges to the same state.

## Leases

A sync run under a `SyncLease` extends it after every drained page, and the
store batch and the cursor write are both fenced on it. Losing the lease
(or the channel) raises `SyncLeaseLostError`; whatever was not yet committed
is left to the sync that took over.

## Cursor expiry

A 410 on a delta request means the provider dropped the history behind the
cursor. The engine retries exactly once without a cursor. A second expiry
(or an expiry on a request that had no cursor) is raised as `ProviderError`.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy.exc import SQLAlchemyError

from calendar_sync.calendar.event_store import EventStore
from calendar_sync.calendar.google_calendar import GoogleCalendarClient
from calendar_sync.calendar.mapping import ProviderEvent, attendee_emails, partition_changes
from calendar_sync.channels.registry import ChannelRecord, ChannelRegistry, SyncLease
from calendar_sync.clock import start_of_day, utc_now
from calendar_sync.credentials.refresher import TokenRefresher
from calendar_sync.effects import ChangeKind, EffectDispatcher
from calendar_sync.errors import CursorExpiredError, ProviderError, SyncLeaseLostError

logger = logging.getLogger(__name__)


@dataclass
class SyncResult:
    """Result of one delta sync."""

    channel_id: str
    cursor: str | None = None
    pages: int = 0
    items: int = 0
    upserted: int = 0
    deleted: int = 0
    dispatched: int = 0
    full_sync: bool = False
    resynced: bool = False
    synced_at: datetime = field(default_factory=utc_now)


@dataclass
class _Feed:
    items: list[dict] = field(default_factory=list)
    next_sync_token: str | None = None
    pages: int = 0


class DeltaSyncEngine:
    """Applies a channel's provider change feed to the event store.

    Example:
        ```python
        engine = DeltaSyncEngine(refresher, registry, events, client, dispatcher)

        result = await engine.sync(channel, channel.last_sync_cursor)
        print(result.cursor, result.upserted, result.deleted)
        ```
    """

    def __init__(
        self,
        refresher: TokenRefresher,
        registry: ChannelRegistry,
        events: EventStore,
        client: GoogleCalendarClient,
        dispatcher: EffectDispatcher,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.refresher = refresher
        self.registry = registry
        self.events = events
        self.client = client
        self.dispatcher = dispatcher
        self._clock = clock

    async def sync(
        self,
        channel: ChannelRecord,
        cursor: str | None,
        lease: SyncLease | None = None,
    ) -> SyncResult:
        """Sync one channel starting from `cursor` (None forces a full sync).

        `lease` is the channel's sync lease when the caller holds one.

        Raises:
            CredentialMissingError, RefreshDeniedError: from the token refresher
            TokenInvalidError: Provider rejected the access token
            ProviderUnavailableError: Transient provider failure
            ProviderError: Any other provider failure, including a second
                cursor expiry
            SyncLeaseLostError: The lease was taken over or the channel removed
        """
        access_token = await self.refresher.ensure_valid_access_token(channel.account_id)
        return await self._sync(channel, access_token, cursor, lease, allow_resync=True)

    async def _sync(
        self,
        channel: ChannelRecord,
        access_token: str,
        cursor: str | None,
        lease: SyncLease | None,
        allow_resync: bool,
    ) -> SyncResult:
        try:
            feed = await self._fetch_feed(access_token, channel.resource_id, cursor, lease)
        except CursorExpiredError as e:
            if cursor is None or not allow_resync:
                raise ProviderError(
                    f"Change feed for channel {channel.channel_id} expired during full sync",
                    status_code=e.status_code,
                    response_body=e.response_body,
                ) from e
            logger.warning(
                f"Cursor expired for channel {channel.channel_id}, running full resync"
            )
            result = await self._sync(channel, access_token, None, lease, allow_resync=False)
            result.resynced = True
            return result

        lease_owner = lease.owner if lease else None
        upserts, deletions = partition_changes(feed.items)
        prior = await self._prior_attendees(channel, upserts)

        await self.events.apply_changes(
            channel.account_id,
            channel.resource_id,
            [event.to_row(channel.account_id, channel.resource_id) for event in upserts],
            deletions,
            channel_id=channel.channel_id,
            lease_owner=lease_owner,
        )

        if feed.next_sync_token:
            written = await self.registry.update_cursor(
                channel.channel_id, feed.next_sync_token, lease_owner=lease_owner
            )
            if not written:
                logger.warning(
                    f"Cursor for channel {channel.channel_id} not written: "
                    f"lease lost or channel removed"
                )
                raise SyncLeaseLostError(channel.channel_id, lease_owner)
        else:
            logger.warning(
                f"Provider returned no sync token for channel {channel.channel_id}; "
                f"keeping previous cursor"
            )

        result = SyncResult(
            channel_id=channel.channel_id,
            cursor=feed.next_sync_token or cursor,
            pages=feed.pages,
            items=len(feed.items),
            upserted=len(upserts),
            deleted=len(deletions),
            full_sync=cursor is None,
        )
        result.dispatched = self._dispatch(channel.account_id, upserts, prior)

        logger.info(
            f"Synced channel {channel.channel_id}: {result.items} items in "
            f"{result.pages} pages, {result.upserted} upserted, {result.deleted} deleted, "
            f"{result.dispatched} dispatched"
        )
        return result

    async def _fetch_feed(
        self,
        access_token: str,
        resource_id: str,
        cursor: str | None,
        lease: SyncLease | None = None,
    ) -> _Feed:
        """Drain every page of the change feed, extending `lease` after each."""
        time_min = None if cursor else start_of_day(self._clock())
        feed = _Feed()
        page_token = None

        while True:
            page = await self.client.list_changes(
                access_token,
                resource_id,
                sync_token=cursor,
                time_min=time_min,
                page_token=page_token,
            )
            feed.pages += 1
            if lease is not None and not await self.registry.extend_sync_lease(lease):
                logger.warning(
                    f"Sync lease on channel {lease.channel_id} lost after page {feed.pages}"
                )
                raise SyncLeaseLostError(lease.channel_id, lease.owner)
            feed.items.extend(page.items)
            if page.next_sync_token:
                feed.next_sync_token = page.next_sync_token

            page_token = page.next_page_token
            if not page_token:
                return feed

    async def _prior_attendees(
        self,
        channel: ChannelRecord,
        upserts: list[ProviderEvent],
    ) -> dict[str, frozenset[str]] | None:
        """Stored attendee sets for events about to be upserted.

        None means the lookup failed and every upsert is dispatched.
        """
        try:
            return await self.events.get_attendee_emails(
                channel.account_id,
                channel.resource_id,
                [event.id for event in upserts],
            )
        except SQLAlchemyError as e:
            logger.warning(
                f"Prior attendee lookup failed for channel {channel.channel_id}: {e}"
            )
            return None

    def _dispatch(
        self,
        account_id: str,
        upserts: list[ProviderEvent],
        prior: dict[str, frozenset[str]] | None,
    ) -> int:
        dispatched = 0
        for event in upserts:
            if prior is None or event.id not in prior:
                kind = ChangeKind.CREATED
            elif attendee_emails(event.attendees) != prior[event.id]:
                kind = ChangeKind.ATTENDEES_CHANGED
            else:
                continue

            try:
                self.dispatcher.notify(account_id, event.id, kind)
            except Exception:
                logger.exception(f"Dispatching {kind.value} for event {event.id} failed")
                continue
            dispatched += 1
        return dispatched
