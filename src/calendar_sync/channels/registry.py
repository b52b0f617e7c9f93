"""Channel registry.

Durable record of every active watch channel. At most one channel exists per
`(account_id, resource_id)`; `upsert` enforces this with the pair as the
conflict target.

## Concurrency

The renewal sweep writes `expiration_at`, the sync path writes
`last_sync_cursor`. Each is a column-only UPDATE keyed on `channel_id`, so
neither can clobber the other.

Syncs for one channel are serialized by a lease held in
`sync_lease_owner` / `sync_lease_expires_at`. Taking the lease is a single
conditional UPDATE; it succeeds when the lease is free, expired, or already
held by the same owner.

An expired lease can be taken over while its first holder is still running,
so every write a sync makes is fenced on the owner: the holder extends the
lease after each page, and the event batch and the cursor are only written
while `sync_lease_owner` still names it. Removing a channel deletes the row
before its events in one transaction, so a fenced write either lands before
the removal (and is deleted with it) or finds no row and aborts.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import delete, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from calendar_sync.clock import as_utc, utc_now
from calendar_sync.database.connection import get_db
from calendar_sync.database.models import CalendarEvent, WatchChannel
from calendar_sync.database.upsert import upsert_statement
from calendar_sync.errors import ChannelNotFoundError

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], AbstractAsyncContextManager[AsyncSession]]


@dataclass(frozen=True)
class ChannelRecord:
    """Snapshot of a watch channel row."""

    channel_id: str
    account_id: str
    resource_id: str
    expiration_at: datetime
    last_sync_cursor: str | None = None
    provider_resource_id: str | None = None
    channel_token: str | None = None
    last_synced_at: datetime | None = None

    @classmethod
    def from_row(cls, row: WatchChannel) -> ChannelRecord:
        return cls(
            channel_id=row.channel_id,
            account_id=row.account_id,
            resource_id=row.resource_id,
            expiration_at=as_utc(row.expiration_at),
            last_sync_cursor=row.last_sync_cursor,
            provider_resource_id=row.provider_resource_id,
            channel_token=row.channel_token,
            last_synced_at=as_utc(row.last_synced_at),
        )


@dataclass(frozen=True)
class SyncLease:
    """A held per-channel sync lease."""

    channel_id: str
    owner: str
    ttl: timedelta


class ChannelRegistry:
    """Keyed persistence for watch channels."""

    def __init__(
        self,
        session_factory: SessionFactory = get_db,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._session = session_factory
        self._clock = clock

    async def upsert(
        self,
        account_id: str,
        resource_id: str,
        channel_id: str,
        expiration_at: datetime,
        provider_resource_id: str | None = None,
        channel_token: str | None = None,
        last_sync_cursor: str | None = None,
    ) -> ChannelRecord:
        """Create the channel for `(account_id, resource_id)` or replace it.

        Replacing a channel resets its cursor and releases any sync lease.
        """
        values = {
            "id": uuid.uuid4(),
            "channel_id": channel_id,
            "account_id": account_id,
            "resource_id": resource_id,
            "provider_resource_id": provider_resource_id,
            "channel_token": channel_token,
            "expiration_at": as_utc(expiration_at),
            "last_sync_cursor": last_sync_cursor,
            "last_synced_at": None,
            "sync_lease_owner": None,
            "sync_lease_expires_at": None,
        }
        async with self._session() as session:
            await session.execute(
                upsert_statement(
                    WatchChannel,
                    [values],
                    ["account_id", "resource_id"],
                    [
                        "channel_id",
                        "provider_resource_id",
                        "channel_token",
                        "expiration_at",
                        "last_sync_cursor",
                        "last_synced_at",
                        "sync_lease_owner",
                        "sync_lease_expires_at",
                    ],
                )
            )
            await session.commit()

        logger.info(f"Registered channel {channel_id} for {account_id}/{resource_id}")

        return ChannelRecord(
            channel_id=channel_id,
            account_id=account_id,
            resource_id=resource_id,
            expiration_at=as_utc(expiration_at),
            last_sync_cursor=last_sync_cursor,
            provider_resource_id=provider_resource_id,
            channel_token=channel_token,
        )

    async def get(self, channel_id: str) -> ChannelRecord | None:
        """Point lookup by channel id."""
        async with self._session() as session:
            result = await session.execute(
                select(WatchChannel).where(WatchChannel.channel_id == channel_id)
            )
            row = result.scalar_one_or_none()
        return ChannelRecord.from_row(row) if row else None

    async def require(self, channel_id: str) -> ChannelRecord:
        """Like `get`, but raises `ChannelNotFoundError` for unknown channels."""
        channel = await self.get(channel_id)
        if channel is None:
            raise ChannelNotFoundError(channel_id)
        return channel

    async def get_for_resource(
        self, account_id: str, resource_id: str
    ) -> ChannelRecord | None:
        async with self._session() as session:
            result = await session.execute(
                select(WatchChannel).where(
                    WatchChannel.account_id == account_id,
                    WatchChannel.resource_id == resource_id,
                )
            )
            row = result.scalar_one_or_none()
        return ChannelRecord.from_row(row) if row else None

    async def list_for_account(self, account_id: str) -> list[ChannelRecord]:
        async with self._session() as session:
            result = await session.execute(
                select(WatchChannel)
                .where(WatchChannel.account_id == account_id)
                .order_by(WatchChannel.resource_id)
            )
            return [ChannelRecord.from_row(row) for row in result.scalars()]

    async def list_expiring(self, threshold: datetime) -> list[ChannelRecord]:
        """Channels whose `expiration_at` is strictly before `threshold`."""
        async with self._session() as session:
            result = await session.execute(
                select(WatchChannel)
                .where(WatchChannel.expiration_at < as_utc(threshold))
                .order_by(WatchChannel.expiration_at)
            )
            return [ChannelRecord.from_row(row) for row in result.scalars()]

    async def update_expiration(self, channel_id: str, expiration_at: datetime) -> bool:
        """Write `expiration_at` only. Returns False if the channel is gone."""
        async with self._session() as session:
            result = await session.execute(
                update(WatchChannel)
                .where(WatchChannel.channel_id == channel_id)
                .values(expiration_at=as_utc(expiration_at))
            )
            await session.commit()
        return result.rowcount == 1

    async def update_cursor(
        self,
        channel_id: str,
        cursor: str,
        lease_owner: str | None = None,
    ) -> bool:
        """Write `last_sync_cursor` (and `last_synced_at`) only.

        With `lease_owner`, the write only happens while that owner holds the
        lease. Returns False when nothing was written.
        """
        conditions = [WatchChannel.channel_id == channel_id]
        if lease_owner is not None:
            conditions.append(WatchChannel.sync_lease_owner == lease_owner)

        async with self._session() as session:
            result = await session.execute(
                update(WatchChannel)
                .where(*conditions)
                .values(last_sync_cursor=cursor, last_synced_at=self._clock())
            )
            await session.commit()
        return result.rowcount == 1

    async def acquire_sync_lease(
        self, channel_id: str, owner: str, ttl: timedelta
    ) -> bool:
        """Try to take the per-channel sync lease.

        Returns True when `owner` now holds the lease.
        """
        now = self._clock()
        async with self._session() as session:
            result = await session.execute(
                update(WatchChannel)
                .where(
                    WatchChannel.channel_id == channel_id,
                    or_(
                        WatchChannel.sync_lease_owner.is_(None),
                        WatchChannel.sync_lease_expires_at.is_(None),
                        WatchChannel.sync_lease_expires_at < now,
                        WatchChannel.sync_lease_owner == owner,
                    ),
                )
                .values(sync_lease_owner=owner, sync_lease_expires_at=now + ttl)
            )
            await session.commit()
        return result.rowcount == 1

    async def extend_sync_lease(self, lease: SyncLease) -> bool:
        """Push the lease expiry out by its ttl. False if the lease was lost."""
        async with self._session() as session:
            result = await session.execute(
                update(WatchChannel)
                .where(
                    WatchChannel.channel_id == lease.channel_id,
                    WatchChannel.sync_lease_owner == lease.owner,
                )
                .values(sync_lease_expires_at=self._clock() + lease.ttl)
            )
            await session.commit()
        return result.rowcount == 1

    async def release_sync_lease(self, channel_id: str, owner: str) -> None:
        """Release the lease if `owner` still holds it."""
        async with self._session() as session:
            await session.execute(
                update(WatchChannel)
                .where(
                    WatchChannel.channel_id == channel_id,
                    WatchChannel.sync_lease_owner == owner,
                )
                .values(sync_lease_owner=None, sync_lease_expires_at=None)
            )
            await session.commit()

    async def remove_with_events(self, channel: ChannelRecord) -> int:
        """Delete the channel and every event of its resource in one transaction.

        Returns the number of events removed.
        """
        async with self._session() as session:
            await session.execute(
                delete(WatchChannel).where(WatchChannel.channel_id == channel.channel_id)
            )
            result = await session.execute(
                delete(CalendarEvent).where(
                    CalendarEvent.account_id == channel.account_id,
                    CalendarEvent.resource_id == channel.resource_id,
                )
            )
            await session.commit()
        return result.rowcount

    async def delete(self, channel_id: str) -> bool:
        async with self._session() as session:
            result = await session.execute(
                delete(WatchChannel).where(WatchChannel.channel_id == channel_id)
            )
            await session.commit()
        return result.rowcount > 0
