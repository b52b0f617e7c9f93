"""Event store.

Locally materialized calendar events, keyed by
`(account_id, resource_id, event_id)`. Upserts and deletions are keyed on
stable provider ids, so applying the same change page twice leaves the
store unchanged.

A batch written on behalf of a sync is fenced on the watch channel row: the
same transaction first touches that row, optionally requiring the sync's
lease owner, and nothing is written when the row is gone or the lease moved.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Sequence
from contextlib import AbstractAsyncContextManager
from typing import Any

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from calendar_sync.calendar.mapping import attendee_emails
from calendar_sync.database.connection import get_db
from calendar_sync.database.models import CalendarEvent, WatchChannel
from calendar_sync.database.upsert import upsert_statement
from calendar_sync.errors import SyncLeaseLostError

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], AbstractAsyncContextManager[AsyncSession]]

# Bound parameters per statement stay under SQLite's variable limit
_BATCH_SIZE = 50

_CONFLICT_COLUMNS = ("account_id", "resource_id", "event_id")
_UPDATE_COLUMNS = (
    "title",
    "description",
    "start_time",
    "end_time",
    "is_all_day",
    "status",
    "attendees",
    "html_link",
    "raw_payload",
    "etag",
    "last_modified",
)


class EventStore:
    """Batch persistence for materialized events."""

    def __init__(self, session_factory: SessionFactory = get_db):
        self._session = session_factory

    async def apply_changes(
        self,
        account_id: str,
        resource_id: str,
        upserts: Sequence[dict[str, Any]],
        deletions: Sequence[str],
        channel_id: str | None = None,
        lease_owner: str | None = None,
    ) -> None:
        """Batch-upsert and batch-delete in one transaction.

        Args:
            account_id: Owning account
            resource_id: Calendar the events belong to
            upserts: Event rows (see `ProviderEvent.to_row`)
            deletions: Provider event ids to remove
            channel_id: Watch channel the batch belongs to; the write aborts
                if the channel no longer exists
            lease_owner: Sync lease the channel must still be held under

        Raises:
            SyncLeaseLostError: The channel is gone or its lease changed hands
        """
        if not upserts and not deletions:
            return

        async with self._session() as session:
            if channel_id is not None:
                await self._fence(session, channel_id, lease_owner)

            rows = [{"id": uuid.uuid4(), **row} for row in upserts]
            for start in range(0, len(rows), _BATCH_SIZE):
                await session.execute(
                    upsert_statement(
                        CalendarEvent,
                        rows[start : start + _BATCH_SIZE],
                        _CONFLICT_COLUMNS,
                        _UPDATE_COLUMNS,
                    )
                )
            event_ids = list(deletions)
            for start in range(0, len(event_ids), _BATCH_SIZE):
                await session.execute(
                    delete(CalendarEvent).where(
                        CalendarEvent.account_id == account_id,
                        CalendarEvent.resource_id == resource_id,
                        CalendarEvent.event_id.in_(event_ids[start : start + _BATCH_SIZE]),
                    )
                )
            await session.commit()

        logger.debug(
            f"Applied {len(upserts)} upserts and {len(deletions)} deletions "
            f"for {account_id}/{resource_id}"
        )

    @staticmethod
    async def _fence(session: AsyncSession, channel_id: str, lease_owner: str | None) -> None:
        conditions = [WatchChannel.channel_id == channel_id]
        if lease_owner is not None:
            conditions.append(WatchChannel.sync_lease_owner == lease_owner)

        # No-op write: locks the row until commit
        result = await session.execute(
            update(WatchChannel)
            .where(*conditions)
            .values(sync_lease_owner=WatchChannel.sync_lease_owner)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise SyncLeaseLostError(channel_id, lease_owner)

    async def get_attendee_emails(
        self,
        account_id: str,
        resource_id: str,
        event_ids: Sequence[str],
    ) -> dict[str, frozenset[str]]:
        """Stored attendee email sets for the given events that already exist."""
        if not event_ids:
            return {}

        async with self._session() as session:
            result = await session.execute(
                select(CalendarEvent.event_id, CalendarEvent.attendees).where(
                    CalendarEvent.account_id == account_id,
                    CalendarEvent.resource_id == resource_id,
                    CalendarEvent.event_id.in_(list(event_ids)),
                )
            )
            return {row.event_id: attendee_emails(row.attendees or []) for row in result}

    async def delete_for_resource(self, account_id: str, resource_id: str) -> int:
        async with self._session() as session:
            result = await session.execute(
                delete(CalendarEvent).where(
                    CalendarEvent.account_id == account_id,
                    CalendarEvent.resource_id == resource_id,
                )
            )
            await session.commit()
        return result.rowcount

    async def delete_for_account(self, account_id: str) -> int:
        async with self._session() as session:
            result = await session.execute(
                delete(CalendarEvent).where(CalendarEvent.account_id == account_id)
            )
            await session.commit()
        return result.rowcount

    async def list_events(
        self,
        account_id: str,
        resource_id: str | None = None,
    ) -> list[CalendarEvent]:
        query = select(CalendarEvent).where(CalendarEvent.account_id == account_id)
        if resource_id is not None:
            query = query.where(CalendarEvent.resource_id == resource_id)

        async with self._session() as session:
            result = await session.execute(query.order_by(CalendarEvent.event_id))
            return list(result.scalars().all())
