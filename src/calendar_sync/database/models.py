"""Database models for the calendar synchronization engine.

## Security Notes

- OAuth tokens are encrypted at rest using Fernet symmetric encryption
- The encryption key is derived from the application secret
- PostgreSQL should be configured with SSL and disk encryption

## Schema Overview

```
credentials        one row per account (access/refresh token, sync health)
watch_channels     one row per (account, resource) subscription
calendar_events    materialized events keyed by (account, resource, event id)
```

Events only reference their channel through `resource_id`; a channel can be
recreated without moving event rows.

## Concurrency

Rows in `credentials` and `watch_channels` are shared between the webhook
path and the renewal sweep. They are only ever mutated with targeted
column updates keyed on `account_id` / `channel_id`, never by writing a
whole row back from application memory.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Index,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


JSONType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """Base class for all database models."""

    type_annotation_map = {
        dict[str, Any]: JSONType,
    }


class SyncStatus(str, Enum):
    """Account-level sync health."""

    ACTIVE = "active"
    REAUTH_REQUIRED = "reauth_required"  # Refresh token rejected


class EventStatus(str, Enum):
    """Provider event status."""

    CONFIRMED = "confirmed"
    TENTATIVE = "tentative"
    CANCELLED = "cancelled"


class Credential(Base):
    """OAuth credential for one account.

    Tokens are encrypted at rest. The encryption happens in the store layer,
    not at the database level, to allow for key rotation.
    """

    __tablename__ = "credentials"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    account_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)

    # Tokens (encrypted)
    access_token_encrypted: Mapped[str | None] = mapped_column(Text)
    refresh_token_encrypted: Mapped[str | None] = mapped_column(Text)
    access_token_expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True)
    )
    token_type: Mapped[str] = mapped_column(String(32), default="Bearer")
    scope: Mapped[str | None] = mapped_column(Text)  # Space-separated scopes

    # Sync health (surfaced to whatever manages authorization)
    sync_status: Mapped[str] = mapped_column(
        String(32), default=SyncStatus.ACTIVE.value, nullable=False
    )
    sync_status_reason: Mapped[str | None] = mapped_column(Text)
    sync_status_changed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True)
    )

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    def __repr__(self) -> str:
        return f"<Credential account_id={self.account_id}>"


class WatchChannel(Base):
    """A provider-side push subscription for one calendar resource.

    `resource_id` is the logical calendar id used for API calls ("primary");
    `provider_resource_id` is the opaque id the provider assigned to the
    watched resource and echoes back in notification headers.
    """

    __tablename__ = "watch_channels"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    channel_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    account_id: Mapped[str] = mapped_column(String(255), nullable=False)
    resource_id: Mapped[str] = mapped_column(String(255), nullable=False)
    provider_resource_id: Mapped[str | None] = mapped_column(String(255))
    channel_token: Mapped[str | None] = mapped_column(String(255))

    expiration_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    # Delta sync state. NULL cursor means "never synced, do a full sync".
    last_sync_cursor: Mapped[str | None] = mapped_column(Text)
    last_synced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    # Per-channel sync lease
    sync_lease_owner: Mapped[str | None] = mapped_column(String(64))
    sync_lease_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        UniqueConstraint("account_id", "resource_id", name="uq_channel_account_resource"),
        Index("ix_watch_channels_expiration", "expiration_at"),
        Index("ix_watch_channels_account", "account_id"),
    )

    def __repr__(self) -> str:
        return f"<WatchChannel {self.channel_id} resource={self.resource_id}>"


class CalendarEvent(Base):
    """A calendar event materialized from the provider's change feed.

    Never stored with status "cancelled": cancellations are applied as deletions.
    """

    __tablename__ = "calendar_events"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    account_id: Mapped[str] = mapped_column(String(255), nullable=False)
    resource_id: Mapped[str] = mapped_column(String(255), nullable=False)
    event_id: Mapped[str] = mapped_column(String(1024), nullable=False)

    # Event data
    title: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    start_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    end_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    is_all_day: Mapped[bool] = mapped_column(Boolean, default=False)
    status: Mapped[str] = mapped_column(String(16), default=EventStatus.CONFIRMED.value)
    attendees: Mapped[list[dict[str, Any]]] = mapped_column(JSONType, default=list)
    html_link: Mapped[str | None] = mapped_column(Text)
    raw_payload: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)

    # Concurrency / audit
    etag: Mapped[str | None] = mapped_column(String(255))
    last_modified: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        UniqueConstraint(
            "account_id", "resource_id", "event_id", name="uq_event_account_resource"
        ),
        Index("ix_calendar_events_account", "account_id"),
        Index("ix_calendar_events_time", "start_time", "end_time"),
    )

    def __repr__(self) -> str:
        return f"<CalendarEvent {self.event_id} {self.title[:30]}>"
