"""Persistence layer: engine lifecycle, models, token encryption and upserts."""

from calendar_sync.database.connection import (
    close_db,
    create_tables,
    get_db,
    init_db,
    ping_db,
)
from calendar_sync.database.models import (
    Base,
    CalendarEvent,
    Credential,
    EventStatus,
    SyncStatus,
    WatchChannel,
)

__all__ = [
    "get_db",
    "init_db",
    "close_db",
    "create_tables",
    "ping_db",
    "Base",
    "Credential",
    "WatchChannel",
    "CalendarEvent",
    "EventStatus",
    "SyncStatus",
]
