"""Calendar data path.

Provider client, mapping of provider items onto the local schema, the event
store and the delta sync engine that ties them together.

## Google Calendar API

Uses the Google Calendar API v3:
- https://developers.google.com/calendar/api/v3/reference
- https://developers.google.com/calendar/api/guides/sync
"""

from calendar_sync.calendar.event_store import EventStore
from calendar_sync.calendar.google_calendar import (
    ChangePage,
    GoogleCalendarClient,
    WatchResponse,
)
from calendar_sync.calendar.mapping import (
    Attendee,
    ProviderEvent,
    normalize_attendees,
    partition_changes,
)
from calendar_sync.calendar.sync import DeltaSyncEngine, SyncResult

__all__ = [
    "Attendee",
    "ChangePage",
    "DeltaSyncEngine",
    "EventStore",
    "GoogleCalendarClient",
    "ProviderEvent",
    "SyncResult",
    "WatchResponse",
    "normalize_attendees",
    "partition_changes",
]
