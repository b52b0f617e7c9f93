"""Mapping of provider change-feed items onto the local event schema."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any

from calendar_sync.database.models import EventStatus


@dataclass
class Attendee:
    """A person attending an event."""

    email: str
    display_name: str | None = None
    response_status: str | None = None
    is_organizer: bool = False
    is_self: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "email": self.email,
            "display_name": self.display_name,
            "response_status": self.response_status,
            "is_organizer": self.is_organizer,
            "is_self": self.is_self,
        }


def normalize_attendees(raw: list[dict[str, Any]] | None) -> list[Attendee]:
    """Convert provider attendees, dropping entries without an email.

    Entries without an email are non-person resources such as meeting rooms.
    Provider order is preserved.
    """
    attendees = []
    for item in raw or []:
        email = (item.get("email") or "").strip()
        if not email:
            continue
        attendees.append(
            Attendee(
                email=email,
                display_name=item.get("displayName"),
                response_status=item.get("responseStatus"),
                is_organizer=bool(item.get("organizer", False)),
                is_self=bool(item.get("self", False)),
            )
        )
    return attendees


def attendee_emails(attendees: list[dict[str, Any]] | list[Attendee]) -> frozenset[str]:
    """Case-insensitive set of attendee emails, used for change detection."""
    emails = set()
    for attendee in attendees:
        email = attendee.email if isinstance(attendee, Attendee) else attendee.get("email")
        if email:
            emails.add(email.strip().lower())
    return frozenset(emails)


def _parse_time(data: dict[str, Any] | None) -> tuple[datetime | None, bool]:
    """Parse a provider start/end object. Returns (utc datetime, is_all_day)."""
    if not data:
        return None, False

    if data.get("dateTime"):
        parsed = datetime.fromisoformat(data["dateTime"].replace("Z", "+00:00"))
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed.astimezone(timezone.utc), False

    if data.get("date"):
        day = date.fromisoformat(data["date"])
        return datetime(day.year, day.month, day.day, tzinfo=timezone.utc), True

    return None, False


@dataclass
class ProviderEvent:
    """A non-cancelled item from the change feed."""

    id: str
    summary: str
    description: str | None = None
    start: datetime | None = None
    end: datetime | None = None
    is_all_day: bool = False
    status: str = EventStatus.CONFIRMED.value
    attendees: list[Attendee] = field(default_factory=list)
    html_link: str | None = None
    etag: str | None = None
    updated: datetime | None = None
    raw_data: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> ProviderEvent:
        """Create from a Google Calendar API event resource."""
        start, is_all_day = _parse_time(data.get("start"))
        end, _ = _parse_time(data.get("end"))

        updated = None
        if data.get("updated"):
            updated = datetime.fromisoformat(data["updated"].replace("Z", "+00:00"))

        return cls(
            id=data["id"],
            summary=data.get("summary") or "(No title)",
            description=data.get("description"),
            start=start,
            end=end,
            is_all_day=is_all_day,
            status=data.get("status", EventStatus.CONFIRMED.value),
            attendees=normalize_attendees(data.get("attendees")),
            html_link=data.get("htmlLink"),
            etag=data.get("etag"),
            updated=updated,
            raw_data=data,
        )

    def to_row(self, account_id: str, resource_id: str) -> dict[str, Any]:
        """Column values for the event store."""
        return {
            "account_id": account_id,
            "resource_id": resource_id,
            "event_id": self.id,
            "title": self.summary,
            "description": self.description,
            "start_time": self.start,
            "end_time": self.end,
            "is_all_day": self.is_all_day,
            "status": self.status,
            "attendees": [attendee.to_dict() for attendee in self.attendees],
            "html_link": self.html_link,
            "raw_payload": self.raw_data,
            "etag": self.etag,
            "last_modified": self.updated,
        }


def partition_changes(
    items: list[dict[str, Any]],
) -> tuple[list[ProviderEvent], list[str]]:
    """Split change-feed items into upserts and deletion ids.

    Every cancelled item becomes a deletion; no cancelled item is ever
    upserted. When the same id appears more than once the last occurrence
    wins.
    """
    latest: dict[str, dict[str, Any]] = {}
    for item in items:
        event_id = item.get("id")
        if not event_id:
            continue
        latest.pop(event_id, None)
        latest[event_id] = item

    upserts: list[ProviderEvent] = []
    deletions: list[str] = []
    for event_id, item in latest.items():
        if item.get("status") == EventStatus.CANCELLED.value:
            deletions.append(event_id)
        else:
            upserts.append(ProviderEvent.from_api(item))
    return upserts, deletions
