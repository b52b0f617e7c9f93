"""Pytest fixtures for calendar sync engine tests.

This module provides test fixtures that ensure:
1. No external API calls are made (Google OAuth and Calendar are faked with
   httpx.MockTransport)
2. Every test gets its own in-memory SQLite database
3. Isolated test environment with controlled configuration
"""

import json
import os
from collections import deque
from datetime import datetime, timedelta, timezone
from typing import Any
from urllib.parse import parse_qs

import httpx
import pytest

# Set test environment BEFORE importing application modules
# This ensures no real services are contacted during test collection
os.environ.setdefault("SECRET_KEY", "test-secret-key-at-least-32-characters-long")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("GOOGLE_CLIENT_ID", "test-client-id")
os.environ.setdefault("GOOGLE_CLIENT_SECRET", "test-client-secret")
os.environ.setdefault("WEBHOOK_URL", "https://sync.example.com/webhooks/google-calendar")
os.environ.setdefault("INTERNAL_API_KEY", "test-internal-key")
os.environ.setdefault("ENVIRONMENT", "development")

from calendar_sync.auth.google import GoogleOAuth
from calendar_sync.calendar.event_store import EventStore
from calendar_sync.calendar.google_calendar import GoogleCalendarClient
from calendar_sync.calendar.sync import DeltaSyncEngine
from calendar_sync.channels.registry import ChannelRegistry
from calendar_sync.channels.renewer import ChannelRenewer
from calendar_sync.channels.setup import ChannelSetupService
from calendar_sync.credentials.refresher import TokenRefresher
from calendar_sync.credentials.store import CredentialStore
from calendar_sync.effects import ChangeKind
from calendar_sync.notifications.receiver import NotificationReceiver
from calendar_sync.services import SyncServices

API_BASE = "https://www.googleapis.com/calendar/v3"
TOKEN_URL = "https://oauth2.googleapis.com/token"
WEBHOOK_URL = "https://sync.example.com/webhooks/google-calendar"

FIXED_NOW = datetime(2025, 1, 1, 9, 30, tzinfo=timezone.utc)


# =============================================================================
# Test Isolation Fixtures
# =============================================================================


@pytest.fixture(autouse=True)
def reset_settings_cache():
    """Reset settings cache before each test to ensure clean state."""
    from calendar_sync.config import get_settings
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
async def db():
    """Fresh in-memory database with all tables."""
    from calendar_sync.database.connection import close_db, create_tables, init_db

    await init_db("sqlite+aiosqlite:///:memory:")
    await create_tables()
    yield
    await close_db()


# =============================================================================
# Fake Google provider
# =============================================================================


def event_item(
    event_id: str,
    status: str = "confirmed",
    summary: str = "Meeting",
    attendees: list[str] | None = None,
    start: str = "2025-01-01T10:00:00Z",
    end: str = "2025-01-01T11:00:00Z",
) -> dict[str, Any]:
    """A change-feed item as Google returns it."""
    if status == "cancelled":
        return {"id": event_id, "status": "cancelled"}

    item: dict[str, Any] = {
        "id": event_id,
        "status": status,
        "summary": summary,
        "etag": f'"{event_id}-etag"',
        "updated": "2024-12-31T12:00:00.000Z",
        "start": {"dateTime": start},
        "end": {"dateTime": end},
    }
    if attendees is not None:
        item["attendees"] = [{"email": email} for email in attendees]
    return item


class FakeGoogle:
    """Programmable stand-in for the OAuth and Calendar endpoints.

    Change-feed responses are queued with `queue_page` / `queue_status` and
    consumed in order; an empty queue answers an empty page with sync token
    "tok-idle".
    """

    def __init__(self) -> None:
        self.feed: deque[tuple[int, dict[str, Any]]] = deque()
        self.requests: list[httpx.Request] = []
        self.list_requests: list[dict[str, str]] = []
        self.watch_requests: list[dict[str, Any]] = []
        self.stop_requests: list[dict[str, Any]] = []
        self.revoked: list[str] = []

        self.token_calls = 0
        self.token_status = 200
        self.token_response: dict[str, Any] = {
            "access_token": "refreshed-access-token",
            "expires_in": 3600,
            "token_type": "Bearer",
            "scope": "https://www.googleapis.com/auth/calendar.readonly",
        }

        self.watch_status = 200
        self.watch_failures: set[str] = set()
        self.watch_expiration = FIXED_NOW + timedelta(days=7)

    def queue_page(
        self,
        items: list[dict[str, Any]],
        next_sync_token: str | None = None,
        next_page_token: str | None = None,
    ) -> None:
        body: dict[str, Any] = {"kind": "calendar#events", "items": items}
        if next_sync_token:
            body["nextSyncToken"] = next_sync_token
        if next_page_token:
            body["nextPageToken"] = next_page_token
        self.feed.append((200, body))

    def queue_status(self, status_code: int) -> None:
        self.feed.append((status_code, {"error": {"code": status_code}}))

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if str(request.url).startswith(TOKEN_URL):
            self.token_calls += 1
            return httpx.Response(self.token_status, json=self.token_response)

        if request.url.host == "oauth2.googleapis.com" and path == "/revoke":
            self.revoked.append(request.url.params["token"])
            return httpx.Response(200)

        if path.endswith("/channels/stop"):
            self.stop_requests.append(_json(request))
            return httpx.Response(204)

        if path.endswith("/events/watch"):
            body = _json(request)
            self.watch_requests.append(body)
            if body["id"] in self.watch_failures:
                return httpx.Response(500, json={"error": "backend"})
            if self.watch_status != 200:
                return httpx.Response(self.watch_status, json={"error": "watch"})
            return httpx.Response(
                200,
                json={
                    "kind": "api#channel",
                    "id": body["id"],
                    "resourceId": "res-primary",
                    "resourceUri": f"{API_BASE}/calendars/primary/events",
                    "expiration": str(int(self.watch_expiration.timestamp() * 1000)),
                },
            )

        if path.endswith("/events"):
            self.list_requests.append(dict(request.url.params))
            if not self.feed:
                return httpx.Response(200, json={"items": [], "nextSyncToken": "tok-idle"})
            status_code, body = self.feed.popleft()
            return httpx.Response(status_code, json=body)

        return httpx.Response(404, json={"error": "not found"})


def _json(request: httpx.Request) -> dict[str, Any]:
    return json.loads(request.content or b"{}")


def form(request: httpx.Request) -> dict[str, str]:
    """Decoded form body of a token endpoint request."""
    return {key: values[0] for key, values in parse_qs(request.content.decode()).items()}


class RecordingDispatcher:
    """Collects effects synchronously."""

    def __init__(self, fail: bool = False) -> None:
        self.calls: list[tuple[str, str, ChangeKind]] = []
        self.fail = fail

    def notify(self, account_id: str, event_id: str, change_kind: ChangeKind) -> None:
        if self.fail:
            raise RuntimeError("downstream unavailable")
        self.calls.append((account_id, event_id, change_kind))


@pytest.fixture
def fake_google() -> FakeGoogle:
    return FakeGoogle()


@pytest.fixture
async def http_client(fake_google: FakeGoogle):
    async with httpx.AsyncClient(transport=httpx.MockTransport(fake_google.handler)) as client:
        yield client


@pytest.fixture
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest.fixture
def clock():
    """Settable clock shared by every component under test."""

    class Clock:
        now = FIXED_NOW

        def __call__(self) -> datetime:
            return self.now

    return Clock()


@pytest.fixture
async def services(db, http_client, dispatcher, clock) -> SyncServices:
    """All components wired against the fake provider and the test database."""
    credentials = CredentialStore()
    oauth = GoogleOAuth(http_client=http_client, token_url=TOKEN_URL)
    refresher = TokenRefresher(credentials, oauth, clock=clock)
    registry = ChannelRegistry(clock=clock)
    events = EventStore()
    client = GoogleCalendarClient(http_client, api_base=API_BASE)
    engine = DeltaSyncEngine(refresher, registry, events, client, dispatcher, clock=clock)
    receiver = NotificationReceiver(registry, credentials, engine)
    renewer = ChannelRenewer(registry, refresher, client, WEBHOOK_URL, clock=clock)
    setup = ChannelSetupService(refresher, registry, events, client, oauth, WEBHOOK_URL)

    return SyncServices(
        credentials=credentials,
        refresher=refresher,
        registry=registry,
        events=events,
        client=client,
        oauth=oauth,
        dispatcher=dispatcher,
        engine=engine,
        receiver=receiver,
        renewer=renewer,
        setup=setup,
    )


@pytest.fixture
async def connected_account(services: SyncServices):
    """Account "acct-1" with a valid token and channel "c1" on "primary"."""
    await services.credentials.save_authorization(
        "acct-1",
        "valid-access-token",
        "refresh-token-1",
        FIXED_NOW + timedelta(hours=1),
    )
    return await services.registry.upsert(
        "acct-1",
        "primary",
        "c1",
        FIXED_NOW + timedelta(days=7),
        provider_resource_id="res-primary",
        channel_token="secret-channel-token",
    )
