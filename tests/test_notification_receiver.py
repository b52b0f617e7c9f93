"""Tests for the notification receiver."""

from datetime import timedelta

import httpx
import pytest
from tenacity import wait_none

from calendar_sync.errors import InvalidNotificationError
from calendar_sync.notifications.receiver import (
    NotificationAction,
    NotificationReceiver,
    PushNotification,
    ResourceState,
)
from conftest import FIXED_NOW, event_item


def notification(state="exists", channel_id="c1", token="secret-channel-token", resource="res-primary"):
    return PushNotification(
        channel_id=channel_id,
        resource_state=state,
        resource_id=resource,
        channel_token=token,
    )


class TestPushNotification:
    """Tests for header parsing."""

    def test_from_headers(self):
        headers = httpx.Headers(
            {
                "x-goog-channel-id": "c1",
                "x-goog-resource-state": "exists",
                "x-goog-resource-id": "res-primary",
                "x-goog-channel-token": "tok",
                "x-goog-message-number": "42",
            }
        )

        parsed = PushNotification.from_headers(headers)

        assert parsed.channel_id == "c1"
        assert parsed.state is ResourceState.EXISTS
        assert parsed.channel_token == "tok"
        assert parsed.message_number == 42

    def test_missing_headers(self):
        with pytest.raises(InvalidNotificationError) as excinfo:
            PushNotification.from_headers(httpx.Headers({"X-Goog-Channel-Id": "c1"}))

        assert excinfo.value.missing == ["X-Goog-Resource-State", "X-Goog-Resource-Id"]

    def test_unknown_state(self):
        assert notification(state="something-new").state is None


class TestValidation:
    """Notifications that are acknowledged or rejected without syncing."""

    async def test_unknown_channel_is_acknowledged(self, services, fake_google):
        outcome = await services.receiver.receive(notification(channel_id="ghost"))

        assert outcome.status_code == 200
        assert outcome.action is NotificationAction.UNKNOWN_CHANNEL
        assert fake_google.requests == []

    async def test_wrong_channel_token_is_rejected(self, services, connected_account, fake_google):
        outcome = await services.receiver.receive(notification(token="forged"))

        assert outcome.status_code == 403
        assert fake_google.list_requests == []

    async def test_foreign_resource_is_ignored(self, services, connected_account, fake_google):
        outcome = await services.receiver.receive(notification(resource="res-other"))

        assert outcome.status_code == 200
        assert outcome.action is NotificationAction.RESOURCE_MISMATCH
        assert fake_google.list_requests == []

    async def test_unknown_state_is_acknowledged(self, services, connected_account, fake_google):
        outcome = await services.receiver.receive(notification(state="moved"))

        assert outcome.status_code == 200
        assert outcome.action is NotificationAction.UNKNOWN_STATE
        assert fake_google.list_requests == []


class TestResourceStates:
    """Tests for sync / exists / not_exists handling."""

    async def test_end_to_end_sync_notification(self, services, connected_account, fake_google, dispatcher):
        fake_google.queue_page(
            [
                {
                    "id": "e1",
                    "status": "confirmed",
                    "summary": "Demo",
                    "attendees": [{"email": "a@x.com", "organizer": True}, {"email": "b@y.com"}],
                    "start": {"dateTime": "2025-01-01T10:00:00Z"},
                }
            ],
            next_sync_token="tok1",
        )

        outcome = await services.receiver.receive(notification(state="sync"))

        assert outcome.status_code == 200
        assert outcome.action is NotificationAction.SYNCED
        events = await services.events.list_events("acct-1", "primary")
        assert len(events) == 1
        assert len(events[0].attendees) == 2
        assert (await services.registry.get("c1")).last_sync_cursor == "tok1"
        assert [call[1] for call in dispatcher.calls] == ["e1"]

    async def test_sync_state_ignores_stored_cursor(self, services, connected_account, fake_google):
        await services.registry.update_cursor("c1", "from-previous-subscription")
        fake_google.queue_page([], next_sync_token="tok1")

        await services.receiver.receive(notification(state="sync"))

        assert "syncToken" not in fake_google.list_requests[0]
        assert "timeMin" in fake_google.list_requests[0]

    async def test_exists_uses_stored_cursor(self, services, connected_account, fake_google):
        await services.registry.update_cursor("c1", "tok7")
        fake_google.queue_page([event_item("e1")], next_sync_token="tok8")

        outcome = await services.receiver.receive(notification(state="exists"))

        assert outcome.sync_result.cursor == "tok8"
        assert fake_google.list_requests[0]["syncToken"] == "tok7"

    async def test_not_exists_cascades(self, services, connected_account, fake_google):
        fake_google.queue_page([event_item("e1"), event_item("e2")], next_sync_token="tok1")
        await services.receiver.receive(notification(state="sync"))
        assert len(await services.events.list_events("acct-1", "primary")) == 2

        outcome = await services.receiver.receive(notification(state="not_exists"))

        assert outcome.status_code == 200
        assert outcome.action is NotificationAction.RESOURCE_REMOVED
        assert await services.events.list_events("acct-1", "primary") == []
        assert await services.registry.get("c1") is None


class TestConcurrency:
    """Per-channel serialization."""

    async def test_held_lease_is_a_noop(self, services, connected_account, fake_google):
        await services.registry.acquire_sync_lease("c1", "other-worker", timedelta(minutes=2))

        outcome = await services.receiver.receive(notification())

        assert outcome.status_code == 200
        assert outcome.action is NotificationAction.SYNC_IN_PROGRESS
        assert fake_google.list_requests == []

    async def test_lease_released_after_failure(self, services, connected_account, fake_google):
        fake_google.queue_status(503)

        outcome = await services.receiver.receive(notification())

        assert outcome.status_code == 500
        assert await services.registry.acquire_sync_lease("c1", "next", timedelta(minutes=2))

    async def test_overtaken_sync_keeps_newer_cursor(
        self, services, connected_account, fake_google, clock, monkeypatch
    ):
        list_changes = services.client.list_changes
        overtaken = False

        async def stalled_list_changes(*args, **kwargs):
            nonlocal overtaken
            page = await list_changes(*args, **kwargs)
            if not overtaken:
                overtaken = True
                # Stalls past its lease; the next notification takes over
                clock.now = FIXED_NOW + timedelta(minutes=5)
                newer = await services.receiver.receive(notification())
                assert newer.action is NotificationAction.SYNCED
            return page

        monkeypatch.setattr(services.client, "list_changes", stalled_list_changes)
        fake_google.queue_page([event_item("e1", summary="stale")], next_sync_token="tokA")
        fake_google.queue_page([event_item("e1", summary="fresh")], next_sync_token="tokB")

        outcome = await services.receiver.receive(notification())

        assert outcome.status_code == 200
        assert outcome.action is NotificationAction.LEASE_LOST
        assert (await services.registry.get("c1")).last_sync_cursor == "tokB"
        rows = await services.events.list_events("acct-1")
        assert [row.title for row in rows] == ["fresh"]

    async def test_removal_during_sync_leaves_no_events(
        self, services, connected_account, fake_google, monkeypatch
    ):
        get_attendee_emails = services.events.get_attendee_emails

        async def removed_meanwhile(*args, **kwargs):
            removal = await services.receiver.receive(notification(state="not_exists"))
            assert removal.action is NotificationAction.RESOURCE_REMOVED
            return await get_attendee_emails(*args, **kwargs)

        monkeypatch.setattr(services.events, "get_attendee_emails", removed_meanwhile)
        fake_google.queue_page([event_item("e1"), event_item("e2")], next_sync_token="tok1")

        outcome = await services.receiver.receive(notification())

        assert outcome.status_code == 200
        assert outcome.action is NotificationAction.LEASE_LOST
        assert await services.registry.get("c1") is None
        assert await services.events.list_events("acct-1") == []


class TestFailures:
    """Status codes for failing syncs."""

    async def test_refresh_denied_answers_403(self, services, fake_google):
        await services.credentials.save_authorization(
            "acct-1", "expired", "revoked", FIXED_NOW - timedelta(hours=1)
        )
        await services.registry.upsert("acct-1", "primary", "c1", FIXED_NOW + timedelta(days=1))
        fake_google.token_status = 400
        fake_google.token_response = {"error": "invalid_grant"}

        outcome = await services.receiver.receive(notification(token=None))

        assert outcome.status_code == 403
        assert outcome.action is NotificationAction.CREDENTIALS_INVALID
        assert (await services.credentials.get_sync_health("acct-1")).needs_reauthorization

    async def test_reauthorization_required_stops_token_requests(self, services, fake_google):
        await services.credentials.save_authorization(
            "acct-1", "expired", "revoked", FIXED_NOW - timedelta(hours=1)
        )
        await services.registry.upsert("acct-1", "primary", "c1", FIXED_NOW + timedelta(days=1))
        fake_google.token_status = 400
        fake_google.token_response = {"error": "invalid_grant"}

        await services.receiver.receive(notification(token=None))
        assert fake_google.token_calls == 1

        outcome = await services.receiver.receive(notification(token=None))
        report = await services.renewer.renew_expiring_channels(timedelta(days=30))

        assert outcome.status_code == 403
        assert report.failed == ["c1"]
        assert fake_google.token_calls == 1
        assert fake_google.list_requests == []

        await services.credentials.save_authorization(
            "acct-1", "new-access-token", "new-refresh", FIXED_NOW + timedelta(hours=1)
        )
        outcome = await services.receiver.receive(notification(token=None))

        assert outcome.action is NotificationAction.SYNCED
        assert fake_google.token_calls == 1

    async def test_missing_credential_answers_403(self, services):
        await services.registry.upsert("orphan", "primary", "c9", FIXED_NOW + timedelta(days=1))

        outcome = await services.receiver.receive(notification(channel_id="c9", token=None))

        assert outcome.status_code == 403

    async def test_rejected_access_token_is_invalidated(self, services, connected_account, fake_google):
        fake_google.queue_status(401)

        outcome = await services.receiver.receive(notification())

        assert outcome.status_code == 403
        stored = await services.credentials.get("acct-1")
        assert stored.access_token is None
        assert stored.refresh_token == "refresh-token-1"

    async def test_provider_outage_answers_500(self, services, connected_account, fake_google):
        fake_google.queue_status(500)

        outcome = await services.receiver.receive(notification())

        assert outcome.status_code == 500
        assert (await services.registry.get("c1")).last_sync_cursor is None


class TestDeferred:
    """Acknowledge first, sync in the background."""

    def receiver(self, services, attempts=3):
        return NotificationReceiver(
            services.registry,
            services.credentials,
            services.engine,
            max_attempts=attempts,
            retry_wait=wait_none(),
        )

    async def test_defer_stops_after_lookup(self, services, connected_account, fake_google):
        receiver = self.receiver(services)

        outcome = await receiver.receive(notification(), defer=True)

        assert outcome.status_code == 200
        assert outcome.action is NotificationAction.SYNC_DEFERRED
        assert fake_google.list_requests == []

    async def test_not_exists_is_not_deferred(self, services, connected_account):
        receiver = self.receiver(services)

        outcome = await receiver.receive(notification(state="not_exists"), defer=True)

        assert outcome.action is NotificationAction.RESOURCE_REMOVED

    async def test_transient_failures_are_retried(self, services, connected_account, fake_google):
        receiver = self.receiver(services)
        fake_google.queue_status(503)
        fake_google.queue_page([event_item("e1")], next_sync_token="tok1")

        outcome = await receiver.process_deferred(notification(state="sync"))

        assert outcome.action is NotificationAction.SYNCED
        assert len(fake_google.list_requests) == 2
        assert (await services.registry.get("c1")).last_sync_cursor == "tok1"

    async def test_gives_up_after_max_attempts(self, services, connected_account, fake_google):
        receiver = self.receiver(services, attempts=2)
        for _ in range(3):
            fake_google.queue_status(503)

        outcome = await receiver.process_deferred(notification())

        assert outcome.action is NotificationAction.PROVIDER_FAILED
        assert len(fake_google.list_requests) == 2

    async def test_channel_removed_before_processing(self, services):
        receiver = self.receiver(services)

        outcome = await receiver.process_deferred(notification(channel_id="ghost"))

        assert outcome.action is NotificationAction.UNKNOWN_CHANNEL
