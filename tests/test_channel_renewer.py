"""Tests for the channel renewal sweep."""

from datetime import timedelta

from conftest import FIXED_NOW, WEBHOOK_URL


async def add_channel(services, account_id, channel_id, expires_in, cursor=None):
    await services.credentials.save_authorization(
        account_id, f"token-{account_id}", f"refresh-{account_id}", FIXED_NOW + timedelta(hours=1)
    )
    return await services.registry.upsert(
        account_id,
        "primary",
        channel_id,
        FIXED_NOW + expires_in,
        provider_resource_id="res-primary",
        channel_token=f"token-for-{channel_id}",
        last_sync_cursor=cursor,
    )


class TestRenewalWindow:
    """Tests for which channels are renewed."""

    async def test_renews_exactly_the_expiring_channels(self, services, fake_google):
        await add_channel(services, "a", "ch-1h", timedelta(hours=1), cursor="tok-a")
        await add_channel(services, "b", "ch-47h", timedelta(hours=47), cursor="tok-b")
        await add_channel(services, "c", "ch-49h", timedelta(hours=49), cursor="tok-c")
        await add_channel(services, "d", "ch-6d", timedelta(days=6), cursor=None)

        report = await services.renewer.run_renewal_sweep(timedelta(hours=48))

        assert sorted(report.renewed) == ["ch-1h", "ch-47h"]
        assert report.failed == []
        assert report.checked == 2

        for channel_id, cursor in [("ch-1h", "tok-a"), ("ch-47h", "tok-b")]:
            channel = await services.registry.get(channel_id)
            assert channel.expiration_at == fake_google.watch_expiration
            assert channel.last_sync_cursor == cursor

        untouched = await services.registry.get("ch-49h")
        assert untouched.expiration_at == FIXED_NOW + timedelta(hours=49)
        assert untouched.last_sync_cursor == "tok-c"
        other = await services.registry.get("ch-6d")
        assert other.expiration_at == FIXED_NOW + timedelta(days=6)
        assert other.last_sync_cursor is None

    async def test_resubscribes_with_same_channel_id(self, services, fake_google):
        await add_channel(services, "a", "ch-a", timedelta(hours=2))

        await services.renewer.run_renewal_sweep(timedelta(hours=48))

        assert fake_google.watch_requests == [
            {
                "id": "ch-a",
                "type": "web_hook",
                "address": WEBHOOK_URL,
                "token": "token-for-ch-a",
            }
        ]
        watch = [r for r in fake_google.requests if r.url.path.endswith("/events/watch")][0]
        assert watch.headers["Authorization"] == "Bearer token-a"

    async def test_default_window_from_settings(self, services):
        await add_channel(services, "a", "ch-a", timedelta(hours=30))
        await add_channel(services, "b", "ch-b", timedelta(hours=60))

        report = await services.renewer.run_renewal_sweep()

        assert report.renewed == ["ch-a"]


class TestRenewalFailures:
    """One channel's failure never aborts the sweep."""

    async def test_failure_is_isolated(self, services, fake_google):
        await add_channel(services, "a", "ch-a", timedelta(hours=1))
        await add_channel(services, "b", "ch-b", timedelta(hours=2))
        await add_channel(services, "c", "ch-c", timedelta(hours=3))
        fake_google.watch_failures.add("ch-b")

        report = await services.renewer.run_renewal_sweep(timedelta(hours=48))

        assert report.renewed == ["ch-a", "ch-c"]
        assert report.failed == ["ch-b"]
        assert report.success is False
        failed = await services.registry.get("ch-b")
        assert failed.expiration_at == FIXED_NOW + timedelta(hours=2)

    async def test_refresh_denied_is_isolated(self, services, fake_google):
        await add_channel(services, "a", "ch-a", timedelta(hours=1))
        await services.credentials.save_authorization(
            "b", "expired", "revoked", FIXED_NOW - timedelta(hours=1)
        )
        await services.registry.upsert("b", "primary", "ch-b", FIXED_NOW + timedelta(hours=2))
        fake_google.token_status = 400
        fake_google.token_response = {"error": "invalid_grant"}

        report = await services.renewer.run_renewal_sweep(timedelta(hours=48))

        assert report.renewed == ["ch-a"]
        assert report.failed == ["ch-b"]
        health = await services.credentials.get_sync_health("b")
        assert health.needs_reauthorization is True

    async def test_nothing_to_renew(self, services, fake_google):
        report = await services.renewer.run_renewal_sweep(timedelta(hours=48))

        assert report.checked == 0
        assert fake_google.watch_requests == []

    async def test_overlapping_sweeps(self, services, fake_google, clock):
        await add_channel(services, "a", "ch-a", timedelta(hours=1))

        first = await services.renewer.run_renewal_sweep(timedelta(hours=48))
        second = await services.renewer.run_renewal_sweep(timedelta(hours=48))

        assert first.renewed == ["ch-a"]
        assert second.checked == 0
