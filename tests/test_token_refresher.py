"""Tests for the credential store and token refresher."""

from datetime import timedelta

import pytest
from sqlalchemy import select

from calendar_sync.database.connection import get_db
from calendar_sync.database.models import Credential
from calendar_sync.errors import (
    CredentialMissingError,
    ProviderUnavailableError,
    RefreshDeniedError,
)
from conftest import FIXED_NOW, form


class TestCredentialStore:
    """Tests for credential persistence."""

    async def test_tokens_are_encrypted_at_rest(self, services):
        await services.credentials.save_authorization(
            "acct-1", "access-1", "refresh-1", FIXED_NOW + timedelta(hours=1)
        )

        async with get_db() as session:
            row = (await session.execute(select(Credential))).scalar_one()

        assert row.access_token_encrypted != "access-1"
        assert row.refresh_token_encrypted != "refresh-1"

        stored = await services.credentials.get("acct-1")
        assert stored.access_token == "access-1"
        assert stored.refresh_token == "refresh-1"
        assert stored.access_token_expires_at == FIXED_NOW + timedelta(hours=1)

    async def test_reauthorization_without_refresh_token_keeps_old_one(self, services):
        await services.credentials.save_authorization(
            "acct-1", "access-1", "refresh-1", FIXED_NOW
        )
        await services.credentials.mark_reauth_required("acct-1", "revoked")

        await services.credentials.save_authorization(
            "acct-1", "access-2", None, FIXED_NOW + timedelta(hours=1)
        )

        stored = await services.credentials.get("acct-1")
        assert stored.access_token == "access-2"
        assert stored.refresh_token == "refresh-1"
        health = await services.credentials.get_sync_health("acct-1")
        assert health.needs_reauthorization is False

    async def test_unknown_account(self, services):
        assert await services.credentials.get("nobody") is None
        assert await services.credentials.get_sync_health("nobody") is None


class TestTokenRefresher:
    """Tests for ensure_valid_access_token."""

    async def test_fresh_token_is_returned_without_network(self, services, fake_google):
        await services.credentials.save_authorization(
            "acct-1", "still-good", "refresh-1", FIXED_NOW + timedelta(minutes=30)
        )

        token = await services.refresher.ensure_valid_access_token("acct-1")

        assert token == "still-good"
        assert fake_google.token_calls == 0

    async def test_token_inside_safety_margin_is_refreshed(self, services, fake_google):
        await services.credentials.save_authorization(
            "acct-1", "almost-expired", "refresh-1", FIXED_NOW + timedelta(minutes=4)
        )

        token = await services.refresher.ensure_valid_access_token("acct-1")

        assert token == "refreshed-access-token"
        assert fake_google.token_calls == 1
        request = fake_google.requests[-1]
        assert form(request) == {
            "client_id": "test-client-id",
            "client_secret": "test-client-secret",
            "refresh_token": "refresh-1",
            "grant_type": "refresh_token",
        }

        stored = await services.credentials.get("acct-1")
        assert stored.access_token == "refreshed-access-token"
        assert stored.refresh_token == "refresh-1"
        assert stored.access_token_expires_at > FIXED_NOW

    async def test_rotated_refresh_token_is_persisted(self, services, fake_google):
        fake_google.token_response["refresh_token"] = "refresh-2"
        await services.credentials.save_authorization(
            "acct-1", "expired", "refresh-1", FIXED_NOW - timedelta(hours=1)
        )

        await services.refresher.ensure_valid_access_token("acct-1")

        stored = await services.credentials.get("acct-1")
        assert stored.refresh_token == "refresh-2"

    async def test_missing_credential(self, services):
        with pytest.raises(CredentialMissingError):
            await services.refresher.ensure_valid_access_token("nobody")

    async def test_missing_refresh_token(self, services):
        await services.credentials.save_authorization(
            "acct-1", "expired", None, FIXED_NOW - timedelta(hours=1)
        )

        with pytest.raises(CredentialMissingError):
            await services.refresher.ensure_valid_access_token("acct-1")

    async def test_refresh_denied_flags_account(self, services, fake_google):
        fake_google.token_status = 400
        fake_google.token_response = {"error": "invalid_grant"}
        await services.credentials.save_authorization(
            "acct-1", "expired", "revoked-refresh", FIXED_NOW - timedelta(hours=1)
        )

        with pytest.raises(RefreshDeniedError):
            await services.refresher.ensure_valid_access_token("acct-1")

        health = await services.credentials.get_sync_health("acct-1")
        assert health.needs_reauthorization is True
        assert "400" in health.reason

        # Stale credential stays in place for diagnostics
        stored = await services.credentials.get("acct-1")
        assert stored.access_token == "expired"
        assert stored.refresh_token == "revoked-refresh"

    async def test_flagged_account_is_not_refreshed_again(self, services, fake_google):
        fake_google.token_status = 400
        fake_google.token_response = {"error": "invalid_grant"}
        await services.credentials.save_authorization(
            "acct-1", "expired", "revoked-refresh", FIXED_NOW - timedelta(hours=1)
        )
        with pytest.raises(RefreshDeniedError):
            await services.refresher.ensure_valid_access_token("acct-1")

        fake_google.token_status = 200
        with pytest.raises(RefreshDeniedError):
            await services.refresher.ensure_valid_access_token("acct-1")

        assert fake_google.token_calls == 1

    async def test_provider_outage_is_not_retried(self, services, fake_google):
        fake_google.token_status = 503
        await services.credentials.save_authorization(
            "acct-1", "expired", "refresh-1", FIXED_NOW - timedelta(hours=1)
        )

        with pytest.raises(ProviderUnavailableError):
            await services.refresher.ensure_valid_access_token("acct-1")

        assert fake_google.token_calls == 1
        health = await services.credentials.get_sync_health("acct-1")
        assert health.needs_reauthorization is False
