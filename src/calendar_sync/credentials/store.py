"""Credential store.

Durable, account-scoped storage for the OAuth token pair. Every mutation is a
targeted UPDATE guarded by `WHERE account_id = ?`; the store never writes a
whole row back from memory.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from calendar_sync.clock import as_utc, utc_now
from calendar_sync.database.connection import get_db
from calendar_sync.database.encryption import decrypt_token, encrypt_token
from calendar_sync.database.models import Credential, SyncStatus
from calendar_sync.database.upsert import upsert_statement

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], AbstractAsyncContextManager[AsyncSession]]


@dataclass
class StoredCredential:
    """Decrypted credential for one account."""

    account_id: str
    access_token: str | None
    refresh_token: str | None
    access_token_expires_at: datetime | None
    sync_status: str = SyncStatus.ACTIVE.value


@dataclass
class SyncHealth:
    """Queryable sync capability of an account."""

    account_id: str
    status: str
    reason: str | None
    changed_at: datetime | None

    @property
    def needs_reauthorization(self) -> bool:
        return self.status == SyncStatus.REAUTH_REQUIRED.value


class CredentialStore:
    """Account-scoped credential persistence."""

    def __init__(self, session_factory: SessionFactory = get_db):
        self._session = session_factory

    async def get(self, account_id: str) -> StoredCredential | None:
        async with self._session() as session:
            result = await session.execute(
                select(Credential).where(Credential.account_id == account_id)
            )
            row = result.scalar_one_or_none()

        if row is None:
            return None

        return StoredCredential(
            account_id=row.account_id,
            access_token=decrypt_token(row.access_token_encrypted),
            refresh_token=decrypt_token(row.refresh_token_encrypted),
            access_token_expires_at=as_utc(row.access_token_expires_at),
            sync_status=row.sync_status,
        )

    async def save_authorization(
        self,
        account_id: str,
        access_token: str,
        refresh_token: str | None,
        expires_at: datetime,
        scope: str | None = None,
    ) -> None:
        """Store the result of a (re-)authorization.

        Creates the credential on first authorization. A missing refresh token
        keeps the stored one. Sync health is reset to active.
        """
        now = utc_now()
        values: dict[str, Any] = {
            "id": uuid.uuid4(),
            "account_id": account_id,
            "access_token_encrypted": encrypt_token(access_token),
            "refresh_token_encrypted": encrypt_token(refresh_token),
            "access_token_expires_at": as_utc(expires_at),
            "scope": scope,
            "token_type": "Bearer",
            "sync_status": SyncStatus.ACTIVE.value,
            "sync_status_reason": None,
            "sync_status_changed_at": now,
        }
        update_columns = [
            "access_token_encrypted",
            "access_token_expires_at",
            "scope",
            "sync_status",
            "sync_status_reason",
            "sync_status_changed_at",
        ]
        if refresh_token:
            update_columns.append("refresh_token_encrypted")

        async with self._session() as session:
            await session.execute(
                upsert_statement(Credential, [values], ["account_id"], update_columns)
            )
            await session.commit()

        logger.info(f"Stored authorization for account {account_id}")

    async def update_access_token(
        self,
        account_id: str,
        access_token: str,
        expires_at: datetime,
        refresh_token: str | None = None,
    ) -> bool:
        """Persist a refreshed access token. Exactly one UPDATE.

        `refresh_token` is only written when the provider issued a new one.
        """
        values: dict[str, Any] = {
            "access_token_encrypted": encrypt_token(access_token),
            "access_token_expires_at": as_utc(expires_at),
        }
        if refresh_token:
            values["refresh_token_encrypted"] = encrypt_token(refresh_token)

        async with self._session() as session:
            result = await session.execute(
                update(Credential).where(Credential.account_id == account_id).values(**values)
            )
            await session.commit()
        return result.rowcount == 1

    async def invalidate_access_token(self, account_id: str) -> None:
        """Force the next `ensure_valid_access_token` call to refresh."""
        async with self._session() as session:
            await session.execute(
                update(Credential)
                .where(Credential.account_id == account_id)
                .values(access_token_encrypted=None, access_token_expires_at=None)
            )
            await session.commit()

    async def mark_reauth_required(self, account_id: str, reason: str) -> None:
        """Suspend sync for the account until it is re-authorized.

        Tokens are left in place for diagnostics.
        """
        async with self._session() as session:
            await session.execute(
                update(Credential)
                .where(Credential.account_id == account_id)
                .values(
                    sync_status=SyncStatus.REAUTH_REQUIRED.value,
                    sync_status_reason=reason[:500],
                    sync_status_changed_at=utc_now(),
                )
            )
            await session.commit()

        logger.warning(f"Account {account_id} requires re-authorization: {reason}")

    async def get_sync_health(self, account_id: str) -> SyncHealth | None:
        async with self._session() as session:
            result = await session.execute(
                select(
                    Credential.sync_status,
                    Credential.sync_status_reason,
                    Credential.sync_status_changed_at,
                ).where(Credential.account_id == account_id)
            )
            row = result.one_or_none()

        if row is None:
            return None
        return SyncHealth(
            account_id=account_id,
            status=row.sync_status,
            reason=row.sync_status_reason,
            changed_at=as_utc(row.sync_status_changed_at),
        )

    async def delete(self, account_id: str) -> bool:
        async with self._session() as session:
            result = await session.execute(
                delete(Credential).where(Credential.account_id == account_id)
            )
            await session.commit()
        return result.rowcount > 0
