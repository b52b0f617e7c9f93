"""Internal routes.

Called by trusted collaborators (cron, the service owning user sign-in), never
by end users. Every route requires the `X-Internal-Api-Key` header.
"""

from __future__ import annotations

from datetime import datetime, timedelta

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field, model_validator

from calendar_sync.api.dependencies import get_services
from calendar_sync.channels.registry import ChannelRecord
from calendar_sync.clock import utc_now
from calendar_sync.errors import CredentialMissingError, ProviderError, RefreshDeniedError
from calendar_sync.services import SyncServices

router = APIRouter()


class RenewalReportResponse(BaseModel):
    """Result of a renewal sweep."""

    checked: int
    renewed: list[str]
    failed: list[str]


class ConnectRequest(BaseModel):
    """Connect an account with either an authorization code or tokens."""

    code: str | None = None
    access_token: str | None = None
    refresh_token: str | None = None
    expires_at: datetime | None = None
    expires_in: int | None = Field(default=None, ge=1)
    scope: str | None = None
    resource_id: str = Field(default="primary", min_length=1)

    @model_validator(mode="after")
    def check_credentials(self) -> ConnectRequest:
        if not self.code and not self.access_token:
            raise ValueError("Either code or access_token is required")
        return self


class ChannelResponse(BaseModel):
    """A registered watch channel."""

    channel_id: str
    account_id: str
    resource_id: str
    expiration_at: datetime
    has_cursor: bool

    @classmethod
    def from_record(cls, channel: ChannelRecord) -> ChannelResponse:
        return cls(
            channel_id=channel.channel_id,
            account_id=channel.account_id,
            resource_id=channel.resource_id,
            expiration_at=channel.expiration_at,
            has_cursor=channel.last_sync_cursor is not None,
        )


class DisconnectResponse(BaseModel):
    """What a disconnect removed."""

    account_id: str
    channels_removed: int
    channels_stopped: int
    events_removed: int
    credential_removed: bool
    token_revoked: bool


class SyncHealthResponse(BaseModel):
    """Account sync capability."""

    account_id: str
    status: str
    reason: str | None
    changed_at: datetime | None
    needs_reauthorization: bool
    channels: list[ChannelResponse]


@router.post("/channels/renew", response_model=RenewalReportResponse)
async def renew_channels(
    lookahead_hours: int | None = Query(default=None, ge=1, le=24 * 30),
    services: SyncServices = Depends(get_services),
) -> RenewalReportResponse:
    """Run one renewal sweep (cron trigger)."""
    lookahead = timedelta(hours=lookahead_hours) if lookahead_hours else None
    report = await services.renewer.run_renewal_sweep(lookahead)
    return RenewalReportResponse(
        checked=report.checked,
        renewed=report.renewed,
        failed=report.failed,
    )


@router.post(
    "/accounts/{account_id}/connect",
    response_model=ChannelResponse,
    status_code=status.HTTP_201_CREATED,
)
async def connect_account(
    account_id: str,
    body: ConnectRequest,
    services: SyncServices = Depends(get_services),
) -> ChannelResponse:
    """Store an authorization and subscribe a watch channel."""
    try:
        if body.code:
            channel = await services.setup.connect_with_code(
                account_id, body.code, resource_id=body.resource_id
            )
        else:
            expires_at = body.expires_at or utc_now() + timedelta(
                seconds=body.expires_in or 3600
            )
            channel = await services.setup.connect_account(
                account_id,
                body.access_token,
                body.refresh_token,
                expires_at,
                resource_id=body.resource_id,
                scope=body.scope,
            )
    except (CredentialMissingError, RefreshDeniedError) as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except ProviderError as e:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"Provider call failed: {e}",
        )
    except RuntimeError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))

    return ChannelResponse.from_record(channel)


@router.delete("/accounts/{account_id}", response_model=DisconnectResponse)
async def disconnect_account(
    account_id: str,
    services: SyncServices = Depends(get_services),
) -> DisconnectResponse:
    """Stop channels and remove everything stored for the account."""
    report = await services.setup.disconnect_account(account_id)
    return DisconnectResponse(
        account_id=report.account_id,
        channels_removed=report.channels_removed,
        channels_stopped=report.channels_stopped,
        events_removed=report.events_removed,
        credential_removed=report.credential_removed,
        token_revoked=report.token_revoked,
    )


@router.get("/accounts/{account_id}/sync-health", response_model=SyncHealthResponse)
async def get_sync_health(
    account_id: str,
    services: SyncServices = Depends(get_services),
) -> SyncHealthResponse:
    """Whether the account can sync or must be re-authorized."""
    health = await services.credentials.get_sync_health(account_id)
    if health is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Account not connected",
        )

    channels = await services.registry.list_for_account(account_id)
    return SyncHealthResponse(
        account_id=account_id,
        status=health.status,
        reason=health.reason,
        changed_at=health.changed_at,
        needs_reauthorization=health.needs_reauthorization,
        channels=[ChannelResponse.from_record(channel) for channel in channels],
    )
