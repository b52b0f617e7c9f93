"""Wiring of the engine's components.

One `SyncServices` bundle is built per process (app lifespan or CLI run) and
shares a single httpx client for every outbound provider call.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta

import httpx

from calendar_sync.auth.google import GoogleOAuth
from calendar_sync.calendar.event_store import EventStore
from calendar_sync.calendar.google_calendar import GoogleCalendarClient
from calendar_sync.calendar.sync import DeltaSyncEngine
from calendar_sync.channels.registry import ChannelRegistry
from calendar_sync.channels.renewer import ChannelRenewer
from calendar_sync.channels.setup import ChannelSetupService
from calendar_sync.config import Settings, get_settings
from calendar_sync.credentials.refresher import TokenRefresher
from calendar_sync.credentials.store import CredentialStore
from calendar_sync.effects import (
    EffectDispatcher,
    HttpEffectHandler,
    LoggingEffectHandler,
    QueuedEffectDispatcher,
)
from calendar_sync.notifications.receiver import NotificationReceiver


@dataclass
class SyncServices:
    """Every component, wired together."""

    credentials: CredentialStore
    refresher: TokenRefresher
    registry: ChannelRegistry
    events: EventStore
    client: GoogleCalendarClient
    oauth: GoogleOAuth
    dispatcher: EffectDispatcher
    engine: DeltaSyncEngine
    receiver: NotificationReceiver
    renewer: ChannelRenewer
    setup: ChannelSetupService


def build_dispatcher(
    http_client: httpx.AsyncClient,
    settings: Settings | None = None,
) -> QueuedEffectDispatcher:
    settings = settings or get_settings()
    if settings.downstream_effect_url:
        handler = HttpEffectHandler(
            http_client,
            settings.downstream_effect_url,
            timeout=settings.provider_timeout_seconds,
        )
    else:
        handler = LoggingEffectHandler()
    return QueuedEffectDispatcher(handler, maxsize=settings.effect_queue_size)


def build_services(
    http_client: httpx.AsyncClient,
    settings: Settings | None = None,
    dispatcher: EffectDispatcher | None = None,
) -> SyncServices:
    """Build the component graph.

    Args:
        http_client: Shared client for provider and downstream calls
        settings: Defaults to `get_settings()`
        dispatcher: Defaults to a queued dispatcher chosen from settings
    """
    settings = settings or get_settings()

    credentials = CredentialStore()
    oauth = GoogleOAuth(http_client=http_client)
    refresher = TokenRefresher(
        credentials,
        oauth,
        margin=timedelta(seconds=settings.token_refresh_margin_seconds),
    )
    registry = ChannelRegistry()
    events = EventStore()
    client = GoogleCalendarClient(http_client)
    if dispatcher is None:
        dispatcher = build_dispatcher(http_client, settings)

    engine = DeltaSyncEngine(refresher, registry, events, client, dispatcher)
    receiver = NotificationReceiver(registry, credentials, engine)
    renewer = ChannelRenewer(registry, refresher, client, settings.webhook_url)
    setup = ChannelSetupService(refresher, registry, events, client, oauth, settings.webhook_url)

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
