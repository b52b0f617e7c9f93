"""Channel renewer.

Provider watch channels expire (Google caps them at about a week). The
renewer runs on a timer, finds channels expiring inside a lookahead window
and re-subscribes each one with the same `channel_id`, then writes the new
expiration. The cursor is never touched.

Each channel is renewed independently: a failure is logged and counted, and
the sweep moves on. Overlapping sweeps are harmless, the second one simply
re-checks the same expiration predicate.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from calendar_sync.calendar.google_calendar import GoogleCalendarClient
from calendar_sync.channels.registry import ChannelRecord, ChannelRegistry
from calendar_sync.clock import utc_now
from calendar_sync.config import get_settings
from calendar_sync.credentials.refresher import TokenRefresher
from calendar_sync.errors import TokenInvalidError

logger = logging.getLogger(__name__)


@dataclass
class RenewalReport:
    """Outcome of one renewal sweep."""

    checked: int = 0
    renewed: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.failed


class ChannelRenewer:
    """Re-subscribes channels before the provider lets them expire.

    Example:
        ```python
        renewer = ChannelRenewer(registry, refresher, client, webhook_url)

        report = await renewer.run_renewal_sweep()
        print(f"{len(report.renewed)} renewed, {len(report.failed)} failed")
        ```
    """

    def __init__(
        self,
        registry: ChannelRegistry,
        refresher: TokenRefresher,
        client: GoogleCalendarClient,
        webhook_url: str | None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.registry = registry
        self.refresher = refresher
        self.client = client
        self.webhook_url = webhook_url
        self._clock = clock

    async def run_renewal_sweep(self, lookahead: timedelta | None = None) -> RenewalReport:
        """Scheduling entry point. Defaults the window from settings."""
        if lookahead is None:
            lookahead = timedelta(hours=get_settings().channel_renewal_lookahead_hours)
        return await self.renew_expiring_channels(lookahead)

    async def renew_expiring_channels(self, lookahead: timedelta) -> RenewalReport:
        """Renew every channel with `expiration_at < now + lookahead`."""
        threshold = self._clock() + lookahead
        channels = await self.registry.list_expiring(threshold)
        report = RenewalReport(checked=len(channels))

        if not channels:
            logger.debug(f"No channels expiring before {threshold.isoformat()}")
            return report

        if not self.webhook_url:
            logger.error(
                f"WEBHOOK_URL is not configured; cannot renew {len(channels)} channels"
            )
            report.failed.extend(channel.channel_id for channel in channels)
            return report

        for channel in channels:
            try:
                await self._renew(channel)
            except Exception:
                logger.exception(
                    f"Renewing channel {channel.channel_id} "
                    f"({channel.account_id}/{channel.resource_id}) failed"
                )
                report.failed.append(channel.channel_id)
            else:
                report.renewed.append(channel.channel_id)

        logger.info(
            f"Renewal sweep: {report.checked} expiring, {len(report.renewed)} renewed, "
            f"{len(report.failed)} failed"
        )
        return report

    async def _renew(self, channel: ChannelRecord) -> None:
        access_token = await self.refresher.ensure_valid_access_token(channel.account_id)
        try:
            watch = await self.client.watch(
                access_token,
                channel.resource_id,
                channel.channel_id,
                self.webhook_url,
                token=channel.channel_token,
            )
        except TokenInvalidError:
            await self.refresher.store.invalidate_access_token(channel.account_id)
            raise

        if not await self.registry.update_expiration(channel.channel_id, watch.expiration_at):
            logger.warning(f"Channel {channel.channel_id} was removed during renewal")
            return

        logger.info(
            f"Renewed channel {channel.channel_id} until {watch.expiration_at.isoformat()}"
        )
