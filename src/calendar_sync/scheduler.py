"""In-process timer for the channel renewal sweep.

Deployments that trigger renewal from an external cron call
`POST /internal/channels/renew` or `calendar-sync renew-channels` instead and
leave RENEWAL_SCHEDULER_ENABLED off.
"""

from __future__ import annotations

import logging
from datetime import timedelta

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from calendar_sync.channels.renewer import ChannelRenewer

logger = logging.getLogger(__name__)

RENEWAL_JOB_ID = "channel_renewal"


class RenewalScheduler:
    """Runs `ChannelRenewer.run_renewal_sweep` on a fixed interval."""

    def __init__(
        self,
        renewer: ChannelRenewer,
        interval_minutes: int,
        lookahead: timedelta | None = None,
    ):
        self.renewer = renewer
        self.interval_minutes = interval_minutes
        self.lookahead = lookahead
        self._scheduler: AsyncIOScheduler | None = None

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    async def _sweep(self) -> None:
        try:
            await self.renewer.run_renewal_sweep(self.lookahead)
        except Exception:
            logger.exception("Scheduled renewal sweep failed")

    def start(self) -> None:
        if self.running:
            return

        self._scheduler = AsyncIOScheduler()
        self._scheduler.add_job(
            self._sweep,
            "interval",
            minutes=self.interval_minutes,
            id=RENEWAL_JOB_ID,
            max_instances=1,
            coalesce=True,
        )
        self._scheduler.start()
        logger.info(f"Channel renewal scheduler started (every {self.interval_minutes} min)")

    def shutdown(self) -> None:
        if self._scheduler:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None
            logger.info("Channel renewal scheduler stopped")
