"""Downstream effect dispatch.

The sync engine reports new and attendee-changed events through
`EffectDispatcher.notify`. Dispatch is fire-and-forget: `notify` only puts
the effect on a bounded queue and returns, and a worker task hands queued
effects to a handler. Handler failures are logged and dropped; they never
reach the sync path.

## Handlers

- `HttpEffectHandler`: POSTs the effect as JSON to a configured URL
- `LoggingEffectHandler`: logs the effect (used when no URL is configured)
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Protocol

import httpx

from calendar_sync.clock import utc_now

logger = logging.getLogger(__name__)


class ChangeKind(str, Enum):
    """Why an event was dispatched."""

    CREATED = "created"
    ATTENDEES_CHANGED = "attendees_changed"


@dataclass(frozen=True)
class Effect:
    """One unit of downstream work."""

    account_id: str
    event_id: str
    change_kind: ChangeKind
    occurred_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "account_id": self.account_id,
            "event_id": self.event_id,
            "change_kind": self.change_kind.value,
            "occurred_at": self.occurred_at.isoformat(),
        }


class EffectDispatcher(Protocol):
    """Receiver of materialized event changes."""

    def notify(self, account_id: str, event_id: str, change_kind: ChangeKind) -> None:
        ...


EffectHandler = Callable[[Effect], Awaitable[None]]


class LoggingEffectHandler:
    """Logs effects. Default when no downstream URL is configured."""

    async def __call__(self, effect: Effect) -> None:
        logger.info(
            f"Downstream effect {effect.change_kind.value} "
            f"for event {effect.event_id} (account {effect.account_id})"
        )


class HttpEffectHandler:
    """POSTs effects to a downstream service."""

    def __init__(self, http_client: httpx.AsyncClient, url: str, timeout: float = 10.0):
        self._http = http_client
        self.url = url
        self.timeout = timeout

    async def __call__(self, effect: Effect) -> None:
        response = await self._http.post(self.url, json=effect.to_dict(), timeout=self.timeout)
        response.raise_for_status()


class QueuedEffectDispatcher:
    """Bounded in-process queue drained by a single worker task.

    Example:
        ```python
        dispatcher = QueuedEffectDispatcher(LoggingEffectHandler())
        await dispatcher.start()

        dispatcher.notify("acct-1", "evt-1", ChangeKind.CREATED)

        await dispatcher.stop()
        ```
    """

    def __init__(self, handler: EffectHandler, maxsize: int = 1000):
        self.handler = handler
        self._queue: asyncio.Queue[Effect] = asyncio.Queue(maxsize=maxsize)
        self._worker: asyncio.Task | None = None
        self.dropped = 0

    def notify(self, account_id: str, event_id: str, change_kind: ChangeKind) -> None:
        """Enqueue an effect. Never blocks and never raises."""
        effect = Effect(
            account_id=account_id,
            event_id=event_id,
            change_kind=ChangeKind(change_kind),
        )
        try:
            self._queue.put_nowait(effect)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning(
                f"Effect queue full, dropping {effect.change_kind.value} for event {event_id}"
            )

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    async def start(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._run(), name="effect-dispatcher")

    async def stop(self, drain: bool = True) -> None:
        """Stop the worker, optionally handling what is already queued."""
        if drain and self._worker is not None and not self._worker.done():
            await self._queue.join()
        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None

    async def drain(self) -> None:
        """Handle every queued effect in the current task."""
        while not self._queue.empty():
            effect = self._queue.get_nowait()
            try:
                await self._handle(effect)
            finally:
                self._queue.task_done()

    async def _run(self) -> None:
        while True:
            effect = await self._queue.get()
            try:
                await self._handle(effect)
            finally:
                self._queue.task_done()

    async def _handle(self, effect: Effect) -> None:
        try:
            await self.handler(effect)
        except Exception as e:
            logger.error(
                f"Downstream effect {effect.change_kind.value} for event "
                f"{effect.event_id} failed: {e}"
            )
