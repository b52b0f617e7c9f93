"""Provider push notification endpoint.

Google sends an empty-bodied POST per change, with everything in headers:

- X-Goog-Channel-Id: channel id we chose on subscribe
- X-Goog-Resource-State: sync | exists | not_exists
- X-Goog-Resource-Id: provider id of the watched resource
- X-Goog-Channel-Token: token we set on subscribe (optional)
- X-Goog-Message-Number: delivery sequence number (optional)

Only the status code matters to the provider. Other methods are answered
with 405 by the router.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, BackgroundTasks, Depends, Request, Response, status

from calendar_sync.api.dependencies import get_services
from calendar_sync.config import get_settings
from calendar_sync.errors import InvalidNotificationError
from calendar_sync.notifications.receiver import NotificationAction, PushNotification
from calendar_sync.services import SyncServices

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/google-calendar")
async def google_calendar_notification(
    request: Request,
    background_tasks: BackgroundTasks,
    services: SyncServices = Depends(get_services),
) -> Response:
    """Receive a Google Calendar push notification."""
    try:
        notification = PushNotification.from_headers(request.headers)
    except InvalidNotificationError as e:
        logger.warning(f"Rejected notification: {e}")
        return Response(status_code=status.HTTP_400_BAD_REQUEST)

    defer = get_settings().defer_sync_processing
    try:
        outcome = await services.receiver.receive(notification, defer=defer)
    except Exception:
        logger.exception(f"Handling notification for channel {notification.channel_id} failed")
        return Response(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR)

    if outcome.action is NotificationAction.SYNC_DEFERRED:
        background_tasks.add_task(services.receiver.process_deferred, notification)

    logger.debug(
        f"Notification {notification.message_number} on channel {notification.channel_id} "
        f"({notification.resource_state}): {outcome.action.value} -> {outcome.status_code}"
    )
    return Response(status_code=outcome.status_code)
